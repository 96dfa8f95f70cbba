"""Memory Lane: extract, store and recall memories from conversations.

Public API:
- MemoryLane: Composition root built from Settings (or explicit collaborators)
- Settings: Environment-derived configuration
- RetrievalConfig / ExtractionConfig: Per-call knobs
- MemoryLaneError / ErrorKind: Error taxonomy
"""

from .config import ExtractionConfig, RetrievalConfig, Settings
from .engine import MemoryLane
from .errors import ErrorKind, MemoryLaneError

__all__ = [
    "MemoryLane",
    "Settings",
    "RetrievalConfig",
    "ExtractionConfig",
    "MemoryLaneError",
    "ErrorKind",
]
