"""Session transcripts: JSONL parsing, caching, chunking.

A session file has one JSON object per line. ``{"type": "input"}`` lines are
user turns, ``{"type": "output"}`` lines are assistant turns; anything else
is ignored.
"""

from __future__ import annotations

import json
import logging
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path

from .constants import DEFAULT_CHUNK_SIZE, DEFAULT_SESSION_CACHE_SIZE
from .errors import InvalidInput
from .models import ConversationTurn

logger = logging.getLogger(__name__)

_ROLES = {"input": "user", "output": "assistant"}
_LABELS = {"user": "User", "assistant": "Assistant"}


@dataclass(frozen=True)
class ParsedSession:
    path: str
    messages: tuple[ConversationTurn, ...]

    @property
    def total_messages(self) -> int:
        return len(self.messages)


def parse_session_text(text: str, source: str = "<text>") -> list[ConversationTurn]:
    """Parse JSONL content into conversation turns, skipping malformed lines."""
    messages: list[ConversationTurn] = []
    skipped = 0
    for line_no, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        try:
            entry = json.loads(line)
        except json.JSONDecodeError as e:
            skipped += 1
            logger.warning(f"{source}:{line_no}: skipping malformed line: {e}")
            continue
        if not isinstance(entry, dict):
            skipped += 1
            logger.warning(f"{source}:{line_no}: skipping non-object line")
            continue
        role = _ROLES.get(entry.get("type"))
        if role is None:
            continue
        content = entry.get("content") or ""
        if not isinstance(content, str):
            content = json.dumps(content)
        timestamp = entry.get("timestamp")
        messages.append(ConversationTurn(
            role=role,
            content=content,
            timestamp=str(timestamp) if timestamp is not None else None,
        ))

    if skipped:
        logger.warning(f"{source}: parsed {len(messages)} messages, skipped {skipped} lines")
    return messages


def parse_session_file(path: Path | str) -> ParsedSession:
    """Read and parse a session file.

    Raises:
        InvalidInput: If the file cannot be read
    """
    path = Path(path)
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise InvalidInput(f"Failed to read session file {path}: {e}") from e
    return ParsedSession(path=str(path), messages=tuple(parse_session_text(text, str(path))))


class ExtractionCache:
    """Parsed sessions keyed by path.

    An entry is valid while the file's modification time and size are
    unchanged; the least recently used entry is evicted past ``max_entries``.
    """

    def __init__(self, max_entries: int = DEFAULT_SESSION_CACHE_SIZE):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self._entries: OrderedDict[str, tuple[tuple[int, int], ParsedSession]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, (str, Path)):
            return False
        return self._key(Path(path)) in self._entries

    @staticmethod
    def _key(path: Path) -> str:
        return str(path.resolve())

    def load(self, path: Path | str) -> ParsedSession:
        """Return the parsed session, re-reading the file if it changed."""
        path = Path(path)
        try:
            stat = path.stat()
        except OSError as e:
            raise InvalidInput(f"Failed to read session file {path}: {e}") from e
        signature = (stat.st_mtime_ns, stat.st_size)
        key = self._key(path)

        cached = self._entries.get(key)
        if cached is not None and cached[0] == signature:
            self._entries.move_to_end(key)
            return cached[1]

        parsed = parse_session_file(path)
        self._entries[key] = (signature, parsed)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_entries:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug(f"Evicted cached session {evicted}")
        return parsed

    def invalidate(self, path: Path | str) -> bool:
        return self._entries.pop(self._key(Path(path)), None) is not None

    def clear(self) -> None:
        self._entries.clear()


def chunk_conversation(
    messages: list[ConversationTurn] | tuple[ConversationTurn, ...],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> list[list[ConversationTurn]]:
    """Split into consecutive, non-overlapping windows of ``chunk_size`` turns."""
    if chunk_size < 1:
        raise InvalidInput("chunk_size must be at least 1")
    return [list(messages[i:i + chunk_size]) for i in range(0, len(messages), chunk_size)]


def format_chunk(messages: list[ConversationTurn]) -> str:
    """Render turns as "User: ..." / "Assistant: ..." blocks."""
    return "\n\n".join(f"{_LABELS[m.role]}: {m.content}" for m in messages)
