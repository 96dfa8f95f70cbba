"""Tuned constants for extraction, deduplication and ranking.

Most of these were hand-tuned against real transcripts and are exposed as
configuration defaults rather than fixed truths (see config.py).
"""

# --- Time ---
SECONDS_PER_MINUTE = 60
SECONDS_PER_HOUR = 3600
SECONDS_PER_DAY = 86400
SECONDS_PER_WEEK = 604800
SECONDS_PER_MONTH = 2592000  # 30 days
SECONDS_PER_YEAR = 31536000  # 365 days

# --- Memory types ---
# Extraction boost in confidence points (0-100 scale); divided by 100 when applied.
HIGH_PRIORITY_BOOST = 15
MEDIUM_PRIORITY_BOOST = 10
LOW_PRIORITY_BOOST = 5

# --- Confidence adjustment ---
STRONG_SIGNAL_WORDS = (
    "always",
    "never",
    "must",
    "critical",
    "important",
    "exactly",
    "perfect",
    "wrong",
    "incorrect",
)
HEDGING_WORDS = ("maybe", "perhaps", "might", "could", "unsure")
STRONG_SIGNAL_BONUS = 0.1
HEDGING_PENALTY = 0.1

# --- Extraction ---
DEFAULT_CHUNK_SIZE = 15  # turns per window, non-overlapping
DEFAULT_DUPLICATE_THRESHOLD = 0.9
DEFAULT_EXTRACTION_MODEL = "claude-3-5-haiku-latest"
DEFAULT_EXTRACTION_MAX_TOKENS = 4000
DEFAULT_EXTRACTION_TIMEOUT = 30.0
DEFAULT_SESSION_CACHE_SIZE = 32

# --- Embeddings ---
DEFAULT_EMBEDDING_PROVIDER = "ollama"
DEFAULT_OLLAMA_BASE_URL = "http://localhost:11434"
DEFAULT_EMBEDDING_MODEL = "mxbai-embed-large"
DEFAULT_EMBEDDING_DIMENSION = 1024
DEFAULT_LOCAL_EMBEDDING_MODEL = "all-MiniLM-L6-v2"
DEFAULT_LOCAL_EMBEDDING_DIMENSION = 384
DEFAULT_EMBEDDING_TIMEOUT = 30.0
EMBEDDING_BATCH_SIZE = 100
EMBEDDING_HEALTH_CHECK_INTERVAL = 300.0  # seconds
EMBEDDING_HEALTH_CHECK_TIMEOUT = 5.0

# --- Retrieval ---
DEFAULT_RETRIEVAL_LIMIT = 5
DEFAULT_SEMANTIC_THRESHOLD = 0.50
DEFAULT_ENTITY_SEMANTIC_THRESHOLD = 0.40  # query matched at least one entity
ENTITY_MATCH_SCORE = 1.0
MAX_RETRIEVAL_TYPE_BOOST = 0.15
FEEDBACK_STEP = 0.02
FEEDBACK_CAP = 0.1

# --- Entities ---
ENTITY_TYPES = ("person", "project", "business", "location")
SLUG_MAX_LENGTH = 100

# --- Maintenance ---
CLEANUP_AGE_DAYS = 90
CLEANUP_MAX_CONFIDENCE = 0.3
BEST_RATED_MIN_FEEDBACK = 3
DEFAULT_QUERY_LIMIT = 50
MOST_MENTIONED_LIMIT = 10
