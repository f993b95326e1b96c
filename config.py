"""
Configuration for the Slack channel memory service.

All values can be overridden through environment variables. Modules read them
as `config.NAME` or `getattr(config, 'NAME', default)`.
"""
import os


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in ("1", "true", "yes")


# ============================================================
# Runtime
# ============================================================
APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
API_HOST = os.getenv("API_HOST", "0.0.0.0")
API_PORT = _env_int("API_PORT", 8080)

# ============================================================
# Storage (LanceDB)
# ============================================================
LANCEDB_PATH = os.getenv("LANCEDB_PATH", "./lancedb_data")
MESSAGE_TABLE_NAME = os.getenv("MESSAGE_TABLE_NAME", "messages")
ARCHIVE_TABLE_NAME = os.getenv("ARCHIVE_TABLE_NAME", "messages_archive")
SUMMARY_TABLE_NAME = os.getenv("SUMMARY_TABLE_NAME", "conversation_summaries")
USER_TABLE_NAME = os.getenv("USER_TABLE_NAME", "users")
MAX_SCAN_ROWS = _env_int("MAX_SCAN_ROWS", 10000)
ARCHIVE_AFTER_DAYS = _env_int("ARCHIVE_AFTER_DAYS", 90)
# ANN index is only worth building once the table holds enough rows
VECTOR_INDEX_MIN_ROWS = _env_int("VECTOR_INDEX_MIN_ROWS", 5000)

# ============================================================
# Connection pool
# ============================================================
POOL_PROFILES = {
    "production": {"min_size": 10, "max_size": 50},
    "development": {"min_size": 2, "max_size": 20},
}
POOL_IDLE_TIMEOUT = _env_float("POOL_IDLE_TIMEOUT", 30.0)
POOL_ACQUIRE_TIMEOUT = _env_float("POOL_ACQUIRE_TIMEOUT", 5.0)
QUERY_TIMEOUT = _env_float("QUERY_TIMEOUT", 30.0)
SLOW_QUERY_MS = _env_float("SLOW_QUERY_MS", 1000.0)
MAX_RECONNECT_ATTEMPTS = _env_int("MAX_RECONNECT_ATTEMPTS", 10)
RECONNECT_INITIAL_DELAY = _env_float("RECONNECT_INITIAL_DELAY", 1.0)
RECONNECT_MAX_DELAY = _env_float("RECONNECT_MAX_DELAY", 30.0)
QUERY_TIME_WINDOW = 1000

# ============================================================
# Embeddings
# ============================================================
EMBEDDING_PROVIDER = os.getenv("EMBEDDING_PROVIDER", "openai")  # "openai" | "local"
EMBEDDING_MODEL = os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
EMBEDDING_DIMENSION = _env_int("EMBEDDING_DIMENSION", 1536)
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL")
EMBEDDING_CACHE_TTL = _env_int("EMBEDDING_CACHE_TTL", 30 * 24 * 3600)
EMBEDDING_MAX_BATCH_SIZE = _env_int("EMBEDDING_MAX_BATCH_SIZE", 2048)
EMBEDDING_MAX_INPUT_TOKENS = _env_int("EMBEDDING_MAX_INPUT_TOKENS", 8191)
EMBEDDING_MAX_BATCH_TOKENS = EMBEDDING_MAX_BATCH_SIZE * 100
EMBEDDING_CONCURRENCY = _env_int("EMBEDDING_CONCURRENCY", 5)
EMBEDDING_MAX_RETRIES = _env_int("EMBEDDING_MAX_RETRIES", 3)
EMBEDDING_DEFAULT_RETRY_AFTER = _env_float("EMBEDDING_DEFAULT_RETRY_AFTER", 60.0)
CHARS_PER_TOKEN = 4

# ============================================================
# Cache (Redis)
# ============================================================
REDIS_URL = os.getenv("REDIS_URL", "redis://localhost:6379/0")
CACHE_ENABLED = _env_bool("CACHE_ENABLED", True)
CACHE_KEY_PREFIX = "cache:data"
CACHE_TIER_TTLS = {
    "hot": 300,
    "warm": 3600,
    "cold": 86400,
}
CACHE_LOCAL_MAX_ENTRIES = _env_int("CACHE_LOCAL_MAX_ENTRIES", 1000)
CACHE_LOCAL_TTL = _env_int("CACHE_LOCAL_TTL", 60)
CACHE_OP_TIMEOUT = _env_float("CACHE_OP_TIMEOUT", 0.5)
CONTEXT_CACHE_TTL = _env_int("CONTEXT_CACHE_TTL", 300)
RECENT_MESSAGES_CACHE_TTL = _env_int("RECENT_MESSAGES_CACHE_TTL", 60)

# ============================================================
# Hybrid search
# ============================================================
HYBRID_SEMANTIC_WEIGHT = _env_float("HYBRID_SEMANTIC_WEIGHT", 0.7)
HYBRID_TEMPORAL_DECAY = _env_float("HYBRID_TEMPORAL_DECAY", 0.1)
HYBRID_MIN_SCORE = _env_float("HYBRID_MIN_SCORE", 0.3)
HYBRID_RECENT_HOURS = _env_int("HYBRID_RECENT_HOURS", 168)
HYBRID_RECENCY_BOOST = _env_float("HYBRID_RECENCY_BOOST", 1.1)
HYBRID_TEMPORAL_FACTOR = _env_float("HYBRID_TEMPORAL_FACTOR", 0.2)
HYBRID_SEMANTIC_FLOOR = _env_float("HYBRID_SEMANTIC_FLOOR", 0.5)
HYBRID_DIVERSITY_WEIGHT = _env_float("HYBRID_DIVERSITY_WEIGHT", 0.2)
HYBRID_DUPLICATE_THRESHOLD = _env_float("HYBRID_DUPLICATE_THRESHOLD", 0.8)

# ============================================================
# Context building
# ============================================================
CONTEXT_RECENT_LIMIT = _env_int("CONTEXT_RECENT_LIMIT", 20)
CONTEXT_RELEVANT_LIMIT = _env_int("CONTEXT_RELEVANT_LIMIT", 10)
CONTEXT_HOURS = _env_int("CONTEXT_HOURS", 24)
CONTEXT_THREAD_LIMIT = _env_int("CONTEXT_THREAD_LIMIT", 50)
CONTEXT_SUMMARY_LIMIT = _env_int("CONTEXT_SUMMARY_LIMIT", 5)
CONTEXT_SIMILARITY_THRESHOLD = _env_float("CONTEXT_SIMILARITY_THRESHOLD", 0.7)
CONTEXT_MAX_TOKENS = _env_int("CONTEXT_MAX_TOKENS", 4000)

# ============================================================
# Channel window / outbox
# ============================================================
WINDOW_MAX_CHANNELS = _env_int("WINDOW_MAX_CHANNELS", 500)
WINDOW_MAX_MESSAGES = _env_int("WINDOW_MAX_MESSAGES", 50)
WINDOW_MAX_AGE_SECONDS = _env_int("WINDOW_MAX_AGE_SECONDS", 24 * 3600)
OUTBOX_MAX_SIZE = _env_int("OUTBOX_MAX_SIZE", 10000)
OUTBOX_MAX_ATTEMPTS = _env_int("OUTBOX_MAX_ATTEMPTS", 3)
OUTBOX_RETRY_DELAY = _env_float("OUTBOX_RETRY_DELAY", 1.0)
