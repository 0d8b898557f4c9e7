import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    """Parse boolean-like environment values."""
    value = os.getenv(name, str(default)).strip().lower()
    return value in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


# =============================================================================
# API KEYS AND DATABASE CONFIGURATION
# =============================================================================
OPENAI_API_KEY = os.getenv("OPENAI_API_KEY")
NEO4J_URI = os.getenv("NEO4J_URI")
NEO4J_USERNAME = os.getenv("NEO4J_USERNAME")
NEO4J_PASSWORD = os.getenv("NEO4J_PASSWORD")
NEO4J_DATABASE = os.getenv("NEO4J_DATABASE", "neo4j")

# "memory" keeps the knowledge base in-process, "neo4j" uses the database above
STORE_BACKEND = os.getenv("STORE_BACKEND", "memory").strip().lower()

# =============================================================================
# LLM CONFIGURATION
# =============================================================================
LLM_MODEL = os.getenv("LLM_MODEL") or os.getenv("MODEL_NAME") or "gpt-4o-mini"
LLM_TEMPERATURE = _env_float("LLM_TEMPERATURE", 0.0)
LLM_REQUEST_TIMEOUT = _env_float("LLM_REQUEST_TIMEOUT", 60.0)

# =============================================================================
# EMBEDDING CONFIGURATION
# =============================================================================
EMBEDDING_MODEL = (
    os.getenv("EMBEDDING_MODEL")
    or os.getenv("EMBEDDING_MODEL_NAME")
    or "text-embedding-3-small"
)
_embedding_dimension_default = 1536
if EMBEDDING_MODEL == "text-embedding-3-large":
    _embedding_dimension_default = 3072
EMBEDDING_DIMENSION = _env_int("EMBEDDING_DIMENSION", _embedding_dimension_default)

# =============================================================================
# QUERY DEFAULTS
# =============================================================================
QUERY_MODES = ["local", "global", "hybrid", "naive", "mix", "bypass"]
DEFAULT_QUERY_MODE = os.getenv("DEFAULT_QUERY_MODE", "mix")

DEFAULT_TOP_K = _env_int("TOP_K", 40)  # Entities / relationships per probe
DEFAULT_CHUNK_TOP_K = _env_int("CHUNK_TOP_K", 20)
DEFAULT_MAX_ENTITY_TOKENS = _env_int("MAX_ENTITY_TOKENS", 6000)
DEFAULT_MAX_RELATION_TOKENS = _env_int("MAX_RELATION_TOKENS", 8000)
DEFAULT_MAX_TOTAL_TOKENS = _env_int("MAX_TOTAL_TOKENS", 30000)

# Minimum similarity a vector probe may return
COSINE_THRESHOLD = _env_float("COSINE_THRESHOLD", 0.2)

# =============================================================================
# CONCURRENCY
# =============================================================================
PROBE_TIMEOUT_SECONDS = _env_float("PROBE_TIMEOUT_SECONDS", 30.0)
MAX_PARALLEL_PROBES = _env_int("MAX_PARALLEL_PROBES", 4)

# =============================================================================
# TOKEN BUDGET
# =============================================================================
TOKEN_ESTIMATOR = os.getenv("TOKEN_ESTIMATOR", "chars").strip().lower()
CHARS_PER_TOKEN = _env_int("CHARS_PER_TOKEN", 4)
TIKTOKEN_ENCODING = os.getenv("TIKTOKEN_ENCODING", "cl100k_base")
# Share of max_total_tokens always left for raw chunk text
MIN_CHUNK_BUDGET_RATIO = _env_float("MIN_CHUNK_BUDGET_RATIO", 0.2)

# Score bonus per additional pool an item shows up in (mix mode)
MIX_FREQUENCY_BOOST = _env_float("MIX_FREQUENCY_BOOST", 0.1)

# =============================================================================
# RERANK CONFIGURATION
# =============================================================================
RERANK_BASE_URL = os.getenv("RERANK_BASE_URL")
RERANK_API_KEY = os.getenv("RERANK_API_KEY")
RERANK_MODEL = os.getenv("RERANK_MODEL", "BAAI/bge-reranker-v2-m3")
RERANK_TIMEOUT_SECONDS = _env_float("RERANK_TIMEOUT_SECONDS", 10.0)
ENABLE_RERANK_DEFAULT = _env_bool("ENABLE_RERANK_DEFAULT", False)

# =============================================================================
# GRAPH TRAVERSAL AND DISCOVERY
# =============================================================================
DEFAULT_MAX_DEPTH = _env_int("DEFAULT_MAX_DEPTH", 3)
DEFAULT_MAX_NODES = _env_int("DEFAULT_MAX_NODES", 1000)
MAX_GRAPH_NODES = _env_int("MAX_GRAPH_NODES", 1000)

LABEL_SEARCH_LIMIT = _env_int("LABEL_SEARCH_LIMIT", 50)
POPULAR_LABELS_LIMIT = _env_int("POPULAR_LABELS_LIMIT", 300)
LABEL_SEARCH_MIN_SIMILARITY = _env_float("LABEL_SEARCH_MIN_SIMILARITY", 0.6)

# =============================================================================
# RETRY CONFIGURATION
# =============================================================================
# Only the keyword LLM client retries; store calls are at-most-once.
MAX_RETRIES = 3
RETRY_DELAY_SECONDS = 2
# Optimistic commit attempts of the in-memory store
WRITE_CONFLICT_RETRIES = _env_int("WRITE_CONFLICT_RETRIES", 3)

# =============================================================================
# LOGGING
# =============================================================================
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_DIR = os.getenv("LOG_DIR", "./logs")
ENABLE_DETAILED_LOGGING = _env_bool("ENABLE_DETAILED_LOGGING", False)
