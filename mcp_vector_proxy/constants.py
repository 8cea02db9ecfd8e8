"""Shared constants for MCP Vector Proxy."""

SERVER_NAME = "mcp-vector-proxy"
SERVER_VERSION = "1.0.0"

# Network defaults
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3456

# HTTP transport paths
STREAMABLE_HTTP_PATH = "/mcp"
SSE_PATH = "/sse"
POST_MESSAGES_PATH = "/messages/"
HEALTH_PATH = "/health"

MCP_SESSION_ID_HEADER = "mcp-session-id"

# Logging defaults
LOG_DIR = "logs"
DEFAULT_LOG_LEVEL = "INFO"

# Upstream aggregator
DEFAULT_UPSTREAM_COMMAND = "npx"
DEFAULT_UPSTREAM_ARGS = ("--yes", "@mcp_router/cli@latest", "connect")
TOKEN_ENV_VAR = "MCPR_TOKEN"
UPSTREAM_INIT_TIMEOUT = 60.0  # seconds for spawn + MCP initialize
BACKOFF_BASE = 2.0  # first retry delay, doubled per attempt
BACKOFF_CAP = 30.0  # retry delay ceiling
RECONNECT_DELAY = 5.0  # pause after a dropped connection

# Catalog index
DEFAULT_SNAPSHOT_FILE = ".tool-index.json"
DEFAULT_POLL_INTERVAL = 15.0  # seconds
DEFAULT_DISCOVER_LIMIT = 10

# Embeddings
DEFAULT_EMBEDDING_MODEL = "sentence-transformers/all-MiniLM-L6-v2"
DEFAULT_MODEL_CACHE_DIR = ".model-cache"

# Hybrid ranking
RRF_K = 60
