"""Project-wide constants (chunk sizes, timeouts, retry tuning, endpoints)."""

API_BASE_PATH: str = "/api/fileflow"

# Chunking
HTTP_CHUNK_SIZE_BYTES: int = 1024 * 1024  # 1 MiB per relayed HTTP chunk
PEER_CHUNK_SIZE_BYTES: int = 256 * 1024  # 256 KiB per data channel slice
UPLOAD_CONCURRENCY: int = 4
DOWNLOAD_CONCURRENCY: int = 4

# Peer channel flow control
PEER_BUFFER_LOW_WATER_MARK_BYTES: int = 2 * 1024 * 1024
PEER_BUFFER_LOW_WATER_MARK_MAX_BYTES: int = 8 * 1024 * 1024
DATA_CHANNEL_LABEL: str = "fileflow"
SIGNALING_TIMEOUT_SECONDS: float = 15.0
RELAY_SIGNAL_POLL_INTERVAL_SECONDS: float = 0.5

# Request timeouts (seconds)
DEFAULT_REQUEST_TIMEOUT_SECONDS: float = 10.0
STATUS_REQUEST_TIMEOUT_SECONDS: float = 6.0
CHUNK_REQUEST_TIMEOUT_SECONDS: float = 18.0

# Retries are counted after the first attempt
DEFAULT_MAX_RETRIES: int = 2
CHUNK_MAX_RETRIES: int = 4

# Backoff (seconds)
BACKOFF_BASE_SECONDS: float = 0.4
BACKOFF_MAX_SECONDS: float = 2.5
BACKOFF_JITTER_SECONDS: float = 0.15

# Completion polling after a successful send
DONE_POLL_ATTEMPTS: int = 20
DONE_POLL_INTERVAL_SECONDS: float = 1.0

RETRYABLE_STATUS_CODES: frozenset = frozenset({408, 425, 429})

CONTENT_RANGE_PATTERN: str = r"bytes\s+(\d+)-(\d+)\/(\d+)"

APP_SUCCESS_CODE: int = 200
