"""
System-wide constants for the playback core.

Centralizes default endpoints, timings and limits used across modules.
Runtime values come from config; these are the fallbacks.
"""

# Gateway resolution
GATEWAY_PLACEHOLDER = "gateway"
FALLBACK_GATEWAY_DOMAIN = "derad.network"
UNPROBABLE_DOMAIN_SUFFIXES = ("arweave.net", "ar.io")
PROBE_TIMEOUT_SECONDS = 5.0
DEFAULT_HOSTNAME = "localhost"

# Endpoint templates
GRAPHQL_URL_TEMPLATE = "https://gateway/graphql"
DATA_URL_TEMPLATE = "https://gateway"

# Index query
DEFAULT_OWNER = "Vpu86GpNgl3H7yAPUzl8XvxdQmu3VPqJMsItF29SRB4"
DEFAULT_APP_NAME = "DeradNetworkBackup"
APP_NAME_TAG = "App-Name"
TIMESTAMP_TAG = "Timestamp"
INDEX_SORT_ORDER = "HEIGHT_DESC"

# Payload fetch
PAYLOAD_TIMEOUT_SECONDS = 15.0
PAYLOAD_RETRIES = 3
RETRY_BASE_DELAY_SECONDS = 1.0
RETRY_MAX_BACKOFF_SECONDS = 8.0
CACHE_MAX_AGE_SECONDS = 3600

# Progressive loading
EARLY_LOAD_COUNT = 10
BATCH_SIZE = 15
BATCH_PAUSE_SECONDS = 0.1
CONCURRENCY_INITIAL = 8
CONCURRENCY_BACKGROUND = 4
CONCURRENCY_PARALLEL = 6
BATCH_PROGRESS_EVERY = 5

# Playback
BASE_INTERVAL_MS = 1500
DEFAULT_SPEED = 4.0
DEFAULT_RANGE = 50
SPEED_OPTIONS = [0.25, 0.5, 1.0, 2.0, 4.0, 8.0, 16.0]
RANGE_OPTIONS = [25, 50, 100, 200, 500]

# Logging
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
