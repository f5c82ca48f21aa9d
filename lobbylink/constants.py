"""Constants and configuration defaults for the lobby client."""

# Server configuration
DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 7350
DEFAULT_USE_SSL = False
SERVER_KEY = "defaultkey"
DEFAULT_TIMEOUT = 10.0
DEFAULT_CONNECT_TIMEOUT = 10.0

# HTTP API endpoints
RPC_PATH = "/v2/rpc/{rpc_id}"
RPC_AUTH_DEVICE = "auth_device"

# Realtime socket
WS_PATH = "/ws"
WS_LANG = "en"
DEFAULT_PING_INTERVAL = 15.0
DEFAULT_PING_TIMEOUT = 10.0

# Realtime message kinds
MSG_MATCHMAKER_ADD = "matchmaker_add"
MSG_MATCHMAKER_TICKET = "matchmaker_ticket"
MSG_MATCHMAKER_REMOVE = "matchmaker_remove"
MSG_MATCHMAKER_MATCHED = "matchmaker_matched"
MSG_ERROR = "error"

# Matchmaker request shape (1v1)
MATCHMAKER_MIN_COUNT = 2
MATCHMAKER_MAX_COUNT = 2
MATCHMAKER_QUERY = "*"

# Identity
DEVICE_ID_KEY = "device_id"
DEFAULT_STATE_FILE = "files/lobbylink_state.json"
DISPLAY_NAME_PREFIX = "Player-"
DISPLAY_NAME_ID_CHARS = 6

# Reconnect backoff (seconds)
RECONNECT_BASE_DELAY = 1.0
RECONNECT_MAX_DELAY = 10.0
