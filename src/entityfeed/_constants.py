"""Internal constants shared across the library."""

BASE_URL = "http://homeassistant.local:8123"
USER_AGENT = "entityfeed"
WEBSOCKET_PATH = "/api/websocket"
STATE_CHANGED_EVENT = "state_changed"
MQTT_STATESTREAM_BASE_TOPIC = "homeassistant"

# ------------------------------------------------------------------
# Data source timing policy (milliseconds)
# ------------------------------------------------------------------

DEFAULT_MIN_EMIT_MS = 100
MIN_EMIT_FLOOR_MS = 10
COALESCE_FLOOR_MS = 20
#: Default coalesce window as a fraction of ``min_emit_ms``.
COALESCE_RATIO = 0.4
#: Default max delay as a multiple of ``coalesce_ms``.
MAX_DELAY_COALESCE_FACTOR = 3

# ------------------------------------------------------------------
# Rolling buffer sizing
# ------------------------------------------------------------------

DEFAULT_WINDOW_SECONDS = 60
#: Roughly ten points per second of retention window.
SAMPLES_PER_SECOND = 10
MIN_BUFFER_CAPACITY = 60
MAX_BUFFER_CAPACITY = 1000

# ------------------------------------------------------------------
# History preload
# ------------------------------------------------------------------

DEFAULT_HISTORY_HOURS = 6.0
MIN_HISTORY_HOURS = 1.0
MAX_HISTORY_HOURS = 168.0

# Host states that never carry a usable numeric value.
UNAVAILABLE_STATES: frozenset[str] = frozenset({"unavailable", "unknown", "none", ""})
