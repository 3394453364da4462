from prometheus_client import Counter, Gauge

# Websocket connection failures by connection name
WS_FAILURES = Counter(
    "ws_failures_total",
    "Total websocket connection failures",
    ["connection"],
)

# Websocket reconnections by connection name
WS_RECONNECTS = Counter(
    "ws_reconnections_total",
    "Total websocket reconnections",
    ["connection"],
)

# Frames that could not be decoded or had an unknown type
WS_MESSAGES_DROPPED = Counter(
    "ws_messages_dropped_total",
    "Total websocket messages dropped",
    ["connection", "reason"],
)

# Connection state (0 disconnected .. 4 closing)
WS_STATE = Gauge(
    "ws_connection_state",
    "Current connection state index",
    ["connection"],
)

# Ticks accepted into the tick store
TICKS_INGESTED = Counter(
    "ticks_ingested_total",
    "Total ticks appended to the tick store",
    ["key"],
)

# Ticks rejected for invalid price or volume
TICKS_DROPPED = Counter(
    "ticks_dropped_total",
    "Total ticks discarded before reaching the tick store",
    ["reason"],
)

# Exceptions raised by listener callbacks
LISTENER_ERRORS = Counter(
    "listener_errors_total",
    "Total exceptions raised by tick or message listeners",
    ["registry"],
)

POWER_TRADES = Counter(
    "power_trades_detected_total",
    "Total power trades detected",
    ["side"],
)
