from __future__ import annotations
import os
from prometheus_client import Counter

PROM_ENABLED = os.getenv("PROMETHEUS_ENABLED", "true").lower() == "true"

RESYNC_TOTAL = Counter(
    "room_resync_total",
    "Snapshot resyncs by stream and outcome",
    ["stream", "reason", "outcome"],
)
REALTIME_EVENTS = Counter(
    "room_realtime_events_total",
    "Change-feed events applied by stream",
    ["stream", "type"],
)
FEED_RECONNECTS = Counter(
    "room_feed_reconnects_total",
    "Change-feed subscriptions re-established after an error",
    ["stream"],
)
HEARTBEAT_FAILURES = Counter(
    "presence_heartbeat_failures_total",
    "Heartbeat upserts that failed",
)
RUN_STATE_TRANSITIONS = Counter(
    "run_state_transitions_total",
    "Host run-state transitions by target mode and outcome",
    ["mode", "outcome"],
)
CHAT_DEDUPE_HITS = Counter(
    "chat_dedupe_hits_total",
    "Chat deliveries that replaced an existing message id",
)
CHAT_REORDER_CORRECTIONS = Counter(
    "chat_reorder_corrections_total",
    "Late chat inserts placed before the tail",
)
BROADCAST_DROPS = Counter(
    "broadcast_drops_total",
    "Change events dropped because a subscriber queue was full",
    ["channel"],
)

