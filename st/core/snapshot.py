"""The shared timer record and its validation.

Every client reads and writes the same single record. On the wire it is a flat
JSON object with camelCase keys; in process it is an immutable
``TimerSnapshot``. Anything arriving from a store goes through
``normalize_snapshot`` before the rest of the program sees it.
"""

import math
from dataclasses import dataclass, replace
from st.common.logger import log

DESCRIPTION = "description"
IS_RUNNING = "isRunning"
START_TIME = "startTime"
LAST_PAUSED_TIME = "lastPausedTime"
PAUSED_ELAPSED_INTERVAL = "pausedElapsedInterval"

RECORD_FIELDS = (DESCRIPTION, IS_RUNNING, START_TIME, LAST_PAUSED_TIME, PAUSED_ELAPSED_INTERVAL)
# What start, pause and resume touch. Toggles write only these so a description from another client survives.
TIMING_FIELDS = (IS_RUNNING, START_TIME, LAST_PAUSED_TIME, PAUSED_ELAPSED_INTERVAL)


@dataclass(frozen=True)
class TimerSnapshot:
    description: str = ""
    is_running: bool = False
    start_time: int | None = None
    last_paused_time: int | None = None
    paused_elapsed_interval: int = 0

    def to_record(self):
        return {
            DESCRIPTION: self.description,
            IS_RUNNING: self.is_running,
            START_TIME: self.start_time,
            LAST_PAUSED_TIME: self.last_paused_time,
            PAUSED_ELAPSED_INTERVAL: self.paused_elapsed_interval,
        }

    def timing_record(self):
        record = self.to_record()
        return {field: record[field] for field in TIMING_FIELDS}

    def evolve(self, **changes):
        return replace(self, **changes)

    @property
    def is_default(self):
        return self == DEFAULT_SNAPSHOT


DEFAULT_SNAPSHOT = TimerSnapshot()

# Helper to return the all-default snapshot (what reset publishes and what an empty store gets initialized with).
def build_default_snapshot():
    return DEFAULT_SNAPSHOT


# A usable timestamp/interval is a real, finite number. Bools are excluded even though they're ints in Python.
def as_millis(value):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        return None
    return int(value)


# Validates a raw record from a store. Returns None for "no timer yet" (absent or not an object), otherwise a
# TimerSnapshot where every bad or missing field has been defaulted and the state invariants hold.
def normalize_snapshot(raw):
    if raw is None:
        return None
    if not isinstance(raw, dict):
        log.warning(f"Ignoring malformed timer record of type {type(raw).__name__}, treating it as absent.")
        return None

    defaulted_values = set()

    description = raw.get(DESCRIPTION)
    if not isinstance(description, str):
        if DESCRIPTION in raw:
            defaulted_values.add(DESCRIPTION)
        description = ""

    is_running = raw.get(IS_RUNNING)
    if not isinstance(is_running, bool):
        if IS_RUNNING in raw:
            defaulted_values.add(IS_RUNNING)
        is_running = False

    # Nullable timestamps: null and missing are both legitimate, only garbage counts as defaulted.
    start_time = as_millis(raw.get(START_TIME))
    if start_time is None and raw.get(START_TIME) is not None:
        defaulted_values.add(START_TIME)
    last_paused_time = as_millis(raw.get(LAST_PAUSED_TIME))
    if last_paused_time is None and raw.get(LAST_PAUSED_TIME) is not None:
        defaulted_values.add(LAST_PAUSED_TIME)

    paused_elapsed_interval = as_millis(raw.get(PAUSED_ELAPSED_INTERVAL))
    if paused_elapsed_interval is None or paused_elapsed_interval < 0:
        if raw.get(PAUSED_ELAPSED_INTERVAL) is not None:
            defaulted_values.add(PAUSED_ELAPSED_INTERVAL)
        paused_elapsed_interval = 0

    if defaulted_values:
        log.warning(f"Loaded timer record, but with malformed values that were defaulted: {', '.join(sorted(defaulted_values))}")

    # Invariant repair. These come from half-applied merges of racing writes.
    if is_running and start_time is None:
        log.warning("Timer record claims to be running without a startTime, treating it as idle.")
        is_running = False
        last_paused_time = None
        paused_elapsed_interval = 0
    elif is_running and last_paused_time is not None:
        log.warning("Timer record is running but still carries a lastPausedTime, clearing it.")
        last_paused_time = None
    elif not is_running and (start_time is None) != (last_paused_time is None):
        log.warning("Timer record is stopped with only one of startTime/lastPausedTime set, treating it as idle.")
        start_time = None
        last_paused_time = None
        paused_elapsed_interval = 0

    return TimerSnapshot(
        description=description,
        is_running=is_running,
        start_time=start_time,
        last_paused_time=last_paused_time,
        paused_elapsed_interval=paused_elapsed_interval,
    )
