import math
from enum import Enum
from st.common.logger import log
from st.core.snapshot import TimerSnapshot, build_default_snapshot

# The three states a shared timer can be in. There is no stored phase, it's always derived from the snapshot.
class TimerPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"

def phase_of(snapshot: TimerSnapshot) -> TimerPhase:
    if snapshot.is_running:
        return TimerPhase.RUNNING
    if snapshot.start_time is None:
        return TimerPhase.IDLE
    return TimerPhase.PAUSED

# Whole elapsed seconds for the snapshot as of `now` (epoch ms). Always recomputed from scratch, never accumulated,
# so a client that slept or went offline is correct the moment it looks again.
def calculate_elapsed(snapshot: TimerSnapshot, now) -> int:
    if snapshot.is_running and snapshot.start_time is not None:
        elapsed_ms = now - snapshot.start_time - snapshot.paused_elapsed_interval
    elif snapshot.start_time is not None and snapshot.last_paused_time is not None:
        elapsed_ms = snapshot.last_paused_time - snapshot.start_time - snapshot.paused_elapsed_interval
    else:
        return 0
    seconds = elapsed_ms / 1000
    if math.isnan(seconds) or math.isinf(seconds) or seconds < 0:
        return 0
    return math.floor(seconds)

#region === Transitions ===
# Every transition is pure: it takes a snapshot and the current time, and returns a new snapshot.

def start(snapshot: TimerSnapshot, now) -> TimerSnapshot:
    if snapshot.is_running:
        return snapshot
    log.debug(f"Starting timer at {now}")
    return snapshot.evolve(is_running=True, start_time=now, last_paused_time=None)

def pause(snapshot: TimerSnapshot, now) -> TimerSnapshot:
    if not snapshot.is_running:
        return snapshot
    log.debug(f"Pausing timer at {now}")
    return snapshot.evolve(is_running=False, last_paused_time=now)

# Resuming folds the pause we're leaving into paused_elapsed_interval, so start_time stays put for the whole task.
# Another client's clock may be ahead of ours, in which case the pause counts as zero length.
def resume(snapshot: TimerSnapshot, now) -> TimerSnapshot:
    if snapshot.is_running:
        return snapshot
    if snapshot.last_paused_time is None:
        return start(snapshot, now)
    paused_for = max(0, now - snapshot.last_paused_time)
    log.debug(f"Resuming timer at {now} after {paused_for}ms paused")
    return snapshot.evolve(
        is_running=True,
        last_paused_time=None,
        paused_elapsed_interval=snapshot.paused_elapsed_interval + paused_for,
    )

def toggle(snapshot: TimerSnapshot, now) -> TimerSnapshot:
    phase = phase_of(snapshot)
    if phase is TimerPhase.RUNNING:
        return pause(snapshot, now)
    if phase is TimerPhase.PAUSED:
        return resume(snapshot, now)
    return start(snapshot, now)

def reset() -> TimerSnapshot:
    return build_default_snapshot()

def set_description(snapshot: TimerSnapshot, description) -> TimerSnapshot:
    return snapshot.evolve(description=description)

# Rewrites the snapshot so that it shows `typed_seconds` as of `now`, without changing the phase.
#   running: move start_time (net of paused_elapsed_interval, which is kept)
#   paused:  move start_time, keep last_paused_time and paused_elapsed_interval
#   idle:    becomes a paused timer whose pause is anchored at `now`
def edit_elapsed(snapshot: TimerSnapshot, typed_seconds, now) -> TimerSnapshot:
    typed_ms = max(0, int(typed_seconds)) * 1000
    phase = phase_of(snapshot)
    if phase is TimerPhase.RUNNING:
        return snapshot.evolve(start_time=now - typed_ms - snapshot.paused_elapsed_interval)
    if phase is TimerPhase.PAUSED:
        return snapshot.evolve(
            start_time=snapshot.last_paused_time - snapshot.paused_elapsed_interval - typed_ms
        )
    if typed_ms == 0:
        return snapshot
    return snapshot.evolve(start_time=now - typed_ms, last_paused_time=now)

#endregion === Transitions ===
