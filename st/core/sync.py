"""Local state machine for the shared timer.

``TimerSync`` holds this client's view of the shared record, turns display
events into transitions, and decides what to write back. Snapshots from the
store always replace the local view; the only conflict handling is on
``lastPausedTime``, which is compared by value so a late or reordered write
can never roll back a newer pause.
"""

from PySide6.QtCore import QObject, QTimer, Signal
from st.common.logger import log
from st.core import timer_state
from st.core.connectivity import ConnectivityGuard
from st.core.snapshot import (
    LAST_PAUSED_TIME,
    PAUSED_ELAPSED_INTERVAL,
    START_TIME,
    DESCRIPTION,
    TimerSnapshot,
    as_millis,
    build_default_snapshot,
    normalize_snapshot,
)
from st.util import format_time, now_ms, parse_time

# Marker for "the remote record hasn't been read for this write yet".
_UNREAD = object()


def _remote_last_paused(record):
    if not isinstance(record, dict):
        return None
    return as_millis(record.get(LAST_PAUSED_TIME))


class TimerSync(QObject):

    timeChanged = Signal(str)
    descriptionChanged = Signal(str)
    runningChanged = Signal(bool)
    loadingChanged = Signal(bool)

    def __init__(self, store, guard=None, clock=now_ms, tick_interval_ms=200, edit_tolerance_seconds=1,
                 parent=None):
        super().__init__(parent)
        self.store = store
        self.guard = guard or ConnectivityGuard()
        self.clock = clock
        self.edit_tolerance_seconds = edit_tolerance_seconds

        self._snapshot = build_default_snapshot()
        self._loading = True
        self._editing = False
        self._focused_text = None
        self._display_text = format_time(0)
        # Set when a write was skipped or failed, so the next one carries the full local snapshot.
        self._out_of_sync = False
        self._unsubscribe = None

        # Display refresh only. It reads the snapshot and never changes it.
        self._tick = QTimer(self)
        self._tick.setInterval(tick_interval_ms)
        self._tick.timeout.connect(self._refresh_display)

    #region === Lifetime ===

    def attach(self):
        if self._unsubscribe is not None:
            return
        log.info(f"Subscribing to shared timer '{self.store.key}'")
        self._unsubscribe = self.store.subscribe(self._on_remote_snapshot)

    def teardown(self):
        self._tick.stop()
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
            log.info(f"Unsubscribed from shared timer '{self.store.key}'")

    #endregion === Lifetime ===

    #region === Read-only state ===

    @property
    def snapshot(self) -> TimerSnapshot:
        return self._snapshot

    @property
    def phase(self):
        return timer_state.phase_of(self._snapshot)

    @property
    def elapsed(self):
        return timer_state.calculate_elapsed(self._snapshot, self.clock())

    @property
    def display_text(self):
        return self._display_text

    @property
    def loading(self):
        return self._loading

    @property
    def editing(self):
        return self._editing

    @property
    def out_of_sync(self):
        return self._out_of_sync

    @property
    def ticking(self):
        return self._tick.isActive()

    #endregion === Read-only state ===

    #region === Display events ===

    def description_changed(self, text):
        self._apply_local(timer_state.set_description(self._snapshot, text))
        self._publish({DESCRIPTION: text})

    def time_field_focused(self):
        self._editing = True
        self._focused_text = self._display_text
        self._sync_tick()

    # Treats the typed text as authoritative only if it's a real change: different from what was shown when the
    # field got focus, and further than the tolerance from the live value.
    def time_field_blurred(self, text):
        focused_text, self._focused_text = self._focused_text, None
        self._editing = False
        now = self.clock()
        current = timer_state.calculate_elapsed(self._snapshot, now)
        typed = parse_time(text)

        if text == focused_text or abs(typed - current) <= self.edit_tolerance_seconds:
            log.debug(f"Discarding time edit '{text}' (live value {current}s)")
            self._sync_tick()
            self._refresh_display(force=True)
            return

        edited = timer_state.edit_elapsed(self._snapshot, typed, now)
        log.info(f"Time edited from {current}s to {typed}s while {self.phase.value}")
        self._apply_local(edited, force_display=True)
        self._publish({
            START_TIME: edited.start_time,
            LAST_PAUSED_TIME: edited.last_paused_time,
            PAUSED_ELAPSED_INTERVAL: edited.paused_elapsed_interval,
        })

    def toggle_start_pause(self):
        now = self.clock()
        if self._snapshot.is_running:
            self._request_pause(now)
            return
        toggled = timer_state.toggle(self._snapshot, now)
        log.info(f"Timer {'resumed' if self._snapshot.start_time is not None else 'started'} at {now}")
        self._apply_local(toggled)
        self._publish(toggled.timing_record())

    def reset(self):
        self._editing = False
        self._focused_text = None
        log.info("Timer reset")
        self._apply_local(timer_state.reset(), force_display=True)
        self._publish(self._snapshot.to_record())

    #endregion === Display events ===

    #region === Pause conflict check ===

    # Pausing reads the remote record first. If some other client already paused later than `now`, that pause wins
    # and ours is dropped.
    def _request_pause(self, now):
        if not self.guard.online:
            self._finish_pause(now, _UNREAD)
            return
        self.store.read(
            lambda record: self._finish_pause(now, record),
            lambda error: self._on_pause_read_failed(now, error),
        )

    def _on_pause_read_failed(self, now, error):
        log.warning(f"Could not read the shared timer before pausing, pausing without a conflict check: {error}", exc_info=error)
        self._finish_pause(now, _UNREAD)

    def _finish_pause(self, now, remote):
        if not self._snapshot.is_running:
            log.info(f"Timer was already paused by the time our pause at {now} was ready, abandoning it.")
            return
        if remote is not _UNREAD:
            remote_paused = _remote_last_paused(remote)
            if remote_paused is not None and remote_paused > now:
                log.info(f"Another client paused at {remote_paused}, after our pause at {now}, abandoning ours.")
                return
        paused = timer_state.pause(self._snapshot, now)
        log.info(f"Timer paused at {now}")
        self._apply_local(paused)
        self._publish(paused.timing_record(), remote=remote)

    #endregion === Pause conflict check ===

    #region === Publishing ===

    # Sends `fields` through the connectivity guard. A write carrying lastPausedTime is checked against the remote
    # record first, and loses that field if the remote one is newer.
    def _publish(self, fields, remote=_UNREAD):
        if self._out_of_sync:
            fields = {**self._snapshot.to_record(), **fields}
        if not self.guard.online:
            self.guard.write(self.store, fields)
            self._out_of_sync = True
            return
        if fields.get(LAST_PAUSED_TIME) is None:
            self._send(fields)
        elif remote is not _UNREAD:
            self._send(self._drop_stale_pause(fields, remote))
        else:
            self.store.read(
                lambda record: self._send(self._drop_stale_pause(fields, record)),
                lambda error: self._on_publish_read_failed(fields, error),
            )

    def _on_publish_read_failed(self, fields, error):
        log.warning(f"Could not read the shared timer before writing, writing without a conflict check: {error}", exc_info=error)
        self._send(fields)

    @staticmethod
    def _drop_stale_pause(fields, remote):
        remote_paused = _remote_last_paused(remote)
        if remote_paused is not None and remote_paused > fields[LAST_PAUSED_TIME]:
            log.info(f"Remote lastPausedTime {remote_paused} is newer than ours ({fields[LAST_PAUSED_TIME]}), not overwriting it.")
            fields = {k: v for k, v in fields.items() if k != LAST_PAUSED_TIME}
        return fields

    # The store may report a failure before write() returns, so the flag is cleared first and only set again by
    # a skip or by _on_write_error.
    def _send(self, fields):
        self._out_of_sync = False
        if not self.guard.write(self.store, fields, self._on_write_error):
            self._out_of_sync = True

    def _on_write_error(self, error):
        self._out_of_sync = True
        log.error(f"Shared timer write failed, keeping local state: {error}", exc_info=error)

    #endregion === Publishing ===

    #region === Incoming snapshots ===

    def _on_remote_snapshot(self, record):
        snapshot = normalize_snapshot(record)
        if snapshot is None:
            log.info("No shared timer record yet, initializing it with defaults.")
            self._apply_local(build_default_snapshot())
            self._publish(self._snapshot.to_record())
        else:
            self._apply_local(snapshot)
        if self._loading:
            self._loading = False
            self.loadingChanged.emit(False)

    #endregion === Incoming snapshots ===

    #region === Local state and display ===

    def _apply_local(self, snapshot, force_display=False):
        previous = self._snapshot
        self._snapshot = snapshot
        if snapshot.description != previous.description or self._loading:
            self.descriptionChanged.emit(snapshot.description)
        if snapshot.is_running != previous.is_running:
            self.runningChanged.emit(snapshot.is_running)
        self._sync_tick()
        if not self._editing:
            self._refresh_display(force=force_display or self._loading)

    # Armed only while running and not being edited; every other state stops it.
    def _sync_tick(self):
        should_tick = self._snapshot.is_running and not self._editing
        if should_tick and not self._tick.isActive():
            self._tick.start()
        elif not should_tick and self._tick.isActive():
            self._tick.stop()

    def _refresh_display(self, force=False):
        text = format_time(self.elapsed)
        if text != self._display_text or force:
            self._display_text = text
            self.timeChanged.emit(text)

    #endregion === Local state and display ===
