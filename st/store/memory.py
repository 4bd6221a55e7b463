import copy
from st.common.logger import log
from st.store.base import StoreError, TimerStore, log_write_error

# A store that lives in this process. Several TimerSync clients can share one instance, which makes it the store
# the tests race clients against. Delivery is synchronous.
class MemoryTimerStore(TimerStore):

    def __init__(self, key="timer", record=None):
        super().__init__(key)
        self._record = copy.deepcopy(record)
        self._subscribers = []
        # Set either of these to an exception to make the next reads/writes fail, for exercising error paths.
        self.fail_reads = None
        self.fail_writes = None
        self.write_count = 0
        self.read_count = 0
        self._held = False

    @property
    def record(self):
        return copy.deepcopy(self._record)

    def subscribe(self, on_snapshot):
        self._subscribers.append(on_snapshot)
        on_snapshot(self.record)

        def unsubscribe():
            if on_snapshot in self._subscribers:
                self._subscribers.remove(on_snapshot)
        return unsubscribe

    def read(self, on_result, on_error):
        self.read_count += 1
        if self.fail_reads is not None:
            on_error(StoreError(str(self.fail_reads)))
            return
        on_result(self.record)

    def write(self, fields, on_error=None):
        self.write_count += 1
        if self.fail_writes is not None:
            (on_error or log_write_error)(StoreError(str(self.fail_writes)))
            return
        merged = dict(self._record) if isinstance(self._record, dict) else {}
        merged.update(copy.deepcopy(fields))
        self._record = merged
        log.debug(f"Memory store '{self.key}' merged fields: {', '.join(sorted(fields))}")
        self._notify()

    # Replaces the whole record without merging, as if another writer clobbered it.
    def replace(self, record):
        self._record = copy.deepcopy(record)
        self._notify()

    # While held, writes still land in the record (so reads see them) but subscribers aren't told until release.
    # This is how tests model a change that hasn't propagated to every client yet.
    def hold_notifications(self):
        self._held = True

    def release_notifications(self):
        self._held = False
        self._notify()

    def _notify(self):
        if self._held:
            return
        for callback in list(self._subscribers):
            callback(self.record)

    def close(self):
        self._subscribers.clear()
