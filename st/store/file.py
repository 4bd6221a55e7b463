import copy
import json
import os
from pathlib import Path
from PySide6.QtCore import QFileSystemWatcher
from st.common.logger import log
from st.store.base import StoreError, TimerStore, log_write_error

# A store backed by a JSON file of the form {"<key>": {...record...}}. Every process on the machine that points at
# the same file shares the timer; changes made by other processes are picked up with a QFileSystemWatcher.
class JsonFileTimerStore(TimerStore):

    def __init__(self, path, key="timer"):
        super().__init__(key)
        self.path = Path(path)
        self.path.parent.mkdir(parents=True,exist_ok=True)
        self._subscribers = []
        self._last_pushed = None
        self._watcher = None

    #region === File I/O ===

    # Loads the whole document. A missing file is an empty document; a corrupt one is logged and treated the same
    # way, so the next write starts it over.
    def _load_document(self):
        if not self.path.exists():
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            try:
                document = json.load(f)
            except (json.JSONDecodeError, UnicodeDecodeError):
                log.warning(f"Timer file '{self.path}' is not valid JSON, treating the record as absent.",exc_info=True)
                return {}
        if not isinstance(document, dict):
            log.warning(f"Timer file '{self.path}' does not hold a JSON object, treating the record as absent.")
            return {}
        return document

    # Writes to a sibling temp file and swaps it in, so readers never see half a document.
    def _save_document(self, document):
        temp_path = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
        with open(temp_path, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2)
        os.replace(temp_path, self.path)

    def _load_record(self):
        return copy.deepcopy(self._load_document().get(self.key))

    #endregion === File I/O ===

    #region === Store operations ===

    def subscribe(self, on_snapshot):
        self._subscribers.append(on_snapshot)
        self._ensure_watcher()
        try:
            record = self._load_record()
        except OSError:
            log.error(f"Could not read timer file '{self.path}' for a new subscriber.",exc_info=True)
            record = None
        self._last_pushed = record
        on_snapshot(copy.deepcopy(record))

        def unsubscribe():
            if on_snapshot in self._subscribers:
                self._subscribers.remove(on_snapshot)
        return unsubscribe

    def read(self, on_result, on_error):
        try:
            record = self._load_record()
        except OSError as e:
            on_error(StoreError(f"Could not read timer file '{self.path}': {e}"))
            return
        on_result(record)

    def write(self, fields, on_error=None):
        try:
            document = self._load_document()
            record = document.get(self.key)
            merged = dict(record) if isinstance(record, dict) else {}
            merged.update(fields)
            document[self.key] = merged
            self._save_document(document)
        except (OSError, TypeError, ValueError) as e:
            (on_error or log_write_error)(StoreError(f"Could not write timer file '{self.path}': {e}"))
            return
        log.debug(f"Wrote fields {', '.join(sorted(fields))} to timer file '{self.path}'")
        self._check_for_change()

    def close(self):
        self._subscribers.clear()
        if self._watcher is not None:
            self._watcher.deleteLater()
            self._watcher = None

    #endregion === Store operations ===

    #region === Change notification ===

    # Watches both the file and its folder. The atomic replace in _save_document swaps the inode, which drops the
    # file from the watch list, so the folder watch is what notices and re-adds it.
    def _ensure_watcher(self):
        if self._watcher is not None:
            return
        self._watcher = QFileSystemWatcher()
        self._watcher.addPath(str(self.path.parent))
        if self.path.exists():
            self._watcher.addPath(str(self.path))
        self._watcher.fileChanged.connect(self._on_path_changed)
        self._watcher.directoryChanged.connect(self._on_path_changed)

    def _on_path_changed(self, _path=None):
        if self._watcher is not None and self.path.exists() and str(self.path) not in self._watcher.files():
            self._watcher.addPath(str(self.path))
        self._check_for_change()

    # Pushes the record to subscribers only when it differs from the last one pushed, since one write can trigger
    # several watcher signals.
    def _check_for_change(self):
        try:
            record = self._load_record()
        except OSError:
            log.error(f"Could not re-read timer file '{self.path}' after a change.",exc_info=True)
            return
        if record == self._last_pushed:
            return
        self._last_pushed = record
        for callback in list(self._subscribers):
            callback(copy.deepcopy(record))

    #endregion === Change notification ===
