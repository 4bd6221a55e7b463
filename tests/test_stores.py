"""Tests for the timer store backends.

Covers: st.store.memory, st.store.file, st.store.firebase
"""

import json
import os
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock

os.environ.setdefault("SHAREDTIMER_HOME", tempfile.mkdtemp(prefix="sharedtimer-tests-"))

from PySide6.QtCore import QCoreApplication

_app = None

def setUpModule():
    global _app
    _app = QCoreApplication.instance() or QCoreApplication([])


class Recorder:
    """Collects callback arguments."""

    def __init__(self):
        self.calls = []

    def __call__(self, value):
        self.calls.append(value)

    @property
    def last(self):
        return self.calls[-1]


# ──────────────────────────────────────────────────────────────────────────
# memory.py tests
# ──────────────────────────────────────────────────────────────────────────

class TestMemoryTimerStore(unittest.TestCase):

    def test_subscribe_pushes_current_value(self):
        from st.store.memory import MemoryTimerStore
        store = MemoryTimerStore()
        seen = Recorder()
        store.subscribe(seen)
        self.assertEqual(seen.calls, [None])

    def test_write_merges_fields(self):
        from st.store.memory import MemoryTimerStore
        store = MemoryTimerStore(record={"description": "a", "isRunning": True})
        store.write({"description": "b"})
        self.assertEqual(store.record, {"description": "b", "isRunning": True})

    def test_unsubscribe(self):
        from st.store.memory import MemoryTimerStore
        store = MemoryTimerStore()
        seen = Recorder()
        unsubscribe = store.subscribe(seen)
        unsubscribe()
        unsubscribe()
        store.write({"description": "x"})
        self.assertEqual(seen.calls, [None])

    def test_records_are_copies(self):
        from st.store.memory import MemoryTimerStore
        store = MemoryTimerStore(record={"description": "a"})
        result = Recorder()
        store.read(result, self.fail)
        result.last["description"] = "mutated"
        self.assertEqual(store.record["description"], "a")

    def test_failures_go_to_callbacks(self):
        from st.store.base import StoreError
        from st.store.memory import MemoryTimerStore
        store = MemoryTimerStore()
        store.fail_reads = "down"
        store.fail_writes = "down"
        errors = Recorder()
        store.read(self.fail, errors)
        store.write({"description": "x"}, errors)
        self.assertEqual(len(errors.calls), 2)
        self.assertTrue(all(isinstance(e, StoreError) for e in errors.calls))
        self.assertIsNone(store.record)

    def test_held_notifications_are_released(self):
        from st.store.memory import MemoryTimerStore
        store = MemoryTimerStore()
        seen = Recorder()
        store.subscribe(seen)
        store.hold_notifications()
        store.write({"description": "later"})
        self.assertEqual(len(seen.calls), 1)
        store.release_notifications()
        self.assertEqual(seen.last, {"description": "later"})


# ──────────────────────────────────────────────────────────────────────────
# file.py tests
# ──────────────────────────────────────────────────────────────────────────

class TestJsonFileTimerStore(unittest.TestCase):

    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.path = Path(self.tmpdir) / "shared" / "timer.json"

    def tearDown(self):
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _store(self, key="timer"):
        from st.store.file import JsonFileTimerStore
        store = JsonFileTimerStore(self.path, key=key)
        self.addCleanup(store.close)
        return store

    def test_missing_file_reads_as_absent(self):
        store = self._store()
        result = Recorder()
        store.read(result, self.fail)
        self.assertEqual(result.calls, [None])

    def test_write_creates_file_under_key(self):
        store = self._store()
        store.write({"description": "Draft", "isRunning": False})
        with open(self.path, "r", encoding="utf-8") as f:
            document = json.load(f)
        self.assertEqual(document, {"timer": {"description": "Draft", "isRunning": False}})

    def test_write_merges_and_keeps_other_keys(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump({"timer": {"description": "a", "startTime": 5}, "other": {"x": 1}}, f)
        store = self._store()
        store.write({"description": "b"})
        result = Recorder()
        store.read(result, self.fail)
        self.assertEqual(result.last, {"description": "b", "startTime": 5})
        with open(self.path, "r", encoding="utf-8") as f:
            self.assertEqual(json.load(f)["other"], {"x": 1})

    def test_corrupt_file_reads_as_absent_and_is_repaired(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text("{not json", encoding="utf-8")
        store = self._store()
        result = Recorder()
        with self.assertLogs("sharedtimer", level="WARNING"):
            store.read(result, self.fail)
        self.assertEqual(result.calls, [None])
        store.write({"isRunning": True})
        store.read(result, self.fail)
        self.assertEqual(result.last, {"isRunning": True})

    def test_undecodable_file_reads_as_absent(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_bytes(b"\xff\xfe{garbage")
        store = self._store()
        result = Recorder()
        with self.assertLogs("sharedtimer", level="WARNING"):
            store.read(result, self.fail)
        self.assertEqual(result.calls, [None])
        seen = Recorder()
        with self.assertLogs("sharedtimer", level="WARNING"):
            store.subscribe(seen)
        self.assertEqual(seen.calls, [None])
        store.write({"description": "Repaired"})
        self.assertEqual(seen.last, {"description": "Repaired"})

    def test_subscribe_pushes_initial_and_written_values(self):
        store = self._store()
        seen = Recorder()
        store.subscribe(seen)
        store.write({"description": "x"})
        store.write({"description": "x"})
        self.assertEqual(seen.calls, [None, {"description": "x"}])

    def test_other_process_changes_are_picked_up(self):
        """A second store on the same file stands in for another process."""
        ours = self._store()
        theirs = self._store()
        seen = Recorder()
        ours.subscribe(seen)
        theirs.write({"isRunning": True, "startTime": 1000})
        ours._on_path_changed(str(self.path))
        self.assertEqual(seen.last, {"isRunning": True, "startTime": 1000})

    def test_unserializable_write_reports_error(self):
        store = self._store()
        errors = Recorder()
        store.write({"description": object()}, errors)
        self.assertEqual(len(errors.calls), 1)


# ──────────────────────────────────────────────────────────────────────────
# firebase.py tests
# ──────────────────────────────────────────────────────────────────────────

class TestEventStreamParser(unittest.TestCase):

    def test_events_split_across_chunks(self):
        from st.store.firebase import EventStreamParser, StreamEvent
        parser = EventStreamParser()
        self.assertEqual(parser.feed(b"event: put\ndata: {\"path\": \"/\", "), [])
        events = parser.feed(b"\"data\": null}\n\nevent: keep-alive\r\ndata: null\r\n\r\n")
        self.assertEqual(events, [
            StreamEvent("put", '{"path": "/", "data": null}'),
            StreamEvent("keep-alive", "null"),
        ])

    def test_comments_and_multiline_data(self):
        from st.store.firebase import EventStreamParser, StreamEvent
        parser = EventStreamParser()
        events = parser.feed(": hello\ndata: a\ndata: b\n\n")
        self.assertEqual(events, [StreamEvent("message", "a\nb")])


class TestApplyStreamEvent(unittest.TestCase):

    def test_put_at_root_replaces(self):
        from st.store.firebase import apply_stream_event
        mirror = apply_stream_event({"description": "old"}, "put", {"path": "/", "data": {"isRunning": True}})
        self.assertEqual(mirror, {"isRunning": True})

    def test_put_null_at_root_is_absent(self):
        from st.store.firebase import apply_stream_event
        self.assertIsNone(apply_stream_event({"isRunning": True}, "put", {"path": "/", "data": None}))

    def test_put_at_field(self):
        from st.store.firebase import apply_stream_event
        mirror = apply_stream_event({"isRunning": True}, "put", {"path": "/description", "data": "Notes"})
        self.assertEqual(mirror, {"isRunning": True, "description": "Notes"})

    def test_patch_merges_and_deletes_nulls(self):
        from st.store.firebase import apply_stream_event
        mirror = {"isRunning": False, "lastPausedTime": 10, "startTime": 0}
        mirror = apply_stream_event(mirror, "patch", {"path": "/", "data": {"isRunning": True, "lastPausedTime": None}})
        self.assertEqual(mirror, {"isRunning": True, "startTime": 0})

    def test_unknown_events_leave_mirror_alone(self):
        from st.store.firebase import apply_stream_event
        mirror = {"isRunning": True}
        self.assertIs(apply_stream_event(mirror, "keep-alive", None), mirror)
        self.assertIs(apply_stream_event(mirror, "patch", {"path": "/", "data": 5}), mirror)


class TestFirebaseTimerStore(unittest.TestCase):

    def _store(self, **kwargs):
        from st.store.firebase import FirebaseTimerStore
        self.manager = MagicMock()
        store = FirebaseTimerStore("https://example-db.firebaseio.com/", manager=self.manager, **kwargs)
        self.addCleanup(store.close)
        return store

    @staticmethod
    def _finish(reply, body=b"", ok=True):
        from PySide6.QtNetwork import QNetworkReply
        reply.error.return_value = QNetworkReply.NetworkError.NoError if ok else QNetworkReply.NetworkError.HostNotFoundError
        reply.errorString.return_value = "Host not found"
        reply.readAll.return_value.data.return_value = body
        reply.finished.connect.call_args[0][0]()

    def test_requires_url(self):
        from st.store.firebase import FirebaseTimerStore
        with self.assertRaises(ValueError):
            FirebaseTimerStore("", manager=MagicMock())

    def test_record_url(self):
        store = self._store(key="timer", auth="secret-token")
        self.assertEqual(store.record_url().toString(),
                         "https://example-db.firebaseio.com/timer.json?auth=secret-token")

    def test_read_parses_body(self):
        store = self._store()
        result = Recorder()
        store.read(result, self.fail)
        self._finish(self.manager.get.return_value, b'{"isRunning": true, "startTime": 12}')
        self.assertEqual(result.calls, [{"isRunning": True, "startTime": 12}])

    def test_read_null_body_is_absent(self):
        store = self._store()
        result = Recorder()
        store.read(result, self.fail)
        self._finish(self.manager.get.return_value, b"null")
        self.assertEqual(result.calls, [None])

    def test_read_error(self):
        from st.store.base import StoreError
        store = self._store()
        errors = Recorder()
        store.read(self.fail, errors)
        self._finish(self.manager.get.return_value, ok=False)
        self.assertIsInstance(errors.last, StoreError)
        self.assertIn("Host not found", str(errors.last))

    def test_write_sends_patch(self):
        store = self._store()
        store.write({"description": "Report"})
        request, verb, body = self.manager.sendCustomRequest.call_args[0]
        self.assertEqual(bytes(verb.data()), b"PATCH")
        self.assertEqual(json.loads(bytes(body.data())), {"description": "Report"})
        self.assertEqual(request.url().toString(), "https://example-db.firebaseio.com/timer.json")

    def test_write_error_goes_to_callback(self):
        store = self._store()
        errors = Recorder()
        store.write({"description": "Report"}, errors)
        self._finish(self.manager.sendCustomRequest.return_value, ok=False)
        self.assertEqual(len(errors.calls), 1)

    def test_stream_events_reach_subscribers(self):
        from st.store.firebase import StreamEvent
        store = self._store()
        seen = Recorder()
        store.subscribe(seen)
        self.assertEqual(seen.calls, [])
        store.handle_stream_event(StreamEvent("put", json.dumps({"path": "/", "data": {"isRunning": False}})))
        store.handle_stream_event(StreamEvent("keep-alive", "null"))
        store.handle_stream_event(StreamEvent("patch", json.dumps({"path": "/", "data": {"description": "x"}})))
        self.assertEqual(seen.calls, [{"isRunning": False}, {"isRunning": False, "description": "x"}])

        late = Recorder()
        store.subscribe(late)
        self.assertEqual(late.calls, [{"isRunning": False, "description": "x"}])
        self.assertEqual(self.manager.get.call_count, 1)

    def test_bad_stream_payload_is_ignored(self):
        from st.store.firebase import StreamEvent
        store = self._store()
        seen = Recorder()
        store.subscribe(seen)
        with self.assertLogs("sharedtimer", level="WARNING"):
            store.handle_stream_event(StreamEvent("put", "{broken"))
        self.assertEqual(seen.calls, [])


if __name__ == "__main__":
    unittest.main()
