"""Firebase Realtime Database backend, spoken over its REST API.

Reads are ``GET <db>/<key>.json``, merge writes are ``PATCH`` with the fields
to change, and the subscription is the database's server-sent event stream
on the same URL. The stream keeps a local mirror of the record that ``put`` and
``patch`` events are applied to; every change to the mirror is pushed to
subscribers.
"""

import codecs
import copy
import json
from dataclasses import dataclass
from PySide6.QtCore import QByteArray, QTimer, QUrl, QUrlQuery
from PySide6.QtNetwork import QNetworkAccessManager, QNetworkReply, QNetworkRequest
from st.common.logger import log
from st.store.base import StoreError, TimerStore, log_write_error

#region === Event stream parsing ===

@dataclass(frozen=True)
class StreamEvent:
    event: str
    data: str


# Incremental text/event-stream parser. Feed it chunks as they arrive; it hands back every event completed by
# that chunk and buffers the rest.
class EventStreamParser:

    def __init__(self):
        self._buffer = ""
        self._event = ""
        self._data = []
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk):
        if isinstance(chunk, (bytes, bytearray)):
            chunk = self._decoder.decode(bytes(chunk))
        self._buffer += chunk
        # A trailing \r may be the first half of a \r\n split across chunks, so it waits for the next one.
        held = "\r" if self._buffer.endswith("\r") else ""
        text = self._buffer[:-1] if held else self._buffer
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        events = []
        while "\n" in text:
            line, text = text.split("\n", 1)
            if line == "":
                if self._event or self._data:
                    events.append(StreamEvent(self._event or "message", "\n".join(self._data)))
                self._event = ""
                self._data = []
                continue
            if line.startswith(":"):
                continue
            name, _, value = line.partition(":")
            if value.startswith(" "):
                value = value[1:]
            if name == "event":
                self._event = value
            elif name == "data":
                self._data.append(value)
        self._buffer = text + held
        return events


def _path_parts(path):
    return [part for part in (path or "/").split("/") if part]

# Sets `value` at `parts` below `root`, creating objects along the way. A None value deletes.
def _set_at_path(root, parts, value):
    if not parts:
        return copy.deepcopy(value)
    root = dict(root) if isinstance(root, dict) else {}
    head, rest = parts[0], parts[1:]
    child = _set_at_path(root.get(head), rest, value)
    if child is None:
        root.pop(head, None)
    else:
        root[head] = child
    return root or None

# Applies one "put" or "patch" payload from the stream to the mirrored record and returns the new mirror.
# Anything else leaves the mirror alone.
def apply_stream_event(mirror, event, payload):
    if event not in ("put", "patch") or not isinstance(payload, dict):
        return mirror
    parts = _path_parts(payload.get("path"))
    data = payload.get("data")
    if event == "put":
        return _set_at_path(mirror, parts, data)
    if not isinstance(data, dict):
        return mirror
    for field, value in data.items():
        mirror = _set_at_path(mirror, parts + _path_parts(field), value)
    return mirror

#endregion === Event stream parsing ===


class FirebaseTimerStore(TimerStore):

    def __init__(self, base_url, key="timer", auth="", request_timeout_ms=10000, reconnect_delay_ms=5000,
                 manager=None):
        super().__init__(key)
        if not base_url:
            raise ValueError("A Firebase database URL is required for the firebase backend.")
        self.base_url = base_url.rstrip("/")
        self.auth = auth
        self.request_timeout_ms = request_timeout_ms
        self.reconnect_delay_ms = reconnect_delay_ms
        self._manager = manager or QNetworkAccessManager()
        self._subscribers = []
        self._pending = set()
        self._stream = None
        self._parser = None
        self._mirror = None
        self._mirror_known = False
        self._closed = False
        self._reconnect_timer = QTimer()
        self._reconnect_timer.setSingleShot(True)
        self._reconnect_timer.timeout.connect(self._open_stream)

    #region === Requests ===

    def record_url(self):
        url = QUrl(f"{self.base_url}/{self.key}.json")
        if self.auth:
            query = QUrlQuery()
            query.addQueryItem("auth", self.auth)
            url.setQuery(query)
        return url

    def _request(self, streaming=False):
        request = QNetworkRequest(self.record_url())
        request.setHeader(QNetworkRequest.KnownHeaders.ContentTypeHeader, "application/json")
        if streaming:
            request.setRawHeader(QByteArray(b"Accept"), QByteArray(b"text/event-stream"))
        else:
            request.setTransferTimeout(self.request_timeout_ms)
        return request

    # Keeps the reply referenced until it finishes, then hands it to `handler` and schedules its deletion.
    def _track(self, reply, handler):
        self._pending.add(reply)

        def finished():
            self._pending.discard(reply)
            try:
                handler(reply)
            finally:
                reply.deleteLater()
        reply.finished.connect(finished)
        return reply

    @staticmethod
    def _reply_error(reply):
        if reply.error() != QNetworkReply.NetworkError.NoError:
            return StoreError(f"Firebase request failed: {reply.errorString()}")
        return None

    @staticmethod
    def _reply_json(reply):
        body = bytes(reply.readAll().data()).decode("utf-8")
        return json.loads(body) if body.strip() else None

    #endregion === Requests ===

    #region === Store operations ===

    def read(self, on_result, on_error):
        def handle(reply):
            error = self._reply_error(reply)
            if error is not None:
                on_error(error)
                return
            try:
                record = self._reply_json(reply)
            except ValueError as e:
                on_error(StoreError(f"Firebase returned a body that is not JSON: {e}"))
                return
            on_result(record)
        self._track(self._manager.get(self._request()), handle)

    def write(self, fields, on_error=None):
        on_error = on_error or log_write_error
        try:
            body = QByteArray(json.dumps(fields).encode("utf-8"))
        except (TypeError, ValueError) as e:
            on_error(StoreError(f"Timer fields are not JSON serializable: {e}"))
            return

        def handle(reply):
            error = self._reply_error(reply)
            if error is not None:
                on_error(error)
                return
            log.debug(f"Firebase accepted write of fields {', '.join(sorted(fields))}")
        self._track(self._manager.sendCustomRequest(self._request(), QByteArray(b"PATCH"), body), handle)

    def subscribe(self, on_snapshot):
        self._subscribers.append(on_snapshot)
        if self._mirror_known:
            on_snapshot(copy.deepcopy(self._mirror))
        if self._stream is None and not self._reconnect_timer.isActive():
            self._open_stream()

        def unsubscribe():
            if on_snapshot in self._subscribers:
                self._subscribers.remove(on_snapshot)
        return unsubscribe

    def close(self):
        self._closed = True
        self._subscribers.clear()
        self._reconnect_timer.stop()
        if self._stream is not None:
            stream, self._stream = self._stream, None
            stream.abort()
            stream.deleteLater()
        for reply in list(self._pending):
            reply.abort()

    #endregion === Store operations ===

    #region === Streaming subscription ===

    def _open_stream(self):
        if self._closed:
            return
        log.info(f"Opening Firebase event stream for '{self.key}'")
        self._parser = EventStreamParser()
        stream = self._manager.get(self._request(streaming=True))
        stream.readyRead.connect(self._on_stream_ready)
        stream.finished.connect(self._on_stream_finished)
        self._stream = stream

    def _on_stream_ready(self):
        if self._stream is None:
            return
        for event in self._parser.feed(bytes(self._stream.readAll().data())):
            self.handle_stream_event(event)

    def _on_stream_finished(self):
        stream, self._stream = self._stream, None
        if stream is None:
            return
        error = self._reply_error(stream)
        stream.deleteLater()
        if self._closed:
            return
        if error is not None:
            log.warning(f"Firebase event stream dropped: {error}")
        else:
            log.info("Firebase event stream closed by the server.")
        self._reconnect_timer.start(self.reconnect_delay_ms)

    # Applies one parsed event to the mirror and fans out the result.
    def handle_stream_event(self, event):
        if event.event == "keep-alive":
            return
        if event.event in ("cancel", "auth_revoked"):
            log.error(f"Firebase cancelled the event stream ({event.event}): {event.data}")
            if self._stream is not None:
                self._stream.abort()
            return
        if event.event not in ("put", "patch"):
            log.debug(f"Ignoring Firebase stream event '{event.event}'")
            return
        try:
            payload = json.loads(event.data)
        except ValueError:
            log.warning(f"Firebase stream sent a '{event.event}' event that is not JSON, ignoring it.",exc_info=True)
            return
        self._mirror = apply_stream_event(self._mirror, event.event, payload)
        self._mirror_known = True
        for callback in list(self._subscribers):
            callback(copy.deepcopy(self._mirror))

    #endregion === Streaming subscription ===
