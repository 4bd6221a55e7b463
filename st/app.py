import argparse
import sys
from PySide6.QtCore import QCoreApplication, QObject, QSocketNotifier
from st.common.logger import enable_console, log
from st.core import config
from st.core.connectivity import ConnectivityGuard
from st.core.sync import TimerSync
from st.store.file import JsonFileTimerStore
from st.store.firebase import FirebaseTimerStore
from st.store.memory import MemoryTimerStore

# Builds the store the settings ask for.
def build_store(settings):
    backend = settings["backend"]
    key = settings["record_key"]
    if backend == "memory":
        return MemoryTimerStore(key=key)
    if backend == "file":
        return JsonFileTimerStore(config.resolve_timer_file(settings), key=key)
    if backend == "firebase":
        return FirebaseTimerStore(
            settings["firebase_url"],
            key=key,
            auth=settings["firebase_auth"],
            request_timeout_ms=settings["request_timeout_ms"],
            reconnect_delay_ms=settings["reconnect_delay_ms"],
        )
    raise ValueError(f"Unknown store backend '{backend}', expected one of {', '.join(config.BACKENDS)}")

# Wires store, connectivity guard and state machine together. Nothing is subscribed until attach() is called.
def build_client(settings, store=None, guard=None):
    store = store or build_store(settings)
    guard = guard or ConnectivityGuard()
    if settings["follow_network_status"]:
        guard.attach_network_information()
    sync = TimerSync(
        store,
        guard=guard,
        tick_interval_ms=settings["tick_interval_ms"],
        edit_tolerance_seconds=settings["edit_tolerance_seconds"],
    )
    return sync

#region === Console runner ===

HELP_TEXT = "commands: toggle | reset | desc <text> | time <H:MM:SS> | online | offline | help | quit"

# Applies one console command to `sync`. Returns False when the runner should stop.
def handle_command(sync, line):
    command, _, argument = line.strip().partition(" ")
    command = command.lower()
    if command in ("quit", "exit"):
        return False
    if command == "toggle":
        sync.toggle_start_pause()
    elif command == "reset":
        sync.reset()
    elif command == "desc":
        sync.description_changed(argument)
    elif command == "time":
        sync.time_field_focused()
        sync.time_field_blurred(argument)
    elif command == "online":
        sync.guard.set_online(True)
    elif command == "offline":
        sync.guard.set_online(False)
    elif command:
        print(HELP_TEXT)
    return True

# Stand-in display surface: prints the time and description as they change and feeds stdin lines back as events.
class ConsoleClient(QObject):

    def __init__(self, sync, stream=None, parent=None):
        # Parented to the sync object by default so the slot connections live as long as it does.
        super().__init__(parent if parent is not None else sync)
        self.sync = sync
        self.stream = stream or sys.stdout
        self._description = ""
        sync.timeChanged.connect(self._render)
        sync.descriptionChanged.connect(self._on_description)
        self._notifier = None

    def _on_description(self, text):
        self._description = text
        self._render(self.sync.display_text)

    def _render(self, time_text):
        if self.sync.loading:
            return
        label = self._description or "(no description)"
        print(f"{time_text}  {label}", file=self.stream, flush=True)

    def listen_stdin(self):
        self._notifier = QSocketNotifier(sys.stdin.fileno(), QSocketNotifier.Type.Read, self)
        self._notifier.activated.connect(self._on_stdin)

    def _on_stdin(self):
        line = sys.stdin.readline()
        if not line or not handle_command(self.sync, line):
            QCoreApplication.quit()

#endregion === Console runner ===

def main(argv=None):
    parser = argparse.ArgumentParser(prog="sharedtimer", description="Headless client for the shared task timer.")
    parser.add_argument("--backend", choices=config.BACKENDS, help="override the configured store backend")
    parser.add_argument("--file", help="timer file for the file backend")
    parser.add_argument("--verbose", action="store_true", help="also log to the console")
    args = parser.parse_args(argv)

    if args.verbose:
        enable_console()

    settings = config.load_settings()
    if args.backend:
        settings["backend"] = args.backend
    if args.file:
        settings["file_path"] = args.file

    app = QCoreApplication.instance() or QCoreApplication(sys.argv[:1])
    sync = build_client(settings)
    console = ConsoleClient(sync)
    print(HELP_TEXT)
    sync.attach()
    console.listen_stdin()
    app.aboutToQuit.connect(sync.teardown)
    app.aboutToQuit.connect(sync.store.close)
    log.info(f"Headless client running against the '{settings['backend']}' backend")
    return app.exec()
