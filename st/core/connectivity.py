from PySide6.QtCore import QObject, Signal
from PySide6.QtNetwork import QNetworkInformation
from st.common.logger import log

# Tracks whether this client believes it's online and refuses outbound writes while it isn't. Skipped writes are
# logged and dropped, never queued; whoever owns the timer state decides what to re-send later.
class ConnectivityGuard(QObject):

    onlineChanged = Signal(bool)

    def __init__(self, online=True, parent=None):
        super().__init__(parent)
        self._online = bool(online)
        self._network_information = None
        self.skipped_writes = 0

    @property
    def online(self):
        return self._online

    def set_online(self, online):
        online = bool(online)
        if online == self._online:
            return
        self._online = online
        if online:
            log.info(f"Connectivity restored ({self.skipped_writes} write(s) were skipped while offline, they will not be replayed).")
        else:
            log.warning("Connectivity lost, outbound timer writes will be skipped until it returns.")
        self.onlineChanged.emit(online)

    # Sends `fields` to `store` if online. Returns whether the write was attempted.
    def write(self, store, fields, on_error=None):
        if not self._online:
            self.skipped_writes += 1
            log.info(f"Offline, skipping write of fields {', '.join(sorted(fields))}")
            return False
        store.write(fields, on_error)
        return True

    #region === Platform network status ===

    # Follows the OS reachability signal when Qt has a network-information backend for this platform. Returns False
    # (and leaves the flag under manual control) when it doesn't.
    def attach_network_information(self):
        if not QNetworkInformation.loadDefaultBackend():
            log.warning("No network information backend available, connectivity will not be tracked automatically.")
            return False
        info = QNetworkInformation.instance()
        if info is None:
            return False
        self._network_information = info
        info.reachabilityChanged.connect(self._on_reachability_changed)
        self._on_reachability_changed(info.reachability())
        log.info(f"Following platform network status through the '{info.backendName()}' backend.")
        return True

    def _on_reachability_changed(self, reachability):
        Reachability = QNetworkInformation.Reachability
        # Unknown means the backend can't tell, so don't block writes on it.
        self.set_online(reachability in (Reachability.Online, Reachability.Unknown))

    #endregion === Platform network status ===
