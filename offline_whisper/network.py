"""Network reachability monitoring.

The monitor is passive: it does nothing until first queried, then keeps a
daemon thread probing the remote host for the rest of the process lifetime.
"""

import logging
import socket
import threading
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class NetworkStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


class NetworkMonitor:
    """Lazily started TCP reachability probe.

    Attributes:
        host: Host probed for reachability
        port: TCP port probed
        interval: Seconds between background probes
        timeout: Connect timeout for a single probe in seconds
    """

    def __init__(
        self,
        host: str = "huggingface.co",
        port: int = 443,
        interval: float = 30.0,
        timeout: float = 3.0,
    ):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")
        if timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")
        self.host = host
        self.port = port
        self.interval = interval
        self.timeout = timeout
        self._status: Optional[NetworkStatus] = None
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

    def is_available(self) -> bool:
        return self.status() == NetworkStatus.CONNECTED

    def status(self) -> NetworkStatus:
        """Current reachability, probing synchronously on the first call."""
        with self._lock:
            if self._thread is None:
                self._status = self._probe()
                self._thread = threading.Thread(
                    target=self._run, name="network-monitor", daemon=True
                )
                self._thread.start()
                logger.debug(f"Network monitor started for {self.host}:{self.port}")
            return self._status

    @property
    def started(self) -> bool:
        return self._thread is not None

    def _probe(self) -> NetworkStatus:
        try:
            with socket.create_connection((self.host, self.port), timeout=self.timeout):
                return NetworkStatus.CONNECTED
        except OSError:
            return NetworkStatus.DISCONNECTED

    def _run(self) -> None:
        stop = threading.Event()
        while not stop.wait(self.interval):
            status = self._probe()
            with self._lock:
                if status != self._status:
                    logger.info(f"Network status changed: {status.value}")
                self._status = status
