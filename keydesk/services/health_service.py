"""Bridge health monitor: liveness of the local agent and its card reader."""

from __future__ import annotations

import threading
from typing import Optional

from keydesk.domain.models import HealthSnapshot
from keydesk.services.bridge_client import LocalAgentClient
from keydesk.utils.clock import utc_now_iso
from keydesk.utils.config import Settings, get_settings
from keydesk.utils.logger import get_logger


logger = get_logger(__name__)

SERVICE_UNAVAILABLE = (
    "Card reader service is not running. Please start the bridge service on your desktop."
)
READER_NOT_CONNECTED = "Card reader is not connected. Please check the USB connection."


class BridgeUnavailableError(Exception):
    """Raised when a run is requested while the service or reader is down."""


class BridgeHealthMonitor:
    """Exposes `{service_up, reader_connected}` and an operator-triggered reconnect.

    `desk_lock` is held by whoever is writing to this desk's reader, either
    an attended sequence or the queue worker, so only one write is in flight.
    """

    def __init__(
        self,
        client: Optional[LocalAgentClient] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client or LocalAgentClient(settings=self._settings)
        self._lock = threading.Lock()
        self._latest: Optional[HealthSnapshot] = None
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.desk_lock = threading.Lock()

    @property
    def client(self) -> LocalAgentClient:
        return self._client

    def check_bridge_service_status(self) -> bool:
        return self._client.check_service_status()

    def get_reader_status(self) -> dict[str, bool]:
        return self._client.get_reader_status()

    def reconnect_reader(self) -> bool:
        """Ask the agent to reopen the reader; never called automatically."""
        reconnected = self._client.reconnect_reader()
        if reconnected:
            logger.info("Card reader reconnected at %s", self._client.base_url)
        else:
            logger.warning("Card reader reconnect failed at %s", self._client.base_url)
        self.snapshot()
        return reconnected

    def snapshot(self) -> HealthSnapshot:
        service_up = self.check_bridge_service_status()
        reader_connected = service_up and self.get_reader_status()["connected"]
        snapshot = HealthSnapshot(
            service_up=service_up,
            reader_connected=reader_connected,
            checked_at=utc_now_iso(),
        )
        with self._lock:
            previous = self._latest
            self._latest = snapshot
        if previous is None or (previous.service_up, previous.reader_connected) != (
            snapshot.service_up,
            snapshot.reader_connected,
        ):
            logger.info(
                "Bridge health changed: service_up=%s reader_connected=%s",
                snapshot.service_up,
                snapshot.reader_connected,
            )
        return snapshot

    def latest(self) -> Optional[HealthSnapshot]:
        with self._lock:
            return self._latest

    def ensure_ready(self) -> HealthSnapshot:
        snapshot = self.snapshot()
        if not snapshot.service_up:
            raise BridgeUnavailableError(SERVICE_UNAVAILABLE)
        if not snapshot.reader_connected:
            raise BridgeUnavailableError(READER_NOT_CONNECTED)
        return snapshot

    def start_polling(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._poll_loop,
            name="BridgeHealthMonitor",
            daemon=True,
        )
        self._thread.start()

    def stop_polling(self) -> None:
        self._stop.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=self._settings.health_check_timeout_seconds * 2)
        self._thread = None

    def _poll_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.snapshot()
            except Exception:  # pragma: no cover - keep the poller alive
                logger.exception("Unexpected bridge health poll failure")
            self._stop.wait(self._settings.health_poll_interval_seconds)
