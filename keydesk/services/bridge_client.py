"""HTTP client for the Local Hardware Agent that owns the desk's card reader."""

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping, Optional

import requests

from keydesk.domain.models import WriteOutcome
from keydesk.utils.clock import utc_now_iso
from keydesk.utils.config import Settings, get_settings
from keydesk.utils.logger import get_logger


logger = get_logger(__name__)

SERVICE_UNAVAILABLE_MESSAGE = (
    "Bridge service is not available. Please start the card reader service."
)
TIMEOUT_MESSAGE = "Operation timed out. Please try again."
PROGRAMMING_FAILED_MESSAGE = "Failed to program card. Please try again."


class AgentProtocolError(Exception):
    """Raised when the local agent answers with a body that breaks its contract."""


class CardPresence(str, Enum):
    DETECTED = "detected"
    ABSENT = "absent"
    UNSUPPORTED = "unsupported"
    UNREACHABLE = "unreachable"


class LocalAgentClient:
    """Thin, time-bounded wrapper over the local agent's HTTP API.

    Health calls fail closed: any transport error, timeout, non-2xx status or
    undecodable body reads as "not available". Writes turn transport failures
    into an error outcome; only a well-formed 2xx response that carries
    neither a card UID nor an error is treated as a protocol violation.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        base_url: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._base_url = (base_url or self._settings.bridge_service_url).rstrip("/")
        self._session = session or requests.Session()

    @property
    def base_url(self) -> str:
        return self._base_url

    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    def _get_json(self, path: str, timeout: float) -> Optional[Mapping[str, Any]]:
        try:
            response = self._session.get(
                self._url(path),
                headers={"Accept": "application/json"},
                timeout=timeout,
            )
            response.raise_for_status()
            body = response.json()
        except requests.exceptions.RequestException as exc:
            logger.debug("Local agent GET %s unreachable: %s", path, exc)
            return None
        except ValueError:
            logger.warning("Local agent GET %s returned a non-JSON body", path)
            return None
        return body if isinstance(body, Mapping) else None

    def _post_json(
        self,
        path: str,
        timeout: float,
        payload: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Mapping[str, Any]]:
        try:
            response = self._session.post(self._url(path), json=payload or {}, timeout=timeout)
            response.raise_for_status()
            body = response.json()
        except requests.exceptions.RequestException as exc:
            logger.debug("Local agent POST %s unreachable: %s", path, exc)
            return None
        except ValueError:
            logger.warning("Local agent POST %s returned a non-JSON body", path)
            return None
        return body if isinstance(body, Mapping) else None

    def check_service_status(self) -> bool:
        body = self._get_json("/status", self._settings.health_check_timeout_seconds)
        return bool(body and body.get("up") is True)

    def get_reader_status(self) -> dict[str, bool]:
        body = self._get_json("/reader/status", self._settings.reader_status_timeout_seconds)
        return {"connected": bool(body and body.get("connected") is True)}

    def reconnect_reader(self) -> bool:
        body = self._post_json("/reader/reconnect", self._settings.reader_reconnect_timeout_seconds)
        return bool(body and body.get("ok") is True)

    def detect_card(self) -> CardPresence:
        """Ask whether a card sits on the reader.

        Agents without a detect endpoint answer 404; they block inside the
        write call until a card is present instead.
        """
        try:
            response = self._session.post(
                self._url("/cards/detect"),
                json={},
                timeout=self._settings.card_detect_timeout_seconds,
            )
        except requests.exceptions.RequestException as exc:
            logger.debug("Card detection unreachable: %s", exc)
            return CardPresence.UNREACHABLE
        if response.status_code in (404, 405, 501):
            return CardPresence.UNSUPPORTED
        if not response.ok:
            return CardPresence.UNREACHABLE
        try:
            body = response.json()
        except ValueError:
            return CardPresence.UNREACHABLE
        if isinstance(body, Mapping) and body.get("detected") is True:
            return CardPresence.DETECTED
        return CardPresence.ABSENT

    def write_card(self, payload: Mapping[str, Any]) -> WriteOutcome:
        """Write and verify one card; blocks until the agent resolves it."""
        card_type = payload.get("cardType")
        try:
            response = self._session.post(
                self._url("/cards/write"),
                json=dict(payload),
                timeout=self._settings.card_write_timeout_seconds,
            )
        except requests.exceptions.Timeout:
            logger.warning("Card write for %s timed out", card_type)
            return WriteOutcome(ok=False, error=TIMEOUT_MESSAGE)
        except requests.exceptions.RequestException as exc:
            logger.warning("Card write for %s could not reach the local agent: %s", card_type, exc)
            return WriteOutcome(ok=False, error=SERVICE_UNAVAILABLE_MESSAGE)

        try:
            body = response.json()
        except ValueError as exc:
            if response.ok:
                raise AgentProtocolError(
                    f"Local agent returned a non-JSON body for {card_type} write"
                ) from exc
            return WriteOutcome(
                ok=False,
                error=f"{PROGRAMMING_FAILED_MESSAGE} (HTTP {response.status_code})",
            )

        if not isinstance(body, Mapping):
            raise AgentProtocolError(f"Local agent returned {type(body).__name__} for card write")

        error = body.get("error")
        if error:
            return WriteOutcome(ok=False, error=str(error))
        if not response.ok:
            return WriteOutcome(
                ok=False,
                error=f"{PROGRAMMING_FAILED_MESSAGE} (HTTP {response.status_code})",
            )

        card_uid = body.get("cardUID")
        if not card_uid:
            raise AgentProtocolError(
                f"Local agent write response for {card_type} has neither cardUID nor error"
            )
        return WriteOutcome(
            ok=True,
            card_uid=str(card_uid),
            timestamp=str(body.get("timestamp") or utc_now_iso()),
        )

    def get_status_details(self) -> dict[str, Any]:
        """Raw `/status` body for dashboard display (getLocalAgentStatus)."""
        body = self._get_json("/status", self._settings.health_check_timeout_seconds)
        if body is None:
            return {"connected": False, "error": "Agent not available"}
        details = dict(body)
        details["connected"] = body.get("up") is True
        return details
