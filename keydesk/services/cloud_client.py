"""Desk-side HTTP client for the cloud card-issue API."""

from __future__ import annotations

from typing import Any, Optional

import requests

from keydesk.domain.models import CardIssue, CardType, IssueStatus
from keydesk.utils.config import Settings, get_settings
from keydesk.utils.logger import get_logger


logger = get_logger(__name__)

AGENT_TOKEN_HEADER = "X-Agent-Token"


class CloudApiError(Exception):
    """Raised when the cloud API cannot be reached or rejects a call."""


class CloudApiRejectedError(CloudApiError):
    """Raised on a 4xx answer; replaying the same call cannot succeed."""


def issue_from_json(body: dict[str, Any]) -> CardIssue:
    return CardIssue(
        id=str(body["id"]),
        hotel_id=str(body["hotel_id"]),
        booking_id=body.get("booking_id"),
        room_number=body.get("room_number"),
        card_type=CardType(body["card_type"]),
        status=IssueStatus(body["status"]),
        payload=dict(body.get("payload") or {}),
        result=body.get("result"),
        error_message=body.get("error_message"),
        agent_id=body.get("agent_id"),
        retry_count=int(body.get("retry_count", 0)),
        created_at=str(body["created_at"]),
        updated_at=str(body["updated_at"]),
        completed_at=body.get("completed_at"),
    )


class CloudApiClient:
    """Agent-authenticated calls used by AgentWorker."""

    def __init__(
        self,
        agent_id: str,
        agent_token: str,
        settings: Optional[Settings] = None,
        base_url: Optional[str] = None,
        session: Optional[Any] = None,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._settings = settings or get_settings()
        self._agent_id = agent_id
        self._base_url = (base_url or self._settings.cloud_api_url).rstrip("/")
        self._session = session or requests.Session()
        self._headers = {AGENT_TOKEN_HEADER: agent_token}
        self._timeout = timeout_seconds

    @property
    def agent_id(self) -> str:
        return self._agent_id

    def _request(
        self,
        method: str,
        path: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> Any:
        url = f"{self._base_url}/agents/{self._agent_id}{path}"
        try:
            response = self._session.request(
                method,
                url,
                json=payload,
                headers=self._headers,
                timeout=self._timeout,
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.HTTPError as exc:
            status_code = exc.response.status_code if exc.response is not None else None
            if status_code is not None and 400 <= status_code < 500:
                raise CloudApiRejectedError(f"{method} {path} rejected ({status_code})") from exc
            raise CloudApiError(f"{method} {path} failed: {exc}") from exc
        except requests.exceptions.RequestException as exc:
            raise CloudApiError(f"{method} {path} failed: {exc}") from exc
        except ValueError as exc:
            raise CloudApiError(f"{method} {path} returned a non-JSON body") from exc

    def heartbeat(self) -> dict[str, Any]:
        return self._request("POST", "/heartbeat")

    def claim_next_card_issue(self) -> Optional[CardIssue]:
        body = self._request("POST", "/claim")
        issue = body.get("issue") if isinstance(body, dict) else None
        return issue_from_json(issue) if issue else None

    def update_card_issue_status(
        self,
        issue_id: str,
        status: IssueStatus,
        error_message: Optional[str] = None,
        result: Optional[dict[str, Any]] = None,
    ) -> CardIssue:
        body = self._request(
            "PATCH",
            f"/card-issues/{issue_id}/status",
            {"status": status.value, "error_message": error_message, "result": result},
        )
        return issue_from_json(body)

    def log_device_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        card_issue_id: Optional[str] = None,
    ) -> None:
        self._request(
            "POST",
            "/log",
            {"event_type": event_type, "payload": payload, "card_issue_id": card_issue_id},
        )
