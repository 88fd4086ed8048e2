"""Desk-side worker: claims queued card issues, writes them and reports back."""

from __future__ import annotations

import threading
from typing import Any, Optional, Protocol

from keydesk.domain.models import CardIssue, IssueStatus
from keydesk.repository.outbox_repository import OutboxRepository
from keydesk.services.agent_service import AgentRegistry, AgentRegistryError
from keydesk.services.bridge_client import AgentProtocolError
from keydesk.services.cloud_client import CloudApiError, CloudApiRejectedError
from keydesk.services.health_service import (
    READER_NOT_CONNECTED,
    SERVICE_UNAVAILABLE,
    BridgeHealthMonitor,
)
from keydesk.services.issue_service import CardIssueError, CardIssueService
from keydesk.utils.clock import utc_now_iso
from keydesk.utils.config import Settings, get_settings
from keydesk.utils.logger import get_logger


logger = get_logger(__name__)

INVALID_AGENT_RESPONSE_MESSAGE = "Local agent returned an invalid response"


class CloudGateway(Protocol):
    def heartbeat(self) -> Any: ...

    def claim_next_card_issue(self) -> Optional[CardIssue]: ...

    def update_card_issue_status(
        self,
        issue_id: str,
        status: IssueStatus,
        error_message: Optional[str] = None,
        result: Optional[dict[str, Any]] = None,
    ) -> Any: ...

    def log_device_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        card_issue_id: Optional[str] = None,
    ) -> Any: ...


class InProcessCloudGateway:
    """CloudGateway backed by the services directly, for single-host installs."""

    def __init__(
        self,
        agent_id: str,
        issue_service: CardIssueService,
        agent_registry: AgentRegistry,
    ) -> None:
        self._agent_id = agent_id
        self._issues = issue_service
        self._agents = agent_registry

    def heartbeat(self) -> Any:
        try:
            return self._agents.heartbeat(self._agent_id)
        except AgentRegistryError as exc:
            raise CloudApiRejectedError(str(exc)) from exc

    def claim_next_card_issue(self) -> Optional[CardIssue]:
        try:
            return self._issues.claim_next_card_issue(self._agent_id)
        except (AgentRegistryError, CardIssueError) as exc:
            raise CloudApiRejectedError(str(exc)) from exc

    def update_card_issue_status(
        self,
        issue_id: str,
        status: IssueStatus,
        error_message: Optional[str] = None,
        result: Optional[dict[str, Any]] = None,
    ) -> CardIssue:
        try:
            return self._issues.update_card_issue_status(
                issue_id,
                status,
                error_message=error_message,
                result=result,
                agent_id=self._agent_id,
            )
        except (AgentRegistryError, CardIssueError) as exc:
            raise CloudApiRejectedError(str(exc)) from exc

    def log_device_event(
        self,
        event_type: str,
        payload: dict[str, Any],
        card_issue_id: Optional[str] = None,
    ) -> Any:
        try:
            return self._agents.log_device_event(self._agent_id, event_type, payload, card_issue_id)
        except AgentRegistryError as exc:
            raise CloudApiRejectedError(str(exc)) from exc


class AgentWorker:
    """Polls the cloud queue and programs one card at a time on this desk.

    Results the cloud does not acknowledge are parked in the local outbox and
    replayed, oldest first, at the start of the next cycle.
    """

    def __init__(
        self,
        cloud: CloudGateway,
        health_monitor: BridgeHealthMonitor,
        outbox: Optional[OutboxRepository] = None,
        settings: Optional[Settings] = None,
        max_claims_per_cycle: int = 10,
    ) -> None:
        self._settings = settings or get_settings()
        self._cloud = cloud
        self._health = health_monitor
        self._client = health_monitor.client
        self._outbox = outbox or OutboxRepository(self._settings)
        self._max_claims = max_claims_per_cycle
        self._desk_lock = health_monitor.desk_lock

    @property
    def outbox(self) -> OutboxRepository:
        return self._outbox

    def run_once(self) -> int:
        """One poll cycle; returns how many issues were processed."""
        try:
            self._cloud.heartbeat()
        except CloudApiError as exc:
            logger.warning("Heartbeat failed, skipping cycle: %s", exc)
            return 0

        self.flush_outbox()

        processed = 0
        while processed < self._max_claims:
            # Claim only while holding the desk, so a claimed issue never waits
            # behind an attended sequence.
            if not self._desk_lock.acquire(blocking=False):
                logger.info("Desk is busy with an attended sequence; not claiming queued work")
                break
            try:
                try:
                    issue = self._cloud.claim_next_card_issue()
                except CloudApiError as exc:
                    logger.warning("Claiming card issues failed: %s", exc)
                    break
                if issue is None:
                    break
                self._process(issue)
            finally:
                self._desk_lock.release()
            processed += 1
        return processed

    def run_forever(self, stop_event: threading.Event) -> None:
        logger.info("Agent worker started")
        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception:  # pragma: no cover - keep the worker alive
                logger.exception("Unexpected agent worker failure")
            stop_event.wait(self._settings.agent_poll_interval_seconds)
        logger.info("Agent worker stopped")

    def flush_outbox(self) -> int:
        """Replay parked reports; stops at the first transport failure to keep order."""
        delivered = 0
        for entry in self._outbox.list_entries():
            try:
                self._cloud.update_card_issue_status(
                    entry.card_issue_id,
                    entry.status,
                    error_message=entry.error_message,
                    result=entry.result,
                )
            except CloudApiRejectedError as exc:
                logger.warning(
                    "Cloud rejected parked report for card issue %s, dropping: %s",
                    entry.card_issue_id,
                    exc,
                )
                self._outbox.remove(entry.id)
                continue
            except CloudApiError as exc:
                attempts = entry.attempts + 1
                if attempts >= self._settings.agent_max_report_retries:
                    logger.error(
                        "Giving up on report for card issue %s after %s attempts: %s",
                        entry.card_issue_id,
                        attempts,
                        exc,
                    )
                    self._outbox.mark_dead(entry.id, utc_now_iso())
                    continue
                self._outbox.record_attempt(entry.id, utc_now_iso())
                logger.warning("Outbox replay paused: %s", exc)
                break
            self._outbox.remove(entry.id)
            delivered += 1
        if delivered:
            logger.info("Delivered %s parked card results", delivered)
        self.notify_dead_letters()
        return delivered

    def notify_dead_letters(self) -> int:
        """Tell the cloud about reports given up on, so staff can settle the issue by hand."""
        notified = 0
        for entry in self._outbox.list_dead_letters(unnotified_only=True):
            payload: dict[str, Any] = {
                "status": entry.status.value,
                "attempts": entry.attempts,
                "parkedAt": entry.created_at,
            }
            if entry.error_message:
                payload["error"] = entry.error_message
            if entry.result:
                payload["result"] = entry.result
            try:
                self._cloud.log_device_event("report_dropped", payload, entry.card_issue_id)
            except CloudApiRejectedError as exc:
                logger.error("Cloud rejected dropped-report notice for card issue %s: %s", entry.card_issue_id, exc)
                self._outbox.mark_notified(entry.id, utc_now_iso())
                continue
            except CloudApiError as exc:
                logger.warning("Dropped-report notice for card issue %s not delivered: %s", entry.card_issue_id, exc)
                break
            self._outbox.mark_notified(entry.id, utc_now_iso())
            notified += 1
        return notified

    def _process(self, issue: CardIssue) -> None:
        """Write one claimed issue; the caller holds the desk lock."""
        snapshot = self._health.snapshot()
        if not snapshot.ready:
            message = SERVICE_UNAVAILABLE if not snapshot.service_up else READER_NOT_CONNECTED
            self._report(issue, IssueStatus.FAILED, error_message=message)
            return
        try:
            outcome = self._client.write_card(issue.payload)
        except AgentProtocolError:
            logger.exception("Local agent broke the write contract for card issue %s", issue.id)
            self._report(issue, IssueStatus.FAILED, error_message=INVALID_AGENT_RESPONSE_MESSAGE)
            return

        if outcome.ok:
            result = {"cardUID": outcome.card_uid, "timestamp": outcome.timestamp}
            self._log_event("card_written", {"cardType": issue.card_type.value, **result}, issue.id)
            self._report(issue, IssueStatus.DONE, result=result)
        else:
            self._log_event(
                "card_write_failed",
                {"cardType": issue.card_type.value, "error": outcome.error},
                issue.id,
            )
            self._report(issue, IssueStatus.FAILED, error_message=outcome.error)

    def _report(
        self,
        issue: CardIssue,
        status: IssueStatus,
        error_message: Optional[str] = None,
        result: Optional[dict[str, Any]] = None,
    ) -> None:
        try:
            self._cloud.update_card_issue_status(
                issue.id,
                status,
                error_message=error_message,
                result=result,
            )
            logger.info("Card issue %s reported %s", issue.id, status.value)
        except CloudApiRejectedError as exc:
            logger.warning("Cloud rejected result for card issue %s: %s", issue.id, exc)
        except CloudApiError as exc:
            logger.warning("Parking result for card issue %s in outbox: %s", issue.id, exc)
            self._outbox.add(
                card_issue_id=issue.id,
                status=status,
                created_at=utc_now_iso(),
                error_message=error_message,
                result=result,
            )

    def _log_event(self, event_type: str, payload: dict[str, Any], card_issue_id: str) -> None:
        try:
            self._cloud.log_device_event(event_type, payload, card_issue_id)
        except CloudApiError as exc:
            logger.warning("Device event %s not delivered: %s", event_type, exc)
