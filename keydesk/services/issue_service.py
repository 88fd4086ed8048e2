"""Durable card-issue queue: enqueue, claim, report, retry and reconcile."""

from __future__ import annotations

import uuid
from typing import Any, Optional

from keydesk.domain.constraints import can_transition_issue
from keydesk.domain.models import (
    CARD_SEQUENCE,
    AgentStatus,
    BookingData,
    CardIssue,
    CardType,
    ClaimResult,
    IssueStatus,
    ReconciliationReport,
)
from keydesk.repository.data_repository import DataRepository
from keydesk.services.agent_service import AgentNotFoundError, AgentRegistry
from keydesk.utils.clock import seconds_ago_iso, utc_now_iso
from keydesk.utils.config import Settings, get_settings
from keydesk.utils.logger import get_logger


logger = get_logger(__name__)

NO_ONLINE_AGENT_MESSAGE = "No online agent available for hotel"
AGENT_WENT_OFFLINE_MESSAGE = "Agent went offline while programming"
DEFAULT_FAILURE_MESSAGE = "Programming failed"


class CardIssueError(Exception):
    """Base card issue failure."""


class CardIssueValidationError(CardIssueError):
    """Raised when card issue inputs are invalid."""


class CardIssueNotFoundError(CardIssueError):
    """Raised when a card issue id is unknown."""


class InvalidIssueTransitionError(CardIssueError):
    """Raised when a status change breaks the issue lifecycle."""


class ConcurrentIssueUpdateError(CardIssueError):
    """Raised when another actor changed the issue between read and write."""


class CardIssueOwnershipError(CardIssueError):
    """Raised when an agent reports on an issue claimed by a different agent."""


class CardIssueService:
    """Cloud-side store of card-programming work consumed asynchronously by agents."""

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        agent_registry: Optional[AgentRegistry] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)
        self._agents = agent_registry or AgentRegistry(
            repository=self._repository,
            settings=self._settings,
        )

    def _require_issue(self, issue_id: str) -> CardIssue:
        issue = self._repository.get_card_issue(issue_id)
        if issue is None:
            raise CardIssueNotFoundError(f"Card issue {issue_id} not found")
        return issue

    def routing_status(self, hotel_id: str) -> bool:
        """Whether any desk at the hotel can pick up queued work right now."""
        return self._agents.has_online_agent(hotel_id)

    def create_card_issue(
        self,
        hotel_id: str,
        booking_id: Optional[str],
        card_type: CardType | str,
        payload: dict[str, Any],
        room_number: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> CardIssue:
        if not hotel_id or not hotel_id.strip():
            raise CardIssueValidationError("hotel_id is required")
        try:
            resolved_type = CardType(card_type)
        except ValueError as exc:
            raise CardIssueValidationError(f"Unknown card type: {card_type}") from exc
        if not payload:
            raise CardIssueValidationError("payload is required")
        if agent_id is not None:
            try:
                agent = self._agents.get_agent(agent_id)
            except AgentNotFoundError as exc:
                raise CardIssueValidationError(str(exc)) from exc
            if agent.hotel_id != hotel_id:
                raise CardIssueValidationError(f"Agent {agent_id} does not belong to hotel {hotel_id}")

        issue = self._repository.insert_card_issue(
            issue_id=str(uuid.uuid4()),
            hotel_id=hotel_id,
            booking_id=booking_id,
            room_number=room_number,
            card_type=resolved_type,
            payload=dict(payload),
            agent_id=agent_id,
            created_at=utc_now_iso(),
        )
        logger.info(
            "Card issue %s created for booking %s (%s)",
            issue.id,
            booking_id,
            resolved_type.value,
        )
        if not self.routing_status(hotel_id):
            logger.warning(
                "Card issue %s queued while no agent is online for hotel %s",
                issue.id,
                hotel_id,
            )
        return issue

    def create_issues_for_booking(self, hotel_id: str, booking: BookingData) -> list[CardIssue]:
        """Enqueue one issue per card type, in sequence order."""
        return [
            self.create_card_issue(
                hotel_id=hotel_id,
                booking_id=booking.booking_id,
                card_type=card_type,
                payload=booking.to_write_payload(card_type),
                room_number=booking.room_number,
            )
            for card_type in CARD_SEQUENCE
        ]

    def get_card_issue(self, issue_id: str) -> CardIssue:
        return self._require_issue(issue_id)

    def list_card_issues(
        self,
        hotel_id: Optional[str] = None,
        status: Optional[IssueStatus] = None,
        agent_id: Optional[str] = None,
        booking_id: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[CardIssue]:
        if not hotel_id and not agent_id:
            raise CardIssueValidationError("hotel or agent filter is required")
        resolved_limit = limit or self._settings.issue_list_default_limit
        if resolved_limit <= 0 or offset < 0:
            raise CardIssueValidationError("limit must be > 0 and offset >= 0")
        return self._repository.list_card_issues(
            hotel_id=hotel_id,
            statuses=(status,) if status is not None else (),
            agent_id=agent_id,
            booking_id=booking_id,
            limit=min(resolved_limit, self._settings.issue_list_max_limit),
            offset=offset,
        )

    def update_card_issue_status(
        self,
        issue_id: str,
        status: IssueStatus,
        error_message: Optional[str] = None,
        result: Optional[dict[str, Any]] = None,
        agent_id: Optional[str] = None,
    ) -> CardIssue:
        current = self._require_issue(issue_id)

        if current.status == IssueStatus.FAILED and status == IssueStatus.PENDING:
            return self.retry_card_issue(issue_id)
        if not can_transition_issue(current.status, status):
            raise InvalidIssueTransitionError(
                f"Card issue {issue_id} cannot move from {current.status.value} to {status.value}"
            )
        if agent_id is not None:
            if current.agent_id not in (None, agent_id):
                raise CardIssueOwnershipError(
                    f"Card issue {issue_id} is owned by agent {current.agent_id}"
                )
            if self._agents.get_agent(agent_id).hotel_id != current.hotel_id:
                raise CardIssueOwnershipError(
                    f"Agent {agent_id} cannot report on issues of hotel {current.hotel_id}"
                )

        if status == IssueStatus.IN_PROGRESS:
            if agent_id is None:
                raise CardIssueValidationError("agent_id is required to start a card issue")
            claim = self.claim_card_issue(issue_id, agent_id)
            if not claim.claimed:
                raise ConcurrentIssueUpdateError(f"Card issue {issue_id} was already claimed")
            return claim.issue or self._require_issue(issue_id)

        if status == IssueStatus.FAILED and not error_message:
            error_message = DEFAULT_FAILURE_MESSAGE
        now = utc_now_iso()
        completed_at = now if status in (IssueStatus.DONE, IssueStatus.FAILED) else None
        updated = self._repository.compare_and_set_issue_status(
            issue_id=issue_id,
            expected_status=current.status,
            new_status=status,
            updated_at=now,
            error_message=error_message,
            result=result,
            agent_id=agent_id,
            completed_at=completed_at,
        )
        if not updated:
            raise ConcurrentIssueUpdateError(f"Card issue {issue_id} changed concurrently")
        logger.info(
            "Card issue %s moved %s -> %s",
            issue_id,
            current.status.value,
            status.value,
        )
        return self._require_issue(issue_id)

    def retry_card_issue(self, issue_id: str) -> CardIssue:
        """Replay a failed issue exactly as originally submitted."""
        current = self._require_issue(issue_id)
        if current.status != IssueStatus.FAILED:
            raise InvalidIssueTransitionError(
                f"Only failed card issues can be retried (issue {issue_id} is {current.status.value})"
            )
        if not self._repository.reset_failed_issue(issue_id, utc_now_iso()):
            raise ConcurrentIssueUpdateError(f"Card issue {issue_id} changed concurrently")
        logger.info("Card issue %s queued for retry", issue_id)
        return self._require_issue(issue_id)

    def claim_card_issue(self, issue_id: str, agent_id: str) -> ClaimResult:
        agent = self._agents.get_agent(agent_id)
        issue = self._require_issue(issue_id)
        if issue.hotel_id != agent.hotel_id:
            raise CardIssueOwnershipError(
                f"Agent {agent_id} cannot claim issues of hotel {issue.hotel_id}"
            )
        claimed = self._repository.claim_card_issue(issue_id, agent_id, utc_now_iso())
        current = self._require_issue(issue_id)
        if claimed:
            logger.info("Card issue %s claimed by agent %s", issue_id, agent_id)
        else:
            logger.info(
                "Agent %s lost claim on card issue %s (status %s, owner %s)",
                agent_id,
                issue_id,
                current.status.value,
                current.agent_id,
            )
        return ClaimResult(claimed=claimed, issue=current)

    def claim_next_card_issue(self, agent_id: str) -> Optional[CardIssue]:
        agent = self._agents.get_agent(agent_id)
        for issue_id in self._repository.list_claimable_issue_ids(agent.hotel_id, agent_id):
            if self._repository.claim_card_issue(issue_id, agent_id, utc_now_iso()):
                logger.info("Card issue %s claimed by agent %s", issue_id, agent_id)
                return self._require_issue(issue_id)
        return None

    def dispatch_pending_issues(self, hotel_id: str) -> list[CardIssue]:
        """Route unassigned pending issues to the least-loaded online agent."""
        online = self._agents.online_agents(hotel_id)
        if not online:
            logger.info("No online agent to dispatch to for hotel %s", hotel_id)
            return []
        loads = {agent.id: agent.queue_length for agent in online}
        dispatched: list[CardIssue] = []
        for issue_id in self._repository.list_unassigned_pending_issue_ids(hotel_id):
            target = min(loads, key=lambda agent_id: (loads[agent_id], agent_id))
            if self._repository.assign_issue_to_agent(issue_id, target, utc_now_iso()):
                loads[target] += 1
                dispatched.append(self._require_issue(issue_id))
        if dispatched:
            logger.info("Dispatched %s card issues for hotel %s", len(dispatched), hotel_id)
        return dispatched

    def reconcile(self, hotel_id: str) -> ReconciliationReport:
        """Fail work that no desk can finish so staff can retry or go synchronous."""
        agents = {agent.id: agent for agent in self._agents.get_agents(hotel_id)}
        any_online = any(agent.status == AgentStatus.ONLINE for agent in agents.values())
        report = ReconciliationReport(hotel_id=hotel_id)

        cutoff = seconds_ago_iso(self._settings.issue_unclaimed_timeout_seconds)
        for issue in self._repository.list_unclaimed_issues_before(hotel_id, cutoff):
            assigned = agents.get(issue.agent_id) if issue.agent_id else None
            if issue.agent_id is None and any_online:
                continue
            if assigned is not None and assigned.status == AgentStatus.ONLINE:
                continue
            if self._fail_quietly(issue, NO_ONLINE_AGENT_MESSAGE):
                report.unroutable_failed.append(issue.id)

        for issue in self._repository.list_in_progress_issues(hotel_id):
            owner = agents.get(issue.agent_id) if issue.agent_id else None
            if owner is not None and owner.status == AgentStatus.ONLINE:
                continue
            if self._fail_quietly(issue, AGENT_WENT_OFFLINE_MESSAGE):
                report.orphaned_failed.append(issue.id)

        if report.total_failed:
            logger.warning(
                "Reconciliation failed %s card issues for hotel %s",
                report.total_failed,
                hotel_id,
            )
        return report

    def _fail_quietly(self, issue: CardIssue, message: str) -> bool:
        """CAS an issue to failed; losing the race to its agent is not an error."""
        now = utc_now_iso()
        return self._repository.compare_and_set_issue_status(
            issue_id=issue.id,
            expected_status=issue.status,
            new_status=IssueStatus.FAILED,
            updated_at=now,
            error_message=message,
            completed_at=now,
        )
