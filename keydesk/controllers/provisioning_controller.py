"""HTTP controller layer for attended card sequences and the card issue queue."""

from __future__ import annotations

import asyncio
from typing import Any, NoReturn, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field, field_validator

from keydesk.controllers.dependencies import (
    get_health_monitor,
    get_issue_service,
    get_orchestrator,
)
from keydesk.domain.models import (
    BookingData,
    CardIssue,
    CardState,
    CardStatus,
    CardType,
    IssueStatus,
    ProgressEvent,
    SequenceOutcome,
    SequenceResult,
)
from keydesk.services.agent_service import AgentNotFoundError
from keydesk.services.bridge_client import AgentProtocolError
from keydesk.services.health_service import BridgeHealthMonitor, BridgeUnavailableError
from keydesk.services.issue_service import (
    CardIssueNotFoundError,
    CardIssueOwnershipError,
    CardIssueService,
    CardIssueValidationError,
    ConcurrentIssueUpdateError,
    InvalidIssueTransitionError,
)
from keydesk.services.sequence_service import (
    CardSequenceOrchestrator,
    SequenceInProgressError,
    SequenceRun,
    SequenceRunNotFoundError,
)
from keydesk.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["provisioning"])

RUN_POLL_SECONDS = 0.1


class BridgeStatusResponse(BaseModel):
    service_up: bool
    reader_connected: bool
    ready: bool
    checked_at: str


class ReconnectResponse(BaseModel):
    ok: bool
    service_up: bool
    reader_connected: bool


class BookingRequest(BaseModel):
    """Booking fields written onto every card of the sequence."""

    booking_id: str = Field(min_length=1)
    room_number: str = Field(min_length=1)
    guest_id: str = Field(min_length=1)
    check_in: str = Field(min_length=1)
    check_out: str = Field(min_length=1)
    facility_id: str = Field(min_length=1)

    @field_validator("booking_id", "room_number", "guest_id", "facility_id")
    @classmethod
    def validate_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("value must be non-empty")
        return value.strip()

    def to_booking(self) -> BookingData:
        return BookingData(
            booking_id=self.booking_id,
            room_number=self.room_number,
            guest_id=self.guest_id,
            check_in=self.check_in,
            check_out=self.check_out,
            facility_id=self.facility_id,
        )


class CardResultResponse(BaseModel):
    card_type: CardType
    status: CardStatus
    error: Optional[str] = None
    card_uid: Optional[str] = None
    timestamp: Optional[str] = None

    @classmethod
    def from_state(cls, state: CardState) -> "CardResultResponse":
        return cls(
            card_type=state.card_type,
            status=state.status,
            error=state.error,
            card_uid=state.card_uid,
            timestamp=state.timestamp,
        )


class ProgressEventResponse(BaseModel):
    sequence: int = Field(gt=0)
    card_type: CardType
    card_index: int = Field(ge=0)
    total_cards: int = Field(gt=0)
    status: CardStatus
    overall_progress: float = Field(ge=0.0, le=100.0)
    message: str
    stalled: bool = False

    @classmethod
    def from_event(cls, event: ProgressEvent) -> "ProgressEventResponse":
        return cls(
            sequence=event.sequence,
            card_type=event.card_type,
            card_index=event.card_index,
            total_cards=event.total_cards,
            status=event.status,
            overall_progress=event.overall_progress,
            message=event.message,
            stalled=event.stalled,
        )


class SequenceResponse(BaseModel):
    success: bool
    completed_cards: int = Field(ge=0)
    total_cards: int = Field(ge=0)
    outcome: SequenceOutcome
    message: str
    results: list[CardResultResponse]
    events: list[ProgressEventResponse]

    @classmethod
    def from_result(
        cls,
        result: SequenceResult,
        events: tuple[ProgressEvent, ...] = (),
    ) -> "SequenceResponse":
        return cls(
            success=result.success,
            completed_cards=result.completed_cards,
            total_cards=result.total_cards,
            outcome=result.outcome,
            message=result.message,
            results=[CardResultResponse.from_state(state) for state in result.results],
            events=[ProgressEventResponse.from_event(event) for event in events],
        )


class SequenceRunResponse(BaseModel):
    """Snapshot of a background run; `events` holds only those after the caller's cursor."""

    run_id: str
    booking_id: str
    state: str
    abandon_requested: bool
    overall_progress: float = Field(ge=0.0, le=100.0)
    instruction: Optional[str] = None
    stall_notice: Optional[str] = None
    last_sequence: int = Field(ge=0)
    events: list[ProgressEventResponse]
    result: Optional[SequenceResponse] = None
    error: Optional[str] = None

    @classmethod
    def from_run(cls, run: SequenceRun, after: int = 0) -> "SequenceRunResponse":
        events = run.channel.events()
        latest = events[-1] if events else None
        instruction = next((event.message for event in reversed(events) if not event.stalled), None)
        return cls(
            run_id=run.run_id,
            booking_id=run.booking_id,
            state=run.state,
            abandon_requested=run.abandon.is_set(),
            overall_progress=latest.overall_progress if latest else 0.0,
            instruction=instruction,
            stall_notice=latest.message if latest and latest.stalled else None,
            last_sequence=latest.sequence if latest else 0,
            events=[ProgressEventResponse.from_event(event) for event in events if event.sequence > after],
            result=SequenceResponse.from_result(run.result) if run.result is not None else None,
            error=str(run.error) if run.error is not None else None,
        )


class CardIssueResponse(BaseModel):
    id: str
    hotel_id: str
    booking_id: Optional[str] = None
    room_number: Optional[str] = None
    card_type: CardType
    status: IssueStatus
    payload: dict[str, Any]
    result: Optional[dict[str, Any]] = None
    error_message: Optional[str] = None
    agent_id: Optional[str] = None
    retry_count: int = Field(ge=0)
    created_at: str
    updated_at: str
    completed_at: Optional[str] = None

    @classmethod
    def from_issue(cls, issue: CardIssue) -> "CardIssueResponse":
        return cls(
            id=issue.id,
            hotel_id=issue.hotel_id,
            booking_id=issue.booking_id,
            room_number=issue.room_number,
            card_type=issue.card_type,
            status=issue.status,
            payload=issue.payload,
            result=issue.result,
            error_message=issue.error_message,
            agent_id=issue.agent_id,
            retry_count=issue.retry_count,
            created_at=issue.created_at,
            updated_at=issue.updated_at,
            completed_at=issue.completed_at,
        )


class CreateCardIssueRequest(BaseModel):
    hotel_id: str = Field(min_length=1)
    card_type: CardType
    payload: dict[str, Any]
    booking_id: Optional[str] = None
    room_number: Optional[str] = None
    agent_id: Optional[str] = None

    @field_validator("payload")
    @classmethod
    def validate_payload(cls, value: dict[str, Any]) -> dict[str, Any]:
        if not value:
            raise ValueError("payload must be non-empty")
        return value


class CreateCardIssueResponse(BaseModel):
    issue: CardIssueResponse
    agent_online: bool


class CreateBookingIssuesRequest(BaseModel):
    hotel_id: str = Field(min_length=1)
    booking: BookingRequest


class CreateBookingIssuesResponse(BaseModel):
    issues: list[CardIssueResponse]
    agent_online: bool


class UpdateCardIssueStatusRequest(BaseModel):
    status: IssueStatus
    error_message: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    agent_id: Optional[str] = None


class HotelRequest(BaseModel):
    hotel_id: str = Field(min_length=1)


class ReconciliationResponse(BaseModel):
    hotel_id: str
    unroutable_failed: list[str]
    orphaned_failed: list[str]
    total_failed: int = Field(ge=0)


def raise_for_issue_error(exc: Exception) -> NoReturn:
    """Map card issue service failures onto HTTP errors."""
    if isinstance(exc, (CardIssueNotFoundError, AgentNotFoundError)):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    if isinstance(exc, CardIssueValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    if isinstance(exc, CardIssueOwnershipError):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc
    if isinstance(exc, (InvalidIssueTransitionError, ConcurrentIssueUpdateError)):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    raise exc


ISSUE_ERRORS = (
    CardIssueNotFoundError,
    AgentNotFoundError,
    CardIssueValidationError,
    CardIssueOwnershipError,
    InvalidIssueTransitionError,
    ConcurrentIssueUpdateError,
)


@router.get(
    "/bridge/status",
    response_model=BridgeStatusResponse,
    status_code=status.HTTP_200_OK,
)
def bridge_status(
    monitor: BridgeHealthMonitor = Depends(get_health_monitor),
) -> BridgeStatusResponse:
    snapshot = monitor.snapshot()
    return BridgeStatusResponse(
        service_up=snapshot.service_up,
        reader_connected=snapshot.reader_connected,
        ready=snapshot.ready,
        checked_at=snapshot.checked_at,
    )


@router.post(
    "/bridge/reconnect",
    response_model=ReconnectResponse,
    status_code=status.HTTP_200_OK,
)
def bridge_reconnect(
    monitor: BridgeHealthMonitor = Depends(get_health_monitor),
) -> ReconnectResponse:
    """Operator-triggered reader reconnect; never retried automatically."""
    ok = monitor.reconnect_reader()
    snapshot = monitor.latest()
    return ReconnectResponse(
        ok=ok,
        service_up=bool(snapshot and snapshot.service_up),
        reader_connected=bool(snapshot and snapshot.reader_connected),
    )


@router.get("/local-agent/status", status_code=status.HTTP_200_OK)
def local_agent_status(
    monitor: BridgeHealthMonitor = Depends(get_health_monitor),
) -> dict[str, Any]:
    return monitor.client.get_status_details()


def _start_run(orchestrator: CardSequenceOrchestrator, booking: BookingData) -> SequenceRun:
    try:
        return orchestrator.start_sequence(booking)
    except BridgeUnavailableError as exc:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(exc),
        ) from exc
    except SequenceInProgressError as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=str(exc),
        ) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected failure starting a card sequence")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to start card sequence",
        ) from exc


def _get_run(orchestrator: CardSequenceOrchestrator, run_id: str) -> SequenceRun:
    try:
        return orchestrator.get_run(run_id)
    except SequenceRunNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.post(
    "/sequences",
    response_model=SequenceResponse,
    status_code=status.HTTP_200_OK,
)
async def program_sequence(
    payload: BookingRequest,
    request: Request,
    orchestrator: CardSequenceOrchestrator = Depends(get_orchestrator),
) -> SequenceResponse:
    """Run the full attended sequence and answer once every card resolves.

    A caller that hangs up abandons the run, which frees the desk.
    """
    run = await run_in_threadpool(_start_run, orchestrator, payload.to_booking())
    while not run.done.is_set():
        if not run.abandon.is_set() and await request.is_disconnected():
            logger.warning("Caller disconnected from sequence run %s", run.run_id)
            orchestrator.abandon_run(run.run_id)
        await asyncio.sleep(RUN_POLL_SECONDS)

    if isinstance(run.error, AgentProtocolError):
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=str(run.error),
        ) from run.error
    if run.error is not None or run.result is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to program card sequence",
        ) from run.error
    return SequenceResponse.from_result(run.result, run.channel.events())


@router.post(
    "/sequences/runs",
    response_model=SequenceRunResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_sequence_run(
    payload: BookingRequest,
    orchestrator: CardSequenceOrchestrator = Depends(get_orchestrator),
) -> SequenceRunResponse:
    """Start the attended sequence in the background; poll the run for progress."""
    run = await run_in_threadpool(_start_run, orchestrator, payload.to_booking())
    return SequenceRunResponse.from_run(run)


@router.get(
    "/sequences/runs/{run_id}",
    response_model=SequenceRunResponse,
    status_code=status.HTTP_200_OK,
)
async def get_sequence_run(
    run_id: str,
    after: int = Query(default=0, ge=0),
    orchestrator: CardSequenceOrchestrator = Depends(get_orchestrator),
) -> SequenceRunResponse:
    return SequenceRunResponse.from_run(_get_run(orchestrator, run_id), after=after)


@router.post(
    "/sequences/runs/{run_id}/abandon",
    response_model=SequenceRunResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def abandon_sequence_run(
    run_id: str,
    orchestrator: CardSequenceOrchestrator = Depends(get_orchestrator),
) -> SequenceRunResponse:
    """Stop a run at its next card boundary; a write already in flight completes."""
    try:
        run = orchestrator.abandon_run(run_id)
    except SequenceRunNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return SequenceRunResponse.from_run(run)


@router.post(
    "/card-issues",
    response_model=CreateCardIssueResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_card_issue(
    payload: CreateCardIssueRequest,
    service: CardIssueService = Depends(get_issue_service),
) -> CreateCardIssueResponse:
    try:
        issue = service.create_card_issue(
            hotel_id=payload.hotel_id,
            booking_id=payload.booking_id,
            card_type=payload.card_type,
            payload=payload.payload,
            room_number=payload.room_number,
            agent_id=payload.agent_id,
        )
        return CreateCardIssueResponse(
            issue=CardIssueResponse.from_issue(issue),
            agent_online=service.routing_status(payload.hotel_id),
        )
    except ISSUE_ERRORS as exc:
        raise_for_issue_error(exc)
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected card issue creation failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create card issue",
        ) from exc


@router.post(
    "/card-issues/bookings",
    response_model=CreateBookingIssuesResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_booking_card_issues(
    payload: CreateBookingIssuesRequest,
    service: CardIssueService = Depends(get_issue_service),
) -> CreateBookingIssuesResponse:
    """Queue the full card sequence of a booking for asynchronous programming."""
    try:
        issues = service.create_issues_for_booking(payload.hotel_id, payload.booking.to_booking())
        return CreateBookingIssuesResponse(
            issues=[CardIssueResponse.from_issue(issue) for issue in issues],
            agent_online=service.routing_status(payload.hotel_id),
        )
    except ISSUE_ERRORS as exc:
        raise_for_issue_error(exc)


@router.get(
    "/card-issues",
    response_model=list[CardIssueResponse],
    status_code=status.HTTP_200_OK,
)
async def list_card_issues(
    hotel: Optional[str] = Query(default=None, min_length=1),
    status_filter: Optional[IssueStatus] = Query(default=None, alias="status"),
    agent_id: Optional[str] = Query(default=None, min_length=1),
    booking_id: Optional[str] = Query(default=None, min_length=1),
    limit: Optional[int] = Query(default=None, gt=0),
    offset: int = Query(default=0, ge=0),
    service: CardIssueService = Depends(get_issue_service),
) -> list[CardIssueResponse]:
    try:
        issues = service.list_card_issues(
            hotel_id=hotel,
            status=status_filter,
            agent_id=agent_id,
            booking_id=booking_id,
            limit=limit,
            offset=offset,
        )
        return [CardIssueResponse.from_issue(issue) for issue in issues]
    except ISSUE_ERRORS as exc:
        raise_for_issue_error(exc)


@router.post(
    "/card-issues/dispatch",
    response_model=list[CardIssueResponse],
    status_code=status.HTTP_200_OK,
)
async def dispatch_card_issues(
    payload: HotelRequest,
    service: CardIssueService = Depends(get_issue_service),
) -> list[CardIssueResponse]:
    issues = service.dispatch_pending_issues(payload.hotel_id)
    return [CardIssueResponse.from_issue(issue) for issue in issues]


@router.post(
    "/card-issues/reconcile",
    response_model=ReconciliationResponse,
    status_code=status.HTTP_200_OK,
)
async def reconcile_card_issues(
    payload: HotelRequest,
    service: CardIssueService = Depends(get_issue_service),
) -> ReconciliationResponse:
    report = service.reconcile(payload.hotel_id)
    return ReconciliationResponse(
        hotel_id=report.hotel_id,
        unroutable_failed=report.unroutable_failed,
        orphaned_failed=report.orphaned_failed,
        total_failed=report.total_failed,
    )


@router.get(
    "/card-issues/{issue_id}",
    response_model=CardIssueResponse,
    status_code=status.HTTP_200_OK,
)
async def get_card_issue(
    issue_id: str,
    service: CardIssueService = Depends(get_issue_service),
) -> CardIssueResponse:
    try:
        return CardIssueResponse.from_issue(service.get_card_issue(issue_id))
    except ISSUE_ERRORS as exc:
        raise_for_issue_error(exc)


@router.patch(
    "/card-issues/{issue_id}/status",
    response_model=CardIssueResponse,
    status_code=status.HTTP_200_OK,
)
async def update_card_issue_status(
    issue_id: str,
    payload: UpdateCardIssueStatusRequest,
    service: CardIssueService = Depends(get_issue_service),
) -> CardIssueResponse:
    try:
        issue = service.update_card_issue_status(
            issue_id,
            payload.status,
            error_message=payload.error_message,
            result=payload.result,
            agent_id=payload.agent_id,
        )
        return CardIssueResponse.from_issue(issue)
    except ISSUE_ERRORS as exc:
        raise_for_issue_error(exc)


@router.post(
    "/card-issues/{issue_id}/retry",
    response_model=CardIssueResponse,
    status_code=status.HTTP_200_OK,
)
async def retry_card_issue(
    issue_id: str,
    service: CardIssueService = Depends(get_issue_service),
) -> CardIssueResponse:
    """Requeue a failed issue with its original payload."""
    try:
        return CardIssueResponse.from_issue(service.retry_card_issue(issue_id))
    except ISSUE_ERRORS as exc:
        raise_for_issue_error(exc)
