"""HTTP controller layer for desk agents: pairing, liveness and claim/report."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from keydesk.controllers.dependencies import get_agent_registry, get_issue_service, require_agent
from keydesk.controllers.provisioning_controller import (
    ISSUE_ERRORS,
    CardIssueResponse,
    raise_for_issue_error,
)
from keydesk.domain.models import Agent, AgentStatus, Device, DeviceLogEntry, IssueStatus
from keydesk.services.agent_service import (
    AgentConflictError,
    AgentNotFoundError,
    AgentRegistry,
    AgentRegistryError,
    PairingTokenError,
)
from keydesk.services.issue_service import CardIssueService
from keydesk.utils.logger import get_logger


logger = get_logger(__name__)

router = APIRouter(tags=["agents"])


class AgentResponse(BaseModel):
    id: str
    hotel_id: str
    name: str
    status: AgentStatus
    last_seen_at: Optional[str] = None
    paired_at: Optional[str] = None
    queue_length: int = Field(ge=0)

    @classmethod
    def from_agent(cls, agent: Agent) -> "AgentResponse":
        return cls(
            id=agent.id,
            hotel_id=agent.hotel_id,
            name=agent.name,
            status=agent.status,
            last_seen_at=agent.last_seen_at,
            paired_at=agent.paired_at,
            queue_length=agent.queue_length,
        )


class GeneratePairingRequest(BaseModel):
    hotel_id: str = Field(min_length=1)
    agent_name: str = Field(min_length=1)


class GeneratePairingResponse(BaseModel):
    token: str
    hotel_id: str
    agent_name: str
    expires_at: str


class DeviceInfo(BaseModel):
    """Encoder attached to the desk being paired, as reported by the agent."""

    model: Optional[str] = Field(default=None, max_length=120)
    serial: Optional[str] = Field(default=None, max_length=120)
    vendor: Optional[str] = Field(default=None, max_length=120)


class ConfirmPairingRequest(BaseModel):
    token: str = Field(min_length=1)
    fingerprint: str = Field(min_length=1)
    agent_name: str = Field(default="", max_length=120)
    device_info: Optional[DeviceInfo] = None


class ConfirmPairingResponse(BaseModel):
    agent: AgentResponse
    agent_token: str


class ClaimRequest(BaseModel):
    issue_id: Optional[str] = Field(default=None, min_length=1)


class ClaimResponse(BaseModel):
    claimed: bool
    issue: Optional[CardIssueResponse] = None


class AgentStatusReport(BaseModel):
    status: IssueStatus
    error_message: Optional[str] = None
    result: Optional[dict[str, Any]] = None


class DeviceResponse(BaseModel):
    id: int
    agent_id: str
    model: str
    serial: Optional[str] = None
    vendor: Optional[str] = None
    connected: bool
    last_used: Optional[str] = None
    created_at: str

    @classmethod
    def from_device(cls, device: Device) -> "DeviceResponse":
        return cls(
            id=device.id,
            agent_id=device.agent_id,
            model=device.model,
            serial=device.serial,
            vendor=device.vendor,
            connected=device.connected,
            last_used=device.last_used,
            created_at=device.created_at,
        )


class DeviceLogRequest(BaseModel):
    event_type: str = Field(min_length=1, max_length=64)
    payload: dict[str, Any] = Field(default_factory=dict)
    card_issue_id: Optional[str] = None


class DeviceLogResponse(BaseModel):
    id: int
    agent_id: str
    event_type: str
    payload: dict[str, Any]
    card_issue_id: Optional[str] = None
    created_at: str

    @classmethod
    def from_entry(cls, entry: DeviceLogEntry) -> "DeviceLogResponse":
        return cls(
            id=entry.id,
            agent_id=entry.agent_id,
            event_type=entry.event_type,
            payload=entry.payload,
            card_issue_id=entry.card_issue_id,
            created_at=entry.created_at,
        )


@router.get(
    "/agents",
    response_model=list[AgentResponse],
    status_code=status.HTTP_200_OK,
)
async def get_agents(
    hotel: str = Query(min_length=1),
    status_filter: Optional[AgentStatus] = Query(default=None, alias="status"),
    registry: AgentRegistry = Depends(get_agent_registry),
) -> list[AgentResponse]:
    """Agents of a hotel with liveness computed at read time."""
    return [
        AgentResponse.from_agent(agent)
        for agent in registry.get_agents(hotel, status=status_filter)
    ]


@router.get(
    "/agents/{agent_id}/logs",
    response_model=list[DeviceLogResponse],
    status_code=status.HTTP_200_OK,
)
async def list_device_logs(
    agent_id: str,
    limit: int = Query(default=50, gt=0, le=500),
    registry: AgentRegistry = Depends(get_agent_registry),
) -> list[DeviceLogResponse]:
    try:
        return [DeviceLogResponse.from_entry(entry) for entry in registry.list_device_logs(agent_id, limit)]
    except AgentNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.get(
    "/devices",
    response_model=list[DeviceResponse],
    status_code=status.HTTP_200_OK,
)
async def list_devices(
    agent: Optional[str] = Query(default=None),
    hotel: Optional[str] = Query(default=None),
    registry: AgentRegistry = Depends(get_agent_registry),
) -> list[DeviceResponse]:
    """Encoders by agent, or across every agent of a hotel; most recently used first."""
    try:
        devices = registry.list_devices(agent_id=agent, hotel_id=hotel)
    except AgentRegistryError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return [DeviceResponse.from_device(device) for device in devices]


@router.post(
    "/pairing/generate",
    response_model=GeneratePairingResponse,
    status_code=status.HTTP_201_CREATED,
)
async def generate_pairing_token(
    payload: GeneratePairingRequest,
    registry: AgentRegistry = Depends(get_agent_registry),
) -> GeneratePairingResponse:
    try:
        token = registry.generate_pairing_token(payload.hotel_id, payload.agent_name)
    except AgentRegistryError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return GeneratePairingResponse(
        token=token.token,
        hotel_id=token.hotel_id,
        agent_name=token.agent_name,
        expires_at=token.expires_at,
    )


@router.post(
    "/pairing/confirm",
    response_model=ConfirmPairingResponse,
    status_code=status.HTTP_201_CREATED,
)
async def confirm_pairing(
    payload: ConfirmPairingRequest,
    registry: AgentRegistry = Depends(get_agent_registry),
) -> ConfirmPairingResponse:
    try:
        paired = registry.confirm_pairing(
            payload.token,
            payload.fingerprint,
            payload.agent_name,
            device_info=payload.device_info.model_dump() if payload.device_info else None,
        )
    except PairingTokenError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    except AgentConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except Exception as exc:  # pragma: no cover - defensive fallback
        logger.exception("Unexpected pairing failure")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to pair agent",
        ) from exc
    return ConfirmPairingResponse(
        agent=AgentResponse.from_agent(paired.agent),
        agent_token=paired.agent_token,
    )


@router.post(
    "/agents/{agent_id}/heartbeat",
    response_model=AgentResponse,
    status_code=status.HTTP_200_OK,
)
async def heartbeat(
    agent: Agent = Depends(require_agent),
    registry: AgentRegistry = Depends(get_agent_registry),
) -> AgentResponse:
    try:
        return AgentResponse.from_agent(registry.heartbeat(agent.id))
    except AgentNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc


@router.post(
    "/agents/{agent_id}/log",
    response_model=DeviceLogResponse,
    status_code=status.HTTP_201_CREATED,
)
async def log_device_event(
    payload: DeviceLogRequest,
    agent: Agent = Depends(require_agent),
    registry: AgentRegistry = Depends(get_agent_registry),
) -> DeviceLogResponse:
    try:
        entry = registry.log_device_event(
            agent.id,
            payload.event_type,
            payload.payload,
            card_issue_id=payload.card_issue_id,
        )
    except AgentNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return DeviceLogResponse.from_entry(entry)


@router.post(
    "/agents/{agent_id}/claim",
    response_model=ClaimResponse,
    status_code=status.HTTP_200_OK,
)
async def claim_card_issue(
    payload: Optional[ClaimRequest] = None,
    agent: Agent = Depends(require_agent),
    service: CardIssueService = Depends(get_issue_service),
) -> ClaimResponse:
    """Claim a specific issue, or the oldest claimable one when none is named."""
    try:
        if payload is not None and payload.issue_id:
            result = service.claim_card_issue(payload.issue_id, agent.id)
            issue = result.issue if result.claimed else None
        else:
            issue = service.claim_next_card_issue(agent.id)
    except ISSUE_ERRORS as exc:
        raise_for_issue_error(exc)
    return ClaimResponse(
        claimed=issue is not None,
        issue=CardIssueResponse.from_issue(issue) if issue is not None else None,
    )


@router.patch(
    "/agents/{agent_id}/card-issues/{issue_id}/status",
    response_model=CardIssueResponse,
    status_code=status.HTTP_200_OK,
)
async def report_card_issue_status(
    issue_id: str,
    payload: AgentStatusReport,
    agent: Agent = Depends(require_agent),
    service: CardIssueService = Depends(get_issue_service),
) -> CardIssueResponse:
    try:
        issue = service.update_card_issue_status(
            issue_id,
            payload.status,
            error_message=payload.error_message,
            result=payload.result,
            agent_id=agent.id,
        )
    except ISSUE_ERRORS as exc:
        raise_for_issue_error(exc)
    return CardIssueResponse.from_issue(issue)
