"""Shared FastAPI dependency providers for controller layer."""

from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Path, Request, status

from keydesk.domain.models import Agent
from keydesk.services.agent_service import (
    AgentAuthenticationError,
    AgentNotFoundError,
    AgentRegistry,
)
from keydesk.services.health_service import BridgeHealthMonitor
from keydesk.services.issue_service import CardIssueService
from keydesk.services.sequence_service import CardSequenceOrchestrator


def _from_state(request: Request, name: str, label: str):
    service = getattr(request.app.state, name, None)
    if service is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{label} is not initialized",
        )
    return service


def get_health_monitor(request: Request) -> BridgeHealthMonitor:
    return _from_state(request, "health_monitor", "Bridge health monitor")


def get_orchestrator(request: Request) -> CardSequenceOrchestrator:
    return _from_state(request, "orchestrator", "Card sequence orchestrator")


def get_issue_service(request: Request) -> CardIssueService:
    return _from_state(request, "issue_service", "Card issue service")


def get_agent_registry(request: Request) -> AgentRegistry:
    return _from_state(request, "agent_registry", "Agent registry")


async def require_agent(
    agent_id: str = Path(min_length=1),
    x_agent_token: str | None = Header(default=None),
    registry: AgentRegistry = Depends(get_agent_registry),
) -> Agent:
    if not x_agent_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Agent-Token header is required",
        )
    try:
        return registry.authenticate_agent(agent_id, x_agent_token)
    except AgentNotFoundError as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(exc),
        ) from exc
    except AgentAuthenticationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc
