"""Agent registry: pairing, liveness and routing targets per hotel."""

from __future__ import annotations

import secrets
import sqlite3
import uuid
from datetime import timedelta
from typing import Any, Mapping, Optional

from keydesk.domain.models import (
    Agent,
    AgentStatus,
    Device,
    DeviceLogEntry,
    PairedAgent,
    PairingToken,
)
from keydesk.repository.data_repository import AgentRecord, DataRepository
from keydesk.utils.clock import parse_iso, to_iso, utc_now
from keydesk.utils.config import Settings, get_settings
from keydesk.utils.logger import get_logger


logger = get_logger(__name__)

CARD_WRITE_EVENTS = frozenset({"card_written", "card_write_failed"})
UNKNOWN_DEVICE_MODEL = "Unknown"


class AgentRegistryError(Exception):
    """Base agent registry failure."""


class AgentNotFoundError(AgentRegistryError):
    """Raised when an agent id is unknown."""


class PairingTokenError(AgentRegistryError):
    """Raised when a pairing token is unknown, expired or already used."""


class AgentConflictError(AgentRegistryError):
    """Raised when a workstation fingerprint is already paired."""


class AgentAuthenticationError(AgentRegistryError):
    """Raised when an agent presents a wrong token."""


class AgentRegistry:
    """Tracks which desks exist per hotel and whether they were heard from recently.

    Online/offline is never stored: an agent is online only while its last
    heartbeat falls inside the liveness window, so a crashed workstation goes
    offline without ever signalling.
    """

    def __init__(
        self,
        repository: Optional[DataRepository] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._repository = repository or DataRepository(self._settings)

    def _status_for(self, last_seen_at: Optional[str]) -> AgentStatus:
        last_seen = parse_iso(last_seen_at)
        if last_seen is None:
            return AgentStatus.OFFLINE
        age = (utc_now() - last_seen).total_seconds()
        if age <= self._settings.agent_liveness_window_seconds:
            return AgentStatus.ONLINE
        return AgentStatus.OFFLINE

    def _to_agent(self, record: AgentRecord, queue_length: int = 0) -> Agent:
        return Agent(
            id=record.agent_id,
            hotel_id=record.hotel_id,
            name=record.name,
            fingerprint=record.fingerprint,
            status=self._status_for(record.last_seen_at),
            last_seen_at=record.last_seen_at,
            paired_at=record.paired_at,
            queue_length=queue_length,
        )

    def generate_pairing_token(self, hotel_id: str, agent_name: str) -> PairingToken:
        if not hotel_id.strip() or not agent_name.strip():
            raise AgentRegistryError("hotel_id and agent_name are required")
        token = PairingToken(
            token=str(uuid.uuid4()),
            hotel_id=hotel_id,
            agent_name=agent_name,
            expires_at=to_iso(utc_now() + timedelta(seconds=self._settings.pairing_token_ttl_seconds)),
        )
        self._repository.create_pairing_token(token)
        logger.info("Pairing token issued for agent %r at hotel %s", agent_name, hotel_id)
        return token

    def confirm_pairing(
        self,
        token: str,
        fingerprint: str,
        agent_name: str,
        device_info: Optional[Mapping[str, Any]] = None,
    ) -> PairedAgent:
        """Exchange a one-time token for agent credentials.

        When the desk reports its encoder in `device_info`, the encoder is
        registered to the new agent as a connected device.
        """
        pairing = self._repository.get_pairing_token(token)
        if pairing is None:
            raise PairingTokenError("Invalid pairing token")
        expires_at = parse_iso(pairing.expires_at)
        if expires_at is not None and expires_at < utc_now():
            raise PairingTokenError("Pairing token has expired")
        if pairing.used_at:
            raise PairingTokenError("Pairing token has already been used")
        if self._repository.get_agent_by_fingerprint(fingerprint) is not None:
            raise AgentConflictError("Agent with this fingerprint is already paired")
        if not self._repository.mark_pairing_token_used(token, to_iso(utc_now())):
            raise PairingTokenError("Pairing token has already been used")

        agent_token = secrets.token_urlsafe(32)
        try:
            record = self._repository.create_agent(
                agent_id=str(uuid.uuid4()),
                hotel_id=pairing.hotel_id,
                name=agent_name or pairing.agent_name,
                fingerprint=fingerprint,
                agent_token=agent_token,
                paired_at=to_iso(utc_now()),
            )
        except sqlite3.IntegrityError as exc:
            raise AgentConflictError("Agent with this fingerprint is already paired") from exc
        if device_info is not None:
            self._register_device(record.agent_id, device_info, record.paired_at or to_iso(utc_now()))
        logger.info("Agent %s paired to hotel %s", record.agent_id, record.hotel_id)
        return PairedAgent(agent=self._to_agent(record), agent_token=agent_token)

    def authenticate_agent(self, agent_id: str, agent_token: str) -> Agent:
        expected = self._repository.get_agent_token(agent_id)
        if expected is None:
            raise AgentNotFoundError(f"Agent {agent_id} not found")
        if not secrets.compare_digest(agent_token, expected):
            raise AgentAuthenticationError("Invalid agent token")
        return self.get_agent(agent_id)

    def heartbeat(self, agent_id: str) -> Agent:
        if not self._repository.touch_agent(agent_id, to_iso(utc_now())):
            raise AgentNotFoundError(f"Agent {agent_id} not found")
        return self.get_agent(agent_id)

    def log_device_event(
        self,
        agent_id: str,
        event_type: str,
        payload: dict[str, Any],
        card_issue_id: Optional[str] = None,
    ) -> DeviceLogEntry:
        """Record a desk-side event; any event counts as a sign of life."""
        seen_at = to_iso(utc_now())
        if not self._repository.touch_agent(agent_id, seen_at):
            raise AgentNotFoundError(f"Agent {agent_id} not found")
        if event_type in CARD_WRITE_EVENTS:
            self._repository.touch_devices(agent_id, seen_at)
        return self._repository.insert_device_log(
            agent_id=agent_id,
            event_type=event_type,
            payload=payload,
            card_issue_id=card_issue_id,
            created_at=seen_at,
        )

    def _register_device(self, agent_id: str, device_info: Mapping[str, Any], paired_at: str) -> Device:
        device = self._repository.insert_device(
            agent_id=agent_id,
            model=str(device_info.get("model") or UNKNOWN_DEVICE_MODEL),
            serial=device_info.get("serial"),
            vendor=device_info.get("vendor"),
            created_at=paired_at,
        )
        logger.info("Registered %s encoder %s for agent %s", device.model, device.serial or "-", agent_id)
        return device

    def list_devices(
        self,
        agent_id: Optional[str] = None,
        hotel_id: Optional[str] = None,
    ) -> list[Device]:
        """Encoders of one agent, or of a whole hotel when no agent is given."""
        if not agent_id and not hotel_id:
            raise AgentRegistryError("agent or hotel parameter is required")
        if agent_id:
            return self._repository.list_devices(agent_id=agent_id)
        return self._repository.list_devices(hotel_id=hotel_id)

    def list_device_logs(self, agent_id: str, limit: int = 50) -> list[DeviceLogEntry]:
        self.get_agent(agent_id)
        return self._repository.list_device_logs(agent_id, limit=limit)

    def get_agent(self, agent_id: str) -> Agent:
        record = self._repository.get_agent(agent_id)
        if record is None:
            raise AgentNotFoundError(f"Agent {agent_id} not found")
        queue = self._repository.count_open_issues_by_agent(record.hotel_id)
        return self._to_agent(record, queue.get(record.agent_id, 0))

    def get_agents(self, hotel_id: str, status: Optional[AgentStatus] = None) -> list[Agent]:
        queue = self._repository.count_open_issues_by_agent(hotel_id)
        agents = [
            self._to_agent(record, queue.get(record.agent_id, 0))
            for record in self._repository.list_agents(hotel_id)
        ]
        if status is not None:
            agents = [agent for agent in agents if agent.status == status]
        return agents

    def online_agents(self, hotel_id: str) -> list[Agent]:
        return self.get_agents(hotel_id, status=AgentStatus.ONLINE)

    def has_online_agent(self, hotel_id: str) -> bool:
        return bool(self.online_agents(hotel_id))
