from __future__ import annotations

import threading
from dataclasses import replace
from typing import Any, Iterable, Mapping, Optional

import pytest

from keydesk.domain.models import CardType, WriteOutcome
from keydesk.repository.data_repository import DataRepository
from keydesk.services.bridge_client import AgentProtocolError, CardPresence
from keydesk.utils.config import get_settings


class FakeLocalAgent:
    """In-memory stand-in for LocalAgentClient driven by per-test knobs."""

    base_url = "http://fake-agent"

    def __init__(
        self,
        service_up: bool = True,
        reader_connected: bool = True,
        failures: Optional[Mapping[CardType, str]] = None,
        detections: Iterable[CardPresence] = (),
        protocol_error_on: Optional[CardType] = None,
        write_gate: Optional[threading.Event] = None,
    ) -> None:
        self.service_up = service_up
        self.reader_connected = reader_connected
        self.failures = dict(failures or {})
        self._detections = iter(detections)
        self.protocol_error_on = protocol_error_on
        self.write_gate = write_gate
        self.write_started = threading.Event()
        self.writes: list[dict[str, Any]] = []
        self.reconnects = 0

    def check_service_status(self) -> bool:
        return self.service_up

    def get_reader_status(self) -> dict[str, bool]:
        return {"connected": self.service_up and self.reader_connected}

    def reconnect_reader(self) -> bool:
        self.reconnects += 1
        if self.service_up:
            self.reader_connected = True
        return self.service_up

    def detect_card(self) -> CardPresence:
        return next(self._detections, CardPresence.UNSUPPORTED)

    def write_card(self, payload: Mapping[str, Any]) -> WriteOutcome:
        self.write_started.set()
        if self.write_gate is not None:
            self.write_gate.wait(timeout=5)
        self.writes.append(dict(payload))
        card_type = CardType(payload["cardType"])
        if card_type == self.protocol_error_on:
            raise AgentProtocolError("write response has neither cardUID nor error")
        if card_type in self.failures:
            return WriteOutcome(ok=False, error=self.failures[card_type])
        return WriteOutcome(
            ok=True,
            card_uid=f"UID-{card_type.value.upper()}-{len(self.writes)}",
            timestamp="2026-10-18T10:00:00.000000Z",
        )

    def get_status_details(self) -> dict[str, Any]:
        if not self.service_up:
            return {"connected": False, "error": "Agent not available"}
        return {"up": True, "connected": True, "reader": "fake"}


@pytest.fixture
def settings(tmp_path):
    get_settings.cache_clear()
    return replace(
        get_settings(),
        database_path=tmp_path / "keydesk_test.db",
        outbox_path=tmp_path / "agent_outbox_test.db",
        delay_between_cards_seconds=0.0,
        card_detect_poll_interval_seconds=0.01,
        card_wait_stall_seconds=0.02,
        agent_max_report_retries=3,
    )


@pytest.fixture
def repository(settings) -> DataRepository:
    repo = DataRepository(settings)
    repo.initialize_database()
    return repo


@pytest.fixture
def fake_agent() -> FakeLocalAgent:
    return FakeLocalAgent()


@pytest.fixture
def make_fake_agent():
    return FakeLocalAgent
