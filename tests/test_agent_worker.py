from __future__ import annotations

import threading

import pytest

from keydesk.domain.models import BookingData, CardType, IssueStatus
from keydesk.repository.outbox_repository import OutboxRepository
from keydesk.services.agent_service import AgentRegistry
from keydesk.services.agent_worker import AgentWorker, InProcessCloudGateway
from keydesk.services.cloud_client import CloudApiError
from keydesk.services.health_service import SERVICE_UNAVAILABLE, BridgeHealthMonitor
from keydesk.services.issue_service import CardIssueService
from keydesk.services.sequence_service import CardSequenceOrchestrator, SequenceInProgressError


HOTEL = "HOTEL-1"
BOOKING = BookingData(
    booking_id="7310",
    room_number="412",
    guest_id="G-2002",
    check_in="2026-10-18T15:00:00Z",
    check_out="2026-10-20T11:00:00Z",
    facility_id=HOTEL,
)


class FlakyGateway:
    """Wraps a gateway; status reports or device logs fail while the matching flag is set."""

    def __init__(self, inner: InProcessCloudGateway) -> None:
        self.inner = inner
        self.reports_down = False
        self.logs_down = False
        self.report_attempts = 0

    def heartbeat(self):
        return self.inner.heartbeat()

    def claim_next_card_issue(self):
        return self.inner.claim_next_card_issue()

    def update_card_issue_status(self, issue_id, status, error_message=None, result=None):
        self.report_attempts += 1
        if self.reports_down:
            raise CloudApiError("cloud unreachable")
        return self.inner.update_card_issue_status(issue_id, status, error_message, result)

    def log_device_event(self, event_type, payload, card_issue_id=None):
        if self.logs_down:
            raise CloudApiError("cloud unreachable")
        return self.inner.log_device_event(event_type, payload, card_issue_id)


def _setup(repository, settings, agent, monitor=None):
    registry = AgentRegistry(repository=repository, settings=settings)
    service = CardIssueService(repository=repository, agent_registry=registry, settings=settings)
    token = registry.generate_pairing_token(HOTEL, "Front Desk")
    agent_id = registry.confirm_pairing(token.token, "fp-desk-1", "Front Desk").agent.id
    gateway = FlakyGateway(InProcessCloudGateway(agent_id, service, registry))
    outbox = OutboxRepository(settings)
    outbox.initialize()
    worker = AgentWorker(
        cloud=gateway,
        health_monitor=monitor or BridgeHealthMonitor(client=agent, settings=settings),
        outbox=outbox,
        settings=settings,
    )
    return service, registry, gateway, outbox, worker, agent_id


def _queue(service: CardIssueService, card_type: CardType):
    return service.create_card_issue(
        hotel_id=HOTEL,
        booking_id="4821",
        card_type=card_type,
        payload={"cardType": card_type.value, "bookingId": "4821", "roomNumber": "305"},
    )


def test_worker_programs_and_reports_done(repository, settings, fake_agent):
    service, registry, _, _, worker, agent_id = _setup(repository, settings, fake_agent)
    room = _queue(service, CardType.ROOM)
    common = _queue(service, CardType.COMMON)

    assert worker.run_once() == 2

    for issue in (room, common):
        stored = service.get_card_issue(issue.id)
        assert stored.status == IssueStatus.DONE
        assert stored.agent_id == agent_id
        assert stored.result["cardUID"].startswith("UID-")
    assert [write["cardType"] for write in fake_agent.writes] == ["room", "common"]
    assert {log.event_type for log in registry.list_device_logs(agent_id)} == {"card_written"}


def test_worker_reports_write_failure(repository, settings, make_fake_agent):
    agent = make_fake_agent(failures={CardType.ELEVATOR: "Operation timed out. Please try again."})
    service, _, _, _, worker, _ = _setup(repository, settings, agent)
    issue = _queue(service, CardType.ELEVATOR)

    worker.run_once()

    stored = service.get_card_issue(issue.id)
    assert stored.status == IssueStatus.FAILED
    assert stored.error_message == "Operation timed out. Please try again."


def test_worker_fails_issue_when_bridge_down(repository, settings, make_fake_agent):
    agent = make_fake_agent(service_up=False)
    service, _, _, _, worker, _ = _setup(repository, settings, agent)
    issue = _queue(service, CardType.ROOM)

    worker.run_once()

    stored = service.get_card_issue(issue.id)
    assert stored.status == IssueStatus.FAILED
    assert stored.error_message == SERVICE_UNAVAILABLE
    assert agent.writes == []


def test_unacknowledged_result_is_parked_and_replayed(repository, settings, fake_agent):
    service, _, gateway, outbox, worker, _ = _setup(repository, settings, fake_agent)
    issue = _queue(service, CardType.SAFE)
    gateway.reports_down = True

    worker.run_once()

    assert service.get_card_issue(issue.id).status == IssueStatus.IN_PROGRESS
    assert outbox.count() == 1

    gateway.reports_down = False
    worker.run_once()

    assert outbox.count() == 0
    assert service.get_card_issue(issue.id).status == IssueStatus.DONE
    assert len(fake_agent.writes) == 1


def test_report_given_up_is_kept_and_surfaced_to_staff(repository, settings, fake_agent):
    service, registry, gateway, outbox, worker, agent_id = _setup(repository, settings, fake_agent)
    issue = _queue(service, CardType.STAFF)
    gateway.reports_down = True

    worker.run_once()
    for _ in range(settings.agent_max_report_retries):
        worker.flush_outbox()

    assert outbox.count() == 0
    [dead] = outbox.list_dead_letters()
    assert dead.card_issue_id == issue.id
    assert dead.attempts == settings.agent_max_report_retries
    dropped = [log for log in registry.list_device_logs(agent_id) if log.event_type == "report_dropped"]
    assert len(dropped) == 1
    assert dropped[0].card_issue_id == issue.id
    assert dropped[0].payload["status"] == IssueStatus.DONE.value
    assert dropped[0].payload["result"]["cardUID"].startswith("UID-STAFF")
    assert service.get_card_issue(issue.id).status == IssueStatus.IN_PROGRESS


def test_dropped_report_notice_retried_until_delivered(repository, settings, fake_agent):
    service, registry, gateway, outbox, worker, agent_id = _setup(repository, settings, fake_agent)
    _queue(service, CardType.ROOM)
    gateway.reports_down = True
    gateway.logs_down = True

    worker.run_once()
    for _ in range(settings.agent_max_report_retries):
        worker.flush_outbox()

    assert len(outbox.list_dead_letters(unnotified_only=True)) == 1
    assert registry.list_device_logs(agent_id) == []

    gateway.logs_down = False
    worker.flush_outbox()
    worker.flush_outbox()

    assert outbox.list_dead_letters(unnotified_only=True) == []
    assert [log.event_type for log in registry.list_device_logs(agent_id)] == ["report_dropped"]


def test_rejected_parked_report_is_dropped(repository, settings, fake_agent):
    _, _, _, outbox, worker, _ = _setup(repository, settings, fake_agent)
    outbox.add(card_issue_id="missing-issue", status=IssueStatus.DONE, created_at="2026-10-18T10:00:00.000000Z")

    assert worker.flush_outbox() == 0
    assert outbox.count() == 0


def test_failed_heartbeat_skips_the_cycle(repository, settings, fake_agent):
    service, registry, _, outbox, _, _ = _setup(repository, settings, fake_agent)
    issue = _queue(service, CardType.ROOM)
    worker = AgentWorker(
        cloud=InProcessCloudGateway("unpaired-agent", service, registry),
        health_monitor=BridgeHealthMonitor(client=fake_agent, settings=settings),
        outbox=outbox,
        settings=settings,
    )

    assert worker.run_once() == 0
    assert service.get_card_issue(issue.id).status == IssueStatus.PENDING
    assert fake_agent.writes == []


def test_worker_does_not_claim_while_attended_run_holds_the_desk(repository, settings, make_fake_agent):
    gate = threading.Event()
    agent = make_fake_agent(write_gate=gate)
    monitor = BridgeHealthMonitor(client=agent, settings=settings)
    service, _, _, _, worker, _ = _setup(repository, settings, agent, monitor=monitor)
    orchestrator = CardSequenceOrchestrator(health_monitor=monitor, settings=settings)
    issue = _queue(service, CardType.SAFE)

    run = orchestrator.start_sequence(BOOKING)
    try:
        assert agent.write_started.wait(timeout=5)
        assert worker.run_once() == 0
        assert service.get_card_issue(issue.id).status == IssueStatus.PENDING
    finally:
        gate.set()
        assert run.done.wait(timeout=10)

    assert run.result.success is True
    assert worker.run_once() == 1
    assert service.get_card_issue(issue.id).status == IssueStatus.DONE
    assert [write["bookingId"] for write in agent.writes] == ["7310"] * 5 + ["4821"]


def test_attended_run_refused_while_worker_is_writing(repository, settings, make_fake_agent):
    gate = threading.Event()
    agent = make_fake_agent(write_gate=gate)
    monitor = BridgeHealthMonitor(client=agent, settings=settings)
    service, _, _, _, worker, _ = _setup(repository, settings, agent, monitor=monitor)
    orchestrator = CardSequenceOrchestrator(health_monitor=monitor, settings=settings)
    _queue(service, CardType.ROOM)
    processed = []

    thread = threading.Thread(target=lambda: processed.append(worker.run_once()))
    thread.start()
    try:
        assert agent.write_started.wait(timeout=5)
        with pytest.raises(SequenceInProgressError):
            orchestrator.start_sequence(BOOKING)
    finally:
        gate.set()
        thread.join(timeout=10)

    assert processed == [1]
    assert orchestrator.is_running is False
    assert len(agent.writes) == 1
