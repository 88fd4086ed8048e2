from __future__ import annotations

import threading
from dataclasses import replace

import pytest

from keydesk.domain.models import (
    CARD_SEQUENCE,
    BookingData,
    CardState,
    CardStatus,
    CardType,
    ProgressEvent,
    SequenceOutcome,
)
from keydesk.services.bridge_client import TIMEOUT_MESSAGE, AgentProtocolError, CardPresence
from keydesk.services.health_service import (
    READER_NOT_CONNECTED,
    SERVICE_UNAVAILABLE,
    BridgeHealthMonitor,
    BridgeUnavailableError,
)
from keydesk.services.sequence_service import (
    CardSequenceOrchestrator,
    ProgressChannel,
    SequenceInProgressError,
    SequenceRunNotFoundError,
)


BOOKING = BookingData(
    booking_id="4821",
    room_number="305",
    guest_id="G-1001",
    check_in="2026-10-18T15:00:00Z",
    check_out="2026-10-21T11:00:00Z",
    facility_id="HOTEL-1",
)


def _build_orchestrator(agent, settings, repository=None) -> CardSequenceOrchestrator:
    monitor = BridgeHealthMonitor(client=agent, settings=settings)
    return CardSequenceOrchestrator(
        health_monitor=monitor,
        settings=settings,
        repository=repository,
    )


def test_all_cards_programmed_in_order(fake_agent, settings, repository):
    orchestrator = _build_orchestrator(fake_agent, settings, repository)
    channel = ProgressChannel()

    result = orchestrator.program_sequence(BOOKING, channel=channel)

    assert result.success is True
    assert result.outcome == SequenceOutcome.SUCCESS
    assert result.completed_cards == 5
    assert [state.card_type for state in result.results] == list(CARD_SEQUENCE)
    assert all(state.status == CardStatus.SUCCESS for state in result.results)
    assert all(state.card_uid for state in result.results)
    assert [write["cardType"] for write in fake_agent.writes] == [c.value for c in CARD_SEQUENCE]
    assert fake_agent.writes[0]["bookingId"] == "4821"
    assert len(repository.list_card_programming_logs("4821")) == 5

    events = channel.events()
    assert [event.sequence for event in events] == list(range(1, 16))
    assert [event.status for event in events[:3]] == [
        CardStatus.WAITING,
        CardStatus.PROGRAMMING,
        CardStatus.SUCCESS,
    ]
    assert events[0].overall_progress == pytest.approx(10.0)
    assert events[2].overall_progress == pytest.approx(20.0)
    assert events[-1].overall_progress == pytest.approx(100.0)
    assert events[0].message.startswith("Insert card 1 of 5")


def test_elevator_timeout_yields_partial_success(make_fake_agent, settings):
    agent = make_fake_agent(failures={CardType.ELEVATOR: TIMEOUT_MESSAGE})
    orchestrator = _build_orchestrator(agent, settings)

    result = orchestrator.program_sequence(BOOKING)

    assert result.success is False
    assert result.completed_cards == 5
    assert result.outcome == SequenceOutcome.PARTIAL_SUCCESS
    statuses = {state.card_type: state.status for state in result.results}
    assert statuses.pop(CardType.ELEVATOR) == CardStatus.ERROR
    assert set(statuses.values()) == {CardStatus.SUCCESS}
    elevator = result.results[CARD_SEQUENCE.index(CardType.ELEVATOR)]
    assert elevator.error == TIMEOUT_MESSAGE
    assert elevator.card_uid is None
    assert result.failed_card_types == [CardType.ELEVATOR]


def test_every_card_failing_is_total_failure(make_fake_agent, settings):
    agent = make_fake_agent(failures={card_type: "Card removed" for card_type in CARD_SEQUENCE})
    result = _build_orchestrator(agent, settings).program_sequence(BOOKING)

    assert result.success is False
    assert result.completed_cards == 5
    assert result.outcome == SequenceOutcome.TOTAL_FAILURE
    assert len(agent.writes) == 5


def test_run_refused_when_service_down(make_fake_agent, settings):
    agent = make_fake_agent(service_up=False)
    channel = ProgressChannel()
    orchestrator = _build_orchestrator(agent, settings)

    with pytest.raises(BridgeUnavailableError) as exc_info:
        orchestrator.program_sequence(BOOKING, channel=channel)

    assert str(exc_info.value) == SERVICE_UNAVAILABLE
    assert agent.writes == []
    assert len(channel) == 0
    assert orchestrator.is_running is False


def test_run_refused_when_reader_disconnected(make_fake_agent, settings):
    agent = make_fake_agent(reader_connected=False)

    with pytest.raises(BridgeUnavailableError) as exc_info:
        _build_orchestrator(agent, settings).program_sequence(BOOKING)

    assert str(exc_info.value) == READER_NOT_CONNECTED
    assert agent.writes == []


def test_abandon_after_three_cards(fake_agent, settings):
    abandon = threading.Event()
    channel = ProgressChannel()

    def stop_after_third(event) -> None:
        if event.status == CardStatus.SUCCESS and event.card_index == 2:
            abandon.set()

    channel.subscribe(stop_after_third)
    result = _build_orchestrator(fake_agent, settings).program_sequence(
        BOOKING,
        channel=channel,
        abandon=abandon,
    )

    assert result.outcome == SequenceOutcome.ABANDONED
    assert result.success is False
    assert result.completed_cards == 3
    assert result.total_cards == 5
    assert [state.status for state in result.results[3:]] == [CardStatus.PENDING, CardStatus.PENDING]
    assert len(fake_agent.writes) == 3


def test_abandon_while_waiting_for_card(make_fake_agent, settings):
    agent = make_fake_agent(
        detections=[CardPresence.DETECTED] + [CardPresence.ABSENT] * 1000,
    )
    abandon = threading.Event()
    channel = ProgressChannel()

    def stop_on_second_prompt(event) -> None:
        if event.status == CardStatus.WAITING and event.card_index == 1:
            abandon.set()

    channel.subscribe(stop_on_second_prompt)
    result = _build_orchestrator(agent, settings).program_sequence(
        BOOKING,
        channel=channel,
        abandon=abandon,
    )

    assert result.outcome == SequenceOutcome.ABANDONED
    assert result.completed_cards == 1
    assert result.results[1].status == CardStatus.WAITING
    assert len(agent.writes) == 1


def test_stalled_wait_is_reported_once(make_fake_agent, settings):
    agent = make_fake_agent(detections=[CardPresence.ABSENT] * 8 + [CardPresence.DETECTED])
    channel = ProgressChannel()

    result = _build_orchestrator(agent, settings).program_sequence(BOOKING, channel=channel)

    stalled = [event for event in channel.events() if event.stalled]
    assert len(stalled) == 1
    assert stalled[0].card_type == CardType.ROOM
    assert stalled[0].status == CardStatus.WAITING
    assert result.success is True


def test_blocking_card_failure_stops_the_run(make_fake_agent, settings):
    blocking_settings = replace(settings, blocking_card_types=("elevator",))
    agent = make_fake_agent(failures={CardType.ELEVATOR: TIMEOUT_MESSAGE})

    result = _build_orchestrator(agent, blocking_settings).program_sequence(BOOKING)

    assert result.outcome == SequenceOutcome.PARTIAL_SUCCESS
    assert result.completed_cards == 3
    assert [state.status for state in result.results[3:]] == [CardStatus.PENDING, CardStatus.PENDING]
    assert len(agent.writes) == 3


def test_protocol_violation_propagates(make_fake_agent, settings):
    agent = make_fake_agent(protocol_error_on=CardType.COMMON)
    orchestrator = _build_orchestrator(agent, settings)

    with pytest.raises(AgentProtocolError):
        orchestrator.program_sequence(BOOKING)
    assert orchestrator.is_running is False


def test_second_run_on_same_desk_is_refused(make_fake_agent, settings):
    gate = threading.Event()
    agent = make_fake_agent(write_gate=gate)
    orchestrator = _build_orchestrator(agent, settings)
    results = []

    worker = threading.Thread(target=lambda: results.append(orchestrator.program_sequence(BOOKING)))
    worker.start()
    try:
        assert agent.write_started.wait(timeout=5)
        with pytest.raises(SequenceInProgressError):
            orchestrator.program_sequence(BOOKING)
    finally:
        gate.set()
        worker.join(timeout=10)

    assert results and results[0].success is True


def test_progress_callback_and_broken_subscriber(fake_agent, settings):
    seen = []
    channel = ProgressChannel()

    def broken(_event) -> None:
        raise RuntimeError("listener bug")

    channel.subscribe(broken)
    result = _build_orchestrator(fake_agent, settings).program_sequence(
        BOOKING,
        on_progress=lambda card_type, status, state: seen.append((card_type, status)),
        channel=channel,
    )

    assert result.success is True
    assert seen[:3] == [
        (CardType.ROOM, CardStatus.WAITING),
        (CardType.ROOM, CardStatus.PROGRAMMING),
        (CardType.ROOM, CardStatus.SUCCESS),
    ]
    assert len(seen) == 15


def test_unsubscribe_stops_delivery():
    channel = ProgressChannel()
    received = []
    unsubscribe = channel.subscribe(received.append)
    event = ProgressEvent(
        sequence=1,
        card_type=CardType.ROOM,
        card_index=0,
        total_cards=5,
        status=CardStatus.WAITING,
        overall_progress=10.0,
        message="Insert card 1 of 5",
        result=CardState(card_type=CardType.ROOM),
    )
    channel.publish(event)
    unsubscribe()
    channel.publish(event)

    assert received == [event]
    assert len(channel) == 2


def test_abandon_after_a_failed_card_counts_it_as_completed(make_fake_agent, settings):
    agent = make_fake_agent(failures={CardType.ELEVATOR: TIMEOUT_MESSAGE})
    abandon = threading.Event()
    channel = ProgressChannel()

    def stop_after_elevator(event) -> None:
        if event.card_type == CardType.ELEVATOR and event.status == CardStatus.ERROR:
            abandon.set()

    channel.subscribe(stop_after_elevator)
    result = _build_orchestrator(agent, settings).program_sequence(BOOKING, channel=channel, abandon=abandon)

    assert [state.status for state in result.results] == [
        CardStatus.SUCCESS,
        CardStatus.SUCCESS,
        CardStatus.ERROR,
        CardStatus.PENDING,
        CardStatus.PENDING,
    ]
    assert result.completed_cards == 3
    assert result.outcome == SequenceOutcome.ABANDONED
    assert result.success is False
    assert len(agent.writes) == 3


def test_background_run_is_abandoned_by_id_and_frees_the_desk(make_fake_agent, settings):
    agent = make_fake_agent(detections=[CardPresence.ABSENT] * 10_000)
    orchestrator = _build_orchestrator(agent, settings)

    run = orchestrator.start_sequence(BOOKING)
    assert orchestrator.get_run(run.run_id) is run
    assert orchestrator.is_running is True
    with pytest.raises(SequenceInProgressError):
        orchestrator.start_sequence(BOOKING)

    assert orchestrator.abandon_run(run.run_id).abandon.is_set()
    assert run.done.wait(timeout=5)

    assert run.state == "finished"
    assert run.result.outcome == SequenceOutcome.ABANDONED
    assert run.result.completed_cards == 0
    assert run.channel.events()[0].status == CardStatus.WAITING
    assert orchestrator.is_running is False
    assert agent.writes == []


def test_background_run_refused_up_front_when_reader_down(make_fake_agent, settings):
    orchestrator = _build_orchestrator(make_fake_agent(reader_connected=False), settings)

    with pytest.raises(BridgeUnavailableError):
        orchestrator.start_sequence(BOOKING)
    assert orchestrator.is_running is False
    with pytest.raises(SequenceRunNotFoundError):
        orchestrator.get_run("no-such-run")


def test_background_run_records_protocol_errors(make_fake_agent, settings):
    orchestrator = _build_orchestrator(make_fake_agent(protocol_error_on=CardType.ROOM), settings)

    run = orchestrator.start_sequence(BOOKING)

    assert run.done.wait(timeout=5)
    assert run.state == "failed"
    assert isinstance(run.error, AgentProtocolError)
    assert run.result is None
    assert orchestrator.is_running is False
