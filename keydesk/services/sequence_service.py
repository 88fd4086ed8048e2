"""Card sequence orchestration for an attended, guest-at-the-desk provisioning run."""

from __future__ import annotations

import threading
import time
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Iterator, Optional

from keydesk.domain.constraints import overall_progress, validate_card_transition
from keydesk.domain.models import (
    CARD_INSTRUCTIONS,
    CARD_SEQUENCE,
    CARD_TYPE_LABELS,
    BookingData,
    CardState,
    CardStatus,
    CardType,
    ProgressEvent,
    SequenceOutcome,
    SequenceResult,
)
from keydesk.repository.data_repository import DataRepository
from keydesk.services.bridge_client import AgentProtocolError, CardPresence, LocalAgentClient
from keydesk.services.health_service import BridgeHealthMonitor
from keydesk.utils.clock import utc_now_iso
from keydesk.utils.config import Settings, get_settings
from keydesk.utils.logger import get_logger


logger = get_logger(__name__)

ProgressCallback = Callable[[CardType, CardStatus, CardState], None]
ProgressSubscriber = Callable[[ProgressEvent], None]


class SequenceInProgressError(Exception):
    """Raised when a run is started on a desk that is already writing a card."""


class SequenceRunNotFoundError(Exception):
    """Raised when a run id is unknown or has been evicted."""


class ProgressChannel:
    """Append-only stream of progress events for one run.

    Subscribers are invoked synchronously in publish order; late subscribers
    can read everything published so far through `events()`.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: list[ProgressEvent] = []
        self._subscribers: list[ProgressSubscriber] = []

    def subscribe(self, subscriber: ProgressSubscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(subscriber)

        def unsubscribe() -> None:
            with self._lock:
                if subscriber in self._subscribers:
                    self._subscribers.remove(subscriber)

        return unsubscribe

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            self._events.append(event)
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            try:
                subscriber(event)
            except Exception:
                # A broken listener must not interrupt a physical write sequence.
                logger.exception("Progress subscriber failed on %s/%s", event.card_type, event.status)

    def next_sequence(self) -> int:
        with self._lock:
            return len(self._events) + 1

    def events(self) -> tuple[ProgressEvent, ...]:
        with self._lock:
            return tuple(self._events)

    def __iter__(self) -> Iterator[ProgressEvent]:
        return iter(self.events())

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


def summarize_results(states: list[CardState], abandoned: bool = False) -> SequenceResult:
    """Fold per-card states into the caller-visible run summary."""
    success_count = sum(1 for state in states if state.status == CardStatus.SUCCESS)
    completed_cards = sum(1 for state in states if state.status.is_terminal)
    success = bool(states) and success_count == len(states)

    if success:
        outcome = SequenceOutcome.SUCCESS
    elif abandoned:
        outcome = SequenceOutcome.ABANDONED
    elif success_count == 0:
        outcome = SequenceOutcome.TOTAL_FAILURE
    else:
        outcome = SequenceOutcome.PARTIAL_SUCCESS

    return SequenceResult(
        success=success,
        completed_cards=completed_cards,
        results=[state.snapshot() for state in states],
        outcome=outcome,
    )


@dataclass
class SequenceRun:
    """A sequence running in the background, observable and abandonable by id."""

    run_id: str
    booking_id: str
    channel: ProgressChannel = field(default_factory=ProgressChannel)
    abandon: threading.Event = field(default_factory=threading.Event)
    done: threading.Event = field(default_factory=threading.Event)
    result: Optional[SequenceResult] = None
    error: Optional[Exception] = None

    @property
    def state(self) -> str:
        if not self.done.is_set():
            return "running"
        return "failed" if self.error is not None else "finished"


class CardSequenceOrchestrator:
    """Drives CARD_SEQUENCE one card at a time through a single desk's local agent."""

    retained_runs = 20

    def __init__(
        self,
        health_monitor: BridgeHealthMonitor,
        client: Optional[LocalAgentClient] = None,
        settings: Optional[Settings] = None,
        repository: Optional[DataRepository] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._health = health_monitor
        self._client = client or health_monitor.client
        self._repository = repository
        self._run_lock = health_monitor.desk_lock
        self._runs: OrderedDict[str, SequenceRun] = OrderedDict()
        self._runs_lock = threading.Lock()
        self._blocking = frozenset(CardType(value) for value in self._settings.blocking_card_types)

    @property
    def is_running(self) -> bool:
        return self._run_lock.locked()

    def start_sequence(self, booking: BookingData) -> SequenceRun:
        """Reserve the desk and program `booking` on a background thread.

        Readiness is checked before returning, so BridgeUnavailableError and
        SequenceInProgressError surface to the caller exactly as with
        `program_sequence`. Everything after that is observed through the run.
        """
        if not self._run_lock.acquire(blocking=False):
            raise SequenceInProgressError("This desk is already writing a card")
        started = False
        try:
            self._health.ensure_ready()
            run = SequenceRun(run_id=str(uuid.uuid4()), booking_id=booking.booking_id)
            self._remember(run)
            thread = threading.Thread(
                target=self._run_in_background,
                args=(booking, run),
                name=f"CardSequence-{run.run_id[:8]}",
                daemon=True,
            )
            thread.start()
            started = True
        finally:
            if not started:
                self._run_lock.release()
        logger.info("Sequence run %s started for booking %s", run.run_id, booking.booking_id)
        return run

    def get_run(self, run_id: str) -> SequenceRun:
        with self._runs_lock:
            run = self._runs.get(run_id)
        if run is None:
            raise SequenceRunNotFoundError(f"Sequence run {run_id} not found")
        return run

    def abandon_run(self, run_id: str) -> SequenceRun:
        """Ask a run to stop at its next card boundary or wait poll."""
        run = self.get_run(run_id)
        if not run.done.is_set():
            logger.info("Abandoning sequence run %s for booking %s", run_id, run.booking_id)
            run.abandon.set()
        return run

    def _remember(self, run: SequenceRun) -> None:
        with self._runs_lock:
            self._runs[run.run_id] = run
            finished = [key for key, kept in self._runs.items() if kept.done.is_set()]
            for key in finished[: max(len(self._runs) - self.retained_runs, 0)]:
                del self._runs[key]

    def _run_in_background(self, booking: BookingData, run: SequenceRun) -> None:
        try:
            run.result = self._run(booking, run.channel, run.abandon)
        except Exception as exc:
            logger.exception("Sequence run %s failed", run.run_id)
            run.error = exc
        finally:
            self._run_lock.release()
            run.done.set()

    def program_sequence(
        self,
        booking: BookingData,
        on_progress: Optional[ProgressCallback] = None,
        channel: Optional[ProgressChannel] = None,
        abandon: Optional[threading.Event] = None,
    ) -> SequenceResult:
        """Program every card type for `booking`, reporting each transition.

        Raises BridgeUnavailableError before any card state exists when the
        service or reader is down, and SequenceInProgressError when this desk
        is already writing a card. Per-card failures are returned as data.
        """
        if not self._run_lock.acquire(blocking=False):
            raise SequenceInProgressError("This desk is already writing a card")
        try:
            self._health.ensure_ready()
            run_channel = channel or ProgressChannel()
            if on_progress is not None:
                run_channel.subscribe(
                    lambda event: on_progress(event.card_type, event.status, event.result)
                )
            return self._run(booking, run_channel, abandon or threading.Event())
        finally:
            self._run_lock.release()

    def _run(
        self,
        booking: BookingData,
        channel: ProgressChannel,
        abandon: threading.Event,
    ) -> SequenceResult:
        states = [CardState(card_type=card_type) for card_type in CARD_SEQUENCE]
        total = len(states)
        abandoned = False
        logger.info("Starting card sequence for booking %s (%s cards)", booking.booking_id, total)

        for index, state in enumerate(states):
            if abandon.is_set():
                abandoned = True
                break

            label = CARD_TYPE_LABELS[state.card_type]
            self._advance(
                channel,
                state,
                index,
                total,
                CardStatus.WAITING,
                f"Insert card {index + 1} of {total}: {CARD_INSTRUCTIONS[state.card_type]}",
            )
            if not self._wait_for_card(channel, state, index, total, abandon):
                abandoned = True
                break

            self._advance(channel, state, index, total, CardStatus.PROGRAMMING, f"Programming {label}")
            try:
                outcome = self._client.write_card(booking.to_write_payload(state.card_type))
            except AgentProtocolError:
                logger.exception(
                    "Local agent broke the write contract on %s for booking %s",
                    state.card_type.value,
                    booking.booking_id,
                )
                raise

            if outcome.ok:
                state.card_uid = outcome.card_uid
                state.timestamp = outcome.timestamp
                self._advance(channel, state, index, total, CardStatus.SUCCESS, f"{label} programmed")
            else:
                state.error = outcome.error or "Programming failed"
                state.timestamp = utc_now_iso()
                self._advance(
                    channel,
                    state,
                    index,
                    total,
                    CardStatus.ERROR,
                    f"{label} failed: {state.error}",
                )
                logger.warning(
                    "Card %s failed for booking %s: %s",
                    state.card_type.value,
                    booking.booking_id,
                    state.error,
                )
                if state.card_type in self._blocking:
                    logger.warning(
                        "Stopping sequence for booking %s after blocking card %s failed",
                        booking.booking_id,
                        state.card_type.value,
                    )
                    break

            if index < total - 1 and self._settings.delay_between_cards_seconds > 0:
                abandon.wait(self._settings.delay_between_cards_seconds)

        result = summarize_results(states, abandoned=abandoned)
        logger.info(
            "Card sequence for booking %s finished: %s (%s/%s completed)",
            booking.booking_id,
            result.outcome.value,
            result.completed_cards,
            result.total_cards,
        )
        if self._repository is not None:
            self._repository.save_card_programming_logs(
                booking_id=booking.booking_id,
                results=result.results,
                programmed_at=utc_now_iso(),
            )
        return result

    def _wait_for_card(
        self,
        channel: ProgressChannel,
        state: CardState,
        index: int,
        total: int,
        abandon: threading.Event,
    ) -> bool:
        """Block in `waiting` until a card is on the reader; False if abandoned."""
        started = time.monotonic()
        stall_reported = False
        while True:
            presence = self._client.detect_card()
            if presence in (CardPresence.DETECTED, CardPresence.UNSUPPORTED):
                return True
            if abandon.is_set():
                return False
            if not stall_reported and time.monotonic() - started >= self._settings.card_wait_stall_seconds:
                stall_reported = True
                label = CARD_TYPE_LABELS[state.card_type]
                logger.warning("Still waiting for %s on the reader", state.card_type.value)
                self._publish(
                    channel,
                    state,
                    index,
                    total,
                    f"Still waiting for the {label}. Check that the card is on the reader.",
                    stalled=True,
                )
            if abandon.wait(self._settings.card_detect_poll_interval_seconds):
                return False

    def _advance(
        self,
        channel: ProgressChannel,
        state: CardState,
        index: int,
        total: int,
        status: CardStatus,
        message: str,
    ) -> None:
        validate_card_transition(state.status, status)
        state.status = status
        self._publish(channel, state, index, total, message)

    def _publish(
        self,
        channel: ProgressChannel,
        state: CardState,
        index: int,
        total: int,
        message: str,
        stalled: bool = False,
    ) -> None:
        channel.publish(
            ProgressEvent(
                sequence=channel.next_sequence(),
                card_type=state.card_type,
                card_index=index,
                total_cards=total,
                status=state.status,
                overall_progress=overall_progress(index, total, state.status.is_terminal),
                message=message,
                result=state.snapshot(),
                stalled=stalled,
            )
        )
