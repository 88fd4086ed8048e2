"""Domain models for key-card provisioning runs, queued card issues and agents."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class CardType(str, Enum):
    ROOM = "room"
    COMMON = "common"
    ELEVATOR = "elevator"
    SAFE = "safe"
    STAFF = "staff"


CARD_SEQUENCE: tuple[CardType, ...] = (
    CardType.ROOM,
    CardType.COMMON,
    CardType.ELEVATOR,
    CardType.SAFE,
    CardType.STAFF,
)

CARD_TYPE_LABELS: dict[CardType, str] = {
    CardType.ROOM: "Room Card (Guest)",
    CardType.COMMON: "Common Area Card",
    CardType.ELEVATOR: "Elevator Card",
    CardType.SAFE: "In-Room Safe Card",
    CardType.STAFF: "Staff Override Card",
}

CARD_INSTRUCTIONS: dict[CardType, str] = {
    CardType.ROOM: "Place the Room Access Card on the reader (this will be given to the guest)",
    CardType.COMMON: "Place the Common Area Card on the reader",
    CardType.ELEVATOR: "Place the Elevator Card on the reader",
    CardType.SAFE: "Place the In-Room Safe Card on the reader",
    CardType.STAFF: "Place the Staff Override Card on the reader",
}


class CardStatus(str, Enum):
    PENDING = "pending"
    WAITING = "waiting"
    PROGRAMMING = "programming"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (CardStatus.SUCCESS, CardStatus.ERROR)


class IssueStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


class AgentStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class SequenceOutcome(str, Enum):
    SUCCESS = "success"
    PARTIAL_SUCCESS = "partial_success"
    TOTAL_FAILURE = "total_failure"
    ABANDONED = "abandoned"


SEQUENCE_MESSAGES: dict[SequenceOutcome, str] = {
    SequenceOutcome.SUCCESS: "All cards programmed successfully!",
    SequenceOutcome.PARTIAL_SUCCESS: "Some cards failed to program. Please retry failed cards.",
    SequenceOutcome.TOTAL_FAILURE: "Card programming sequence failed.",
    SequenceOutcome.ABANDONED: "Card programming was abandoned before all cards were programmed.",
}


@dataclass(frozen=True)
class BookingData:
    booking_id: str
    room_number: str
    guest_id: str
    check_in: str
    check_out: str
    facility_id: str

    def to_write_payload(self, card_type: CardType) -> dict[str, str]:
        """Body of the local agent's write request for one card."""
        return {
            "cardType": card_type.value,
            "bookingId": self.booking_id,
            "roomNumber": self.room_number,
            "guestId": self.guest_id,
            "checkIn": self.check_in,
            "checkOut": self.check_out,
            "facilityId": self.facility_id,
        }


@dataclass
class CardState:
    card_type: CardType
    status: CardStatus = CardStatus.PENDING
    error: Optional[str] = None
    card_uid: Optional[str] = None
    timestamp: Optional[str] = None

    def snapshot(self) -> "CardState":
        return CardState(
            card_type=self.card_type,
            status=self.status,
            error=self.error,
            card_uid=self.card_uid,
            timestamp=self.timestamp,
        )


@dataclass(frozen=True)
class SequenceResult:
    success: bool
    completed_cards: int
    results: list[CardState]
    outcome: SequenceOutcome

    @property
    def total_cards(self) -> int:
        return len(self.results)

    @property
    def message(self) -> str:
        return SEQUENCE_MESSAGES[self.outcome]

    @property
    def failed_card_types(self) -> list[CardType]:
        return [state.card_type for state in self.results if state.status == CardStatus.ERROR]


@dataclass(frozen=True)
class ProgressEvent:
    sequence: int
    card_type: CardType
    card_index: int
    total_cards: int
    status: CardStatus
    overall_progress: float
    message: str
    result: CardState
    stalled: bool = False


@dataclass(frozen=True)
class HealthSnapshot:
    service_up: bool
    reader_connected: bool
    checked_at: str

    @property
    def ready(self) -> bool:
        return self.service_up and self.reader_connected


@dataclass(frozen=True)
class WriteOutcome:
    ok: bool
    card_uid: Optional[str] = None
    timestamp: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class CardIssue:
    id: str
    hotel_id: str
    booking_id: Optional[str]
    room_number: Optional[str]
    card_type: CardType
    status: IssueStatus
    payload: dict[str, Any]
    result: Optional[dict[str, Any]]
    error_message: Optional[str]
    agent_id: Optional[str]
    retry_count: int
    created_at: str
    updated_at: str
    completed_at: Optional[str]


@dataclass(frozen=True)
class ClaimResult:
    claimed: bool
    issue: Optional[CardIssue]


@dataclass(frozen=True)
class Agent:
    id: str
    hotel_id: str
    name: str
    fingerprint: str
    status: AgentStatus
    last_seen_at: Optional[str]
    paired_at: Optional[str]
    queue_length: int = 0


@dataclass(frozen=True)
class PairingToken:
    token: str
    hotel_id: str
    agent_name: str
    expires_at: str
    used_at: Optional[str] = None


@dataclass(frozen=True)
class PairedAgent:
    agent: Agent
    agent_token: str


@dataclass(frozen=True)
class DeviceLogEntry:
    id: int
    agent_id: str
    event_type: str
    payload: dict[str, Any]
    card_issue_id: Optional[str]
    created_at: str


@dataclass(frozen=True)
class Device:
    """A card encoder registered to an agent when the desk was paired."""

    id: int
    agent_id: str
    model: str
    serial: Optional[str]
    vendor: Optional[str]
    connected: bool
    last_used: Optional[str]
    created_at: str


@dataclass(frozen=True)
class ReconciliationReport:
    hotel_id: str
    unroutable_failed: list[str] = field(default_factory=list)
    orphaned_failed: list[str] = field(default_factory=list)

    @property
    def total_failed(self) -> int:
        return len(self.unroutable_failed) + len(self.orphaned_failed)
