"""Domain-level transition rules for card runs and queued card issues."""

from __future__ import annotations

from keydesk.domain.models import CardStatus, IssueStatus


_CARD_TRANSITIONS: dict[CardStatus, frozenset[CardStatus]] = {
    CardStatus.PENDING: frozenset({CardStatus.WAITING}),
    CardStatus.WAITING: frozenset({CardStatus.PROGRAMMING}),
    CardStatus.PROGRAMMING: frozenset({CardStatus.SUCCESS, CardStatus.ERROR}),
    CardStatus.SUCCESS: frozenset(),
    CardStatus.ERROR: frozenset(),
}

# failed -> pending is the operator retry; pending/queued -> failed is the
# reconciliation of issues nobody can claim.
_ISSUE_TRANSITIONS: dict[IssueStatus, frozenset[IssueStatus]] = {
    IssueStatus.PENDING: frozenset(
        {IssueStatus.QUEUED, IssueStatus.IN_PROGRESS, IssueStatus.FAILED}
    ),
    IssueStatus.QUEUED: frozenset({IssueStatus.IN_PROGRESS, IssueStatus.FAILED}),
    IssueStatus.IN_PROGRESS: frozenset({IssueStatus.DONE, IssueStatus.FAILED}),
    IssueStatus.DONE: frozenset(),
    IssueStatus.FAILED: frozenset({IssueStatus.PENDING}),
}


def can_transition_card(current: CardStatus, new: CardStatus) -> bool:
    return new in _CARD_TRANSITIONS[current]


def validate_card_transition(current: CardStatus, new: CardStatus) -> None:
    if not can_transition_card(current, new):
        raise ValueError(f"card status cannot move from {current.value} to {new.value}")


def can_transition_issue(current: IssueStatus, new: IssueStatus) -> bool:
    return new in _ISSUE_TRANSITIONS[current]


def validate_issue_transition(current: IssueStatus, new: IssueStatus) -> None:
    if not can_transition_issue(current, new):
        raise ValueError(f"card issue status cannot move from {current.value} to {new.value}")


def overall_progress(index: int, total: int, terminal: bool) -> float:
    """Percentage of the run done, giving half credit to the card in flight."""
    if total <= 0:
        raise ValueError("total must be > 0")
    if not 0 <= index < total:
        raise ValueError("index must be within the sequence")
    return (index + (1.0 if terminal else 0.5)) / total * 100.0
