"""Tests for card and card-issue transition rules and settings validation."""

from __future__ import annotations

from dataclasses import replace

import pytest

from keydesk.domain.constraints import (
    can_transition_card,
    can_transition_issue,
    overall_progress,
    validate_card_transition,
    validate_issue_transition,
)
from keydesk.domain.models import CardStatus, IssueStatus
from keydesk.utils.config import Settings, validate_settings


# --- Card lifecycle ---

def test_card_moves_forward_one_step_at_a_time() -> None:
    assert can_transition_card(CardStatus.PENDING, CardStatus.WAITING)
    assert can_transition_card(CardStatus.WAITING, CardStatus.PROGRAMMING)
    assert can_transition_card(CardStatus.PROGRAMMING, CardStatus.SUCCESS)
    assert can_transition_card(CardStatus.PROGRAMMING, CardStatus.ERROR)


def test_card_cannot_skip_waiting() -> None:
    with pytest.raises(ValueError):
        validate_card_transition(CardStatus.PENDING, CardStatus.PROGRAMMING)


@pytest.mark.parametrize("terminal", [CardStatus.SUCCESS, CardStatus.ERROR])
def test_terminal_card_states_are_final(terminal: CardStatus) -> None:
    assert terminal.is_terminal
    for target in CardStatus:
        assert not can_transition_card(terminal, target)


# --- Card issue lifecycle ---

def test_issue_happy_path() -> None:
    validate_issue_transition(IssueStatus.PENDING, IssueStatus.QUEUED)
    validate_issue_transition(IssueStatus.QUEUED, IssueStatus.IN_PROGRESS)
    validate_issue_transition(IssueStatus.IN_PROGRESS, IssueStatus.DONE)


def test_only_failed_issue_returns_to_pending() -> None:
    assert can_transition_issue(IssueStatus.FAILED, IssueStatus.PENDING)
    assert not can_transition_issue(IssueStatus.DONE, IssueStatus.PENDING)
    assert not can_transition_issue(IssueStatus.IN_PROGRESS, IssueStatus.PENDING)


def test_done_issue_is_final() -> None:
    with pytest.raises(ValueError):
        validate_issue_transition(IssueStatus.DONE, IssueStatus.FAILED)


# --- Progress ---

def test_overall_progress_gives_half_credit_in_flight() -> None:
    assert overall_progress(0, 5, terminal=False) == pytest.approx(10.0)
    assert overall_progress(0, 5, terminal=True) == pytest.approx(20.0)
    assert overall_progress(4, 5, terminal=True) == pytest.approx(100.0)


@pytest.mark.parametrize("index,total", [(-1, 5), (5, 5), (0, 0)])
def test_overall_progress_rejects_out_of_range(index: int, total: int) -> None:
    with pytest.raises(ValueError):
        overall_progress(index, total, terminal=False)


# --- Settings ---

def test_default_settings_are_valid() -> None:
    validate_settings(Settings())


def test_unknown_blocking_card_type_raises() -> None:
    with pytest.raises(ValueError):
        validate_settings(replace(Settings(), blocking_card_types=("minibar",)))


def test_non_positive_liveness_window_raises() -> None:
    with pytest.raises(ValueError):
        validate_settings(replace(Settings(), agent_liveness_window_seconds=0))


def test_default_limit_above_max_raises() -> None:
    with pytest.raises(ValueError):
        validate_settings(replace(Settings(), issue_list_default_limit=500, issue_list_max_limit=200))
