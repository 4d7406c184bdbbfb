import pytest
from datetime import datetime, timezone

from lib.error_handler import InvalidTransitionError
from lib.lifecycle import TRANSITIONS, can_transition, transition
from lib.models import Alert, AlertStatus

NOW = datetime(2025, 8, 1, 4, 0, tzinfo=timezone.utc)


def alert(status=AlertStatus.UNANSWERED):
    return Alert(household_id='h_1', status=status)


def test_unanswered_can_reach_every_answer():
    for target in ('ok', 'tired', 'help', 'escalated', 'in_progress'):
        assert can_transition(AlertStatus.UNANSWERED, AlertStatus(target))


def test_completed_is_terminal():
    assert TRANSITIONS[AlertStatus.COMPLETED] == frozenset()
    with pytest.raises(InvalidTransitionError) as exc:
        transition(alert(AlertStatus.COMPLETED), 'ok')
    assert exc.value.status_code == 409
    assert exc.value.extra == {'current': 'completed', 'requested': 'ok'}


def test_ok_sets_closed_at_and_leaves_original_untouched():
    original = alert()
    moved = transition(original, 'ok', now=NOW)
    assert moved.status == AlertStatus.OK
    assert moved.closed_at == NOW
    assert moved.updated_at == NOW
    assert original.status == AlertStatus.UNANSWERED
    assert original.closed_at is None


def test_completed_keeps_earlier_closed_at():
    closed = transition(alert(), 'ok', now=NOW)
    later = datetime(2025, 8, 1, 5, 0, tzinfo=timezone.utc)
    completed = transition(closed, AlertStatus.COMPLETED, now=later)
    assert completed.closed_at == NOW


def test_help_cannot_go_back_to_ok():
    with pytest.raises(InvalidTransitionError):
        transition(alert(AlertStatus.HELP), 'ok')


def test_unknown_status_is_a_bad_request():
    with pytest.raises(InvalidTransitionError) as exc:
        transition(alert(), 'sleeping')
    assert exc.value.status_code == 400


def test_unanswered_self_transition_allowed():
    moved = transition(alert(), 'unanswered', now=NOW)
    assert moved.status == AlertStatus.UNANSWERED
    assert moved.closed_at is None
