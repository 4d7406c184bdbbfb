"""
Alert status transitions.

Every status write goes through `transition()`; routes, the IVR webhook and
the escalation engine all share the same table.
"""
from datetime import datetime
from typing import Dict, FrozenSet, Optional

from lib.error_handler import InvalidTransitionError
from lib.models import Alert, AlertStatus, utcnow

S = AlertStatus

TRANSITIONS: Dict[AlertStatus, FrozenSet[AlertStatus]] = {
    S.UNANSWERED: frozenset({S.UNANSWERED, S.OK, S.TIRED, S.HELP, S.ESCALATED, S.IN_PROGRESS}),
    S.TIRED: frozenset({S.OK, S.HELP, S.ESCALATED, S.IN_PROGRESS, S.COMPLETED}),
    S.HELP: frozenset({S.ESCALATED, S.IN_PROGRESS, S.COMPLETED}),
    S.ESCALATED: frozenset({S.IN_PROGRESS, S.COMPLETED}),
    S.IN_PROGRESS: frozenset({S.OK, S.ESCALATED, S.COMPLETED}),
    S.OK: frozenset({S.COMPLETED}),
    S.COMPLETED: frozenset(),
}

CLOSING = frozenset({S.OK, S.COMPLETED})


def can_transition(current: AlertStatus, target: AlertStatus) -> bool:
    return target in TRANSITIONS[current]


def transition(alert: Alert, target, now: Optional[datetime] = None) -> Alert:
    """Return a copy of `alert` moved to `target`, or raise InvalidTransitionError"""
    try:
        target = AlertStatus(target)
    except ValueError:
        raise InvalidTransitionError(f"Unknown alert status: {target}", status_code=400)

    if not can_transition(alert.status, target):
        raise InvalidTransitionError(
            f"Cannot change alert {alert.id} from {alert.status.value} to {target.value}",
            current=alert.status.value,
            requested=target.value,
        )

    now = now or utcnow()
    updates = {'status': target, 'updated_at': now}
    if target in CLOSING and alert.closed_at is None:
        updates['closed_at'] = now
    return alert.model_copy(update=updates)
