from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

from lib.models import Alert, AlertLevel, AlertStatus


class EscalationAction(str, Enum):
    NONE = 'none'
    RETRY_CALL = 'retry_call'
    NOTIFY_FAMILY = 'notify_family'
    NOTIFY_NEIGHBORS = 'notify_neighbors'


@dataclass(frozen=True)
class EscalationPolicy:
    retry_after: timedelta = timedelta(minutes=5)
    family_after: timedelta = timedelta(minutes=10)
    neighbor_after: timedelta = timedelta(minutes=15)
    max_call_attempts: int = 3

    @classmethod
    def from_settings(cls, settings) -> 'EscalationPolicy':
        return cls(
            retry_after=timedelta(minutes=settings.retry_after_minutes),
            family_after=timedelta(minutes=settings.family_after_minutes),
            neighbor_after=timedelta(minutes=settings.neighbor_after_minutes),
            max_call_attempts=settings.max_call_attempts,
        )

    def retry_delay(self, attempts: int) -> timedelta:
        """Wait before the next call doubles after every attempt"""
        return self.retry_after * (2 ** max(attempts - 1, 0))

    def to_dict(self) -> dict:
        return {
            'retry_after_seconds': int(self.retry_after.total_seconds()),
            'family_after_seconds': int(self.family_after.total_seconds()),
            'neighbor_after_seconds': int(self.neighbor_after.total_seconds()),
            'max_call_attempts': self.max_call_attempts,
        }


@dataclass(frozen=True)
class EscalationDecision:
    action: EscalationAction
    reason: str


def _none(reason: str) -> EscalationDecision:
    return EscalationDecision(EscalationAction.NONE, reason)


def decide(alert: Alert, now: datetime, policy: EscalationPolicy) -> EscalationDecision:
    """Decide the next escalation step for an alert. Pure; performs no I/O."""
    meta = alert.metadata

    if alert.is_closed or alert.status in (AlertStatus.ESCALATED, AlertStatus.IN_PROGRESS):
        return _none(f"status_{alert.status.value}")

    if alert.status == AlertStatus.HELP:
        if meta.family_notified_at is None:
            return EscalationDecision(EscalationAction.NOTIFY_FAMILY, 'help_requested')
        if meta.neighbor_notified_at is None:
            return EscalationDecision(EscalationAction.NOTIFY_NEIGHBORS, 'help_requested')
        return _none('help_already_escalated')

    if alert.status == AlertStatus.TIRED:
        if meta.family_notified_at is None:
            return EscalationDecision(EscalationAction.NOTIFY_FAMILY, 'household_tired')
        return _none('family_already_notified')

    # Unanswered
    elapsed = now - alert.first_trigger_at
    if elapsed >= policy.neighbor_after and meta.neighbor_notified_at is None:
        return EscalationDecision(EscalationAction.NOTIFY_NEIGHBORS, 'unanswered_neighbor_stage')

    if elapsed >= policy.family_after and meta.family_notified_at is None:
        return EscalationDecision(EscalationAction.NOTIFY_FAMILY, 'unanswered_family_stage')

    if meta.attempts < policy.max_call_attempts:
        last_call = meta.last_call_at or alert.first_trigger_at
        if now - last_call >= policy.retry_delay(meta.attempts):
            return EscalationDecision(EscalationAction.RETRY_CALL, 'unanswered_retry')
        return _none('waiting_for_retry')

    return _none('max_attempts_reached')


@dataclass(frozen=True)
class IssueDecision:
    should_issue: bool
    reason: str


def in_quiet_hours(hour: int, start: int = 22, end: int = 7) -> bool:
    if start > end:
        return hour >= start or hour < end
    return start <= hour < end


def judge_alert(level: Optional[str], hour: int, quiet_start: int = 22, quiet_end: int = 7,
                threshold: AlertLevel = AlertLevel.WARNING) -> IssueDecision:
    """Whether a heat level at the given local hour warrants opening alerts"""
    if in_quiet_hours(hour, quiet_start, quiet_end):
        return IssueDecision(False, 'quiet_hours')
    try:
        level = AlertLevel(level)
    except ValueError:
        return IssueDecision(False, 'unknown_level')
    if level.rank >= threshold.rank:
        return IssueDecision(True, 'alert')
    return IssueDecision(False, 'below_threshold')
