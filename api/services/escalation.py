import logging
from datetime import datetime
from typing import Optional, Tuple

from api.services.notifier import REMINDER_SMS, Notifier
from api.services.storage import BaseStore
from api.services.telephony import DeliveryResult, TelephonyService
from lib.escalation import EscalationAction, EscalationDecision, EscalationPolicy, decide
from lib.lifecycle import can_transition, transition
from lib.models import Alert, AlertStatus, CallLog, CallResult, ContactType, Household, utcnow

logger = logging.getLogger(__name__)

FAMILY = (ContactType.FAMILY,)
NEIGHBORS = (ContactType.NEIGHBOR, ContactType.STAFF)


class EscalationEngine:
    """Carries out escalation decisions against the store and providers"""

    def __init__(self, store: BaseStore, telephony: TelephonyService, notifier: Notifier,
                 policy: EscalationPolicy):
        self.store = store
        self.telephony = telephony
        self.notifier = notifier
        self.policy = policy

    async def call_household(self, alert: Alert, household: Household, now: Optional[datetime] = None,
                             actor: str = 'system') -> Tuple[Alert, DeliveryResult]:
        """Place the next IVR call and record the attempt on the alert"""
        now = now or utcnow()
        attempt = alert.metadata.attempts + 1
        result = await self.telephony.make_call(household.phone, alert.id, household.name, attempt)

        self.store.create_call_log(CallLog(
            alert_id=alert.id,
            household_id=household.id,
            call_sid=result.provider_id,
            attempt=attempt,
            result=CallResult.PENDING if result.success else CallResult.FAILED,
        ))

        def record_attempt(current: Alert) -> Alert:
            metadata = current.metadata.model_copy(update={
                'attempts': max(current.metadata.attempts, attempt), 'last_call_at': now,
            })
            current = current.model_copy(update={'metadata': metadata, 'updated_at': now})
            if current.status == AlertStatus.UNANSWERED:
                current = transition(current, AlertStatus.UNANSWERED, now)
            return current

        saved = self.store.update_alert(alert.id, record_attempt, actor, 'alert.call', {
            'attempt': attempt, 'call_sid': result.provider_id, 'success': result.success,
        })
        return saved or alert, result

    async def notify(self, alert: Alert, household: Household, contact_types, reason: str) -> None:
        try:
            results = await self.notifier.notify_contacts(household, alert, contact_types, reason)
            sent = sum(1 for r in results if r.success)
            logger.info(f"Alert {alert.id}: {sent}/{len(results)} {reason} notifications sent")
        except Exception as e:
            logger.error(f"Notification step failed for alert {alert.id}: {str(e)}", exc_info=True)

    def mark_stage(self, alert: Alert, field: str, now: datetime, action: str, reason: str,
                   escalate: bool = False) -> Alert:
        """Stamp a notification stage on the stored alert, escalating when the table allows it"""
        def stamp(current: Alert) -> Alert:
            metadata = current.metadata.model_copy(update={field: now})
            current = current.model_copy(update={'metadata': metadata, 'updated_at': now})
            if escalate and can_transition(current.status, AlertStatus.ESCALATED):
                current = transition(current, AlertStatus.ESCALATED, now)
            return current

        return self.store.update_alert(alert.id, stamp, 'system', action, {'reason': reason}) or alert

    async def apply(self, alert: Alert, decision: EscalationDecision, now: Optional[datetime] = None) -> Alert:
        now = now or utcnow()
        if decision.action == EscalationAction.NONE:
            return alert

        current = self.store.get_alert(alert.id) or alert
        if current.is_closed or current.status == AlertStatus.OK:
            logger.info(f"Alert {alert.id} is {current.status.value}, skipping {decision.action.value}")
            return current
        alert = current

        household = self.store.get_household(alert.household_id)
        if household is None:
            logger.warning(f"Alert {alert.id} references missing household {alert.household_id}")
            return alert

        logger.info(f"Escalating alert {alert.id}: {decision.action.value} ({decision.reason})")

        if decision.action == EscalationAction.RETRY_CALL:
            alert, _ = await self.call_household(alert, household, now)
            try:
                await self.notifier.send_household_sms(household, alert, REMINDER_SMS, 'reminder')
            except Exception as e:
                logger.error(f"Failed to send reminder SMS for alert {alert.id}: {str(e)}")
            return alert

        if decision.action == EscalationAction.NOTIFY_FAMILY:
            await self.notify(alert, household, FAMILY, alert.status.value)
            return self.mark_stage(alert, 'family_notified_at', now, 'alert.notify_family', decision.reason)

        if decision.action == EscalationAction.NOTIFY_NEIGHBORS:
            await self.notify(alert, household, NEIGHBORS, alert.status.value)
            return self.mark_stage(alert, 'neighbor_notified_at', now, 'alert.notify_neighbors',
                                   decision.reason, escalate=True)

        return alert

    async def step(self, alert: Alert, now: Optional[datetime] = None) -> EscalationDecision:
        """Decide and apply the next step for one alert"""
        now = now or utcnow()
        decision = decide(alert, now, self.policy)
        if decision.action != EscalationAction.NONE:
            await self.apply(alert, decision, now)
        return decision
