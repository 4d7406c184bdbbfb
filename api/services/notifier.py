import logging
from typing import List, Optional, Sequence

from api.services.line import LineService, alert_flex_message
from api.services.storage import BaseStore
from api.services.telephony import DeliveryResult, TelephonyService
from lib.models import (
    Alert, Channel, Contact, ContactType, Household, Notification, NotificationStatus, PlanType,
)
from lib.plans import PLANS, Plan, plan_for

logger = logging.getLogger(__name__)

FALLBACK_SMS = '【熱中症予防】本日は暑さ指数が警戒レベルです。体調確認のお電話をさせていただきます。水分補給を忘れずに。'
REMINDER_SMS = '【再通知】熱中症予防の確認です。体調はいかがですか？折り返しお電話いたします。緊急の場合は119番へ。'


def contact_message(reason: str, household: Household, contact_type: ContactType) -> str:
    name = household.name
    if contact_type in (ContactType.NEIGHBOR, ContactType.STAFF):
        return f"【近隣確認のお願い】{name}様の安否確認をお願いします。Tel: {household.phone}"
    if reason == 'help':
        return f"【緊急】{name}様が助けを求めています。至急確認してください。Tel: {household.phone}"
    if reason == 'tired':
        return f"【熱中症見守り】{name}様が「少し疲れている」と回答しました。ご確認ください。Tel: {household.phone}"
    return f"【緊急】{name}様から応答がありません。確認をお願いします。Tel: {household.phone}"


class Notifier:
    def __init__(self, store: BaseStore, telephony: TelephonyService, line: LineService):
        self.store = store
        self.telephony = telephony
        self.line = line

    def plan_of(self, household: Household) -> Plan:
        subscription = self.store.get_subscription(household.user_id) if household.user_id else None
        return plan_for(subscription) or PLANS[PlanType.PERSONAL]

    def _record(self, alert: Optional[Alert], channel: Channel, recipient: str,
                result: DeliveryResult, content: dict) -> Notification:
        notification = Notification(
            alert_id=alert.id if alert else None,
            channel=channel,
            recipient=recipient,
            status=NotificationStatus.SENT if result.success else NotificationStatus.FAILED,
            content={**content, **({'error': result.error} if result.error else {})},
            provider_id=result.provider_id,
        )
        return self.store.create_notification(notification)

    async def notify_contact(self, contact: Contact, household: Household, alert: Alert,
                             reason: str, plan: Plan) -> List[DeliveryResult]:
        """Send to one contact over every channel its flags and the plan allow"""
        results = []
        text = contact_message(reason, household, contact.type)

        if contact.notify_sms and contact.phone and plan.allows_channel(Channel.SMS):
            result = await self.telephony.send_sms(contact.phone, text, alert.id)
            self._record(alert, Channel.SMS, contact.phone, result,
                         {'message': text, 'type': reason, 'contact_id': contact.id})
            results.append(result)

        if contact.notify_line and contact.line_user_id:
            if plan.allows_channel(Channel.LINE):
                messages = [alert_flex_message(alert, household, text)]
                result = await self.line.push_message(contact.line_user_id, messages)
                self._record(alert, Channel.LINE, contact.line_user_id, result,
                             {'message': text, 'type': reason, 'contact_id': contact.id})
                results.append(result)
            else:
                logger.info(f"LINE skipped for contact {contact.id}: not included in {plan.type.value} plan")

        if not results:
            logger.warning(f"Contact {contact.id} has no usable channel")
        return results

    async def notify_contacts(self, household: Household, alert: Alert,
                              contact_types: Sequence[ContactType], reason: str) -> List[DeliveryResult]:
        plan = self.plan_of(household)
        contacts = household.contacts_of(*contact_types)
        logger.info(f"Notifying {len(contacts)} {'/'.join(t.value for t in contact_types)} "
                    f"contacts for {household.name} (reason={reason})")

        results = []
        for contact in contacts:
            try:
                results.extend(await self.notify_contact(contact, household, alert, reason, plan))
            except Exception as e:
                # One broken contact must not stop the rest
                logger.error(f"Failed to notify contact {contact.id}: {str(e)}", exc_info=True)
                results.append(DeliveryResult(success=False, error=str(e)))
        return results

    async def send_household_sms(self, household: Household, alert: Alert, body: str,
                                 kind: str) -> DeliveryResult:
        result = await self.telephony.send_sms(household.phone, body, alert.id)
        self._record(alert, Channel.SMS, household.phone, result, {'message': body, 'type': kind})
        return result
