import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qs

from api.services.escalation import EscalationEngine
from api.services.line import LineService, alert_detail_text, text_message
from api.services.storage import BaseStore
from lib.error_handler import InvalidTransitionError
from lib.escalation import EscalationAction, EscalationDecision
from lib.lifecycle import can_transition, transition
from lib.models import (
    Alert, AlertStatus, CallLog, CallResult, Channel, Notification, NotificationStatus, utcnow,
)

logger = logging.getLogger(__name__)

DIGIT_STATUS = {
    '1': AlertStatus.OK,
    '2': AlertStatus.TIRED,
    '3': AlertStatus.HELP,
}

DIGIT_RESULT = {
    '1': CallResult.OK,
    '2': CallResult.TIRED,
    '3': CallResult.HELP,
}

CALL_STATUS_RESULT = {
    'completed': CallResult.OK,
    'no-answer': CallResult.NOANSWER,
    'busy': CallResult.BUSY,
    'failed': CallResult.FAILED,
    'canceled': CallResult.FAILED,
}

SMS_STATUS = {
    'delivered': NotificationStatus.DELIVERED,
    'failed': NotificationStatus.FAILED,
    'undelivered': NotificationStatus.FAILED,
}

NOT_FOUND_TEXT = 'アラート情報が見つかりませんでした。'
ERROR_TEXT = 'エラーが発生しました。しばらく経ってから再度お試しください。'
HELP_TEXT = (
    '熱中症見守りシステムのヘルプ:\n\n'
    '• アラート通知が届いたら、詳細を確認してください\n'
    '• 必要に応じて電話で直接確認してください\n'
    '• 問題が解決したら「解決済み」をタップしてください\n\n'
    'お困りの場合は管理者にお問い合わせください。'
)
FOLLOW_TEXT = '熱中症見守りシステムにご登録いただきありがとうございます。\n\nアラートが発生した際に通知をお送りします。'


class ResponseService:
    """Applies household and contact responses (IVR digits, call/SMS status, LINE events)"""

    def __init__(self, store: BaseStore, engine: EscalationEngine, line: LineService):
        self.store = store
        self.engine = engine
        self.line = line

    def _record_call(self, alert: Optional[Alert], call_sid: Optional[str], result: CallResult,
                     dtmf: Optional[str] = None, duration: int = 0) -> None:
        existing = self.store.find_call_log(call_sid) if call_sid else None
        if existing:
            existing.result = result
            if dtmf is not None:
                existing.dtmf = dtmf
            if duration:
                existing.duration_sec = duration
            self.store.update_call_log(existing)
            return
        self.store.create_call_log(CallLog(
            alert_id=alert.id if alert else None,
            household_id=alert.household_id if alert else None,
            call_sid=call_sid,
            attempt=alert.metadata.attempts if alert and alert.metadata.attempts else 1,
            result=result,
            dtmf=dtmf,
            duration_sec=duration,
        ))

    async def handle_digits(self, alert_id: Optional[str], digits: Optional[str],
                            call_sid: Optional[str] = None, now: Optional[datetime] = None) -> Optional[Alert]:
        """Apply a DTMF answer: 1 ok, 2 tired, 3 help, anything else unanswered"""
        now = now or utcnow()
        digits = (digits or '').strip()
        logger.info(f"DTMF received digits={digits or 'none'} call={call_sid} alert={alert_id}")

        alert = self.store.get_alert(alert_id) if alert_id else None
        if alert is None:
            logger.warning(f"DTMF for unknown alert {alert_id}")
            return None

        target = DIGIT_STATUS.get(digits, AlertStatus.UNANSWERED)
        self._record_call(alert, call_sid, DIGIT_RESULT.get(digits, CallResult.NOANSWER), digits or 'none')

        ignored = False

        def answer(current: Alert) -> Alert:
            nonlocal ignored
            metadata = current.metadata.model_copy(update={'last_response_code': digits or 'none'})
            current = current.model_copy(update={'metadata': metadata})
            try:
                return transition(current, target, now)
            except InvalidTransitionError as e:
                logger.warning(f"Ignoring IVR answer for alert {current.id}: {e.message}")
                ignored = True
                return current

        alert = self.store.update_alert(alert.id, answer, 'twilio_ivr', 'alert.response', {'dtmf': digits})
        if ignored:
            return alert

        if target == AlertStatus.TIRED:
            alert = await self.engine.apply(
                alert, EscalationDecision(EscalationAction.NOTIFY_FAMILY, 'household_tired'), now)
        elif target == AlertStatus.HELP:
            alert = await self.engine.apply(
                alert, EscalationDecision(EscalationAction.NOTIFY_FAMILY, 'help_requested'), now)
            alert = await self.engine.apply(
                alert, EscalationDecision(EscalationAction.NOTIFY_NEIGHBORS, 'help_requested'), now)
        return alert

    def handle_call_status(self, alert_id: Optional[str], call_sid: Optional[str], call_status: str,
                           duration: Optional[str] = None) -> Optional[CallResult]:
        result = CALL_STATUS_RESULT.get(call_status)
        logger.info(f"Call status update call={call_sid} status={call_status} alert={alert_id}")
        if result is None:
            # initiated / ringing / in-progress
            return None

        alert = self.store.get_alert(alert_id) if alert_id else None
        existing = self.store.find_call_log(call_sid) if call_sid else None
        if existing and existing.result in (CallResult.OK, CallResult.TIRED, CallResult.HELP):
            # DTMF already recorded a richer result
            if duration:
                existing.duration_sec = int(duration or 0)
                self.store.update_call_log(existing)
            return existing.result
        if alert is None and existing is None:
            logger.warning(f"Call status for unknown alert {alert_id}")
            return result
        self._record_call(alert, call_sid, result, duration=int(duration or 0))
        return result

    def handle_sms_status(self, message_sid: Optional[str], message_status: str,
                          now: Optional[datetime] = None) -> Optional[Notification]:
        status = SMS_STATUS.get(message_status)
        if status is None or not message_sid:
            return None
        notification = self.store.find_notification_by_provider_id(message_sid)
        if notification is None:
            logger.warning(f"SMS status for unknown message {message_sid}")
            return None
        delivered_at = (now or utcnow()) if status == NotificationStatus.DELIVERED else None
        return self.store.update_notification_status(notification.id, status, delivered_at)

    # LINE

    async def handle_line_events(self, events: List[Dict[str, Any]]) -> int:
        handled = 0
        for event in events:
            try:
                await self.handle_line_event(event)
                handled += 1
            except Exception as e:
                logger.error(f"Failed to handle LINE event {event.get('type')}: {str(e)}", exc_info=True)
        return handled

    async def handle_line_event(self, event: Dict[str, Any]) -> None:
        event_type = event.get('type')
        user_id = (event.get('source') or {}).get('userId')
        reply_token = event.get('replyToken')
        logger.info(f"Processing LINE event type={event_type} user={user_id}")

        if event_type == 'postback':
            await self.handle_postback(event)
        elif event_type == 'message':
            message = event.get('message') or {}
            text = (message.get('text') or '').lower()
            if message.get('type') == 'text' and ('help' in text or 'ヘルプ' in text):
                await self.line.reply_message(reply_token, [text_message(HELP_TEXT)])
        elif event_type == 'follow':
            await self.line.reply_message(reply_token, [text_message(FOLLOW_TEXT)])
            logger.info(f"New LINE follower {user_id}")
        elif event_type == 'unfollow':
            logger.info(f"LINE unfollower {user_id}")
        else:
            logger.info(f"Unhandled LINE event type {event_type}")

    async def handle_postback(self, event: Dict[str, Any]) -> None:
        data = parse_qs((event.get('postback') or {}).get('data', ''))
        action = (data.get('action') or [None])[0]
        alert_id = (data.get('alert_id') or [None])[0]
        user_id = (event.get('source') or {}).get('userId')
        reply_token = event.get('replyToken')

        alert = self.store.get_alert(alert_id) if alert_id else None
        try:
            if alert is None:
                await self.line.reply_message(reply_token, [text_message(NOT_FOUND_TEXT)])
            elif action == 'view_detail':
                household = self.store.get_household(alert.household_id)
                await self.line.reply_message(reply_token, [text_message(alert_detail_text(alert, household))])
            elif action == 'call':
                household = self.store.get_household(alert.household_id)
                name = household.name if household else '対象者'
                phone = household.phone if household else 'N/A'
                await self.line.reply_message(reply_token, [text_message(
                    f"{name}さんへの連絡先:\n{phone}\n\nタップして電話をかけてください。")])
            elif action == 'mark_resolved':
                await self.mark_resolved(alert, user_id, reply_token)
            else:
                logger.warning(f"Unknown postback action {action} for alert {alert_id}")
        except Exception as e:
            logger.error(f"Failed to handle postback {action}: {str(e)}", exc_info=True)
            await self.line.reply_message(reply_token, [text_message(ERROR_TEXT)])

        if alert is not None:
            self.store.create_notification(Notification(
                alert_id=alert.id,
                channel=Channel.LINE,
                recipient=user_id or 'unknown',
                status=NotificationStatus.INTERACTED,
                content={'type': 'line_interaction', 'action': action},
            ))

    async def mark_resolved(self, alert: Alert, user_id: Optional[str], reply_token: Optional[str]) -> Alert:
        """Close an alert from LINE: ok when allowed, otherwise completed"""
        household = self.store.get_household(alert.household_id)
        name = household.name if household else '対象者'
        resolved = False

        def resolve(current: Alert) -> Optional[Alert]:
            nonlocal resolved
            target = AlertStatus.OK if can_transition(current.status, AlertStatus.OK) else AlertStatus.COMPLETED
            if not can_transition(current.status, target):
                return None
            resolved = True
            return transition(current, target)

        alert = self.store.update_alert(alert.id, resolve, f"line_user_{user_id}", 'alert.status',
                                        {'via': 'line'}) or alert
        if not resolved:
            await self.line.reply_message(reply_token, [text_message(f"{name}さんのアラートはすでに完了しています。")])
            return alert
        await self.line.reply_message(reply_token, [text_message(f"✅ {name}さんのアラートを解決済みにしました。")])
        logger.info(f"Alert {alert.id} marked {alert.status.value} via LINE by {user_id}")
        return alert
