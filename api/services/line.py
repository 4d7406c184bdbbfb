import base64
import hashlib
import hmac
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from api.services.telephony import DeliveryResult, stub_id
from lib.config import Settings
from lib.models import Alert, Household
from lib.monitoring import Timer, get_request_id
from lib.retry import retry_async

logger = logging.getLogger(__name__)

STATUS_TEXT = {
    'ok': '元気です',
    'tired': '疲れています',
    'help': '助けが必要',
    'unanswered': '応答なし',
    'escalated': '緊急対応中',
    'in_progress': '対応中',
    'completed': '対応完了',
}

STATUS_COLOR = {
    'ok': '#10b981',
    'tired': '#f59e0b',
    'help': '#ef4444',
    'unanswered': '#6b7280',
    'escalated': '#dc2626',
}


class LineAPIError(Exception):
    def __init__(self, status: int, body: str):
        self.status = status
        super().__init__(f"LINE API returned {status}: {body}")


class LineService:
    def __init__(self, settings: Settings):
        self.access_token = settings.line_channel_access_token
        self.channel_secret = settings.line_channel_secret
        self.api_url = settings.line_api_url.rstrip('/')
        self.is_configured = settings.line_configured
        if self.is_configured:
            logger.info("LINE service initialized")
        else:
            logger.warning("LINE not configured - using stub mode")

    def validate_signature(self, body: bytes, signature: Optional[str]) -> bool:
        """X-Line-Signature is base64(HMAC-SHA256(channel secret, raw body))"""
        if not signature or not self.channel_secret:
            return False
        if isinstance(body, str):
            body = body.encode('utf-8')
        digest = hmac.new(self.channel_secret.encode('utf-8'), body, hashlib.sha256).digest()
        expected = base64.b64encode(digest).decode('utf-8')
        return hmac.compare_digest(expected, signature)

    async def _post(self, path: str, payload: Dict[str, Any]) -> None:
        headers = {
            'Authorization': f"Bearer {self.access_token}",
            'Content-Type': 'application/json',
            'X-Request-ID': get_request_id(),
        }

        async def send():
            async with aiohttp.ClientSession() as session:
                async with session.post(f"{self.api_url}{path}", json=payload, headers=headers) as response:
                    if response.status != 200:
                        raise LineAPIError(response.status, await response.text())

        await retry_async(send)

    async def _send(self, path: str, payload: Dict[str, Any], target: str) -> DeliveryResult:
        if not self.is_configured:
            logger.info(f"[stub] LINE {path} target={target} messages={len(payload['messages'])}")
            return DeliveryResult(success=True, provider_id=stub_id('line'), stub=True)

        with Timer() as timer:
            try:
                await self._post(path, payload)
                error = None
            except Exception as e:
                error = str(e)
        if error:
            logger.error(f"Failed to send LINE message target={target} provider=line "
                         f"duration_ms={timer.duration_ms}: {error}")
            return DeliveryResult(success=False, error=error)
        logger.info(f"LINE message sent target={target} provider=line duration_ms={timer.duration_ms}")
        return DeliveryResult(success=True, status='sent')

    async def push_message(self, user_id: str, messages: List[Dict[str, Any]]) -> DeliveryResult:
        return await self._send('/message/push', {'to': user_id, 'messages': messages}, user_id)

    async def reply_message(self, reply_token: str, messages: List[Dict[str, Any]]) -> DeliveryResult:
        return await self._send('/message/reply', {'replyToken': reply_token, 'messages': messages}, 'reply')


def text_message(text: str) -> Dict[str, Any]:
    return {'type': 'text', 'text': text}


def _detail_row(label: str, value: str) -> Dict[str, Any]:
    return {
        'type': 'box',
        'layout': 'baseline',
        'spacing': 'sm',
        'contents': [
            {'type': 'text', 'text': label, 'color': '#aaaaaa', 'size': 'sm', 'flex': 2},
            {'type': 'text', 'text': value, 'wrap': True, 'size': 'sm', 'flex': 5},
        ],
    }


def _postback(label: str, action: str, alert_id: str, style: str = 'secondary') -> Dict[str, Any]:
    return {
        'type': 'button',
        'style': style,
        'action': {'type': 'postback', 'label': label, 'data': f"action={action}&alert_id={alert_id}"},
    }


def alert_flex_message(alert: Alert, household: Optional[Household], reason: str) -> Dict[str, Any]:
    """Flex bubble sent to contacts, with detail/call/resolve postbacks"""
    name = household.name if household else '対象者'
    status = alert.status.value
    rows = [
        _detail_row('状態', STATUS_TEXT.get(status, status)),
        _detail_row('WBGT', f"{alert.wbgt}°C" if alert.wbgt is not None else '-'),
        _detail_row('レベル', alert.level.value if alert.level else '-'),
        _detail_row('理由', reason),
    ]
    return {
        'type': 'flex',
        'altText': f"【熱中症見守り】{name}さんの状態確認",
        'contents': {
            'type': 'bubble',
            'header': {
                'type': 'box',
                'layout': 'vertical',
                'backgroundColor': STATUS_COLOR.get(status, '#6b7280'),
                'contents': [{'type': 'text', 'text': '熱中症見守りシステム', 'color': '#ffffff', 'weight': 'bold'}],
            },
            'body': {
                'type': 'box',
                'layout': 'vertical',
                'contents': [
                    {'type': 'text', 'text': f"{name}さんの状態", 'weight': 'bold', 'size': 'xl'},
                    {'type': 'separator', 'margin': 'md'},
                    {'type': 'box', 'layout': 'vertical', 'margin': 'lg', 'spacing': 'sm', 'contents': rows},
                ],
            },
            'footer': {
                'type': 'box',
                'layout': 'vertical',
                'spacing': 'sm',
                'contents': [
                    _postback('詳細を確認', 'view_detail', alert.id),
                    _postback('電話をかける', 'call', alert.id),
                    _postback('解決済みにする', 'mark_resolved', alert.id, style='primary'),
                ],
            },
        },
    }


def alert_detail_text(alert: Alert, household: Optional[Household]) -> str:
    name = household.name if household else '対象者'
    status = alert.status.value
    return (
        f"{name}さんのアラート\n"
        f"状態: {STATUS_TEXT.get(status, status)}\n"
        f"WBGT: {alert.wbgt}°C\n"
        f"レベル: {alert.level.value if alert.level else '-'}\n"
        f"地域: {household.address_grid if household and household.address_grid else 'N/A'}\n"
        f"発生時刻: {alert.first_trigger_at.isoformat()}"
    )
