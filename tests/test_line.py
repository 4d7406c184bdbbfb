import base64
import hashlib
import hmac
import pytest
from unittest.mock import MagicMock, patch

from api.services.line import LineService, alert_detail_text, alert_flex_message, text_message
from lib.models import Alert, Household
from tests.conftest import make_settings

SECRET = 'line-secret'


def configured():
    return LineService(make_settings(line_channel_access_token='token', line_channel_secret=SECRET))


def sign(body: bytes) -> str:
    return base64.b64encode(hmac.new(SECRET.encode(), body, hashlib.sha256).digest()).decode()


def fake_post(status=200, text=''):
    mock_response = MagicMock()
    mock_response.status = status

    async def read_text():
        return text
    mock_response.text = read_text

    class AsyncContextManager:
        async def __aenter__(self):
            return mock_response

        async def __aexit__(self, exc_type, exc_val, exc_tb):
            pass

    return patch('aiohttp.ClientSession.post', return_value=AsyncContextManager())


def test_signature_validation():
    service = configured()
    body = b'{"events": []}'
    assert service.validate_signature(body, sign(body))
    assert not service.validate_signature(body, sign(b'other'))
    assert not service.validate_signature(body, None)
    assert not LineService(make_settings()).validate_signature(body, sign(body))


async def test_stub_push():
    result = await LineService(make_settings()).push_message('U1', [text_message('hi')])
    assert result.success and result.stub


async def test_push_message_posts_to_line():
    with fake_post() as mock_post:
        result = await configured().push_message('U1', [text_message('こんにちは')])
    assert result.success
    args, kwargs = mock_post.call_args
    assert args[0] == 'https://api.line.me/v2/bot/message/push'
    assert kwargs['json'] == {'to': 'U1', 'messages': [{'type': 'text', 'text': 'こんにちは'}]}
    assert kwargs['headers']['Authorization'] == 'Bearer token'


async def test_push_message_failure():
    with fake_post(status=400, text='Invalid reply token'):
        result = await configured().reply_message('rt', [text_message('x')])
    assert not result.success
    assert '400' in result.error


def test_flex_message_has_resolve_postback():
    alert = Alert(id='a_1', household_id='h_1', wbgt=31.1, level='danger')
    household = Household(name='田中', phone='+819012345678', address_grid='5339-24')
    message = alert_flex_message(alert, household, 'unanswered_family_stage')
    assert message['type'] == 'flex'
    assert '田中' in message['altText']
    buttons = message['contents']['footer']['contents']
    assert [b['action']['data'] for b in buttons] == [
        'action=view_detail&alert_id=a_1',
        'action=call&alert_id=a_1',
        'action=mark_resolved&alert_id=a_1',
    ]
    assert '5339-24' in alert_detail_text(alert, household)
