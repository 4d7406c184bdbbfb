import logging
from types import SimpleNamespace
from unittest.mock import MagicMock, patch

import pytest

from api.container import build_services
from api.routes import create_app
from api.services.auth import AuthService
from lib.error_handler import AuthError
from lib.models import User
from lib.monitoring import RequestIdFilter, set_request_id
from tests.conftest import auth, make_settings


def test_health(test_client):
    body = test_client.get('/health').get_json()
    assert body['status'] == 'healthy'
    assert body['storage'] == 'memory'
    assert body['stub_mode'] == {'twilio': False, 'line': True, 'stripe': True, 'auth': True}


def test_request_id_echoed(test_client):
    response = test_client.get('/health', headers={'X-Request-ID': 'req-123'})
    assert response.headers['X-Request-ID'] == 'req-123'
    generated = test_client.get('/health').headers['X-Request-ID']
    assert len(generated) == 36


def test_status(test_client):
    body = test_client.get('/status').get_json()
    assert body['scheduler']['scheduler_running'] is False
    assert set(body['scheduler']['jobs']) == {'heat_alert', 'escalation'}
    assert body['scheduler']['notification_windows'] == [9, 13, 17]
    assert body['weather_cache'] == {'hits': 0, 'misses': 0}


def test_unknown_route_is_json(test_client):
    response = test_client.get('/api/nothing')
    assert response.status_code == 404
    assert 'error' in response.get_json()


def test_unexpected_error_hidden(test_client, users, store):
    store.list_households = MagicMock(side_effect=RuntimeError('disk on fire'))
    response = test_client.get('/api/households', headers={'Authorization': 'Bearer u_owner'})
    assert response.status_code == 500
    assert response.get_json() == {'error': 'Internal server error'}


def test_request_id_filter():
    set_request_id('abc')
    record = logging.LogRecord('test', logging.INFO, __file__, 1, 'hello', None, None)
    assert RequestIdFilter().filter(record)
    assert record.request_id == 'abc'


def test_supabase_auth_creates_user(store):
    supabase = MagicMock()
    supabase.auth.get_user.return_value = SimpleNamespace(user=SimpleNamespace(id='sb_1', email='sb@example.com'))
    user = AuthService(store, supabase).authenticate('Bearer jwt-token')

    supabase.auth.get_user.assert_called_once_with('jwt-token')
    assert user.email == 'sb@example.com'
    assert user.last_login_at is not None
    assert store.get_user('sb_1') is not None


def test_supabase_auth_rejects_bad_token(store):
    supabase = MagicMock()
    supabase.auth.get_user.side_effect = Exception('JWT expired')
    with pytest.raises(AuthError):
        AuthService(store, supabase).authenticate('Bearer expired')


def test_malformed_header(store):
    store.save_user(User(id='u_1', email='a@example.com'))
    service = AuthService(store)
    assert service.authenticate('Bearer u_1').id == 'u_1'
    for header in (None, 'Basic abc', 'Bearer '):
        with pytest.raises(AuthError):
            service.authenticate(header)


def test_supabase_auth_used_with_memory_storage(store, fake_telephony, fake_line, fake_weather, users):
    settings = make_settings(supabase_url='https://project.supabase.co', supabase_key='service-key',
                             storage_backend='memory')
    supabase = MagicMock()
    supabase.auth.get_user.side_effect = Exception('invalid JWT')
    with patch('lib.database.get_supabase_client', return_value=supabase) as get_client:
        services = build_services(settings, store=store, telephony=fake_telephony, line=fake_line,
                                  weather=fake_weather)

    get_client.assert_called_once_with(settings)
    assert services.auth.supabase is supabase
    assert services.store.backend == 'memory'

    client = create_app(settings, services).test_client()
    response = client.get('/api/households', headers=auth('u_owner'))
    assert response.status_code == 401
    supabase.auth.get_user.assert_called_once_with('u_owner')
