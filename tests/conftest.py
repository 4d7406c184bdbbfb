import pytest
from unittest.mock import AsyncMock, MagicMock
from datetime import datetime, timedelta, timezone
import sys
from pathlib import Path

# Add project root to Python path
project_root = str(Path(__file__).parent.parent)
sys.path.append(project_root)

from api.container import build_services
from api.routes import create_app
from api.services.billing import BillingService
from api.services.line import LineService
from api.services.storage import MemoryStore
from api.services.telephony import DeliveryResult, TelephonyService
from api.services.weather import WeatherReading, WeatherService, calculate_wbgt, level_for
from lib.config import Settings
from lib.models import Alert, AlertMetadata, Contact, ContactType, Household, User, to_local

# 13:00 in Tokyo, inside a notification window
NOW = datetime(2025, 8, 1, 4, 0, tzinfo=timezone.utc)

STUB_CREDENTIALS = dict(
    twilio_account_sid='',
    twilio_auth_token='',
    twilio_phone_number='+815000000000',
    supabase_url='',
    supabase_key='',
    stripe_secret_key='',
    stripe_webhook_secret='whsec_test',
    line_channel_access_token='',
    line_channel_secret='',
    storage_backend='memory',
    scheduler_enabled=False,
)


def make_settings(**overrides) -> Settings:
    return Settings(_env_file=None, **{**STUB_CREDENTIALS, **overrides})


def reading(temperature=33.0, humidity=70.0, fallback=False) -> WeatherReading:
    wbgt = calculate_wbgt(temperature, humidity)
    return WeatherReading(station_id='44132', temperature=temperature, humidity=humidity,
                          wbgt=wbgt, level=level_for(wbgt), fallback=fallback)


def auth(user_id: str) -> dict:
    return {'Authorization': f'Bearer {user_id}'}


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def fake_telephony():
    telephony = MagicMock(spec=TelephonyService)
    telephony.is_stub = False
    telephony.make_call = AsyncMock(return_value=DeliveryResult(success=True, provider_id='CA123', status='queued'))
    telephony.send_sms = AsyncMock(return_value=DeliveryResult(success=True, provider_id='SM123', status='queued'))
    return telephony


@pytest.fixture
def fake_line():
    line = MagicMock(spec=LineService)
    line.is_configured = False
    line.push_message = AsyncMock(return_value=DeliveryResult(success=True, provider_id='line_1'))
    line.reply_message = AsyncMock(return_value=DeliveryResult(success=True))
    return line


@pytest.fixture
def fake_weather():
    weather = MagicMock(spec=WeatherService)
    weather.get_weather_by_grid = AsyncMock(return_value=reading())
    weather.cache_stats = MagicMock(return_value={'hits': 0, 'misses': 0})
    return weather


@pytest.fixture
def services(settings, store, fake_telephony, fake_line, fake_weather):
    return build_services(settings, store=store, telephony=fake_telephony, line=fake_line, weather=fake_weather)


@pytest.fixture
def app(settings, services):
    app = create_app(settings, services)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def test_client(app):
    return app.test_client()


@pytest.fixture
def users(store, settings):
    """owner on the family plan, a personal-plan user, a business user and an admin"""
    billing = BillingService(store, settings)
    created = {
        'owner': User(id='u_owner', email='owner@example.com', name='Owner'),
        'personal': User(id='u_personal', email='personal@example.com'),
        'business': User(id='u_business', email='biz@example.com'),
        'admin': User(id='u_admin', email='admin@example.com', role='admin'),
        'other': User(id='u_other', email='other@example.com'),
    }
    for user in created.values():
        store.save_user(user)
    billing.change_plan('u_owner', 'family', actor='test')
    billing.change_plan('u_personal', 'personal', actor='test')
    billing.change_plan('u_business', 'business', actor='test')
    return created


@pytest.fixture
def household(store, users):
    household = Household(
        user_id='u_owner',
        name='田中 ハナ',
        phone='+819012345678',
        address_grid='5339-24',
        contacts=[
            Contact(name='Daughter', type=ContactType.FAMILY, priority=1,
                    phone='+819011112222', line_user_id='U_family'),
            Contact(name='Son', type=ContactType.FAMILY, priority=2, phone='+819033334444'),
            Contact(name='Neighbour', type=ContactType.NEIGHBOR, priority=1, phone='+819055556666'),
            Contact(name='Care staff', type=ContactType.STAFF, priority=1, phone='+819077778888'),
        ],
    )
    return store.create_household(household, actor='test')


@pytest.fixture
def make_alert(store):
    def factory(household, first_trigger_at=None, **fields):
        first_trigger_at = first_trigger_at or NOW
        metadata = fields.pop('metadata', None) or AlertMetadata(attempts=1, last_call_at=first_trigger_at)
        alert = Alert(
            household_id=household.id,
            date=fields.pop('date', to_local(first_trigger_at).date()),
            wbgt=31.1,
            level='danger',
            first_trigger_at=first_trigger_at,
            metadata=metadata,
            **fields,
        )
        return store.create_alert(alert)
    return factory


@pytest.fixture
def minutes():
    return lambda n: timedelta(minutes=n)
