import logging
from dataclasses import dataclass
from typing import Optional

from flask import current_app

from api.services.auth import AuthService
from api.services.billing import BillingService
from api.services.escalation import EscalationEngine
from api.services.line import LineService
from api.services.notifier import Notifier
from api.services.responses import ResponseService
from api.services.storage import BaseStore, create_store
from api.services.telephony import TelephonyService
from api.services.weather import WeatherService
from lib.config import Settings
from lib.escalation import EscalationPolicy

logger = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    store: BaseStore
    telephony: TelephonyService
    line: LineService
    notifier: Notifier
    engine: EscalationEngine
    responses: ResponseService
    weather: WeatherService
    billing: BillingService
    auth: AuthService
    scheduler: Optional[object] = None


def build_services(settings: Settings, store: Optional[BaseStore] = None,
                   telephony: Optional[TelephonyService] = None, line: Optional[LineService] = None,
                   weather: Optional[WeatherService] = None, supabase_client=None) -> Services:
    """Wire every service once; tests pass their own store and providers"""
    logger.info("Initializing services...")
    store = store or create_store(settings)
    telephony = telephony or TelephonyService(settings)
    line = line or LineService(settings)
    notifier = Notifier(store, telephony, line)
    engine = EscalationEngine(store, telephony, notifier, EscalationPolicy.from_settings(settings))

    if supabase_client is None and settings.supabase_configured:
        from lib.database import get_supabase_client
        supabase_client = get_supabase_client(settings)

    services = Services(
        settings=settings,
        store=store,
        telephony=telephony,
        line=line,
        notifier=notifier,
        engine=engine,
        responses=ResponseService(store, engine, line),
        weather=weather or WeatherService(settings),
        billing=BillingService(store, settings),
        auth=AuthService(store, supabase_client),
    )
    logger.info(f"All services initialized (storage={store.backend})")
    return services


def get_services() -> Services:
    return current_app.extensions['heatwatch']
