from functools import lru_cache
from typing import List

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

    # Twilio settings
    twilio_account_sid: str = ''
    twilio_auth_token: str = ''
    twilio_phone_number: str = ''
    twilio_webhook_url: str = 'http://localhost:8000/webhooks/twilio'

    # Supabase settings
    supabase_url: str = ''
    supabase_key: str = ''

    # Stripe settings
    stripe_secret_key: str = ''
    stripe_webhook_secret: str = ''
    stripe_success_url: str = 'http://localhost:3000/billing?checkout=success'
    stripe_cancel_url: str = 'http://localhost:3000/billing?checkout=cancel'
    stripe_portal_return_url: str = 'http://localhost:3000/billing'

    # LINE settings
    line_channel_access_token: str = ''
    line_channel_secret: str = ''
    line_api_url: str = 'https://api.line.me/v2/bot'

    # Storage
    storage_backend: str = 'memory'  # memory | json | supabase
    data_dir: str = 'data'

    # Escalation timings
    retry_after_minutes: int = 5
    family_after_minutes: int = 10
    neighbor_after_minutes: int = 15
    max_call_attempts: int = 3

    # Heat alert job
    notification_windows: List[int] = [9, 13, 17]
    quiet_hours_start: int = 22
    quiet_hours_end: int = 7
    scheduler_enabled: bool = False
    timezone: str = 'Asia/Tokyo'

    # Weather (JMA AMeDAS)
    weather_base_url: str = 'https://www.jma.go.jp/bosai/amedas'
    weather_cache_ttl_seconds: int = 300
    weather_timeout_seconds: int = 10

    log_level: str = 'INFO'

    @property
    def twilio_configured(self) -> bool:
        return bool(self.twilio_account_sid and self.twilio_auth_token)

    @property
    def supabase_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_key)

    @property
    def stripe_configured(self) -> bool:
        return bool(self.stripe_secret_key)

    @property
    def line_configured(self) -> bool:
        return bool(self.line_channel_access_token and self.line_channel_secret)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
