import asyncio
import logging
import time
from dataclasses import asdict, dataclass
from typing import Optional
from urllib.parse import urlencode

from lib.config import Settings
from lib.monitoring import Timer
from lib.retry import retry_async
from lib.twilio_client import TwilioClient, describe_error

logger = logging.getLogger(__name__)

DEFAULT_HOUSEHOLD_NAME = '利用者'


@dataclass
class DeliveryResult:
    success: bool
    provider_id: Optional[str] = None
    error: Optional[str] = None
    stub: bool = False
    status: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


def stub_id(kind: str) -> str:
    return f"stub_{kind}_{int(time.time() * 1000)}"


class TelephonyService:
    """Outbound voice calls and SMS through Twilio, or logged stubs when unconfigured"""

    def __init__(self, settings: Settings, twilio_client: Optional[TwilioClient] = None,
                 retry_sleep=asyncio.sleep):
        self.webhook_url = settings.twilio_webhook_url.rstrip('/')
        self.client = twilio_client
        if self.client is None and settings.twilio_configured:
            self.client = TwilioClient(settings)
        self._sleep = retry_sleep
        if self.client:
            logger.info(f"Telephony service initialized with phone number: {settings.twilio_phone_number}")
        else:
            logger.warning("Twilio not configured - using stub mode")

    @property
    def is_stub(self) -> bool:
        return self.client is None

    def twiml_url(self, alert_id: str, household_name: str, attempt: int) -> str:
        query = urlencode({'alertId': alert_id, 'name': household_name, 'attempt': attempt})
        return f"{self.webhook_url}/twiml?{query}"

    async def _run(self, func):
        # Twilio's client is blocking; keep it off the event loop
        loop = asyncio.get_running_loop()
        return await retry_async(lambda: loop.run_in_executor(None, func), sleep=self._sleep)

    async def make_call(self, to: str, alert_id: str, household_name: str = DEFAULT_HOUSEHOLD_NAME,
                        attempt: int = 1) -> DeliveryResult:
        """Place an IVR call for an alert"""
        if self.is_stub:
            logger.info(f"[stub] call to={to} alert={alert_id} attempt={attempt} provider=twilio")
            return DeliveryResult(success=True, provider_id=stub_id('call'), stub=True, status='queued')

        url = self.twiml_url(alert_id, household_name, attempt)
        call, error = None, None
        with Timer() as timer:
            try:
                call = await self._run(lambda: self.client.create_call(to, url))
            except Exception as e:
                error = describe_error(e)
        if error:
            logger.error(f"Failed to make call to={to} alert={alert_id} provider=twilio "
                         f"duration_ms={timer.duration_ms}: {error}")
            return DeliveryResult(success=False, error=error)
        logger.info(f"Call initiated sid={call.sid} to={to} alert={alert_id} attempt={attempt} "
                    f"provider=twilio duration_ms={timer.duration_ms}")
        return DeliveryResult(success=True, provider_id=call.sid, status=call.status)

    async def send_sms(self, to: str, body: str, alert_id: Optional[str] = None) -> DeliveryResult:
        """Send SMS message"""
        if self.is_stub:
            logger.info(f"[stub] sms to={to} alert={alert_id} body={body[:20]}... provider=twilio")
            return DeliveryResult(success=True, provider_id=stub_id('sms'), stub=True, status='queued')

        sid, error = None, None
        with Timer() as timer:
            try:
                sid = await self._run(lambda: self.client.send_message(to, body))
            except Exception as e:
                error = describe_error(e)
        if error:
            logger.error(f"Failed to send SMS to={to} alert={alert_id} provider=twilio "
                         f"duration_ms={timer.duration_ms}: {error}")
            return DeliveryResult(success=False, error=error)
        logger.info(f"SMS sent sid={sid} to={to} alert={alert_id} provider=twilio duration_ms={timer.duration_ms}")
        return DeliveryResult(success=True, provider_id=sid, status='queued')

    async def get_call_status(self, call_sid: str) -> DeliveryResult:
        if self.is_stub or call_sid.startswith('stub_'):
            return DeliveryResult(success=True, provider_id=call_sid, stub=True, status='completed')
        try:
            call = await self._run(lambda: self.client.fetch_call(call_sid))
        except Exception as e:
            error = describe_error(e)
            logger.error(f"Failed to fetch call {call_sid}: {error}")
            return DeliveryResult(success=False, provider_id=call_sid, error=error)
        return DeliveryResult(success=True, provider_id=call_sid, status=call.status)
