from twilio.rest import Client
from twilio.base.exceptions import TwilioRestException
from twilio.request_validator import RequestValidator
from typing import Dict, List, Optional
import logging

from lib.config import Settings

logger = logging.getLogger(__name__)

ERROR_MESSAGES = {
    21211: "Invalid phone number format.",
    21214: "The number cannot be reached by voice.",
    21608: "This phone number is not verified with our test account.",
    21610: "The recipient has opted out of messages.",
    21614: "The number cannot receive SMS.",
    20003: "Twilio authentication failed.",
    20429: "Twilio rate limit reached.",
}

CALL_STATUS_EVENTS = ['initiated', 'ringing', 'answered', 'completed']


def describe_error(error: Exception) -> str:
    if isinstance(error, TwilioRestException):
        return ERROR_MESSAGES.get(error.code, f"Twilio error {error.code}: {error.msg}")
    return str(error)


class TwilioClient:
    """Thin synchronous wrapper around the Twilio REST client."""

    def __init__(self, settings: Settings, client: Optional[Client] = None):
        self.phone_number = settings.twilio_phone_number
        self.webhook_url = settings.twilio_webhook_url.rstrip('/')
        self.client = client or Client(settings.twilio_account_sid, settings.twilio_auth_token)

    def create_call(self, to_number: str, twiml_url: str, timeout: int = 60):
        return self.client.calls.create(
            to=to_number,
            from_=self.phone_number,
            url=twiml_url,
            method='POST',
            status_callback=f"{self.webhook_url}/status",
            status_callback_method='POST',
            status_callback_event=CALL_STATUS_EVENTS,
            timeout=timeout,
            record=False
        )

    def send_message(self, to_number: str, body: str) -> str:
        """Send an SMS message and return the message SID."""
        message = self.client.messages.create(
            body=body,
            from_=self.phone_number,
            to=to_number,
            status_callback=f"{self.webhook_url}/sms-status"
        )
        logger.info(f"Message sent successfully to {to_number}")
        return message.sid

    def fetch_call(self, call_sid: str):
        return self.client.calls(call_sid).fetch()


def validate_twilio_request(auth_token: str, url: str, params: Dict[str, List[str]], signature: str) -> bool:
    """Check X-Twilio-Signature against the full request URL and form params"""
    if not signature:
        return False
    return RequestValidator(auth_token).validate(url, params, signature)
