import functools
import inspect
import json
import logging

from flask import Blueprint, Response, jsonify, request

from api.container import get_services
from api.services.voice import prompt_twiml, reply_twiml
from api.services.telephony import DEFAULT_HOUSEHOLD_NAME
from lib.twilio_client import validate_twilio_request

logger = logging.getLogger(__name__)

webhooks_bp = Blueprint('webhooks', __name__, url_prefix='/webhooks')


def twiml_response(body: str) -> Response:
    return Response(body, mimetype='text/xml')


def twilio_signed(view):
    """Reject Twilio callbacks with a bad X-Twilio-Signature when credentials are set"""
    def check():
        settings = get_services().settings
        if not settings.twilio_configured:
            return None
        signature = request.headers.get('X-Twilio-Signature', '')
        if not validate_twilio_request(settings.twilio_auth_token, request.url, request.form, signature):
            logger.warning(f"Invalid Twilio signature for {request.path}")
            return Response('Forbidden', status=403)
        return None

    if inspect.iscoroutinefunction(view):
        @functools.wraps(view)
        async def async_wrapper(*args, **kwargs):
            return check() or await view(*args, **kwargs)
        return async_wrapper

    @functools.wraps(view)
    def wrapper(*args, **kwargs):
        return check() or view(*args, **kwargs)
    return wrapper


@webhooks_bp.route('/twilio/twiml', methods=['GET', 'POST'])
@twilio_signed
def twilio_twiml():
    alert_id = request.values.get('alertId', '')
    name = request.values.get('name') or DEFAULT_HOUSEHOLD_NAME
    attempt = request.values.get('attempt', '1')
    logger.info(f"TwiML requested for alert {alert_id} attempt {attempt}")
    return twiml_response(prompt_twiml(name, alert_id, attempt))


@webhooks_bp.route('/twilio/gather', methods=['POST'])
@twilio_signed
async def twilio_gather():
    digits = request.form.get('Digits', '')
    call_sid = request.form.get('CallSid')
    alert_id = request.args.get('alertId')
    try:
        await get_services().responses.handle_digits(alert_id, digits, call_sid)
    except Exception as e:
        # The caller still gets a spoken reply
        logger.error(f"Failed to process DTMF for alert {alert_id}: {str(e)}", exc_info=True)
    return twiml_response(reply_twiml(digits))


@webhooks_bp.route('/twilio/status', methods=['POST'])
@twilio_signed
def twilio_status():
    get_services().responses.handle_call_status(
        request.args.get('alertId'),
        request.form.get('CallSid'),
        request.form.get('CallStatus', ''),
        request.form.get('CallDuration'),
    )
    return 'OK', 200


@webhooks_bp.route('/twilio/sms-status', methods=['POST'])
@twilio_signed
def twilio_sms_status():
    get_services().responses.handle_sms_status(
        request.form.get('MessageSid'),
        request.form.get('MessageStatus', ''),
    )
    return 'OK', 200


@webhooks_bp.route('/line', methods=['POST'])
async def line_webhook():
    services = get_services()
    body = request.get_data()
    if services.line.is_configured:
        signature = request.headers.get('X-Line-Signature')
        if not signature:
            logger.warning("Missing LINE signature")
            return jsonify({'error': 'Missing signature'}), 401
        if not services.line.validate_signature(body, signature):
            logger.error("Invalid LINE signature")
            return jsonify({'error': 'Invalid signature'}), 401
    else:
        logger.warning("LINE not configured - accepting unsigned webhook")

    try:
        payload = json.loads(body or b'{}')
    except ValueError:
        return jsonify({'error': 'Invalid JSON'}), 400
    events = (payload.get('events') or []) if isinstance(payload, dict) else None
    if not isinstance(events, list) or not all(isinstance(e, dict) for e in events):
        return jsonify({'error': 'Invalid payload'}), 400
    logger.info(f"LINE webhook received with {len(events)} events")
    handled = await services.responses.handle_line_events(events)
    return jsonify({'success': True, 'handled': handled})


@webhooks_bp.route('/stripe', methods=['POST'])
def stripe_webhook():
    billing = get_services().billing
    event = billing.construct_event(request.get_data(), request.headers.get('Stripe-Signature', ''))
    return jsonify(billing.handle_event(event))
