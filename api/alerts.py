import logging

from flask import Blueprint, jsonify

from api.common import dump, json_body, owned_household, today, visible_households
from api.container import get_services
from api.services.auth import current_user, login_required
from lib.error_handler import NotFoundError, ValidationError
from lib.lifecycle import transition
from lib.models import Alert

logger = logging.getLogger(__name__)

alerts_bp = Blueprint('alerts', __name__, url_prefix='/api/alerts')


def _alert_for(alert_id: str, user) -> Alert:
    alert = get_services().store.get_alert(alert_id)
    if alert is None:
        raise NotFoundError(f"Alert not found: {alert_id}", user_message='Alert not found')
    owned_household(alert.household_id, user)
    return alert


@alerts_bp.route('/today', methods=['GET'])
@login_required
def todays_alerts():
    store = get_services().store
    households = {h.id: h for h in visible_households(current_user())}
    alerts = store.todays_alerts(today(), households.keys())
    data = []
    for alert in alerts:
        household = households[alert.household_id]
        data.append({**dump(alert), 'household': {
            'id': household.id, 'name': household.name, 'phone': household.phone,
            'address_grid': household.address_grid,
        }})
    return jsonify({'data': data, 'summary': store.summarize(alerts)})


@alerts_bp.route('/summary', methods=['GET'])
@login_required
def alert_summary():
    households = visible_households(current_user())
    summary = get_services().store.alert_summary(today(), [h.id for h in households])
    return jsonify({'data': summary, 'date': today().isoformat()})


@alerts_bp.route('/<alert_id>', methods=['GET'])
@login_required
def get_alert(alert_id):
    store = get_services().store
    alert = _alert_for(alert_id, current_user())
    return jsonify({'data': {
        **dump(alert),
        'household': dump(store.get_household(alert.household_id)),
        'call_logs': [dump(log) for log in store.list_call_logs(alert.id)],
        'notifications': [dump(n) for n in store.list_notifications(alert.id)],
    }})


@alerts_bp.route('/<alert_id>/status', methods=['PUT'])
@login_required
def update_alert_status(alert_id):
    user = current_user()
    status = json_body().get('status')
    if not status:
        raise ValidationError("status is required")
    _alert_for(alert_id, user)
    details = {}

    def move(current):
        details['from'] = current.status.value
        return transition(current, status)

    alert = get_services().store.update_alert(alert_id, move, user.id, 'alert.status', details)
    logger.info(f"Alert {alert.id} moved {details['from']} -> {alert.status.value} by {user.id}")
    return jsonify({'data': dump(alert)})


@alerts_bp.route('/retry', methods=['POST'])
@login_required
async def retry_alert():
    """Place another call now"""
    user = current_user()
    alert_id = json_body().get('alert_id')
    if not alert_id:
        raise ValidationError("alert_id is required")
    alert = _alert_for(alert_id, user)
    if alert.is_closed:
        raise ValidationError(f"Alert {alert_id} is closed", user_message='Alert is already closed')

    services = get_services()
    household = services.store.get_household(alert.household_id)
    alert, result = await services.engine.call_household(alert, household, actor=user.id)
    status = 200 if result.success else 502
    return jsonify({'data': dump(alert), 'call': result.to_dict()}), status
