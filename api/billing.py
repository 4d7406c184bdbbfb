import logging

from flask import Blueprint, jsonify

from api.common import dump, json_body
from api.container import get_services
from api.services.auth import current_user, login_required
from lib.error_handler import ValidationError
from lib.plans import plan_for

logger = logging.getLogger(__name__)

billing_bp = Blueprint('billing', __name__, url_prefix='/api/billing')


def _required(body: dict, key: str) -> str:
    value = body.get(key)
    if not value:
        raise ValidationError(f"{key} is required")
    return value


@billing_bp.route('/plans', methods=['GET'])
def list_plans():
    return jsonify({'data': get_services().billing.list_plans()})


@billing_bp.route('/subscription', methods=['GET'])
@login_required
def get_subscription():
    services = get_services()
    user = current_user()
    subscription = services.billing.get_subscription(user.id)
    plan = plan_for(subscription)
    return jsonify({
        'data': dump(subscription),
        'plan': plan.to_dict() if plan else None,
        'usage': {'households': services.store.count_households(user.id)},
    })


@billing_bp.route('/change-plan', methods=['POST'])
@login_required
def change_plan():
    user = current_user()
    plan = _required(json_body(), 'plan')
    subscription = get_services().billing.change_plan(user.id, plan, actor=user.id)
    return jsonify({'data': dump(subscription)})


@billing_bp.route('/cancel', methods=['POST'])
@login_required
def cancel_subscription():
    user = current_user()
    subscription = get_services().billing.cancel(user.id, actor=user.id)
    return jsonify({'data': dump(subscription)})


@billing_bp.route('/invoices', methods=['GET'])
@login_required
def list_invoices():
    payments = get_services().billing.invoices(current_user().id)
    return jsonify({'data': [dump(p) for p in payments]})


@billing_bp.route('/checkout', methods=['POST'])
@login_required
def create_checkout():
    plan = _required(json_body(), 'plan')
    session = get_services().billing.create_checkout_session(current_user(), plan)
    return jsonify({'data': session})


@billing_bp.route('/portal', methods=['POST'])
@login_required
def create_portal():
    session = get_services().billing.create_portal_session(current_user().id)
    return jsonify({'data': session})
