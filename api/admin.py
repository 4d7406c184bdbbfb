import logging

from flask import Blueprint, jsonify, request

from api.common import dump, json_body
from api.container import get_services
from api.services.auth import current_user, login_required, require_feature
from lib.error_handler import NotFoundError, ValidationError
from lib.models import PlanType, SubscriptionStatus, User

logger = logging.getLogger(__name__)

admin_bp = Blueprint('admin', __name__, url_prefix='/api/admin')


def _user_row(user: User) -> dict:
    store = get_services().store
    subscription = store.get_subscription(user.id)
    return {
        **dump(user),
        'subscription': dump(subscription),
        'household_count': store.count_households(user.id),
    }


@admin_bp.route('/users', methods=['GET'])
@login_required
@require_feature('admin')
def list_users():
    search = (request.args.get('search') or '').lower()
    status = request.args.get('status')

    rows = [_user_row(u) for u in get_services().store.list_users()]
    if search:
        rows = [r for r in rows if search in r['email'].lower() or search in (r.get('name') or '').lower()]
    if status:
        rows = [r for r in rows if r['subscription'] and r['subscription']['status'] == status]

    active = [r for r in rows if r['subscription'] and r['subscription']['status'] == SubscriptionStatus.ACTIVE.value]
    return jsonify({
        'data': rows,
        'totals': {
            'total': len(rows),
            'active': len(active),
            'business': sum(1 for r in active if r['subscription']['plan'] == PlanType.BUSINESS.value),
            'total_households': sum(r['household_count'] for r in rows),
        },
    })


@admin_bp.route('/users/<user_id>', methods=['GET'])
@login_required
@require_feature('admin')
def get_user(user_id):
    store = get_services().store
    user = store.get_user(user_id)
    if user is None:
        raise NotFoundError(f"User not found: {user_id}", user_message='User not found')
    households = store.list_households(user_id=user_id)
    return jsonify({'data': {**_user_row(user), 'households': [dump(h) for h in households]}})


@admin_bp.route('/users/<user_id>/subscription', methods=['PUT'])
@login_required
@require_feature('admin')
def update_user_subscription(user_id):
    services = get_services()
    actor = current_user()
    if services.store.get_user(user_id) is None:
        raise NotFoundError(f"User not found: {user_id}", user_message='User not found')

    body = json_body()
    plan = body.get('plan')
    status = body.get('status')
    if not plan and not status:
        raise ValidationError("plan or status is required")

    subscription = None
    if plan:
        subscription = services.billing.change_plan(user_id, plan, actor=actor.id)
    if status:
        try:
            status = SubscriptionStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown subscription status: {status}")
        subscription = subscription or services.store.get_subscription(user_id)
        if subscription is None:
            raise ValidationError("User has no subscription; set a plan first")
        subscription.status = status
        subscription = services.store.save_subscription(subscription, actor.id, 'subscription.admin_update')
    logger.info(f"Admin {actor.id} updated subscription of {user_id}")
    return jsonify({'data': dump(subscription)})


@admin_bp.route('/audit', methods=['GET'])
@login_required
@require_feature('admin')
def audit_log():
    store = get_services().store
    limit = request.args.get('limit', 100, type=int)
    entries = store.list_audit(target_type=request.args.get('target_type'), limit=limit)
    return jsonify({'data': [dump(e) for e in entries], 'chain': store.verify_audit_chain()})


@admin_bp.route('/jobs/<name>/run', methods=['POST'])
@login_required
@require_feature('admin')
async def run_job(name):
    scheduler = get_services().scheduler
    force = bool(json_body().get('force'))
    kwargs = {'force': force} if name == 'heat_alert' else {}
    try:
        result = await scheduler.run_now(name, **kwargs)
    except KeyError:
        raise NotFoundError(f"Unknown job: {name}", user_message='Job not found')
    return jsonify({'data': result})
