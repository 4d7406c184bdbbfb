import logging

from flask import Blueprint, jsonify, request

from api.common import dump, json_body, owned_household, parse
from api.container import get_services
from api.services.auth import current_user, login_required, user_plan
from lib.error_handler import PlanRestrictionError, ValidationError
from lib.models import Contact, Household, PlanType, utcnow
from lib.plans import PLANS, next_plan_for, within_limit

logger = logging.getLogger(__name__)

households_bp = Blueprint('households', __name__, url_prefix='/api/households')

EDITABLE_FIELDS = {'name', 'phone', 'address_grid', 'risk_flag', 'notes', 'is_active'}


def _plan(user):
    return user_plan(user) or PLANS[PlanType.PERSONAL]


@households_bp.route('', methods=['GET'])
@login_required
def list_households():
    user = current_user()
    query = request.args.get('q')
    store = get_services().store
    if user.is_admin:
        households = store.list_households(query=query)
    else:
        households = store.list_households(user_id=user.id, query=query)
    return jsonify({'data': [dump(h) for h in households], 'total': len(households)})


@households_bp.route('/<household_id>', methods=['GET'])
@login_required
def get_household(household_id):
    return jsonify({'data': dump(owned_household(household_id, current_user()))})


@households_bp.route('', methods=['POST'])
@login_required
def create_household():
    """Setup wizard: a household plus its initial contacts"""
    user = current_user()
    body = json_body()
    store = get_services().store
    plan = _plan(user)

    current = store.count_households(user.id)
    if not user.is_admin and not within_limit(plan.max_households, current):
        raise PlanRestrictionError(
            f"Household limit reached for user {user.id}",
            user_message='Household limit reached for your plan',
            current=current,
            maximum=plan.max_households,
            plan_required=next_plan_for(current).value,
        )

    contacts = body.get('contacts') or []
    if not user.is_admin and plan.max_contacts and len(contacts) > plan.max_contacts:
        raise PlanRestrictionError(
            f"Contact limit exceeded for user {user.id}",
            user_message='Contact limit reached for your plan',
            current=len(contacts),
            maximum=plan.max_contacts,
            plan_required=PlanType.FAMILY.value if plan.type == PlanType.PERSONAL else PlanType.BUSINESS.value,
        )

    data = {k: v for k, v in body.items() if k in EDITABLE_FIELDS}
    data['user_id'] = user.id
    data['contacts'] = contacts
    if body.get('consent'):
        data['consent_at'] = utcnow()
    household = parse(Household, data)

    household = store.create_household(household, actor=user.id)
    logger.info(f"User {user.id} registered household {household.id}")
    return jsonify({'data': dump(household)}), 201


@households_bp.route('/<household_id>', methods=['PUT'])
@login_required
def update_household(household_id):
    user = current_user()
    owned_household(household_id, user)
    changes = {k: v for k, v in json_body().items() if k in EDITABLE_FIELDS}
    if not changes:
        raise ValidationError("No editable fields supplied")
    try:
        household = get_services().store.update_household(household_id, changes, actor=user.id)
    except ValueError as e:
        raise ValidationError(f"Invalid household update: {str(e)}", user_message='Validation failed')
    return jsonify({'data': dump(household)})


@households_bp.route('/<household_id>', methods=['DELETE'])
@login_required
def delete_household(household_id):
    user = current_user()
    owned_household(household_id, user)
    get_services().store.delete_household(household_id, actor=user.id)
    return '', 204


@households_bp.route('/<household_id>/contacts', methods=['GET'])
@login_required
def list_contacts(household_id):
    household = owned_household(household_id, current_user())
    return jsonify({'data': [dump(c) for c in household.contacts]})


@households_bp.route('/<household_id>/contacts', methods=['POST'])
@login_required
def add_contact(household_id):
    user = current_user()
    household = owned_household(household_id, user)
    plan = _plan(user)
    if not user.is_admin and not within_limit(plan.max_contacts, len(household.contacts)):
        raise PlanRestrictionError(
            f"Contact limit reached for household {household_id}",
            user_message='Contact limit reached for your plan',
            current=len(household.contacts),
            maximum=plan.max_contacts,
            plan_required=PlanType.FAMILY.value if plan.type == PlanType.PERSONAL else PlanType.BUSINESS.value,
        )
    contact = parse(Contact, {**json_body(), 'household_id': household_id})
    contact = get_services().store.add_contact(household_id, contact)
    return jsonify({'data': dump(contact)}), 201


@households_bp.route('/<household_id>/contacts/<contact_id>', methods=['PUT'])
@login_required
def update_contact(household_id, contact_id):
    owned_household(household_id, current_user())
    try:
        contact = get_services().store.update_contact(household_id, contact_id, json_body())
    except ValueError as e:
        raise ValidationError(f"Invalid contact update: {str(e)}", user_message='Validation failed')
    return jsonify({'data': dump(contact)})


@households_bp.route('/<household_id>/contacts/<contact_id>', methods=['DELETE'])
@login_required
def delete_contact(household_id, contact_id):
    owned_household(household_id, current_user())
    get_services().store.delete_contact(household_id, contact_id)
    return '', 204
