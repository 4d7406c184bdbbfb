import pytest
from datetime import datetime, timezone

from pydantic import ValidationError

from lib.models import (Alert, AlertLevel, Channel, Contact, ContactType, Household, PlanType, Subscription,
                        SubscriptionStatus, User, to_local)
from lib.plans import PLANS, get_plan, next_plan_for, plan_for, within_limit


def test_phone_is_normalized():
    household = Household(name='Tanaka', phone='+81-90-1234-5678')
    assert household.phone == '+819012345678'


def test_invalid_phone_rejected():
    with pytest.raises(ValidationError):
        Household(name='Tanaka', phone='12-34')


def test_empty_name_rejected():
    with pytest.raises(ValidationError):
        Household(name='', phone='+819012345678')


def test_contacts_of_orders_by_priority():
    household = Household(name='Tanaka', phone='+819012345678', contacts=[
        Contact(name='late', type=ContactType.FAMILY, priority=3),
        Contact(name='neighbour', type=ContactType.NEIGHBOR, priority=1),
        Contact(name='first', type=ContactType.FAMILY, priority=1),
    ])
    assert [c.name for c in household.contacts_of(ContactType.FAMILY)] == ['first', 'late']


def test_alert_is_closed():
    assert not Alert(household_id='h_1').is_closed
    assert Alert(household_id='h_1', status='completed').is_closed


def test_local_time_crosses_date_line():
    moment = datetime(2025, 7, 31, 16, 0, tzinfo=timezone.utc)
    assert to_local(moment).date().isoformat() == '2025-08-01'
    assert to_local(moment).hour == 1


def test_level_rank():
    assert AlertLevel.DANGER.rank > AlertLevel.WARNING.rank > AlertLevel.SAFE.rank


def test_user_display_name():
    assert User(email='hana@example.com').display_name == 'hana'
    assert User(email='a@example.com', role='admin').is_admin


def test_plan_catalogue():
    assert get_plan('personal').price == 980
    assert get_plan(PlanType.FAMILY).recommended
    assert not get_plan('personal').allows_channel(Channel.LINE)
    assert get_plan('business').allows('export')
    with pytest.raises(KeyError):
        get_plan('enterprise')
    assert PLANS[PlanType.FAMILY].to_dict()['channels'] == ['phone', 'sms', 'line']


def test_plan_for_subscription():
    assert plan_for(None) is None
    active = Subscription(user_id='u_1', plan=PlanType.FAMILY)
    assert plan_for(active).type == PlanType.FAMILY
    canceled = Subscription(user_id='u_1', plan=PlanType.FAMILY, status=SubscriptionStatus.CANCELED)
    assert plan_for(canceled) is None


def test_limits():
    assert within_limit(0, 500)
    assert within_limit(3, 2)
    assert not within_limit(3, 3)
    assert next_plan_for(1) == PlanType.FAMILY
    assert next_plan_for(3) == PlanType.BUSINESS
