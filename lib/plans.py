from dataclasses import dataclass, field
from typing import Dict, List, Optional

from lib.models import Channel, PlanType, Subscription, SubscriptionStatus


@dataclass(frozen=True)
class Plan:
    id: str
    type: PlanType
    name: str
    price: int
    max_households: int  # 0 = unlimited
    max_contacts: int  # 0 = unlimited
    channels: tuple
    features: List[str] = field(default_factory=list)
    stripe_price_id: Optional[str] = None
    currency: str = 'JPY'
    interval: str = 'month'
    recommended: bool = False

    def allows(self, feature: str) -> bool:
        return feature in self.features

    def allows_channel(self, channel: Channel) -> bool:
        return channel in self.channels

    def to_dict(self) -> Dict:
        return {
            'id': self.id,
            'type': self.type.value,
            'name': self.name,
            'price': self.price,
            'currency': self.currency,
            'interval': self.interval,
            'max_households': self.max_households,
            'max_contacts': self.max_contacts,
            'channels': [c.value for c in self.channels],
            'features': list(self.features),
            'stripe_price_id': self.stripe_price_id,
            'recommended': self.recommended,
        }


PLANS: Dict[PlanType, Plan] = {
    PlanType.PERSONAL: Plan(
        id='plan_personal',
        type=PlanType.PERSONAL,
        name='Personal',
        price=980,
        max_households=1,
        max_contacts=3,
        channels=(Channel.PHONE, Channel.SMS),
        features=['alerts'],
        stripe_price_id='price_personal_980_jpy_monthly',
    ),
    PlanType.FAMILY: Plan(
        id='plan_family',
        type=PlanType.FAMILY,
        name='Family',
        price=2980,
        max_households=3,
        max_contacts=10,
        channels=(Channel.PHONE, Channel.SMS, Channel.LINE),
        features=['alerts', 'reports', 'custom_alerts'],
        stripe_price_id='price_family_2980_jpy_monthly',
        recommended=True,
    ),
    PlanType.BUSINESS: Plan(
        id='plan_business',
        type=PlanType.BUSINESS,
        name='Business',
        price=9800,
        max_households=0,
        max_contacts=0,
        channels=(Channel.PHONE, Channel.SMS, Channel.LINE),
        features=['alerts', 'reports', 'custom_alerts', 'export', 'admin', 'api'],
        stripe_price_id='price_business_9800_jpy_monthly',
    ),
}


def get_plan(plan_type) -> Plan:
    """Look up a plan by type value ('personal', ...) or PlanType"""
    try:
        return PLANS[PlanType(plan_type)]
    except ValueError:
        raise KeyError(f"Unknown plan: {plan_type}")


def plan_for(subscription: Optional[Subscription]) -> Optional[Plan]:
    """The plan a subscription currently grants, or None when it grants nothing"""
    if subscription is None or subscription.status == SubscriptionStatus.CANCELED:
        return None
    return PLANS[subscription.plan]


def within_limit(limit: int, current: int) -> bool:
    return limit == 0 or current < limit


def next_plan_for(count: int) -> PlanType:
    """Smallest plan able to hold one more household than `count`"""
    for plan in PLANS.values():
        if within_limit(plan.max_households, count):
            return plan.type
    return PlanType.BUSINESS
