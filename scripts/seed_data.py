"""
Seed demo users, households, contacts and subscriptions into the configured store.

    STORAGE_BACKEND=json python scripts/seed_data.py
"""
import logging
import sys
from pathlib import Path

# Add project root to Python path
sys.path.append(str(Path(__file__).parent.parent))

from api.services.billing import BillingService  # noqa: E402
from api.services.storage import create_store  # noqa: E402
from lib.config import get_settings  # noqa: E402
from lib.models import Contact, ContactType, Household, User, utcnow  # noqa: E402
from lib.monitoring import configure_logging  # noqa: E402

logger = logging.getLogger(__name__)

USERS = [
    (User(id='demo_personal', email='personal@example.com', name='山田 花子'), 'personal'),
    (User(id='demo_family', email='family@example.com', name='佐藤 一郎'), 'family'),
    (User(id='demo_admin', email='admin@example.com', name='管理者', role='admin'), 'business'),
]

HOUSEHOLDS = {
    'demo_personal': [
        ('山田 太郎', '+819012345678', '5339-24', [
            ('山田 花子', ContactType.FAMILY, '+819011112222', None),
        ]),
    ],
    'demo_family': [
        ('佐藤 ハル', '+819023456789', '5339-35', [
            ('佐藤 一郎', ContactType.FAMILY, '+819033334444', 'U_demo_family_line'),
            ('鈴木 近所', ContactType.NEIGHBOR, '+819055556666', None),
        ]),
        ('佐藤 タケ', '+819034567890', '5235-11', [
            ('佐藤 二郎', ContactType.FAMILY, '+819077778888', None),
            ('民生委員 田中', ContactType.STAFF, '+819099990000', None),
        ]),
    ],
}


def seed() -> None:
    settings = get_settings()
    configure_logging(settings.log_level)
    store = create_store(settings)
    billing = BillingService(store, settings)

    for user, plan in USERS:
        if store.get_user(user.id) is None:
            store.save_user(user)
            billing.change_plan(user.id, plan, actor='seed')
            logger.info(f"Seeded user {user.id} on {plan} plan")

    for user_id, households in HOUSEHOLDS.items():
        if store.list_households(user_id=user_id):
            continue
        for name, phone, grid, contacts in households:
            household = Household(
                user_id=user_id,
                name=name,
                phone=phone,
                address_grid=grid,
                consent_at=utcnow(),
                contacts=[
                    Contact(name=c_name, type=c_type, priority=i + 1, phone=c_phone, line_user_id=c_line)
                    for i, (c_name, c_type, c_phone, c_line) in enumerate(contacts)
                ],
            )
            store.create_household(household, actor='seed')
            logger.info(f"Seeded household {household.name} ({grid})")

    logger.info(f"Seed complete on {store.backend} store")


if __name__ == '__main__':
    seed()
