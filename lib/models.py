from datetime import datetime, date as date_type, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional
from uuid import uuid4
from zoneinfo import ZoneInfo
import re

from pydantic import AfterValidator, BaseModel, Field

PHONE_PATTERN = re.compile(r'^\+?[0-9]{10,15}$')


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_local(moment: datetime, tz_name: str = 'Asia/Tokyo') -> datetime:
    return moment.astimezone(ZoneInfo(tz_name))


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:12]}"


class AlertStatus(str, Enum):
    UNANSWERED = 'unanswered'
    OK = 'ok'
    TIRED = 'tired'
    HELP = 'help'
    ESCALATED = 'escalated'
    IN_PROGRESS = 'in_progress'
    COMPLETED = 'completed'


class AlertLevel(str, Enum):
    SAFE = 'safe'
    CAUTION = 'caution'
    WARNING = 'warning'
    SEVERE_WARNING = 'severe_warning'
    DANGER = 'danger'

    @property
    def rank(self) -> int:
        return LEVEL_ORDER.index(self)


LEVEL_ORDER = [
    AlertLevel.SAFE,
    AlertLevel.CAUTION,
    AlertLevel.WARNING,
    AlertLevel.SEVERE_WARNING,
    AlertLevel.DANGER,
]


class ContactType(str, Enum):
    FAMILY = 'family'
    NEIGHBOR = 'neighbor'
    STAFF = 'staff'


class CallResult(str, Enum):
    PENDING = 'pending'
    OK = 'ok'
    NOANSWER = 'noanswer'
    BUSY = 'busy'
    FAILED = 'failed'
    HELP = 'help'
    TIRED = 'tired'


class Channel(str, Enum):
    PHONE = 'phone'
    SMS = 'sms'
    LINE = 'line'


class NotificationStatus(str, Enum):
    PENDING = 'pending'
    SENT = 'sent'
    DELIVERED = 'delivered'
    FAILED = 'failed'
    INTERACTED = 'interacted'


class PlanType(str, Enum):
    PERSONAL = 'personal'
    FAMILY = 'family'
    BUSINESS = 'business'


class SubscriptionStatus(str, Enum):
    ACTIVE = 'active'
    PAST_DUE = 'past_due'
    CANCELED = 'canceled'


def validate_phone(value: Optional[str]) -> Optional[str]:
    if value is None or value == '':
        return value
    cleaned = value.replace('-', '').replace(' ', '')
    if not PHONE_PATTERN.match(cleaned):
        raise ValueError('Invalid phone format')
    return cleaned


PhoneNumber = Annotated[str, AfterValidator(validate_phone)]


class User(BaseModel):
    id: str = Field(default_factory=lambda: new_id('u'))
    email: str
    name: Optional[str] = None
    role: str = 'user'
    created_at: datetime = Field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return self.name or self.email.split('@')[0]

    @property
    def is_admin(self) -> bool:
        return self.role == 'admin'


class Contact(BaseModel):
    id: str = Field(default_factory=lambda: new_id('c'))
    household_id: Optional[str] = None
    name: str
    type: ContactType = ContactType.FAMILY
    priority: int = Field(default=1, ge=1)
    phone: Optional[PhoneNumber] = None
    line_user_id: Optional[str] = None
    notify_sms: bool = True
    notify_line: bool = True
    notify_voice: bool = False


class Household(BaseModel):
    id: str = Field(default_factory=lambda: new_id('h'))
    user_id: Optional[str] = None
    name: str = Field(min_length=1)
    phone: PhoneNumber
    address_grid: Optional[str] = None
    risk_flag: bool = False
    notes: str = ''
    consent_at: Optional[datetime] = None
    is_active: bool = True
    contacts: List[Contact] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def contacts_of(self, *types: ContactType) -> List[Contact]:
        """Contacts of the given types, highest priority (lowest number) first"""
        matching = [c for c in self.contacts if c.type in types]
        return sorted(matching, key=lambda c: c.priority)


class AlertMetadata(BaseModel):
    attempts: int = 0
    last_call_at: Optional[datetime] = None
    last_response_code: Optional[str] = None
    family_notified_at: Optional[datetime] = None
    neighbor_notified_at: Optional[datetime] = None
    grid: Optional[str] = None
    temperature: Optional[float] = None
    humidity: Optional[float] = None


class Alert(BaseModel):
    id: str = Field(default_factory=lambda: new_id('a'))
    household_id: str
    date: date_type = Field(default_factory=lambda: to_local(utcnow()).date())
    status: AlertStatus = AlertStatus.UNANSWERED
    wbgt: Optional[float] = None
    level: Optional[AlertLevel] = None
    first_trigger_at: datetime = Field(default_factory=utcnow)
    closed_at: Optional[datetime] = None
    metadata: AlertMetadata = Field(default_factory=AlertMetadata)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_closed(self) -> bool:
        return self.closed_at is not None or self.status == AlertStatus.COMPLETED


class CallLog(BaseModel):
    id: str = Field(default_factory=lambda: new_id('cl'))
    alert_id: Optional[str] = None
    household_id: Optional[str] = None
    call_sid: Optional[str] = None
    attempt: int = 1
    result: CallResult = CallResult.PENDING
    dtmf: Optional[str] = None
    duration_sec: int = 0
    provider: str = 'twilio'
    created_at: datetime = Field(default_factory=utcnow)


class Notification(BaseModel):
    id: str = Field(default_factory=lambda: new_id('n'))
    alert_id: Optional[str] = None
    channel: Channel
    recipient: str
    status: NotificationStatus = NotificationStatus.PENDING
    content: Dict[str, Any] = Field(default_factory=dict)
    provider_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    delivered_at: Optional[datetime] = None


class Subscription(BaseModel):
    id: str = Field(default_factory=lambda: new_id('sub'))
    user_id: str
    plan: PlanType
    status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    price: int = 0
    currency: str = 'JPY'
    max_households: int = 1
    max_contacts: int = 3
    current_period_start: datetime = Field(default_factory=utcnow)
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    stripe_customer_id: Optional[str] = None
    stripe_subscription_id: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class Payment(BaseModel):
    id: str = Field(default_factory=lambda: new_id('inv'))
    user_id: Optional[str] = None
    stripe_invoice_id: Optional[str] = None
    amount: int = 0
    currency: str = 'jpy'
    status: str = 'paid'
    paid_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


class AuditLog(BaseModel):
    id: str = Field(default_factory=lambda: new_id('log'))
    actor: str = 'system'
    action: str
    target_type: str
    target_id: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)
    hash_chain: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
