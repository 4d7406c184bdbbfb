import hashlib
import json
import logging
import os
import tempfile
import threading
from collections import Counter
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from lib.error_handler import AppError, NotFoundError
from lib.models import (
    Alert, AlertStatus, AuditLog, CallLog, Contact, Household, Notification,
    NotificationStatus, Payment, Subscription, User, utcnow,
)

logger = logging.getLogger(__name__)

GENESIS = 'GENESIS'

COLLECTIONS = (
    'users', 'households', 'contacts', 'alerts', 'call_logs',
    'notifications', 'subscriptions', 'payments', 'audit_logs', 'stripe_events',
)


def _dump(model) -> Dict[str, Any]:
    return model.model_dump(mode='json')


def chain_hash(previous: str, entry: Dict[str, Any]) -> str:
    # Round-trip through the model so '+00:00' and 'Z' timestamps hash alike
    payload = _dump(AuditLog.model_validate(entry))
    payload.pop('hash_chain', None)
    raw = previous + json.dumps(payload, sort_keys=True, ensure_ascii=False)
    return hashlib.sha256(raw.encode('utf-8')).hexdigest()


class BaseStore:
    """Record-level operations shared by every backend.

    Backends only provide the collection primitives (`_all`, `_get`, `_put`,
    `_delete`); everything else is built on top of them under one lock.
    """

    backend = 'base'

    def __init__(self):
        self._lock = threading.RLock()

    # Primitives

    def _all(self, collection: str) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def _get(self, collection: str, record_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def _put(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        raise NotImplementedError

    def _delete(self, collection: str, record_id: str) -> bool:
        raise NotImplementedError

    def _where(self, collection: str, **equals) -> List[Dict[str, Any]]:
        return [r for r in self._all(collection) if all(r.get(k) == v for k, v in equals.items())]

    def _last(self, collection: str) -> Optional[Dict[str, Any]]:
        records = self._all(collection)
        return records[-1] if records else None

    # Audit

    def append_audit(self, action: str, target_type: str, target_id: Optional[str] = None,
                     actor: str = 'system', details: Optional[Dict[str, Any]] = None) -> AuditLog:
        with self._lock:
            last = self._last('audit_logs')
            previous = last['hash_chain'] if last else GENESIS
            entry = AuditLog(
                actor=actor,
                action=action,
                target_type=target_type,
                target_id=target_id,
                details=details or {},
            )
            record = _dump(entry)
            record['hash_chain'] = chain_hash(previous, record)
            self._put('audit_logs', record)
            return AuditLog.model_validate(record)

    def list_audit(self, target_type: Optional[str] = None, limit: int = 100) -> List[AuditLog]:
        records = self._all('audit_logs')
        if target_type:
            records = [r for r in records if r.get('target_type') == target_type]
        return [AuditLog.model_validate(r) for r in records[-limit:]][::-1]

    def verify_audit_chain(self) -> Dict[str, Any]:
        """Recompute every hash in insertion order"""
        previous = GENESIS
        records = self._all('audit_logs')
        for index, record in enumerate(records):
            if chain_hash(previous, record) != record.get('hash_chain'):
                return {'valid': False, 'checked': index, 'broken_at': record.get('id')}
            previous = record['hash_chain']
        return {'valid': True, 'checked': len(records), 'broken_at': None}

    # Users

    def list_users(self) -> List[User]:
        return [User.model_validate(r) for r in self._all('users')]

    def get_user(self, user_id: str) -> Optional[User]:
        record = self._get('users', user_id)
        return User.model_validate(record) if record else None

    def save_user(self, user: User) -> User:
        with self._lock:
            return User.model_validate(self._put('users', _dump(user)))

    # Households

    def _attach_contacts(self, record: Dict[str, Any]) -> Household:
        contacts = self._where('contacts', household_id=record['id'])
        household = Household.model_validate({**record, 'contacts': []})
        household.contacts = sorted(
            (Contact.model_validate(c) for c in contacts), key=lambda c: c.priority
        )
        return household

    def create_household(self, household: Household, actor: str = 'system') -> Household:
        with self._lock:
            record = _dump(household)
            contacts = record.pop('contacts', [])
            self._put('households', record)
            for contact in contacts:
                contact['household_id'] = household.id
                self._put('contacts', contact)
            self.append_audit('household.create', 'household', household.id, actor,
                              {'name': household.name})
            logger.info(f"Household created: {household.id}")
            return self._attach_contacts(record)

    def get_household(self, household_id: str) -> Optional[Household]:
        record = self._get('households', household_id)
        return self._attach_contacts(record) if record else None

    def update_household(self, household_id: str, changes: Dict[str, Any], actor: str = 'system') -> Household:
        with self._lock:
            record = self._get('households', household_id)
            if record is None:
                raise NotFoundError(f"Household not found: {household_id}")
            changes = {k: v for k, v in changes.items() if k not in ('id', 'user_id', 'contacts', 'created_at')}
            merged = {**record, **changes, 'updated_at': utcnow().isoformat()}
            # Validate through the model so phone rules apply to updates too
            household = Household.model_validate({**merged, 'contacts': []})
            record = _dump(household)
            record.pop('contacts', None)
            self._put('households', record)
            self.append_audit('household.update', 'household', household_id, actor,
                              {'fields': sorted(changes)})
            return self._attach_contacts(record)

    def delete_household(self, household_id: str, actor: str = 'system') -> bool:
        with self._lock:
            if not self._delete('households', household_id):
                return False
            for contact in self._where('contacts', household_id=household_id):
                self._delete('contacts', contact['id'])
            self.append_audit('household.delete', 'household', household_id, actor)
            logger.info(f"Household deleted: {household_id}")
            return True

    def list_households(self, user_id: Optional[str] = None, query: Optional[str] = None,
                        grid: Optional[str] = None, active_only: bool = False) -> List[Household]:
        records = self._where('households', user_id=user_id) if user_id else self._all('households')
        if active_only:
            records = [r for r in records if r.get('is_active', True)]
        if grid:
            records = [r for r in records if r.get('address_grid') == grid]
        if query:
            needle = query.lower()
            records = [
                r for r in records
                if needle in (r.get('name') or '').lower()
                or needle in (r.get('phone') or '')
                or needle in (r.get('address_grid') or '')
            ]
        return [self._attach_contacts(r) for r in records]

    def count_households(self, user_id: str) -> int:
        return len(self._where('households', user_id=user_id))

    # Contacts

    def list_contacts(self, household_id: str) -> List[Contact]:
        contacts = [Contact.model_validate(c) for c in self._where('contacts', household_id=household_id)]
        return sorted(contacts, key=lambda c: c.priority)

    def add_contact(self, household_id: str, contact: Contact) -> Contact:
        with self._lock:
            if self._get('households', household_id) is None:
                raise NotFoundError(f"Household not found: {household_id}")
            contact.household_id = household_id
            return Contact.model_validate(self._put('contacts', _dump(contact)))

    def update_contact(self, household_id: str, contact_id: str, changes: Dict[str, Any]) -> Contact:
        with self._lock:
            record = self._get('contacts', contact_id)
            if record is None or record.get('household_id') != household_id:
                raise NotFoundError(f"Contact not found: {contact_id}")
            changes = {k: v for k, v in changes.items() if k not in ('id', 'household_id')}
            contact = Contact.model_validate({**record, **changes})
            return Contact.model_validate(self._put('contacts', _dump(contact)))

    def delete_contact(self, household_id: str, contact_id: str) -> bool:
        with self._lock:
            record = self._get('contacts', contact_id)
            if record is None or record.get('household_id') != household_id:
                return False
            return self._delete('contacts', contact_id)

    # Alerts

    def create_alert(self, alert: Alert, actor: str = 'system') -> Alert:
        with self._lock:
            self._put('alerts', _dump(alert))
            self.append_audit('alert.create', 'alert', alert.id, actor, {
                'household_id': alert.household_id,
                'level': alert.level.value if alert.level else None,
                'wbgt': alert.wbgt,
            })
            return alert

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        record = self._get('alerts', alert_id) if alert_id else None
        return Alert.model_validate(record) if record else None

    def save_alert(self, alert: Alert, actor: str = 'system', action: str = 'alert.update',
                   details: Optional[Dict[str, Any]] = None) -> Alert:
        with self._lock:
            self._put('alerts', _dump(alert))
            self.append_audit(action, 'alert', alert.id, actor,
                              {'status': alert.status.value, **(details or {})})
            return alert

    def update_alert(self, alert_id: str, change: Callable[[Alert], Optional[Alert]], actor: str = 'system',
                     action: str = 'alert.update', details: Optional[Dict[str, Any]] = None) -> Optional[Alert]:
        """Apply `change` to the stored copy of an alert and save the result.

        Read and write happen under the store lock. `change` returns None to
        leave the alert untouched. Returns None when the alert does not exist.
        """
        with self._lock:
            current = self.get_alert(alert_id)
            if current is None:
                return None
            updated = change(current)
            if updated is None:
                return current
            return self.save_alert(updated, actor, action, details)

    def list_alerts(self, on_date: Optional[date] = None, household_ids: Optional[Iterable[str]] = None,
                    status: Optional[str] = None, start: Optional[date] = None,
                    end: Optional[date] = None) -> List[Alert]:
        records = self._all('alerts')
        if on_date:
            records = [r for r in records if r['date'] == on_date.isoformat()]
        if start:
            records = [r for r in records if r['date'] >= start.isoformat()]
        if end:
            records = [r for r in records if r['date'] <= end.isoformat()]
        if household_ids is not None:
            wanted = set(household_ids)
            records = [r for r in records if r['household_id'] in wanted]
        if status:
            records = [r for r in records if r['status'] == status]
        alerts = [Alert.model_validate(r) for r in records]
        return sorted(alerts, key=lambda a: a.first_trigger_at, reverse=True)

    def todays_alerts(self, today: date, household_ids: Optional[Iterable[str]] = None) -> List[Alert]:
        return self.list_alerts(on_date=today, household_ids=household_ids)

    @staticmethod
    def summarize(alerts: Iterable[Alert]) -> Dict[str, int]:
        counts = Counter(a.status.value for a in alerts)
        summary = {status.value: counts.get(status.value, 0) for status in AlertStatus}
        summary['total'] = sum(counts.values())
        return summary

    def alert_summary(self, today: date, household_ids: Optional[Iterable[str]] = None) -> Dict[str, int]:
        return self.summarize(self.todays_alerts(today, household_ids))

    # Call logs

    def create_call_log(self, log: CallLog) -> CallLog:
        with self._lock:
            return CallLog.model_validate(self._put('call_logs', _dump(log)))

    def list_call_logs(self, alert_id: str) -> List[CallLog]:
        logs = [CallLog.model_validate(r) for r in self._where('call_logs', alert_id=alert_id)]
        return sorted(logs, key=lambda log: log.created_at)

    def find_call_log(self, call_sid: str) -> Optional[CallLog]:
        matches = self._where('call_logs', call_sid=call_sid)
        return CallLog.model_validate(matches[-1]) if matches else None

    def update_call_log(self, log: CallLog) -> CallLog:
        with self._lock:
            return CallLog.model_validate(self._put('call_logs', _dump(log)))

    # Notifications

    def create_notification(self, notification: Notification) -> Notification:
        with self._lock:
            return Notification.model_validate(self._put('notifications', _dump(notification)))

    def list_notifications(self, alert_id: str) -> List[Notification]:
        return [Notification.model_validate(r) for r in self._where('notifications', alert_id=alert_id)]

    def find_notification_by_provider_id(self, provider_id: str) -> Optional[Notification]:
        matches = self._where('notifications', provider_id=provider_id)
        return Notification.model_validate(matches[-1]) if matches else None

    def update_notification_status(self, notification_id: str, status: NotificationStatus,
                                   delivered_at: Optional[datetime] = None) -> Notification:
        with self._lock:
            record = self._get('notifications', notification_id)
            if record is None:
                raise NotFoundError(f"Notification not found: {notification_id}")
            notification = Notification.model_validate(record)
            notification.status = status
            if delivered_at:
                notification.delivered_at = delivered_at
            return Notification.model_validate(self._put('notifications', _dump(notification)))

    # Subscriptions

    def get_subscription(self, user_id: str) -> Optional[Subscription]:
        matches = self._where('subscriptions', user_id=user_id)
        return Subscription.model_validate(matches[-1]) if matches else None

    def find_subscription(self, stripe_customer_id: Optional[str] = None,
                          stripe_subscription_id: Optional[str] = None) -> Optional[Subscription]:
        if stripe_subscription_id:
            matches = self._where('subscriptions', stripe_subscription_id=stripe_subscription_id)
            if matches:
                return Subscription.model_validate(matches[-1])
        if stripe_customer_id:
            matches = self._where('subscriptions', stripe_customer_id=stripe_customer_id)
            if matches:
                return Subscription.model_validate(matches[-1])
        return None

    def save_subscription(self, subscription: Subscription, actor: str = 'system',
                          action: str = 'subscription.update') -> Subscription:
        with self._lock:
            subscription.updated_at = utcnow()
            self._put('subscriptions', _dump(subscription))
            self.append_audit(action, 'subscription', subscription.id, actor, {
                'user_id': subscription.user_id,
                'plan': subscription.plan.value,
                'status': subscription.status.value,
            })
            return subscription

    # Payments

    def record_payment(self, payment: Payment) -> Payment:
        with self._lock:
            return Payment.model_validate(self._put('payments', _dump(payment)))

    def list_payments(self, user_id: str) -> List[Payment]:
        payments = [Payment.model_validate(r) for r in self._where('payments', user_id=user_id)]
        return sorted(payments, key=lambda p: p.created_at, reverse=True)

    # Stripe events

    def mark_event_processed(self, event_id: str) -> bool:
        """Record a webhook event id; False when it was already recorded"""
        with self._lock:
            if self._get('stripe_events', event_id) is not None:
                return False
            self._put('stripe_events', {'id': event_id, 'processed_at': utcnow().isoformat()})
            return True

    def forget_event(self, event_id: str) -> bool:
        return self._delete('stripe_events', event_id)


class MemoryStore(BaseStore):
    backend = 'memory'

    def __init__(self):
        super().__init__()
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {name: {} for name in COLLECTIONS}

    def _all(self, collection):
        return [dict(r) for r in self._data[collection].values()]

    def _get(self, collection, record_id):
        record = self._data[collection].get(record_id)
        return dict(record) if record else None

    def _put(self, collection, record):
        self._data[collection][record['id']] = dict(record)
        return dict(record)

    def _delete(self, collection, record_id):
        return self._data[collection].pop(record_id, None) is not None


class JsonFileStore(BaseStore):
    """One JSON document per collection; writes replace the file atomically."""

    backend = 'json'

    def __init__(self, data_dir: str):
        super().__init__()
        self.data_dir = data_dir
        os.makedirs(data_dir, exist_ok=True)
        logger.info(f"JSON store using {data_dir}")

    def _path(self, collection: str) -> str:
        return os.path.join(self.data_dir, f"{collection}.json")

    def _load(self, collection: str) -> Dict[str, Dict[str, Any]]:
        path = self._path(collection)
        if not os.path.exists(path):
            return {}
        try:
            with open(path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read {path}: {str(e)}")
            raise AppError(f"Storage read error for {collection}")

    def _save(self, collection: str, records: Dict[str, Dict[str, Any]]) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=self.data_dir, prefix=f".{collection}.", suffix='.tmp')
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(records, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self._path(collection))
        except OSError as e:
            logger.error(f"Failed to write {collection}: {str(e)}")
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise AppError(f"Storage write error for {collection}")

    def _all(self, collection):
        with self._lock:
            return list(self._load(collection).values())

    def _get(self, collection, record_id):
        with self._lock:
            return self._load(collection).get(record_id)

    def _put(self, collection, record):
        with self._lock:
            records = self._load(collection)
            records[record['id']] = record
            self._save(collection, records)
            return record

    def _delete(self, collection, record_id):
        with self._lock:
            records = self._load(collection)
            if records.pop(record_id, None) is None:
                return False
            self._save(collection, records)
            return True


class SupabaseStore(BaseStore):
    backend = 'supabase'

    def __init__(self, supabase_client):
        super().__init__()
        self.supabase = supabase_client
        logger.info("Supabase store initialized")

    def _execute(self, query, action: str):
        try:
            result = query.execute()
        except Exception as e:
            logger.error(f"Supabase {action} failed: {str(e)}")
            raise AppError(f"Supabase {action} failed", user_message='Storage error')
        if hasattr(result, 'error') and result.error:
            logger.error(f"Supabase {action} error: {result.error}")
            raise AppError(f"Supabase error: {result.error}", user_message='Storage error')
        return result.data or []

    def _all(self, collection):
        query = self.supabase.table(collection).select('*').order('created_at')
        return self._execute(query, f"select {collection}")

    def _where(self, collection, **equals):
        query = self.supabase.table(collection).select('*')
        for column, value in equals.items():
            query = query.eq(column, value)
        return self._execute(query.order('created_at'), f"select {collection}")

    def _get(self, collection, record_id):
        rows = self._execute(
            self.supabase.table(collection).select('*').eq('id', record_id).limit(1),
            f"get {collection}",
        )
        return rows[0] if rows else None

    def _last(self, collection):
        rows = self._execute(
            self.supabase.table(collection).select('*').order('created_at', desc=True).limit(1),
            f"last {collection}",
        )
        return rows[0] if rows else None

    def _put(self, collection, record):
        rows = self._execute(self.supabase.table(collection).upsert(record), f"upsert {collection}")
        return rows[0] if rows else record

    def _delete(self, collection, record_id):
        rows = self._execute(
            self.supabase.table(collection).delete().eq('id', record_id),
            f"delete {collection}",
        )
        return bool(rows)


def create_store(settings) -> BaseStore:
    backend = settings.storage_backend
    if backend == 'supabase':
        from lib.database import get_supabase_client
        return SupabaseStore(get_supabase_client(settings))
    if backend == 'json':
        return JsonFileStore(settings.data_dir)
    if backend != 'memory':
        logger.warning(f"Unknown storage backend '{backend}', using memory")
    return MemoryStore()
