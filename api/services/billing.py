import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import stripe

from api.services.storage import BaseStore
from lib.config import Settings
from lib.error_handler import AppError, ValidationError
from lib.models import Payment, PlanType, Subscription, SubscriptionStatus, User, utcnow
from lib.plans import PLANS, get_plan

logger = logging.getLogger(__name__)

PERIOD = timedelta(days=30)

STRIPE_STATUS = {
    'active': SubscriptionStatus.ACTIVE,
    'trialing': SubscriptionStatus.ACTIVE,
    'past_due': SubscriptionStatus.PAST_DUE,
    'unpaid': SubscriptionStatus.PAST_DUE,
    'incomplete': SubscriptionStatus.PAST_DUE,
    'canceled': SubscriptionStatus.CANCELED,
    'incomplete_expired': SubscriptionStatus.CANCELED,
}


def _as_dict(obj) -> Dict[str, Any]:
    if obj is None:
        return {}
    if hasattr(obj, 'to_dict'):
        return obj.to_dict()
    return obj


def _from_unix(value) -> Optional[datetime]:
    return datetime.fromtimestamp(value, tz=timezone.utc) if value else None


def _period(obj: Dict[str, Any], key: str) -> Optional[datetime]:
    value = obj.get(key)
    if value is None:
        # Newer API versions moved billing periods onto subscription items
        items = (obj.get('items') or {}).get('data') or []
        value = items[0].get(key) if items else None
    return _from_unix(value)


class BillingService:
    def __init__(self, store: BaseStore, settings: Settings):
        self.store = store
        self.settings = settings
        self.is_configured = settings.stripe_configured
        if self.is_configured:
            stripe.api_key = settings.stripe_secret_key
            logger.info("Stripe billing initialized")
        else:
            logger.warning("Stripe not configured - checkout runs in stub mode")

    # Plan management

    def list_plans(self) -> List[Dict[str, Any]]:
        return [plan.to_dict() for plan in PLANS.values()]

    def get_subscription(self, user_id: str) -> Optional[Subscription]:
        return self.store.get_subscription(user_id)

    def change_plan(self, user_id: str, plan_type, actor: Optional[str] = None,
                    now: Optional[datetime] = None) -> Subscription:
        """Switch a user's plan; a new or lapsed subscription starts a fresh 30 day period"""
        try:
            plan = get_plan(plan_type)
        except KeyError:
            raise ValidationError(f"Unknown plan: {plan_type}")
        now = now or utcnow()
        current = self.store.get_subscription(user_id)

        if current is None:
            subscription = Subscription(user_id=user_id, plan=plan.type,
                                        current_period_start=now, current_period_end=now + PERIOD)
            action = 'subscription.create'
        else:
            subscription = current.model_copy()
            subscription.plan = plan.type
            subscription.status = SubscriptionStatus.ACTIVE
            subscription.cancel_at_period_end = False
            if subscription.current_period_end is None or subscription.current_period_end <= now:
                subscription.current_period_start = now
                subscription.current_period_end = now + PERIOD
            action = 'subscription.change_plan'

        subscription.price = plan.price
        subscription.currency = plan.currency
        subscription.max_households = plan.max_households
        subscription.max_contacts = plan.max_contacts
        logger.info(f"Plan for user {user_id} set to {plan.type.value}")
        return self.store.save_subscription(subscription, actor or user_id, action)

    def cancel(self, user_id: str, actor: Optional[str] = None) -> Subscription:
        subscription = self.store.get_subscription(user_id)
        if subscription is None or subscription.status == SubscriptionStatus.CANCELED:
            raise ValidationError("No active subscription to cancel")
        subscription.cancel_at_period_end = True
        if self.is_configured and subscription.stripe_subscription_id:
            try:
                stripe.Subscription.modify(subscription.stripe_subscription_id, cancel_at_period_end=True)
            except stripe.StripeError as e:
                logger.error(f"Stripe cancel failed for {subscription.stripe_subscription_id}: {str(e)}")
                raise AppError("Failed to cancel subscription with the payment provider", status_code=502)
        return self.store.save_subscription(subscription, actor or user_id, 'subscription.cancel')

    def invoices(self, user_id: str) -> List[Payment]:
        return self.store.list_payments(user_id)

    # Stripe Checkout / Portal

    def create_checkout_session(self, user: User, plan_type) -> Dict[str, Any]:
        try:
            plan = get_plan(plan_type)
        except KeyError:
            raise ValidationError(f"Unknown plan: {plan_type}")

        if not self.is_configured:
            logger.info(f"[stub] checkout user={user.id} plan={plan.type.value}")
            return {'url': f"{self.settings.stripe_success_url}&stub=1&plan={plan.type.value}",
                    'session_id': f"stub_cs_{user.id}", 'stub': True}

        current = self.store.get_subscription(user.id)
        params = {
            'mode': 'subscription',
            'line_items': [{'price': plan.stripe_price_id, 'quantity': 1}],
            'success_url': self.settings.stripe_success_url,
            'cancel_url': self.settings.stripe_cancel_url,
            'client_reference_id': user.id,
            'metadata': {'user_id': user.id, 'plan': plan.type.value},
            'subscription_data': {'metadata': {'user_id': user.id, 'plan': plan.type.value}},
        }
        if current and current.stripe_customer_id:
            params['customer'] = current.stripe_customer_id
        else:
            params['customer_email'] = user.email

        try:
            session = stripe.checkout.Session.create(**params)
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout failed for user {user.id}: {str(e)}")
            raise AppError("Failed to create checkout session", status_code=502)
        logger.info(f"Checkout session {session.id} created for user {user.id} plan={plan.type.value}")
        return {'url': session.url, 'session_id': session.id}

    def create_portal_session(self, user_id: str) -> Dict[str, Any]:
        subscription = self.store.get_subscription(user_id)
        if subscription is None or not subscription.stripe_customer_id:
            raise ValidationError("No billing account for this user")
        if not self.is_configured:
            return {'url': self.settings.stripe_portal_return_url, 'stub': True}
        try:
            session = stripe.billing_portal.Session.create(
                customer=subscription.stripe_customer_id,
                return_url=self.settings.stripe_portal_return_url,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe portal failed for user {user_id}: {str(e)}")
            raise AppError("Failed to open billing portal", status_code=502)
        return {'url': session.url}

    # Webhooks

    def construct_event(self, payload: bytes, signature: str) -> Dict[str, Any]:
        """Verify Stripe-Signature and parse the event"""
        if not self.settings.stripe_webhook_secret:
            raise AppError("Stripe webhook secret not configured", status_code=501)
        try:
            event = stripe.Webhook.construct_event(
                payload=payload,
                sig_header=signature,
                secret=self.settings.stripe_webhook_secret,
            )
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.error(f"Stripe signature verification failed: {str(e)}")
            raise ValidationError("Invalid Stripe signature", user_message='signature_verification_failed')
        return _as_dict(event)

    def handle_event(self, event: Dict[str, Any]) -> Dict[str, Any]:
        event_id = event.get('id') or ''
        event_type = event.get('type') or ''
        obj = _as_dict((event.get('data') or {}).get('object'))

        if event_id and not self.store.mark_event_processed(event_id):
            logger.info(f"Stripe event {event_id} ({event_type}) already processed")
            return {'ok': True, 'type': event_type, 'idempotent': True}

        logger.info(f"Stripe event received id={event_id} type={event_type}")
        handler = {
            'checkout.session.completed': self._checkout_completed,
            'customer.subscription.updated': self._subscription_updated,
            'customer.subscription.deleted': self._subscription_deleted,
            'invoice.payment_succeeded': self._payment_succeeded,
            'invoice.payment_failed': self._payment_failed,
        }.get(event_type)
        if handler is None:
            logger.info(f"Unhandled Stripe event type {event_type}")
            return {'ok': True, 'type': event_type, 'handled': False}

        try:
            handler(obj)
        except Exception as e:
            # Stripe redelivers on error; let the retry run the handler again
            logger.error(f"Stripe event {event_id} ({event_type}) failed: {str(e)}")
            if event_id:
                self.store.forget_event(event_id)
            raise
        return {'ok': True, 'type': event_type, 'handled': True}

    def _find(self, obj: Dict[str, Any]) -> Optional[Subscription]:
        subscription_id = obj.get('subscription') if obj.get('object') != 'subscription' else obj.get('id')
        found = self.store.find_subscription(obj.get('customer'), subscription_id)
        if found is None:
            user_id = (obj.get('metadata') or {}).get('user_id')
            if user_id:
                found = self.store.get_subscription(user_id)
        return found

    def _checkout_completed(self, obj: Dict[str, Any]) -> None:
        metadata = obj.get('metadata') or {}
        user_id = metadata.get('user_id') or obj.get('client_reference_id')
        if not user_id:
            logger.error("checkout.session.completed without user_id")
            return
        subscription = self.change_plan(user_id, metadata.get('plan') or PlanType.PERSONAL.value, 'stripe')
        subscription.stripe_customer_id = obj.get('customer') or subscription.stripe_customer_id
        subscription.stripe_subscription_id = obj.get('subscription') or subscription.stripe_subscription_id
        self.store.save_subscription(subscription, 'stripe', 'subscription.activate')

    def _subscription_updated(self, obj: Dict[str, Any]) -> None:
        subscription = self._find(obj)
        if subscription is None:
            logger.warning(f"Subscription update for unknown subscription {obj.get('id')}")
            return
        subscription.status = STRIPE_STATUS.get(obj.get('status'), subscription.status)
        subscription.cancel_at_period_end = bool(obj.get('cancel_at_period_end'))
        subscription.current_period_start = _period(obj, 'current_period_start') or subscription.current_period_start
        subscription.current_period_end = _period(obj, 'current_period_end') or subscription.current_period_end
        plan_type = (obj.get('metadata') or {}).get('plan')
        if plan_type in PlanType._value2member_map_:
            plan = get_plan(plan_type)
            subscription.plan = plan.type
            subscription.price = plan.price
            subscription.max_households = plan.max_households
            subscription.max_contacts = plan.max_contacts
        self.store.save_subscription(subscription, 'stripe', 'subscription.update')

    def _subscription_deleted(self, obj: Dict[str, Any]) -> None:
        subscription = self._find(obj)
        if subscription is None:
            logger.warning(f"Subscription delete for unknown subscription {obj.get('id')}")
            return
        subscription.status = SubscriptionStatus.CANCELED
        subscription.cancel_at_period_end = False
        self.store.save_subscription(subscription, 'stripe', 'subscription.cancel')

    def _record_invoice(self, obj: Dict[str, Any], status: str) -> Optional[Subscription]:
        subscription = self._find(obj)
        self.store.record_payment(Payment(
            user_id=subscription.user_id if subscription else None,
            stripe_invoice_id=obj.get('id'),
            amount=(obj.get('amount_paid') if status == 'paid' else obj.get('amount_due')) or 0,
            currency=obj.get('currency') or 'jpy',
            status=status,
            paid_at=utcnow() if status == 'paid' else None,
        ))
        return subscription

    def _payment_succeeded(self, obj: Dict[str, Any]) -> None:
        subscription = self._record_invoice(obj, 'paid')
        if subscription and subscription.status == SubscriptionStatus.PAST_DUE:
            subscription.status = SubscriptionStatus.ACTIVE
            self.store.save_subscription(subscription, 'stripe', 'subscription.reactivate')

    def _payment_failed(self, obj: Dict[str, Any]) -> None:
        subscription = self._record_invoice(obj, 'failed')
        if subscription:
            subscription.status = SubscriptionStatus.PAST_DUE
            self.store.save_subscription(subscription, 'stripe', 'subscription.past_due')
