import json
from unittest.mock import patch

import stripe

from lib.models import PlanType, SubscriptionStatus


def event(event_type, obj, event_id='evt_1'):
    return {'id': event_id, 'type': event_type, 'data': {'object': obj}}


def post(client, payload):
    with patch('stripe.Webhook.construct_event', return_value=payload) as construct:
        response = client.post('/webhooks/stripe', data=json.dumps(payload),
                               headers={'Stripe-Signature': 't=1,v1=abc'})
    return response, construct


def test_bad_signature_rejected(test_client):
    with patch('stripe.Webhook.construct_event',
               side_effect=stripe.SignatureVerificationError('bad', 't=1,v1=abc')):
        response = test_client.post('/webhooks/stripe', data='{}', headers={'Stripe-Signature': 't=1,v1=abc'})
    assert response.status_code == 400
    assert response.get_json() == {'error': 'signature_verification_failed'}


def test_checkout_completed_activates_plan(test_client, users, store):
    response, construct = post(test_client, event('checkout.session.completed', {
        'object': 'checkout.session',
        'customer': 'cus_1',
        'subscription': 'sub_1',
        'client_reference_id': 'u_other',
        'metadata': {'user_id': 'u_other', 'plan': 'business'},
    }))

    assert response.get_json() == {'ok': True, 'type': 'checkout.session.completed', 'handled': True}
    assert construct.call_args.kwargs['secret'] == 'whsec_test'
    subscription = store.get_subscription('u_other')
    assert subscription.plan == PlanType.BUSINESS
    assert subscription.stripe_customer_id == 'cus_1'
    assert subscription.stripe_subscription_id == 'sub_1'


def test_duplicate_event_is_idempotent(test_client, users, store):
    payload = event('checkout.session.completed', {'metadata': {'user_id': 'u_other', 'plan': 'family'}})
    post(test_client, payload)
    response, _ = post(test_client, payload)
    assert response.get_json()['idempotent'] is True
    changes = [e for e in store.list_audit(target_type='subscription') if e.details['user_id'] == 'u_other']
    assert len(changes) == 2


def test_subscription_updated_and_deleted(test_client, users, store):
    subscription = store.get_subscription('u_owner')
    subscription.stripe_subscription_id = 'sub_9'
    store.save_subscription(subscription)

    post(test_client, event('customer.subscription.updated', {
        'object': 'subscription', 'id': 'sub_9', 'status': 'past_due', 'cancel_at_period_end': True,
        'items': {'data': [{'current_period_start': 1754006400, 'current_period_end': 1756684800}]},
        'metadata': {'plan': 'business'},
    }, event_id='evt_2'))
    updated = store.get_subscription('u_owner')
    assert updated.status == SubscriptionStatus.PAST_DUE
    assert updated.plan == PlanType.BUSINESS
    assert updated.cancel_at_period_end is True
    assert updated.current_period_end.year == 2025

    post(test_client, event('customer.subscription.deleted', {'object': 'subscription', 'id': 'sub_9'},
                            event_id='evt_3'))
    assert store.get_subscription('u_owner').status == SubscriptionStatus.CANCELED


def test_invoice_events(test_client, users, store):
    subscription = store.get_subscription('u_owner')
    subscription.stripe_customer_id = 'cus_7'
    store.save_subscription(subscription)

    post(test_client, event('invoice.payment_failed', {
        'object': 'invoice', 'id': 'in_1', 'customer': 'cus_7', 'amount_due': 2980, 'currency': 'jpy',
    }, event_id='evt_4'))
    assert store.get_subscription('u_owner').status == SubscriptionStatus.PAST_DUE

    post(test_client, event('invoice.payment_succeeded', {
        'object': 'invoice', 'id': 'in_2', 'customer': 'cus_7', 'amount_paid': 2980, 'currency': 'jpy',
    }, event_id='evt_5'))
    assert store.get_subscription('u_owner').status == SubscriptionStatus.ACTIVE

    payments = store.list_payments('u_owner')
    assert sorted((p.stripe_invoice_id, p.status, p.amount) for p in payments) == [
        ('in_1', 'failed', 2980), ('in_2', 'paid', 2980)]


def test_unhandled_event(test_client):
    response, _ = post(test_client, event('customer.created', {}, event_id='evt_6'))
    assert response.get_json() == {'ok': True, 'type': 'customer.created', 'handled': False}


def test_failed_event_is_retried_on_redelivery(test_client, users, store):
    payload = event('checkout.session.completed', {
        'customer': 'cus_9',
        'subscription': 'sub_9',
        'metadata': {'user_id': 'u_other', 'plan': 'family'},
    }, event_id='evt_retry')

    with patch.object(store, 'save_subscription', side_effect=RuntimeError('storage down')):
        response, _ = post(test_client, payload)
    assert response.status_code == 500
    assert store.get_subscription('u_other') is None

    response, _ = post(test_client, payload)
    assert response.get_json() == {'ok': True, 'type': 'checkout.session.completed', 'handled': True}
    subscription = store.get_subscription('u_other')
    assert subscription.plan == PlanType.FAMILY
    assert subscription.stripe_subscription_id == 'sub_9'
