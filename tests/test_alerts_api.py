from datetime import timedelta

from api.services.telephony import DeliveryResult
from lib.models import AlertStatus, utcnow
from tests.conftest import auth


def test_todays_alerts_with_household_and_summary(test_client, household, make_alert):
    alert = make_alert(household, first_trigger_at=utcnow())
    make_alert(household, first_trigger_at=utcnow() - timedelta(days=2))

    body = test_client.get('/api/alerts/today', headers=auth('u_owner')).get_json()

    assert [a['id'] for a in body['data']] == [alert.id]
    assert body['data'][0]['household']['name'] == household.name
    assert body['summary']['unanswered'] == 1
    assert body['summary']['total'] == 1


def test_todays_alerts_scoped_to_owner(test_client, household, make_alert):
    make_alert(household, first_trigger_at=utcnow())
    assert test_client.get('/api/alerts/today', headers=auth('u_other')).get_json()['data'] == []
    assert len(test_client.get('/api/alerts/today', headers=auth('u_admin')).get_json()['data']) == 1


def test_summary(test_client, household, make_alert):
    make_alert(household, first_trigger_at=utcnow(), status=AlertStatus.HELP)
    body = test_client.get('/api/alerts/summary', headers=auth('u_owner')).get_json()
    assert body['data']['help'] == 1
    assert body['data']['total'] == 1
    assert 'date' in body


def test_alert_detail(test_client, household, make_alert):
    alert = make_alert(household)
    data = test_client.get(f'/api/alerts/{alert.id}', headers=auth('u_owner')).get_json()['data']
    assert data['household']['id'] == household.id
    assert data['call_logs'] == []
    assert data['notifications'] == []

    assert test_client.get(f'/api/alerts/{alert.id}', headers=auth('u_other')).status_code == 404
    assert test_client.get('/api/alerts/a_missing', headers=auth('u_owner')).status_code == 404


def test_status_update(test_client, household, make_alert, store):
    alert = make_alert(household)
    response = test_client.put(f'/api/alerts/{alert.id}/status', json={'status': 'in_progress'},
                               headers=auth('u_owner'))
    assert response.status_code == 200
    assert store.get_alert(alert.id).status == AlertStatus.IN_PROGRESS

    entry = store.list_audit(target_type='alert')[0]
    assert entry.action == 'alert.status'
    assert entry.actor == 'u_owner'
    assert entry.details == {'status': 'in_progress', 'from': 'unanswered'}


def test_invalid_status_transition(test_client, household, make_alert, now):
    alert = make_alert(household, status=AlertStatus.COMPLETED, closed_at=now)
    response = test_client.put(f'/api/alerts/{alert.id}/status', json={'status': 'ok'}, headers=auth('u_owner'))
    assert response.status_code == 409
    body = response.get_json()
    assert body['current'] == 'completed'
    assert body['requested'] == 'ok'


def test_unknown_status(test_client, household, make_alert):
    alert = make_alert(household)
    response = test_client.put(f'/api/alerts/{alert.id}/status', json={'status': 'asleep'},
                               headers=auth('u_owner'))
    assert response.status_code == 400
    assert test_client.put(f'/api/alerts/{alert.id}/status', json={},
                           headers=auth('u_owner')).status_code == 400


def test_retry_places_call(test_client, household, make_alert, store, fake_telephony):
    alert = make_alert(household)
    response = test_client.post('/api/alerts/retry', json={'alert_id': alert.id}, headers=auth('u_owner'))

    assert response.status_code == 200
    body = response.get_json()
    assert body['call']['provider_id'] == 'CA123'
    assert body['data']['metadata']['attempts'] == 2
    fake_telephony.make_call.assert_awaited_once()
    assert store.list_audit(target_type='alert')[0].actor == 'u_owner'


def test_retry_failure_is_bad_gateway(test_client, household, make_alert, fake_telephony):
    fake_telephony.make_call.return_value = DeliveryResult(success=False, error='Twilio error')
    alert = make_alert(household)
    response = test_client.post('/api/alerts/retry', json={'alert_id': alert.id}, headers=auth('u_owner'))
    assert response.status_code == 502
    assert response.get_json()['call']['error'] == 'Twilio error'


def test_retry_closed_alert(test_client, household, make_alert, now):
    alert = make_alert(household, status=AlertStatus.OK, closed_at=now)
    response = test_client.post('/api/alerts/retry', json={'alert_id': alert.id}, headers=auth('u_owner'))
    assert response.status_code == 400
    assert response.get_json()['error'] == 'Alert is already closed'
