from datetime import timedelta

from api.jobs.escalation import EscalationJob
from api.services.notifier import REMINDER_SMS
from api.services.telephony import DeliveryResult
from lib.escalation import EscalationAction, EscalationDecision
from lib.lifecycle import transition
from lib.models import AlertStatus, CallResult


async def test_call_household_records_attempt(services, household, make_alert, store, fake_telephony, now):
    alert = make_alert(household)
    updated, result = await services.engine.call_household(alert, household, now)

    assert result.success
    assert updated.metadata.attempts == 2
    fake_telephony.make_call.assert_awaited_once_with(household.phone, alert.id, household.name, 2)
    [log] = store.list_call_logs(alert.id)
    assert log.call_sid == 'CA123'
    assert log.result == CallResult.PENDING
    assert store.get_alert(alert.id).metadata.attempts == 2


async def test_failed_call_logged_as_failed(services, household, make_alert, store, fake_telephony, now):
    fake_telephony.make_call.return_value = DeliveryResult(success=False, error='busy line')
    alert = make_alert(household)
    await services.engine.call_household(alert, household, now)
    assert store.list_call_logs(alert.id)[0].result == CallResult.FAILED


async def test_retry_step_calls_again_and_reminds(services, household, make_alert, store, fake_telephony, now):
    alert = make_alert(household)
    decision = await services.engine.step(alert, now + timedelta(minutes=5))

    assert decision.action == EscalationAction.RETRY_CALL
    fake_telephony.make_call.assert_awaited_once()
    fake_telephony.send_sms.assert_awaited_once_with(household.phone, REMINDER_SMS, alert.id)
    assert store.get_alert(alert.id).metadata.attempts == 2


async def test_family_stage(services, household, make_alert, store, fake_telephony, fake_line, now):
    alert = make_alert(household)
    decision = await services.engine.step(alert, now + timedelta(minutes=10))

    assert decision.action == EscalationAction.NOTIFY_FAMILY
    assert fake_telephony.send_sms.await_count == 2
    fake_line.push_message.assert_awaited_once()
    saved = store.get_alert(alert.id)
    assert saved.metadata.family_notified_at == now + timedelta(minutes=10)
    assert saved.status == AlertStatus.UNANSWERED


async def test_neighbor_stage_escalates(services, household, make_alert, store, fake_telephony, now):
    alert = make_alert(household)
    await services.engine.step(alert, now + timedelta(minutes=15))

    saved = store.get_alert(alert.id)
    assert saved.status == AlertStatus.ESCALATED
    assert saved.metadata.neighbor_notified_at is not None
    recipients = [c.args[0] for c in fake_telephony.send_sms.await_args_list]
    assert recipients == ['+819055556666', '+819077778888']


async def test_provider_failure_still_marks_stage(services, household, make_alert, store, fake_telephony, now):
    fake_telephony.send_sms.return_value = DeliveryResult(success=False, error='down')
    alert = make_alert(household)
    await services.engine.step(alert, now + timedelta(minutes=10))
    assert store.get_alert(alert.id).metadata.family_notified_at is not None


async def test_escalation_job_checks_open_alerts(settings, services, household, make_alert, store, now):
    open_alert = make_alert(household)
    make_alert(household, status=AlertStatus.COMPLETED, closed_at=now)
    job = EscalationJob(settings, store, services.engine)

    result = await job.execute(now + timedelta(minutes=5))

    assert result == {'checked': 1, 'actions': {'retry_call': 1}}
    assert store.get_alert(open_alert.id).metadata.attempts == 2
    assert job.last_result == result
    assert not job.is_running


async def test_escalation_job_skips_other_days(settings, services, household, make_alert, store, now):
    make_alert(household, first_trigger_at=now - timedelta(days=1))
    job = EscalationJob(settings, store, services.engine)
    assert (await job.execute(now))['checked'] == 0


async def test_answer_during_neighbor_notification_is_kept(services, household, make_alert, store,
                                                           fake_telephony, now):
    alert = make_alert(household)
    answered_at = now + timedelta(minutes=15)
    answers = []

    async def answer_while_sending(*args):
        if not answers:
            answers.append(await services.responses.handle_digits(alert.id, '1', 'CA123', answered_at))
        return DeliveryResult(success=True, provider_id='SM123', status='queued')

    fake_telephony.send_sms.side_effect = answer_while_sending
    await services.engine.step(alert, answered_at)

    assert answers[0].status == AlertStatus.OK
    saved = store.get_alert(alert.id)
    assert saved.status == AlertStatus.OK
    assert saved.metadata.last_response_code == '1'
    assert saved.metadata.neighbor_notified_at == answered_at


async def test_apply_skips_alert_closed_since_it_was_read(services, household, make_alert, store,
                                                          fake_telephony, fake_line, now):
    stale = make_alert(household)
    store.save_alert(transition(stale, AlertStatus.OK, now))

    result = await services.engine.apply(
        stale, EscalationDecision(EscalationAction.NOTIFY_NEIGHBORS, 'no_response'), now)

    assert result.status == AlertStatus.OK
    assert store.get_alert(stale.id).metadata.neighbor_notified_at is None
    fake_telephony.send_sms.assert_not_awaited()
    fake_line.push_message.assert_not_awaited()
