from datetime import timedelta

import pytest

from Database import CheckRecord, CheckStatus, MaintenanceAgent, RunStatus, SupervisorAction
from Supervisor.Supervisor import (
    RETRY_ESCALATED,
    RETRY_MISSING,
    RETRY_PENDING,
    RETRY_RETRIED,
    RETRY_SUCCEEDED,
    Supervisor,
)

from conftest import NOW, RecordingNotifier

AGENT = MaintenanceAgent.DB_COMPLETER


@pytest.fixture
def supervisor(db, config, notifier, orchestrator):
    return Supervisor(db, config, notifier=notifier, orchestrator=orchestrator, clock=lambda: NOW)


def records(db):
    return db.query(CheckRecord).order_by(CheckRecord.checked_at).all()


# ==================== SUPERVISOR CHECK ====================

def test_failed_run_is_retried_and_recheck_scheduled(supervisor, make_run, notifier, ledger, db):
    failed = make_run(status=RunStatus.FAILED, errors=[{"message": "ECONNRESET"}])

    result = supervisor.supervisor_check(AGENT)

    assert result.check_status == CheckStatus.FAILED
    assert result.action_taken == SupervisorAction.RETRY

    retry = ledger.get_run(result.retry_run_id)
    assert retry.parent_run_id == failed.id
    assert retry.retry_attempt == 1
    assert retry.status == RunStatus.PENDING.value

    (failed_event,) = notifier.of("agent_failed")
    assert failed_event["will_retry"] is True
    assert failed_event["retry_attempt"] == 1

    (record,) = records(db)
    assert record.run_id == failed.id
    assert record.action_taken == SupervisorAction.RETRY.value
    assert record.retry_run_id == retry.id
    assert record.is_retry_check is True
    # Attempt 1 network backoff is capped at two minutes
    assert record.retry_check_at == NOW + timedelta(minutes=2 + 120)
    assert record.notification_sent is True


def test_hard_ceiling_escalates_without_retry(supervisor, make_run, notifier, ledger, db):
    make_run(status=RunStatus.FAILED, retry_attempt=2, errors=[{"message": "ECONNRESET"}])

    result = supervisor.supervisor_check(AGENT)

    assert result.action_taken == SupervisorAction.ALERT_ONLY
    assert result.retry_run_id is None
    assert len(ledger.recent_runs()) == 1

    (alert,) = notifier.of("critical_alert")
    assert alert["details"]["attempts"] == 3
    assert alert["details"]["error_categories"] == {"NETWORK": 1}
    assert records(db)[0].is_retry_check is False


def test_policy_refusal_escalates(supervisor, make_run, notifier, ledger):
    make_run(status=RunStatus.FAILED, errors=[{"message": "401 unauthorized"}])

    result = supervisor.supervisor_check(AGENT)

    assert result.action_taken == SupervisorAction.ALERT_ONLY
    assert len(ledger.recent_runs()) == 1
    (alert,) = notifier.of("critical_alert")
    assert alert["reason"].startswith("Retry refused: Authentication errors")
    assert alert["details"]["dominant_category"] == "AUTH"
    assert notifier.of("agent_failed") == []


def test_missed_run_triggers_first_retry(supervisor, ledger, db):
    result = supervisor.supervisor_check(MaintenanceAgent.DB_SOURCER)

    assert result.check_status == CheckStatus.MISSED
    assert result.action_taken == SupervisorAction.RETRY
    retry = ledger.get_run(result.retry_run_id)
    assert retry.retry_attempt == 0
    assert retry.parent_run_id is None
    assert records(db)[0].run_id is None


def test_passed_run_notifies_completion(supervisor, make_run, notifier, db):
    make_run(items_processed=12, items_updated=12, duration_ms=4000)

    result = supervisor.supervisor_check(AGENT)

    assert result.check_status == CheckStatus.PASSED
    assert notifier.of("agent_completed") == [
        {"agent": "DB_COMPLETER", "items_processed": 12, "duration_ms": 4000}
    ]
    (record,) = records(db)
    assert record.action_taken == SupervisorAction.NONE.value
    assert record.notification_sent is True


def test_idle_passed_run_is_silent(supervisor, make_run, notifier, db):
    make_run(items_processed=0)

    supervisor.supervisor_check(AGENT)

    assert notifier.events == []
    assert records(db)[0].notification_sent is False


def test_warning_is_notified(supervisor, make_run, notifier):
    make_run(items_processed=12, items_updated=3)

    result = supervisor.supervisor_check(AGENT)

    assert result.check_status == CheckStatus.WARNING
    (warning,) = notifier.of("agent_warning")
    assert warning["reason"] == "Low output: 3 items (expected at least 10)"


def test_running_agent_is_left_alone(supervisor, make_run, notifier, db):
    make_run(status=RunStatus.RUNNING, started_at=NOW - timedelta(minutes=5))

    result = supervisor.supervisor_check(AGENT)

    assert result.check_status == CheckStatus.PENDING
    assert notifier.events == []
    assert records(db)[0].check_status == CheckStatus.PENDING.value


def test_failing_alert_channel_still_records_the_check(db, config, orchestrator, make_run, ledger):
    supervisor = Supervisor(db, config, notifier=RecordingNotifier(fail=True), orchestrator=orchestrator,
                            clock=lambda: NOW)
    make_run(status=RunStatus.FAILED, errors=[{"message": "ECONNRESET"}])

    result = supervisor.supervisor_check(AGENT)

    assert result.action_taken == SupervisorAction.RETRY
    assert ledger.get_run(result.retry_run_id) is not None
    (record,) = records(db)
    assert record.retry_run_id == result.retry_run_id
    assert record.notification_sent is False


def test_failing_alert_channel_on_escalation(db, config, orchestrator, make_run):
    supervisor = Supervisor(db, config, notifier=RecordingNotifier(fail=True), orchestrator=orchestrator,
                            clock=lambda: NOW)
    make_run(status=RunStatus.FAILED, retry_attempt=2)

    result = supervisor.supervisor_check(AGENT)

    assert result.action_taken == SupervisorAction.ALERT_ONLY
    assert records(db)[0].notification_sent is False


def test_deferred_retry_is_dispatched_after_backoff(supervisor, make_run, orchestrator, agent_requests):
    make_run(status=RunStatus.FAILED, errors=[{"message": "ECONNRESET"}])
    result = supervisor.supervisor_check(AGENT)

    assert agent_requests == []
    (run,) = orchestrator.dispatch_due_retries(NOW + timedelta(minutes=3))
    assert run.id == result.retry_run_id
    assert len(agent_requests) == 1


# ==================== RETRY RE-CHECK ====================

def test_missing_retry_run(supervisor):
    assert supervisor.check_retry_result(AGENT, "does-not-exist") == RETRY_MISSING


def test_retry_still_pending(supervisor, make_run):
    run = make_run(status=RunStatus.RUNNING, retry_attempt=1)
    assert supervisor.check_retry_result(AGENT, run.id) == RETRY_PENDING


def test_retry_succeeded(supervisor, make_run, notifier):
    run = make_run(status=RunStatus.COMPLETED, retry_attempt=1, items_processed=7, duration_ms=900)

    assert supervisor.check_retry_result(AGENT, run.id) == RETRY_SUCCEEDED
    assert notifier.of("retry_success") == [
        {"agent": "DB_COMPLETER", "items_processed": 7, "duration_ms": 900}
    ]


def test_failed_retry_is_retried_again(supervisor, make_run, ledger, db):
    run = make_run(status=RunStatus.FAILED, retry_attempt=1, errors=[{"message": "ECONNRESET"}])

    assert supervisor.check_retry_result(AGENT, run.id) == RETRY_RETRIED

    child = ledger.find_child(run.id)
    assert child.retry_attempt == 2
    (record,) = records(db)
    assert record.retry_run_id == child.id
    assert record.is_retry_check is True


def test_failed_retry_with_existing_child(supervisor, make_run, ledger):
    run = make_run(status=RunStatus.FAILED, retry_attempt=1)
    make_run(status=RunStatus.PENDING, retry_attempt=2, parent_run_id=run.id)

    assert supervisor.check_retry_result(AGENT, run.id) == RETRY_RETRIED
    assert len(ledger.recent_runs()) == 2


def test_last_retry_failure_escalates(supervisor, make_run, notifier, ledger):
    run = make_run(status=RunStatus.TIMEOUT, retry_attempt=2)

    assert supervisor.check_retry_result(AGENT, run.id) == RETRY_ESCALATED
    (alert,) = notifier.of("critical_alert")
    assert alert["reason"] == "All retries failed (last status: TIMEOUT)"
    assert ledger.find_child(run.id) is None


def test_refused_retry_of_retry_escalates(supervisor, make_run, notifier):
    run = make_run(status=RunStatus.FAILED, retry_attempt=1, errors=[{"message": "403 Forbidden"}])

    assert supervisor.check_retry_result(AGENT, run.id) == RETRY_ESCALATED
    (alert,) = notifier.of("critical_alert")
    assert "Retry refused" in alert["reason"]


def test_pending_retry_checks_are_processed_when_due(supervisor, make_run, ledger, db, notifier):
    make_run(status=RunStatus.FAILED, errors=[{"message": "ECONNRESET"}])
    result = supervisor.supervisor_check(AGENT)

    assert supervisor.process_pending_retry_checks(NOW + timedelta(minutes=30)) == 0

    # Retry still waiting: the re-check stays open
    assert supervisor.process_pending_retry_checks(NOW + timedelta(hours=3)) == 0
    assert records(db)[0].retry_checked_at is None

    ledger.update_run_status(result.retry_run_id, RunStatus.COMPLETED, items_processed=15)
    assert supervisor.process_pending_retry_checks(NOW + timedelta(hours=3)) == 1
    assert records(db)[0].retry_checked_at == NOW + timedelta(hours=3)
    assert len(notifier.of("retry_success")) == 1

    assert supervisor.process_pending_retry_checks(NOW + timedelta(hours=4)) == 0
