import time

from Database import CheckRecord, MaintenanceAgent, QualitySnapshot, WeeklyReport
from Database.DatabaseConfig import AppConfig, SupervisorConfig, TriggerConfig
from scheduler import TaskScheduler

from conftest import RecordingNotifier


def make_scheduler(config, session_factory, notifier=None):
    return TaskScheduler(config, notifier or RecordingNotifier(), session_factory=session_factory)


def test_jobs_are_registered(config, session_factory):
    scheduler = make_scheduler(config, session_factory)
    scheduler.start()
    try:
        ids = {job.id for job in scheduler.scheduler.get_jobs()}
    finally:
        scheduler.stop()

    assert ids == {
        "supervisor_cleaner_job",
        "supervisor_sourcer_job",
        "supervisor_completer_job",
        "retry_dispatch_job",
        "retry_check_job",
        "health_job",
        "quality_snapshot_job",
        "weekly_report_job",
    }


def test_supervisor_job_records_a_check(config, session_factory, db):
    make_scheduler(config, session_factory)._run_supervisor_check(MaintenanceAgent.DB_SOURCER)

    (record,) = db.query(CheckRecord).all()
    assert record.agent == "DB_SOURCER"
    assert record.check_status == "MISSED"


def test_snapshot_and_report_jobs(config, session_factory, db):
    notifier = RecordingNotifier()
    scheduler = make_scheduler(config, session_factory, notifier)

    scheduler._capture_quality_snapshot()
    scheduler._generate_weekly_report()

    assert db.query(QualitySnapshot).count() == 2
    assert db.query(WeeklyReport).count() == 1
    assert len(notifier.of("weekly_report")) == 1


def test_job_errors_are_contained(config, session_factory):
    scheduler = make_scheduler(config, session_factory, RecordingNotifier(fail=True))

    # The notifier raises while the report is dispatched
    scheduler._generate_weekly_report()


class HungSession:
    """Session on a database that stopped answering"""

    def query(self, *args, **kwargs):
        time.sleep(1.5)
        raise RuntimeError("database gone")

    def close(self):
        pass


def test_hung_database_does_not_hold_the_health_job():
    config = AppConfig(
        trigger=TriggerConfig(base_url="http://agents.test"),
        external_apis=[],
        supervisor=SupervisorConfig(health_probe_timeout_seconds=0.2),
    )
    notifier = RecordingNotifier()
    scheduler = TaskScheduler(config, notifier, session_factory=HungSession)

    started = time.monotonic()
    scheduler._run_health_check()
    elapsed = time.monotonic() - started

    assert elapsed < 1.0
    (alert,) = notifier.of("health_alert")
    assert "Database: Database unreachable: no answer within 0.2s" in alert["reason"]
