"""
Background task scheduler using APScheduler.
Runs the supervisor checks, deferred retries and health checks on a schedule.
"""
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
import asyncio
import logging
from typing import Optional
from Database import SessionLocal, MaintenanceAgent
from Database.DatabaseConfig import AppConfig, get_config
from Supervisor.HealthCheck import run_health_check_with_alerts
from Supervisor.Notifications import Notifier, build_notifier
from Supervisor.QualitySnapshot import capture_quality_snapshot
from Supervisor.RetryOrchestrator import RetryOrchestrator
from Supervisor.RunLedger import RunLedger
from Supervisor.Supervisor import Supervisor
from Supervisor.WeeklyReport import generate_weekly_report

logger = logging.getLogger(__name__)


class TaskScheduler:
    def __init__(self, config: Optional[AppConfig] = None, notifier: Optional[Notifier] = None,
                 session_factory=SessionLocal):
        self.config = config or get_config()
        self.notifier = notifier or build_notifier(self.config.notifications)
        self.session_factory = session_factory
        self.scheduler = BackgroundScheduler()

    def start(self):
        """Start the scheduler"""
        # One supervisor check job per agent; max_instances=1 keeps checks of an agent from overlapping
        for agent in MaintenanceAgent:
            self.scheduler.add_job(
                self._run_supervisor_check,
                trigger=IntervalTrigger(hours=self.config.supervisor.lookback_hours),
                args=[agent],
                id=f"supervisor_{agent.endpoint}_job",
                name=f"Supervisor check {agent.value}",
                max_instances=1,
                coalesce=True,
                replace_existing=True
            )

        # Fire deferred retries whose backoff has elapsed
        self.scheduler.add_job(
            self._dispatch_due_retries,
            trigger=IntervalTrigger(minutes=1),
            id="retry_dispatch_job",
            name="Deferred retry dispatch",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        # Follow up on spawned retries
        self.scheduler.add_job(
            self._process_retry_checks,
            trigger=IntervalTrigger(minutes=10),
            id="retry_check_job",
            name="Retry re-checks",
            max_instances=1,
            coalesce=True,
            replace_existing=True
        )

        # Proactive health checks every 30 minutes
        self.scheduler.add_job(
            self._run_health_check,
            trigger=IntervalTrigger(minutes=30),
            id="health_job",
            name="Health check",
            max_instances=1,
            replace_existing=True
        )

        # Daily data quality snapshot
        self.scheduler.add_job(
            self._capture_quality_snapshot,
            trigger=CronTrigger(hour=3, minute=0),
            id="quality_snapshot_job",
            name="Quality snapshot",
            replace_existing=True
        )

        # Weekly report, end of the week it covers
        self.scheduler.add_job(
            self._generate_weekly_report,
            trigger=CronTrigger(day_of_week="sun", hour=23, minute=0),
            id="weekly_report_job",
            name="Weekly report",
            replace_existing=True
        )

        self.scheduler.start()
        logger.info("Task scheduler started")

    def stop(self):
        """Stop the scheduler"""
        self.scheduler.shutdown()
        logger.info("Task scheduler stopped")

    def _run_supervisor_check(self, agent: MaintenanceAgent):
        """Check one agent and act on the verdict"""
        db = self.session_factory()
        supervisor = None
        try:
            logger.info(f"[Scheduled] Running supervisor check for {agent.value}...")
            supervisor = Supervisor(db, self.config, self.notifier)
            result = supervisor.supervisor_check(agent)
            logger.info(f"[Scheduled] {agent.value} check: {result.check_status.value} "
                        f"(action: {result.action_taken.value})")
        except Exception as e:
            logger.error(f"[Scheduled] Supervisor check for {agent.value} failed: {e}")
        finally:
            if supervisor is not None:
                supervisor.close()
            db.close()

    def _dispatch_due_retries(self):
        db = self.session_factory()
        orchestrator = None
        try:
            orchestrator = RetryOrchestrator(RunLedger(db), self.config)
            dispatched = orchestrator.dispatch_due_retries()
            if dispatched:
                logger.info(f"[Scheduled] Dispatched {len(dispatched)} deferred retries")
        except Exception as e:
            logger.error(f"[Scheduled] Retry dispatch failed: {e}")
        finally:
            if orchestrator is not None:
                orchestrator.close()
            db.close()

    def _process_retry_checks(self):
        db = self.session_factory()
        supervisor = None
        try:
            supervisor = Supervisor(db, self.config, self.notifier)
            resolved = supervisor.process_pending_retry_checks()
            if resolved:
                logger.info(f"[Scheduled] Resolved {resolved} retry re-checks")
        except Exception as e:
            logger.error(f"[Scheduled] Retry re-checks failed: {e}")
        finally:
            if supervisor is not None:
                supervisor.close()
            db.close()

    def _run_health_check(self):
        """Health probes open their own sessions"""
        try:
            logger.info("[Scheduled] Running health check...")
            report = asyncio.run(run_health_check_with_alerts(
                self.notifier, config=self.config, session_factory=self.session_factory))
            issues = sum(1 for c in report.checks if c.status.value != "healthy")
            logger.info(f"[Scheduled] Health check result: {report.overall_status.value} ({issues} issues)")
        except Exception as e:
            logger.error(f"[Scheduled] Health check failed: {e}")

    def _capture_quality_snapshot(self):
        db = self.session_factory()
        try:
            logger.info("[Scheduled] Capturing quality snapshot...")
            metrics = capture_quality_snapshot(db, "scheduled")
            logger.info(f"[Scheduled] Quality snapshot: {metrics.total_companies} companies, "
                        f"avg quality {metrics.avg_data_quality}")
        except Exception as e:
            logger.error(f"[Scheduled] Quality snapshot failed: {e}")
        finally:
            db.close()

    def _generate_weekly_report(self):
        db = self.session_factory()
        try:
            logger.info("[Scheduled] Generating weekly report...")
            report = generate_weekly_report(db, self.notifier)
            logger.info(f"[Scheduled] Weekly report: {report.overall_status.value}")
        except Exception as e:
            logger.error(f"[Scheduled] Weekly report failed: {e}")
        finally:
            db.close()
