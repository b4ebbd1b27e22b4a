"""
Supervisor: acts on check verdicts.

For each agent it runs the check, decides between doing nothing, retrying
and alerting a human, records the check and schedules a follow-up look at
any retry it spawned.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy.orm import Session

from Database import CheckRecord, CheckStatus, MaintenanceAgent, RunStatus, SupervisorAction, utcnow
from Database.DatabaseConfig import AppConfig, get_config
from Supervisor.Notifications import LoggingNotifier, Notifier
from Supervisor.RetryOrchestrator import RetryOrchestrator
from Supervisor.RunLedger import RunLedger
from Supervisor.SupervisorCheck import CheckResult, check_agent_run, decide_action

logger = logging.getLogger(__name__)

MANUAL_ACTION = "Check the agent logs and relaunch it manually"

# Outcomes of check_retry_result
RETRY_PENDING = "pending"
RETRY_SUCCEEDED = "succeeded"
RETRY_RETRIED = "retried"
RETRY_ESCALATED = "escalated"
RETRY_MISSING = "missing"


class Supervisor:
    def __init__(self, db: Session,
                 config: Optional[AppConfig] = None,
                 notifier: Optional[Notifier] = None,
                 orchestrator: Optional[RetryOrchestrator] = None,
                 clock: Callable[[], datetime] = utcnow):
        self.db = db
        self.config = config or get_config()
        self.notifier = notifier or LoggingNotifier()
        self.ledger = RunLedger(db)
        self.orchestrator = orchestrator or RetryOrchestrator(self.ledger, self.config, clock=clock)
        self.clock = clock

    def close(self):
        self.orchestrator.close()

    def _notify(self, send: Callable[..., bool], *args) -> bool:
        """Deliver one notification; a failing channel only costs the notification"""
        try:
            return bool(send(*args))
        except Exception as e:
            logger.error(f"Notification {send.__name__} failed: {e}")
            return False

    @property
    def max_attempts(self) -> int:
        return self.config.retry.max_retry_attempts

    # ==================== MAIN CHECK ====================

    def supervisor_check(self, agent: MaintenanceAgent) -> CheckResult:
        """Check one agent, act on the verdict and persist a check record"""
        agent = MaintenanceAgent(agent)
        now = self.clock()
        logger.info(f"Checking agent: {agent.value}")

        result = check_agent_run(self.ledger, agent, self.config.supervisor, now)
        notified = False
        retry_check_at = None
        status = result.check_status

        if status == CheckStatus.PASSED:
            logger.info(f"{agent.value} check PASSED")
            items = result.details.get("items_processed") or 0
            if items > 0:
                notified = self._notify(
                    self.notifier.notify_agent_completed, agent, items, result.details.get("run_duration_ms"))

        elif status == CheckStatus.WARNING:
            logger.warning(f"{agent.value} check WARNING: {result.reason}")
            notified = self._notify(self.notifier.notify_agent_warning, agent, result.reason, result.details)

        elif status == CheckStatus.PENDING:
            logger.info(f"{agent.value} still running, will check again later")

        else:
            logger.error(f"{agent.value} check {status.value}: {result.reason}")

            # Latest run of any age carries the attempt counter
            latest = self.ledger.latest_run(agent)
            attempt = latest.retry_attempt if latest is not None else 0
            parent_id = latest.id if latest is not None else None

            result.action_taken = decide_action(status, attempt, self.max_attempts)

            if result.action_taken == SupervisorAction.RETRY:
                decision = self.orchestrator.evaluate(agent, parent_id)

                if not decision.should_retry:
                    result.action_taken = SupervisorAction.ALERT_ONLY
                    notified = self._escalate(
                        agent, f"Retry refused: {decision.reason}", result.details, attempt)
                else:
                    logger.info(f"Triggering retry for {agent.value} (attempt {attempt + 1}/{self.max_attempts})")
                    notified = self._notify(
                        self.notifier.notify_agent_failed, agent, result.reason, True, attempt + 1, result.details)

                    retry_run = self.orchestrator.trigger(agent, parent_id, decision)
                    if retry_run is not None:
                        result.retry_run_id = retry_run.id
                        retry_check_at = now + timedelta(
                            milliseconds=decision.delay_ms,
                            minutes=self.config.retry.retry_check_delay_minutes,
                        )
            else:
                logger.error(f"{agent.value} max retries reached - critical alert")
                notified = self._escalate(agent, result.reason, result.details, attempt)

        self._record(result, now, notified, retry_check_at)
        return result

    def _escalate(self, agent: MaintenanceAgent, reason: str, details: dict, attempt: int) -> bool:
        summary = details.get("error_summary") or {}
        context = {
            "reason": reason,
            "attempts": attempt + 1,
            "error_categories": {k: v for k, v in (summary.get("by_category") or {}).items() if v},
            "dominant_category": summary.get("dominant_category"),
            "recent_errors": details.get("last_errors", []),
            "run_status": details.get("run_status"),
        }
        return self._notify(self.notifier.notify_critical_alert, agent, reason, MANUAL_ACTION, context)

    def _record(self, result: CheckResult, now: datetime, notified: bool,
                retry_check_at: Optional[datetime] = None) -> CheckRecord:
        record = CheckRecord(
            agent=result.agent.value,
            run_id=result.run_id,
            check_status=result.check_status.value,
            action_taken=result.action_taken.value,
            check_details=result.details,
            retry_run_id=result.retry_run_id,
            is_retry_check=retry_check_at is not None,
            retry_check_at=retry_check_at,
            notification_sent=bool(notified),
            checked_at=now,
        )
        self.db.add(record)
        self.db.commit()
        return record

    # ==================== RETRY RE-CHECK ====================

    def check_retry_result(self, agent: MaintenanceAgent, retry_run_id: str) -> str:
        """Look at a retry the supervisor spawned earlier and follow up on it"""
        agent = MaintenanceAgent(agent)
        run = self.ledger.get_run(retry_run_id)

        if run is None:
            logger.error(f"Retry run {retry_run_id} not found")
            return RETRY_MISSING

        if run.status in (RunStatus.RUNNING.value, RunStatus.PENDING.value):
            logger.info(f"Retry {retry_run_id} still {run.status.lower()}")
            return RETRY_PENDING

        if run.status in (RunStatus.COMPLETED.value, RunStatus.PARTIAL.value):
            logger.info(f"Retry {retry_run_id} succeeded!")
            self._notify(self.notifier.notify_retry_success, agent, run.items_processed or 0, run.duration_ms or 0)
            return RETRY_SUCCEEDED

        logger.error(f"Retry {retry_run_id} failed with status {run.status}")
        reason = f"Retry failed (status: {run.status})"

        if run.retry_attempt < self.max_attempts:
            child = self.ledger.find_child(run.id)
            if child is not None:
                logger.info(f"Retry {retry_run_id} already has a follow-up run {child.id}")
                return RETRY_RETRIED

            decision = self.orchestrator.evaluate(agent, run.id)
            if decision.should_retry:
                now = self.clock()
                self._notify(self.notifier.notify_agent_failed, agent, reason, True, run.retry_attempt + 1)
                new_run = self.orchestrator.trigger(agent, run.id, decision)
                if new_run is not None:
                    self._record(
                        CheckResult(
                            run_id=run.id,
                            agent=agent,
                            check_status=CheckStatus.FAILED,
                            action_taken=SupervisorAction.RETRY,
                            details={"reason": reason, "run_status": run.status},
                            retry_run_id=new_run.id,
                        ),
                        now,
                        True,
                        now + timedelta(milliseconds=decision.delay_ms,
                                        minutes=self.config.retry.retry_check_delay_minutes),
                    )
                return RETRY_RETRIED
            reason = f"{reason}. Retry refused: {decision.reason}"
        else:
            reason = f"All retries failed (last status: {run.status})"

        self._notify(
            self.notifier.notify_critical_alert,
            agent,
            reason,
            "Manual intervention required",
            {"attempts": run.retry_attempt + 1, "run_id": run.id, "errors": list(run.errors or [])[-3:]},
        )
        return RETRY_ESCALATED

    def process_pending_retry_checks(self, now: Optional[datetime] = None) -> int:
        """Run every re-check whose time has come. Returns how many were resolved."""
        now = now or self.clock()
        due: List[CheckRecord] = (
            self.db.query(CheckRecord)
            .filter(
                CheckRecord.is_retry_check.is_(True),
                CheckRecord.retry_checked_at.is_(None),
                CheckRecord.retry_check_at <= now,
            )
            .order_by(CheckRecord.retry_check_at)
            .all()
        )

        resolved = 0
        for record in due:
            outcome = self.check_retry_result(record.agent, record.retry_run_id)
            if outcome == RETRY_PENDING:
                continue
            record.retry_checked_at = now
            self.db.commit()
            resolved += 1

        return resolved


def run_supervisor_checks(db: Session, agents: Optional[List[MaintenanceAgent]] = None,
                          **kwargs) -> List[CheckResult]:
    """Check several agents in sequence with one supervisor"""
    supervisor = Supervisor(db, **kwargs)
    try:
        return [supervisor.supervisor_check(agent) for agent in (agents or list(MaintenanceAgent))]
    finally:
        supervisor.close()
