"""
Supervisor check: verdict on the latest run of one agent.

The check only reads the ledger, with one exception: a run found past its
timeout budget is marked TIMEOUT before the verdict is returned.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field

from Database import AgentRun, CheckStatus, MaintenanceAgent, RunStatus, SupervisorAction, utcnow
from Database.DatabaseConfig import SupervisorConfig
from Supervisor.ErrorClassifier import condense_error, summarize
from Supervisor.RunLedger import RunLedger

logger = logging.getLogger(__name__)

LAST_ERRORS_SHOWN = 3

FAILING_STATUSES = (CheckStatus.FAILED, CheckStatus.TIMEOUT, CheckStatus.MISSED)


class CheckResult(BaseModel):
    run_id: Optional[str] = None
    agent: MaintenanceAgent
    check_status: CheckStatus
    action_taken: SupervisorAction = SupervisorAction.NONE
    details: Dict[str, Any] = Field(default_factory=dict)
    retry_run_id: Optional[str] = None

    @property
    def reason(self) -> str:
        return self.details.get("reason", "")


def _error_context(errors) -> dict:
    errors = list(errors or [])
    return {
        "last_errors": [condense_error(e).model_dump(mode="json") for e in errors[-LAST_ERRORS_SHOWN:]],
        "error_summary": summarize(errors).model_dump(mode="json"),
    }


def _details(run: Optional[AgentRun], expected_min: int, reason: str, **extra) -> dict:
    details = {
        "run_found": run is not None,
        "expected_min_items": expected_min,
        "reason": reason,
    }
    if run is not None:
        details.update({
            "run_status": run.status,
            "run_duration_ms": run.duration_ms or 0,
            "items_processed": run.items_processed or 0,
        })
    details.update(extra)
    details.update(_error_context(run.errors if run is not None else []))
    return details


def _elapsed_ms(since: Optional[datetime], now: datetime) -> int:
    if since is None:
        return 0
    return int((now - since).total_seconds() * 1000)


def observe_timeout(ledger: RunLedger, run: AgentRun, now: Optional[datetime] = None,
                    runtime_ms: Optional[int] = None) -> AgentRun:
    """Transition a run that overran its budget to TIMEOUT"""
    now = now or utcnow()
    if runtime_ms is None:
        runtime_ms = _elapsed_ms(run.started_at or run.scheduled_at or run.created_at, now)

    logger.error(f"{run.agent} run {run.id} timed out after {runtime_ms}ms")
    return ledger.update_run_status(
        run.id,
        RunStatus.TIMEOUT,
        completed_at=now,
        duration_ms=runtime_ms,
    )


def check_agent_run(ledger: RunLedger, agent: MaintenanceAgent,
                    config: Optional[SupervisorConfig] = None,
                    now: Optional[datetime] = None) -> CheckResult:
    """Derive the check status of the agent's latest run in the lookback window"""
    config = config or SupervisorConfig()
    now = now or utcnow()
    agent = MaintenanceAgent(agent)
    expected_min = config.min_items_for(agent)
    timeout_ms = int(config.agent_timeout.total_seconds() * 1000)

    run = ledger.latest_run(agent, within=config.lookback, now=now)

    def result(status: CheckStatus, reason: str, **extra) -> CheckResult:
        return CheckResult(
            run_id=run.id if run is not None else None,
            agent=agent,
            check_status=status,
            details=_details(run, expected_min, reason, **extra),
        )

    if run is None:
        logger.warning(f"No recent run found for {agent.value}")
        return result(CheckStatus.MISSED, f"No run found in the last {config.lookback_hours} hours")

    status = run.status

    if status in (RunStatus.RUNNING.value, RunStatus.PENDING.value):
        if status == RunStatus.RUNNING.value:
            runtime_ms = _elapsed_ms(run.started_at or run.created_at, now)
        else:
            runtime_ms = _elapsed_ms(run.scheduled_at or run.created_at, now)

        if runtime_ms > timeout_ms:
            observe_timeout(ledger, run, now, runtime_ms)
            return result(
                CheckStatus.TIMEOUT,
                f"Run timed out after {round(runtime_ms / 60000)} minutes",
                run_status=RunStatus.TIMEOUT.value,
                run_duration_ms=runtime_ms,
            )

        if status == RunStatus.RUNNING.value:
            logger.info(f"{agent.value} still running ({round(runtime_ms / 60000)} minutes)")
            return result(CheckStatus.PENDING, "Run still in progress", run_duration_ms=runtime_ms)

        logger.info(f"{agent.value} run {run.id} scheduled, not started yet")
        return result(CheckStatus.PENDING, "Run scheduled, waiting to start")

    if status == RunStatus.TIMEOUT.value:
        return result(CheckStatus.TIMEOUT, "Run timed out")

    if status == RunStatus.FAILED.value:
        errors = run.errors or []
        first_message = errors[0].get("message") if errors and isinstance(errors[0], dict) else None
        return result(CheckStatus.FAILED, f"Run failed: {first_message or 'Unknown error'}")

    successes = run.successful_items

    if status == RunStatus.PARTIAL.value:
        if successes >= expected_min:
            return result(
                CheckStatus.WARNING,
                f"Partial success: {successes} successful, {run.items_failed or 0} failed",
            )
        return result(
            CheckStatus.FAILED,
            f"Too many failures: {run.items_failed or 0} failed out of {run.items_processed or 0}",
        )

    if status == RunStatus.COMPLETED.value:
        if successes < expected_min and (run.items_processed or 0) > 0:
            logger.warning(f"{agent.value} completed with {successes} items, expected at least {expected_min}")
            return result(
                CheckStatus.WARNING,
                f"Low output: {successes} items (expected at least {expected_min})",
            )
        return result(CheckStatus.PASSED, "Run completed successfully")

    if status == RunStatus.CANCELLED.value:
        return result(CheckStatus.WARNING, "Run was cancelled")

    return result(CheckStatus.WARNING, f"Unexpected status: {status}")


def decide_action(check_status: CheckStatus, retry_attempt: int, max_attempts: int) -> SupervisorAction:
    """Hard ceiling: once the latest run reached max_attempts, only a human can help"""
    if CheckStatus(check_status) not in FAILING_STATUSES:
        return SupervisorAction.NONE
    if (retry_attempt or 0) < max_attempts:
        return SupervisorAction.RETRY
    return SupervisorAction.ALERT_ONLY
