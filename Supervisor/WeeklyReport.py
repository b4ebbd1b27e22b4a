"""
Weekly maintenance report.

Rolls up one week (Monday 00:00 to Sunday 23:59:59.999999) of agent runs,
supervisor checks and data quality into a single persisted report.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from Database import (
    AgentRun,
    CheckRecord,
    CheckStatus,
    HealthStatus,
    MaintenanceAgent,
    RunStatus,
    SupervisorAction,
    utcnow,
)
from Database.QualitySnapshot import QualitySnapshot
from Database.WeeklyReport import WeeklyReport
from Supervisor.Notifications import Notifier
from Supervisor.QualitySnapshot import (
    DataQualityMetrics,
    capture_quality_snapshot,
    compare_snapshots,
    snapshot_to_metrics,
)
from Supervisor.RunLedger import RunLedger

logger = logging.getLogger(__name__)

SUCCESS_STATUSES = (RunStatus.COMPLETED.value, RunStatus.PARTIAL.value)
FAILURE_STATUSES = (RunStatus.FAILED.value, RunStatus.TIMEOUT.value)


class AgentWeeklySummary(BaseModel):
    total_runs: int = 0
    successful_runs: int = 0
    failed_runs: int = 0
    partial_runs: int = 0
    items_processed: int = 0
    items_updated: int = 0
    items_created: int = 0
    retries_triggered: int = 0
    retries_successful: int = 0
    avg_duration_ms: int = 0
    total_cost: float = 0.0


class WeeklyIssue(BaseModel):
    date: datetime
    agent: str
    issue: str
    resolution: str
    recovered: bool = False


class WeeklyReportData(BaseModel):
    week_start: datetime
    week_end: datetime
    overall_status: HealthStatus
    agent_summaries: Dict[str, AgentWeeklySummary] = Field(default_factory=dict)
    data_quality_start: DataQualityMetrics
    data_quality_end: DataQualityMetrics
    quality_delta: dict = Field(default_factory=dict)
    issues: List[WeeklyIssue] = Field(default_factory=list)
    total_cost: float = 0.0
    cost_by_agent: Dict[str, float] = Field(default_factory=dict)


def week_bounds(now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
    """Monday 00:00 and Sunday 23:59:59.999999 of the week containing `now`"""
    now = now or utcnow()
    start = (now - timedelta(days=now.weekday())).replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(days=7) - timedelta(microseconds=1)
    return start, end


def _cost(run: AgentRun) -> float:
    return float(run.total_cost or Decimal(0))


def build_agent_summary(runs: List[AgentRun], agent: MaintenanceAgent) -> AgentWeeklySummary:
    agent_runs = [r for r in runs if r.agent == agent.value]
    # Totals only count original runs, retries are reported separately
    originals = [r for r in agent_runs if r.retry_attempt == 0]
    retries = [r for r in agent_runs if r.retry_attempt > 0]

    return AgentWeeklySummary(
        total_runs=len(originals),
        successful_runs=sum(1 for r in originals if r.status in SUCCESS_STATUSES),
        failed_runs=sum(1 for r in originals if r.status in FAILURE_STATUSES),
        partial_runs=sum(1 for r in agent_runs if r.status == RunStatus.PARTIAL.value),
        items_processed=sum(r.items_processed or 0 for r in agent_runs),
        items_updated=sum(r.items_updated or 0 for r in agent_runs),
        items_created=sum(r.items_created or 0 for r in agent_runs),
        retries_triggered=len(retries),
        retries_successful=sum(1 for r in retries if r.status in SUCCESS_STATUSES),
        avg_duration_ms=round(sum(r.duration_ms or 0 for r in agent_runs) / len(agent_runs)) if agent_runs else 0,
        total_cost=round(sum(_cost(r) for r in agent_runs), 4),
    )


def determine_health_status(summaries: Dict[str, AgentWeeklySummary], issues: List[WeeklyIssue]) -> HealthStatus:
    # An agent that never succeeded all week
    if any(s.total_runs > 0 and s.successful_runs == 0 for s in summaries.values()):
        return HealthStatus.CRITICAL

    unresolved = [i for i in issues if not i.recovered]
    if len(issues) > 2 and len(unresolved) > len(issues) / 2:
        return HealthStatus.CRITICAL

    if issues:
        return HealthStatus.DEGRADED

    if any(s.failed_runs > 0 or s.partial_runs > 0 for s in summaries.values()):
        return HealthStatus.DEGRADED

    return HealthStatus.HEALTHY


def _build_issues(ledger: RunLedger, checks: List[CheckRecord]) -> List[WeeklyIssue]:
    issues = []
    for check in checks:
        if check.check_status == CheckStatus.PASSED.value:
            continue

        retried = check.action_taken == SupervisorAction.RETRY.value
        retry_run = ledger.get_run(check.retry_run_id) if retried else None
        issues.append(WeeklyIssue(
            date=check.checked_at,
            agent=check.agent,
            issue=check.reason,
            resolution="Retry triggered" if retried else check.action_taken,
            recovered=retry_run is not None and retry_run.status in SUCCESS_STATUSES,
        ))
    return issues


def generate_weekly_report(db: Session, notifier: Optional[Notifier] = None,
                           now: Optional[datetime] = None) -> WeeklyReportData:
    """Build, persist (upsert by week_start) and dispatch the report for the current week"""
    now = now or utcnow()
    week_start, week_end = week_bounds(now)
    ledger = RunLedger(db)

    logger.info(f"Generating weekly report for {week_start.date()} - {week_end.date()}")

    runs = ledger.runs_between(week_start, week_end)
    checks = (
        db.query(CheckRecord)
        .filter(CheckRecord.checked_at >= week_start, CheckRecord.checked_at <= week_end)
        .order_by(CheckRecord.checked_at)
        .all()
    )

    summaries = {agent.endpoint: build_agent_summary(runs, agent) for agent in MaintenanceAgent}

    start_snapshot = (
        db.query(QualitySnapshot)
        .filter(
            QualitySnapshot.captured_at >= week_start,
            QualitySnapshot.captured_at <= week_start + timedelta(days=1),
        )
        .order_by(QualitySnapshot.captured_at)
        .first()
    )
    current = capture_quality_snapshot(db, "weekly_report", now=now)
    start = snapshot_to_metrics(start_snapshot) if start_snapshot is not None else current
    delta = compare_snapshots(start, current)

    issues = _build_issues(ledger, checks)
    overall = determine_health_status(summaries, issues)

    cost_by_agent = {name: summary.total_cost for name, summary in summaries.items()}
    total_cost = round(sum(_cost(r) for r in runs), 4)

    report = WeeklyReportData(
        week_start=week_start,
        week_end=week_end,
        overall_status=overall,
        agent_summaries=summaries,
        data_quality_start=start,
        data_quality_end=current,
        quality_delta=delta,
        issues=issues,
        total_cost=total_cost,
        cost_by_agent=cost_by_agent,
    )

    retries_triggered = sum(1 for c in checks if c.action_taken == SupervisorAction.RETRY.value)
    retries_successful = sum(1 for i in issues if i.recovered)
    retries_failed = sum(1 for i in issues if not i.recovered and i.resolution == "Retry triggered")

    row = db.query(WeeklyReport).filter(WeeklyReport.week_start == week_start).first()
    if row is None:
        row = WeeklyReport(week_start=week_start)
        db.add(row)
    else:
        logger.info("Weekly report already exists for this period, updating it")

    row.week_end = week_end
    row.overall_status = overall.value
    row.agent_summaries = {name: s.model_dump() for name, s in summaries.items()}
    row.data_quality_start = start.model_dump()
    row.data_quality_end = current.model_dump()
    row.quality_delta = delta
    row.issues_detected = len(issues)
    row.retries_triggered = retries_triggered
    row.retries_successful = retries_successful
    row.retries_failed = retries_failed
    row.total_cost = total_cost
    row.cost_by_agent = cost_by_agent
    row.generated_at = now
    db.commit()

    if notifier is not None:
        sent = notifier.notify_weekly_report(report.model_dump(mode="json"))
        if sent:
            row.notification_sent = True
            row.notification_sent_at = utcnow()
            db.commit()

    logger.info(f"Weekly report generated: status={overall.value} issues={len(issues)} cost={total_cost:.2f}")
    return report
