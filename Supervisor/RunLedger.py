"""
Run ledger: read and write access to agent run history.

Every write touches a single run and commits on its own; nothing here spans
more than one run in a transaction.
"""

import logging
from datetime import datetime, timedelta
from typing import List, Optional, Tuple, Union

from sqlalchemy import desc, func
from sqlalchemy.orm import Session

from Database import AgentRun, MaintenanceAgent, RunStatus, TriggerSource, utcnow
from Supervisor.ErrorClassifier import ErrorRecord

logger = logging.getLogger(__name__)

AgentLike = Union[MaintenanceAgent, str]


def _agent_value(agent: AgentLike) -> str:
    return agent.value if isinstance(agent, MaintenanceAgent) else str(agent)


def _status_value(status) -> str:
    return status.value if isinstance(status, RunStatus) else str(status)


class RunLedger:
    def __init__(self, db: Session):
        self.db = db

    # ==================== READS ====================

    def latest_run(self, agent: AgentLike, within: Optional[timedelta] = None,
                   now: Optional[datetime] = None) -> Optional[AgentRun]:
        """Most recently created run of the agent, optionally inside a lookback window"""
        query = self.db.query(AgentRun).filter(AgentRun.agent == _agent_value(agent))
        if within is not None:
            query = query.filter(AgentRun.created_at >= (now or utcnow()) - within)
        return query.order_by(desc(AgentRun.created_at)).first()

    def get_run(self, run_id: Optional[str]) -> Optional[AgentRun]:
        if not run_id:
            return None
        return self.db.query(AgentRun).filter(AgentRun.id == run_id).first()

    def find_child(self, parent_run_id: str) -> Optional[AgentRun]:
        """Retry spawned from the given run, if any"""
        return (
            self.db.query(AgentRun)
            .filter(AgentRun.parent_run_id == parent_run_id)
            .order_by(desc(AgentRun.created_at))
            .first()
        )

    def count_stale_runs(self, older_than: datetime) -> int:
        """RUNNING runs started before `older_than`"""
        return (
            self.db.query(func.count(AgentRun.id))
            .filter(
                AgentRun.status == RunStatus.RUNNING.value,
                AgentRun.started_at < older_than,
            )
            .scalar()
        ) or 0

    def count_failures_since(self, since: datetime) -> int:
        return (
            self.db.query(func.count(AgentRun.id))
            .filter(
                AgentRun.status == RunStatus.FAILED.value,
                AgentRun.created_at >= since,
            )
            .scalar()
        ) or 0

    def runs_between(self, start: datetime, end: datetime,
                     agent: Optional[AgentLike] = None) -> List[AgentRun]:
        query = self.db.query(AgentRun).filter(
            AgentRun.created_at >= start,
            AgentRun.created_at <= end,
        )
        if agent is not None:
            query = query.filter(AgentRun.agent == _agent_value(agent))
        return query.order_by(desc(AgentRun.created_at)).all()

    def recent_runs(self, limit: int = 50, agent: Optional[AgentLike] = None) -> List[AgentRun]:
        query = self.db.query(AgentRun)
        if agent is not None:
            query = query.filter(AgentRun.agent == _agent_value(agent))
        return query.order_by(desc(AgentRun.created_at)).limit(limit).all()

    def reported_details(self, key: str, since: datetime) -> List[Tuple[AgentRun, dict]]:
        """`details[key]` written by the agents on runs created since `since`, newest first"""
        runs = (
            self.db.query(AgentRun)
            .filter(AgentRun.created_at >= since)
            .order_by(desc(AgentRun.created_at))
            .all()
        )
        return [
            (run, run.details[key])
            for run in runs
            if isinstance(run.details, dict) and isinstance(run.details.get(key), dict)
        ]

    def due_retries(self, now: Optional[datetime] = None) -> List[AgentRun]:
        """Supervisor-created PENDING runs whose scheduled time has passed and that were never dispatched"""
        return (
            self.db.query(AgentRun)
            .filter(
                AgentRun.status == RunStatus.PENDING.value,
                AgentRun.triggered_by == TriggerSource.SUPERVISOR.value,
                AgentRun.dispatched_at.is_(None),
                AgentRun.scheduled_at <= (now or utcnow()),
            )
            .order_by(AgentRun.scheduled_at)
            .all()
        )

    # ==================== WRITES ====================

    def create_run(self, agent: AgentLike, retry_attempt: int = 0,
                   parent_run_id: Optional[str] = None,
                   scheduled_at: Optional[datetime] = None,
                   adjustments: Optional[dict] = None,
                   strategy: Optional[dict] = None,
                   triggered_by: TriggerSource = TriggerSource.SUPERVISOR,
                   status: RunStatus = RunStatus.PENDING) -> AgentRun:
        details = {"adjustments": adjustments or {}}
        if strategy is not None:
            details["retryStrategy"] = strategy

        run = AgentRun(
            agent=_agent_value(agent),
            status=_status_value(status),
            triggered_by=triggered_by.value if isinstance(triggered_by, TriggerSource) else str(triggered_by),
            parent_run_id=parent_run_id,
            retry_attempt=retry_attempt,
            scheduled_at=scheduled_at or utcnow(),
            details=details,
            errors=[],
        )
        self.db.add(run)
        self.db.commit()
        self.db.refresh(run)

        logger.info(f"Created {run.agent} run {run.id} (attempt {retry_attempt}, parent {parent_run_id})")
        return run

    def update_run_status(self, run_id: str, status: RunStatus, **fields) -> Optional[AgentRun]:
        """Set the status (and any other columns) of one run in a single commit"""
        run = self.get_run(run_id)
        if run is None:
            logger.error(f"Run {run_id} not found, cannot set status {_status_value(status)}")
            return None

        run.status = _status_value(status)
        for key, value in fields.items():
            setattr(run, key, value)

        self.db.commit()
        return run

    def append_error(self, run_id: str, error: Union[ErrorRecord, dict, str]) -> Optional[AgentRun]:
        run = self.get_run(run_id)
        if run is None:
            return None

        if isinstance(error, str):
            error = ErrorRecord(message=error)
        if isinstance(error, ErrorRecord):
            error = error.model_dump(mode="json", exclude_none=True)

        # JSON columns only notice reassignment
        run.errors = list(run.errors or []) + [error]
        self.db.commit()
        return run
