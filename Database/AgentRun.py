import uuid

from sqlalchemy import Column, String, DateTime, Integer, Numeric, JSON, Index

from Database.base import Base, utcnow
from Database.Enums import RunStatus, TriggerSource


class AgentRun(Base):
    """
    Track maintenance agent execution history.

    Append-only: rows are created by the cron scheduler (original runs) or by
    the retry orchestrator (retries) and are never deleted.
    """
    __tablename__ = "agent_runs"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    agent = Column(String(50), index=True, nullable=False)  # DB_CLEANER, DB_SOURCER, DB_COMPLETER
    status = Column(String(20), index=True, default=RunStatus.PENDING.value, nullable=False)
    triggered_by = Column(String(20), index=True, default=TriggerSource.CRON.value, nullable=False)

    # Retry chain
    parent_run_id = Column(String(36), nullable=True, index=True)
    retry_attempt = Column(Integer, default=0, nullable=False)

    # Timing
    scheduled_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    dispatched_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    # Counters
    items_processed = Column(Integer, default=0, nullable=False)
    items_updated = Column(Integer, default=0, nullable=False)
    items_created = Column(Integer, default=0, nullable=False)
    items_failed = Column(Integer, default=0, nullable=False)
    items_skipped = Column(Integer, default=0, nullable=False)

    details = Column(JSON, default=dict)  # retry strategy + adjustments for retry runs
    errors = Column(JSON, default=list)  # ordered list of ErrorRecord dicts

    # Cost tracking
    total_cost = Column(Numeric(8, 4), nullable=True)
    llm_calls = Column(Integer, default=0, nullable=False)
    web_searches = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=utcnow, index=True, nullable=False)

    __table_args__ = (
        Index('idx_agent_run_agent_created', 'agent', 'created_at'),
        Index('idx_agent_run_status_started', 'status', 'started_at'),
    )

    @property
    def successful_items(self) -> int:
        return (self.items_updated or 0) + (self.items_created or 0)

    @property
    def adjustments(self) -> dict:
        return (self.details or {}).get("adjustments", {})

    def __repr__(self) -> str:
        return f"<AgentRun(agent='{self.agent}', status='{self.status}', attempt={self.retry_attempt})>"
