import uuid

from sqlalchemy import Column, String, DateTime, Integer, Numeric, Boolean, JSON

from Database.base import Base, utcnow


class WeeklyReport(Base):
    """Weekly rollup of maintenance runs, supervisor checks and data quality"""
    __tablename__ = "weekly_reports"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    week_start = Column(DateTime, unique=True, index=True, nullable=False)
    week_end = Column(DateTime, nullable=False)
    overall_status = Column(String(20), nullable=False)  # HEALTHY, DEGRADED, CRITICAL

    agent_summaries = Column(JSON, default=dict)  # agent -> AgentWeeklySummary
    data_quality_start = Column(JSON, default=dict)
    data_quality_end = Column(JSON, default=dict)
    quality_delta = Column(JSON, default=dict)

    issues_detected = Column(Integer, default=0)
    retries_triggered = Column(Integer, default=0)
    retries_successful = Column(Integer, default=0)
    retries_failed = Column(Integer, default=0)

    total_cost = Column(Numeric(8, 4), default=0)
    cost_by_agent = Column(JSON, default=dict)

    notification_sent = Column(Boolean, default=False)
    notification_sent_at = Column(DateTime, nullable=True)
    generated_at = Column(DateTime, default=utcnow, onupdate=utcnow)
