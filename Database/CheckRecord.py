import uuid

from sqlalchemy import Column, String, DateTime, Boolean, JSON, Index

from Database.base import Base, utcnow
from Database.Enums import SupervisorAction


class CheckRecord(Base):
    """Supervisor verdict on the latest run of an agent"""
    __tablename__ = "supervisor_checks"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    agent = Column(String(50), index=True, nullable=False)
    run_id = Column(String(36), index=True, nullable=True)  # null when the check is MISSED

    check_status = Column(String(20), index=True, nullable=False)
    action_taken = Column(String(20), index=True, default=SupervisorAction.NONE.value, nullable=False)
    check_details = Column(JSON, default=dict)
    retry_run_id = Column(String(36), nullable=True, index=True)

    # Scheduled re-examination of the spawned retry
    is_retry_check = Column(Boolean, default=False, nullable=False)
    retry_check_at = Column(DateTime, nullable=True)
    retry_checked_at = Column(DateTime, nullable=True)

    notification_sent = Column(Boolean, default=False, nullable=False)
    checked_at = Column(DateTime, default=utcnow, index=True, nullable=False)

    __table_args__ = (
        Index('idx_check_retry_due', 'is_retry_check', 'retry_check_at'),
    )

    @property
    def reason(self) -> str:
        return (self.check_details or {}).get("reason") or self.check_status
