from sqlalchemy import Column, String, DateTime, Integer, Float, Index
from Database.base import Base, utcnow
import uuid


class QualitySnapshot(Base):
    """Point-in-time data completeness metrics for the company table"""
    __tablename__ = "data_quality_snapshots"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))

    # Totals
    total_companies = Column(Integer, nullable=False)
    avg_data_quality = Column(Float, nullable=False, default=0.0)

    # Field coverage
    companies_with_industry = Column(Integer, nullable=False, default=0)
    companies_with_description = Column(Integer, nullable=False, default=0)
    companies_with_founders = Column(Integer, nullable=False, default=0)
    companies_with_website = Column(Integer, nullable=False, default=0)

    # Status breakdown
    companies_active = Column(Integer, default=0)
    companies_shutdown = Column(Integer, default=0)
    companies_acquired = Column(Integer, default=0)
    companies_inactive = Column(Integer, default=0)
    companies_status_unknown = Column(Integer, default=0)

    # Hygiene
    duplicate_companies = Column(Integer, default=0)
    stale_companies = Column(Integer, default=0)

    # Percentages (one decimal)
    with_industry_pct = Column(Float, nullable=False, default=0.0)
    with_description_pct = Column(Float, nullable=False, default=0.0)
    with_founders_pct = Column(Float, nullable=False, default=0.0)
    with_website_pct = Column(Float, nullable=False, default=0.0)
    with_status_pct = Column(Float, nullable=False, default=0.0)
    stale_pct = Column(Float, nullable=False, default=0.0)

    trigger = Column(String(50), index=True, default="scheduled")
    related_run_id = Column(String(36), nullable=True)
    captured_at = Column(DateTime, default=utcnow, index=True)

    __table_args__ = (
        Index('idx_snapshot_trigger_captured', 'trigger', 'captured_at'),
    )
