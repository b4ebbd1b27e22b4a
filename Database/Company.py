from sqlalchemy import Column, String, DateTime, Integer, Float, Text, JSON, Index
from Database.base import Base, utcnow
import uuid


class Company(Base):
    """Company record maintained by the enrichment agents"""
    __tablename__ = "companies"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String(255), nullable=False)
    slug = Column(String(255), index=True, nullable=False)
    industry = Column(String(100), nullable=True, index=True)
    description = Column(Text, nullable=True)
    website = Column(String(500), nullable=True)
    founders = Column(JSON(none_as_null=True), nullable=True)  # [{"name": ..., "role": ...}]
    founded_year = Column(Integer, nullable=True)
    status = Column(String(20), index=True, default="UNKNOWN")  # ACTIVE, SHUTDOWN, ACQUIRED, ...
    data_quality = Column(Float, default=0.0)  # 0-100, set by the completer
    last_enriched_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index('idx_company_enriched', 'last_enriched_at'),
    )
