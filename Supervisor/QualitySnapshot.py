"""
Data quality snapshots of the company table.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Dict, Optional

from pydantic import BaseModel, Field
from sqlalchemy import desc, func, or_
from sqlalchemy.orm import Session

from Database import Company, CompanyStatus, utcnow
from Database.QualitySnapshot import QualitySnapshot

logger = logging.getLogger(__name__)

STALE_AFTER = timedelta(days=30)


class DataQualityMetrics(BaseModel):
    total_companies: int = 0
    avg_data_quality: float = 0.0
    with_industry_pct: float = 0.0
    with_description_pct: float = 0.0
    with_founders_pct: float = 0.0
    with_website_pct: float = 0.0
    with_status_pct: float = 0.0
    stale_pct: float = 0.0
    duplicate_companies: int = 0
    stale_companies: int = 0
    status_breakdown: Dict[str, int] = Field(default_factory=dict)


def round1(value: float) -> float:
    """One decimal, halves rounded up"""
    return math.floor(value * 10 + 0.5) / 10


def _pct(part: int, total: int) -> float:
    return round1(part / total * 100) if total > 0 else 0.0


def capture_quality_snapshot(db: Session, trigger: str, related_run_id: Optional[str] = None,
                             now: Optional[datetime] = None) -> DataQualityMetrics:
    """Measure completeness of the company records and persist a snapshot"""
    now = now or utcnow()
    logger.info(f"Capturing quality snapshot (trigger: {trigger})")

    def count(*criteria) -> int:
        return db.query(func.count(Company.id)).filter(*criteria).scalar() or 0

    total = count()
    with_industry = count(Company.industry.isnot(None))
    with_description = count(Company.description.isnot(None))
    with_founders = count(Company.founders.isnot(None))
    with_website = count(Company.website.isnot(None))

    by_status = {status.value: count(Company.status == status.value) for status in CompanyStatus}

    stale = count(or_(
        Company.last_enriched_at.is_(None),
        Company.last_enriched_at < now - STALE_AFTER,
    ))

    duplicate_slugs = (
        db.query(Company.slug)
        .group_by(Company.slug)
        .having(func.count(Company.id) > 1)
        .subquery()
    )
    duplicates = db.query(func.count()).select_from(duplicate_slugs).scalar() or 0

    avg_quality = db.query(func.avg(Company.data_quality)).scalar() or 0.0

    metrics = DataQualityMetrics(
        total_companies=total,
        avg_data_quality=round1(float(avg_quality)),
        with_industry_pct=_pct(with_industry, total),
        with_description_pct=_pct(with_description, total),
        with_founders_pct=_pct(with_founders, total),
        with_website_pct=_pct(with_website, total),
        with_status_pct=_pct(total - by_status[CompanyStatus.UNKNOWN.value], total),
        stale_pct=_pct(stale, total),
        duplicate_companies=duplicates,
        stale_companies=stale,
        status_breakdown={status.lower(): n for status, n in by_status.items()},
    )

    snapshot = QualitySnapshot(
        total_companies=total,
        avg_data_quality=metrics.avg_data_quality,
        companies_with_industry=with_industry,
        companies_with_description=with_description,
        companies_with_founders=with_founders,
        companies_with_website=with_website,
        companies_active=by_status[CompanyStatus.ACTIVE.value],
        companies_shutdown=by_status[CompanyStatus.SHUTDOWN.value],
        companies_acquired=by_status[CompanyStatus.ACQUIRED.value],
        companies_inactive=by_status[CompanyStatus.INACTIVE.value],
        companies_status_unknown=by_status[CompanyStatus.UNKNOWN.value],
        duplicate_companies=duplicates,
        stale_companies=stale,
        with_industry_pct=metrics.with_industry_pct,
        with_description_pct=metrics.with_description_pct,
        with_founders_pct=metrics.with_founders_pct,
        with_website_pct=metrics.with_website_pct,
        with_status_pct=metrics.with_status_pct,
        stale_pct=metrics.stale_pct,
        trigger=trigger,
        related_run_id=related_run_id,
        captured_at=now,
    )
    db.add(snapshot)
    db.commit()

    logger.info(
        f"Quality snapshot captured: companies={total} avg_quality={metrics.avg_data_quality} "
        f"with_industry={metrics.with_industry_pct}% stale={metrics.stale_pct}%"
    )
    return metrics


def snapshot_to_metrics(snapshot: QualitySnapshot) -> DataQualityMetrics:
    return DataQualityMetrics(
        total_companies=snapshot.total_companies,
        avg_data_quality=snapshot.avg_data_quality,
        with_industry_pct=snapshot.with_industry_pct,
        with_description_pct=snapshot.with_description_pct,
        with_founders_pct=snapshot.with_founders_pct,
        with_website_pct=snapshot.with_website_pct,
        with_status_pct=snapshot.with_status_pct,
        stale_pct=snapshot.stale_pct,
        duplicate_companies=snapshot.duplicate_companies or 0,
        stale_companies=snapshot.stale_companies or 0,
        status_breakdown={
            "active": snapshot.companies_active or 0,
            "shutdown": snapshot.companies_shutdown or 0,
            "acquired": snapshot.companies_acquired or 0,
            "inactive": snapshot.companies_inactive or 0,
            "unknown": snapshot.companies_status_unknown or 0,
        },
    )


def get_latest_snapshot(db: Session) -> Optional[DataQualityMetrics]:
    snapshot = db.query(QualitySnapshot).order_by(desc(QualitySnapshot.captured_at)).first()
    if snapshot is None:
        return None
    return snapshot_to_metrics(snapshot)


def compare_snapshots(before: DataQualityMetrics, after: DataQualityMetrics) -> dict:
    """Change between two measurements (after - before)"""
    return {
        "companies_delta": after.total_companies - before.total_companies,
        "quality_delta": round1(after.avg_data_quality - before.avg_data_quality),
        "industry_delta": round1(after.with_industry_pct - before.with_industry_pct),
        "description_delta": round1(after.with_description_pct - before.with_description_pct),
        "founders_delta": round1(after.with_founders_pct - before.with_founders_pct),
        "website_delta": round1(after.with_website_pct - before.with_website_pct),
        "status_delta": round1(after.with_status_pct - before.with_status_pct),
        "stale_delta": round1(after.stale_pct - before.stale_pct),
    }
