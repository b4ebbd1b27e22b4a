"""
FastAPI server exposing supervisor state (read-only).
"""
from fastapi import FastAPI, Depends, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session
from sqlalchemy import desc
from pydantic import BaseModel
from typing import List, Optional
from datetime import datetime
import logging

from Database import get_db, AgentRun, CheckRecord, MaintenanceAgent, utcnow
from Database.init_db import init_db
from Supervisor.HealthCheck import HealthChecker, SystemHealthReport
from Supervisor.QualitySnapshot import DataQualityMetrics, get_latest_snapshot

logger = logging.getLogger(__name__)

app = FastAPI(title="Maintenance Supervisor API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Initialize database on startup
@app.on_event("startup")
async def startup():
    init_db()
    logger.info("Database initialized")


def get_health_checker() -> HealthChecker:
    return HealthChecker()


# ==================== Pydantic Models ====================

class AgentRunResponse(BaseModel):
    id: str
    agent: str
    status: str
    triggered_by: str
    parent_run_id: Optional[str]
    retry_attempt: int
    scheduled_at: Optional[datetime]
    started_at: Optional[datetime]
    completed_at: Optional[datetime]
    dispatched_at: Optional[datetime]
    duration_ms: Optional[int]
    items_processed: int
    items_updated: int
    items_created: int
    items_failed: int
    errors: Optional[list]
    created_at: datetime

    class Config:
        from_attributes = True


class CheckRecordResponse(BaseModel):
    id: str
    agent: str
    run_id: Optional[str]
    check_status: str
    action_taken: str
    check_details: Optional[dict]
    retry_run_id: Optional[str]
    retry_check_at: Optional[datetime]
    retry_checked_at: Optional[datetime]
    notification_sent: bool
    checked_at: datetime

    class Config:
        from_attributes = True


# ==================== Agent Endpoints ====================

@app.get("/api/agents/runs", response_model=List[AgentRunResponse])
async def get_agent_runs(
        agent: Optional[MaintenanceAgent] = None,
        status: Optional[str] = None,
        limit: int = Query(20, ge=1, le=100),
        db: Session = Depends(get_db)
):
    """Get agent run history, newest first"""
    query = db.query(AgentRun)

    if agent:
        query = query.filter(AgentRun.agent == agent.value)

    if status:
        query = query.filter(AgentRun.status == status.upper())

    return query.order_by(desc(AgentRun.created_at)).limit(limit).all()


@app.get("/api/agents/status")
async def get_agent_status(db: Session = Depends(get_db)):
    """Latest run and latest supervisor verdict per agent"""
    status = {}

    for agent in MaintenanceAgent:
        last_run = db.query(AgentRun).filter(
            AgentRun.agent == agent.value
        ).order_by(desc(AgentRun.created_at)).first()

        last_check = db.query(CheckRecord).filter(
            CheckRecord.agent == agent.value
        ).order_by(desc(CheckRecord.checked_at)).first()

        status[agent.value] = {
            "last_run": last_run.created_at if last_run else None,
            "status": last_run.status if last_run else "never_run",
            "retry_attempt": last_run.retry_attempt if last_run else 0,
            "items_processed": last_run.items_processed if last_run else 0,
            "last_check": last_check.check_status if last_check else None,
            "last_action": last_check.action_taken if last_check else None,
        }

    return status


# ==================== Supervisor Endpoints ====================

@app.get("/api/supervisor/checks", response_model=List[CheckRecordResponse])
async def get_supervisor_checks(
        agent: Optional[MaintenanceAgent] = None,
        check_status: Optional[str] = None,
        limit: int = Query(20, ge=1, le=100),
        db: Session = Depends(get_db)
):
    """Get supervisor check history"""
    query = db.query(CheckRecord)

    if agent:
        query = query.filter(CheckRecord.agent == agent.value)

    if check_status:
        query = query.filter(CheckRecord.check_status == check_status.upper())

    return query.order_by(desc(CheckRecord.checked_at)).limit(limit).all()


@app.get("/api/quality/latest", response_model=DataQualityMetrics)
async def get_latest_quality(db: Session = Depends(get_db)):
    """Most recent data quality snapshot"""
    metrics = get_latest_snapshot(db)
    if metrics is None:
        raise HTTPException(status_code=404, detail="No quality snapshot captured yet")
    return metrics


# ==================== Health Check ====================

@app.get("/api/health", response_model=SystemHealthReport)
async def system_health(checker: HealthChecker = Depends(get_health_checker)):
    """Run every health probe"""
    return await checker.run()


@app.get("/health")
async def health_check():
    return {"status": "ok", "timestamp": utcnow()}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="127.0.0.1", port=8000)
