"""
Database package initialization.
Exports models and session utilities.
"""

from Database.base import Base, engine, SessionLocal, get_db, utcnow
from Database.Enums import (
    MaintenanceAgent,
    RunStatus,
    TriggerSource,
    CheckStatus,
    SupervisorAction,
    HealthStatus,
    CompanyStatus,
)
from Database.AgentRun import AgentRun
from Database.CheckRecord import CheckRecord
from Database.Company import Company
from Database.QualitySnapshot import QualitySnapshot
from Database.WeeklyReport import WeeklyReport

__all__ = [
    'Base',
    'engine',
    'SessionLocal',
    'get_db',
    'utcnow',
    'MaintenanceAgent',
    'RunStatus',
    'TriggerSource',
    'CheckStatus',
    'SupervisorAction',
    'HealthStatus',
    'CompanyStatus',
    'AgentRun',
    'CheckRecord',
    'Company',
    'QualitySnapshot',
    'WeeklyReport'
]
