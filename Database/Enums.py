"""
Enumerations shared by the maintenance models and the supervisor.

Values are stored as plain strings in the database, the same way the
status columns always have been.
"""

from enum import Enum


class MaintenanceAgent(str, Enum):
    """Kinds of periodic maintenance jobs under supervision"""
    DB_CLEANER = "DB_CLEANER"
    DB_SOURCER = "DB_SOURCER"
    DB_COMPLETER = "DB_COMPLETER"

    @property
    def endpoint(self) -> str:
        """Path segment of the agent's cron endpoint (DB_SOURCER -> sourcer)"""
        return self.value.replace("DB_", "").lower()


class RunStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    PARTIAL = "PARTIAL"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    CANCELLED = "CANCELLED"


class TriggerSource(str, Enum):
    CRON = "CRON"
    SUPERVISOR = "SUPERVISOR"
    MANUAL = "MANUAL"
    WEBHOOK = "WEBHOOK"


class CheckStatus(str, Enum):
    PASSED = "PASSED"
    WARNING = "WARNING"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    MISSED = "MISSED"
    PENDING = "PENDING"


class SupervisorAction(str, Enum):
    NONE = "NONE"
    RETRY = "RETRY"
    ALERT_ONLY = "ALERT_ONLY"


class HealthStatus(str, Enum):
    """Overall status of a weekly report"""
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    CRITICAL = "CRITICAL"


class CompanyStatus(str, Enum):
    ACTIVE = "ACTIVE"
    SHUTDOWN = "SHUTDOWN"
    ACQUIRED = "ACQUIRED"
    INACTIVE = "INACTIVE"
    UNKNOWN = "UNKNOWN"
