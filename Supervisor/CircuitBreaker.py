"""
Circuit breakers for the external services the agents depend on.

This process only feeds the breakers of the calls it makes itself (the agent
trigger). The agents run their own breakers and record their state at the
end of a run under details["circuits"]:

    {"brave-search": {"is_open": true, "failures": 3, "open_until": "2026-03-04T12:05:00"}}

A breaker opens after `failure_threshold` consecutive failures, stays open for
`reset_timeout`, then lets calls through again (half-open) and closes once
`success_threshold` successes are recorded.
"""

import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from Database.base import utcnow
from Supervisor.RunLedger import RunLedger

logger = logging.getLogger(__name__)

DEFAULT_FAILURE_THRESHOLD = 3
DEFAULT_RESET_TIMEOUT = timedelta(minutes=5)
DEFAULT_SUCCESS_THRESHOLD = 2

TRIGGER_CIRCUIT = "agent-trigger"

# Breakers fed in this process; every other circuit is known from agent reports
LOCAL_CIRCUITS = (TRIGGER_CIRCUIT,)

CIRCUIT_REPORT_KEY = "circuits"
CIRCUIT_REPORT_WINDOW = timedelta(hours=24)


class CircuitBreaker:
    def __init__(self, name: str,
                 failure_threshold: int = DEFAULT_FAILURE_THRESHOLD,
                 reset_timeout: timedelta = DEFAULT_RESET_TIMEOUT,
                 success_threshold: int = DEFAULT_SUCCESS_THRESHOLD):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.success_threshold = success_threshold

        self.failures = 0
        self.success_count = 0
        self.opened = False
        self.last_failure: Optional[datetime] = None
        self.open_until: Optional[datetime] = None
        self._lock = threading.Lock()

    def is_open(self, now: Optional[datetime] = None) -> bool:
        """True while calls should be blocked (half-open counts as closed)"""
        now = now or utcnow()
        with self._lock:
            if not self.opened:
                return False
            if self.open_until and now >= self.open_until:
                return False
            return True

    def record_failure(self, now: Optional[datetime] = None):
        now = now or utcnow()
        with self._lock:
            self.failures += 1
            self.last_failure = now
            self.success_count = 0

            if self.failures >= self.failure_threshold:
                if not self.opened:
                    logger.warning(f"Circuit '{self.name}' opened after {self.failures} failures")
                self.opened = True
                self.open_until = now + self.reset_timeout

    def record_success(self):
        with self._lock:
            self.success_count += 1
            if self.success_count >= self.success_threshold:
                if self.opened:
                    logger.info(f"Circuit '{self.name}' closed")
                self.failures = 0
                self.opened = False
                self.open_until = None

    def reset(self):
        with self._lock:
            self.failures = 0
            self.success_count = 0
            self.opened = False
            self.last_failure = None
            self.open_until = None

    def status(self, now: Optional[datetime] = None) -> dict:
        return {
            "name": self.name,
            "failures": self.failures,
            "is_open": self.is_open(now),
            "open_until": self.open_until.isoformat() if self.open_until else None,
            "last_failure": self.last_failure.isoformat() if self.last_failure else None,
        }


# ==================== REGISTRY ====================

_breakers: Dict[str, CircuitBreaker] = {}
_registry_lock = threading.Lock()


def get_circuit_breaker(name: str) -> CircuitBreaker:
    """Get (or lazily create) the process-wide breaker for a service"""
    with _registry_lock:
        breaker = _breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(name)
            _breakers[name] = breaker
        return breaker


def reset_all_circuits():
    with _registry_lock:
        for breaker in _breakers.values():
            breaker.reset()


# ==================== AGENT REPORTS ====================

def _parse_time(value) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def reported_circuit_states(db: Session, now: Optional[datetime] = None) -> Dict[str, dict]:
    """Most recent state of every circuit the agents reported in the last 24 hours"""
    now = now or utcnow()
    states: Dict[str, dict] = {}
    for _, circuits in RunLedger(db).reported_details(CIRCUIT_REPORT_KEY, now - CIRCUIT_REPORT_WINDOW):
        for name, state in circuits.items():
            if isinstance(state, dict):
                states.setdefault(name, state)
    return states


def reported_status(name: str, report: dict, now: Optional[datetime] = None) -> dict:
    """Status of a reported breaker; an open breaker past open_until counts as half-open"""
    now = now or utcnow()
    open_until = _parse_time(report.get("open_until"))
    is_open = bool(report.get("is_open")) and (open_until is None or now < open_until)
    return {
        "name": name,
        "failures": int(report.get("failures") or 0),
        "is_open": is_open,
        "open_until": open_until.isoformat() if open_until else None,
        "last_failure": report.get("last_failure"),
    }


def circuit_statuses(names: List[str], reported: Optional[Dict[str, dict]] = None,
                     now: Optional[datetime] = None) -> List[dict]:
    """Local breakers for the circuits fed here, agent reports for the rest (closed when unreported)"""
    reported = reported or {}
    statuses = []
    for name in names:
        if name in LOCAL_CIRCUITS:
            statuses.append(get_circuit_breaker(name).status(now))
        else:
            statuses.append(reported_status(name, reported.get(name, {}), now))
    return statuses
