"""
Proactive health checks.

Looks for trouble before the next agent run hits it:
- database connectivity and latency
- external API keys, status and rate-limit headroom
- circuit breaker state
- stale runs and failure rate
- connector cache hit rate
- enrichment coverage

All probes run concurrently. Each has its own timeout, and a probe that hangs
or blows up is reported as critical instead of failing the whole report.
"""

import asyncio
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field
from sqlalchemy import func, or_
from sqlalchemy.orm import Session

from Database import Company, SessionLocal, utcnow
from Database.DatabaseConfig import AppConfig, ExternalApiConfig, get_config
from Supervisor.Cache import reported_cache_stats
from Supervisor.CircuitBreaker import circuit_statuses, reported_circuit_states
from Supervisor.Notifications import LoggingNotifier, Notifier
from Supervisor.RunLedger import RunLedger

logger = logging.getLogger(__name__)


class ProbeStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


class ProbeResult(BaseModel):
    name: str
    status: ProbeStatus
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)
    checked_at: datetime = Field(default_factory=utcnow)


class SystemHealthReport(BaseModel):
    overall_status: ProbeStatus
    checks: List[ProbeResult]
    timestamp: datetime = Field(default_factory=utcnow)
    recommendations: List[str] = Field(default_factory=list)


# Hint per probe, only emitted when that probe is critical
RECOMMENDATIONS = {
    "Database": "Check the database connection string and the database server status",
    "OpenRouter API": "Verify OPENROUTER_API_KEY in environment variables",
    "Brave Search API": "Verify BRAVE_API_KEY in environment variables",
    "Processing Queue": "Check for stale runs and restart if needed",
    "Circuit Breakers": "Multiple services degraded - check external API status",
}

CACHE_MIN_LOOKUPS = 100
CACHE_MIN_HIT_RATE = 0.3
MIN_INDUSTRY_PCT = 50
MIN_DESCRIPTION_PCT = 30

# Blocking probes: database, queue, data quality, cache, circuits and one per guarded API
PROBE_WORKERS = 8


def overall_status(checks: List[ProbeResult]) -> ProbeStatus:
    if any(c.status == ProbeStatus.CRITICAL for c in checks):
        return ProbeStatus.CRITICAL
    if any(c.status == ProbeStatus.WARNING for c in checks):
        return ProbeStatus.WARNING
    return ProbeStatus.HEALTHY


def recommendations_for(checks: List[ProbeResult]) -> List[str]:
    return [
        RECOMMENDATIONS[c.name]
        for c in checks
        if c.status == ProbeStatus.CRITICAL and c.name in RECOMMENDATIONS
    ]


class HealthChecker:
    def __init__(self, config: Optional[AppConfig] = None,
                 session_factory: Callable = SessionLocal,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 cache_stats: Callable[[Session, datetime], dict] = reported_cache_stats,
                 circuit_reports: Callable[[Session, datetime], Dict[str, dict]] = reported_circuit_states,
                 clock: Callable[[], datetime] = utcnow):
        self.config = config or get_config()
        self.session_factory = session_factory
        self.transport = transport
        self.cache_stats = cache_stats
        self.circuit_reports = circuit_reports
        self.clock = clock
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def probe_timeout(self) -> float:
        return self.config.supervisor.health_probe_timeout_seconds

    async def _guarded(self, name: str, probe: Callable[[], Awaitable[ProbeResult]]) -> ProbeResult:
        try:
            return await asyncio.wait_for(probe(), timeout=self.probe_timeout)
        except asyncio.TimeoutError:
            logger.error(f"Health probe '{name}' timed out after {self.probe_timeout}s")
            return ProbeResult(
                name=name,
                status=ProbeStatus.CRITICAL,
                message=f"{name} unreachable: no answer within {self.probe_timeout}s",
            )
        except Exception as e:
            logger.error(f"Health probe '{name}' failed: {e}")
            return ProbeResult(name=name, status=ProbeStatus.CRITICAL, message=f"{name} probe failed: {e}")

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=PROBE_WORKERS, thread_name_prefix="health-probe")
        return self._executor

    def _release_pool(self):
        # A probe thread stuck on a dead database is abandoned, not joined
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    async def _in_thread(self, fn: Callable[[Session], Any]) -> Any:
        # Every blocking probe gets its own session in its own thread
        def run():
            db = self.session_factory()
            try:
                return fn(db)
            finally:
                db.close()

        return await asyncio.get_running_loop().run_in_executor(self._pool(), run)

    # ==================== DATABASE PROBES ====================

    def _database(self, db) -> ProbeResult:
        started = time.monotonic()
        try:
            company_count = db.query(func.count(Company.id)).scalar() or 0
        except Exception as e:
            return ProbeResult(name="Database", status=ProbeStatus.CRITICAL,
                               message=f"Database unreachable: {e}")

        latency_ms = int((time.monotonic() - started) * 1000)
        details = {"latency_ms": latency_ms, "company_count": company_count}

        if latency_ms > self.config.supervisor.slow_database_ms:
            return ProbeResult(name="Database", status=ProbeStatus.WARNING,
                               message=f"Database responding slowly ({latency_ms}ms)", details=details)
        return ProbeResult(name="Database", status=ProbeStatus.HEALTHY,
                           message=f"Connected ({latency_ms}ms, {company_count} companies)", details=details)

    def _processing_queue(self, db) -> ProbeResult:
        now = self.clock()
        ledger = RunLedger(db)

        pending_enrichment = db.query(func.count(Company.id)).filter(or_(
            Company.industry.is_(None),
            Company.description.is_(None),
            Company.last_enriched_at.is_(None),
        )).scalar() or 0
        stale_runs = ledger.count_stale_runs(now - self.config.supervisor.agent_timeout)
        recent_failures = ledger.count_failures_since(now - timedelta(hours=24))

        details = {
            "pending_enrichment": pending_enrichment,
            "stale_runs": stale_runs,
            "recent_failures": recent_failures,
        }

        if stale_runs > 0:
            return ProbeResult(name="Processing Queue", status=ProbeStatus.CRITICAL,
                               message=f"{stale_runs} stale run(s) detected", details=details)
        if recent_failures > self.config.supervisor.recent_failure_warning_threshold:
            return ProbeResult(name="Processing Queue", status=ProbeStatus.WARNING,
                               message=f"High failure rate: {recent_failures} in 24h", details=details)
        return ProbeResult(name="Processing Queue", status=ProbeStatus.HEALTHY,
                           message=f"{pending_enrichment} pending, {recent_failures} failures/24h", details=details)

    def _data_quality(self, db) -> ProbeResult:
        total = db.query(func.count(Company.id)).scalar() or 0
        with_industry = db.query(func.count(Company.id)).filter(Company.industry.isnot(None)).scalar() or 0
        with_description = db.query(func.count(Company.id)).filter(Company.description.isnot(None)).scalar() or 0

        industry_pct = with_industry / total * 100 if total > 0 else 0
        description_pct = with_description / total * 100 if total > 0 else 0

        details = {
            "total_companies": total,
            "industry_pct": f"{industry_pct:.1f}%",
            "description_pct": f"{description_pct:.1f}%",
        }
        summary = f"{industry_pct:.0f}% industry, {description_pct:.0f}% description"

        if industry_pct < MIN_INDUSTRY_PCT or description_pct < MIN_DESCRIPTION_PCT:
            return ProbeResult(name="Data Quality", status=ProbeStatus.WARNING,
                               message=f"Low enrichment: {summary}", details=details)
        return ProbeResult(name="Data Quality", status=ProbeStatus.HEALTHY,
                           message=f"Enrichment: {summary}", details=details)

    async def check_database(self) -> ProbeResult:
        return await self._in_thread(self._database)

    async def check_processing_queue(self) -> ProbeResult:
        return await self._in_thread(self._processing_queue)

    async def check_data_quality(self) -> ProbeResult:
        return await self._in_thread(self._data_quality)

    # ==================== CIRCUITS AND CACHE ====================

    async def _circuit_statuses(self, names: List[str]) -> List[dict]:
        now = self.clock()
        reported = await self._in_thread(lambda db: self.circuit_reports(db, now))
        return circuit_statuses(names, reported, now)

    async def check_circuit_breakers(self) -> ProbeResult:
        statuses = await self._circuit_statuses(self.config.tracked_circuits)
        details = {s["name"]: {"is_open": s["is_open"], "failures": s["failures"]} for s in statuses}
        open_circuits = [s["name"] for s in statuses if s["is_open"]]

        if open_circuits:
            return ProbeResult(
                name="Circuit Breakers",
                status=ProbeStatus.CRITICAL if len(open_circuits) >= 2 else ProbeStatus.WARNING,
                message=f"Open circuits: {', '.join(open_circuits)}",
                details=details,
            )
        return ProbeResult(name="Circuit Breakers", status=ProbeStatus.HEALTHY,
                           message="All circuits closed", details=details)

    async def check_cache(self) -> ProbeResult:
        now = self.clock()
        stats = await self._in_thread(lambda db: self.cache_stats(db, now))
        hit_rate = stats.get("hit_rate", 0.0)
        lookups = stats.get("hits", 0) + stats.get("misses", 0)
        details = {
            "hits": stats.get("hits", 0),
            "misses": stats.get("misses", 0),
            "hit_rate": f"{hit_rate * 100:.1f}%",
            "memory_entries": stats.get("memory_size", 0),
        }

        if hit_rate < CACHE_MIN_HIT_RATE and lookups > CACHE_MIN_LOOKUPS:
            return ProbeResult(name="Cache", status=ProbeStatus.WARNING,
                               message=f"Low hit rate: {hit_rate * 100:.1f}%", details=details)
        return ProbeResult(name="Cache", status=ProbeStatus.HEALTHY,
                           message=f"Hit rate: {hit_rate * 100:.1f}% ({details['memory_entries']} entries)",
                           details=details)

    # ==================== EXTERNAL APIS ====================

    async def check_external_api(self, api: ExternalApiConfig) -> ProbeResult:
        key = os.getenv(api.key_env)
        if not key:
            if api.required:
                return ProbeResult(name=api.name, status=ProbeStatus.CRITICAL,
                                   message=f"{api.key_env} not configured")
            return ProbeResult(name=api.name, status=ProbeStatus.WARNING,
                               message=f"{api.key_env} not configured (optional)")

        if api.circuit:
            (status,) = await self._circuit_statuses([api.circuit])
            if status["is_open"]:
                return ProbeResult(
                    name=api.name,
                    status=ProbeStatus.WARNING,
                    message=f"Circuit breaker open ({status['failures']} failures)",
                    details={"failures": status["failures"], "open_until": status["open_until"]},
                )

        if not api.url:
            return ProbeResult(name=api.name, status=ProbeStatus.HEALTHY,
                               message="API configured and circuit closed")

        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=self.probe_timeout) as client:
                response = await client.get(api.url, headers={"Authorization": f"Bearer {key}"})
        except httpx.HTTPError as e:
            return ProbeResult(name=api.name, status=ProbeStatus.WARNING,
                               message=f"Cannot verify API: {e}")

        if not response.is_success:
            return ProbeResult(name=api.name, status=ProbeStatus.CRITICAL,
                               message=f"API error: {response.status_code} {response.reason_phrase}")

        details = {}
        remaining_header = response.headers.get("x-ratelimit-remaining")
        if remaining_header is not None and remaining_header.isdigit():
            remaining = int(remaining_header)
            details["rate_limit_remaining"] = remaining
            if remaining < api.rate_limit_warning_threshold:
                return ProbeResult(name=api.name, status=ProbeStatus.WARNING,
                                   message=f"Low rate limit remaining: {remaining}", details=details)

        return ProbeResult(name=api.name, status=ProbeStatus.HEALTHY,
                           message="API key valid and accessible", details=details)

    # ==================== AGGREGATION ====================

    def _probes(self) -> Dict[str, Callable[[], Awaitable[ProbeResult]]]:
        probes = {"Database": self.check_database}
        for api in self.config.external_apis:
            probes[api.name] = lambda api=api: self.check_external_api(api)
        probes.update({
            "Circuit Breakers": self.check_circuit_breakers,
            "Processing Queue": self.check_processing_queue,
            "Cache": self.check_cache,
            "Data Quality": self.check_data_quality,
        })
        return probes

    async def run(self) -> SystemHealthReport:
        """Run every probe concurrently and fold the results into one report"""
        logger.info("Running proactive health check...")

        probes = self._probes()
        try:
            checks = await asyncio.gather(*(self._guarded(name, probe) for name, probe in probes.items()))
        finally:
            self._release_pool()
        checks = list(checks)

        report = SystemHealthReport(
            overall_status=overall_status(checks),
            checks=checks,
            timestamp=self.clock(),
            recommendations=recommendations_for(checks),
        )

        counts = {status: sum(1 for c in checks if c.status == status) for status in ProbeStatus}
        logger.info(
            f"Health check complete: {report.overall_status.value} "
            f"(critical={counts[ProbeStatus.CRITICAL]}, warning={counts[ProbeStatus.WARNING]}, "
            f"healthy={counts[ProbeStatus.HEALTHY]})"
        )
        return report

    async def run_quick(self) -> dict:
        """Database, circuits and queue only: {healthy, issues}"""
        try:
            database, circuits, queue = await asyncio.gather(
                self._guarded("Database", self.check_database),
                self._guarded("Circuit Breakers", self.check_circuit_breakers),
                self._guarded("Processing Queue", self.check_processing_queue),
            )
        finally:
            self._release_pool()

        issues = []
        if database.status != ProbeStatus.HEALTHY:
            issues.append(database.message)
        if circuits.status == ProbeStatus.CRITICAL:
            issues.append(circuits.message)
        if queue.status == ProbeStatus.CRITICAL:
            issues.append(queue.message)

        return {"healthy": not issues, "issues": issues}


async def run_health_check(**kwargs) -> SystemHealthReport:
    return await HealthChecker(**kwargs).run()


async def run_health_check_with_alerts(notifier: Optional[Notifier] = None, **kwargs) -> SystemHealthReport:
    """Full health check; a critical report is pushed to the alert channel"""
    report = await run_health_check(**kwargs)

    if report.overall_status == ProbeStatus.CRITICAL:
        notifier = notifier or LoggingNotifier()
        critical = [c for c in report.checks if c.status == ProbeStatus.CRITICAL]
        try:
            notifier.notify_health_alert({
                "reason": "Health check failed: " + "; ".join(f"{c.name}: {c.message}" for c in critical),
                "recommended_action": "\n".join(report.recommendations) or "Check system logs",
                "report": report.model_dump(mode="json"),
            })
        except Exception as e:
            logger.error(f"Failed to send health alert: {e}")

    return report


async def run_quick_health_check(**kwargs) -> dict:
    return await HealthChecker(**kwargs).run_quick()
