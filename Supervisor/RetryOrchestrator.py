"""
Retry orchestrator.

Materializes a retry decision as a new run in the ledger and asks the agent
to execute it over HTTP. In deferred mode the run is stored as PENDING with a
future scheduled_at and fired later by dispatch_due_retries(), so no thread
sits in a sleep for the backoff.
"""

import logging
import random
import time
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

import httpx

from Database import AgentRun, MaintenanceAgent, RunStatus, utcnow
from Database.DatabaseConfig import AppConfig, get_config
from Supervisor.CircuitBreaker import TRIGGER_CIRCUIT, get_circuit_breaker
from Supervisor.ErrorClassifier import ErrorRecord
from Supervisor.RetryStrategy import RetryAdjustments, RetryDecision, decide
from Supervisor.RunLedger import RunLedger

logger = logging.getLogger(__name__)


class RetryOrchestrator:
    def __init__(self, ledger: RunLedger,
                 config: Optional[AppConfig] = None,
                 client: Optional[httpx.Client] = None,
                 sleep: Callable[[float], None] = time.sleep,
                 rand: Callable[[], float] = random.random,
                 clock: Callable[[], datetime] = utcnow):
        self.ledger = ledger
        self.config = config or get_config()
        self._owns_client = client is None
        self.client = client or httpx.Client(timeout=self.config.trigger.timeout_seconds)
        self.sleep = sleep
        self.rand = rand
        self.clock = clock

    def close(self):
        if self._owns_client:
            self.client.close()

    # ==================== DECISION ====================

    def _resolve_parent(self, parent_run_id: Optional[str]) -> Tuple[int, list]:
        parent = self.ledger.get_run(parent_run_id)
        if parent is None:
            if parent_run_id:
                logger.warning(f"Parent run {parent_run_id} not found, treating retry as attempt 0")
            return 0, []
        return parent.retry_attempt + 1, list(parent.errors or [])

    def evaluate(self, agent: MaintenanceAgent, parent_run_id: Optional[str] = None) -> RetryDecision:
        """Retry decision for the parent run, without touching the ledger"""
        attempt, errors = self._resolve_parent(parent_run_id)
        decision = decide(errors, attempt, self.config.retry, self.rand)

        logger.info(
            f"Retry strategy for {MaintenanceAgent(agent).value}: attempt={attempt} "
            f"should_retry={decision.should_retry} delay_ms={decision.delay_ms} "
            f"category={decision.category.value} reason={decision.reason}"
        )
        return decision

    # ==================== TRIGGER ====================

    def trigger(self, agent: MaintenanceAgent, parent_run_id: Optional[str] = None,
                decision: Optional[RetryDecision] = None) -> Optional[AgentRun]:
        """
        Create the retry run for `agent` and get it executed.

        Returns the new run, or None when the policy refuses the retry or
        (blocking mode) the agent could not be triggered.
        """
        agent = MaintenanceAgent(agent)
        attempt, _ = self._resolve_parent(parent_run_id)
        decision = decision or self.evaluate(agent, parent_run_id)

        if not decision.should_retry:
            logger.warning(f"Not retrying {agent.value}: {decision.reason}")
            return None

        if self.config.retry.deferred:
            run = self.ledger.create_run(
                agent,
                retry_attempt=attempt,
                parent_run_id=parent_run_id,
                scheduled_at=self.clock() + timedelta(milliseconds=decision.delay_ms),
                adjustments=decision.adjustments.to_wire(),
                strategy=decision.to_details(),
            )
            logger.info(f"Scheduled {agent.value} retry {run.id} for {run.scheduled_at} "
                        f"(backoff {round(decision.delay_ms / 1000)}s)")
            return run

        if decision.delay_ms > 0:
            logger.info(f"Waiting {round(decision.delay_ms / 1000)}s before retry...")
            self.sleep(decision.delay_ms / 1000)

        run = self.ledger.create_run(
            agent,
            retry_attempt=attempt,
            parent_run_id=parent_run_id,
            scheduled_at=self.clock(),
            adjustments=decision.adjustments.to_wire(),
            strategy=decision.to_details(),
        )

        if not self.dispatch(run, decision.adjustments):
            return None

        logger.info(f"Successfully triggered {agent.value} retry after {decision.delay_ms}ms backoff")
        return run

    def dispatch(self, run: AgentRun, adjustments: Optional[RetryAdjustments] = None) -> bool:
        """POST the run to the agent's cron endpoint; a failed call marks the run FAILED"""
        agent = MaintenanceAgent(run.agent)
        url = f"{self.config.trigger.base_url}/api/cron/maintenance/{agent.endpoint}"
        body = {
            "runId": run.id,
            "adjustments": adjustments.to_wire() if adjustments is not None else run.adjustments,
        }
        secret = self.config.trigger.cron_secret
        headers = {"Authorization": f"Bearer {secret.get_secret_value() if secret else ''}"}
        breaker = get_circuit_breaker(TRIGGER_CIRCUIT)

        try:
            response = self.client.post(url, json=body, headers=headers)
        except httpx.HTTPError as e:
            logger.error(f"Error triggering {agent.value} retry: {e}")
            breaker.record_failure()
            self._mark_trigger_failed(run, f"Trigger error: {e}")
            return False

        if not response.is_success:
            logger.error(f"Failed to trigger {agent.value} retry: HTTP {response.status_code}")
            breaker.record_failure()
            self._mark_trigger_failed(run, f"Failed to trigger: HTTP {response.status_code}")
            return False

        breaker.record_success()
        self.ledger.update_run_status(run.id, RunStatus(run.status), dispatched_at=self.clock())
        return True

    def _mark_trigger_failed(self, run: AgentRun, message: str):
        error = ErrorRecord(message=message, phase="trigger", timestamp=self.clock())
        self.ledger.update_run_status(
            run.id,
            RunStatus.FAILED,
            completed_at=self.clock(),
            errors=list(run.errors or []) + [error.model_dump(mode="json", exclude_none=True)],
        )

    def dispatch_due_retries(self, now: Optional[datetime] = None) -> List[AgentRun]:
        """Fire every deferred retry whose backoff has elapsed. Returns the runs dispatched."""
        dispatched = []
        for run in self.ledger.due_retries(now or self.clock()):
            if self.dispatch(run):
                logger.info(f"Dispatched deferred {run.agent} retry {run.id} (attempt {run.retry_attempt})")
                dispatched.append(run)
        return dispatched
