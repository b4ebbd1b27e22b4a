"""
Retry strategy engine.

Turns the errors of a failed run into a retry decision: whether to retry at
all, how long to wait (exponential backoff with jitter, capped per category)
and which execution parameters the retried run should change.
"""

import logging
import random
from typing import Callable, Dict, List, NamedTuple, Optional

from pydantic import BaseModel, ConfigDict, Field

from Database.DatabaseConfig import RetryConfig
from Supervisor.ErrorClassifier import ErrorCategory, ErrorLike, classify, summarize

logger = logging.getLogger(__name__)

# Categories that need a human, never an automatic retry
FATAL_CATEGORIES = (ErrorCategory.AUTH, ErrorCategory.RESOURCE, ErrorCategory.VALIDATION)


class RetryAdjustments(BaseModel):
    """Execution changes for the retried run (sent to the agent in camelCase)"""
    model_config = ConfigDict(populate_by_name=True)

    reduce_batch_size: Optional[bool] = Field(default=None, alias="reduceBatchSize")
    timeout_multiplier: Optional[float] = Field(default=None, alias="timeoutMultiplier")
    use_backup_service: Optional[bool] = Field(default=None, alias="useBackupService")

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, exclude_none=True)


class RetryDecision(BaseModel):
    should_retry: bool
    delay_ms: int = 0
    reason: str
    adjustments: RetryAdjustments = Field(default_factory=RetryAdjustments)
    category: ErrorCategory = ErrorCategory.UNKNOWN

    def to_details(self) -> dict:
        """Form stored on the retry run"""
        return {
            "shouldRetry": self.should_retry,
            "delayMs": self.delay_ms,
            "reason": self.reason,
            "category": self.category.value,
            "adjustments": self.adjustments.to_wire(),
        }


class RetryPolicy(NamedTuple):
    retry_below: int  # retry while attempt < retry_below
    reason: str
    delay_cap: Optional[str] = None  # name of the RetryConfig field capping the delay
    reduce_batch_size: bool = False
    timeout_multiplier: bool = False
    backup_service_after: Optional[int] = None  # use backup once attempt > this


RETRY_POLICIES: Dict[ErrorCategory, RetryPolicy] = {
    ErrorCategory.RATE_LIMIT: RetryPolicy(
        2, "Rate limit detected ({count} errors). Using extended backoff.",
        reduce_batch_size=True),
    ErrorCategory.TIMEOUT: RetryPolicy(
        2, "Timeout errors ({count}). Increasing timeout for retry.",
        timeout_multiplier=True),
    ErrorCategory.NETWORK: RetryPolicy(
        3, "Network errors ({count}). Quick retry with short backoff.",
        delay_cap="network_max_delay_ms"),
    ErrorCategory.AUTH: RetryPolicy(
        0, "Authentication errors ({count}). Manual intervention required."),
    ErrorCategory.RESOURCE: RetryPolicy(
        0, "Resource exhaustion ({count}). Manual intervention required."),
    ErrorCategory.VALIDATION: RetryPolicy(
        0, "Validation errors ({count}). Code fix required."),
    ErrorCategory.DATABASE: RetryPolicy(
        2, "Database errors ({count}). Retrying with backoff."),
    ErrorCategory.EXTERNAL_API: RetryPolicy(
        2, "External API errors ({count}). Retrying with backoff.",
        backup_service_after=0),
    ErrorCategory.UNKNOWN: RetryPolicy(
        2, "Unknown errors ({count}). Using default retry strategy."),
}

TIMEOUT_MULTIPLIER_BASE = 1.5
TIMEOUT_MULTIPLIER_STEP = 0.5


def calculate_backoff_delay(attempt: int, category: ErrorCategory,
                            config: Optional[RetryConfig] = None,
                            rand: Callable[[], float] = random.random) -> int:
    """
    Exponential backoff with jitter, in milliseconds.

    base * 2^attempt plus up to jitter_factor of that again, never above
    max_delay_ms. Rate limits use the longer base.
    """
    config = config or RetryConfig()
    base = config.rate_limit_base_ms if category == ErrorCategory.RATE_LIMIT else config.default_base_ms

    exponential = base * (2 ** attempt)
    jitter = rand() * config.jitter_factor * exponential

    return int(min(exponential + jitter, config.max_delay_ms))


def _first_fatal(errors: List[ErrorLike]) -> Optional[ErrorCategory]:
    for error in errors:
        category = classify(error)
        if category in FATAL_CATEGORIES:
            return category
    return None


def decide(errors: Optional[List[ErrorLike]], attempt: int,
           config: Optional[RetryConfig] = None,
           rand: Callable[[], float] = random.random) -> RetryDecision:
    """
    Retry decision for a run that failed with `errors` at retry `attempt`.

    The dominant error category picks the policy. With fatal_category_veto
    enabled, any AUTH/RESOURCE/VALIDATION error blocks the retry on its own.
    """
    config = config or RetryConfig()
    errors = list(errors or [])

    if not errors:
        return RetryDecision(
            should_retry=True,
            delay_ms=calculate_backoff_delay(attempt, ErrorCategory.UNKNOWN, config, rand),
            reason="No errors to analyze, retrying with default backoff",
            category=ErrorCategory.UNKNOWN,
        )

    category = summarize(errors).dominant_category
    if config.fatal_category_veto:
        category = _first_fatal(errors) or category

    policy = RETRY_POLICIES[category]
    should_retry = attempt < policy.retry_below
    reason = policy.reason.format(count=len(errors))

    if not should_retry:
        return RetryDecision(should_retry=False, delay_ms=0, reason=reason, category=category)

    delay_ms = calculate_backoff_delay(attempt, category, config, rand)
    if policy.delay_cap:
        delay_ms = min(delay_ms, getattr(config, policy.delay_cap))

    adjustments = RetryAdjustments()
    if policy.reduce_batch_size:
        adjustments.reduce_batch_size = True
    if policy.timeout_multiplier:
        adjustments.timeout_multiplier = TIMEOUT_MULTIPLIER_BASE + attempt * TIMEOUT_MULTIPLIER_STEP
    if policy.backup_service_after is not None:
        adjustments.use_backup_service = attempt > policy.backup_service_after

    return RetryDecision(
        should_retry=True,
        delay_ms=delay_ms,
        reason=reason,
        adjustments=adjustments,
        category=category,
    )
