import pytest

from Database.DatabaseConfig import RetryConfig
from Supervisor.ErrorClassifier import ErrorCategory
from Supervisor.RetryStrategy import RETRY_POLICIES, calculate_backoff_delay, decide

NO_JITTER = lambda: 0.0  # noqa: E731
FULL_JITTER = lambda: 1.0  # noqa: E731


def test_backoff_defaults():
    config = RetryConfig()
    assert calculate_backoff_delay(0, ErrorCategory.UNKNOWN, config, NO_JITTER) == 60_000
    assert calculate_backoff_delay(1, ErrorCategory.UNKNOWN, config, NO_JITTER) == 120_000
    assert calculate_backoff_delay(0, ErrorCategory.RATE_LIMIT, config, NO_JITTER) == 300_000
    assert calculate_backoff_delay(0, ErrorCategory.UNKNOWN, config, FULL_JITTER) == 78_000


def test_backoff_is_capped():
    config = RetryConfig()
    assert calculate_backoff_delay(10, ErrorCategory.UNKNOWN, config, FULL_JITTER) == 1_800_000
    assert calculate_backoff_delay(3, ErrorCategory.RATE_LIMIT, config, NO_JITTER) == 1_800_000


@pytest.mark.parametrize("category", [ErrorCategory.UNKNOWN, ErrorCategory.RATE_LIMIT, ErrorCategory.TIMEOUT])
def test_backoff_grows_within_jitter_and_ceiling(category):
    config = RetryConfig()
    base = config.rate_limit_base_ms if category == ErrorCategory.RATE_LIMIT else config.default_base_ms

    for attempt in range(8):
        jitter_max = config.jitter_factor * base * 2 ** attempt
        for r in (0.0, 0.5, 1.0):
            delay = calculate_backoff_delay(attempt, category, config, lambda: r)
            assert delay <= config.max_delay_ms
            for r_next in (0.0, 0.5, 1.0):
                next_delay = calculate_backoff_delay(attempt + 1, category, config, lambda: r_next)
                assert delay <= next_delay + jitter_max


def test_rate_limit_scenario():
    decision = decide(["429 Too Many Requests"] * 3, 0, RetryConfig(), NO_JITTER)

    assert decision.should_retry is True
    assert decision.category == ErrorCategory.RATE_LIMIT
    assert decision.delay_ms == 300_000
    assert decision.adjustments.reduce_batch_size is True
    assert decision.adjustments.to_wire() == {"reduceBatchSize": True}
    assert "3 errors" in decision.reason


def test_unauthorized_scenario():
    decision = decide(["401 unauthorized"], 0, RetryConfig(), NO_JITTER)

    assert decision.should_retry is False
    assert decision.delay_ms == 0
    assert decision.category == ErrorCategory.AUTH
    assert "Manual intervention" in decision.reason


@pytest.mark.parametrize("attempt", [0, 1, 2, 100])
def test_auth_is_never_retried(attempt):
    decision = decide([{"message": "403 Forbidden"}], attempt, RetryConfig(), FULL_JITTER)
    assert decision.should_retry is False
    assert decision.delay_ms == 0


@pytest.mark.parametrize("message", ["out of memory", "schema mismatch"])
def test_fatal_categories_are_not_retried(message):
    assert decide([message], 0).should_retry is False


def test_timeout_raises_multiplier_per_attempt():
    config = RetryConfig()
    assert decide(["timed out"], 0, config, NO_JITTER).adjustments.timeout_multiplier == 1.5
    assert decide(["timed out"], 1, config, NO_JITTER).adjustments.timeout_multiplier == 2.0
    assert decide(["timed out"], 2, config, NO_JITTER).should_retry is False


def test_network_allows_third_attempt_with_short_cap():
    decision = decide(["ECONNRESET"], 2, RetryConfig(), NO_JITTER)
    assert decision.should_retry is True
    assert decision.delay_ms == 120_000
    assert decide(["ECONNRESET"], 3, RetryConfig(), NO_JITTER).should_retry is False


def test_external_api_switches_to_backup_on_second_attempt():
    first = decide(["HTTP 503"], 0, RetryConfig(), NO_JITTER)
    second = decide(["HTTP 503"], 1, RetryConfig(), NO_JITTER)

    assert first.adjustments.use_backup_service is False
    assert second.adjustments.use_backup_service is True
    assert second.adjustments.to_wire() == {"useBackupService": True}


def test_no_errors_retries_with_default_backoff():
    decision = decide([], 0, RetryConfig(), NO_JITTER)
    assert decision.should_retry is True
    assert decision.category == ErrorCategory.UNKNOWN
    assert decision.delay_ms == 60_000
    assert decision.adjustments.to_wire() == {}


def test_unknown_stops_after_two_attempts():
    assert decide(["boom"], 1, RetryConfig(), NO_JITTER).should_retry is True
    decision = decide(["boom"], 2, RetryConfig(), NO_JITTER)
    assert decision.should_retry is False
    assert decision.delay_ms == 0


def test_minority_fatal_error_only_vetoes_when_enabled():
    errors = ["429 Too Many Requests", "429 Too Many Requests", "401 unauthorized"]

    assert decide(errors, 0, RetryConfig(), NO_JITTER).should_retry is True

    vetoed = decide(errors, 0, RetryConfig(fatal_category_veto=True), NO_JITTER)
    assert vetoed.should_retry is False
    assert vetoed.category == ErrorCategory.AUTH


def test_every_category_has_a_policy():
    assert set(RETRY_POLICIES) == set(ErrorCategory)


def test_details_form_is_json_ready():
    details = decide(["429"], 0, RetryConfig(), NO_JITTER).to_details()
    assert details == {
        "shouldRetry": True,
        "delayMs": 300_000,
        "reason": "Rate limit detected (1 errors). Using extended backoff.",
        "category": "RATE_LIMIT",
        "adjustments": {"reduceBatchSize": True},
    }
