"""Tests for retry with exponential backoff."""

from unittest.mock import MagicMock

import pytest

from src.resilience.retry import (
    RetryConfig,
    RetryStats,
    calculate_delay,
    retry_call,
    should_retry,
)


class Transient(Exception):
    pass


class Fatal(Exception):
    pass


# ---------------------------------------------------------------------------
# RetryConfig / RetryStats defaults
# ---------------------------------------------------------------------------

class TestDefaults:
    def test_config_defaults(self):
        cfg = RetryConfig()
        assert cfg.max_attempts == 3
        assert cfg.base_delay == 1.0
        assert cfg.max_delay == 60.0
        assert cfg.exponential_base == 2.0
        assert cfg.jitter is True
        assert cfg.jitter_factor == 0.1
        assert cfg.retry_exceptions == (Exception,)
        assert cfg.no_retry_exceptions == ()

    def test_stats_defaults(self):
        s = RetryStats()
        assert s.attempts == 0
        assert s.total_delay == 0.0
        assert s.success is False
        assert s.final_exception is None


# ---------------------------------------------------------------------------
# calculate_delay
# ---------------------------------------------------------------------------

class TestCalculateDelay:
    def test_exponential(self):
        cfg = RetryConfig(base_delay=1.0, exponential_base=2.0, jitter=False)
        assert [calculate_delay(n, cfg) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_max_delay_cap(self):
        cfg = RetryConfig(base_delay=10.0, exponential_base=10.0, max_delay=50.0, jitter=False)
        assert calculate_delay(3, cfg) == 50.0

    def test_jitter_stays_near_base(self):
        cfg = RetryConfig(base_delay=10.0, jitter=True, jitter_factor=0.1)
        for _ in range(20):
            assert 9.0 <= calculate_delay(1, cfg) <= 11.0

    def test_never_negative(self):
        cfg = RetryConfig(base_delay=0.0, jitter=True, jitter_factor=1.0)
        assert calculate_delay(1, cfg) >= 0


# ---------------------------------------------------------------------------
# should_retry
# ---------------------------------------------------------------------------

class TestShouldRetry:
    def test_matches_retry_list(self):
        cfg = RetryConfig(retry_exceptions=(Transient,))
        assert should_retry(Transient(), cfg)
        assert not should_retry(Fatal(), cfg)

    def test_no_retry_list_wins(self):
        cfg = RetryConfig(retry_exceptions=(Exception,), no_retry_exceptions=(Fatal,))
        assert not should_retry(Fatal(), cfg)
        assert should_retry(Transient(), cfg)


# ---------------------------------------------------------------------------
# retry_call
# ---------------------------------------------------------------------------

class TestRetryCall:
    def _config(self, **kw):
        kw.setdefault("base_delay", 0.01)
        kw.setdefault("jitter", False)
        return RetryConfig(**kw)

    def test_success_first_try(self):
        func = MagicMock(return_value="ok")
        sleep = MagicMock()

        assert retry_call(func, 1, key="v", config=self._config(), sleep=sleep) == "ok"
        func.assert_called_once_with(1, key="v")
        sleep.assert_not_called()

    def test_retries_then_succeeds(self):
        func = MagicMock(side_effect=[Transient("a"), Transient("b"), "done"])
        sleep = MagicMock()
        stats = RetryStats()

        result = retry_call(
            func,
            config=self._config(max_attempts=3, retry_exceptions=(Transient,)),
            stats=stats,
            sleep=sleep,
        )

        assert result == "done"
        assert func.call_count == 3
        assert sleep.call_count == 2
        assert stats.attempts == 3
        assert stats.success is True

    def test_exhausted_reraises_last(self):
        func = MagicMock(side_effect=[Transient("first"), Transient("last")])
        stats = RetryStats()

        with pytest.raises(Transient, match="last"):
            retry_call(func, config=self._config(max_attempts=2), stats=stats, sleep=MagicMock())

        assert stats.attempts == 2
        assert stats.success is False
        assert str(stats.final_exception) == "last"

    def test_non_retryable_raises_immediately(self):
        func = MagicMock(side_effect=Fatal("no"))
        sleep = MagicMock()

        with pytest.raises(Fatal):
            retry_call(func, config=self._config(retry_exceptions=(Transient,)), sleep=sleep)

        assert func.call_count == 1
        sleep.assert_not_called()

    def test_on_retry_callback(self):
        func = MagicMock(side_effect=[Transient("x"), "ok"])
        seen = []

        retry_call(
            func,
            config=self._config(base_delay=0.5),
            on_retry=lambda attempt, exc, delay: seen.append((attempt, str(exc), delay)),
            sleep=MagicMock(),
        )

        assert seen == [(1, "x", 0.5)]

    def test_backoff_delays_passed_to_sleep(self):
        func = MagicMock(side_effect=[Transient(), Transient(), "ok"])
        sleep = MagicMock()

        retry_call(func, config=self._config(base_delay=0.1, max_attempts=3), sleep=sleep)

        assert [c.args[0] for c in sleep.call_args_list] == pytest.approx([0.1, 0.2])
