import asyncio

import pytest

from design_tools.errors import RateLimitError, RemoteFailure
from design_tools.retry import (
    CHAT_RETRY_POLICY,
    PREDICTION_RETRY_POLICY,
    RetryPolicy,
    parse_retry_after,
    with_retry,
)


class Flaky:
    """Raises the queued errors in order, then returns 'ok'."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestRetryPolicy:
    def test_backoff_curve(self):
        policy = RetryPolicy()
        assert [policy.backoff_delay(n) for n in range(6)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]

    def test_retry_after_wins(self):
        assert PREDICTION_RETRY_POLICY.delay_for(2, retry_after=7) == 7.0
        assert CHAT_RETRY_POLICY.delay_for(0, retry_after=5) == 5.0

    def test_chat_policy_fixed_fallback(self):
        assert [CHAT_RETRY_POLICY.delay_for(n) for n in range(3)] == [2.0, 2.0, 2.0]

    @pytest.mark.parametrize(
        "raw,expected",
        [("3", 3), (" 12 ", 12), (None, None), ("", None), ("1.5", None), ("Wed, 21 Oct 2015 07:28:00 GMT", None)],
    )
    def test_parse_retry_after(self, raw, expected):
        assert parse_retry_after(raw) == expected


class TestWithRetry:
    def test_two_rate_limits_then_success(self, sleeper):
        op = Flaky(RateLimitError(), RateLimitError())
        assert asyncio.run(with_retry(op, sleep=sleeper)) == "ok"
        assert op.calls == 3
        assert sleeper.delays == [1.0, 2.0]

    def test_honors_retry_after(self, sleeper):
        op = Flaky(RateLimitError(retry_after=4), RateLimitError())
        asyncio.run(with_retry(op, sleep=sleeper))
        assert sleeper.delays == [4.0, 2.0]

    def test_exhaustion_reraises_last_error(self, sleeper):
        last = RateLimitError("fourth")
        op = Flaky(RateLimitError(), RateLimitError(), RateLimitError(), last)
        with pytest.raises(RateLimitError) as exc:
            asyncio.run(with_retry(op, sleep=sleeper))
        assert exc.value is last
        assert op.calls == 4
        assert sleeper.delays == [1.0, 2.0, 4.0]

    def test_other_errors_are_not_retried(self, sleeper):
        op = Flaky(RemoteFailure("boom"))
        with pytest.raises(RemoteFailure):
            asyncio.run(with_retry(op, sleep=sleeper))
        assert op.calls == 1
        assert sleeper.delays == []

    def test_zero_retries(self, sleeper):
        op = Flaky(RateLimitError())
        with pytest.raises(RateLimitError):
            asyncio.run(with_retry(op, RetryPolicy(max_retries=0), sleep=sleeper))
        assert op.calls == 1
