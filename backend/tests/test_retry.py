"""Bounded retry combinator tests"""
import asyncio
import pytest

from backoffice.core.retry import RetryPolicy, retry_async


class _Recorder:
    def __init__(self):
        self.delays = []

    async def sleep(self, delay):
        self.delays.append(delay)


@pytest.mark.high
class TestRetryPolicy:
    def test_delay_doubles_from_base(self):
        policy = RetryPolicy(max_attempts=4, base_delay=1.0, multiplier=2.0)
        assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]


@pytest.mark.critical
class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_returns_first_success_without_sleeping(self):
        recorder = _Recorder()

        async def ok():
            return "done"

        result = await retry_async(ok, RetryPolicy(max_attempts=3), sleep=recorder.sleep)
        assert result == "done"
        assert recorder.delays == []

    @pytest.mark.asyncio
    async def test_retries_until_success(self):
        recorder = _Recorder()
        calls = []

        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("transient")
            return "ok"

        result = await retry_async(
            flaky, RetryPolicy(max_attempts=3, base_delay=0.5), sleep=recorder.sleep
        )
        assert result == "ok"
        assert len(calls) == 3
        assert recorder.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_raises_last_error_when_exhausted(self):
        recorder = _Recorder()
        calls = []

        async def broken():
            calls.append(1)
            raise ValueError(f"failure {len(calls)}")

        with pytest.raises(ValueError, match="failure 3"):
            await retry_async(broken, RetryPolicy(max_attempts=3), sleep=recorder.sleep)
        assert len(calls) == 3
        assert len(recorder.delays) == 2

    @pytest.mark.asyncio
    async def test_non_retryable_error_is_raised_immediately(self):
        recorder = _Recorder()
        calls = []

        async def broken():
            calls.append(1)
            raise KeyError("bad input")

        with pytest.raises(KeyError):
            await retry_async(
                broken,
                RetryPolicy(max_attempts=5),
                retryable=lambda exc: not isinstance(exc, KeyError),
                sleep=recorder.sleep,
            )
        assert len(calls) == 1
        assert recorder.delays == []

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failed_attempt(self):
        recorder = _Recorder()
        calls = []

        async def stalled():
            calls.append(1)
            await asyncio.sleep(10)

        with pytest.raises(asyncio.TimeoutError):
            await retry_async(
                stalled,
                RetryPolicy(max_attempts=2, base_delay=0, timeout=0.01),
                sleep=recorder.sleep,
            )
        assert len(calls) == 2
