"""Unit tests for retry with backoff and per-call timeouts."""

import asyncio

import pytest

from coderag.errors import OperationTimeoutError, RetryCancelledError
from coderag.retry import is_retryable_error, with_retry, with_timeout


class StatusError(Exception):
    def __init__(self, message, status_code):
        super().__init__(message)
        self.status_code = status_code


class FlakyOperation:
    """Fails with the given errors in order, then returns "ok"."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class TestIsRetryableError:
    @pytest.mark.parametrize("error", [
        Exception("429 Too Many Requests"),
        Exception("Rate limit reached for gpt-4o-mini"),
        Exception("upstream returned 503"),
        Exception("ECONNRESET"),
        Exception("Request timed out"),
        Exception("The server is overloaded"),
        TimeoutError(),
        ConnectionResetError(),
        StatusError("boom", 500),
        StatusError("slow down", 429),
        "socket hang up",
    ])
    def test_transient_failures_are_retryable(self, error):
        assert is_retryable_error(error)

    @pytest.mark.parametrize("error", [
        Exception("401 Unauthorized"),
        Exception("Invalid API key"),
        ValueError("bad input"),
        StatusError("not found", 404),
        StatusError("says 503 in text", 400),
        RetryCancelledError("cancelled"),
        None,
    ])
    def test_permanent_failures_are_not_retryable(self, error):
        assert not is_retryable_error(error)


class TestWithRetry:
    """Test attempt counts, callbacks and cancellation."""

    def test_success_on_first_attempt(self):
        operation = FlakyOperation()
        assert asyncio.run(with_retry(operation, base_delay_ms=1)) == "ok"
        assert operation.calls == 1

    def test_retries_transient_failures(self):
        operation = FlakyOperation(Exception("503"), Exception("rate limit"))
        assert asyncio.run(with_retry(operation, base_delay_ms=1)) == "ok"
        assert operation.calls == 3

    def test_non_retryable_error_fails_immediately(self):
        operation = FlakyOperation(ValueError("invalid request"))
        with pytest.raises(ValueError, match="invalid request"):
            asyncio.run(with_retry(operation, base_delay_ms=1))
        assert operation.calls == 1

    def test_exhausted_retries_raise_last_error(self):
        operation = FlakyOperation(*(Exception(f"503 attempt {i}") for i in range(5)))
        with pytest.raises(Exception, match="503 attempt 2"):
            asyncio.run(with_retry(operation, max_retries=2, base_delay_ms=1))
        assert operation.calls == 3

    def test_zero_retries_means_one_call(self):
        operation = FlakyOperation(Exception("503"))
        with pytest.raises(Exception, match="503"):
            asyncio.run(with_retry(operation, max_retries=0, base_delay_ms=1))
        assert operation.calls == 1

    def test_on_retry_receives_attempt_and_delay(self):
        operation = FlakyOperation(Exception("503"), Exception("503"), Exception("503"))
        seen = []

        asyncio.run(with_retry(
            operation,
            base_delay_ms=2,
            max_delay_ms=5,
            on_retry=lambda attempt, error, delay_ms: seen.append((attempt, str(error), delay_ms)),
        ))

        assert [s[0] for s in seen] == [1, 2, 3]
        assert all(s[1] == "503" for s in seen)
        assert [s[2] for s in seen] == pytest.approx([2.0, 4.0, 5.0])

    def test_cancel_before_first_attempt(self):
        operation = FlakyOperation()

        async def run():
            event = asyncio.Event()
            event.set()
            await with_retry(operation, cancel_event=event)

        with pytest.raises(RetryCancelledError):
            asyncio.run(run())
        assert operation.calls == 0

    def test_cancel_during_backoff(self):
        operation = FlakyOperation(Exception("503"), Exception("503"))

        async def run():
            event = asyncio.Event()
            asyncio.get_running_loop().call_later(0.05, event.set)
            await with_retry(operation, base_delay_ms=10_000, cancel_event=event)

        with pytest.raises(RetryCancelledError):
            asyncio.run(run())
        assert operation.calls == 1


class TestWithTimeout:
    def test_returns_result_in_time(self):
        async def quick():
            return 42

        assert asyncio.run(with_timeout(quick(), 1.0)) == 42

    def test_slow_call_raises_timeout(self):
        async def slow():
            await asyncio.sleep(1)

        with pytest.raises(OperationTimeoutError, match="Embedding timed out"):
            asyncio.run(with_timeout(slow(), 0.01, "Embedding"))

    def test_timeout_is_retryable(self):
        assert is_retryable_error(OperationTimeoutError("Embedding", 1.0))

    def test_rejects_non_positive_timeout(self):
        async def quick():
            return 1

        with pytest.raises(ValueError, match="Invalid timeout"):
            asyncio.run(with_timeout(quick(), 0))
