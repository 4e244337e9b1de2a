import asyncio

import pytest

from mcpdeploy.core.errors import DeploymentError, ErrorCode, ProviderApiError, ValidationError
from mcpdeploy.core.resilience import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    RetryConfig,
    compute_backoff_delay,
    counts_as_failure,
    should_not_retry,
    with_retry,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


async def boom():
    raise RuntimeError("connection reset")


async def ok():
    return "ok"


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker("railway", failure_threshold=3, recovery_timeout=60, clock=clock, is_failure=counts_as_failure)


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_opens_after_threshold_consecutive_failures(self, breaker):
        for _ in range(3):
            with pytest.raises(RuntimeError):
                await breaker.call(boom)
        assert breaker.state == CircuitState.OPEN
        assert breaker.failures == 3

    @pytest.mark.asyncio
    async def test_open_circuit_fails_fast_without_calling(self, breaker):
        calls = []

        async def tracked():
            calls.append(1)
            raise RuntimeError("down")

        for _ in range(3):
            with pytest.raises(RuntimeError):
                await breaker.call(tracked)

        with pytest.raises(DeploymentError) as exc_info:
            await breaker.call(tracked)
        assert exc_info.value.code == ErrorCode.CIRCUIT_BREAKER_OPEN.value
        assert exc_info.value.status_code == 503
        assert exc_info.value.details["service"] == "railway"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, breaker):
        for _ in range(2):
            with pytest.raises(RuntimeError):
                await breaker.call(boom)
        assert await breaker.call(ok) == "ok"
        assert breaker.failures == 0
        with pytest.raises(RuntimeError):
            await breaker.call(boom)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_trial_success_closes(self, breaker, clock):
        for _ in range(3):
            with pytest.raises(RuntimeError):
                await breaker.call(boom)
        clock.now += 61
        assert await breaker.call(ok) == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_trial_failure_reopens(self, breaker, clock):
        for _ in range(3):
            with pytest.raises(RuntimeError):
                await breaker.call(boom)
        clock.now += 61
        with pytest.raises(RuntimeError):
            await breaker.call(boom)
        assert breaker.state == CircuitState.OPEN
        with pytest.raises(DeploymentError):
            await breaker.call(ok)

    @pytest.mark.asyncio
    async def test_half_open_admits_a_single_trial(self, breaker, clock):
        for _ in range(3):
            with pytest.raises(RuntimeError):
                await breaker.call(boom)
        clock.now += 61

        release = asyncio.Event()

        async def slow_trial():
            await release.wait()
            return "trial"

        trial = asyncio.create_task(breaker.call(slow_trial))
        await asyncio.sleep(0)
        assert breaker.state == CircuitState.HALF_OPEN

        with pytest.raises(DeploymentError) as exc_info:
            await breaker.call(ok)
        assert exc_info.value.code == ErrorCode.CIRCUIT_BREAKER_OPEN.value

        release.set()
        assert await trial == "trial"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_client_errors_do_not_count(self, breaker):
        async def not_found():
            raise ProviderApiError("Project not found", 404)

        for _ in range(5):
            with pytest.raises(ProviderApiError):
                await breaker.call(not_found)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failures == 0

    @pytest.mark.asyncio
    async def test_sync_callables_are_supported(self, breaker):
        assert await breaker.call(lambda x: x * 2, 21) == 42

    @pytest.mark.asyncio
    async def test_reset_closes(self, breaker):
        for _ in range(3):
            with pytest.raises(RuntimeError):
                await breaker.call(boom)
        breaker.reset()
        assert breaker.get_state() == {
            "name": "railway",
            "state": "CLOSED",
            "failures": 0,
            "last_failure_time": None,
        }


class TestCircuitBreakerRegistry:
    def test_reset_one_or_all(self, breakers):
        breakers.railway.state = CircuitState.OPEN
        breakers.supabase.state = CircuitState.OPEN

        states = breakers.reset("railway")
        assert states["railway"]["state"] == "CLOSED"
        assert states["supabase"]["state"] == "OPEN"

        states = breakers.reset("all")
        assert {s["state"] for s in states.values()} == {"CLOSED"}

    def test_unknown_breaker(self, breakers):
        with pytest.raises(KeyError):
            breakers.reset("stripe")


class TestRetryPolicy:
    def test_backoff_grows_and_caps(self):
        config = RetryConfig(base_delay=1, max_delay=10, multiplier=2)
        assert [compute_backoff_delay(n, config) for n in range(5)] == [1, 2, 4, 8, 10]

    @pytest.mark.parametrize("error", [
        ValidationError("bad", "name"),
        ProviderApiError("Project not found", 404),
        DeploymentError("nope", ErrorCode.TEMPLATE_NOT_FOUND, 404),
        DeploymentError("open", ErrorCode.CIRCUIT_BREAKER_OPEN, 503),
        RuntimeError("Unauthorized request"),
        RuntimeError("Invalid project name"),
    ])
    def test_non_retryable(self, error):
        assert should_not_retry(error)

    @pytest.mark.parametrize("error", [
        ProviderApiError("Too many requests", 429),
        ProviderApiError("Bad gateway", 502),
        RuntimeError("connection reset"),
    ])
    def test_retryable(self, error):
        assert not should_not_retry(error)

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self, sleep_recorder):
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise ProviderApiError("Bad gateway", 502)
            return "deployed"

        result = await with_retry(flaky, RetryConfig(max_attempts=3), sleep=sleep_recorder)
        assert result == "deployed"
        assert len(attempts) == 3
        assert sleep_recorder.calls == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_non_retryable_error_makes_one_attempt(self, sleep_recorder):
        attempts = []

        async def missing():
            attempts.append(1)
            raise ProviderApiError("Project not found", 404)

        with pytest.raises(ProviderApiError):
            await with_retry(missing, RetryConfig(max_attempts=3), sleep=sleep_recorder)
        assert len(attempts) == 1
        assert sleep_recorder.calls == []

    @pytest.mark.asyncio
    async def test_exhaustion_raises_retry_exhausted(self, sleep_recorder):
        with pytest.raises(DeploymentError) as exc_info:
            await with_retry(boom, RetryConfig(max_attempts=3), sleep=sleep_recorder)
        error = exc_info.value
        assert error.code == ErrorCode.RETRY_EXHAUSTED.value
        assert error.details["attempts"] == 3
        assert "connection reset" in error.details["last_error"]
        assert isinstance(error.__cause__, RuntimeError)
        assert len(sleep_recorder.calls) == 2
