from __future__ import annotations

import random

import pytest

from Memory_KG.resilience import policy as policy_module
from Memory_KG.resilience.errors import (
    AuthenticationFailure,
    EmptyVectorReturned,
    ErrorCategory,
    ProviderUnavailable,
    RateLimited,
)
from Memory_KG.resilience.policy import RetryPolicy


def test_delay_follows_exponential_schedule(policy: RetryPolicy) -> None:
    assert policy.delay(1) == pytest.approx(0.5)
    assert policy.delay(2) == pytest.approx(1.0)
    assert policy.delay(3) == pytest.approx(2.0)
    assert policy.delay(10) == pytest.approx(10.0)


def test_rate_limited_hint_overrides_backoff(policy: RetryPolicy) -> None:
    assert policy.delay(1, RateLimited(retry_after=3.0)) == pytest.approx(3.0)
    assert policy.delay(1, RateLimited(retry_after=60.0)) == pytest.approx(10.0)
    assert policy.delay(2, RateLimited()) == pytest.approx(1.0)


@pytest.mark.parametrize("seed", range(5))
def test_jitter_stays_within_spread(seed: int) -> None:
    policy = RetryPolicy(base_delay=1.0, jitter=0.5, _rng=random.Random(seed))
    for attempt in range(1, 5):
        expected = min(1.0 * 2.0 ** (attempt - 1), 10.0)
        value = policy.delay(attempt)
        assert expected * 0.5 <= value <= expected * 1.5


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_attempts": 0},
        {"base_delay": -1.0},
        {"backoff_multiplier": 0.5},
        {"jitter": 1.5},
    ],
)
def test_invalid_policy_rejected(kwargs: dict) -> None:
    with pytest.raises(ValueError):
        RetryPolicy(**kwargs)


def test_retryability_by_category(policy: RetryPolicy) -> None:
    assert policy.is_retryable(ProviderUnavailable("down"))
    assert policy.is_retryable(EmptyVectorReturned("empty"))
    assert not policy.is_retryable(AuthenticationFailure("denied"))
    strict = policy.with_overrides(unknown_category=ErrorCategory.FATAL)
    assert policy.is_retryable(RuntimeError("unknown"))
    assert not strict.is_retryable(RuntimeError("unknown"))


@pytest.mark.asyncio
async def test_async_retrying_retries_transient_failures(policy: RetryPolicy, sleep) -> None:
    calls = 0
    async for attempt in policy.build_async_retrying(scope="test", sleep=sleep):
        with attempt:
            calls += 1
            if calls < 3:
                raise ProviderUnavailable("down")
    assert calls == 3
    assert sleep.delays == [pytest.approx(0.5), pytest.approx(1.0)]


@pytest.mark.asyncio
async def test_async_retrying_reraises_after_exhaustion(policy: RetryPolicy, sleep) -> None:
    calls = 0
    with pytest.raises(ProviderUnavailable):
        async for attempt in policy.build_async_retrying(scope="test", sleep=sleep):
            with attempt:
                calls += 1
                raise ProviderUnavailable("still down")
    assert calls == policy.max_attempts
    assert len(sleep.delays) == policy.max_attempts - 1


@pytest.mark.asyncio
async def test_async_retrying_stops_on_fatal_error(policy: RetryPolicy, sleep) -> None:
    calls = 0
    with pytest.raises(AuthenticationFailure):
        async for attempt in policy.build_async_retrying(scope="test", sleep=sleep):
            with attempt:
                calls += 1
                raise AuthenticationFailure("denied")
    assert calls == 1
    assert sleep.delays == []


@pytest.mark.asyncio
async def test_on_retry_callback_sees_each_retry(policy: RetryPolicy, sleep) -> None:
    seen: list[int] = []
    calls = 0
    async for attempt in policy.build_async_retrying(
        scope="test",
        sleep=sleep,
        on_retry=lambda state: seen.append(state.attempt_number),
    ):
        with attempt:
            calls += 1
            if calls == 1:
                raise RateLimited(retry_after=4.0)
    assert seen == [1]
    assert sleep.delays == [pytest.approx(4.0)]


def test_overrides_keep_the_seeded_random_source() -> None:
    policy = RetryPolicy(base_delay=1.0, jitter=0.5, _rng=random.Random(7))
    copy = policy.with_overrides(jitter=0.25)
    reference = random.Random(7)

    assert copy._rng is policy._rng
    spread = 1.0 * 0.25
    assert copy.delay(1) == pytest.approx(1.0 + reference.uniform(-spread, spread))


class _RecordingLogger:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict]] = []

    def warning(self, event: str, **fields) -> None:
        self.events.append((event, fields))


@pytest.mark.asyncio
async def test_logged_delay_matches_the_actual_sleep(monkeypatch, sleep) -> None:
    recorder = _RecordingLogger()
    monkeypatch.setattr(policy_module, "logger", recorder)
    policy = RetryPolicy(base_delay=1.0, jitter=0.5, _rng=random.Random(3))

    calls = 0
    async for attempt in policy.build_async_retrying(scope="test", sleep=sleep):
        with attempt:
            calls += 1
            if calls < 3:
                raise ProviderUnavailable("down")

    logged = [fields["delay"] for event, fields in recorder.events if event == "resilience.retry.scheduled"]
    assert logged == [round(delay, 3) for delay in sleep.delays]
