import asyncio
import random

import pytest

from vendor_ingestion.backoff import BackoffPolicy, build_retrying
from vendor_ingestion.errors import PermanentFetchError, TransientFetchError, UnacknowledgedUploadError
from vendor_ingestion.pipeline_config import RetrySpec


def test_base_delay_doubles_until_capped():
    policy = BackoffPolicy(max_retries=10, base_delay=1.0, max_delay=30.0)

    assert [policy.base_delay_for(n) for n in range(7)] == [1.0, 2.0, 4.0, 8.0, 16.0, 30.0, 30.0]


def test_base_delay_survives_huge_retry_numbers():
    assert BackoffPolicy(max_delay=30.0).base_delay_for(10_000) == 30.0


def test_jittered_delay_stays_within_jitter_bounds():
    policy = BackoffPolicy(base_delay=1.0, max_delay=1000.0)
    rng = random.Random(42)

    for n in range(6):
        for _ in range(50):
            delay = policy.delay_for(n, rng)
            assert 0.5 * 2 ** n <= delay <= 1.5 * 2 ** n


def test_jittered_delay_is_capped():
    policy = BackoffPolicy(base_delay=1.0, max_delay=3.0)

    assert {policy.delay_for(6, random.Random(seed)) for seed in range(20)} == {3.0}


def test_from_spec():
    policy = BackoffPolicy.from_spec(RetrySpec(max_retries=3, base_delay_seconds=0.2, max_delay_seconds=5))

    assert policy == BackoffPolicy(max_retries=3, base_delay=0.2, max_delay=5.0, jitter_min=0.5, jitter_max=1.5)


def _run_failing(policy, error_factory, sleep):
    calls = []

    async def scenario():
        async for attempt in build_retrying(policy, "test operation", sleep=sleep, rng=random.Random(1)):
            with attempt:
                calls.append(attempt.retry_state.attempt_number)
                raise error_factory(len(calls))

    return calls, scenario


def test_retryable_errors_stop_after_max_retries_and_reraise_last(recorded_sleeps):
    delays, fake_sleep = recorded_sleeps
    policy = BackoffPolicy(max_retries=3, base_delay=1.0, max_delay=30.0)
    calls, scenario = _run_failing(policy, lambda n: TransientFetchError(f"failure {n}"), fake_sleep)

    with pytest.raises(TransientFetchError, match="failure 3"):
        asyncio.run(scenario())

    assert calls == [1, 2, 3]
    assert len(delays) == 2
    assert 0.5 <= delays[0] <= 1.5
    assert 1.0 <= delays[1] <= 3.0


def test_upload_acknowledgement_errors_are_retried(recorded_sleeps):
    delays, fake_sleep = recorded_sleeps
    calls, scenario = _run_failing(BackoffPolicy(max_retries=2), lambda n: UnacknowledgedUploadError("no etag"), fake_sleep)

    with pytest.raises(UnacknowledgedUploadError):
        asyncio.run(scenario())

    assert calls == [1, 2]


def test_permanent_errors_are_not_retried(recorded_sleeps):
    delays, fake_sleep = recorded_sleeps
    calls, scenario = _run_failing(BackoffPolicy(max_retries=5), lambda n: PermanentFetchError("HTTP 404"), fake_sleep)

    with pytest.raises(PermanentFetchError):
        asyncio.run(scenario())

    assert calls == [1]
    assert delays == []


def test_foreign_exceptions_are_not_retried(recorded_sleeps):
    delays, fake_sleep = recorded_sleeps
    calls, scenario = _run_failing(BackoffPolicy(max_retries=5), lambda n: KeyError("bug"), fake_sleep)

    with pytest.raises(KeyError):
        asyncio.run(scenario())

    assert calls == [1]
