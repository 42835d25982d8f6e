from datetime import datetime, timedelta, timezone
from typing import Collection, Dict, List

import pytest

from openrouter_proxy.errors import PoolExhausted, UpstreamError
from openrouter_proxy.key_pool import CredentialPool
from openrouter_proxy.retry import RetryCoordinator
from openrouter_proxy.store import InMemoryCredentialStore


START = datetime(2026, 2, 14, 10, 0, 0, tzinfo=timezone.utc)


class FakeEventSink:
    def __init__(self):
        self.names: List[str] = []

    def emit(self, event: str, fields: Dict[str, object]) -> None:
        self.names.append(event)


class ScriptedAttempt:
    """Attempt function that replays a list of outcomes."""

    def __init__(self, outcomes: List[object]):
        self.outcomes = outcomes
        self.secrets: List[str] = []

    async def __call__(self, secret: str) -> object:
        self.secrets.append(secret)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakePool:
    def __init__(self, secrets: List[str], rate_limits_reported: bool = True):
        self.secrets = secrets
        self.exclusions: List[List[str]] = []
        self.successes = 0
        self.failures: List[UpstreamError] = []
        self.rate_limits_reported = rate_limits_reported

    async def get_credential(self, exclude: Collection[str] = ()) -> str:
        self.exclusions.append(list(exclude))
        for secret in self.secrets:
            if secret not in exclude:
                return secret
        if not self.secrets:
            raise PoolExhausted()
        return self.secrets[0]

    async def report_success(self) -> None:
        self.successes += 1

    async def report_failure(self, error: BaseException) -> bool:
        self.failures.append(error)
        return self.rate_limits_reported and getattr(error, "is_rate_limit", False)


async def make_pool(secrets: List[str]) -> CredentialPool:
    pool = CredentialPool(
        InMemoryCredentialStore(), events=FakeEventSink(), clock=lambda: START
    )
    for secret in secrets:
        await pool.add_credential(secret)
    return pool


def test_rejects_zero_attempts():
    with pytest.raises(ValueError):
        RetryCoordinator(FakePool(["sk-1"]), max_attempts=0)


@pytest.mark.asyncio
async def test_success_on_first_attempt():
    pool = FakePool(["sk-1"])
    attempt = ScriptedAttempt(["ok"])

    result = await RetryCoordinator(pool).run(attempt)

    assert result == "ok"
    assert attempt.secrets == ["sk-1"]
    assert pool.successes == 1
    assert pool.failures == []


@pytest.mark.asyncio
async def test_client_error_is_not_retried():
    pool = FakePool(["sk-1", "sk-2"])
    attempt = ScriptedAttempt([UpstreamError(400, "Bad request"), "unused"])

    with pytest.raises(UpstreamError) as exc_info:
        await RetryCoordinator(pool).run(attempt)

    assert exc_info.value.status == 400
    assert attempt.secrets == ["sk-1"]
    assert len(pool.failures) == 1


@pytest.mark.asyncio
async def test_server_error_retries_with_other_key():
    pool = FakePool(["sk-1", "sk-2"])
    attempt = ScriptedAttempt([UpstreamError(502, "Bad gateway"), "ok"])

    result = await RetryCoordinator(pool).run(attempt)

    assert result == "ok"
    assert attempt.secrets == ["sk-1", "sk-2"]
    assert pool.exclusions == [[], ["sk-1"]]


@pytest.mark.asyncio
async def test_rate_limit_retries_without_exclusion():
    pool = FakePool(["sk-1", "sk-2"])
    attempt = ScriptedAttempt([UpstreamError(429, "Slow down"), "ok"])

    result = await RetryCoordinator(pool).run(attempt)

    assert result == "ok"
    assert pool.exclusions == [[], []]


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    pool = FakePool(["sk-1", "sk-2", "sk-3", "sk-4"])
    attempt = ScriptedAttempt([UpstreamError(500, f"boom {n}") for n in range(4)])

    with pytest.raises(UpstreamError) as exc_info:
        await RetryCoordinator(pool, max_attempts=3).run(attempt)

    assert exc_info.value.message == "boom 2"
    assert attempt.secrets == ["sk-1", "sk-2", "sk-3"]
    assert len(pool.failures) == 3
    assert pool.successes == 0


@pytest.mark.asyncio
async def test_pool_exhausted_propagates():
    pool = FakePool([])
    attempt = ScriptedAttempt(["unused"])

    with pytest.raises(PoolExhausted):
        await RetryCoordinator(pool).run(attempt)

    assert attempt.secrets == []


@pytest.mark.asyncio
async def test_server_error_rotation_updates_both_keys():
    pool = await make_pool(["sk-1", "sk-2", "sk-3"])
    attempt = ScriptedAttempt([UpstreamError(500, "Internal error"), {"id": "two"}])

    result = await RetryCoordinator(pool).run(attempt)

    assert result == {"id": "two"}
    assert len(attempt.secrets) == 2
    assert attempt.secrets[0] != attempt.secrets[1]

    first = await pool.store.get_by_secret(attempt.secrets[0])
    second = await pool.store.get_by_secret(attempt.secrets[1])
    assert first.failure_count == 1
    assert first.last_used_at is None
    assert second.last_used_at == START
    assert second.failure_count == 0


@pytest.mark.asyncio
async def test_rate_limit_on_single_key_exhausts_pool():
    pool = await make_pool(["sk-1"])
    await pool.initialize()
    reset_at = START + timedelta(seconds=30)
    attempt = ScriptedAttempt([UpstreamError(429, "Rate limited", reset_at=reset_at)])

    with pytest.raises(PoolExhausted):
        await RetryCoordinator(pool).run(attempt)

    record = await pool.store.get("key_1")
    assert record.rate_limit_reset_at == reset_at
    assert pool.current_id is None
    assert pool.events.names.count("Rate Limit Hit") == 1


@pytest.mark.asyncio
async def test_rate_limit_rotates_to_next_key():
    pool = await make_pool(["sk-1", "sk-2"])
    attempt = ScriptedAttempt([UpstreamError(429, "Rate limited"), "ok"])

    result = await RetryCoordinator(pool).run(attempt)

    assert result == "ok"
    assert attempt.secrets == ["sk-1", "sk-2"]
    assert pool.current_id == "key_2"


@pytest.mark.asyncio
async def test_single_key_server_error_retries_same_key():
    pool = await make_pool(["sk-1"])
    attempt = ScriptedAttempt([UpstreamError(503, "Unavailable"), "ok"])

    result = await RetryCoordinator(pool).run(attempt)

    assert result == "ok"
    assert attempt.secrets == ["sk-1", "sk-1"]
    assert (await pool.store.get("key_1")).failure_count == 0
