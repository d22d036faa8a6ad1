"""Tests for the remote retry policy."""

from __future__ import annotations

from dataclasses import dataclass, field

import pytest

from ytmb.sync.remote import (
    RemoteCatalogError,
    RemoteTimeoutError,
    RetryPolicy,
    TransientRemoteError,
    retry_remote,
)


@dataclass(frozen=True)
class _RecordingPolicy(RetryPolicy):
    """Records the backoff it would have used and does not wait."""

    delays: list[float] = field(default_factory=list)

    def delay_for(self, attempt: int) -> float:
        self.delays.append(super().delay_for(attempt))
        return 0.0


class _Flaky:
    def __init__(self, *errors: Exception, result: str = "ok") -> None:
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def test_delay_doubles_per_attempt():
    policy = RetryPolicy(attempts=4, base_delay=0.5)
    assert [policy.delay_for(i) for i in range(3)] == [0.5, 1.0, 2.0]


@pytest.mark.asyncio
async def test_success_needs_no_retry():
    call = _Flaky()
    policy = _RecordingPolicy()
    assert await retry_remote(call, policy, operation="op") == "ok"
    assert call.calls == 1
    assert policy.delays == []


@pytest.mark.asyncio
async def test_transient_errors_are_retried_with_backoff():
    call = _Flaky(TransientRemoteError("503"), RemoteTimeoutError("slow"))
    policy = _RecordingPolicy(attempts=3, base_delay=1.0)
    assert await retry_remote(call, policy, operation="op") == "ok"
    assert call.calls == 3
    assert policy.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_exhausted_retries_reraise_last_error():
    call = _Flaky(*(TransientRemoteError(f"503 #{i}") for i in range(3)))
    policy = _RecordingPolicy(attempts=3, base_delay=1.0)
    with pytest.raises(TransientRemoteError, match="#2"):
        await retry_remote(call, policy, operation="op")
    assert call.calls == 3
    assert len(policy.delays) == 2


@pytest.mark.asyncio
async def test_non_transient_error_is_not_retried():
    call = _Flaky(RemoteCatalogError("403"))
    policy = _RecordingPolicy(attempts=5)
    with pytest.raises(RemoteCatalogError, match="403"):
        await retry_remote(call, policy, operation="op")
    assert call.calls == 1
    assert policy.delays == []


@pytest.mark.asyncio
async def test_single_attempt_policy():
    call = _Flaky(TransientRemoteError("503"))
    policy = _RecordingPolicy(attempts=1)
    with pytest.raises(TransientRemoteError):
        await retry_remote(call, policy, operation="op")
    assert call.calls == 1
