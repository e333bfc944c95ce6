"""Tests for the pending-retry store."""
from __future__ import annotations

import pytest

from heimerdinger.engine.errors import RetryExpiredError
from heimerdinger.engine.models import PendingRetry, PermissionDenial
from heimerdinger.engine.retry import RetryWorkflow, new_retry_id


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def _pending(prompt: str = "fix it", channel: str = "c1") -> PendingRetry:
    return PendingRetry(
        prompt=prompt,
        project_path="/repo/a",
        channel_id=channel,
        session_id="s1",
        denials=[PermissionDenial("Bash", "tu1", {"command": "rm -rf build"})],
    )


def test_retry_ids_are_unique_and_prefixed():
    ids = {new_retry_id() for _ in range(50)}
    assert len(ids) == 50
    assert all(i.startswith("retry_") and len(i) == len("retry_") + 12 for i in ids)


def test_claim_returns_snapshot_once():
    retries = RetryWorkflow()
    retry_id = retries.offer(_pending())

    pending = retries.claim(retry_id)

    assert pending.prompt == "fix it"
    assert pending.session_id == "s1"
    assert pending.denials[0].tool_name == "Bash"
    with pytest.raises(RetryExpiredError):
        retries.claim(retry_id)


def test_claim_unknown_id_raises():
    with pytest.raises(RetryExpiredError) as exc_info:
        RetryWorkflow().claim("retry_nope")
    assert exc_info.value.retry_id == "retry_nope"


def test_cancel_removes_offer():
    retries = RetryWorkflow()
    retry_id = retries.offer(_pending())

    assert retries.cancel(retry_id) is True
    assert retries.cancel(retry_id) is False
    assert retry_id not in retries
    with pytest.raises(RetryExpiredError):
        retries.claim(retry_id)


def test_offers_expire_after_ttl():
    clock = FakeClock()
    retries = RetryWorkflow(ttl_seconds=60, clock=clock)
    old = retries.offer(_pending("old"))
    clock.now += 30
    fresh = retries.offer(_pending("fresh"))

    clock.now += 31
    assert old not in retries
    assert fresh in retries
    with pytest.raises(RetryExpiredError):
        retries.claim(old)
    assert retries.claim(fresh).prompt == "fresh"


def test_zero_ttl_never_expires():
    clock = FakeClock()
    retries = RetryWorkflow(ttl_seconds=0, clock=clock)
    retry_id = retries.offer(_pending())
    clock.now += 10 ** 9
    assert retries.claim(retry_id).prompt == "fix it"


def test_capacity_evicts_oldest():
    retries = RetryWorkflow(max_pending=2)
    first = retries.offer(_pending("one"))
    second = retries.offer(_pending("two"))
    third = retries.offer(_pending("three"))

    assert len(retries) == 2
    assert first not in retries
    assert second in retries and third in retries
