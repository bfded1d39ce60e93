from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest

from studioflow.errors import LeaseExpiredError, LeaseMismatchError, QueueConflictError
from studioflow.queue import LeaseManager

T0 = datetime(2024, 1, 1, tzinfo=UTC)


def test_grant_rejects_second_holder() -> None:
    leases = LeaseManager()
    leases.grant("t1", "a", 5, T0)

    with pytest.raises(QueueConflictError):
        leases.grant("t1", "b", 5, T0 + timedelta(seconds=1))


def test_same_holder_regrant_extends_expiry() -> None:
    leases = LeaseManager()
    first = leases.grant("t1", "a", 5, T0)
    second = leases.grant("t1", "a", 5, T0 + timedelta(seconds=3))

    assert second.granted_at == first.granted_at
    assert second.expires_at == T0 + timedelta(seconds=8)
    assert len(leases) == 1


def test_expired_lease_can_be_taken_over() -> None:
    leases = LeaseManager()
    leases.grant("t1", "a", 5, T0)

    lease = leases.grant("t1", "b", 5, T0 + timedelta(seconds=5))
    assert lease.holder == "b"


def test_validate_distinguishes_mismatch_and_expiry() -> None:
    leases = LeaseManager()
    leases.grant("t1", "a", 5, T0)

    assert leases.validate("t1", "a", T0).holder == "a"
    with pytest.raises(LeaseMismatchError):
        leases.validate("t1", "b", T0)
    with pytest.raises(LeaseExpiredError):
        leases.validate("t1", "a", T0 + timedelta(seconds=6))
    with pytest.raises(LeaseMismatchError):
        leases.validate("unknown", "a", T0)


def test_held_by_and_expired() -> None:
    leases = LeaseManager()
    leases.grant("t2", "a", 10, T0 + timedelta(seconds=1))
    leases.grant("t1", "a", 10, T0)
    leases.grant("t3", "b", 2, T0)

    later = T0 + timedelta(seconds=3)
    assert [lease.task_id for lease in leases.held_by("a", later)] == ["t1", "t2"]
    assert [lease.task_id for lease in leases.expired(later)] == ["t3"]
    assert leases.release("t3") is not None
    assert leases.release("t3") is None
