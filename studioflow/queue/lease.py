"""Single-holder, time-bounded leases on queued tasks.

The manager holds no lock of its own: every call happens inside the task
queue's critical section. Expiry is evaluated against the ``now`` passed by
the caller, so there is no timer thread; the queue checks expiry lazily on
each access and the sweeper bounds staleness.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from studioflow.errors import LeaseExpiredError, LeaseMismatchError, QueueConflictError

from .models import Lease

logger = logging.getLogger("studioflow.queue.lease")


class LeaseManager:
    def __init__(self) -> None:
        self._leases: dict[str, Lease] = {}

    def __len__(self) -> int:
        return len(self._leases)

    def get(self, task_id: str) -> Lease | None:
        return self._leases.get(task_id)

    def grant(self, task_id: str, holder: str, ttl_s: float, now: datetime) -> Lease:
        """Grant a lease, or renew it when ``holder`` already owns an unexpired one.

        Raises:
            QueueConflictError: another holder owns an unexpired lease.
        """

        existing = self._leases.get(task_id)
        if existing is not None and not existing.is_expired(now):
            if existing.holder != holder:
                raise QueueConflictError(task_id, holder)
            renewed = existing.extended(now, ttl_s)
            self._leases[task_id] = renewed
            logger.debug("lease_renewed", extra={"task_id": task_id, "holder": holder})
            return renewed
        lease = Lease(
            task_id=task_id,
            holder=holder,
            granted_at=now,
            expires_at=now + timedelta(seconds=ttl_s),
        )
        self._leases[task_id] = lease
        return lease

    def renew(self, task_id: str, holder: str, ttl_s: float, now: datetime) -> Lease:
        lease = self.validate(task_id, holder, now)
        renewed = lease.extended(now, ttl_s)
        self._leases[task_id] = renewed
        return renewed

    def validate(self, task_id: str, holder: str, now: datetime) -> Lease:
        """Return the lease owned by ``holder``.

        Raises:
            LeaseMismatchError: no lease, or it belongs to another holder.
            LeaseExpiredError: the holder's lease is past ``expires_at``.
        """

        lease = self._leases.get(task_id)
        if lease is None or lease.holder != holder:
            raise LeaseMismatchError(task_id, holder)
        if lease.is_expired(now):
            raise LeaseExpiredError(task_id, holder)
        return lease

    def release(self, task_id: str) -> Lease | None:
        return self._leases.pop(task_id, None)

    def expired(self, now: datetime) -> list[Lease]:
        return [lease for lease in self._leases.values() if lease.is_expired(now)]

    def held_by(self, holder: str, now: datetime) -> list[Lease]:
        """Unexpired leases owned by ``holder``, oldest grant first."""

        leases = [
            lease
            for lease in self._leases.values()
            if lease.holder == holder and not lease.is_expired(now)
        ]
        leases.sort(key=lambda lease: lease.granted_at)
        return leases


__all__ = ["LeaseManager"]
