"""
Workflow lock lease (``workflow_kernel.domain.lease``).

Responsibility
--------------
The advisory single-writer claim on a workflow instance, modelled as an
explicit lease: owner, acquisition time, timeout and a per-acquisition
token.

Invariants enforced
-------------------
* A lease is immutable; renewal replaces it with a new token.
* Age is measured with the injected clock; a lease whose age is
  ``>= timeout_ms`` is expired and may be reclaimed by anyone.
* Between expiry and the original holder noticing, two callers may both
  believe they hold the lock.  Token comparison lets the original holder
  detect that its lease was reclaimed.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from uuid import uuid4

DEFAULT_LOCK_TIMEOUT_MS = 30_000


@dataclass(frozen=True)
class WorkflowLease:
    owner_id: str
    acquired_at: datetime
    timeout_ms: int = DEFAULT_LOCK_TIMEOUT_MS
    token: str = field(default_factory=lambda: uuid4().hex)

    def age_ms(self, now: datetime) -> float:
        return (now - self.acquired_at).total_seconds() * 1000

    def is_expired(self, now: datetime, timeout_ms: int | None = None) -> bool:
        limit = self.timeout_ms if timeout_ms is None else timeout_ms
        return self.age_ms(now) >= limit

    def remaining_seconds(self, now: datetime, timeout_ms: int | None = None) -> int:
        """Whole seconds (rounded up) until the lease may be reclaimed."""
        limit = self.timeout_ms if timeout_ms is None else timeout_ms
        return max(0, math.ceil((limit - self.age_ms(now)) / 1000))

    def to_dict(self) -> dict[str, object]:
        return {
            "owner_id": self.owner_id,
            "acquired_at": self.acquired_at.isoformat(),
            "timeout_ms": self.timeout_ms,
        }
