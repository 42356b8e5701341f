from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def lease_expired(job: dict[str, Any], now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    lease = job.get("lease_expires_at")
    if not lease:
        return False

    if isinstance(lease, str):
        lease = datetime.fromisoformat(lease.replace("Z", "+00:00"))

    return lease <= now


def should_requeue(job: dict[str, Any], now: datetime | None = None) -> bool:
    return job.get("status") == "claimed" and lease_expired(job, now=now)


def attempts_exhausted(job: dict[str, Any]) -> bool:
    return int(job.get("attempt") or 0) >= int(job.get("max_attempts") or 1)


def retry_delay_seconds(attempt: int, base_seconds: float) -> float:
    """Exponential backoff for lane retries: ``base * 2 ** (attempt - 1)``."""
    if base_seconds <= 0:
        return 0.0
    return base_seconds * (2 ** max(0, attempt - 1))
