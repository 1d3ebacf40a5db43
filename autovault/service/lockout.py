from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from autovault.storage.models import Account, utcnow


@dataclass(frozen=True)
class LockoutPolicy:
    """Thresholds and durations for the credential and MFA ladders."""

    threshold: int = 5
    lock_duration: timedelta = timedelta(minutes=60)
    mfa_threshold: int = 5
    mfa_lock_duration: timedelta = timedelta(minutes=30)

    @classmethod
    def from_settings(cls, settings) -> "LockoutPolicy":
        return cls(
            threshold=settings.lockout_threshold,
            lock_duration=timedelta(minutes=settings.lockout_minutes),
            mfa_threshold=settings.mfa_lockout_threshold,
            mfa_lock_duration=timedelta(minutes=settings.mfa_lockout_minutes),
        )


def is_locked(account: Account, now: Optional[datetime] = None) -> bool:
    """Recomputed from the lock expiry on every call; nothing sweeps locks."""
    if account.locked_until is None:
        return False
    return account.locked_until > (now or utcnow())


def minutes_remaining(account: Account, now: Optional[datetime] = None) -> int:
    if not is_locked(account, now):
        return 0
    seconds = (account.locked_until - (now or utcnow())).total_seconds()
    return max(1, math.ceil(seconds / 60))


def locked_message(account: Account, now: Optional[datetime] = None) -> str:
    minutes = minutes_remaining(account, now)
    return (
        "🚫 ACCOUNT LOCKED: Your account is temporarily locked due to multiple failed "
        f"attempts or security violations. Try again in {minutes} minutes."
    )
