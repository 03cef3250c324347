from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from schoolauth.service.accounts import (
    AccountEvent,
    current_state,
    AccountState,
    lock_active,
    transition,
)
from schoolauth.storage.models import Account, AccountStatus


@dataclass(frozen=True)
class LockoutDecision:
    account: Account
    locked: bool
    attempts: int
    locked_until: Optional[datetime]


class LockoutPolicy:
    """Consecutive-failure lockout evaluated lazily against ``now``.

    No background sweeper: an expired window is released the next time
    the account is looked at.
    """

    def __init__(self, threshold: int = 5, duration: timedelta = timedelta(hours=2)) -> None:
        if threshold <= 0:
            raise ValueError("lockout threshold must be positive")
        self.threshold = threshold
        self.duration = duration

    @classmethod
    def from_settings(cls, settings) -> "LockoutPolicy":
        return cls(
            threshold=settings.lockout_threshold,
            duration=timedelta(minutes=settings.lockout_duration_minutes),
        )

    def is_locked(self, account: Account, now: datetime) -> bool:
        return lock_active(account, now)

    def needs_release(self, account: Account, now: datetime) -> bool:
        """True when the stored row still carries a lock that has elapsed."""
        if lock_active(account, now):
            return False
        return account.locked_until is not None or account.status == AccountStatus.LOCKED

    def release_if_expired(self, account: Account, now: datetime) -> Account:
        if not self.needs_release(account, now):
            return account
        if current_state(account, now) in (AccountState.SUSPENDED, AccountState.DELETED):
            return account
        return transition(account, AccountEvent.LOCK_EXPIRED, now)

    def record_failure(self, account: Account, now: datetime) -> LockoutDecision:
        updated = transition(
            account,
            AccountEvent.LOGIN_FAILED,
            now,
            threshold=self.threshold,
            lock_duration=self.duration,
        )
        return LockoutDecision(
            account=updated,
            locked=updated.locked_until is not None,
            attempts=updated.failed_login_count,
            locked_until=updated.locked_until,
        )

    def record_success(self, account: Account, now: datetime) -> Account:
        return transition(account, AccountEvent.LOGIN_SUCCEEDED, now)

    def unlock(self, account: Account, now: datetime) -> Account:
        return transition(account, AccountEvent.UNLOCK, now)

    def remaining_attempts(self, account: Account) -> int:
        return max(0, self.threshold - account.failed_login_count)
