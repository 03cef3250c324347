"""Account lifecycle state machine.

The persisted row keeps ``verified``, ``status`` and ``locked_until`` as
separate columns. ``current_state`` folds them into a single tag and
``transition`` is the only place that decides how an event moves an
account between tags, so impossible combinations (locked and deleted,
suspended with a live lock window) never get written back.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta
from enum import Enum

from schoolauth.service.errors import ServiceError
from schoolauth.storage.models import Account, AccountStatus


class AccountState(str, Enum):
    UNVERIFIED = "unverified"
    ACTIVE = "active"
    LOCKED = "locked"
    SUSPENDED = "suspended"
    DELETED = "deleted"


class AccountEvent(str, Enum):
    VERIFY_EMAIL = "verify_email"
    LOGIN_FAILED = "login_failed"
    LOGIN_SUCCEEDED = "login_succeeded"
    LOCK_EXPIRED = "lock_expired"
    UNLOCK = "unlock"
    PASSWORD_RESET = "password_reset"
    SUSPEND = "suspend"
    REINSTATE = "reinstate"
    DELETE = "delete"


class InvalidTransition(ServiceError):
    status_code = 409
    error_code = "invalid_transition"


def lock_active(account: Account, now: datetime) -> bool:
    return account.locked_until is not None and account.locked_until > now


def current_state(account: Account, now: datetime) -> AccountState:
    """Collapse the stored flags into one tag.

    Administrative status wins over an outstanding lock; a lock whose
    window has elapsed no longer counts.
    """
    if account.status == AccountStatus.DELETED:
        return AccountState.DELETED
    if account.status == AccountStatus.SUSPENDED:
        return AccountState.SUSPENDED
    if lock_active(account, now):
        return AccountState.LOCKED
    if not account.verified:
        return AccountState.UNVERIFIED
    return AccountState.ACTIVE


def _cleared(account: Account) -> Account:
    return replace(
        account,
        failed_login_count=0,
        locked_until=None,
        status=AccountStatus.ACTIVE,
    )


def transition(
    account: Account,
    event: AccountEvent,
    now: datetime,
    *,
    threshold: int = 5,
    lock_duration: timedelta = timedelta(hours=2),
) -> Account:
    """Apply ``event`` and return the updated copy of ``account``.

    Raises ``InvalidTransition`` for events that make no sense from the
    account's current state (for example a login against a deleted
    account, or reinstating an account that was never suspended).
    """
    state = current_state(account, now)

    if event == AccountEvent.DELETE:
        if state == AccountState.DELETED:
            raise InvalidTransition("account already deleted")
        return replace(account, status=AccountStatus.DELETED, locked_until=None)

    if state == AccountState.DELETED:
        raise InvalidTransition("account is deleted", detail={"event": event.value})

    if event == AccountEvent.SUSPEND:
        if state == AccountState.SUSPENDED:
            raise InvalidTransition("account already suspended")
        return replace(account, status=AccountStatus.SUSPENDED, locked_until=None, failed_login_count=0)

    if event == AccountEvent.REINSTATE:
        if state != AccountState.SUSPENDED:
            raise InvalidTransition("account is not suspended")
        return _cleared(account)

    if event == AccountEvent.VERIFY_EMAIL:
        if account.verified:
            return account
        return replace(account, verified=True, email_verified_at=now)

    if state == AccountState.SUSPENDED:
        raise InvalidTransition("account is suspended", detail={"event": event.value})

    if event == AccountEvent.LOCK_EXPIRED:
        if state == AccountState.LOCKED:
            raise InvalidTransition("lock window has not elapsed")
        if account.locked_until is None and account.status != AccountStatus.LOCKED:
            return account
        return _cleared(account)

    if event in (AccountEvent.UNLOCK, AccountEvent.PASSWORD_RESET):
        return _cleared(account)

    if event == AccountEvent.LOGIN_SUCCEEDED:
        if state == AccountState.LOCKED:
            raise InvalidTransition("account is locked")
        return replace(_cleared(account), last_login=now)

    if event == AccountEvent.LOGIN_FAILED:
        if state == AccountState.LOCKED:
            raise InvalidTransition("account is locked")
        attempts = account.failed_login_count + 1
        if attempts >= threshold:
            return replace(
                account,
                failed_login_count=attempts,
                locked_until=now + lock_duration,
                status=AccountStatus.LOCKED,
            )
        return replace(account, failed_login_count=attempts)

    raise InvalidTransition(f"unsupported event {event.value}")
