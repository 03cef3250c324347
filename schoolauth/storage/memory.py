from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional

from schoolauth.logging import get_logger
from schoolauth.storage.errors import ConstraintViolation
from schoolauth.storage.models import Account, AccountStatus, AuditLogEntry, Role, utcnow


class MemoryStore:
    """In-process credential store used by tests and local development.

    Accounts are handed out as copies so callers never mutate stored rows
    without going through one of the update methods.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.audit_log: List[AuditLogEntry] = []
        # RLock so helpers can re-enter while holding the data lock
        self._data_lock = threading.RLock()

    def _get(self, account_id: str) -> Optional[Account]:
        return self.accounts.get(account_id)

    def _touch(self, account: Account) -> Account:
        account.updated_at = utcnow()
        return replace(account)

    def find_by_email_or_username(self, identifier: str) -> Optional[Account]:
        needle = (identifier or "").strip().lower()
        if not needle:
            return None
        with self._data_lock:
            for account in self.accounts.values():
                if account.email == needle or account.username.lower() == needle:
                    return replace(account)
            return None

    def find_by_id(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self._get(account_id)
            return replace(account) if account else None

    def username_exists(self, username: str) -> bool:
        needle = username.lower()
        with self._data_lock:
            return any(a.username.lower() == needle for a in self.accounts.values())

    def insert_account(self, account: Account) -> Account:
        with self._data_lock:
            email = account.email.lower()
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if self.username_exists(account.username):
                raise ConstraintViolation("username already exists", {"field": "username"})
            stored = replace(account, email=email)
            self.accounts[stored.id] = stored
            return replace(stored)

    def update_lockout_fields(
        self,
        account_id: str,
        *,
        failed_login_count: int,
        locked_until: Optional[datetime],
        status: AccountStatus,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self._get(account_id)
            if not account:
                return None
            account.failed_login_count = failed_login_count
            account.locked_until = locked_until
            account.status = status
            return self._touch(account)

    def update_verification(
        self, account_id: str, *, verified: bool, verified_at: Optional[datetime]
    ) -> Optional[Account]:
        with self._data_lock:
            account = self._get(account_id)
            if not account:
                return None
            account.verified = verified
            account.email_verified_at = verified_at
            return self._touch(account)

    def update_reset_token(
        self, account_id: str, token: str, expires_at: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            account = self._get(account_id)
            if not account:
                return None
            account.reset_token = token
            account.reset_token_expires = expires_at
            return self._touch(account)

    def clear_reset_token(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self._get(account_id)
            if not account:
                return None
            account.reset_token = None
            account.reset_token_expires = None
            return self._touch(account)

    def update_password_hash(
        self,
        account_id: str,
        password_hash: str,
        *,
        password_algo: str = "argon2id",
        clear_reset: bool = False,
        clear_lockout: bool = False,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self._get(account_id)
            if not account:
                return None
            account.password_hash = password_hash
            account.password_algo = password_algo
            if clear_reset:
                account.reset_token = None
                account.reset_token_expires = None
            if clear_lockout:
                account.failed_login_count = 0
                account.locked_until = None
                if account.status == AccountStatus.LOCKED:
                    account.status = AccountStatus.ACTIVE
            return self._touch(account)

    def update_status(self, account_id: str, status: AccountStatus) -> Optional[Account]:
        with self._data_lock:
            account = self._get(account_id)
            if not account:
                return None
            account.status = status
            return self._touch(account)

    def update_role(self, account_id: str, role: Role) -> Optional[Account]:
        with self._data_lock:
            account = self._get(account_id)
            if not account:
                return None
            account.role = role
            return self._touch(account)

    def update_profile(
        self,
        account_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
        address: Optional[str] = None,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self._get(account_id)
            if not account:
                return None
            if first_name is not None:
                account.first_name = first_name
            if last_name is not None:
                account.last_name = last_name
            if phone is not None:
                account.phone = phone
            if address is not None:
                account.address = address
            return self._touch(account)

    def record_login(self, account_id: str, when: datetime) -> Optional[Account]:
        with self._data_lock:
            account = self._get(account_id)
            if not account:
                return None
            account.failed_login_count = 0
            account.locked_until = None
            if account.status == AccountStatus.LOCKED:
                account.status = AccountStatus.ACTIVE
            account.last_login = when
            return self._touch(account)

    def append_audit_entry(self, entry: AuditLogEntry) -> None:
        with self._data_lock:
            self.audit_log.append(entry)

    def list_audit_entries(
        self, account_id: Optional[str] = None, action: Optional[str] = None
    ) -> List[AuditLogEntry]:
        with self._data_lock:
            return [
                e
                for e in self.audit_log
                if (account_id is None or e.account_id == account_id)
                and (action is None or e.action == action)
            ]
