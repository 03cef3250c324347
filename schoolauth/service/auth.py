from __future__ import annotations

import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from schoolauth.config import Settings
from schoolauth.logging import get_logger, redact_email
from schoolauth.service.accounts import (
    AccountEvent,
    AccountState,
    InvalidTransition,
    current_state,
    transition,
)
from schoolauth.service.audit import AuditAction, AuditEmitter
from schoolauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from schoolauth.service.lockout import LockoutPolicy
from schoolauth.service.notifications import NotificationDispatcher, TemplateKind
from schoolauth.service.tokens import TokenClaims, TokenCodec, TokenKind
from schoolauth.service.validators import (
    is_valid_email,
    is_valid_name,
    is_valid_phone,
    normalize_email,
    parse_full_name,
    parse_role,
    require_strong_password,
    unique_username,
)
from schoolauth.storage.errors import ConstraintViolation
from schoolauth.storage.models import Account, AccountStatus, AuditLogEntry, Role

logger = get_logger(__name__)

GENERIC_RESET_MESSAGE = (
    "If an account exists for this email, a password reset link has been sent"
)
GENERIC_VERIFICATION_MESSAGE = (
    "If an account exists for this email and is not yet verified, a verification link has been sent"
)


class CredentialStore(Protocol):
    def find_by_email_or_username(self, identifier: str) -> Optional[Account]: ...

    def find_by_id(self, account_id: str) -> Optional[Account]: ...

    def username_exists(self, username: str) -> bool: ...

    def insert_account(self, account: Account) -> Account: ...

    def update_lockout_fields(
        self,
        account_id: str,
        *,
        failed_login_count: int,
        locked_until: Optional[datetime],
        status: AccountStatus,
    ) -> Optional[Account]: ...

    def update_verification(
        self, account_id: str, *, verified: bool, verified_at: Optional[datetime]
    ) -> Optional[Account]: ...

    def update_reset_token(
        self, account_id: str, token: str, expires_at: datetime
    ) -> Optional[Account]: ...

    def clear_reset_token(self, account_id: str) -> Optional[Account]: ...

    def update_password_hash(
        self,
        account_id: str,
        password_hash: str,
        *,
        password_algo: str = "argon2id",
        clear_reset: bool = False,
        clear_lockout: bool = False,
    ) -> Optional[Account]: ...

    def update_status(self, account_id: str, status: AccountStatus) -> Optional[Account]: ...

    def update_profile(
        self,
        account_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
        address: Optional[str] = None,
    ) -> Optional[Account]: ...

    def record_login(self, account_id: str, when: datetime) -> Optional[Account]: ...

    def append_audit_entry(self, entry: AuditLogEntry) -> None: ...


@dataclass(frozen=True)
class ClientInfo:
    ip: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass(frozen=True)
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    token_type: str = "Bearer"


@dataclass(frozen=True)
class LoginResult:
    account: Account
    tokens: TokenPair


@dataclass(frozen=True)
class Registration:
    account: Account
    verification_token: str


@dataclass(frozen=True)
class AuthContext:
    account: Account
    claims: TokenClaims
    token: str


_NO_CLIENT = ClientInfo()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthService:
    """Registration, login, token and recovery flows over a credential store."""

    def __init__(
        self,
        store: CredentialStore,
        tokens: TokenCodec,
        lockout: LockoutPolicy,
        audit: AuditEmitter,
        notifications: NotificationDispatcher,
        settings: Settings,
        *,
        clock: Callable[[], datetime] = _utcnow,
        password_hasher: Optional[PasswordHasher] = None,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.lockout = lockout
        self.audit = audit
        self.notifications = notifications
        self.settings = settings
        self._clock = clock
        self._pwd_hasher = password_hasher or PasswordHasher(type=Type.ID)
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    # -- passwords ------------------------------------------------------

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, account: Account, password: str) -> bool:
        if account.password_algo != "argon2id":
            self.logger.warning(
                "password_algo_mismatch", account_id=account.id, algo=account.password_algo
            )
            return False
        try:
            return self._pwd_hasher.verify(account.password_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def _equalize_unknown_account(self, password: str) -> None:
        # keep unknown identifiers as slow as a real mismatch
        if self._dummy_hash is None:
            self._dummy_hash = self._hash_password("unused-Passw0rd!")
        try:
            self._pwd_hasher.verify(self._dummy_hash, password)
        except (InvalidHash, VerificationError):
            pass

    def _issue_pair(self, account: Account, *, remember_me: bool = False) -> TokenPair:
        return TokenPair(
            access_token=self.tokens.issue_access(account),
            refresh_token=self.tokens.issue_refresh(account, remember_me=remember_me),
            expires_in=self.tokens.access_ttl_seconds,
        )

    def _require_account(self, account_id: str) -> Account:
        account = self.store.find_by_id(account_id)
        if not account or account.status == AccountStatus.DELETED:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        return account

    # -- registration and verification ----------------------------------

    async def register(
        self,
        email: str,
        password: str,
        *,
        name: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        confirm_password: Optional[str] = None,
        role: Optional[str] = None,
        phone: Optional[str] = None,
        address: Optional[str] = None,
        date_of_birth: Optional[str] = None,
        client: ClientInfo = _NO_CLIENT,
    ) -> Registration:
        email = normalize_email(email)
        require_strong_password(password)
        if confirm_password is not None and confirm_password != password:
            raise ValidationError("Passwords do not match", detail={"field": "confirm_password"})
        full_name = (name or " ".join(p for p in (first_name, last_name) if p) or "").strip()
        if not is_valid_name(full_name):
            raise ValidationError(
                "Name must be between 2 and 50 characters", detail={"field": "name"}
            )
        account_role = parse_role(role)
        if not is_valid_phone(phone):
            raise ValidationError("Please provide a valid phone number", detail={"field": "phone"})

        if self.store.find_by_email_or_username(email):
            raise ConflictError("An account with this email already exists", detail={"field": "email"})

        parsed = parse_full_name(full_name, email, self._now())
        username = unique_username(parsed.username_base, self.store.username_exists)
        account = Account.new(
            email,
            username,
            self._hash_password(password),
            role=account_role,
            first_name=parsed.first_name,
            last_name=parsed.last_name,
            phone=phone or None,
            address=address or None,
            date_of_birth=date_of_birth or None,
        )
        try:
            account = self.store.insert_account(account)
        except ConstraintViolation as exc:
            raise ConflictError(
                "An account with this email already exists", detail=exc.detail
            ) from exc

        token = self.tokens.issue_verification(account)
        self.notifications.dispatch(
            TemplateKind.VERIFICATION, account.email, {"name": account.display_name, "token": token}
        )
        self.audit.record(
            AuditAction.USER_CREATED,
            account.id,
            details=f"Account registered as {account.role.value}",
            ip=client.ip,
            user_agent=client.user_agent,
            metadata={"role": account.role.value, "username": account.username},
        )
        self.logger.info(
            "account_registered", account_id=account.id, email=redact_email(account.email)
        )
        return Registration(account=account, verification_token=token)

    async def verify_email(self, token: str, *, client: ClientInfo = _NO_CLIENT) -> tuple[Account, bool]:
        """Mark the token's account verified.

        Returns ``(account, already_verified)``; verifying twice is not an error.
        """
        claims = self.tokens.verify(token, TokenKind.VERIFY)
        account = self.store.find_by_id(claims.subject)
        if not account or account.email != claims.raw.get("email", account.email):
            raise AuthenticationError("invalid token", error_code="invalid_token")
        if account.verified:
            return account, True
        try:
            verified = transition(account, AccountEvent.VERIFY_EMAIL, self._now())
        except InvalidTransition:
            raise AuthenticationError("invalid token", error_code="invalid_token") from None
        updated = self.store.update_verification(
            account.id, verified=True, verified_at=verified.email_verified_at
        ) or verified
        self.audit.record(
            AuditAction.EMAIL_VERIFIED,
            account.id,
            details="Email address verified",
            ip=client.ip,
            user_agent=client.user_agent,
        )
        self.notifications.dispatch(
            TemplateKind.WELCOME, updated.email, {"name": updated.display_name}
        )
        return updated, False

    async def resend_verification(self, email: str, *, client: ClientInfo = _NO_CLIENT) -> str:
        normalized = normalize_email(email)
        account = self.store.find_by_email_or_username(normalized)
        if account and current_state(account, self._now()) == AccountState.UNVERIFIED:
            token = self.tokens.issue_verification(account)
            self.notifications.dispatch(
                TemplateKind.VERIFICATION_RESEND,
                account.email,
                {"name": account.display_name, "token": token},
            )
            self.audit.record(
                AuditAction.VERIFICATION_RESENT,
                account.id,
                ip=client.ip,
                user_agent=client.user_agent,
            )
        else:
            self.logger.info("verification_resend_skipped", email=redact_email(normalized))
        return GENERIC_VERIFICATION_MESSAGE

    # -- sessions -------------------------------------------------------

    def _login_failed(
        self, account_id: Optional[str], reason: str, client: ClientInfo, **metadata
    ) -> None:
        self.audit.record(
            AuditAction.LOGIN_FAILED,
            account_id,
            details=f"Login failed: {reason}",
            ip=client.ip,
            user_agent=client.user_agent,
            metadata={"reason": reason, **metadata},
        )

    async def login(
        self,
        identifier: str,
        password: str,
        *,
        remember_me: bool = False,
        client: ClientInfo = _NO_CLIENT,
    ) -> LoginResult:
        now = self._now()
        account = self.store.find_by_email_or_username(identifier)
        if not account or account.status == AccountStatus.DELETED:
            self._equalize_unknown_account(password or "")
            self._login_failed(None, "unknown_account", client)
            raise AuthenticationError("invalid credentials")

        if account.status == AccountStatus.SUSPENDED:
            self._login_failed(account.id, "inactive", client)
            raise AuthenticationError("account is not active", error_code="account_inactive")

        if self.lockout.is_locked(account, now):
            locked_until = account.locked_until.isoformat()
            self._login_failed(account.id, "locked", client, locked_until=locked_until)
            raise AuthenticationError(
                f"account is temporarily locked until {locked_until}",
                error_code="account_locked",
                detail={"locked_until": locked_until},
            )

        if self.lockout.needs_release(account, now):
            account = self.lockout.release_if_expired(account, now)
            self.store.update_lockout_fields(
                account.id,
                failed_login_count=account.failed_login_count,
                locked_until=account.locked_until,
                status=account.status,
            )
            self.logger.info("account_lock_expired", account_id=account.id)

        if not self.verify_password(account, password or ""):
            decision = self.lockout.record_failure(account, now)
            self.store.update_lockout_fields(
                account.id,
                failed_login_count=decision.attempts,
                locked_until=decision.locked_until,
                status=decision.account.status,
            )
            self._login_failed(
                account.id,
                "bad_password",
                client,
                attempts=decision.attempts,
                remaining_attempts=self.lockout.remaining_attempts(decision.account),
                locked=decision.locked,
            )
            if decision.locked:
                self.audit.record(
                    AuditAction.ACCOUNT_LOCKED,
                    account.id,
                    details=f"Locked after {decision.attempts} failed attempts",
                    ip=client.ip,
                    user_agent=client.user_agent,
                    metadata={"locked_until": decision.locked_until.isoformat()},
                )
                self.logger.warning(
                    "account_locked", account_id=account.id, attempts=decision.attempts
                )
            raise AuthenticationError("invalid credentials")

        if self.settings.require_verified_login and not account.verified:
            self._login_failed(account.id, "unverified", client)
            raise AuthenticationError(
                "please verify your email before logging in", error_code="email_not_verified"
            )

        logged_in = self.lockout.record_success(account, now)
        account = self.store.record_login(account.id, now) or logged_in
        tokens = self._issue_pair(account, remember_me=remember_me)
        self.audit.record(
            AuditAction.LOGIN,
            account.id,
            details="Login successful",
            ip=client.ip,
            user_agent=client.user_agent,
            metadata={"remember_me": remember_me},
        )
        return LoginResult(account=account, tokens=tokens)

    async def logout(
        self,
        access_token: Optional[str],
        refresh_token: Optional[str] = None,
        *,
        client: ClientInfo = _NO_CLIENT,
    ) -> None:
        """Revoke the presented tokens. Repeating a logout is not an error."""
        claims: Optional[TokenClaims] = None
        if access_token:
            try:
                claims = self.tokens.verify(access_token, TokenKind.ACCESS)
            except AuthenticationError:
                claims = None
        if claims:
            self.tokens.revoke(access_token)
        if refresh_token:
            try:
                refresh_claims = self.tokens.verify(refresh_token, TokenKind.REFRESH)
            except AuthenticationError:
                refresh_claims = None
            if refresh_claims and (claims is None or refresh_claims.subject == claims.subject):
                self.tokens.consume_refresh(refresh_claims)
        if claims:
            self.audit.record(
                AuditAction.LOGOUT,
                claims.subject,
                details="Logout",
                ip=client.ip,
                user_agent=client.user_agent,
            )

    async def refresh_token_pair(
        self, refresh_token: str, *, client: ClientInfo = _NO_CLIENT
    ) -> TokenPair:
        claims = self.tokens.verify(refresh_token, TokenKind.REFRESH)
        account = self.store.find_by_id(claims.subject)
        if not account or current_state(account, self._now()) != AccountState.ACTIVE:
            self.logger.warning("refresh_rejected_inactive", account_id=claims.subject)
            raise AuthenticationError("account is not active", error_code="account_inactive")
        if self.settings.refresh_token_single_use and not self.tokens.consume_refresh(claims):
            self.logger.warning("refresh_token_replayed", account_id=account.id)
            raise AuthenticationError("token has been revoked", error_code="token_revoked")
        pair = self._issue_pair(account, remember_me=bool(claims.raw.get("rem")))
        self.audit.record(
            AuditAction.TOKEN_REFRESHED,
            account.id,
            ip=client.ip,
            user_agent=client.user_agent,
        )
        return pair

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Resolve a ``Bearer`` header to a live account."""
        scheme, _, token = (authorization or "").partition(" ")
        token = token.strip()
        if scheme.lower() != "bearer" or not token:
            raise AuthenticationError("authentication required", error_code="unauthorized")
        claims = self.tokens.verify(token, TokenKind.ACCESS)
        account = self.store.find_by_id(claims.subject)
        if not account or account.status in (AccountStatus.DELETED, AccountStatus.SUSPENDED):
            raise AuthenticationError("account is not active", error_code="account_inactive")
        return AuthContext(account=account, claims=claims, token=token)

    # -- password recovery ----------------------------------------------

    @staticmethod
    def _reset_eligible(account: Optional[Account]) -> bool:
        # a lock does not block recovery, but an unverified email never gets a link
        if account is None or not account.verified:
            return False
        return account.status not in (AccountStatus.SUSPENDED, AccountStatus.DELETED)

    async def request_password_reset(self, email: str, *, client: ClientInfo = _NO_CLIENT) -> str:
        if not is_valid_email((email or "").strip().lower()):
            raise ValidationError("Please provide a valid email address", detail={"field": "email"})
        normalized = email.strip().lower()
        account = self.store.find_by_email_or_username(normalized)
        if not self._reset_eligible(account):
            state = current_state(account, self._now()) if account else None
            self.logger.info(
                "password_reset_skipped",
                email=redact_email(normalized),
                state=state.value if state else "missing",
                verified=bool(account and account.verified),
            )
            return GENERIC_RESET_MESSAGE

        token = self.tokens.issue_reset(account)
        expires_at = self._now() + self.tokens.ttl_for(TokenKind.RESET)
        self.store.update_reset_token(account.id, token, expires_at)
        self.notifications.dispatch(
            TemplateKind.PASSWORD_RESET,
            account.email,
            {"name": account.display_name, "token": token},
        )
        self.audit.record(
            AuditAction.PASSWORD_RESET_REQUESTED,
            account.id,
            ip=client.ip,
            user_agent=client.user_agent,
        )
        return GENERIC_RESET_MESSAGE

    async def reset_password(
        self,
        token: str,
        new_password: str,
        *,
        confirm_password: Optional[str] = None,
        client: ClientInfo = _NO_CLIENT,
    ) -> Account:
        claims = self.tokens.verify(token, TokenKind.RESET)
        now = self._now()
        account = self.store.find_by_id(claims.subject)
        invalid = AuthenticationError("invalid or expired reset token", error_code="invalid_token")
        if not account or not account.reset_token:
            raise invalid
        if not hmac.compare_digest(account.reset_token, token):
            raise invalid
        if account.reset_token_expires is None or account.reset_token_expires <= now:
            self.store.clear_reset_token(account.id)
            raise invalid
        if not self._reset_eligible(account):
            self.store.clear_reset_token(account.id)
            raise AuthenticationError("account is not active", error_code="account_inactive")

        require_strong_password(new_password)
        if confirm_password is not None and confirm_password != new_password:
            raise ValidationError("Passwords do not match", detail={"field": "confirm_password"})
        if self.verify_password(account, new_password):
            raise ValidationError(
                "New password must be different from the current password",
                detail={"field": "password"},
            )

        updated = self.store.update_password_hash(
            account.id,
            self._hash_password(new_password),
            clear_reset=True,
            clear_lockout=True,
        )
        self.audit.record(
            AuditAction.PASSWORD_RESET_COMPLETED,
            account.id,
            ip=client.ip,
            user_agent=client.user_agent,
        )
        self.notifications.dispatch(
            TemplateKind.PASSWORD_RESET_CONFIRMATION,
            account.email,
            {"name": account.display_name, "changed": False},
        )
        return updated or account

    async def change_password(
        self,
        account_id: str,
        current_password: str,
        new_password: str,
        *,
        confirm_password: Optional[str] = None,
        client: ClientInfo = _NO_CLIENT,
    ) -> Account:
        account = self._require_account(account_id)
        if not self.verify_password(account, current_password or ""):
            raise AuthenticationError("current password is incorrect")
        require_strong_password(new_password, field="new_password")
        if confirm_password is not None and confirm_password != new_password:
            raise ValidationError("Passwords do not match", detail={"field": "confirm_password"})
        if self.verify_password(account, new_password):
            raise ValidationError(
                "New password must be different from the current password",
                detail={"field": "new_password"},
            )
        updated = self.store.update_password_hash(account.id, self._hash_password(new_password))
        self.audit.record(
            AuditAction.PASSWORD_CHANGED,
            account.id,
            ip=client.ip,
            user_agent=client.user_agent,
        )
        self.notifications.dispatch(
            TemplateKind.PASSWORD_RESET_CONFIRMATION,
            account.email,
            {"name": account.display_name, "changed": True},
        )
        return updated or account

    async def update_profile(
        self,
        account_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone: Optional[str] = None,
        address: Optional[str] = None,
        client: ClientInfo = _NO_CLIENT,
    ) -> Account:
        account = self._require_account(account_id)
        changed: List[str] = []
        for field, value in (("first_name", first_name), ("last_name", last_name)):
            if value is None:
                continue
            if not is_valid_name(value):
                raise ValidationError(
                    "Name must be between 2 and 50 characters", detail={"field": field}
                )
            changed.append(field)
        if phone is not None:
            if not is_valid_phone(phone):
                raise ValidationError("Please provide a valid phone number", detail={"field": "phone"})
            changed.append("phone")
        if address is not None:
            changed.append("address")
        if not changed:
            return account
        updated = self.store.update_profile(
            account.id,
            first_name=first_name.strip() if first_name is not None else None,
            last_name=last_name.strip() if last_name is not None else None,
            phone=phone,
            address=address,
        )
        self.audit.record(
            AuditAction.PROFILE_UPDATED,
            account.id,
            ip=client.ip,
            user_agent=client.user_agent,
            metadata={"fields": changed},
        )
        return updated or account

    async def check_email(self, email: str) -> dict:
        normalized = normalize_email(email)
        account = self.store.find_by_email_or_username(normalized)
        exists = account is not None and account.email == normalized
        return {
            "exists": exists,
            "verified": bool(exists and account.verified),
            "available": not exists,
        }

    # -- administration -------------------------------------------------

    def _admin_transition(
        self,
        actor: Account,
        account_id: str,
        event: AccountEvent,
        action: AuditAction,
        client: ClientInfo,
    ) -> Account:
        if actor.role != Role.ADMIN:
            raise ForbiddenError("admin role required")
        account = self.store.find_by_id(account_id)
        if not account:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        if event in (AccountEvent.SUSPEND, AccountEvent.DELETE) and account.id == actor.id:
            raise ValidationError("administrators cannot change their own status")
        if event == AccountEvent.UNLOCK:
            updated = self.lockout.unlock(account, self._now())
        else:
            updated = transition(account, event, self._now())
        if event in (AccountEvent.UNLOCK, AccountEvent.REINSTATE):
            stored = self.store.update_lockout_fields(
                account.id,
                failed_login_count=updated.failed_login_count,
                locked_until=updated.locked_until,
                status=updated.status,
            )
        else:
            stored = self.store.update_status(account.id, updated.status)
        self.audit.record(
            action,
            account.id,
            details=f"{event.value} by {actor.id}",
            ip=client.ip,
            user_agent=client.user_agent,
            metadata={"actor_id": actor.id},
        )
        return stored or updated

    async def unlock_account(self, actor: Account, account_id: str, *, client: ClientInfo = _NO_CLIENT) -> Account:
        return self._admin_transition(
            actor, account_id, AccountEvent.UNLOCK, AuditAction.ACCOUNT_UNLOCKED, client
        )

    async def suspend_account(self, actor: Account, account_id: str, *, client: ClientInfo = _NO_CLIENT) -> Account:
        return self._admin_transition(
            actor, account_id, AccountEvent.SUSPEND, AuditAction.ACCOUNT_SUSPENDED, client
        )

    async def reinstate_account(self, actor: Account, account_id: str, *, client: ClientInfo = _NO_CLIENT) -> Account:
        return self._admin_transition(
            actor, account_id, AccountEvent.REINSTATE, AuditAction.ACCOUNT_REINSTATED, client
        )

    async def delete_account(self, actor: Account, account_id: str, *, client: ClientInfo = _NO_CLIENT) -> Account:
        return self._admin_transition(
            actor, account_id, AccountEvent.DELETE, AuditAction.ACCOUNT_DELETED, client
        )
