"""Unit tests for the auth service.

Covers:
- Registration and username derivation
- Email verification
- Login, lockout and lock expiry
- Refresh rotation and logout
- Password reset and change
- Administrative transitions
"""

from datetime import datetime, timedelta, timezone

import pytest
from argon2 import PasswordHasher

from schoolauth.config import Settings
from schoolauth.service.audit import AuditAction, AuditEmitter
from schoolauth.service.auth import (
    GENERIC_RESET_MESSAGE,
    GENERIC_VERIFICATION_MESSAGE,
    AuthService,
    ClientInfo,
)
from schoolauth.service.email import DeliveryResult
from schoolauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from schoolauth.service.accounts import InvalidTransition
from schoolauth.service.lockout import LockoutPolicy
from schoolauth.service.notifications import NotificationDispatcher, TemplateKind
from schoolauth.service.revocation import RevocationCache
from schoolauth.service.tokens import TokenCodec, TokenKind
from schoolauth.storage.memory import MemoryStore
from schoolauth.storage.models import AccountStatus, Role

PASSWORD = "Str0ng!Pass"


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 2, 5, 8, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class CapturingTransport:
    is_configured = True

    def __init__(self):
        self.sent = []

    def deliver(self, to_email, subject, html_body, text_body=None):
        self.sent.append({"to": to_email, "subject": subject, "text": text_body})
        return DeliveryResult(success=True)


class CapturingDispatcher(NotificationDispatcher):
    """Sends inline and remembers template kinds."""

    def __init__(self):
        super().__init__(CapturingTransport())
        self.kinds = []

    def dispatch(self, kind, recipient, data=None):
        self.kinds.append((kind, recipient, dict(data or {})))
        self.send(kind, recipient, data)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!")


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def notifications():
    return CapturingDispatcher()


@pytest.fixture
def auth_service(store, settings, clock, notifications):
    tokens = TokenCodec(
        settings,
        revocations=RevocationCache(high_water=100, low_water=50),
        consumed_refresh=RevocationCache(high_water=100, low_water=50),
        clock=clock,
    )
    return AuthService(
        store,
        tokens,
        LockoutPolicy.from_settings(settings),
        AuditEmitter(store.append_audit_entry),
        notifications,
        settings,
        clock=clock,
        # cheap parameters keep the suite fast
        password_hasher=PasswordHasher(time_cost=1, memory_cost=8, parallelism=1),
    )


async def _verified_account(auth_service, email="jane@school.example", name="Jane Doe", role=None):
    registration = await auth_service.register(email, PASSWORD, name=name, role=role)
    account, _ = await auth_service.verify_email(registration.verification_token)
    return account


def _actions(store, account_id=None):
    return [e.action for e in store.list_audit_entries(account_id=account_id)]


class TestRegistration:
    @pytest.mark.asyncio
    async def test_register_creates_unverified_student(self, auth_service, store, notifications):
        registration = await auth_service.register(
            " Jane@School.Example ", PASSWORD, name="Jane Doe", client=ClientInfo("203.0.113.5", "pytest")
        )
        account = registration.account

        assert account.email == "jane@school.example"
        assert account.username == "jane.doe"
        assert account.role == Role.STUDENT
        assert account.verified is False
        assert account.password_hash != PASSWORD
        assert notifications.kinds[0][0] == TemplateKind.VERIFICATION
        entry = store.list_audit_entries(account_id=account.id)[0]
        assert entry.action == AuditAction.USER_CREATED.value
        assert entry.ip_address == "203.0.113.5"

    @pytest.mark.asyncio
    async def test_duplicate_email_conflicts(self, auth_service):
        await auth_service.register("jane@school.example", PASSWORD, name="Jane Doe")
        with pytest.raises(ConflictError) as exc:
            await auth_service.register("JANE@school.example", PASSWORD, name="Jane Other")
        assert exc.value.message == "An account with this email already exists"

    @pytest.mark.asyncio
    async def test_same_name_gets_suffixed_username(self, auth_service):
        first = await auth_service.register("jane1@school.example", PASSWORD, name="Jane Doe")
        second = await auth_service.register("jane2@school.example", PASSWORD, name="Jane Doe")
        assert first.account.username == "jane.doe"
        assert second.account.username == "jane.doe.1"

    @pytest.mark.asyncio
    async def test_first_and_last_name_fields(self, auth_service):
        registration = await auth_service.register(
            "kid@school.example", PASSWORD, first_name="Tom", last_name="Sawyer", role="parent"
        )
        assert registration.account.display_name == "Tom Sawyer"
        assert registration.account.role == Role.PARENT

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "kwargs,message",
        [
            ({"email": "bad"}, "Please provide a valid email address"),
            ({"password": "weakpass"}, None),
            ({"confirm_password": "Different1!"}, "Passwords do not match"),
            ({"name": "J"}, "Name must be between 2 and 50 characters"),
            ({"role": "janitor"}, None),
            ({"phone": "12"}, "Please provide a valid phone number"),
        ],
    )
    async def test_invalid_input_rejected(self, auth_service, store, kwargs, message):
        args = {"email": "jane@school.example", "password": PASSWORD, "name": "Jane Doe", **kwargs}
        with pytest.raises(ValidationError) as exc:
            await auth_service.register(args.pop("email"), args.pop("password"), **args)
        if message:
            assert exc.value.message == message
        assert store.accounts == {}


class TestVerification:
    @pytest.mark.asyncio
    async def test_verify_marks_account_and_sends_welcome(self, auth_service, notifications):
        registration = await auth_service.register("jane@school.example", PASSWORD, name="Jane Doe")
        account, already = await auth_service.verify_email(registration.verification_token)

        assert account.verified is True
        assert already is False
        assert notifications.kinds[-1][0] == TemplateKind.WELCOME

    @pytest.mark.asyncio
    async def test_second_verification_reports_already_verified(self, auth_service):
        registration = await auth_service.register("jane@school.example", PASSWORD, name="Jane Doe")
        await auth_service.verify_email(registration.verification_token)
        _, already = await auth_service.verify_email(registration.verification_token)
        assert already is True

    @pytest.mark.asyncio
    async def test_expired_verification_token(self, auth_service, clock):
        registration = await auth_service.register("jane@school.example", PASSWORD, name="Jane Doe")
        clock.advance(hours=24)
        with pytest.raises(AuthenticationError) as exc:
            await auth_service.verify_email(registration.verification_token)
        assert exc.value.error_code == "token_expired"

    @pytest.mark.asyncio
    async def test_resend_only_for_unverified(self, auth_service, notifications):
        await _verified_account(auth_service)
        sent_before = len(notifications.kinds)

        message = await auth_service.resend_verification("jane@school.example")
        assert message == GENERIC_VERIFICATION_MESSAGE
        assert len(notifications.kinds) == sent_before

        await auth_service.register("new@school.example", PASSWORD, name="New Kid")
        await auth_service.resend_verification("new@school.example")
        assert notifications.kinds[-1][0] == TemplateKind.VERIFICATION_RESEND

    @pytest.mark.asyncio
    async def test_resend_unknown_email_is_generic(self, auth_service):
        assert await auth_service.resend_verification("ghost@school.example") == GENERIC_VERIFICATION_MESSAGE


class TestLogin:
    @pytest.mark.asyncio
    async def test_login_by_email_or_username(self, auth_service):
        account = await _verified_account(auth_service)
        by_email = await auth_service.login("JANE@school.example", PASSWORD)
        by_username = await auth_service.login("jane.doe", PASSWORD)
        assert by_email.account.id == by_username.account.id == account.id
        assert by_email.tokens.expires_in == 900
        assert by_email.tokens.token_type == "Bearer"

    @pytest.mark.asyncio
    async def test_unknown_account_is_generic(self, auth_service, store):
        with pytest.raises(AuthenticationError) as exc:
            await auth_service.login("ghost@school.example", PASSWORD)
        assert exc.value.message == "invalid credentials"
        assert _actions(store) == ["LOGIN_FAILED"]

    @pytest.mark.asyncio
    async def test_wrong_password_is_generic(self, auth_service):
        await _verified_account(auth_service)
        with pytest.raises(AuthenticationError) as exc:
            await auth_service.login("jane@school.example", "Wrong!Pass1")
        assert exc.value.message == "invalid credentials"

    @pytest.mark.asyncio
    async def test_unverified_login_rejected_after_password_check(self, auth_service):
        await auth_service.register("jane@school.example", PASSWORD, name="Jane Doe")
        with pytest.raises(AuthenticationError) as exc:
            await auth_service.login("jane@school.example", PASSWORD)
        assert exc.value.error_code == "email_not_verified"

    @pytest.mark.asyncio
    async def test_success_resets_failure_counter(self, auth_service, store):
        account = await _verified_account(auth_service)
        for _ in range(3):
            with pytest.raises(AuthenticationError):
                await auth_service.login("jane@school.example", "Wrong!Pass1")
        assert store.find_by_id(account.id).failed_login_count == 3

        result = await auth_service.login("jane@school.example", PASSWORD)
        assert result.account.failed_login_count == 0
        assert result.account.last_login is not None

    @pytest.mark.asyncio
    async def test_failed_login_records_remaining_attempts(self, auth_service, store):
        account = await _verified_account(auth_service)
        for _ in range(2):
            with pytest.raises(AuthenticationError):
                await auth_service.login("jane@school.example", "Wrong!Pass1")

        entries = store.list_audit_entries(account_id=account.id, action="LOGIN_FAILED")
        assert sorted(e.metadata["remaining_attempts"] for e in entries) == [3, 4]

    @pytest.mark.asyncio
    async def test_suspended_account_cannot_login(self, auth_service, store):
        account = await _verified_account(auth_service)
        store.update_status(account.id, AccountStatus.SUSPENDED)
        with pytest.raises(AuthenticationError) as exc:
            await auth_service.login("jane@school.example", PASSWORD)
        assert exc.value.error_code == "account_inactive"

    @pytest.mark.asyncio
    async def test_deleted_account_looks_unknown(self, auth_service, store):
        account = await _verified_account(auth_service)
        store.update_status(account.id, AccountStatus.DELETED)
        with pytest.raises(AuthenticationError) as exc:
            await auth_service.login("jane@school.example", PASSWORD)
        assert exc.value.message == "invalid credentials"


class TestLockout:
    @pytest.mark.asyncio
    async def test_five_failures_lock_for_two_hours(self, auth_service, store, clock):
        account = await _verified_account(auth_service)
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await auth_service.login("jane@school.example", "Wrong!Pass1")

        locked = store.find_by_id(account.id)
        assert locked.failed_login_count == 5
        assert locked.locked_until == clock.now + timedelta(hours=2)
        assert locked.status == AccountStatus.LOCKED
        assert "ACCOUNT_LOCKED" in _actions(store, account.id)

        # correct password is refused while the lock is live
        with pytest.raises(AuthenticationError) as exc:
            await auth_service.login("jane@school.example", PASSWORD)
        assert exc.value.error_code == "account_locked"
        assert exc.value.detail["locked_until"] == locked.locked_until.isoformat()
        assert store.find_by_id(account.id).failed_login_count == 5

    @pytest.mark.asyncio
    async def test_lock_releases_after_window(self, auth_service, store, clock):
        account = await _verified_account(auth_service)
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await auth_service.login("jane@school.example", "Wrong!Pass1")

        clock.advance(hours=2, seconds=-1)
        with pytest.raises(AuthenticationError) as exc:
            await auth_service.login("jane@school.example", PASSWORD)
        assert exc.value.error_code == "account_locked"

        clock.advance(seconds=1)
        result = await auth_service.login("jane@school.example", PASSWORD)
        assert result.account.status == AccountStatus.ACTIVE
        assert store.find_by_id(account.id).failed_login_count == 0

    @pytest.mark.asyncio
    async def test_failure_after_expiry_starts_fresh_count(self, auth_service, store, clock):
        account = await _verified_account(auth_service)
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await auth_service.login("jane@school.example", "Wrong!Pass1")
        clock.advance(hours=3)

        with pytest.raises(AuthenticationError) as exc:
            await auth_service.login("jane@school.example", "Wrong!Pass1")
        assert exc.value.message == "invalid credentials"
        stored = store.find_by_id(account.id)
        assert stored.failed_login_count == 1
        assert stored.locked_until is None

    @pytest.mark.asyncio
    async def test_password_reset_unlocks(self, auth_service, store):
        account = await _verified_account(auth_service)
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await auth_service.login("jane@school.example", "Wrong!Pass1")

        await auth_service.request_password_reset("jane@school.example")
        token = store.find_by_id(account.id).reset_token
        await auth_service.reset_password(token, "N3w!Password")

        result = await auth_service.login("jane@school.example", "N3w!Password")
        assert result.account.id == account.id


class TestTokens:
    @pytest.mark.asyncio
    async def test_refresh_rotates_and_is_single_use(self, auth_service):
        await _verified_account(auth_service)
        login = await auth_service.login("jane@school.example", PASSWORD)

        pair = await auth_service.refresh_token_pair(login.tokens.refresh_token)
        assert pair.refresh_token != login.tokens.refresh_token

        with pytest.raises(AuthenticationError) as exc:
            await auth_service.refresh_token_pair(login.tokens.refresh_token)
        assert exc.value.error_code == "token_revoked"

    @pytest.mark.asyncio
    async def test_refresh_keeps_remember_me(self, auth_service):
        await _verified_account(auth_service)
        login = await auth_service.login("jane@school.example", PASSWORD, remember_me=True)
        pair = await auth_service.refresh_token_pair(login.tokens.refresh_token)
        claims = auth_service.tokens.verify(pair.refresh_token, TokenKind.REFRESH)
        assert claims.expires_at - claims.issued_at == timedelta(days=30)

    @pytest.mark.asyncio
    async def test_refresh_rejected_for_suspended_account(self, auth_service, store):
        account = await _verified_account(auth_service)
        login = await auth_service.login("jane@school.example", PASSWORD)
        store.update_status(account.id, AccountStatus.SUSPENDED)
        with pytest.raises(AuthenticationError) as exc:
            await auth_service.refresh_token_pair(login.tokens.refresh_token)
        assert exc.value.error_code == "account_inactive"

    @pytest.mark.asyncio
    async def test_access_token_cannot_refresh(self, auth_service):
        await _verified_account(auth_service)
        login = await auth_service.login("jane@school.example", PASSWORD)
        with pytest.raises(AuthenticationError):
            await auth_service.refresh_token_pair(login.tokens.access_token)

    @pytest.mark.asyncio
    async def test_logout_revokes_access_and_refresh(self, auth_service, store):
        account = await _verified_account(auth_service)
        login = await auth_service.login("jane@school.example", PASSWORD)
        header = f"Bearer {login.tokens.access_token}"
        assert (await auth_service.authenticate(header)).account.id == account.id

        await auth_service.logout(login.tokens.access_token, login.tokens.refresh_token)

        with pytest.raises(AuthenticationError) as exc:
            await auth_service.authenticate(header)
        assert exc.value.error_code == "token_revoked"
        with pytest.raises(AuthenticationError):
            await auth_service.refresh_token_pair(login.tokens.refresh_token)
        assert "LOGOUT" in _actions(store, account.id)

    @pytest.mark.asyncio
    async def test_logout_is_idempotent(self, auth_service):
        await _verified_account(auth_service)
        login = await auth_service.login("jane@school.example", PASSWORD)
        await auth_service.logout(login.tokens.access_token)
        await auth_service.logout(login.tokens.access_token)
        await auth_service.logout(None)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer ", "bearer"])
    async def test_authenticate_requires_bearer(self, auth_service, header):
        with pytest.raises(AuthenticationError) as exc:
            await auth_service.authenticate(header)
        assert exc.value.message == "authentication required"


class TestPasswordReset:
    @pytest.mark.asyncio
    async def test_reset_flow(self, auth_service, store, notifications):
        account = await _verified_account(auth_service)
        message = await auth_service.request_password_reset("jane@school.example")
        assert message == GENERIC_RESET_MESSAGE
        token = store.find_by_id(account.id).reset_token
        assert notifications.kinds[-1][0] == TemplateKind.PASSWORD_RESET

        await auth_service.reset_password(token, "N3w!Password", confirm_password="N3w!Password")

        stored = store.find_by_id(account.id)
        assert stored.reset_token is None and stored.reset_token_expires is None
        assert notifications.kinds[-1][0] == TemplateKind.PASSWORD_RESET_CONFIRMATION
        with pytest.raises(AuthenticationError):
            await auth_service.login("jane@school.example", PASSWORD)
        assert (await auth_service.login("jane@school.example", "N3w!Password")).account.id == account.id

    @pytest.mark.asyncio
    async def test_reset_token_is_single_use(self, auth_service, store):
        account = await _verified_account(auth_service)
        await auth_service.request_password_reset("jane@school.example")
        token = store.find_by_id(account.id).reset_token
        await auth_service.reset_password(token, "N3w!Password")

        with pytest.raises(AuthenticationError) as exc:
            await auth_service.reset_password(token, "An0ther!Pass")
        assert exc.value.message == "invalid or expired reset token"

    @pytest.mark.asyncio
    async def test_newer_request_supersedes_older_token(self, auth_service, store, clock):
        account = await _verified_account(auth_service)
        await auth_service.request_password_reset("jane@school.example")
        first = store.find_by_id(account.id).reset_token
        clock.advance(seconds=5)
        await auth_service.request_password_reset("jane@school.example")

        with pytest.raises(AuthenticationError):
            await auth_service.reset_password(first, "N3w!Password")

    @pytest.mark.asyncio
    async def test_expired_reset_token(self, auth_service, store, clock):
        account = await _verified_account(auth_service)
        await auth_service.request_password_reset("jane@school.example")
        token = store.find_by_id(account.id).reset_token
        clock.advance(hours=1)
        with pytest.raises(AuthenticationError):
            await auth_service.reset_password(token, "N3w!Password")

    @pytest.mark.asyncio
    async def test_unknown_email_gets_same_message(self, auth_service, notifications):
        assert await auth_service.request_password_reset("ghost@school.example") == GENERIC_RESET_MESSAGE
        assert notifications.kinds == []

    @pytest.mark.asyncio
    async def test_unverified_account_gets_no_reset_mail(self, auth_service, store, notifications):
        registration = await auth_service.register("jane@school.example", PASSWORD, name="Jane Doe")
        notifications.kinds.clear()

        message = await auth_service.request_password_reset("jane@school.example")
        assert message == GENERIC_RESET_MESSAGE
        assert store.find_by_id(registration.account.id).reset_token is None
        assert notifications.kinds == []
        assert "PASSWORD_RESET_REQUESTED" not in _actions(store, registration.account.id)

    @pytest.mark.asyncio
    async def test_locked_unverified_account_gets_no_reset_mail(self, auth_service, store, notifications):
        registration = await auth_service.register("jane@school.example", PASSWORD, name="Jane Doe")
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await auth_service.login("jane@school.example", "Wrong!Pass1")
        assert store.find_by_id(registration.account.id).status == AccountStatus.LOCKED
        notifications.kinds.clear()

        message = await auth_service.request_password_reset("jane@school.example")
        assert message == GENERIC_RESET_MESSAGE
        assert store.find_by_id(registration.account.id).reset_token is None
        assert notifications.kinds == []

    @pytest.mark.asyncio
    async def test_suspended_account_gets_no_reset_mail(self, auth_service, store, notifications):
        account = await _verified_account(auth_service)
        store.update_status(account.id, AccountStatus.SUSPENDED)
        notifications.kinds.clear()

        message = await auth_service.request_password_reset("jane@school.example")
        assert message == GENERIC_RESET_MESSAGE
        assert store.find_by_id(account.id).reset_token is None
        assert notifications.kinds == []

    @pytest.mark.asyncio
    async def test_reset_refused_once_account_is_suspended(self, auth_service, store):
        account = await _verified_account(auth_service)
        await auth_service.request_password_reset("jane@school.example")
        token = store.find_by_id(account.id).reset_token
        store.update_status(account.id, AccountStatus.SUSPENDED)

        with pytest.raises(AuthenticationError) as exc:
            await auth_service.reset_password(token, "N3w!Password")
        assert exc.value.error_code == "account_inactive"
        assert store.find_by_id(account.id).reset_token is None

    @pytest.mark.asyncio
    async def test_invalid_email_is_rejected(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.request_password_reset("not-an-email")

    @pytest.mark.asyncio
    async def test_reusing_current_password_rejected(self, auth_service, store):
        account = await _verified_account(auth_service)
        await auth_service.request_password_reset("jane@school.example")
        token = store.find_by_id(account.id).reset_token
        with pytest.raises(ValidationError) as exc:
            await auth_service.reset_password(token, PASSWORD)
        assert exc.value.message == "New password must be different from the current password"

    @pytest.mark.asyncio
    async def test_change_password(self, auth_service, store, notifications):
        account = await _verified_account(auth_service)
        with pytest.raises(AuthenticationError):
            await auth_service.change_password(account.id, "Wrong!Pass1", "N3w!Password")

        await auth_service.change_password(account.id, PASSWORD, "N3w!Password")
        assert "PASSWORD_CHANGED" in _actions(store, account.id)
        assert notifications.kinds[-1][2]["changed"] is True


class TestProfileAndEmailCheck:
    @pytest.mark.asyncio
    async def test_update_profile(self, auth_service, store):
        account = await _verified_account(auth_service)
        updated = await auth_service.update_profile(account.id, first_name="Janet", phone="+14155552671")
        assert updated.first_name == "Janet"
        assert updated.phone == "+14155552671"
        entry = store.list_audit_entries(account_id=account.id, action="PROFILE_UPDATED")[0]
        assert entry.metadata == {"fields": ["first_name", "phone"]}

    @pytest.mark.asyncio
    async def test_update_profile_validates_name(self, auth_service):
        account = await _verified_account(auth_service)
        with pytest.raises(ValidationError):
            await auth_service.update_profile(account.id, last_name="X")

    @pytest.mark.asyncio
    async def test_check_email(self, auth_service):
        await auth_service.register("new@school.example", PASSWORD, name="New Kid")
        assert await auth_service.check_email("NEW@school.example") == {
            "exists": True,
            "verified": False,
            "available": False,
        }
        assert (await auth_service.check_email("free@school.example"))["available"] is True


class TestAdministration:
    @pytest.mark.asyncio
    async def test_admin_unlocks_locked_account(self, auth_service, store):
        admin = await _verified_account(auth_service, "admin@school.example", "Ada Admin", role="admin")
        target = await _verified_account(auth_service)
        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await auth_service.login("jane@school.example", "Wrong!Pass1")

        unlocked = await auth_service.unlock_account(admin, target.id)
        assert unlocked.status == AccountStatus.ACTIVE
        assert unlocked.locked_until is None
        assert store.find_by_id(target.id).failed_login_count == 0
        entry = store.list_audit_entries(account_id=target.id, action="ACCOUNT_UNLOCKED")[0]
        assert entry.metadata == {"actor_id": admin.id}

    @pytest.mark.asyncio
    async def test_suspend_reinstate_delete(self, auth_service, store):
        admin = await _verified_account(auth_service, "admin@school.example", "Ada Admin", role="admin")
        target = await _verified_account(auth_service)

        assert (await auth_service.suspend_account(admin, target.id)).status == AccountStatus.SUSPENDED
        with pytest.raises(InvalidTransition):
            await auth_service.suspend_account(admin, target.id)
        assert (await auth_service.reinstate_account(admin, target.id)).status == AccountStatus.ACTIVE
        assert (await auth_service.delete_account(admin, target.id)).status == AccountStatus.DELETED
        with pytest.raises(InvalidTransition):
            await auth_service.reinstate_account(admin, target.id)

    @pytest.mark.asyncio
    async def test_non_admin_forbidden(self, auth_service):
        teacher = await _verified_account(auth_service, "t@school.example", "Tina Teacher", role="teacher")
        target = await _verified_account(auth_service)
        with pytest.raises(ForbiddenError):
            await auth_service.suspend_account(teacher, target.id)

    @pytest.mark.asyncio
    async def test_admin_cannot_suspend_self(self, auth_service):
        admin = await _verified_account(auth_service, "admin@school.example", "Ada Admin", role="admin")
        with pytest.raises(ValidationError):
            await auth_service.suspend_account(admin, admin.id)

    @pytest.mark.asyncio
    async def test_missing_target(self, auth_service):
        admin = await _verified_account(auth_service, "admin@school.example", "Ada Admin", role="admin")
        with pytest.raises(NotFoundError):
            await auth_service.unlock_account(admin, "missing")


class TestPasswordHashing:
    def test_hashes_are_salted_argon2id(self, auth_service):
        first = auth_service._hash_password(PASSWORD)
        second = auth_service._hash_password(PASSWORD)
        assert first != second
        assert first.startswith("$argon2id$")

    @pytest.mark.asyncio
    async def test_foreign_algorithm_never_verifies(self, auth_service, store):
        account = await _verified_account(auth_service)
        account.password_algo = "bcrypt"
        assert auth_service.verify_password(account, PASSWORD) is False


class TestScenarios:
    """End-to-end service flows on a simulated clock."""

    @pytest.mark.asyncio
    async def test_register_verify_lock_and_recover(self, auth_service, store, clock):
        registration = await auth_service.register("alice@school.edu", PASSWORD, name="Alice Smith")
        assert registration.account.verified is False
        assert registration.account.status == AccountStatus.ACTIVE

        account, _ = await auth_service.verify_email(registration.verification_token)
        assert account.verified is True

        for _ in range(5):
            with pytest.raises(AuthenticationError):
                await auth_service.login("alice@school.edu", "Wrong!Pass1")
        with pytest.raises(AuthenticationError):
            await auth_service.login("alice@school.edu", PASSWORD)

        clock.advance(hours=2, minutes=1)
        result = await auth_service.login("alice@school.edu", PASSWORD)
        assert result.account.failed_login_count == 0
        assert store.find_by_id(account.id).failed_login_count == 0

    @pytest.mark.asyncio
    async def test_reset_then_replay(self, auth_service, store):
        account = await _verified_account(auth_service, "alice@school.edu", "Alice Smith")
        await auth_service.request_password_reset("alice@school.edu")
        token = store.find_by_id(account.id).reset_token

        await auth_service.reset_password(token, "NewStr0ng!Pass")

        with pytest.raises(AuthenticationError):
            await auth_service.login("alice@school.edu", PASSWORD)
        assert (await auth_service.login("alice@school.edu", "NewStr0ng!Pass")).account.id == account.id
        with pytest.raises(AuthenticationError):
            await auth_service.reset_password(token, "Another!Pass9")
