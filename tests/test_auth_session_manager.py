"""Behavioural tests for AuthSessionManager against the in-memory store."""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest
from argon2 import PasswordHasher, Type

from campusauth.config import Settings
from campusauth.service import audit as audit_actions
from campusauth.service.audit import StoreAuditSink
from campusauth.service.auth import AuthSessionManager
from campusauth.service.errors import (
    ExpiredTokenError,
    InvalidCredentialsError,
    InvalidTokenError,
    MissingTokenError,
    TooManyAttemptsError,
    WeakPasswordError,
)
from campusauth.service.passwords import PasswordHashing
from campusauth.service.rate_limit import RateLimiter
from campusauth.service.refresh_tokens import RefreshTokenStore
from campusauth.service.tokens import ResetTokenLedger, TokenCodec
from campusauth.storage.memory import MemoryStore
from campusauth.storage.models import Role

START = datetime(2026, 3, 1, 9, 0, 0, tzinfo=timezone.utc)
PASSWORD = "Correct-horse-42"
CLIENT_IP = "203.0.113.7"


class _Clock:
    def __init__(self, start):
        self.current = start

    def __call__(self):
        return self.current

    def advance(self, **kwargs):
        self.current += timedelta(**kwargs)


@pytest.fixture
def clock():
    return _Clock(START)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret="session-manager-test-secret-0123456789",
        shared_fs_root=str(tmp_path),
        password_reset_url="https://lms.example.edu/reset-password",
    )


@pytest.fixture
def passwords():
    # Cheap parameters keep the suite fast
    return PasswordHashing(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def student(memory_store, passwords):
    return memory_store.create_principal(
        "sstudent",
        "sstudent@campus.edu",
        passwords.hash(PASSWORD),
        "Sam Student",
        role=Role.STUDENT,
    )


@pytest.fixture
def email():
    sender = MagicMock()
    sender.send_password_reset.return_value = True
    return sender


def _build_manager(memory_store, settings, passwords, email, clock, **kwargs):
    tokens = TokenCodec(settings)
    tokens._now = clock
    refresh_tokens = RefreshTokenStore(memory_store, ttl_days=settings.refresh_token_ttl_days)
    refresh_tokens._now = clock
    limiter = RateLimiter(10, 900)
    limiter._now = clock
    manager = AuthSessionManager(
        memory_store,
        tokens,
        refresh_tokens,
        limiter,
        kwargs.pop("audit", StoreAuditSink(memory_store)),
        email,
        settings,
        passwords=passwords,
        **kwargs,
    )
    manager._now = clock
    return manager


@pytest.fixture
def manager(memory_store, settings, passwords, email, clock):
    return _build_manager(memory_store, settings, passwords, email, clock)


def _reset_token_from_email(email) -> str:
    reset_link = email.send_password_reset.call_args.args[1]
    return reset_link.split("?token=", 1)[1]


class TestLogin:
    async def test_success_returns_verifiable_access_token(self, manager, student):
        session = await manager.login("sstudent", PASSWORD, CLIENT_IP)

        claims = manager.tokens.verify_access_token(session.access_token)
        assert claims.subject == "sstudent"
        assert claims.role is Role.STUDENT
        assert claims.expires_at == claims.issued_at + 900
        assert session.expires_in_seconds == 900
        assert session.full_name == "Sam Student"

    async def test_login_by_email(self, manager, student):
        session = await manager.login("sstudent@campus.edu", PASSWORD, CLIENT_IP)

        assert session.username == "sstudent"

    async def test_success_persists_refresh_token_and_last_login(
        self, manager, memory_store, student
    ):
        session = await manager.login("sstudent", PASSWORD, CLIENT_IP)

        record = memory_store.get_refresh_token(session.refresh_token.value)
        assert record.principal_id == student.id
        assert record.expiry_date == START + timedelta(days=7)
        assert memory_store.get_principal(student.id).last_login == START

    async def test_success_is_audited(self, manager, memory_store, student):
        await manager.login("sstudent", PASSWORD, CLIENT_IP)

        events = memory_store.list_audit_events(action=audit_actions.LOGIN_SUCCESS)
        assert len(events) == 1
        assert events[0].actor_id == student.id
        assert events[0].ip_address == CLIENT_IP

    async def test_wrong_password_rejected_and_counted_once(self, manager, student):
        with pytest.raises(InvalidCredentialsError) as excinfo:
            await manager.login("sstudent", "Wrong-password-1", CLIENT_IP)

        assert excinfo.value.message == "Invalid credentials"
        assert manager.rate_limiter.attempts(CLIENT_IP) == 1

    async def test_unknown_identifier_looks_like_wrong_password(self, manager, student):
        with pytest.raises(InvalidCredentialsError) as excinfo:
            await manager.login("nobody", PASSWORD, CLIENT_IP)

        assert excinfo.value.message == "Invalid credentials"
        assert manager.rate_limiter.attempts(CLIENT_IP) == 1

    async def test_failure_is_audited_with_identifier(self, manager, memory_store, student):
        with pytest.raises(InvalidCredentialsError):
            await manager.login("sstudent", "Wrong-password-1", CLIENT_IP)

        (event,) = memory_store.list_audit_events(action=audit_actions.LOGIN_FAILED)
        assert event.details == {"identifier": "sstudent"}
        assert event.ip_address == CLIENT_IP

    async def test_disabled_principal_cannot_login(self, manager, memory_store, student):
        memory_store.principals[student.id].enabled = False

        with pytest.raises(InvalidCredentialsError):
            await manager.login("sstudent", PASSWORD, CLIENT_IP)
        assert manager.rate_limiter.attempts(CLIENT_IP) == 1

    async def test_eleventh_attempt_blocked_even_with_correct_password(
        self, manager, student
    ):
        for _ in range(10):
            with pytest.raises(InvalidCredentialsError):
                await manager.login("sstudent", "Wrong-password-1", CLIENT_IP)

        with pytest.raises(TooManyAttemptsError) as excinfo:
            await manager.login("sstudent", PASSWORD, CLIENT_IP)
        assert excinfo.value.message == "Too many login attempts. Please try again later."

    async def test_blocked_client_recovers_after_window(self, manager, student, clock):
        for _ in range(10):
            with pytest.raises(InvalidCredentialsError):
                await manager.login("sstudent", "Wrong-password-1", CLIENT_IP)

        clock.advance(seconds=901)

        session = await manager.login("sstudent", PASSWORD, CLIENT_IP)
        assert session.username == "sstudent"

    async def test_limit_is_per_client(self, manager, student):
        for _ in range(10):
            with pytest.raises(InvalidCredentialsError):
                await manager.login("sstudent", "Wrong-password-1", CLIENT_IP)

        session = await manager.login("sstudent", PASSWORD, "198.51.100.9")
        assert session.username == "sstudent"

    async def test_missing_client_ip_shares_unknown_bucket(self, manager, student):
        with pytest.raises(InvalidCredentialsError):
            await manager.login("sstudent", "Wrong-password-1", None)

        assert manager.rate_limiter.attempts("unknown") == 1

    async def test_success_does_not_reset_counter(self, manager, student):
        with pytest.raises(InvalidCredentialsError):
            await manager.login("sstudent", "Wrong-password-1", CLIENT_IP)
        await manager.login("sstudent", PASSWORD, CLIENT_IP)

        assert manager.rate_limiter.attempts(CLIENT_IP) == 1

    async def test_outdated_hash_is_upgraded_on_login(self, manager, memory_store):
        legacy = memory_store.create_principal(
            "legacy", "legacy@campus.edu", PasswordHashing().hash(PASSWORD), "Lee Gacy"
        )

        await manager.login("legacy", PASSWORD, CLIENT_IP)

        upgraded = memory_store.get_principal(legacy.id).password_hash
        assert "m=8," in upgraded
        assert manager.passwords.verify(upgraded, PASSWORD)

    async def test_audit_failure_does_not_fail_login(
        self, memory_store, settings, passwords, email, clock, student
    ):
        broken_audit = MagicMock()
        broken_audit.record.side_effect = RuntimeError("audit store down")
        manager = _build_manager(
            memory_store, settings, passwords, email, clock, audit=broken_audit
        )

        session = await manager.login("sstudent", PASSWORD, CLIENT_IP)

        assert session.username == "sstudent"
        broken_audit.record.assert_called_once()


class TestRefresh:
    async def test_refresh_rotates_token(self, manager, memory_store, student):
        first = await manager.login("sstudent", PASSWORD, CLIENT_IP)

        second = await manager.refresh(first.refresh_token.value)

        assert second.refresh_token.value != first.refresh_token.value
        assert memory_store.get_refresh_token(first.refresh_token.value).revoked is True
        claims = manager.tokens.verify_access_token(second.access_token)
        assert claims.subject == "sstudent"

    async def test_reused_refresh_token_rejected(self, manager, student):
        first = await manager.login("sstudent", PASSWORD, CLIENT_IP)
        await manager.refresh(first.refresh_token.value)

        with pytest.raises(InvalidTokenError):
            await manager.refresh(first.refresh_token.value)

    async def test_expired_refresh_token_rejected(self, manager, student, clock):
        first = await manager.login("sstudent", PASSWORD, CLIENT_IP)
        clock.advance(days=7, seconds=1)

        with pytest.raises(InvalidTokenError):
            await manager.refresh(first.refresh_token.value)

    async def test_missing_refresh_token(self, manager):
        with pytest.raises(MissingTokenError):
            await manager.refresh(None)
        with pytest.raises(MissingTokenError):
            await manager.refresh("")

    async def test_unknown_refresh_token(self, manager):
        with pytest.raises(InvalidTokenError):
            await manager.refresh("not-a-real-token")


class TestLogout:
    async def test_logout_revokes_and_audits(self, manager, memory_store, student):
        session = await manager.login("sstudent", PASSWORD, CLIENT_IP)

        assert await manager.logout(session.refresh_token.value) is True

        record = memory_store.get_refresh_token(session.refresh_token.value)
        assert record.revoked is True
        (event,) = memory_store.list_audit_events(action=audit_actions.LOGOUT)
        assert event.target_type == "RefreshToken"
        assert event.target_id == record.id
        assert event.actor_id == student.id

    async def test_logout_revokes_in_a_single_store_call(self, manager, memory_store, student):
        session = await manager.login("sstudent", PASSWORD, CLIENT_IP)

        with patch.object(
            memory_store, "get_refresh_token", side_effect=AssertionError("separate lookup")
        ), patch.object(
            memory_store, "revoke_refresh_token", wraps=memory_store.revoke_refresh_token
        ) as revoke:
            assert await manager.logout(session.refresh_token.value) is True

        revoke.assert_called_once_with(session.refresh_token.value)

    async def test_logout_then_refresh_fails(self, manager, student):
        session = await manager.login("sstudent", PASSWORD, CLIENT_IP)
        await manager.logout(session.refresh_token.value)

        with pytest.raises(InvalidTokenError):
            await manager.refresh(session.refresh_token.value)

    async def test_logout_without_token_succeeds(self, manager, memory_store):
        assert await manager.logout(None) is False
        assert await manager.logout("unknown-token") is False
        assert memory_store.list_audit_events(action=audit_actions.LOGOUT) == []


class TestForgotPassword:
    async def test_known_email_sends_link(self, manager, email, memory_store, student):
        await manager.forgot_password("sstudent@campus.edu")

        email.send_password_reset.assert_called_once()
        to_email, reset_link = email.send_password_reset.call_args.args
        assert to_email == "sstudent@campus.edu"
        assert reset_link.startswith("https://lms.example.edu/reset-password?token=")
        assert email.send_password_reset.call_args.kwargs == {"expires_minutes": 30}
        events = memory_store.list_audit_events(action=audit_actions.PASSWORD_RESET_REQUEST)
        assert [e.actor_id for e in events] == [student.id]

    async def test_unknown_email_is_silent(self, manager, email, memory_store):
        assert await manager.forgot_password("ghost@campus.edu") is None

        email.send_password_reset.assert_not_called()
        assert memory_store.list_audit_events() == []

    async def test_email_failure_is_not_surfaced(self, manager, email, student):
        email.send_password_reset.side_effect = OSError("smtp unreachable")

        await manager.forgot_password("sstudent@campus.edu")

    async def test_username_with_colon_gets_no_token(
        self, manager, email, memory_store, passwords
    ):
        memory_store.create_principal(
            "odd:name", "odd@campus.edu", passwords.hash(PASSWORD), "Odd Name"
        )

        await manager.forgot_password("odd@campus.edu")

        email.send_password_reset.assert_not_called()


class TestResetPassword:
    async def test_reset_changes_password(self, manager, email, student):
        await manager.forgot_password("sstudent@campus.edu")
        token = _reset_token_from_email(email)

        await manager.reset_password(token, "Brand-new-pass-7")

        session = await manager.login("sstudent", "Brand-new-pass-7", CLIENT_IP)
        assert session.username == "sstudent"
        with pytest.raises(InvalidCredentialsError):
            await manager.login("sstudent", PASSWORD, CLIENT_IP)

    async def test_reset_revokes_existing_sessions(self, manager, email, memory_store, student):
        session = await manager.login("sstudent", PASSWORD, CLIENT_IP)
        await manager.forgot_password("sstudent@campus.edu")

        await manager.reset_password(_reset_token_from_email(email), "Brand-new-pass-7")

        assert memory_store.get_refresh_token(session.refresh_token.value).revoked is True
        events = memory_store.list_audit_events(action=audit_actions.PASSWORD_RESET)
        assert [e.actor_id for e in events] == [student.id]

    async def test_sessions_kept_when_revocation_disabled(
        self, memory_store, settings, passwords, email, clock, student
    ):
        settings = settings.model_copy(update={"revoke_sessions_on_password_reset": False})
        manager = _build_manager(memory_store, settings, passwords, email, clock)
        session = await manager.login("sstudent", PASSWORD, CLIENT_IP)
        await manager.forgot_password("sstudent@campus.edu")

        await manager.reset_password(_reset_token_from_email(email), "Brand-new-pass-7")

        assert memory_store.get_refresh_token(session.refresh_token.value).revoked is False

    async def test_expired_reset_token_rejected(self, manager, email, clock, student):
        await manager.forgot_password("sstudent@campus.edu")
        token = _reset_token_from_email(email)
        clock.advance(minutes=30, seconds=1)

        with pytest.raises(ExpiredTokenError):
            await manager.reset_password(token, "Brand-new-pass-7")

    async def test_tampered_reset_token_rejected(self, manager, student):
        other_codec = TokenCodec(
            Settings(jwt_secret="a-completely-different-secret-value-123")
        )
        other_codec._now = manager.tokens._now
        foreign = other_codec.issue_password_reset_token("sstudent")

        with pytest.raises(InvalidTokenError):
            await manager.reset_password(foreign, "Brand-new-pass-7")

    async def test_weak_password_rejected(self, manager, memory_store, email, student):
        await manager.forgot_password("sstudent@campus.edu")
        token = _reset_token_from_email(email)

        with pytest.raises(WeakPasswordError):
            await manager.reset_password(token, "short1")
        with pytest.raises(WeakPasswordError):
            await manager.reset_password(token, "lettersonly")

        assert manager.passwords.verify(
            memory_store.get_principal(student.id).password_hash, PASSWORD
        )

    @pytest.mark.parametrize("token", ["", None])
    async def test_empty_reset_token_is_invalid(self, manager, token):
        with pytest.raises(InvalidTokenError) as excinfo:
            await manager.reset_password(token, "Brand-new-pass-7")
        assert not isinstance(excinfo.value, MissingTokenError)

    async def test_token_for_deleted_user_rejected(self, manager, memory_store, email, student):
        await manager.forgot_password("sstudent@campus.edu")
        token = _reset_token_from_email(email)
        del memory_store.principals[student.id]

        with pytest.raises(InvalidTokenError):
            await manager.reset_password(token, "Brand-new-pass-7")

    async def test_token_reusable_without_ledger(self, manager, email, student):
        await manager.forgot_password("sstudent@campus.edu")
        token = _reset_token_from_email(email)

        await manager.reset_password(token, "Brand-new-pass-7")
        await manager.reset_password(token, "Another-pass-8")

    async def test_single_use_ledger_blocks_replay(
        self, memory_store, settings, passwords, email, clock, student
    ):
        ledger = ResetTokenLedger()
        ledger._now = clock
        manager = _build_manager(
            memory_store, settings, passwords, email, clock, reset_ledger=ledger
        )
        await manager.forgot_password("sstudent@campus.edu")
        token = _reset_token_from_email(email)

        await manager.reset_password(token, "Brand-new-pass-7")
        with pytest.raises(InvalidTokenError) as excinfo:
            await manager.reset_password(token, "Another-pass-8")
        assert excinfo.value.message == "Reset token already used"


class TestAuthenticate:
    async def test_bearer_header_resolves_context(self, manager, student):
        session = await manager.login("sstudent", PASSWORD, CLIENT_IP)

        context = await manager.authenticate(f"Bearer {session.access_token}")

        assert context.username == "sstudent"
        assert context.role is Role.STUDENT
        assert context.full_name == "Sam Student"

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer ", "Bearer"])
    async def test_missing_bearer(self, manager, header):
        with pytest.raises(MissingTokenError):
            await manager.authenticate(header)

    async def test_expired_access_token(self, manager, student, clock):
        session = await manager.login("sstudent", PASSWORD, CLIENT_IP)
        clock.advance(seconds=900)

        with pytest.raises(ExpiredTokenError):
            await manager.authenticate(f"Bearer {session.access_token}")
