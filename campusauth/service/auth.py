from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

from campusauth.config import Settings
from campusauth.logging import fingerprint, get_logger
from campusauth.service import audit as audit_actions
from campusauth.service.audit import AuditSink
from campusauth.service.email import EmailSender
from campusauth.service.errors import (
    InvalidCredentialsError,
    InvalidTokenError,
    MissingTokenError,
    NotFoundError,
)
from campusauth.service.passwords import PasswordHashing, PasswordPolicy
from campusauth.service.rate_limit import LoginRateLimiter
from campusauth.service.refresh_tokens import IssuedRefreshToken, RefreshTokenStore
from campusauth.service.tokens import ResetTokenLedger, TokenCodec
from campusauth.storage.models import Principal, Role

logger = get_logger(__name__)

UNKNOWN_CLIENT = "unknown"


class PrincipalDirectory(Protocol):
    def get_principal(self, principal_id: str) -> Optional[Principal]: ...

    def get_principal_by_username(self, username: str) -> Optional[Principal]: ...

    def get_principal_by_email(self, email: str) -> Optional[Principal]: ...

    def update_password_hash(self, principal_id: str, password_hash: str) -> None: ...

    def touch_last_login(self, principal_id: str, when: datetime) -> None: ...


@dataclass
class SessionTokens:
    access_token: str
    expires_in_seconds: int
    username: str
    full_name: str
    role: Role
    refresh_token: IssuedRefreshToken


@dataclass
class AuthContext:
    username: str
    role: Role
    full_name: str


class AuthSessionManager:
    """Login, refresh rotation, logout and password reset for one deployment.

    The directory, refresh ledger and limiter are synchronous; audit writes
    and reset emails never fail the calling operation.
    """

    def __init__(
        self,
        directory: PrincipalDirectory,
        tokens: TokenCodec,
        refresh_tokens: RefreshTokenStore,
        rate_limiter: LoginRateLimiter,
        audit: AuditSink,
        email: EmailSender,
        settings: Settings,
        *,
        passwords: Optional[PasswordHashing] = None,
        policy: Optional[PasswordPolicy] = None,
        reset_ledger: Optional[ResetTokenLedger] = None,
    ) -> None:
        self.directory = directory
        self.tokens = tokens
        self.refresh_tokens = refresh_tokens
        self.rate_limiter = rate_limiter
        self.audit = audit
        self.email = email
        self.settings = settings
        self.passwords = passwords or PasswordHashing()
        self.policy = policy or PasswordPolicy()
        self.reset_ledger = reset_ledger
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def resolve_principal(self, identifier: str) -> Principal:
        """Find a principal by username first, then by email."""
        principal = self.directory.get_principal_by_username(identifier)
        if principal is None:
            principal = self.directory.get_principal_by_email(identifier)
        if principal is None:
            raise NotFoundError("principal not found")
        return principal

    def _record_audit(self, action: str, **fields: Any) -> None:
        try:
            self.audit.record(action, **fields)
        except Exception as exc:
            self.logger.warning("audit_record_failed", action=action, error=str(exc))

    def _session_tokens(
        self, principal: Principal, refresh_token: IssuedRefreshToken
    ) -> SessionTokens:
        return SessionTokens(
            access_token=self.tokens.issue_access_token(principal),
            expires_in_seconds=self.tokens.access_token_ttl_seconds,
            username=principal.username,
            full_name=principal.full_name,
            role=principal.role,
            refresh_token=refresh_token,
        )

    async def login(
        self, username_or_email: str, password: str, client_ip: Optional[str] = None
    ) -> SessionTokens:
        client_key = client_ip or UNKNOWN_CLIENT
        self.rate_limiter.check_allowed(client_key)

        try:
            principal = self.resolve_principal(username_or_email)
        except NotFoundError:
            principal = None
        if (
            principal is None
            or not principal.enabled
            or not self.passwords.verify(principal.password_hash, password)
        ):
            attempts = self.rate_limiter.record_failure(client_key)
            self.logger.info(
                "login_failed",
                identifier_hash=fingerprint(username_or_email),
                client_ip=client_key,
                attempts=attempts,
                disabled=bool(principal is not None and not principal.enabled),
            )
            self._record_audit(
                audit_actions.LOGIN_FAILED,
                target_type="User",
                details={"identifier": username_or_email},
                ip_address=client_ip,
            )
            raise InvalidCredentialsError("Invalid credentials")

        if self.passwords.needs_rehash(principal.password_hash):
            self.directory.update_password_hash(principal.id, self.passwords.hash(password))
            self.logger.info("password_rehashed", principal_id=principal.id)
        self.directory.touch_last_login(principal.id, self._now())
        refresh_token = self.refresh_tokens.issue(principal)
        session = self._session_tokens(principal, refresh_token)
        self._record_audit(
            audit_actions.LOGIN_SUCCESS,
            actor_id=principal.id,
            target_type="User",
            target_id=principal.id,
            ip_address=client_ip,
        )
        self.logger.info("login_succeeded", principal_id=principal.id, client_ip=client_key)
        return session

    async def refresh(self, presented_refresh_token: Optional[str]) -> SessionTokens:
        if not presented_refresh_token:
            raise MissingTokenError("Missing refresh token")
        principal, refresh_token = self.refresh_tokens.validate_and_rotate(
            presented_refresh_token
        )
        return self._session_tokens(principal, refresh_token)

    async def logout(self, presented_refresh_token: Optional[str]) -> bool:
        """Revoke the presented refresh token; True when a stored token was found."""
        if not presented_refresh_token:
            return False
        record = self.refresh_tokens.revoke(presented_refresh_token)
        if record is None:
            return False
        self._record_audit(
            audit_actions.LOGOUT,
            actor_id=record.principal_id,
            target_type="RefreshToken",
            target_id=record.id,
        )
        self.logger.info("logout", principal_id=record.principal_id)
        return True

    async def forgot_password(self, email: str) -> None:
        # Unknown addresses return exactly like known ones
        principal = self.directory.get_principal_by_email(email)
        if principal is None:
            self.logger.info("password_reset_unknown_email", email_hash=fingerprint(email))
            return
        try:
            token = self.tokens.issue_password_reset_token(principal.username)
        except ValueError:
            self.logger.warning("password_reset_unsupported_username", principal_id=principal.id)
            return
        reset_link = f"{self.settings.password_reset_url}?token={token}"
        try:
            # SMTP is blocking
            sent = await asyncio.to_thread(
                self.email.send_password_reset,
                principal.email,
                reset_link,
                expires_minutes=self.settings.password_reset_ttl_minutes,
            )
        except Exception as exc:
            self.logger.warning(
                "password_reset_email_failed", principal_id=principal.id, error=str(exc)
            )
        else:
            if not sent:
                self.logger.warning("password_reset_email_failed", principal_id=principal.id)
        self._record_audit(
            audit_actions.PASSWORD_RESET_REQUEST,
            actor_id=principal.id,
            target_type="User",
            target_id=principal.id,
        )
        self.logger.info("password_reset_requested", principal_id=principal.id)

    async def reset_password(self, token: str, new_password: str) -> None:
        if not token:
            raise InvalidTokenError("Invalid reset token")
        claims = self.tokens.verify_password_reset_claims(token)
        self.policy.validate(new_password)
        principal = self.directory.get_principal_by_username(claims.username)
        if principal is None:
            self.logger.warning(
                "password_reset_user_missing", username_hash=fingerprint(claims.username)
            )
            raise InvalidTokenError("Invalid reset token")
        if self.reset_ledger is not None and not self.reset_ledger.consume(
            claims.checksum, claims.expires_at
        ):
            self.logger.warning("password_reset_token_reused", principal_id=principal.id)
            raise InvalidTokenError("Reset token already used")

        self.directory.update_password_hash(principal.id, self.passwords.hash(new_password))
        if self.settings.revoke_sessions_on_password_reset:
            revoked = self.refresh_tokens.revoke_all(principal.id)
            self.logger.info(
                "refresh_tokens_revoked_on_reset", principal_id=principal.id, revoked=revoked
            )
        self._record_audit(
            audit_actions.PASSWORD_RESET,
            actor_id=principal.id,
            target_type="User",
            target_id=principal.id,
        )
        self.logger.info("password_reset_completed", principal_id=principal.id)

    async def authenticate(self, authorization: Optional[str]) -> AuthContext:
        """Verify a ``Bearer`` header for downstream request handlers."""
        token = self._extract_bearer(authorization)
        if not token:
            raise MissingTokenError("Missing bearer token")
        claims = self.tokens.verify_access_token(token)
        return AuthContext(
            username=claims.subject, role=claims.role, full_name=claims.full_name
        )

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        token = header[7:].strip()
        return token or None

