from __future__ import annotations

import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Protocol, Tuple

from campusauth.logging import get_logger
from campusauth.service.errors import InvalidTokenError
from campusauth.storage.models import Principal, RefreshToken

logger = get_logger(__name__)


class RefreshTokenBackend(Protocol):
    def create_refresh_token(self, record: RefreshToken) -> RefreshToken: ...

    def consume_refresh_token(self, token: str, now: datetime) -> Optional[RefreshToken]: ...

    def revoke_refresh_token(self, token: str) -> Optional[RefreshToken]: ...

    def revoke_user_refresh_tokens(self, principal_id: str) -> int: ...

    def get_principal(self, principal_id: str) -> Optional[Principal]: ...


@dataclass(frozen=True)
class IssuedRefreshToken:
    value: str
    expires_at: datetime

    def max_age(self, now: datetime) -> int:
        """Seconds left before expiry, for the cookie ``Max-Age``."""
        return max(0, int((self.expires_at - now).total_seconds()))


class RefreshTokenStore:
    """Rotation ledger for opaque refresh tokens.

    Rows are only ever marked revoked, never deleted, so the history of a
    session stays available for audit.
    """

    def __init__(self, backend: RefreshTokenBackend, ttl_days: int = 7) -> None:
        self.backend = backend
        self.ttl_days = ttl_days

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _generate_value(self) -> str:
        # 256 bits from the OS CSPRNG
        return secrets.token_urlsafe(32)

    def issue(self, principal: Principal) -> IssuedRefreshToken:
        record = RefreshToken.new(
            principal.id, self._generate_value(), self.ttl_days, now=self._now()
        )
        self.backend.create_refresh_token(record)
        return IssuedRefreshToken(value=record.token, expires_at=record.expiry_date)

    def validate_and_rotate(
        self, token_value: str
    ) -> Tuple[Principal, IssuedRefreshToken]:
        """Revoke the presented token and mint its successor.

        Absent, revoked and expired tokens all fail with ``InvalidTokenError``.
        When two callers race on the same value only one of them wins.
        """
        if not token_value:
            raise InvalidTokenError("Invalid refresh token")
        consumed = self.backend.consume_refresh_token(token_value, self._now())
        if consumed is None:
            logger.info("refresh_token_rejected", token_prefix=token_value[:8])
            raise InvalidTokenError("Refresh token expired or revoked")
        principal = self.backend.get_principal(consumed.principal_id)
        if principal is None or not principal.enabled:
            logger.warning(
                "refresh_token_principal_unavailable", principal_id=consumed.principal_id
            )
            raise InvalidTokenError("Invalid refresh token")
        issued = self.issue(principal)
        logger.info("refresh_token_rotated", principal_id=principal.id)
        return principal, issued

    def revoke(self, token_value: Optional[str]) -> Optional[RefreshToken]:
        """Mark the token revoked and return its record, or None if it is unknown."""
        if not token_value:
            return None
        return self.backend.revoke_refresh_token(token_value)

    def revoke_all(self, principal_id: str) -> int:
        return self.backend.revoke_user_refresh_tokens(principal_id)
