from __future__ import annotations

import json
import uuid
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from campusauth.logging import get_logger
from campusauth.storage.errors import ConstraintViolation
from campusauth.storage.models import AuditEvent, Principal, RefreshToken, Role

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        full_name TEXT NOT NULL,
        role TEXT NOT NULL,
        enabled BOOLEAN NOT NULL DEFAULT TRUE,
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        last_login TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id),
        token TEXT NOT NULL UNIQUE,
        expiry_date TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_user_idx ON refresh_token (user_id)",
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id UUID PRIMARY KEY,
        actor_id UUID,
        action TEXT NOT NULL,
        target_type TEXT,
        target_id TEXT,
        details JSONB,
        ip_address TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


class PostgresStore:
    """Postgres-backed user directory, refresh-token ledger and audit log."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    # user directory
    def create_principal(
        self,
        username: str,
        email: str,
        password_hash: str,
        full_name: str,
        *,
        role: Role = Role.STUDENT,
        enabled: bool = True,
        email_verified: bool = False,
    ) -> Principal:
        principal = Principal.new(
            username,
            email,
            password_hash,
            full_name,
            role=role,
            enabled=enabled,
            email_verified=email_verified,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, password_hash, full_name, role, enabled, email_verified, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        principal.id,
                        username,
                        email,
                        password_hash,
                        full_name,
                        principal.role.value,
                        enabled,
                        email_verified,
                        principal.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "username or email already exists", {"field": "username,email"}
            )
        return principal

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (principal_id,)
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def get_principal_by_username(self, username: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        return self._principal_from_row(row) if row else None

    def update_password_hash(self, principal_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET password_hash = %s WHERE id = %s",
                (password_hash, principal_id),
            )

    def touch_last_login(self, principal_id: str, when: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login = %s WHERE id = %s",
                (when, principal_id),
            )

    # refresh-token ledger
    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, user_id, token, expiry_date, revoked, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.principal_id,
                        record.token,
                        record.expiry_date,
                        record.revoked,
                        record.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "refresh token user missing", {"user_id": record.principal_id}
            )
        return record

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (token,)
            ).fetchone()
        return self._refresh_token_from_row(row) if row else None

    def consume_refresh_token(self, token: str, now: datetime) -> Optional[RefreshToken]:
        # Single conditional UPDATE so concurrent rotations have one winner
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE
                WHERE token = %s AND NOT revoked AND expiry_date > %s
                RETURNING *
                """,
                (token, now),
            ).fetchone()
        return self._refresh_token_from_row(row) if row else None

    def revoke_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE refresh_token SET revoked = TRUE WHERE token = %s RETURNING *",
                (token,),
            ).fetchone()
        return self._refresh_token_from_row(row) if row else None

    def revoke_user_refresh_tokens(self, principal_id: str) -> int:
        with self._connect() as conn:
            rows = conn.execute(
                """
                UPDATE refresh_token SET revoked = TRUE
                WHERE user_id = %s AND NOT revoked
                RETURNING id
                """,
                (principal_id,),
            ).fetchall()
        return len(rows)

    def list_refresh_tokens(self, principal_id: str) -> List[RefreshToken]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE user_id = %s ORDER BY created_at",
                (principal_id,),
            ).fetchall()
        return [self._refresh_token_from_row(row) for row in rows]

    # audit log
    def record_audit_event(
        self,
        action: str,
        *,
        actor_id: Optional[str] = None,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        details: Optional[dict] = None,
        ip_address: Optional[str] = None,
    ) -> AuditEvent:
        event = AuditEvent(
            id=str(uuid.uuid4()),
            action=action,
            actor_id=actor_id,
            target_type=target_type,
            target_id=target_id,
            details=dict(details or {}),
            ip_address=ip_address,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (id, actor_id, action, target_type, target_id, details, ip_address, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.id,
                    actor_id,
                    action,
                    target_type,
                    target_id,
                    json.dumps(event.details) if event.details else None,
                    ip_address,
                    event.created_at,
                ),
            )
        return event

    def list_audit_events(
        self, *, action: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._connect() as conn:
            if action:
                rows = conn.execute(
                    "SELECT * FROM audit_log WHERE action = %s ORDER BY created_at DESC LIMIT %s",
                    (action, limit),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM audit_log ORDER BY created_at DESC LIMIT %s",
                    (limit,),
                ).fetchall()
        return [self._audit_event_from_row(row) for row in rows]

    @staticmethod
    def _principal_from_row(row: dict) -> Principal:
        return Principal(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            full_name=row.get("full_name") or "",
            role=Role(row.get("role", Role.STUDENT.value)),
            enabled=bool(row.get("enabled", True)),
            email_verified=bool(row.get("email_verified", False)),
            last_login=row.get("last_login"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _refresh_token_from_row(row: dict) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            principal_id=str(row["user_id"]),
            token=row["token"],
            expiry_date=row["expiry_date"],
            revoked=bool(row.get("revoked", False)),
            created_at=row["created_at"],
        )

    @staticmethod
    def _audit_event_from_row(row: dict) -> AuditEvent:
        details = row.get("details") or {}
        if isinstance(details, str):
            details = json.loads(details)
        return AuditEvent(
            id=str(row["id"]),
            action=row["action"],
            actor_id=str(row["actor_id"]) if row.get("actor_id") else None,
            target_type=row.get("target_type"),
            target_id=row.get("target_id"),
            details=details,
            ip_address=row.get("ip_address"),
            created_at=row["created_at"],
        )
