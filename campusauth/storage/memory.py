from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from campusauth.logging import get_logger
from campusauth.storage.errors import ConstraintViolation
from campusauth.storage.models import AuditEvent, Principal, RefreshToken, Role


class MemoryStore:
    """In-process user directory, refresh-token ledger and audit log.

    State is snapshotted to ``<fs_root>/state/memory_store.json`` after every
    write so a restarted dev server keeps its principals and sessions.
    """

    def __init__(self, fs_root: str = "/tmp/campusauth") -> None:
        self.logger = get_logger(__name__)
        self.principals: Dict[str, Principal] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.audit_events: List[AuditEvent] = []
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    # -- user directory -------------------------------------------------

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
        with self._data_lock:
            for existing in self.principals.values():
                if existing.username == username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            principal = Principal.new(
                username,
                email,
                password_hash,
                full_name,
                role=role,
                enabled=enabled,
                email_verified=email_verified,
            )
            self.principals[principal.id] = principal
            self._persist_state()
            return principal

    def get_principal(self, principal_id: str) -> Optional[Principal]:
        with self._data_lock:
            return self.principals.get(principal_id)

    def get_principal_by_username(self, username: str) -> Optional[Principal]:
        with self._data_lock:
            return next(
                (p for p in self.principals.values() if p.username == username), None
            )

    def get_principal_by_email(self, email: str) -> Optional[Principal]:
        with self._data_lock:
            return next((p for p in self.principals.values() if p.email == email), None)

    def update_password_hash(self, principal_id: str, password_hash: str) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if principal is None:
                return
            principal.password_hash = password_hash
            self._persist_state()

    def touch_last_login(self, principal_id: str, when: datetime) -> None:
        with self._data_lock:
            principal = self.principals.get(principal_id)
            if principal is None:
                return
            principal.last_login = when
            self._persist_state()

    # -- refresh-token ledger -------------------------------------------

    def create_refresh_token(self, record: RefreshToken) -> RefreshToken:
        with self._data_lock:
            if record.token in self.refresh_tokens:
                raise ConstraintViolation("refresh token already exists", {"field": "token"})
            self.refresh_tokens[record.token] = record
            self._persist_state()
            return record

    def get_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return self.refresh_tokens.get(token)

    def consume_refresh_token(self, token: str, now: datetime) -> Optional[RefreshToken]:
        """Revoke ``token`` if it is still active; return it, or None when it was not."""
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if record is None or not record.is_active(now):
                return None
            record.revoked = True
            self._persist_state()
            return record

    def revoke_refresh_token(self, token: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token)
            if record is None:
                return None
            record.revoked = True
            self._persist_state()
            return record

    def revoke_user_refresh_tokens(self, principal_id: str) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.principal_id == principal_id and not record.revoked:
                    record.revoked = True
                    revoked += 1
            if revoked:
                self._persist_state()
            return revoked

    def list_refresh_tokens(self, principal_id: str) -> List[RefreshToken]:
        with self._data_lock:
            return sorted(
                (r for r in self.refresh_tokens.values() if r.principal_id == principal_id),
                key=lambda r: r.created_at,
            )

    # -- audit log ------------------------------------------------------

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
        with self._data_lock:
            event = AuditEvent(
                id=str(uuid.uuid4()),
                action=action,
                actor_id=actor_id,
                target_type=target_type,
                target_id=target_id,
                details=dict(details or {}),
                ip_address=ip_address,
            )
            self.audit_events.append(event)
            self._persist_state()
            return event

    def list_audit_events(
        self, *, action: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]:
        with self._data_lock:
            events = [e for e in self.audit_events if action is None or e.action == action]
            return list(reversed(events))[:limit]

    # -- snapshot -------------------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "principals": [self._serialize_principal(p) for p in self.principals.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
            "audit_events": [self._serialize_audit_event(e) for e in self.audit_events],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.principals = {
            p["id"]: self._deserialize_principal(p) for p in data.get("principals", [])
        }
        self.refresh_tokens = {
            r["token"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
        }
        self.audit_events = [
            self._deserialize_audit_event(e) for e in data.get("audit_events", [])
        ]
        self.logger.info(
            "memory_store_loaded",
            principals=len(self.principals),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True

    def _serialize_principal(self, principal: Principal) -> dict:
        return {
            "id": principal.id,
            "username": principal.username,
            "email": principal.email,
            "password_hash": principal.password_hash,
            "full_name": principal.full_name,
            "role": principal.role.value,
            "enabled": principal.enabled,
            "email_verified": principal.email_verified,
            "last_login": (
                self._serialize_datetime(principal.last_login)
                if principal.last_login
                else None
            ),
            "created_at": self._serialize_datetime(principal.created_at),
        }

    def _deserialize_principal(self, data: dict) -> Principal:
        last_login = data.get("last_login")
        return Principal(
            id=str(data["id"]),
            username=data["username"],
            email=data["email"],
            password_hash=data["password_hash"],
            full_name=data.get("full_name", ""),
            role=Role(data.get("role", Role.STUDENT.value)),
            enabled=data.get("enabled", True),
            email_verified=data.get("email_verified", False),
            last_login=self._deserialize_datetime(last_login) if last_login else None,
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_refresh_token(self, record: RefreshToken) -> dict:
        return {
            "id": record.id,
            "principal_id": record.principal_id,
            "token": record.token,
            "expiry_date": self._serialize_datetime(record.expiry_date),
            "revoked": record.revoked,
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            principal_id=data["principal_id"],
            token=data["token"],
            expiry_date=self._deserialize_datetime(data["expiry_date"]),
            revoked=data.get("revoked", False),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_audit_event(self, event: AuditEvent) -> dict:
        return {
            "id": event.id,
            "action": event.action,
            "actor_id": event.actor_id,
            "target_type": event.target_type,
            "target_id": event.target_id,
            "details": event.details,
            "ip_address": event.ip_address,
            "created_at": self._serialize_datetime(event.created_at),
        }

    def _deserialize_audit_event(self, data: dict) -> AuditEvent:
        return AuditEvent(
            id=data["id"],
            action=data["action"],
            actor_id=data.get("actor_id"),
            target_type=data.get("target_type"),
            target_id=data.get("target_id"),
            details=data.get("details") or {},
            ip_address=data.get("ip_address"),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
