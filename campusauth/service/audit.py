from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from campusauth.storage.models import AuditEvent

LOGIN_SUCCESS = "LOGIN_SUCCESS"
LOGIN_FAILED = "LOGIN_FAILED"
LOGOUT = "LOGOUT"
PASSWORD_RESET_REQUEST = "PASSWORD_RESET_REQUEST"
PASSWORD_RESET = "PASSWORD_RESET"


class AuditSink(Protocol):
    def record(
        self,
        action: str,
        *,
        actor_id: Optional[str] = None,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
    ) -> None: ...


class AuditStore(Protocol):
    def record_audit_event(
        self,
        action: str,
        *,
        actor_id: Optional[str] = None,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        details: Optional[dict] = None,
        ip_address: Optional[str] = None,
    ) -> AuditEvent: ...

    def list_audit_events(
        self, *, action: Optional[str] = None, limit: int = 100
    ) -> List[AuditEvent]: ...


class StoreAuditSink:
    """Writes audit events to the ``audit_log`` of the backing store."""

    def __init__(self, store: AuditStore) -> None:
        self.store = store

    def record(
        self,
        action: str,
        *,
        actor_id: Optional[str] = None,
        target_type: Optional[str] = None,
        target_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
    ) -> None:
        self.store.record_audit_event(
            action,
            actor_id=actor_id,
            target_type=target_type,
            target_id=target_id,
            details=details,
            ip_address=ip_address,
        )

