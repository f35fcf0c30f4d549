from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from campusauth.logging import get_logger
from campusauth.service.passwords import PasswordHashing, PasswordPolicy
from campusauth.storage.models import Principal, Role

logger = get_logger(__name__)

DEFAULT_ADMIN_IDENTIFIER = "admin@lms.local"
DEFAULT_ADMIN_FULL_NAME = "System Administrator"


class AdminDirectory(Protocol):
    def get_principal_by_username(self, username: str) -> Optional[Principal]: ...

    def get_principal_by_email(self, email: str) -> Optional[Principal]: ...

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
    ) -> Principal: ...


@dataclass
class BootstrapResult:
    principal: Optional[Principal]
    status: str


def ensure_admin(
    store: AdminDirectory,
    password: str,
    *,
    identifier: str = DEFAULT_ADMIN_IDENTIFIER,
    full_name: str = DEFAULT_ADMIN_FULL_NAME,
    passwords: Optional[PasswordHashing] = None,
    policy: Optional[PasswordPolicy] = None,
    dry_run: bool = False,
) -> BootstrapResult:
    """Create the administrator account unless one already uses ``identifier``.

    ``identifier`` is used as both username and email. An existing account is
    returned untouched, including its password.
    """
    existing = store.get_principal_by_username(identifier) or store.get_principal_by_email(
        identifier
    )
    if existing is not None:
        logger.info("admin_bootstrap_exists", principal_id=existing.id)
        return BootstrapResult(principal=existing, status="exists")

    (policy or PasswordPolicy()).validate(password)
    if dry_run:
        return BootstrapResult(principal=None, status="dry_run")

    principal = store.create_principal(
        identifier,
        identifier,
        (passwords or PasswordHashing()).hash(password),
        full_name,
        role=Role.ADMIN,
        enabled=True,
        email_verified=True,
    )
    logger.info("admin_bootstrap_created", principal_id=principal.id)
    return BootstrapResult(principal=principal, status="created")
