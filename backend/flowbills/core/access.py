"""Roles and tenant scope.

Every token subject is its own tenant: invoices, vendors, AFEs and wells are
owned by the subject that created them. ADMIN and SERVICE act across tenants;
APPROVER works the shared approval queue.
"""

from dataclasses import dataclass
from enum import StrEnum
from typing import Any, Optional


class Role(StrEnum):
    AP_CLERK = "AP_CLERK"
    APPROVER = "APPROVER"
    ADMIN = "ADMIN"
    SERVICE = "SERVICE"


CROSS_TENANT_ROLES = frozenset({Role.ADMIN, Role.SERVICE})


def role_from_claims(claims: dict[str, Any]) -> Optional[Role]:
    """Role from ``app_metadata.role`` only; ``user_metadata`` is user-editable."""
    raw = (claims.get("app_metadata") or {}).get("role")
    if raw is None:
        return None
    try:
        return Role(str(raw).strip().upper())
    except ValueError:
        return None


@dataclass
class CurrentUser:
    id: str
    role: str
    email: Optional[str] = None

    @property
    def tenant_id(self) -> str:
        return self.id

    def can_access(self, owner_id: Any) -> bool:
        if self.role in CROSS_TENANT_ROLES:
            return True
        return owner_id is not None and str(owner_id) == self.tenant_id
