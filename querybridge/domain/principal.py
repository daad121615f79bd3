from __future__ import annotations

from dataclasses import dataclass


ADMIN_ROLES = frozenset({"owner", "admin"})


@dataclass(frozen=True)
class Principal:
    """Authenticated caller identity handed in by the outer auth layer."""

    user_id: str
    tenant_id: str
    role: str = "member"
    request_id: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES
