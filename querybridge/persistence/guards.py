from __future__ import annotations


class TenantPredicateError(RuntimeError):
    """Query attempted without a tenant predicate."""


def require_tenant_id(tenant_id: str | None) -> None:
    # Refuse unscoped reads so a missing tenant never widens a query.
    if not tenant_id:
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")


def tenant_predicate(model, tenant_id: str) -> object:
    # Build tenant predicates through a single helper to guarantee guard coverage.
    require_tenant_id(tenant_id)
    return model.tenant_id == tenant_id
