from __future__ import annotations

from typing import Any


class TenantPredicateError(RuntimeError):
    """Raised when a tenant-scoped query is built without a tenant id."""


def require_tenant_id(tenant_id: str | None) -> str:
    if not tenant_id:
        raise TenantPredicateError("Tenant predicate required but tenant_id is missing")
    return tenant_id


def tenant_predicate(model: Any, tenant_id: str | None) -> Any:
    # Every tenant-owned query goes through here so scoping cannot be forgotten.
    return model.tenant_id == require_tenant_id(tenant_id)
