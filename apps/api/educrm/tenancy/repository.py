from __future__ import annotations

from typing import Any

from sqlalchemy.sql import Select

from educrm.tenancy.context import Scope


def apply_scope_filter(query: Select[Any], scope: Scope) -> Select[Any]:
    """Restrict a select to rows reachable from ``scope``.

    Every selected entity exposing ``tenant_id`` is filtered by tenant. Entities that also
    expose ``sub_account_id`` are further narrowed when the scope is confined.
    """

    for description in query.column_descriptions:
        model = description.get("entity")
        if model is None:
            continue
        if hasattr(model, "tenant_id"):
            query = query.where(getattr(model, "tenant_id") == scope.tenant_id)
        if not scope.is_tenant_wide and hasattr(model, "sub_account_id"):
            query = query.where(getattr(model, "sub_account_id") == scope.sub_account_id)
    return query


class ScopedRepository:
    def apply_scope_query(self, query: Select[Any], scope: Scope) -> Select[Any]:
        return apply_scope_filter(query, scope)
