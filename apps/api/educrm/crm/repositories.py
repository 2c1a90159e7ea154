from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import Select, and_, select
from sqlalchemy.orm import Session

from educrm.crm.models import Application, Lead, Pipeline
from educrm.tenancy.context import Scope
from educrm.tenancy.repository import ScopedRepository


class LeadRepository(ScopedRepository):
    def scoped(self, scope: Scope, *, include_inactive: bool = False) -> Select[Any]:
        query = self.apply_scope_query(select(Lead), scope)
        if not include_inactive:
            query = query.where(Lead.is_active.is_(True))
        return query

    def get(self, session: Session, lead_id: uuid.UUID) -> Lead | None:
        return session.get(Lead, lead_id)


class ApplicationRepository(ScopedRepository):
    def scoped(self, scope: Scope) -> Select[Any]:
        return self.apply_scope_query(select(Application), scope)

    def get(self, session: Session, application_id: uuid.UUID) -> Application | None:
        return session.get(Application, application_id)


class PipelineRepository(ScopedRepository):
    def scoped(self, scope: Scope, pipeline_type: str | None = None) -> Select[Any]:
        query = self.apply_scope_query(select(Pipeline), scope).where(Pipeline.deleted_at.is_(None))
        if pipeline_type is not None:
            query = query.where(Pipeline.type == pipeline_type)
        return query

    def get(self, session: Session, pipeline_id: uuid.UUID) -> Pipeline | None:
        return session.scalar(select(Pipeline).where(and_(Pipeline.id == pipeline_id, Pipeline.deleted_at.is_(None))))

    def find_default(
        self,
        session: Session,
        tenant_id: uuid.UUID,
        sub_account_id: uuid.UUID | None,
        pipeline_type: str,
    ) -> Pipeline | None:
        sub_account_clause = (
            Pipeline.sub_account_id.is_(None) if sub_account_id is None else Pipeline.sub_account_id == sub_account_id
        )
        return session.scalar(
            select(Pipeline).where(
                and_(
                    Pipeline.tenant_id == tenant_id,
                    sub_account_clause,
                    Pipeline.type == pipeline_type,
                    Pipeline.is_default.is_(True),
                    Pipeline.deleted_at.is_(None),
                )
            )
        )
