from __future__ import annotations

import logging
import uuid
from typing import Any

from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from sqlalchemy import and_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from educrm import events
from educrm.core.config import get_settings
from educrm.crm.models import Application, Lead, Pipeline
from educrm.crm.repositories import ApplicationRepository, LeadRepository, PipelineRepository
from educrm.crm.schemas import (
    BulkItemResult,
    BulkMoveResult,
    DefaultPipelineCreate,
    MoveItemResult,
    PipelineAnalytics,
    PipelineCreate,
    PipelineItemRead,
    PipelineItemsRead,
    PipelineRead,
    PipelineUpdate,
    StageAnalytics,
    StageBucket,
    StageDef,
)
from educrm.crm.service import commit_or_raise, record_activity, resolve_sub_account_for_write, utcnow
from educrm.metrics import observe_pipeline_move
from educrm.tenancy.context import TenantContext
from educrm.tenancy.errors import ConflictError, CRMError, NotFoundError, StorageError, ValidationError
from educrm.tenancy.guard import require_ownership, require_role, require_tenant_scope
from educrm.tenancy.roles import Role


logger = logging.getLogger("educrm.crm.pipelines")
tracer = trace.get_tracer("educrm.crm.pipelines")


DEFAULT_PIPELINE_NAMES = {
    "lead": "Default Lead Pipeline",
    "application": "Default Application Pipeline",
}

DEFAULT_STAGES: dict[str, list[dict[str, Any]]] = {
    "lead": [
        {"id": "new", "name": "New Lead", "order": 0, "color": "#3B82F6"},
        {"id": "contacted", "name": "Contacted", "order": 1, "color": "#8B5CF6"},
        {"id": "qualified", "name": "Qualified", "order": 2, "color": "#10B981"},
        {"id": "proposal_sent", "name": "Proposal Sent", "order": 3, "color": "#F59E0B"},
        {"id": "converted", "name": "Converted", "order": 4, "color": "#EF4444"},
    ],
    "application": [
        {"id": "draft", "name": "Draft", "order": 0, "color": "#6B7280"},
        {"id": "submitted", "name": "Submitted", "order": 1, "color": "#3B82F6"},
        {"id": "under_review", "name": "Under Review", "order": 2, "color": "#8B5CF6"},
        {"id": "accepted", "name": "Accepted", "order": 3, "color": "#10B981"},
        {"id": "rejected", "name": "Rejected", "order": 4, "color": "#EF4444"},
    ],
}

_ITEM_MODELS: dict[str, type[Lead] | type[Application]] = {"lead": Lead, "application": Application}


def sorted_stages(pipeline: Pipeline) -> list[StageDef]:
    return sorted((StageDef.model_validate(stage) for stage in pipeline.stages or []), key=lambda stage: stage.order)


def stage_matches(stage: StageDef, status: str | None) -> bool:
    # older rows carry the stage name instead of its id
    return status is not None and (status == stage.id or status == stage.name)


def to_item_read(item: Lead | Application) -> PipelineItemRead:
    if isinstance(item, Lead):
        return PipelineItemRead(
            id=item.id,
            item_type="lead",
            title=f"{item.first_name} {item.last_name}",
            status=item.status,
            sub_account_id=item.sub_account_id,
            assigned_agent_id=item.assigned_agent_id,
            score=item.score,
            updated_at=item.updated_at,
            row_version=item.row_version,
        )
    return PipelineItemRead(
        id=item.id,
        item_type="application",
        title=item.program_id,
        status=item.status,
        sub_account_id=item.sub_account_id,
        assigned_agent_id=item.assigned_agent_id,
        updated_at=item.updated_at,
        row_version=item.row_version,
    )


class PipelineService:
    """Stage engine for lead and application pipelines.

    Items are leads or applications; an item's ``status`` holds the id of the stage it sits
    in. Transitions are not constrained by stage order.
    """

    repository = PipelineRepository()
    lead_repository = LeadRepository()
    application_repository = ApplicationRepository()

    def list_pipelines(self, session: Session, ctx: TenantContext, pipeline_type: str | None = None) -> list[PipelineRead]:
        require_role(ctx, Role.AGENT)
        query = self.repository.scoped(require_tenant_scope(ctx), pipeline_type)
        try:
            rows = session.scalars(query.order_by(Pipeline.is_default.desc(), Pipeline.name.asc())).all()
        except SQLAlchemyError as exc:
            raise StorageError("pipeline query failed") from exc
        return [PipelineRead.model_validate(item) for item in rows]

    def get_pipeline(self, session: Session, ctx: TenantContext, pipeline_id: uuid.UUID) -> PipelineRead:
        require_role(ctx, Role.AGENT)
        return PipelineRead.model_validate(self._get_owned_pipeline(session, ctx, pipeline_id))

    def create_pipeline(self, session: Session, ctx: TenantContext, dto: PipelineCreate) -> PipelineRead:
        require_role(ctx, Role.SUB_ACCOUNT_ADMIN)
        sub_account_id = resolve_sub_account_for_write(session, ctx, dto.sub_account_id)
        if dto.is_default:
            self._ensure_no_default(session, ctx.tenant_id, sub_account_id, dto.type)

        pipeline = Pipeline(
            tenant_id=ctx.tenant_id,
            sub_account_id=sub_account_id,
            name=dto.name,
            type=dto.type,
            stages=[stage.model_dump(exclude_none=True) for stage in dto.stages],
            is_default=dto.is_default,
        )
        return self._insert(session, ctx, pipeline, "pipeline_created")

    def update_pipeline(
        self,
        session: Session,
        ctx: TenantContext,
        pipeline_id: uuid.UUID,
        dto: PipelineUpdate,
    ) -> PipelineRead:
        require_role(ctx, Role.SUB_ACCOUNT_ADMIN)
        pipeline = self._get_owned_pipeline(session, ctx, pipeline_id)
        expected_version = dto.row_version if dto.row_version is not None else pipeline.row_version

        values: dict[str, Any] = {}
        if dto.name is not None:
            values["name"] = dto.name
        if dto.stages is not None:
            values["stages"] = [stage.model_dump(exclude_none=True) for stage in dto.stages]

        result = session.execute(
            update(Pipeline)
            .where(and_(Pipeline.id == pipeline.id, Pipeline.row_version == expected_version))
            .values(**values, updated_at=utcnow(), row_version=Pipeline.row_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            raise ConflictError("row_version conflict", conflicting_ids=[str(pipeline.id)])

        record_activity(
            session,
            ctx,
            "pipeline_updated",
            f"Pipeline '{dto.name or pipeline.name}' updated",
            sub_account_id=pipeline.sub_account_id,
            details={"pipeline_id": str(pipeline.id), "fields": sorted(values.keys())},
        )
        commit_or_raise(session)
        session.refresh(pipeline)
        return PipelineRead.model_validate(pipeline)

    def delete_pipeline(self, session: Session, ctx: TenantContext, pipeline_id: uuid.UUID) -> None:
        require_role(ctx, Role.SUB_ACCOUNT_ADMIN)
        pipeline = self._get_owned_pipeline(session, ctx, pipeline_id)
        if pipeline.is_default:
            raise ValidationError("cannot delete default pipeline")

        pipeline.deleted_at = utcnow()
        pipeline.row_version += 1
        record_activity(
            session,
            ctx,
            "pipeline_deleted",
            f"Pipeline '{pipeline.name}' deleted",
            sub_account_id=pipeline.sub_account_id,
            details={"pipeline_id": str(pipeline.id)},
        )
        commit_or_raise(session)
        logger.info("pipeline.deleted", extra={"pipeline_id": str(pipeline.id), "user_id": ctx.actor_id})

    def create_default_pipeline(
        self,
        session: Session,
        ctx: TenantContext,
        dto: DefaultPipelineCreate,
    ) -> PipelineRead:
        require_role(ctx, Role.TENANT_ADMIN)
        tenant_id = dto.tenant_id or ctx.tenant_id
        if tenant_id != ctx.tenant_id:
            raise NotFoundError("tenant not found")
        sub_account_id = resolve_sub_account_for_write(session, ctx, dto.sub_account_id)
        self._ensure_no_default(session, tenant_id, sub_account_id, dto.type)

        pipeline = Pipeline(
            tenant_id=tenant_id,
            sub_account_id=sub_account_id,
            name=DEFAULT_PIPELINE_NAMES[dto.type],
            type=dto.type,
            stages=[dict(stage) for stage in DEFAULT_STAGES[dto.type]],
            is_default=True,
        )
        return self._insert(session, ctx, pipeline, "pipeline_created")

    def get_items(self, session: Session, ctx: TenantContext, pipeline_id: uuid.UUID) -> PipelineItemsRead:
        require_role(ctx, Role.AGENT)
        pipeline = self._get_owned_pipeline(session, ctx, pipeline_id)
        stages = sorted_stages(pipeline)
        items = self._load_items(session, ctx, pipeline.type)

        buckets: list[StageBucket] = []
        for stage in stages:
            members = [to_item_read(item) for item in items if stage_matches(stage, item.status)]
            buckets.append(StageBucket(stage=stage, count=len(members), items=members))
        return PipelineItemsRead(pipeline_id=pipeline.id, type=pipeline.type, stages=buckets)

    def move_item(
        self,
        session: Session,
        ctx: TenantContext,
        pipeline_id: uuid.UUID,
        item_id: uuid.UUID,
        from_stage: str,
        to_stage: str,
        notes: str | None = None,
    ) -> MoveItemResult:
        require_role(ctx, Role.AGENT)
        pipeline = self._get_owned_pipeline(session, ctx, pipeline_id)
        return self._move(session, ctx, pipeline, item_id, from_stage, to_stage, notes)

    def bulk_move(
        self,
        session: Session,
        ctx: TenantContext,
        pipeline_id: uuid.UUID,
        item_ids: list[uuid.UUID],
        to_stage: str,
    ) -> BulkMoveResult:
        """Move each item independently. Failures are reported per item, never for the batch."""

        max_items = get_settings().bulk_max_items
        accepted, overflow = item_ids[:max_items], item_ids[max_items:]
        rejected = [
            BulkItemResult(id=item_id, success=False, error="bulk limit exceeded", code="validation_error")
            for item_id in overflow
        ]

        results: list[BulkItemResult] = []
        try:
            require_role(ctx, Role.AGENT)
            pipeline = self._get_owned_pipeline(session, ctx, pipeline_id)
        except CRMError as exc:
            results = [BulkItemResult(id=item_id, success=False, error=exc.message, code=exc.code) for item_id in accepted]
            results.extend(rejected)
            return BulkMoveResult(results=results, succeeded=0, failed=len(results))

        for item_id in accepted:
            try:
                self._move(session, ctx, pipeline, item_id, None, to_stage, None)
            except CRMError as exc:
                results.append(BulkItemResult(id=item_id, success=False, error=exc.message, code=exc.code))
                continue
            results.append(BulkItemResult(id=item_id, success=True))
        results.extend(rejected)

        succeeded = sum(1 for item in results if item.success)
        logger.info(
            "pipeline.bulk_move",
            extra={"pipeline_id": str(pipeline.id), "to_stage": to_stage, "user_id": ctx.actor_id},
        )
        return BulkMoveResult(results=results, succeeded=succeeded, failed=len(results) - succeeded)

    def get_analytics(self, session: Session, ctx: TenantContext, pipeline_id: uuid.UUID) -> PipelineAnalytics:
        require_role(ctx, Role.AGENT)
        pipeline = self._get_owned_pipeline(session, ctx, pipeline_id)
        stages = sorted_stages(pipeline)
        items = self._load_items(session, ctx, pipeline.type)
        total = len(items)

        per_stage: list[StageAnalytics] = []
        for stage in stages:
            count = sum(1 for item in items if stage_matches(stage, item.status))
            per_stage.append(
                StageAnalytics(
                    stage_id=stage.id,
                    name=stage.name,
                    color=stage.color,
                    count=count,
                    percentage=round(count / total * 100, 2) if total else 0.0,
                )
            )

        last_count = per_stage[-1].count if per_stage else 0
        return PipelineAnalytics(
            pipeline_id=pipeline.id,
            stages=per_stage,
            total_items=total,
            conversion_rate=round(last_count / total * 100, 2) if total else 0.0,
        )

    def _move(
        self,
        session: Session,
        ctx: TenantContext,
        pipeline: Pipeline,
        item_id: uuid.UUID,
        from_stage: str | None,
        to_stage: str,
        notes: str | None,
    ) -> MoveItemResult:
        with tracer.start_as_current_span("crm.pipeline.move_item") as span:
            span.set_attribute("pipeline_id", str(pipeline.id))
            span.set_attribute("item_id", str(item_id))
            span.set_attribute("to_stage", to_stage)
            try:
                result = self._apply_move(session, ctx, pipeline, item_id, from_stage, to_stage, notes)
            except CRMError as exc:
                observe_pipeline_move(pipeline.type, exc.code)
                span.set_status(Status(StatusCode.ERROR, exc.message))
                raise
            observe_pipeline_move(pipeline.type, "moved" if result.moved else "noop")
            return result

    def _apply_move(
        self,
        session: Session,
        ctx: TenantContext,
        pipeline: Pipeline,
        item_id: uuid.UUID,
        from_stage: str | None,
        to_stage: str,
        notes: str | None,
    ) -> MoveItemResult:
        item = self._get_owned_item(session, ctx, pipeline.type, item_id)
        stages = sorted_stages(pipeline)
        current = from_stage if from_stage is not None else item.status

        if current == to_stage:
            return MoveItemResult(
                pipeline_id=pipeline.id,
                from_stage=current,
                to_stage=to_stage,
                moved=False,
                item=to_item_read(item),
            )

        if not any(stage.id == to_stage for stage in stages):
            raise ValidationError(f"'{to_stage}' is not a stage of this pipeline")

        if not self._is_current(stages, current, item.status):
            raise ConflictError(
                f"item is in stage '{item.status}', not '{current}'",
                conflicting_ids=[str(item.id)],
            )

        model = _ITEM_MODELS[pipeline.type]
        moved_at = utcnow().isoformat()
        if isinstance(item, Lead):
            history_values = {
                "engagement_history": [
                    *(item.engagement_history or []),
                    {
                        "type": "pipeline_move",
                        "date": moved_at,
                        "details": f"Moved from {current} to {to_stage}",
                        "metadata": {
                            "pipeline_id": str(pipeline.id),
                            "from_stage": current,
                            "to_stage": to_stage,
                            "moved_by": ctx.actor_id,
                        },
                    },
                ]
            }
        else:
            history_values = {
                "timeline": [
                    *(item.timeline or []),
                    {
                        "stage": to_stage,
                        "date": moved_at,
                        "status": "moved",
                        "notes": notes or f"Moved from {current} to {to_stage}",
                        "moved_by": ctx.actor_id,
                    },
                ]
            }

        result = session.execute(
            update(model)
            .where(and_(model.id == item.id, model.row_version == item.row_version))
            .values(status=to_stage, updated_at=utcnow(), row_version=model.row_version + 1, **history_values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            raise ConflictError("item was modified concurrently", conflicting_ids=[str(item.id)])

        record_activity(
            session,
            ctx,
            "pipeline_item_moved",
            f"{pipeline.type.capitalize()} moved from {current} to {to_stage} in pipeline '{pipeline.name}'",
            sub_account_id=item.sub_account_id,
            lead_id=item.id if isinstance(item, Lead) else item.lead_id,
            application_id=item.id if isinstance(item, Application) else None,
            details={
                "pipeline_id": str(pipeline.id),
                "item_id": str(item.id),
                "from_stage": current,
                "to_stage": to_stage,
            },
        )
        commit_or_raise(session)
        session.refresh(item)

        logger.info(
            "pipeline.item_moved",
            extra={
                "pipeline_id": str(pipeline.id),
                "item_id": str(item.id),
                "from_stage": current,
                "to_stage": to_stage,
                "user_id": ctx.actor_id,
            },
        )
        events.publish(
            events.build_envelope(
                "crm.pipeline.item_moved",
                tenant_id=ctx.tenant_id,
                sub_account_id=item.sub_account_id,
                actor_user_id=ctx.actor_id,
                payload={
                    "pipeline_id": str(pipeline.id),
                    "item_id": str(item.id),
                    "item_type": pipeline.type,
                    "from_stage": current,
                    "to_stage": to_stage,
                },
            )
        )
        return MoveItemResult(
            pipeline_id=pipeline.id,
            from_stage=current,
            to_stage=to_stage,
            moved=True,
            item=to_item_read(item),
        )

    @staticmethod
    def _is_current(stages: list[StageDef], expected: str, status: str) -> bool:
        if expected == status:
            return True
        stage = next((item for item in stages if item.id == expected), None)
        return stage is not None and stage_matches(stage, status)

    def _get_owned_pipeline(self, session: Session, ctx: TenantContext, pipeline_id: uuid.UUID) -> Pipeline:
        try:
            pipeline = self.repository.get(session, pipeline_id)
        except SQLAlchemyError as exc:
            raise StorageError("pipeline lookup failed") from exc
        return require_ownership(ctx, pipeline, "pipeline")

    def _get_owned_item(
        self,
        session: Session,
        ctx: TenantContext,
        pipeline_type: str,
        item_id: uuid.UUID,
    ) -> Lead | Application:
        try:
            if pipeline_type == "lead":
                item: Lead | Application | None = self.lead_repository.get(session, item_id)
                if item is not None and not item.is_active:
                    item = None
            else:
                item = self.application_repository.get(session, item_id)
        except SQLAlchemyError as exc:
            raise StorageError("item lookup failed") from exc
        return require_ownership(ctx, item, pipeline_type)

    def _load_items(self, session: Session, ctx: TenantContext, pipeline_type: str) -> list[Lead | Application]:
        scope = require_tenant_scope(ctx)
        if pipeline_type == "lead":
            query = self.lead_repository.scoped(scope).order_by(Lead.created_at.desc())
        else:
            query = self.application_repository.scoped(scope).order_by(Application.created_at.desc())
        try:
            return list(session.scalars(query).all())
        except SQLAlchemyError as exc:
            raise StorageError("item query failed") from exc

    def _ensure_no_default(
        self,
        session: Session,
        tenant_id: uuid.UUID,
        sub_account_id: uuid.UUID | None,
        pipeline_type: str,
    ) -> None:
        existing = self.repository.find_default(session, tenant_id, sub_account_id, pipeline_type)
        if existing is not None:
            raise ConflictError(
                f"a default {pipeline_type} pipeline already exists",
                conflicting_ids=[str(existing.id)],
            )

    def _insert(self, session: Session, ctx: TenantContext, pipeline: Pipeline, activity_type: str) -> PipelineRead:
        session.add(pipeline)
        try:
            session.flush()
        except IntegrityError as exc:
            session.rollback()
            raise ConflictError(f"a default {pipeline.type} pipeline already exists") from exc

        record_activity(
            session,
            ctx,
            activity_type,
            f"Pipeline '{pipeline.name}' created",
            sub_account_id=pipeline.sub_account_id,
            details={"pipeline_id": str(pipeline.id), "is_default": pipeline.is_default},
        )
        try:
            commit_or_raise(session)
        except IntegrityError as exc:
            raise ConflictError(f"a default {pipeline.type} pipeline already exists") from exc
        session.refresh(pipeline)
        logger.info(
            "pipeline.created",
            extra={"pipeline_id": str(pipeline.id), "user_id": ctx.actor_id},
        )
        return PipelineRead.model_validate(pipeline)
