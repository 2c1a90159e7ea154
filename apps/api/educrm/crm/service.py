from __future__ import annotations

import logging
import math
import uuid
from collections import Counter
from datetime import datetime, timezone
from typing import Any

from opentelemetry import trace
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from educrm import events
from educrm.crm.duplicates import detect_duplicates
from educrm.crm.models import Activity, Application, Lead
from educrm.crm.repositories import ApplicationRepository, LeadRepository, PipelineRepository
from educrm.crm.schemas import (
    ApplicationCreate,
    ApplicationRead,
    BulkItemResult,
    BulkLeadRequest,
    BulkLeadResult,
    EngagementCreate,
    LeadAnalytics,
    LeadCreate,
    LeadFilters,
    LeadImportRequest,
    LeadImportResult,
    LeadImportRowError,
    LeadPage,
    LeadPatch,
    LeadRead,
    LeadUpdate,
    MergeDuplicatesRequest,
    MergeDuplicatesResult,
    MergeItemResult,
    SubAccountCreate,
    SubAccountRead,
    SubAccountUpdate,
    UserRead,
)
from educrm.crm.scoring import categorize_source, get_lead_scorer
from educrm.metrics import observe_lead_duplicate_rejected, observe_lead_enrichment
from educrm.tenancy.context import TenantContext
from educrm.tenancy.errors import (
    ConflictError,
    CRMError,
    ForbiddenError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from educrm.tenancy.guard import require_ownership, require_role, require_sub_account_member, require_tenant_scope
from educrm.tenancy.models import SubAccount, Tenant, User
from educrm.tenancy.roles import Role


logger = logging.getLogger("educrm.crm")
tracer = trace.get_tracer("educrm.crm")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def record_activity(
    session: Session,
    ctx: TenantContext,
    activity_type: str,
    description: str,
    *,
    sub_account_id: uuid.UUID | None = None,
    lead_id: uuid.UUID | None = None,
    application_id: uuid.UUID | None = None,
    details: dict[str, Any] | None = None,
) -> Activity:
    """Stage one Activity row in the caller's transaction. The caller commits."""

    activity = Activity(
        tenant_id=ctx.tenant_id,
        sub_account_id=sub_account_id if sub_account_id is not None else ctx.sub_account_id,
        user_id=ctx.user_id,
        lead_id=lead_id,
        application_id=application_id,
        activity_type=activity_type,
        description=description,
        details={**(details or {}), "correlation_id": ctx.correlation_id},
    )
    session.add(activity)
    return activity


def commit_or_raise(session: Session) -> None:
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise
    except SQLAlchemyError as exc:
        session.rollback()
        raise StorageError("storage write failed") from exc


def resolve_sub_account_for_write(
    session: Session,
    ctx: TenantContext,
    requested: uuid.UUID | None,
) -> uuid.UUID | None:
    """Pick the sub-account a new record lands in.

    Confined users always write into their own sub-account. Tenant-wide users may target
    any live sub-account of their tenant.
    """

    if ctx.is_confined:
        if requested is not None and requested != ctx.sub_account_id:
            raise ForbiddenError("cannot write outside your sub-account")
        return ctx.sub_account_id

    if requested is None:
        return None

    try:
        sub_account = session.get(SubAccount, requested)
    except SQLAlchemyError as exc:
        raise StorageError("sub-account lookup failed") from exc
    if sub_account is None or sub_account.tenant_id != ctx.tenant_id or sub_account.deleted_at is not None:
        raise NotFoundError("sub-account not found")
    return sub_account.id


def initial_stage(
    session: Session,
    tenant_id: uuid.UUID,
    sub_account_id: uuid.UUID | None,
    pipeline_type: str,
    fallback: str,
) -> str:
    """Lowest-order stage of the closest default pipeline, or ``fallback``."""

    repository = PipelineRepository()
    pipeline = None
    try:
        if sub_account_id is not None:
            pipeline = repository.find_default(session, tenant_id, sub_account_id, pipeline_type)
        if pipeline is None:
            pipeline = repository.find_default(session, tenant_id, None, pipeline_type)
    except SQLAlchemyError as exc:
        raise StorageError("pipeline lookup failed") from exc
    if pipeline is None or not pipeline.stages:
        return fallback
    return min(pipeline.stages, key=lambda stage: stage["order"])["id"]


class LeadService:
    repository = LeadRepository()

    def create_lead(self, session: Session, ctx: TenantContext, dto: LeadCreate) -> LeadRead:
        require_role(ctx, Role.AGENT)
        lead = self._insert_lead(session, ctx, dto)
        # inline enrichment may have committed new values through the same session
        session.refresh(lead)
        return LeadRead.model_validate(lead)

    def import_leads(self, session: Session, ctx: TenantContext, dto: LeadImportRequest) -> LeadImportResult:
        """Create leads row by row; a bad or duplicate row never stops the import."""

        require_role(ctx, Role.AGENT)
        successful = failed = duplicates = 0
        errors: list[LeadImportRowError] = []
        created_ids: list[uuid.UUID] = []

        for row_number, raw_row in enumerate(dto.leads, start=1):
            row = {key: (value.strip() if isinstance(value, str) else value) for key, value in raw_row.items()}
            row.setdefault("assigned_agent_id", str(ctx.user_id))
            try:
                lead_dto = LeadCreate.model_validate(row)
            except PydanticValidationError as exc:
                first = exc.errors()[0]
                failed += 1
                errors.append(
                    LeadImportRowError(
                        row_number=row_number,
                        code="validation_error",
                        message=str(first.get("msg", "invalid row")),
                        field=".".join(str(part) for part in first.get("loc", ())) or None,
                    )
                )
                continue

            try:
                lead = self._insert_lead(session, ctx, lead_dto)
            except ConflictError as exc:
                if isinstance(exc.details, dict) and exc.details.get("duplicate_lead_ids"):
                    duplicates += 1
                    continue
                session.rollback()
                failed += 1
                errors.append(LeadImportRowError(row_number=row_number, code=exc.code, message=exc.message))
                continue
            except CRMError as exc:
                session.rollback()
                failed += 1
                errors.append(LeadImportRowError(row_number=row_number, code=exc.code, message=exc.message))
                continue

            successful += 1
            created_ids.append(lead.id)

        logger.info(
            "lead.import_finished",
            extra={"user_id": ctx.actor_id, "successful": successful, "failed": failed, "duplicates": duplicates},
        )
        return LeadImportResult(
            successful=successful,
            failed=failed,
            duplicates=duplicates,
            errors=errors,
            created_ids=created_ids,
        )

    def _insert_lead(self, session: Session, ctx: TenantContext, dto: LeadCreate) -> Lead:
        sub_account_id = resolve_sub_account_for_write(session, ctx, dto.sub_account_id)
        email = str(dto.email)

        duplicates = detect_duplicates(session, _Candidate.from_dto(dto, email), ctx.tenant_id)
        if duplicates:
            duplicate_ids = sorted(str(item.id) for item in duplicates)
            observe_lead_duplicate_rejected()
            logger.info(
                "lead.duplicate_rejected",
                extra={"user_id": ctx.actor_id, "duplicate_lead_ids": duplicate_ids},
            )
            raise ConflictError(
                "lead already exists",
                conflicting_ids=duplicate_ids,
                details={"duplicate_lead_ids": duplicate_ids},
            )

        now = utcnow()
        lead = Lead(
            tenant_id=ctx.tenant_id,
            sub_account_id=sub_account_id,
            assigned_agent_id=dto.assigned_agent_id,
            first_name=dto.first_name,
            last_name=dto.last_name,
            email=email,
            phone=dto.phone,
            source=dto.source,
            status=dto.status or initial_stage(session, ctx.tenant_id, sub_account_id, "lead", "new"),
            score=0,
            program_interest=dto.program_interest,
            target_country=dto.target_country,
            budget=dto.budget,
            notes=dto.notes,
            custom_fields=dict(dto.custom_fields),
            engagement_history=[
                {
                    "type": "lead_created",
                    "date": now.isoformat(),
                    "details": f"Lead created from {dto.source or 'manual'} source",
                }
            ],
        )
        session.add(lead)
        try:
            session.flush()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError("lead insert failed") from exc
        record_activity(
            session,
            ctx,
            "lead_added",
            f"New lead added: {lead.first_name} {lead.last_name}",
            sub_account_id=sub_account_id,
            lead_id=lead.id,
        )
        commit_or_raise(session)
        logger.info("lead.created", extra={"lead_id": str(lead.id), "user_id": ctx.actor_id})

        events.publish(
            events.build_envelope(
                "crm.lead.created",
                tenant_id=ctx.tenant_id,
                sub_account_id=sub_account_id,
                actor_user_id=ctx.actor_id,
                payload={"lead_id": str(lead.id), "status": lead.status},
            )
        )
        return lead

    def list_leads(self, session: Session, ctx: TenantContext, filters: LeadFilters) -> LeadPage:
        require_role(ctx, Role.AGENT)
        query = self.repository.scoped(require_tenant_scope(ctx), include_inactive=filters.include_inactive)

        if filters.q:
            pattern = f"%{filters.q}%"
            query = query.where(
                or_(
                    Lead.first_name.ilike(pattern),
                    Lead.last_name.ilike(pattern),
                    Lead.email.ilike(pattern),
                    Lead.notes.ilike(pattern),
                )
            )
        if filters.status:
            query = query.where(Lead.status == filters.status)
        if filters.source:
            query = query.where(Lead.source == filters.source)
        if filters.assigned_agent_id:
            query = query.where(Lead.assigned_agent_id == filters.assigned_agent_id)
        if filters.min_score is not None:
            query = query.where(Lead.score >= filters.min_score)
        if filters.max_score is not None:
            query = query.where(Lead.score <= filters.max_score)
        if filters.target_country:
            query = query.where(Lead.target_country == filters.target_country)
        if filters.program_interest:
            query = query.where(Lead.program_interest.ilike(f"%{filters.program_interest}%"))
        if filters.date_from:
            query = query.where(Lead.created_at >= filters.date_from)
        if filters.date_to:
            query = query.where(Lead.created_at <= filters.date_to)

        try:
            total = session.scalar(select(func.count()).select_from(query.subquery())) or 0
            leads = session.scalars(
                query.order_by(Lead.created_at.desc())
                .offset((filters.page - 1) * filters.limit)
                .limit(filters.limit)
            ).all()
        except SQLAlchemyError as exc:
            raise StorageError("lead query failed") from exc

        return LeadPage(
            items=[LeadRead.model_validate(item) for item in leads],
            page=filters.page,
            limit=filters.limit,
            total=total,
            pages=math.ceil(total / filters.limit) if total else 0,
        )

    def get_lead(self, session: Session, ctx: TenantContext, lead_id: uuid.UUID) -> LeadRead:
        require_role(ctx, Role.AGENT)
        return LeadRead.model_validate(self._get_owned_lead(session, ctx, lead_id))

    def delete_lead(self, session: Session, ctx: TenantContext, lead_id: uuid.UUID) -> None:
        require_role(ctx, Role.AGENT)
        lead = self._get_owned_lead(session, ctx, lead_id)
        lead.is_active = False
        lead.updated_at = utcnow()
        lead.row_version += 1
        record_activity(
            session,
            ctx,
            "lead_deleted",
            f"Lead deleted: {lead.first_name} {lead.last_name}",
            sub_account_id=lead.sub_account_id,
            lead_id=lead.id,
        )
        commit_or_raise(session)
        logger.info("lead.deleted", extra={"lead_id": str(lead.id), "user_id": ctx.actor_id})
        events.publish(
            events.build_envelope(
                "crm.lead.deleted",
                tenant_id=ctx.tenant_id,
                sub_account_id=lead.sub_account_id,
                actor_user_id=ctx.actor_id,
                payload={"lead_id": str(lead.id)},
            )
        )

    def update_lead(self, session: Session, ctx: TenantContext, lead_id: uuid.UUID, dto: LeadUpdate) -> LeadRead:
        require_role(ctx, Role.AGENT)
        lead = self._get_owned_lead(session, ctx, lead_id)
        changes = dto.model_dump(exclude_unset=True, exclude={"row_version"})
        if "email" in changes and changes["email"] is not None:
            changes["email"] = str(changes["email"])

        if {"email", "phone", "first_name", "last_name"} & changes.keys():
            candidate = _Candidate(
                first_name=changes.get("first_name", lead.first_name),
                last_name=changes.get("last_name", lead.last_name),
                email=changes.get("email", lead.email),
                phone=changes.get("phone", lead.phone),
            )
            others = [item for item in detect_duplicates(session, candidate, ctx.tenant_id) if item.id != lead.id]
            if others:
                duplicate_ids = sorted(str(item.id) for item in others)
                raise ConflictError(
                    "lead would duplicate an existing lead",
                    conflicting_ids=duplicate_ids,
                    details={"duplicate_lead_ids": duplicate_ids},
                )

        values = {key: value for key, value in changes.items() if key != "custom_fields"}
        if "custom_fields" in changes:
            values["custom_fields"] = {**(lead.custom_fields or {}), **(changes["custom_fields"] or {})}

        result = session.execute(
            update(Lead)
            .where(and_(Lead.id == lead.id, Lead.row_version == dto.row_version))
            .values(**values, updated_at=utcnow(), row_version=Lead.row_version + 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            raise ConflictError("row_version conflict", conflicting_ids=[str(lead.id)])

        record_activity(
            session,
            ctx,
            "lead_updated",
            f"Lead updated: {lead.first_name} {lead.last_name}",
            sub_account_id=lead.sub_account_id,
            lead_id=lead.id,
            details={"fields": sorted(changes.keys())},
        )
        commit_or_raise(session)
        session.refresh(lead)
        events.publish(
            events.build_envelope(
                "crm.lead.updated",
                tenant_id=ctx.tenant_id,
                sub_account_id=lead.sub_account_id,
                actor_user_id=ctx.actor_id,
                payload={"lead_id": str(lead.id), "fields": sorted(changes.keys())},
            )
        )
        return LeadRead.model_validate(lead)

    def record_engagement(
        self,
        session: Session,
        ctx: TenantContext,
        lead_id: uuid.UUID,
        dto: EngagementCreate,
    ) -> LeadRead:
        require_role(ctx, Role.AGENT)
        lead = self._get_owned_lead(session, ctx, lead_id)
        entry = {
            "type": dto.type,
            "date": utcnow().isoformat(),
            "details": dto.details or "",
            "metadata": dto.metadata,
        }
        result = session.execute(
            update(Lead)
            .where(and_(Lead.id == lead.id, Lead.row_version == lead.row_version))
            .values(
                engagement_history=[*(lead.engagement_history or []), entry],
                updated_at=utcnow(),
                row_version=Lead.row_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            session.rollback()
            raise ConflictError("row_version conflict", conflicting_ids=[str(lead.id)])

        record_activity(
            session,
            ctx,
            "engagement_recorded",
            f"{dto.type} engagement recorded for {lead.first_name} {lead.last_name}",
            sub_account_id=lead.sub_account_id,
            lead_id=lead.id,
        )
        commit_or_raise(session)
        session.refresh(lead)
        return LeadRead.model_validate(lead)

    def merge_duplicates(self, session: Session, ctx: TenantContext, dto: MergeDuplicatesRequest) -> MergeDuplicatesResult:
        require_role(ctx, Role.AGENT)
        primary = self._get_owned_lead(session, ctx, dto.primary_lead_id)
        results: list[MergeItemResult] = []

        for duplicate_id in dto.duplicate_lead_ids:
            try:
                if duplicate_id == primary.id:
                    raise ValidationError("cannot merge a lead into itself")
                duplicate = self._get_owned_lead(session, ctx, duplicate_id)
                self._merge_into(primary, duplicate)
                record_activity(
                    session,
                    ctx,
                    "lead_merged",
                    f"Lead {duplicate.first_name} {duplicate.last_name} merged into {primary.first_name} {primary.last_name}",
                    sub_account_id=primary.sub_account_id,
                    lead_id=primary.id,
                    details={"merged_lead_id": str(duplicate.id)},
                )
                commit_or_raise(session)
            except CRMError as exc:
                session.rollback()
                results.append(MergeItemResult(duplicate_id=duplicate_id, success=False, error=exc.message))
                continue
            results.append(MergeItemResult(duplicate_id=duplicate_id, success=True))

        session.refresh(primary)
        return MergeDuplicatesResult(primary_lead=LeadRead.model_validate(primary), results=results)

    def bulk_update(self, session: Session, ctx: TenantContext, dto: BulkLeadRequest) -> BulkLeadResult:
        require_role(ctx, Role.AGENT)
        values = self._bulk_values(dto)
        results: list[BulkItemResult] = []

        for lead_id in dto.lead_ids:
            try:
                lead = self._get_owned_lead(session, ctx, lead_id)
                for key, value in values.items():
                    if key == "custom_fields":
                        value = {**(lead.custom_fields or {}), **value}
                    setattr(lead, key, value)
                lead.row_version += 1
                record_activity(
                    session,
                    ctx,
                    f"lead_bulk_{dto.operation}",
                    f"Bulk {dto.operation} applied to {lead.first_name} {lead.last_name}",
                    sub_account_id=lead.sub_account_id,
                    lead_id=lead.id,
                )
                commit_or_raise(session)
            except CRMError as exc:
                session.rollback()
                results.append(BulkItemResult(id=lead_id, success=False, error=exc.message, code=exc.code))
                continue
            results.append(BulkItemResult(id=lead_id, success=True))

        succeeded = sum(1 for item in results if item.success)
        return BulkLeadResult(results=results, succeeded=succeeded, failed=len(results) - succeeded)

    def lead_analytics(self, session: Session, ctx: TenantContext) -> LeadAnalytics:
        require_role(ctx, Role.AGENT)
        try:
            leads = session.scalars(self.repository.scoped(require_tenant_scope(ctx))).all()
        except SQLAlchemyError as exc:
            raise StorageError("lead query failed") from exc

        total = len(leads)
        by_status = Counter(lead.status or "unknown" for lead in leads)
        by_source = Counter(categorize_source(lead.source or "unknown") for lead in leads)
        by_score = {"0-20": 0, "21-40": 0, "41-60": 0, "61-80": 0, "81-100": 0}
        for lead in leads:
            score = lead.score or 0
            if score <= 20:
                by_score["0-20"] += 1
            elif score <= 40:
                by_score["21-40"] += 1
            elif score <= 60:
                by_score["41-60"] += 1
            elif score <= 80:
                by_score["61-80"] += 1
            else:
                by_score["81-100"] += 1
        by_month = Counter(lead.created_at.strftime("%Y-%m") for lead in leads)

        converted = by_status.get("converted", 0)
        qualified = by_status.get("qualified", 0)
        contacted = by_status.get("contacted", 0)

        return LeadAnalytics(
            total=total,
            by_status=dict(by_status),
            by_source=dict(by_source),
            by_score=by_score,
            by_month=dict(sorted(by_month.items())),
            conversion_rates={
                "overall": _percent(converted, total),
                "conversion_rate": _percent(converted, qualified),
                "qualification_rate": _percent(qualified, contacted),
                "contact_rate": _percent(contacted, total),
            },
            top_sources=[{"source": source, "count": count} for source, count in by_source.most_common(5)],
            average_score=round(sum(lead.score or 0 for lead in leads) / total, 2) if total else 0.0,
        )

    def _get_owned_lead(self, session: Session, ctx: TenantContext, lead_id: uuid.UUID) -> Lead:
        try:
            lead = self.repository.get(session, lead_id)
        except SQLAlchemyError as exc:
            raise StorageError("lead lookup failed") from exc
        if lead is not None and not lead.is_active:
            lead = None
        return require_ownership(ctx, lead, "lead")

    @staticmethod
    def _merge_into(primary: Lead, duplicate: Lead) -> None:
        primary.phone = primary.phone or duplicate.phone
        primary.source = primary.source or duplicate.source
        primary.program_interest = primary.program_interest or duplicate.program_interest
        primary.target_country = primary.target_country or duplicate.target_country
        primary.budget = primary.budget or duplicate.budget
        primary.notes = f"{primary.notes or ''}\n\n--- Merged from duplicate ---\n{duplicate.notes or ''}".strip()
        primary.custom_fields = {**(primary.custom_fields or {}), **(duplicate.custom_fields or {})}
        primary.engagement_history = [*(primary.engagement_history or []), *(duplicate.engagement_history or [])]
        primary.row_version += 1

        duplicate.is_active = False
        duplicate.custom_fields = {
            **(duplicate.custom_fields or {}),
            "merged_into": str(primary.id),
            "merged_at": utcnow().isoformat(),
        }
        duplicate.row_version += 1

    @staticmethod
    def _bulk_values(dto: BulkLeadRequest) -> dict[str, Any]:
        if dto.operation == "deactivate":
            return {"is_active": False}
        if dto.operation == "assign":
            try:
                return {"assigned_agent_id": uuid.UUID(str(dto.data["assigned_agent_id"]))}
            except ValueError as exc:
                raise ValidationError("assigned_agent_id must be a UUID") from exc
        try:
            patch = LeadPatch.model_validate(dto.data)
        except ValueError as exc:
            raise ValidationError("invalid bulk update payload", details={"error": str(exc)}) from exc
        values = patch.model_dump(exclude_unset=True)
        if "email" in values:
            raise ValidationError("email cannot be changed in bulk")
        if not values:
            raise ValidationError("bulk update payload is empty")
        return values


class LeadEnrichmentService:
    """Scores a freshly created lead and tags its source category.

    Runs after the creating transaction has committed, so it never blocks or fails lead
    creation. Every failure is logged and swallowed.
    """

    def enrich(self, session: Session, lead_id: uuid.UUID) -> bool:
        with tracer.start_as_current_span("crm.lead.enrich") as span:
            span.set_attribute("lead_id", str(lead_id))
            try:
                lead = session.get(Lead, lead_id)
                if lead is None or not lead.is_active:
                    observe_lead_enrichment("skipped")
                    return False

                score = get_lead_scorer().score(lead)
                custom_fields = {**(lead.custom_fields or {}), "source_category": categorize_source(lead.source)}
                result = session.execute(
                    update(Lead)
                    .where(and_(Lead.id == lead.id, Lead.row_version == lead.row_version))
                    .values(
                        score=max(0, min(100, int(score))),
                        custom_fields=custom_fields,
                        row_version=Lead.row_version + 1,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    session.rollback()
                    observe_lead_enrichment("conflict")
                    logger.warning("lead.enrichment_conflict", extra={"lead_id": str(lead_id)})
                    return False
                session.commit()
            except Exception as exc:
                session.rollback()
                observe_lead_enrichment("failed")
                logger.exception("lead.enrichment_failed", extra={"lead_id": str(lead_id), "error": str(exc)[:500]})
                return False

            observe_lead_enrichment("scored")
            logger.info("lead.enriched", extra={"lead_id": str(lead_id)})
            return True


class ApplicationService:
    repository = ApplicationRepository()

    def create_application(self, session: Session, ctx: TenantContext, dto: ApplicationCreate) -> ApplicationRead:
        require_role(ctx, Role.AGENT)
        lead = LeadService()._get_owned_lead(session, ctx, dto.lead_id)
        status = initial_stage(session, ctx.tenant_id, lead.sub_account_id, "application", "draft")
        application = Application(
            tenant_id=ctx.tenant_id,
            sub_account_id=lead.sub_account_id,
            lead_id=lead.id,
            program_id=dto.program_id,
            assigned_agent_id=dto.assigned_agent_id or lead.assigned_agent_id,
            status=status,
            notes=dto.notes,
            timeline=[
                {
                    "stage": status,
                    "date": utcnow().isoformat(),
                    "status": "created",
                    "notes": dto.notes,
                    "moved_by": ctx.actor_id,
                }
            ],
        )
        session.add(application)
        try:
            session.flush()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError("application insert failed") from exc
        record_activity(
            session,
            ctx,
            "application_created",
            f"Application for {dto.program_id} created for {lead.first_name} {lead.last_name}",
            sub_account_id=application.sub_account_id,
            lead_id=lead.id,
            application_id=application.id,
        )
        commit_or_raise(session)
        session.refresh(application)
        return ApplicationRead.model_validate(application)

    def get_application(self, session: Session, ctx: TenantContext, application_id: uuid.UUID) -> ApplicationRead:
        require_role(ctx, Role.AGENT)
        try:
            application = self.repository.get(session, application_id)
        except SQLAlchemyError as exc:
            raise StorageError("application lookup failed") from exc
        return ApplicationRead.model_validate(require_ownership(ctx, application, "application"))

    def list_applications(
        self,
        session: Session,
        ctx: TenantContext,
        *,
        status: str | None = None,
        lead_id: uuid.UUID | None = None,
    ) -> list[ApplicationRead]:
        require_role(ctx, Role.AGENT)
        query = self.repository.scoped(require_tenant_scope(ctx))
        if status:
            query = query.where(Application.status == status)
        if lead_id:
            query = query.where(Application.lead_id == lead_id)
        try:
            rows = session.scalars(query.order_by(Application.created_at.desc())).all()
        except SQLAlchemyError as exc:
            raise StorageError("application query failed") from exc
        return [ApplicationRead.model_validate(item) for item in rows]


class SubAccountService:
    def list_sub_accounts(self, session: Session, ctx: TenantContext) -> list[SubAccountRead]:
        query = select(SubAccount).where(and_(SubAccount.tenant_id == ctx.tenant_id, SubAccount.deleted_at.is_(None)))
        if ctx.is_confined:
            query = query.where(SubAccount.id == ctx.sub_account_id)
        try:
            rows = session.scalars(query.order_by(SubAccount.name.asc())).all()
        except SQLAlchemyError as exc:
            raise StorageError("sub-account query failed") from exc
        return [SubAccountRead.model_validate(item) for item in rows]

    def get_sub_account(self, session: Session, ctx: TenantContext, sub_account_id: uuid.UUID) -> SubAccountRead:
        return SubAccountRead.model_validate(self._get_visible(session, ctx, sub_account_id))

    def create_sub_account(self, session: Session, ctx: TenantContext, dto: SubAccountCreate) -> SubAccountRead:
        require_role(ctx, Role.TENANT_ADMIN)
        try:
            tenant = session.get(Tenant, ctx.tenant_id)
            if tenant is None:
                raise NotFoundError("tenant not found")

            tenant_settings = tenant.settings or {}
            if tenant_settings.get("allow_sub_accounts") is False:
                raise ValidationError("sub-accounts are disabled for this tenant")

            max_sub_accounts = tenant_settings.get("max_sub_accounts")
            existing = 0
            if max_sub_accounts is not None:
                existing = session.scalar(
                    select(func.count(SubAccount.id)).where(
                        and_(SubAccount.tenant_id == tenant.id, SubAccount.deleted_at.is_(None))
                    )
                )
        except SQLAlchemyError as exc:
            raise StorageError("tenant lookup failed") from exc
        if max_sub_accounts is not None and (existing or 0) >= int(max_sub_accounts):
            raise ConflictError(f"sub-account limit of {max_sub_accounts} reached")

        sub_account = SubAccount(
            tenant_id=tenant.id,
            name=dto.name.strip(),
            description=dto.description,
            settings=dict(dto.settings),
        )
        session.add(sub_account)
        try:
            session.flush()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageError("sub-account insert failed") from exc
        record_activity(
            session,
            ctx,
            "sub_account_created",
            f"Sub-account '{sub_account.name}' created",
            sub_account_id=sub_account.id,
        )
        commit_or_raise(session)
        session.refresh(sub_account)
        return SubAccountRead.model_validate(sub_account)

    def update_sub_account(
        self,
        session: Session,
        ctx: TenantContext,
        sub_account_id: uuid.UUID,
        dto: SubAccountUpdate,
    ) -> SubAccountRead:
        require_role(ctx, Role.TENANT_ADMIN)
        sub_account = self._get_visible(session, ctx, sub_account_id)
        changes = dto.model_dump(exclude_unset=True)
        if "name" in changes and changes["name"] is not None:
            sub_account.name = changes["name"].strip()
        if "description" in changes:
            sub_account.description = changes["description"]
        if "settings" in changes and changes["settings"] is not None:
            sub_account.settings = {**(sub_account.settings or {}), **changes["settings"]}
        record_activity(
            session,
            ctx,
            "sub_account_updated",
            f"Sub-account '{sub_account.name}' updated",
            sub_account_id=sub_account.id,
            details={"fields": sorted(changes.keys())},
        )
        commit_or_raise(session)
        session.refresh(sub_account)
        return SubAccountRead.model_validate(sub_account)

    def delete_sub_account(self, session: Session, ctx: TenantContext, sub_account_id: uuid.UUID) -> None:
        require_role(ctx, Role.TENANT_ADMIN)
        sub_account = self._get_visible(session, ctx, sub_account_id)
        try:
            attached = session.scalar(
                select(func.count(User.id)).where(and_(User.sub_account_id == sub_account.id, User.is_active.is_(True)))
            )
        except SQLAlchemyError as exc:
            raise StorageError("user query failed") from exc
        if attached:
            raise ConflictError("cannot delete sub-account with active users")
        sub_account.deleted_at = utcnow()
        record_activity(
            session,
            ctx,
            "sub_account_deleted",
            f"Sub-account '{sub_account.name}' deleted",
            sub_account_id=sub_account.id,
        )
        commit_or_raise(session)

    def list_users(self, session: Session, ctx: TenantContext, sub_account_id: uuid.UUID) -> list[UserRead]:
        sub_account = self._get_visible(session, ctx, sub_account_id)
        try:
            rows = session.scalars(
                select(User).where(User.sub_account_id == sub_account.id).order_by(User.email.asc())
            ).all()
        except SQLAlchemyError as exc:
            raise StorageError("user query failed") from exc
        return [UserRead.model_validate(item) for item in rows]

    def assign_user(
        self,
        session: Session,
        ctx: TenantContext,
        sub_account_id: uuid.UUID,
        user_id: uuid.UUID,
    ) -> UserRead:
        require_role(ctx, Role.TENANT_ADMIN)
        sub_account = self._get_visible(session, ctx, sub_account_id)
        user = self._get_user(session, ctx, user_id)
        user.sub_account_id = sub_account.id
        record_activity(
            session,
            ctx,
            "sub_account_user_assigned",
            f"User {user.email} assigned to sub-account '{sub_account.name}'",
            sub_account_id=sub_account.id,
            details={"user_id": str(user.id)},
        )
        commit_or_raise(session)
        session.refresh(user)
        return UserRead.model_validate(user)

    def remove_user(
        self,
        session: Session,
        ctx: TenantContext,
        sub_account_id: uuid.UUID,
        user_id: uuid.UUID,
    ) -> None:
        require_role(ctx, Role.TENANT_ADMIN)
        sub_account = self._get_visible(session, ctx, sub_account_id)
        user = self._get_user(session, ctx, user_id)
        if user.sub_account_id != sub_account.id:
            raise NotFoundError("user not found")
        user.sub_account_id = None
        record_activity(
            session,
            ctx,
            "sub_account_user_removed",
            f"User {user.email} removed from sub-account '{sub_account.name}'",
            sub_account_id=sub_account.id,
            details={"user_id": str(user.id)},
        )
        commit_or_raise(session)

    def _get_visible(self, session: Session, ctx: TenantContext, sub_account_id: uuid.UUID) -> SubAccount:
        try:
            sub_account = session.get(SubAccount, sub_account_id)
        except SQLAlchemyError as exc:
            raise StorageError("sub-account lookup failed") from exc
        if sub_account is None or sub_account.deleted_at is not None or sub_account.tenant_id != ctx.tenant_id:
            raise NotFoundError("sub-account not found")
        require_sub_account_member(ctx, sub_account.id, "sub_account")
        return sub_account

    @staticmethod
    def _get_user(session: Session, ctx: TenantContext, user_id: uuid.UUID) -> User:
        try:
            user = session.get(User, user_id)
        except SQLAlchemyError as exc:
            raise StorageError("user lookup failed") from exc
        if user is None or user.tenant_id != ctx.tenant_id:
            raise NotFoundError("user not found")
        return user


class _Candidate:
    __slots__ = ("first_name", "last_name", "email", "phone")

    def __init__(self, *, first_name: str, last_name: str, email: str, phone: str | None) -> None:
        self.first_name = first_name
        self.last_name = last_name
        self.email = email
        self.phone = phone

    @classmethod
    def from_dto(cls, dto: LeadCreate, email: str) -> _Candidate:
        return cls(first_name=dto.first_name, last_name=dto.last_name, email=email, phone=dto.phone)


def _percent(part: int, whole: int) -> float:
    if whole <= 0:
        return 0.0
    return round(part / whole * 100, 2)
