from __future__ import annotations

import uuid
from typing import Any

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from educrm.crm.models import Lead
from educrm.tenancy.errors import StorageError


def _local_part(email: str | None) -> str:
    if not email:
        return ""
    return email.split("@", 1)[0].lower()


def is_duplicate(candidate: Any, existing: Any) -> bool:
    """True when ``existing`` looks like the same person as ``candidate``.

    Any one of: exact email with exact names; equal phone when the candidate has one;
    case-insensitive names with the existing email containing the candidate's local part.
    """

    if (
        candidate.email == existing.email
        and candidate.first_name == existing.first_name
        and candidate.last_name == existing.last_name
    ):
        return True

    if candidate.phone and candidate.phone == existing.phone:
        return True

    local = _local_part(candidate.email)
    return bool(
        local
        and (candidate.first_name or "").lower() == (existing.first_name or "").lower()
        and (candidate.last_name or "").lower() == (existing.last_name or "").lower()
        and local in (existing.email or "").lower()
    )


def detect_duplicates(session: Session, candidate: Any, tenant_id: uuid.UUID) -> list[Lead]:
    """Active leads in ``tenant_id`` matching ``candidate``.

    The query narrows by email, phone or name; ``is_duplicate`` makes the final call.
    """

    clauses = [
        Lead.email == candidate.email,
        and_(Lead.first_name.ilike(candidate.first_name), Lead.last_name.ilike(candidate.last_name)),
    ]
    if candidate.phone:
        clauses.append(Lead.phone == candidate.phone)

    try:
        rows = session.scalars(
            select(Lead)
            .where(and_(Lead.tenant_id == tenant_id, Lead.is_active.is_(True), or_(*clauses)))
            .order_by(Lead.created_at.asc())
        ).all()
    except SQLAlchemyError as exc:
        raise StorageError("duplicate lookup failed") from exc

    return [row for row in rows if is_duplicate(candidate, row)]
