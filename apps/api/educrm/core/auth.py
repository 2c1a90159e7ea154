from __future__ import annotations

import logging
import uuid
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from educrm.context import set_tenant_id
from educrm.core.config import get_settings
from educrm.tenancy.context import Principal
from educrm.tenancy.roles import parse_role


logger = logging.getLogger("educrm.auth")


def decode_principal(token: str) -> Principal | None:
    """Turn a bearer token into a principal. Any malformed claim yields ``None``."""

    settings = get_settings()
    try:
        payload: dict[str, Any] = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None

    try:
        sub_account_raw = payload.get("sub_account_id")
        return Principal(
            user_id=uuid.UUID(str(payload["sub"])),
            tenant_id=uuid.UUID(str(payload["tenant_id"])),
            role=parse_role(str(payload["role"])),
            sub_account_id=uuid.UUID(str(sub_account_raw)) if sub_account_raw else None,
        )
    except (KeyError, ValueError) as exc:
        logger.warning("auth.invalid_claims", extra={"error": str(exc)})
        return None


def encode_principal(principal: Principal, **extra_claims: Any) -> str:
    settings = get_settings()
    claims: dict[str, Any] = {
        "sub": str(principal.user_id),
        "tenant_id": str(principal.tenant_id),
        "role": principal.role.value,
        **extra_claims,
    }
    if principal.sub_account_id is not None:
        claims["sub_account_id"] = str(principal.sub_account_id)
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


async def get_principal(request: Request) -> Principal | None:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""
    if not token:
        return None

    principal = decode_principal(token)
    if principal is not None:
        request.state.user_id = str(principal.user_id)
        request.state.tenant_id = str(principal.tenant_id)
        set_tenant_id(str(principal.tenant_id))
    return principal
