from __future__ import annotations

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from educrm.context import reset_tenant_id, set_tenant_id
from educrm.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("educrm.request")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        method = request.method

        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = round((time.perf_counter() - started) * 1000, 2)
            path = resolve_http_path_label(request)
            observe_http_request(method=method, path=path, status=500, duration=duration_ms / 1000)
            self._log(
                request,
                logging.ERROR,
                "http.error",
                {"method": method, "path": path, "status_code": 500, "duration_ms": duration_ms},
                exc_info=True,
            )
            raise

        duration_ms = round((time.perf_counter() - started) * 1000, 2)
        path = resolve_http_path_label(request)
        observe_http_request(
            method=method,
            path=path,
            status=response.status_code,
            duration=duration_ms / 1000,
        )
        self._log(
            request,
            logging.INFO,
            "http.request",
            {
                "method": method,
                "path": path,
                "status_code": response.status_code,
                "duration_ms": duration_ms,
            },
        )
        return response

    @staticmethod
    def _log(request: Request, level: int, message: str, fields: dict, exc_info: bool = False) -> None:
        # tenant and user are resolved inside the route, after this middleware's context was copied
        token = set_tenant_id(getattr(request.state, "tenant_id", None))
        try:
            logger.log(
                level,
                message,
                exc_info=exc_info,
                extra={**fields, "user_id": getattr(request.state, "user_id", None)},
            )
        finally:
            reset_tenant_id(token)
