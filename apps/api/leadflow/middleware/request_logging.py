from __future__ import annotations

import logging
import time
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from leadflow.metrics import observe_http_request, resolve_http_path_label


logger = logging.getLogger("leadflow.request")

_QUIET_PATHS = frozenset({"/metrics", "/health"})


def _request_fields(request: Request, status_code: int, started: float) -> dict[str, Any]:
    fields: dict[str, Any] = {
        "method": request.method,
        "path": resolve_http_path_label(request),
        "status_code": status_code,
        "duration_ms": round((time.perf_counter() - started) * 1000, 2),
    }
    context = getattr(request.state, "context", None)
    sub_account_id = getattr(context, "current_sub_account_id", None)
    if sub_account_id is not None:
        fields["sub_account_id"] = str(sub_account_id)
    return fields


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Counts every request and writes one ``http.request`` line per call.

    Metrics scrapes and health checks are still counted but not logged.
    """

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        started = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            fields = _request_fields(request, 500, started)
            observe_http_request(fields["method"], fields["path"], 500, fields["duration_ms"] / 1000)
            logger.error("http.error", exc_info=True, extra=fields)
            raise

        fields = _request_fields(request, response.status_code, started)
        observe_http_request(fields["method"], fields["path"], response.status_code, fields["duration_ms"] / 1000)
        if request.url.path in _QUIET_PATHS:
            return response
        level = logging.WARNING if response.status_code >= 500 else logging.INFO
        logger.log(level, "http.request", extra=fields)
        return response
