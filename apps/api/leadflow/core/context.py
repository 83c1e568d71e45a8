import uuid
from dataclasses import dataclass, field

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request


@dataclass
class RequestContext:
    correlation_id: str
    user_id: str | None = None
    current_sub_account_id: uuid.UUID | None = None
    allowed_sub_account_ids: list[uuid.UUID] = field(default_factory=list)


def _parse_sub_account(raw: str | None) -> uuid.UUID | None:
    if not raw or raw == "default":
        return None
    try:
        return uuid.UUID(raw.strip())
    except ValueError:
        return None


def _parse_sub_account_list(raw: str | None) -> list[uuid.UUID]:
    parsed = [_parse_sub_account(item) for item in (raw or "").split(",")]
    return [item for item in parsed if item is not None]


def build_request_context(request: Request) -> RequestContext:
    current = _parse_sub_account(request.headers.get("x-current-sub-account"))
    allowed = _parse_sub_account_list(request.headers.get("x-allowed-sub-accounts"))
    if not allowed and current is not None:
        allowed = [current]
    return RequestContext(
        correlation_id=getattr(request.state, "correlation_id", None) or "",
        current_sub_account_id=current,
        allowed_sub_account_ids=allowed,
    )


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Exposes tenant headers on ``request.state.context`` for the CRM dependencies."""

    async def dispatch(self, request: Request, call_next):  # type: ignore[no-untyped-def]
        request.state.context = build_request_context(request)
        return await call_next(request)
