from dataclasses import dataclass, field
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from leadflow.core.config import get_settings


ANONYMOUS_SUBJECT = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str] = field(default_factory=list)

    @property
    def is_anonymous(self) -> bool:
        return self.sub == ANONYMOUS_SUBJECT


def _bearer_claims(request: Request) -> dict[str, Any] | None:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    settings = get_settings()
    try:
        return jwt.decode(token.strip(), settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


async def get_current_user(request: Request) -> AuthUser:
    """Resolve the caller from a bearer token; missing or invalid tokens yield a guest."""
    claims = _bearer_claims(request)
    if claims is None:
        return AuthUser(sub=ANONYMOUS_SUBJECT, roles=["guest"])

    roles = claims.get("roles")
    user = AuthUser(
        sub=str(claims.get("sub") or ANONYMOUS_SUBJECT),
        roles=[str(role) for role in roles] if isinstance(roles, list) else ["user"],
    )
    context = getattr(request.state, "context", None)
    if context is not None and not user.is_anonymous:
        context.user_id = user.sub
    return user
