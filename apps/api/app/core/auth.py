from dataclasses import dataclass
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


ANONYMOUS_SUBJECT = "anonymous"


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    name: str | None = None


def decode_bearer_token(authorization: str) -> dict[str, Any] | None:
    """Return the verified claims of a ``Bearer`` header value, or None when absent or invalid."""
    if not authorization.startswith("Bearer "):
        return None
    token = authorization[len("Bearer "):].strip()
    if not token:
        return None

    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None


async def get_current_user(request: Request) -> AuthUser:
    claims = decode_bearer_token(request.headers.get("authorization", ""))
    if claims is None:
        return AuthUser(sub=ANONYMOUS_SUBJECT, roles=["guest"])

    subject = str(claims.get("sub", ANONYMOUS_SUBJECT))
    roles = claims.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    name = claims.get("name")

    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
    return AuthUser(sub=subject, roles=[str(role) for role in roles], name=str(name) if name else None)
