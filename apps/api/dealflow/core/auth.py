import logging
from dataclasses import dataclass, field

from jose import JWTError, jwt
from starlette.requests import Request

from dealflow.context import bind_actor
from dealflow.core.config import get_settings

logger = logging.getLogger("dealflow.auth")


@dataclass
class AuthUser:
    sub: str
    roles: list[str] = field(default_factory=list)


def _bearer_token(request: Request) -> str | None:
    scheme, _, token = request.headers.get("authorization", "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def decode_token(token: str) -> AuthUser | None:
    """Validate a signed JWT and read ``sub`` plus a ``roles`` claim (list or single string)."""
    settings = get_settings()
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        logger.info("auth.token_rejected", extra={"error": str(exc)})
        return None

    subject = claims.get("sub")
    if not subject:
        logger.info("auth.token_rejected", extra={"error": "missing sub claim"})
        return None
    roles = claims.get("roles") or []
    if isinstance(roles, str):
        roles = [roles]
    if not isinstance(roles, list):
        roles = []
    return AuthUser(sub=str(subject), roles=[str(role) for role in roles])


async def get_current_user(request: Request) -> AuthUser | None:
    token = _bearer_token(request)
    if token is None:
        return None
    user = decode_token(token)
    if user is not None:
        bind_actor(user.sub)
    return user
