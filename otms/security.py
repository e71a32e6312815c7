from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable
from uuid import uuid4

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from otms.errors import ApiError
from otms.models import AppRole
from otms.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True, slots=True)
class Actor:
    user_id: int
    roles: frozenset[AppRole] = field(default_factory=frozenset)

    def has_role(self, role: AppRole) -> bool:
        return role in self.roles


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_roles(raw: Any) -> frozenset[AppRole]:
    if not isinstance(raw, list):
        return frozenset()
    roles: set[AppRole] = set()
    for item in raw:
        try:
            roles.add(AppRole(item))
        except ValueError:
            # Roles this service does not know about are ignored.
            continue
    return frozenset(roles)


def create_access_token(*, user_id: int, roles: Iterable[AppRole]) -> tuple[str, int, dict[str, Any]]:
    settings = get_settings()
    now = _utcnow()
    claims = {
        "sub": str(user_id),
        "roles": sorted(role.value for role in roles),
        "iss": settings.jwt_issuer,
        "aud": settings.jwt_audience,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=settings.access_token_minutes)).timestamp()),
        "jti": str(uuid4()),
        "typ": "access",
    }
    token = jwt.encode(claims, settings.jwt_secret, algorithm="HS256")
    return token, settings.access_token_minutes * 60, claims


def decode_token(token: str) -> Actor:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_iat": True, "require_exp": True},
        )
    except JWTError as exc:
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token is invalid.") from exc

    if payload.get("typ") != "access":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token type is invalid.")

    subject = payload.get("sub")
    if not isinstance(subject, str) or not subject.isdigit():
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Token subject is invalid.")

    return Actor(user_id=int(subject), roles=_parse_roles(payload.get("roles")))


def require_actor(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Actor:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise ApiError(status_code=401, code="INVALID_TOKEN", message="Missing bearer token.")

    actor = decode_token(credentials.credentials)
    request.state.actor = "user"
    request.state.actor_id = str(actor.user_id)
    return actor


def require_role(actor: Actor, role: AppRole) -> None:
    if not actor.has_role(role):
        raise ApiError(status_code=403, code="FORBIDDEN", message=f"The {role.value} role is required.")
