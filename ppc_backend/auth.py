"""Authentication and role checks for research exports."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import FrozenSet, Iterable, Optional

import jwt
import structlog
from sqlalchemy import insert, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ppc_backend.db.models import UserRole
from ppc_backend.errors import ConfigurationError, Forbidden, Unauthorized, UpstreamFailure
from ppc_backend.key_manager import SecretError, ensure_local_secret, is_dev_env, require_secret
from ppc_backend.research_schema import EXPORT_ROLES

logger = structlog.get_logger(__name__)

JWT_ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 15


@lru_cache(maxsize=1)
def get_jwt_secret() -> str:
    """Return the signing secret, provisioning a local one in development."""

    try:
        if is_dev_env():
            ensure_local_secret("jwt", "JWT_SECRET")
        return require_secret("jwt", "JWT_SECRET", description="JWT signing secret")
    except SecretError as exc:
        logger.error("jwt_secret_unavailable", error=str(exc))
        raise ConfigurationError("JWT signing secret is not configured") from exc


def create_access_token(user_id: str, *, expires_minutes: Optional[int] = None) -> str:
    """Create a signed JWT access token for ``user_id``."""

    minutes = expires_minutes or ACCESS_TOKEN_EXPIRE_MINUTES
    payload = {
        "sub": user_id,
        "type": "access",
        "exp": datetime.now(timezone.utc) + timedelta(minutes=minutes),
    }
    return jwt.encode(payload, get_jwt_secret(), algorithm=JWT_ALGORITHM)


def decode_access_token(token: str) -> dict:
    """Decode ``token`` or raise :class:`Unauthorized`."""

    try:
        data = jwt.decode(token, get_jwt_secret(), algorithms=[JWT_ALGORITHM])
    except jwt.PyJWTError:
        raise Unauthorized("Authentication failed")
    if data.get("type", "access") != "access" or not data.get("sub"):
        raise Unauthorized("Authentication failed")
    return data


def load_user_roles(session: Session, user_id: str) -> FrozenSet[str]:
    """Return every role assigned to ``user_id`` in the role store."""

    try:
        rows = session.execute(select(UserRole.role).where(UserRole.user_id == user_id)).scalars().all()
    except SQLAlchemyError as exc:
        logger.error("role_lookup_failed", user_id=user_id, error=exc.__class__.__name__)
        raise UpstreamFailure("Failed to verify permissions") from exc
    return frozenset(rows)


def assign_role(session: Session, user_id: str, role: str) -> None:
    """Grant ``role`` to ``user_id``; granting an existing role is a no-op."""

    existing = session.execute(
        select(UserRole.id).where(UserRole.user_id == user_id, UserRole.role == role)
    ).first()
    if existing:
        return
    session.execute(insert(UserRole).values(user_id=user_id, role=role))
    session.flush()


@dataclass(frozen=True)
class Caller:
    user_id: str
    roles: FrozenSet[str]


class AccessGate:
    """Resolve a bearer credential to a caller allowed to export.

    Only reads from the role store; nothing is written on either outcome.
    """

    def __init__(self, session: Session, allowed_roles: Iterable[str] = EXPORT_ROLES) -> None:
        self.session = session
        self.allowed_roles = frozenset(allowed_roles)

    def authorize(self, credential: Optional[str]) -> Caller:
        if not credential:
            raise Unauthorized("Authorization required")
        claims = decode_access_token(credential)
        user_id = str(claims["sub"])
        roles = load_user_roles(self.session, user_id)
        if not roles & self.allowed_roles:
            logger.warning(
                "research_export_access_denied",
                user_id=user_id,
                roles=sorted(roles),
            )
            raise Forbidden("Admin or owner role required for research exports")
        return Caller(user_id=user_id, roles=roles)


__all__ = [
    "JWT_ALGORITHM",
    "ACCESS_TOKEN_EXPIRE_MINUTES",
    "AccessGate",
    "Caller",
    "assign_role",
    "create_access_token",
    "decode_access_token",
    "get_jwt_secret",
    "load_user_roles",
]
