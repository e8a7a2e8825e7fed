"""Identity context for authenticated requests.

Bearer tokens are issued by the external auth service. This module only
verifies them and turns the claims into a read-only ``Principal``.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Annotated, Any

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from budgetflow.config import settings
from budgetflow.exceptions import AuthenticationError, ForbiddenError

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """The authenticated caller.

    Attributes:
        id: User id
        name: Display name
        role: Role name (user, moderator, coordinator, muhasebeci, admin)
        permissions: Granted permission names
        school_id: School the user belongs to
        department_id: Reviewer department, if the user is departmental staff
    """

    id: int
    name: str
    role: str
    permissions: frozenset[str] = field(default_factory=frozenset)
    school_id: int | None = None
    department_id: int | None = None

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> "Principal":
        """Build a principal from decoded token claims."""
        user_id = claims.get("id", claims.get("sub"))
        if user_id is None or not claims.get("role"):
            raise AuthenticationError("Token is missing identity claims")
        try:
            return cls(
                id=int(user_id),
                name=str(claims.get("name") or ""),
                role=str(claims["role"]),
                permissions=frozenset(claims.get("permissions") or []),
                school_id=_optional_int(claims.get("school_id")),
                department_id=_optional_int(claims.get("department_id")),
            )
        except (TypeError, ValueError) as e:
            raise AuthenticationError("Token carries malformed identity claims") from e


def _optional_int(value: Any) -> int | None:
    return None if value is None else int(value)


def decode_principal(token: str) -> Principal:
    """Verify a bearer token and return its principal.

    Raises:
        AuthenticationError: If the signature or claims are invalid
    """
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.PyJWTError as e:
        logger.info(f"Rejected bearer token: {e}")
        raise AuthenticationError("Invalid or expired token") from e
    return Principal.from_claims(claims)


async def get_principal(
    credentials: Annotated[HTTPAuthorizationCredentials | None, Depends(bearer_scheme)],
) -> Principal:
    """Dependency that resolves the caller from the Authorization header."""
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Missing bearer token")
    return decode_principal(credentials.credentials)


CurrentPrincipal = Annotated[Principal, Depends(get_principal)]


def require_role(*roles: str) -> Callable[[Principal], Awaitable[Principal]]:
    """Dependency factory accepting only principals holding one of ``roles``."""

    async def checker(principal: CurrentPrincipal) -> Principal:
        if principal.role not in roles:
            raise ForbiddenError(f"Role '{principal.role}' may not perform this action")
        return principal

    return checker


def require_permission(permission: str) -> Callable[[Principal], Awaitable[Principal]]:
    """Dependency factory accepting admins or principals granted ``permission``."""

    async def checker(principal: CurrentPrincipal) -> Principal:
        if principal.role != "admin" and permission not in principal.permissions:
            raise ForbiddenError(f"Missing permission '{permission}'")
        return principal

    return checker


async def require_department(principal: CurrentPrincipal) -> Principal:
    """Dependency accepting only departmental staff."""
    if principal.department_id is None:
        raise ForbiddenError("Caller does not belong to a reviewer department")
    return principal
