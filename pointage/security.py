from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from pointage.errors import ApiError, AuthorizationError
from pointage.models import APPROVER_ROLES, AccountRole, AccountStatus
from pointage.settings import get_settings

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """Caller identity as vouched for by the authentication service."""

    user_id: int
    role: AccountRole
    status: AccountStatus
    email: str | None = None
    full_name: str | None = None

    @property
    def is_approver(self) -> bool:
        return self.role in APPROVER_ROLES


def _invalid_token(message: str = "Token is invalid.") -> ApiError:
    return ApiError(message, status_code=401, code="INVALID_TOKEN")


def decode_token(token: str) -> dict[str, Any]:
    settings = get_settings()
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=["HS256"],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options={"require_sub": True, "require_exp": True},
        )
    except JWTError as exc:
        raise _invalid_token() from exc
    return payload


def principal_from_claims(payload: dict[str, Any]) -> Principal:
    subject = payload.get("sub")
    try:
        user_id = int(str(subject))
    except (TypeError, ValueError) as exc:
        raise _invalid_token("Token subject is invalid.") from exc

    try:
        role = AccountRole(str(payload.get("role") or ""))
        status = AccountStatus(str(payload.get("status") or ""))
    except ValueError as exc:
        raise _invalid_token("Token role or status is invalid.") from exc

    return Principal(
        user_id=user_id,
        role=role,
        status=status,
        email=str(payload.get("email") or "").strip().lower() or None,
        full_name=str(payload.get("name") or "").strip() or None,
    )


def require_principal(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> Principal:
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise _invalid_token("Missing bearer token.")

    principal = principal_from_claims(decode_token(credentials.credentials))
    request.state.actor_id = str(principal.user_id)
    return principal


def require_active_account(principal: Principal = Depends(require_principal)) -> Principal:
    if principal.status != AccountStatus.ACTIVE:
        raise AuthorizationError(
            "Account is not active.",
            code="ACCOUNT_NOT_ACTIVE",
        )
    return principal


def require_roles(*roles: AccountRole) -> Callable[..., Principal]:
    allowed = frozenset(roles)
    if not allowed:
        raise ValueError("At least one role is required")

    def _dependency(principal: Principal = Depends(require_principal)) -> Principal:
        if principal.role not in allowed:
            raise AuthorizationError("Insufficient permissions.")
        return principal

    return _dependency


require_approver = require_roles(AccountRole.RH, AccountRole.SUPER_ADMIN)
