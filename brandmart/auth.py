"""
Bearer token auth. Tokens are issued elsewhere; here we only verify them and
read the subject/role claims.
"""
from dataclasses import dataclass

import jwt
from fastapi import Depends, Header, HTTPException

from brandmart.config import settings

ROLES = ("customer", "vendor", "admin")


@dataclass(frozen=True)
class Principal:
    sub: str
    role: str
    email: str | None = None
    name: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def decode_token(token: str) -> Principal:
    """Raises jwt.InvalidTokenError (or a subclass) for bad or expired tokens, or an unknown role."""
    claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    if not claims.get("sub"):
        raise jwt.InvalidTokenError("token has no subject")
    role = claims.get("role", "customer")
    if role not in ROLES:
        raise jwt.InvalidTokenError(f"unknown role {role!r}")
    return Principal(
        sub=str(claims["sub"]),
        role=role,
        email=claims.get("email"),
        name=claims.get("name"),
    )


async def auth_required(authorization: str | None = Header(default=None)) -> Principal:
    if not authorization or not authorization.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized")
    try:
        return decode_token(authorization[len("Bearer "):])
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid or expired token")


def require_roles(*roles: str):
    async def _check(principal: Principal = Depends(auth_required)) -> Principal:
        if principal.role not in roles:
            raise HTTPException(status_code=403, detail="Forbidden")
        return principal
    return _check
