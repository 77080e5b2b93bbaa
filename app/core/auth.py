"""
Keycloak JWT Authentication + caller identity.

Validates Bearer tokens against the Keycloak JWKS endpoint and maps the
claims onto a Caller (subject, role, tenant). Disabled in development via
AUTH_ENABLED=false, in which case the identity comes from the X-Dev-* headers.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx
import structlog
from fastapi import Depends, Header, HTTPException, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from app.core.config import Settings, get_settings

logger = structlog.get_logger()
security = HTTPBearer(auto_error=False)

_jwks_cache: Optional[dict] = None

ROLE_STUDENT = "student"
ROLE_ORG_ADMIN = "org_admin"
ROLE_PLATFORM_ADMIN = "platform_admin"


@dataclass(frozen=True)
class Caller:
    subject: str
    role: str
    org_id: Optional[str] = None
    student_id: Optional[str] = None

    @property
    def is_platform_admin(self) -> bool:
        return self.role == ROLE_PLATFORM_ADMIN

    def is_student(self, student_id: str) -> bool:
        return self.role == ROLE_STUDENT and self.student_id == student_id

    def can_manage(self, org_id: str) -> bool:
        """Org admins act only inside their own tenant; platform admins anywhere."""
        if self.is_platform_admin:
            return True
        return self.role == ROLE_ORG_ADMIN and self.org_id == org_id


async def _fetch_jwks(keycloak_url: str) -> dict:
    global _jwks_cache
    if _jwks_cache:
        return _jwks_cache
    async with httpx.AsyncClient() as client:
        resp = await client.get(f"{keycloak_url}/protocol/openid-connect/certs")
        resp.raise_for_status()
        _jwks_cache = resp.json()
        return _jwks_cache


async def verify_token(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(security),
    settings: Settings = Depends(get_settings),
) -> dict:
    """
    FastAPI dependency: extracts and validates the JWT.
    Returns the decoded token payload (claims).
    """
    if not settings.auth_enabled:
        return {"sub": "dev-user", "role": ROLE_PLATFORM_ADMIN}

    if credentials is None:
        raise HTTPException(status_code=401, detail="Missing authorization header")

    token = credentials.credentials
    try:
        jwks = await _fetch_jwks(settings.keycloak_url)
        unverified_header = jwt.get_unverified_header(token)
        key = next(
            (k for k in jwks.get("keys", []) if k["kid"] == unverified_header.get("kid")),
            None,
        )
        if not key:
            raise HTTPException(status_code=401, detail="Invalid token signing key")

        payload = jwt.decode(
            token,
            key,
            algorithms=["RS256"],
            audience=settings.keycloak_audience,
            issuer=settings.keycloak_url,
        )
        return payload

    except JWTError as e:
        logger.warning("jwt_validation_failed", error=str(e))
        raise HTTPException(status_code=401, detail=f"Token validation failed: {e}")


def caller_from_claims(claims: dict) -> Caller:
    return Caller(
        subject=claims.get("sub", "unknown"),
        role=claims.get("role", ROLE_STUDENT),
        org_id=claims.get("org_id"),
        student_id=claims.get("student_id"),
    )


async def get_caller(
    claims: dict = Depends(verify_token),
    settings: Settings = Depends(get_settings),
    x_dev_role: Optional[str] = Header(None),
    x_dev_org_id: Optional[str] = Header(None),
    x_dev_student_id: Optional[str] = Header(None),
) -> Caller:
    """
    FastAPI dependency: the identity every ledger operation is checked against.
    In development the X-Dev-* headers let local tools impersonate a tenant user.
    """
    if not settings.auth_enabled and x_dev_role:
        claims = {**claims, "role": x_dev_role, "org_id": x_dev_org_id, "student_id": x_dev_student_id}
    return caller_from_claims(claims)
