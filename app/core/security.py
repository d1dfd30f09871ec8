"""
Caller identity for the import service.

Authentication happens upstream; the gateway forwards the verified user as
``X-User-Id``, ``X-User-Email``, ``X-User-Role`` and ``X-Organization-Id``
headers. This module turns them into a :class:`Principal` and holds the role
sets the import endpoints check against.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Header, HTTPException, status

PLATFORM_ADMIN = "platform_admin"

VALID_ROLES = {
    "platform_admin",
    "agency_admin",
    "agency_user",
    "client_admin",
    "client_user",
    "buyer",
}
UPLOAD_ROLES = set(VALID_ROLES)
DELETE_ROLES = {"platform_admin", "agency_admin", "client_admin"}


@dataclass(frozen=True)
class Principal:
    id: str
    role: str
    email: Optional[str] = None
    organization_id: Optional[str] = None

    @property
    def is_platform_admin(self) -> bool:
        return self.role == PLATFORM_ADMIN

    def has_role(self, roles) -> bool:
        return self.role in roles


def get_current_principal(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
    x_user_email: Optional[str] = Header(default=None),
    x_organization_id: Optional[str] = Header(default=None),
) -> Principal:
    """FastAPI dependency resolving the authenticated caller from gateway headers."""
    if not x_user_id or not x_user_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    role = x_user_role.strip().lower()
    if role not in VALID_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Unknown role '{x_user_role}'",
        )
    return Principal(
        id=x_user_id.strip(),
        role=role,
        email=x_user_email,
        organization_id=x_organization_id or None,
    )
