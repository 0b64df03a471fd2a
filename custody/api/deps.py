"""
Dependency injection for API routes.

The service lives on app.state. The acting principal comes from the
X-Principal-ID header, set by the authentication layer in front of
this service.
"""

from typing import Optional
from uuid import UUID

from fastapi import HTTPException, Request

from ..core.service import CustodyService
from ..observability import PRINCIPAL_HEADER


def get_service(request: Request) -> CustodyService:
    """Get the custody service from app state."""
    return request.app.state.service


def get_principal_id(request: Request) -> UUID:
    """Parse the acting principal. Registration is checked by the service."""
    value = request.headers.get(PRINCIPAL_HEADER)
    if not value:
        raise HTTPException(status_code=401, detail=f"{PRINCIPAL_HEADER} header required")
    try:
        return UUID(value)
    except ValueError:
        raise HTTPException(status_code=401, detail=f"Invalid {PRINCIPAL_HEADER} header")


def get_optional_principal_id(request: Request) -> Optional[UUID]:
    """For reads: no header is anonymous, a malformed one is still a 401."""
    if not request.headers.get(PRINCIPAL_HEADER):
        return None
    return get_principal_id(request)
