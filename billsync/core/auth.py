from fastapi import Header, HTTPException, status
from typing import Optional
from uuid import UUID


async def get_current_organization(
    x_organization_id: Optional[str] = Header(None, alias="X-Organization-Id")
) -> UUID:
    """Tenant of the caller, as forwarded by the upstream gateway"""
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Missing or invalid organization credentials",
    )
    if not x_organization_id:
        raise credentials_exception
    try:
        return UUID(x_organization_id)
    except ValueError:
        raise credentials_exception
