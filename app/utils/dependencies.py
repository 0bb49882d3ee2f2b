"""FastAPI dependencies shared by the routers"""

import hmac
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from ..config import settings
from ..container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Service is starting up"
        )
    return container


def is_admin_key(key: Optional[str]) -> bool:
    if not key or not settings.admin_api_key:
        return False
    return hmac.compare_digest(key, settings.admin_api_key)


async def get_staff_flag(x_admin_key: Optional[str] = Header(None)) -> bool:
    """True when the caller presented a valid staff key, never raises"""
    return is_admin_key(x_admin_key)


async def require_admin_key(is_staff: bool = Depends(get_staff_flag)) -> bool:
    if not is_staff:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Valid X-Admin-Key header required"
        )
    return True
