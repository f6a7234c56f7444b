"""Security dependencies for internal and scheduler endpoints"""
import logging
import secrets
from typing import Optional

from fastapi import Header, HTTPException, Request

from backoffice.core.config import settings

security_logger = logging.getLogger("security")


def require_internal_key(
    request: Request,
    x_internal_key: Optional[str] = Header(None, alias="X-Internal-Key")
) -> None:
    """Dependency: Require the shared scheduler/internal secret header"""
    expected = settings.INTERNAL_API_KEY
    if not expected:
        security_logger.error(
            f"INTERNAL_API_KEY not configured - rejecting internal call to {request.url.path}"
        )
        raise HTTPException(401, "Internal API key not configured")

    if not x_internal_key or not secrets.compare_digest(x_internal_key, expected):
        client_host = request.client.host if request.client else "unknown"
        security_logger.warning(
            f"Invalid internal key - Path: {request.url.path}, Client: {client_host}"
        )
        raise HTTPException(401, "Invalid or missing internal key")
