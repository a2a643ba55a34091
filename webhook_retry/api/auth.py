import logging
import secrets

from fastapi import HTTPException, Request, status

from webhook_retry import config

log = logging.getLogger(__name__)


async def verify_admin_api_key(request: Request) -> None:
    """
    Check the X-Admin-API-Key header (or an Authorization bearer token)
    against ADMIN_API_KEY.

    This is used as a dependency on admin routes. When no key is configured
    verification is skipped, which is only meant for local development.
    """
    admin_api_key = config.get_settings().ADMIN_API_KEY
    if not admin_api_key:
        log.warning("[AdminAuth] Admin API key not configured - skipping verification")
        return

    provided = request.headers.get("x-admin-api-key")
    if not provided:
        auth = request.headers.get("authorization") or ""
        if auth.lower().startswith("bearer "):
            provided = auth.split(" ", 1)[1].strip()

    if not provided:
        log.warning(f"[AdminAuth] Missing admin API key - {request.method} {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin API key required"
        )

    if not secrets.compare_digest(provided.encode(), admin_api_key.encode()):
        log.warning(f"[AdminAuth] Invalid admin API key - {request.method} {request.url.path}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin API key"
        )
