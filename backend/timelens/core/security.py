"""Security dependencies, origin checks and API access logging"""
import json
import logging
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlparse

from fastapi import Depends, Header, HTTPException, Request, Response
from redis.exceptions import RedisError

from timelens.core.config import settings
from timelens.core.logging import api_access_logger, security_logger
from timelens.db.redis import check_rate_limit as redis_check_rate_limit
from timelens.db.redis import get_csrf_token, get_session, set_user_activity

DEV_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:8000",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:8000",
]


def require_auth(request: Request) -> int:
    """Dependency: Require authentication, return user_id"""
    session_id = request.cookies.get("session_id")

    if not session_id:
        raise HTTPException(401, "Not authenticated. Please log in.")

    user_id = get_session(session_id)
    if not user_id:
        raise HTTPException(401, "Session expired. Please log in again.")

    # Activity heartbeat must never break authentication
    try:
        set_user_activity(user_id)
    except RedisError as e:
        security_logger.debug(f"Could not record activity for user {user_id}: {e}")

    return user_id


def require_csrf_new(
    request: Request,
    user_id: int = Depends(require_auth),
    x_csrf_token: Optional[str] = Header(None, alias="X-CSRF-Token")
) -> int:
    """Dependency: Require auth + valid CSRF token (X-CSRF-Token header), return user_id"""
    session_id = request.cookies.get("session_id")
    expected_csrf = get_csrf_token(session_id)
    if not expected_csrf or x_csrf_token != expected_csrf:
        security_logger.warning(
            f"CSRF validation failed - User: {user_id}, "
            f"IP: {request.client.host if request.client else 'unknown'}, "
            f"Path: {request.url.path}"
        )
        raise HTTPException(403, "Invalid or missing CSRF token")
    return user_id


def get_client_ip(request: Request) -> str:
    client_ip = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if not client_ip:
        client_ip = request.client.host if request.client else "unknown"
    return client_ip


def get_client_identifier(request: Request, session_id: Optional[str] = None) -> str:
    """Get a unique identifier for rate limiting"""
    if session_id:
        return f"session:{session_id}"
    return f"ip:{get_client_ip(request)}"


def check_rate_limit(identifier: str, strict: bool = False) -> bool:
    """True if the identifier is within its rate limit window"""
    return redis_check_rate_limit(identifier, strict=strict)


def get_allowed_origins():
    allowed_origins = [settings.FRONTEND_URL]
    if settings.ENVIRONMENT == "development":
        allowed_origins.extend(DEV_ORIGINS)
    return allowed_origins


def validate_origin_referer(request: Request) -> bool:
    """Validate Origin and Referer headers"""
    origin = request.headers.get("Origin")
    referer = request.headers.get("Referer")
    allowed_origins = [o.rstrip("/") for o in get_allowed_origins() if o]

    # In development, allow requests without Origin/Referer
    if settings.ENVIRONMENT == "development" and not origin and not referer:
        return True

    if origin and origin.rstrip("/") in allowed_origins:
        return True

    if referer:
        parsed = urlparse(referer)
        if f"{parsed.scheme}://{parsed.netloc}" in allowed_origins:
            return True

    return False


def log_api_access(
    request: Request,
    session_id: Optional[str] = None,
    status_code: int = 200,
    error: Optional[str] = None
):
    """Log detailed API access information"""
    log_data = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "method": request.method,
        "path": request.url.path,
        "query": str(request.url.query) if request.url.query else None,
        "session_id": session_id[:16] + "..." if session_id else None,
        "client_ip": get_client_ip(request),
        "user_agent": request.headers.get("User-Agent", "unknown"),
        "origin": request.headers.get("Origin", "none"),
        "status_code": status_code,
        "error": error
    }

    if error or status_code >= 400:
        api_access_logger.warning(f"API Access: {json.dumps(log_data)}")
    else:
        api_access_logger.info(f"API Access: {json.dumps(log_data)}")


def cookie_domain_for(request: Request) -> Optional[str]:
    """Parent domain for cross-subdomain cookies, None for localhost/single-part hosts"""
    host = request.headers.get("host", settings.DOMAIN).split(":")[0]
    domain_parts = host.split(".")
    if len(domain_parts) >= 2 and not host.replace(".", "").isdigit():
        return "." + ".".join(domain_parts[-2:])
    return None


def set_auth_cookie(response: Response, session_id: str, request: Request) -> None:
    """Set the session cookie"""
    response.set_cookie(
        key="session_id",
        value=session_id,
        domain=cookie_domain_for(request),
        httponly=True,
        secure=settings.ENVIRONMENT == "production",
        samesite="lax",
        max_age=60 * 60 * 24 * 7  # 7 days
    )
