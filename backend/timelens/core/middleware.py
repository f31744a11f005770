"""Middleware configuration for FastAPI application"""
import logging

from fastapi import Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from timelens.core.config import settings
from timelens.core.errors import TimeLensError
from timelens.core.logging import security_logger
from timelens.core.security import (
    check_rate_limit, get_allowed_origins, get_client_identifier,
    log_api_access, validate_origin_referer
)
from timelens.db.redis import get_or_create_csrf_token

logger = logging.getLogger(__name__)

PUBLIC_PATHS = {
    "/api/auth/csrf",
    "/api/auth/register",
    "/api/auth/login",
    "/api/auth/logout",
    "/api/auth/me",
    "/api/subscription/webhook",
    "/metrics",
    "/health",
}


def setup_cors_middleware(app):
    """Setup CORS middleware for FastAPI app"""
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_allowed_origins(),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


def _json_error(request: Request, status_code: int, message: str) -> Response:
    response = JSONResponse(status_code=status_code, content={"error": message})
    origin = request.headers.get("Origin")
    if origin and origin in get_allowed_origins():
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
    return response


async def security_middleware(request: Request, call_next):
    """Rate limiting, Origin/Referer checks, CSRF token propagation and access logging"""
    session_id = request.cookies.get("session_id")
    status_code = 500
    error = None

    try:
        path = request.url.path
        is_public_endpoint = path in PUBLIC_PATHS

        identifier = get_client_identifier(request, session_id)
        is_state_changing = request.method in ["POST", "PATCH", "DELETE", "PUT"]
        if path != "/api/subscription/webhook" and not check_rate_limit(identifier, strict=is_state_changing):
            status_code = 429
            error = "Rate limit exceeded"
            security_logger.warning(f"Rate limit exceeded - Identifier: {identifier}, Path: {path}")
            return _json_error(request, 429, "Rate limit exceeded. Please try again later.")

        needs_origin_check = (
            not is_public_endpoint
            and request.method != "OPTIONS"
            and (request.method != "GET" or settings.ENVIRONMENT == "production")
        )
        if needs_origin_check and not validate_origin_referer(request):
            status_code = 403
            error = "Invalid origin or referer"
            security_logger.warning(f"Origin/Referer validation failed - Path: {path}")
            return _json_error(request, 403, "Invalid origin or referer")

        response = await call_next(request)
        status_code = response.status_code

        if session_id and status_code < 400:
            response.headers["X-CSRF-Token"] = get_or_create_csrf_token(session_id)

        return response

    except Exception as e:
        error = str(e)
        security_logger.error(f"Security middleware error: {error}", exc_info=True)
        raise
    finally:
        log_api_access(request, session_id, status_code, error)


async def timelens_exception_handler(request: Request, exc: TimeLensError):
    """Map domain errors to their HTTP status"""
    if exc.status_code >= 500:
        logger.error(f"{exc.__class__.__name__} on {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.__class__.__name__} on {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error"}
    )
