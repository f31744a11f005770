"""Auth API routes"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from sqlalchemy.orm import Session

from timelens.core.security import set_auth_cookie
from timelens.db.redis import get_or_create_csrf_token, get_session
from timelens.db.session import get_db
from timelens.schemas.auth import LoginRequest, RegisterRequest
from timelens.services.auth_service import (
    create_user, get_user_by_id, login_user, logout_user, serialize_user
)

router = APIRouter(prefix="/api/auth", tags=["auth"])
logger = logging.getLogger(__name__)


@router.get("/csrf")
def get_csrf_token_route(request: Request):
    """Get or generate CSRF token for the current session"""
    session_id = request.cookies.get("session_id")
    if not session_id:
        return {"csrf_token": None}
    return {"csrf_token": get_or_create_csrf_token(session_id)}


@router.post("/register")
def register(request_data: RegisterRequest, request: Request, response: Response, db: Session = Depends(get_db)):
    """Create an account on the free plan and log it in"""
    user = create_user(request_data.email, request_data.password, db, name=request_data.name)
    _, session_id = login_user(request_data.email, request_data.password, db)
    set_auth_cookie(response, session_id, request)
    return {"user": serialize_user(user), "csrf_token": get_or_create_csrf_token(session_id)}


@router.post("/login")
def login(request_data: LoginRequest, request: Request, response: Response, db: Session = Depends(get_db)):
    """Login user"""
    user, session_id = login_user(request_data.email, request_data.password, db)
    if not user:
        raise HTTPException(401, "Invalid email or password")
    set_auth_cookie(response, session_id, request)
    return {"user": serialize_user(user), "csrf_token": get_or_create_csrf_token(session_id)}


@router.post("/logout")
def logout(request: Request, response: Response):
    """Logout user"""
    session_id = request.cookies.get("session_id")
    logout_user(session_id)
    if session_id:
        response.delete_cookie("session_id")
    return {"message": "Logged out"}


@router.get("/me")
def get_current_user(request: Request, db: Session = Depends(get_db)):
    """Get current logged-in user, or null when there is no valid session"""
    session_id = request.cookies.get("session_id")
    user_id = get_session(session_id) if session_id else None
    user = get_user_by_id(user_id, db) if user_id else None
    return {"user": serialize_user(user) if user else None}
