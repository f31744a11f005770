"""Authentication service - password accounts and Redis-backed sessions"""
import logging
import secrets
from typing import Dict, Optional, Tuple

import bcrypt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from timelens.core.errors import InvalidRequest
from timelens.core.metrics import login_attempts_counter
from timelens.db.redis import delete_session, get_or_create_csrf_token, set_session
from timelens.models.user import User

logger = logging.getLogger(__name__)

MIN_PASSWORD_LENGTH = 8


def hash_password(password: str) -> str:
    """Hash a password using bcrypt"""
    salt = bcrypt.gensalt()
    hashed = bcrypt.hashpw(password.encode('utf-8'), salt)
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash"""
    if not password_hash or not password:
        return False
    return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))


def get_user_by_id(user_id: int, db: Session) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def get_user_by_email(email: str, db: Session) -> Optional[User]:
    return db.query(User).filter(User.email == email.strip().lower()).first()


def create_user(email: str, password: str, db: Session, name: Optional[str] = None) -> User:
    """Create a password account on the free plan.

    Raises:
        InvalidRequest: If the email is taken or the password is too short
    """
    email = (email or "").strip().lower()
    if not email or "@" not in email:
        raise InvalidRequest("A valid email is required")
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise InvalidRequest(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
    if get_user_by_email(email, db):
        raise InvalidRequest("Email already registered")

    user = User(
        email=email,
        name=name,
        password_hash=hash_password(password),
        current_plan="free",
        subscription_status="active"
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise InvalidRequest("Email already registered")
    db.refresh(user)
    logger.info(f"Created user {user.id} ({email})")
    return user


def authenticate_user(email: str, password: str, db: Session) -> Optional[User]:
    """Return the user when the credentials match"""
    user = get_user_by_email(email or "", db)
    if not user or not verify_password(password, user.password_hash):
        return None
    return user


def login_user(email: str, password: str, db: Session) -> Tuple[Optional[User], Optional[str]]:
    """Authenticate and open a session

    Returns:
        (user, session_id), or (None, None) when the credentials are wrong
    """
    user = authenticate_user(email, password, db)
    if not user:
        login_attempts_counter.labels(status="failed").inc()
        logger.warning(f"Failed login attempt for {email}")
        return None, None

    session_id = secrets.token_urlsafe(32)
    set_session(session_id, user.id)
    get_or_create_csrf_token(session_id)
    login_attempts_counter.labels(status="success").inc()
    logger.info(f"User {user.id} logged in")
    return user, session_id


def logout_user(session_id: Optional[str]) -> None:
    if session_id:
        delete_session(session_id)


def serialize_user(user: User) -> Dict:
    return {
        "id": user.id,
        "email": user.email,
        "name": user.name,
        "is_admin": user.is_admin,
        "plan_type": user.current_plan,
        "subscription_status": user.subscription_status,
        "created_at": user.created_at.isoformat() if user.created_at else None,
    }
