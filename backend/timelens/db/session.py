"""Database session management"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from timelens.models.base import Base
from timelens.core.config import settings

_engine_kwargs = {"pool_pre_ping": True}
if not settings.DATABASE_URL.startswith("sqlite"):
    _engine_kwargs.update(pool_recycle=3600, pool_timeout=settings.DATABASE_POOL_TIMEOUT)

# Create engine
engine = create_engine(settings.DATABASE_URL, **_engine_kwargs)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI endpoints"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database (create all tables)"""
    import timelens.models  # noqa: F401  registers every model with Base.metadata
    Base.metadata.create_all(bind=engine)
