"""
Regulation Engine - Database Configuration

One engine shared by request handlers, the invalidation workers and the
surfacer pool. Sessions are never shared across threads; each worker opens
its own from SessionLocal.
"""
from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import sessionmaker, declarative_base

from .config import DATABASE_POOL_SIZE, DATABASE_URL


def _engine_options(url: str) -> dict:
    if make_url(url).get_backend_name() == "sqlite":
        # Worker threads open their own sessions on the same file
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_size": DATABASE_POOL_SIZE}


engine = create_engine(DATABASE_URL, echo=False, **_engine_options(DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for ORM models
Base = declarative_base()


def get_db():
    """Dependency for FastAPI - yields database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create every regulation engine table that does not exist yet."""
    from .models import db_models  # noqa: F401

    Base.metadata.create_all(bind=engine)
