"""
Database configuration and session management.
SQLite by default; any SQLAlchemy URL works (PostgreSQL in production).
"""

from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from concierge.config import config


def make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}  # SQLite specific
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            # One shared connection, otherwise each session sees an empty database
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)

    return create_engine(
        url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=10,
        max_overflow=20,
        echo=config.DEBUG,  # Log SQL queries in debug mode
    )


engine = make_engine(config.DATABASE_URL)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for all models
Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """
    Dependency for getting database sessions.

    Usage in FastAPI:
        @router.get("/items")
        def get_items(db: Session = Depends(get_db)):
            return db.query(Item).all()
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind: Engine = None):
    """
    Create all tables. Called on application startup.
    """
    # Import models so they register on Base.metadata
    from concierge import db_models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
