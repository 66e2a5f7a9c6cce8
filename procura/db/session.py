"""
Database session management with SQLAlchemy.
"""
import time
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import declarative_base, sessionmaker, Session

from procura.core.config import settings
from procura.core.logging import get_logger

logger = get_logger(__name__)


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        # Local runs only; the pool options below are not valid for SQLite
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 20,
        "pool_timeout": 30,
        "pool_recycle": 1800,
    }


engine = create_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """Dependency for getting database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """Context manager for database session."""
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def run_db_preflight(retries: int = 5, delay: int = 2) -> bool:
    """Check connectivity before the API starts serving requests."""
    safe_url = settings.DATABASE_URL.split("@")[-1] if "@" in settings.DATABASE_URL else "configured URL"
    logger.info(f"Running DB preflight check against: {safe_url}")

    for attempt in range(1, retries + 1):
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            logger.info("Database connection successful")
            return True
        except OperationalError as e:
            if attempt < retries:
                logger.warning(f"DB preflight attempt {attempt}/{retries} failed: {e}. Retrying in {delay}s")
                time.sleep(delay)
            else:
                logger.error(f"Could not connect to database after {retries} attempts: {e}")
                return False
    return False


def init_db():
    """
    Initialize database connection and verify the schema.

    Schema is managed by Alembic migrations (`alembic upgrade head`), NOT
    create_all(). DEBUG mode auto-creates missing tables for local work.
    """
    if not run_db_preflight():
        return

    from procura.db import models  # noqa - register models on Base.metadata

    existing_tables = inspect(engine).get_table_names()
    required_tables = ["companies", "vendors", "quotes", "vendor_scores"]
    missing = [t for t in required_tables if t not in existing_tables]

    if missing:
        logger.warning(f"Database schema missing tables: {missing}. Run `alembic upgrade head`.")
        if settings.DEBUG:
            logger.warning("DEBUG=true: auto-creating tables (NOT for production!)")
            Base.metadata.create_all(bind=engine)
        return

    logger.info(f"Database schema verified: {len(existing_tables)} tables found")
