"""
Database engine and session management with SQLAlchemy.

The engine (and its connection pool) is owned by the process: the API
builds it in the FastAPI lifespan, the worker builds it on start. Handlers
and services receive sessions through dependency injection, never through a
module-level session.
"""
from contextlib import contextmanager
from typing import Callable, Generator, Optional

from fastapi import Request
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from sqlalchemy.pool import StaticPool

from procura.core.config import settings
from procura.core.logging import get_logger

logger = get_logger(__name__)

Base = declarative_base()

SessionFactory = Callable[[], Session]


def build_engine(database_url: Optional[str] = None) -> Engine:
    """Create the process-wide engine and connection pool."""
    url = database_url or settings.DATABASE_URL

    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, **kwargs)

    return create_engine(
        url,
        pool_pre_ping=True,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=30,
        pool_recycle=1800,
    )


def build_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


def get_db(request: Request) -> Generator[Session, None, None]:
    """Dependency for getting a database session from the app's session factory."""
    db = request.app.state.session_factory()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context(session_factory: SessionFactory) -> Generator[Session, None, None]:
    """Context manager for a standalone session (workers, scripts)."""
    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


@contextmanager
def unit_of_work(db: Session) -> Generator[Session, None, None]:
    """
    All-or-nothing boundary for multi-step mutations.

    Everything flushed inside the block commits together; any exception
    (domain error or storage failure) rolls the whole block back.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def init_db(engine: Engine, session_factory: SessionFactory) -> None:
    """
    Initialize database connection and run startup tasks.

    Schema is managed by Alembic migrations (`alembic upgrade head`).
    In DEBUG mode missing tables are created automatically.
    """
    from procura.db.preflight import run_db_preflight
    from procura.db import models  # noqa

    run_db_preflight(engine)

    existing_tables = inspect(engine).get_table_names()
    required_tables = ["organizations", "sourcing_requests", "rfqs", "quotes", "orders"]
    missing = [t for t in required_tables if t not in existing_tables]

    if missing:
        logger.warning(f"Database schema missing tables: {missing}")
        if settings.DEBUG:
            logger.warning("DEBUG=true: auto-creating tables (NOT for production!)")
            Base.metadata.create_all(bind=engine)
        else:
            logger.error("Run `alembic upgrade head` before starting the API")
            return
    else:
        logger.info(f"Database schema verified: {len(existing_tables)} tables found")

    if "alembic_version" in existing_tables:
        try:
            with engine.connect() as conn:
                version = conn.execute(text("SELECT version_num FROM alembic_version")).scalar()
                logger.info(f"Alembic migration version: {version}")
        except Exception as e:
            logger.warning(f"Could not read migration version: {e}")

    if settings.SEED_DEMO:
        from procura.db.seed import seed_demo_data
        logger.info("SEED_DEMO=true: seeding demo data")
        with get_db_context(session_factory) as db:
            seed_demo_data(db)
