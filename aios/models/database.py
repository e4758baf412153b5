# aios/models/database.py
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()

_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


def create_db_engine(url: str, pool_size: int = 10, max_overflow: int = 20) -> Engine:
    """Create an engine configured for the database type"""
    if url in _MEMORY_URLS:
        # One shared connection, otherwise every session sees an empty database
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool
        )
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False}  # Needed for SQLite
        )
    # PostgreSQL or other databases
    return create_engine(
        url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True
    )


def create_session_factory(engine: Engine) -> sessionmaker:
    """Session factory; rows stay readable after the session closes"""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine: Engine) -> None:
    """Create all tables (development and tests; production schemas are managed outside the core)"""
    # Import models so they register on Base.metadata
    from . import agent, queue, task  # noqa: F401
    Base.metadata.create_all(bind=engine)
