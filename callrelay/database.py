from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from callrelay.config import settings


def build_engine(database_url: str):
    """Create an engine; SQLite gets thread sharing so worker threads can use it."""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(database_url, **kwargs)
    return create_engine(database_url, pool_pre_ping=True)


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)

Base = declarative_base()


def init_db(bind=None) -> None:
    """Create missing tables (CREATE TABLE IF NOT EXISTS semantics)."""
    import callrelay.models  # noqa: F401  register mappers

    Base.metadata.create_all(bind=bind or engine)
