"""Engine and session factory shared by the gateway and the queue worker.

PostgreSQL (psycopg) in deployment. SQLite URLs are accepted for local runs
and tests; an in-memory SQLite database is pinned to one connection so every
session sees the same tables.
"""

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy.pool import StaticPool

from payrelay.common.config import settings


def build_engine(url: str) -> Engine:
    if not url.startswith("sqlite"):
        return create_engine(url, pool_pre_ping=True)
    # Sessions are used from the threadpool as well as the event loop thread.
    connect_args = {"check_same_thread": False}
    if url in ("sqlite://", "sqlite:///:memory:"):
        return create_engine(url, connect_args=connect_args, poolclass=StaticPool)
    return create_engine(url, connect_args=connect_args)


def build_session_factory(bind: Engine) -> sessionmaker:
    # ORM rows are returned from closed sessions and read after commit.
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, expire_on_commit=False)


engine = build_engine(settings.database_url)
SessionLocal = build_session_factory(engine)


class Base(DeclarativeBase):
    pass


def create_schema(bind: Engine | None = None) -> None:
    """Create every table that does not exist yet."""

    # Importing the model modules registers their tables on Base.metadata.
    import payrelay.common.error_events  # noqa: F401
    import payrelay.services.retry_queue.models  # noqa: F401
    import payrelay.services.transactions.models  # noqa: F401
    import payrelay.services.webhooks.models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
