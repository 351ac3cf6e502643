from contextlib import contextmanager
from typing import Generator

from sqlalchemy import Engine
from sqlmodel import Session, SQLModel, create_engine

from oauth_core.core.config import settings


def _build_engine(url: str) -> Engine:
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


# Create database engine
engine = _build_engine(settings.SQLALCHEMY_DATABASE_URI)

# make sure all SQLModel models are imported (oauth_core.models) before initializing DB
from oauth_core.models import (  # noqa: E402, F401
    IntegrationAuditLog,
    OAuthState,
    PKCEVerifier,
    UserIntegration,
)


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """
    Get a database session context manager.

    This is used by the token service, background tasks and the CLI,
    which need database access outside of FastAPI's dependency injection.

    Usage:
        with get_session() as session:
            session.exec(select(UserIntegration)).all()
    """
    with Session(engine) as session:
        yield session


def init_db(db_engine: Engine | None = None) -> bool:
    """
    Create tables directly from the models on SQLite databases.

    PostgreSQL databases are migrated with Alembic and left alone; SQLite is
    used for local development and the CLI.

    Returns:
        True if tables were created
    """
    db_engine = db_engine or engine
    if db_engine.dialect.name != "sqlite":
        return False
    SQLModel.metadata.create_all(db_engine)
    return True
