"""Database configuration and session management."""

from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel import SQLModel


class Database:
    """Engine and session factory for one database URL."""

    def __init__(self, database_url: str, env: str = "development"):
        self.database_url = database_url

        url = make_url(database_url)
        engine_kwargs = {}
        if url.get_backend_name() == "sqlite":
            # Executions run on worker threads
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if url.database and url.database != ":memory:":
                Path(url.database).parent.mkdir(parents=True, exist_ok=True)
        if env == "test":
            engine_kwargs["poolclass"] = NullPool

        self.engine = create_engine(
            database_url,
            echo=False,
            pool_pre_ping=True,
            **engine_kwargs,
        )
        self._session_maker = sessionmaker(
            bind=self.engine,
            class_=Session,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )

    @contextmanager
    def session(self):
        """Get database session."""
        with self._session_maker() as session:
            try:
                yield session
                session.commit()
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def create_tables(self) -> None:
        """Create all database tables."""
        SQLModel.metadata.create_all(self.engine)

    def close(self) -> None:
        """Close database connections."""
        self.engine.dispose()
