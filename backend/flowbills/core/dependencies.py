from collections.abc import Generator
from typing import Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from flowbills.core.config import get_settings


def build_engine(database_url: str, statement_timeout_ms: int = 0) -> Optional[Engine]:
    if not database_url:
        return None

    if database_url.startswith("sqlite"):
        # Sync endpoints run in a threadpool; the connection is shared across threads.
        sqlite_engine = create_engine(
            database_url,
            pool_pre_ping=True,
            connect_args={"check_same_thread": False, "timeout": 30},
        )

        @event.listens_for(sqlite_engine, "connect")
        def _set_sqlite_pragmas(dbapi_connection, _connection_record) -> None:  # type: ignore[no-untyped-def]
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute("PRAGMA busy_timeout=30000")
            cursor.close()

        return sqlite_engine

    connect_args: dict[str, object] = {}
    if statement_timeout_ms:
        # Row locks taken by approvals must not be held by a stuck statement.
        connect_args["options"] = f"-c statement_timeout={statement_timeout_ms}"
    return create_engine(database_url, pool_pre_ping=True, connect_args=connect_args)


settings = get_settings()
engine = build_engine(settings.database_url, settings.database_statement_timeout_ms)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine) if engine else None


def get_db() -> Generator[Session, None, None]:
    if SessionLocal is None:
        raise RuntimeError("DATABASE_URL is not configured")
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
