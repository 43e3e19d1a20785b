import logging
import sqlite3

from sqlalchemy import create_engine, event, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from config import settings

logger = logging.getLogger(__name__)


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args(settings.DATABASE_URL),
    echo=False,
)


# Foreign keys are off by default in SQLite; every engine (tests included) needs them on.
@event.listens_for(Engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    _ = connection_record
    if not isinstance(dbapi_connection, sqlite3.Connection):
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


# Enable WAL mode for better concurrent read performance
@event.listens_for(engine, "connect")
def set_sqlite_journal_mode(dbapi_connection, connection_record):
    _ = connection_record
    if not isinstance(dbapi_connection, sqlite3.Connection):
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def run_startup_migrations(bind: Engine | None = None) -> None:
    """Apply lightweight schema fixes for databases created by older builds."""
    target = bind or engine
    inspector = inspect(target)

    def _table_columns(table_name: str) -> set[str]:
        try:
            return {col["name"] for col in inspector.get_columns(table_name)}
        except Exception:
            return set()

    user_columns = _table_columns("users")
    workout_columns = _table_columns("workouts")
    service_columns = _table_columns("connected_services")
    if not user_columns and not workout_columns and not service_columns:
        # Tables may not exist yet on first boot.
        return

    alter_statements: list[str] = []
    if user_columns:
        if "subscription_expires_at" not in user_columns:
            alter_statements.append("ALTER TABLE users ADD COLUMN subscription_expires_at TIMESTAMP")
    if workout_columns:
        if "is_recurring" not in workout_columns:
            alter_statements.append("ALTER TABLE workouts ADD COLUMN is_recurring BOOLEAN DEFAULT FALSE")
        if "recurring_pattern" not in workout_columns:
            alter_statements.append("ALTER TABLE workouts ADD COLUMN recurring_pattern TEXT")
        if "recurring_days" not in workout_columns:
            alter_statements.append("ALTER TABLE workouts ADD COLUMN recurring_days TEXT")

    with target.begin() as conn:
        for stmt in alter_statements:
            logger.info("Applying startup migration: %s", stmt)
            conn.execute(text(stmt))

        if service_columns:
            # Older databases may hold several rows per (user, service); keep the newest one.
            conn.execute(
                text(
                    """
                    DELETE FROM connected_services
                    WHERE id NOT IN (
                        SELECT MAX(id) FROM connected_services GROUP BY user_id, service_name
                    )
                    """
                )
            )
            conn.execute(
                text(
                    "CREATE UNIQUE INDEX IF NOT EXISTS uq_connected_services_user_service "
                    "ON connected_services (user_id, service_name)"
                )
            )
