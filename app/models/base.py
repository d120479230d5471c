"""Database base configuration"""
from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from app.config import settings

engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if "sqlite" in settings.database_url else {},
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def utcnow() -> datetime:
    """UTC 'now' as tz-naive datetime (consistent with Jira timestamp parsing)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db():
    """Get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def ensure_active_sync_record_indexes(bind):
    """
    Best-effort schema hardening:
    Only one non-stale SyncRecord may exist per linked entity pair.

    Stale rows are kept for audit, so a plain UNIQUE constraint can't be used;
    we use partial UNIQUE INDEXes (supported by SQLite and PostgreSQL).
    """
    stmts = [
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_sync_records_active_local "
        "ON sync_records(integration_id, entity_type, local_id) WHERE stale = 0",
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_sync_records_active_external "
        "ON sync_records(integration_id, entity_type, external_id) WHERE stale = 0",
    ]
    if bind.dialect.name == "postgresql":
        stmts = [s.replace("stale = 0", "stale = false") for s in stmts]
    elif bind.dialect.name != "sqlite":
        # Partial indexes are not portable; rely on SyncStateStore.upsert().
        return

    with bind.begin() as conn:
        for sql in stmts:
            conn.exec_driver_sql(sql)


def init_db():
    """Initialize database"""
    # Ensure all models are imported so SQLAlchemy metadata is populated.
    import app.models  # noqa: F401  (import for side-effects)

    Base.metadata.create_all(bind=engine)
    ensure_active_sync_record_indexes(engine)
