import sqlite3
from pathlib import Path
from sqlalchemy import create_engine, event
from sqlalchemy.orm import DeclarativeBase, sessionmaker

from stepdocs.config import settings


class Base(DeclarativeBase):
    pass


def _set_sqlite_pragmas(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_engine(db_path: Path | None = None):
    path = db_path or settings.db_path
    engine = create_engine(
        f"sqlite:///{path}",
        connect_args={"check_same_thread": False},
    )
    event.listen(engine, "connect", _set_sqlite_pragmas)
    return engine


engine = get_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


SCHEMA_SQL = """\
-- ============================================================
-- TIMELINE STEPS
-- ============================================================
CREATE TABLE IF NOT EXISTS timeline_steps (
    id           TEXT PRIMARY KEY,
    timeline_id  TEXT NOT NULL,
    title        TEXT NOT NULL,
    is_completed INTEGER NOT NULL DEFAULT 0,
    created_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_steps_timeline ON timeline_steps(timeline_id);

-- ============================================================
-- TIMELINE DOCUMENTS
-- ============================================================
CREATE TABLE IF NOT EXISTS timeline_documents (
    id                    TEXT PRIMARY KEY,
    step_id               TEXT NOT NULL REFERENCES timeline_steps(id) ON DELETE CASCADE,
    document_type         TEXT NOT NULL
                          CHECK(document_type IN ('CONTRACT','FINANCIAL','INSPECTION','APPRAISAL',
                                                  'INSURANCE','TITLE','MORTGAGE','CLOSING',
                                                  'CORRESPONDENCE','RECEIPT','OTHER')),
    original_name         TEXT NOT NULL,
    storage_key           TEXT NOT NULL,
    download_url          TEXT NOT NULL,
    size_bytes            INTEGER NOT NULL,
    mime_type             TEXT,
    uploaded_by           TEXT NOT NULL,
    created_at            TEXT NOT NULL,
    completion_session_id TEXT,
    document_version      INTEGER,
    is_current_version    INTEGER NOT NULL DEFAULT 0,
    superseded_by         TEXT,
    superseded_at         TEXT
);

CREATE INDEX IF NOT EXISTS idx_documents_step ON timeline_documents(step_id);
CREATE INDEX IF NOT EXISTS idx_documents_session ON timeline_documents(step_id, completion_session_id);
CREATE INDEX IF NOT EXISTS idx_documents_type ON timeline_documents(step_id, document_type);
"""


MIGRATIONS = [
    # v0.2: withdrawn sessions (step marked incomplete)
    "ALTER TABLE timeline_documents ADD COLUMN withdrawn_at TEXT",
]


def init_db(db_path: Path | None = None):
    path = db_path or settings.db_path
    conn = sqlite3.connect(str(path))
    conn.executescript(SCHEMA_SQL)
    # Run migrations idempotently (ALTER TABLE fails silently if column exists)
    for migration in MIGRATIONS:
        try:
            conn.execute(migration)
            conn.commit()
        except sqlite3.OperationalError:
            pass  # column already exists
    conn.close()
