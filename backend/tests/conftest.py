import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

from stepdocs.database import get_db
from stepdocs.main import app
from stepdocs.models.document import TimelineDocument
from stepdocs.schemas.document import DocumentCreate
from stepdocs.services.document_version_service import document_version_service
from stepdocs.utils.timestamps import format_timestamp

BASE_TIME = datetime(2025, 3, 1, tzinfo=timezone.utc)


def _set_sqlite_pragmas(dbapi_conn, connection_record):
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def make_timestamp(second: int, micro: int = 0) -> str:
    """Deterministic timestamp in the store's format."""
    return format_timestamp(BASE_TIME + timedelta(seconds=second, microseconds=micro))


@pytest.fixture
def tmp_store(tmp_path):
    store_path = tmp_path / "TestStore"
    store_path.mkdir()
    return store_path


@pytest.fixture
def test_db(tmp_store):
    db_path = tmp_store / "db.sqlite"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    event.listen(engine, "connect", _set_sqlite_pragmas)
    TestSession = sessionmaker(bind=engine, autoflush=False, autocommit=False)

    from stepdocs.database import init_db
    init_db(db_path)

    def override_get_db():
        db = TestSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestSession
    app.dependency_overrides.clear()
    engine.dispose()


@pytest.fixture
def db(test_db):
    session = test_db()
    yield session
    session.close()


@pytest.fixture
def client(test_db):
    return TestClient(app)


@pytest.fixture
def actor():
    return {"X-Actor-Id": "user-1"}


@pytest.fixture
def step(db):
    return document_version_service.create_step(db, "timeline-1", "Home inspection")


@pytest.fixture
def upload(db):
    """Register a finalized upload through the normal write path."""
    def _upload(step_id, document_type, session_id, created_at, service=document_version_service, name=None):
        req = DocumentCreate(
            document_type=document_type,
            original_name=name or f"{document_type.lower()}.pdf",
            storage_key=f"steps/{step_id}/{uuid.uuid4().hex}",
            download_url=f"https://cdn.example.com/{uuid.uuid4().hex}.pdf",
            size_bytes=2048,
            mime_type="application/pdf",
            completion_session_id=session_id,
        )
        return service.add_document(db, step_id, req, uploaded_by="user-1", created_at=created_at)
    return _upload


@pytest.fixture
def insert_raw(db):
    """Insert a row directly, bypassing the rebuild (legacy data or corrupted state)."""
    def _insert(step_id, document_type, session_id, created_at, **derived):
        doc = TimelineDocument(
            id=derived.pop("id", None) or str(uuid.uuid4()),
            step_id=step_id,
            document_type=document_type,
            original_name=f"{document_type.lower()}.pdf",
            storage_key=f"steps/{step_id}/{uuid.uuid4().hex}",
            download_url="https://cdn.example.com/raw.pdf",
            size_bytes=512,
            mime_type="application/pdf",
            uploaded_by="legacy-import",
            created_at=created_at,
            completion_session_id=session_id,
            document_version=derived.pop("document_version", None),
            is_current_version=int(derived.pop("is_current_version", False)),
            superseded_by=derived.pop("superseded_by", None),
            superseded_at=derived.pop("superseded_at", None),
            withdrawn_at=derived.pop("withdrawn_at", None),
        )
        assert not derived, f"unexpected fields {derived}"
        db.add(doc)
        db.commit()
        return doc.id
    return _insert


@pytest.fixture
def ts():
    return make_timestamp
