from pydantic import BaseModel, Field

from stepdocs.models.document import DocumentType


class DocumentCreate(BaseModel):
    """A finalized upload handed over by the upload pipeline."""

    document_type: DocumentType
    original_name: str
    storage_key: str
    download_url: str
    size_bytes: int = Field(ge=0)
    mime_type: str | None = None
    completion_session_id: str | None = None


class SessionInfo(BaseModel):
    session_id: str
    session_number: int
    total_sessions: int
    is_latest_session: bool


class DocumentResponse(BaseModel):
    id: str
    step_id: str
    document_type: str
    original_name: str
    storage_key: str
    download_url: str
    size_bytes: int
    mime_type: str | None
    uploaded_by: str
    created_at: str
    completion_session_id: str | None
    document_version: int | None
    is_current_version: bool
    superseded_by: str | None
    superseded_at: str | None
    session_info: SessionInfo | None = None


class SessionSummary(BaseModel):
    session_id: str
    session_number: int
    total_sessions: int
    is_latest_session: bool
    document_count: int
    created_at: str


class SessionHistory(BaseModel):
    session: SessionSummary
    documents: list[DocumentResponse]


class StepDocumentsResponse(BaseModel):
    current_documents: list[DocumentResponse]
    previous_sessions: list[SessionHistory]
