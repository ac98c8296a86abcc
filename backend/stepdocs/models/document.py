from enum import Enum

from sqlalchemy import Column, ForeignKey, Integer, Text
from sqlalchemy.orm import relationship
from stepdocs.database import Base


class DocumentType(str, Enum):
    CONTRACT = "CONTRACT"
    FINANCIAL = "FINANCIAL"
    INSPECTION = "INSPECTION"
    APPRAISAL = "APPRAISAL"
    INSURANCE = "INSURANCE"
    TITLE = "TITLE"
    MORTGAGE = "MORTGAGE"
    CLOSING = "CLOSING"
    CORRESPONDENCE = "CORRESPONDENCE"
    RECEIPT = "RECEIPT"
    OTHER = "OTHER"


class TimelineDocument(Base):
    __tablename__ = "timeline_documents"

    id = Column(Text, primary_key=True)
    step_id = Column(Text, ForeignKey("timeline_steps.id", ondelete="CASCADE"), nullable=False)
    document_type = Column(Text, nullable=False)
    original_name = Column(Text, nullable=False)
    storage_key = Column(Text, nullable=False)
    download_url = Column(Text, nullable=False)
    size_bytes = Column(Integer, nullable=False)
    mime_type = Column(Text)
    uploaded_by = Column(Text, nullable=False)
    created_at = Column(Text, nullable=False)
    completion_session_id = Column(Text, nullable=True)

    # Owned by the rebuild; upload code leaves these at their defaults.
    document_version = Column(Integer, nullable=True)
    is_current_version = Column(Integer, nullable=False, default=0)
    superseded_by = Column(Text, nullable=True)
    superseded_at = Column(Text, nullable=True)
    withdrawn_at = Column(Text, nullable=True)

    step = relationship("TimelineStep", back_populates="documents")
