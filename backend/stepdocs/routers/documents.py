from typing import Literal

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from stepdocs.database import get_db
from stepdocs.dependencies import require_actor
from stepdocs.routers.steps import report_to_response
from stepdocs.schemas.document import (
    DocumentCreate,
    DocumentResponse,
    SessionHistory,
    StepDocumentsResponse,
)
from stepdocs.schemas.maintenance import RebuildResponse, UploadResponse
from stepdocs.services.document_version_service import document_to_response, document_version_service

router = APIRouter(prefix="/steps/{step_id}/documents", tags=["documents"])


@router.post("", response_model=UploadResponse, status_code=201)
def register_document(
    step_id: str,
    req: DocumentCreate,
    actor_id: str = Depends(require_actor),
    db: Session = Depends(get_db),
):
    """Record a finalized upload; storage has already happened upstream."""
    outcome = document_version_service.add_document(db, step_id, req, uploaded_by=actor_id)
    return UploadResponse(
        document=document_to_response(outcome.document),
        kept=outcome.kept,
        rebuild=report_to_response(outcome.report),
    )


@router.get("", response_model=StepDocumentsResponse)
async def step_documents(step_id: str, db: Session = Depends(get_db)):
    return document_version_service.get_step_documents(db, step_id)


@router.get("/current", response_model=list[DocumentResponse])
async def current_documents(step_id: str, db: Session = Depends(get_db)):
    return document_version_service.get_current_documents(db, step_id)


@router.get("/history", response_model=list[SessionHistory])
async def version_history(
    step_id: str,
    order: Literal["newest", "oldest"] = "newest",
    db: Session = Depends(get_db),
):
    return document_version_service.get_version_history(db, step_id, newest_first=order == "newest")


@router.delete("/{document_id}", response_model=RebuildResponse, dependencies=[Depends(require_actor)])
def delete_document(step_id: str, document_id: str, db: Session = Depends(get_db)):
    report = document_version_service.delete_document(db, step_id, document_id)
    return report_to_response(report)
