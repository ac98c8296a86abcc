from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from stepdocs.database import get_db
from stepdocs.dependencies import require_actor
from stepdocs.models.step import TimelineStep
from stepdocs.schemas.maintenance import ConsistencyResponse, RebuildResponse
from stepdocs.schemas.step import (
    CompletionSessionResponse,
    StepCompletionUpdate,
    StepCreate,
    StepResponse,
)
from stepdocs.services.document_version_service import RebuildReport, document_version_service

router = APIRouter(prefix="/steps", tags=["steps"])


def _step_to_response(step: TimelineStep) -> StepResponse:
    return StepResponse(
        id=step.id,
        timeline_id=step.timeline_id,
        title=step.title,
        is_completed=bool(step.is_completed),
        created_at=step.created_at,
        updated_at=step.updated_at,
    )


def report_to_response(report: RebuildReport) -> RebuildResponse:
    return RebuildResponse(
        step_id=report.step_id,
        session_count=report.session_count,
        deleted_ids=report.deleted_ids,
        updated_ids=report.updated_ids,
        violations=[v.describe() for v in report.violations],
    )


@router.post("", response_model=StepResponse, status_code=201, dependencies=[Depends(require_actor)])
async def create_step(req: StepCreate, db: Session = Depends(get_db)):
    step = document_version_service.create_step(db, req.timeline_id, req.title)
    return _step_to_response(step)


@router.get("/{step_id}", response_model=StepResponse)
async def get_step(step_id: str, db: Session = Depends(get_db)):
    return _step_to_response(document_version_service.get_step(db, step_id))


@router.put("/{step_id}/completion", response_model=StepResponse, dependencies=[Depends(require_actor)])
def set_completion(step_id: str, req: StepCompletionUpdate, db: Session = Depends(get_db)):
    """Mark a step complete or incomplete. Reopening withdraws the latest session."""
    step = document_version_service.set_step_completed(db, step_id, req.is_completed)
    return _step_to_response(step)


@router.post("/{step_id}/sessions", status_code=201, dependencies=[Depends(require_actor)])
async def start_session(step_id: str, db: Session = Depends(get_db)):
    return {"session_id": document_version_service.start_session(db, step_id)}


@router.get("/{step_id}/sessions", response_model=list[CompletionSessionResponse])
async def list_sessions(step_id: str, db: Session = Depends(get_db)):
    return document_version_service.list_sessions(db, step_id)


@router.post("/{step_id}/rebuild", response_model=RebuildResponse, dependencies=[Depends(require_actor)])
def rebuild_step(step_id: str, db: Session = Depends(get_db)):
    return report_to_response(document_version_service.rebuild(db, step_id))


@router.get("/{step_id}/consistency", response_model=ConsistencyResponse)
async def check_consistency(step_id: str, db: Session = Depends(get_db)):
    report = document_version_service.check_consistency(db, step_id)
    return ConsistencyResponse(step_id=report.step_id, consistent=report.consistent, problems=report.problems)
