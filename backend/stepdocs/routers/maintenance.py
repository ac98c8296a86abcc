from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from stepdocs.database import get_db
from stepdocs.dependencies import require_actor
from stepdocs.routers.steps import report_to_response
from stepdocs.schemas.maintenance import SweepResponse
from stepdocs.services.document_version_service import document_version_service

router = APIRouter(prefix="/maintenance", tags=["maintenance"], dependencies=[Depends(require_actor)])


@router.post("/sweep", response_model=SweepResponse)
def sweep(db: Session = Depends(get_db)):
    """Rebuild every step that holds versioned documents."""
    result = document_version_service.sweep(db)
    return SweepResponse(
        rebuilt=[report_to_response(r) for r in result.rebuilt],
        failed=result.failed,
    )
