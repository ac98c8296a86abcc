from pydantic import BaseModel

from stepdocs.schemas.document import DocumentResponse


class RebuildResponse(BaseModel):
    step_id: str
    session_count: int
    deleted_ids: list[str]
    updated_ids: list[str]
    violations: list[str]


class UploadResponse(BaseModel):
    document: DocumentResponse
    # False when the upload duplicated its session's document type and was folded away.
    kept: bool
    rebuild: RebuildResponse


class ConsistencyResponse(BaseModel):
    step_id: str
    consistent: bool
    problems: list[str]


class SweepResponse(BaseModel):
    rebuilt: list[RebuildResponse]
    failed: dict[str, str]
