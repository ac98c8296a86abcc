from pydantic import BaseModel


class StepCreate(BaseModel):
    timeline_id: str
    title: str


class StepCompletionUpdate(BaseModel):
    is_completed: bool


class StepResponse(BaseModel):
    id: str
    timeline_id: str
    title: str
    is_completed: bool
    created_at: str
    updated_at: str


class CompletionSessionResponse(BaseModel):
    session_id: str
    step_id: str
    session_number: int
    created_at: str | None
    document_count: int
