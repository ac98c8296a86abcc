class DocumentVersionError(Exception):
    """Base class for errors surfaced by the document versioning service."""


class NotFound(DocumentVersionError):
    def __init__(self, kind: str, ident: str):
        super().__init__(f"{kind} {ident} not found")
        self.kind = kind
        self.ident = ident


class ConcurrentModification(DocumentVersionError):
    """Another rebuild holds the step lock; callers should retry with backoff."""

    def __init__(self, step_id: str, waited_seconds: float):
        super().__init__(f"Step {step_id} is being modified, gave up after {waited_seconds:.2f}s")
        self.step_id = step_id
        self.waited_seconds = waited_seconds


class StorageUnavailable(DocumentVersionError):
    """The upload record is missing the storage fields the store requires."""
