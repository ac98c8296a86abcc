from stepdocs.models.step import TimelineStep
from stepdocs.models.document import DocumentType, TimelineDocument

__all__ = ["TimelineStep", "TimelineDocument", "DocumentType"]
