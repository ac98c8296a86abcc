from sqlalchemy import Column, Integer, Text
from sqlalchemy.orm import relationship
from stepdocs.database import Base


class TimelineStep(Base):
    __tablename__ = "timeline_steps"

    id = Column(Text, primary_key=True)
    timeline_id = Column(Text, nullable=False)
    title = Column(Text, nullable=False)
    is_completed = Column(Integer, nullable=False, default=0)
    created_at = Column(Text, nullable=False)
    updated_at = Column(Text, nullable=False)

    documents = relationship("TimelineDocument", back_populates="step", cascade="all, delete-orphan")
