from sqlalchemy import Column, String, Integer, DateTime, Text, Enum
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from .base import Base, JSON_TYPE


class AssignmentStrategy(enum.Enum):
    INDIVIDUAL = "INDIVIDUAL"
    JOB_SET = "JOB_SET"


# --- Form Model ---
# Only the columns the assignment engine reads; questions and layout live elsewhere.
class FormORM(Base):
    __tablename__ = "forms"

    form_id = Column(String, primary_key=True, index=True)
    title = Column(String, nullable=False)
    description = Column(Text)

    # --- Assignment configuration ---
    assignment_strategy = Column(
        Enum(AssignmentStrategy), default=AssignmentStrategy.INDIVIDUAL, nullable=False
    )
    # Job-set size when the strategy is JOB_SET
    articles_per_session = Column(Integer, default=1, nullable=False)
    session_timeout_mins = Column(Integer, default=60, nullable=False)
    minimum_age = Column(Integer, default=18, nullable=False)

    # Serialized QuotaSettings; NULL means the defaults apply
    quota_settings = Column(JSON_TYPE, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    articles = relationship("ArticleORM", back_populates="form")
    job_sets = relationship("JobSetORM", back_populates="form")
    sessions = relationship("AnnotationSessionORM", back_populates="form")
