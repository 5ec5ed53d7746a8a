from sqlalchemy import Column, String, Integer, ForeignKey, DateTime, Enum
from sqlalchemy.orm import relationship
from datetime import datetime
import enum

from .base import Base, JSON_TYPE


class SessionStatus(enum.Enum):
    STARTED = "started"
    DEMOGRAPHICS = "demographics"
    ANNOTATING = "annotating"
    SCREENED_OUT = "screened_out"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CONSENT_DECLINED = "consent_declined"


# Statuses from which an assignment may still be made
ASSIGNABLE_STATUSES = (SessionStatus.STARTED, SessionStatus.DEMOGRAPHICS)
# Sessions in these states cannot be picked up again
TERMINAL_STATUSES = (SessionStatus.EXPIRED, SessionStatus.CONSENT_DECLINED)


class UnitKind(enum.Enum):
    INDIVIDUAL = "individual"
    JOB_SET = "job_set"


class AnnotationSessionORM(Base):
    __tablename__ = "annotation_sessions"

    session_id = Column(String, primary_key=True, index=True)
    session_token = Column(String, nullable=False, unique=True, index=True)
    form_id = Column(String, ForeignKey("forms.form_id"), nullable=False, index=True)
    external_pid = Column(String, nullable=True)

    # --- Demographics ---
    demographic_answers = Column(JSON_TYPE, default=dict, nullable=False)
    demographic_group = Column(String, nullable=True, index=True)

    # --- Assignment (set once, cleared on expiry) ---
    assigned_unit_kind = Column(Enum(UnitKind), nullable=True)
    assigned_article_ids = Column(JSON_TYPE, nullable=True)
    assigned_job_set_id = Column(String, ForeignKey("job_sets.job_set_id"), nullable=True)
    required_article_count = Column(Integer, default=1, nullable=False)
    articles_completed = Column(Integer, default=0, nullable=False)
    annotated_article_ids = Column(JSON_TYPE, nullable=True)
    # What an expired session held before its slot was handed back
    released_unit_ref = Column(JSON_TYPE, nullable=True)

    # --- Lifecycle ---
    status = Column(Enum(SessionStatus), default=SessionStatus.STARTED, nullable=False, index=True)
    screen_out_reason = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    last_active_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    form = relationship("FormORM", back_populates="sessions")
    job_set = relationship("JobSetORM")
