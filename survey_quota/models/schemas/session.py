from datetime import datetime
from typing import Dict, List, Optional
from pydantic import Field

from survey_quota.models.orm.session import AnnotationSessionORM, UnitKind
from survey_quota.models.schemas.base import CamelModel


class AssignedUnitRef(CamelModel):
    """Stored reference to the unit a session holds."""

    kind: UnitKind
    ids: List[str] = Field(
        ..., description="Article ids for an individual assignment, or the single job-set id."
    )


class SessionPublic(CamelModel):
    """Public projection of an annotation session."""

    session_id: str
    session_token: str
    form_id: str
    status: str
    demographic_group: Optional[str] = None
    assigned_unit: Optional[AssignedUnitRef] = None
    required_article_count: int
    articles_completed: int = 0
    screen_out_reason: Optional[str] = None
    created_at: datetime
    last_active_at: datetime
    completed_at: Optional[datetime] = None

    @classmethod
    def from_orm_session(cls, session: AnnotationSessionORM) -> "SessionPublic":
        return cls(
            session_id=session.session_id,
            session_token=session.session_token,
            form_id=session.form_id,
            status=session.status.value,
            demographic_group=session.demographic_group,
            assigned_unit=assigned_unit_ref(session),
            required_article_count=session.required_article_count,
            articles_completed=session.articles_completed,
            screen_out_reason=session.screen_out_reason,
            created_at=session.created_at,
            last_active_at=session.last_active_at,
            completed_at=session.completed_at,
        )


def assigned_unit_ref(session: AnnotationSessionORM) -> Optional[AssignedUnitRef]:
    if session.assigned_unit_kind is None:
        return None
    if session.assigned_unit_kind is UnitKind.INDIVIDUAL:
        return AssignedUnitRef(kind=UnitKind.INDIVIDUAL, ids=list(session.assigned_article_ids or []))
    if session.assigned_unit_kind is UnitKind.JOB_SET:
        return AssignedUnitRef(kind=UnitKind.JOB_SET, ids=[session.assigned_job_set_id])
    raise TypeError(f"Unknown unit kind: {session.assigned_unit_kind!r}")


# --- Requests ---


class SessionStartModel(CamelModel):
    """Create a new session, or resume one when a token is supplied."""

    session_token: Optional[str] = None
    external_pid: Optional[str] = Field(None, description="Panel participant id.")


class SessionTokenModel(CamelModel):
    session_token: Optional[str] = None


class DemographicsModel(CamelModel):
    """Answers to the demographic questions, saved before assignment."""

    session_token: Optional[str] = None
    demographics: Dict[str, Optional[str]] = Field(default_factory=dict)


class AnnotationProgressModel(CamelModel):
    """One article of the session's unit has been annotated."""

    session_token: Optional[str] = None
    article_id: Optional[str] = None


class SessionStartResponseModel(CamelModel):
    session: SessionPublic
    resumed: bool
    was_expired: bool = False


class SessionCompletionModel(CamelModel):
    success: bool
    already_completed: bool = False
    articles_completed: int
    demographic_group: Optional[str] = None


class SessionDeclineModel(CamelModel):
    success: bool
    session: SessionPublic


class ExpirySweepModel(CamelModel):
    expired: int
    released_reservations: Dict[str, int] = Field(
        default_factory=dict, description="Released slots per demographic group."
    )


class AnnotationProgressResponseModel(CamelModel):
    success: bool
    already_annotated: bool = False
    articles_completed: int
    required_article_count: int
    session: SessionPublic
