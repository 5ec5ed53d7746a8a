# services/session_service.py
from typing import Optional

import structlog
from sqlalchemy.orm import Session

from survey_quota.core.exceptions import (
    FormNotFoundError,
    SessionNotFoundError,
    SessionStateError,
    ValidationError,
)
from survey_quota.models.orm.session import TERMINAL_STATUSES, AnnotationSessionORM, SessionStatus
from survey_quota.models.schemas.session import (
    DemographicsModel,
    SessionDeclineModel,
    SessionPublic,
    SessionStartModel,
    SessionStartResponseModel,
)
from survey_quota.repositories.form_repo import FormRepository
from survey_quota.repositories.session_repo import SessionRepository

logger = structlog.get_logger()


class SessionService:
    def __init__(self, db: Session):
        """Initializes the service with repositories it needs."""
        self.db = db
        self.form_repo = FormRepository(db)
        self.session_repo = SessionRepository(db)

    def start_or_resume(self, form_id: str, request: SessionStartModel) -> SessionStartResponseModel:
        """
        Resumes the session behind request.session_token when it belongs to
        this form and is still live; otherwise starts a new one.
        """
        form = self.form_repo.get_form(form_id)
        if not form:
            raise FormNotFoundError(f"Form {form_id} not found.")

        was_expired = False
        if request.session_token:
            existing = self.session_repo.get_by_token(request.session_token)
            if existing and existing.form_id == form_id:
                if existing.status not in TERMINAL_STATUSES:
                    self.session_repo.touch(existing)
                    logger.info("session_resumed", session_id=existing.session_id, form_id=form_id)
                    return SessionStartResponseModel(
                        session=SessionPublic.from_orm_session(existing), resumed=True
                    )
                was_expired = existing.status is SessionStatus.EXPIRED

        try:
            created = self.session_repo.create_session(
                form_id,
                required_article_count=form.articles_per_session,
                external_pid=request.external_pid,
            )
        except ValueError as e:
            raise ValidationError(str(e))

        logger.info("session_started", session_id=created.session_id, form_id=form_id)
        return SessionStartResponseModel(
            session=SessionPublic.from_orm_session(created),
            resumed=False,
            was_expired=was_expired,
        )

    def _load(self, form_id: str, session_token: Optional[str]) -> AnnotationSessionORM:
        if not session_token:
            raise ValidationError("Session token required")
        session = self.session_repo.get_by_token(session_token)
        if not session or session.form_id != form_id:
            raise SessionNotFoundError("Session not found")
        return session

    def get_session(self, form_id: str, session_token: Optional[str]) -> SessionPublic:
        return SessionPublic.from_orm_session(self._load(form_id, session_token))

    def decline(self, form_id: str, session_token: Optional[str]) -> SessionDeclineModel:
        """Participant declined consent; the session ends before any assignment."""
        session = self._load(form_id, session_token)

        if session.status is not SessionStatus.CONSENT_DECLINED:
            if not self.session_repo.mark_declined(session.session_id):
                self.db.rollback()
                raise SessionStateError(
                    f"Session is {session.status.value} and can no longer decline consent"
                )
            self.db.commit()
            self.db.refresh(session)
            logger.info("session_declined", session_id=session.session_id, form_id=form_id)

        return SessionDeclineModel(success=True, session=SessionPublic.from_orm_session(session))

    def save_demographics(self, form_id: str, request: DemographicsModel) -> SessionPublic:
        """
        Stores demographic answers and moves the session to the demographics
        step. Assignment later classifies on these answers unless it is given
        newer ones.
        """
        session = self._load(form_id, request.session_token)

        if not self.session_repo.save_demographics(session.session_id, dict(request.demographics)):
            self.db.rollback()
            raise SessionStateError(
                f"Session is {session.status.value} and no longer takes demographic answers"
            )
        self.db.commit()
        self.db.refresh(session)
        logger.info("demographics_saved", session_id=session.session_id, form_id=form_id)
        return SessionPublic.from_orm_session(session)
