# repositories/session_repo.py
import secrets
import uuid
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional

from sqlalchemy import func, null, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from survey_quota.models.orm.session import (
    ASSIGNABLE_STATUSES,
    AnnotationSessionORM,
    SessionStatus,
    UnitKind,
)


def generate_session_token() -> str:
    return secrets.token_urlsafe(32)


class SessionRepository:
    """
    Participant sessions. State transitions are conditional updates: each
    one names the state it expects and reports whether it won.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_by_token(self, session_token: str) -> Optional[AnnotationSessionORM]:
        stmt = (
            select(AnnotationSessionORM)
            .where(AnnotationSessionORM.session_token == session_token)
            .execution_options(populate_existing=True)
        )
        return self.db.scalars(stmt).one_or_none()

    def create_session(
        self, form_id: str, required_article_count: int, external_pid: Optional[str] = None
    ) -> AnnotationSessionORM:
        try:
            now = datetime.utcnow()
            db_session = AnnotationSessionORM(
                session_id=str(uuid.uuid4()),
                session_token=generate_session_token(),
                form_id=form_id,
                external_pid=external_pid,
                demographic_answers={},
                required_article_count=required_article_count,
                status=SessionStatus.STARTED,
                created_at=now,
                last_active_at=now,
            )
            self.db.add(db_session)
            self.db.commit()
            self.db.refresh(db_session)
            return db_session

        except IntegrityError:
            self.db.rollback()
            raise ValueError("Session could not be created for this form.")

    def touch(self, db_session: AnnotationSessionORM) -> None:
        db_session.last_active_at = datetime.utcnow()
        self.db.commit()
        self.db.refresh(db_session)

    def _transition(self, session_id: str, *conditions, **values) -> bool:
        stmt = (
            update(AnnotationSessionORM)
            .where(AnnotationSessionORM.session_id == session_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    # --- Transitions (caller commits) ---

    def save_demographics(self, session_id: str, answers: Dict[str, Optional[str]]) -> bool:
        """Stores the participant's answers ahead of assignment."""
        return self._transition(
            session_id,
            AnnotationSessionORM.status.in_(ASSIGNABLE_STATUSES),
            status=SessionStatus.DEMOGRAPHICS,
            demographic_answers=answers,
            last_active_at=datetime.utcnow(),
        )

    def mark_screened_out(
        self,
        session_id: str,
        reason: str,
        answers: Dict[str, Optional[str]],
        demographic_group: Optional[str] = None,
    ) -> bool:
        return self._transition(
            session_id,
            AnnotationSessionORM.status.in_(ASSIGNABLE_STATUSES),
            AnnotationSessionORM.assigned_unit_kind.is_(None),
            status=SessionStatus.SCREENED_OUT,
            screen_out_reason=reason,
            demographic_answers=answers,
            demographic_group=demographic_group,
            last_active_at=datetime.utcnow(),
        )

    def commit_assignment(
        self,
        session_id: str,
        kind: UnitKind,
        demographic_group: str,
        answers: Dict[str, Optional[str]],
        required_article_count: int,
        article_ids: Optional[List[str]] = None,
        job_set_id: Optional[str] = None,
    ) -> bool:
        """Links the session to its unit, once. False if it is no longer assignable."""
        return self._transition(
            session_id,
            AnnotationSessionORM.status.in_(ASSIGNABLE_STATUSES),
            AnnotationSessionORM.assigned_unit_kind.is_(None),
            status=SessionStatus.ANNOTATING,
            assigned_unit_kind=kind,
            assigned_article_ids=article_ids,
            assigned_job_set_id=job_set_id,
            demographic_group=demographic_group,
            demographic_answers=answers,
            required_article_count=required_article_count,
            last_active_at=datetime.utcnow(),
        )

    def record_annotation(
        self, session_id: str, annotated_article_ids: List[str], seen_count: int
    ) -> bool:
        """
        Stores annotation progress. seen_count is the articles_completed the
        caller read; False if another request moved it in the meantime.
        """
        return self._transition(
            session_id,
            AnnotationSessionORM.status == SessionStatus.ANNOTATING,
            AnnotationSessionORM.articles_completed == seen_count,
            annotated_article_ids=annotated_article_ids,
            articles_completed=len(annotated_article_ids),
            last_active_at=datetime.utcnow(),
        )

    def mark_completed(self, session_id: str) -> bool:
        now = datetime.utcnow()
        return self._transition(
            session_id,
            AnnotationSessionORM.status == SessionStatus.ANNOTATING,
            AnnotationSessionORM.articles_completed >= AnnotationSessionORM.required_article_count,
            status=SessionStatus.COMPLETED,
            completed_at=now,
            last_active_at=now,
        )

    def mark_expired(
        self, session_id: str, cutoff: datetime, released_unit_ref: Optional[dict] = None
    ) -> bool:
        """Ends an idle session and detaches it from its unit."""
        return self._transition(
            session_id,
            AnnotationSessionORM.status == SessionStatus.ANNOTATING,
            AnnotationSessionORM.last_active_at < cutoff,
            status=SessionStatus.EXPIRED,
            assigned_unit_kind=None,
            assigned_article_ids=null(),
            assigned_job_set_id=None,
            released_unit_ref=released_unit_ref,
        )

    def mark_declined(self, session_id: str) -> bool:
        now = datetime.utcnow()
        return self._transition(
            session_id,
            AnnotationSessionORM.status.in_(ASSIGNABLE_STATUSES),
            status=SessionStatus.CONSENT_DECLINED,
            completed_at=now,
            last_active_at=now,
        )

    # --- Queries ---

    def find_stale(self, form_id: str, cutoff: datetime) -> List[AnnotationSessionORM]:
        stmt = select(AnnotationSessionORM).where(
            AnnotationSessionORM.form_id == form_id,
            AnnotationSessionORM.status == SessionStatus.ANNOTATING,
            AnnotationSessionORM.last_active_at < cutoff,
        )
        return self.db.scalars(stmt).all()

    def count_holding_units(self, form_id: str) -> int:
        """Annotating sessions of the form that still hold a unit."""
        stmt = select(func.count(AnnotationSessionORM.session_id)).where(
            AnnotationSessionORM.form_id == form_id,
            AnnotationSessionORM.status == SessionStatus.ANNOTATING,
            AnnotationSessionORM.assigned_unit_kind.is_not(None),
        )
        return self.db.scalar(stmt)

    def count_by_status_and_group(self, form_id: str) -> Dict[str, Dict[Optional[str], int]]:
        """status -> demographic group -> number of sessions."""
        stmt = (
            select(
                AnnotationSessionORM.status,
                AnnotationSessionORM.demographic_group,
                func.count(AnnotationSessionORM.session_id),
            )
            .where(AnnotationSessionORM.form_id == form_id)
            .group_by(AnnotationSessionORM.status, AnnotationSessionORM.demographic_group)
        )
        counts: Dict[str, Dict[Optional[str], int]] = defaultdict(dict)
        for status, group, count in self.db.execute(stmt).all():
            counts[status.value][group] = count
        return dict(counts)
