# services/assignment_service.py

import random
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

import structlog
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from survey_quota.core.exceptions import (
    ConcurrencyConflictError,
    FormNotFoundError,
    SessionNotFoundError,
    SessionStateError,
    ValidationError,
)
from survey_quota.core.settings import config_settings
from survey_quota.models.orm.form import AssignmentStrategy, FormORM
from survey_quota.models.orm.session import (
    ASSIGNABLE_STATUSES,
    TERMINAL_STATUSES,
    AnnotationSessionORM,
    SessionStatus,
    UnitKind,
)
from survey_quota.models.schemas.assignment import (
    AllocationUnit,
    AssignmentRequestModel,
    AssignmentResult,
    IndividualArticle,
    JobSet,
    ScreenOutReason,
    unit_articles,
)
from survey_quota.models.schemas.quota import QuotaSettings
from survey_quota.models.schemas.session import (
    AnnotationProgressModel,
    AnnotationProgressResponseModel,
    ExpirySweepModel,
    SessionCompletionModel,
    SessionPublic,
    assigned_unit_ref,
)
from survey_quota.repositories.allocation_repo import AllocationRepository
from survey_quota.repositories.form_repo import FormRepository
from survey_quota.repositories.session_repo import SessionRepository
from survey_quota.services.quota import (
    classify_participant,
    is_under_age,
    load_quota_settings,
)

logger = structlog.get_logger()

BIRTH_DATE_FIELD = "birthDate"


def held_units(session: AnnotationSessionORM) -> List[Tuple[UnitKind, str]]:
    """(kind, unit id) for every unit whose counters this session touches."""
    ref = assigned_unit_ref(session)
    if ref is None:
        return []
    return [(ref.kind, unit_id) for unit_id in ref.ids]


class AssignmentService:
    """
    Assigns participants to allocation units under per-group quotas.

    Capacity is reserved when a unit is assigned and turned into a completed
    count when the session completes; the expiry sweep hands reservations of
    abandoned sessions back.
    """

    def __init__(
        self,
        db: Session,
        rng: Optional[random.Random] = None,
        max_rounds: Optional[int] = None,
        cas_attempts: Optional[int] = None,
    ):
        self.db = db
        self.rng = rng or random.SystemRandom()
        self.max_rounds = max_rounds or config_settings.assignment_max_rounds
        self.form_repo = FormRepository(db)
        self.session_repo = SessionRepository(db)
        self.allocation_repo = AllocationRepository(
            db, cas_attempts=cas_attempts or config_settings.reservation_cas_attempts
        )

    # --- Lookups ---

    def _load_session(self, form_id: str, session_token: Optional[str]) -> AnnotationSessionORM:
        token = (session_token or "").strip()
        if not token:
            raise ValidationError("Session token required")

        session = self.session_repo.get_by_token(token)
        if not session or session.form_id != form_id:
            raise SessionNotFoundError("Session not found")
        return session

    def _load_form(self, form_id: str) -> FormORM:
        form = self.form_repo.get_form(form_id)
        if not form:
            raise FormNotFoundError(f"Form {form_id} not found.")
        return form

    # --- Resumption gate ---

    def get_existing_assignment(self, session: AnnotationSessionORM) -> Optional[AssignmentResult]:
        """
        The outcome a session already has, re-read from storage, or None if
        it has not been assigned or screened out yet.
        """
        public = SessionPublic.from_orm_session(session)

        if session.status is SessionStatus.SCREENED_OUT:
            return AssignmentResult.screened_out(ScreenOutReason(session.screen_out_reason), public)

        ref = assigned_unit_ref(session)
        if ref is None:
            return None

        if ref.kind is UnitKind.INDIVIDUAL:
            articles = self.allocation_repo.get_articles_by_ids(ref.ids)
        elif ref.kind is UnitKind.JOB_SET:
            job_set = self.allocation_repo.get_job_set(ref.ids[0])
            articles = job_set.articles if job_set else []
        else:
            raise TypeError(f"Unknown unit kind: {ref.kind!r}")

        return AssignmentResult(
            assigned=True,
            already_assigned=True,
            articles=articles,
            demographic_group=session.demographic_group,
            session=public,
        )

    def _outcome_of_concurrent_request(self, session_token: str) -> AssignmentResult:
        """Another request for the same session committed first; report what it decided."""
        session = self.session_repo.get_by_token(session_token)
        existing = self.get_existing_assignment(session) if session else None
        if existing is None:
            raise SessionStateError("Session changed while it was being assigned")
        return existing

    # --- Assignment ---

    def assign(self, form_id: str, request: AssignmentRequestModel) -> AssignmentResult:
        """
        Classifies the participant and assigns a unit with open capacity.

        1. Idempotence: an existing assignment or screen-out is returned as is.
           Expired and declined sessions are refused outright.
        2. Age gate, then classification; failing either screens out.
        3. Reserve uniformly random eligible units, commit the session link.
        """
        session = self._load_session(form_id, request.session_token)
        if session.status in TERMINAL_STATUSES:
            raise SessionStateError(f"Session is {session.status.value}; start a new session")

        existing = self.get_existing_assignment(session)
        if existing:
            logger.info("assignment_resumed", session_id=session.session_id, assigned=existing.assigned)
            return existing

        if session.status not in ASSIGNABLE_STATUSES:
            raise SessionStateError(f"Session is {session.status.value} and cannot be assigned")

        form = self._load_form(form_id)
        settings = load_quota_settings(form.quota_settings)
        # Answers saved by the demographics step, overridden by this request
        answers = {**(session.demographic_answers or {}), **request.demographics}

        birth_date = answers.get(BIRTH_DATE_FIELD)
        if birth_date and is_under_age(birth_date, form.minimum_age):
            return self._screen_out(session, ScreenOutReason.UNDER_AGE, answers)

        group = classify_participant(answers, settings)
        if group is None:
            return self._screen_out(session, ScreenOutReason.NO_MATCHING_GROUP, answers)

        return self._allocate(session, form, settings, group, answers)

    def _units_needed(self, form: FormORM) -> int:
        if form.assignment_strategy is AssignmentStrategy.INDIVIDUAL:
            return form.articles_per_session
        if form.assignment_strategy is AssignmentStrategy.JOB_SET:
            return 1
        raise TypeError(f"Unknown assignment strategy: {form.assignment_strategy!r}")

    def _allocate(
        self,
        session: AnnotationSessionORM,
        form: FormORM,
        settings: QuotaSettings,
        group: str,
        answers: Dict[str, Optional[str]],
    ) -> AssignmentResult:
        needed = self._units_needed(form)
        available = 0

        for round_number in range(1, self.max_rounds + 1):
            candidates = self.allocation_repo.find_eligible_units(
                form.form_id, group, form.assignment_strategy, settings
            )
            available = len(candidates)
            if available < needed:
                break

            # Uniform order so ties near the end of fieldwork do not favour low ids
            self.rng.shuffle(candidates)
            try:
                held = self._reserve_from(candidates, needed, group, settings)
                if held is None:
                    self.db.rollback()
                    logger.info(
                        "assignment_round_lost", session_id=session.session_id,
                        group=group, round=round_number, candidates=available,
                    )
                    continue
                return self._commit(session, held, group, answers)
            except OperationalError as e:
                # Lock timeouts or deadlocks between competing writers
                self.db.rollback()
                logger.warning(
                    "assignment_round_conflict", session_id=session.session_id,
                    round=round_number, error=str(e.orig),
                )

        return self._screen_out(
            session,
            ScreenOutReason.QUOTA_FULL,
            answers,
            demographic_group=group,
            available_count=available if available < needed else 0,
            required=needed,
        )

    def _reserve_from(
        self,
        candidates: List[AllocationUnit],
        needed: int,
        group: str,
        settings: QuotaSettings,
    ) -> Optional[List[AllocationUnit]]:
        held: List[AllocationUnit] = []
        for unit in candidates:
            if self.allocation_repo.reserve(unit, group, settings):
                held.append(unit)
                if len(held) == needed:
                    return held
        return None

    def _commit(
        self,
        session: AnnotationSessionORM,
        held: List[AllocationUnit],
        group: str,
        answers: Dict[str, Optional[str]],
    ) -> AssignmentResult:
        articles = [article for unit in held for article in unit_articles(unit)]
        first = held[0]
        if isinstance(first, IndividualArticle):
            linked = self.session_repo.commit_assignment(
                session.session_id,
                UnitKind.INDIVIDUAL,
                group,
                answers,
                required_article_count=len(articles),
                article_ids=[unit.id for unit in held],
            )
        elif isinstance(first, JobSet):
            linked = self.session_repo.commit_assignment(
                session.session_id,
                UnitKind.JOB_SET,
                group,
                answers,
                required_article_count=len(articles),
                job_set_id=first.id,
            )
        else:
            raise TypeError(f"Unknown allocation unit: {first!r}")

        if not linked:
            self.db.rollback()
            logger.info("assignment_superseded", session_id=session.session_id)
            return self._outcome_of_concurrent_request(session.session_token)

        self.db.commit()
        self.db.refresh(session)
        logger.info(
            "session_assigned",
            session_id=session.session_id,
            form_id=session.form_id,
            group=group,
            units=[unit.short_id for unit in held],
        )
        return AssignmentResult(
            assigned=True,
            articles=articles,
            demographic_group=group,
            session=SessionPublic.from_orm_session(session),
        )

    def _screen_out(
        self,
        session: AnnotationSessionORM,
        reason: ScreenOutReason,
        answers: Dict[str, Optional[str]],
        demographic_group: Optional[str] = None,
        available_count: Optional[int] = None,
        required: Optional[int] = None,
    ) -> AssignmentResult:
        if not self.session_repo.mark_screened_out(
            session.session_id, reason.value, answers, demographic_group
        ):
            self.db.rollback()
            return self._outcome_of_concurrent_request(session.session_token)

        self.db.commit()
        self.db.refresh(session)
        logger.info(
            "session_screened_out",
            session_id=session.session_id,
            form_id=session.form_id,
            reason=reason.value,
            group=demographic_group,
        )
        return AssignmentResult.screened_out(
            reason,
            SessionPublic.from_orm_session(session),
            available_count=available_count,
            required=required,
        )

    # --- Annotation progress ---

    def _unit_article_ids(self, session: AnnotationSessionORM) -> List[str]:
        ref = assigned_unit_ref(session)
        if ref is None:
            return []
        if ref.kind is UnitKind.INDIVIDUAL:
            return list(ref.ids)
        if ref.kind is UnitKind.JOB_SET:
            job_set = self.allocation_repo.get_job_set(ref.ids[0])
            return [article.id for article in job_set.articles] if job_set else []
        raise TypeError(f"Unknown unit kind: {ref.kind!r}")

    def record_annotation(
        self, form_id: str, request: AnnotationProgressModel
    ) -> AnnotationProgressResponseModel:
        """
        Records that one article of the session's unit was annotated and
        keeps the session from going idle. Repeating an article counts once.
        """
        if not request.article_id:
            raise ValidationError("Article id required")

        for _ in range(self.max_rounds):
            session = self._load_session(form_id, request.session_token)
            if session.status is not SessionStatus.ANNOTATING:
                raise SessionStateError(f"Session is {session.status.value}, not annotating")
            if request.article_id not in self._unit_article_ids(session):
                raise ValidationError("Article is not assigned to this session")

            annotated = list(session.annotated_article_ids or [])
            already = request.article_id in annotated
            if not already:
                annotated.append(request.article_id)

            if self.session_repo.record_annotation(session.session_id, annotated, session.articles_completed):
                self.db.commit()
                self.db.refresh(session)
                logger.info(
                    "article_annotated", session_id=session.session_id,
                    article_id=request.article_id, completed=session.articles_completed,
                )
                return AnnotationProgressResponseModel(
                    success=True,
                    already_annotated=already,
                    articles_completed=session.articles_completed,
                    required_article_count=session.required_article_count,
                    session=SessionPublic.from_orm_session(session),
                )
            self.db.rollback()

        raise ConcurrencyConflictError("Annotation progress changed too often; try again")

    # --- Completion ---

    def complete_session(self, form_id: str, session_token: Optional[str]) -> SessionCompletionModel:
        """
        Marks a session completed and turns its reservation into completed
        counts on the units it holds, in one transaction. A transaction lost
        to competing writers is retried once.
        """
        try:
            return self._complete_once(form_id, session_token)
        except (ConcurrencyConflictError, OperationalError) as e:
            self.db.rollback()
            logger.warning("completion_retried", form_id=form_id, error=str(e))
        try:
            return self._complete_once(form_id, session_token)
        except (ConcurrencyConflictError, OperationalError):
            self.db.rollback()
            raise

    def _complete_once(self, form_id: str, session_token: Optional[str]) -> SessionCompletionModel:
        session = self._load_session(form_id, session_token)
        form = self._load_form(form_id)

        if session.status is SessionStatus.COMPLETED:
            return self._already_completed(session)
        if session.status is not SessionStatus.ANNOTATING:
            raise SessionStateError(f"Session is {session.status.value}, not annotating")
        if not session.demographic_group:
            raise SessionStateError("Session has no demographic group assigned")
        if session.articles_completed < session.required_article_count:
            raise ValidationError(
                f"Annotate all articles first: {session.articles_completed} "
                f"of {session.required_article_count} done"
            )

        settings = load_quota_settings(form.quota_settings)
        group = session.demographic_group
        for kind, unit_id in held_units(session):
            if not self.allocation_repo.complete_reservation(kind, unit_id, group, settings):
                logger.warning("completion_unit_missing", session_id=session.session_id, unit_id=unit_id)

        if not self.session_repo.mark_completed(session.session_id):
            self.db.rollback()
            session = self.session_repo.get_by_token(session.session_token)
            if session.status is SessionStatus.COMPLETED:
                return self._already_completed(session)
            raise SessionStateError(f"Session is {session.status.value}, not annotating")

        self.db.commit()
        self.db.refresh(session)
        logger.info("session_completed", session_id=session.session_id, form_id=form_id, group=group)
        return SessionCompletionModel(
            success=True,
            articles_completed=session.articles_completed,
            demographic_group=group,
        )

    def _already_completed(self, session: AnnotationSessionORM) -> SessionCompletionModel:
        return SessionCompletionModel(
            success=True,
            already_completed=True,
            articles_completed=session.articles_completed,
            demographic_group=session.demographic_group,
        )

    # --- Expiry ---

    def expire_stale_sessions(self, form_id: str, now: Optional[datetime] = None) -> ExpirySweepModel:
        """
        Expires annotating sessions idle for longer than the form's timeout
        and releases the slots they held. Each session is its own transaction.
        """
        form = self._load_form(form_id)
        cutoff = (now or datetime.utcnow()) - timedelta(minutes=form.session_timeout_mins)

        expired = 0
        released: Dict[str, int] = defaultdict(int)
        for session in self.session_repo.find_stale(form_id, cutoff):
            group = session.demographic_group
            units = held_units(session)
            try:
                ref = assigned_unit_ref(session)
                released_ref = ref.model_dump(mode="json") if ref else None
                if not self.session_repo.mark_expired(session.session_id, cutoff, released_ref):
                    self.db.rollback()
                    continue
                if group:
                    for kind, unit_id in units:
                        if self.allocation_repo.release_reservation(kind, unit_id, group):
                            released[group] += 1
                self.db.commit()
                expired += 1
            except (ConcurrencyConflictError, OperationalError) as e:
                self.db.rollback()
                logger.warning("session_expiry_skipped", session_id=session.session_id, error=str(e))

        logger.info("stale_sessions_expired", form_id=form_id, expired=expired, released=dict(released))
        return ExpirySweepModel(expired=expired, released_reservations=dict(released))
