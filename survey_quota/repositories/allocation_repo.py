# repositories/allocation_repo.py
import uuid
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from survey_quota.core.exceptions import ConcurrencyConflictError
from survey_quota.models.orm.allocation import ArticleORM, JobSetORM
from survey_quota.models.orm.form import AssignmentStrategy
from survey_quota.models.orm.session import UnitKind
from survey_quota.models.schemas.assignment import (
    AllocationUnit,
    ArticlePublic,
    IndividualArticle,
    JobSet,
)
from survey_quota.models.schemas.quota import QuotaSettings
from survey_quota.services.quota import has_quota_space, parse_quota_counts

logger = structlog.get_logger()

# (quota_counts, reserved_counts) -> new pair, or None to give up
CounterChange = Callable[
    [Dict[str, int], Dict[str, int]], Optional[Tuple[Dict[str, int], Dict[str, int]]]
]


def _article_to_unit(article: ArticleORM) -> IndividualArticle:
    return IndividualArticle(
        id=article.article_id,
        short_id=article.short_id,
        text=article.text,
        quota_counts=parse_quota_counts(article.quota_counts),
        reserved_counts=parse_quota_counts(article.reserved_counts),
        version=article.version,
    )


def _job_set_to_unit(job_set: JobSetORM) -> JobSet:
    return JobSet(
        id=job_set.job_set_id,
        short_id=job_set.short_id,
        articles=[
            ArticlePublic(id=a.article_id, short_id=a.short_id, text=a.text)
            for a in job_set.articles
        ],
        quota_counts=parse_quota_counts(job_set.quota_counts),
        reserved_counts=parse_quota_counts(job_set.reserved_counts),
        version=job_set.version,
    )


def _table_for(kind: UnitKind):
    if kind is UnitKind.INDIVIDUAL:
        return ArticleORM, ArticleORM.article_id
    if kind is UnitKind.JOB_SET:
        return JobSetORM, JobSetORM.job_set_id
    raise TypeError(f"Unknown unit kind: {kind!r}")


def unit_kind(unit: AllocationUnit) -> UnitKind:
    if isinstance(unit, IndividualArticle):
        return UnitKind.INDIVIDUAL
    if isinstance(unit, JobSet):
        return UnitKind.JOB_SET
    raise TypeError(f"Unknown allocation unit: {unit!r}")


class AllocationRepository:
    """
    The pool of assignable units for a form and their per-group counters.

    Counter writes never commit; the caller owns the transaction so that a
    reservation and the session that holds it land together.
    """

    def __init__(self, db: Session, cas_attempts: int = 5):
        self.db = db
        self.cas_attempts = cas_attempts

    # --- Reads ---

    def get_units(self, form_id: str, strategy: AssignmentStrategy) -> List[AllocationUnit]:
        """All units of a form for the given strategy, ordered by short id."""
        if strategy is AssignmentStrategy.INDIVIDUAL:
            stmt = (
                select(ArticleORM)
                .where(ArticleORM.form_id == form_id, ArticleORM.job_set_id.is_(None))
                .order_by(ArticleORM.short_id)
                .execution_options(populate_existing=True)
            )
            return [_article_to_unit(a) for a in self.db.scalars(stmt).all()]

        if strategy is AssignmentStrategy.JOB_SET:
            stmt = (
                select(JobSetORM)
                .where(JobSetORM.form_id == form_id)
                .options(selectinload(JobSetORM.articles))
                .order_by(JobSetORM.short_id)
                .execution_options(populate_existing=True)
            )
            return [_job_set_to_unit(js) for js in self.db.scalars(stmt).all()]

        raise TypeError(f"Unknown assignment strategy: {strategy!r}")

    def find_eligible_units(
        self,
        form_id: str,
        group_name: str,
        strategy: AssignmentStrategy,
        settings: QuotaSettings,
    ) -> List[AllocationUnit]:
        """
        Units with capacity left for group_name, judged on each unit's own
        counters. The result is advisory; reserve() re-checks atomically.
        """
        return [
            unit
            for unit in self.get_units(form_id, strategy)
            if has_quota_space(unit.quota_counts, group_name, settings, unit.reserved_counts)
        ]

    def get_articles_by_ids(self, article_ids: Sequence[str]) -> List[ArticlePublic]:
        """Articles by id, in the order the ids were given."""
        if not article_ids:
            return []
        stmt = select(ArticleORM).where(ArticleORM.article_id.in_(list(article_ids)))
        by_id = {a.article_id: a for a in self.db.scalars(stmt).all()}
        return [
            ArticlePublic(id=by_id[i].article_id, short_id=by_id[i].short_id, text=by_id[i].text)
            for i in article_ids
            if i in by_id
        ]

    def get_job_set(self, job_set_id: str) -> Optional[JobSet]:
        stmt = (
            select(JobSetORM)
            .where(JobSetORM.job_set_id == job_set_id)
            .options(selectinload(JobSetORM.articles))
        )
        job_set = self.db.scalars(stmt).one_or_none()
        return _job_set_to_unit(job_set) if job_set else None

    # --- Counter writes (compare-and-swap on version) ---

    def _read_counters(self, kind: UnitKind, unit_id: str):
        model, pk = _table_for(kind)
        row = self.db.execute(
            select(model.quota_counts, model.reserved_counts, model.version).where(pk == unit_id)
        ).one_or_none()
        if row is None:
            return None
        return parse_quota_counts(row.quota_counts), parse_quota_counts(row.reserved_counts), row.version

    def _swap(self, kind: UnitKind, unit_id: str, expected_version: int, quota, reserved) -> bool:
        model, pk = _table_for(kind)
        stmt = (
            update(model)
            .where(pk == unit_id, model.version == expected_version)
            .values(quota_counts=quota, reserved_counts=reserved, version=expected_version + 1)
            .execution_options(synchronize_session=False)
        )
        return self.db.execute(stmt).rowcount == 1

    def _apply(
        self,
        kind: UnitKind,
        unit_id: str,
        change: CounterChange,
        known: Optional[Tuple[Dict[str, int], Dict[str, int], int]] = None,
    ) -> bool:
        """
        Read-modify-write of one unit's counters that only lands if nobody
        wrote the unit in between. Lost races re-read and retry.

        Returns False when the unit is gone or change() declines; raises
        ConcurrencyConflictError when every attempt lost its race.
        """
        state = known
        for attempt in range(self.cas_attempts):
            if state is None:
                state = self._read_counters(kind, unit_id)
                if state is None:
                    return False
            quota, reserved, version = state
            changed = change(dict(quota), dict(reserved))
            if changed is None:
                return False
            if self._swap(kind, unit_id, version, *changed):
                return True
            logger.debug("unit_cas_conflict", unit_id=unit_id, kind=kind.value, attempt=attempt + 1)
            state = None
        raise ConcurrencyConflictError(
            f"Counters of {kind.value} {unit_id} changed on every one of {self.cas_attempts} attempts"
        )

    def reserve(self, unit: AllocationUnit, group_name: str, settings: QuotaSettings) -> bool:
        """Hold one slot on unit for group_name, if the group still has room."""

        def take_slot(quota, reserved):
            if not has_quota_space(quota, group_name, settings, reserved):
                return None
            reserved[group_name] = reserved.get(group_name, 0) + 1
            return quota, reserved

        try:
            return self._apply(
                unit_kind(unit),
                unit.id,
                take_slot,
                known=(unit.quota_counts, unit.reserved_counts, unit.version),
            )
        except ConcurrencyConflictError:
            logger.info("unit_reservation_gave_up", unit_id=unit.id, group=group_name)
            return False

    def complete_reservation(
        self, kind: UnitKind, unit_id: str, group_name: str, settings: QuotaSettings
    ) -> bool:
        """
        Turns a held slot into a completed count. If the target was lowered
        after the slot was taken, the slot is released without counting.
        """

        def convert(quota, reserved):
            reserved[group_name] = max(reserved.get(group_name, 0) - 1, 0)
            completed = quota.get(group_name, 0) + 1
            if completed > settings.target_for(group_name):
                logger.warning(
                    "completion_over_target", unit_id=unit_id, group=group_name,
                    target=settings.target_for(group_name),
                )
                return quota, reserved
            quota[group_name] = completed
            return quota, reserved

        return self._apply(kind, unit_id, convert)

    def release_reservation(self, kind: UnitKind, unit_id: str, group_name: str) -> bool:
        """Gives a held slot back to the pool."""

        def release(quota, reserved):
            if reserved.get(group_name, 0) <= 0:
                return None
            reserved[group_name] -= 1
            return quota, reserved

        return self._apply(kind, unit_id, release)

    # --- Import ---

    def existing_short_ids(self, form_id: str) -> set[str]:
        stmt = select(ArticleORM.short_id).where(ArticleORM.form_id == form_id)
        return set(self.db.scalars(stmt).all())

    def delete_units_for_form(self, form_id: str) -> int:
        """Removes every article and job-set of a form. Does not commit."""
        try:
            deleted = self.db.execute(
                delete(ArticleORM).where(ArticleORM.form_id == form_id)
            ).rowcount
            self.db.execute(delete(JobSetORM).where(JobSetORM.form_id == form_id))
        except IntegrityError as e:
            raise ValueError(f"Units are still referenced by sessions: {e}")
        return deleted

    def create_units(
        self,
        form_id: str,
        records: Sequence[Tuple[str, str]],
        job_set_size: Optional[int] = None,
    ) -> Tuple[int, int]:
        """
        Bulk inserts (short_id, text) records. With job_set_size, consecutive
        chunks become job-sets. Does not commit.

        Returns (articles created, job-sets created).
        """
        job_sets_created = 0
        existing_job_sets = 0
        if job_set_size:
            existing_job_sets = len(
                self.db.scalars(select(JobSetORM.job_set_id).where(JobSetORM.form_id == form_id)).all()
            )

        for position, (short_id, text) in enumerate(records):
            job_set_id = None
            if job_set_size:
                if position % job_set_size == 0:
                    job_sets_created += 1
                    current_job_set = JobSetORM(
                        job_set_id=str(uuid.uuid4()),
                        form_id=form_id,
                        short_id=f"jobset-{existing_job_sets + job_sets_created}",
                        quota_counts={},
                        reserved_counts={},
                    )
                    self.db.add(current_job_set)
                job_set_id = current_job_set.job_set_id

            self.db.add(
                ArticleORM(
                    article_id=str(uuid.uuid4()),
                    form_id=form_id,
                    short_id=short_id,
                    text=text,
                    job_set_id=job_set_id,
                    position=position,
                    quota_counts={},
                    reserved_counts={},
                )
            )

        try:
            self.db.flush()
        except IntegrityError as e:
            raise ValueError(f"Database integrity error (e.g., duplicate short id): {e}")

        return len(records), job_sets_created
