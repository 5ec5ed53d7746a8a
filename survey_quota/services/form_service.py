# services/form_service.py
from typing import Dict, List, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from survey_quota.core.exceptions import FormNotFoundError, ValidationError
from survey_quota.models.orm.form import AssignmentStrategy, FormORM
from survey_quota.models.orm.session import SessionStatus
from survey_quota.models.schemas.form import (
    ArticleImportModel,
    ArticleImportResultModel,
    ArticleRecord,
    FormCreateModel,
    FormResponseModel,
    GroupQuotaStatus,
    GroupSessionStats,
    QuotaStatusModel,
    SessionStats,
)
from survey_quota.repositories.allocation_repo import AllocationRepository
from survey_quota.repositories.form_repo import FormRepository
from survey_quota.repositories.session_repo import SessionRepository
from survey_quota.services.quota import load_quota_settings, validate_quota_settings

logger = structlog.get_logger()


def _percent(part: int, whole: int) -> int:
    return round(part * 100 / whole) if whole > 0 else 0


def dedupe_records(records: List[ArticleRecord]) -> Tuple[List[Tuple[str, str]], int]:
    """
    Drops repeated (short_id, text) pairs, keeping first-seen order.

    Returns the remaining (short_id, text) pairs and how many were dropped.
    """
    seen: Dict[str, str] = {}
    unique: List[Tuple[str, str]] = []
    skipped = 0
    for record in records:
        short_id = record.short_id.strip()
        text = record.text.strip()
        if not short_id:
            raise ValidationError("Every article needs a short id")
        if not text:
            raise ValidationError(f"Article '{short_id}' has no text")
        if short_id in seen:
            if seen[short_id] != text:
                raise ValidationError(f"Short id '{short_id}' is used for two different texts")
            skipped += 1
            continue
        seen[short_id] = text
        unique.append((short_id, text))
    return unique, skipped


class FormService:
    def __init__(self, db: Session):
        self.db = db
        self.form_repo = FormRepository(db)
        self.allocation_repo = AllocationRepository(db)
        self.session_repo = SessionRepository(db)

    def _get_form(self, form_id: str) -> FormORM:
        form = self.form_repo.get_form(form_id)
        if not form:
            raise FormNotFoundError(f"Form {form_id} not found.")
        return form

    def _to_response(self, form: FormORM) -> FormResponseModel:
        return FormResponseModel(
            form_id=form.form_id,
            title=form.title,
            description=form.description,
            assignment_strategy=form.assignment_strategy,
            articles_per_session=form.articles_per_session,
            session_timeout_mins=form.session_timeout_mins,
            minimum_age=form.minimum_age,
            quota_settings=load_quota_settings(form.quota_settings),
            created_at=form.created_at,
        )

    def create_form(self, form_data: FormCreateModel) -> FormResponseModel:
        """Stores a form; its quota settings were validated when the body was parsed."""
        try:
            form = self.form_repo.create_form(form_data)
        except ValueError as e:
            raise ValidationError(str(e))

        logger.info("form_created", form_id=form.form_id, strategy=form.assignment_strategy.value)
        return self._to_response(form)

    def get_form(self, form_id: str) -> FormResponseModel:
        return self._to_response(self._get_form(form_id))

    def update_quota_settings(self, form_id: str, payload: dict) -> FormResponseModel:
        """Replaces a form's quota settings after validating them, overlaps included."""
        form = self._get_form(form_id)
        settings = validate_quota_settings(payload)

        form.quota_settings = settings.model_dump(by_alias=True)
        self.db.commit()
        self.db.refresh(form)

        logger.info("quota_settings_updated", form_id=form_id, groups=list(settings.groups))
        return self._to_response(form)

    def import_articles(self, form_id: str, import_data: ArticleImportModel) -> ArticleImportResultModel:
        """
        Bulk-creates allocation units from parsed records.

        JOB_SET forms group consecutive articles into job-sets of
        articles_per_session; the last job-set may be smaller.
        """
        form = self._get_form(form_id)
        records, skipped = dedupe_records(import_data.articles)

        try:
            deleted = 0
            if import_data.replace_existing:
                holding = self.session_repo.count_holding_units(form_id)
                if holding:
                    raise ValidationError(
                        f"{holding} sessions are still annotating these articles; "
                        "expire or complete them before replacing"
                    )
                deleted = self.allocation_repo.delete_units_for_form(form_id)
            else:
                clashes = sorted(
                    self.allocation_repo.existing_short_ids(form_id) & {s for s, _ in records}
                )
                if clashes:
                    raise ValidationError(
                        f"Articles already exist for short ids: {', '.join(clashes[:5])}"
                    )

            job_set_size = (
                form.articles_per_session
                if form.assignment_strategy is AssignmentStrategy.JOB_SET
                else None
            )
            imported, job_sets = self.allocation_repo.create_units(form_id, records, job_set_size)
            self.db.commit()

        except ValueError as e:
            self.db.rollback()
            raise ValidationError(str(e))
        except (ValidationError, SQLAlchemyError):
            self.db.rollback()
            raise

        logger.info(
            "articles_imported", form_id=form_id, imported=imported,
            job_sets=job_sets, skipped=skipped, deleted=deleted,
        )
        return ArticleImportResultModel(
            imported=imported,
            job_sets_created=job_sets,
            duplicates_skipped=skipped,
            deleted=deleted,
        )

    def get_quota_status(self, form_id: str) -> QuotaStatusModel:
        """
        Progress per demographic group.

        - unitsAtTarget: units whose completed count reached the group target
        - completed / reserved: counters summed over the form's units
        - sessions: counts by status and by group
        """
        form = self._get_form(form_id)
        settings = load_quota_settings(form.quota_settings)
        units = self.allocation_repo.get_units(form_id, form.assignment_strategy)
        total_units = len(units)

        groups: Dict[str, GroupQuotaStatus] = {}
        for group_name, config in settings.groups.items():
            completed = sum(u.quota_counts.get(group_name, 0) for u in units)
            reserved = sum(u.reserved_counts.get(group_name, 0) for u in units)
            at_target = sum(1 for u in units if u.quota_counts.get(group_name, 0) >= config.target)
            groups[group_name] = GroupQuotaStatus(
                target=config.target,
                units_at_target=at_target,
                completed=completed,
                reserved=reserved,
                progress_percent=_percent(at_target, total_units),
            )

        fully_complete = sum(
            1
            for u in units
            if all(u.quota_counts.get(g, 0) >= c.target for g, c in settings.groups.items())
        )

        sessions = SessionStats(
            by_group={group_name: GroupSessionStats() for group_name in settings.groups}
        )
        for status, by_group in self.session_repo.count_by_status_and_group(form_id).items():
            for group_name, count in by_group.items():
                sessions.total += count
                sessions.by_status[status] = sessions.by_status.get(status, 0) + count
                if group_name in sessions.by_group:
                    sessions.by_group[group_name].total += count
                    if status == SessionStatus.COMPLETED.value:
                        sessions.by_group[group_name].completed += count

        total_target = total_units * sum(c.target for c in settings.groups.values())
        total_completed = sum(g.completed for g in groups.values())

        # Each INDIVIDUAL participant uses articles_per_session slots
        per_participant = (
            form.articles_per_session
            if form.assignment_strategy is AssignmentStrategy.INDIVIDUAL
            else 1
        )
        estimated = {
            group_name: total_units * config.target // per_participant
            for group_name, config in settings.groups.items()
        }
        estimated["total"] = sum(estimated.values())

        return QuotaStatusModel(
            form_id=form.form_id,
            title=form.title,
            assignment_strategy=form.assignment_strategy,
            group_by_field=settings.group_by_field,
            total_units=total_units,
            fully_complete_units=fully_complete,
            groups=groups,
            sessions=sessions,
            overall_progress=_percent(total_completed, total_target),
            estimated_participants=estimated,
        )
