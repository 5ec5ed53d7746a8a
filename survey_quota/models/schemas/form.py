from datetime import datetime
from typing import Dict, List, Optional
from pydantic import Field

from survey_quota.core.settings import config_settings
from survey_quota.models.orm.form import AssignmentStrategy
from survey_quota.models.schemas.base import CamelModel
from survey_quota.models.schemas.quota import QuotaSettings


class FormCreateModel(CamelModel):
    """Assignment-relevant settings of a new form."""

    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    assignment_strategy: AssignmentStrategy = AssignmentStrategy.INDIVIDUAL
    articles_per_session: int = Field(
        config_settings.default_articles_per_session,
        ge=1,
        description="Articles per participant; the job-set size under JOB_SET.",
    )
    session_timeout_mins: int = Field(config_settings.default_session_timeout_mins, ge=1)
    minimum_age: int = Field(config_settings.default_minimum_age, ge=0)
    # Omitted means the default settings apply
    quota_settings: Optional[QuotaSettings] = None


class FormResponseModel(CamelModel):
    form_id: str
    title: str
    description: Optional[str] = None
    assignment_strategy: AssignmentStrategy
    articles_per_session: int
    session_timeout_mins: int
    minimum_age: int
    quota_settings: QuotaSettings
    created_at: datetime


# --- Article import ---


class ArticleRecord(CamelModel):
    """One parsed row from an upload: the text and its external short id."""

    short_id: str = Field(..., min_length=1)
    text: str


class ArticleImportModel(CamelModel):
    articles: List[ArticleRecord] = Field(..., min_length=1)
    replace_existing: bool = False


class ArticleImportResultModel(CamelModel):
    success: bool = True
    imported: int
    job_sets_created: int = 0
    duplicates_skipped: int = 0
    deleted: int = 0


# --- Quota status ---


class GroupQuotaStatus(CamelModel):
    target: int
    units_at_target: int = Field(..., description="Units whose completed count reached the target.")
    completed: int = Field(..., description="Completed sessions summed over all units.")
    reserved: int = Field(..., description="Slots currently held by annotating sessions.")
    progress_percent: int


class GroupSessionStats(CamelModel):
    total: int = 0
    completed: int = 0


class SessionStats(CamelModel):
    total: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)
    by_group: Dict[str, GroupSessionStats] = Field(default_factory=dict)


class QuotaStatusModel(CamelModel):
    form_id: str
    title: str
    assignment_strategy: AssignmentStrategy
    group_by_field: str
    total_units: int
    fully_complete_units: int
    groups: Dict[str, GroupQuotaStatus]
    sessions: SessionStats
    overall_progress: int
    estimated_participants: Dict[str, int]
