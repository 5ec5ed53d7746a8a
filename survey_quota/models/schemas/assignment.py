import enum
from typing import Annotated, Dict, List, Literal, Optional, Union
from pydantic import Field

from survey_quota.models.schemas.base import CamelModel
from survey_quota.models.schemas.session import SessionPublic


class ScreenOutReason(str, enum.Enum):
    UNDER_AGE = "under_age"
    NO_MATCHING_GROUP = "no_matching_group"
    QUOTA_FULL = "quota_full"


SCREEN_OUT_MESSAGES = {
    ScreenOutReason.UNDER_AGE: "Participant does not meet the minimum age",
    ScreenOutReason.NO_MATCHING_GROUP: "Participant does not match any demographic group",
    ScreenOutReason.QUOTA_FULL: "Not enough articles available for this demographic group",
}


class ArticlePublic(CamelModel):
    """What a participant sees of an article; counters are never exposed."""

    id: str
    short_id: str
    text: str


# --- Allocation units ---


class IndividualArticle(CamelModel):
    kind: Literal["individual"] = "individual"
    id: str
    short_id: str
    text: str
    quota_counts: Dict[str, int] = Field(default_factory=dict)
    reserved_counts: Dict[str, int] = Field(default_factory=dict)
    version: int = 0


class JobSet(CamelModel):
    kind: Literal["job_set"] = "job_set"
    id: str
    short_id: str
    articles: List[ArticlePublic]
    quota_counts: Dict[str, int] = Field(default_factory=dict)
    reserved_counts: Dict[str, int] = Field(default_factory=dict)
    version: int = 0


AllocationUnit = Annotated[Union[IndividualArticle, JobSet], Field(discriminator="kind")]


def unit_articles(unit: AllocationUnit) -> List[ArticlePublic]:
    """Articles a participant receives for this unit."""
    if isinstance(unit, IndividualArticle):
        return [ArticlePublic(id=unit.id, short_id=unit.short_id, text=unit.text)]
    if isinstance(unit, JobSet):
        return list(unit.articles)
    raise TypeError(f"Unknown allocation unit: {unit!r}")


# --- Assign endpoint ---


class AssignmentRequestModel(CamelModel):
    """
    Body of the assign call.

    demographics holds the raw answers keyed by field name
    (gender, ethnicity, ageRange, birthDate, ...).
    """

    session_token: Optional[str] = None
    demographics: Dict[str, Optional[str]] = Field(default_factory=dict)


class AssignmentResult(CamelModel):
    assigned: bool
    already_assigned: bool = False
    articles: Optional[List[ArticlePublic]] = None
    demographic_group: Optional[str] = None
    reason: Optional[ScreenOutReason] = None
    message: Optional[str] = None
    available_count: Optional[int] = None
    required: Optional[int] = None
    session: Optional[SessionPublic] = None

    @classmethod
    def screened_out(
        cls,
        reason: ScreenOutReason,
        session: SessionPublic,
        available_count: Optional[int] = None,
        required: Optional[int] = None,
    ) -> "AssignmentResult":
        return cls(
            assigned=False,
            reason=reason,
            message=SCREEN_OUT_MESSAGES[reason],
            demographic_group=session.demographic_group,
            available_count=available_count,
            required=required,
            session=session,
        )
