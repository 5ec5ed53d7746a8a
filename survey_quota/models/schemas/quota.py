from typing import Dict, List
from pydantic import Field, field_validator, model_validator

from survey_quota.models.schemas.base import CamelModel

QUOTA_SETTINGS_SCHEMA_VERSION = 1


def normalize_for_comparison(value: str) -> str:
    """Lowercase and trim a demographic value before comparing it."""
    return value.strip().lower()


class GroupConfig(CamelModel):
    """Raw field values that map to one demographic group, plus its per-unit target."""

    values: List[str] = Field(..., min_length=1)
    target: int = Field(
        ...,
        ge=0,
        description="Maximum participants of this group allowed per allocation unit.",
    )

    @field_validator("values")
    @classmethod
    def normalize_values(cls, values: List[str]) -> List[str]:
        normalized = [normalize_for_comparison(v) for v in values]
        if any(not v for v in normalized):
            raise ValueError("Group values must not be blank")
        return normalized


class QuotaSettings(CamelModel):
    """
    Declarative quota configuration for a form.

    Groups are checked in insertion order when classifying; values are
    normalized on the way in and must not overlap between groups.
    """

    schema_version: int = Field(QUOTA_SETTINGS_SCHEMA_VERSION, ge=1)
    group_by_field: str = Field(
        ..., min_length=1, description="Demographic field used to classify, e.g. 'ethnicity'."
    )
    groups: Dict[str, GroupConfig] = Field(..., min_length=1)

    @field_validator("group_by_field")
    @classmethod
    def strip_field_name(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("groupByField is required")
        return value

    @model_validator(mode="after")
    def check_groups_disjoint(self) -> "QuotaSettings":
        owner: Dict[str, str] = {}
        for group_name, config in self.groups.items():
            for value in config.values:
                other = owner.setdefault(value, group_name)
                if other != group_name:
                    raise ValueError(
                        f"Value '{value}' is listed in both group '{other}' and group '{group_name}'"
                    )
        return self

    def target_for(self, group_name: str) -> int:
        """Quota target for a group; unknown groups have no capacity."""
        config = self.groups.get(group_name)
        return config.target if config else 0


DEFAULT_QUOTA_SETTINGS = QuotaSettings(
    group_by_field="ethnicity",
    groups={
        "dutch": GroupConfig(values=["nederlands", "duits", "pools"], target=2),
        "minority": GroupConfig(
            values=[
                "surinaams",
                "turks",
                "marokkaans",
                "antilliaans/arubaans",
                "indonesisch",
                "anders",
            ],
            target=4,
        ),
    },
)
