"""
Quota rules shared by the assignment, completion and reporting paths.

Everything here is pure: no database access, no clock unless one is passed.
"""
import json
import re
from datetime import date
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError as PydanticValidationError

from survey_quota.core.exceptions import (
    InvalidBirthDateError,
    QuotaConfigurationError,
    QuotaSettingsInvalidError,
)
from survey_quota.models.schemas.quota import (
    DEFAULT_QUOTA_SETTINGS,
    QuotaSettings,
    normalize_for_comparison,
)

# "MM-YYYY" as collected by the form UI's month/year picker
_MONTH_YEAR = re.compile(r"^(\d{1,2})-(\d{4})$")
# Day of month assumed when only month and year are known
_MONTH_YEAR_REFERENCE_DAY = 15


def classify_participant(
    answers: Mapping[str, Optional[str]], settings: QuotaSettings
) -> Optional[str]:
    """
    Maps raw demographic answers to a group name, or None.

    The value of settings.group_by_field is normalized and checked against
    each group's values in insertion order; the first match wins.
    """
    raw_value = answers.get(settings.group_by_field)
    if not isinstance(raw_value, str):
        return None

    value = normalize_for_comparison(raw_value)
    if not value:
        return None

    for group_name, config in settings.groups.items():
        if value in config.values:
            return group_name
    return None


def parse_quota_counts(raw: Any) -> Dict[str, int]:
    """Decodes a stored counter map. Unreadable data counts as empty."""
    if not raw:
        return {}
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            return {}
    if not isinstance(raw, dict):
        return {}
    return {str(k): int(v) for k, v in raw.items() if isinstance(v, (int, float))}


def has_quota_space(
    quota_counts: Mapping[str, int],
    group_name: str,
    settings: QuotaSettings,
    reserved_counts: Optional[Mapping[str, int]] = None,
) -> bool:
    """True while completed plus held slots for the group stay below its target."""
    used = quota_counts.get(group_name, 0)
    if reserved_counts:
        used += reserved_counts.get(group_name, 0)
    return used < settings.target_for(group_name)


def calculate_age(birth_date: date, today: date) -> int:
    """Whole years between birth_date and today, by calendar year/month/day."""
    age = today.year - birth_date.year
    if (today.month, today.day) < (birth_date.month, birth_date.day):
        age -= 1
    return age


def parse_birth_date(raw: str) -> date:
    """
    Accepts ISO "YYYY-MM-DD" or month-year "MM-YYYY".

    Raises InvalidBirthDateError for anything else.
    """
    value = raw.strip()
    match = _MONTH_YEAR.match(value)
    try:
        if match:
            month, year = int(match.group(1)), int(match.group(2))
            return date(year, month, _MONTH_YEAR_REFERENCE_DAY)
        return date.fromisoformat(value)
    except ValueError:
        raise InvalidBirthDateError(f"Unrecognised birth date: '{raw}'")


def is_under_age(
    birth_date: str, minimum_age: int = 18, today: Optional[date] = None
) -> bool:
    today = today or date.today()
    born = parse_birth_date(birth_date)
    if born > today:
        raise InvalidBirthDateError(f"Birth date lies in the future: '{birth_date}'")
    return calculate_age(born, today) < minimum_age


def validate_quota_settings(payload: Any) -> QuotaSettings:
    """Validates settings submitted by a form editor."""
    try:
        return QuotaSettings.model_validate(payload)
    except PydanticValidationError as e:
        raise QuotaSettingsInvalidError(_first_error(e))


def load_quota_settings(raw: Any) -> QuotaSettings:
    """
    Reads a form's stored settings blob.

    An empty blob means the defaults. A blob that no longer validates is a
    configuration fault, not something to paper over with defaults.
    """
    if raw is None or raw == "" or raw == {}:
        return DEFAULT_QUOTA_SETTINGS
    try:
        if isinstance(raw, str):
            return QuotaSettings.model_validate_json(raw)
        return QuotaSettings.model_validate(raw)
    except PydanticValidationError as e:
        raise QuotaConfigurationError(f"Stored quota settings are invalid: {_first_error(e)}")


def _first_error(error: PydanticValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first['msg']}" if location else first["msg"]
