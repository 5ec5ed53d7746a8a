"""
Exception hierarchy. Each exception carries code + http_status + severity.

Screen-outs (under_age, no_matching_group, quota_full) are not exceptions;
they are negative assignment results.
"""
from __future__ import annotations


class SurveyQuotaError(Exception):
    """Base exception."""
    code: str = "UNKNOWN_ERROR"
    http_status: int = 400
    severity: str = "error"

    def __init__(self, message: str = "", code: str | None = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"errorCode": self.code, "message": self.message, "severity": self.severity}


# === Request validation ===
class ValidationError(SurveyQuotaError):
    code = "VALIDATION_ERROR"; http_status = 400; severity = "warning"

class InvalidBirthDateError(ValidationError):
    code = "INVALID_BIRTH_DATE"


# === Lookups ===
class FormNotFoundError(SurveyQuotaError):
    code = "FORM_NOT_FOUND"; http_status = 404; severity = "warning"

class SessionNotFoundError(SurveyQuotaError):
    code = "SESSION_NOT_FOUND"; http_status = 404; severity = "warning"


# === Session lifecycle ===
class SessionStateError(SurveyQuotaError):
    code = "SESSION_STATE_CONFLICT"; http_status = 409

class ConcurrencyConflictError(SurveyQuotaError):
    """A counter kept changing under us; the request may be retried."""
    code = "CONCURRENT_UPDATE"; http_status = 409; severity = "warning"


# === Quota settings ===
class QuotaSettingsInvalidError(SurveyQuotaError):
    code = "QUOTA_SETTINGS_INVALID"; http_status = 422

class QuotaConfigurationError(SurveyQuotaError):
    """A stored settings blob no longer validates."""
    code = "QUOTA_CONFIGURATION_ERROR"; http_status = 500; severity = "critical"
