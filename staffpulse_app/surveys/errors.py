"""Error taxonomy for the survey workflow.

Services raise these; the API exception handler renders them as
``{"code": ..., "detail": ..., "errors": [...]}`` with the class status code.
Authorization failures use ``django.core.exceptions.PermissionDenied``.
"""

from __future__ import annotations

from typing import Any


class SurveyWorkflowError(Exception):
    status_code = 400
    default_code = "error"

    def __init__(
        self,
        code: str | None = None,
        detail: str | None = None,
        *,
        errors: list[dict[str, Any]] | dict[str, Any] | None = None,
        **details: Any,
    ):
        self.code = code or self.default_code
        self.detail = detail or self.code.replace("_", " ").capitalize()
        self.errors = errors or []
        self.details = details
        super().__init__(self.detail)

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"code": self.code, "detail": self.detail}
        if self.errors:
            data["errors"] = self.errors
        data.update(self.details)
        return data


class InvalidInput(SurveyWorkflowError):
    """Malformed or missing input, rejected before any write."""

    status_code = 400
    default_code = "invalid_input"


class NotFound(SurveyWorkflowError):
    status_code = 404
    default_code = "not_found"


class StateConflict(SurveyWorkflowError):
    """The entity is not in a state that allows the action."""

    status_code = 409
    default_code = "state_conflict"


class IntegrityFailure(SurveyWorkflowError):
    """An answer does not match the question or survey it claims."""

    status_code = 400
    default_code = "integrity_error"
