from __future__ import annotations

from django.core.exceptions import PermissionDenied

from staffpulse_app.core.models import EmployeeProfile, role_of

from .models import Survey


def is_survey_admin(user) -> bool:
    return role_of(user) == EmployeeProfile.Role.ADMIN


def is_manager(user) -> bool:
    return role_of(user) == EmployeeProfile.Role.MANAGER


def can_view_survey(user, survey: Survey) -> bool:
    # Admins, the creator, and the employees the survey targets
    if not user.is_authenticated:
        return False
    if is_survey_admin(user) or survey.created_by_id == user.id:
        return True
    if survey.consent_records.filter(user=user).exists():
        return True
    return survey.target_employees.filter(pk=user.pk).exists()


def can_manage_survey(user, survey: Survey) -> bool:
    if not user.is_authenticated:
        return False
    return is_survey_admin(user) or survey.created_by_id == user.id


def can_view_user_responses(user, survey: Survey, subject) -> bool:
    """A participant may read their own answers; managers of the survey any."""
    if not user.is_authenticated:
        return False
    if can_manage_survey(user, survey):
        return True
    return user.pk == getattr(subject, "pk", subject)


def require_admin(user) -> None:
    if not is_survey_admin(user):
        raise PermissionDenied("Only administrators can perform this action.")


def require_can_view(user, survey: Survey) -> None:
    if not can_view_survey(user, survey):
        raise PermissionDenied("You do not have permission to view this survey.")


def require_can_manage(user, survey: Survey) -> None:
    if not can_manage_survey(user, survey):
        raise PermissionDenied("You do not have permission to manage this survey.")
