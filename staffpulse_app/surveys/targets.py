from __future__ import annotations

from django.contrib.auth import get_user_model

from staffpulse_app.core.models import Department, EmployeeProfile

from .errors import InvalidInput, NotFound

User = get_user_model()

TARGET_ROLES = [EmployeeProfile.Role.EMPLOYEE, EmployeeProfile.Role.MANAGER]


def parse_user_ids(value, field: str = "target_employees") -> list[int]:
    if value in (None, ""):
        return []
    message = f"{field} must be a list of user ids."
    if not isinstance(value, list):
        raise InvalidInput("invalid_targets", message)
    ids = []
    for item in value:
        if isinstance(item, bool):
            raise InvalidInput("invalid_targets", message, errors=[{"value": item}])
        try:
            ids.append(int(item))
        except (TypeError, ValueError):
            raise InvalidInput(
                "invalid_targets", message, errors=[{"value": str(item)}]
            ) from None
    return ids


def resolve_department(value) -> Department | None:
    if value in (None, ""):
        return None
    if isinstance(value, Department):
        return value
    department = Department.objects.filter(code=str(value), is_active=True).first()
    if department is None:
        raise NotFound("department_not_found", f"Unknown department '{value}'.")
    return department


def resolve_targets(target_employees=None, department: Department | None = None):
    """Users a survey is sent to.

    An explicit employee list wins; otherwise everyone active in the
    department with an employee or manager role; otherwise the same roles
    across the whole organisation.
    """
    users = User.objects.filter(is_active=True)
    if target_employees:
        ids = [getattr(u, "pk", u) for u in target_employees]
        return list(users.filter(pk__in=ids).order_by("pk"))
    users = users.filter(profile__role__in=TARGET_ROLES)
    if department is not None:
        users = users.filter(profile__department=department)
    return list(users.order_by("pk"))


def survey_targets(survey) -> list:
    return resolve_targets(
        list(survey.target_employees.values_list("pk", flat=True)),
        survey.department,
    )


def department_members(departments) -> list:
    """Active employees and managers of any of ``departments``."""
    return list(
        User.objects.filter(
            is_active=True,
            profile__role__in=TARGET_ROLES,
            profile__department__in=departments,
        ).order_by("pk")
    )
