from __future__ import annotations

from django.contrib.auth import get_user_model
from django.db import models

User = get_user_model()


class Department(models.Model):
    """Organisational unit that surveys can target.

    ``code`` is the stable identifier used by API callers (e.g. ``ENG``).
    """

    code = models.SlugField(max_length=50, unique=True)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True)
    parent = models.ForeignKey(
        "self",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="children",
    )
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["name"]

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.name} ({self.code})"

    @classmethod
    def tree(cls) -> list[dict]:
        """Active departments nested under their parents, sorted by name.

        A department whose parent is inactive is listed as a root.
        """
        departments = list(cls.objects.filter(is_active=True).order_by("name"))
        nodes = {
            d.pk: {"id": d.pk, "code": d.code, "name": d.name, "children": []}
            for d in departments
        }
        roots = []
        for d in departments:
            parent = nodes.get(d.parent_id)
            (parent["children"] if parent else roots).append(nodes[d.pk])
        return roots


class EmployeeProfile(models.Model):
    """Organisation data attached to a Django user.

    Each user has at most one profile. Users without a profile are treated
    as plain employees with no department.
    """

    class Role(models.TextChoices):
        ADMIN = "admin", "Admin"
        MANAGER = "manager", "Manager"
        EMPLOYEE = "employee", "Employee"

    user = models.OneToOneField(
        User, on_delete=models.CASCADE, related_name="profile"
    )
    department = models.ForeignKey(
        Department,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="members",
    )
    role = models.CharField(
        max_length=20, choices=Role.choices, default=Role.EMPLOYEE
    )
    manager = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="reportee_profiles",
    )
    position = models.CharField(max_length=255, blank=True)
    employee_id = models.CharField(max_length=64, null=True, blank=True, unique=True)

    class Meta:
        indexes = [
            models.Index(
                fields=["department", "role"], name="profile_dept_role_idx"
            ),
        ]

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.user} [{self.role}]"


def role_of(user) -> str | None:
    """Return the organisation role of ``user``; superusers count as admins."""
    if not getattr(user, "is_authenticated", False):
        return None
    if user.is_superuser:
        return EmployeeProfile.Role.ADMIN
    profile = EmployeeProfile.objects.filter(user=user).only("role").first()
    if profile is None:
        return EmployeeProfile.Role.EMPLOYEE
    return profile.role
