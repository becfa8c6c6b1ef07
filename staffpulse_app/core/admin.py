from django.contrib import admin

from .models import Department, EmployeeProfile


@admin.register(Department)
class DepartmentAdmin(admin.ModelAdmin):
    list_display = ("code", "name", "parent", "is_active", "created_at")
    list_filter = ("is_active",)
    search_fields = ("code", "name")
    readonly_fields = ("created_at",)


@admin.register(EmployeeProfile)
class EmployeeProfileAdmin(admin.ModelAdmin):
    """Role, department and reporting line for each user."""

    list_display = ("user", "role", "department", "manager", "employee_id")
    list_filter = ("role", "department")
    search_fields = ("user__username", "user__email", "employee_id", "position")
    raw_id_fields = ("user", "manager")
