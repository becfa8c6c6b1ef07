from django.contrib import admin

from .models import (
    AccessToken,
    Attempt,
    AuditLog,
    ConsentRecord,
    Notification,
    Question,
    Response,
    Survey,
)


class QuestionInline(admin.TabularInline):
    model = Question
    extra = 0
    fields = ("order", "text", "options", "parameter")


@admin.register(Survey)
class SurveyAdmin(admin.ModelAdmin):
    list_display = (
        "name",
        "status",
        "publish_date",
        "end_date",
        "duration_days",
        "department",
        "created_by",
    )
    list_filter = ("status", "department")
    search_fields = ("name", "description")
    readonly_fields = ("end_date", "anonymous_token", "created_at", "updated_at")
    filter_horizontal = ("target_employees",)
    inlines = [QuestionInline]
    fieldsets = (
        (
            "Basic Information",
            {"fields": ("name", "description", "created_by")},
        ),
        (
            "Schedule",
            {"fields": ("publish_date", "duration_days", "end_date", "status")},
        ),
        (
            "Audience",
            {"fields": ("department", "target_employees")},
        ),
        (
            "Delivery",
            {
                "fields": (
                    "anonymous_token",
                    "consent_email_sent",
                    "survey_email_sent",
                    "created_at",
                    "updated_at",
                ),
                "classes": ("collapse",),
            },
        ),
    )


@admin.register(ConsentRecord)
class ConsentRecordAdmin(admin.ModelAdmin):
    list_display = ("survey", "user", "consent_given", "decided_at", "email_sent")
    list_filter = ("consent_given", "email_sent")
    search_fields = ("user__username", "user__email", "survey__name")
    # Decisions are only recorded through the consent link
    readonly_fields = (
        "consent_given",
        "consent_token",
        "decided_at",
        "ip_address",
        "user_agent",
    )


@admin.register(AccessToken)
class AccessTokenAdmin(admin.ModelAdmin):
    list_display = (
        "survey",
        "employee_email",
        "status",
        "expires_at",
        "access_count",
        "used_at",
        "email_sent",
    )
    list_filter = ("status", "email_sent")
    search_fields = ("employee_email", "employee_name", "survey__name")
    readonly_fields = (
        "token",
        "status",
        "used_at",
        "response_set",
        "access_count",
        "last_accessed_at",
        "last_ip",
        "last_user_agent",
    )


@admin.register(Attempt)
class AttemptAdmin(admin.ModelAdmin):
    list_display = (
        "submission_id",
        "survey",
        "identity_kind",
        "anonymous",
        "completed",
        "started_at",
        "completed_at",
    )
    list_filter = ("identity_kind", "completed", "anonymous")
    readonly_fields = ("submission_id", "participant_key")


@admin.register(Response)
class ResponseAdmin(admin.ModelAdmin):
    list_display = (
        "survey",
        "question",
        "selected_option",
        "has_consent",
        "submitted_at",
    )
    list_filter = ("has_consent",)


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ("user", "type", "survey", "delivery_status", "read", "created_at")
    list_filter = ("type", "delivery_status", "read", "priority")
    search_fields = ("user__username", "title")


@admin.register(AuditLog)
class AuditLogAdmin(admin.ModelAdmin):
    list_display = ("action", "actor", "survey", "created_at")
    list_filter = ("action",)
    readonly_fields = ("actor", "survey", "action", "metadata", "created_at")
