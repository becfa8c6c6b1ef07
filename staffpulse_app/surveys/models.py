from __future__ import annotations

from datetime import timedelta
import uuid

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.core.validators import MaxValueValidator, MinValueValidator
from django.db import models
from django.db.models import Q
from django.utils import timezone

from staffpulse_app.core.models import Department

from .tokens import get_token_generator

User = get_user_model()

MIN_DURATION_DAYS = 1
MAX_DURATION_DAYS = 365
MIN_OPTIONS = 2
MAX_OPTIONS = 4


class Survey(models.Model):
    class Status(models.TextChoices):
        DRAFT = "draft", "Draft"
        PENDING_CONSENT = "pending_consent", "Pending consent"
        ACTIVE = "active", "Active"
        COMPLETED = "completed", "Completed"
        CLOSED = "closed", "Closed"

    class LiveStatus(models.TextChoices):
        UPCOMING = "upcoming", "Upcoming"
        ACTIVE = "active", "Active"
        CLOSED = "closed", "Closed"

    # Workflow stages may only move forward along this order.
    STATUS_ORDER = [
        Status.DRAFT,
        Status.PENDING_CONSENT,
        Status.ACTIVE,
        Status.COMPLETED,
        Status.CLOSED,
    ]
    TERMINAL_STATUSES = (Status.COMPLETED, Status.CLOSED)

    name = models.CharField(max_length=200)
    description = models.TextField(blank=True)
    publish_date = models.DateTimeField()
    duration_days = models.PositiveSmallIntegerField(
        validators=[
            MinValueValidator(MIN_DURATION_DAYS),
            MaxValueValidator(MAX_DURATION_DAYS),
        ]
    )
    # Always publish_date + duration_days; recomputed in save()
    end_date = models.DateTimeField(editable=False)
    department = models.ForeignKey(
        Department,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="surveys",
    )
    target_employees = models.ManyToManyField(
        User, blank=True, related_name="targeted_surveys"
    )
    created_by = models.ForeignKey(
        User, on_delete=models.PROTECT, related_name="created_surveys"
    )
    status = models.CharField(
        max_length=20, choices=Status.choices, default=Status.DRAFT
    )
    anonymous_token = models.CharField(max_length=64, unique=True)
    consent_email_sent = models.BooleanField(default=False)
    survey_email_sent = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        constraints = [
            models.CheckConstraint(
                condition=Q(duration_days__gte=MIN_DURATION_DAYS)
                & Q(duration_days__lte=MAX_DURATION_DAYS),
                name="survey_duration_in_range",
            ),
        ]
        indexes = [
            models.Index(
                fields=["status", "publish_date"], name="survey_status_publish_idx"
            ),
            models.Index(
                fields=["status", "end_date"], name="survey_status_end_idx"
            ),
        ]

    def __str__(self) -> str:  # pragma: no cover
        return self.name

    def save(self, *args, **kwargs):
        if not self.anonymous_token:
            self.anonymous_token = get_token_generator().token_hex(32)
        self.end_date = self.compute_end_date(self.publish_date, self.duration_days)
        update_fields = kwargs.get("update_fields")
        if update_fields is not None and (
            "publish_date" in update_fields or "duration_days" in update_fields
        ):
            kwargs["update_fields"] = set(update_fields) | {"end_date"}
        super().save(*args, **kwargs)

    @staticmethod
    def compute_end_date(publish_date, duration_days):
        return publish_date + timedelta(days=int(duration_days))

    @property
    def consent_deadline(self):
        """Consent decisions are accepted strictly before the survey opens."""
        return self.publish_date

    def current_status(self, now=None) -> str:
        """Time window status, independent of the persisted workflow ``status``."""
        now = now or timezone.now()
        if now < self.publish_date:
            return self.LiveStatus.UPCOMING
        if now <= self.end_date:
            return self.LiveStatus.ACTIVE
        return self.LiveStatus.CLOSED

    def is_live(self, now=None) -> bool:
        return self.current_status(now) == self.LiveStatus.ACTIVE

    def is_consent_open(self, now=None) -> bool:
        now = now or timezone.now()
        return now < self.consent_deadline

    @classmethod
    def status_rank(cls, status: str) -> int:
        return cls.STATUS_ORDER.index(status)


def validate_question_options(value) -> None:
    if not isinstance(value, list):
        raise ValidationError("Options must be a list.")
    if not MIN_OPTIONS <= len(value) <= MAX_OPTIONS:
        raise ValidationError(
            f"A question needs between {MIN_OPTIONS} and {MAX_OPTIONS} options."
        )
    for option in value:
        if not isinstance(option, str) or not option.strip():
            raise ValidationError("Options must be non-empty strings.")
        if len(option) > 200:
            raise ValidationError("Options are limited to 200 characters.")
    if len(set(value)) != len(value):
        raise ValidationError("Options must be unique.")


class Question(models.Model):
    survey = models.ForeignKey(
        Survey, on_delete=models.CASCADE, related_name="questions"
    )
    text = models.TextField(max_length=1000)
    options = models.JSONField(default=list, validators=[validate_question_options])
    parameter = models.CharField(
        max_length=100,
        blank=True,
        help_text="Optional grouping label used in aggregate reports",
    )
    order = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["order", "id"]

    def __str__(self) -> str:  # pragma: no cover
        return self.text[:60]


class ConsentRecord(models.Model):
    user = models.ForeignKey(
        User, on_delete=models.CASCADE, related_name="consent_records"
    )
    survey = models.ForeignKey(
        Survey, on_delete=models.CASCADE, related_name="consent_records"
    )
    # None while pending; written once by ConsentLedger.decide
    consent_given = models.BooleanField(null=True, default=None)
    consent_token = models.CharField(max_length=128, unique=True)
    decided_at = models.DateTimeField(null=True, blank=True)
    email_sent = models.BooleanField(default=False)
    email_sent_at = models.DateTimeField(null=True, blank=True)
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    user_agent = models.CharField(max_length=512, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["user", "survey"], name="unique_consent_per_user_survey"
            ),
        ]
        indexes = [
            models.Index(
                fields=["survey", "consent_given"], name="consent_survey_given_idx"
            ),
        ]

    def __str__(self) -> str:  # pragma: no cover
        return f"Consent {self.user_id}/{self.survey_id}: {self.consent_given}"


class AccessToken(models.Model):
    """Single-use credential letting one employee take a survey without login."""

    class Status(models.TextChoices):
        ACTIVE = "active", "Active"
        USED = "used", "Used"
        EXPIRED = "expired", "Expired"

    survey = models.ForeignKey(
        Survey, on_delete=models.CASCADE, related_name="access_tokens"
    )
    employee = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="survey_access_tokens",
    )
    employee_email = models.EmailField()
    employee_name = models.CharField(max_length=255, blank=True)
    token = models.CharField(max_length=128, unique=True)
    status = models.CharField(
        max_length=20, choices=Status.choices, default=Status.ACTIVE
    )
    expires_at = models.DateTimeField(null=True, blank=True)
    access_count = models.PositiveIntegerField(default=0)
    last_accessed_at = models.DateTimeField(null=True, blank=True)
    last_ip = models.GenericIPAddressField(null=True, blank=True)
    last_user_agent = models.CharField(max_length=512, blank=True)
    email_sent = models.BooleanField(default=False)
    email_sent_at = models.DateTimeField(null=True, blank=True)
    used_at = models.DateTimeField(null=True, blank=True)
    response_set = models.CharField(
        max_length=64,
        blank=True,
        help_text="Submission id of the attempt that consumed this token",
    )
    created_by = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="issued_access_tokens",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["survey", "employee_email"],
                name="unique_access_token_per_employee",
            ),
        ]
        indexes = [
            models.Index(
                fields=["survey", "status"], name="token_survey_status_idx"
            ),
            models.Index(
                fields=["status", "expires_at"], name="token_status_expires_idx"
            ),
        ]

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.employee_email} [{self.status}]"

    def is_overdue(self, now=None) -> bool:
        now = now or timezone.now()
        return self.expires_at is not None and now > self.expires_at


class Attempt(models.Model):
    class IdentityKind(models.TextChoices):
        USER = "user", "Authenticated user"
        ACCESS_TOKEN = "access_token", "Access token"
        EMPLOYEE_TOKEN = "employee_token", "Employee supplied token"
        ANONYMOUS = "anonymous", "Anonymous link"

    # Attempts outlive their survey as historical records
    survey = models.ForeignKey(
        Survey,
        on_delete=models.SET_NULL,
        null=True,
        related_name="attempts",
    )
    identity_kind = models.CharField(max_length=20, choices=IdentityKind.choices)
    # Only set when the participant consented to identified answers
    user = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="survey_attempts",
    )
    participant_key = models.CharField(max_length=128, null=True, blank=True)
    access_token = models.OneToOneField(
        AccessToken,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="attempt",
    )
    employee_token = models.CharField(max_length=255, null=True, blank=True)
    anonymous = models.BooleanField(default=True)
    anonymous_id = models.CharField(max_length=64, blank=True)
    submission_id = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    started_at = models.DateTimeField(default=timezone.now)
    completed_at = models.DateTimeField(null=True, blank=True)
    completed = models.BooleanField(default=False)
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    user_agent = models.CharField(max_length=512, blank=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["survey", "participant_key"],
                condition=Q(completed=True) & Q(participant_key__isnull=False),
                name="unique_completed_attempt_per_participant",
            ),
            models.UniqueConstraint(
                fields=["survey", "participant_key"],
                condition=Q(completed=False) & Q(participant_key__isnull=False),
                name="unique_open_attempt_per_participant",
            ),
            models.UniqueConstraint(
                fields=["survey", "employee_token"],
                condition=Q(employee_token__isnull=False),
                name="unique_attempt_per_employee_token",
            ),
        ]
        indexes = [
            models.Index(
                fields=["survey", "completed"], name="attempt_survey_done_idx"
            ),
            models.Index(
                fields=["completed", "started_at"], name="attempt_done_started_idx"
            ),
        ]

    def __str__(self) -> str:  # pragma: no cover
        return f"Attempt {self.submission_id} ({self.identity_kind})"

    @property
    def is_identified(self) -> bool:
        return self.user_id is not None


class Response(models.Model):
    # Responses are retained when their survey or question is deleted
    survey = models.ForeignKey(
        Survey, on_delete=models.SET_NULL, null=True, related_name="responses"
    )
    question = models.ForeignKey(
        Question, on_delete=models.SET_NULL, null=True, related_name="responses"
    )
    attempt = models.ForeignKey(
        Attempt,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="responses",
    )
    user = models.ForeignKey(
        User,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="survey_responses",
    )
    anonymous_id = models.CharField(max_length=64, blank=True)
    idempotency_key = models.CharField(max_length=128, null=True, blank=True)
    selected_option = models.CharField(max_length=200)
    has_consent = models.BooleanField(default=False)
    submitted_at = models.DateTimeField(default=timezone.now)
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    user_agent = models.CharField(max_length=512, blank=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["survey", "question", "user"],
                condition=Q(user__isnull=False),
                name="unique_response_per_user_question",
            ),
            models.UniqueConstraint(
                fields=["survey", "question", "idempotency_key"],
                condition=Q(idempotency_key__isnull=False),
                name="unique_response_per_idempotency_key",
            ),
        ]
        indexes = [
            models.Index(
                fields=["survey", "question"], name="response_survey_question_idx"
            ),
            models.Index(
                fields=["attempt"], name="response_attempt_idx"
            ),
        ]

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.question_id}: {self.selected_option}"


class Notification(models.Model):
    class Type(models.TextChoices):
        CONSENT_REQUEST = "consent_request", "Consent request"
        SURVEY_AVAILABLE = "survey_available", "Survey available"
        SURVEY_INVITATION = "survey_invitation", "Survey invitation"
        MANAGER_NOTIFICATION = "manager_notification", "Manager notification"
        REPORTEE_NOTIFICATION = "reportee_notification", "Reportee notification"
        GENERAL = "general", "General"

    class Priority(models.TextChoices):
        LOW = "low", "Low"
        MEDIUM = "medium", "Medium"
        HIGH = "high", "High"
        URGENT = "urgent", "Urgent"

    class DeliveryStatus(models.TextChoices):
        PENDING = "pending", "Pending"
        SENT = "sent", "Sent"
        FAILED = "failed", "Failed"

    user = models.ForeignKey(
        User, on_delete=models.CASCADE, related_name="notifications"
    )
    survey = models.ForeignKey(
        Survey,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name="notifications",
    )
    type = models.CharField(max_length=32, choices=Type.choices)
    title = models.CharField(max_length=255, blank=True)
    message = models.TextField(blank=True)
    data = models.JSONField(default=dict, blank=True)
    priority = models.CharField(
        max_length=10, choices=Priority.choices, default=Priority.MEDIUM
    )
    read = models.BooleanField(default=False)
    read_at = models.DateTimeField(null=True, blank=True)
    sent = models.BooleanField(default=False)
    sent_at = models.DateTimeField(null=True, blank=True)
    delivery_status = models.CharField(
        max_length=10,
        choices=DeliveryStatus.choices,
        default=DeliveryStatus.PENDING,
    )
    error = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(
                fields=["user", "read"], name="notification_user_read_idx"
            ),
        ]

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.type} -> {self.user_id}"


class AuditLog(models.Model):
    class Action(models.TextChoices):
        CREATE = "create", "Create"
        UPDATE = "update", "Update"
        DELETE = "delete", "Delete"
        STATUS_CHANGE = "status_change", "Status change"
        TOKEN_GENERATE = "token_generate", "Token generate"
        TOKEN_REVOKE = "token_revoke", "Token revoke"

    actor = models.ForeignKey(
        User, on_delete=models.SET_NULL, null=True, related_name="audit_logs"
    )
    survey = models.ForeignKey(
        Survey,
        null=True,
        blank=True,
        on_delete=models.SET_NULL,
        related_name="audit_logs",
    )
    action = models.CharField(max_length=20, choices=Action.choices)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        indexes = [
            models.Index(
                fields=["survey", "action"], name="audit_survey_action_idx"
            ),
            models.Index(
                fields=["created_at"], name="audit_created_idx"
            ),
        ]
