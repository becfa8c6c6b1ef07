"""Lifecycle-triggered notifications.

``NotificationDispatcher.notify`` is fire-and-report: it stores a
Notification row, attempts email delivery and returns a ``DispatchResult``.
Delivery failures are logged and reported, never raised, so the workflow
step that triggered them is never rolled back.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
import logging
from typing import Any

from django.contrib.auth import get_user_model
from django.utils import timezone

from staffpulse_app.core.email_utils import build_message, send_notification_email
from staffpulse_app.core.models import EmployeeProfile

from .errors import InvalidInput, StateConflict
from .models import AccessToken, ConsentRecord, Notification, Survey
from .permissions import require_can_manage

logger = logging.getLogger(__name__)

User = get_user_model()


@dataclass
class DispatchResult:
    success: bool
    error: str = ""
    notification: Notification | None = None


@dataclass
class DispatchSummary:
    """Aggregate of a fan-out: each item succeeds or fails on its own."""

    sent: int = 0
    failed: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    def record(self, result: DispatchResult, **context: Any) -> None:
        if result.success:
            self.sent += 1
        else:
            self.failed += 1
            self.errors.append({**context, "error": result.error})

    def as_dict(self) -> dict[str, Any]:
        return {"sent": self.sent, "failed": self.failed, "errors": self.errors}


class NotificationDispatcher:
    def __init__(self, sender: Callable[[str, str, str], None] | None = None):
        self.sender = sender or send_notification_email

    def notify(
        self,
        kind: str,
        recipient,
        survey: Survey | None = None,
        extra: dict[str, Any] | None = None,
        *,
        email: str | None = None,
    ) -> DispatchResult:
        """Record and deliver one message.

        ``recipient`` may be None for invitations addressed to an email that
        has no user account; then only the email is attempted.
        """
        extra = extra or {}
        to_email = email or getattr(recipient, "email", "")
        subject, body = build_message(kind, recipient, survey, extra)
        notification = None
        if recipient is not None:
            notification = Notification.objects.create(
                user=recipient,
                survey=survey,
                type=kind,
                title=subject,
                message=body,
                data={
                    k: str(v)
                    for k, v in extra.items()
                    if k not in ("consent_token", "token")
                },
                priority=extra.get("priority", Notification.Priority.MEDIUM),
            )

        if not to_email:
            return self._failed(notification, "Recipient has no email address")
        try:
            self.sender(to_email, subject, body)
        except Exception as exc:
            logger.warning("Failed to send %s email to %s: %s", kind, to_email, exc)
            return self._failed(notification, str(exc))

        if notification is not None:
            Notification.objects.filter(pk=notification.pk).update(
                sent=True,
                sent_at=timezone.now(),
                delivery_status=Notification.DeliveryStatus.SENT,
            )
        return DispatchResult(success=True, notification=notification)

    def _failed(self, notification, error: str) -> DispatchResult:
        if notification is not None:
            Notification.objects.filter(pk=notification.pk).update(
                delivery_status=Notification.DeliveryStatus.FAILED, error=error
            )
        return DispatchResult(success=False, error=error, notification=notification)

    # -------------------- fan-outs --------------------

    def send_consent_requests(
        self, survey: Survey, records: Iterable[ConsentRecord]
    ) -> DispatchSummary:
        summary = DispatchSummary()
        for record in records:
            result = self.notify(
                Notification.Type.CONSENT_REQUEST,
                record.user,
                survey,
                {"consent_token": record.consent_token, "priority": "high"},
            )
            summary.record(result, user_id=record.user_id)
            if result.success:
                ConsentRecord.objects.filter(pk=record.pk).update(
                    email_sent=True, email_sent_at=timezone.now()
                )
        if summary.sent:
            Survey.objects.filter(pk=survey.pk).update(consent_email_sent=True)
        return summary

    def send_invitations(
        self, survey: Survey, tokens: Iterable[AccessToken]
    ) -> DispatchSummary:
        summary = DispatchSummary()
        for access in tokens:
            result = self.notify(
                Notification.Type.SURVEY_INVITATION,
                access.employee,
                survey,
                {
                    "token": access.token,
                    "expires_at": access.expires_at,
                    "recipient_name": access.employee_name,
                },
                email=access.employee_email,
            )
            summary.record(result, email=access.employee_email)
            if result.success:
                AccessToken.objects.filter(pk=access.pk).update(
                    email_sent=True, email_sent_at=timezone.now()
                )
        return summary

    def notify_survey_available(self, actor, survey: Survey) -> dict[str, Any]:
        """Tell consenting participants the survey is open, plus their
        managers and direct reports."""
        require_can_manage(actor, survey)
        if survey.status != Survey.Status.ACTIVE:
            raise StateConflict("not_active", "Survey must be active to notify users.")
        consenting = list(
            User.objects.filter(
                consent_records__survey=survey,
                consent_records__consent_given=True,
                is_active=True,
            ).select_related("profile__manager")
        )
        if not consenting:
            raise InvalidInput("no_consenting_users", "No users have given consent.")

        by_type = {
            Notification.Type.SURVEY_AVAILABLE: DispatchSummary(),
            Notification.Type.MANAGER_NOTIFICATION: DispatchSummary(),
            Notification.Type.REPORTEE_NOTIFICATION: DispatchSummary(),
        }
        for user in consenting:
            result = self.notify(Notification.Type.SURVEY_AVAILABLE, user, survey)
            by_type[Notification.Type.SURVEY_AVAILABLE].record(result, user_id=user.pk)

        for user in consenting:
            profile = getattr(user, "profile", None)
            manager = profile.manager if profile else None
            if manager is not None and manager.is_active:
                result = self.notify(
                    Notification.Type.MANAGER_NOTIFICATION,
                    manager,
                    survey,
                    {"reportee_name": user.get_full_name() or user.get_username()},
                )
                by_type[Notification.Type.MANAGER_NOTIFICATION].record(
                    result, user_id=manager.pk
                )

            reportees = User.objects.filter(
                profile__manager=user, is_active=True
            ).exclude(profile__role=EmployeeProfile.Role.ADMIN)
            for reportee in reportees:
                result = self.notify(
                    Notification.Type.REPORTEE_NOTIFICATION,
                    reportee,
                    survey,
                    {"manager_name": user.get_full_name() or user.get_username()},
                )
                by_type[Notification.Type.REPORTEE_NOTIFICATION].record(
                    result, user_id=reportee.pk
                )

        Survey.objects.filter(pk=survey.pk).update(survey_email_sent=True)
        logger.info(
            "Survey %s availability sent to %d consenting users",
            survey.pk,
            len(consenting),
        )
        return {
            "consenting_users": len(consenting),
            "results": {kind: s.as_dict() for kind, s in by_type.items()},
        }


def survey_notifications(actor, survey: Survey) -> dict[str, Any]:
    """Notifications sent for one survey, grouped by type, for its managers."""
    require_can_manage(actor, survey)
    notifications = list(
        Notification.objects.filter(survey=survey)
        .select_related("user")
        .order_by("created_at", "pk")
    )
    grouped: dict[str, list[dict[str, Any]]] = {kind: [] for kind in Notification.Type.values}
    for n in notifications:
        grouped[n.type].append(
            {
                "id": n.pk,
                "user_id": n.user_id,
                "username": n.user.get_username(),
                "title": n.title,
                "sent": n.sent,
                "sent_at": n.sent_at,
                "delivery_status": n.delivery_status,
                "read": n.read,
                "created_at": n.created_at,
            }
        )
    sent = sum(1 for n in notifications if n.sent)
    return {
        "stats": {
            "total": len(notifications),
            "sent": sent,
            "pending": len(notifications) - sent,
            "by_type": {kind: len(items) for kind, items in grouped.items()},
        },
        "notifications": grouped,
    }
