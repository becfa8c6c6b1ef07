"""Email content and delivery for survey notifications.

Message bodies are plain text. Delivery goes through ``django.core.mail`` so
the configured EMAIL_BACKEND decides the transport (SMTP in production,
console in development, locmem under pytest).
"""

from __future__ import annotations

import logging
from typing import Any

from django.conf import settings
from django.core.mail import send_mail

logger = logging.getLogger(__name__)


def client_link(path: str) -> str:
    return f"{settings.STAFFPULSE_CLIENT_URL}/{path.lstrip('/')}"


def _display_name(user) -> str:
    if user is None:
        return "there"
    return user.get_full_name() or user.get_username()


def _format_date(value) -> str:
    return value.strftime("%d %B %Y %H:%M %Z").strip() if value else "-"


def build_message(
    kind: str, recipient, survey, extra: dict[str, Any] | None = None
) -> tuple[str, str]:
    """Return ``(subject, body)`` for a notification ``kind``.

    ``extra`` carries per-kind values such as ``consent_token``, ``token``
    or the name of the related manager/reportee.
    """
    extra = extra or {}
    name = extra.get("recipient_name") or _display_name(recipient)
    survey_name = survey.name if survey is not None else ""

    if kind == "consent_request":
        link = client_link(f"consent/{extra['consent_token']}")
        subject = f"Your Consent is Requested: {survey_name}"
        body = (
            f"Hello {name},\n\n"
            f"You have been invited to take part in the survey '{survey_name}'.\n"
            "Before it opens we ask whether your answers may be linked to your "
            "identity. If you decline, you can still take part anonymously.\n\n"
            f"Please record your decision before {_format_date(survey.publish_date)}:\n"
            f"{link}\n"
        )
    elif kind == "survey_available":
        link = client_link(f"surveys/{survey.pk}/attempt")
        subject = f"Survey Now Available: {survey_name}"
        body = (
            f"Hello {name},\n\n"
            f"The survey '{survey_name}' is now open and closes on "
            f"{_format_date(survey.end_date)}.\n\n{link}\n"
        )
    elif kind == "manager_notification":
        subject = f"Your Team Member is Participating in {survey_name}"
        body = (
            f"Hello {name},\n\n"
            f"{extra.get('reportee_name', 'A member of your team')} has agreed to "
            f"take part in '{survey_name}'.\n"
        )
    elif kind == "reportee_notification":
        subject = f"Your Manager is Participating in {survey_name}"
        body = (
            f"Hello {name},\n\n"
            f"{extra.get('manager_name', 'Your manager')} has agreed to take part "
            f"in '{survey_name}'.\n"
        )
    elif kind == "survey_invitation":
        link = client_link(f"participate/{survey.pk}/{extra['token']}")
        subject = f"Survey Invitation: {survey_name}"
        body = (
            f"Hello {name},\n\n"
            f"You are invited to complete '{survey_name}'. The link below is "
            "personal and can be used once.\n\n"
            f"{link}\n\n"
            f"It expires on {_format_date(extra.get('expires_at'))}.\n"
        )
    else:
        subject = extra.get("title") or f"StaffPulse: {survey_name}".rstrip(": ")
        body = extra.get("message", "")
    return subject, body


def send_notification_email(to_email: str, subject: str, body: str) -> None:
    """Send one message; errors from the backend propagate to the caller."""
    logger.debug("Sending '%s' to %s", subject, to_email)
    send_mail(
        subject,
        body,
        settings.DEFAULT_FROM_EMAIL,
        [to_email],
        fail_silently=False,
    )
