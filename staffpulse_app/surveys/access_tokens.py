"""Single-use survey access tokens for participation without login.

A token moves ``active -> used`` exactly once, through a conditional update
in ``mark_used``, and ``active -> expired`` when it is checked (or swept)
after ``expires_at``. Used and expired tokens never become active again.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
import logging
from typing import Any

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.core.validators import validate_email
from django.db import IntegrityError, transaction
from django.db.models import F, Q
from django.utils import timezone

from .errors import InvalidInput, NotFound, StateConflict
from .models import AccessToken, AuditLog, Survey
from .notifications import NotificationDispatcher
from .permissions import require_admin, require_can_manage
from .targets import (
    department_members,
    parse_user_ids,
    resolve_department,
    survey_targets,
)
from .tokens import get_token_generator

logger = logging.getLogger(__name__)

User = get_user_model()


class TokenReason:
    NOT_FOUND = "not_found"
    USED = "used"
    EXPIRED = "expired"


@dataclass
class TokenCheck:
    valid: bool
    reason: str | None = None
    token: AccessToken | None = None

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"valid": self.valid}
        if self.reason:
            data["reason"] = self.reason
        return data


def _reason_for(access: AccessToken) -> str:
    if access.status == AccessToken.Status.USED:
        return TokenReason.USED
    return TokenReason.EXPIRED


class AccessTokenRegistry:
    def __init__(self, tokens=None, dispatcher=None):
        self.tokens = tokens or get_token_generator()
        self.dispatcher = dispatcher or NotificationDispatcher()

    # -------------------- issuance --------------------

    def _expiry(self, survey: Survey, expiration_days=None):
        if expiration_days in (None, ""):
            return survey.end_date
        try:
            days = int(expiration_days)
        except (TypeError, ValueError):
            days = 0
        if days < 1:
            raise InvalidInput(
                "invalid_expiration", "Expiration must be a positive number of days."
            )
        return timezone.now() + timedelta(days=days)

    def _issue(self, actor, survey, email, name, expires_at) -> AccessToken:
        employee = User.objects.filter(email__iexact=email, is_active=True).first()
        try:
            with transaction.atomic():
                return AccessToken.objects.create(
                    survey=survey,
                    employee=employee,
                    employee_email=email,
                    employee_name=name or (employee.get_full_name() if employee else ""),
                    token=self.tokens.token_urlsafe(24),
                    expires_at=expires_at,
                    created_by=actor,
                )
        except IntegrityError as exc:
            raise StateConflict(
                "token_exists", "Token already exists for this employee."
            ) from exc

    def generate(
        self, actor, survey: Survey, employees: list[dict], expiration_days=None
    ) -> dict[str, Any]:
        """Issue one token per employee; each item succeeds or fails alone."""
        require_can_manage(actor, survey)
        if not isinstance(employees, list) or not employees:
            raise InvalidInput("missing_employees", "Provide at least one employee.")
        expires_at = self._expiry(survey, expiration_days)

        created: list[AccessToken] = []
        errors: list[dict[str, Any]] = []
        seen: set[str] = set()
        for idx, item in enumerate(employees):
            item = item if isinstance(item, dict) else {}
            email = (item.get("email") or "").strip().lower()
            name = (item.get("name") or "").strip()
            if not email:
                errors.append({"index": idx, "error": "Employee email is required."})
                continue
            try:
                validate_email(email)
            except ValidationError:
                errors.append({"index": idx, "email": email, "error": "Invalid email."})
                continue
            if email in seen:
                errors.append(
                    {"index": idx, "email": email, "error": "Duplicate employee in batch."}
                )
                continue
            seen.add(email)
            try:
                created.append(self._issue(actor, survey, email, name, expires_at))
            except StateConflict as exc:
                errors.append({"index": idx, "email": email, "error": exc.detail})

        if created:
            AuditLog.objects.create(
                actor=actor,
                survey=survey,
                action=AuditLog.Action.TOKEN_GENERATE,
                metadata={"created": len(created), "failed": len(errors)},
            )
        logger.info(
            "Generated %d access tokens for survey %s (%d errors)",
            len(created),
            survey.pk,
            len(errors),
        )
        return {"tokens": created, "errors": errors}

    def generate_for_targets(
        self, actor, survey: Survey, expiration_days=None
    ) -> dict[str, Any]:
        employees = [
            {"email": user.email, "name": user.get_full_name()}
            for user in survey_targets(survey)
        ]
        if not employees:
            raise InvalidInput("no_target_users", "This survey has no eligible targets.")
        return self.generate(actor, survey, employees, expiration_days)

    def issue_for_users(self, actor, survey: Survey, users) -> list[AccessToken]:
        """Tokens for freshly resolved targets; users without email are skipped."""
        issued = []
        for user in users:
            if not user.email:
                continue
            try:
                issued.append(
                    self._issue(
                        actor,
                        survey,
                        user.email.lower(),
                        user.get_full_name(),
                        survey.end_date,
                    )
                )
            except StateConflict:
                continue
        return issued

    # -------------------- checking & consumption --------------------

    def validate(
        self,
        survey_id,
        token: str,
        ip_address: str | None = None,
        user_agent: str = "",
        now=None,
    ) -> TokenCheck:
        now = now or timezone.now()
        access = (
            AccessToken.objects.filter(survey_id=survey_id, token=token).first()
            if token
            else None
        )
        if access is None:
            return TokenCheck(False, TokenReason.NOT_FOUND)
        if access.status != AccessToken.Status.ACTIVE:
            return TokenCheck(False, _reason_for(access), access)
        if access.is_overdue(now):
            AccessToken.objects.filter(
                pk=access.pk, status=AccessToken.Status.ACTIVE
            ).update(status=AccessToken.Status.EXPIRED)
            access.refresh_from_db()
            return TokenCheck(False, _reason_for(access), access)

        AccessToken.objects.filter(pk=access.pk).update(
            access_count=F("access_count") + 1,
            last_accessed_at=now,
            last_ip=ip_address,
            last_user_agent=(user_agent or "")[:512],
        )
        access.refresh_from_db()
        return TokenCheck(True, None, access)

    def mark_used(self, access: AccessToken, response_set: str, now=None) -> AccessToken:
        """Consume the token. Raises StateConflict unless it was active and
        unexpired at the moment of the update."""
        now = now or timezone.now()
        updated = (
            AccessToken.objects.filter(pk=access.pk, status=AccessToken.Status.ACTIVE)
            .filter(Q(expires_at__isnull=True) | Q(expires_at__gte=now))
            .update(
                status=AccessToken.Status.USED,
                used_at=now,
                response_set=str(response_set),
            )
        )
        access.refresh_from_db()
        if not updated:
            if access.status == AccessToken.Status.ACTIVE:
                AccessToken.objects.filter(
                    pk=access.pk, status=AccessToken.Status.ACTIVE
                ).update(status=AccessToken.Status.EXPIRED)
                access.refresh_from_db()
            reason = _reason_for(access)
            raise StateConflict(
                f"token_{reason}", f"This access token has been {reason}."
            )
        return access

    # -------------------- administration --------------------

    def revoke(self, actor, survey: Survey, token: str) -> None:
        """Hard delete, whatever the token's status."""
        require_admin(actor)
        access = survey.access_tokens.filter(token=token).first()
        if access is None:
            raise NotFound("token_not_found", "Access token not found.")
        email = access.employee_email
        access.delete()
        AuditLog.objects.create(
            actor=actor,
            survey=survey,
            action=AuditLog.Action.TOKEN_REVOKE,
            metadata={"employee_email": email},
        )

    def expire_overdue(self, now=None) -> int:
        now = now or timezone.now()
        return AccessToken.objects.filter(
            status=AccessToken.Status.ACTIVE, expires_at__lt=now
        ).update(status=AccessToken.Status.EXPIRED)

    def send_invitations(self, actor, survey: Survey) -> dict[str, Any]:
        """Email personal links for active tokens that were never sent."""
        require_can_manage(actor, survey)
        pending = list(
            survey.access_tokens.filter(
                status=AccessToken.Status.ACTIVE, email_sent=False
            ).select_related("employee")
        )
        summary = self.dispatcher.send_invitations(survey, pending)
        return {"total": len(pending), **summary.as_dict()}

    def send_to_departments(
        self, actor, survey: Survey, departments, employee_ids=None
    ) -> dict[str, Any]:
        """Invite staff of further departments with personal links.

        ``employee_ids`` narrows the recipients to those users. An existing
        active token for the same email is reused and re-sent. Used or
        expired tokens are reported as per-recipient errors.
        """
        require_can_manage(actor, survey)
        if not isinstance(departments, list):
            departments = []
        resolved = [d for d in map(resolve_department, departments) if d is not None]
        if not resolved:
            raise InvalidInput(
                "missing_departments", "Provide at least one department."
            )
        ids = parse_user_ids(employee_ids, field="employees")
        if ids:
            users = list(
                User.objects.filter(pk__in=ids, is_active=True).order_by("pk")
            )
        else:
            users = department_members(resolved)
        if not users:
            raise InvalidInput(
                "no_target_users", "No active employees found in these departments."
            )

        invite: list[AccessToken] = []
        errors: list[dict[str, Any]] = []
        created = reused = 0
        for user in users:
            email = (user.email or "").strip().lower()
            if not email:
                errors.append({"user_id": user.pk, "error": "User has no email address."})
                continue
            access = survey.access_tokens.filter(employee_email=email).first()
            if access is None:
                try:
                    access = self._issue(
                        actor, survey, email, user.get_full_name(), survey.end_date
                    )
                except StateConflict as exc:
                    errors.append({"user_id": user.pk, "error": exc.detail})
                    continue
                created += 1
            elif access.status != AccessToken.Status.ACTIVE:
                errors.append(
                    {
                        "user_id": user.pk,
                        "error": f"Access token is already {access.status}.",
                    }
                )
                continue
            else:
                reused += 1
            invite.append(access)

        if created:
            AuditLog.objects.create(
                actor=actor,
                survey=survey,
                action=AuditLog.Action.TOKEN_GENERATE,
                metadata={
                    "created": created,
                    "departments": [d.code for d in resolved],
                },
            )
        summary = self.dispatcher.send_invitations(survey, invite)
        logger.info(
            "Survey %s links sent to departments %s: %d sent, %d failed",
            survey.pk,
            ",".join(d.code for d in resolved),
            summary.sent,
            summary.failed,
        )
        return {
            "total": len(users),
            "tokens_created": created,
            "tokens_reused": reused,
            "sent": summary.sent,
            "failed": summary.failed,
            "errors": errors + summary.errors,
        }
