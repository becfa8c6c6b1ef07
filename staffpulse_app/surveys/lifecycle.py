"""Survey creation, editing and workflow status transitions.

The persisted ``Survey.status`` is the workflow stage and only moves forward
(see ``Survey.STATUS_ORDER``). It changes through ``advance_status`` or the
``reconcile_statuses`` sweep, never through ``update_survey``. The time window
status (``Survey.current_status``) is derived on read.
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import transaction
from django.db.models import F
from django.utils import timezone
from django.utils.dateparse import parse_datetime

from .access_tokens import AccessTokenRegistry
from .consent import ConsentLedger
from .errors import InvalidInput, NotFound, StateConflict
from .models import (
    MAX_DURATION_DAYS,
    MIN_DURATION_DAYS,
    AuditLog,
    Question,
    Survey,
    validate_question_options,
)
from .notifications import NotificationDispatcher
from .permissions import require_admin, require_can_manage
from .targets import parse_user_ids, resolve_department, resolve_targets
from .tokens import get_token_generator

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = ("name", "description", "publish_date", "duration_days", "department")


def _parse_publish_date(value) -> datetime:
    if isinstance(value, str):
        value = parse_datetime(value)
    if not isinstance(value, datetime):
        raise InvalidInput("invalid_publish_date", "A valid publish date is required.")
    if timezone.is_naive(value):
        value = timezone.make_aware(value)
    return value


def _parse_duration(value) -> int:
    if value in (None, ""):
        return settings.STAFFPULSE_DEFAULT_DURATION_DAYS
    try:
        days = int(value)
    except (TypeError, ValueError):
        days = 0
    if not MIN_DURATION_DAYS <= days <= MAX_DURATION_DAYS:
        raise InvalidInput(
            "invalid_duration",
            f"Duration must be between {MIN_DURATION_DAYS} and {MAX_DURATION_DAYS} days.",
        )
    return days


class SurveyLifecycle:
    def __init__(self, tokens=None, dispatcher=None, consent=None, registry=None):
        self.tokens = tokens or get_token_generator()
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.consent = consent or ConsentLedger(
            tokens=self.tokens, dispatcher=self.dispatcher
        )
        self.registry = registry or AccessTokenRegistry(
            tokens=self.tokens, dispatcher=self.dispatcher
        )

    # -------------------- creation & editing --------------------

    def create_survey(self, actor, data: dict[str, Any]) -> dict[str, Any]:
        """Create a survey and open the consent round for its targets.

        Targets are resolved before anything is written; with no eligible
        user nothing is created. Consent emails are sent after the commit
        and their failures are only reported.
        """
        require_admin(actor)
        name = (data.get("name") or "").strip()
        if not name:
            raise InvalidInput("missing_name", "Survey name is required.")
        if len(name) > 200:
            raise InvalidInput("invalid_name", "Survey name is limited to 200 characters.")
        publish_date = _parse_publish_date(data.get("publish_date"))
        duration_days = _parse_duration(data.get("duration_days"))
        target_employees = parse_user_ids(data.get("target_employees"))
        if not target_employees and not data.get("department"):
            raise InvalidInput(
                "missing_target", "Either target employees or a department is required."
            )
        department = resolve_department(data.get("department"))
        users = resolve_targets(target_employees, department)
        if not users:
            raise InvalidInput(
                "no_target_users", "No eligible users found for this survey."
            )

        issued_tokens = []
        with transaction.atomic():
            survey = Survey.objects.create(
                name=name,
                description=data.get("description") or "",
                publish_date=publish_date,
                duration_days=duration_days,
                department=department,
                created_by=actor,
                status=Survey.Status.DRAFT,
                anonymous_token=self.tokens.token_hex(32),
            )
            if target_employees:
                survey.target_employees.set(users)
            records = [self.consent.issue(user, survey) for user in users]
            if data.get("issue_access_tokens"):
                issued_tokens = self.registry.issue_for_users(actor, survey, users)
            Survey.objects.filter(pk=survey.pk).update(
                status=Survey.Status.PENDING_CONSENT
            )
            survey.status = Survey.Status.PENDING_CONSENT
            AuditLog.objects.create(
                actor=actor,
                survey=survey,
                action=AuditLog.Action.CREATE,
                metadata={"target_count": len(users)},
            )

        email_results = self.dispatcher.send_consent_requests(survey, records)
        logger.info(
            "Survey %s created for %d targets (%d consent emails sent, %d failed)",
            survey.pk,
            len(users),
            email_results.sent,
            email_results.failed,
        )
        result = {
            "survey": survey,
            "target_count": len(users),
            "consent_records_created": len(records),
            "email_results": email_results.as_dict(),
        }
        if data.get("issue_access_tokens"):
            result["access_tokens_created"] = len(issued_tokens)
            result["invitation_results"] = self.dispatcher.send_invitations(
                survey, issued_tokens
            ).as_dict()
        survey.refresh_from_db()
        return result

    def update_survey(self, actor, survey: Survey, data: dict[str, Any]) -> Survey:
        require_can_manage(actor, survey)
        if "status" in data:
            raise InvalidInput(
                "status_not_editable",
                "Status cannot be changed here; use the status endpoint.",
            )
        unknown = sorted(set(data) - set(EDITABLE_FIELDS))
        if unknown:
            raise InvalidInput(
                "unknown_fields", f"Unknown fields: {', '.join(unknown)}"
            )
        changed = []
        if "name" in data:
            name = (data["name"] or "").strip()
            if not name or len(name) > 200:
                raise InvalidInput("invalid_name", "Survey name must be 1-200 characters.")
            survey.name = name
            changed.append("name")
        if "description" in data:
            survey.description = data["description"] or ""
            changed.append("description")
        if "publish_date" in data:
            survey.publish_date = _parse_publish_date(data["publish_date"])
            changed.append("publish_date")
        if "duration_days" in data:
            survey.duration_days = _parse_duration(data["duration_days"])
            changed.append("duration_days")
        if "department" in data:
            survey.department = resolve_department(data["department"])
            changed.append("department")
        survey.save()
        AuditLog.objects.create(
            actor=actor,
            survey=survey,
            action=AuditLog.Action.UPDATE,
            metadata={"fields": changed},
        )
        return survey

    def delete_survey(self, actor, survey: Survey) -> None:
        """Delete a survey; attempts and responses keep their rows."""
        require_can_manage(actor, survey)
        metadata = {"survey_id": survey.pk, "survey_name": survey.name}
        survey.delete()
        AuditLog.objects.create(
            actor=actor, survey=None, action=AuditLog.Action.DELETE, metadata=metadata
        )

    # -------------------- status --------------------

    def advance_status(self, actor, survey: Survey, status: str) -> Survey:
        require_admin(actor)
        if status not in Survey.Status.values:
            raise InvalidInput("invalid_status", f"Unknown status '{status}'.")
        target_rank = Survey.status_rank(status)
        for _ in Survey.STATUS_ORDER:
            survey.refresh_from_db(fields=["status"])
            current = survey.status
            if current == status:
                return survey
            if (
                current in Survey.TERMINAL_STATUSES
                or target_rank < Survey.status_rank(current)
            ):
                raise StateConflict(
                    "invalid_transition",
                    f"Cannot move a survey from {current} to {status}.",
                    current=current,
                    requested=status,
                )
            updated = Survey.objects.filter(pk=survey.pk, status=current).update(
                status=status, updated_at=timezone.now()
            )
            if updated:
                survey.status = status
                AuditLog.objects.create(
                    actor=actor,
                    survey=survey,
                    action=AuditLog.Action.STATUS_CHANGE,
                    metadata={"from": current, "to": status},
                )
                logger.info("Survey %s status %s -> %s", survey.pk, current, status)
                return survey
        raise StateConflict("invalid_transition", "Survey status is changing concurrently.")

    def reconcile_statuses(self, now=None) -> dict[str, int]:
        """Advance surveys whose date window has moved on. Idempotent."""
        now = now or timezone.now()
        activated = Survey.objects.filter(
            status=Survey.Status.PENDING_CONSENT,
            publish_date__lte=now,
            end_date__gte=now,
        ).update(status=Survey.Status.ACTIVE, updated_at=now)
        completed = Survey.objects.filter(
            status__in=[Survey.Status.PENDING_CONSENT, Survey.Status.ACTIVE],
            end_date__lt=now,
        ).update(status=Survey.Status.COMPLETED, updated_at=now)
        if activated or completed:
            logger.info(
                "Reconciled survey statuses: %d activated, %d completed",
                activated,
                completed,
            )
        return {"activated": activated, "completed": completed}

    # -------------------- questions --------------------

    @staticmethod
    def _question_errors(idx, item, partial=False) -> list[dict[str, Any]]:
        """Field errors for one question payload.

        With ``partial`` only the keys present are checked (updates).
        """
        if not isinstance(item, dict):
            return [{"index": idx, "message": "Each question must be an object."}]
        errors = []
        if not partial or "text" in item:
            text = item.get("text")
            text = text.strip() if isinstance(text, str) else ""
            if not text:
                errors.append(
                    {"index": idx, "field": "text", "message": "Question text is required."}
                )
            elif len(text) > 1000:
                errors.append(
                    {
                        "index": idx,
                        "field": "text",
                        "message": "Question text is limited to 1000 characters.",
                    }
                )
        if not partial or "options" in item:
            try:
                validate_question_options(item.get("options"))
            except ValidationError as exc:
                errors.append(
                    {"index": idx, "field": "options", "message": exc.messages[0]}
                )
        parameter = item.get("parameter") or ""
        if not isinstance(parameter, str) or len(parameter) > 100:
            errors.append(
                {
                    "index": idx,
                    "field": "parameter",
                    "message": "Parameter must be text of at most 100 characters.",
                }
            )
        return errors

    def add_questions(self, actor, survey: Survey, items: list[dict]) -> list[Question]:
        """Validate every item first, then create all of them."""
        require_can_manage(actor, survey)
        if not isinstance(items, list) or not items:
            raise InvalidInput("missing_questions", "Provide at least one question.")
        errors = []
        for idx, item in enumerate(items):
            errors.extend(self._question_errors(idx, item))
        if errors:
            raise InvalidInput("invalid_questions", "Questions failed validation.", errors=errors)

        next_order = survey.questions.count()
        created = []
        with transaction.atomic():
            for offset, item in enumerate(items):
                created.append(
                    Question.objects.create(
                        survey=survey,
                        text=item["text"].strip(),
                        options=item["options"],
                        parameter=item.get("parameter") or "",
                        order=next_order + offset,
                    )
                )
        return created

    def update_question(
        self, actor, survey: Survey, question_id, data: dict[str, Any]
    ) -> Question:
        """Edit text, options or parameter of one question.

        Options are frozen once the question has answers.
        """
        require_can_manage(actor, survey)
        question = survey.questions.filter(pk=question_id).first()
        if question is None:
            raise NotFound("question_not_found", "Question not found.")
        if not isinstance(data, dict):
            raise InvalidInput("invalid_question", "Provide the fields to change.")
        unknown = sorted(set(data) - {"text", "options", "parameter"})
        if unknown:
            raise InvalidInput("unknown_fields", f"Unknown fields: {', '.join(unknown)}")
        errors = self._question_errors(0, data, partial=True)
        if errors:
            raise InvalidInput("invalid_question", "Question failed validation.", errors=errors)
        if (
            "options" in data
            and data["options"] != question.options
            and question.responses.exists()
        ):
            raise StateConflict(
                "question_answered", "Options cannot change once answers exist."
            )

        if "text" in data:
            question.text = data["text"].strip()
        if "options" in data:
            question.options = data["options"]
        if "parameter" in data:
            question.parameter = data["parameter"] or ""
        question.save()
        AuditLog.objects.create(
            actor=actor,
            survey=survey,
            action=AuditLog.Action.UPDATE,
            metadata={"question_id": question.pk, "fields": sorted(data)},
        )
        return question

    def delete_question(self, actor, survey: Survey, question_id) -> None:
        """Delete a question and close the gap in the ordering."""
        require_can_manage(actor, survey)
        with transaction.atomic():
            question = survey.questions.filter(pk=question_id).first()
            if question is None:
                raise NotFound("question_not_found", "Question not found.")
            order = question.order
            question.delete()
            survey.questions.filter(order__gt=order).update(order=F("order") - 1)
