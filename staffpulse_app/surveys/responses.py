"""Answer persistence.

Identified answers (the attempt carries a consenting user) are upserted on
(survey, question, user): answering again replaces the previous value.
Other answers are inserted as new rows, unless the client supplies an
idempotency key, in which case (survey, question, key) is upserted. Bulk
submissions derive that key from the attempt, so repeating a bulk call
updates instead of duplicating.
"""

from __future__ import annotations

import logging
from typing import Any

from django.db import transaction
from django.utils import timezone

from .errors import IntegrityFailure, InvalidInput, NotFound, StateConflict
from .models import Attempt, Question, Response
from .tokens import get_token_generator

logger = logging.getLogger(__name__)

MAX_IDEMPOTENCY_KEY = 128


def bulk_key(attempt: Attempt) -> str:
    return f"attempt:{attempt.submission_id}"


class ResponseStore:
    def __init__(self, tokens=None):
        self.tokens = tokens or get_token_generator()

    def _check_attempt(self, attempt: Attempt, survey_id=None) -> None:
        if attempt.survey_id is None:
            raise NotFound("survey_not_found", "Survey no longer exists.")
        if survey_id is not None and str(attempt.survey_id) != str(survey_id):
            raise IntegrityFailure(
                "attempt_mismatch", "This attempt belongs to a different survey."
            )
        if attempt.completed:
            raise StateConflict(
                "already_completed", "Answers cannot change after completion."
            )

    def _write(
        self,
        attempt: Attempt,
        question: Question,
        option: str,
        idempotency_key: str | None,
        now,
    ) -> Response:
        values = {
            "attempt": attempt,
            "selected_option": option,
            "has_consent": attempt.is_identified,
            "submitted_at": now,
            "ip_address": attempt.ip_address,
            "user_agent": attempt.user_agent,
        }
        if attempt.is_identified:
            response, _ = Response.objects.update_or_create(
                survey_id=attempt.survey_id,
                question=question,
                user_id=attempt.user_id,
                defaults=values,
            )
            return response
        values["anonymous_id"] = attempt.anonymous_id or self.tokens.token_hex(16)
        if idempotency_key:
            response, _ = Response.objects.update_or_create(
                survey_id=attempt.survey_id,
                question=question,
                idempotency_key=idempotency_key,
                defaults=values,
            )
            return response
        return Response.objects.create(
            survey_id=attempt.survey_id, question=question, **values
        )

    def submit(
        self,
        survey_id,
        question_id,
        attempt: Attempt,
        selected_option: str,
        idempotency_key: str | None = None,
        now=None,
    ) -> Response:
        now = now or timezone.now()
        self._check_attempt(attempt, survey_id)
        try:
            question_id = int(question_id)
        except (TypeError, ValueError):
            raise InvalidInput(
                "invalid_question_id", "Question id must be a number."
            ) from None
        question = Question.objects.filter(pk=question_id).first()
        if question is None:
            raise NotFound("question_not_found", "Question not found.")
        if question.survey_id != attempt.survey_id:
            raise IntegrityFailure(
                "question_mismatch", "Question does not belong to this survey."
            )
        if selected_option not in question.options:
            raise IntegrityFailure("invalid_option", "Invalid option selected.")
        if idempotency_key is not None:
            idempotency_key = str(idempotency_key).strip()[:MAX_IDEMPOTENCY_KEY] or None
        return self._write(attempt, question, selected_option, idempotency_key, now)

    def submit_bulk(self, attempt: Attempt, items: list[dict], now=None) -> int:
        """Validate every item, then write all of them or none."""
        now = now or timezone.now()
        self._check_attempt(attempt)
        if not isinstance(items, list) or not items:
            raise InvalidInput("missing_responses", "Provide at least one answer.")

        questions = {q.pk: q for q in Question.objects.filter(survey_id=attempt.survey_id)}
        errors: list[dict[str, Any]] = []
        accepted: list[tuple[Question, str]] = []
        seen: set[int] = set()
        for idx, item in enumerate(items):
            item = item if isinstance(item, dict) else {}
            raw_id = item.get("question_id", item.get("questionId"))
            option = item.get("selected_option", item.get("answer"))
            try:
                question_id = int(raw_id)
            except (TypeError, ValueError):
                errors.append({"index": idx, "error": "Question id is required."})
                continue
            question = questions.get(question_id)
            if question is None:
                message = (
                    "Question does not belong to this survey."
                    if Question.objects.filter(pk=question_id).exists()
                    else "Question not found."
                )
                errors.append({"index": idx, "question_id": question_id, "error": message})
                continue
            if question_id in seen:
                errors.append(
                    {
                        "index": idx,
                        "question_id": question_id,
                        "error": "Question answered more than once.",
                    }
                )
                continue
            seen.add(question_id)
            if not isinstance(option, str) or option not in question.options:
                errors.append(
                    {
                        "index": idx,
                        "question_id": question_id,
                        "error": "Invalid option selected.",
                    }
                )
                continue
            accepted.append((question, option))
        if errors:
            raise InvalidInput(
                "invalid_responses", "Some answers failed validation.", errors=errors
            )

        key = None if attempt.is_identified else bulk_key(attempt)
        with transaction.atomic():
            for question, option in accepted:
                self._write(attempt, question, option, key, now)
        logger.info("Saved %d answers for attempt %s", len(accepted), attempt.pk)
        return len(accepted)

    def user_responses(self, survey, user):
        return (
            Response.objects.filter(survey=survey, user=user)
            .select_related("question")
            .order_by("question__order", "question_id")
        )
