"""Participation attempts.

An attempt is ``started`` then ``completed`` (terminal). Who may start one
depends on the participant identity:

- authenticated user: one open and at most one completed attempt per survey,
  detected through ``participant_key`` so the user id is only stored on the
  attempt when the user consented to identified answers;
- access token: the attempt reserves the token (one-to-one) and completing
  the attempt consumes it;
- employee supplied token: one attempt per token and survey;
- anonymous link: a fresh attempt each time.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import timedelta
import logging
from typing import Any
import uuid

from django.conf import settings
from django.core.exceptions import PermissionDenied
from django.db import IntegrityError, transaction
from django.utils import timezone
from django.utils.crypto import salted_hmac

from .access_tokens import AccessTokenRegistry, TokenReason
from .errors import InvalidInput, NotFound, StateConflict
from .models import AccessToken, Attempt, ConsentRecord, Question, Response, Survey
from .tokens import get_token_generator

logger = logging.getLogger(__name__)

TOKEN_FAILURES = {
    TokenReason.NOT_FOUND: "token_invalid",
    TokenReason.USED: "token_used",
    TokenReason.EXPIRED: "token_expired",
}


def participant_key(survey_id, user_id) -> str:
    return salted_hmac(
        "staffpulse.surveys.attempt", f"{survey_id}:{user_id}"
    ).hexdigest()


@dataclass
class ParticipantIdentity:
    kind: str
    user: Any = None
    token: str | None = None
    ip_address: str | None = None
    user_agent: str = ""

    @classmethod
    def for_user(cls, user, **meta) -> ParticipantIdentity:
        return cls(Attempt.IdentityKind.USER, user=user, **meta)

    @classmethod
    def for_access_token(cls, token: str, **meta) -> ParticipantIdentity:
        return cls(Attempt.IdentityKind.ACCESS_TOKEN, token=token, **meta)

    @classmethod
    def for_employee_token(cls, token: str, **meta) -> ParticipantIdentity:
        return cls(Attempt.IdentityKind.EMPLOYEE_TOKEN, token=token, **meta)

    @classmethod
    def anonymous(cls, **meta) -> ParticipantIdentity:
        return cls(Attempt.IdentityKind.ANONYMOUS, **meta)


@dataclass
class StartResult:
    attempt: Attempt
    questions: list[Question] = field(default_factory=list)
    resumed: bool = False


class AttemptTracker:
    def __init__(self, tokens=None, registry=None):
        self.tokens = tokens or get_token_generator()
        self.registry = registry or AccessTokenRegistry(tokens=self.tokens)

    def start(self, survey_id, identity: ParticipantIdentity, now=None) -> StartResult:
        now = now or timezone.now()
        survey = Survey.objects.filter(pk=survey_id).first()
        if survey is None:
            raise NotFound("survey_not_found", "Survey not found.")
        # The date window decides, whether or not the status sweep has run
        if survey.status == Survey.Status.CLOSED or not survey.is_live(now):
            raise StateConflict("not_active", "This survey is not currently active.")

        if identity.kind == Attempt.IdentityKind.USER:
            attempt, resumed = self._start_for_user(survey, identity, now)
        elif identity.kind == Attempt.IdentityKind.ACCESS_TOKEN:
            attempt, resumed = self._start_for_access_token(survey, identity, now)
        elif identity.kind == Attempt.IdentityKind.EMPLOYEE_TOKEN:
            attempt, resumed = self._start_for_employee_token(survey, identity, now)
        elif identity.kind == Attempt.IdentityKind.ANONYMOUS:
            attempt, resumed = self._create(survey, identity, now), False
        else:
            raise InvalidInput("invalid_identity", "Unknown participant identity.")
        return StartResult(attempt, list(survey.questions.all()), resumed)

    def _create(self, survey: Survey, identity: ParticipantIdentity, now, **fields):
        fields.setdefault("anonymous", True)
        if fields["anonymous"]:
            fields.setdefault("anonymous_id", self.tokens.token_hex(16))
        with transaction.atomic():
            return Attempt.objects.create(
                survey=survey,
                identity_kind=identity.kind,
                submission_id=self.tokens.uuid(),
                started_at=now,
                ip_address=identity.ip_address,
                user_agent=(identity.user_agent or "")[:512],
                **fields,
            )

    def _resume(self, existing: Attempt, completed_code: str):
        if existing.completed:
            raise StateConflict(
                completed_code, "This survey has already been completed."
            )
        return existing, True

    def _start_for_user(self, survey, identity, now):
        user = identity.user
        if user is None or not user.is_authenticated:
            raise InvalidInput("missing_identity", "An authenticated user is required.")
        key = participant_key(survey.pk, user.pk)
        attempts = Attempt.objects.filter(survey=survey, participant_key=key)
        existing = attempts.order_by("-completed").first()
        if existing is not None:
            return self._resume(existing, "already_completed")

        identified = ConsentRecord.objects.filter(
            user=user, survey=survey, consent_given=True
        ).exists()
        try:
            attempt = self._create(
                survey,
                identity,
                now,
                user=user if identified else None,
                participant_key=key,
                anonymous=not identified,
            )
        except IntegrityError:
            return self._resume(attempts.order_by("-completed").first(), "already_completed")
        logger.info(
            "Survey %s attempt started (%s)",
            survey.pk,
            "identified" if identified else "anonymous",
        )
        return attempt, False

    def _start_for_access_token(self, survey, identity, now):
        check = self.registry.validate(
            survey.pk, identity.token, identity.ip_address, identity.user_agent, now
        )
        if not check.valid:
            code = TOKEN_FAILURES[check.reason]
            if check.reason == TokenReason.NOT_FOUND:
                raise NotFound(code, "Invalid survey access token.")
            raise StateConflict(code, f"This survey access token has been {check.reason}.")
        access: AccessToken = check.token
        existing = Attempt.objects.filter(access_token=access).first()
        if existing is not None:
            return self._resume(existing, "token_used")
        try:
            attempt = self._create(survey, identity, now, access_token=access)
        except IntegrityError:
            return self._resume(Attempt.objects.get(access_token=access), "token_used")
        return attempt, False

    def _start_for_employee_token(self, survey, identity, now):
        token = (identity.token or "").strip()
        if not token or len(token) > 255:
            raise InvalidInput("invalid_employee_token", "An employee token is required.")
        existing = Attempt.objects.filter(survey=survey, employee_token=token).first()
        if existing is not None:
            return self._resume(existing, "already_completed")
        try:
            attempt = self._create(survey, identity, now, employee_token=token)
        except IntegrityError:
            existing = Attempt.objects.get(survey=survey, employee_token=token)
            return self._resume(existing, "already_completed")
        return attempt, False

    def get_attempt(self, attempt_ref, actor=None) -> Attempt:
        """Resolve a public submission id. Attempts started by a signed-in
        user are only usable by that user."""
        try:
            submission_id = uuid.UUID(str(attempt_ref))
        except ValueError as exc:
            raise NotFound("attempt_not_found", "Attempt not found.") from exc
        attempt = (
            Attempt.objects.select_related("survey", "access_token")
            .filter(submission_id=submission_id)
            .first()
        )
        if attempt is None:
            raise NotFound("attempt_not_found", "Attempt not found.")
        if attempt.survey_id is None:
            raise NotFound("survey_not_found", "Survey no longer exists.")
        if attempt.participant_key:
            owner = getattr(actor, "is_authenticated", False) and participant_key(
                attempt.survey_id, actor.pk
            ) == attempt.participant_key
            if not owner:
                raise PermissionDenied("This attempt belongs to another participant.")
        return attempt

    def progress(self, attempt: Attempt) -> dict[str, int]:
        question_ids = list(
            Question.objects.filter(survey_id=attempt.survey_id).values_list(
                "id", flat=True
            )
        )
        answered = (
            Response.objects.filter(attempt=attempt, question_id__in=question_ids)
            .values("question_id")
            .distinct()
            .count()
        )
        return {"answered": answered, "total": len(question_ids)}

    def complete(self, attempt_ref, actor=None, now=None) -> Attempt:
        """Finish an attempt once every current question has an answer.

        For token attempts the token is consumed in the same transaction, so
        either both the attempt and the token change or neither does.
        """
        now = now or timezone.now()
        attempt = (
            attempt_ref
            if isinstance(attempt_ref, Attempt)
            else self.get_attempt(attempt_ref, actor)
        )
        if attempt.completed:
            raise StateConflict("already_completed", "This attempt is already complete.")
        progress = self.progress(attempt)
        if progress["answered"] < progress["total"]:
            raise StateConflict(
                "incomplete",
                "Please answer all questions. "
                f"{progress['answered']} of {progress['total']} questions answered.",
                **progress,
            )
        with transaction.atomic():
            updated = Attempt.objects.filter(pk=attempt.pk, completed=False).update(
                completed=True, completed_at=now
            )
            if not updated:
                raise StateConflict(
                    "already_completed", "This attempt is already complete."
                )
            if attempt.access_token_id:
                self.registry.mark_used(attempt.access_token, attempt.submission_id, now)
        attempt.refresh_from_db()
        logger.info("Attempt %s completed for survey %s", attempt.pk, attempt.survey_id)
        return attempt

    def purge_stale(self, now=None, ttl_hours: int | None = None) -> int:
        """Delete open attempts that never received an answer.

        Removing the attempt releases any access token it had reserved.
        """
        now = now or timezone.now()
        ttl = ttl_hours if ttl_hours is not None else settings.STAFFPULSE_ATTEMPT_TTL_HOURS
        cutoff = now - timedelta(hours=ttl)
        stale_ids = list(
            Attempt.objects.filter(
                completed=False, started_at__lt=cutoff, responses__isnull=True
            ).values_list("pk", flat=True)
        )
        if stale_ids:
            Attempt.objects.filter(pk__in=stale_ids, completed=False).delete()
        return len(stale_ids)
