"""Per-user consent decisions for a survey.

A ConsentRecord is created pending for each target user. The participant
decides once, through the opaque consent token, strictly before the survey's
publish date. ``ConsentLedger.decide`` is the only code path that writes
``consent_given``.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any

from django.db import IntegrityError, transaction
from django.utils import timezone

from .errors import NotFound, StateConflict
from .models import ConsentRecord, Survey
from .notifications import NotificationDispatcher
from .permissions import require_can_manage
from .targets import survey_targets
from .tokens import get_token_generator

logger = logging.getLogger(__name__)


@dataclass
class ConsentStatus:
    total: int
    given: int
    denied: int
    pending: int

    @property
    def rate(self) -> float:
        return self.given / self.total if self.total else 0.0

    def as_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "given": self.given,
            "denied": self.denied,
            "pending": self.pending,
            "rate": round(self.rate, 4),
        }


class ConsentLedger:
    def __init__(self, tokens=None, dispatcher=None):
        self.tokens = tokens or get_token_generator()
        self.dispatcher = dispatcher or NotificationDispatcher()

    def issue(self, user, survey: Survey) -> ConsentRecord:
        """Create a pending record; a second record for the pair is refused."""
        try:
            with transaction.atomic():
                return ConsentRecord.objects.create(
                    user=user,
                    survey=survey,
                    consent_token=self.tokens.token_hex(32),
                )
        except IntegrityError as exc:
            raise StateConflict(
                "consent_exists",
                "A consent record already exists for this user and survey.",
            ) from exc

    def _get(self, token: str) -> ConsentRecord:
        if not token:
            raise NotFound("invalid_token", "Invalid consent token.")
        record = (
            ConsentRecord.objects.select_related("survey", "user")
            .filter(consent_token=token)
            .first()
        )
        if record is None:
            raise NotFound("invalid_token", "Invalid consent token.")
        return record

    def verify(self, token: str, now=None) -> dict[str, Any]:
        """Describe a consent token without changing it."""
        now = now or timezone.now()
        record = self._get(token)
        valid = record.survey.is_consent_open(now)
        return {
            "valid": valid,
            "deadline_passed": not valid,
            "consent_given": record.consent_given,
            "decided_at": record.decided_at,
            "deadline": record.survey.consent_deadline,
            "record": record,
        }

    def decide(
        self,
        token: str,
        consent_given: bool,
        ip_address: str | None = None,
        user_agent: str = "",
        now=None,
    ) -> dict[str, Any]:
        now = now or timezone.now()
        record = self._get(token)
        if not record.survey.is_consent_open(now):
            raise StateConflict(
                "deadline_passed", "The consent deadline for this survey has passed."
            )
        if record.consent_given is not None:
            raise StateConflict(
                "already_decided", "Consent has already been recorded for this survey."
            )
        updated = ConsentRecord.objects.filter(
            pk=record.pk, consent_given__isnull=True
        ).update(
            consent_given=bool(consent_given),
            decided_at=now,
            ip_address=ip_address,
            user_agent=(user_agent or "")[:512],
        )
        if not updated:
            raise StateConflict(
                "already_decided", "Consent has already been recorded for this survey."
            )
        logger.info(
            "Consent %s recorded for user %s on survey %s",
            "given" if consent_given else "denied",
            record.user_id,
            record.survey_id,
        )
        return {"consent_given": bool(consent_given), "timestamp": now}

    def status_for(self, survey: Survey) -> ConsentStatus:
        records = ConsentRecord.objects.filter(survey=survey)
        return ConsentStatus(
            total=records.count(),
            given=records.filter(consent_given=True).count(),
            denied=records.filter(consent_given=False).count(),
            pending=records.filter(consent_given__isnull=True).count(),
        )

    def consent_for(self, user, survey: Survey) -> ConsentRecord | None:
        return ConsentRecord.objects.filter(user=user, survey=survey).first()

    def has_consented(self, user, survey: Survey) -> bool:
        return ConsentRecord.objects.filter(
            user=user, survey=survey, consent_given=True
        ).exists()

    def regenerate(self, actor, survey: Survey) -> dict[str, Any]:
        """Create records for targets that have none and resend unsent emails."""
        require_can_manage(actor, survey)
        targets = survey_targets(survey)
        existing = dict(
            ConsentRecord.objects.filter(survey=survey).values_list("user_id", "pk")
        )
        created = []
        for user in targets:
            if user.pk in existing:
                continue
            try:
                created.append(self.issue(user, survey))
            except StateConflict:
                # Created concurrently; it is picked up as an existing record
                continue
        to_email = list(
            ConsentRecord.objects.filter(
                survey=survey, email_sent=False, consent_given__isnull=True
            )
            .select_related("user")
        )
        skipped = ConsentRecord.objects.filter(survey=survey).count() - len(to_email)
        if created or to_email:
            Survey.objects.filter(pk=survey.pk, status=Survey.Status.DRAFT).update(
                status=Survey.Status.PENDING_CONSENT
            )
        summary = self.dispatcher.send_consent_requests(survey, to_email)
        return {
            "created": len(created),
            "skipped": skipped,
            "email_results": summary.as_dict(),
        }
