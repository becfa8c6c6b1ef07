"""Read-only statistics over consent, attempts and responses."""

from __future__ import annotations

from collections import OrderedDict
from typing import Any

from django.core.exceptions import PermissionDenied
from django.db.models import Count, Q

from .consent import ConsentLedger
from .models import Attempt, ConsentRecord, Response, Survey
from .permissions import can_view_user_responses, require_can_manage
from .responses import ResponseStore


def _percent(part: int, whole: int) -> float:
    return round(part * 100.0 / whole, 2) if whole else 0.0


def participation(survey: Survey) -> dict[str, Any]:
    counts = Attempt.objects.filter(survey=survey).aggregate(
        total=Count("id"),
        completed=Count("id", filter=Q(completed=True)),
        identified=Count("id", filter=Q(user__isnull=False)),
        anonymous=Count("id", filter=Q(user__isnull=True)),
    )
    return {
        "total_attempts": counts["total"],
        "completed_attempts": counts["completed"],
        "identified_users": counts["identified"],
        "anonymous_users": counts["anonymous"],
        "completion_rate": _percent(counts["completed"], counts["total"]),
    }


def response_stats(survey: Survey) -> dict[str, int]:
    responses = Response.objects.filter(survey=survey)
    counts = responses.aggregate(
        total=Count("id"),
        consented=Count("id", filter=Q(has_consent=True)),
        anonymous=Count("id", filter=Q(user__isnull=True)),
    )
    return {
        "total_responses": counts["total"],
        "unique_participants": responses.values("attempt").distinct().count(),
        "consented_responses": counts["consented"],
        "anonymous_responses": counts["anonymous"],
    }


def question_results(survey: Survey) -> list[dict[str, Any]]:
    tallies: dict[int, dict[str, int]] = {}
    rows = (
        Response.objects.filter(survey=survey, question__isnull=False)
        .values("question_id", "selected_option")
        .annotate(n=Count("id"))
    )
    for row in rows:
        tallies.setdefault(row["question_id"], {})[row["selected_option"]] = row["n"]

    results = []
    for question in survey.questions.all():
        counts = tallies.get(question.pk, {})
        total = sum(counts.values())
        results.append(
            {
                "question_id": question.pk,
                "text": question.text,
                "parameter": question.parameter,
                "total_responses": total,
                "distribution": [
                    {
                        "option": option,
                        "count": counts.get(option, 0),
                        "percentage": _percent(counts.get(option, 0), total),
                    }
                    for option in question.options
                ],
            }
        )
    return results


def parameter_results(questions: list[dict[str, Any]]) -> list[dict[str, Any]]:
    grouped: OrderedDict[str, list[dict[str, Any]]] = OrderedDict()
    for item in questions:
        if item["parameter"]:
            grouped.setdefault(item["parameter"], []).append(item)
    return [
        {
            "parameter": parameter,
            "question_count": len(items),
            "total_responses": sum(i["total_responses"] for i in items),
            "questions": [i["question_id"] for i in items],
        }
        for parameter, items in grouped.items()
    ]


def survey_report(actor, survey: Survey) -> dict[str, Any]:
    require_can_manage(actor, survey)
    questions = question_results(survey)
    return {
        "survey": {
            "id": survey.pk,
            "name": survey.name,
            "status": survey.status,
            "current_status": survey.current_status(),
            "publish_date": survey.publish_date,
            "end_date": survey.end_date,
        },
        "participation": participation(survey),
        "consent": ConsentLedger().status_for(survey).as_dict(),
        "responses": response_stats(survey),
        "question_results": questions,
        "parameter_results": parameter_results(questions),
    }


def user_report(actor, survey: Survey, user) -> dict[str, Any]:
    """Identified answers of one participant.

    Only available when that participant consented; answers given without
    consent are never linked back to a person.
    """
    if not can_view_user_responses(actor, survey, user):
        raise PermissionDenied("You cannot view these responses.")
    consented = ConsentRecord.objects.filter(
        survey=survey, user=user, consent_given=True
    ).exists()
    if not consented:
        raise PermissionDenied("This user has not consented to identified responses.")
    responses = ResponseStore().user_responses(survey, user)
    return {
        "user_id": user.pk,
        "survey_id": survey.pk,
        "responses": [
            {
                "question_id": r.question_id,
                "question": r.question.text if r.question else None,
                "parameter": r.question.parameter if r.question else "",
                "selected_option": r.selected_option,
                "submitted_at": r.submitted_at,
            }
            for r in responses
        ],
    }


def survey_responses(actor, survey: Survey) -> dict[str, Any]:
    """Every stored answer of a survey, for its managers.

    ``user_id`` is only filled for answers given with consent.
    """
    require_can_manage(actor, survey)
    responses = (
        Response.objects.filter(survey=survey)
        .select_related("question", "attempt")
        .order_by("submitted_at", "pk")
    )
    items = [
        {
            "id": r.pk,
            "question_id": r.question_id,
            "question": r.question.text if r.question else None,
            "parameter": r.question.parameter if r.question else "",
            "selected_option": r.selected_option,
            "has_consent": r.has_consent,
            "user_id": r.user_id if r.has_consent else None,
            "attempt_id": str(r.attempt.submission_id) if r.attempt else None,
            "submitted_at": r.submitted_at,
        }
        for r in responses
    ]
    return {"count": len(items), "responses": items}
