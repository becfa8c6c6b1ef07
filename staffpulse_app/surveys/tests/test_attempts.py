from datetime import timedelta

from django.core.exceptions import PermissionDenied
from django.utils import timezone
import pytest

from staffpulse_app.surveys.attempts import ParticipantIdentity, participant_key
from staffpulse_app.surveys.errors import (
    IntegrityFailure,
    InvalidInput,
    NotFound,
    StateConflict,
)
from staffpulse_app.surveys.models import AccessToken, Attempt, Response, Survey

pytestmark = pytest.mark.django_db


def answer_all(svc, attempt, survey):
    for question in survey.questions.all():
        svc.responses.submit(survey.pk, question.pk, attempt, question.options[0])


class TestUserAttempts:
    def test_consenting_user_is_identified(
        self, svc, survey, employees, consent_token, open_survey
    ):
        alice = employees[0]
        svc.consent.decide(consent_token(survey, alice), True)
        open_survey(survey)

        result = svc.attempts.start(survey.pk, ParticipantIdentity.for_user(alice))
        assert result.resumed is False
        assert [q.order for q in result.questions] == [0, 1]
        attempt = result.attempt
        assert attempt.user == alice
        assert attempt.anonymous is False

        question = survey.questions.first()
        svc.responses.submit(survey.pk, question.pk, attempt, "Low")
        svc.responses.submit(survey.pk, question.pk, attempt, "High")
        response = Response.objects.get()
        assert response.user == alice
        assert response.has_consent is True
        assert response.selected_option == "High"

    def test_declining_user_stays_anonymous(
        self, svc, survey, employees, consent_token, open_survey
    ):
        bob = employees[1]
        svc.consent.decide(consent_token(survey, bob), False)
        open_survey(survey)

        attempt = svc.attempts.start(survey.pk, ParticipantIdentity.for_user(bob)).attempt
        assert attempt.user is None
        assert attempt.anonymous is True
        assert attempt.participant_key == participant_key(survey.pk, bob.pk)

        question = survey.questions.first()
        svc.responses.submit(survey.pk, question.pk, attempt, "Low")
        response = Response.objects.get()
        assert response.user is None
        assert response.has_consent is False
        assert response.anonymous_id == attempt.anonymous_id

    def test_pending_consent_counts_as_declined(self, svc, survey, employees, open_survey):
        open_survey(survey)
        attempt = svc.attempts.start(
            survey.pk, ParticipantIdentity.for_user(employees[2])
        ).attempt
        assert attempt.is_identified is False

    def test_second_start_resumes(self, svc, survey, employees, open_survey):
        open_survey(survey)
        first = svc.attempts.start(survey.pk, ParticipantIdentity.for_user(employees[0]))
        again = svc.attempts.start(survey.pk, ParticipantIdentity.for_user(employees[0]))
        assert again.resumed is True
        assert again.attempt.pk == first.attempt.pk
        assert Attempt.objects.count() == 1

    def test_one_completed_attempt_per_user(self, svc, survey, employees, open_survey):
        open_survey(survey)
        identity = ParticipantIdentity.for_user(employees[0])
        attempt = svc.attempts.start(survey.pk, identity).attempt
        answer_all(svc, attempt, survey)
        svc.attempts.complete(attempt)
        with pytest.raises(StateConflict) as exc:
            svc.attempts.start(survey.pk, identity)
        assert exc.value.code == "already_completed"

    def test_attempt_is_private_to_its_user(self, svc, survey, employees, open_survey):
        open_survey(survey)
        attempt = svc.attempts.start(
            survey.pk, ParticipantIdentity.for_user(employees[0])
        ).attempt
        assert svc.attempts.get_attempt(attempt.submission_id, employees[0]) == attempt
        with pytest.raises(PermissionDenied):
            svc.attempts.get_attempt(attempt.submission_id, employees[1])


class TestStartWindow:
    def test_upcoming_survey(self, svc, survey):
        with pytest.raises(StateConflict) as exc:
            svc.attempts.start(survey.pk, ParticipantIdentity.anonymous())
        assert exc.value.code == "not_active"

    def test_window_wins_over_stale_status(self, svc, survey):
        during = survey.publish_date + timedelta(hours=1)
        result = svc.attempts.start(survey.pk, ParticipantIdentity.anonymous(), now=during)
        assert survey.status == Survey.Status.PENDING_CONSENT
        assert result.attempt.anonymous is True

    def test_ended_survey(self, svc, survey):
        with pytest.raises(StateConflict):
            svc.attempts.start(
                survey.pk,
                ParticipantIdentity.anonymous(),
                now=survey.end_date + timedelta(seconds=1),
            )

    def test_closed_status(self, svc, admin_user, survey, open_survey):
        open_survey(survey)
        svc.lifecycle.advance_status(admin_user, survey, Survey.Status.CLOSED)
        with pytest.raises(StateConflict):
            svc.attempts.start(survey.pk, ParticipantIdentity.anonymous())

    def test_unknown_survey(self, svc):
        with pytest.raises(NotFound) as exc:
            svc.attempts.start(123456, ParticipantIdentity.anonymous())
        assert exc.value.code == "survey_not_found"


class TestCompletion:
    def test_requires_every_question(self, svc, survey, open_survey):
        open_survey(survey)
        attempt = svc.attempts.start(survey.pk, ParticipantIdentity.anonymous()).attempt
        question = survey.questions.first()
        svc.responses.submit(survey.pk, question.pk, attempt, "Low")
        with pytest.raises(StateConflict) as exc:
            svc.attempts.complete(attempt)
        assert exc.value.code == "incomplete"
        assert exc.value.details == {"answered": 1, "total": 2}

        answer_all(svc, attempt, survey)
        done = svc.attempts.complete(attempt.submission_id)
        assert done.completed is True
        assert done.completed_at is not None

    def test_complete_once(self, svc, survey, open_survey):
        open_survey(survey)
        attempt = svc.attempts.start(survey.pk, ParticipantIdentity.anonymous()).attempt
        answer_all(svc, attempt, survey)
        svc.attempts.complete(attempt.submission_id)
        with pytest.raises(StateConflict):
            svc.attempts.complete(attempt.submission_id)

    def test_answers_are_frozen_after_completion(self, svc, survey, open_survey):
        open_survey(survey)
        attempt = svc.attempts.start(survey.pk, ParticipantIdentity.anonymous()).attempt
        answer_all(svc, attempt, survey)
        attempt = svc.attempts.complete(attempt)
        question = survey.questions.first()
        with pytest.raises(StateConflict) as exc:
            svc.responses.submit(survey.pk, question.pk, attempt, "High")
        assert exc.value.code == "already_completed"

    def test_unknown_attempt(self, svc):
        with pytest.raises(NotFound):
            svc.attempts.get_attempt("not-a-uuid")


class TestAccessTokenAttempts:
    @pytest.fixture
    def access(self, svc, admin_user, survey, open_survey):
        open_survey(survey)
        return svc.registry.generate(
            admin_user, survey, [{"email": "guest@example.com"}]
        )["tokens"][0]

    def test_completion_consumes_the_token(self, svc, survey, access):
        identity = ParticipantIdentity.for_access_token(access.token)
        attempt = svc.attempts.start(survey.pk, identity).attempt
        assert attempt.access_token == access
        answer_all(svc, attempt, survey)
        svc.attempts.complete(attempt)

        access.refresh_from_db()
        assert access.status == AccessToken.Status.USED
        assert access.response_set == str(attempt.submission_id)
        with pytest.raises(StateConflict) as exc:
            svc.attempts.start(survey.pk, identity)
        assert exc.value.code == "token_used"

    def test_token_reservation_resumes(self, svc, survey, access):
        identity = ParticipantIdentity.for_access_token(access.token)
        first = svc.attempts.start(survey.pk, identity)
        second = svc.attempts.start(survey.pk, identity)
        assert second.resumed is True
        assert second.attempt.pk == first.attempt.pk

    def test_invalid_token(self, svc, survey, access):
        with pytest.raises(NotFound) as exc:
            svc.attempts.start(survey.pk, ParticipantIdentity.for_access_token("nope"))
        assert exc.value.code == "token_invalid"

    def test_expired_token(self, svc, survey, access):
        AccessToken.objects.filter(pk=access.pk).update(
            expires_at=timezone.now() - timedelta(minutes=1)
        )
        with pytest.raises(StateConflict) as exc:
            svc.attempts.start(
                survey.pk, ParticipantIdentity.for_access_token(access.token)
            )
        assert exc.value.code == "token_expired"

    def test_purge_releases_the_token(self, svc, survey, access, open_survey):
        open_survey(survey, started=timedelta(days=5))
        identity = ParticipantIdentity.for_access_token(access.token)
        svc.attempts.start(survey.pk, identity, now=timezone.now() - timedelta(days=4))
        assert svc.attempts.purge_stale(ttl_hours=72) == 1
        assert svc.attempts.start(survey.pk, identity).resumed is False


class TestEmployeeTokenAndAnonymous:
    def test_one_attempt_per_employee_token(self, svc, survey, open_survey):
        open_survey(survey)
        identity = ParticipantIdentity.for_employee_token("EMP-42")
        attempt = svc.attempts.start(survey.pk, identity).attempt
        assert svc.attempts.start(survey.pk, identity).attempt.pk == attempt.pk
        answer_all(svc, attempt, survey)
        svc.attempts.complete(attempt)
        with pytest.raises(StateConflict) as exc:
            svc.attempts.start(survey.pk, identity)
        assert exc.value.code == "already_completed"

    def test_blank_employee_token(self, svc, survey, open_survey):
        open_survey(survey)
        with pytest.raises(InvalidInput):
            svc.attempts.start(survey.pk, ParticipantIdentity.for_employee_token("  "))

    def test_anonymous_link_always_starts_fresh(self, svc, survey, open_survey):
        open_survey(survey)
        first = svc.attempts.start(survey.pk, ParticipantIdentity.anonymous()).attempt
        second = svc.attempts.start(survey.pk, ParticipantIdentity.anonymous()).attempt
        assert first.pk != second.pk
        assert first.anonymous_id != second.anonymous_id

    def test_purge_keeps_answered_and_recent_attempts(self, svc, survey, open_survey):
        open_survey(survey, started=timedelta(days=5))
        old = timezone.now() - timedelta(days=4)
        svc.attempts.start(survey.pk, ParticipantIdentity.anonymous(), now=old)
        answered = svc.attempts.start(
            survey.pk, ParticipantIdentity.anonymous(), now=old
        ).attempt
        svc.responses.submit(
            survey.pk, survey.questions.first().pk, answered, "Low"
        )
        svc.attempts.start(survey.pk, ParticipantIdentity.anonymous())
        assert svc.attempts.purge_stale(ttl_hours=72) == 1
        assert Attempt.objects.count() == 2


class TestResponses:
    @pytest.fixture
    def attempt(self, svc, survey, open_survey):
        open_survey(survey)
        return svc.attempts.start(survey.pk, ParticipantIdentity.anonymous()).attempt

    def test_option_must_belong_to_question(self, svc, survey, attempt):
        question = survey.questions.first()
        with pytest.raises(IntegrityFailure) as exc:
            svc.responses.submit(survey.pk, question.pk, attempt, "Maybe")
        assert exc.value.code == "invalid_option"

    def test_question_must_belong_to_survey(
        self, svc, admin_user, employees, survey, attempt, publish_date
    ):
        other = svc.lifecycle.create_survey(
            admin_user,
            {
                "name": "Other",
                "publish_date": publish_date,
                "target_employees": [employees[0].pk],
            },
        )["survey"]
        foreign = svc.lifecycle.add_questions(
            admin_user, other, [{"text": "Elsewhere", "options": ["Low", "High"]}]
        )[0]
        with pytest.raises(IntegrityFailure) as exc:
            svc.responses.submit(survey.pk, foreign.pk, attempt, "Low")
        assert exc.value.code == "question_mismatch"
        with pytest.raises(NotFound) as exc:
            svc.responses.submit(survey.pk, 999999, attempt, "Low")
        assert exc.value.code == "question_not_found"

    def test_attempt_must_belong_to_survey(self, svc, survey, attempt):
        question = survey.questions.first()
        with pytest.raises(IntegrityFailure) as exc:
            svc.responses.submit(survey.pk + 1, question.pk, attempt, "Low")
        assert exc.value.code == "attempt_mismatch"

    def test_anonymous_answers_without_key_are_appended(self, svc, survey, attempt):
        question = survey.questions.first()
        svc.responses.submit(survey.pk, question.pk, attempt, "Low")
        svc.responses.submit(survey.pk, question.pk, attempt, "High")
        assert Response.objects.filter(question=question).count() == 2

    def test_idempotency_key_upserts(self, svc, survey, attempt):
        question = survey.questions.first()
        svc.responses.submit(survey.pk, question.pk, attempt, "Low", idempotency_key="k1")
        svc.responses.submit(survey.pk, question.pk, attempt, "High", idempotency_key="k1")
        response = Response.objects.get(question=question)
        assert response.selected_option == "High"

    def test_bulk_is_all_or_nothing(self, svc, survey, attempt):
        first, second = survey.questions.all()
        with pytest.raises(InvalidInput) as exc:
            svc.responses.submit_bulk(
                attempt,
                [
                    {"question_id": first.pk, "selected_option": "Low"},
                    {"questionId": second.pk, "answer": "Sometimes"},
                    {"selected_option": "Yes"},
                ],
            )
        assert exc.value.code == "invalid_responses"
        assert [e["index"] for e in exc.value.errors] == [1, 2]
        assert not Response.objects.exists()

    def test_bulk_repeat_updates_in_place(self, svc, survey, attempt):
        first, second = survey.questions.all()
        items = [
            {"question_id": first.pk, "selected_option": "Low"},
            {"questionId": second.pk, "answer": "Yes"},
        ]
        assert svc.responses.submit_bulk(attempt, items) == 2
        items[0]["selected_option"] = "Medium"
        svc.responses.submit_bulk(attempt, items)
        assert Response.objects.count() == 2
        assert Response.objects.get(question=first).selected_option == "Medium"

    def test_bulk_rejects_repeated_question(self, svc, survey, attempt):
        first = survey.questions.first()
        with pytest.raises(InvalidInput):
            svc.responses.submit_bulk(
                attempt,
                [
                    {"question_id": first.pk, "selected_option": "Low"},
                    {"question_id": first.pk, "selected_option": "High"},
                ],
            )

    def test_progress(self, svc, survey, attempt):
        svc.responses.submit(survey.pk, survey.questions.first().pk, attempt, "Low")
        assert svc.attempts.progress(attempt) == {"answered": 1, "total": 2}
