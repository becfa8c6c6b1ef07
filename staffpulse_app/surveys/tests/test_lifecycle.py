from datetime import timedelta

from django.core.exceptions import PermissionDenied
from django.utils import timezone
import pytest

from staffpulse_app.core.models import EmployeeProfile
from staffpulse_app.surveys.errors import InvalidInput, NotFound, StateConflict
from staffpulse_app.surveys.models import (
    AccessToken,
    Attempt,
    AuditLog,
    ConsentRecord,
    Question,
    Response,
    Survey,
)
from staffpulse_app.surveys.attempts import ParticipantIdentity

pytestmark = pytest.mark.django_db


def survey_data(publish_date, **overrides):
    data = {"name": "Quarterly pulse", "publish_date": publish_date, "duration_days": 5}
    data.update(overrides)
    return data


class TestCreateSurvey:
    def test_creates_pending_consent_records_and_emails(
        self, svc, admin_user, employees, publish_date, mailoutbox
    ):
        result = svc.lifecycle.create_survey(
            admin_user,
            survey_data(publish_date, target_employees=[u.pk for u in employees]),
        )
        survey = result["survey"]
        assert survey.status == Survey.Status.PENDING_CONSENT
        assert survey.end_date == publish_date + timedelta(days=5)
        assert result["target_count"] == 3
        assert result["consent_records_created"] == 3
        assert result["email_results"] == {"sent": 3, "failed": 0, "errors": []}
        assert ConsentRecord.objects.filter(
            survey=survey, consent_given__isnull=True, email_sent=True
        ).count() == 3
        assert len(mailoutbox) == 3
        assert mailoutbox[0].subject == "Your Consent is Requested: Quarterly pulse"
        assert survey.consent_email_sent is True
        assert AuditLog.objects.filter(
            survey=survey, action=AuditLog.Action.CREATE
        ).exists()

    def test_default_duration_comes_from_settings(
        self, svc, admin_user, employees, publish_date, settings
    ):
        settings.STAFFPULSE_DEFAULT_DURATION_DAYS = 10
        data = survey_data(publish_date, target_employees=[employees[0].pk])
        del data["duration_days"]
        survey = svc.lifecycle.create_survey(admin_user, data)["survey"]
        assert survey.duration_days == 10

    def test_department_targets_employees_and_managers_only(
        self, svc, admin_user, make_user, department, publish_date
    ):
        make_user("dave", department=department)
        make_user("erin", role=EmployeeProfile.Role.MANAGER, department=department)
        make_user("frank", role=EmployeeProfile.Role.ADMIN, department=department)
        make_user("outsider")
        result = svc.lifecycle.create_survey(
            admin_user, survey_data(publish_date, department="eng")
        )
        usernames = set(
            result["survey"].consent_records.values_list("user__username", flat=True)
        )
        assert usernames == {"dave", "erin"}

    def test_issue_access_tokens_sends_invitations(
        self, svc, admin_user, employees, publish_date, mailoutbox
    ):
        result = svc.lifecycle.create_survey(
            admin_user,
            survey_data(
                publish_date,
                target_employees=[u.pk for u in employees],
                issue_access_tokens=True,
            ),
        )
        survey = result["survey"]
        assert result["access_tokens_created"] == 3
        assert result["invitation_results"]["sent"] == 3
        assert AccessToken.objects.filter(
            survey=survey, expires_at=survey.end_date, email_sent=True
        ).count() == 3
        assert len(mailoutbox) == 6

    def test_only_admins_may_create(self, svc, employees, publish_date):
        with pytest.raises(PermissionDenied):
            svc.lifecycle.create_survey(
                employees[0], survey_data(publish_date, target_employees=[employees[1].pk])
            )

    @pytest.mark.parametrize(
        "overrides,code",
        [
            ({"name": "  "}, "missing_name"),
            ({"name": "x" * 201}, "invalid_name"),
            ({"duration_days": 0}, "invalid_duration"),
            ({"duration_days": 366}, "invalid_duration"),
            ({"publish_date": "not a date"}, "invalid_publish_date"),
            ({"target_employees": ["abc"]}, "invalid_targets"),
            ({"target_employees": "12"}, "invalid_targets"),
            ({"target_employees": [True]}, "invalid_targets"),
        ],
    )
    def test_invalid_input_writes_nothing(
        self, svc, admin_user, employees, publish_date, overrides, code
    ):
        data = survey_data(publish_date, target_employees=[employees[0].pk])
        data.update(overrides)
        with pytest.raises(InvalidInput) as exc:
            svc.lifecycle.create_survey(admin_user, data)
        assert exc.value.code == code
        assert not Survey.objects.exists()

    def test_requires_a_target(self, svc, admin_user, publish_date):
        with pytest.raises(InvalidInput) as exc:
            svc.lifecycle.create_survey(admin_user, survey_data(publish_date))
        assert exc.value.code == "missing_target"

    def test_empty_department_creates_nothing(
        self, svc, admin_user, department, publish_date
    ):
        with pytest.raises(InvalidInput) as exc:
            svc.lifecycle.create_survey(
                admin_user, survey_data(publish_date, department="eng")
            )
        assert exc.value.code == "no_target_users"
        assert not Survey.objects.exists()
        assert not ConsentRecord.objects.exists()

    def test_unknown_department(self, svc, admin_user, publish_date):
        with pytest.raises(NotFound) as exc:
            svc.lifecycle.create_survey(
                admin_user, survey_data(publish_date, department="nope")
            )
        assert exc.value.code == "department_not_found"

    def test_email_failure_does_not_undo_creation(
        self, svc, admin_user, employees, publish_date
    ):
        def broken_sender(to_email, subject, body):
            raise ConnectionError("smtp down")

        svc.dispatcher.sender = broken_sender
        result = svc.lifecycle.create_survey(
            admin_user, survey_data(publish_date, target_employees=[employees[0].pk])
        )
        assert result["email_results"]["failed"] == 1
        assert result["email_results"]["errors"][0]["error"] == "smtp down"
        record = ConsentRecord.objects.get(survey=result["survey"])
        assert record.email_sent is False
        assert result["survey"].consent_email_sent is False


class TestUpdateAndDelete:
    def test_update_recomputes_end_date(self, svc, admin_user, survey):
        svc.lifecycle.update_survey(admin_user, survey, {"duration_days": 14})
        survey.refresh_from_db()
        assert survey.end_date == survey.publish_date + timedelta(days=14)

    def test_status_is_not_editable(self, svc, admin_user, survey):
        with pytest.raises(InvalidInput) as exc:
            svc.lifecycle.update_survey(admin_user, survey, {"status": "closed"})
        assert exc.value.code == "status_not_editable"

    def test_unknown_fields_rejected(self, svc, admin_user, survey):
        with pytest.raises(InvalidInput) as exc:
            svc.lifecycle.update_survey(admin_user, survey, {"colour": "red"})
        assert exc.value.code == "unknown_fields"

    def test_targets_cannot_edit(self, svc, employees, survey):
        with pytest.raises(PermissionDenied):
            svc.lifecycle.update_survey(employees[0], survey, {"name": "Mine"})

    def test_delete_keeps_attempts_and_responses(
        self, svc, admin_user, employees, survey, open_survey
    ):
        open_survey(survey)
        start = svc.attempts.start(survey.pk, ParticipantIdentity.anonymous())
        question = survey.questions.first()
        svc.responses.submit(survey.pk, question.pk, start.attempt, "Low")

        svc.lifecycle.delete_survey(admin_user, survey)

        assert not Survey.objects.filter(pk=survey.pk).exists()
        assert not ConsentRecord.objects.exists()
        assert Attempt.objects.get(pk=start.attempt.pk).survey_id is None
        response = Response.objects.get()
        assert response.survey_id is None
        assert response.question_id is None
        assert AuditLog.objects.filter(action=AuditLog.Action.DELETE).exists()


class TestStatus:
    def test_forward_transition(self, svc, admin_user, survey):
        svc.lifecycle.advance_status(admin_user, survey, Survey.Status.ACTIVE)
        survey.refresh_from_db()
        assert survey.status == Survey.Status.ACTIVE
        log = AuditLog.objects.get(action=AuditLog.Action.STATUS_CHANGE)
        assert log.metadata == {"from": "pending_consent", "to": "active"}

    def test_backward_transition_rejected(self, svc, admin_user, survey):
        svc.lifecycle.advance_status(admin_user, survey, Survey.Status.COMPLETED)
        with pytest.raises(StateConflict) as exc:
            svc.lifecycle.advance_status(admin_user, survey, Survey.Status.ACTIVE)
        assert exc.value.code == "invalid_transition"
        survey.refresh_from_db()
        assert survey.status == Survey.Status.COMPLETED

    @pytest.mark.parametrize(
        "terminal,target",
        [
            (Survey.Status.COMPLETED, Survey.Status.CLOSED),
            (Survey.Status.CLOSED, Survey.Status.COMPLETED),
        ],
    )
    def test_terminal_states_are_final(self, svc, admin_user, survey, terminal, target):
        svc.lifecycle.advance_status(admin_user, survey, terminal)
        with pytest.raises(StateConflict) as exc:
            svc.lifecycle.advance_status(admin_user, survey, target)
        assert exc.value.code == "invalid_transition"
        survey.refresh_from_db()
        assert survey.status == terminal
        # Repeating the terminal status stays a no-op
        svc.lifecycle.advance_status(admin_user, survey, terminal)

    def test_close_from_non_terminal_state(self, svc, admin_user, survey):
        svc.lifecycle.advance_status(admin_user, survey, Survey.Status.ACTIVE)
        svc.lifecycle.advance_status(admin_user, survey, Survey.Status.CLOSED)
        survey.refresh_from_db()
        assert survey.status == Survey.Status.CLOSED

    def test_same_status_is_a_no_op(self, svc, admin_user, survey):
        svc.lifecycle.advance_status(admin_user, survey, Survey.Status.PENDING_CONSENT)
        assert not AuditLog.objects.filter(
            action=AuditLog.Action.STATUS_CHANGE
        ).exists()

    def test_unknown_status(self, svc, admin_user, survey):
        with pytest.raises(InvalidInput) as exc:
            svc.lifecycle.advance_status(admin_user, survey, "paused")
        assert exc.value.code == "invalid_status"

    def test_creator_without_admin_role_cannot_transition(
        self, svc, employees, survey
    ):
        with pytest.raises(PermissionDenied):
            svc.lifecycle.advance_status(employees[0], survey, Survey.Status.ACTIVE)

    def test_reconcile_is_idempotent(self, svc, survey, publish_date):
        assert svc.lifecycle.reconcile_statuses() == {"activated": 0, "completed": 0}

        opened = publish_date + timedelta(hours=1)
        assert svc.lifecycle.reconcile_statuses(now=opened) == {
            "activated": 1,
            "completed": 0,
        }
        assert svc.lifecycle.reconcile_statuses(now=opened) == {
            "activated": 0,
            "completed": 0,
        }

        after = survey.end_date + timedelta(seconds=1)
        assert svc.lifecycle.reconcile_statuses(now=after)["completed"] == 1
        survey.refresh_from_db()
        assert survey.status == Survey.Status.COMPLETED

    def test_reconcile_completes_missed_window(self, svc, survey):
        later = survey.end_date + timedelta(days=1)
        assert svc.lifecycle.reconcile_statuses(now=later) == {
            "activated": 0,
            "completed": 1,
        }

    def test_current_status_follows_the_clock(self, survey):
        assert survey.current_status() == Survey.LiveStatus.UPCOMING
        assert survey.current_status(survey.publish_date) == Survey.LiveStatus.ACTIVE
        assert survey.current_status(survey.end_date) == Survey.LiveStatus.ACTIVE
        assert (
            survey.current_status(survey.end_date + timedelta(microseconds=1))
            == Survey.LiveStatus.CLOSED
        )


class TestQuestions:
    def test_questions_are_ordered(self, survey):
        assert list(survey.questions.values_list("order", flat=True)) == [0, 1]

    def test_invalid_batch_creates_nothing(self, svc, admin_user, survey):
        with pytest.raises(InvalidInput) as exc:
            svc.lifecycle.add_questions(
                admin_user,
                survey,
                [
                    {"text": "Fine", "options": ["A", "B"]},
                    {"text": "Too few", "options": ["Only"]},
                    {"text": "", "options": ["A", "B", "C", "D", "E"]},
                ],
            )
        fields = [(e["index"], e["field"]) for e in exc.value.errors]
        assert fields == [(1, "options"), (2, "text"), (2, "options")]
        assert survey.questions.count() == 2

    def test_delete_question_closes_the_gap(self, svc, admin_user, survey):
        svc.lifecycle.add_questions(
            admin_user, survey, [{"text": "Third", "options": ["A", "B"]}]
        )
        first = survey.questions.get(order=0)
        svc.lifecycle.delete_question(admin_user, survey, first.pk)
        assert list(survey.questions.values_list("text", "order")) == [
            ("Do you feel supported by your manager?", 0),
            ("Third", 1),
        ]

    def test_delete_unknown_question(self, svc, admin_user, survey):
        with pytest.raises(NotFound):
            svc.lifecycle.delete_question(admin_user, survey, 999999)
        assert Question.objects.filter(survey=survey).count() == 2

    def test_update_question(self, svc, admin_user, survey):
        question = survey.questions.get(order=1)
        svc.lifecycle.update_question(
            admin_user,
            survey,
            question.pk,
            {"text": "  Reworded  ", "options": ["Yes", "No", "Sometimes"]},
        )
        question.refresh_from_db()
        assert question.text == "Reworded"
        assert question.options == ["Yes", "No", "Sometimes"]
        assert question.parameter == "support"

    def test_update_question_validates_like_create(self, svc, admin_user, survey):
        question = survey.questions.first()
        with pytest.raises(InvalidInput) as exc:
            svc.lifecycle.update_question(
                admin_user, survey, question.pk, {"options": ["Same", "Same"]}
            )
        assert exc.value.code == "invalid_question"
        assert exc.value.errors[0]["field"] == "options"
        with pytest.raises(InvalidInput) as exc:
            svc.lifecycle.update_question(admin_user, survey, question.pk, {"order": 5})
        assert exc.value.code == "unknown_fields"

    def test_options_are_frozen_once_answered(
        self, svc, admin_user, survey, open_survey
    ):
        open_survey(survey)
        question = survey.questions.first()
        attempt = svc.attempts.start(survey.pk, ParticipantIdentity.anonymous()).attempt
        svc.responses.submit(survey.pk, question.pk, attempt, "Low")
        with pytest.raises(StateConflict) as exc:
            svc.lifecycle.update_question(
                admin_user, survey, question.pk, {"options": ["A", "B"]}
            )
        assert exc.value.code == "question_answered"
        svc.lifecycle.update_question(admin_user, survey, question.pk, {"text": "New"})

    def test_update_question_of_another_survey(self, svc, admin_user, survey):
        with pytest.raises(NotFound):
            svc.lifecycle.update_question(admin_user, survey, 999999, {"text": "X"})

    def test_targets_cannot_update_questions(self, svc, employees, survey):
        question = survey.questions.first()
        with pytest.raises(PermissionDenied):
            svc.lifecycle.update_question(employees[0], survey, question.pk, {"text": "X"})


def test_end_date_follows_publish_date_on_save(admin_user):
    publish = timezone.now()
    survey = Survey.objects.create(
        name="Direct", publish_date=publish, duration_days=3, created_by=admin_user
    )
    assert survey.end_date == publish + timedelta(days=3)
    assert len(survey.anonymous_token) == 64
