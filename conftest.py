from datetime import timedelta
import itertools
import json
from types import SimpleNamespace
import uuid

from django.contrib.auth import get_user_model
from django.utils import timezone
import pytest

from staffpulse_app.core.models import Department, EmployeeProfile
from staffpulse_app.surveys.access_tokens import AccessTokenRegistry
from staffpulse_app.surveys.attempts import AttemptTracker
from staffpulse_app.surveys.consent import ConsentLedger
from staffpulse_app.surveys.lifecycle import SurveyLifecycle
from staffpulse_app.surveys.models import Survey
from staffpulse_app.surveys.notifications import NotificationDispatcher
from staffpulse_app.surveys.responses import ResponseStore

User = get_user_model()
TEST_PASSWORD = "test-pass"

QUESTIONS = [
    {
        "text": "How satisfied are you with your workload?",
        "options": ["Low", "Medium", "High"],
        "parameter": "workload",
    },
    {
        "text": "Do you feel supported by your manager?",
        "options": ["Yes", "No"],
        "parameter": "support",
    },
]


class SequentialTokenGenerator:
    """Deterministic stand-in for RandomTokenGenerator."""

    def __init__(self):
        self.counter = itertools.count(1)

    def token_hex(self, nbytes=32):
        return f"{next(self.counter):0{nbytes * 2}x}"

    def token_urlsafe(self, nbytes=24):
        return f"tok-{next(self.counter):06d}"

    def uuid(self):
        return uuid.UUID(int=next(self.counter))


@pytest.fixture
def tokens():
    return SequentialTokenGenerator()


@pytest.fixture
def svc(tokens):
    dispatcher = NotificationDispatcher()
    registry = AccessTokenRegistry(tokens=tokens, dispatcher=dispatcher)
    consent = ConsentLedger(tokens=tokens, dispatcher=dispatcher)
    return SimpleNamespace(
        tokens=tokens,
        dispatcher=dispatcher,
        registry=registry,
        consent=consent,
        lifecycle=SurveyLifecycle(
            tokens=tokens, dispatcher=dispatcher, consent=consent, registry=registry
        ),
        attempts=AttemptTracker(tokens=tokens, registry=registry),
        responses=ResponseStore(tokens=tokens),
    )


@pytest.fixture
def department(db):
    return Department.objects.create(code="eng", name="Engineering")


@pytest.fixture
def make_user(db):
    def _make(username, role=EmployeeProfile.Role.EMPLOYEE, department=None, manager=None):
        user = User.objects.create_user(
            username=username,
            email=f"{username}@example.com",
            password=TEST_PASSWORD,
            first_name=username.capitalize(),
        )
        EmployeeProfile.objects.create(
            user=user, role=role, department=department, manager=manager
        )
        return user

    return _make


@pytest.fixture
def admin_user(make_user):
    return make_user("admin", role=EmployeeProfile.Role.ADMIN)


@pytest.fixture
def employees(make_user, department):
    return [make_user(name, department=department) for name in ("alice", "bob", "carol")]


@pytest.fixture
def publish_date():
    return timezone.now() + timedelta(days=2)


@pytest.fixture
def survey(svc, admin_user, employees, publish_date):
    """A pending-consent survey for the three employees, with two questions."""
    result = svc.lifecycle.create_survey(
        admin_user,
        {
            "name": "Team pulse",
            "publish_date": publish_date,
            "duration_days": 7,
            "target_employees": [u.pk for u in employees],
        },
    )
    survey = result["survey"]
    svc.lifecycle.add_questions(admin_user, survey, QUESTIONS)
    return survey


@pytest.fixture
def consent_token():
    def _token(survey, user):
        return survey.consent_records.get(user=user).consent_token

    return _token


@pytest.fixture
def open_survey():
    """Move a survey's window so it is live now and mark it active."""

    def _open(survey, started=timedelta(hours=1)):
        publish = timezone.now() - started
        Survey.objects.filter(pk=survey.pk).update(
            publish_date=publish,
            end_date=publish + timedelta(days=survey.duration_days),
            status=Survey.Status.ACTIVE,
        )
        survey.refresh_from_db()
        return survey

    return _open


@pytest.fixture
def auth_headers(client):
    def _auth(username, password=TEST_PASSWORD):
        r = client.post(
            "/api/token",
            data=json.dumps({"username": username, "password": password}),
            content_type="application/json",
        )
        assert r.status_code == 200
        return {"HTTP_AUTHORIZATION": f"Bearer {r.json()['access']}"}

    return _auth
