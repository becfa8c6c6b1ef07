"""
Security tests to verify privilege escalation protection.

These tests verify that employees and managers cannot act as administrators
and that identified answers never leak without consent.
"""

import json
from datetime import timedelta

from django.contrib.auth import get_user_model
from django.utils import timezone
import pytest

from staffpulse_app.core.models import EmployeeProfile
from staffpulse_app.surveys.models import AccessToken, ConsentRecord, Survey

User = get_user_model()
TEST_PASSWORD = "test-pass"


def auth_hdr(client, username: str, password: str = TEST_PASSWORD) -> dict:
    """Helper to get JWT auth headers for API tests."""
    resp = client.post(
        "/api/token",
        data=json.dumps({"username": username, "password": password}),
        content_type="application/json",
    )
    assert resp.status_code == 200, resp.content
    return {"HTTP_AUTHORIZATION": f"Bearer {resp.json()['access']}"}


def post(client, url, payload, hdrs):
    return client.post(
        url, data=json.dumps(payload), content_type="application/json", **hdrs
    )


@pytest.mark.django_db
def test_manager_cannot_create_surveys(client, make_user, employees):
    """Only the admin role creates surveys; managers are participants."""
    make_user("mgr", role=EmployeeProfile.Role.MANAGER)
    resp = post(
        client,
        "/api/surveys/",
        {
            "name": "Shadow survey",
            "publish_date": (timezone.now() + timedelta(days=1)).isoformat(),
            "target_employees": [employees[0].pk],
        },
        auth_hdr(client, "mgr"),
    )
    assert resp.status_code == 403
    assert not Survey.objects.exists()


@pytest.mark.django_db
def test_profile_role_is_not_writable_through_the_api(client, employees):
    """The directory is read-only, so nobody can promote themselves."""
    hdrs = auth_hdr(client, "alice")
    resp = client.patch(
        f"/api/employees/{employees[0].pk}/",
        data=json.dumps({"role": "admin"}),
        content_type="application/json",
        **hdrs,
    )
    assert resp.status_code == 405
    assert employees[0].profile.role == EmployeeProfile.Role.EMPLOYEE


@pytest.mark.django_db
def test_target_employee_cannot_manage_survey(client, survey, employees):
    hdrs = auth_hdr(client, "alice")
    base = f"/api/surveys/{survey.pk}"
    attempts = [
        ("status", {"status": "closed"}),
        ("tokens", {"employees": [{"email": "x@example.com"}]}),
        ("questions", [{"text": "Q", "options": ["A", "B"]}]),
    ]
    for path, payload in attempts:
        assert post(client, f"{base}/{path}", payload, hdrs).status_code == 403
    assert client.delete(f"{base}/", **hdrs).status_code == 403
    assert Survey.objects.get(pk=survey.pk).status == Survey.Status.PENDING_CONSENT
    assert not AccessToken.objects.exists()


@pytest.mark.django_db
def test_admin_created_survey_creator_cannot_revoke_tokens(
    client, svc, survey, make_user, admin_user
):
    """Token revocation is reserved for administrators, not survey creators."""
    creator = make_user("creator")
    Survey.objects.filter(pk=survey.pk).update(created_by=creator)
    token = svc.registry.generate(
        admin_user, survey, [{"email": "guest@example.com"}]
    )["tokens"][0]
    resp = client.delete(
        f"/api/surveys/{survey.pk}/tokens/{token.token}", **auth_hdr(client, "creator")
    )
    assert resp.status_code == 403
    assert AccessToken.objects.filter(pk=token.pk).exists()


@pytest.mark.django_db
def test_employee_cannot_read_colleague_answers(client, survey, employees, consent_token):
    client.post(
        f"/api/consent/{consent_token(survey, employees[1])}",
        data=json.dumps({"consent_given": True}),
        content_type="application/json",
    )
    resp = client.get(
        f"/api/surveys/{survey.pk}/responses/users/{employees[1].pk}",
        **auth_hdr(client, "alice"),
    )
    assert resp.status_code == 403


@pytest.mark.django_db
def test_consent_cannot_be_changed_by_replaying_the_link(
    client, survey, employees, consent_token
):
    token = consent_token(survey, employees[0])
    url = f"/api/consent/{token}"
    client.post(
        url, data=json.dumps({"consent_given": False}), content_type="application/json"
    )
    resp = client.post(
        url, data=json.dumps({"consent_given": True}), content_type="application/json"
    )
    assert resp.status_code == 409
    assert ConsentRecord.objects.get(consent_token=token).consent_given is False

