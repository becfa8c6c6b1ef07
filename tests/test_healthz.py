import pytest


@pytest.mark.django_db
def test_healthz_is_public(client):
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.content == b"ok"
