import datetime
import os
import tempfile

# Configure the app before it is imported: throwaway sqlite file, plain-HTTP cookies
_db_dir = tempfile.mkdtemp(prefix="shot-tracker-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'test.db')}"
os.environ["ENVIRONMENT"] = "development"
os.environ["AUTH_SECRET"] = "test-secret-1234567890"

import pytest
from fastapi.testclient import TestClient

import main
import models

UTC = datetime.timezone.utc
NOW = datetime.datetime(2025, 1, 10, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def fresh_db():
    models.Base.metadata.drop_all(bind=models.engine)
    models.Base.metadata.create_all(bind=models.engine)
    yield


@pytest.fixture()
def client():
    main.app.dependency_overrides[main.get_now] = lambda: NOW
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()


@pytest.fixture()
def set_now():
    def _set(value: datetime.datetime):
        main.app.dependency_overrides[main.get_now] = lambda: value
    return _set


@pytest.fixture()
def sent_links(monkeypatch):
    links = []
    monkeypatch.setattr(main, "send_login_link", lambda email, link: links.append((email, link)))
    return links


@pytest.fixture()
def login(client, sent_links):
    """Run the magic-link flow for an email and return the callback response."""
    def _login(email="user@example.com"):
        resp = client.post("/api/auth/login", json={"email": email})
        assert resp.status_code == 200
        token = sent_links[-1][1].split("token=", 1)[1]
        return client.get("/api/auth/callback", params={"token": token}, follow_redirects=False)
    return _login


@pytest.fixture()
def medication(client, login):
    """Signed-in user with a weekly 2.5 mg medication."""
    login()
    resp = client.post("/api/onboarding", json={
        "full_name": "Sam Example",
        "medication": {
            "name": "Tirzepatide",
            "dosage": 2.5,
            "unit": "mg",
            "frequency": "weekly",
            "preferred_injection_site": "left_thigh",
        },
    })
    assert resp.status_code == 200
    return resp.json()["medication"]
