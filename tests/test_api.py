import csv
import datetime
import io
import time

import main
import models

UTC = datetime.timezone.utc


def log_shot(client, medication_id, when, **fields):
    payload = {"medication_id": medication_id, "injection_date": when}
    payload.update(fields)
    resp = client.post("/api/injections", json=payload)
    assert resp.status_code == 200, resp.text
    return resp.json()


# Auth

def test_first_login_creates_profile_and_goes_to_onboarding(client, login):
    resp = login("New.User@Example.com")

    assert resp.status_code == 303
    assert resp.headers["location"] == f"{main.FRONTEND_URL}/onboarding"
    assert "auth_token" in resp.cookies

    me = client.get("/api/auth/me")
    assert me.status_code == 200
    assert me.json()["email"] == "new.user@example.com"
    assert me.json()["timezone"] == "UTC"


def test_login_with_medication_goes_to_dashboard(client, login, medication):
    client.post("/api/auth/logout")
    resp = login()
    assert resp.headers["location"] == f"{main.FRONTEND_URL}/dashboard"


def test_login_link_works_once(client, sent_links):
    client.post("/api/auth/login", json={"email": "user@example.com"})
    token = sent_links[-1][1].split("token=", 1)[1]

    first = client.get("/api/auth/callback", params={"token": token}, follow_redirects=False)
    second = client.get("/api/auth/callback", params={"token": token}, follow_redirects=False)

    assert first.headers["location"].endswith("/onboarding")
    assert second.headers["location"] == f"{main.FRONTEND_URL}/auth/login?error=invalid_link"


def test_tampered_and_expired_links_are_rejected(client, sent_links):
    client.post("/api/auth/login", json={"email": "user@example.com"})
    token = sent_links[-1][1].split("token=", 1)[1]
    token_id = token.split(".", 1)[0]

    tampered = client.get("/api/auth/callback", params={"token": token_id + ".wrong"}, follow_redirects=False)
    assert tampered.headers["location"].endswith("error=invalid_link")

    db = models.SessionLocal()
    try:
        login_token = db.query(models.LoginToken).filter(models.LoginToken.id == token_id).first()
        login_token.expires_at = models.utcnow() - datetime.timedelta(minutes=1)
        db.commit()
    finally:
        db.close()

    expired = client.get("/api/auth/callback", params={"token": token}, follow_redirects=False)
    assert expired.headers["location"].endswith("error=invalid_link")


def test_invalid_email_is_rejected(client):
    assert client.post("/api/auth/login", json={"email": "not-an-email"}).status_code == 422


def test_data_endpoints_require_auth(client):
    for path in ("/api/auth/me", "/api/medications", "/api/injections", "/api/dashboard", "/api/stats", "/api/calendar"):
        assert client.get(path).status_code == 401

    forged = {"Cookie": "auth_token=someone:123:forged"}
    assert client.get("/api/medications", headers=forged).status_code == 401


def test_session_token_round_trip():
    token = main.create_auth_token("profile-1")
    assert main.verify_auth_token(token) == "profile-1"
    assert main.verify_auth_token(token + "0") is None


def test_non_ascii_signature_is_rejected_not_raised():
    assert main.verify_auth_token(f"abc:{int(time.time())}:\u00e9") is None


def test_non_ascii_session_cookie_gets_401(client):
    cookie = f"auth_token=abc:{int(time.time())}:\u00e9".encode("latin-1")
    assert client.get("/api/medications", headers={"Cookie": cookie}).status_code == 401


def test_logout_clears_session(client, login):
    login()
    client.post("/api/auth/logout")
    assert client.get("/api/auth/me").status_code == 401


# Profile and onboarding

def test_update_profile(client, login):
    login()
    resp = client.put("/api/profile", json={"full_name": "Alex", "timezone": "Europe/Berlin"})

    assert resp.status_code == 200
    assert resp.json()["full_name"] == "Alex"
    assert resp.json()["timezone"] == "Europe/Berlin"


def test_unknown_timezone_is_rejected(client, login):
    login()
    assert client.put("/api/profile", json={"timezone": "Mars/Olympus"}).status_code == 422


def test_onboarding_requires_name_and_valid_dosage(client, login):
    login()
    medication = {"name": "Semaglutide", "dosage": 0.25, "unit": "mg", "frequency": "weekly"}

    assert client.post("/api/onboarding", json={"full_name": "  ", "medication": medication}).status_code == 422
    bad_dose = dict(medication, dosage=0)
    assert client.post("/api/onboarding", json={"full_name": "Sam", "medication": bad_dose}).status_code == 422


def test_onboarding_stores_name_and_medication(client, medication):
    assert medication["frequency_days"] == 7
    assert medication["frequency_label"] == "Weekly"
    assert client.get("/api/profile").json()["full_name"] == "Sam Example"


# Medications

def test_standard_frequencies_fill_interval(client, login):
    login()
    resp = client.post("/api/medications", json={"name": "BPC-157", "dosage": 250, "unit": "mcg", "frequency": "twice_weekly"})

    assert resp.status_code == 200
    assert resp.json()["frequency_days"] == 3.5


def test_custom_frequency_needs_positive_interval(client, login):
    login()
    base = {"name": "Custom", "dosage": 1, "unit": "mL", "frequency": "custom"}

    assert client.post("/api/medications", json=base).status_code == 422
    assert client.post("/api/medications", json=dict(base, frequency_days=0)).status_code == 422

    resp = client.post("/api/medications", json=dict(base, frequency_days=10))
    assert resp.status_code == 200
    assert resp.json()["frequency_days"] == 10


def test_unknown_unit_and_site_are_rejected(client, login):
    login()
    assert client.post("/api/medications", json={"name": "X", "dosage": 1, "unit": "oz"}).status_code == 422
    assert client.post("/api/medications", json={"name": "X", "dosage": 1, "preferred_injection_site": "ear"}).status_code == 422


def test_update_medication_frequency(client, medication):
    resp = client.put(f"/api/medications/{medication['id']}", json={"frequency": "biweekly", "dosage": 5})

    assert resp.status_code == 200
    assert resp.json()["frequency_days"] == 14
    assert resp.json()["dosage"] == 5


def test_deactivated_medications_are_hidden(client, medication):
    assert client.delete(f"/api/medications/{medication['id']}").json() == {"ok": True}

    assert client.get("/api/medications").json() == []
    inactive = client.get("/api/medications", params={"include_inactive": True}).json()
    assert [m["is_active"] for m in inactive] == [False]


def test_medications_are_scoped_to_owner(client, login, medication):
    client.post("/api/auth/logout")
    login("other@example.com")

    assert client.get("/api/medications").json() == []
    assert client.get(f"/api/medications/{medication['id']}").status_code == 404
    resp = client.post("/api/injections", json={"medication_id": medication["id"]})
    assert resp.status_code == 404


# Injections

def test_log_now_uses_medication_defaults(client, medication):
    resp = client.post("/api/injections", json={"medication_id": medication["id"]})

    assert resp.status_code == 200
    shot = resp.json()
    assert shot["dosage"] == 2.5
    assert shot["injection_site"] == "left_thigh"
    assert shot["is_completed"] is True
    assert datetime.datetime.fromisoformat(shot["injection_date"]) == datetime.datetime(2025, 1, 10, 12, 0, tzinfo=UTC)


def test_log_shot_without_preferred_site_defaults_to_abdomen(client, medication):
    client.put(f"/api/medications/{medication['id']}", json={"preferred_injection_site": None})
    shot = client.post("/api/injections", json={"medication_id": medication["id"]}).json()
    assert shot["injection_site"] == "abdomen"


def test_naive_dates_are_profile_local(client, medication):
    client.put("/api/profile", json={"timezone": "America/New_York"})
    shot = log_shot(client, medication["id"], "2025-01-08T09:00:00")

    assert datetime.datetime.fromisoformat(shot["injection_date"]) == datetime.datetime(2025, 1, 8, 14, 0, tzinfo=UTC)


def test_cannot_log_for_inactive_medication(client, medication):
    client.delete(f"/api/medications/{medication['id']}")
    resp = client.post("/api/injections", json={"medication_id": medication["id"]})
    assert resp.status_code == 400


def test_list_injections_newest_first(client, medication):
    log_shot(client, medication["id"], "2025-01-01T09:00:00Z")
    log_shot(client, medication["id"], "2025-01-08T09:00:00Z", injection_site="abdomen", notes="slight bruise")

    shots = client.get("/api/injections").json()
    assert [s["injection_date"][:10] for s in shots] == ["2025-01-08", "2025-01-01"]

    limited = client.get("/api/injections", params={"limit": 1}).json()
    assert len(limited) == 1

    windowed = client.get("/api/injections", params={"start": "2025-01-05T00:00:00Z"}).json()
    assert [s["notes"] for s in windowed] == ["slight bruise"]


def test_export_csv(client, medication):
    log_shot(client, medication["id"], "2025-01-08T09:30:00Z", injection_site="right_arm", notes='felt fine, "no" issues')

    resp = client.get("/api/injections/export.csv")

    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/csv")
    assert 'filename="injection-history-2025-01-10.csv"' in resp.headers["content-disposition"]
    rows = list(csv.reader(io.StringIO(resp.text)))
    assert rows[0] == ["Date", "Time", "Medication", "Dosage", "Unit", "Site", "Notes"]
    assert rows[1] == ["2025-01-08", "09:30", "Tirzepatide", "2.5", "mg", "Right Arm", 'felt fine, "no" issues']


# Dashboard

def test_dashboard_without_medication(client, login):
    login()
    data = client.get("/api/dashboard").json()

    assert data["medication"] is None
    assert data["status"] == {"state": "no_schedule", "days": 0}


def test_dashboard_without_history(client, medication):
    data = client.get("/api/dashboard").json()

    assert data["medication"]["id"] == medication["id"]
    assert data["next_due"] is None
    assert data["days_until_due"] is None
    assert data["status"]["state"] == "no_schedule"


def test_dashboard_due_in(client, medication, set_now):
    log_shot(client, medication["id"], "2025-01-01T09:00:00Z")
    log_shot(client, medication["id"], "2025-01-08T09:00:00Z")
    set_now(datetime.datetime(2025, 1, 10, tzinfo=UTC))

    data = client.get("/api/dashboard").json()

    assert datetime.datetime.fromisoformat(data["next_due"]) == datetime.datetime(2025, 1, 15, 9, 0, tzinfo=UTC)
    assert data["days_until_due"] == 5
    assert data["status"] == {"state": "due_in", "days": 5}
    assert len(data["recent_injections"]) == 2


def test_dashboard_overdue(client, medication, set_now):
    log_shot(client, medication["id"], "2025-01-01T09:00:00Z")
    log_shot(client, medication["id"], "2025-01-08T09:00:00Z")
    set_now(datetime.datetime(2025, 1, 20, tzinfo=UTC))

    data = client.get("/api/dashboard").json()

    assert data["days_until_due"] == -5
    assert data["status"] == {"state": "overdue", "days": 5}


def test_dashboard_shows_five_most_recent(client, medication):
    for day in range(1, 8):
        log_shot(client, medication["id"], f"2025-01-0{day}T09:00:00Z")

    recent = client.get("/api/dashboard").json()["recent_injections"]
    assert [s["injection_date"][:10] for s in recent] == [f"2025-01-0{day}" for day in (7, 6, 5, 4, 3)]


# Stats

def test_stats(client, medication, set_now):
    for when, site in (("2025-01-01T09:00:00Z", "abdomen"),
                       ("2025-01-08T09:00:00Z", "abdomen"),
                       ("2025-01-15T09:00:00Z", "left_arm")):
        log_shot(client, medication["id"], when, injection_site=site)
    set_now(datetime.datetime(2025, 2, 3, tzinfo=UTC))

    data = client.get("/api/stats").json()

    assert data["adherence"] == 100
    assert data["total_logs"] == 3
    assert data["average_interval_days"] == 7
    assert data["sites_used"] == 2
    assert data["monthly"] == [{"month": "2025-01", "label": "Jan 2025", "count": 3}]
    assert data["sites"] == [
        {"site": "abdomen", "count": 2, "percent": 66.7},
        {"site": "left_arm", "count": 1, "percent": 33.3},
    ]
    assert data["status"] == {"state": "overdue", "days": 12}


def test_stats_window_excludes_old_shots(client, medication, set_now):
    log_shot(client, medication["id"], "2024-09-01T09:00:00Z")
    log_shot(client, medication["id"], "2025-01-08T09:00:00Z")
    set_now(datetime.datetime(2025, 1, 10, tzinfo=UTC))

    three_months = client.get("/api/stats").json()
    twelve_months = client.get("/api/stats", params={"months": 12}).json()

    assert three_months["total_logs"] == 1
    assert twelve_months["total_logs"] == 2
    assert [b["month"] for b in twelve_months["monthly"]] == ["2024-09", "2025-01"]


def test_stats_status_uses_shots_before_the_window(client, medication, set_now):
    log_shot(client, medication["id"], "2024-06-01T09:00:00Z")
    set_now(datetime.datetime(2025, 1, 10, tzinfo=UTC))

    stats = client.get("/api/stats").json()
    dashboard = client.get("/api/dashboard").json()

    assert stats["total_logs"] == 0
    assert stats["status"] == {"state": "overdue", "days": 216}
    assert stats["status"] == dashboard["status"]


def test_stats_without_medication(client, login):
    login()
    data = client.get("/api/stats").json()

    assert data["adherence"] == 0
    assert data["total_logs"] == 0
    assert data["medication"] is None


# Calendar

def test_calendar_grid_is_sunday_aligned(client, medication):
    log_shot(client, medication["id"], "2025-01-08T09:00:00Z")

    data = client.get("/api/calendar", params={"year": 2025, "month": 1}).json()

    assert data["label"] == "January 2025"
    weeks = data["weeks"]
    assert len(weeks) == 5
    assert weeks[0][0]["date"] == "2024-12-29"
    assert weeks[0][0]["in_month"] is False
    assert weeks[-1][-1]["date"] == "2025-02-01"

    days = {day["date"]: day for week in weeks for day in week}
    assert len(days["2025-01-08"]["injections"]) == 1
    assert days["2025-01-09"]["injections"] == []
    assert days["2025-01-10"]["is_today"] is True


def test_calendar_buckets_by_local_day(client, medication):
    client.put("/api/profile", json={"timezone": "Asia/Tokyo"})
    log_shot(client, medication["id"], "2025-01-08T20:00:00Z")

    weeks = client.get("/api/calendar", params={"year": 2025, "month": 1}).json()["weeks"]
    days = {day["date"]: day for week in weeks for day in week}

    assert days["2025-01-08"]["injections"] == []
    assert len(days["2025-01-09"]["injections"]) == 1


# Reminders

def test_reminder_crud(client, medication):
    created = client.post("/api/reminders", json={
        "medication_id": medication["id"], "reminder_time": "08:30", "hours_before": 2
    })
    assert created.status_code == 200
    reminder = created.json()
    assert reminder["reminder_time"] == "08:30"

    updated = client.put(f"/api/reminders/{reminder['id']}", json={"is_active": False}).json()
    assert updated["is_active"] is False
    assert updated["hours_before"] == 2

    assert len(client.get("/api/reminders").json()) == 1
    assert client.delete(f"/api/reminders/{reminder['id']}").json() == {"ok": True}
    assert client.get("/api/reminders").json() == []


def test_reminder_rejects_negative_offset(client, medication):
    resp = client.post("/api/reminders", json={
        "medication_id": medication["id"], "reminder_time": "08:30", "hours_before": -1
    })
    assert resp.status_code == 422


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok"}
