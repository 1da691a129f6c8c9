from datetime import datetime, timedelta

import pytest

from tasklynk.extensions import db
from tasklynk.models import EmailLog

SENDER = "support@tasklynk.co.ke"


@pytest.fixture()
def audience(make_user):
    admin_id = make_user("admin@example.com", role="admin")
    make_user("w1@example.com", role="freelancer")
    make_user("w2@example.com", role="freelancer")
    make_user("pending@example.com", role="freelancer", approved=False)
    client_id = make_user("client@example.com", role="client")
    return {"admin": admin_id, "client": client_id}


def _compose(client, **overrides):
    payload = {
        "from_email": SENDER,
        "recipient_type": "freelancers",
        "subject": "Platform update",
        "body": "<p>New orders are available.</p>",
    }
    payload.update(overrides)
    return client.post("/api/admin/emails/compose", json=payload)


def _log_usage(app, count, created_at=None):
    with app.app_context():
        db.session.add(EmailLog(
            sent_by=1,
            sent_to="all_users",
            recipient_type="all_users",
            recipient_count=count,
            from_email=SENDER,
            subject="Earlier",
            body="",
            status="sent",
            created_at=created_at or datetime.utcnow(),
        ))
        db.session.commit()


def test_compose_sends_to_approved_freelancers_only(app, client, login, audience, outbox):
    login("admin@example.com")
    resp = _compose(client)
    assert resp.status_code == 201
    data = resp.get_json()
    assert data["status"] == "sent"
    assert data["sent"] == 2
    assert data["dailyUsage"] == {"used": 2, "limit": 100, "remaining": 98}
    assert sorted(m["to"] for m in outbox) == ["w1@example.com", "w2@example.com"]
    assert all(m["sender"] == SENDER for m in outbox)
    with app.app_context():
        log = db.session.get(EmailLog, data["emailLogId"])
        assert log.sent_to == "all_freelancers"
        assert log.recipient_count == 2
        assert log.failed_recipients is None


def test_quota_is_checked_before_any_send(app, client, login, audience, outbox):
    _log_usage(app, 99)
    login("admin@example.com")
    resp = _compose(client)
    assert resp.status_code == 429
    data = resp.get_json()
    assert data["code"] == "DAILY_LIMIT_EXCEEDED"
    assert data["remaining"] == 1
    assert data["used"] == 99
    assert data["requested"] == 2
    assert outbox == []
    with app.app_context():
        assert EmailLog.query.count() == 1


def test_yesterdays_sends_do_not_count(app, client, login, audience, outbox):
    _log_usage(app, 100, created_at=datetime.utcnow() - timedelta(days=1, hours=1))
    login("admin@example.com")
    resp = _compose(client)
    assert resp.status_code == 201
    assert resp.get_json()["dailyUsage"]["used"] == 2


def test_partial_delivery_is_logged(app, client, login, audience, monkeypatch):
    monkeypatch.setattr(
        "tasklynk.bulk_email.send_email",
        lambda to, subject, html=None, sender=None: to != "w2@example.com",
    )
    login("admin@example.com")
    data = _compose(client).get_json()
    assert data["status"] == "partial"
    assert data["sent"] == 1
    assert data["failed"] == 1
    with app.app_context():
        log = db.session.get(EmailLog, data["emailLogId"])
        assert "w2@example.com" in log.failed_recipients


def test_individual_and_direct_recipients(client, login, audience, outbox):
    login("admin@example.com")
    resp = _compose(client, recipient_type="individual", recipient_ids=[audience["client"], 999])
    assert resp.get_json()["total"] == 1
    resp = _compose(
        client,
        recipient_type="direct",
        recipient_emails=["a@example.org", " a@example.org ", "b@example.org"],
        attachment_urls=["https://files.example.org/brief.pdf?x=1&y=2"],
    )
    assert resp.get_json()["total"] == 2
    assert "https://files.example.org/brief.pdf?x=1&amp;y=2" in outbox[-1]["html"]


@pytest.mark.parametrize(
    "overrides, code",
    [
        ({"from_email": ""}, "MISSING_FROM_EMAIL"),
        ({"from_email": "me@gmail.com"}, "INVALID_FROM_EMAIL"),
        ({"recipient_type": "everyone"}, "INVALID_RECIPIENT_TYPE"),
        ({"recipient_type": "individual"}, "MISSING_RECIPIENT_IDS"),
        ({"subject": "  "}, "MISSING_SUBJECT"),
        ({"body": ""}, "MISSING_BODY"),
        ({"job_id": "12"}, "INVALID_JOB_ID"),
        ({"recipient_type": "direct", "recipient_emails": []}, "MISSING_RECIPIENT_EMAILS"),
        ({"recipient_type": "individual", "recipient_ids": [999]}, "NO_RECIPIENTS_FOUND"),
    ],
)
def test_compose_validation_errors(client, login, audience, outbox, overrides, code):
    login("admin@example.com")
    resp = _compose(client, **overrides)
    assert resp.status_code == 400
    assert resp.get_json()["code"] == code
    assert outbox == []


def test_only_admins_can_send_or_list(client, login, audience, outbox):
    login("client@example.com")
    assert _compose(client).status_code == 403
    assert client.get("/api/admin/emails").status_code == 403


def test_email_log_listing_reports_usage(app, client, login, audience, outbox):
    _log_usage(app, 10)
    login("admin@example.com")
    _compose(client)
    data = client.get("/api/admin/emails").get_json()
    assert len(data["logs"]) == 2
    assert data["dailyUsage"] == {"used": 12, "limit": 100, "remaining": 88}
