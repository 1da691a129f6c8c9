from datetime import datetime, timedelta
import os
import tempfile

import pytest

from tasklynk import create_app
from tasklynk.extensions import db, mail
from tasklynk.models import Job, User

PASSWORD = "pass12345"


@pytest.fixture()
def app(monkeypatch, tmp_path):
    fd, test_db_path = tempfile.mkstemp(prefix="tasklynk_test_", suffix=".db")
    os.close(fd)
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{test_db_path}",
        "DB_AUTO_CREATE": True,
        "UPLOAD_FOLDER": str(tmp_path / "uploads"),
        "ADMIN_EMAILS": [],
        "ADMIN_BOOTSTRAP_EMAIL": "",
        "ADMIN_BOOTSTRAP_PASSWORD": "",
        "RESEND_API_KEY": "",
        "MPESA_WEBHOOK_SECRET": "",
        "MAIL_SUPPRESS_SEND": True,
    })
    monkeypatch.setattr(mail, "send", lambda _msg: None)
    with app.app_context():
        db.drop_all()
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()
    if os.path.exists(test_db_path):
        try:
            os.remove(test_db_path)
        except PermissionError:
            pass


@pytest.fixture()
def client(app):
    return app.test_client()


@pytest.fixture()
def make_user(app):
    def _make(email, name=None, role="client", approved=True, **fields):
        with app.app_context():
            user = User(email=email, name=name or email.split("@")[0].title(), role=role, approved=approved, **fields)
            user.set_password(PASSWORD)
            db.session.add(user)
            db.session.commit()
            return user.id
    return _make


@pytest.fixture()
def make_job(app):
    def _make(client_id, freelancer_id=None, status="pending", amount=600.0, pages=2, slides=0,
              work_type="Essay", **fields):
        with app.app_context():
            job = Job(
                client_id=client_id,
                assigned_freelancer_id=freelancer_id,
                title=fields.pop("title", "History Essay"),
                instructions="Need a 550-word essay on the industrial revolution.",
                work_type=work_type,
                pages=pages,
                slides=slides,
                amount=amount,
                status=status,
                actual_deadline=fields.pop("actual_deadline", datetime.utcnow() + timedelta(days=3)),
                **fields,
            )
            db.session.add(job)
            db.session.flush()
            job.display_id = f"TL{job.id:06d}"
            db.session.commit()
            return job.id
    return _make


@pytest.fixture()
def login(client):
    def _login(email, password=PASSWORD):
        resp = client.post("/api/auth/login", json={"email": email, "password": password})
        assert resp.status_code == 200, resp.get_json()
        return resp
    return _login


@pytest.fixture()
def outbox(monkeypatch):
    """Capture every message handed to the mail layer."""
    sent = []

    def _send(message):
        sent.append(message)
        return True

    monkeypatch.setattr("tasklynk.bulk_email.send_email", lambda to, subject, html=None, sender=None, body="": _send(
        {"to": to, "subject": subject, "html": html, "sender": sender}
    ))
    monkeypatch.setattr("tasklynk.notifications.send_email", lambda to, subject, body="", html=None, sender=None: _send(
        {"to": to, "subject": subject, "body": body}
    ))
    return sent
