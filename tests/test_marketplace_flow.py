import csv
import io
from datetime import datetime, timedelta

from openpyxl import load_workbook

from tasklynk.extensions import db
from tasklynk.models import Bid, Job, JobStatusLog, Notification, User

DEADLINE = (datetime.utcnow() + timedelta(days=5)).strftime("%Y-%m-%dT%H:%M")


def _job_payload(**overrides):
    payload = {
        "title": "Industrial Revolution Essay",
        "instructions": "Two pages, APA 7, at least five sources.",
        "work_type": "Essay",
        "pages": 2,
        "slides": 0,
        "amount": 600,
        "actual_deadline": DEADLINE,
    }
    payload.update(overrides)
    return payload


def test_client_post_freelancer_bid_admin_assign_flow(app, client, login, make_user):
    make_user("admin@example.com", role="admin")

    resp = client.post("/api/auth/register", json={
        "email": "Client@Example.com", "name": "Client User", "password": "pass12345", "role": "client",
    })
    assert resp.status_code == 201
    assert resp.get_json()["approved"] is True
    assert resp.get_json()["email"] == "client@example.com"
    client.post("/api/auth/logout")

    resp = client.post("/api/auth/register", json={
        "email": "writer@example.com", "name": "Writer User", "password": "pass12345", "role": "freelancer",
    })
    assert resp.status_code == 201
    writer_id = resp.get_json()["id"]
    assert resp.get_json()["approved"] is False
    client.post("/api/auth/logout")

    login("client@example.com")
    resp = client.post("/api/jobs", json=_job_payload(amount=400))
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "AMOUNT_TOO_LOW"
    assert resp.get_json()["minimumAmount"] == 480
    resp = client.post("/api/jobs", json=_job_payload())
    assert resp.status_code == 201
    job = resp.get_json()
    assert job["status"] == "pending"
    assert job["displayId"] == f"TL{job['id']:06d}"

    login("admin@example.com")
    resp = client.patch(f"/api/jobs/{job['id']}/status", json={"status": "approved"})
    assert resp.status_code == 200
    assert resp.get_json()["job"]["adminApproved"] is True

    login("writer@example.com")
    resp = client.post(f"/api/jobs/{job['id']}/bids", json={"message": "I can do this."})
    assert resp.status_code == 403
    assert resp.get_json()["code"] == "ACCOUNT_NOT_APPROVED"

    login("admin@example.com")
    assert client.post(f"/api/admin/users/{writer_id}/approve").get_json()["approved"] is True

    login("writer@example.com")
    resp = client.post(f"/api/jobs/{job['id']}/bids", json={"message": "I can do this.", "bid_amount": 400})
    assert resp.status_code == 201
    bid_id = resp.get_json()["id"]
    resp = client.post(f"/api/jobs/{job['id']}/bids", json={"message": "Again"})
    assert resp.status_code == 409
    assert resp.get_json()["code"] == "DUPLICATE_BID"

    login("admin@example.com")
    resp = client.post(f"/api/bids/{bid_id}/accept")
    assert resp.status_code == 200
    assert resp.get_json()["job"]["status"] == "assigned"
    assert resp.get_json()["job"]["assignedFreelancerId"] == writer_id
    assert client.post(f"/api/bids/{bid_id}/accept").get_json()["code"] == "BID_NOT_PENDING"

    login("writer@example.com")
    assert client.patch(f"/api/jobs/{job['id']}/status", json={"status": "in_progress"}).status_code == 200
    assert client.patch(f"/api/jobs/{job['id']}/status", json={"status": "delivered"}).status_code == 200

    login("client@example.com")
    resp = client.patch(f"/api/jobs/{job['id']}/status", json={"status": "completed"})
    assert resp.status_code == 403

    login("admin@example.com")
    resp = client.post(f"/api/jobs/{job['id']}/complete")
    assert resp.status_code == 200
    assert resp.get_json()["job"]["status"] == "completed"
    assert resp.get_json()["settlement"]["earnedAmount"] == 400
    resp = client.patch(f"/api/jobs/{job['id']}/status", json={"status": "in_progress"})
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "INVALID_TRANSITION"

    login("client@example.com")
    resp = client.post(f"/api/jobs/{job['id']}/rate", json={"score": 5, "comment": "Great work"})
    assert resp.status_code == 201
    assert resp.get_json()["ratedUserId"] == writer_id
    assert client.post(f"/api/jobs/{job['id']}/rate", json={"score": 4}).status_code == 409

    login("writer@example.com")
    assert client.post(f"/api/jobs/{job['id']}/rate", json={"score": 9}).status_code == 400
    assert client.post(f"/api/jobs/{job['id']}/rate", json={"score": 4}).status_code == 201

    with app.app_context():
        statuses = [row.new_status for row in JobStatusLog.query.filter_by(job_id=job["id"]).order_by(JobStatusLog.id)]
        assert statuses == ["pending", "approved", "assigned", "in_progress", "delivered", "completed"]
        writer = db.session.get(User, writer_id)
        assert writer.completed_jobs == 1
        assert writer.balance == 0
        assert Notification.query.filter_by(user_id=writer_id, type="bid_accepted").count() == 1


def test_accepting_a_bid_rejects_the_others(app, client, login, make_user, make_job):
    client_id = make_user("client@example.com")
    first = make_user("w1@example.com", role="freelancer")
    second = make_user("w2@example.com", role="freelancer")
    make_user("admin@example.com", role="admin")
    job_id = make_job(client_id, status="approved")
    for email in ("w1@example.com", "w2@example.com"):
        login(email)
        client.post(f"/api/jobs/{job_id}/bids", json={})

    login("w1@example.com")
    assert len(client.get(f"/api/jobs/{job_id}/bids").get_json()) == 1

    login("admin@example.com")
    bids = client.get(f"/api/jobs/{job_id}/bids").get_json()
    accepted = next(b for b in bids if b["freelancerId"] == first)
    client.post(f"/api/bids/{accepted['id']}/accept")
    with app.app_context():
        assert Bid.query.filter_by(freelancer_id=second).one().status == "rejected"
    other = next(b for b in bids if b["freelancerId"] == second)
    resp = client.post(f"/api/bids/{other['id']}/accept")
    assert resp.status_code == 409


def test_registration_validation(client, make_user):
    make_user("taken@example.com")
    resp = client.post("/api/auth/register", json={"email": "taken@example.com", "name": "Dup", "password": "pass12345"})
    assert resp.status_code == 400
    assert "email" in resp.get_json()["fields"]
    resp = client.post("/api/auth/register", json={
        "email": "boss@example.com", "name": "Boss", "password": "pass12345", "role": "admin",
    })
    assert resp.status_code == 400
    assert "role" in resp.get_json()["fields"]
    resp = client.post("/api/auth/login", json={"email": "taken@example.com", "password": "wrong-pass"})
    assert resp.status_code == 401
    assert resp.get_json()["code"] == "INVALID_CREDENTIALS"


def test_endpoints_require_login(client):
    resp = client.get("/api/jobs")
    assert resp.status_code == 401
    assert resp.get_json()["code"] == "UNAUTHORIZED"
    resp = client.post("/api/jobs", json=_job_payload())
    assert resp.status_code == 401


def test_job_creation_requires_a_page_or_slide(client, login, make_user):
    make_user("client@example.com")
    login("client@example.com")
    resp = client.post("/api/jobs", json=_job_payload(pages=0, slides=0, amount=100))
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "VALIDATION_ERROR"
    resp = client.post("/api/jobs", json=_job_payload(work_type="Data Analysis (SPSS)", amount=500))
    assert resp.get_json()["minimumAmount"] == 540


def test_job_visibility_by_role(client, login, make_user, make_job):
    owner = make_user("client@example.com")
    make_user("stranger@example.com")
    make_user("writer@example.com", role="freelancer")
    make_user("editor@example.com", role="editor")
    pending = make_job(owner, status="pending")
    open_job = make_job(owner, status="approved", title="Open")
    editing = make_job(owner, status="editing", title="Editing")

    login("stranger@example.com")
    assert client.get("/api/jobs").get_json() == []
    assert client.get(f"/api/jobs/{pending}").status_code == 403

    login("writer@example.com")
    assert [j["id"] for j in client.get("/api/jobs").get_json()] == [open_job]
    assert client.get(f"/api/jobs/{pending}").status_code == 403

    login("editor@example.com")
    assert [j["id"] for j in client.get("/api/jobs").get_json()] == [editing]

    login("client@example.com")
    assert len(client.get("/api/jobs").get_json()) == 3
    assert [j["id"] for j in client.get("/api/jobs?status=approved").get_json()] == [open_job]
    assert client.get("/api/jobs/9999").status_code == 404


def test_client_edits_and_cancels_only_pending_orders(app, client, login, make_user, make_job):
    owner = make_user("client@example.com")
    pending = make_job(owner, status="pending")
    approved = make_job(owner, status="approved")
    login("client@example.com")

    resp = client.patch(f"/api/jobs/{pending}", json={"title": "Renamed", "actual_deadline": "2026-12-01 09:00"})
    assert resp.status_code == 200
    assert resp.get_json()["title"] == "Renamed"
    assert client.patch(f"/api/jobs/{pending}", json={"amount": 10}).status_code == 403
    assert client.patch(f"/api/jobs/{approved}", json={"title": "Nope"}).status_code == 403

    resp = client.delete(f"/api/jobs/{pending}")
    assert resp.status_code == 200
    assert resp.get_json()["status"] == "cancelled"
    assert resp.get_json()["archivedAt"] is not None
    assert client.delete(f"/api/jobs/{approved}").status_code == 403


def test_status_endpoint_guards(client, login, make_user, make_job):
    owner = make_user("client@example.com")
    make_user("admin@example.com", role="admin")
    make_user("writer@example.com", role="freelancer")
    job_id = make_job(owner, status="approved")
    login("admin@example.com")
    assert client.patch(f"/api/jobs/{job_id}/status", json={"status": "done"}).get_json()["code"] == "INVALID_STATUS"
    assert client.patch(f"/api/jobs/{job_id}/status", json={"status": "assigned"}).get_json()["code"] == "NO_FREELANCER"
    resp = client.patch(f"/api/jobs/{job_id}/status", json={"status": "delivered"})
    assert resp.get_json()["code"] == "INVALID_TRANSITION"
    assert "Allowed transitions" in resp.get_json()["error"]
    resp = client.patch(f"/api/jobs/{job_id}/status", json={"status": "approved"})
    assert resp.get_json()["changed"] is False

    login("writer@example.com")
    assert client.patch(f"/api/jobs/{job_id}/status", json={"status": "in_progress"}).status_code == 403


def test_revision_request_counts_against_freelancer(app, client, login, make_user, make_job):
    owner = make_user("client@example.com")
    writer = make_user("writer@example.com", role="freelancer")
    job_id = make_job(owner, writer, status="delivered")
    login("client@example.com")
    resp = client.patch(f"/api/jobs/{job_id}/status", json={"status": "revision", "note": "Add references"})
    assert resp.status_code == 200
    with app.app_context():
        assert db.session.get(User, writer).revisions_requested == 1
        log = JobStatusLog.query.filter_by(job_id=job_id).one()
        assert log.note == "Add references"
    notes = client.get("/api/notifications").get_json()
    assert notes[0]["type"] == "order_updated"
    assert client.post(f"/api/notifications/{notes[0]['id']}/read").get_json()["read"] is True
    assert client.get("/api/notifications?unread=1").get_json() == []


def test_public_profile_hides_private_fields(client, login, make_user):
    writer = make_user("writer@example.com", role="freelancer", phone="0712345678")
    make_user("client@example.com")
    login("client@example.com")
    profile = client.get(f"/api/users/{writer}").get_json()
    assert "email" not in profile
    assert "balance" not in profile
    login("writer@example.com")
    assert client.get(f"/api/users/{writer}").get_json()["email"] == "writer@example.com"


def test_admin_exports(app, client, login, make_user, make_job):
    owner = make_user("client@example.com", name="Acme Student")
    writer = make_user("writer@example.com", role="freelancer", name="Jane Writer")
    make_user("admin@example.com", role="admin")
    job_id = make_job(owner, writer, status="paid", payment_confirmed=True)
    make_job(owner, status="pending", title="Unassigned")
    login("admin@example.com")
    client.post("/api/invoices", json={"job_id": job_id})

    resp = client.get("/api/admin/jobs/export?status=paid")
    assert resp.status_code == 200
    assert resp.mimetype == "text/csv"
    rows = list(csv.reader(io.StringIO(resp.get_data(as_text=True))))
    assert rows[0][0] == "Order ID"
    assert len(rows) == 2
    assert rows[1][8:10] == ["Acme Student", "Jane Writer"]

    resp = client.get("/api/admin/invoices/export?format=xlsx&group_by=freelancer")
    assert resp.status_code == 200
    assert "admin-invoices-freelancer-" in resp.headers["Content-Disposition"]
    workbook = load_workbook(io.BytesIO(resp.data))
    assert workbook.sheetnames == ["SUMMARY", "Jane Writer"]
    total_row = list(workbook["Jane Writer"].iter_rows(values_only=True))[-1]
    assert total_row[0] == "TOTAL"
    assert total_row[5] == 600
    assert total_row[7] == 200

    resp = client.get("/api/admin/invoices/export?format=csv&group_by=client&status=unpaid")
    rows = list(csv.reader(io.StringIO(resp.get_data(as_text=True))))
    assert rows[1][0] == "Acme Student"

    assert client.get("/api/admin/invoices/export?format=pdf").get_json()["code"] == "INVALID_FORMAT"
    assert client.get("/api/admin/invoices/export?group_by=job").get_json()["code"] == "INVALID_GROUP_BY"

    login("client@example.com")
    assert client.get("/api/admin/jobs/export").status_code == 403


def test_invoice_export_keeps_same_named_clients_apart(app, client, login, make_user, make_job):
    first = make_user("first@example.com", name="Same Name")
    second = make_user("second@example.com", name="Same Name")
    writer = make_user("writer@example.com", role="freelancer", name="Jane Writer")
    make_user("admin@example.com", role="admin")
    login("admin@example.com")
    for owner in (first, second):
        job_id = make_job(owner, writer, status="paid", payment_confirmed=True)
        assert client.post("/api/invoices", json={"job_id": job_id}).status_code == 201

    resp = client.get("/api/admin/invoices/export?format=xlsx&group_by=client")
    workbook = load_workbook(io.BytesIO(resp.data))
    assert sorted(workbook.sheetnames) == ["SUMMARY", "Same Name", "Same Name (2)"]
    summary = list(workbook["SUMMARY"].iter_rows(values_only=True))[1:]
    assert [row[:3] for row in summary] == [("Same Name", 1, 600), ("Same Name", 1, 600)]

    resp = client.get("/api/admin/invoices/export?format=csv&group_by=client")
    rows = list(csv.reader(io.StringIO(resp.get_data(as_text=True))))
    totals = [row for row in rows[1:] if row[1] == "TOTAL"]
    assert len(rows) == 5
    assert [row[0] for row in totals] == ["Same Name", "Same Name"]
    assert [row[6:10] for row in totals] == [["600.0", "400.0", "200.0", "0"]] * 2
