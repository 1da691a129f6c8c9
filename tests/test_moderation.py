import io
from datetime import datetime, timedelta
import os

import pytest

from tasklynk.extensions import db
from tasklynk.models import Job, JobAttachment, JobMessage
from tasklynk.moderation import UploadRejected, validate_upload


@pytest.fixture()
def assigned_job(make_user, make_job):
    client_id = make_user("client@example.com", role="client")
    freelancer_id = make_user("writer@example.com", role="freelancer")
    make_user("other@example.com", role="freelancer")
    make_user("admin@example.com", role="admin")
    return make_job(client_id, freelancer_id, status="in_progress")


def _upload(client, job_id, name, content=b"chapter one", upload_type="initial"):
    return client.post(
        f"/api/jobs/{job_id}/attachments",
        data={"file": (io.BytesIO(content), name), "upload_type": upload_type},
        content_type="multipart/form-data",
    )


def _stored_files(app):
    root = app.config["UPLOAD_FOLDER"]
    if not os.path.isdir(root):
        return []
    return [name for _, _, files in os.walk(root) for name in files]


def test_validate_upload_rules():
    assert validate_upload("Thesis.DOCX", 1024) == "docx"
    with pytest.raises(UploadRejected) as exc:
        validate_upload("README", 10)
    assert exc.value.code == "NO_FILE_EXTENSION"
    with pytest.raises(UploadRejected) as exc:
        validate_upload("clip.mp4", 10)
    assert exc.value.code == "INVALID_FILE_FORMAT"
    with pytest.raises(UploadRejected) as exc:
        validate_upload("big.pdf", 40 * 1024 * 1024 + 1)
    assert exc.value.code == "FILE_TOO_LARGE"
    assert exc.value.status == 413


def test_rejected_uploads_are_never_stored(app, client, login, assigned_job, monkeypatch):
    login("client@example.com")
    resp = _upload(client, assigned_job, "setup.exe")
    assert resp.status_code == 400
    assert resp.get_json()["code"] == "INVALID_FILE_FORMAT"

    monkeypatch.setattr("tasklynk.moderation.MAX_UPLOAD_BYTES", 8)
    resp = _upload(client, assigned_job, "notes.pdf", content=b"more than eight bytes")
    assert resp.status_code == 413
    assert resp.get_json()["code"] == "FILE_TOO_LARGE"

    assert _stored_files(app) == []
    with app.app_context():
        assert JobAttachment.query.count() == 0


def test_upload_requires_file_and_known_type(client, login, assigned_job):
    login("client@example.com")
    resp = client.post(f"/api/jobs/{assigned_job}/attachments", data={}, content_type="multipart/form-data")
    assert resp.get_json()["code"] == "MISSING_FILE"
    resp = _upload(client, assigned_job, "brief.pdf", upload_type="bonus")
    assert resp.get_json()["code"] == "INVALID_UPLOAD_TYPE"


def test_upload_and_download_by_parties(app, client, login, assigned_job):
    login("client@example.com")
    resp = _upload(client, assigned_job, "brief.pdf", content=b"%PDF-1.4 brief")
    assert resp.status_code == 201
    attachment = resp.get_json()
    assert attachment["fileName"] == "brief.pdf"
    assert attachment["fileSize"] == len(b"%PDF-1.4 brief")
    assert len(_stored_files(app)) == 1

    login("writer@example.com")
    resp = client.get(f"/api/attachments/{attachment['id']}/download")
    assert resp.status_code == 200
    assert resp.data == b"%PDF-1.4 brief"

    login("other@example.com")
    assert client.get(f"/api/attachments/{attachment['id']}/download").status_code == 403
    assert client.get(f"/api/jobs/{assigned_job}/attachments").status_code == 403


def test_visibility_flags_hide_files_from_the_other_party(client, login, assigned_job):
    login("writer@example.com")
    attachment_id = _upload(client, assigned_job, "draft.docx", upload_type="draft").get_json()["id"]

    login("admin@example.com")
    resp = client.patch(f"/api/jobs/{assigned_job}/attachments/{attachment_id}", json={"visible_to_client": False})
    assert resp.status_code == 200
    assert resp.get_json()["visibleToClient"] is False
    resp = client.patch(f"/api/jobs/{assigned_job}/attachments/{attachment_id}", json={"is_visible": "no"})
    assert resp.status_code == 400

    login("client@example.com")
    assert client.get(f"/api/jobs/{assigned_job}/attachments").get_json() == []
    assert client.get(f"/api/attachments/{attachment_id}/download").status_code == 403

    login("writer@example.com")
    assert [a["id"] for a in client.get(f"/api/jobs/{assigned_job}/attachments").get_json()] == [attachment_id]


def test_deleted_attachment_is_hidden_from_parties(app, client, login, assigned_job):
    login("client@example.com")
    attachment_id = _upload(client, assigned_job, "brief.pdf").get_json()["id"]
    login("writer@example.com")
    resp = client.delete(f"/api/jobs/{assigned_job}/attachments/{attachment_id}")
    assert resp.status_code == 403
    login("client@example.com")
    assert client.delete(f"/api/jobs/{assigned_job}/attachments/{attachment_id}").status_code == 200
    assert client.get(f"/api/jobs/{assigned_job}/attachments").get_json() == []
    with app.app_context():
        assert db.session.get(JobAttachment, attachment_id).deleted_at is not None


def test_party_messages_wait_for_admin_approval(app, client, login, assigned_job):
    login("client@example.com")
    resp = client.post(f"/api/jobs/{assigned_job}/messages", json={"message": "Please cite APA 7."})
    assert resp.status_code == 201
    message = resp.get_json()
    assert message["adminApproved"] is False
    assert [m["id"] for m in client.get(f"/api/jobs/{assigned_job}/messages").get_json()] == [message["id"]]

    login("writer@example.com")
    assert client.get(f"/api/jobs/{assigned_job}/messages").get_json() == []
    assert client.patch(f"/api/messages/{message['id']}/approve", json={"approved": True}).status_code == 403

    login("admin@example.com")
    assert client.patch(f"/api/messages/{message['id']}/approve", json={"approved": "yes"}).get_json()["code"] == "INVALID_APPROVED"
    resp = client.patch(f"/api/messages/{message['id']}/approve", json={"approved": True})
    assert resp.get_json()["adminApproved"] is True

    login("writer@example.com")
    visible = client.get(f"/api/jobs/{assigned_job}/messages").get_json()
    assert [m["message"] for m in visible] == ["Please cite APA 7."]
    assert visible[0]["sender"]["role"] == "client"


def test_admin_messages_are_approved_and_links_detected(client, login, assigned_job):
    login("admin@example.com")
    resp = client.post(f"/api/jobs/{assigned_job}/messages", json={"message": "https://example.com/rubric"})
    assert resp.get_json()["adminApproved"] is True
    assert resp.get_json()["messageType"] == "link"
    assert client.post(f"/api/jobs/{assigned_job}/messages", json={"message": "   "}).get_json()["code"] == "MISSING_MESSAGE"

    login("writer@example.com")
    assert len(client.get(f"/api/jobs/{assigned_job}/messages").get_json()) == 1


def test_deleted_messages_stay_visible_to_admins_only(app, client, login, assigned_job):
    login("admin@example.com")
    message_id = client.post(f"/api/jobs/{assigned_job}/messages", json={"message": "Deadline moved"}).get_json()["id"]
    login("client@example.com")
    assert client.delete(f"/api/messages/{message_id}").status_code == 403
    login("admin@example.com")
    assert client.delete(f"/api/messages/{message_id}").status_code == 200
    assert len(client.get(f"/api/jobs/{assigned_job}/messages").get_json()) == 1
    login("client@example.com")
    assert client.get(f"/api/jobs/{assigned_job}/messages").get_json() == []
    with app.app_context():
        assert db.session.get(JobMessage, message_id).deleted_at is not None


def test_outsiders_cannot_read_or_post_messages(client, login, assigned_job):
    login("other@example.com")
    assert client.get(f"/api/jobs/{assigned_job}/messages").status_code == 403
    assert client.post(f"/api/jobs/{assigned_job}/messages", json={"message": "hi"}).status_code == 403


def _stored_attachment(app, job_id, uploader_id, stored_name, scheduled_deletion_at):
    path = os.path.join(app.config["UPLOAD_FOLDER"], stored_name)
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "wb") as handle:
        handle.write(b"final draft")
    with app.app_context():
        attachment = JobAttachment(job_id=job_id, uploaded_by=uploader_id, file_name=os.path.basename(stored_name),
                                   stored_name=stored_name, file_size=11, upload_type="final",
                                   scheduled_deletion_at=scheduled_deletion_at)
        db.session.add(attachment)
        db.session.commit()
        return attachment.id, path


def test_expired_attachments_are_removed_and_soft_deleted(app, client, login, assigned_job):
    with app.app_context():
        uploader = db.session.get(Job, assigned_job).assigned_freelancer_id
    now = datetime.utcnow()
    expired_id, expired_path = _stored_attachment(
        app, assigned_job, uploader, f"job-{assigned_job}/expired.docx", now - timedelta(hours=1)
    )
    kept_id, kept_path = _stored_attachment(
        app, assigned_job, uploader, f"job-{assigned_job}/kept.docx", now + timedelta(days=3)
    )

    login("client@example.com")
    assert client.post("/api/admin/attachments/cleanup-expired").status_code == 403

    login("admin@example.com")
    resp = client.post("/api/admin/attachments/cleanup-expired")
    assert resp.status_code == 200
    assert resp.get_json() == {"deleted": 1, "failed": 0, "attachmentIds": [expired_id]}
    assert not os.path.exists(expired_path)
    assert os.path.exists(kept_path)
    with app.app_context():
        assert db.session.get(JobAttachment, expired_id).deleted_at is not None
        assert db.session.get(JobAttachment, kept_id).deleted_at is None

    assert client.post("/api/admin/attachments/cleanup-expired").get_json()["deleted"] == 0
