import os
import uuid
from datetime import datetime

from flask import current_app
from werkzeug.utils import secure_filename

from tasklynk.extensions import db
from tasklynk.models import JobAttachment


def upload_root():
    return current_app.config.get("UPLOAD_FOLDER") or os.path.join(os.getcwd(), "uploads")


def stream_size(file_storage):
    stream = file_storage.stream
    position = stream.tell()
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(position)
    return size


def save_upload(file_storage, job_id):
    """Write the upload under the job's folder and return its stored name."""
    original_name = secure_filename(file_storage.filename) or "upload"
    stored_name = f"job-{job_id}/{int(datetime.utcnow().timestamp())}_{uuid.uuid4().hex[:8]}_{original_name}"
    target = os.path.join(upload_root(), stored_name)
    os.makedirs(os.path.dirname(target), exist_ok=True)
    file_storage.save(target)
    current_app.logger.info("Stored upload %s for job %s", stored_name, job_id)
    return stored_name


def stored_path(stored_name):
    return os.path.join(upload_root(), stored_name)


def cleanup_expired_attachments(now=None):
    """Remove stored files whose retention has run out and soft-delete their rows.

    A file that cannot be removed keeps its row untouched so the next run retries it.
    """
    now = now or datetime.utcnow()
    due = (
        JobAttachment.query.filter(
            JobAttachment.scheduled_deletion_at.isnot(None),
            JobAttachment.scheduled_deletion_at <= now,
            JobAttachment.deleted_at.is_(None),
        )
        .order_by(JobAttachment.id.asc())
        .all()
    )
    deleted, failed = [], []
    for attachment in due:
        path = stored_path(attachment.stored_name)
        try:
            if os.path.exists(path):
                os.remove(path)
        except OSError:
            current_app.logger.exception("Could not remove expired file %s", attachment.stored_name)
            failed.append(attachment.id)
            continue
        attachment.deleted_at = now
        deleted.append(attachment.id)
    db.session.commit()
    current_app.logger.info("Expired attachment cleanup: %s deleted, %s failed", len(deleted), len(failed))
    return {"deleted": len(deleted), "failed": len(failed), "attachmentIds": deleted}
