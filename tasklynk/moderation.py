"""Who may see which job messages and attachments, and what may be uploaded."""
from tasklynk.models import STAFF_ROLES

UPLOAD_TYPES = ("initial", "draft", "final", "revision", "additional")
MAX_UPLOAD_BYTES = 40 * 1024 * 1024

# No media or executable formats.
ALLOWED_EXTENSIONS = {
    "pdf", "doc", "docx", "ppt", "pptx", "xls", "xlsx", "txt", "rtf", "odt",
    "jpg", "jpeg", "png", "gif", "bmp", "svg",
    "zip", "rar", "7z", "tar", "gz",
    "csv", "json", "xml",
}


class UploadRejected(Exception):
    def __init__(self, message, code, status=400):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status


def is_privileged(user):
    if user is None:
        return False
    return user.is_admin or (user.role or "").lower() in STAFF_ROLES


def file_extension(filename):
    if not filename or "." not in filename:
        return ""
    return filename.rsplit(".", 1)[1].strip().lower()


def validate_upload(filename, size):
    """Raise UploadRejected unless the file may be stored. Nothing is written here."""
    ext = file_extension(filename)
    if not ext:
        raise UploadRejected("File must have an extension", "NO_FILE_EXTENSION")
    if ext not in ALLOWED_EXTENSIONS:
        raise UploadRejected(
            f"Unsupported file type: .{ext}. Please upload a supported file format.",
            "INVALID_FILE_FORMAT",
        )
    if size > MAX_UPLOAD_BYTES:
        raise UploadRejected(
            f"File size must not exceed 40MB. Your file is {size / 1024 / 1024:.2f}MB",
            "FILE_TOO_LARGE",
            413,
        )
    return ext


def message_auto_approved(sender):
    return is_privileged(sender)


def message_visible_to(message, user):
    if user is None:
        return False
    if is_privileged(user):
        return True
    if message.deleted_at is not None:
        return False
    if message.sender_id == user.id:
        return True
    return bool(message.admin_approved)


def attachment_visible_to(attachment, user, job):
    if user is None or attachment.deleted_at is not None:
        return False
    if is_privileged(user):
        return True
    if attachment.uploaded_by == user.id:
        return True
    if not attachment.is_visible:
        return False
    role = (user.role or "").lower()
    if role == "client":
        return job.client_id == user.id and attachment.visible_to_client
    if role == "freelancer":
        return job.assigned_freelancer_id == user.id and attachment.visible_to_freelancer
    return job.is_party(user)
