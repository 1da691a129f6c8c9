"""Admin bulk email with a shared daily sending quota."""
import json
from datetime import datetime

from flask import current_app
from markupsafe import escape

from tasklynk.extensions import db
from tasklynk.mailer import send_email
from tasklynk.models import EmailLog, User

DAILY_EMAIL_LIMIT = 100
RECIPIENT_TYPES = ("individual", "freelancers", "clients", "all_users", "direct")

EMPTY_EXPANSION = {
    "individual": ("No approved users found with the provided recipient IDs", "NO_RECIPIENTS_FOUND"),
    "freelancers": ("No approved freelancers found", "NO_FREELANCERS_FOUND"),
    "clients": ("No approved clients found", "NO_CLIENTS_FOUND"),
    "all_users": ("No approved users found", "NO_USERS_FOUND"),
    "direct": ("recipient_emails must contain at least one address", "MISSING_RECIPIENT_EMAILS"),
}


class BulkEmailError(Exception):
    def __init__(self, message, code, status=400, **data):
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status
        self.data = data


def today_start(now=None):
    now = now or datetime.utcnow()
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def sent_today(now=None):
    total = (
        db.session.query(db.func.coalesce(db.func.sum(EmailLog.recipient_count), 0))
        .filter(EmailLog.created_at >= today_start(now))
        .scalar()
    )
    return int(total or 0)


def expand_recipients(recipient_type, recipient_ids=None, recipient_emails=None):
    """Return (recipients, sent_to) where recipients is a list of (email, name)."""
    if recipient_type == "direct":
        seen = []
        for email in recipient_emails or []:
            cleaned = str(email).strip()
            if cleaned and cleaned not in seen:
                seen.append(cleaned)
        return [(email, email.split("@")[0]) for email in seen], ", ".join(seen)

    query = User.query.filter(User.approved.is_(True))
    if recipient_type == "individual":
        ids = [i for i in (recipient_ids or []) if isinstance(i, int)]
        users = query.filter(User.id.in_(ids)).order_by(User.id.asc()).all() if ids else []
        return [(u.email, u.name) for u in users], ", ".join(u.email for u in users)
    if recipient_type == "freelancers":
        query = query.filter(User.role == "freelancer")
        sent_to = "all_freelancers"
    elif recipient_type == "clients":
        query = query.filter(User.role == "client")
        sent_to = "all_clients"
    else:
        sent_to = "all_users"
    users = query.order_by(User.id.asc()).all()
    return [(u.email, u.name) for u in users], sent_to


def _render_body(body, attachment_urls):
    html = body.strip()
    if attachment_urls:
        links = "".join(f'<li><a href="{escape(url)}">{escape(url)}</a></li>' for url in attachment_urls)
        html += f"<hr/><p>Attachments:</p><ul>{links}</ul>"
    return html


def compose_bulk_email(sender, payload):
    from_email = (payload.get("from_email") or "").strip().lower()
    recipient_type = payload.get("recipient_type")
    subject = (payload.get("subject") or "").strip()
    body = payload.get("body") or ""
    job_id = payload.get("job_id")

    if not from_email:
        raise BulkEmailError("from_email is required", "MISSING_FROM_EMAIL")
    allowed = current_app.config.get("ALLOWED_FROM_EMAILS", [])
    if from_email not in allowed:
        raise BulkEmailError(f"from_email must be one of: {', '.join(allowed)}", "INVALID_FROM_EMAIL")
    if recipient_type not in RECIPIENT_TYPES:
        raise BulkEmailError(
            f"recipient_type must be one of: {', '.join(RECIPIENT_TYPES)}", "INVALID_RECIPIENT_TYPE"
        )
    if recipient_type == "individual" and not payload.get("recipient_ids"):
        raise BulkEmailError("recipient_ids is required for individual emails", "MISSING_RECIPIENT_IDS")
    if not subject:
        raise BulkEmailError("subject is required", "MISSING_SUBJECT")
    if not isinstance(body, str) or not body.strip():
        raise BulkEmailError("body is required", "MISSING_BODY")
    if job_id is not None and not isinstance(job_id, int):
        raise BulkEmailError("job_id must be an integer", "INVALID_JOB_ID")

    recipients, sent_to = expand_recipients(
        recipient_type, payload.get("recipient_ids"), payload.get("recipient_emails")
    )
    if not recipients:
        message, code = EMPTY_EXPANSION[recipient_type]
        raise BulkEmailError(message, code)

    used = sent_today()
    remaining = DAILY_EMAIL_LIMIT - used
    if len(recipients) > remaining:
        raise BulkEmailError(
            f"Daily email limit exceeded. You can send {max(remaining, 0)} more emails today "
            f"({used}/{DAILY_EMAIL_LIMIT} used).",
            "DAILY_LIMIT_EXCEEDED",
            429,
            limit=DAILY_EMAIL_LIMIT,
            used=used,
            remaining=max(remaining, 0),
            requested=len(recipients),
        )

    html = _render_body(body, payload.get("attachment_urls") or [])
    failed = []
    for email, name in recipients:
        try:
            delivered = send_email(email, subject, html=html, sender=from_email)
        except Exception as err:
            current_app.logger.exception("Bulk email to %s failed", email)
            failed.append({"email": email, "name": name, "error": str(err)})
            continue
        if not delivered:
            failed.append({"email": email, "name": name, "error": "Delivery failed"})
    sent = len(recipients) - len(failed)
    if not failed:
        status = "sent"
    elif sent == 0:
        status = "failed"
    else:
        status = "partial"

    log = EmailLog(
        sent_by=sender.id,
        sent_to=sent_to,
        recipient_type=recipient_type,
        recipient_count=len(recipients),
        from_email=from_email,
        subject=subject,
        body=html,
        status=status,
        failed_recipients=json.dumps(failed) if failed else None,
        job_id=job_id,
    )
    db.session.add(log)
    db.session.commit()
    current_app.logger.info(
        "Bulk email %s by %s: %s sent, %s failed (%s)", log.id, sender.id, sent, len(failed), recipient_type
    )
    used_after = used + len(recipients)
    return {
        "success": True,
        "sent": sent,
        "failed": len(failed),
        "total": len(recipients),
        "emailLogId": log.id,
        "status": status,
        "dailyUsage": {"used": used_after, "limit": DAILY_EMAIL_LIMIT, "remaining": DAILY_EMAIL_LIMIT - used_after},
    }
