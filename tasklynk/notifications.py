from flask import current_app

from tasklynk.extensions import db
from tasklynk.mailer import send_email
from tasklynk.models import Notification, User

STATUS_MESSAGES = {
    "approved": "Order approved by admin and open for bids",
    "assigned": "Order has been assigned to a freelancer",
    "in_progress": "Work is now in progress",
    "editing": "Work is under editorial review",
    "delivered": "Work has been delivered and is ready for review",
    "revision": "Revision has been requested",
    "paid": "Payment has been confirmed for this order",
    "completed": "Order has been completed successfully",
    "cancelled": "Order has been cancelled",
    "on_hold": "Order has been put on hold",
}


def notify(user_id, title, message, type_, job_id=None):
    """Queue an in-app notification on the session. Never raises."""
    if not user_id:
        return None
    try:
        row = Notification(user_id=user_id, job_id=job_id, type=type_, title=title, message=message, read=False)
        db.session.add(row)
        return row
    except Exception:
        current_app.logger.exception("Notification insert failed for user %s", user_id)
        return None


def email_user(user, subject, body):
    if not user or not user.email:
        return False
    try:
        return send_email(user.email, subject, body=body)
    except Exception:
        current_app.logger.exception("Email to user %s failed", user.id)
        return False


def notify_status_change(job, old_status, new_status):
    recipients = [job.client_id]
    if job.assigned_freelancer_id:
        recipients.append(job.assigned_freelancer_id)
    try:
        admin_ids = [uid for (uid,) in db.session.query(User.id).filter(User.role == "admin").all()]
    except Exception:
        current_app.logger.exception("Admin lookup for status notification failed")
        admin_ids = []
    for admin_id in admin_ids:
        if admin_id not in recipients:
            recipients.append(admin_id)
    text = STATUS_MESSAGES.get(new_status, f"Status changed from {old_status} to {new_status}")
    for user_id in recipients:
        notify(user_id, f"Order {job.label} Status Updated", f'Order "{job.title}": {text}', "order_updated", job_id=job.id)
