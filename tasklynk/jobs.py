from datetime import datetime

from flask import current_app

from tasklynk.extensions import db
from tasklynk.models import Bid, JobStatusLog, User
from tasklynk.notifications import notify, notify_status_change
from tasklynk.settlement import settle_job_completion


def log_status(job, old_status, new_status, changed_by=None, note=None):
    db.session.add(JobStatusLog(
        job_id=job.id,
        old_status=old_status,
        new_status=new_status,
        changed_by=changed_by,
        note=note,
    ))


def apply_status_change(job, new_status, actor=None, note=None):
    """Move an already validated job to ``new_status`` and run its side effects.

    Returns the settlement summary when the move completes the job, else None.
    The caller commits.
    """
    old_status = job.status
    if old_status == new_status:
        return None
    now = datetime.utcnow()
    settlement = None
    if new_status == "completed":
        settlement = settle_job_completion(job)
    else:
        job.status = new_status
        if new_status == "approved":
            job.admin_approved = True
        elif new_status == "delivered":
            job.delivered_at = now
        elif new_status == "revision" and job.assigned_freelancer_id:
            freelancer = db.session.get(User, job.assigned_freelancer_id)
            if freelancer is not None:
                freelancer.revisions_requested = (freelancer.revisions_requested or 0) + 1
        elif new_status == "cancelled":
            job.archived_at = now
        elif new_status == "paid":
            job.payment_confirmed = True
            job.paid_at = job.paid_at or now
    log_status(job, old_status, new_status, actor.id if actor else None, note)
    notify_status_change(job, old_status, new_status)
    current_app.logger.info("Job %s moved %s -> %s by %s", job.id, old_status, new_status, actor.id if actor else "system")
    return settlement


def accept_bid(bid, actor):
    job = bid.job
    now = datetime.utcnow()
    bid.status = "accepted"
    bid.reviewed_at = now
    Bid.query.filter(
        Bid.job_id == job.id,
        Bid.id != bid.id,
        Bid.status == "pending",
    ).update({"status": "rejected", "reviewed_at": now}, synchronize_session=False)
    old_status = job.status
    job.assigned_freelancer_id = bid.freelancer_id
    job.status = "assigned"
    log_status(job, old_status, "assigned", actor.id, f"Bid {bid.id} accepted")
    notify(
        bid.freelancer_id,
        "Bid Accepted",
        f'Your bid on order {job.label} "{job.title}" was accepted.',
        "bid_accepted",
        job_id=job.id,
    )
    notify(
        job.client_id,
        "Order Assigned",
        f'Order {job.label} "{job.title}" has been assigned to a freelancer.',
        "order_assigned",
        job_id=job.id,
    )
    return job
