"""Payment reconciliation shared by the Daraja callback, status query and manual confirmation."""
from datetime import datetime

from flask import current_app

from tasklynk.extensions import db
from tasklynk.jobs import log_status
from tasklynk.models import Job, User
from tasklynk.notifications import notify
from tasklynk.settlement import ensure_invoice, recompute_freelancer_balance
from tasklynk.transitions import can_transition_job, can_transition_payment

CONFIRMED = "confirmed"
FAILED = "failed"
NOOP = "noop"
REJECTED = "rejected"


def is_payable(job):
    if job.status == "delivered":
        return True
    return job.status == "completed" and not job.payment_confirmed


def apply_payment_result(payment, target, receipt_number=None, transaction_date=None, result_desc=None,
                         confirmed_by_admin=False):
    """Move ``payment`` to ``target`` through the allow-list and apply job effects.

    The row is re-read first so a concurrent update is seen. Confirming never
    credits the freelancer balance; that only happens on completion. The
    caller commits.
    """
    db.session.refresh(payment)
    current = payment.status
    if not can_transition_payment(current, target):
        current_app.logger.warning(
            "Rejected payment transition %s -> %s for payment %s", current, target, payment.id
        )
        return REJECTED
    if current == target:
        current_app.logger.info("Payment %s already %s; nothing to do", payment.id, current)
        return NOOP

    now = datetime.utcnow()
    job = db.session.get(Job, payment.job_id)
    if target == "failed":
        payment.status = "failed"
        payment.mpesa_result_desc = result_desc or "Payment failed"
        notify(
            payment.client_id,
            "Payment Failed",
            f"Payment for order {job.label if job else payment.job_id} failed: {payment.mpesa_result_desc}",
            "payment_failed",
            job_id=payment.job_id,
        )
        current_app.logger.info("Payment %s failed: %s", payment.id, payment.mpesa_result_desc)
        return FAILED

    payment.status = "confirmed"
    payment.confirmed_at = now
    payment.confirmed_by_admin = bool(confirmed_by_admin)
    if receipt_number:
        payment.mpesa_receipt_number = receipt_number
    if transaction_date:
        payment.mpesa_transaction_date = transaction_date
    if result_desc:
        payment.mpesa_result_desc = result_desc

    if job is not None and job.payment_confirmed:
        current_app.logger.warning(
            "Payment %s confirmed for job %s which was already paid; job left unchanged", payment.id, job.id
        )
    elif job is not None:
        job.payment_confirmed = True
        job.paid_at = job.paid_at or now
        if job.status == "completed":
            if job.assigned_freelancer_id:
                recompute_freelancer_balance(job.assigned_freelancer_id)
            ensure_invoice(job)
        elif can_transition_job(job.status, "paid"):
            old_status = job.status
            job.status = "paid"
            log_status(job, old_status, "paid", note=f"Payment {payment.id} confirmed")
        else:
            current_app.logger.warning(
                "Payment %s confirmed while job %s is %s; status left unchanged", payment.id, job.id, job.status
            )
        notify(
            job.client_id,
            "Payment Confirmed",
            f"Your payment of KES {payment.amount:,.2f} for order {job.label} has been confirmed.",
            "payment_confirmed",
            job_id=job.id,
        )
        if job.assigned_freelancer_id:
            notify(
                job.assigned_freelancer_id,
                "Order Paid",
                f"Payment for order {job.label} has been confirmed by the client.",
                "payment_confirmed",
                job_id=job.id,
            )
        for (admin_id,) in db.session.query(User.id).filter(User.role == "admin").all():
            notify(
                admin_id,
                "Payment Received",
                f"Payment of KES {payment.amount:,.2f} received for order {job.label}.",
                "payment_received",
                job_id=job.id,
            )
    current_app.logger.info(
        "Payment %s confirmed (receipt=%s, admin=%s)", payment.id, payment.mpesa_receipt_number, confirmed_by_admin
    )
    return CONFIRMED
