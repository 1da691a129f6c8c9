"""Job completion settlement, balance reconciliation and badge passes."""
from collections import defaultdict
from datetime import datetime, timedelta

from flask import current_app

from tasklynk.calculations import (
    AUTO_BADGES,
    FreelancerStats,
    calculate_client_rating,
    calculate_client_tier,
    calculate_freelancer_badge,
    calculate_freelancer_rating,
    calculate_writer_earnings,
    evaluate_badges,
    was_delivered_on_time,
)
from tasklynk.extensions import db
from tasklynk.models import Invoice, Job, JobAttachment, Rating, User, UserBadge

ATTACHMENT_RETENTION_DAYS = 7


def job_payout(job):
    if job.freelancer_earnings is not None:
        return round(float(job.freelancer_earnings), 2)
    return calculate_writer_earnings(job.pages, job.slides, job.work_type)


def recompute_freelancer_balance(freelancer_id):
    """Overwrite the balance with the sum over completed, paid jobs."""
    db.session.flush()
    total = (
        db.session.query(db.func.coalesce(db.func.sum(Job.freelancer_earnings), 0.0))
        .filter(
            Job.assigned_freelancer_id == freelancer_id,
            Job.status == "completed",
            Job.payment_confirmed.is_(True),
        )
        .scalar()
    )
    balance = round(float(total or 0), 2)
    freelancer = db.session.get(User, freelancer_id)
    if freelancer is not None:
        freelancer.balance = balance
    return balance


def recompute_all_balances():
    """Reconcile every freelancer balance against settled jobs and commit."""
    freelancers = User.query.filter_by(role="freelancer").order_by(User.id.asc()).all()
    details = []
    for freelancer in freelancers:
        previous = round(freelancer.balance or 0, 2)
        balance = recompute_freelancer_balance(freelancer.id)
        if balance != previous:
            details.append({"userId": freelancer.id, "name": freelancer.name, "oldBalance": previous, "newBalance": balance})
    db.session.commit()
    current_app.logger.info("Balance reconciliation: %s freelancers, %s corrected", len(freelancers), len(details))
    return {"processedUsers": len(freelancers), "updated": len(details), "details": details}


def ensure_invoice(job):
    invoice = Invoice.query.filter_by(job_id=job.id).first()
    if invoice is not None:
        return invoice
    payout = job_payout(job)
    invoice = Invoice(
        job_id=job.id,
        client_id=job.client_id,
        freelancer_id=job.assigned_freelancer_id,
        amount=job.amount,
        freelancer_amount=payout,
        admin_commission=round((job.amount or 0) - payout, 2),
    )
    db.session.add(invoice)
    return invoice


def _update_freelancer_counters(freelancer, job, payout, now):
    freelancer.total_earned = round((freelancer.total_earned or 0) + payout, 2)
    freelancer.completed_jobs = (freelancer.completed_jobs or 0) + 1
    if was_delivered_on_time(job.actual_deadline, job.delivered_at or now):
        freelancer.on_time_deliveries = (freelancer.on_time_deliveries or 0) + 1
    scores = [score for (score,) in db.session.query(Rating.score).filter(Rating.rated_user_id == freelancer.id).all()]
    freelancer.rating = calculate_freelancer_rating(
        freelancer.completed_jobs,
        freelancer.on_time_deliveries,
        scores,
        freelancer.revisions_requested or 0,
    )
    freelancer.freelancer_badge = calculate_freelancer_badge(freelancer.completed_jobs)
    sync_auto_badges(freelancer)


def _update_client_counters(client, job):
    client.completed_jobs = (client.completed_jobs or 0) + 1
    client.total_spent = round((client.total_spent or 0) + (job.amount or 0), 2)
    paid_jobs = Job.query.filter_by(client_id=client.id, status="completed", payment_confirmed=True).count()
    client.rating = calculate_client_rating(client.completed_jobs, min(paid_jobs, client.completed_jobs), client.total_spent)
    client.client_tier = calculate_client_tier(client.completed_jobs)


def settle_job_completion(job):
    """Move a job to completed and settle freelancer/client accounts.

    Counter, rating and tier updates are best effort; a failure there is
    logged and leaves the status change and balance in place. Running this on
    an already completed job only re-verifies the freelancer balance.
    """
    if not job.assigned_freelancer_id:
        raise ValueError("Job has no assigned freelancer")
    freelancer = db.session.get(User, job.assigned_freelancer_id)
    client = db.session.get(User, job.client_id)
    now = datetime.utcnow()

    if job.status == "completed":
        balance = recompute_freelancer_balance(job.assigned_freelancer_id)
        if job.payment_confirmed:
            ensure_invoice(job)
        return {"earnedAmount": job_payout(job), "newBalance": balance, "balanceAdded": False, "alreadyCompleted": True}

    payout = job_payout(job)
    job.freelancer_earnings = payout

    balance_added = False
    if job.payment_confirmed and freelancer is not None:
        freelancer.balance = round((freelancer.balance or 0) + payout, 2)
        balance_added = True

    job.status = "completed"
    job.completed_at = now
    balance = recompute_freelancer_balance(job.assigned_freelancer_id)

    # Each best-effort block runs in its own savepoint; a failure rolls back only that block.
    if freelancer is not None:
        try:
            with db.session.begin_nested():
                _update_freelancer_counters(freelancer, job, payout, now)
        except Exception:
            current_app.logger.exception("Freelancer counter update failed for job %s", job.id)
    if client is not None:
        try:
            with db.session.begin_nested():
                _update_client_counters(client, job)
        except Exception:
            current_app.logger.exception("Client counter update failed for job %s", job.id)

    try:
        with db.session.begin_nested():
            JobAttachment.query.filter_by(job_id=job.id).update(
                {"scheduled_deletion_at": now + timedelta(days=ATTACHMENT_RETENTION_DAYS)}
            )
    except Exception:
        current_app.logger.exception("Attachment deletion scheduling failed for job %s", job.id)

    if job.payment_confirmed:
        ensure_invoice(job)

    current_app.logger.info(
        "Job %s completed: payout=%s balance=%s balance_added=%s", job.id, payout, balance, balance_added
    )
    return {
        "earnedAmount": payout,
        "newBalance": balance,
        "balanceAdded": balance_added,
        "alreadyCompleted": False,
        "freelancerRating": freelancer.rating if freelancer else None,
        "clientRating": client.rating if client else None,
        "freelancerBadge": freelancer.freelancer_badge if freelancer else None,
        "clientTier": client.client_tier if client else None,
    }


def gather_freelancer_stats(freelancer_id):
    scores = []
    client_scores = defaultdict(list)
    rows = (
        db.session.query(Rating.score, Rating.rater_id, Job.client_id)
        .join(Job, Job.id == Rating.job_id)
        .filter(Rating.rated_user_id == freelancer_id)
        .all()
    )
    for score, rater_id, client_id in rows:
        scores.append(score)
        if rater_id == client_id:
            client_scores[client_id].append(score)
    client_orders = dict(
        db.session.query(Job.client_id, db.func.count(Job.id))
        .filter(Job.assigned_freelancer_id == freelancer_id, Job.status == "completed")
        .group_by(Job.client_id)
        .all()
    )
    completed = sum(client_orders.values())
    return FreelancerStats(scores, completed, client_orders, dict(client_scores))


def sync_auto_badges(freelancer):
    """Bring the freelancer's automatic badges in line with current stats."""
    desired = evaluate_badges(gather_freelancer_stats(freelancer.id))
    current = {b.badge: b for b in freelancer.badges if b.badge in AUTO_BADGES}
    assigned = sorted(desired - set(current))
    revoked = sorted(set(current) - desired)
    for badge in assigned:
        freelancer.badges.append(UserBadge(badge=badge, awarded_by="auto"))
    for badge in revoked:
        freelancer.badges.remove(current[badge])
    return assigned, revoked


def auto_assign_badges():
    assigned, revoked = [], []
    freelancers = User.query.filter_by(role="freelancer").order_by(User.id.asc()).all()
    for freelancer in freelancers:
        added, removed = sync_auto_badges(freelancer)
        assigned.extend({"userId": freelancer.id, "badge": badge} for badge in added)
        revoked.extend({"userId": freelancer.id, "badge": badge} for badge in removed)
    db.session.commit()
    current_app.logger.info(
        "Badge auto-assignment: %s freelancers, %s assigned, %s revoked", len(freelancers), len(assigned), len(revoked)
    )
    return {"processedUsers": len(freelancers), "assigned": assigned, "revoked": revoked}
