import hmac
import os
from datetime import datetime
from functools import wraps

from flask import Blueprint, Response, current_app, jsonify, request, send_from_directory
from flask_login import current_user, login_required, login_user, logout_user
from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError

from tasklynk import mpesa
from tasklynk.bulk_email import DAILY_EMAIL_LIMIT, BulkEmailError, compose_bulk_email, sent_today
from tasklynk.calculations import (
    AUTO_BADGES,
    BADGE_CRITERIA,
    MANUAL_BADGES,
    calculate_freelancer_rating,
    calculate_writer_earnings,
    min_client_amount,
)
from tasklynk.errors import api_error, form_error, register_error_handlers
from tasklynk.exports import XLSX_MIMETYPE, invoice_rows, invoices_csv, invoices_xlsx, jobs_csv
from tasklynk.extensions import db
from tasklynk.forms import DEADLINE_FORMATS, BidForm, JobForm, LoginForm, RatingForm, RegistrationForm
from tasklynk.jobs import accept_bid, apply_status_change, log_status
from tasklynk.models import (
    JOB_STATUSES,
    Bid,
    EmailLog,
    Invoice,
    Job,
    JobAttachment,
    JobMessage,
    Notification,
    Payment,
    Rating,
    User,
    UserBadge,
)
from tasklynk.moderation import (
    UPLOAD_TYPES,
    UploadRejected,
    attachment_visible_to,
    is_privileged,
    message_auto_approved,
    message_visible_to,
    validate_upload,
)
from tasklynk.notifications import email_user, notify
from tasklynk.payments import CONFIRMED, NOOP, REJECTED, apply_payment_result, is_payable
from tasklynk.ratelimit import rate_limited
from tasklynk.settlement import (
    auto_assign_badges,
    ensure_invoice,
    job_payout,
    recompute_all_balances,
    settle_job_completion,
    sync_auto_badges,
)
from tasklynk.storage import cleanup_expired_attachments, save_upload, stream_size, stored_path, upload_root
from tasklynk.transitions import can_transition_job, job_transition_error, role_may_request

api = Blueprint("api", __name__, url_prefix="/api")
register_error_handlers(api)

MPESA_ACK = {"ResultCode": 0, "ResultDesc": "Success"}
EDITOR_VISIBLE_STATUSES = ("editing", "revision", "delivered")


def _has_role(user, roles):
    if "admin" in roles and user.is_admin:
        return True
    return (user.role or "").lower() in roles


def roles_required(*roles):
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            if not current_user.is_authenticated:
                return api_error("Authentication required", "UNAUTHORIZED", 401)
            if not _has_role(current_user, roles):
                return api_error("You do not have permission to perform this action", "FORBIDDEN", 403)
            return func(*args, **kwargs)
        return wrapper
    return decorator


admin_required = roles_required("admin")
staff_required = roles_required("admin", "manager")


def _json():
    return request.get_json(silent=True) or {}


def _forbidden(message="You do not have access to this order"):
    return api_error(message, "FORBIDDEN", 403)


def _parse_datetime(value):
    for fmt in DEADLINE_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except (TypeError, ValueError):
            continue
    return None


def _admin_ids():
    return [uid for (uid,) in db.session.query(User.id).filter(User.role == "admin").all()]


def _can_view_job(job, user):
    if job.is_party(user):
        return True
    role = (user.role or "").lower()
    if role == "freelancer":
        return job.status == "approved"
    if role == "editor":
        return job.status in EDITOR_VISIBLE_STATUSES
    return False


# ---------------------------------------------------------------- auth

@api.route("/auth/register", methods=["POST"])
def register():
    form = RegistrationForm()
    if not form.validate():
        return form_error(form)
    user = User(
        email=form.email.data.strip().lower(),
        name=form.name.data.strip(),
        role=form.role.data,
        phone=(form.phone.data or "").strip() or None,
        approved=form.role.data == "client",
    )
    user.set_password(form.password.data)
    db.session.add(user)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        return api_error("An account with this email already exists.", "EMAIL_EXISTS", 409)
    if not user.approved:
        for admin_id in _admin_ids():
            notify(admin_id, "New Freelancer Registration", f"{user.name} ({user.email}) is awaiting approval.", "user_registered")
        db.session.commit()
    email_user(user, "Welcome to TaskLynk", f"Hello {user.name},\n\nYour TaskLynk account has been created.")
    login_user(user)
    current_app.logger.info("Registered user %s as %s", user.id, user.role)
    return jsonify(user.to_dict()), 201


@api.route("/auth/login", methods=["POST"])
def login():
    form = LoginForm()
    if not form.validate():
        return form_error(form)
    user = User.query.filter_by(email=form.email.data.strip().lower()).first()
    if not user or not user.check_password(form.password.data):
        return api_error("Invalid email or password", "INVALID_CREDENTIALS", 401)
    login_user(user)
    return jsonify(user.to_dict())


@api.route("/auth/logout", methods=["POST"])
@login_required
def logout():
    logout_user()
    return jsonify({"ok": True})


@api.route("/auth/me")
@login_required
def me():
    return jsonify(current_user.to_dict())


# ---------------------------------------------------------------- jobs

@api.route("/jobs")
@login_required
def list_jobs():
    query = Job.query
    role = (current_user.role or "").lower()
    if is_privileged(current_user):
        pass
    elif role == "freelancer":
        query = query.filter(or_(Job.assigned_freelancer_id == current_user.id, Job.status == "approved"))
    elif role == "editor":
        query = query.filter(Job.status.in_(EDITOR_VISIBLE_STATUSES))
    else:
        query = query.filter(Job.client_id == current_user.id)
    status = (request.args.get("status") or "").strip()
    if status:
        query = query.filter(Job.status == status)
    jobs = query.order_by(Job.created_at.desc()).all()
    return jsonify([job.to_dict() for job in jobs])


@api.route("/jobs", methods=["POST"])
@roles_required("client", "account_owner")
def create_job():
    form = JobForm()
    if not form.validate():
        return form_error(form)
    pages = form.pages.data or 0
    slides = form.slides.data or 0
    minimum = min_client_amount(pages, slides, form.work_type.data)
    if form.amount.data < minimum:
        return api_error(
            f"Amount must be at least KES {minimum:,.2f} for this order",
            "AMOUNT_TOO_LOW",
            400,
            minimumAmount=minimum,
        )
    job = Job(
        client_id=current_user.id,
        title=form.title.data.strip(),
        instructions=form.instructions.data.strip(),
        work_type=form.work_type.data.strip(),
        pages=pages,
        slides=slides,
        amount=round(form.amount.data, 2),
        actual_deadline=form.actual_deadline.data,
        freelancer_deadline=form.freelancer_deadline.data,
        status="pending",
    )
    db.session.add(job)
    db.session.flush()
    job.display_id = f"TL{job.id:06d}"
    log_status(job, None, "pending", current_user.id, "Order created")
    for admin_id in _admin_ids():
        notify(admin_id, "New Order", f'{current_user.name} posted order {job.label} "{job.title}".', "order_created", job_id=job.id)
    db.session.commit()
    current_app.logger.info("Job %s created by client %s", job.id, current_user.id)
    return jsonify(job.to_dict()), 201


@api.route("/jobs/<int:job_id>")
@login_required
def get_job(job_id):
    job = db.get_or_404(Job, job_id, description="Order not found")
    if not _can_view_job(job, current_user):
        return _forbidden()
    return jsonify(job.to_dict())


@api.route("/jobs/<int:job_id>", methods=["PATCH"])
@login_required
def update_job(job_id):
    job = db.get_or_404(Job, job_id, description="Order not found")
    staff = is_privileged(current_user)
    if not staff and not (job.client_id == current_user.id and job.status == "pending"):
        return _forbidden("Only pending orders can be edited by their owner")
    data = _json()
    if "title" in data:
        title = str(data["title"] or "").strip()
        if not title:
            return api_error("Title cannot be empty", "VALIDATION_ERROR")
        job.title = title[:255]
    if "instructions" in data:
        job.instructions = str(data["instructions"] or "").strip()
    for key, attr in (("actual_deadline", "actual_deadline"), ("freelancer_deadline", "freelancer_deadline")):
        if key in data:
            if attr == "freelancer_deadline" and not staff:
                return _forbidden("Only staff can set the freelancer deadline")
            parsed = _parse_datetime(data[key])
            if parsed is None:
                return api_error(f"{key} must be a valid date and time", "VALIDATION_ERROR")
            setattr(job, attr, parsed)
    if "amount" in data:
        if not staff:
            return _forbidden("Only staff can change the order amount")
        try:
            job.amount = round(float(data["amount"]), 2)
        except (TypeError, ValueError):
            return api_error("amount must be a number", "VALIDATION_ERROR")
    db.session.commit()
    return jsonify(job.to_dict())


@api.route("/jobs/<int:job_id>", methods=["DELETE"])
@login_required
def archive_job(job_id):
    job = db.get_or_404(Job, job_id, description="Order not found")
    if not role_may_request(current_user, job, "cancelled"):
        return _forbidden("You cannot cancel this order")
    if not can_transition_job(job.status, "cancelled"):
        return api_error(job_transition_error(job.status, "cancelled"), "INVALID_TRANSITION")
    apply_status_change(job, "cancelled", current_user, note="Order archived")
    db.session.commit()
    return jsonify(job.to_dict())


@api.route("/jobs/<int:job_id>/status", methods=["PATCH"])
@login_required
def update_job_status(job_id):
    job = db.get_or_404(Job, job_id, description="Order not found")
    data = _json()
    new_status = (data.get("status") or "").strip().lower()
    if new_status not in JOB_STATUSES:
        return api_error(f"status must be one of: {', '.join(JOB_STATUSES)}", "INVALID_STATUS")
    if not role_may_request(current_user, job, new_status):
        return _forbidden("You cannot move this order to that status")
    if not can_transition_job(job.status, new_status):
        current_app.logger.warning("Rejected job transition %s -> %s for job %s", job.status, new_status, job.id)
        return api_error(job_transition_error(job.status, new_status), "INVALID_TRANSITION")
    if new_status in ("assigned", "completed") and not job.assigned_freelancer_id:
        return api_error("Order has no assigned freelancer", "NO_FREELANCER")
    old_status = job.status
    settlement = apply_status_change(job, new_status, current_user, note=data.get("note"))
    db.session.commit()
    return jsonify({
        "job": job.to_dict(),
        "oldStatus": old_status,
        "changed": old_status != new_status,
        "settlement": settlement,
    })


@api.route("/jobs/<int:job_id>/complete", methods=["POST"])
@staff_required
def complete_job(job_id):
    job = db.get_or_404(Job, job_id, description="Order not found")
    if not job.assigned_freelancer_id:
        return api_error("Order has no assigned freelancer", "NO_FREELANCER")
    if job.status == "completed":
        settlement = settle_job_completion(job)
        db.session.commit()
        return jsonify({"job": job.to_dict(), "settlement": settlement})
    if not can_transition_job(job.status, "completed"):
        return api_error(job_transition_error(job.status, "completed"), "INVALID_TRANSITION")
    settlement = apply_status_change(job, "completed", current_user, note="Marked complete")
    db.session.commit()
    return jsonify({"job": job.to_dict(), "settlement": settlement})


# ---------------------------------------------------------------- bids

@api.route("/jobs/<int:job_id>/bids")
@login_required
def list_bids(job_id):
    job = db.get_or_404(Job, job_id, description="Order not found")
    query = Bid.query.filter_by(job_id=job.id)
    if not is_privileged(current_user):
        if (current_user.role or "").lower() != "freelancer":
            return _forbidden()
        query = query.filter_by(freelancer_id=current_user.id)
    return jsonify([bid.to_dict() for bid in query.order_by(Bid.created_at.asc()).all()])


@api.route("/jobs/<int:job_id>/bids", methods=["POST"])
@roles_required("freelancer")
def place_bid(job_id):
    job = db.get_or_404(Job, job_id, description="Order not found")
    if not current_user.approved:
        return api_error("Your account is awaiting approval", "ACCOUNT_NOT_APPROVED", 403)
    if job.status != "approved":
        return api_error("This order is not open for bids", "JOB_NOT_OPEN")
    if Bid.query.filter_by(job_id=job.id, freelancer_id=current_user.id).first():
        return api_error("You have already bid on this order", "DUPLICATE_BID", 409)
    form = BidForm()
    if not form.validate():
        return form_error(form)
    bid = Bid(job_id=job.id, freelancer_id=current_user.id, bid_amount=form.bid_amount.data, message=form.message.data)
    db.session.add(bid)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        return api_error("You have already bid on this order", "DUPLICATE_BID", 409)
    for admin_id in _admin_ids():
        notify(admin_id, "New Bid", f"{current_user.name} bid on order {job.label}.", "bid_placed", job_id=job.id)
    db.session.commit()
    return jsonify(bid.to_dict()), 201


@api.route("/bids/<int:bid_id>/accept", methods=["POST"])
@staff_required
def accept_bid_route(bid_id):
    bid = db.get_or_404(Bid, bid_id, description="Bid not found")
    job = bid.job
    if bid.status != "pending":
        return api_error("This bid has already been reviewed", "BID_NOT_PENDING", 409)
    if job.assigned_freelancer_id:
        return api_error("This order has already been assigned", "ALREADY_ASSIGNED", 409)
    if not can_transition_job(job.status, "assigned"):
        return api_error(job_transition_error(job.status, "assigned"), "INVALID_TRANSITION")
    accept_bid(bid, current_user)
    db.session.commit()
    freelancer = db.session.get(User, bid.freelancer_id)
    email_user(
        job.client,
        f"Order {job.label} assigned",
        f"Hello {job.client.name},\n\nYour order {job.label} has been assigned to {freelancer.name if freelancer else 'a freelancer'}.",
    )
    current_app.logger.info("Bid %s accepted for job %s by %s", bid.id, job.id, current_user.id)
    return jsonify({"bid": bid.to_dict(), "job": job.to_dict()})


# ---------------------------------------------------------------- ratings

@api.route("/jobs/<int:job_id>/rate", methods=["POST"])
@login_required
def rate_job(job_id):
    job = db.get_or_404(Job, job_id, description="Order not found")
    if job.status != "completed":
        return api_error("Only completed orders can be rated", "JOB_NOT_COMPLETED")
    if current_user.id == job.client_id:
        rated_user_id = job.assigned_freelancer_id
    elif current_user.id == job.assigned_freelancer_id:
        rated_user_id = job.client_id
    else:
        return _forbidden()
    if Rating.query.filter_by(job_id=job.id, rater_id=current_user.id).first():
        return api_error("You have already rated this order", "ALREADY_RATED", 409)
    form = RatingForm()
    if not form.validate():
        return form_error(form)
    rating = Rating(
        job_id=job.id,
        rater_id=current_user.id,
        rated_user_id=rated_user_id,
        score=form.score.data,
        comment=form.comment.data,
    )
    db.session.add(rating)
    try:
        db.session.flush()
    except IntegrityError:
        db.session.rollback()
        return api_error("You have already rated this order", "ALREADY_RATED", 409)
    rated = db.session.get(User, rated_user_id)
    if rated is not None and rated.role == "freelancer":
        try:
            scores = [s for (s,) in db.session.query(Rating.score).filter(Rating.rated_user_id == rated.id).all()]
            rated.rating = calculate_freelancer_rating(
                rated.completed_jobs or 0, rated.on_time_deliveries or 0, scores, rated.revisions_requested or 0
            )
            sync_auto_badges(rated)
        except Exception:
            current_app.logger.exception("Rating refresh failed for user %s", rated.id)
    notify(rated_user_id, "New Rating", f"You received a {rating.score}-star rating on order {job.label}.", "rating_received", job_id=job.id)
    db.session.commit()
    return jsonify({"id": rating.id, "jobId": job.id, "score": rating.score, "ratedUserId": rated_user_id}), 201


# ---------------------------------------------------------------- messages

@api.route("/jobs/<int:job_id>/messages")
@login_required
def list_messages(job_id):
    job = db.get_or_404(Job, job_id, description="Order not found")
    if not job.is_party(current_user):
        return _forbidden()
    messages = JobMessage.query.filter_by(job_id=job.id).order_by(JobMessage.created_at.asc()).all()
    return jsonify([m.to_dict() for m in messages if message_visible_to(m, current_user)])


@api.route("/jobs/<int:job_id>/messages", methods=["POST"])
@login_required
def post_message(job_id):
    job = db.get_or_404(Job, job_id, description="Order not found")
    if not job.is_party(current_user):
        return _forbidden()
    content = str(_json().get("message") or "").strip()
    if not content:
        return api_error("Message cannot be empty", "MISSING_MESSAGE")
    message_type = "link" if content.lower().startswith(("http://", "https://")) else "text"
    approved = message_auto_approved(current_user)
    message = JobMessage(
        job_id=job.id,
        sender_id=current_user.id,
        content=content,
        message_type=message_type,
        admin_approved=approved,
    )
    db.session.add(message)
    db.session.flush()
    if approved:
        for user_id in (job.client_id, job.assigned_freelancer_id):
            if user_id and user_id != current_user.id:
                notify(user_id, "New Message", f"New message on order {job.label}.", "message_received", job_id=job.id)
    else:
        for admin_id in _admin_ids():
            notify(admin_id, "Message Awaiting Approval", f"{current_user.name} sent a message on order {job.label}.", "message_pending", job_id=job.id)
    db.session.commit()
    return jsonify(message.to_dict()), 201


@api.route("/messages/<int:message_id>/approve", methods=["PATCH"])
@staff_required
def approve_message(message_id):
    message = db.get_or_404(JobMessage, message_id, description="Message not found")
    approved = _json().get("approved")
    if not isinstance(approved, bool):
        return api_error("approved must be a boolean", "INVALID_APPROVED")
    message.admin_approved = approved
    if approved:
        job = db.session.get(Job, message.job_id)
        for user_id in (job.client_id, job.assigned_freelancer_id):
            if user_id and user_id != message.sender_id:
                notify(user_id, "New Message", f"New message on order {job.label}.", "message_received", job_id=job.id)
    db.session.commit()
    return jsonify(message.to_dict())


@api.route("/messages/<int:message_id>", methods=["DELETE"])
@login_required
def delete_message(message_id):
    message = db.get_or_404(JobMessage, message_id, description="Message not found")
    if message.sender_id != current_user.id and not current_user.is_admin:
        return _forbidden("Only the sender or an admin can delete this message")
    message.deleted_at = datetime.utcnow()
    db.session.commit()
    return jsonify({"ok": True, "id": message.id})


# ---------------------------------------------------------------- attachments

@api.route("/jobs/<int:job_id>/attachments")
@login_required
def list_attachments(job_id):
    job = db.get_or_404(Job, job_id, description="Order not found")
    if not job.is_party(current_user):
        return _forbidden()
    rows = JobAttachment.query.filter_by(job_id=job.id).order_by(JobAttachment.created_at.asc()).all()
    return jsonify([a.to_dict() for a in rows if attachment_visible_to(a, current_user, job)])


@api.route("/jobs/<int:job_id>/attachments", methods=["POST"])
@login_required
def upload_attachment(job_id):
    job = db.get_or_404(Job, job_id, description="Order not found")
    if not job.is_party(current_user):
        return _forbidden()
    uploaded = request.files.get("file")
    if not uploaded or not uploaded.filename:
        return api_error("File is required", "MISSING_FILE")
    upload_type = (request.form.get("upload_type") or "initial").strip().lower()
    if upload_type not in UPLOAD_TYPES:
        return api_error(f"upload_type must be one of: {', '.join(UPLOAD_TYPES)}", "INVALID_UPLOAD_TYPE")
    size = stream_size(uploaded)
    try:
        validate_upload(uploaded.filename, size)
    except UploadRejected as err:
        return api_error(err.message, err.code, err.status)
    stored_name = save_upload(uploaded, job.id)
    attachment = JobAttachment(
        job_id=job.id,
        uploaded_by=current_user.id,
        file_name=uploaded.filename,
        stored_name=stored_name,
        file_size=size,
        file_type=uploaded.mimetype,
        upload_type=upload_type,
    )
    db.session.add(attachment)
    db.session.flush()
    for user_id in (job.client_id, job.assigned_freelancer_id):
        if user_id and user_id != current_user.id:
            notify(user_id, "New File", f"A {upload_type} file was uploaded to order {job.label}.", "file_uploaded", job_id=job.id)
    db.session.commit()
    return jsonify(attachment.to_dict()), 201


@api.route("/jobs/<int:job_id>/attachments/<int:attachment_id>", methods=["DELETE"])
@login_required
def delete_attachment(job_id, attachment_id):
    attachment = JobAttachment.query.filter_by(id=attachment_id, job_id=job_id).first_or_404(description="Attachment not found")
    if attachment.uploaded_by != current_user.id and not is_privileged(current_user):
        return _forbidden("Only the uploader or staff can delete this file")
    attachment.deleted_at = datetime.utcnow()
    db.session.commit()
    return jsonify({"ok": True, "id": attachment.id})


@api.route("/jobs/<int:job_id>/attachments/<int:attachment_id>", methods=["PATCH"])
@staff_required
def update_attachment_visibility(job_id, attachment_id):
    attachment = JobAttachment.query.filter_by(id=attachment_id, job_id=job_id).first_or_404(description="Attachment not found")
    data = _json()
    for key, attr in (
        ("is_visible", "is_visible"),
        ("visible_to_client", "visible_to_client"),
        ("visible_to_freelancer", "visible_to_freelancer"),
    ):
        if key in data:
            if not isinstance(data[key], bool):
                return api_error(f"{key} must be a boolean", "VALIDATION_ERROR")
            setattr(attachment, attr, data[key])
    db.session.commit()
    return jsonify(attachment.to_dict())


@api.route("/attachments/<int:attachment_id>/download")
@login_required
def download_attachment(attachment_id):
    attachment = db.get_or_404(JobAttachment, attachment_id, description="Attachment not found")
    job = db.session.get(Job, attachment.job_id)
    if job is None or not job.is_party(current_user) or not attachment_visible_to(attachment, current_user, job):
        return _forbidden("You do not have access to this file")
    if not os.path.exists(stored_path(attachment.stored_name)):
        return api_error("File is no longer available", "FILE_NOT_FOUND", 404)
    return send_from_directory(
        upload_root(), attachment.stored_name, as_attachment=True, download_name=attachment.file_name
    )


@api.route("/admin/attachments/cleanup-expired", methods=["POST"])
@admin_required
def cleanup_expired_attachments_route():
    return jsonify(cleanup_expired_attachments())


# ---------------------------------------------------------------- m-pesa

@api.route("/mpesa/stkpush", methods=["POST"])
@roles_required("client", "account_owner")
def mpesa_stkpush():
    data = _json()
    job_id = data.get("job_id")
    if not isinstance(job_id, int):
        return api_error("job_id is required", "MISSING_JOB_ID")
    job = db.get_or_404(Job, job_id, description="Order not found")
    if job.client_id != current_user.id:
        return _forbidden()
    if job.payment_confirmed or Payment.query.filter_by(job_id=job.id, status="confirmed").first():
        return api_error("This order has already been paid", "ALREADY_PAID", 409)
    if Payment.query.filter_by(job_id=job.id, status="pending").first():
        return api_error(
            "A payment for this order is already awaiting confirmation", "PAYMENT_PENDING", 409
        )
    if not is_payable(job):
        return api_error("This order is not ready for payment", "JOB_NOT_PAYABLE")
    try:
        amount = float(data.get("amount"))
    except (TypeError, ValueError):
        return api_error("amount must be a number", "INVALID_AMOUNT")
    if abs(amount - (job.amount or 0)) > 0.01:
        return api_error(
            f"Amount must match the order amount of KES {job.amount:,.2f}", "AMOUNT_MISMATCH", 400, expectedAmount=job.amount
        )
    phone = data.get("phone_number") or current_user.phone
    if not phone:
        return api_error("phone_number is required", "MISSING_PHONE")
    try:
        phone = mpesa.format_phone_number(phone)
        result = mpesa.stk_push(phone, amount, job.label, f"Order {job.label}")
    except mpesa.MpesaError as err:
        status = 400 if err.code == "INVALID_PHONE" else 502
        return api_error(err.message, err.code, status)
    payment = Payment(
        job_id=job.id,
        client_id=job.client_id,
        freelancer_id=job.assigned_freelancer_id,
        amount=amount,
        phone_number=phone,
        status="pending",
        mpesa_checkout_request_id=result["CheckoutRequestID"],
        mpesa_merchant_request_id=result["MerchantRequestID"],
    )
    db.session.add(payment)
    db.session.commit()
    return jsonify({
        "payment": payment.to_dict(),
        "checkoutRequestId": payment.mpesa_checkout_request_id,
        "customerMessage": result.get("CustomerMessage"),
    }), 201


@api.route("/mpesa/callback", methods=["POST"])
def mpesa_callback():
    secret = current_app.config.get("MPESA_WEBHOOK_SECRET")
    if secret:
        provided = request.headers.get("X-Webhook-Secret", "")
        if not hmac.compare_digest(provided.encode("utf-8"), secret.encode("utf-8")):
            current_app.logger.warning("M-Pesa callback rejected: bad webhook secret")
            return api_error("Unauthorized", "UNAUTHORIZED", 401)
    try:
        parsed = mpesa.parse_callback(request.get_json(silent=True))
        if parsed is None:
            current_app.logger.warning("M-Pesa callback with malformed body ignored")
            return jsonify(MPESA_ACK)
        payment = Payment.query.filter_by(mpesa_checkout_request_id=parsed["checkout_request_id"]).first()
        if payment is None:
            current_app.logger.warning("M-Pesa callback for unknown checkout %s", parsed["checkout_request_id"])
            return jsonify(MPESA_ACK)
        target = "confirmed" if parsed["result_code"] == 0 else "failed"
        outcome = apply_payment_result(
            payment,
            target,
            receipt_number=parsed["receipt_number"],
            transaction_date=parsed["transaction_date"],
            result_desc=parsed["result_desc"],
        )
        db.session.commit()
        current_app.logger.info("M-Pesa callback for payment %s: %s", payment.id, outcome)
    except Exception:
        current_app.logger.exception("M-Pesa callback processing failed")
        db.session.rollback()
    return jsonify(MPESA_ACK)


@api.route("/mpesa/query", methods=["POST"])
@login_required
@rate_limited("mpesa-query", limit=5, window_seconds=60)
def mpesa_query():
    data = _json()
    checkout_request_id = data.get("checkout_request_id")
    if not checkout_request_id:
        return api_error("checkout_request_id is required", "MISSING_CHECKOUT_REQUEST_ID")
    payment = Payment.query.filter_by(mpesa_checkout_request_id=checkout_request_id).first()
    if payment is None:
        return api_error("Payment not found", "PAYMENT_NOT_FOUND", 404)
    if payment.client_id != current_user.id and not current_user.is_admin:
        return _forbidden("You do not have access to this payment")
    if payment.status != "pending":
        return jsonify({"status": payment.status, "payment": payment.to_dict()})
    try:
        result = mpesa.stk_query(checkout_request_id)
    except mpesa.MpesaError as err:
        return api_error(err.message, err.code, 502)
    result_code = str(result.get("ResultCode", ""))
    if result_code == "0":
        apply_payment_result(payment, "confirmed", result_desc=result.get("ResultDesc"))
        db.session.commit()
    return jsonify({
        "status": "confirmed" if result_code == "0" else "pending",
        "resultCode": result_code or None,
        "resultDesc": result.get("ResultDesc"),
        "payment": payment.to_dict(),
    })


# ---------------------------------------------------------------- payments

@api.route("/payments")
@login_required
def list_payments():
    query = Payment.query
    role = (current_user.role or "").lower()
    if current_user.is_admin:
        pass
    elif role in ("client", "account_owner"):
        query = query.filter(Payment.client_id == current_user.id)
    elif role == "freelancer":
        query = query.filter(Payment.freelancer_id == current_user.id)
    else:
        return _forbidden("You do not have access to payments")
    status = (request.args.get("status") or "").strip()
    if status:
        query = query.filter(Payment.status == status)
    return jsonify([p.to_dict() for p in query.order_by(Payment.created_at.desc()).all()])


@api.route("/payments/<int:payment_id>/confirm", methods=["POST"])
@admin_required
def confirm_payment(payment_id):
    payment = db.get_or_404(Payment, payment_id, description="Payment not found")
    data = _json()
    outcome = apply_payment_result(
        payment,
        "confirmed",
        receipt_number=data.get("receipt_number"),
        result_desc="Confirmed manually by admin",
        confirmed_by_admin=True,
    )
    if outcome == REJECTED:
        return api_error(f"Cannot confirm a {payment.status} payment", "INVALID_TRANSITION")
    db.session.commit()
    return jsonify({"payment": payment.to_dict(), "alreadyConfirmed": outcome == NOOP, "confirmed": outcome == CONFIRMED})


# ---------------------------------------------------------------- invoices

@api.route("/invoices")
@login_required
def list_invoices():
    query = Invoice.query
    role = (current_user.role or "").lower()
    if is_privileged(current_user):
        pass
    elif role == "freelancer":
        query = query.filter(Invoice.freelancer_id == current_user.id)
    else:
        query = query.filter(Invoice.client_id == current_user.id)
    return jsonify([i.to_dict() for i in query.order_by(Invoice.created_at.desc()).all()])


@api.route("/invoices", methods=["POST"])
@admin_required
def create_invoice():
    job_id = _json().get("job_id")
    if not isinstance(job_id, int):
        return api_error("job_id is required", "MISSING_JOB_ID")
    job = db.get_or_404(Job, job_id, description="Order not found")
    if not job.payment_confirmed:
        return api_error("Payment for this order has not been confirmed", "PAYMENT_NOT_CONFIRMED")
    if not job.assigned_freelancer_id:
        return api_error("Order has no assigned freelancer", "NO_FREELANCER")
    if Invoice.query.filter_by(job_id=job.id).first():
        return api_error("An invoice already exists for this order", "INVOICE_EXISTS", 409)
    invoice = ensure_invoice(job)
    db.session.commit()
    return jsonify(invoice.to_dict()), 201


@api.route("/invoices/<int:invoice_id>/mark-paid", methods=["POST"])
@admin_required
def mark_invoice_paid(invoice_id):
    invoice = db.get_or_404(Invoice, invoice_id, description="Invoice not found")
    if invoice.is_paid:
        return api_error("This invoice is already paid", "ALREADY_PAID", 409)
    invoice.is_paid = True
    invoice.paid_at = datetime.utcnow()
    job = invoice.job
    settlement = None
    if job.status != "completed":
        if can_transition_job(job.status, "completed"):
            settlement = apply_status_change(job, "completed", current_user, note=f"Invoice {invoice.id} paid")
        else:
            current_app.logger.warning("Invoice %s paid while job %s is %s", invoice.id, job.id, job.status)
    db.session.commit()
    return jsonify({"invoice": invoice.to_dict(), "job": job.to_dict(), "settlement": settlement})


# ---------------------------------------------------------------- badges

@api.route("/admin/badges/auto-assign", methods=["POST"])
@admin_required
def auto_assign_badges_route():
    return jsonify(auto_assign_badges())


@api.route("/admin/badges/report")
@admin_required
def badge_report():
    report = {}
    for badge in AUTO_BADGES + MANUAL_BADGES:
        holders = (
            db.session.query(User.id, User.name, UserBadge.awarded_by)
            .join(UserBadge, UserBadge.user_id == User.id)
            .filter(UserBadge.badge == badge)
            .order_by(User.id.asc())
            .all()
        )
        report[badge] = {
            "criteria": BADGE_CRITERIA[badge],
            "automatic": badge in AUTO_BADGES,
            "count": len(holders),
            "users": [{"id": uid, "name": name, "awardedBy": by} for uid, name, by in holders],
        }
    return jsonify(report)


@api.route("/users/<int:user_id>/badges")
@login_required
def user_badges(user_id):
    user = db.get_or_404(User, user_id, description="User not found")
    return jsonify([
        {
            "badge": b.badge,
            "awardedBy": b.awarded_by,
            "awardedAt": b.awarded_at.isoformat() if b.awarded_at else None,
            "criteria": BADGE_CRITERIA.get(b.badge),
        }
        for b in sorted(user.badges, key=lambda b: b.badge)
    ])


@api.route("/users/<int:user_id>/badges/<badge>", methods=["POST"])
@admin_required
def grant_badge(user_id, badge):
    user = db.get_or_404(User, user_id, description="User not found")
    if badge not in MANUAL_BADGES:
        return api_error(f"Only manual badges can be granted: {', '.join(MANUAL_BADGES)}", "INVALID_BADGE")
    if badge in user.badge_list:
        return api_error("User already holds this badge", "BADGE_EXISTS", 409)
    user.badges.append(UserBadge(badge=badge, awarded_by="admin"))
    notify(user.id, "Badge Awarded", f"You have been awarded the {badge.replace('_', ' ')} badge.", "badge_awarded")
    db.session.commit()
    return jsonify({"userId": user.id, "badges": user.badge_list}), 201


@api.route("/users/<int:user_id>/badges/<badge>", methods=["DELETE"])
@admin_required
def revoke_badge(user_id, badge):
    user = db.get_or_404(User, user_id, description="User not found")
    if badge not in MANUAL_BADGES:
        return api_error(f"Only manual badges can be removed: {', '.join(MANUAL_BADGES)}", "INVALID_BADGE")
    held = next((b for b in user.badges if b.badge == badge), None)
    if held is None:
        return api_error("User does not hold this badge", "BADGE_NOT_FOUND", 404)
    user.badges.remove(held)
    db.session.commit()
    return jsonify({"userId": user.id, "badges": user.badge_list})


@api.route("/admin/balances/recompute", methods=["POST"])
@admin_required
def recompute_balances_route():
    return jsonify(recompute_all_balances())


# ---------------------------------------------------------------- earnings, notifications, users

@api.route("/freelancer/earnings")
@roles_required("freelancer")
def freelancer_earnings():
    jobs = Job.query.filter_by(assigned_freelancer_id=current_user.id).order_by(Job.created_at.desc()).all()
    settled = [j for j in jobs if j.status == "completed" and j.payment_confirmed]
    open_jobs = [j for j in jobs if j.status not in ("completed", "cancelled")]
    return jsonify({
        "balance": round(current_user.balance or 0, 2),
        "totalEarned": round(current_user.total_earned or 0, 2),
        "completedJobs": current_user.completed_jobs,
        "pendingEarnings": round(
            sum(calculate_writer_earnings(j.pages, j.slides, j.work_type) for j in open_jobs), 2
        ),
        "settledJobs": [
            {"id": j.id, "displayId": j.display_id, "title": j.title, "earnings": job_payout(j),
             "completedAt": j.completed_at.isoformat() if j.completed_at else None}
            for j in settled
        ],
    })


@api.route("/notifications")
@login_required
def list_notifications():
    query = Notification.query.filter_by(user_id=current_user.id)
    if request.args.get("unread") in ("1", "true"):
        query = query.filter_by(read=False)
    rows = query.order_by(Notification.created_at.desc()).limit(100).all()
    return jsonify([n.to_dict() for n in rows])


@api.route("/notifications/<int:notification_id>/read", methods=["POST"])
@login_required
def mark_notification_read(notification_id):
    row = Notification.query.filter_by(id=notification_id, user_id=current_user.id).first_or_404(
        description="Notification not found"
    )
    row.read = True
    db.session.commit()
    return jsonify(row.to_dict())


@api.route("/users/<int:user_id>")
@login_required
def get_user(user_id):
    user = db.get_or_404(User, user_id, description="User not found")
    if user.id == current_user.id or is_privileged(current_user):
        return jsonify(user.to_dict())
    return jsonify({
        "id": user.id,
        "name": user.name,
        "role": user.role,
        "rating": user.rating,
        "freelancerBadge": user.freelancer_badge,
        "clientTier": user.client_tier,
        "badgeList": user.badge_list,
    })


@api.route("/admin/users/<int:user_id>/approve", methods=["POST"])
@admin_required
def approve_user(user_id):
    user = db.get_or_404(User, user_id, description="User not found")
    if user.approved:
        return jsonify(user.to_dict())
    user.approved = True
    notify(user.id, "Account Approved", "Your TaskLynk account has been approved.", "account_approved")
    db.session.commit()
    email_user(user, "Your TaskLynk account is approved", f"Hello {user.name},\n\nYour account has been approved. You can now start working on TaskLynk.")
    current_app.logger.info("User %s approved by admin %s", user.id, current_user.id)
    return jsonify(user.to_dict())


# ---------------------------------------------------------------- bulk email

@api.route("/admin/emails/compose", methods=["POST"])
@admin_required
def compose_email():
    try:
        result = compose_bulk_email(current_user, _json())
    except BulkEmailError as err:
        return api_error(err.message, err.code, err.status, **err.data)
    return jsonify(result), 201


@api.route("/admin/emails")
@admin_required
def list_email_logs():
    logs = EmailLog.query.order_by(EmailLog.created_at.desc()).limit(100).all()
    used = sent_today()
    return jsonify({
        "logs": [log.to_dict() for log in logs],
        "dailyUsage": {"used": used, "limit": DAILY_EMAIL_LIMIT, "remaining": max(DAILY_EMAIL_LIMIT - used, 0)},
    })


# ---------------------------------------------------------------- exports

@api.route("/admin/jobs/export")
@staff_required
def export_jobs():
    content = jobs_csv(status=(request.args.get("status") or "").strip() or None)
    filename = f"tasklynk-orders-{datetime.utcnow().strftime('%Y%m%d')}.csv"
    return Response(
        content,
        mimetype="text/csv",
        headers={"Content-Disposition": f"attachment; filename={filename}", "Cache-Control": "no-store"},
    )


@api.route("/admin/invoices/export")
@admin_required
def export_invoices():
    fmt = (request.args.get("format") or "xlsx").strip().lower()
    group_by = (request.args.get("group_by") or "client").strip().lower()
    if fmt not in ("xlsx", "csv"):
        return api_error("format must be xlsx or csv", "INVALID_FORMAT")
    if group_by not in ("client", "freelancer"):
        return api_error("group_by must be client or freelancer", "INVALID_GROUP_BY")
    paid = {"paid": True, "unpaid": False}.get((request.args.get("status") or "").strip().lower())
    rows = invoice_rows(paid=paid)
    stamp = datetime.utcnow().strftime("%Y-%m-%d")
    filename = f"admin-invoices-{group_by}-{stamp}.{fmt}"
    if fmt == "csv":
        body, mimetype = invoices_csv(rows, group_by), "text/csv"
    else:
        body, mimetype = invoices_xlsx(rows, group_by), XLSX_MIMETYPE
    return Response(
        body,
        mimetype=mimetype,
        headers={"Content-Disposition": f"attachment; filename={filename}", "Cache-Control": "no-store"},
    )
