from datetime import datetime

from flask import current_app
from flask_login import UserMixin
from werkzeug.security import check_password_hash, generate_password_hash

from tasklynk.extensions import db

ROLES = ("admin", "client", "freelancer", "manager", "editor", "account_owner")
STAFF_ROLES = ("admin", "manager")

JOB_STATUSES = (
    "pending",
    "approved",
    "assigned",
    "in_progress",
    "editing",
    "delivered",
    "revision",
    "paid",
    "completed",
    "cancelled",
    "on_hold",
)
PAYMENT_STATUSES = ("pending", "confirmed", "failed", "cancelled")


def _iso(value):
    return value.isoformat() if value else None


class User(UserMixin, db.Model):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    name = db.Column(db.String(100), nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    role = db.Column(db.String(20), nullable=False, default="client")
    approved = db.Column(db.Boolean, default=False, nullable=False)
    phone = db.Column(db.String(30), nullable=True)
    balance = db.Column(db.Float, default=0.0, nullable=False)
    total_earned = db.Column(db.Float, default=0.0, nullable=False)
    total_spent = db.Column(db.Float, default=0.0, nullable=False)
    completed_jobs = db.Column(db.Integer, default=0, nullable=False)
    on_time_deliveries = db.Column(db.Integer, default=0, nullable=False)
    revisions_requested = db.Column(db.Integer, default=0, nullable=False)
    rating = db.Column(db.Float, nullable=True)
    freelancer_badge = db.Column(db.String(20), nullable=True)
    client_tier = db.Column(db.String(20), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
    badges = db.relationship("UserBadge", backref="user", lazy=True, cascade="all, delete-orphan")

    @property
    def is_admin(self):
        role = (self.role or "").strip().lower()
        if role == "admin":
            return True
        try:
            configured = set(current_app.config.get("ADMIN_EMAILS", []))
        except RuntimeError:
            configured = set()
        return (self.email or "").strip().lower() in configured

    @property
    def is_staff(self):
        return self.is_admin or (self.role or "").lower() in STAFF_ROLES

    @property
    def badge_list(self):
        return sorted(b.badge for b in self.badges)

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    def to_dict(self):
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "approved": self.approved,
            "phone": self.phone,
            "balance": round(self.balance or 0, 2),
            "totalEarned": round(self.total_earned or 0, 2),
            "totalSpent": round(self.total_spent or 0, 2),
            "completedJobs": self.completed_jobs,
            "onTimeDelivery": self.on_time_deliveries,
            "rating": self.rating,
            "freelancerBadge": self.freelancer_badge,
            "clientTier": self.client_tier,
            "badgeList": self.badge_list,
            "createdAt": _iso(self.created_at),
        }


class UserBadge(db.Model):
    __table_args__ = (
        db.UniqueConstraint("user_id", "badge", name="uq_user_badge"),
    )
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    badge = db.Column(db.String(40), nullable=False)
    awarded_by = db.Column(db.String(20), nullable=False, default="auto")  # auto | admin
    awarded_at = db.Column(db.DateTime, default=datetime.utcnow)


class Job(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    display_id = db.Column(db.String(20), unique=True, nullable=True)
    client_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    assigned_freelancer_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=True, index=True)
    title = db.Column(db.String(255), nullable=False)
    instructions = db.Column(db.Text, nullable=False, default="")
    work_type = db.Column(db.String(80), nullable=False, default="Essay")
    pages = db.Column(db.Integer, nullable=False, default=0)
    slides = db.Column(db.Integer, nullable=False, default=0)
    amount = db.Column(db.Float, nullable=False, default=0.0)
    freelancer_earnings = db.Column(db.Float, nullable=True)
    status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    actual_deadline = db.Column(db.DateTime, nullable=False)
    freelancer_deadline = db.Column(db.DateTime, nullable=True)
    payment_confirmed = db.Column(db.Boolean, default=False, nullable=False)
    admin_approved = db.Column(db.Boolean, default=False, nullable=False)
    delivered_at = db.Column(db.DateTime, nullable=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    archived_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    client = db.relationship("User", foreign_keys=[client_id])
    freelancer = db.relationship("User", foreign_keys=[assigned_freelancer_id])

    def is_party(self, user):
        if user is None:
            return False
        return user.is_staff or user.id in (self.client_id, self.assigned_freelancer_id)

    @property
    def label(self):
        return self.display_id or f"#{self.id}"

    def to_dict(self):
        return {
            "id": self.id,
            "displayId": self.display_id,
            "clientId": self.client_id,
            "assignedFreelancerId": self.assigned_freelancer_id,
            "title": self.title,
            "instructions": self.instructions,
            "workType": self.work_type,
            "pages": self.pages,
            "slides": self.slides,
            "amount": self.amount,
            "freelancerEarnings": self.freelancer_earnings,
            "status": self.status,
            "actualDeadline": _iso(self.actual_deadline),
            "freelancerDeadline": _iso(self.freelancer_deadline),
            "paymentConfirmed": self.payment_confirmed,
            "adminApproved": self.admin_approved,
            "deliveredAt": _iso(self.delivered_at),
            "completedAt": _iso(self.completed_at),
            "archivedAt": _iso(self.archived_at),
            "createdAt": _iso(self.created_at),
        }


class JobStatusLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey("job.id"), nullable=False, index=True)
    old_status = db.Column(db.String(20), nullable=True)
    new_status = db.Column(db.String(20), nullable=False)
    changed_by = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=True)
    note = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class Bid(db.Model):
    __table_args__ = (
        db.UniqueConstraint("job_id", "freelancer_id", name="uq_bid_job_freelancer"),
    )
    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey("job.id"), nullable=False, index=True)
    freelancer_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    bid_amount = db.Column(db.Float, nullable=True)
    message = db.Column(db.Text, nullable=True)
    status = db.Column(db.String(20), default="pending", nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    reviewed_at = db.Column(db.DateTime, nullable=True)

    job = db.relationship("Job", backref=db.backref("bids", lazy=True))

    def to_dict(self):
        return {
            "id": self.id,
            "jobId": self.job_id,
            "freelancerId": self.freelancer_id,
            "bidAmount": self.bid_amount,
            "message": self.message,
            "status": self.status,
            "createdAt": _iso(self.created_at),
        }


class Payment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey("job.id"), nullable=False, index=True)
    client_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    freelancer_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=True)
    amount = db.Column(db.Float, nullable=False)
    phone_number = db.Column(db.String(20), nullable=True)
    payment_method = db.Column(db.String(20), nullable=False, default="mpesa")
    status = db.Column(db.String(20), nullable=False, default="pending")
    mpesa_checkout_request_id = db.Column(db.String(100), unique=True, nullable=True)
    mpesa_merchant_request_id = db.Column(db.String(100), nullable=True)
    mpesa_receipt_number = db.Column(db.String(50), nullable=True)
    mpesa_transaction_date = db.Column(db.String(20), nullable=True)
    mpesa_result_desc = db.Column(db.String(255), nullable=True)
    confirmed_by_admin = db.Column(db.Boolean, default=False, nullable=False)
    confirmed_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "jobId": self.job_id,
            "clientId": self.client_id,
            "freelancerId": self.freelancer_id,
            "amount": self.amount,
            "phoneNumber": self.phone_number,
            "status": self.status,
            "mpesaCheckoutRequestId": self.mpesa_checkout_request_id,
            "mpesaReceiptNumber": self.mpesa_receipt_number,
            "mpesaResultDesc": self.mpesa_result_desc,
            "confirmedByAdmin": self.confirmed_by_admin,
            "confirmedAt": _iso(self.confirmed_at),
            "createdAt": _iso(self.created_at),
        }


class Invoice(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey("job.id"), unique=True, nullable=False)
    client_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    freelancer_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=True)
    amount = db.Column(db.Float, nullable=False)
    freelancer_amount = db.Column(db.Float, nullable=False, default=0.0)
    admin_commission = db.Column(db.Float, nullable=False, default=0.0)
    is_paid = db.Column(db.Boolean, default=False, nullable=False)
    paid_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    job = db.relationship("Job")

    def to_dict(self):
        return {
            "id": self.id,
            "jobId": self.job_id,
            "clientId": self.client_id,
            "freelancerId": self.freelancer_id,
            "amount": self.amount,
            "freelancerAmount": self.freelancer_amount,
            "adminCommission": self.admin_commission,
            "isPaid": self.is_paid,
            "paidAt": _iso(self.paid_at),
            "createdAt": _iso(self.created_at),
        }


class JobAttachment(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey("job.id"), nullable=False, index=True)
    uploaded_by = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    file_name = db.Column(db.String(255), nullable=False)
    stored_name = db.Column(db.String(255), nullable=False)
    file_size = db.Column(db.Integer, nullable=False, default=0)
    file_type = db.Column(db.String(120), nullable=True)
    upload_type = db.Column(db.String(20), nullable=False, default="initial")
    is_visible = db.Column(db.Boolean, default=True, nullable=False)
    visible_to_client = db.Column(db.Boolean, default=True, nullable=False)
    visible_to_freelancer = db.Column(db.Boolean, default=True, nullable=False)
    scheduled_deletion_at = db.Column(db.DateTime, nullable=True)
    deleted_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "jobId": self.job_id,
            "uploadedBy": self.uploaded_by,
            "fileName": self.file_name,
            "fileSize": self.file_size,
            "fileType": self.file_type,
            "uploadType": self.upload_type,
            "isVisible": self.is_visible,
            "visibleToClient": self.visible_to_client,
            "visibleToFreelancer": self.visible_to_freelancer,
            "scheduledDeletionAt": _iso(self.scheduled_deletion_at),
            "createdAt": _iso(self.created_at),
        }


class JobMessage(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey("job.id"), nullable=False, index=True)
    sender_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    content = db.Column(db.Text, nullable=False)
    message_type = db.Column(db.String(10), nullable=False, default="text")
    admin_approved = db.Column(db.Boolean, default=False, nullable=False)
    deleted_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    sender = db.relationship("User")

    def to_dict(self):
        sender = self.sender
        return {
            "id": self.id,
            "jobId": self.job_id,
            "senderId": self.sender_id,
            "message": self.content,
            "messageType": self.message_type,
            "adminApproved": self.admin_approved,
            "createdAt": _iso(self.created_at),
            "sender": {
                "id": self.sender_id,
                "name": sender.name if sender else "Unknown User",
                "role": sender.role if sender else "unknown",
            },
        }


class Rating(db.Model):
    __table_args__ = (
        db.UniqueConstraint("job_id", "rater_id", name="uq_rating_job_rater"),
    )
    id = db.Column(db.Integer, primary_key=True)
    job_id = db.Column(db.Integer, db.ForeignKey("job.id"), nullable=False, index=True)
    rater_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    rated_user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    score = db.Column(db.Integer, nullable=False)
    comment = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)


class Notification(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    job_id = db.Column(db.Integer, db.ForeignKey("job.id"), nullable=True)
    type = db.Column(db.String(40), nullable=False)
    title = db.Column(db.String(150), nullable=False)
    message = db.Column(db.Text, nullable=False)
    read = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "jobId": self.job_id,
            "type": self.type,
            "title": self.title,
            "message": self.message,
            "read": self.read,
            "createdAt": _iso(self.created_at),
        }


class EmailLog(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    sent_by = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    sent_to = db.Column(db.Text, nullable=False)
    recipient_type = db.Column(db.String(20), nullable=False)
    recipient_count = db.Column(db.Integer, nullable=False, default=0)
    from_email = db.Column(db.String(120), nullable=False)
    subject = db.Column(db.String(255), nullable=False)
    body = db.Column(db.Text, nullable=False)
    status = db.Column(db.String(10), nullable=False)  # sent | failed | partial
    failed_recipients = db.Column(db.Text, nullable=True)
    job_id = db.Column(db.Integer, db.ForeignKey("job.id"), nullable=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            "id": self.id,
            "sentBy": self.sent_by,
            "sentTo": self.sent_to,
            "recipientType": self.recipient_type,
            "recipientCount": self.recipient_count,
            "fromEmail": self.from_email,
            "subject": self.subject,
            "status": self.status,
            "failedRecipients": self.failed_recipients,
            "jobId": self.job_id,
            "createdAt": _iso(self.created_at),
        }


class RateLimitWindow(db.Model):
    __table_args__ = (
        db.UniqueConstraint("key", "window_start", name="uq_rate_limit_window"),
    )
    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(120), nullable=False)
    window_start = db.Column(db.DateTime, nullable=False)
    count = db.Column(db.Integer, nullable=False, default=0)
