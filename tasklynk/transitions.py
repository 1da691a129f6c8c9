JOB_TRANSITIONS = {
    "pending": ("approved", "cancelled", "on_hold"),
    "approved": ("assigned", "cancelled", "on_hold"),
    "assigned": ("in_progress", "editing", "cancelled", "on_hold"),
    "in_progress": ("editing", "delivered", "cancelled", "on_hold"),
    "editing": ("delivered", "revision", "cancelled", "on_hold"),
    "delivered": ("revision", "paid", "completed", "cancelled", "on_hold"),
    "revision": ("in_progress", "editing", "delivered", "cancelled", "on_hold"),
    "on_hold": ("approved", "assigned", "in_progress", "cancelled"),
    "paid": ("completed",),
    "completed": (),
    "cancelled": (),
}

# Self-transitions on confirmed/failed/cancelled are the only moves out of a
# settled payment, which makes repeated gateway callbacks harmless.
PAYMENT_TRANSITIONS = {
    "pending": ("confirmed", "failed"),
    "confirmed": ("confirmed",),
    "failed": ("failed",),
    "cancelled": ("cancelled",),
}

ROLE_JOB_TARGETS = {
    "freelancer": ("in_progress", "delivered"),
    "editor": ("editing", "delivered", "revision"),
    "client": ("revision", "cancelled"),
}


def can_transition_job(old_status, new_status):
    if old_status == new_status:
        return True
    return new_status in JOB_TRANSITIONS.get(old_status, ())


def job_transition_error(old_status, new_status):
    allowed = JOB_TRANSITIONS.get(old_status)
    if allowed is None:
        return f"Invalid current status: {old_status}"
    return (
        f"Invalid status transition from '{old_status}' to '{new_status}'. "
        f"Allowed transitions: {', '.join(allowed) or 'none'}"
    )


def can_transition_payment(old_status, new_status):
    return new_status in PAYMENT_TRANSITIONS.get(old_status, ())


def is_terminal(status):
    return not JOB_TRANSITIONS.get(status, ())


def role_may_request(user, job, new_status):
    """Whether this user may ask for the given target status on this job."""
    if user.is_staff:
        return True
    role = (user.role or "").lower()
    if new_status not in ROLE_JOB_TARGETS.get(role, ()):
        return False
    if role == "freelancer":
        return job.assigned_freelancer_id == user.id
    if role == "client":
        if job.client_id != user.id:
            return False
        if new_status == "cancelled":
            return job.status == "pending"
        return job.status == "delivered"
    return True
