import calendar
from datetime import datetime, timedelta
from functools import wraps

from flask import current_app, request
from sqlalchemy.exc import IntegrityError

from tasklynk.errors import api_error
from tasklynk.extensions import db
from tasklynk.models import RateLimitWindow


def client_ip():
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.headers.get("X-Real-IP") or request.remote_addr or "unknown"


def window_start_for(now, window_seconds):
    epoch = calendar.timegm(now.utctimetuple())
    return now.replace(microsecond=0) - timedelta(seconds=epoch % window_seconds)


def utcnow():
    return datetime.utcnow()


def _open_window(key, start):
    for _ in range(2):
        row = RateLimitWindow.query.filter_by(key=key, window_start=start).first()
        if row is not None:
            return row.id
        RateLimitWindow.query.filter(
            RateLimitWindow.key == key,
            RateLimitWindow.window_start < start,
        ).delete(synchronize_session=False)
        row = RateLimitWindow(key=key, window_start=start, count=0)
        db.session.add(row)
        try:
            db.session.commit()
            return row.id
        except IntegrityError:
            # Another worker opened the same window first.
            db.session.rollback()
    return None


def hit(key, limit, window_seconds, now=None):
    """Count one request against ``key``; returns (allowed, retry_after_seconds).

    The increment is a single conditional UPDATE so concurrent workers can
    never push a window past ``limit``.
    """
    now = now or utcnow()
    start = window_start_for(now, window_seconds)
    retry_after = max(1, int((start + timedelta(seconds=window_seconds) - now).total_seconds()))
    window_id = _open_window(key, start)
    if window_id is None:
        return False, retry_after
    updated = RateLimitWindow.query.filter(
        RateLimitWindow.id == window_id,
        RateLimitWindow.count < limit,
    ).update({"count": RateLimitWindow.count + 1}, synchronize_session=False)
    db.session.commit()
    return bool(updated), retry_after


def rate_limited(scope, limit=5, window_seconds=60):
    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            ip = client_ip()
            allowed, retry_after = hit(f"{scope}:{ip}", limit, window_seconds)
            if not allowed:
                current_app.logger.warning("Rate limit hit for %s from %s", scope, ip)
                return api_error(
                    "Too many requests. Please wait before trying again.",
                    "RATE_LIMITED",
                    429,
                    retryAfter=retry_after,
                )
            return func(*args, **kwargs)
        return wrapper
    return decorator
