import json
import urllib.error
import urllib.request

from flask import current_app
from flask_mail import Message as MailMessage

from tasklynk.extensions import mail

RESEND_URL = "https://api.resend.com/emails"


def _sender_address(sender):
    address = sender or current_app.config.get("RESEND_FROM_EMAIL") or current_app.config.get("MAIL_DEFAULT_SENDER")
    if isinstance(address, tuple):
        address = address[1]
    return address or ""


def _send_via_resend(api_key, sender, to_email, subject, body, html):
    payload = {"from": sender, "to": [to_email], "subject": subject}
    if html:
        payload["html"] = html
    if body:
        payload["text"] = body
    req = urllib.request.Request(
        RESEND_URL,
        data=json.dumps(payload).encode("utf-8"),
        headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=10) as resp:
            data = json.loads(resp.read().decode("utf-8") or "{}")
    except urllib.error.HTTPError as err:
        current_app.logger.error(
            "Resend rejected mail to %s: %s %s", to_email, err.code, err.read().decode("utf-8", errors="ignore")
        )
        return False
    except Exception:
        current_app.logger.exception("Resend request for %s failed", to_email)
        return False
    current_app.logger.info("Mail to %s accepted by Resend as %s", to_email, data.get("id"))
    return True


def send_email(to_email, subject, body="", html=None, sender=None):
    """Deliver one message through Resend when a key is set, else Flask-Mail.

    Returns True when the provider accepted it; failures are logged, never raised.
    """
    if not to_email:
        current_app.logger.warning("Mail %r skipped: no recipient", subject)
        return False
    api_key = (current_app.config.get("RESEND_API_KEY") or "").strip()
    from_address = _sender_address(sender)
    if api_key and from_address:
        return _send_via_resend(api_key, from_address, to_email, subject, body, html)

    message = MailMessage(
        subject=subject,
        recipients=[to_email],
        body=body or "",
        html=html,
        sender=sender or current_app.config.get("MAIL_DEFAULT_SENDER"),
    )
    try:
        mail.send(message)
    except Exception:
        current_app.logger.exception("SMTP delivery to %s failed", to_email)
        return False
    current_app.logger.info("Mail to %s sent over SMTP", to_email)
    return True
