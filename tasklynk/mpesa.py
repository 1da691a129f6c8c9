"""Safaricom Daraja client: OAuth token, STK push and STK push query."""
import base64
import json
import re
import urllib.error
import urllib.request
from datetime import datetime

from flask import current_app

SANDBOX_BASE_URL = "https://sandbox.safaricom.co.ke"
PRODUCTION_BASE_URL = "https://api.safaricom.co.ke"
PHONE_PATTERN = re.compile(r"^254[17]\d{8}$")


class MpesaError(Exception):
    def __init__(self, message, code="MPESA_ERROR"):
        super().__init__(message)
        self.message = message
        self.code = code


def base_url():
    if current_app.config.get("MPESA_ENVIRONMENT") == "production":
        return PRODUCTION_BASE_URL
    return SANDBOX_BASE_URL


def format_phone_number(phone):
    cleaned = re.sub(r"[\s\-()]", "", str(phone or ""))
    if cleaned.startswith("+"):
        cleaned = cleaned[1:]
    if cleaned.startswith("0"):
        cleaned = "254" + cleaned[1:]
    if not cleaned.startswith("254"):
        cleaned = "254" + cleaned
    if not PHONE_PATTERN.match(cleaned):
        raise MpesaError(f"Invalid phone number format: {phone}", "INVALID_PHONE")
    return cleaned


def get_timestamp(now=None):
    return (now or datetime.now()).strftime("%Y%m%d%H%M%S")


def generate_password(shortcode, passkey, timestamp):
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode("utf-8")).decode("ascii")


def _call(url, payload=None, headers=None, method="POST"):
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    req = urllib.request.Request(url, data=data, headers=headers or {}, method=method)
    timeout = current_app.config.get("MPESA_TIMEOUT_SECONDS", 30)
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            raw = resp.read().decode("utf-8") if resp else "{}"
            return json.loads(raw or "{}")
    except urllib.error.HTTPError as err:
        error_body = err.read().decode("utf-8", errors="ignore") if err else ""
        current_app.logger.error("Daraja HTTP error: %s %s", getattr(err, "code", "unknown"), error_body)
        try:
            detail = json.loads(error_body or "{}")
        except ValueError:
            detail = {}
        message = detail.get("errorMessage") or detail.get("errorCode") or f"HTTP {getattr(err, 'code', 'error')}"
        raise MpesaError(f"M-Pesa request failed: {message}", "MPESA_HTTP_ERROR") from err
    except urllib.error.URLError as err:
        current_app.logger.error("Daraja network error: %s", err)
        raise MpesaError("Network error while contacting M-Pesa. Please try again.", "MPESA_NETWORK_ERROR") from err


def get_access_token():
    key = current_app.config.get("MPESA_CONSUMER_KEY")
    secret = current_app.config.get("MPESA_CONSUMER_SECRET")
    if not key or not secret:
        raise MpesaError("M-Pesa credentials are not configured", "MPESA_NOT_CONFIGURED")
    auth = base64.b64encode(f"{key}:{secret}".encode("utf-8")).decode("ascii")
    data = _call(
        f"{base_url()}/oauth/v1/generate?grant_type=client_credentials",
        headers={"Authorization": f"Basic {auth}"},
        method="GET",
    )
    token = data.get("access_token")
    if not token:
        raise MpesaError("M-Pesa did not return an access token", "MPESA_AUTH_FAILED")
    return token


def _signed_fields():
    shortcode = current_app.config.get("MPESA_BUSINESS_SHORTCODE")
    timestamp = get_timestamp()
    return {
        "BusinessShortCode": shortcode,
        "Password": generate_password(shortcode, current_app.config.get("MPESA_PASSKEY", ""), timestamp),
        "Timestamp": timestamp,
    }


def stk_push(phone_number, amount, account_reference, description):
    phone = format_phone_number(phone_number)
    token = get_access_token()
    payload = _signed_fields()
    payload.update({
        "TransactionType": "CustomerPayBillOnline",
        "Amount": int(amount),
        "PartyA": phone,
        "PartyB": payload["BusinessShortCode"],
        "PhoneNumber": phone,
        "CallBackURL": current_app.config.get("MPESA_CALLBACK_URL"),
        "AccountReference": account_reference[:12],
        "TransactionDesc": description[:13],
    })
    data = _call(
        f"{base_url()}/mpesa/stkpush/v1/processrequest",
        payload,
        headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
    )
    if data.get("errorCode") or data.get("errorMessage"):
        raise MpesaError(data.get("errorMessage") or f"Error code: {data.get('errorCode')}", "STK_PUSH_FAILED")
    if not data.get("CheckoutRequestID") or not data.get("MerchantRequestID"):
        raise MpesaError("M-Pesa did not return required transaction IDs", "STK_PUSH_FAILED")
    current_app.logger.info("STK push initiated: checkout=%s", data["CheckoutRequestID"])
    return data


def stk_query(checkout_request_id):
    token = get_access_token()
    payload = _signed_fields()
    payload["CheckoutRequestID"] = checkout_request_id
    return _call(
        f"{base_url()}/mpesa/stkpushquery/v1/query",
        payload,
        headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
    )


def parse_callback(envelope):
    """Flatten a Daraja ``Body.stkCallback`` envelope. Returns None when malformed."""
    callback = ((envelope or {}).get("Body") or {}).get("stkCallback")
    if not isinstance(callback, dict) or not callback.get("CheckoutRequestID"):
        return None
    items = ((callback.get("CallbackMetadata") or {}).get("Item")) or []
    metadata = {item.get("Name"): item.get("Value") for item in items if isinstance(item, dict)}
    try:
        result_code = int(callback.get("ResultCode"))
    except (TypeError, ValueError):
        result_code = -1
    transaction_date = metadata.get("TransactionDate")
    return {
        "merchant_request_id": callback.get("MerchantRequestID"),
        "checkout_request_id": callback.get("CheckoutRequestID"),
        "result_code": result_code,
        "result_desc": callback.get("ResultDesc") or "",
        "amount": metadata.get("Amount"),
        "receipt_number": metadata.get("MpesaReceiptNumber"),
        "transaction_date": str(transaction_date) if transaction_date is not None else None,
        "phone_number": str(metadata.get("PhoneNumber") or "") or None,
    }
