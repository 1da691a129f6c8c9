from flask import current_app, jsonify
from werkzeug.exceptions import HTTPException

from tasklynk.extensions import db

HTTP_ERROR_CODES = {
    400: "BAD_REQUEST",
    401: "UNAUTHORIZED",
    403: "FORBIDDEN",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    413: "FILE_TOO_LARGE",
    429: "RATE_LIMITED",
}


def api_error(message, code, status=400, **extra):
    payload = {"error": message, "code": code}
    payload.update(extra)
    return jsonify(payload), status


def form_error(form):
    fields = {name: list(errors) for name, errors in form.errors.items()}
    first = next(iter(fields.values()), ["Invalid input"])
    return api_error(first[0] if first else "Invalid input", "VALIDATION_ERROR", 400, fields=fields)


def register_error_handlers(blueprint):
    @blueprint.errorhandler(Exception)
    def handle_exception(err):
        if isinstance(err, HTTPException):
            code = HTTP_ERROR_CODES.get(err.code, "HTTP_ERROR")
            return api_error(err.description or err.name, code, err.code)
        current_app.logger.exception("Unhandled API error")
        db.session.rollback()
        if current_app.config.get("APP_ENV") == "production":
            message = "Internal server error"
        else:
            message = f"Internal server error: {err}"
        return api_error(message, "INTERNAL_ERROR", 500)
