import os


def _env_flag(name, default="false"):
    return os.environ.get(name, default).strip().lower() in ("1", "true", "yes", "on")


def _env_list(name, default=""):
    return [e.strip().lower() for e in os.environ.get(name, default).split(",") if e.strip()]


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev_secret_key")
    APP_ENV = os.environ.get("APP_ENV", "development").strip().lower()
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").strip().upper()
    SQLALCHEMY_DATABASE_URI = os.environ.get("SQLALCHEMY_DATABASE_URI", "sqlite:///tasklynk.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    DB_AUTO_CREATE = _env_flag("DB_AUTO_CREATE", "true")
    APP_URL = os.environ.get("APP_URL", "http://localhost:5000").rstrip("/")
    ADMIN_EMAILS = _env_list("ADMIN_EMAILS")
    ADMIN_BOOTSTRAP_EMAIL = os.environ.get("ADMIN_BOOTSTRAP_EMAIL", "").strip().lower()
    ADMIN_BOOTSTRAP_PASSWORD = os.environ.get("ADMIN_BOOTSTRAP_PASSWORD", "")

    MAIL_SERVER = os.environ.get("MAIL_SERVER", "smtp.gmail.com")
    MAIL_PORT = int(os.environ.get("MAIL_PORT", "587"))
    MAIL_USE_TLS = _env_flag("MAIL_USE_TLS", "true")
    MAIL_USERNAME = os.environ.get("MAIL_USERNAME", "")
    MAIL_PASSWORD = os.environ.get("MAIL_PASSWORD", "")
    MAIL_DEFAULT_SENDER = os.environ.get("MAIL_DEFAULT_SENDER", "noreply@tasklynk.co.ke")
    RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "").strip()
    RESEND_FROM_EMAIL = os.environ.get("RESEND_FROM_EMAIL", "").strip()
    ALLOWED_FROM_EMAILS = _env_list(
        "ALLOWED_FROM_EMAILS",
        "admn@tasklynk.co.ke,admin@tasklynk.co.ke,support@tasklynk.co.ke",
    )

    MPESA_ENVIRONMENT = os.environ.get("MPESA_ENVIRONMENT", "sandbox").strip().lower()
    MPESA_CONSUMER_KEY = os.environ.get("MPESA_CONSUMER_KEY", "").strip()
    MPESA_CONSUMER_SECRET = os.environ.get("MPESA_CONSUMER_SECRET", "").strip()
    MPESA_BUSINESS_SHORTCODE = os.environ.get("MPESA_BUSINESS_SHORTCODE", "174379").strip()
    MPESA_PASSKEY = os.environ.get("MPESA_PASSKEY", "").strip()
    MPESA_CALLBACK_URL = os.environ.get("MPESA_CALLBACK_URL", "").strip()
    MPESA_WEBHOOK_SECRET = os.environ.get("MPESA_WEBHOOK_SECRET", "").strip()
    MPESA_TIMEOUT_SECONDS = int(os.environ.get("MPESA_TIMEOUT_SECONDS", "30"))

    UPLOAD_FOLDER = os.environ.get("UPLOAD_FOLDER", os.path.join(os.getcwd(), "uploads"))
