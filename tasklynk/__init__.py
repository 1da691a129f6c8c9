from flask import Flask
from sqlalchemy import inspect

from tasklynk.errors import api_error
from tasklynk.extensions import db, login_manager, mail, migrate
from tasklynk.models import User


def _sync_admin_accounts(app):
    if not inspect(db.engine).has_table(User.__tablename__):
        return
    admin_emails = {e.strip().lower() for e in app.config.get("ADMIN_EMAILS", []) if e.strip()}
    if admin_emails:
        users = User.query.filter(User.email.in_(list(admin_emails))).all()
        for user in users:
            user.role = "admin"
            user.approved = True
        if users:
            db.session.commit()
    bootstrap_email = app.config.get("ADMIN_BOOTSTRAP_EMAIL", "")
    bootstrap_password = app.config.get("ADMIN_BOOTSTRAP_PASSWORD", "")
    if bootstrap_email and bootstrap_password:
        admin = User.query.filter_by(email=bootstrap_email).first()
        if not admin:
            admin = User(email=bootstrap_email, name="Admin", role="admin", approved=True)
            db.session.add(admin)
        admin.set_password(bootstrap_password)
        admin.role = "admin"
        admin.approved = True
        db.session.commit()
        app.logger.info("Bootstrap admin %s ensured", bootstrap_email)


def create_app(test_config=None):
    app = Flask(__name__)
    app.config.from_object("config.Config")
    if test_config:
        app.config.update(test_config)
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    db.init_app(app)
    login_manager.init_app(app)
    migrate.init_app(app, db)
    mail.init_app(app)

    with app.app_context():
        if app.config.get("DB_AUTO_CREATE"):
            db.create_all()
        _sync_admin_accounts(app)

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return api_error("Authentication required", "UNAUTHORIZED", 401)

    from tasklynk.routes import api
    app.register_blueprint(api)

    return app
