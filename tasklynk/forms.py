from flask_wtf import FlaskForm
from wtforms import DateTimeField, FloatField, IntegerField, PasswordField, SelectField, StringField, TextAreaField
from wtforms.validators import DataRequired, Email, InputRequired, Length, NumberRange, Optional, ValidationError

from tasklynk.models import User

DEADLINE_FORMATS = ["%Y-%m-%dT%H:%M:%S", "%Y-%m-%dT%H:%M", "%Y-%m-%d %H:%M:%S", "%Y-%m-%d %H:%M"]
SELF_SERVICE_ROLES = ("client", "freelancer")


class ApiForm(FlaskForm):
    """JSON request bodies, so no CSRF token; the session cookie guards auth."""

    class Meta:
        csrf = False


class RegistrationForm(ApiForm):
    email = StringField("Email", validators=[DataRequired(), Email()])
    name = StringField("Name", validators=[DataRequired(), Length(min=2, max=100)])
    password = PasswordField("Password", validators=[DataRequired(), Length(min=6)])
    role = SelectField("Role", choices=[(r, r) for r in SELF_SERVICE_ROLES], default="client")
    phone = StringField("Phone", validators=[Optional(), Length(max=30)])

    def validate_email(self, field):
        if User.query.filter_by(email=(field.data or "").strip().lower()).first():
            raise ValidationError("An account with this email already exists.")


class LoginForm(ApiForm):
    email = StringField("Email", validators=[DataRequired(), Email()])
    password = PasswordField("Password", validators=[DataRequired()])


class JobForm(ApiForm):
    title = StringField("Title", validators=[DataRequired(), Length(max=255)])
    instructions = TextAreaField("Instructions", validators=[DataRequired()])
    work_type = StringField("Work Type", validators=[DataRequired(), Length(max=80)])
    pages = IntegerField("Pages", default=0, validators=[Optional(), NumberRange(min=0)])
    slides = IntegerField("Slides", default=0, validators=[Optional(), NumberRange(min=0)])
    amount = FloatField("Amount", validators=[InputRequired(), NumberRange(min=0)])
    actual_deadline = DateTimeField("Deadline", format=DEADLINE_FORMATS, validators=[DataRequired()])
    freelancer_deadline = DateTimeField("Freelancer Deadline", format=DEADLINE_FORMATS, validators=[Optional()])

    def validate_slides(self, field):
        if not (self.pages.data or 0) and not (field.data or 0):
            raise ValidationError("An order needs at least one page or slide.")


class BidForm(ApiForm):
    bid_amount = FloatField("Bid Amount", validators=[Optional(), NumberRange(min=0)])
    message = TextAreaField("Message", validators=[Optional(), Length(max=2000)])


class RatingForm(ApiForm):
    score = IntegerField("Score", validators=[InputRequired(), NumberRange(min=1, max=5)])
    comment = TextAreaField("Comment", validators=[Optional(), Length(max=2000)])
