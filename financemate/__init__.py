import csv
import os
import re
import uuid
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from functools import wraps

from flask import Flask, Response, g, jsonify, request
from flask_cors import CORS
from flask_jwt_extended import (
    JWTManager,
    create_access_token,
    decode_token,
    get_jwt_identity,
    verify_jwt_in_request,
)
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt.exceptions import PyJWTError
from werkzeug.exceptions import HTTPException
from werkzeug.security import check_password_hash, generate_password_hash
from werkzeug.utils import secure_filename

from .db import DATABASE_ERRORS, INTEGRITY_ERRORS, connect_db, parse_database_config
from .db_migrations import apply_migrations, get_db_health
from .finance import (
    advance_billing_date,
    budget_progress,
    days_until,
    enrich_budget,
    enrich_subscription,
    goal_detail,
    goal_progress,
    money,
    monthly_stats,
    category_totals,
    next_billing_date,
    next_budget_period,
    period_summary,
    subscription_stats,
    to_date,
    totals_by_type,
)
from .mirror import SharedEntityMirror
from .queries import (
    BudgetQuery,
    CategoryQuery,
    GoalQuery,
    QueryError,
    SubscriptionQuery,
    TransactionQuery,
)
from .repository import Repository, Where


class DatabaseInitError(RuntimeError):
    """Raised when the database cannot be initialized."""


class ConfigurationError(RuntimeError):
    """Raised at startup when required configuration is missing."""


class ApiError(Exception):
    def __init__(self, status_code, message, **payload):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.payload = payload

    def to_dict(self):
        return {"error": self.message, **self.payload}


TRANSACTION_TYPES = ("income", "expense", "transfer")
CATEGORY_TYPES = ("income", "expense")
BUDGET_PERIODS = ("monthly", "yearly", "weekly", "custom")
BILLING_CYCLES = ("weekly", "biweekly", "monthly", "bimonthly", "quarterly", "biannual", "annual")

TRANSACTION_SHARED_FIELDS = ("amount", "type", "category", "description", "date", "tags")
BUDGET_SHARED_FIELDS = (
    "name",
    "amount",
    "category",
    "period",
    "start_date",
    "end_date",
    "is_recurring",
    "description",
)
GOAL_SHARED_FIELDS = (
    "name",
    "description",
    "target_amount",
    "current_amount",
    "target_date",
    "category",
    "contributions",
    "is_completed",
    "completion_date",
)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

IMPORT_FIELDS = ("date", "type", "category", "amount", "description", "tags")
EXPORT_COLUMNS = ["Date", "Type", "Category", "Amount", "Description", "Tags"]
DEFAULT_IMPORT_DATE_FORMAT = "YYYY-MM-DD"
MOMENT_TOKENS = {
    "YYYY": "%Y",
    "YY": "%y",
    "MMMM": "%B",
    "MMM": "%b",
    "MM": "%m",
    "M": "%m",
    "DD": "%d",
    "D": "%d",
    "HH": "%H",
    "mm": "%M",
    "ss": "%S",
}
# longer tokens first so YYYY is not read as two YY
MOMENT_TOKEN_PATTERN = re.compile("|".join(sorted(MOMENT_TOKENS, key=len, reverse=True)))


def utc_now():
    return datetime.now(timezone.utc)


def is_valid_email(value):
    return bool(EMAIL_PATTERN.match(value or ""))


def password_strength_error(password):
    if len(password or "") < 8:
        return "Password must be at least 8 characters long"
    if not (re.search(r"[A-Z]", password) and re.search(r"[a-z]", password) and re.search(r"\d", password)):
        return "Password must contain at least one uppercase letter, one lowercase letter, and one number"
    return None


def require_text(value, label):
    text = str(value or "").strip()
    if not text:
        raise ApiError(400, f"{label} is required")
    return text


def parse_amount(value, label="Amount", allow_zero=False):
    if isinstance(value, bool):
        raise ApiError(400, f"{label} must be a valid number")
    try:
        amount = float(str(value).strip())
    except (TypeError, ValueError):
        raise ApiError(400, f"{label} must be a valid number")
    if amount < 0 or (amount == 0 and not allow_zero):
        raise ApiError(400, f"{label} must be a positive number")
    return amount


def parse_iso_date(value, label="Date"):
    text = str(value or "").strip()
    if not ISO_DATE_PATTERN.match(text):
        raise ApiError(400, f"{label} must be in YYYY-MM-DD format")
    try:
        date.fromisoformat(text)
    except ValueError:
        raise ApiError(400, f"{label} must be a valid date")
    return text


def parse_optional_date(value, label):
    if value is None or str(value).strip() == "":
        return None
    return parse_iso_date(value, label)


def parse_flag(value):
    if isinstance(value, str):
        return value.strip().lower() in ("true", "1", "yes")
    return bool(value)


def split_tags(value):
    if value is None:
        return []
    items = value if isinstance(value, (list, tuple)) else str(value).split(",")
    tags = []
    for item in items:
        tag = str(item).strip()
        if tag and tag not in tags:
            tags.append(tag)
    return tags


def parse_money(value):
    text = (value or "").strip()
    if not text:
        return None
    cleaned = text.replace(",", "").replace("$", "")
    if cleaned.startswith("(") and cleaned.endswith(")"):
        cleaned = f"-{cleaned[1:-1]}"
    try:
        return float(cleaned)
    except ValueError:
        return None


def moment_to_strptime(date_format):
    """Translate moment-style tokens (YYYY, MM, DD, ...) into a strptime pattern."""
    pieces = []
    position = 0
    for match in MOMENT_TOKEN_PATTERN.finditer(date_format):
        pieces.append(date_format[position:match.start()].replace("%", "%%"))
        pieces.append(MOMENT_TOKENS[match.group(0)])
        position = match.end()
    pieces.append(date_format[position:].replace("%", "%%"))
    return "".join(pieces)


def parse_import_date(value, strptime_format):
    text = (value or "").strip()
    if not text:
        return None
    try:
        return datetime.strptime(text, strptime_format).date().isoformat()
    except ValueError:
        return None


def resolve_csv_field(record, name):
    for column in (name, name.title(), name.upper()):
        value = record.get(column)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def iter_csv_records(handle, has_header=True):
    if has_header:
        reader = csv.DictReader(handle)
        if reader.fieldnames:
            reader.fieldnames = [(name or "").strip() for name in reader.fieldnames]
        yield from reader
        return

    for values in csv.reader(handle):
        if not any(value.strip() for value in values):
            continue
        yield dict(zip(IMPORT_FIELDS, values))


def parse_csv_row(record, row_number, strptime_format):
    amount = parse_money(resolve_csv_field(record, "amount"))
    if amount is None or amount <= 0:
        return None, f"Row {row_number}: Invalid amount"

    transaction_date = parse_import_date(resolve_csv_field(record, "date"), strptime_format)
    if transaction_date is None:
        return None, f"Row {row_number}: Invalid date format"

    raw_type = resolve_csv_field(record, "type")
    return {
        "amount": amount,
        "type": "income" if raw_type.lower() == "income" else "expense",
        "category": resolve_csv_field(record, "category") or "Uncategorized",
        "description": resolve_csv_field(record, "description"),
        "date": transaction_date,
        "tags": split_tags(resolve_csv_field(record, "tags")),
        "is_shared": False,
    }, None


def parse_csv_transactions(handle, has_header=True, date_format=DEFAULT_IMPORT_DATE_FORMAT):
    """Parse CSV rows one at a time into (transactions, errors).

    Row numbers in errors count data rows from 1, so the header is not counted.
    """
    strptime_format = moment_to_strptime(date_format)
    transactions = []
    errors = []
    for row_number, record in enumerate(iter_csv_records(handle, has_header), start=1):
        transaction, error = parse_csv_row(record, row_number, strptime_format)
        if error:
            errors.append(error)
        else:
            transactions.append(transaction)
    return transactions, errors


def transaction_export_row(transaction):
    return [
        transaction["date"],
        transaction["type"],
        transaction["category"],
        f"{float(transaction['amount']):.2f}",
        transaction.get("description") or "",
        ", ".join(transaction.get("tags") or []),
    ]


def write_export_file(path, transactions):
    with open(path, "w", newline="", encoding="utf-8") as handle:
        writer = csv.writer(handle)
        writer.writerow(EXPORT_COLUMNS)
        for transaction in transactions:
            writer.writerow(transaction_export_row(transaction))


def remove_file(path):
    if os.path.exists(path):
        os.remove(path)


def stream_file_and_remove(path, chunk_size=64 * 1024):
    try:
        with open(path, "rb") as handle:
            while True:
                chunk = handle.read(chunk_size)
                if not chunk:
                    break
                yield chunk
    finally:
        remove_file(path)


def user_payload(user):
    return {
        "id": user["id"],
        "email": user["email"],
        "firstName": user["first_name"],
        "lastName": user["last_name"],
        "partnerId": user["partner_id"],
        "partnerEmail": user["partner_email"],
    }


def partner_payload(user):
    return {
        "id": user["id"],
        "email": user["email"],
        "firstName": user["first_name"],
        "lastName": user["last_name"],
    }


def transaction_values(data, partial=False):
    if not partial and any(data.get(key) in (None, "") for key in ("amount", "type", "category", "date")):
        raise ApiError(400, "Amount, type, category, and date are required")

    values = {}
    if "amount" in data:
        values["amount"] = parse_amount(data["amount"])
    if "type" in data:
        if data["type"] not in TRANSACTION_TYPES:
            raise ApiError(400, "Type must be income, expense, or transfer")
        values["type"] = data["type"]
    if "category" in data:
        values["category"] = require_text(data["category"], "Category")
    if "description" in data:
        values["description"] = str(data["description"] or "").strip()
    if "date" in data:
        values["date"] = parse_iso_date(data["date"])
    if "tags" in data:
        values["tags"] = split_tags(data["tags"])
    if not partial:
        values.setdefault("description", "")
        values.setdefault("tags", [])
    return values


def budget_values(data, partial=False):
    if not partial and any(data.get(key) in (None, "") for key in ("name", "amount", "category", "startDate")):
        raise ApiError(400, "Name, amount, category, and start date are required")

    values = {}
    if "name" in data:
        values["name"] = require_text(data["name"], "Name")
    if "amount" in data:
        values["amount"] = parse_amount(data["amount"])
    if "category" in data:
        values["category"] = require_text(data["category"], "Category")
    if "period" in data or not partial:
        period = data.get("period") or "monthly"
        if period not in BUDGET_PERIODS:
            raise ApiError(400, "Period must be monthly, yearly, weekly, or custom")
        values["period"] = period
    if "startDate" in data:
        values["start_date"] = parse_iso_date(data["startDate"], "Start date")
    if "endDate" in data:
        values["end_date"] = parse_optional_date(data["endDate"], "End date")
    if "isRecurring" in data:
        values["is_recurring"] = parse_flag(data["isRecurring"])
    if "description" in data:
        values["description"] = str(data["description"] or "").strip()
    return values


def check_budget_dates(budget):
    start = budget.get("start_date")
    end = budget.get("end_date")
    if budget.get("period") == "custom" and not end:
        raise ApiError(400, "Custom budgets require an end date")
    if start and end and end <= start:
        raise ApiError(400, "End date must be after start date")


def goal_values(data, partial=False):
    if not partial and any(data.get(key) in (None, "") for key in ("name", "targetAmount", "targetDate", "category")):
        raise ApiError(400, "Name, target amount, target date, and category are required")

    values = {}
    if "name" in data:
        values["name"] = require_text(data["name"], "Name")
    if "description" in data:
        values["description"] = str(data["description"] or "").strip()
    if "targetAmount" in data:
        values["target_amount"] = parse_amount(data["targetAmount"], "Target amount")
    if "currentAmount" in data:
        values["current_amount"] = parse_amount(data["currentAmount"], "Current amount", allow_zero=True)
    if "targetDate" in data:
        values["target_date"] = parse_iso_date(data["targetDate"], "Target date")
    if "category" in data:
        values["category"] = require_text(data["category"], "Category")
    return values


def subscription_values(data, partial=False):
    if not partial and any(data.get(key) in (None, "") for key in ("name", "amount", "billingCycle", "startDate")):
        raise ApiError(400, "Name, amount, billing cycle, and start date are required")

    values = {}
    if "name" in data:
        values["name"] = require_text(data["name"], "Name")
    if "amount" in data:
        values["amount"] = parse_amount(data["amount"])
    if "billingCycle" in data:
        if data["billingCycle"] not in BILLING_CYCLES:
            raise ApiError(400, f"Billing cycle must be one of: {', '.join(BILLING_CYCLES)}")
        values["billing_cycle"] = data["billingCycle"]
    for key, column in (("category", "category"), ("provider", "provider"), ("notes", "notes")):
        if key in data:
            values[column] = str(data[key] or "").strip() or None
    if "startDate" in data:
        values["start_date"] = parse_iso_date(data["startDate"], "Start date")
    if "endDate" in data:
        values["end_date"] = parse_optional_date(data["endDate"], "End date")
    if "nextBillingDate" in data:
        values["next_billing_date"] = parse_optional_date(data["nextBillingDate"], "Next billing date")
    if "reminderDays" in data:
        try:
            values["reminder_days"] = int(data["reminderDays"])
        except (TypeError, ValueError):
            raise ApiError(400, "Reminder days must be an integer")
    if "autoPayment" in data:
        values["auto_payment"] = parse_flag(data["autoPayment"])
    return values


def create_app(test_config=None, repository=None):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_mapping(
        SECRET_KEY=os.environ.get("SECRET_KEY", "dev"),
        DATABASE=os.path.join(app.instance_path, "financemate.sqlite"),
        JWT_SECRET_KEY=os.environ.get("JWT_SECRET_KEY"),
        JWT_ACCESS_TOKEN_EXPIRES=timedelta(days=7),
        CORS_ORIGIN=os.environ.get("CORS_ORIGIN", "http://localhost:3000"),
        CLIENT_URL=os.environ.get("CLIENT_URL", "http://localhost:3000"),
        MAX_CONTENT_LENGTH=5 * 1024 * 1024,
        EXPORT_ROW_LIMIT=10000,
        UPLOAD_FOLDER=os.path.join(app.instance_path, "uploads"),
        EXPORT_FOLDER=os.path.join(app.instance_path, "exports"),
        PARTNER_INVITE_DAYS=7,
        RESET_TOKEN_HOURS=1,
    )

    if test_config is not None:
        app.config.update(test_config)

    if not app.config.get("JWT_SECRET_KEY"):
        if not (app.config.get("TESTING") or app.debug):
            raise ConfigurationError("JWT_SECRET_KEY must be set")
        app.config["JWT_SECRET_KEY"] = app.config["SECRET_KEY"]

    os.makedirs(app.instance_path, exist_ok=True)
    app.config.setdefault("DB_INIT_ERROR", None)

    jwt = JWTManager(app)
    CORS(app, resources={r"/api/*": {"origins": app.config["CORS_ORIGIN"]}}, supports_credentials=True)

    @jwt.unauthorized_loader
    def missing_token(_reason):
        return jsonify({"error": "No token provided"}), 401

    @jwt.invalid_token_loader
    def invalid_token(_reason):
        return jsonify({"error": "Invalid token"}), 401

    @jwt.expired_token_loader
    def expired_token(_header, _payload):
        return jsonify({"error": "Token expired"}), 401

    @app.teardown_appcontext
    def close_db(_=None):
        db = g.pop("db", None)
        if db is not None:
            db.close()

    def get_db():
        if "db" not in g:
            try:
                g.db = connect_db(parse_database_config(app.config["DATABASE"]))
            except DATABASE_ERRORS as exc:
                message = f"Unable to open database at {app.config['DATABASE']}: {exc}"
                app.logger.error(message)
                app.config["DB_INIT_ERROR"] = message
                raise DatabaseInitError(message) from exc
        return g.db

    def init_db():
        try:
            apply_migrations(parse_database_config(app.config["DATABASE"]))
            app.config["DB_INIT_ERROR"] = None
        except (*DATABASE_ERRORS, OSError, RuntimeError) as exc:
            message = f"Failed to initialize database at {app.config['DATABASE']}: {exc}"
            app.logger.error(message)
            app.config["DB_INIT_ERROR"] = message
            raise DatabaseInitError(message) from exc

    app.get_db = get_db
    app.init_db = init_db

    repository = repository or Repository(get_db)
    app.repository = repository
    transaction_mirror = SharedEntityMirror(repository.transactions, TRANSACTION_SHARED_FIELDS, repository.partner_id)
    budget_mirror = SharedEntityMirror(repository.budgets, BUDGET_SHARED_FIELDS, repository.partner_id)
    goal_mirror = SharedEntityMirror(repository.goals, GOAL_SHARED_FIELDS, repository.partner_id)

    @app.cli.command("init-db")
    def init_db_command():
        init_db()
        print("Initialized the database.")

    @app.cli.command("seed-db")
    def seed_db_command():
        from .seed import seed_sample_data

        init_db()
        summary = seed_sample_data(repository)
        print(
            f"Seeded {summary['transactions']} transactions for {', '.join(summary['emails'])} "
            f"(password {summary['password']})"
        )

    @app.errorhandler(ApiError)
    def handle_api_error(error):
        if error.status_code >= 500:
            app.logger.error("%s %s failed: %s", request.method, request.path, error.message)
        return jsonify(error.to_dict()), error.status_code

    @app.errorhandler(QueryError)
    def handle_query_error(error):
        return jsonify({"error": str(error)}), 400

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        message = error.description
        if error.code == 413:
            message = "File too large. Maximum size is 5 MB"
        elif error.code == 404:
            message = "Resource not found"
        return jsonify({"error": message}), error.code

    def handle_database_error(error):
        app.logger.exception("Database error on %s %s", request.method, request.path)
        return jsonify({"error": "Database error"}), 500

    for database_error in DATABASE_ERRORS:
        app.register_error_handler(database_error, handle_database_error)

    @app.errorhandler(Exception)
    def handle_unexpected_error(error):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"error": "Internal server error"}), 500

    @app.before_request
    def check_database_ready():
        if app.config.get("DB_INIT_ERROR"):
            return jsonify({"error": app.config["DB_INIT_ERROR"]}), 500
        return None

    def login_required(view):
        @wraps(view)
        def wrapped_view(**kwargs):
            verify_jwt_in_request()
            g.user = repository.users.get(int(get_jwt_identity()))
            if g.user is None:
                raise ApiError(401, "Invalid token")
            return view(**kwargs)

        return wrapped_view

    def issue_token(user):
        return create_access_token(identity=str(user["id"]), additional_claims={"email": user["email"]})

    def json_body():
        return request.get_json(silent=True) or {}

    @app.get("/")
    def index():
        return jsonify({"message": "Welcome to the FinanceMate API"})

    @app.get("/health/db")
    def db_health():
        try:
            return jsonify(get_db_health(parse_database_config(app.config["DATABASE"])))
        except DATABASE_ERRORS as exc:
            return jsonify({
                "ok": False,
                "schema_version": 0,
                "missing_tables": [],
                "missing_columns": {},
                "missing_indexes": [],
                "error": str(exc),
            }), 500

    # Auth

    @app.post("/api/auth/register")
    def register():
        data = json_body()
        email = str(data.get("email") or "").strip().lower()
        password = data.get("password") or ""
        first_name = str(data.get("firstName") or "").strip()
        last_name = str(data.get("lastName") or "").strip()

        if not (email and password and first_name and last_name):
            raise ApiError(400, "All fields are required (email, password, firstName, lastName)")
        if not is_valid_email(email):
            raise ApiError(400, "Invalid email format")
        error = password_strength_error(password)
        if error:
            raise ApiError(400, error)
        if len(first_name) < 2 or len(last_name) < 2:
            raise ApiError(400, "First name and last name must be at least 2 characters")
        if repository.users.find_one(Where().eq("email", email)) is not None:
            raise ApiError(400, "Email already in use")

        try:
            user = repository.users.insert({
                "email": email,
                "password_hash": generate_password_hash(password),
                "first_name": first_name,
                "last_name": last_name,
            })
        except INTEGRITY_ERRORS:
            raise ApiError(400, "Email already in use")

        app.logger.info("Registered user_id=%s", user["id"])
        return jsonify({
            "message": "Registration successful",
            "user": user_payload(user),
            "token": issue_token(user),
        }), 201

    @app.post("/api/auth/login")
    def login():
        data = json_body()
        email = str(data.get("email") or "").strip().lower()
        password = data.get("password") or ""
        if not email or not password:
            raise ApiError(400, "Email and password are required")
        if not is_valid_email(email):
            raise ApiError(400, "Invalid email format")

        user = repository.users.find_one(Where().eq("email", email))
        if user is None or not check_password_hash(user["password_hash"], password):
            raise ApiError(401, "Invalid email or password")

        return jsonify({
            "message": "Login successful",
            "user": user_payload(user),
            "token": issue_token(user),
        })

    @app.post("/api/auth/forgot-password")
    def forgot_password():
        email = str(json_body().get("email") or "").strip().lower()
        if not email:
            raise ApiError(400, "Email is required")

        user = repository.users.find_one(Where().eq("email", email))
        if user is not None:
            token = uuid.uuid4().hex
            expires = utc_now() + timedelta(hours=app.config["RESET_TOKEN_HOURS"])
            repository.users.update(
                Where().eq("id", user["id"]),
                {"reset_token": token, "reset_token_expires": expires.isoformat(timespec="seconds")},
            )
            app.logger.info(
                "Password reset requested for user_id=%s: %s/reset-password?token=%s",
                user["id"],
                app.config["CLIENT_URL"],
                token,
            )
        return jsonify({"message": "If the email exists, a reset link has been sent"})

    @app.post("/api/auth/reset-password")
    def reset_password():
        data = json_body()
        token = str(data.get("token") or "").strip()
        new_password = data.get("newPassword") or ""
        if not token or not new_password:
            raise ApiError(400, "Token and new password are required")
        error = password_strength_error(new_password)
        if error:
            raise ApiError(400, error)

        user = repository.users.find_one(Where().eq("reset_token", token))
        if user is None:
            raise ApiError(400, "Invalid or expired reset token")
        expires = user["reset_token_expires"]
        if not expires or datetime.fromisoformat(expires) < utc_now():
            raise ApiError(400, "Reset token expired")

        repository.users.update(
            Where().eq("id", user["id"]),
            {
                "password_hash": generate_password_hash(new_password),
                "reset_token": None,
                "reset_token_expires": None,
            },
        )
        app.logger.info("Password reset for user_id=%s", user["id"])
        return jsonify({"message": "Password reset successful"})

    @app.post("/api/auth/verify-token")
    def verify_token():
        token = str(json_body().get("token") or "").strip()
        if not token:
            header = request.headers.get("Authorization", "")
            if header.startswith("Bearer "):
                token = header[len("Bearer "):].strip()
        if not token:
            raise ApiError(401, "No token provided")

        try:
            claims = decode_token(token)
        except (JWTExtendedException, PyJWTError):
            raise ApiError(401, "Invalid or expired token")

        user = repository.users.get(int(claims["sub"]))
        if user is None:
            raise ApiError(401, "Invalid token")
        return jsonify({"message": "Token is valid", "user": user_payload(user)})

    # Users and partner linking

    @app.post("/api/users/invite-partner")
    @login_required
    def invite_partner():
        partner_email = str(json_body().get("partnerEmail") or "").strip().lower()
        if not partner_email:
            raise ApiError(400, "Partner email is required")
        if not is_valid_email(partner_email):
            raise ApiError(400, "Invalid email format")
        if g.user["partner_id"] is not None:
            raise ApiError(400, "You already have a partner linked to your account")
        if partner_email == g.user["email"]:
            raise ApiError(400, "You cannot invite yourself")

        token = uuid.uuid4().hex
        expires = utc_now() + timedelta(days=app.config["PARTNER_INVITE_DAYS"])
        repository.partner_invitations.insert({
            "inviter_id": g.user["id"],
            "inviter_email": g.user["email"],
            "partner_email": partner_email,
            "token": token,
            "status": "pending",
            "expires_at": expires.isoformat(timespec="seconds"),
        })
        repository.users.update(Where().eq("id", g.user["id"]), {"partner_email": partner_email})

        existing_partner = repository.users.find_one(Where().eq("email", partner_email))
        landing = "accept-invitation" if existing_partner else "register"
        app.logger.info(
            "Partner invitation from user_id=%s to %s: %s/%s?token=%s",
            g.user["id"],
            partner_email,
            app.config["CLIENT_URL"],
            landing,
            token,
        )
        return jsonify({"message": f"Invitation sent to {partner_email}", "invitationToken": token})

    @app.post("/api/users/accept-invitation")
    @login_required
    def accept_invitation():
        token = str(json_body().get("invitationToken") or "").strip()
        if not token:
            raise ApiError(400, "Invitation token is required")

        invitation = repository.partner_invitations.find_one(
            Where().eq("token", token).eq("status", "pending")
        )
        if invitation is None:
            raise ApiError(404, "Invitation not found or already processed")
        if datetime.fromisoformat(invitation["expires_at"]) < utc_now():
            raise ApiError(400, "Invitation has expired")
        if invitation["partner_email"] != g.user["email"]:
            raise ApiError(400, "This invitation was sent to a different email address")

        inviter = repository.users.get(invitation["inviter_id"])
        if inviter is None:
            raise ApiError(404, "Inviter not found")
        if inviter["id"] == g.user["id"]:
            raise ApiError(400, "You cannot accept your own invitation")
        if g.user["partner_id"] is not None or inviter["partner_id"] not in (None, g.user["id"]):
            raise ApiError(400, "One of the accounts is already linked to a partner")

        repository.users.update(
            Where().eq("id", g.user["id"]),
            {"partner_id": inviter["id"], "partner_email": inviter["email"]},
        )
        repository.users.update(
            Where().eq("id", inviter["id"]),
            {"partner_id": g.user["id"], "partner_email": g.user["email"]},
        )
        repository.partner_invitations.update(Where().eq("id", invitation["id"]), {"status": "accepted"})
        app.logger.info("Linked partners user_id=%s and user_id=%s", g.user["id"], inviter["id"])
        return jsonify({"message": "Partner invitation accepted", "partner": partner_payload(inviter)})

    @app.get("/api/users/partner")
    @login_required
    def get_partner():
        if g.user["partner_id"] is None:
            return jsonify({"message": "No partner linked to this account", "partner": None})
        partner = repository.users.get(g.user["partner_id"])
        if partner is None:
            raise ApiError(404, "Partner not found")
        return jsonify({"partner": partner_payload(partner)})

    @app.post("/api/users/remove-partner")
    @login_required
    def remove_partner():
        partner_id = g.user["partner_id"]
        if partner_id is None:
            raise ApiError(400, "No partner linked to this account")

        unlinked = {"partner_id": None, "partner_email": None}
        repository.users.update(Where().eq("id", g.user["id"]), unlinked)
        repository.users.update(Where().eq("id", partner_id).eq("partner_id", g.user["id"]), unlinked)
        app.logger.info("Unlinked partners user_id=%s and user_id=%s", g.user["id"], partner_id)
        return jsonify({"message": "Partner link removed successfully"})

    @app.put("/api/users/profile")
    @login_required
    def update_profile():
        data = json_body()
        changes = {}
        for key, column in (("firstName", "first_name"), ("lastName", "last_name")):
            if key in data:
                value = str(data[key] or "").strip()
                if len(value) < 2:
                    raise ApiError(400, "First name and last name must be at least 2 characters")
                changes[column] = value
        if not changes:
            raise ApiError(400, "No update data provided")

        (user,) = repository.users.update(Where().eq("id", g.user["id"]), changes)
        return jsonify({"message": "Profile updated successfully", "user": user_payload(user)})

    # Transactions

    @app.post("/api/transactions")
    @login_required
    def create_transaction():
        data = json_body()
        values = transaction_values(data)
        transaction = transaction_mirror.create(g.user["id"], values, is_shared=parse_flag(data.get("isShared")))
        app.logger.info("Created transaction_id=%s for user_id=%s", transaction["id"], g.user["id"])
        return jsonify({"message": "Transaction created successfully", "transaction": transaction}), 201

    @app.get("/api/transactions")
    @login_required
    def list_transactions():
        query = TransactionQuery.from_args(request.args)
        where = query.where(g.user["id"])
        total = repository.transactions.count(where)
        transactions = repository.transactions.select(
            where,
            order_by=query.sort_by,
            descending=query.sort_order == "desc",
            limit=query.limit,
            offset=query.offset,
        )
        stats_query = TransactionQuery(
            start_date=query.start_date,
            end_date=query.end_date,
            category=query.category,
            is_shared=query.is_shared,
        )
        stats = totals_by_type(repository.transactions.select(stats_query.where(g.user["id"])))
        return jsonify({
            "transactions": transactions,
            "totalCount": total,
            "currentPage": query.page,
            "totalPages": -(-total // query.limit),
            "stats": stats,
        })

    @app.get("/api/transactions/<int:transaction_id>")
    @login_required
    def get_transaction(transaction_id):
        transaction = repository.transactions.get(transaction_id, user_id=g.user["id"])
        if transaction is None:
            raise ApiError(404, "Transaction not found")
        return jsonify({"transaction": transaction})

    @app.put("/api/transactions/<int:transaction_id>")
    @login_required
    def update_transaction(transaction_id):
        data = json_body()
        changes = transaction_values(data, partial=True)
        if "isShared" in data:
            changes["is_shared"] = parse_flag(data["isShared"])
        transaction = transaction_mirror.update(transaction_id, g.user["id"], changes)
        if transaction is None:
            raise ApiError(404, "Transaction not found")
        return jsonify({"message": "Transaction updated successfully", "transaction": transaction})

    @app.delete("/api/transactions/<int:transaction_id>")
    @login_required
    def delete_transaction(transaction_id):
        delete_original = request.args.get("deleteOriginal", "").lower() == "true"
        deleted = transaction_mirror.delete(transaction_id, g.user["id"], delete_original=delete_original)
        if deleted is None:
            raise ApiError(404, "Transaction not found")
        app.logger.info("Deleted transaction_id=%s for user_id=%s", transaction_id, g.user["id"])
        return jsonify({"message": "Transaction deleted successfully"})

    @app.get("/api/transactions/stats/by-category")
    @login_required
    def transaction_stats_by_category():
        query = TransactionQuery.from_args(request.args)
        query = TransactionQuery(
            start_date=query.start_date,
            end_date=query.end_date,
            type=query.type or "expense",
            is_shared=query.is_shared,
        )
        transactions = repository.transactions.select(query.where(g.user["id"]))
        return jsonify({"stats": category_totals(transactions)})

    @app.get("/api/transactions/stats/by-month")
    @login_required
    def transaction_stats_by_month():
        try:
            year = int(request.args.get("year") or date.today().year)
        except ValueError:
            raise ApiError(400, "year must be an integer")
        query = TransactionQuery.from_args(request.args)
        query = TransactionQuery(
            start_date=f"{year:04d}-01-01",
            end_date=f"{year:04d}-12-31",
            type=query.type,
            category=query.category,
            is_shared=query.is_shared,
        )
        transactions = repository.transactions.select(query.where(g.user["id"]))
        return jsonify({"monthlyStats": monthly_stats(transactions)})

    @app.get("/api/transactions/stats/summary")
    @login_required
    def transaction_summary():
        query = TransactionQuery.from_args(request.args)
        if not query.start_date or not query.end_date:
            raise ApiError(400, "Start and end dates are required")
        query = TransactionQuery(start_date=query.start_date, end_date=query.end_date)
        transactions = repository.transactions.select(query.where(g.user["id"]), order_by="date")
        return jsonify(period_summary(transactions))

    @app.post("/api/transactions/import")
    @login_required
    def import_transactions():
        upload = request.files.get("file")
        if upload is None or not upload.filename:
            raise ApiError(400, "No file uploaded")
        if not upload.filename.lower().endswith(".csv"):
            raise ApiError(400, "Only CSV files are allowed")

        has_header = request.form.get("skipFirstRow", "true").strip().lower() != "false"
        date_format = (request.form.get("dateFormat") or DEFAULT_IMPORT_DATE_FORMAT).strip()

        os.makedirs(app.config["UPLOAD_FOLDER"], exist_ok=True)
        upload_path = os.path.join(
            app.config["UPLOAD_FOLDER"],
            f"{uuid.uuid4().hex}-{secure_filename(upload.filename) or 'upload.csv'}",
        )
        try:
            upload.save(upload_path)
            try:
                with open(upload_path, newline="", encoding="utf-8-sig") as handle:
                    transactions, errors = parse_csv_transactions(
                        handle,
                        has_header=has_header,
                        date_format=date_format,
                    )
            except (csv.Error, UnicodeDecodeError) as exc:
                app.logger.warning("CSV parsing failed for user_id=%s: %s", g.user["id"], exc)
                raise ApiError(500, "Failed to parse CSV file", message=str(exc))

            if not transactions:
                app.logger.info("CSV import for user_id=%s had no valid rows (%s errors)", g.user["id"], len(errors))
                raise ApiError(400, "No valid transactions found in the CSV file", errors=errors)

            inserted = repository.transactions.insert_many(
                [{**transaction, "user_id": g.user["id"]} for transaction in transactions]
            )
        finally:
            remove_file(upload_path)

        app.logger.info(
            "CSV import for user_id=%s inserted=%s errors=%s", g.user["id"], len(inserted), len(errors)
        )
        return jsonify({
            "message": f"Successfully imported {len(inserted)} transactions",
            "successCount": len(inserted),
            "errorCount": len(errors),
            "errors": errors,
            "transactions": inserted,
        }), 201

    @app.get("/api/transactions/export")
    @login_required
    def export_transactions():
        query = TransactionQuery.from_args(request.args)
        query = TransactionQuery(
            start_date=query.start_date,
            end_date=query.end_date,
            type=query.type,
            category=query.category,
        )
        transactions = repository.transactions.select(
            query.where(g.user["id"]),
            order_by="date",
            descending=True,
            limit=app.config["EXPORT_ROW_LIMIT"],
        )
        if not transactions:
            raise ApiError(404, "No transactions found for the specified criteria")

        os.makedirs(app.config["EXPORT_FOLDER"], exist_ok=True)
        filename = f"transactions_export_{date.today().isoformat()}.csv"
        export_path = os.path.join(app.config["EXPORT_FOLDER"], f"{uuid.uuid4().hex}-{filename}")
        try:
            write_export_file(export_path, transactions)
        except OSError:
            remove_file(export_path)
            raise

        app.logger.info("Exported %s transactions for user_id=%s", len(transactions), g.user["id"])
        response = Response(
            stream_file_and_remove(export_path),
            mimetype="text/csv",
            headers={"Content-Disposition": f"attachment; filename={filename}"},
        )
        # covers clients that disconnect before the body is read
        response.call_on_close(lambda: remove_file(export_path))
        return response

    # Budgets

    def budget_spending(user_id, budget):
        where = (
            Where()
            .eq("user_id", user_id)
            .eq("type", "expense")
            .add("date >= ?", budget["start_date"])
        )
        if budget["end_date"]:
            where.add("date <= ?", budget["end_date"])
        if budget["category"] and budget["category"].lower() != "all":
            where.eq("category", budget["category"])
        return sum(tx["amount"] for tx in repository.transactions.select(where))

    def check_budget_name(user_id, name, period, exclude_id=None):
        where = Where().eq("user_id", user_id).eq("name", name).eq("period", period)
        if exclude_id is not None:
            where.add("id != ?", exclude_id)
        if repository.budgets.find_one(where) is not None:
            raise ApiError(400, "A budget with this name already exists for this period")

    @app.post("/api/budgets")
    @login_required
    def create_budget():
        data = json_body()
        values = budget_values(data)
        check_budget_dates(values)
        check_budget_name(g.user["id"], values["name"], values["period"])
        budget = budget_mirror.create(g.user["id"], values, is_shared=parse_flag(data.get("isShared")))
        app.logger.info("Created budget_id=%s for user_id=%s", budget["id"], g.user["id"])
        return jsonify({
            "message": "Budget created successfully",
            "budget": enrich_budget(budget, budget_spending(g.user["id"], budget)),
        }), 201

    @app.get("/api/budgets")
    @login_required
    def list_budgets():
        query = BudgetQuery.from_args(request.args)
        budgets = repository.budgets.select(
            query.where(g.user["id"]),
            order_by=query.sort_by,
            descending=query.sort_order == "desc",
        )
        enriched = [enrich_budget(budget, budget_spending(g.user["id"], budget)) for budget in budgets]
        return jsonify({"budgets": enriched, "totalCount": len(enriched)})

    @app.get("/api/budgets/progress")
    @login_required
    def budgets_progress():
        query = BudgetQuery.from_args(request.args)
        if query.is_active is None:
            query = replace(query, is_active=True)
        budgets = repository.budgets.select(query.where(g.user["id"]), order_by="start_date")
        return jsonify({
            "budgets": [budget_progress(budget, budget_spending(g.user["id"], budget)) for budget in budgets],
        })

    @app.get("/api/budgets/<int:budget_id>")
    @login_required
    def get_budget(budget_id):
        budget = repository.budgets.get(budget_id, user_id=g.user["id"])
        if budget is None:
            raise ApiError(404, "Budget not found")
        return jsonify({"budget": enrich_budget(budget, budget_spending(g.user["id"], budget))})

    @app.put("/api/budgets/<int:budget_id>")
    @login_required
    def update_budget(budget_id):
        existing = repository.budgets.get(budget_id, user_id=g.user["id"])
        if existing is None:
            raise ApiError(404, "Budget not found")

        data = json_body()
        changes = budget_values(data, partial=True)
        if "isShared" in data:
            changes["is_shared"] = parse_flag(data["isShared"])
        merged = {**existing, **changes}
        check_budget_dates(merged)
        if "name" in changes or "period" in changes:
            check_budget_name(g.user["id"], merged["name"], merged["period"], exclude_id=budget_id)

        budget = budget_mirror.update(budget_id, g.user["id"], changes)
        if budget is None:
            raise ApiError(404, "Budget not found")
        return jsonify({
            "message": "Budget updated successfully",
            "budget": enrich_budget(budget, budget_spending(g.user["id"], budget)),
        })

    @app.delete("/api/budgets/<int:budget_id>")
    @login_required
    def delete_budget(budget_id):
        delete_original = request.args.get("deleteOriginal", "").lower() == "true"
        if budget_mirror.delete(budget_id, g.user["id"], delete_original=delete_original) is None:
            raise ApiError(404, "Budget not found")
        return jsonify({"message": "Budget deleted successfully"})

    @app.post("/api/budgets/<int:budget_id>/renew")
    @login_required
    def renew_budget(budget_id):
        budget = repository.budgets.get(budget_id, user_id=g.user["id"])
        if budget is None:
            raise ApiError(404, "Budget not found")
        if not budget["is_recurring"]:
            raise ApiError(400, "Budget is not recurring")

        try:
            start, end = next_budget_period(budget)
        except ValueError as exc:
            raise ApiError(400, str(exc))
        values = {name: budget[name] for name in BUDGET_SHARED_FIELDS}
        values.update(start_date=start.isoformat(), end_date=end.isoformat())
        # a mirror's renewal stays with its owner; the original's partner already mirrors the source
        renewed = budget_mirror.create(
            g.user["id"],
            values,
            is_shared=budget["is_shared"] and budget["shared_from"] is None,
        )
        return jsonify({
            "message": "Recurring budget renewed",
            "budget": enrich_budget(renewed, budget_spending(g.user["id"], renewed)),
        }), 201

    # Goals

    @app.post("/api/goals")
    @login_required
    def create_goal():
        data = json_body()
        values = goal_values(data)
        if to_date(values["target_date"]) <= date.today():
            raise ApiError(400, "Target date must be in the future")
        values.setdefault("current_amount", 0.0)
        values.setdefault("description", "")
        values["contributions"] = []
        values["is_completed"] = values["current_amount"] >= values["target_amount"]
        values["completion_date"] = utc_now().isoformat(timespec="seconds") if values["is_completed"] else None

        goal = goal_mirror.create(g.user["id"], values, is_shared=parse_flag(data.get("isShared")))
        app.logger.info("Created goal_id=%s for user_id=%s", goal["id"], g.user["id"])
        return jsonify({"message": "Financial goal created successfully", "goal": goal_progress(goal)}), 201

    @app.get("/api/goals")
    @login_required
    def list_goals():
        query = GoalQuery.from_args(request.args)
        goals = repository.goals.select(
            query.where(g.user["id"]),
            order_by=query.sort_by,
            descending=query.sort_order == "desc",
        )
        return jsonify({"goals": [goal_progress(goal) for goal in goals], "totalCount": len(goals)})

    @app.get("/api/goals/<int:goal_id>")
    @login_required
    def get_goal(goal_id):
        goal = repository.goals.get(goal_id, user_id=g.user["id"])
        if goal is None:
            raise ApiError(404, "Financial goal not found")
        return jsonify({"goal": goal_detail(goal)})

    @app.put("/api/goals/<int:goal_id>")
    @login_required
    def update_goal(goal_id):
        existing = repository.goals.get(goal_id, user_id=g.user["id"])
        if existing is None:
            raise ApiError(404, "Financial goal not found")

        data = json_body()
        changes = goal_values(data, partial=True)
        target = changes.get("target_amount", existing["target_amount"])
        current = changes.get("current_amount", existing["current_amount"])
        if "isCompleted" in data:
            changes["is_completed"] = parse_flag(data["isCompleted"])
        elif "target_amount" in changes or "current_amount" in changes:
            changes["is_completed"] = current >= target
        if changes.get("is_completed") and not existing["is_completed"]:
            changes["completion_date"] = utc_now().isoformat(timespec="seconds")
        elif changes.get("is_completed") is False and existing["is_completed"]:
            changes["completion_date"] = None
        if "isShared" in data:
            changes["is_shared"] = parse_flag(data["isShared"])

        goal = goal_mirror.update(goal_id, g.user["id"], changes)
        if goal is None:
            raise ApiError(404, "Financial goal not found")
        return jsonify({"message": "Financial goal updated successfully", "goal": goal_progress(goal)})

    @app.delete("/api/goals/<int:goal_id>")
    @login_required
    def delete_goal(goal_id):
        delete_original = request.args.get("deleteOriginal", "").lower() == "true"
        if goal_mirror.delete(goal_id, g.user["id"], delete_original=delete_original) is None:
            raise ApiError(404, "Financial goal not found")
        return jsonify({"message": "Financial goal deleted successfully"})

    @app.post("/api/goals/<int:goal_id>/contribute")
    @login_required
    def contribute_to_goal(goal_id):
        data = json_body()
        if data.get("amount") in (None, "") or not data.get("date"):
            raise ApiError(400, "Amount and date are required")
        amount = parse_amount(data["amount"])
        contribution_date = parse_iso_date(data["date"])

        goal = repository.goals.get(goal_id, user_id=g.user["id"])
        if goal is None:
            raise ApiError(404, "Financial goal not found")

        contributions = list(goal["contributions"]) + [{
            "amount": amount,
            "date": contribution_date,
            "note": str(data.get("note") or "").strip(),
            "created_at": utc_now().isoformat(timespec="seconds"),
        }]
        current = money(goal["current_amount"] + amount)
        changes = {"contributions": contributions, "current_amount": current}
        completed_now = current >= goal["target_amount"] and not goal["is_completed"]
        if completed_now:
            changes.update(is_completed=True, completion_date=utc_now().isoformat(timespec="seconds"))

        updated = goal_mirror.update(goal_id, g.user["id"], changes)
        return jsonify({
            "message": "Congratulations! Goal completed!" if completed_now else "Contribution added successfully",
            "goal": goal_progress(updated),
        })

    # Subscriptions

    @app.post("/api/subscriptions")
    @login_required
    def create_subscription():
        values = subscription_values(json_body())
        if not values.get("next_billing_date"):
            values["next_billing_date"] = next_billing_date(values["start_date"], values["billing_cycle"]).isoformat()
        subscription = repository.subscriptions.insert({**values, "user_id": g.user["id"]})
        app.logger.info("Created subscription_id=%s for user_id=%s", subscription["id"], g.user["id"])
        return jsonify({
            "message": "Subscription created successfully",
            "subscription": enrich_subscription(subscription),
        }), 201

    @app.get("/api/subscriptions")
    @login_required
    def list_subscriptions():
        query = SubscriptionQuery.from_args(request.args)
        subscriptions = repository.subscriptions.select(
            query.where(g.user["id"]),
            order_by=query.sort_by,
            descending=query.sort_order == "desc",
        )
        enriched = [enrich_subscription(subscription) for subscription in subscriptions]
        return jsonify({"subscriptions": enriched, "totalCount": len(enriched)})

    def upcoming_subscriptions(user_id, days):
        query = SubscriptionQuery(active=True, upcoming_days=days)
        upcoming = []
        for subscription in repository.subscriptions.select(query.where(user_id), order_by="next_billing_date"):
            enriched = enrich_subscription(subscription)
            enriched["days_until_renewal"] = days_until(enriched["next_billing_date"])
            upcoming.append(enriched)
        return upcoming

    @app.get("/api/subscriptions/upcoming")
    @login_required
    def list_upcoming_subscriptions():
        try:
            days = int(request.args.get("days") or 7)
        except ValueError:
            raise ApiError(400, "days must be an integer")
        return jsonify({"subscriptions": upcoming_subscriptions(g.user["id"], days)})

    @app.get("/api/subscriptions/stats")
    @login_required
    def subscriptions_stats():
        active = repository.subscriptions.select(SubscriptionQuery(active=True).where(g.user["id"]))
        stats = subscription_stats(
            [enrich_subscription(subscription) for subscription in active],
            upcoming_subscriptions(g.user["id"], 7),
        )
        return jsonify({"stats": stats})

    @app.get("/api/subscriptions/<int:subscription_id>")
    @login_required
    def get_subscription(subscription_id):
        subscription = repository.subscriptions.get(subscription_id, user_id=g.user["id"])
        if subscription is None:
            raise ApiError(404, "Subscription not found")
        return jsonify({"subscription": enrich_subscription(subscription)})

    @app.put("/api/subscriptions/<int:subscription_id>")
    @login_required
    def update_subscription(subscription_id):
        existing = repository.subscriptions.get(subscription_id, user_id=g.user["id"])
        if existing is None:
            raise ApiError(404, "Subscription not found")

        changes = subscription_values(json_body(), partial=True)
        if ("start_date" in changes or "billing_cycle" in changes) and "next_billing_date" not in changes:
            merged = {**existing, **changes}
            changes["next_billing_date"] = next_billing_date(merged["start_date"], merged["billing_cycle"]).isoformat()
        (subscription,) = repository.subscriptions.update(
            Where().eq("id", subscription_id).eq("user_id", g.user["id"]),
            changes,
        )
        return jsonify({
            "message": "Subscription updated successfully",
            "subscription": enrich_subscription(subscription),
        })

    @app.delete("/api/subscriptions/<int:subscription_id>")
    @login_required
    def delete_subscription(subscription_id):
        deleted = repository.subscriptions.delete(Where().eq("id", subscription_id).eq("user_id", g.user["id"]))
        if not deleted:
            raise ApiError(404, "Subscription not found")
        return jsonify({"message": "Subscription deleted successfully"})

    @app.post("/api/subscriptions/<int:subscription_id>/payment")
    @login_required
    def record_subscription_payment(subscription_id):
        subscription = repository.subscriptions.get(subscription_id, user_id=g.user["id"])
        if subscription is None:
            raise ApiError(404, "Subscription not found")

        billed_on = to_date(subscription["next_billing_date"]) or next_billing_date(
            subscription["start_date"], subscription["billing_cycle"]
        )
        (updated,) = repository.subscriptions.update(
            Where().eq("id", subscription_id),
            {
                "last_billing_date": billed_on.isoformat(),
                "next_billing_date": advance_billing_date(billed_on, subscription["billing_cycle"]).isoformat(),
            },
        )
        return jsonify({"message": "Payment recorded successfully", "subscription": enrich_subscription(updated)})

    # Categories

    def visible_category(user_id, name, exclude_id=None):
        where = Where().add("(user_id IS NULL OR user_id = ?)", user_id).add("LOWER(name) = ?", name.lower())
        if exclude_id is not None:
            where.add("id != ?", exclude_id)
        return repository.categories.find_one(where)

    def relabel_transactions(user_id, old_name, new_name):
        # goes through the mirror so a shared twin keeps the same category
        transactions = repository.transactions.select(Where().eq("user_id", user_id).eq("category", old_name))
        for transaction in transactions:
            transaction_mirror.update(transaction["id"], user_id, {"category": new_name})
        app.logger.info(
            "Moved %s transactions from %r to %r for user_id=%s",
            len(transactions),
            old_name,
            new_name,
            user_id,
        )
        return len(transactions)

    @app.get("/api/categories")
    @login_required
    def list_categories():
        query = CategoryQuery.from_args(request.args)
        categories = repository.categories.select(query.where(g.user["id"]), order_by="name")
        usage = {}
        for tx in repository.transactions.select(query.transaction_where(g.user["id"])):
            entry = usage.setdefault(tx["category"], {"usageCount": 0, "totalAmount": 0.0, "lastUsed": None})
            entry["usageCount"] += 1
            entry["totalAmount"] += float(tx["amount"])
            if entry["lastUsed"] is None or tx["date"] > entry["lastUsed"]:
                entry["lastUsed"] = tx["date"]

        results = []
        for category in categories:
            stats = usage.get(category["name"], {"usageCount": 0, "totalAmount": 0.0, "lastUsed": None})
            results.append({
                **category,
                "isSystem": category["user_id"] is None,
                "usageCount": stats["usageCount"],
                "totalAmount": money(stats["totalAmount"]),
                "lastUsed": stats["lastUsed"],
            })

        if query.sort_by == "name":
            results.sort(key=lambda item: item["name"].lower(), reverse=query.sort_order == "desc")
        else:
            # unused categories have no lastUsed; keep them last either way
            present = [item for item in results if item[query.sort_by] is not None]
            absent = [item for item in results if item[query.sort_by] is None]
            present.sort(key=lambda item: item[query.sort_by], reverse=query.sort_order == "desc")
            results = present + absent
        return jsonify({"categories": results})

    @app.get("/api/categories/system")
    def list_system_categories():
        categories = repository.categories.select(Where().eq("user_id", None), order_by="name")
        return jsonify({"categories": categories})

    @app.post("/api/categories")
    @login_required
    def create_category():
        data = json_body()
        name = str(data.get("name") or "").strip()
        if not name:
            raise ApiError(400, "Category name is required")
        category_type = data.get("type") or "expense"
        if category_type not in CATEGORY_TYPES:
            raise ApiError(400, "Category type must be income or expense")
        if visible_category(g.user["id"], name) is not None:
            raise ApiError(400, "Category with this name already exists")

        category = repository.categories.insert({
            "user_id": g.user["id"],
            "name": name,
            "type": category_type,
            "description": str(data.get("description") or "").strip(),
            "icon": data.get("icon"),
            "color": data.get("color"),
        })
        return jsonify({"message": "Category created successfully", "category": category}), 201

    @app.put("/api/categories/<int:category_id>")
    @login_required
    def update_category(category_id):
        category = repository.categories.get(category_id, user_id=g.user["id"])
        if category is None:
            raise ApiError(404, "Category not found or cannot be edited")

        data = json_body()
        changes = {}
        if "name" in data:
            changes["name"] = require_text(data["name"], "Category name")
            if visible_category(g.user["id"], changes["name"], exclude_id=category_id) is not None:
                raise ApiError(400, "Category with this name already exists")
        if "type" in data:
            if data["type"] not in CATEGORY_TYPES:
                raise ApiError(400, "Category type must be income or expense")
            changes["type"] = data["type"]
        for key in ("description", "icon", "color"):
            if key in data:
                changes[key] = data[key]

        (updated,) = repository.categories.update(Where().eq("id", category_id), changes)
        if "name" in changes and changes["name"] != category["name"]:
            relabel_transactions(g.user["id"], category["name"], changes["name"])
        return jsonify({"message": "Category updated successfully", "category": updated})

    @app.delete("/api/categories/<int:category_id>")
    @login_required
    def delete_category(category_id):
        category = repository.categories.get(category_id, user_id=g.user["id"])
        if category is None:
            raise ApiError(404, "Category not found or cannot be deleted")

        replacement = str(json_body().get("replacementCategory") or request.args.get("replacementCategory") or "").strip()
        if replacement:
            target = visible_category(g.user["id"], replacement, exclude_id=category_id)
            if target is None:
                raise ApiError(404, "Replacement category not found")
            relabel_transactions(g.user["id"], category["name"], target["name"])
        repository.categories.delete(Where().eq("id", category_id))
        return jsonify({"message": "Category deleted successfully"})

    with app.app_context():
        try:
            init_db()
        except DatabaseInitError:
            pass

    return app
