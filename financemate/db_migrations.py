import argparse
import json
from datetime import datetime, timezone

from .db import connect_db, parse_database_config


REQUIRED_TABLES = {
    "users": {
        "columns": {"id", "email", "password_hash", "first_name", "last_name", "partner_id", "partner_email"},
        "indexes": set(),
    },
    "partner_invitations": {
        "columns": {"id", "inviter_id", "inviter_email", "partner_email", "token", "status", "expires_at"},
        "indexes": {"idx_partner_invitations_token"},
    },
    "categories": {
        "columns": {"id", "user_id", "name", "type", "description", "icon", "color"},
        "indexes": {"idx_categories_user_id"},
    },
    "transactions": {
        "columns": {
            "id",
            "user_id",
            "amount",
            "type",
            "category",
            "description",
            "date",
            "tags",
            "is_shared",
            "shared_from",
        },
        "indexes": {
            "idx_transactions_user_id",
            "idx_transactions_date",
            "idx_transactions_shared_from",
        },
    },
    "budgets": {
        "columns": {
            "id",
            "user_id",
            "name",
            "amount",
            "category",
            "period",
            "start_date",
            "end_date",
            "is_recurring",
            "is_shared",
            "shared_from",
        },
        "indexes": {"idx_budgets_user_id", "idx_budgets_shared_from"},
    },
    "goals": {
        "columns": {
            "id",
            "user_id",
            "name",
            "target_amount",
            "current_amount",
            "target_date",
            "category",
            "contributions",
            "is_completed",
            "is_shared",
            "shared_from",
        },
        "indexes": {"idx_goals_user_id", "idx_goals_shared_from"},
    },
    "subscriptions": {
        "columns": {
            "id",
            "user_id",
            "name",
            "amount",
            "billing_cycle",
            "start_date",
            "next_billing_date",
            "last_billing_date",
        },
        "indexes": {"idx_subscriptions_user_id"},
    },
}

SYSTEM_CATEGORIES = [
    ("Food & Drinks", "expense", "food", "#FF5733"),
    ("Shopping", "expense", "shopping", "#33A8FF"),
    ("Housing", "expense", "home", "#33FF57"),
    ("Transportation", "expense", "car", "#FF33A8"),
    ("Vehicle", "expense", "car", "#8B33FF"),
    ("Entertainment", "expense", "entertainment", "#33FFF1"),
    ("Communication", "expense", "phone", "#F1FF33"),
    ("Financial", "expense", "bank", "#FF8B33"),
    ("Investments", "expense", "chart", "#337BFF"),
    ("Income", "income", "money", "#33FF7B"),
    ("Gifts", "income", "gift", "#FF337B"),
    ("Salary", "income", "salary", "#7BFF33"),
    ("Loans", "income", "loan", "#7B33FF"),
    ("Grants", "income", "grant", "#FF7B33"),
]


def backend_name(conn):
    return getattr(conn, "backend", "sqlite")


def table_exists(conn, name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM information_schema.tables WHERE table_schema = current_schema() AND table_name = ?",
            (name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='table' AND name = ?", (name,)).fetchone()
    return row is not None


def index_exists(conn, index_name):
    if backend_name(conn) == "postgres":
        row = conn.execute(
            "SELECT 1 FROM pg_indexes WHERE schemaname = current_schema() AND indexname = ?",
            (index_name,),
        ).fetchone()
        return row is not None

    row = conn.execute("SELECT 1 FROM sqlite_master WHERE type='index' AND name = ?", (index_name,)).fetchone()
    return row is not None


def create_index_if_missing(conn, index_name, create_sql):
    if not index_exists(conn, index_name):
        conn.execute(create_sql)


def ensure_table(conn, create_sql):
    if backend_name(conn) == "postgres":
        create_sql = create_sql.replace("INTEGER PRIMARY KEY AUTOINCREMENT", "BIGSERIAL PRIMARY KEY")
    conn.execute(create_sql)


def get_table_columns(conn, table):
    if backend_name(conn) == "postgres":
        rows = conn.execute(
            "SELECT column_name FROM information_schema.columns WHERE table_schema = current_schema() AND table_name = ? ORDER BY ordinal_position",
            (table,),
        ).fetchall()
        return {row[0] for row in rows}

    rows = conn.execute(f"PRAGMA table_info({table})").fetchall()
    return {row[1] for row in rows}


def migration_001(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT UNIQUE NOT NULL,
            password_hash TEXT NOT NULL,
            first_name TEXT,
            last_name TEXT,
            partner_id INTEGER,
            partner_email TEXT,
            reset_token TEXT,
            reset_token_expires TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS categories (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER,
            name TEXT NOT NULL,
            type TEXT NOT NULL DEFAULT 'expense',
            description TEXT,
            icon TEXT,
            color TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            amount REAL NOT NULL,
            type TEXT NOT NULL,
            category TEXT NOT NULL,
            description TEXT,
            date TEXT NOT NULL,
            tags TEXT,
            is_shared INTEGER NOT NULL DEFAULT 0,
            shared_from INTEGER,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
        )
        """,
    )


def migration_002(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS budgets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            amount REAL NOT NULL,
            category TEXT NOT NULL,
            period TEXT NOT NULL DEFAULT 'monthly',
            start_date TEXT NOT NULL,
            end_date TEXT,
            is_recurring INTEGER NOT NULL DEFAULT 0,
            description TEXT,
            is_shared INTEGER NOT NULL DEFAULT 0,
            shared_from INTEGER,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS goals (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            description TEXT,
            target_amount REAL NOT NULL,
            current_amount REAL NOT NULL DEFAULT 0,
            target_date TEXT NOT NULL,
            category TEXT NOT NULL,
            contributions TEXT,
            is_completed INTEGER NOT NULL DEFAULT 0,
            completion_date TEXT,
            is_shared INTEGER NOT NULL DEFAULT 0,
            shared_from INTEGER,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
        )
        """,
    )
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS subscriptions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL,
            name TEXT NOT NULL,
            amount REAL NOT NULL,
            billing_cycle TEXT NOT NULL,
            category TEXT,
            provider TEXT,
            start_date TEXT NOT NULL,
            end_date TEXT,
            next_billing_date TEXT,
            last_billing_date TEXT,
            reminder_days INTEGER NOT NULL DEFAULT 3,
            auto_payment INTEGER NOT NULL DEFAULT 0,
            notes TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (user_id) REFERENCES users (id) ON DELETE CASCADE
        )
        """,
    )


def migration_003(conn):
    ensure_table(
        conn,
        """
        CREATE TABLE IF NOT EXISTS partner_invitations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            inviter_id INTEGER NOT NULL,
            inviter_email TEXT NOT NULL,
            partner_email TEXT NOT NULL,
            token TEXT UNIQUE NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            expires_at TEXT NOT NULL,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (inviter_id) REFERENCES users (id) ON DELETE CASCADE
        )
        """,
    )
    create_index_if_missing(
        conn,
        "idx_partner_invitations_token",
        "CREATE INDEX IF NOT EXISTS idx_partner_invitations_token ON partner_invitations(token)",
    )
    create_index_if_missing(
        conn,
        "idx_categories_user_id",
        "CREATE INDEX IF NOT EXISTS idx_categories_user_id ON categories(user_id)",
    )
    for table in ("transactions", "budgets", "goals"):
        create_index_if_missing(
            conn,
            f"idx_{table}_user_id",
            f"CREATE INDEX IF NOT EXISTS idx_{table}_user_id ON {table}(user_id)",
        )
        create_index_if_missing(
            conn,
            f"idx_{table}_shared_from",
            f"CREATE INDEX IF NOT EXISTS idx_{table}_shared_from ON {table}(shared_from)",
        )
    create_index_if_missing(
        conn,
        "idx_transactions_date",
        "CREATE INDEX IF NOT EXISTS idx_transactions_date ON transactions(date)",
    )
    create_index_if_missing(
        conn,
        "idx_subscriptions_user_id",
        "CREATE INDEX IF NOT EXISTS idx_subscriptions_user_id ON subscriptions(user_id)",
    )


def migration_004(conn):
    for name, category_type, icon, color in SYSTEM_CATEGORIES:
        existing = conn.execute(
            "SELECT id FROM categories WHERE user_id IS NULL AND name = ?",
            (name,),
        ).fetchone()
        if existing is not None:
            continue
        conn.execute(
            "INSERT INTO categories (user_id, name, type, description, icon, color) VALUES (NULL, ?, ?, '', ?, ?)",
            (name, category_type, icon, color),
        )


MIGRATIONS = [
    (1, migration_001),
    (2, migration_002),
    (3, migration_003),
    (4, migration_004),
]


def _ensure_schema_version_table(conn):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_version (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )


def current_schema_version(conn):
    _ensure_schema_version_table(conn)
    row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
    return int(row[0] or 0)


def validate_required_schema(conn):
    health = inspect_db_health(conn)
    if health["missing_tables"] or any(health["missing_columns"].values()):
        raise RuntimeError(
            "Schema invariants failed after migrations. "
            f"Missing tables={health['missing_tables']}, missing columns={health['missing_columns']}"
        )


def _run_migrations(conn):
    _ensure_schema_version_table(conn)

    applied_versions = {
        row[0] for row in conn.execute("SELECT version FROM schema_version").fetchall()
    }

    for version, migration_fn in MIGRATIONS:
        if version in applied_versions:
            continue
        try:
            migration_fn(conn)
            conn.execute(
                "INSERT INTO schema_version(version, applied_at) VALUES (?, ?)",
                (version, datetime.now(timezone.utc).isoformat(timespec="seconds")),
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    validate_required_schema(conn)


def apply_migrations(db_or_config_or_path):
    if hasattr(db_or_config_or_path, "execute"):
        _run_migrations(db_or_config_or_path)
        return

    config = db_or_config_or_path if isinstance(db_or_config_or_path, dict) else parse_database_config(db_or_config_or_path)
    conn = connect_db(config)
    try:
        _run_migrations(conn)
    finally:
        conn.close()


def inspect_db_health(conn):
    _ensure_schema_version_table(conn)
    missing_tables = []
    missing_columns = {}
    missing_indexes = []

    for table_name, table_spec in REQUIRED_TABLES.items():
        if not table_exists(conn, table_name):
            missing_tables.append(table_name)
            missing_columns[table_name] = sorted(table_spec["columns"])
            missing_indexes.extend(sorted(table_spec["indexes"]))
            continue

        table_cols = get_table_columns(conn, table_name)
        absent_cols = sorted(col for col in table_spec["columns"] if col not in table_cols)
        missing_columns[table_name] = absent_cols

        for idx in sorted(table_spec["indexes"]):
            if not index_exists(conn, idx):
                missing_indexes.append(idx)

    return {
        "ok": not missing_tables and not any(missing_columns.values()) and not missing_indexes,
        "schema_version": current_schema_version(conn),
        "missing_tables": missing_tables,
        "missing_columns": missing_columns,
        "missing_indexes": sorted(set(missing_indexes)),
    }


def get_db_health(db_config_or_path):
    config = db_config_or_path if isinstance(db_config_or_path, dict) else parse_database_config(db_config_or_path)
    conn = connect_db(config)
    try:
        return inspect_db_health(conn)
    finally:
        conn.close()


def main(argv=None):
    parser = argparse.ArgumentParser(description="Check and print FinanceMate DB schema health")
    parser.add_argument(
        "db_path",
        nargs="?",
        default="instance/financemate.sqlite",
        help="Path to SQLite DB (ignored when DATABASE_URL is postgres)",
    )
    parser.add_argument("--migrate", action="store_true", help="Apply migrations before checking")
    args = parser.parse_args(argv)

    config = parse_database_config(args.db_path)
    if args.migrate:
        apply_migrations(config)

    print(json.dumps(get_db_health(config), indent=2, sort_keys=True))


if __name__ == "__main__":
    main()
