"""Table-scoped data access shared by every request handler.

A :class:`Repository` is built once per application and receives a callable
that returns the current database connection, so handlers never reach for a
module-level client and tests can hand in their own connection.
"""

import json

from .db import DATABASE_ERRORS, row_to_dict


USER_COLUMNS = (
    "id",
    "email",
    "password_hash",
    "first_name",
    "last_name",
    "partner_id",
    "partner_email",
    "reset_token",
    "reset_token_expires",
    "created_at",
)
PARTNER_INVITATION_COLUMNS = (
    "id",
    "inviter_id",
    "inviter_email",
    "partner_email",
    "token",
    "status",
    "expires_at",
    "created_at",
)
CATEGORY_COLUMNS = ("id", "user_id", "name", "type", "description", "icon", "color", "created_at")
TRANSACTION_COLUMNS = (
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
    "created_at",
)
BUDGET_COLUMNS = (
    "id",
    "user_id",
    "name",
    "amount",
    "category",
    "period",
    "start_date",
    "end_date",
    "is_recurring",
    "description",
    "is_shared",
    "shared_from",
    "created_at",
)
GOAL_COLUMNS = (
    "id",
    "user_id",
    "name",
    "description",
    "target_amount",
    "current_amount",
    "target_date",
    "category",
    "contributions",
    "is_completed",
    "completion_date",
    "is_shared",
    "shared_from",
    "created_at",
)
SUBSCRIPTION_COLUMNS = (
    "id",
    "user_id",
    "name",
    "amount",
    "billing_cycle",
    "category",
    "provider",
    "start_date",
    "end_date",
    "next_billing_date",
    "last_billing_date",
    "reminder_days",
    "auto_payment",
    "notes",
    "created_at",
)


class Where:
    """AND-joined SQL predicates with their bound parameters."""

    def __init__(self):
        self.clauses = []
        self.params = []

    def add(self, clause, *params):
        self.clauses.append(clause)
        self.params.extend(params)
        return self

    def eq(self, column, value):
        if value is None:
            return self.add(f"{column} IS NULL")
        return self.add(f"{column} = ?", value)

    def is_in(self, column, values):
        values = list(values)
        if not values:
            return self.add("1 = 0")
        placeholders = ", ".join(["?"] * len(values))
        return self.add(f"{column} IN ({placeholders})", *values)

    def sql(self):
        return " AND ".join(self.clauses) if self.clauses else "1 = 1"


class Table:
    def __init__(self, get_connection, name, columns, json_columns=(), bool_columns=()):
        self._get_connection = get_connection
        self.name = name
        self.columns = tuple(columns)
        self.json_columns = set(json_columns)
        self.bool_columns = set(bool_columns)

    def _decode(self, row):
        record = row_to_dict(row)
        if record is None:
            return None
        for column in self.json_columns:
            if column in record:
                raw = record[column]
                record[column] = json.loads(raw) if raw else []
        for column in self.bool_columns:
            if column in record and record[column] is not None:
                record[column] = bool(record[column])
        return record

    def _encode(self, values):
        unknown = [column for column in values if column not in self.columns]
        if unknown:
            raise ValueError(f"Unknown {self.name} columns: {', '.join(sorted(unknown))}")
        encoded = {}
        for column, value in values.items():
            if column in self.json_columns:
                value = json.dumps(list(value) if value is not None else [])
            elif column in self.bool_columns and value is not None:
                value = 1 if value else 0
            encoded[column] = value
        return encoded

    def _write(self, statements):
        db = self._get_connection()
        try:
            results = [db.execute(sql, params) for sql, params in statements]
            db.commit()
        except DATABASE_ERRORS:
            db.rollback()
            raise
        return results

    def get(self, record_id, user_id=None):
        where = Where().eq("id", record_id)
        if user_id is not None:
            where.eq("user_id", user_id)
        return self.find_one(where)

    def find_one(self, where=None):
        rows = self.select(where, limit=1)
        return rows[0] if rows else None

    def select(self, where=None, order_by="id", descending=False, limit=None, offset=None):
        where = where or Where()
        if order_by not in self.columns:
            raise ValueError(f"Cannot sort {self.name} by {order_by!r}")
        direction = "DESC" if descending else "ASC"
        sql = f"SELECT * FROM {self.name} WHERE {where.sql()} ORDER BY {order_by} {direction}, id {direction}"
        params = list(where.params)
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
            if offset:
                sql += " OFFSET ?"
                params.append(int(offset))
        rows = self._get_connection().execute(sql, params).fetchall()
        return [self._decode(row) for row in rows]

    def count(self, where=None):
        where = where or Where()
        row = self._get_connection().execute(
            f"SELECT COUNT(*) AS count FROM {self.name} WHERE {where.sql()}",
            where.params,
        ).fetchone()
        return int(row["count"] or 0)

    def _insert_statement(self, values):
        encoded = self._encode(values)
        columns = ", ".join(encoded)
        placeholders = ", ".join(["?"] * len(encoded))
        return f"INSERT INTO {self.name} ({columns}) VALUES ({placeholders})", list(encoded.values())

    def insert(self, values):
        db = self._get_connection()
        sql, params = self._insert_statement(values)
        try:
            db.execute(sql, params)
            new_id = db.execute("SELECT last_insert_rowid() AS id").fetchone()["id"]
            db.commit()
        except DATABASE_ERRORS:
            db.rollback()
            raise
        return self.get(new_id)

    def insert_many(self, rows):
        """Insert every row in a single commit; nothing is kept if any row fails."""
        db = self._get_connection()
        new_ids = []
        try:
            for values in rows:
                sql, params = self._insert_statement(values)
                db.execute(sql, params)
                new_ids.append(db.execute("SELECT last_insert_rowid() AS id").fetchone()["id"])
            db.commit()
        except DATABASE_ERRORS:
            db.rollback()
            raise
        if not new_ids:
            return []
        return self.select(Where().is_in("id", new_ids))

    def update(self, where, values):
        """Apply ``values`` to every matching row and return the rows after the write."""
        ids = [row["id"] for row in self.select(where)]
        if not ids:
            return []
        if values:
            encoded = self._encode(values)
            assignments = ", ".join(f"{column} = ?" for column in encoded)
            target = Where().is_in("id", ids)
            self._write([
                (f"UPDATE {self.name} SET {assignments} WHERE {target.sql()}", [*encoded.values(), *target.params]),
            ])
        return self.select(Where().is_in("id", ids))

    def delete(self, where):
        (result,) = self._write([(f"DELETE FROM {self.name} WHERE {where.sql()}", where.params)])
        return result.rowcount


class Repository:
    def __init__(self, get_connection):
        self.get_connection = get_connection
        self.users = Table(get_connection, "users", USER_COLUMNS)
        self.partner_invitations = Table(get_connection, "partner_invitations", PARTNER_INVITATION_COLUMNS)
        self.categories = Table(get_connection, "categories", CATEGORY_COLUMNS)
        self.transactions = Table(
            get_connection,
            "transactions",
            TRANSACTION_COLUMNS,
            json_columns=("tags",),
            bool_columns=("is_shared",),
        )
        self.budgets = Table(
            get_connection,
            "budgets",
            BUDGET_COLUMNS,
            bool_columns=("is_recurring", "is_shared"),
        )
        self.goals = Table(
            get_connection,
            "goals",
            GOAL_COLUMNS,
            json_columns=("contributions",),
            bool_columns=("is_completed", "is_shared"),
        )
        self.subscriptions = Table(
            get_connection,
            "subscriptions",
            SUBSCRIPTION_COLUMNS,
            bool_columns=("auto_payment",),
        )

    def partner_id(self, user_id):
        user = self.users.get(user_id)
        if user is None:
            return None
        return user["partner_id"]
