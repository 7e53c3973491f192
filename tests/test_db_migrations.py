import json
import sqlite3

import pytest

from financemate.db import parse_database_config, rewrite_sql
from financemate.db_migrations import SYSTEM_CATEGORIES, apply_migrations, get_db_health, main


@pytest.fixture(autouse=True)
def sqlite_only(monkeypatch):
    monkeypatch.delenv("DATABASE_URL", raising=False)


def test_apply_migrations_on_empty_db(tmp_path):
    db_path = tmp_path / "empty.sqlite"

    apply_migrations(str(db_path))
    health = get_db_health(str(db_path))

    assert health["ok"] is True
    assert health["schema_version"] == 4
    assert health["missing_tables"] == []
    assert health["missing_indexes"] == []

    conn = sqlite3.connect(db_path)
    count = conn.execute("SELECT COUNT(*) FROM categories WHERE user_id IS NULL").fetchone()[0]
    assert count == len(SYSTEM_CATEGORIES) == 14
    conn.close()


def test_apply_migrations_is_idempotent(tmp_path):
    db_path = tmp_path / "twice.sqlite"

    apply_migrations(str(db_path))
    apply_migrations(str(db_path))

    conn = sqlite3.connect(db_path)
    assert conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0] == 4
    assert conn.execute("SELECT COUNT(*) FROM categories").fetchone()[0] == 14
    conn.close()


def test_apply_migrations_rejects_incompatible_legacy_table(tmp_path):
    db_path = tmp_path / "legacy.sqlite"
    conn = sqlite3.connect(db_path)
    conn.executescript(
        """
        CREATE TABLE users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            username TEXT UNIQUE NOT NULL,
            password TEXT NOT NULL
        );
        """
    )
    conn.commit()
    conn.close()

    with pytest.raises(RuntimeError, match="Schema invariants failed"):
        apply_migrations(str(db_path))

    health = get_db_health(str(db_path))
    assert health["ok"] is False
    assert "email" in health["missing_columns"]["users"]


def test_apply_migrations_does_not_close_passed_connection(tmp_path):
    db_path = tmp_path / "connection.sqlite"
    conn = sqlite3.connect(db_path)
    conn.row_factory = sqlite3.Row

    apply_migrations(conn)

    row = conn.execute("SELECT 1").fetchone()
    assert row[0] == 1
    conn.close()


def test_main_prints_health_json(tmp_path, capsys):
    db_path = tmp_path / "cli.sqlite"

    main([str(db_path), "--migrate"])

    health = json.loads(capsys.readouterr().out)
    assert health["ok"] is True
    assert health["schema_version"] == 4


def test_rewrite_sql_for_postgres():
    sql, params = rewrite_sql(
        "postgres",
        "SELECT * FROM transactions WHERE user_id = ? AND tags LIKE ?",
        (1, '%"work"%'),
    )
    assert sql == "SELECT * FROM transactions WHERE user_id = %s AND tags LIKE %s"
    assert params == (1, '%"work"%')

    sql, params = rewrite_sql("postgres", "SELECT last_insert_rowid()", None)
    assert sql == "SELECT lastval()"
    assert params == ()

    sql, params = rewrite_sql("sqlite", "SELECT ? WHERE name LIKE '%a%'", ("x",))
    assert sql == "SELECT ? WHERE name LIKE '%a%'"


def test_parse_database_config(monkeypatch):
    assert parse_database_config("instance/app.sqlite")["backend"] == "sqlite"

    monkeypatch.setenv("DATABASE_URL", "postgresql://user:pw@db.example.com:5432/finance")
    config = parse_database_config("instance/app.sqlite")
    assert config["backend"] == "postgres"
    assert config["database_name"] == "finance"
