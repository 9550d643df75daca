import json
import os

import pytest
from typer.testing import CliRunner

import library_api.main as cli
from library_api.main import app

runner = CliRunner()


@pytest.fixture(autouse=True)
def plain_output(monkeypatch):
    monkeypatch.setenv("LIB_CLI_OUTPUT", "plain")


@pytest.fixture
def db(settings):
    return settings.database_file


def test_init_db(tmp_path):
    db_file = str(tmp_path / "fresh" / "library.db")
    result = runner.invoke(app, ["--db", db_file, "init-db"])
    assert result.exit_code == 0
    assert f"Database initialized at {db_file}" in result.stdout
    assert os.path.exists(db_file)


def test_create_admin(db, services):
    result = runner.invoke(app, ["--db", db, "create-admin", "--email", "root@example.com", "--password", "rootpass"])
    assert result.exit_code == 0
    assert "Admin created: root@example.com" in result.stdout

    user = services.users.find_by_email("root@example.com")
    assert user.is_admin and user.is_verified

    again = runner.invoke(app, ["--db", db, "create-admin", "--email", "root@example.com", "--password", "rootpass"])
    assert again.exit_code == 1


def test_create_admin_rejects_short_password(db):
    result = runner.invoke(app, ["--db", db, "create-admin", "--email", "root@example.com", "--password", "abc"])
    assert result.exit_code == 1


def test_verify_user(db, services, make_member):
    user = make_member(email="pending@example.com", verified=False)

    result = runner.invoke(app, ["--db", db, "verify-user", "pending@example.com"])
    assert result.exit_code == 0
    assert "Verified pending@example.com" in result.stdout
    assert services.users.get_user(user.id).is_verified is True

    assert runner.invoke(app, ["--db", db, "verify-user", "ghost@example.com"]).exit_code == 1


def test_overdue_empty(db, services):
    result = runner.invoke(app, ["--db", db, "overdue"])
    assert result.exit_code == 0
    assert "No overdue loans." in result.stdout


def test_overdue_lists_late_loans(db, services, member, book):
    # the fixture clock sits in the past, so this loan is already overdue in real time
    services.borrowing.borrow_book(member.id, book.id)

    result = runner.invoke(app, ["--db", db, "overdue"])
    assert result.exit_code == 0
    assert "Dune (9780441172719)" in result.stdout

    result = runner.invoke(app, ["--db", db, "--output", "json", "overdue"])
    assert result.exit_code == 0
    loans = json.loads(result.stdout)
    assert [loan["book_id"] for loan in loans] == [book.id]


def test_report(db, services, member, book):
    services.borrowing.borrow_book(member.id, book.id)

    result = runner.invoke(app, ["--db", db, "report", "2026", "3"])
    assert result.exit_code == 0
    assert "Report for March 2026" in result.stdout
    assert "Total borrows: 1" in result.stdout

    result = runner.invoke(app, ["--db", db, "--output", "json", "report", "2026", "3"])
    assert json.loads(result.stdout)["new_members_count"] == 1

    assert runner.invoke(app, ["--db", db, "report", "2026", "13"]).exit_code == 1


def test_serve_runs_uvicorn(db, monkeypatch):
    calls = []

    class Done:
        returncode = 0

    def fake_run(args, env=None):
        calls.append((args, env))
        return Done()

    monkeypatch.setattr(cli.subprocess, "run", fake_run)
    result = runner.invoke(app, ["--db", db, "serve", "--port", "8123"])

    assert result.exit_code == 0
    assert "Starting API on http://" in result.stdout
    args, env = calls[0]
    assert "library_api.api:app" in args
    assert args[args.index("--port") + 1] == "8123"
    assert env["LIBRARY_DB_FILE"] == db
