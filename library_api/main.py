import os
import subprocess
import sys
from dataclasses import replace
from typing import Dict, Optional

import typer
from rich.console import Console

from .config import settings
from .errors import LibraryError, NotFoundError
from .services import LibraryServices
from .utils.ui_helpers import print_overdue_result, print_report_result, set_output_mode

APP_NAME = "Library CLI"

console = Console(stderr=True)

app = typer.Typer(help=APP_NAME)

_state: Dict[str, Optional[str]] = {"db": None}


def _settings():
    if _state["db"]:
        return replace(settings, database_file=_state["db"])
    return settings


def _services() -> LibraryServices:
    return LibraryServices(_settings())


def _fail(exc: LibraryError) -> None:
    console.print(f"[bold red]Error:[/] {exc.message}")
    raise typer.Exit(code=1)


@app.callback()
def _global_options(
    db: Optional[str] = typer.Option(None, "--db", help="SQLite database file (default: LIBRARY_DB_FILE)"),
    output: Optional[str] = typer.Option(
        None,
        "--output",
        "-o",
        help="Output format: plain | json | rich (default: plain)",
    ),
):
    """Global options for the CLI (database file, output mode)."""
    _state["db"] = db
    if output:
        set_output_mode(output)


@app.command("init-db")
def cli_init_db():
    """Create the database schema if it does not exist."""
    services = _services()
    print(f"Database initialized at {services.db.db_file}")


@app.command("create-admin")
def cli_create_admin(
    email: str = typer.Option(..., "--email", help="Admin e-mail address"),
    password: str = typer.Option(..., "--password", prompt=True, hide_input=True, confirmation_prompt=True),
    first_name: str = typer.Option("Admin", "--first-name"),
    last_name: str = typer.Option("User", "--last-name"),
):
    """Create a verified administrator account."""
    if len(password) < 6:
        console.print("[bold red]Error:[/] Password must be at least 6 characters")
        raise typer.Exit(code=1)
    try:
        user = _services().auth.create_admin(email, password, first_name, last_name)
    except LibraryError as exc:
        _fail(exc)
    print(f"Admin created: {user.email} ({user.id})")


@app.command("verify-user")
def cli_verify_user(email: str):
    """Mark a member's e-mail address as verified."""
    services = _services()
    try:
        user = services.users.find_by_email(email)
        if user is None:
            raise NotFoundError(f"No user with e-mail {email}")
        services.users.verify_user(user.id)
    except LibraryError as exc:
        _fail(exc)
    print(f"Verified {user.email}")


@app.command("overdue")
def cli_overdue(limit: int = typer.Option(100, "--limit", min=1, help="Maximum number of loans to show")):
    """List unreturned loans past their due date."""
    try:
        records = _services().borrowing.list_overdue(limit)
    except LibraryError as exc:
        _fail(exc)
    print_overdue_result(records)


@app.command("report")
def cli_report(year: int, month: int):
    """Show the monthly activity report."""
    try:
        report = _services().analytics.monthly_report(year, month)
    except LibraryError as exc:
        _fail(exc)
    print_report_result(report)


@app.command("serve")
def cli_serve(
    host: Optional[str] = typer.Option(None, "--host"),
    port: Optional[int] = typer.Option(None, "--port"),
    reload: bool = typer.Option(False, "--reload", help="Restart the server on code changes"),
):
    """Start the HTTP API with uvicorn."""
    cfg = _settings()
    host = host or cfg.api_host
    port = port or int(cfg.api_port)
    print(f"Starting API on http://{host}:{port}/")
    args = [
        sys.executable,
        "-m", "uvicorn",
        "library_api.api:app",
        "--host", host,
        "--port", str(port),
    ]
    if reload:
        args.append("--reload")
    env = dict(os.environ)
    env["LIBRARY_DB_FILE"] = cfg.database_file
    result = subprocess.run(args, env=env)
    raise typer.Exit(code=result.returncode)


if __name__ == "__main__":
    app()
