from __future__ import annotations

import datetime as dt
import json
from pathlib import Path
from typing import Optional

import typer
from dotenv import load_dotenv

app = typer.Typer(help="Trade Sync CLI")


def _check_runtime() -> None:
    try:
        import sqlalchemy  # noqa: F401
    except Exception as e:
        typer.echo(
            "Runtime dependency error: SQLAlchemy failed to import.\n"
            "Create a venv and install the project:\n"
            "  python -m venv .venv\n"
            "  source .venv/bin/activate\n"
            "  pip install -e .\n\n"
            f"Original error: {type(e).__name__}: {e}",
            err=True,
        )
        raise typer.Exit(code=1)


def _echo(data: dict) -> None:
    from src.app.utils import jsonable

    typer.echo(json.dumps(jsonable(data), indent=2))


def _fail(message: str, code: int = 2) -> None:
    typer.echo(message, err=True)
    raise typer.Exit(code=code)


@app.command("init-db")
def init_db_cmd():
    load_dotenv()
    _check_runtime()
    from src.db.init_db import init_db

    init_db()
    typer.echo("OK")


@app.command("create-user")
def create_user_cmd(
    user_id: str = typer.Option(..., help="User id (bearer tokens and trades are scoped by it)"),
    plan: str = typer.Option("free", help="free|pro|premium"),
    trial_start: Optional[str] = typer.Option(None, help="ISO timestamp; defaults to now for free plans"),
):
    load_dotenv()
    _check_runtime()
    from src.db.models import Profile
    from src.db.session import get_session
    from src.utils.time import parse_utc, utcnow

    plan_l = plan.strip().lower()
    if plan_l not in {"free", "pro", "premium"}:
        _fail("plan must be free, pro or premium")
    started = parse_utc(trial_start) if trial_start else utcnow()
    if started is None:
        _fail(f"Invalid --trial-start: {trial_start}")

    with get_session() as session:
        profile = session.get(Profile, user_id)
        if profile is None:
            profile = Profile(user_id=user_id)
            session.add(profile)
        profile.subscription_plan = plan_l
        profile.trial_start_at = started
        session.commit()
        _echo({"user_id": user_id, "plan": plan_l, "trial_start_at": started})


@app.command("issue-token")
def issue_token_cmd(
    user_id: str = typer.Option(...),
    label: str = typer.Option("cli", help="Free-form label stored with the token"),
):
    load_dotenv()
    _check_runtime()
    from src.app.auth import issue_access_token
    from src.db.session import get_session

    with get_session() as session:
        token = issue_access_token(session, user_id=user_id, label=label)
    # Shown once; only the hash is stored.
    typer.echo(token)


@app.command("connect-bridge")
def connect_bridge_cmd(
    user_id: str = typer.Option(...),
    account_login: str = typer.Option(..., "--account", help="MT account login"),
    broker: str = typer.Option("mt5", help="mt4|mt5"),
):
    load_dotenv()
    _check_runtime()
    from src.app.utils import connection_dict
    from src.core.config import load_settings
    from src.core.connections import RegistryError, connect_bridge
    from src.db.session import get_session

    with get_session() as session:
        try:
            result = connect_bridge(
                session,
                user_id=user_id,
                broker=broker,
                account_login=account_login,
                sync_url=load_settings().sync_public_url,
            )
        except RegistryError as e:
            _fail(str(e))
        _echo(
            {
                "connection": connection_dict(result.connection),
                "syncKey": result.sync_key,
                "syncUrl": result.sync_url,
            }
        )


@app.command("disconnect")
def disconnect_cmd(user_id: str = typer.Option(...)):
    load_dotenv()
    _check_runtime()
    from src.core.connections import disconnect
    from src.db.session import get_session

    with get_session() as session:
        count = disconnect(session, user_id=user_id)
    _echo({"disconnected": True, "count": count})


@app.command("import-file")
def import_file_cmd(
    user_id: str = typer.Option(...),
    path: Path = typer.Option(..., exists=True, dir_okay=False),
    account_login: Optional[str] = typer.Option(None, "--account", help="Account login the file belongs to"),
    broker: Optional[str] = typer.Option(None, help="mt4|mt5 to share ids with EA pushes for the same account"),
    fmt: Optional[str] = typer.Option(None, "--format", help="csv|mt|html (detected from the file when omitted)"),
):
    load_dotenv()
    _check_runtime()
    from src.core.sync_ingest import SyncError
    from src.db.session import get_session
    from src.importers.trade_files import import_trade_file, read_statement

    content = read_statement(path.read_bytes())
    with get_session() as session:
        try:
            outcome = import_trade_file(
                session,
                user_id=user_id,
                content=content,
                filename=path.name,
                fmt=fmt,
                broker=broker,
                account_login=account_login,
            )
        except SyncError as e:
            _fail(json.dumps(e.to_dict()))
        except ValueError as e:
            _fail(str(e))
    _echo(outcome.to_dict())


@app.command("quick-import")
def quick_import_cmd(
    user_id: str = typer.Option(...),
    connection_id: int = typer.Option(...),
    days: int = typer.Option(30, help="1..90"),
    run: bool = typer.Option(False, help="Drive the job to completion after queueing it"),
):
    load_dotenv()
    _check_runtime()
    from src.app.utils import import_job_dict
    from src.core.connections import RegistryError
    from src.core.import_jobs import ImportJobError, quick_import
    from src.db.session import get_session

    with get_session() as session:
        try:
            job, rng = quick_import(session, user_id=user_id, connection_id=connection_id, days=days)
        except (RegistryError, ImportJobError) as e:
            _fail(str(e))
        job_id = job.id
        _echo({"job": import_job_dict(job), "range": rng})
    if run:
        _run_job(user_id=user_id, job_id=job_id)


def _run_job(*, user_id: str, job_id: str) -> None:
    from src.app.utils import import_job_dict
    from src.core.import_jobs import continue_import_job
    from src.core.runner import ImportRunner
    from src.db.session import get_session

    def _continue():
        with get_session() as session:
            result = continue_import_job(session, user_id=user_id, job_id=job_id)
            session.refresh(result.job)
            session.expunge(result.job)
            return result

    def _progress(result) -> None:
        job = result.job
        typer.echo(f"[{dt.datetime.now().strftime('%H:%M:%S')}] {job.status} {job.progress}/{job.total} ({result.status})")

    result = ImportRunner(_continue, on_progress=_progress).run()
    _echo(
        {
            "status": result.status,
            "chunks": result.chunks,
            "fetched": result.fetched,
            "upserted": result.upserted,
            "error": result.error,
            "job": import_job_dict(result.job) if result.job is not None else None,
        }
    )
    if result.status != "succeeded":
        raise typer.Exit(code=1)


@app.command("run-import")
def run_import_cmd(
    user_id: str = typer.Option(...),
    job_id: str = typer.Option(...),
):
    """Resume an import job from its stored cursor and run it to completion."""
    load_dotenv()
    _check_runtime()
    _run_job(user_id=user_id, job_id=job_id)


@app.command("expire-jobs")
def expire_jobs_cmd(
    stale_minutes: Optional[int] = typer.Option(None, help="Override IMPORT_JOB_STALE_MINUTES"),
):
    load_dotenv()
    _check_runtime()
    from src.core.import_jobs import expire_stale_jobs
    from src.db.session import get_session

    with get_session() as session:
        count = expire_stale_jobs(session, stale_minutes=stale_minutes)
    _echo({"expired": count})


if __name__ == "__main__":
    app()
