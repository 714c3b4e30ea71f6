from __future__ import annotations

import json
import logging
import os

import typer

from allad.config import Settings
from allad.db import CredentialDB
from allad.models import SUPPORTED_PLATFORMS, normalize_platform
from allad.repo import Repo
from allad.web.app import run_web
from allad.worker import build_refresh_service, run_tick, run_worker

app = typer.Typer(no_args_is_help=True)


@app.callback()
def main() -> None:
    level = (os.getenv("ALLAD_LOG_LEVEL") or "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command("db")
def db_cmd(
    action: str = typer.Argument(..., help="init"),
) -> None:
    settings = Settings.load()
    db = CredentialDB(settings.db_path)
    if action == "init":
        db.init()
        typer.echo(f"OK db init: {settings.db_path}")
        return
    raise typer.BadParameter("action must be: init")


@app.command("web")
def web_cmd() -> None:
    settings = Settings.load()
    run_web(settings)


@app.command("worker")
def worker_cmd() -> None:
    settings = Settings.load()
    run_worker(settings)


@app.command("refresh")
def refresh_cmd(
    team_id: str | None = typer.Option(None, help="Only refresh this team's credentials."),
    platform: str | None = typer.Option(None, help="google|facebook|kakao"),
) -> None:
    """Run one refresh scan, the same one the cron route triggers."""
    settings = Settings.load()
    p = normalize_platform(platform) if platform else None
    if p and p not in SUPPORTED_PLATFORMS:
        typer.echo(f"ERROR: unknown platform {platform!r}")
        raise typer.Exit(code=2)
    summary = run_tick(settings, team_id=team_id, platform=p)
    typer.echo(json_dumps({"message": summary.message(), **summary.to_dict()}))
    if summary.failed:
        raise typer.Exit(code=1)


@app.command("sweep-states")
def sweep_states_cmd() -> None:
    settings = Settings.load()
    CredentialDB(settings.db_path).init()
    n = Repo(settings.db_path).delete_expired_oauth_states()
    typer.echo(f"OK swept {n} expired oauth state(s)")


@app.command("credentials")
def credentials_cmd(
    team_id: str = typer.Option(..., help="Team to list."),
    platform: str | None = typer.Option(None, help="Optional platform filter."),
) -> None:
    settings = Settings.load()
    service = build_refresh_service(settings)
    rows = service.status(team_id, normalize_platform(platform) if platform else None)
    typer.echo(json_dumps(rows))


def json_dumps(obj) -> str:
    return json.dumps(obj, ensure_ascii=True, indent=2)
