"""Chapterbell CLI entry point."""

from __future__ import annotations

import logging
from typing import List, Optional

import typer
from sqlmodel import Session

from tracker.config import DEFAULT_CONFIG_PATH, ChapterbellConfig, load_config, write_default_config
from tracker.database import get_engine, init_db
from tracker.errors import FatalPipelineError
from tracker.logging_config import setup_logging
from tracker.migrations import get_status, run_migrations, stamp_if_needed
from tracker.models import JobStatus
from tracker.queue import JobQueue
from tracker.repository import Repository
from tracker.utils import format_number


__version__ = "0.1.0"

app = typer.Typer(add_completion=False, help="Chapterbell chapter tracker CLI")
logger = logging.getLogger("chapterbell")

STARTUP_BANNER = r"""
      _                 _            _          _ _
  ___| |__   __ _ _ __ | |_ ___ _ __| |__   ___| | |
 / __| '_ \ / _` | '_ \| __/ _ \ '__| '_ \ / _ \ | |
| (__| | | | (_| | |_) | ||  __/ |  | |_) |  __/ | |
 \___|_| |_|\__,_| .__/ \__\___|_|  |_.__/ \___|_|_|
                 |_|
"""


def _ensure_config() -> ChapterbellConfig:
    try:
        return load_config()
    except FileNotFoundError:
        typer.echo("[ERROR] config.ini not found. Run: chapterbell init")
        raise typer.Exit(code=1)
    except ValueError as exc:
        typer.echo(f"[ERROR] Invalid config.ini: {exc}")
        raise typer.Exit(code=1)


def _prepare_database() -> None:
    """Create tables for a new DB, stamp it, and apply pending migrations."""
    init_db()
    stamp_if_needed()
    current, head = get_status()
    if current != head:
        logger.info(f"Migrating database {current} -> {head} ...")
        run_migrations(backup=True)
        logger.info("Migration complete.")


@app.command()
def init(
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config.ini"),
) -> None:
    """Write config.ini with default settings and create the database."""
    setup_logging()

    if DEFAULT_CONFIG_PATH.exists() and not force:
        typer.echo(f"[INFO] Config already exists at {DEFAULT_CONFIG_PATH} (use --force)")
    else:
        write_default_config(DEFAULT_CONFIG_PATH)
        typer.echo(f"[OK] Config created at {DEFAULT_CONFIG_PATH}")
    _prepare_database()
    typer.echo("[OK] Database ready")


@app.command("add-title")
def add_title(
    name: str = typer.Argument(..., help="Display name"),
    source_key: str = typer.Argument(..., help="The title's id at the source"),
    source: str = typer.Option("mangadex", "--source", help="Source identifier"),
    priority: int = typer.Option(0, "--priority", help="Higher is checked first"),
) -> None:
    """Track a title (updates name/priority when already tracked)."""
    _ensure_config()
    init_db()
    with Session(get_engine()) as session:
        title = Repository(session).add_title(
            name=name, source=source, source_key=source_key, priority=priority
        )
        typer.echo(f"[OK] Title #{title.id}: {title.name} ({title.source}:{title.source_key})")


def _set_enabled(title_id: int, enabled: bool) -> None:
    _ensure_config()
    with Session(get_engine()) as session:
        if not Repository(session).set_title_enabled(title_id, enabled):
            typer.echo(f"[ERROR] Title {title_id} not found")
            raise typer.Exit(code=1)
    typer.echo(f"[OK] Title {title_id} {'resumed' if enabled else 'paused'}")


@app.command()
def pause(title_id: int = typer.Argument(...)) -> None:
    """Exclude a title from scheduled scans."""
    _set_enabled(title_id, False)


@app.command()
def resume(title_id: int = typer.Argument(...)) -> None:
    """Include a paused title in scheduled scans again."""
    _set_enabled(title_id, True)


@app.command()
def subscribe(
    user_id: str = typer.Argument(...),
    title_id: int = typer.Argument(...),
    email: Optional[str] = typer.Option(None, "--email", help="Notify this address"),
    push_token: Optional[str] = typer.Option(None, "--push-token", help="Notify this device"),
    discord_webhook: Optional[str] = typer.Option(
        None, "--discord-webhook", help="Notify this Discord webhook"
    ),
) -> None:
    """Create or replace a user's subscription to a title."""
    _ensure_config()
    init_db()
    with Session(get_engine()) as session:
        repo = Repository(session)
        if repo.get_title(title_id) is None:
            typer.echo(f"[ERROR] Title {title_id} not found")
            raise typer.Exit(code=1)
        subscription = repo.upsert_subscription(
            user_id=user_id,
            title_id=title_id,
            notify_email=email is not None,
            notify_push=push_token is not None,
            notify_discord=discord_webhook is not None,
            email_address=email,
            push_token=push_token,
            discord_webhook_url=discord_webhook,
        )
        channels = [
            name
            for name, on in (
                ("email", subscription.notify_email),
                ("push", subscription.notify_push),
                ("discord", subscription.notify_discord),
            )
            if on
        ]
    typer.echo(f"[OK] {user_id} -> title {title_id}: {', '.join(channels) or 'no channels'}")


@app.command()
def run(
    title: Optional[List[int]] = typer.Option(
        None, "--title", "-t", help="Force these title ids (repeatable)"
    ),
    no_drain: bool = typer.Option(False, "--no-drain", help="Only queue the checks"),
) -> None:
    """Run one pipeline cycle: select titles, check them, send notifications."""
    setup_logging()

    from tracker.orchestrator import run_cycle

    config = _ensure_config()
    init_db()
    try:
        stats = run_cycle(config, title_ids=title or None, drain=not no_drain)
    except FatalPipelineError as exc:
        typer.echo(f"[ERROR] Run aborted: {exc}")
        raise typer.Exit(code=1)

    typer.echo(
        f"✓ Run completed ({stats['mode']}): {stats['selected']} selected, "
        f"{stats['queued']} queued, {stats['already_queued']} already queued."
    )
    for key, count in sorted(stats.get("jobs", {}).items()):
        typer.echo(f"  {key}: {count}")


@app.command()
def worker(
    once: bool = typer.Option(False, "--once", help="Drain eligible jobs and exit"),
) -> None:
    """Process queued check and notification jobs."""
    setup_logging()

    from tracker.worker import Worker

    config = _ensure_config()
    _prepare_database()
    pool = Worker.from_config(config)
    try:
        if once:
            for key, count in sorted(pool.drain().items()):
                typer.echo(f"  {key}: {count}")
        else:
            pool.run_forever()
    except KeyboardInterrupt:
        pool.stop()
    finally:
        pool.close()


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Server host"),
    port: Optional[int] = typer.Option(None, "--port", help="Server port"),
    no_worker: bool = typer.Option(False, "--no-worker", help="Do not process jobs in-process"),
) -> None:
    """Start the HTTP API with a background worker."""
    setup_logging()

    from tracker.api import run_server
    from tracker.worker import Worker

    typer.echo(typer.style(STARTUP_BANNER, fg=typer.colors.MAGENTA, bold=True))
    config = _ensure_config()
    _prepare_database()

    pool = None if no_worker else Worker.from_config(config)
    try:
        run_server(config, host=host, port=port, worker=pool)
    except KeyboardInterrupt:
        pass


@app.command()
def jobs(
    status: Optional[JobStatus] = typer.Option(None, "--status", help="List jobs in this status"),
    limit: int = typer.Option(20, "--limit"),
) -> None:
    """Show queue counts per job type and status."""
    config = _ensure_config()
    init_db()
    with Session(get_engine()) as session:
        queue = JobQueue(session, config.retry)
        counts = queue.counts()
        if not counts:
            typer.echo("Queue is empty.")
        for job_type, by_status in sorted(counts.items()):
            summary = ", ".join(f"{name}={count}" for name, count in sorted(by_status.items()))
            typer.echo(f"{job_type}: {summary}")
        if status is not None:
            for job in queue.list_jobs(status, limit):
                typer.echo(
                    f"  {job.id} {job.job_type.value} attempt={job.attempt} "
                    f"next={job.next_eligible_at:%Y-%m-%d %H:%M:%S} {job.last_error or ''}"
                )


@app.command()
def dead(
    limit: int = typer.Option(20, "--limit"),
    kind: Optional[str] = typer.Option(None, "--kind", help="Filter events by kind"),
) -> None:
    """List recent dead-letter and permanent-failure events."""
    _ensure_config()
    init_db()
    with Session(get_engine()) as session:
        events = Repository(session).list_events(kind, limit)
        if not events:
            typer.echo("No events recorded.")
        for event in events:
            target = f"title={event.title_id}"
            if event.user_id:
                target += f" user={event.user_id} channel={event.channel}"
            typer.echo(
                f"{event.created_at:%Y-%m-%d %H:%M:%S} [{event.kind}] job={event.job_id} "
                f"{target} {event.detail}"
            )


@app.command()
def requeue(
    job_id: Optional[List[str]] = typer.Argument(None, help="Job ids (default: every dead job)"),
) -> None:
    """Move dead jobs back to pending with a fresh set of attempts."""
    config = _ensure_config()
    init_db()
    with Session(get_engine()) as session:
        count = JobQueue(session, config.retry).requeue_dead(job_id or None)
    typer.echo(f"[OK] Requeued {count} dead job(s)")


@app.command()
def chapters(title_id: int = typer.Argument(...)) -> None:
    """List the chapters recorded for a title."""
    _ensure_config()
    with Session(get_engine()) as session:
        repo = Repository(session)
        title = repo.get_title(title_id)
        if title is None:
            typer.echo(f"[ERROR] Title {title_id} not found")
            raise typer.Exit(code=1)
        watermark = "-" if title.watermark is None else format_number(title.watermark)
        typer.echo(f"{title.name} (watermark {watermark})")
        for chapter in repo.list_chapters(title_id):
            typer.echo(f"  {format_number(chapter.number):>7}  {chapter.name}")


@app.command()
def migrate(
    check: bool = typer.Option(False, "--check", help="Print status and exit (1 if not at head)"),
) -> None:
    """Run pending database migrations (or check status with --check)."""
    setup_logging()

    _ensure_config()                    # config must exist before we touch the DB
    init_db()                           # ensure tables exist for a brand-new DB
    stamp_if_needed()

    current, head = get_status()

    if check:
        if current == head:
            typer.echo(f"[OK] Database at {head} (head).")
            raise typer.Exit(code=0)
        typer.echo(f"[WARN] Database behind: current {current}, head {head}")
        raise typer.Exit(code=1)

    if current == head:
        logger.info(f"Database already at {head} (head). Nothing to do.")
        raise typer.Exit(code=0)

    logger.info(f"Migrating database {current} -> {head} ...")
    run_migrations(backup=True)
    logger.info("Migration complete.")


if __name__ == "__main__":
    app()
