"""Config management for Chapterbell.

Reads `config.ini` from DATA_DIR (defaults to the project root, beside main.py).
Every section is optional; missing keys fall back to the dataclass defaults.
"""

from __future__ import annotations

import configparser
import dataclasses
import os
import pathlib
from typing import Optional

from .logging_config import get_logger

logger = get_logger(__name__)


# alembic.ini and migrations/ live beside main.py.
PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]

# DATA_DIR holds all persistent state (config.ini, tracker.db, logs).
DATA_DIR = pathlib.Path(os.environ.get("DATA_DIR", str(PROJECT_ROOT)))
DEFAULT_CONFIG_PATH = DATA_DIR / "config.ini"

DEFAULT_USER_AGENT = "chapterbell/0.1 (+https://github.com/chapterbell/chapterbell)"


@dataclasses.dataclass
class SchedulerConfig:
    staleness_minutes: int = 60
    max_titles_per_run: int = 50


@dataclasses.dataclass
class WorkerConfig:
    check_concurrency: int = 4
    notify_concurrency: int = 8
    poll_seconds: int = 5
    check_deadline_seconds: float = 60.0
    send_deadline_seconds: float = 30.0


@dataclasses.dataclass
class RetryConfig:
    max_attempts: int = 5
    base_delay_seconds: float = 30.0
    max_delay_seconds: float = 3600.0
    visibility_timeout_seconds: int = 600


@dataclasses.dataclass
class SourcesConfig:
    per_source_concurrency: int = 2
    user_agent: str = DEFAULT_USER_AGENT
    http_timeout_seconds: float = 20.0
    mangadex_base_url: str = "https://api.mangadex.org"
    mangadex_language: str = "en"


@dataclasses.dataclass
class PipelineConfig:
    notify_on_first_check: bool = False


@dataclasses.dataclass
class EmailConfig:
    """Hosted email API for the email channel. Empty api_key disables the channel."""

    api_url: str = "https://api.resend.com/emails"
    api_key: str = ""
    sender: str = "Chapterbell <chapterbell@localhost>"

    @property
    def enabled(self) -> bool:
        return bool(self.api_key.strip())


@dataclasses.dataclass
class PushConfig:
    endpoint: str = "https://exp.host/--/api/v2/push/send"
    access_token: str = ""


@dataclasses.dataclass
class ServerConfig:
    host: str = "127.0.0.1"
    port: int = 8282


@dataclasses.dataclass
class ChapterbellConfig:
    scheduler: SchedulerConfig = dataclasses.field(default_factory=SchedulerConfig)
    worker: WorkerConfig = dataclasses.field(default_factory=WorkerConfig)
    retry: RetryConfig = dataclasses.field(default_factory=RetryConfig)
    sources: SourcesConfig = dataclasses.field(default_factory=SourcesConfig)
    pipeline: PipelineConfig = dataclasses.field(default_factory=PipelineConfig)
    email: EmailConfig = dataclasses.field(default_factory=EmailConfig)
    push: PushConfig = dataclasses.field(default_factory=PushConfig)
    server: ServerConfig = dataclasses.field(default_factory=ServerConfig)


def _parse_bool(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _positive(name: str, value: float) -> float:
    if value <= 0:
        raise ValueError(f"Config value {name} must be positive, got {value}")
    return value


def load_config(config_path: Optional[pathlib.Path] = None) -> ChapterbellConfig:
    """Load configuration from config.ini.

    Raises FileNotFoundError when the file is missing and ValueError when a
    numeric setting is malformed or out of range.
    """
    path = config_path or DEFAULT_CONFIG_PATH
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    parser = configparser.ConfigParser(interpolation=None)
    parser.read(path)

    scheduler = SchedulerConfig(
        staleness_minutes=parser.getint("scheduler", "staleness_minutes", fallback=60),
        max_titles_per_run=parser.getint("scheduler", "max_titles_per_run", fallback=50),
    )
    _positive("scheduler.max_titles_per_run", scheduler.max_titles_per_run)

    worker = WorkerConfig(
        check_concurrency=parser.getint("worker", "check_concurrency", fallback=4),
        notify_concurrency=parser.getint("worker", "notify_concurrency", fallback=8),
        poll_seconds=parser.getint("worker", "poll_seconds", fallback=5),
        check_deadline_seconds=parser.getfloat("worker", "check_deadline_seconds", fallback=60.0),
        send_deadline_seconds=parser.getfloat("worker", "send_deadline_seconds", fallback=30.0),
    )
    _positive("worker.check_concurrency", worker.check_concurrency)
    _positive("worker.notify_concurrency", worker.notify_concurrency)
    _positive("worker.poll_seconds", worker.poll_seconds)
    _positive("worker.check_deadline_seconds", worker.check_deadline_seconds)
    _positive("worker.send_deadline_seconds", worker.send_deadline_seconds)

    retry = RetryConfig(
        max_attempts=parser.getint("retry", "max_attempts", fallback=5),
        base_delay_seconds=parser.getfloat("retry", "base_delay_seconds", fallback=30.0),
        max_delay_seconds=parser.getfloat("retry", "max_delay_seconds", fallback=3600.0),
        visibility_timeout_seconds=parser.getint(
            "retry", "visibility_timeout_seconds", fallback=600
        ),
    )
    _positive("retry.max_attempts", retry.max_attempts)
    _positive("retry.base_delay_seconds", retry.base_delay_seconds)
    _positive("retry.max_delay_seconds", retry.max_delay_seconds)
    _positive("retry.visibility_timeout_seconds", retry.visibility_timeout_seconds)

    sources = SourcesConfig(
        per_source_concurrency=parser.getint("sources", "per_source_concurrency", fallback=2),
        user_agent=parser.get("sources", "user_agent", fallback=DEFAULT_USER_AGENT),
        http_timeout_seconds=parser.getfloat("sources", "http_timeout_seconds", fallback=20.0),
        mangadex_base_url=parser.get(
            "sources", "mangadex_base_url", fallback="https://api.mangadex.org"
        ).rstrip("/"),
        mangadex_language=parser.get("sources", "mangadex_language", fallback="en").strip(),
    )
    _positive("sources.per_source_concurrency", sources.per_source_concurrency)

    pipeline = PipelineConfig(
        notify_on_first_check=_parse_bool(
            parser.get("pipeline", "notify_on_first_check", fallback="false"), False
        ),
    )

    email = EmailConfig(
        api_url=parser.get("email", "api_url", fallback="https://api.resend.com/emails").strip(),
        api_key=parser.get("email", "api_key", fallback="").strip(),
        sender=parser.get(
            "email", "sender", fallback="Chapterbell <chapterbell@localhost>"
        ).strip(),
    )

    push = PushConfig(
        endpoint=parser.get(
            "push", "endpoint", fallback="https://exp.host/--/api/v2/push/send"
        ).strip(),
        access_token=parser.get("push", "access_token", fallback="").strip(),
    )

    server = ServerConfig(
        host=parser.get("server", "host", fallback="127.0.0.1"),
        port=parser.getint("server", "port", fallback=8282),
    )

    return ChapterbellConfig(
        scheduler=scheduler,
        worker=worker,
        retry=retry,
        sources=sources,
        pipeline=pipeline,
        email=email,
        push=push,
        server=server,
    )


def write_default_config(config_path: Optional[pathlib.Path] = None) -> pathlib.Path:
    """Write a config.ini populated with the default values."""
    path = config_path or DEFAULT_CONFIG_PATH
    defaults = ChapterbellConfig()

    parser = configparser.ConfigParser(interpolation=None)
    for section in ("scheduler", "worker", "retry", "sources", "pipeline", "email", "push", "server"):
        values = dataclasses.asdict(getattr(defaults, section))
        parser[section] = {
            key: (str(value).lower() if isinstance(value, bool) else str(value))
            for key, value in values.items()
        }

    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w") as handle:
        parser.write(handle)
    logger.info(f"Config written to {path}")
    return path


_cached_config: Optional[ChapterbellConfig] = None


def get_config() -> ChapterbellConfig:
    """Return the cached config singleton. Loads from disk on first call."""
    global _cached_config
    if _cached_config is None:
        _cached_config = load_config()
    return _cached_config


def reset_config_cache() -> None:
    """Clear the cached config (useful for tests)."""
    global _cached_config
    _cached_config = None
