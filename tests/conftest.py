import random
import threading
from typing import Dict, List, Optional, Union

import pytest
from sqlmodel import Session

from notifier.base import Dispatcher, Notification
from tracker.config import ChapterbellConfig
from tracker.database import build_engine, init_db
from tracker.models import Channel, Title
from tracker.pipeline import PipelineContext
from tracker.sources import SourceLimiter
from tracker.sources.base import FetchedChapter, SourceAdapter


class FakeSource(SourceAdapter):
    """In-memory source: `responses[key]` is a list of numbers or an exception."""

    def __init__(self, name: str = "fake"):
        self._name = name
        self.responses: Dict[str, Union[List[float], Exception]] = {}
        self.calls: List[str] = []
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    def fetch_chapters(self, source_key: str) -> List[FetchedChapter]:
        with self._lock:
            self.calls.append(source_key)
        response = self.responses.get(source_key, [])
        if isinstance(response, Exception):
            raise response
        return [FetchedChapter(float(n), f"Chapter {n}") for n in response]


class FakeDispatcher(Dispatcher):
    """Records notifications; raises the queued errors first, in order."""

    def __init__(self, channel: Channel, errors: Optional[List[Exception]] = None, always: Optional[Exception] = None):
        self.channel = channel
        self.errors = list(errors or [])
        self.always = always
        self.sent: List[Notification] = []

    def _deliver(self, notification: Notification) -> None:
        self.sent.append(notification)
        if self.always is not None:
            raise self.always
        if self.errors:
            raise self.errors.pop(0)


@pytest.fixture
def engine(tmp_path, monkeypatch):
    # Point DB_PATH and engine to a temp file
    db_file = tmp_path / "tracker.db"
    test_engine = build_engine(f"sqlite:///{db_file}")
    monkeypatch.setattr("tracker.database.DB_PATH", db_file, raising=True)
    monkeypatch.setattr("tracker.database.engine", test_engine, raising=True)
    init_db()
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as db_session:
        yield db_session


@pytest.fixture
def config():
    return ChapterbellConfig()


@pytest.fixture
def source():
    return FakeSource()


@pytest.fixture
def dispatchers():
    return {channel: FakeDispatcher(channel) for channel in Channel}


@pytest.fixture
def ctx(config, source, dispatchers):
    return PipelineContext(
        config=config,
        sources={source.name: source},
        dispatchers=dispatchers,
        limiter=SourceLimiter(config.sources.per_source_concurrency),
        rng=random.Random(7),
    )


@pytest.fixture
def make_title(session):
    """Insert a title and return its id."""

    def _make(key: str = "op", **fields) -> int:
        values = {"name": f"Title {key}", "source": "fake", "source_key": key}
        values.update(fields)
        title = Title(**values)
        session.add(title)
        session.commit()
        session.refresh(title)
        return title.id

    return _make
