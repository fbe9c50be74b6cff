"""Chapter sources and the per-source concurrency limiter.

The pipeline looks adapters up by ``Title.source`` and never branches on the
source type itself.
"""

from __future__ import annotations

import threading
from typing import Callable, Dict, Mapping

from ..config import ChapterbellConfig
from ..errors import SourceUnavailable
from .base import FetchedChapter, SourceAdapter
from .mangadex import MangaDexSource

__all__ = [
    "FetchedChapter",
    "MangaDexSource",
    "SourceAdapter",
    "SourceLimiter",
    "build_source_registry",
    "close_sources",
]


def build_source_registry(config: ChapterbellConfig) -> Dict[str, SourceAdapter]:
    """Instantiate every supported source, keyed by its name."""
    adapters: list[SourceAdapter] = [
        MangaDexSource(
            base_url=config.sources.mangadex_base_url,
            language=config.sources.mangadex_language,
            timeout_seconds=config.sources.http_timeout_seconds,
            user_agent=config.sources.user_agent,
        ),
    ]
    return {adapter.name: adapter for adapter in adapters}


def close_sources(registry: Mapping[str, SourceAdapter]) -> None:
    for adapter in registry.values():
        adapter.close()


class SourceLimiter:
    """Caps concurrent requests per source with one semaphore each."""

    def __init__(self, per_source: int) -> None:
        self.per_source = max(1, per_source)
        self._semaphores: Dict[str, threading.BoundedSemaphore] = {}
        self._lock = threading.Lock()

    def _semaphore(self, source: str) -> threading.BoundedSemaphore:
        with self._lock:
            sem = self._semaphores.get(source)
            if sem is None:
                sem = threading.BoundedSemaphore(self.per_source)
                self._semaphores[source] = sem
            return sem

    def acquire(self, source: str, timeout: float) -> Callable[[], None]:
        """Take one request slot for `source` and return the function giving it back.

        The slot stays taken until that function is called, so a request that
        outlives its deadline keeps counting against the limit. Waiting longer
        than `timeout` for a slot is a transient source error. Calling the
        release function more than once has no further effect.
        """
        sem = self._semaphore(source)
        if not sem.acquire(timeout=timeout):
            raise SourceUnavailable(f"{source}: no request slot free within {timeout:g}s")
        once = threading.Lock()

        def release() -> None:
            if once.acquire(blocking=False):
                sem.release()

        return release
