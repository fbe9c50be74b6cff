"""MangaDex chapter source.

Lists chapters through the public ``GET /manga/{id}/feed`` endpoint,
walking every page. An error on any page discards the whole listing.
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

import httpx
from pydantic import BaseModel, ValidationError

from ..errors import SourceDataError, SourceNotFound, SourceUnavailable
from ..logging_config import get_logger
from ..utils import as_utc
from .base import FetchedChapter, SourceAdapter

logger = get_logger(__name__)

PAGE_SIZE = 500
MAX_PAGES = 50
TRANSIENT_STATUS = {408, 425, 429, 500, 502, 503, 504}


class _ChapterAttributes(BaseModel):
    model_config = {"extra": "ignore"}

    chapter: Optional[str] = None
    title: Optional[str] = None
    publishAt: Optional[datetime] = None


class _ChapterItem(BaseModel):
    model_config = {"extra": "ignore"}

    id: str
    attributes: _ChapterAttributes


class _FeedPage(BaseModel):
    model_config = {"extra": "ignore"}

    result: str
    data: List[_ChapterItem]
    limit: int
    offset: int
    total: int


def _parse_number(raw: Optional[str]) -> Optional[float]:
    if raw is None:
        return None
    try:
        return float(raw.strip())
    except ValueError:
        return None


class MangaDexSource(SourceAdapter):
    """Source adapter for api.mangadex.org."""

    def __init__(
        self,
        base_url: str = "https://api.mangadex.org",
        language: str = "en",
        timeout_seconds: float = 20.0,
        user_agent: str = "chapterbell",
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.language = language
        self.client = client or httpx.Client(
            timeout=timeout_seconds,
            headers={"User-Agent": user_agent},
        )

    @property
    def name(self) -> str:
        return "mangadex"

    def close(self) -> None:
        self.client.close()

    def fetch_chapters(self, source_key: str) -> List[FetchedChapter]:
        chapters: List[FetchedChapter] = []
        offset = 0
        for _ in range(MAX_PAGES):
            page = self._fetch_page(source_key, offset)
            for item in page.data:
                number = _parse_number(item.attributes.chapter)
                if number is None:
                    # Oneshots and extras carry no chapter number.
                    logger.debug(f"mangadex {source_key}: skipping unnumbered chapter {item.id}")
                    continue
                chapters.append(
                    FetchedChapter(
                        number=number,
                        name=(item.attributes.title or "").strip(),
                        published_at=as_utc(item.attributes.publishAt),
                    )
                )
            offset = page.offset + len(page.data)
            if not page.data or offset >= page.total:
                return chapters
        raise SourceDataError(
            f"mangadex {source_key}: feed exceeds {MAX_PAGES} pages of {PAGE_SIZE}"
        )

    def _fetch_page(self, source_key: str, offset: int) -> _FeedPage:
        url = f"{self.base_url}/manga/{source_key}/feed"
        params = {
            "limit": PAGE_SIZE,
            "offset": offset,
            "translatedLanguage[]": self.language,
            "order[chapter]": "asc",
        }
        try:
            response = self.client.get(url, params=params)
        except httpx.TimeoutException as exc:
            raise SourceUnavailable(f"mangadex {source_key}: timeout: {exc}") from exc
        except httpx.TransportError as exc:
            raise SourceUnavailable(f"mangadex {source_key}: {exc}") from exc

        if response.status_code in (400, 404):
            raise SourceNotFound(f"mangadex {source_key}: HTTP {response.status_code}")
        if response.status_code in TRANSIENT_STATUS:
            raise SourceUnavailable(f"mangadex {source_key}: HTTP {response.status_code}")
        if response.status_code != 200:
            raise SourceDataError(
                f"mangadex {source_key}: unexpected HTTP {response.status_code}"
            )

        try:
            page = _FeedPage.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise SourceDataError(f"mangadex {source_key}: malformed feed: {exc}") from exc
        if page.result != "ok":
            raise SourceDataError(f"mangadex {source_key}: result={page.result}")
        return page
