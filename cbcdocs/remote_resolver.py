"""
Remote Diagram Resolver
=======================
Finds a diagram on Wikimedia Commons when no local image matches.

Tries an ordered list of search-query variants until one yields a candidate
that passes the title/URL heuristics and is not yet used in the requesting
document. Network failures only skip the current variant; exhausting every
variant returns None.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any, Optional, Sequence

import aiohttp

from .keywords import extract_keywords
from .models import ImageResult
from .session import DiagramSession

logger = logging.getLogger(__name__)

WIKIMEDIA_API_URL = "https://commons.wikimedia.org/w/api.php"
USER_AGENT = "EducationalPlatform/1.0 (CBC Educational content)"

REMOTE_SOURCE = "Wikimedia Commons"
REMOTE_LICENSE = "CC-BY-SA / Public Domain"

DEFAULT_REQUEST_DELAY = 2.0
DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_FILE_SIZE = 5 * 1024 * 1024
DEFAULT_MAX_QUERIES = 12
SEARCH_LIMIT = 25

# File namespace on Commons
FILE_NAMESPACE = 6

# ─── Title / URL Heuristics ───────────────────────────────────────────────────

GOOD_TITLE_KEYWORDS = (
    "diagram", "illustration", "chart", "schematic",
    "flowchart", "labeled", "labelled", "structure",
    "educational", "anatomy", "system", "cycle",
    "process", "model", ".svg", "infographic",
    "cross section", "cutaway", "exploded view",
    "blueprint", "layout", "plan",
)

BAD_TITLE_KEYWORDS = (
    "photo", "photograph", "portrait", "selfie",
    "picture of", "image of", "view of",
    "sunset", "sunrise", "landscape",
    "building exterior", "street", "city view",
    "logo", "flag", "coat of arms", "emblem",
    "screenshot", "user interface",
)

STRONG_PNG_KEYWORDS = (
    "diagram", "schematic", "illustration", "labeled",
    "educational", "structure", "chart",
)

STRONG_JPG_KEYWORDS = (
    "labeled diagram", "educational diagram",
    "schematic diagram", "illustration diagram",
)

# Prompt phrasing that would only pollute a search query
TOPIC_BOILERPLATE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"educational diagram (illustrating|showing|for):",
        r"show clear visual representation",
        r"with labeled components",
        r"main visual showing:",
        r"include \d+-\d+ key components",
        r"white background",
        r"for textbook quality",
        r"suitable for grade \d+",
        r"grade \d+ students",
        r"all text in sans-serif",
        r"minimum \d+pt labels",
    )
]


class RemoteSearchError(Exception):
    """Base exception for remote diagram search errors."""
    pass


class ProviderError(RemoteSearchError):
    """Non-success response from the media API."""
    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        super().__init__(f"{REMOTE_SOURCE} error ({status_code}): {message}")


def is_potential_diagram(title: str) -> bool:
    lower = title.lower()
    has_good = any(kw in lower for kw in GOOD_TITLE_KEYWORDS)
    has_bad = any(kw in lower for kw in BAD_TITLE_KEYWORDS)
    return has_good and not has_bad


def is_educational_diagram(url: str, title: str) -> bool:
    """Vector files pass; raster files need increasingly strong titles."""
    lower_url = url.lower()
    lower_title = title.lower()

    if lower_url.endswith(".svg"):
        return True

    if lower_url.endswith(".png"):
        if any(kw in lower_title for kw in STRONG_PNG_KEYWORDS):
            return True

    if lower_url.endswith((".jpg", ".jpeg")):
        if not any(kw in lower_title for kw in STRONG_JPG_KEYWORDS):
            return False

    return is_potential_diagram(title)


def simplify_topic(topic: str) -> str:
    """First ten meaningful words of a topic, minus prompt boilerplate."""
    simplified = topic
    for pattern in TOPIC_BOILERPLATE_PATTERNS:
        simplified = pattern.sub("", simplified)
    words = [w for w in simplified.strip().split(" ") if len(w) > 2]
    return " ".join(words[:10])


def cache_key(subject: str, topic: str, grade: str) -> str:
    key = f"{subject}_{topic}_{grade}".lower()
    return re.sub(r"\s+", "_", key)[:100]


def build_queries(topic: str, subject: str, keywords: Sequence[str]) -> list[str]:
    """Ordered, de-duplicated search-query variants."""
    queries: list[str] = []

    for keyword in keywords[:3]:
        queries.append(f"{keyword} diagram labeled")
        queries.append(f"{keyword} structure diagram")
        queries.append(f"{keyword} educational illustration")
        queries.append(f"{keyword} schematic")

    if len(keywords) >= 2:
        queries.append(f"{keywords[0]} {keywords[1]} diagram")
        queries.append(f"{keywords[0]} {keywords[1]} illustration")

    simplified = simplify_topic(topic)
    if len(simplified) > 5:
        queries.append(f"{simplified} diagram")
        queries.append(f"{simplified} educational")

    first = keywords[0] if keywords else ""
    lower_subject = subject.lower()
    if "science" in lower_subject:
        queries.append(f"science diagram {first}".strip())
    elif "math" in lower_subject:
        queries.append(f"mathematics diagram {first}".strip())
    elif "social" in lower_subject:
        queries.append(f"geography diagram {first}".strip())

    return list(dict.fromkeys(queries))


class RemoteDiagramResolver:
    """
    Async Wikimedia Commons client.

    Consecutive API calls are serialized and spaced by `request_delay`
    seconds. The HTTP session is created lazily; call `close()` or use the
    resolver as an async context manager.
    """

    def __init__(
        self,
        api_url: str = WIKIMEDIA_API_URL,
        request_delay: float = DEFAULT_REQUEST_DELAY,
        timeout: float = DEFAULT_TIMEOUT,
        max_file_size: int = DEFAULT_MAX_FILE_SIZE,
        max_queries: int = DEFAULT_MAX_QUERIES,
    ):
        self.api_url = api_url
        self.request_delay = request_delay
        self.timeout = timeout
        self.max_file_size = max_file_size
        self.max_queries = max_queries
        self._session: Optional[aiohttp.ClientSession] = None
        self._lock = asyncio.Lock()
        self._last_request: Optional[float] = None
        self._request_count = 0

    @property
    def request_count(self) -> int:
        """API calls made by this resolver so far."""
        return self._request_count

    async def __aenter__(self) -> "RemoteDiagramResolver":
        return self

    async def __aexit__(self, *exc_info):
        await self.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"User-Agent": USER_AGENT},
            )
        return self._session

    async def close(self):
        """Close the session."""
        if self._session and not self._session.closed:
            await self._session.close()

    async def _get_json(self, params: dict[str, Any]) -> dict:
        """One politeness-delayed GET against the API."""
        async with self._lock:
            if self._last_request is not None:
                wait = self._last_request + self.request_delay - time.monotonic()
                if wait > 0:
                    await asyncio.sleep(wait)
            self._last_request = time.monotonic()
            self._request_count += 1
            logger.debug(
                f"API request #{self._request_count}: "
                f"{params.get('srsearch') or params.get('titles')}"
            )

            session = await self._get_session()
            async with session.get(self.api_url, params=params) as response:
                if response.status != 200:
                    text = await response.text()
                    raise ProviderError(response.status, text[:200])
                return await response.json(content_type=None)

    async def search_titles(self, query: str) -> list[str]:
        data = await self._get_json({
            "action": "query",
            "format": "json",
            "list": "search",
            "srsearch": query,
            "srnamespace": FILE_NAMESPACE,
            "srlimit": SEARCH_LIMIT,
            "origin": "*",
        })
        results = (data.get("query") or {}).get("search") or []
        return [r["title"] for r in results if r.get("title")]

    async def fetch_image_url(self, title: str) -> Optional[str]:
        """Direct file URL for a title, or None when missing or too large."""
        data = await self._get_json({
            "action": "query",
            "titles": title,
            "prop": "imageinfo",
            "iiprop": "url|size|mime",
            "format": "json",
            "origin": "*",
        })
        pages = (data.get("query") or {}).get("pages") or {}
        if not pages:
            return None

        page = next(iter(pages.values()))
        infos = page.get("imageinfo") or []
        if not infos:
            return None

        info = infos[0]
        size = info.get("size") or 0
        if size > self.max_file_size:
            logger.debug(f"File too large: {size / (1024 * 1024):.2f}MB ({title[:60]})")
            return None
        return info.get("url")

    async def search(self, query: str, used: frozenset[str]) -> Optional[ImageResult]:
        """First acceptable, unused diagram for one query."""
        titles = await self.search_titles(query)
        if not titles:
            return None

        logger.debug(f"'{query}': {len(titles)} potential images")

        for title in titles:
            if not is_potential_diagram(title):
                continue

            url = await self.fetch_image_url(title)
            if not url:
                continue

            if url in used:
                logger.debug(f"Skipping already used: {title[:40]}")
                continue

            if is_educational_diagram(url, title):
                return ImageResult(
                    image_url=url,
                    source=REMOTE_SOURCE,
                    license=REMOTE_LICENSE,
                    attribution=f"{REMOTE_SOURCE}: {title[:50]}",
                )

        return None

    async def resolve(
        self,
        topic: str,
        subject: str,
        grade: str,
        keywords: Optional[Sequence[str]],
        document_id: str,
        session: DiagramSession,
    ) -> Optional[ImageResult]:
        """
        Find a diagram not yet used in `document_id`.

        Returns None when every query variant is exhausted; that is a normal
        outcome, not an error.
        """
        registry = session.registry
        key = cache_key(subject, topic, grade)

        cached = session.cached_result(key)
        if cached and not registry.is_used(document_id, cached.image_url):
            logger.info(f"Using cached diagram for '{topic[:50]}'")
            registry.mark_used(document_id, cached.image_url)
            return cached

        keywords = list(keywords or extract_keywords(topic, subject))
        queries = build_queries(topic, subject, keywords)[:self.max_queries]
        logger.info(f"Searching {REMOTE_SOURCE} with {len(queries)} queries for '{topic[:50]}'")

        for query in queries:
            try:
                result = await self.search(query, registry.used(document_id))
            except (aiohttp.ClientError, asyncio.TimeoutError, ValueError, RemoteSearchError) as e:
                logger.warning(f"Search failed for '{query}': {e}")
                continue

            if result and not registry.is_used(document_id, result.image_url):
                logger.info(f"Found unique diagram with '{query}'")
                registry.mark_used(document_id, result.image_url)
                session.cache_result(key, result)
                return result

        logger.info(f"No unique diagram found for '{topic[:50]}'")
        return None
