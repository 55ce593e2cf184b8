import httpx
import json
import logging
import asyncio
from selectolax.parser import HTMLParser

from .config import (
    BASE_URL,
    HTTP_TIMEOUT,
    MAX_CONCURRENT_FETCHES,
    POSTER_ORIGIN,
    POSTER_SIZE_PATH,
    EMPTY_POSTER_MARKER,
    USER_AGENT,
    MIN_SCORE,
    MAX_SCORE,
)
from .exceptions import FetchError, ParseError, ValidationError
from .models import Movie, RatingEntry

logger = logging.getLogger(__name__)


def parse_page_count(html: str) -> int:
    """
    Number of pages in a paginated ratings list.

    Reads the last pagination link ("1,234" style thousands allowed). Falls back to 1
    when there is no pagination control or its text is not a number.
    """
    links = HTMLParser(html).css("li.paginate-page a")
    if not links:
        return 1

    text = links[-1].text(strip=True).replace(",", "")
    try:
        count = int(text)
    except ValueError:
        logger.debug(f"Unparseable page count '{text}', assuming a single page")
        return 1
    return max(count, 1)


def parse_rating_score(class_attr: str | None) -> float:
    """
    Parse a score from a rating widget class like 'rating rated-8'.

    Returns 0 when the suffix is missing, not numeric, or outside the 1-10 domain.
    """
    if not class_attr:
        return 0
    suffix = class_attr.split("-")[-1].strip()
    try:
        score = float(suffix)
    except ValueError:
        return 0
    if not MIN_SCORE <= score <= MAX_SCORE:
        logger.debug(f"Rating value outside range [{MIN_SCORE}-{MAX_SCORE}]: '{class_attr}'")
        return 0
    return score


def _movie_id_from_link(link: str | None) -> str | None:
    if not link:
        return None
    segments = [s for s in link.split("/") if s]
    return segments[-1] if segments else None


def parse_rating_items(html: str) -> list[RatingEntry]:
    """
    Extract (movie id, score) pairs from one ratings list page.

    Items without a poster link are skipped; items without a usable star rating are
    kept with score 0 so callers can tell "watched" from "rated".
    """
    entries = []
    for item in HTMLParser(html).css("li.poster-container"):
        poster = item.css_first(".film-poster")
        if poster is None:
            continue
        movie_id = _movie_id_from_link(poster.attributes.get("data-target-link"))
        if not movie_id:
            continue

        rating_el = item.css_first(".rating")
        score = parse_rating_score(rating_el.attributes.get("class")) if rating_el else 0
        entries.append(RatingEntry(movie_id, score))
    return entries


def rated_entries(entries: list[RatingEntry]) -> list[RatingEntry]:
    return [e for e in entries if e.is_rated]


def parse_metadata_json(payload) -> dict:
    """
    Pick title/year/runtime out of a film JSON payload.

    Only correctly typed keys are returned: a missing, null or mistyped field is
    simply absent from the result. Raw text that is not JSON raises ParseError.
    """
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise ParseError(f"Invalid metadata JSON: {exc}") from exc

    if not isinstance(payload, dict):
        return {}

    fields = {}
    name = payload.get("name")
    if isinstance(name, str) and name.strip():
        fields["title"] = name.strip()

    # bool is a subclass of int; reject it explicitly
    year = payload.get("releaseYear")
    if isinstance(year, int) and not isinstance(year, bool):
        fields["year"] = year

    runtime = payload.get("runTime")
    if isinstance(runtime, int) and not isinstance(runtime, bool):
        fields["runtime"] = runtime

    return fields


def normalize_poster_url(src: str | None) -> str:
    """
    Canonical poster URL: no query string, resized-image origin, .jpg suffix.

    The empty-poster placeholder maps to "". Applying this twice changes nothing.
    """
    if not src:
        return ""

    url = src.split("?", 1)[0].strip()
    if not url or EMPTY_POSTER_MARKER in url:
        return ""

    if not url.startswith(POSTER_ORIGIN):
        if "/resized/" in url:
            url = url.split("/resized/", 1)[1]
        url = POSTER_ORIGIN + url.lstrip("/")

    if not url.endswith(".jpg"):
        url += ".jpg"
    return url


def parse_poster_html(html: str) -> str:
    img = HTMLParser(html).css_first(".film-poster img")
    if img is None:
        return ""
    src = img.attributes.get("src") or img.attributes.get("data-src")
    return normalize_poster_url(src)


class PageFetcher:
    """
    Async page fetcher with a concurrency cap.

    All components sharing one fetcher share its semaphore, so the cap applies to
    every outbound request made through it. No retries: failures surface as
    FetchError and callers decide whether to abort or skip.
    """

    def __init__(
        self,
        max_concurrent: int = MAX_CONCURRENT_FETCHES,
        semaphore: asyncio.Semaphore | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = HTTP_TIMEOUT,
    ):
        if semaphore is None and max_concurrent < 1:
            raise ValidationError(f"max_concurrent must be at least 1, got {max_concurrent}")
        self.semaphore = semaphore or asyncio.Semaphore(max_concurrent)
        self.client = client
        self.timeout = timeout
        self._owns_client = client is None

    async def __aenter__(self):
        if self.client is None:
            self.client = httpx.AsyncClient(
                headers={"User-Agent": USER_AGENT},
                follow_redirects=True,
                timeout=self.timeout,
            )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self._owns_client and self.client:
            await self.client.aclose()
            self.client = None
        return False

    async def fetch(self, url: str) -> str:
        """GET a page body. Raises FetchError on transport failure or non-2xx status."""
        if not self.client:
            raise RuntimeError("PageFetcher must be used as an async context manager")

        async with self.semaphore:
            try:
                resp = await self.client.get(url)
            except httpx.HTTPError as exc:
                raise FetchError(url, f"Request error: {type(exc).__name__}: {exc}") from exc

        if not resp.is_success:
            raise FetchError(url, f"HTTP {resp.status_code}", status_code=resp.status_code)
        return resp.text

    async def fetch_json(self, url: str):
        body = await self.fetch(url)
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise ParseError(f"Invalid JSON from {url}: {exc}") from exc


class MovieEnricher:
    """Fills in missing title/year/runtime and poster for a movie."""

    def __init__(self, fetcher: PageFetcher, base_url: str = BASE_URL):
        self.fetcher = fetcher
        self.base_url = base_url

    def metadata_url(self, movie_id: str) -> str:
        return f"{self.base_url}/film/{movie_id}/json/"

    def poster_url(self, movie_id: str) -> str:
        return f"{self.base_url}/ajax/poster/film/{movie_id}/{POSTER_SIZE_PATH}/"

    async def enrich(self, movie: Movie) -> bool:
        """
        Enrich a movie in place, fetching only what is still missing.

        The metadata and poster lookups run concurrently and fail independently;
        a failed lookup is logged and leaves the affected fields as they were.

        Returns:
            True if any field changed
        """
        branches = []
        if movie.needs_metadata:
            branches.append(self._enrich_metadata(movie))
        if movie.needs_poster:
            branches.append(self._enrich_poster(movie))
        if not branches:
            return False

        results = await asyncio.gather(*branches)
        return any(results)

    async def enrich_many(self, movies: list[Movie]) -> int:
        """Enrich several movies concurrently. Returns how many changed."""
        results = await asyncio.gather(*(self.enrich(m) for m in movies))
        return sum(1 for changed in results if changed)

    async def _enrich_metadata(self, movie: Movie) -> bool:
        url = self.metadata_url(movie.movie_id)
        try:
            fields = parse_metadata_json(await self.fetcher.fetch_json(url))
        except (FetchError, ParseError) as exc:
            logger.warning(f"Metadata lookup failed for {movie.movie_id}: {exc}")
            return False

        changed = False
        for attr, value in fields.items():
            if getattr(movie, attr) != value:
                setattr(movie, attr, value)
                changed = True
        return changed

    async def _enrich_poster(self, movie: Movie) -> bool:
        url = self.poster_url(movie.movie_id)
        try:
            poster = parse_poster_html(await self.fetcher.fetch(url))
        except (FetchError, ParseError) as exc:
            logger.warning(f"Poster lookup failed for {movie.movie_id}: {exc}")
            return False

        if poster and poster != movie.poster_url:
            movie.poster_url = poster
            return True
        return False
