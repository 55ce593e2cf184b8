import re
import asyncio
import logging
from dataclasses import dataclass

from . import database
from .config import BASE_URL
from .exceptions import FetchError, ValidationError
from .models import Movie, Rating, RatingEntry
from .scraper import PageFetcher, MovieEnricher, parse_page_count, parse_rating_items, rated_entries

logger = logging.getLogger(__name__)

_USERNAME_RE = re.compile(r'^[A-Za-z0-9_-]+$')


def validate_username(username: str | None) -> str:
    """
    Check a Letterboxd username before it is interpolated into URLs.

    Returns the trimmed username; raises ValidationError if it is empty or holds
    anything besides letters, digits, underscores and hyphens.
    """
    cleaned = (username or "").strip().strip("/")
    if not cleaned or not _USERNAME_RE.match(cleaned):
        raise ValidationError(f"Invalid username: '{username}'")
    return cleaned


@dataclass
class ScrapeSummary:
    username: str
    pages: int = 0
    pages_failed: int = 0
    ratings_seen: int = 0
    ratings_inserted: int = 0
    ratings_updated: int = 0
    movies_created: int = 0
    movies_enriched: int = 0

    @property
    def changed(self) -> bool:
        return bool(self.ratings_inserted or self.ratings_updated or self.movies_created or self.movies_enriched)


class IngestionCoordinator:
    """
    Scrapes a user's rated films and merges them into the store.

    Existing rows are preloaded in bulk, the insert/update sets are computed in memory,
    and everything is written back in one transaction, so the number of store round
    trips does not grow with the size of the rating list.
    """

    def __init__(self, fetcher: PageFetcher, enricher: MovieEnricher | None = None, base_url: str = BASE_URL):
        self.fetcher = fetcher
        self.enricher = enricher or MovieEnricher(fetcher, base_url=base_url)
        self.base_url = base_url

    def ratings_page_url(self, username: str, page: int) -> str:
        return f"{self.base_url}/{username}/films/by/date/page/{page}/"

    async def fetch_rating_entries(self, username: str, summary: ScrapeSummary) -> list[RatingEntry]:
        """
        Walk every ratings page for a user, in order.

        Page 1 decides the page count, so a failure there is fatal. Failures on later
        pages are logged and that page is skipped.
        """
        first_page = await self.fetcher.fetch(self.ratings_page_url(username, 1))
        page_count = parse_page_count(first_page)
        summary.pages = page_count

        entries = parse_rating_items(first_page)
        for page in range(2, page_count + 1):
            try:
                html = await self.fetcher.fetch(self.ratings_page_url(username, page))
            except FetchError as exc:
                summary.pages_failed += 1
                logger.warning(f"Skipping page {page}/{page_count} for {username}: {exc}")
                continue
            entries.extend(parse_rating_items(html))
            logger.debug(f"  {username} page {page}/{page_count}: {len(entries)} entries so far")

        return rated_entries(entries)

    async def scrape_ratings_for_user(self, username: str) -> ScrapeSummary:
        username = validate_username(username)
        summary = ScrapeSummary(username=username)

        logger.info(f"Scraping {username}'s ratings...")
        entries = await self.fetch_rating_entries(username, summary)

        # Later sightings win if a film shows up twice across pages
        scores: dict[str, float] = {}
        for entry in entries:
            scores[entry.movie_id] = entry.score
        summary.ratings_seen = len(scores)

        if not scores:
            logger.info(f"No rated films found for {username}")
            return summary

        movie_ids = list(scores)
        existing_movies, existing_ratings = await asyncio.gather(
            asyncio.to_thread(database.load_movies, movie_ids),
            asyncio.to_thread(database.load_user_ratings, username, movie_ids),
        )

        touched_movies: dict[str, Movie] = {}
        enrich_tasks: dict[str, asyncio.Task] = {}
        rating_inserts: list[Rating] = []
        rating_updates: list[Rating] = []

        for movie_id, score in scores.items():
            movie = existing_movies.get(movie_id)
            if movie is None:
                movie = Movie.skeleton(movie_id)
                existing_movies[movie_id] = movie
                touched_movies[movie_id] = movie
                summary.movies_created += 1

            if movie.needs_enrichment:
                touched_movies[movie_id] = movie
                enrich_tasks[movie_id] = asyncio.create_task(self.enricher.enrich(movie))

            prior = existing_ratings.get(movie_id)
            if prior is None:
                rating_inserts.append(Rating(username, movie_id, score))
            elif prior.score != score:
                prior.score = score
                rating_updates.append(prior)

        if enrich_tasks:
            try:
                results = await asyncio.gather(*enrich_tasks.values())
            except BaseException:
                # Nothing is saved; stop the remaining lookups
                for task in enrich_tasks.values():
                    task.cancel()
                raise
            summary.movies_enriched = sum(1 for changed in results if changed)

        await asyncio.to_thread(
            database.save_batch, list(touched_movies.values()), rating_inserts, rating_updates
        )

        summary.ratings_inserted = len(rating_inserts)
        summary.ratings_updated = len(rating_updates)
        logger.info(
            f"{username}: {summary.ratings_seen} ratings over {summary.pages} pages "
            f"({summary.ratings_inserted} new, {summary.ratings_updated} updated, "
            f"{summary.movies_created} new films, {summary.movies_enriched} enriched)"
        )
        return summary
