import asyncio
import logging

from selectolax.parser import HTMLParser
from tqdm import tqdm

from . import database
from .config import BASE_URL
from .exceptions import FetchError, ValidationError
from .ingest import IngestionCoordinator
from .scraper import PageFetcher

logger = logging.getLogger(__name__)


def parse_popular_usernames(html: str) -> list[str]:
    """Usernames from a popular-members table, in page order."""
    table = HTMLParser(html).css_first("table.person-table")
    if table is None:
        return []

    usernames = []
    for cell in table.css("td.table-person"):
        link = cell.css_first("a")
        href = link.attributes.get("href") if link else None
        if not href:
            continue
        user = href.strip("/")
        if user:
            usernames.append(user)
    return usernames


class PopularUsersDiscovery:
    """Finds popular members and seeds the store with their ratings."""

    def __init__(self, fetcher: PageFetcher, coordinator: IngestionCoordinator, base_url: str = BASE_URL):
        self.fetcher = fetcher
        self.coordinator = coordinator
        self.base_url = base_url

    def listing_url(self, page: int) -> str:
        return f"{self.base_url}/members/popular/this/week/page/{page}/"

    async def get_popular_usernames(self, pages: int) -> list[str]:
        """
        Collect usernames from the first `pages` listing pages.

        Duplicates across pages are dropped, keeping first-seen order. A page that
        fails to load is logged and skipped.
        """
        if pages < 1:
            raise ValidationError(f"Page count must be at least 1, got {pages}")

        usernames: dict[str, None] = {}
        for page in range(1, pages + 1):
            try:
                html = await self.fetcher.fetch(self.listing_url(page))
            except FetchError as exc:
                logger.warning(f"Skipping popular members page {page}: {exc}")
                continue

            for user in parse_popular_usernames(html):
                usernames.setdefault(user, None)

        logger.info(f"  Found {len(usernames)} popular members")
        return list(usernames)

    async def seed_popular_users(self, pages: int) -> int:
        """
        Scrape ratings for every discovered popular member.

        One user's failure never stops the batch. Returns the number of usernames
        discovered.
        """
        usernames = await self.get_popular_usernames(pages)
        logger.info(f"Found {len(usernames)} users to seed")

        for username in tqdm(usernames, desc="Users"):
            try:
                await self.coordinator.scrape_ratings_for_user(username)
                total = await asyncio.to_thread(database.count_user_ratings, username)
                logger.info(f"Done {username}: store now has {total} ratings for this user")
            except Exception as exc:  # noqa: BLE001
                logger.error(f"Error scraping {username}: {type(exc).__name__}: {exc}")

        return len(usernames)
