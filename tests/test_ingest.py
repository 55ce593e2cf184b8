import asyncio
import json

import httpx
import pytest

from movierec import database
from movierec.exceptions import FetchError, ValidationError
from movierec.ingest import IngestionCoordinator, validate_username
from movierec.scraper import PageFetcher

PAGE_1 = """
<html>
  <ul class="poster-list">
    <li class="poster-container">
      <div class="film-poster" data-target-link="/film/film-a/"></div>
      <p class="poster-viewingdata"><span class="rating rated-8"></span></p>
    </li>
    <li class="poster-container">
      <div class="film-poster" data-target-link="/film/film-b/"></div>
    </li>
  </ul>
  <div class="pagination">
    <li class="paginate-page"><a href="/alice/films/by/date/page/1/">1</a></li>
    <li class="paginate-page"><a href="/alice/films/by/date/page/2/">2</a></li>
  </div>
</html>
"""

PAGE_2 = """
<html>
  <ul class="poster-list">
    <li class="poster-container">
      <div class="film-poster" data-target-link="/film/film-c/"></div>
      <p class="poster-viewingdata"><span class="rating rated-10"></span></p>
    </li>
    <li class="poster-container">
      <div class="film-poster" data-target-link="/film/film-d/"></div>
      <p class="poster-viewingdata"><span class="rating"></span></p>
    </li>
  </ul>
</html>
"""

POSTER_A = """<div class="film-poster"><img src="https://a.ltrbxd.com/resized/film-poster/a.jpg?v=2"></div>"""
PLACEHOLDER = """<div class="film-poster"><img src="https://s.ltrbxd.com/static/img/empty-poster-230.png"></div>"""


def _routes(page_1=PAGE_1, page_2=PAGE_2):
    return {
        "/alice/films/by/date/page/1/": page_1,
        "/alice/films/by/date/page/2/": page_2,
        "/film/film-a/json/": json.dumps({"name": "Film A", "releaseYear": 2001, "runTime": 120}),
        "/ajax/poster/film/film-a/std/230x345/": POSTER_A,
        "/film/film-c/json/": 500,
        "/ajax/poster/film/film-c/std/230x345/": PLACEHOLDER,
    }


def test_validate_username():
    assert validate_username(" alice_99 ") == "alice_99"
    assert validate_username("/bob-b/") == "bob-b"
    for bad in ["", "   ", "a b", "../etc", None]:
        with pytest.raises(ValidationError):
            validate_username(bad)


@pytest.mark.asyncio
async def test_scrape_creates_movies_ratings_and_enriches(fresh_db, mock_site):
    site = mock_site(_routes())

    async with site.client() as client:
        coordinator = IngestionCoordinator(PageFetcher(client=client))
        summary = await coordinator.scrape_ratings_for_user("alice")

    assert summary.pages == 2
    assert summary.pages_failed == 0
    assert summary.ratings_seen == 2
    assert summary.ratings_inserted == 2
    assert summary.ratings_updated == 0
    assert summary.movies_created == 2
    assert summary.movies_enriched == 1

    ratings = database.load_user_ratings("alice")
    assert {k: r.score for k, r in ratings.items()} == {"film-a": 8.0, "film-c": 10.0}

    movies = database.load_movies(["film-a", "film-b", "film-c", "film-d"])
    # Watched-but-unrated films are not ingested
    assert set(movies) == {"film-a", "film-c"}
    assert movies["film-a"].title == "Film A"
    assert movies["film-a"].year == 2001
    assert movies["film-a"].runtime == 120
    assert movies["film-a"].poster_url == "https://a.ltrbxd.com/resized/film-poster/a.jpg"
    assert movies["film-c"].title == "film-c"
    assert movies["film-c"].poster_url == ""


@pytest.mark.asyncio
async def test_rescrape_updates_scores_and_skips_complete_movies(fresh_db, mock_site):
    site = mock_site(_routes())
    async with site.client() as client:
        await IngestionCoordinator(PageFetcher(client=client)).scrape_ratings_for_user("alice")

    site = mock_site(_routes(page_1=PAGE_1.replace("rated-8", "rated-6")))
    async with site.client() as client:
        summary = await IngestionCoordinator(PageFetcher(client=client)).scrape_ratings_for_user("alice")

    assert summary.ratings_inserted == 0
    assert summary.ratings_updated == 1
    assert summary.movies_created == 0
    assert database.load_user_ratings("alice")["film-a"].score == 6.0
    assert database.count_user_ratings("alice") == 2
    # film-a is complete; only the still-placeholder film-c is looked up again
    assert "/film/film-a/json/" not in site.calls
    assert "/film/film-c/json/" in site.calls


@pytest.mark.asyncio
async def test_preload_uses_one_query_per_table(fresh_db, mock_site, monkeypatch):
    calls = {"movies": 0, "ratings": 0, "save": 0}
    load_movies, load_user_ratings, save_batch = (
        database.load_movies, database.load_user_ratings, database.save_batch
    )

    def counting(name, fn):
        def wrapper(*args, **kwargs):
            calls[name] += 1
            return fn(*args, **kwargs)
        return wrapper

    monkeypatch.setattr(database, "load_movies", counting("movies", load_movies))
    monkeypatch.setattr(database, "load_user_ratings", counting("ratings", load_user_ratings))
    monkeypatch.setattr(database, "save_batch", counting("save", save_batch))

    site = mock_site(_routes())
    async with site.client() as client:
        await IngestionCoordinator(PageFetcher(client=client)).scrape_ratings_for_user("alice")

    assert calls == {"movies": 1, "ratings": 1, "save": 1}


@pytest.mark.asyncio
async def test_first_page_failure_is_fatal(fresh_db, mock_site):
    site = mock_site({"/alice/films/by/date/page/1/": httpx.ReadTimeout})

    async with site.client() as client:
        coordinator = IngestionCoordinator(PageFetcher(client=client))
        with pytest.raises(FetchError):
            await coordinator.scrape_ratings_for_user("alice")

    assert database.count_user_ratings("alice") == 0


@pytest.mark.asyncio
async def test_later_page_failure_is_skipped(fresh_db, mock_site):
    routes = _routes()
    routes["/alice/films/by/date/page/2/"] = 502
    site = mock_site(routes)

    async with site.client() as client:
        summary = await IngestionCoordinator(PageFetcher(client=client)).scrape_ratings_for_user("alice")

    assert summary.pages_failed == 1
    assert set(database.load_user_ratings("alice")) == {"film-a"}


@pytest.mark.asyncio
async def test_no_rated_films_leaves_store_untouched(fresh_db, mock_site, monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("store should not be touched")

    monkeypatch.setattr(database, "load_movies", fail)
    monkeypatch.setattr(database, "save_batch", fail)

    page = PAGE_2.replace("rated-10", "")
    site = mock_site({"/bob/films/by/date/page/1/": page})
    async with site.client() as client:
        summary = await IngestionCoordinator(PageFetcher(client=client)).scrape_ratings_for_user("bob")

    assert summary.ratings_seen == 0
    assert summary.changed is False


@pytest.mark.asyncio
async def test_invalid_username_never_fetches(mock_site):
    site = mock_site()
    async with site.client() as client:
        coordinator = IngestionCoordinator(PageFetcher(client=client))
        with pytest.raises(ValidationError):
            await coordinator.scrape_ratings_for_user("../admin")

    assert site.calls == []


class StuckEnricher:
    """film-a fails outright; every other lookup hangs until cancelled."""

    def __init__(self):
        self.cancelled = []

    async def enrich(self, movie):
        if movie.movie_id == "film-a":
            raise RuntimeError("unexpected payload")
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            self.cancelled.append(movie.movie_id)
            raise
        return True


@pytest.mark.asyncio
async def test_enrichment_failure_cancels_sibling_lookups(fresh_db, mock_site, monkeypatch):
    def fail(*args, **kwargs):
        raise AssertionError("nothing should be saved")

    monkeypatch.setattr(database, "save_batch", fail)
    enricher = StuckEnricher()
    site = mock_site(_routes())

    async with site.client() as client:
        coordinator = IngestionCoordinator(PageFetcher(client=client), enricher=enricher)
        with pytest.raises(RuntimeError):
            await coordinator.scrape_ratings_for_user("alice")

    for _ in range(5):
        await asyncio.sleep(0)
    assert enricher.cancelled == ["film-c"]
