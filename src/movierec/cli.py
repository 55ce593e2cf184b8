import argparse
import asyncio
import atexit
import json
import logging
import sys
from contextlib import asynccontextmanager

from .config import DEFAULT_SEED_PAGES, DEFAULT_RECOMMENDATIONS, MAX_CONCURRENT_FETCHES, HOLDOUT_TEST_FRACTION
from .database import init_db, close_pool
from .discovery import PopularUsersDiscovery
from .exceptions import MovieRecError
from .ingest import IngestionCoordinator
from .recommender import RecommendationEngine
from .scraper import PageFetcher

logger = logging.getLogger(__name__)

# Register cleanup on exit
atexit.register(close_pool)


@asynccontextmanager
async def _coordinator(args: argparse.Namespace):
    async with PageFetcher(max_concurrent=args.max_concurrent) as fetcher:
        yield fetcher, IngestionCoordinator(fetcher)


async def _scrape(args: argparse.Namespace) -> None:
    async with _coordinator(args) as (_, coordinator):
        summary = await coordinator.scrape_ratings_for_user(args.username)
    logger.info(
        f"Scraping complete: {summary.ratings_seen} ratings "
        f"({summary.ratings_inserted} new, {summary.ratings_updated} updated)"
    )


async def _seed(args: argparse.Namespace) -> None:
    async with _coordinator(args) as (fetcher, coordinator):
        discovery = PopularUsersDiscovery(fetcher, coordinator)
        found = await discovery.seed_popular_users(args.pages)
    logger.info(f"Seeded ratings for {found} popular users (pages={args.pages})")


async def _recommend(args: argparse.Namespace) -> None:
    async with _coordinator(args) as (_, coordinator):
        engine = RecommendationEngine(coordinator)
        recs = await engine.get_top_recommendations(args.username, args.limit)

    if args.format == "json":
        print(json.dumps([r.to_dict() for r in recs], indent=2))
        return

    logger.info(f"\nTop {len(recs)} recommendations for {args.username}:")
    logger.info("-" * 50)
    for i, rec in enumerate(recs, 1):
        logger.info(f"  {i:2}. {rec.title} ({rec.predicted_score:.2f}) {rec.letterboxd_url}")


async def _retrain(args: argparse.Namespace) -> None:
    async with _coordinator(args) as (_, coordinator):
        engine = RecommendationEngine(coordinator)
        model = await engine.retrain_model()
    if model is None:
        logger.warning("No ratings in store; scrape some users first")
    else:
        logger.info("Model retrained.")


async def _evaluate(args: argparse.Namespace) -> None:
    async with _coordinator(args) as (_, coordinator):
        engine = RecommendationEngine(coordinator)
        metrics = await engine.evaluate_holdout(args.test_fraction, seed=args.seed)
    logger.info(
        f"RMSE = {metrics['rmse']:.3f}  MAE = {metrics['mae']:.3f}  R² = {metrics['r2']:.3f} "
        f"({metrics['n_train']} train / {metrics['n_test']} test)"
    )


def cmd_scrape(args: argparse.Namespace) -> None:
    """Scrape a user's ratings into the store."""
    asyncio.run(_scrape(args))


def cmd_seed(args: argparse.Namespace) -> None:
    """Scrape ratings for this week's popular members."""
    asyncio.run(_seed(args))


def cmd_recommend(args: argparse.Namespace) -> None:
    """Refresh a user's ratings and print recommendations."""
    asyncio.run(_recommend(args))


def cmd_retrain(args: argparse.Namespace) -> None:
    asyncio.run(_retrain(args))


def cmd_evaluate(args: argparse.Namespace) -> None:
    asyncio.run(_evaluate(args))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Letterboxd Movie Recommender")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument("--max-concurrent", type=int, default=MAX_CONCURRENT_FETCHES,
                        help="Max concurrent HTTP requests")
    subparsers = parser.add_subparsers(dest="command", required=True)

    scrape_parser = subparsers.add_parser("scrape", help="Scrape a user's ratings")
    scrape_parser.add_argument("username", help="Letterboxd username")
    scrape_parser.set_defaults(func=cmd_scrape)

    seed_parser = subparsers.add_parser("seed", help="Scrape ratings of popular members")
    seed_parser.add_argument("--pages", type=int, default=DEFAULT_SEED_PAGES,
                             help=f"Popular member pages to crawl (default: {DEFAULT_SEED_PAGES})")
    seed_parser.set_defaults(func=cmd_seed)

    rec_parser = subparsers.add_parser("recommend", help="Generate recommendations")
    rec_parser.add_argument("username", help="Letterboxd username")
    rec_parser.add_argument("--limit", type=int, default=DEFAULT_RECOMMENDATIONS,
                            help="Number of recommendations")
    rec_parser.add_argument("--format", choices=["text", "json"], default="text", help="Output format")
    rec_parser.set_defaults(func=cmd_recommend)

    retrain_parser = subparsers.add_parser("retrain", help="Retrain the model on all stored ratings")
    retrain_parser.set_defaults(func=cmd_retrain)

    eval_parser = subparsers.add_parser("evaluate", help="Hold-out evaluation of the model")
    eval_parser.add_argument("--test-fraction", type=float, default=HOLDOUT_TEST_FRACTION,
                             help="Fraction of ratings held out for testing")
    eval_parser.add_argument("--seed", type=int, help="Random seed for the split")
    eval_parser.set_defaults(func=cmd_evaluate)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    init_db()
    try:
        args.func(args)
    except MovieRecError as exc:
        logger.error(f"{type(exc).__name__}: {exc}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
