import math
import random
import asyncio
import logging
from pathlib import Path
from typing import Iterable, Protocol

import numpy as np

from . import database
from .config import MODEL_PATH, POPULARITY_BOOST_WEIGHT, HOLDOUT_TEST_FRACTION
from .exceptions import ModelNotTrainedError, TrainingError, ValidationError
from .ingest import IngestionCoordinator, validate_username
from .matrix_factorization import RatingTriple, SVDTrainer
from .models import Movie, Recommendation, ScoredCandidate

logger = logging.getLogger(__name__)


class Model(Protocol):
    def predict(self, username: str, movie_id: str) -> float | None: ...


class Trainer(Protocol):
    def train(self, triples: Iterable[RatingTriple]) -> Model: ...


def popularity_boost(count: int, weight: float = POPULARITY_BOOST_WEIGHT) -> float:
    return weight * math.log(count + 1)


def rank_candidates(
    model: Model,
    username: str,
    candidates: list[Movie],
    popularity: dict[str, int],
    count: int,
    weight: float = POPULARITY_BOOST_WEIGHT,
) -> list[ScoredCandidate]:
    """
    Score candidates as model prediction plus a log-popularity boost.

    Candidates whose score is not a number (including movies the model has never
    seen) are dropped. Results are sorted by score, highest first.
    """
    scored = []
    for movie in candidates:
        base = model.predict(username, movie.movie_id)
        if base is None:
            continue
        score = float(base) + popularity_boost(popularity.get(movie.movie_id, 0), weight)
        if math.isnan(score):
            continue
        scored.append(ScoredCandidate(movie, score))

    scored.sort(key=lambda c: c.score, reverse=True)
    return scored[:count]


class RecommendationEngine:
    """
    Serves recommendations from a collaborative-filtering model kept in step with the store.

    A user's ratings are refreshed on every request; the model is retrained only when
    that refresh changed the user's rating count, or when no model exists yet.
    """

    def __init__(
        self,
        coordinator: IngestionCoordinator,
        trainer: Trainer | None = None,
        model: Model | None = None,
        model_path: str | Path | None = MODEL_PATH,
        popularity_weight: float = POPULARITY_BOOST_WEIGHT,
    ):
        self.coordinator = coordinator
        self.trainer = trainer or SVDTrainer()
        self.model_path = Path(model_path) if model_path else None
        self.popularity_weight = popularity_weight
        self._retrain_lock = asyncio.Lock()
        # Retrains are numbered when they read the store; a finished retrain is only
        # reusable by callers that arrived before it started reading
        self._retrains_started = 0
        self._last_completed_retrain = 0

        self.model = model
        if self.model is None and self.model_path is not None:
            loader = getattr(self.trainer, "load", None)
            if loader is not None:
                self.model = loader(self.model_path)

    async def retrain_model(self) -> Model | None:
        """
        Retrain on every rating in the store.

        Concurrent callers are serialized. A caller that waited while another retrain
        finished reuses that result only if that retrain read the store after this
        call began, so ratings committed before the call are always trained on.
        Returns the new model, or None if the store holds no ratings (the current
        model is kept).

        Raises:
            TrainingError: the trainer failed; the previous model stays in effect
        """
        seen = self._retrains_started
        async with self._retrain_lock:
            if self._last_completed_retrain > seen:
                logger.info("Model was retrained while waiting; skipping duplicate pass")
                return self.model

            self._retrains_started += 1
            run = self._retrains_started
            triples = await asyncio.to_thread(database.load_all_ratings)
            if not triples:
                logger.warning("No ratings in store; nothing to train on")
                return None

            logger.info(f"Retraining recommendation model on {len(triples)} ratings...")
            try:
                model = await asyncio.to_thread(self.trainer.train, triples)
            except Exception as exc:
                raise TrainingError(f"Training failed: {type(exc).__name__}: {exc}") from exc

            save = getattr(model, "save", None)
            if save is not None and self.model_path is not None:
                try:
                    await asyncio.to_thread(save, self.model_path)
                except OSError as exc:
                    logger.warning(f"Could not persist model to {self.model_path}: {exc}")

            self.model = model
            self._last_completed_retrain = run
            return model

    async def get_top_recommendations(self, username: str, count: int) -> list[Recommendation]:
        if count < 1:
            raise ValidationError(f"Recommendation count must be at least 1, got {count}")
        username = validate_username(username)

        before = await asyncio.to_thread(database.count_user_ratings, username)
        await self.coordinator.scrape_ratings_for_user(username)
        after = await asyncio.to_thread(database.count_user_ratings, username)

        if self.model is None or after != before:
            logger.info(f"Ratings for {username} changed ({before} -> {after}) or no model loaded; retraining")
            await self.retrain_model()

        model = self.model
        if model is None:
            raise ModelNotTrainedError("No ratings available to train a model yet")

        popularity, rated, movies = await asyncio.gather(
            asyncio.to_thread(database.movie_popularity),
            asyncio.to_thread(database.rated_movie_ids, username),
            asyncio.to_thread(database.load_all_movies),
        )
        candidates = [m for m in movies if m.movie_id not in rated]

        ranked = rank_candidates(model, username, candidates, popularity, count, self.popularity_weight)
        logger.info(f"Returning top {len(ranked)} recommendations for {username}")
        return [Recommendation.from_candidate(c) for c in ranked]

    async def has_ratings(self, username: str) -> bool:
        return await asyncio.to_thread(database.has_ratings, username)

    async def ensure_user_has_ratings(self, username: str) -> None:
        if not await self.has_ratings(username):
            logger.warning(f"User {username} has no ratings")
            raise ValidationError(f"User '{username}' has no ratings. Please scrape first.")

    async def evaluate_holdout(self, test_fraction: float = HOLDOUT_TEST_FRACTION, seed: int | None = None) -> dict:
        """
        Train on a random split of the stored ratings and score the rest.

        Returns rmse, mae and r2 over held-out pairs the model could predict, plus
        the split sizes. The serving model is left untouched.
        """
        if not 0 < test_fraction < 1:
            raise ValidationError(f"test_fraction must be between 0 and 1, got {test_fraction}")

        triples = await asyncio.to_thread(database.load_all_ratings)
        shuffled = list(triples)
        random.Random(seed).shuffle(shuffled)
        n_test = int(len(shuffled) * test_fraction)
        test, train = shuffled[:n_test], shuffled[n_test:]
        if not test or not train:
            raise TrainingError(f"Not enough ratings for a hold-out split ({len(triples)} total)")

        try:
            model = await asyncio.to_thread(self.trainer.train, train)
        except Exception as exc:
            raise TrainingError(f"Training failed: {type(exc).__name__}: {exc}") from exc

        actual, predicted = [], []
        for username, movie_id, score in test:
            prediction = model.predict(username, movie_id)
            if prediction is None or math.isnan(prediction):
                continue
            actual.append(score)
            predicted.append(prediction)

        if not actual:
            raise TrainingError("Model could not predict any held-out rating")

        y = np.array(actual)
        y_hat = np.array(predicted)
        errors = y - y_hat
        ss_tot = float(np.sum((y - y.mean()) ** 2))
        metrics = {
            "rmse": float(np.sqrt(np.mean(errors ** 2))),
            "mae": float(np.mean(np.abs(errors))),
            "r2": 1 - float(np.sum(errors ** 2)) / ss_tot if ss_tot > 0 else 0.0,
            "n_train": len(train),
            "n_test": len(actual),
        }
        logger.info(
            f"Hold-out {1 - test_fraction:.0%}/{test_fraction:.0%}: "
            f"RMSE={metrics['rmse']:.3f} MAE={metrics['mae']:.3f} R2={metrics['r2']:.3f}"
        )
        return metrics
