import json
import logging
from collections import Counter
from datetime import datetime
from pathlib import Path
from typing import Iterable

import numpy as np
from scipy.sparse import csr_matrix
from scipy.sparse.linalg import svds

from .config import (
    DEFAULT_N_FACTORS, MIN_MOVIE_RATINGS, MIN_SCORE, MAX_SCORE,
    EXTREME_RATING_WEIGHT, EXTREME_LOW, EXTREME_HIGH,
)

logger = logging.getLogger(__name__)

RatingTriple = tuple[str, str, float]


class SVDModel:
    """
    Matrix factorization model using truncated SVD.

    Decomposes the user-movie rating matrix R ≈ U @ Σ @ V^T on top of biases:
    R_predicted = global_mean + user_bias + movie_bias + U @ V^T
    """

    def __init__(self, n_factors: int = DEFAULT_N_FACTORS):
        self.n_factors = n_factors
        self.user_factors = None
        self.item_factors = None
        self.user_index: dict[str, int] = {}
        self.item_index: dict[str, int] = {}
        self.global_mean = 0.0
        self.user_biases = None
        self.item_biases = None
        self.metadata: dict = {}
        self.is_fitted = False

    def fit(self, triples: Iterable[RatingTriple], extreme_weight: float = 1.0) -> 'SVDModel':
        """
        Fit biases and latent factors.

        Scores at or below EXTREME_LOW or at or above EXTREME_HIGH get
        `extreme_weight` in the mean and bias estimates; the default of 1.0 weighs
        every rating equally.
        """
        self.is_fitted = False

        # Collapse duplicates; the last score for a (user, movie) pair wins
        ratings: dict[tuple[str, str], float] = {}
        for username, movie_id, score in triples:
            ratings[(username, movie_id)] = float(score)

        if not ratings:
            raise ValueError("Cannot fit SVD model because no ratings were provided.")

        usernames = sorted({u for u, _ in ratings})
        movie_ids = sorted({m for _, m in ratings})
        self.user_index = {u: i for i, u in enumerate(usernames)}
        self.item_index = {m: i for i, m in enumerate(movie_ids)}
        n_users, n_items = len(usernames), len(movie_ids)

        rows = np.array([self.user_index[u] for u, _ in ratings], dtype=np.int64)
        cols = np.array([self.item_index[m] for _, m in ratings], dtype=np.int64)
        data = np.array(list(ratings.values()), dtype=np.float64)

        # Extreme ratings pull harder on the mean and the per-user/per-movie offsets
        extreme = (data <= EXTREME_LOW) | (data >= EXTREME_HIGH)
        weights = np.where(extreme, extreme_weight, 1.0)

        self.global_mean = float(np.average(data, weights=weights))

        user_weights = np.bincount(rows, weights=weights, minlength=n_users)
        user_weights[user_weights == 0] = 1
        user_sums = np.bincount(rows, weights=weights * data, minlength=n_users)
        self.user_biases = (user_sums / user_weights) - self.global_mean

        item_weights = np.bincount(cols, weights=weights, minlength=n_items)
        item_weights[item_weights == 0] = 1
        item_sums = np.bincount(cols, weights=weights * data, minlength=n_items)
        self.item_biases = (item_sums / item_weights) - self.global_mean

        residuals = data - (self.global_mean + self.user_biases[rows] + self.item_biases[cols])
        R_centered = csr_matrix((residuals, (rows, cols)), shape=(n_users, n_items))

        k = min(self.n_factors, min(n_users, n_items) - 1)
        if k >= 1 and np.any(residuals):
            U, sigma, Vt = svds(R_centered, k=k)
            sigma_sqrt = np.sqrt(sigma)
            self.user_factors = U * sigma_sqrt
            self.item_factors = (Vt.T * sigma_sqrt).T  # Shape: (k, n_items)
        else:
            # Too small (or too uniform) for latent factors: biases only
            k = 0
            self.user_factors = np.zeros((n_users, 0))
            self.item_factors = np.zeros((0, n_items))

        self.is_fitted = True
        self.metadata = {
            "n_users": n_users,
            "n_items": n_items,
            "n_ratings": len(data),
            "n_factors": k,
            "extreme_weight": float(extreme_weight),
            "created_at": datetime.now().isoformat(),
        }

        logger.info(f"Fitted SVD with {k} factors on {n_users} users × {n_items} movies")
        return self

    def predict(self, username: str, movie_id: str) -> float:
        """Predicted score for a user-movie pair; NaN when either is unknown to the model."""
        if not self.is_fitted:
            logger.warning("SVD model is not fitted; cannot generate prediction.")
            return float("nan")

        user_idx = self.user_index.get(username)
        item_idx = self.item_index.get(movie_id)
        if user_idx is None or item_idx is None:
            return float("nan")

        prediction = (
            self.global_mean +
            self.user_biases[user_idx] +
            self.item_biases[item_idx] +
            self.user_factors[user_idx] @ self.item_factors[:, item_idx]
        )
        return float(np.clip(prediction, MIN_SCORE, MAX_SCORE))

    def save(self, path: str | Path) -> None:
        """Persist the fitted model to disk for reuse."""
        if not self.is_fitted:
            logger.debug("SVD model not fitted; skipping save.")
            return

        model_path = Path(path)
        model_path.parent.mkdir(parents=True, exist_ok=True)

        np.savez_compressed(
            model_path,
            user_factors=self.user_factors,
            item_factors=self.item_factors,
            user_biases=self.user_biases,
            item_biases=self.item_biases,
            user_index=np.array(list(self.user_index), dtype=str),
            item_index=np.array(list(self.item_index), dtype=str),
            global_mean=self.global_mean,
            n_factors=self.n_factors,
            metadata=json.dumps(self.metadata),
        )
        logger.info(f"Saved SVD model to {model_path}")

    @classmethod
    def load(cls, path: str | Path) -> 'SVDModel | None':
        """Load a saved model, or None if the file is missing or unreadable."""
        model_path = Path(path)
        if not model_path.exists():
            return None

        try:
            with np.load(model_path) as data:
                inst = cls(n_factors=int(data["n_factors"]))
                inst.user_factors = data["user_factors"]
                inst.item_factors = data["item_factors"]
                inst.user_biases = data["user_biases"]
                inst.item_biases = data["item_biases"]
                inst.global_mean = float(data["global_mean"])
                inst.user_index = {u: i for i, u in enumerate(data["user_index"].tolist())}
                inst.item_index = {m: i for i, m in enumerate(data["item_index"].tolist())}
                inst.metadata = json.loads(str(data["metadata"]))
        except (OSError, KeyError, ValueError) as e:
            logger.warning(f"Failed to load saved SVD model: {e}")
            return None

        inst.is_fitted = True
        logger.info(f"Loaded SVD model from {model_path}")
        return inst


class SVDTrainer:
    """
    Trains SVDModel instances from (username, movie_id, score) triples.

    Movies with fewer than `min_movie_ratings` ratings are dropped, and extreme
    scores are weighted by `extreme_weight` (1.0 turns the weighting off).
    """

    def __init__(
        self,
        n_factors: int = DEFAULT_N_FACTORS,
        min_movie_ratings: int = MIN_MOVIE_RATINGS,
        extreme_weight: float = EXTREME_RATING_WEIGHT,
    ):
        self.n_factors = n_factors
        self.min_movie_ratings = min_movie_ratings
        self.extreme_weight = extreme_weight

    def train(self, triples: Iterable[RatingTriple]) -> SVDModel:
        triples = list(triples)
        if self.min_movie_ratings > 1:
            counts = Counter(movie_id for _, movie_id, _ in triples)
            kept = [t for t in triples if counts[t[1]] >= self.min_movie_ratings]
            logger.info(
                f"Keeping {len(kept)}/{len(triples)} ratings on movies with >= {self.min_movie_ratings} ratings"
            )
            triples = kept
        return SVDModel(n_factors=self.n_factors).fit(triples, extreme_weight=self.extreme_weight)

    def load(self, path: str | Path) -> SVDModel | None:
        return SVDModel.load(path)
