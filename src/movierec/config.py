"""
Configuration constants for the movie recommender.

This module centralizes site constants and tunable parameters.
Tunables can be overridden via environment variables.
"""
import os
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _get_float_env(key: str, default: float, min_val: float = 0) -> float:
    """
    Safely parse float from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated float value
    """
    try:
        val = float(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


def _get_int_env(key: str, default: int, min_val: int = 1) -> int:
    """
    Safely parse integer from environment variable with validation.

    Args:
        key: Environment variable name
        default: Default value if not set or invalid
        min_val: Minimum allowed value

    Returns:
        Validated integer value
    """
    try:
        val = int(os.environ.get(key, default))
        if val < min_val:
            logger.warning(f"{key}={val} is below minimum {min_val}, using {min_val}")
            return min_val
        return val
    except ValueError:
        logger.warning(f"Invalid {key}='{os.environ.get(key)}', using default {default}")
        return default


# Storage
DB_PATH = Path(os.environ.get("MOVIEREC_DB", "data/movierec.db"))
MODEL_PATH = Path(os.environ.get("MOVIEREC_MODEL_PATH", "data/model.npz"))

# Site layout
BASE_URL = "https://letterboxd.com"
POSTER_ORIGIN = "https://a.ltrbxd.com/resized/"
EMPTY_POSTER_MARKER = "empty-poster"
POSTER_SIZE_PATH = "std/230x345"
USER_AGENT = "Mozilla/5.0 (compatible; movierec/1.0)"

# Fetching
MAX_CONCURRENT_FETCHES = _get_int_env("MOVIEREC_MAX_CONCURRENT", 4, min_val=1)
HTTP_TIMEOUT = _get_float_env("MOVIEREC_HTTP_TIMEOUT", 30.0, min_val=1.0)

# SQLite caps bound parameters per statement; preload queries are chunked below it
SQLITE_MAX_PARAMS = 900

# Valid rating domain (half-stars doubled: 1 = half a star, 10 = five stars)
MIN_SCORE = 1
MAX_SCORE = 10

# Ranking
POPULARITY_BOOST_WEIGHT = _get_float_env("MOVIEREC_POPULARITY_WEIGHT", 0.05, min_val=0.0)
DEFAULT_RECOMMENDATIONS = _get_int_env("MOVIEREC_DEFAULT_RECOMMENDATIONS", 30, min_val=1)

# Matrix factorization
DEFAULT_N_FACTORS = _get_int_env("MOVIEREC_N_FACTORS", 50, min_val=1)
MIN_MOVIE_RATINGS = _get_int_env("MOVIEREC_MIN_MOVIE_RATINGS", 1, min_val=1)
# Ratings at or below EXTREME_LOW or at or above EXTREME_HIGH count this many times
# in the bias fit; 1.0 disables the weighting
EXTREME_RATING_WEIGHT = _get_float_env("MOVIEREC_EXTREME_WEIGHT", 2.0, min_val=1.0)
EXTREME_LOW = 2
EXTREME_HIGH = 9
HOLDOUT_TEST_FRACTION = 0.2

# Discovery
DEFAULT_SEED_PAGES = _get_int_env("MOVIEREC_SEED_PAGES", 5, min_val=1)
