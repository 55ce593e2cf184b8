from dataclasses import dataclass

from .config import BASE_URL


def film_url(movie_id: str) -> str:
    return f"{BASE_URL}/film/{movie_id}/"


@dataclass
class Movie:
    movie_id: str
    title: str = ""
    year: int = 0
    runtime: int = 0
    poster_url: str = ""

    def __post_init__(self):
        # Skeleton movies carry their slug as a placeholder title until enriched
        if not self.title:
            self.title = self.movie_id

    @classmethod
    def skeleton(cls, movie_id: str) -> 'Movie':
        return cls(movie_id=movie_id, title=movie_id)

    @property
    def has_placeholder_title(self) -> bool:
        return not self.title or self.title == self.movie_id

    @property
    def needs_metadata(self) -> bool:
        return self.has_placeholder_title or self.year == 0

    @property
    def needs_poster(self) -> bool:
        return not self.poster_url

    @property
    def needs_enrichment(self) -> bool:
        return self.needs_metadata or self.needs_poster

    @property
    def letterboxd_url(self) -> str:
        return film_url(self.movie_id)


@dataclass
class Rating:
    username: str
    movie_id: str
    score: float


@dataclass(frozen=True)
class RatingEntry:
    """One (movie, score) pair parsed from a ratings page. Score 0 means watched but unrated."""
    movie_id: str
    score: float

    @property
    def is_rated(self) -> bool:
        return self.score > 0


@dataclass
class ScoredCandidate:
    movie: Movie
    score: float


@dataclass
class Recommendation:
    movie_id: str
    title: str
    poster_url: str
    predicted_score: float

    @property
    def letterboxd_url(self) -> str:
        return film_url(self.movie_id)

    @classmethod
    def from_candidate(cls, candidate: ScoredCandidate) -> 'Recommendation':
        movie = candidate.movie
        return cls(
            movie_id=movie.movie_id,
            title=movie.title,
            poster_url=movie.poster_url,
            predicted_score=candidate.score,
        )

    def to_dict(self) -> dict:
        return {
            "movie_id": self.movie_id,
            "title": self.title,
            "poster_url": self.poster_url,
            "letterboxd_url": self.letterboxd_url,
            "predicted_score": self.predicted_score,
        }
