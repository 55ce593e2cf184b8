"""Error types raised by the ingestion and recommendation layers."""


class MovieRecError(Exception):
    """Base class for all movierec errors."""


class FetchError(MovieRecError):
    """A page could not be fetched (transport failure or non-success status)."""

    def __init__(self, url: str, message: str, status_code: int | None = None):
        super().__init__(f"{message} ({url})")
        self.url = url
        self.status_code = status_code


class ParseError(MovieRecError):
    """Markup or JSON could not be interpreted."""


class ModelNotTrainedError(MovieRecError):
    """No scoring model is available, usually because the store has no ratings."""


class TrainingError(MovieRecError):
    """The trainer failed to produce a model."""


class ValidationError(MovieRecError, ValueError):
    """Caller supplied malformed input (bad username, page count, limit...)."""
