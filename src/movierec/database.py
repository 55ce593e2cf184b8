import sqlite3
import logging
import threading
from contextlib import contextmanager
from typing import Iterable, Iterator

from .config import DB_PATH, SQLITE_MAX_PARAMS, MIN_SCORE, MAX_SCORE
from .models import Movie, Rating

logger = logging.getLogger(__name__)


class ConnectionPool:
    """
    Thread-safe SQLite connection pool.

    - One connection per thread (SQLite threading requirement); async callers reach
      the store through asyncio.to_thread, so each worker thread gets its own.
    - Explicit transaction nesting tracking so only the outermost get_db() commits.
    - Connections of threads that have exited are closed lazily.
    """

    def __init__(self, db_path, max_size: int = 50):
        self._db_path = db_path
        self._max_size = max_size

        self._lock = threading.Lock()
        self._connections: dict[int, sqlite3.Connection] = {}
        self._transaction_depth: dict[int, int] = {}

    def _create_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("PRAGMA busy_timeout = 5000")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA foreign_keys = ON")

        return conn

    def _cleanup_dead_threads(self):
        alive_threads = {t.ident for t in threading.enumerate()}
        dead_threads = set(self._connections.keys()) - alive_threads

        for thread_id in dead_threads:
            conn = self._connections.pop(thread_id, None)
            self._transaction_depth.pop(thread_id, None)
            if conn:
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")

        if dead_threads:
            logger.debug(f"Connection pool cleanup: removed {len(dead_threads)} dead connections")

    def get_connection(self) -> sqlite3.Connection:
        """Get a connection for the current thread, creating if necessary."""
        thread_id = threading.get_ident()

        with self._lock:
            conn = self._connections.get(thread_id)
            if conn is None:
                if len(self._connections) >= self._max_size:
                    self._cleanup_dead_threads()
                    if len(self._connections) >= self._max_size:
                        raise RuntimeError(
                            f"Connection pool exhausted ({self._max_size} connections). "
                            f"Possible connection leak or too many threads."
                        )

                conn = self._create_connection()
                self._connections[thread_id] = conn
                self._transaction_depth[thread_id] = 0
                logger.debug(f"Created connection for thread {thread_id} (pool size: {len(self._connections)})")

            return conn

    def get_transaction_depth(self) -> int:
        return self._transaction_depth.get(threading.get_ident(), 0)

    def increment_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            self._transaction_depth[thread_id] = self._transaction_depth.get(thread_id, 0) + 1

    def decrement_transaction_depth(self):
        thread_id = threading.get_ident()
        with self._lock:
            depth = self._transaction_depth.get(thread_id, 1)
            self._transaction_depth[thread_id] = max(0, depth - 1)

    def close_all(self):
        """Close all connections (call on application shutdown)."""
        with self._lock:
            for thread_id, conn in list(self._connections.items()):
                try:
                    conn.close()
                except sqlite3.Error as e:
                    logger.warning(f"Error closing connection for thread {thread_id}: {e}")

            self._connections.clear()
            self._transaction_depth.clear()
            logger.debug("Connection pool closed")


# Global pool instance
_pool: ConnectionPool | None = None
_pool_lock = threading.Lock()


def _get_pool() -> ConnectionPool:
    """Get or create the global connection pool."""
    global _pool
    if _pool is None:
        with _pool_lock:
            if _pool is None:
                DB_PATH.parent.mkdir(exist_ok=True, parents=True)
                _pool = ConnectionPool(DB_PATH)
    return _pool


@contextmanager
def get_db(read_only: bool = False):
    """
    Get database connection with proper transaction handling.

    Args:
        read_only: If True, skip commit on exit

    Only the outermost context commits or rolls back; nested contexts join it.
    """
    pool = _get_pool()
    conn = pool.get_connection()

    is_outermost = pool.get_transaction_depth() == 0
    pool.increment_transaction_depth()

    try:
        yield conn

        if is_outermost and not read_only:
            conn.commit()

    except Exception:
        if is_outermost:
            conn.rollback()
        raise

    finally:
        pool.decrement_transaction_depth()


def close_pool():
    """Close the connection pool. Call on application shutdown."""
    global _pool
    if _pool is not None:
        _pool.close_all()
        _pool = None


def init_db() -> None:
    with get_db() as conn:
        conn.executescript(f"""
            CREATE TABLE IF NOT EXISTS movies (
                movie_id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                year INTEGER NOT NULL DEFAULT 0,
                runtime INTEGER NOT NULL DEFAULT 0,
                poster_url TEXT NOT NULL DEFAULT ''
            );

            CREATE TABLE IF NOT EXISTS ratings (
                username TEXT NOT NULL,
                movie_id TEXT NOT NULL REFERENCES movies(movie_id),
                score REAL NOT NULL CHECK (score BETWEEN {MIN_SCORE} AND {MAX_SCORE}),
                PRIMARY KEY (username, movie_id)
            );

            CREATE INDEX IF NOT EXISTS idx_ratings_movie ON ratings(movie_id);
        """)


def _chunked(values: list[str], size: int = SQLITE_MAX_PARAMS) -> Iterator[list[str]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


def _row_to_movie(row) -> Movie:
    return Movie(
        movie_id=row['movie_id'],
        title=row['title'],
        year=row['year'] or 0,
        runtime=row['runtime'] or 0,
        poster_url=row['poster_url'] or "",
    )


def load_movies(movie_ids: Iterable[str]) -> dict[str, Movie]:
    """Batch-load existing movies keyed by id."""
    ids = list(dict.fromkeys(movie_ids))
    movies: dict[str, Movie] = {}
    if not ids:
        return movies

    with get_db(read_only=True) as conn:
        for chunk in _chunked(ids):
            placeholders = ",".join("?" * len(chunk))
            rows = conn.execute(
                f"SELECT movie_id, title, year, runtime, poster_url FROM movies WHERE movie_id IN ({placeholders})",
                chunk,
            ).fetchall()
            for row in rows:
                movies[row['movie_id']] = _row_to_movie(row)
    return movies


def load_user_ratings(username: str, movie_ids: Iterable[str] | None = None) -> dict[str, Rating]:
    """Batch-load a user's ratings keyed by movie id, optionally restricted to movie_ids."""
    ratings: dict[str, Rating] = {}

    with get_db(read_only=True) as conn:
        if movie_ids is None:
            rows = conn.execute(
                "SELECT username, movie_id, score FROM ratings WHERE username = ?",
                (username,),
            ).fetchall()
        else:
            ids = list(dict.fromkeys(movie_ids))
            rows = []
            # One slot is taken by the username parameter
            for chunk in _chunked(ids, SQLITE_MAX_PARAMS - 1):
                placeholders = ",".join("?" * len(chunk))
                rows.extend(conn.execute(
                    f"SELECT username, movie_id, score FROM ratings "
                    f"WHERE username = ? AND movie_id IN ({placeholders})",
                    [username, *chunk],
                ).fetchall())

    for row in rows:
        ratings[row['movie_id']] = Rating(row['username'], row['movie_id'], row['score'])
    return ratings


def save_batch(
    movies: Iterable[Movie],
    rating_inserts: Iterable[Rating],
    rating_updates: Iterable[Rating],
) -> None:
    """
    Write one scrape's worth of changes in a single transaction.

    Movies are upserted first so every rating references an existing row. A movie
    row that another scrape created concurrently is merged rather than rejected,
    and placeholder values never overwrite enriched ones.
    """
    movie_rows = [(m.movie_id, m.title, m.year, m.runtime, m.poster_url) for m in movies]
    insert_rows = [(r.username, r.movie_id, r.score) for r in rating_inserts]
    update_rows = [(r.score, r.username, r.movie_id) for r in rating_updates]

    with get_db() as conn:
        if movie_rows:
            conn.executemany("""
                INSERT INTO movies (movie_id, title, year, runtime, poster_url)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(movie_id) DO UPDATE SET
                    title = CASE WHEN excluded.title != excluded.movie_id THEN excluded.title ELSE movies.title END,
                    year = CASE WHEN excluded.year != 0 THEN excluded.year ELSE movies.year END,
                    runtime = CASE WHEN excluded.runtime != 0 THEN excluded.runtime ELSE movies.runtime END,
                    poster_url = CASE WHEN excluded.poster_url != '' THEN excluded.poster_url ELSE movies.poster_url END
            """, movie_rows)
        if insert_rows:
            conn.executemany("""
                INSERT INTO ratings (username, movie_id, score) VALUES (?, ?, ?)
                ON CONFLICT(username, movie_id) DO UPDATE SET score = excluded.score
            """, insert_rows)
        if update_rows:
            conn.executemany(
                "UPDATE ratings SET score = ? WHERE username = ? AND movie_id = ?",
                update_rows,
            )

    logger.debug(
        f"Saved batch: {len(movie_rows)} movies, {len(insert_rows)} new ratings, {len(update_rows)} updated"
    )


def count_user_ratings(username: str) -> int:
    with get_db(read_only=True) as conn:
        return conn.execute("SELECT COUNT(*) FROM ratings WHERE username = ?", (username,)).fetchone()[0]


def has_ratings(username: str) -> bool:
    with get_db(read_only=True) as conn:
        row = conn.execute("SELECT 1 FROM ratings WHERE username = ? LIMIT 1", (username,)).fetchone()
        return row is not None


def load_all_ratings() -> list[tuple[str, str, float]]:
    """All (username, movie_id, score) triples in the store."""
    with get_db(read_only=True) as conn:
        rows = conn.execute("SELECT username, movie_id, score FROM ratings ORDER BY username, movie_id").fetchall()
        return [(r['username'], r['movie_id'], float(r['score'])) for r in rows]


def movie_popularity() -> dict[str, int]:
    """Rating count per movie across all users."""
    with get_db(read_only=True) as conn:
        rows = conn.execute("SELECT movie_id, COUNT(*) AS n FROM ratings GROUP BY movie_id").fetchall()
        return {r['movie_id']: r['n'] for r in rows}


def rated_movie_ids(username: str) -> set[str]:
    with get_db(read_only=True) as conn:
        return {
            r['movie_id'] for r in conn.execute(
                "SELECT movie_id FROM ratings WHERE username = ?", (username,)
            )
        }


def load_all_movies() -> list[Movie]:
    with get_db(read_only=True) as conn:
        rows = conn.execute(
            "SELECT movie_id, title, year, runtime, poster_url FROM movies ORDER BY movie_id"
        ).fetchall()
        return [_row_to_movie(r) for r in rows]
