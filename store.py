"""
Article store collaborators.

The pipeline only needs two operations from persistence:
existing_fingerprints(region) and insert_many(articles). Both stores below
skip fingerprints they already hold, so a repeated insert is harmless.
"""
import sqlite3
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterable, List, Set

import settings
from errors import StoreUnavailable
from normalization import CanonicalArticle
from resilience import CircuitBreaker, CircuitOpenError

logger = settings.get_logger('store')


class ArticleStore:
    name: str = 'base'

    def existing_fingerprints(self, region: str) -> Set[str]:
        raise NotImplementedError

    def insert_many(self, articles: Iterable[CanonicalArticle]) -> int:
        raise NotImplementedError

    def count(self, region: str = None) -> int:
        raise NotImplementedError


class MemoryArticleStore(ArticleStore):
    """Thread-safe in-process store, used by tests and dry runs."""
    name = 'memory'

    def __init__(self):
        self._lock = threading.Lock()
        self._articles: Dict[str, Dict[str, CanonicalArticle]] = {}

    def existing_fingerprints(self, region: str) -> Set[str]:
        with self._lock:
            return set(self._articles.get(region, {}))

    def insert_many(self, articles: Iterable[CanonicalArticle]) -> int:
        inserted = 0
        with self._lock:
            for article in articles:
                bucket = self._articles.setdefault(article.region, {})
                if article.fingerprint in bucket:
                    continue
                bucket[article.fingerprint] = article
                inserted += 1
        return inserted

    def count(self, region: str = None) -> int:
        with self._lock:
            if region is not None:
                return len(self._articles.get(region, {}))
            return sum(len(bucket) for bucket in self._articles.values())

    def articles(self, region: str = None) -> List[CanonicalArticle]:
        with self._lock:
            if region is not None:
                return list(self._articles.get(region, {}).values())
            return [a for bucket in self._articles.values() for a in bucket.values()]


class SqliteArticleStore(ArticleStore):
    """SQLite-backed store. Fingerprints are indexed per region."""
    name = 'sqlite'

    def __init__(self, db_path: str = settings.DB_PATH):
        self.db_path = db_path
        if db_path != ':memory:':
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self.init_database()

    @contextmanager
    def get_connection(self):
        conn = sqlite3.connect(self.db_path, timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute('PRAGMA journal_mode=WAL;')
            conn.execute('PRAGMA synchronous=NORMAL;')
            yield conn
        finally:
            conn.close()

    def init_database(self):
        with self.get_connection() as conn:
            conn.execute('''
                CREATE TABLE IF NOT EXISTS articles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL,
                    summary TEXT,
                    image TEXT,
                    link TEXT NOT NULL,
                    region TEXT NOT NULL,
                    source TEXT NOT NULL,
                    fingerprint TEXT NOT NULL,
                    captured_at TEXT NOT NULL,
                    created_at TEXT NOT NULL
                )
            ''')
            conn.execute('''
                CREATE UNIQUE INDEX IF NOT EXISTS idx_articles_region_fingerprint
                ON articles (region, fingerprint)
            ''')
            conn.commit()

    def existing_fingerprints(self, region: str) -> Set[str]:
        with self.get_connection() as conn:
            rows = conn.execute('SELECT fingerprint FROM articles WHERE region = ?', (region,))
            return {row['fingerprint'] for row in rows}

    def insert_many(self, articles: Iterable[CanonicalArticle]) -> int:
        stored_count = 0
        with self.get_connection() as conn:
            for article in articles:
                cursor = conn.execute('''
                    INSERT OR IGNORE INTO articles
                    (title, summary, image, link, region, source, fingerprint, captured_at, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ''', (
                    article.title,
                    article.summary,
                    article.image,
                    article.link,
                    article.region,
                    article.source,
                    article.fingerprint,
                    article.captured_at.isoformat(),
                    article.created_at.isoformat(),
                ))
                if cursor.rowcount > 0:
                    stored_count += 1
            conn.commit()
        return stored_count

    def count(self, region: str = None) -> int:
        with self.get_connection() as conn:
            if region is None:
                row = conn.execute('SELECT COUNT(*) AS n FROM articles').fetchone()
            else:
                row = conn.execute('SELECT COUNT(*) AS n FROM articles WHERE region = ?', (region,)).fetchone()
            return row['n']


class GuardedStore(ArticleStore):
    """
    Retries with exponential backoff behind a circuit breaker.

    Any failure that survives the retries, or an open breaker, surfaces as
    StoreUnavailable.
    """

    def __init__(self, store: ArticleStore, breaker: CircuitBreaker = None,
                 max_retries: int = settings.STORE_MAX_RETRIES,
                 backoff: float = settings.STORE_RETRY_BACKOFF,
                 sleep=time.sleep):
        self.store = store
        self.name = store.name
        self.breaker = breaker or CircuitBreaker(f'store:{store.name}')
        self.max_retries = max_retries
        self.backoff = backoff
        self._sleep = sleep

    def _call(self, operation: str, fn, *args):
        last_error = None
        for attempt in range(self.max_retries + 1):
            try:
                return self.breaker.call(fn, *args)
            except CircuitOpenError as e:
                raise StoreUnavailable(str(e))
            except Exception as e:
                last_error = e
                logger.warning("Store %s failed (attempt %d/%d): %s",
                               operation, attempt + 1, self.max_retries + 1, e,
                               extra={'error_type': 'store'})
            if attempt < self.max_retries:
                self._sleep(self.backoff * (2 ** attempt))

        raise StoreUnavailable(f"{operation} failed after {self.max_retries + 1} attempts: {last_error}")

    def existing_fingerprints(self, region: str) -> Set[str]:
        return self._call('existing_fingerprints', self.store.existing_fingerprints, region)

    def insert_many(self, articles: Iterable[CanonicalArticle]) -> int:
        articles = list(articles)
        return self._call('insert_many', self.store.insert_many, articles)

    def count(self, region: str = None) -> int:
        return self._call('count', self.store.count, region)
