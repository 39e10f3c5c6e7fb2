"""SQLite implementation of the destination store for local runs."""

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Iterable, Optional

from ..exceptions import StoreErrorKind, store_error
from ..logging_config import get_logger
from ..models import Topic, TopicFilters
from .store import TopicStore

logger = get_logger('database')

METADATA_COLUMNS = (
    'topic_id', 'embedding', 'plain_english_summary', 'difficulty_band',
    'exam_importance', 'reasoning', 'subject_name', 'exam_board',
    'qualification_level', 'topic_level', 'full_path', 'is_active',
    'spec_version', 'generated_at', 'last_updated',
)


def classify_sqlite_error(error: sqlite3.Error) -> StoreErrorKind:
    """Map sqlite3 exceptions onto the closed StoreErrorKind set.

    Uses the SQLite result code name (``SQLITE_BUSY``, ``SQLITE_IOERR_WRITE``...)
    attached to the exception, so extended codes fall under their primary code.
    """
    name = getattr(error, 'sqlite_errorname', None) or ''
    if isinstance(error, sqlite3.IntegrityError) or name.startswith('SQLITE_CONSTRAINT'):
        return StoreErrorKind.CONSTRAINT
    if name.startswith(('SQLITE_BUSY', 'SQLITE_LOCKED')):
        return StoreErrorKind.UNAVAILABLE
    if name.startswith(('SQLITE_IOERR', 'SQLITE_CANTOPEN')):
        return StoreErrorKind.CONNECTION
    if isinstance(error, (sqlite3.OperationalError, sqlite3.InterfaceError, sqlite3.ProgrammingError)):
        return StoreErrorKind.INVALID
    return StoreErrorKind.UNKNOWN


class SQLiteTopicStore(TopicStore):
    """SQLite store holding both the topic catalog and the metadata table.

    Supports context manager protocol for automatic cleanup:
        with SQLiteTopicStore('data/topic_metadata.db') as store:
            store.upsert_metadata(rows)
    """

    def __init__(self, db_path: str = "data/topic_metadata.db", timeout: float = 30.0):
        self.db_path = db_path
        self.timeout = timeout
        self.conn: Optional[sqlite3.Connection] = None
        self._init_db()

    def _init_db(self):
        """Initialize database and create tables."""
        try:
            if self.db_path != ':memory:':
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

            self.conn = sqlite3.connect(self.db_path, timeout=self.timeout)
            self.conn.row_factory = sqlite3.Row

            logger.debug(f"Connected to database: {self.db_path}")

            self.conn.executescript('''
                CREATE TABLE IF NOT EXISTS topics (
                    topic_id TEXT PRIMARY KEY,
                    topic_name TEXT NOT NULL,
                    topic_code TEXT,
                    topic_level INTEGER NOT NULL DEFAULT 1,
                    subject_name TEXT,
                    exam_board TEXT,
                    qualification_level TEXT,
                    full_path TEXT
                );

                CREATE TABLE IF NOT EXISTS topic_ai_metadata (
                    topic_id TEXT PRIMARY KEY,
                    embedding TEXT NOT NULL,
                    plain_english_summary TEXT NOT NULL,
                    difficulty_band TEXT NOT NULL
                        CHECK (difficulty_band IN ('core', 'standard', 'challenge')),
                    exam_importance REAL NOT NULL
                        CHECK (exam_importance BETWEEN 0.0 AND 1.0),
                    reasoning TEXT,
                    subject_name TEXT,
                    exam_board TEXT,
                    qualification_level TEXT,
                    topic_level INTEGER,
                    full_path TEXT,
                    is_active BOOLEAN DEFAULT 1,
                    spec_version TEXT,
                    generated_at TIMESTAMP,
                    last_updated TIMESTAMP
                );

                CREATE INDEX IF NOT EXISTS idx_topics_board ON topics(exam_board);
                CREATE INDEX IF NOT EXISTS idx_topics_subject ON topics(subject_name);
            ''')
            self.conn.commit()
            logger.debug("Database schema initialized")

        except sqlite3.Error as e:
            logger.error(f"Failed to initialize database: {e}")
            raise store_error('connect', StoreErrorKind.CONNECTION, reason=str(e)) from e

    @contextmanager
    def transaction(self, operation: str) -> Generator[None, None, None]:
        """Commit on success, roll back and raise a classified StoreError on failure."""
        try:
            yield
            self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            logger.debug(f"Transaction '{operation}' rolled back: {e}")
            raise store_error(operation, classify_sqlite_error(e), reason=str(e)) from e

    def save_topics(self, topics: Iterable[Topic]) -> int:
        """Load catalog rows into the local topics table."""
        rows = [
            (
                t.topic_id, t.topic_name, t.topic_code, t.topic_level,
                t.subject_name, t.exam_board, t.qualification_level,
                json.dumps(list(t.full_path)),
            )
            for t in topics
        ]
        with self.transaction('save_topics'):
            self.conn.executemany('''
                INSERT INTO topics (
                    topic_id, topic_name, topic_code, topic_level,
                    subject_name, exam_board, qualification_level, full_path
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(topic_id) DO UPDATE SET
                    topic_name=excluded.topic_name,
                    topic_code=excluded.topic_code,
                    topic_level=excluded.topic_level,
                    subject_name=excluded.subject_name,
                    exam_board=excluded.exam_board,
                    qualification_level=excluded.qualification_level,
                    full_path=excluded.full_path
            ''', rows)
        return len(rows)

    def fetch_topics_page(self, offset: int, limit: int,
                          filters: Optional[TopicFilters] = None) -> list[dict]:
        columns = (filters or TopicFilters()).as_columns()
        where = " AND ".join(f"{column} = ?" for column in columns)
        sql = "SELECT * FROM topics"
        if where:
            sql += f" WHERE {where}"
        sql += " ORDER BY topic_id LIMIT ? OFFSET ?"

        try:
            cursor = self.conn.execute(sql, (*columns.values(), limit, offset))
        except sqlite3.Error as e:
            raise store_error('fetch_topics', classify_sqlite_error(e), reason=str(e)) from e
        return [dict(row) for row in cursor.fetchall()]

    def fetch_metadata_ids_page(self, offset: int, limit: int) -> list[str]:
        try:
            cursor = self.conn.execute(
                'SELECT topic_id FROM topic_ai_metadata ORDER BY topic_id LIMIT ? OFFSET ?',
                (limit, offset)
            )
        except sqlite3.Error as e:
            raise store_error('fetch_metadata_ids', classify_sqlite_error(e), reason=str(e)) from e
        return [row['topic_id'] for row in cursor.fetchall()]

    def upsert_metadata(self, rows: list[dict]) -> None:
        if not rows:
            return
        placeholders = ", ".join("?" for _ in METADATA_COLUMNS)
        updates = ",\n".join(
            f"{column}=excluded.{column}" for column in METADATA_COLUMNS if column != 'topic_id'
        )
        values = [
            tuple(
                json.dumps(row.get(column)) if column == 'full_path' else row.get(column)
                for column in METADATA_COLUMNS
            )
            for row in rows
        ]
        with self.transaction('upsert_metadata'):
            self.conn.executemany(f'''
                INSERT INTO topic_ai_metadata ({", ".join(METADATA_COLUMNS)})
                VALUES ({placeholders})
                ON CONFLICT(topic_id) DO UPDATE SET
                {updates}
            ''', values)

    def get_metadata(self, topic_id: str) -> Optional[dict]:
        try:
            row = self.conn.execute(
                'SELECT * FROM topic_ai_metadata WHERE topic_id = ?', (topic_id,)
            ).fetchone()
        except sqlite3.Error as e:
            raise store_error('get_metadata', classify_sqlite_error(e), reason=str(e)) from e
        if row is None:
            return None
        data = dict(row)
        data['embedding'] = json.loads(data['embedding'])
        data['full_path'] = json.loads(data['full_path']) if data['full_path'] else []
        return data

    def get_stats(self) -> dict:
        """Get row counts for the catalog and metadata tables."""
        topics = self.conn.execute('SELECT COUNT(*) FROM topics').fetchone()[0]
        metadata = self.conn.execute('SELECT COUNT(*) FROM topic_ai_metadata').fetchone()[0]
        return {'topics': topics, 'metadata': metadata}

    def close(self):
        """Close database connection."""
        if self.conn:
            self.conn.close()
            self.conn = None
            logger.debug(f"Closed database connection: {self.db_path}")
