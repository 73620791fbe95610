# core/database.py

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from photo_cleaner.core.exceptions import StoreUnavailableError
from photo_cleaner.core.models import FingerprintSource, Photo

logger = logging.getLogger(__name__)


MIGRATIONS = [
    (1, "initial_schema", """
        CREATE TABLE IF NOT EXISTS photos (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            local_identifier TEXT UNIQUE NOT NULL,
            file_path TEXT,
            file_name TEXT,
            file_size INTEGER DEFAULT 0,
            width INTEGER DEFAULT 0,
            height INTEGER DEFAULT 0,
            creation_date TIMESTAMP,
            modification_date TIMESTAMP,
            hash_value TEXT,
            quality_score REAL DEFAULT 0.0,
            is_duplicate BOOLEAN DEFAULT 0,
            is_deleted BOOLEAN DEFAULT 0,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );

        CREATE TABLE IF NOT EXISTS duplicate_groups (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            group_hash TEXT UNIQUE NOT NULL,
            photo_count INTEGER DEFAULT 0,
            total_size INTEGER DEFAULT 0,
            recommended_keep_id INTEGER,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
            FOREIGN KEY (recommended_keep_id) REFERENCES photos(id)
        );

        CREATE TABLE IF NOT EXISTS duplicate_group_photos (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            group_id INTEGER NOT NULL,
            photo_id INTEGER NOT NULL,
            is_recommended_keep BOOLEAN DEFAULT 0,
            FOREIGN KEY (group_id) REFERENCES duplicate_groups(id) ON DELETE CASCADE,
            FOREIGN KEY (photo_id) REFERENCES photos(id) ON DELETE CASCADE,
            UNIQUE(group_id, photo_id)
        );

        CREATE TABLE IF NOT EXISTS analysis_sessions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            session_uuid TEXT UNIQUE NOT NULL,
            total_photos INTEGER NOT NULL,
            analyzed_photos INTEGER DEFAULT 0,
            duplicates_found INTEGER DEFAULT 0,
            total_size_analyzed INTEGER DEFAULT 0,
            potential_space_saved INTEGER DEFAULT 0,
            start_time TIMESTAMP NOT NULL,
            end_time TIMESTAMP,
            status TEXT DEFAULT 'running',
            error_message TEXT,
            created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
        );

        CREATE INDEX IF NOT EXISTS idx_photos_hash ON photos(hash_value);
        CREATE INDEX IF NOT EXISTS idx_photos_duplicate ON photos(is_duplicate, is_deleted);
        CREATE INDEX IF NOT EXISTS idx_dgp_group ON duplicate_group_photos(group_id);
        CREATE INDEX IF NOT EXISTS idx_dgp_photo ON duplicate_group_photos(photo_id);
    """),
    (2, "add_photo_quality_indexes", """
        CREATE INDEX IF NOT EXISTS idx_photos_quality ON photos(quality_score DESC);
        CREATE INDEX IF NOT EXISTS idx_photos_creation_date ON photos(creation_date DESC);
    """),
    (3, "add_fingerprint_source", """
        ALTER TABLE photos ADD COLUMN hash_source TEXT;
    """),
]


class PhotoDatabase:
    """
    SQLite store for photo records, duplicate groups and analysis sessions
    """

    def __init__(self, db_path: str = "data/photo_cleaner.db"):
        self.db_path = db_path
        self.conn = None
        self._transaction_depth = 0
        self._initialize_database()

    def _initialize_database(self):
        """Open the connection and bring the schema up to date"""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        try:
            # Autocommit mode; transaction() issues BEGIN/COMMIT explicitly
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False,
                                        isolation_level=None)
        except sqlite3.Error as e:
            raise StoreUnavailableError(f"cannot open {self.db_path}: {e}") from e

        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._apply_migrations()

    @property
    def connection(self) -> sqlite3.Connection:
        if self.conn is None:
            raise StoreUnavailableError("database is not initialized or was closed")
        return self.conn

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Run a block atomically. Nested calls join the outermost transaction.
        """
        conn = self.connection
        if self._transaction_depth > 0:
            self._transaction_depth += 1
            try:
                yield conn
            finally:
                self._transaction_depth -= 1
            return

        conn.execute("BEGIN")
        self._transaction_depth = 1
        try:
            yield conn
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        else:
            conn.execute("COMMIT")
        finally:
            self._transaction_depth = 0

    def execute(self, sql: str, params=()) -> sqlite3.Cursor:
        try:
            return self.connection.execute(sql, params)
        except sqlite3.ProgrammingError as e:
            # Raised when the connection object has been closed underneath us
            raise StoreUnavailableError(str(e)) from e

    # Migrations

    def _apply_migrations(self):
        conn = self.connection
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        """)
        current = self.get_schema_version()

        for version, name, script in MIGRATIONS:
            if version <= current:
                continue
            logger.info("Applying migration %d: %s", version, name)
            with self.transaction():
                for statement in script.split(";"):
                    if statement.strip():
                        conn.execute(statement)
                conn.execute(
                    "INSERT INTO schema_migrations (version, name) VALUES (?, ?)",
                    (version, name)
                )

    def get_schema_version(self) -> int:
        row = self.execute("SELECT MAX(version) AS version FROM schema_migrations").fetchone()
        return row["version"] or 0

    def get_migration_status(self) -> Dict:
        current = self.get_schema_version()
        latest = max(version for version, _, _ in MIGRATIONS)
        applied = [dict(row) for row in self.execute(
            "SELECT version, name, applied_at FROM schema_migrations ORDER BY version"
        )]
        return {
            'current_version': current,
            'latest_version': latest,
            'applied': applied,
            'needs_update': current < latest,
        }

    # Photos

    def save_photo(self, photo: Photo) -> int:
        """
        Insert or update a photo keyed by its stable identifier.

        A changed byte size or modification date invalidates the stored
        fingerprint. Re-observing a soft-deleted photo revives it.
        """
        self.execute("""
            INSERT INTO photos
            (local_identifier, file_path, file_name, file_size, width, height,
             creation_date, modification_date, quality_score)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(local_identifier) DO UPDATE SET
                hash_value = CASE
                    WHEN photos.file_size IS NOT excluded.file_size
                      OR photos.modification_date IS NOT excluded.modification_date
                    THEN NULL ELSE photos.hash_value END,
                hash_source = CASE
                    WHEN photos.file_size IS NOT excluded.file_size
                      OR photos.modification_date IS NOT excluded.modification_date
                    THEN NULL ELSE photos.hash_source END,
                file_path = excluded.file_path,
                file_name = excluded.file_name,
                file_size = excluded.file_size,
                width = excluded.width,
                height = excluded.height,
                creation_date = excluded.creation_date,
                modification_date = excluded.modification_date,
                is_deleted = 0,
                updated_at = CURRENT_TIMESTAMP
        """, (
            photo.local_identifier,
            photo.file_path,
            photo.file_name,
            photo.file_size,
            photo.width,
            photo.height,
            to_db_time(photo.creation_date),
            to_db_time(photo.modification_date),
            photo.quality_score,
        ))
        row = self.execute(
            "SELECT id FROM photos WHERE local_identifier = ?", (photo.local_identifier,)
        ).fetchone()
        return row["id"]

    def update_fingerprint(self, photo_id: int, fingerprint: str,
                           source: FingerprintSource):
        self.execute("""
            UPDATE photos SET hash_value = ?, hash_source = ?, updated_at = CURRENT_TIMESTAMP
            WHERE id = ?
        """, (fingerprint, source.value, photo_id))

    def get_photo(self, photo_id: int) -> Optional[Photo]:
        row = self.execute("SELECT * FROM photos WHERE id = ?", (photo_id,)).fetchone()
        return row_to_photo(row) if row else None

    def get_photo_by_identifier(self, local_identifier: str) -> Optional[Photo]:
        row = self.execute(
            "SELECT * FROM photos WHERE local_identifier = ?", (local_identifier,)
        ).fetchone()
        return row_to_photo(row) if row else None

    def get_all_photos(self) -> List[Photo]:
        """All live photos in first-observation order"""
        rows = self.execute(
            "SELECT * FROM photos WHERE is_deleted = 0 ORDER BY id"
        ).fetchall()
        return [row_to_photo(row) for row in rows]

    def mark_deleted(self, photo_ids: List[int]):
        with self.transaction() as conn:
            conn.executemany("""
                UPDATE photos SET is_deleted = 1, updated_at = CURRENT_TIMESTAMP
                WHERE id = ?
            """, [(photo_id,) for photo_id in photo_ids])

    def close(self):
        """Close database connection"""
        if self.conn:
            self.conn.close()
            self.conn = None


def to_db_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def from_db_time(value) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def row_to_photo(row: sqlite3.Row) -> Photo:
    source = row["hash_source"]
    return Photo(
        id=row["id"],
        local_identifier=row["local_identifier"],
        file_path=row["file_path"],
        file_name=row["file_name"],
        file_size=row["file_size"] or 0,
        width=row["width"] or 0,
        height=row["height"] or 0,
        creation_date=from_db_time(row["creation_date"]),
        modification_date=from_db_time(row["modification_date"]),
        fingerprint=row["hash_value"],
        fingerprint_source=FingerprintSource(source) if source else None,
        quality_score=row["quality_score"] or 0.0,
        is_duplicate=bool(row["is_duplicate"]),
        is_deleted=bool(row["is_deleted"]),
    )
