import logging
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, Generator, List, Optional, Set

from .errors import ConflictError, MetadataError, RecordNotFound

DEFAULT_MIME_TYPE = "application/octet-stream"

logger = logging.getLogger("mydrive.storage")


def isoformat_utc(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace(
        "+00:00", "Z"
    )


@dataclass(frozen=True)
class FileRecord:
    id: str
    original_name: str
    stored_name: str
    mime_type: str
    size_bytes: int
    uploaded_at: float

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "FileRecord":
        return cls(
            id=row["id"],
            original_name=row["original_name"],
            stored_name=row["stored_name"],
            mime_type=row["mime_type"] or DEFAULT_MIME_TYPE,
            size_bytes=int(row["size"] if row["size"] is not None else 0),
            uploaded_at=float(row["uploaded_at"]),
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "original_name": self.original_name,
            "mime_type": self.mime_type,
            "size": self.size_bytes,
            "uploaded_at": self.uploaded_at,
            "uploaded_at_iso": isoformat_utc(self.uploaded_at),
            "download_url": f"/api/download/{self.id}",
        }


@dataclass(frozen=True)
class StorageStats:
    count: int
    total_size_bytes: int

    def to_dict(self) -> Dict[str, int]:
        return {"count": self.count, "total_size": self.total_size_bytes}


class MetadataIndex:
    """SQLite-backed table of :class:`FileRecord` rows keyed by id."""

    def __init__(
        self,
        db_path: Path,
        timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db_path = Path(db_path)
        self.timeout = timeout
        self.clock = clock

    @contextmanager
    def connect(self) -> Generator[sqlite3.Connection, None, None]:
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            raise MetadataError(f"Failed to create index directory: {error}") from error
        conn = sqlite3.connect(self.db_path, timeout=self.timeout)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            if conn.in_transaction:
                conn.commit()
        except Exception:
            if conn.in_transaction:
                conn.rollback()
            raise
        finally:
            conn.close()

    def init_schema(self) -> None:
        try:
            with self.connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS files (
                        id TEXT PRIMARY KEY,
                        original_name TEXT NOT NULL,
                        stored_name TEXT NOT NULL,
                        mime_type TEXT,
                        size INTEGER NOT NULL,
                        uploaded_at REAL NOT NULL
                    )
                    """
                )
                conn.execute(
                    "CREATE UNIQUE INDEX IF NOT EXISTS idx_files_stored_name ON files(stored_name)"
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_files_uploaded_at ON files(uploaded_at)"
                )
                conn.commit()
        except sqlite3.Error as error:
            raise MetadataError(f"Failed to initialise index: {error}") from error

    def insert(
        self,
        file_id: str,
        original_name: str,
        stored_name: str,
        mime_type: Optional[str],
        size: int,
    ) -> FileRecord:
        try:
            with self.connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                # Keep uploaded_at non-decreasing in insertion order even if the
                # wall clock steps backwards.
                latest = conn.execute(
                    "SELECT MAX(uploaded_at) AS latest FROM files"
                ).fetchone()["latest"]
                uploaded_at = self.clock()
                if latest is not None and latest > uploaded_at:
                    uploaded_at = float(latest)
                conn.execute(
                    """
                    INSERT INTO files (
                        id,
                        original_name,
                        stored_name,
                        mime_type,
                        size,
                        uploaded_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (file_id, original_name, stored_name, mime_type, size, uploaded_at),
                )
        except sqlite3.IntegrityError as error:
            logger.warning(
                "record_insert_conflict file_id=%s stored_name=%s error=%s",
                file_id,
                stored_name,
                error,
            )
            raise ConflictError(f"Record already exists: {file_id}") from error
        except sqlite3.Error as error:
            raise MetadataError(f"Failed to insert record: {error}") from error

        logger.info(
            "record_inserted file_id=%s stored_name=%s size=%d",
            file_id,
            stored_name,
            size,
        )
        return FileRecord(
            id=file_id,
            original_name=original_name,
            stored_name=stored_name,
            mime_type=mime_type or DEFAULT_MIME_TYPE,
            size_bytes=size,
            uploaded_at=uploaded_at,
        )

    def find(self, file_id: str) -> Optional[FileRecord]:
        try:
            with self.connect() as conn:
                row = conn.execute(
                    "SELECT * FROM files WHERE id = ?", (file_id,)
                ).fetchone()
        except sqlite3.Error as error:
            raise MetadataError(f"Failed to read record: {error}") from error
        return FileRecord.from_row(row) if row else None

    def get(self, file_id: str) -> FileRecord:
        record = self.find(file_id)
        if record is None:
            raise RecordNotFound()
        return record

    def list_all(self) -> List[FileRecord]:
        """Return every record, newest first; ties go to the later insert."""

        try:
            with self.connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM files ORDER BY uploaded_at DESC, rowid DESC"
                ).fetchall()
        except sqlite3.Error as error:
            raise MetadataError(f"Failed to list records: {error}") from error
        return [FileRecord.from_row(row) for row in rows]

    def delete(self, file_id: str) -> None:
        try:
            with self.connect() as conn:
                cursor = conn.execute("DELETE FROM files WHERE id = ?", (file_id,))
                deleted = cursor.rowcount
        except sqlite3.Error as error:
            raise MetadataError(f"Failed to delete record: {error}") from error
        if deleted == 0:
            raise RecordNotFound()
        logger.info("record_deleted file_id=%s", file_id)

    def aggregate(self) -> StorageStats:
        try:
            with self.connect() as conn:
                row = conn.execute(
                    """
                    SELECT
                        COUNT(*) AS count,
                        COALESCE(SUM(size), 0) AS total_size
                    FROM files
                    """
                ).fetchone()
        except sqlite3.Error as error:
            raise MetadataError(f"Failed to aggregate records: {error}") from error
        count = int(row["count"] if row and row["count"] is not None else 0)
        total = int(row["total_size"] if row and row["total_size"] is not None else 0)
        return StorageStats(count=count, total_size_bytes=total)

    def stored_names(self) -> Set[str]:
        try:
            with self.connect() as conn:
                rows = conn.execute("SELECT stored_name FROM files").fetchall()
        except sqlite3.Error as error:
            raise MetadataError(f"Failed to read stored names: {error}") from error
        return {row["stored_name"] for row in rows}

