"""Coordinates the blob store and the metadata index.

Every public operation here is a short protocol over :class:`BlobStore` and
:class:`MetadataIndex` that keeps the two in lockstep:

* admit writes the blob first and inserts the record second, so a failed
  write never produces a record;
* remove deletes the blob first and the record second, so an interrupted
  remove leaves a record whose blob is missing (reported as such) rather than
  a blob nobody can reach;
* fetch opens the blob while holding the record, and reports a missing blob
  as :class:`BlobMissing`, never as :class:`RecordNotFound`.

Only :class:`~mydrive.errors.VaultError` subclasses escape this module.
"""

import logging
import mimetypes
import re
import time
from dataclasses import dataclass, field
from typing import BinaryIO, Callable, Iterable, List, Optional, Tuple

from .blobs import BlobStore
from .errors import (
    BlobMissing,
    BlobNotFound,
    ConflictError,
    ValidationError,
    VaultError,
    WriteError,
)
from .identifiers import new_id
from .storage import DEFAULT_MIME_TYPE, FileRecord, MetadataIndex, StorageStats

logger = logging.getLogger("mydrive.manager")

DEFAULT_MAX_ID_ATTEMPTS = 3
_MIME_PATTERN = re.compile(r"^[\w.+-]+/[\w.+-]+$")


def normalize_mime_type(declared: Optional[str], original_name: str) -> str:
    """Return the declared type if it is well formed, else a best guess."""

    if declared:
        candidate = declared.split(";", 1)[0].strip().lower()
        if _MIME_PATTERN.match(candidate):
            return candidate
    guessed, _ = mimetypes.guess_type(original_name or "")
    return guessed or DEFAULT_MIME_TYPE


@dataclass
class AdmitOutcome:
    name: str
    record: Optional[FileRecord] = None
    error: Optional[VaultError] = None

    @property
    def ok(self) -> bool:
        return self.record is not None

    def to_dict(self) -> dict:
        if self.record is not None:
            return {
                "name": self.record.original_name,
                "ok": True,
                "id": self.record.id,
                "size": self.record.size_bytes,
                "mime_type": self.record.mime_type,
            }
        error = self.error or VaultError()
        return {
            "name": self.name,
            "ok": False,
            "error": error.kind,
            "message": error.message,
        }


@dataclass
class FetchResult:
    record: FileRecord
    stream: BinaryIO
    size: int


@dataclass
class ReconcileReport:
    orphan_blobs_found: List[str] = field(default_factory=list)
    orphan_blobs_removed: List[str] = field(default_factory=list)
    missing_blobs: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "orphan_blobs_found": list(self.orphan_blobs_found),
            "orphan_blobs_removed": list(self.orphan_blobs_removed),
            "missing_blobs": list(self.missing_blobs),
        }


class StorageManager:
    def __init__(
        self,
        blob_store: BlobStore,
        index: MetadataIndex,
        id_factory: Callable[[], str] = new_id,
        max_id_attempts: int = DEFAULT_MAX_ID_ATTEMPTS,
    ) -> None:
        self.blob_store = blob_store
        self.index = index
        self.id_factory = id_factory
        self.max_id_attempts = max(1, int(max_id_attempts))

    def admit(
        self,
        stream: BinaryIO,
        original_name: str,
        mime_type: Optional[str] = None,
    ) -> FileRecord:
        if not original_name:
            raise ValidationError("Missing file name")

        attempt = 0
        while True:
            file_id = self.id_factory()
            try:
                stored_name, size = self.blob_store.put(file_id, original_name, stream)
            except ConflictError:
                # Raised before any bytes are read, so the stream is intact.
                attempt += 1
                if attempt >= self.max_id_attempts:
                    raise
                logger.warning("stored_name_collision_retry file_id=%s", file_id)
                continue
            except VaultError:
                raise
            except Exception as error:
                # BlobStore.put has already removed its temp file.
                raise WriteError(f"Upload interrupted: {error}") from error
            break

        record = self._insert_with_retry(
            file_id,
            stored_name,
            original_name,
            normalize_mime_type(mime_type, original_name),
            size,
        )
        logger.info(
            "file_admitted file_id=%s stored_name=%s size=%d mime_type=%s",
            record.id,
            record.stored_name,
            record.size_bytes,
            record.mime_type,
        )
        return record

    def _insert_with_retry(
        self,
        file_id: str,
        stored_name: str,
        original_name: str,
        mime_type: str,
        size: int,
    ) -> FileRecord:
        """Insert the record, moving the blob to a fresh id on collision.

        Whatever happens, the committed blob is either referenced by the
        inserted record or deleted before the error surfaces.
        """

        attempt = 0
        try:
            while True:
                try:
                    return self.index.insert(
                        file_id, original_name, stored_name, mime_type, size
                    )
                except ConflictError:
                    attempt += 1
                    if attempt >= self.max_id_attempts:
                        logger.error(
                            "id_collision_max_attempts file_id=%s stored_name=%s",
                            file_id,
                            stored_name,
                        )
                        raise
                new_file_id = self.id_factory()
                new_stored_name = self.blob_store.stored_name_for(
                    new_file_id, original_name
                )
                logger.warning(
                    "id_collision_retry file_id=%s new_file_id=%s attempt=%d",
                    file_id,
                    new_file_id,
                    attempt,
                )
                self.blob_store.rename(stored_name, new_stored_name)
                file_id, stored_name = new_file_id, new_stored_name
        except Exception:
            self._discard_blob(stored_name)
            raise

    def _discard_blob(self, stored_name: str) -> None:
        try:
            self.blob_store.delete(stored_name)
        except BlobNotFound:
            pass
        except VaultError as error:
            logger.error(
                "orphan_blob_cleanup_failed stored_name=%s error=%s",
                stored_name,
                error,
            )

    def admit_many(
        self, uploads: Iterable[Tuple[BinaryIO, str, Optional[str]]]
    ) -> List[AdmitOutcome]:
        """Admit each upload independently, reporting an outcome per item.

        A failure on one item does not roll back the items before it.
        """

        items = list(uploads)
        if not items:
            raise ValidationError()

        outcomes: List[AdmitOutcome] = []
        for stream, original_name, mime_type in items:
            try:
                record = self.admit(stream, original_name, mime_type)
            except VaultError as error:
                logger.warning(
                    "file_admit_failed name=%s kind=%s error=%s",
                    original_name,
                    error.kind,
                    error.message,
                )
                outcomes.append(AdmitOutcome(name=original_name or "", error=error))
                continue
            outcomes.append(AdmitOutcome(name=original_name, record=record))
        return outcomes

    def list_files(self) -> List[FileRecord]:
        return self.index.list_all()

    def fetch(self, file_id: str) -> FetchResult:
        record = self.index.get(file_id)
        try:
            stream, size = self.blob_store.open(record.stored_name)
        except BlobNotFound as error:
            logger.warning(
                "file_fetch_blob_missing file_id=%s stored_name=%s",
                record.id,
                record.stored_name,
            )
            raise BlobMissing() from error
        except OSError as error:
            raise WriteError(f"Failed to open file: {error}") from error
        logger.info("file_fetched file_id=%s size=%d", record.id, size)
        return FetchResult(record=record, stream=stream, size=size)

    def remove(self, file_id: str) -> FileRecord:
        record = self.index.get(file_id)
        try:
            self.blob_store.delete(record.stored_name)
        except BlobNotFound:
            logger.warning(
                "file_remove_blob_already_missing file_id=%s stored_name=%s",
                record.id,
                record.stored_name,
            )
        self.index.delete(record.id)
        logger.info(
            "file_removed file_id=%s stored_name=%s original_name=%s",
            record.id,
            record.stored_name,
            record.original_name,
        )
        return record

    def stats(self) -> StorageStats:
        return self.index.aggregate()

    def reconcile(self, grace_seconds: float = 3600, dry_run: bool = False) -> ReconcileReport:
        """Compare the blob directory against the index.

        Blobs without a record that are older than *grace_seconds* are removed
        (the grace period protects admissions between blob commit and insert).
        Records without a blob are reported only.
        """

        report = ReconcileReport()
        known = self.index.stored_names()
        cutoff = time.time() - max(grace_seconds, 0)
        on_disk = set()
        for stored_name, mtime in self.blob_store.iter_stored():
            on_disk.add(stored_name)
            if stored_name in known or mtime > cutoff:
                continue
            report.orphan_blobs_found.append(stored_name)
            if dry_run:
                continue
            try:
                self.blob_store.delete(stored_name)
            except BlobNotFound:
                continue
            except VaultError as error:
                logger.warning(
                    "orphan_cleanup_failed stored_name=%s error=%s", stored_name, error
                )
                continue
            report.orphan_blobs_removed.append(stored_name)
            logger.info("orphan_blob_removed stored_name=%s", stored_name)

        for record in self.index.list_all():
            if record.stored_name in on_disk:
                continue
            # The blob may have been committed after the directory scan.
            if self.blob_store.exists(record.stored_name):
                continue
            report.missing_blobs.append(record.id)
            logger.warning(
                "record_blob_missing file_id=%s stored_name=%s",
                record.id,
                record.stored_name,
            )

        if report.orphan_blobs_found or report.missing_blobs:
            logger.info(
                "reconcile_completed orphans_found=%d orphans_removed=%d missing=%d dry_run=%s",
                len(report.orphan_blobs_found),
                len(report.orphan_blobs_removed),
                len(report.missing_blobs),
                dry_run,
            )
        return report
