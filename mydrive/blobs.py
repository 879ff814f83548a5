import logging
import os
import re
import time
from pathlib import Path
from typing import BinaryIO, Iterator, List, Tuple

from .config import CHUNK_SIZE_BYTES
from .errors import BlobNotFound, ConflictError, WriteError

logger = logging.getLogger("mydrive.blobs")

TEMP_PREFIX = "."
TEMP_SUFFIX = ".partial"
BLOB_FILE_MODE = 0o600
_EXTENSION_PATTERN = re.compile(r"^\.[A-Za-z0-9]{1,16}$")


def safe_extension(original_name: str) -> str:
    """Return the lowercased extension of *original_name*, or ``""``.

    Only the suffix of the final path component is considered, and only short
    alphanumeric extensions are accepted, so the client name can never
    contribute a directory or traversal component to a stored name.
    """

    base_name = (original_name or "").replace("\\", "/")
    base_name = os.path.basename(base_name)
    _, ext = os.path.splitext(base_name)
    if not _EXTENSION_PATTERN.match(ext):
        return ""
    return ext.lower()


class BlobStore:
    """Flat directory of blobs addressed by generated stored names."""

    def __init__(self, root: Path, chunk_size: int = CHUNK_SIZE_BYTES) -> None:
        self.root = Path(root)
        self.chunk_size = max(1, int(chunk_size))

    def ensure_root(self) -> None:
        self.root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def stored_name_for(file_id: str, original_name: str) -> str:
        return f"{file_id}{safe_extension(original_name)}"

    def path_for(self, stored_name: str) -> Path:
        if (
            not stored_name
            or stored_name != os.path.basename(stored_name)
            or "\\" in stored_name
            or stored_name.startswith(TEMP_PREFIX)
        ):
            raise BlobNotFound(f"Invalid stored name: {stored_name!r}")
        return self.root / stored_name

    def temp_path_for(self, stored_name: str) -> Path:
        """Staging path for *stored_name*; dot-prefixed, so never a valid stored name."""

        return self.root / f"{TEMP_PREFIX}{stored_name}{TEMP_SUFFIX}"

    def put(self, file_id: str, original_name: str, stream: BinaryIO) -> Tuple[str, int]:
        """Write *stream* fully under a name derived from *file_id*.

        The bytes go to a temporary file in the blob directory first and are
        renamed into place only once complete, so a failed or interrupted
        write never leaves a truncated blob at the final path.
        """

        stored_name = self.stored_name_for(file_id, original_name)
        final_path = self.path_for(stored_name)
        temp_path = self.temp_path_for(stored_name)
        written = 0
        try:
            self.ensure_root()
            if final_path.exists():
                raise ConflictError(f"Stored name already in use: {stored_name}")
            try:
                fd = os.open(temp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, BLOB_FILE_MODE)
            except FileExistsError as error:
                # Another admission is staging the same name; leave its file alone.
                raise ConflictError(f"Stored name already in use: {stored_name}") from error
            with os.fdopen(fd, "wb") as destination:
                while True:
                    chunk = stream.read(self.chunk_size)
                    if not chunk:
                        break
                    destination.write(chunk)
                    written += len(chunk)
                destination.flush()
                os.fsync(destination.fileno())
            temp_path.replace(final_path)
        except ConflictError:
            raise
        except OSError as error:
            self._discard(temp_path)
            logger.warning(
                "blob_write_failed stored_name=%s written=%d error=%s",
                stored_name,
                written,
                error,
            )
            raise WriteError(f"Failed to write file: {error.strerror or error}") from error
        except BaseException:
            # Reading the client stream failed (disconnect, cancellation).
            self._discard(temp_path)
            logger.warning(
                "blob_write_aborted stored_name=%s written=%d", stored_name, written
            )
            raise

        logger.debug("blob_written stored_name=%s size=%d", stored_name, written)
        return stored_name, written

    def open(self, stored_name: str) -> Tuple[BinaryIO, int]:
        path = self.path_for(stored_name)
        try:
            handle = path.open("rb")
        except (FileNotFoundError, IsADirectoryError) as error:
            raise BlobNotFound(f"Blob not found: {stored_name}") from error
        try:
            size = os.fstat(handle.fileno()).st_size
        except OSError:
            handle.close()
            raise
        return handle, size

    def iter_chunks(self, stored_name: str) -> Iterator[bytes]:
        handle, _ = self.open(stored_name)
        with handle:
            while True:
                chunk = handle.read(self.chunk_size)
                if not chunk:
                    break
                yield chunk

    def get(self, stored_name: str) -> bytes:
        return b"".join(self.iter_chunks(stored_name))

    def exists(self, stored_name: str) -> bool:
        try:
            return self.path_for(stored_name).is_file()
        except (BlobNotFound, OSError):
            return False

    def delete(self, stored_name: str) -> None:
        path = self.path_for(stored_name)
        try:
            path.unlink()
        except FileNotFoundError as error:
            raise BlobNotFound(f"Blob not found: {stored_name}") from error
        except OSError as error:
            logger.warning(
                "blob_delete_failed stored_name=%s error=%s", stored_name, error
            )
            raise WriteError(f"Failed to delete file: {error.strerror or error}") from error
        logger.debug("blob_deleted stored_name=%s", stored_name)

    def rename(self, stored_name: str, new_stored_name: str) -> None:
        source = self.path_for(stored_name)
        target = self.path_for(new_stored_name)
        if target.exists():
            raise ConflictError(f"Stored name already in use: {new_stored_name}")
        try:
            source.rename(target)
        except FileNotFoundError as error:
            raise BlobNotFound(f"Blob not found: {stored_name}") from error
        except OSError as error:
            raise WriteError(f"Failed to rename file: {error.strerror or error}") from error

    def iter_stored(self) -> Iterator[Tuple[str, float]]:
        """Yield ``(stored_name, mtime)`` for every committed blob."""

        for entry in self._scan():
            if entry.name.startswith(TEMP_PREFIX):
                continue
            try:
                if not entry.is_file():
                    continue
                mtime = entry.stat().st_mtime
            except OSError:
                continue
            yield entry.name, mtime

    def cleanup_temp_files(self, max_age_seconds: float = 3600) -> int:
        """Remove lingering temporary upload files older than *max_age_seconds*."""

        removed = 0
        cutoff = time.time() - max_age_seconds
        for temp_file in self._scan():
            if not (
                temp_file.name.startswith(TEMP_PREFIX)
                and temp_file.name.endswith(TEMP_SUFFIX)
            ):
                continue
            try:
                if temp_file.stat().st_mtime < cutoff:
                    temp_file.unlink()
                    removed += 1
                    logger.info("temp_file_removed path=%s", temp_file)
            except OSError as error:
                logger.warning(
                    "temp_cleanup_failed path=%s error=%s",
                    temp_file,
                    error,
                )
        return removed

    def _scan(self) -> List[Path]:
        if not self.root.exists():
            return []
        try:
            return list(self.root.iterdir())
        except OSError as error:
            logger.warning("blob_scan_failed root=%s error=%s", self.root, error)
            raise WriteError(f"Failed to scan blob directory: {error.strerror or error}") from error

    @staticmethod
    def _discard(temp_path: Path) -> None:
        try:
            temp_path.unlink(missing_ok=True)
        except OSError as error:
            logger.warning("temp_file_discard_failed path=%s error=%s", temp_path, error)
