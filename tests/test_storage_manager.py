import io
import os
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest import mock

from mydrive.blobs import BlobStore
from mydrive.errors import (
    BlobMissing,
    ConflictError,
    GenerationError,
    RecordNotFound,
    ValidationError,
    WriteError,
)
from mydrive.manager import StorageManager, normalize_mime_type
from mydrive.storage import MetadataIndex


class BrokenStream:
    def __init__(self, error: BaseException) -> None:
        self._error = error

    def read(self, size: int = -1) -> bytes:
        raise self._error


class ScriptedIds:
    """Hands out a fixed sequence of identifiers."""

    def __init__(self, *ids: str) -> None:
        self._ids = list(ids)

    def __call__(self) -> str:
        return self._ids.pop(0)


class StorageManagerTestCase(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        root = Path(self.tmp.name)
        self.uploads_dir = root / "uploads"
        self.blob_store = BlobStore(self.uploads_dir, chunk_size=64 * 1024)
        self.blob_store.ensure_root()
        self.index = MetadataIndex(root / "data" / "drive.db")
        self.index.init_schema()
        self.manager = StorageManager(self.blob_store, self.index)

    def tearDown(self):
        self.tmp.cleanup()

    def _blob_names(self):
        return sorted(path.name for path in self.uploads_dir.iterdir())

    def _read_fetch(self, file_id):
        result = self.manager.fetch(file_id)
        with result.stream as stream:
            return result, stream.read()


class AdmitAndFetchTests(StorageManagerTestCase):
    def test_round_trip_is_byte_exact(self):
        content = os.urandom(3 * 1024 * 1024 + 17)
        record = self.manager.admit(io.BytesIO(content), "big.bin", "application/octet-stream")

        result, data = self._read_fetch(record.id)

        self.assertEqual(data, content)
        self.assertEqual(result.size, len(content))
        self.assertEqual(record.size_bytes, len(content))
        self.assertEqual(result.record.original_name, "big.bin")

    def test_stored_name_is_id_plus_extension(self):
        record = self.manager.admit(io.BytesIO(b"%PDF"), "../../Quarterly Report.PDF", "application/pdf")
        self.assertEqual(record.stored_name, f"{record.id}.pdf")
        self.assertEqual(self._blob_names(), [record.stored_name])
        self.assertEqual(record.original_name, "../../Quarterly Report.PDF")

    def test_size_is_bytes_written(self):
        record = self.manager.admit(io.BytesIO(b"abc"), "a.txt", "text/plain")
        self.assertEqual(record.size_bytes, 3)
        self.assertEqual(self.index.get(record.id).size_bytes, 3)

    def test_empty_name_is_rejected(self):
        with self.assertRaises(ValidationError):
            self.manager.admit(io.BytesIO(b"abc"), "", "text/plain")
        self.assertEqual(self._blob_names(), [])

    def test_write_failure_inserts_no_record(self):
        with self.assertRaises(WriteError):
            self.manager.admit(BrokenStream(OSError(28, "No space left on device")), "a.txt")
        self.assertEqual(self.manager.list_files(), [])
        self.assertEqual(self._blob_names(), [])

    def test_interrupted_upload_is_cleaned_up(self):
        with self.assertRaises(WriteError):
            self.manager.admit(BrokenStream(ValueError("client disconnected")), "a.txt")
        self.assertEqual(self.manager.list_files(), [])
        self.assertEqual(self._blob_names(), [])

    def test_generation_failure_aborts_admission(self):
        def exhausted():
            raise GenerationError()

        manager = StorageManager(self.blob_store, self.index, id_factory=exhausted)
        with self.assertRaises(GenerationError):
            manager.admit(io.BytesIO(b"abc"), "a.txt")
        self.assertEqual(self._blob_names(), [])

    def test_tmp_named_upload_round_trips(self):
        record = self.manager.admit(io.BytesIO(b"hello"), "report.tmp", "text/plain")
        self.assertEqual(record.stored_name, f"{record.id}.tmp")

        _, data = self._read_fetch(record.id)
        self.assertEqual(data, b"hello")

        old = time.time() - 7200
        os.utime(self.uploads_dir / record.stored_name, (old, old))
        self.assertEqual(self.blob_store.cleanup_temp_files(max_age_seconds=3600), 0)
        self.assertEqual(self.manager.reconcile(grace_seconds=0).orphan_blobs_found, [])
        self.assertEqual(self._blob_names(), [record.stored_name])

    def test_mime_type_defaults(self):
        self.assertEqual(normalize_mime_type("application/pdf", "x"), "application/pdf")
        self.assertEqual(normalize_mime_type("Text/Plain; charset=utf-8", "x"), "text/plain")
        self.assertEqual(normalize_mime_type(None, "report.pdf"), "application/pdf")
        self.assertEqual(normalize_mime_type("garbage", "data.zzzunknown"), "application/octet-stream")
        self.assertEqual(normalize_mime_type("", ""), "application/octet-stream")

    def test_fetch_unknown_id_is_record_not_found(self):
        with self.assertRaises(RecordNotFound):
            self.manager.fetch("does-not-exist")

    def test_missing_blob_is_reported_distinctly(self):
        record = self.manager.admit(io.BytesIO(b"data"), "a.txt", "text/plain")
        (self.uploads_dir / record.stored_name).unlink()

        with self.assertRaises(BlobMissing) as context:
            self.manager.fetch(record.id)
        self.assertNotIsInstance(context.exception, RecordNotFound)
        self.assertEqual(context.exception.kind, "blob_missing")

    def test_open_fetch_survives_concurrent_remove(self):
        record = self.manager.admit(io.BytesIO(b"still readable"), "a.txt", "text/plain")
        result = self.manager.fetch(record.id)
        self.manager.remove(record.id)
        with result.stream as stream:
            self.assertEqual(stream.read(), b"still readable")
        with self.assertRaises(RecordNotFound):
            self.manager.fetch(record.id)


class CollisionTests(StorageManagerTestCase):
    def test_insert_collision_retries_with_fresh_id(self):
        manager = StorageManager(
            self.blob_store, self.index, id_factory=ScriptedIds("dup", "dup", "fresh")
        )
        first = manager.admit(io.BytesIO(b"one"), "a.txt")
        second = manager.admit(io.BytesIO(b"two"), "b.bin")

        self.assertEqual(first.id, "dup")
        self.assertEqual(second.id, "fresh")
        self.assertEqual(second.stored_name, "fresh.bin")
        self.assertEqual(self._blob_names(), ["dup.txt", "fresh.bin"])
        _, data = self._read_fetch("fresh")
        self.assertEqual(data, b"two")

    def test_stored_name_collision_retries_before_reading(self):
        manager = StorageManager(
            self.blob_store, self.index, id_factory=ScriptedIds("dup", "dup", "fresh")
        )
        manager.admit(io.BytesIO(b"one"), "a.txt")
        second = manager.admit(io.BytesIO(b"two"), "b.txt")

        self.assertEqual(second.id, "fresh")
        _, data = self._read_fetch("fresh")
        self.assertEqual(data, b"two")

    def test_exhausted_retries_leave_no_orphan(self):
        manager = StorageManager(
            self.blob_store,
            self.index,
            id_factory=lambda: "dup",
            max_id_attempts=2,
        )
        manager.admit(io.BytesIO(b"one"), "a.txt")
        with self.assertRaises(ConflictError):
            manager.admit(io.BytesIO(b"two"), "b.bin")

        self.assertEqual(self._blob_names(), ["dup.txt"])
        self.assertEqual([record.id for record in manager.list_files()], ["dup"])

    def test_concurrent_admissions_get_distinct_ids(self):
        records = []
        errors = []
        lock = threading.Lock()

        def worker(number):
            try:
                record = self.manager.admit(
                    io.BytesIO(f"payload {number}".encode()), f"file-{number}.txt"
                )
            except Exception as error:  # pragma: no cover - surfaced below
                with lock:
                    errors.append(error)
                return
            with lock:
                records.append(record)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        self.assertEqual(len(records), 16)
        self.assertEqual(len({record.id for record in records}), 16)
        self.assertEqual(len({record.stored_name for record in records}), 16)
        self.assertEqual(len(self.manager.list_files()), 16)


class ListRemoveStatsTests(StorageManagerTestCase):
    def test_list_is_newest_first(self):
        for name in ("A.txt", "B.txt", "C.txt"):
            self.manager.admit(io.BytesIO(name.encode()), name)
        names = [record.original_name for record in self.manager.list_files()]
        self.assertEqual(names, ["C.txt", "B.txt", "A.txt"])

    def test_remove_deletes_record_and_blob(self):
        record = self.manager.admit(io.BytesIO(b"data"), "a.txt")
        removed = self.manager.remove(record.id)

        self.assertEqual(removed.id, record.id)
        self.assertFalse((self.uploads_dir / record.stored_name).exists())
        with self.assertRaises(RecordNotFound):
            self.manager.fetch(record.id)

    def test_remove_unknown_id(self):
        with self.assertRaises(RecordNotFound):
            self.manager.remove("nope")

    def test_remove_tolerates_missing_blob(self):
        record = self.manager.admit(io.BytesIO(b"data"), "a.txt")
        (self.uploads_dir / record.stored_name).unlink()

        self.manager.remove(record.id)

        self.assertEqual(self.manager.list_files(), [])

    def test_stats_match_list(self):
        self.assertEqual(self.manager.stats().count, 0)
        self.assertEqual(self.manager.stats().total_size_bytes, 0)

        for size in (1, 10, 100):
            self.manager.admit(io.BytesIO(b"x" * size), f"{size}.bin")
        removable = self.manager.admit(io.BytesIO(b"y" * 5), "gone.bin")
        self.manager.remove(removable.id)

        records = self.manager.list_files()
        totals = self.manager.stats()
        self.assertEqual(totals.count, len(records))
        self.assertEqual(totals.total_size_bytes, sum(record.size_bytes for record in records))
        self.assertEqual(totals.total_size_bytes, 111)


class AdmitManyTests(StorageManagerTestCase):
    def test_no_uploads_is_a_validation_error(self):
        with self.assertRaises(ValidationError):
            self.manager.admit_many([])

    def test_partial_failure_keeps_other_files(self):
        outcomes = self.manager.admit_many(
            [
                (io.BytesIO(b"first"), "one.txt", "text/plain"),
                (BrokenStream(OSError(5, "Input/output error")), "two.txt", "text/plain"),
                (io.BytesIO(b"third"), "three.txt", "text/plain"),
            ]
        )

        self.assertEqual([outcome.ok for outcome in outcomes], [True, False, True])
        self.assertEqual(outcomes[1].error.kind, "write_error")
        self.assertEqual(outcomes[1].to_dict()["name"], "two.txt")
        self.assertFalse(outcomes[1].to_dict()["ok"])

        names = [record.original_name for record in self.manager.list_files()]
        self.assertEqual(names, ["three.txt", "one.txt"])
        _, first = self._read_fetch(outcomes[0].record.id)
        _, third = self._read_fetch(outcomes[2].record.id)
        self.assertEqual((first, third), (b"first", b"third"))
        self.assertEqual(len(self._blob_names()), 2)


class ReconcileTests(StorageManagerTestCase):
    def _age(self, path, seconds):
        past = time.time() - seconds
        os.utime(path, (past, past))

    def test_old_orphan_blobs_are_removed(self):
        kept = self.manager.admit(io.BytesIO(b"kept"), "kept.txt")
        orphan = self.uploads_dir / "orphan.bin"
        orphan.write_bytes(b"nobody owns me")
        self._age(orphan, 7200)

        report = self.manager.reconcile(grace_seconds=3600)

        self.assertEqual(report.orphan_blobs_removed, ["orphan.bin"])
        self.assertFalse(orphan.exists())
        self.assertTrue((self.uploads_dir / kept.stored_name).exists())

    def test_recent_orphans_are_left_for_in_flight_admissions(self):
        orphan = self.uploads_dir / "recent.bin"
        orphan.write_bytes(b"just written")

        report = self.manager.reconcile(grace_seconds=3600)

        self.assertEqual(report.orphan_blobs_found, [])
        self.assertTrue(orphan.exists())

    def test_dry_run_reports_without_deleting(self):
        orphan = self.uploads_dir / "orphan.bin"
        orphan.write_bytes(b"x")
        self._age(orphan, 7200)

        report = self.manager.reconcile(grace_seconds=3600, dry_run=True)

        self.assertEqual(report.orphan_blobs_found, ["orphan.bin"])
        self.assertEqual(report.orphan_blobs_removed, [])
        self.assertTrue(orphan.exists())

    def test_unreadable_blob_directory_is_a_write_error(self):
        with mock.patch.object(
            Path, "iterdir", side_effect=PermissionError(13, "Permission denied")
        ):
            with self.assertRaises(WriteError):
                self.manager.reconcile(grace_seconds=0)

    def test_missing_blobs_are_reported_not_resurrected(self):
        record = self.manager.admit(io.BytesIO(b"data"), "a.txt")
        (self.uploads_dir / record.stored_name).unlink()

        report = self.manager.reconcile(grace_seconds=0)

        self.assertEqual(report.missing_blobs, [record.id])
        self.assertEqual(self.index.get(record.id).id, record.id)
        self.assertFalse((self.uploads_dir / record.stored_name).exists())
        self.assertEqual(
            report.to_dict(),
            {"orphan_blobs_found": [], "orphan_blobs_removed": [], "missing_blobs": [record.id]},
        )


if __name__ == "__main__":
    unittest.main()
