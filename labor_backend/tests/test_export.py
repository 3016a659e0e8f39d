import threading
import time
import unittest
from datetime import datetime, timezone
from unittest.mock import MagicMock

from labor_backend.db import ExportRow, InMemoryStateStore
from labor_backend.errors import StorageError
from labor_backend.export import (
    BlobCsvExportSink,
    TableCsvExportSink,
    format_timestamp,
    read_csv_rows,
)
from labor_backend.locks import InMemoryExportLock
from labor_backend.results import LabResultService
from labor_backend.storage import InMemoryStorageClient

HEADER = "Matrikelnummer,Quiz-Punkte,Optimaler Bitumengehalt,Maximale Raumdichte,Datum"
WHEN = datetime(2025, 3, 1, 12, 30, 15, 123000, tzinfo=timezone.utc)


def _row(user_id, points=70, binder=5.2, density=2.41):
    return ExportRow(user_id, points, binder, density, WHEN)


class FormatTests(unittest.TestCase):
    def test_timestamp_is_iso_utc_with_z(self):
        self.assertEqual(format_timestamp(WHEN), "2025-03-01T12:30:15.123Z")

    def test_naive_timestamp_is_treated_as_utc(self):
        naive = WHEN.replace(tzinfo=None)
        self.assertEqual(format_timestamp(naive), "2025-03-01T12:30:15.123Z")

    def test_read_skips_header_and_blank_lines(self):
        content = f"{HEADER}\n\n123,70,5.2,2.41,2025-03-01T12:30:15.123Z\n"
        self.assertEqual(
            read_csv_rows(content),
            [["123", "70", "5.2", "2.41", "2025-03-01T12:30:15.123Z"]],
        )


class BlobCsvExportSinkTests(unittest.TestCase):
    def setUp(self):
        self.storage = InMemoryStorageClient()
        self.sink = BlobCsvExportSink(
            self.storage, InMemoryExportLock(), "labor_ergebnisse.csv"
        )

    def _lines(self):
        content = self.storage.get_bytes("labor_ergebnisse.csv").decode("utf-8")
        return content.strip().split("\n")

    def test_creates_file_with_header(self):
        self.assertTrue(self.sink.append(_row("111")))
        self.assertEqual(
            self._lines(), [HEADER, "111,70,5.2,2.41,2025-03-01T12:30:15.123Z"]
        )
        self.assertEqual(self.storage.content_types["labor_ergebnisse.csv"], "text/csv")

    def test_first_row_per_user_wins(self):
        self.sink.append(_row("111", points=70))
        self.assertFalse(self.sink.append(_row("111", points=20)))
        self.assertEqual(len(self._lines()), 2)
        self.assertTrue(self._lines()[1].startswith("111,70,"))

    def test_user_id_prefix_is_not_a_match(self):
        self.sink.append(_row("11"))
        self.assertTrue(self.sink.append(_row("111")))
        self.assertEqual(len(self._lines()), 3)

    def test_keeps_existing_rows(self):
        self.storage.put_bytes(
            "labor_ergebnisse.csv",
            f"{HEADER}\n\n999,10,4,2.3,2024-01-01T00:00:00.000Z".encode("utf-8"),
            "text/csv",
        )
        self.sink.append(_row("111"))
        self.assertEqual(self._lines()[1], "999,10,4,2.3,2024-01-01T00:00:00.000Z")
        self.assertTrue(self._lines()[2].startswith("111,"))

    def test_render_without_file_is_header_only(self):
        self.assertEqual(self.sink.render(), HEADER + "\n")

    def test_concurrent_appends_are_not_lost(self):
        users = [str(1000 + i) for i in range(20)]
        threads = [
            threading.Thread(target=self.sink.append, args=(_row(user),))
            for user in users
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        written = {line.split(",")[0] for line in self._lines()[1:]}
        self.assertEqual(written, set(users))


class TableCsvExportSinkTests(unittest.TestCase):
    def test_first_row_wins_and_renders(self):
        sink = TableCsvExportSink(InMemoryStateStore())
        self.assertTrue(sink.append(_row("111", points=70)))
        self.assertFalse(sink.append(_row("111", points=20)))
        self.assertTrue(sink.append(_row("222", points=30.0)))
        self.assertEqual(
            sink.render().strip().split("\n"),
            [
                HEADER,
                "111,70,5.2,2.41,2025-03-01T12:30:15.123Z",
                "222,30,5.2,2.41,2025-03-01T12:30:15.123Z",
            ],
        )


class LabResultServiceTests(unittest.TestCase):
    def test_export_failure_does_not_fail_the_store(self):
        store = InMemoryStateStore()
        sink = MagicMock()
        sink.append.side_effect = StorageError("bucket gone")
        service = LabResultService(store, sink)

        with self.assertLogs("labor_backend.results", level="ERROR"):
            result = service.store_result("111", 70, 5.2, 2.41)

        self.assertEqual(store.get_lab_result("111").points, 70)
        self.assertEqual(result.user_id, "111")

    def test_store_failure_propagates_and_skips_export(self):
        store = MagicMock()
        store.upsert_lab_result.side_effect = StorageError("db down")
        sink = MagicMock()
        service = LabResultService(store, sink)

        with self.assertRaises(StorageError):
            service.store_result("111", 70, 5.2, 2.41)
        sink.append.assert_not_called()

    def test_slow_export_is_abandoned_after_deadline(self):
        store = InMemoryStateStore()
        sink = MagicMock()
        sink.append.side_effect = lambda row: time.sleep(0.5)
        service = LabResultService(store, sink, export_timeout=0.05)

        with self.assertLogs("labor_backend.results", level="ERROR"):
            result = service.store_result("112", 70, 5.2, 2.41)

        self.assertEqual(result.points, 70)
        self.assertEqual(store.get_lab_result("112").points, 70)

    def test_export_result_reports_appended_row(self):
        store = InMemoryStateStore()
        service = LabResultService(store, TableCsvExportSink(store), export_timeout=1.0)
        result = service.save_result("113", 70, 5.2, 2.41)
        self.assertTrue(service.export_result(result))
        self.assertFalse(service.export_result(result))

    def test_latest_result_wins_but_export_keeps_first(self):
        store = InMemoryStateStore()
        service = LabResultService(store, TableCsvExportSink(store))
        service.store_result("111", 70, 5.2, 2.41)
        service.store_result("111", 40, 5.0, 2.30)

        self.assertEqual(store.get_lab_result("111").points, 40)
        rows = store.list_export_rows()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].points, 70)


if __name__ == "__main__":
    unittest.main()
