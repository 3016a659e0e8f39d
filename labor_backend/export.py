"""
CSV export of final lab results.

Two sinks share one interface:

* ``BlobCsvExportSink`` keeps the whole CSV as a single blob and rewrites it
  on every new row. Writers are serialized through an ``ExportLock``.
* ``TableCsvExportSink`` stores one row per user in the state store and
  renders the CSV when it is read, so there is no shared blob to race on.

Both keep the first row written for a user; later rows are ignored.
"""

from __future__ import annotations

import csv
import io
import logging
from datetime import datetime, timezone
from typing import Iterable, Protocol

from labor_backend.db import ExportRow, StateStore
from labor_backend.locks import ExportLock
from labor_backend.storage import StorageClient

logger = logging.getLogger(__name__)

CSV_HEADER = (
    "Matrikelnummer",
    "Quiz-Punkte",
    "Optimaler Bitumengehalt",
    "Maximale Raumdichte",
    "Datum",
)
CSV_CONTENT_TYPE = "text/csv"


class ExportSink(Protocol):
    def append(self, row: ExportRow) -> bool:
        """Add the row unless the user already has one. Returns True if added."""
        ...

    def render(self) -> str:
        ...


def format_number(value: float) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def format_timestamp(value: datetime) -> str:
    """ISO-8601 in UTC with millisecond precision and a ``Z`` suffix."""
    if value.tzinfo is None:
        # Naive values are already UTC.
        value = value.replace(tzinfo=timezone.utc)
    utc = value.astimezone(timezone.utc)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def row_to_fields(row: ExportRow) -> list[str]:
    return [
        row.user_id,
        format_number(row.points),
        format_number(row.optimal_binder_content),
        format_number(row.max_bulk_density),
        format_timestamp(row.timestamp),
    ]


def write_csv(rows: Iterable[list[str]]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    writer.writerows(rows)
    return buffer.getvalue()


def read_csv_rows(content: str) -> list[list[str]]:
    """Parse CSV content, dropping the header and blank lines."""
    rows = [row for row in csv.reader(io.StringIO(content)) if any(row)]
    if rows and tuple(rows[0]) == CSV_HEADER:
        rows = rows[1:]
    return rows


class BlobCsvExportSink:
    """Whole-file CSV in blob storage, rewritten under a single-writer lock."""

    def __init__(self, storage: StorageClient, lock: ExportLock, path: str):
        self.storage = storage
        self.lock = lock
        self.path = path

    def _load_rows(self) -> list[list[str]]:
        try:
            content = self.storage.get_bytes(self.path).decode("utf-8")
        except FileNotFoundError:
            return []
        return read_csv_rows(content)

    def append(self, row: ExportRow) -> bool:
        with self.lock.hold():
            rows = self._load_rows()
            if any(existing and existing[0] == row.user_id for existing in rows):
                logger.info(f"User {row.user_id} already present in {self.path}")
                return False
            rows.append(row_to_fields(row))
            self.storage.put_bytes(
                self.path, write_csv(rows).encode("utf-8"), CSV_CONTENT_TYPE
            )
        logger.info(f"Appended export row for {row.user_id} to {self.path}")
        return True

    def render(self) -> str:
        return write_csv(self._load_rows())


class TableCsvExportSink:
    """One export record per user in the state store; CSV built on read."""

    def __init__(self, store: StateStore):
        self.store = store

    def append(self, row: ExportRow) -> bool:
        added = self.store.insert_export_row_if_absent(row)
        if not added:
            logger.info(f"Export row for {row.user_id} already exists")
        return added

    def render(self) -> str:
        return write_csv(row_to_fields(row) for row in self.store.list_export_rows())
