"""
Final lab results: authoritative record plus best-effort CSV export.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from labor_backend.db import ExportRow, LabResult, StateStore
from labor_backend.errors import InvalidInputError
from labor_backend.export import ExportSink
from labor_backend.timeouts import call_with_timeout

logger = logging.getLogger(__name__)


class LabResultService:
    def __init__(
        self,
        store: StateStore,
        export_sink: ExportSink,
        export_timeout: Optional[float] = None,
    ):
        self.store = store
        self.export_sink = export_sink
        self.export_timeout = export_timeout

    def save_result(
        self,
        user_id: str,
        points: float,
        optimal_binder_content: float,
        max_bulk_density: float,
        timestamp: Optional[datetime] = None,
    ) -> LabResult:
        """Upsert the user's lab result; the latest write wins."""
        if not user_id or not user_id.strip():
            raise InvalidInputError("userId is required")
        result = LabResult(
            user_id=user_id,
            points=points,
            optimal_binder_content=optimal_binder_content,
            max_bulk_density=max_bulk_density,
            timestamp=timestamp or datetime.now(timezone.utc),
        )
        self.store.upsert_lab_result(result)
        logger.info(f"Stored lab result for {user_id}")
        return result

    def export_result(self, result: LabResult) -> bool:
        """
        Mirror a stored result into the CSV export.

        Never raises: failures and timeouts are logged and reported as False.
        """
        row = ExportRow.from_lab_result(result)
        try:
            if self.export_timeout is None:
                return self.export_sink.append(row)
            return call_with_timeout(
                self.export_sink.append, row, timeout=self.export_timeout
            )
        except Exception:
            logger.exception(f"Failed to update CSV export for {result.user_id}")
            return False

    def store_result(
        self,
        user_id: str,
        points: float,
        optimal_binder_content: float,
        max_bulk_density: float,
        timestamp: Optional[datetime] = None,
    ) -> LabResult:
        """
        Upsert the user's lab result and mirror it into the CSV export.

        The stored result is the source of truth: once it is written, a
        failing export is logged and does not fail the call.
        """
        result = self.save_result(
            user_id, points, optimal_binder_content, max_bulk_density, timestamp
        )
        self.export_result(result)
        return result

    def render_export(self) -> str:
        return self.export_sink.render()
