"""
PDF lab report uploads. The first upload per user is kept.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from labor_backend.errors import InvalidInputError
from labor_backend.storage import StorageClient

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"


@dataclass(frozen=True)
class UploadResult:
    created: bool
    url: str


def report_path(prefix: str, user_id: str) -> str:
    if not user_id or not user_id.strip():
        raise InvalidInputError("userId is required")
    if "/" in user_id or "\\" in user_id or ".." in user_id:
        raise InvalidInputError(f"Invalid userId: {user_id!r}")
    return f"{prefix.rstrip('/')}/Pruefbericht_{user_id}.pdf"


class ReportService:
    def __init__(self, storage: StorageClient, prefix: str = "Laborberichte"):
        self.storage = storage
        self.prefix = prefix

    def upload(self, user_id: str, data: bytes) -> UploadResult:
        if not data:
            raise InvalidInputError("PDF file is empty")
        path = report_path(self.prefix, user_id)
        # Two racing first uploads both write; either copy is a valid report.
        if self.storage.exists(path):
            logger.info(f"Report for {user_id} already stored, skipping upload")
            return UploadResult(created=False, url=self.storage.public_url(path))
        url = self.storage.put_bytes(path, data, PDF_CONTENT_TYPE)
        logger.info(f"Stored first report for {user_id} at {path}")
        return UploadResult(created=True, url=url)
