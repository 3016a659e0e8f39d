"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

import logging

from labor_backend.catalog import QuestionCatalog, load_catalog
from labor_backend.config import get_settings
from labor_backend.db import InMemoryStateStore, SqlStateStore, StateStore
from labor_backend.export import BlobCsvExportSink, ExportSink, TableCsvExportSink
from labor_backend.locks import ExportLock, InMemoryExportLock, RedisExportLock
from labor_backend.quiz import QuizService
from labor_backend.reports import ReportService
from labor_backend.results import LabResultService
from labor_backend.storage import InMemoryStorageClient, S3StorageClient, StorageClient

logger = logging.getLogger(__name__)

_state_store: StateStore | None = None
_storage_client: StorageClient | None = None
_export_lock: ExportLock | None = None
_export_sink: ExportSink | None = None
_catalog: QuestionCatalog | None = None


def get_state_store() -> StateStore:
    """
    Return a singleton state store so in-memory state persists across requests.
    """
    global _state_store
    if _state_store:
        return _state_store

    settings = get_settings()
    if settings.use_in_memory_backends:
        _state_store = InMemoryStateStore()
    elif settings.database_url:
        _state_store = SqlStateStore(settings.database_url)
    elif settings.firebase_service_account:
        # Only this backend needs firebase_admin.
        from labor_backend.firestore_db import FirestoreStateStore

        _state_store = FirestoreStateStore(
            service_account=settings.firebase_service_account
        )
    else:
        logger.warning("No state backend configured; using in-memory store")
        _state_store = InMemoryStateStore()
    return _state_store


def get_storage_client() -> StorageClient:
    global _storage_client
    if _storage_client:
        return _storage_client

    settings = get_settings()
    if settings.use_in_memory_backends or not settings.storage_bucket:
        _storage_client = InMemoryStorageClient()
    else:
        _storage_client = S3StorageClient(
            bucket=settings.storage_bucket,
            region=settings.storage_region or "",
            endpoint=settings.storage_endpoint or "",
            access_key_id=settings.aws_access_key_id or "",
            secret_access_key=settings.aws_secret_access_key or "",
            public_base_url=settings.storage_public_base_url,
        )
    return _storage_client


def get_export_lock() -> ExportLock:
    global _export_lock
    if _export_lock:
        return _export_lock

    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        _export_lock = RedisExportLock(
            url=settings.redis_url,
            key=settings.export_lock_key,
            timeout=settings.export_lock_timeout_seconds,
        )
    else:
        _export_lock = InMemoryExportLock(
            timeout=settings.export_lock_timeout_seconds
        )
    return _export_lock


def get_export_sink() -> ExportSink:
    global _export_sink
    if _export_sink:
        return _export_sink

    settings = get_settings()
    if settings.export_mode == "table":
        _export_sink = TableCsvExportSink(get_state_store())
    else:
        _export_sink = BlobCsvExportSink(
            storage=get_storage_client(),
            lock=get_export_lock(),
            path=settings.csv_file_name,
        )
    return _export_sink


def get_catalog() -> QuestionCatalog:
    global _catalog
    if _catalog:
        return _catalog
    _catalog = load_catalog(get_settings().question_catalog_path)
    return _catalog


def get_quiz_service() -> QuizService:
    return QuizService(
        store=get_state_store(),
        catalog=get_catalog(),
        quiz_size=get_settings().quiz_size,
    )


def get_lab_result_service() -> LabResultService:
    return LabResultService(
        store=get_state_store(),
        export_sink=get_export_sink(),
        export_timeout=get_settings().storage_timeout_seconds,
    )


def get_report_service() -> ReportService:
    return ReportService(
        storage=get_storage_client(), prefix=get_settings().report_prefix
    )
