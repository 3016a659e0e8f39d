"""
Firestore-backed state store.

Documents live in the collections the front end reads:
``quizFragen`` (assignments), ``quizErgebnisse`` (quiz state),
``laborErgebnisse`` (lab results) and ``csvExport`` (export rows).
"""

from __future__ import annotations

import base64
import json
import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator, Optional, Sequence

import firebase_admin
from firebase_admin import credentials, firestore
from google.api_core import exceptions

from labor_backend.db import (
    AnsweredQuestion,
    ExportRow,
    LabResult,
    QuizAssignment,
    QuizState,
    StateMutation,
)
from labor_backend.errors import StorageError

logger = logging.getLogger(__name__)

ASSIGNMENTS_COLLECTION = "quizFragen"
QUIZ_STATE_COLLECTION = "quizErgebnisse"
LAB_RESULTS_COLLECTION = "laborErgebnisse"
EXPORT_ROWS_COLLECTION = "csvExport"


def decode_service_account(encoded: str) -> dict:
    """Decode the base64 encoded service account JSON from the environment."""
    try:
        return json.loads(base64.b64decode(encoded).decode("utf-8"))
    except (ValueError, UnicodeDecodeError) as exc:
        raise ValueError("FIREBASE_SERVICE_ACCOUNT is not valid base64 JSON") from exc


def state_from_document(user_id: str, data: Optional[dict]) -> QuizState:
    if not data:
        return QuizState(user_id)
    return QuizState(
        user_id=user_id,
        answers=[
            AnsweredQuestion.from_dict(item)
            for item in data.get("beantworteteFragen") or []
        ],
    )


def _as_utc(value: Any) -> datetime:
    # Firestore returns DatetimeWithNanoseconds, a datetime subclass.
    if not isinstance(value, datetime):
        value = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def lab_result_from_document(data: dict) -> LabResult:
    return LabResult(
        user_id=data["userId"],
        points=data["punkte"],
        optimal_binder_content=data["optimalerBitumengehalt"],
        max_bulk_density=data["maximaleRaumdichte"],
        timestamp=_as_utc(data["timestamp"]),
    )


def lab_result_to_document(result: LabResult) -> dict:
    # Firestore stores native datetimes; keep the timestamp unformatted.
    return {
        "userId": result.user_id,
        "punkte": result.points,
        "optimalerBitumengehalt": result.optimal_binder_content,
        "maximaleRaumdichte": result.max_bulk_density,
        "timestamp": result.timestamp,
    }


@contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    try:
        yield
    except exceptions.GoogleAPICallError as exc:
        logger.error(f"Firestore error while trying to {action}: {exc}")
        raise StorageError(f"Failed to {action}") from exc


class FirestoreStateStore:
    """StateStore backed by Cloud Firestore via the Firebase Admin SDK."""

    def __init__(self, client=None, service_account: Optional[str] = None):
        if client is None:
            if not firebase_admin._apps:
                if not service_account:
                    raise ValueError(
                        "FIREBASE_SERVICE_ACCOUNT is required for FirestoreStateStore"
                    )
                firebase_admin.initialize_app(
                    credentials.Certificate(decode_service_account(service_account))
                )
                logger.info("Firebase Admin SDK initialized from service account")
            client = firestore.client()
        self._client = client

    def _doc(self, collection: str, user_id: str):
        return self._client.collection(collection).document(user_id)

    def get_assignment(self, user_id: str) -> Optional[QuizAssignment]:
        with _storage_errors("load quiz assignment"):
            doc = self._doc(ASSIGNMENTS_COLLECTION, user_id).get()
            if not doc.exists:
                return None
            return QuizAssignment(user_id, tuple(doc.to_dict().get("fragen") or []))

    def create_assignment_if_absent(
        self, user_id: str, question_keys: Sequence[str]
    ) -> QuizAssignment:
        doc_ref = self._doc(ASSIGNMENTS_COLLECTION, user_id)
        with _storage_errors("create quiz assignment"):
            try:
                # create() fails if the document exists, unlike set().
                doc_ref.create({"fragen": list(question_keys)})
            except exceptions.AlreadyExists:
                existing = doc_ref.get().to_dict() or {}
                return QuizAssignment(user_id, tuple(existing.get("fragen") or []))
            return QuizAssignment(user_id, tuple(question_keys))

    def get_state(self, user_id: str) -> Optional[QuizState]:
        with _storage_errors("load quiz state"):
            doc = self._doc(QUIZ_STATE_COLLECTION, user_id).get()
            if not doc.exists:
                return None
            return state_from_document(user_id, doc.to_dict())

    def upsert_state(self, user_id: str, mutate: StateMutation) -> QuizState:
        transaction = self._client.transaction()
        doc_ref = self._doc(QUIZ_STATE_COLLECTION, user_id)

        @firestore.transactional
        def _update_state_transaction(transaction, doc_ref):
            snapshot = doc_ref.get(transaction=transaction)
            current = state_from_document(
                user_id, snapshot.to_dict() if snapshot.exists else None
            )
            updated = mutate(current)
            if updated is None:
                return current
            transaction.set(doc_ref, updated.as_dict())
            return updated

        with _storage_errors("update quiz state"):
            return _update_state_transaction(transaction, doc_ref)

    def upsert_lab_result(self, result: LabResult) -> None:
        with _storage_errors("store lab result"):
            self._doc(LAB_RESULTS_COLLECTION, result.user_id).set(
                lab_result_to_document(result)
            )

    def get_lab_result(self, user_id: str) -> Optional[LabResult]:
        with _storage_errors("load lab result"):
            doc = self._doc(LAB_RESULTS_COLLECTION, user_id).get()
            if not doc.exists:
                return None
            return lab_result_from_document(doc.to_dict())

    def insert_export_row_if_absent(self, row: ExportRow) -> bool:
        with _storage_errors("insert export row"):
            try:
                self._doc(EXPORT_ROWS_COLLECTION, row.user_id).create(
                    lab_result_to_document(
                        LabResult(
                            user_id=row.user_id,
                            points=row.points,
                            optimal_binder_content=row.optimal_binder_content,
                            max_bulk_density=row.max_bulk_density,
                            timestamp=row.timestamp,
                        )
                    )
                )
            except exceptions.AlreadyExists:
                return False
            return True

    def list_export_rows(self) -> list[ExportRow]:
        with _storage_errors("list export rows"):
            docs = (
                self._client.collection(EXPORT_ROWS_COLLECTION)
                .order_by("timestamp")
                .stream()
            )
            return [
                ExportRow.from_lab_result(lab_result_from_document(doc.to_dict()))
                for doc in docs
            ]
