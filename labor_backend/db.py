"""
State store abstraction for the quiz and lab results.

Provides the record types, the ``StateStore`` interface, an in-memory
implementation for development/tests and a SQLAlchemy implementation for
Postgres (including Supabase) or SQLite.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, Optional, Protocol, Sequence

from sqlalchemy import JSON, Column, Float, Integer, String, create_engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from labor_backend.errors import StorageError

logger = logging.getLogger(__name__)

StateMutation = Callable[["QuizState"], Optional["QuizState"]]


@dataclass(frozen=True)
class QuizAssignment:
    user_id: str
    question_keys: tuple[str, ...]


@dataclass
class AnsweredQuestion:
    question_key: str
    prompt: str
    submitted_answer: str
    correct_answer: str
    points: int

    def as_dict(self) -> dict:
        return {
            "raum": self.question_key,
            "frage": self.prompt,
            "gegebeneAntwort": self.submitted_answer,
            "richtigeAntwort": self.correct_answer,
            "punkte": self.points,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AnsweredQuestion":
        return cls(
            question_key=data["raum"],
            prompt=data.get("frage", ""),
            submitted_answer=data.get("gegebeneAntwort", ""),
            correct_answer=data.get("richtigeAntwort", ""),
            points=int(data.get("punkte", 0)),
        )


@dataclass
class QuizState:
    user_id: str
    answers: list[AnsweredQuestion] = field(default_factory=list)

    @property
    def total_points(self) -> int:
        # Always derived from the answers, never stored on its own.
        return sum(answer.points for answer in self.answers)

    def has_answered(self, question_key: str) -> bool:
        return any(answer.question_key == question_key for answer in self.answers)

    def as_dict(self) -> dict:
        return {
            "punkte": self.total_points,
            "beantworteteFragen": [answer.as_dict() for answer in self.answers],
        }


@dataclass
class LabResult:
    user_id: str
    points: float
    optimal_binder_content: float
    max_bulk_density: float
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "punkte": self.points,
            "optimalerBitumengehalt": self.optimal_binder_content,
            "maximaleRaumdichte": self.max_bulk_density,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class ExportRow:
    user_id: str
    points: float
    optimal_binder_content: float
    max_bulk_density: float
    timestamp: datetime

    @classmethod
    def from_lab_result(cls, result: LabResult) -> "ExportRow":
        return cls(
            user_id=result.user_id,
            points=result.points,
            optimal_binder_content=result.optimal_binder_content,
            max_bulk_density=result.max_bulk_density,
            timestamp=result.timestamp,
        )


class StateStore(Protocol):
    """Interface every persistence backend implements."""

    def get_assignment(self, user_id: str) -> Optional[QuizAssignment]:
        ...

    def create_assignment_if_absent(
        self, user_id: str, question_keys: Sequence[str]
    ) -> QuizAssignment:
        """Store the keys unless an assignment exists; return the committed one."""
        ...

    def get_state(self, user_id: str) -> Optional[QuizState]:
        ...

    def upsert_state(self, user_id: str, mutate: StateMutation) -> QuizState:
        """
        Atomically read the user's state, apply ``mutate`` and write the result.

        ``mutate`` receives the current state (empty if none) and returns the
        new state, or None to leave it untouched. It may be called more than
        once when the backend retries, so it must not have side effects.
        """
        ...

    def upsert_lab_result(self, result: LabResult) -> None:
        ...

    def get_lab_result(self, user_id: str) -> Optional[LabResult]:
        ...

    def insert_export_row_if_absent(self, row: ExportRow) -> bool:
        ...

    def list_export_rows(self) -> list[ExportRow]:
        ...


class InMemoryStateStore:
    """Simple in-memory store for development and tests."""

    def __init__(self):
        self._lock = threading.Lock()
        self.assignments: Dict[str, QuizAssignment] = {}
        self.states: Dict[str, QuizState] = {}
        self.lab_results: Dict[str, LabResult] = {}
        self.export_rows: Dict[str, ExportRow] = {}

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._lock:
            self.assignments.clear()
            self.states.clear()
            self.lab_results.clear()
            self.export_rows.clear()

    def get_assignment(self, user_id: str) -> Optional[QuizAssignment]:
        with self._lock:
            return self.assignments.get(user_id)

    def create_assignment_if_absent(
        self, user_id: str, question_keys: Sequence[str]
    ) -> QuizAssignment:
        with self._lock:
            existing = self.assignments.get(user_id)
            if existing:
                return existing
            assignment = QuizAssignment(user_id, tuple(question_keys))
            self.assignments[user_id] = assignment
            return assignment

    def get_state(self, user_id: str) -> Optional[QuizState]:
        with self._lock:
            state = self.states.get(user_id)
            return copy.deepcopy(state) if state else None

    def upsert_state(self, user_id: str, mutate: StateMutation) -> QuizState:
        with self._lock:
            current = copy.deepcopy(self.states.get(user_id)) or QuizState(user_id)
            updated = mutate(current)
            if updated is None:
                return current
            self.states[user_id] = copy.deepcopy(updated)
            return updated

    def upsert_lab_result(self, result: LabResult) -> None:
        with self._lock:
            self.lab_results[result.user_id] = copy.deepcopy(result)

    def get_lab_result(self, user_id: str) -> Optional[LabResult]:
        with self._lock:
            result = self.lab_results.get(user_id)
            return copy.deepcopy(result) if result else None

    def insert_export_row_if_absent(self, row: ExportRow) -> bool:
        with self._lock:
            if row.user_id in self.export_rows:
                return False
            self.export_rows[row.user_id] = row
            return True

    def list_export_rows(self) -> list[ExportRow]:
        with self._lock:
            return list(self.export_rows.values())


@contextmanager
def _storage_errors(action: str) -> Iterator[None]:
    try:
        yield
    except SQLAlchemyError as exc:
        logger.error(f"Database error while trying to {action}: {exc}")
        raise StorageError(f"Failed to {action}") from exc


def _to_epoch(value: datetime) -> float:
    return value.timestamp()


def _from_epoch(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class SqlStateStore:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    max_conflict_retries = 10

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlStateStore")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    @staticmethod
    def _to_state(user_id: str, row: Optional["QuizStateRow"]) -> QuizState:
        if row is None:
            return QuizState(user_id)
        return QuizState(
            user_id=user_id,
            answers=[AnsweredQuestion.from_dict(item) for item in row.answers or []],
        )

    @staticmethod
    def _to_lab_result(row: "LabResultRow") -> LabResult:
        return LabResult(
            user_id=row.user_id,
            points=row.points,
            optimal_binder_content=row.optimal_binder_content,
            max_bulk_density=row.max_bulk_density,
            timestamp=_from_epoch(row.recorded_at),
        )

    def get_assignment(self, user_id: str) -> Optional[QuizAssignment]:
        with _storage_errors("load quiz assignment"):
            with self.Session() as session:
                row = session.get(AssignmentRow, user_id)
                if not row:
                    return None
                return QuizAssignment(user_id, tuple(row.question_keys))

    def create_assignment_if_absent(
        self, user_id: str, question_keys: Sequence[str]
    ) -> QuizAssignment:
        with _storage_errors("create quiz assignment"):
            with self.Session() as session:
                existing = session.get(AssignmentRow, user_id)
                if existing:
                    return QuizAssignment(user_id, tuple(existing.question_keys))
                session.add(
                    AssignmentRow(
                        user_id=user_id,
                        question_keys=list(question_keys),
                        created_at=time.time(),
                    )
                )
                try:
                    session.commit()
                except IntegrityError:
                    # Another request committed first; its assignment wins.
                    session.rollback()
                    winner = session.get(AssignmentRow, user_id)
                    if winner is None:
                        raise StorageError(
                            f"Assignment for {user_id} vanished after conflict"
                        )
                    return QuizAssignment(user_id, tuple(winner.question_keys))
                return QuizAssignment(user_id, tuple(question_keys))

    def get_state(self, user_id: str) -> Optional[QuizState]:
        with _storage_errors("load quiz state"):
            with self.Session() as session:
                row = session.get(QuizStateRow, user_id)
                if not row:
                    return None
                return self._to_state(user_id, row)

    def upsert_state(self, user_id: str, mutate: StateMutation) -> QuizState:
        """
        Atomic read-modify-write of the quiz state.

        Updates are a compare-and-set on ``version`` and inserts rely on the
        primary key, so a concurrent writer makes this attempt retry with a
        fresh read instead of overwriting. Works without row locks (SQLite).
        """
        with _storage_errors("update quiz state"):
            for _ in range(self.max_conflict_retries):
                with self.Session() as session:
                    row = session.get(QuizStateRow, user_id)
                    current = self._to_state(user_id, row)
                    updated = mutate(current)
                    if updated is None:
                        return current

                    answers = [answer.as_dict() for answer in updated.answers]
                    if row is None:
                        session.add(
                            QuizStateRow(
                                user_id=user_id,
                                answers=answers,
                                version=1,
                                updated_at=time.time(),
                            )
                        )
                        try:
                            session.commit()
                        except IntegrityError:
                            session.rollback()
                            logger.info(f"Concurrent state insert for {user_id}, retrying")
                            continue
                        return updated

                    changed = (
                        session.query(QuizStateRow)
                        .filter(
                            QuizStateRow.user_id == user_id,
                            QuizStateRow.version == row.version,
                        )
                        .update(
                            {
                                QuizStateRow.answers: answers,
                                QuizStateRow.version: row.version + 1,
                                QuizStateRow.updated_at: time.time(),
                            },
                            synchronize_session=False,
                        )
                    )
                    session.commit()
                    if changed == 1:
                        return updated
                    logger.info(f"Concurrent state update for {user_id}, retrying")
            raise StorageError(f"Could not update quiz state for {user_id}")

    def upsert_lab_result(self, result: LabResult) -> None:
        with _storage_errors("store lab result"):
            for _ in range(self.max_conflict_retries):
                with self.Session() as session:
                    row = session.get(LabResultRow, result.user_id)
                    if row:
                        row.points = result.points
                        row.optimal_binder_content = result.optimal_binder_content
                        row.max_bulk_density = result.max_bulk_density
                        row.recorded_at = _to_epoch(result.timestamp)
                    else:
                        session.add(
                            LabResultRow(
                                user_id=result.user_id,
                                points=result.points,
                                optimal_binder_content=result.optimal_binder_content,
                                max_bulk_density=result.max_bulk_density,
                                recorded_at=_to_epoch(result.timestamp),
                            )
                        )
                    try:
                        session.commit()
                    except IntegrityError:
                        session.rollback()
                        continue
                    return
            raise StorageError(f"Could not store lab result for {result.user_id}")

    def get_lab_result(self, user_id: str) -> Optional[LabResult]:
        with _storage_errors("load lab result"):
            with self.Session() as session:
                row = session.get(LabResultRow, user_id)
                return self._to_lab_result(row) if row else None

    def insert_export_row_if_absent(self, row: ExportRow) -> bool:
        with _storage_errors("insert export row"):
            with self.Session() as session:
                if session.get(ExportEntryRow, row.user_id):
                    return False
                session.add(
                    ExportEntryRow(
                        user_id=row.user_id,
                        points=row.points,
                        optimal_binder_content=row.optimal_binder_content,
                        max_bulk_density=row.max_bulk_density,
                        recorded_at=_to_epoch(row.timestamp),
                    )
                )
                try:
                    session.commit()
                except IntegrityError:
                    session.rollback()
                    return False
                return True

    def list_export_rows(self) -> list[ExportRow]:
        with _storage_errors("list export rows"):
            with self.Session() as session:
                rows = (
                    session.query(ExportEntryRow)
                    .order_by(ExportEntryRow.recorded_at.asc())
                    .all()
                )
                return [
                    ExportRow(
                        user_id=row.user_id,
                        points=row.points,
                        optimal_binder_content=row.optimal_binder_content,
                        max_bulk_density=row.max_bulk_density,
                        timestamp=_from_epoch(row.recorded_at),
                    )
                    for row in rows
                ]


Base = declarative_base()


class AssignmentRow(Base):
    __tablename__ = "quiz_assignments"

    user_id = Column(String, primary_key=True)
    question_keys = Column(JSON, nullable=False)
    created_at = Column(Float, nullable=False)


class QuizStateRow(Base):
    __tablename__ = "quiz_states"

    user_id = Column(String, primary_key=True)
    answers = Column(JSON, nullable=False)
    version = Column(Integer, nullable=False, default=0, server_default="0")
    updated_at = Column(Float, nullable=False)


class LabResultRow(Base):
    __tablename__ = "lab_results"

    user_id = Column(String, primary_key=True)
    points = Column(Float, nullable=False)
    optimal_binder_content = Column(Float, nullable=False)
    max_bulk_density = Column(Float, nullable=False)
    recorded_at = Column(Float, nullable=False)


class ExportEntryRow(Base):
    __tablename__ = "export_rows"

    user_id = Column(String, primary_key=True)
    points = Column(Float, nullable=False)
    optimal_binder_content = Column(Float, nullable=False)
    max_bulk_density = Column(Float, nullable=False)
    recorded_at = Column(Float, nullable=False)
