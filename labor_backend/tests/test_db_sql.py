import os
import tempfile
import threading
import unittest
from datetime import datetime, timezone
from unittest.mock import patch

from sqlalchemy.exc import OperationalError

from labor_backend.db import (
    AnsweredQuestion,
    ExportRow,
    LabResult,
    QuizState,
    SqlStateStore,
)
from labor_backend.errors import StorageError


def _answer(key, points=10):
    return AnsweredQuestion(key, f"{key}?", "a", "a", points)


class SqlStateStoreTests(unittest.TestCase):
    """
    Uses SQLite via SQLAlchemy URL for fast/local testing of the SQL store logic.
    """

    @classmethod
    def setUpClass(cls):
        cls.db = SqlStateStore("sqlite+pysqlite:///:memory:")

    def test_assignment_first_write_wins(self):
        self.assertIsNone(self.db.get_assignment("a1"))
        first = self.db.create_assignment_if_absent("a1", ["x", "y"])
        second = self.db.create_assignment_if_absent("a1", ["z"])
        self.assertEqual(first.question_keys, ("x", "y"))
        self.assertEqual(second.question_keys, ("x", "y"))
        self.assertEqual(self.db.get_assignment("a1").question_keys, ("x", "y"))

    def test_upsert_state_creates_and_appends(self):
        self.assertIsNone(self.db.get_state("s1"))

        def _append(key):
            return lambda state: QuizState(state.user_id, state.answers + [_answer(key)])

        self.db.upsert_state("s1", _append("Rohdichte"))
        state = self.db.upsert_state("s1", _append("WPK"))
        self.assertEqual(state.total_points, 20)

        loaded = self.db.get_state("s1")
        self.assertEqual([a.question_key for a in loaded.answers], ["Rohdichte", "WPK"])
        self.assertEqual(loaded.total_points, 20)

    def test_upsert_state_noop_leaves_nothing_behind(self):
        state = self.db.upsert_state("s2", lambda state: None)
        self.assertEqual(state.answers, [])
        self.assertIsNone(self.db.get_state("s2"))

    def test_lab_result_latest_write_wins(self):
        when = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
        self.db.upsert_lab_result(LabResult("r1", 70, 5.2, 2.41, when))
        self.db.upsert_lab_result(LabResult("r1", 40, 5.0, 2.3, when))

        result = self.db.get_lab_result("r1")
        self.assertEqual(result.points, 40)
        self.assertEqual(result.max_bulk_density, 2.3)
        self.assertAlmostEqual(
            result.timestamp.timestamp(), when.timestamp(), places=3
        )
        self.assertIsNone(self.db.get_lab_result("missing"))

    def test_export_rows_insert_if_absent(self):
        early = datetime(2025, 1, 1, tzinfo=timezone.utc)
        late = datetime(2025, 2, 1, tzinfo=timezone.utc)
        self.assertTrue(self.db.insert_export_row_if_absent(ExportRow("e2", 1, 2, 3, late)))
        self.assertTrue(self.db.insert_export_row_if_absent(ExportRow("e1", 4, 5, 6, early)))
        self.assertFalse(self.db.insert_export_row_if_absent(ExportRow("e1", 9, 9, 9, late)))

        rows = [row for row in self.db.list_export_rows() if row.user_id in ("e1", "e2")]
        self.assertEqual([row.user_id for row in rows], ["e1", "e2"])
        self.assertEqual(rows[0].points, 4)

    def test_database_errors_become_storage_errors(self):
        with patch.object(
            self.db, "Session", side_effect=OperationalError("select", {}, Exception("gone"))
        ):
            with self.assertRaises(StorageError):
                self.db.get_state("s3")


class SqlStateStoreConcurrencyTests(unittest.TestCase):
    """
    File-backed SQLite so every session gets its own connection.
    """

    def setUp(self):
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        url = f"sqlite+pysqlite:///{os.path.join(tmpdir.name, 'state.db')}"
        self.db = SqlStateStore(url)
        self.addCleanup(self.db.engine.dispose)

    def _append(self, key):
        def mutate(state):
            if state.has_answered(key):
                return None
            return QuizState(state.user_id, state.answers + [_answer(key)])

        return mutate

    def test_concurrent_distinct_answers_all_persist(self):
        self.db.upsert_state("c1", self._append("WPK"))
        keys = ["Rohdichte", "Mischer", "Marshall", "Raumdichte"]
        barrier = threading.Barrier(len(keys))
        errors = []

        def _submit(key):
            barrier.wait()
            try:
                self.db.upsert_state("c1", self._append(key))
            except Exception as exc:
                errors.append(exc)

        threads = [threading.Thread(target=_submit, args=(key,)) for key in keys]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        stored = self.db.get_state("c1")
        self.assertEqual(
            sorted(answer.question_key for answer in stored.answers),
            sorted(keys + ["WPK"]),
        )
        self.assertEqual(stored.total_points, 50)

    def test_insert_conflict_is_retried_with_fresh_state(self):
        calls = []

        def _append_after_competing_insert(state):
            calls.append([answer.question_key for answer in state.answers])
            if len(calls) == 1:
                # Another writer creates the row before this attempt commits.
                self.db.upsert_state("c2", self._append("WPK"))
            return QuizState(state.user_id, state.answers + [_answer("Mischer")])

        with self.assertLogs("labor_backend.db", level="INFO"):
            updated = self.db.upsert_state("c2", _append_after_competing_insert)

        self.assertEqual(calls, [[], ["WPK"]])
        self.assertEqual([a.question_key for a in updated.answers], ["WPK", "Mischer"])
        stored = self.db.get_state("c2")
        self.assertEqual([a.question_key for a in stored.answers], ["WPK", "Mischer"])

    def test_stale_update_is_retried_with_fresh_state(self):
        self.db.upsert_state("c3", self._append("WPK"))
        calls = []

        def _append_after_competing_update(state):
            calls.append(len(state.answers))
            if len(calls) == 1:
                self.db.upsert_state("c3", self._append("Rohdichte"))
            return QuizState(state.user_id, state.answers + [_answer("Mischer")])

        self.db.upsert_state("c3", _append_after_competing_update)

        self.assertEqual(calls, [1, 2])
        stored = self.db.get_state("c3")
        self.assertEqual(
            [a.question_key for a in stored.answers], ["WPK", "Rohdichte", "Mischer"]
        )

    def test_gives_up_after_repeated_conflicts(self):
        self.db.upsert_state("c4", self._append("WPK"))
        competing = iter(range(100))

        def _always_overtaken(state):
            self.db.upsert_state("c4", self._append(f"Frage{next(competing)}"))
            return QuizState(state.user_id, state.answers + [_answer("Mischer")])

        with self.assertRaisesRegex(StorageError, "Could not update quiz state for c4"):
            self.db.upsert_state("c4", _always_overtaken)

        stored = self.db.get_state("c4")
        self.assertNotIn("Mischer", [a.question_key for a in stored.answers])
        self.assertEqual(len(stored.answers), 1 + SqlStateStore.max_conflict_retries)


if __name__ == "__main__":
    unittest.main()
