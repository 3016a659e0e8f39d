"""
Quiz assignment, answer recording and score queries.
"""

from __future__ import annotations

import logging
import random
from dataclasses import dataclass
from typing import Optional, Sequence

from labor_backend.catalog import QuestionCatalog
from labor_backend.db import AnsweredQuestion, QuizState, StateStore
from labor_backend.errors import InvalidInputError

logger = logging.getLogger(__name__)

UNKNOWN_PROMPT = "Unbekannte Frage"
UNKNOWN_ANSWER = "Keine Daten"

_system_random = random.SystemRandom()


def draw_questions(
    keys: Sequence[str], count: int, rng: Optional[random.Random] = None
) -> list[str]:
    """
    Draw ``count`` distinct keys uniformly at random (partial Fisher-Yates).
    """
    if count > len(keys):
        raise ValueError(f"Cannot draw {count} questions from {len(keys)}")
    rng = rng or _system_random
    pool = list(keys)
    for i in range(count):
        j = rng.randrange(i, len(pool))
        pool[i], pool[j] = pool[j], pool[i]
    return pool[:count]


@dataclass(frozen=True)
class SubmitResult:
    accepted: bool
    points_delta: int
    total_points: int


def _require(value: str, name: str) -> None:
    if not value or not value.strip():
        raise InvalidInputError(f"{name} is required")


class QuizService:
    def __init__(
        self,
        store: StateStore,
        catalog: QuestionCatalog,
        quiz_size: int = 7,
        rng: Optional[random.Random] = None,
    ):
        if quiz_size > len(catalog):
            raise ValueError(
                f"Quiz size {quiz_size} exceeds catalog of {len(catalog)} questions"
            )
        self.store = store
        self.catalog = catalog
        self.quiz_size = quiz_size
        self.rng = rng

    def get_assignment(self, user_id: str) -> list[str]:
        """Return the user's question keys, drawing and storing them on first use."""
        _require(user_id, "userId")
        assignment = self.store.get_assignment(user_id)
        if assignment:
            return list(assignment.question_keys)

        drawn = draw_questions(self.catalog.keys, self.quiz_size, self.rng)
        # A concurrent request may have committed first; its keys win.
        assignment = self.store.create_assignment_if_absent(user_id, drawn)
        logger.info(f"Assigned {len(assignment.question_keys)} questions to {user_id}")
        return list(assignment.question_keys)

    def next_question(self, user_id: str) -> Optional[str]:
        """First assigned question not yet answered, or None when all are done."""
        keys = self.get_assignment(user_id)
        state = self.store.get_state(user_id) or QuizState(user_id)
        for key in keys:
            if not state.has_answered(key):
                return key
        return None

    def score(self, question_key: str, submitted_answer: str) -> AnsweredQuestion:
        question = self.catalog.get(question_key)
        if question is None:
            return AnsweredQuestion(
                question_key=question_key,
                prompt=UNKNOWN_PROMPT,
                submitted_answer=submitted_answer,
                correct_answer=UNKNOWN_ANSWER,
                points=0,
            )
        points = question.points if submitted_answer == question.answer else 0
        return AnsweredQuestion(
            question_key=question_key,
            prompt=question.prompt,
            submitted_answer=submitted_answer,
            correct_answer=question.answer,
            points=points,
        )

    def submit_answer(
        self, user_id: str, question_key: str, submitted_answer: str
    ) -> SubmitResult:
        _require(user_id, "userId")
        _require(question_key, "raum")
        if question_key not in self.catalog:
            logger.warning(f"Unknown question {question_key!r} from {user_id}")
        record = self.score(question_key, submitted_answer)

        accepted = False

        def _append(state: QuizState) -> Optional[QuizState]:
            # Reassigned on every attempt; only the committed one counts.
            nonlocal accepted
            accepted = not state.has_answered(question_key)
            if not accepted:
                return None
            return QuizState(state.user_id, state.answers + [record])

        state = self.store.upsert_state(user_id, _append)
        if not accepted:
            logger.info(f"{user_id} already answered {question_key}; ignoring")
        return SubmitResult(
            accepted=accepted,
            points_delta=record.points if accepted else 0,
            total_points=state.total_points,
        )

    def get_state(self, user_id: str) -> QuizState:
        _require(user_id, "userId")
        return self.store.get_state(user_id) or QuizState(user_id)

    def get_raw_state(self, user_id: str) -> Optional[QuizState]:
        _require(user_id, "userId")
        return self.store.get_state(user_id)

    def get_points(self, user_id: str) -> int:
        return self.get_state(user_id).total_points

    def get_answered(self, user_id: str) -> list[AnsweredQuestion]:
        return self.get_state(user_id).answers
