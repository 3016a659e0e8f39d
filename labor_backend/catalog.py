"""
Static quiz catalog: question keys, prompts, canonical answers and points.

The catalog is loaded once at startup and never mutated afterwards, so it is
shared between requests without locking.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, Iterator, Mapping, Optional

DEFAULT_POINTS = 10


@dataclass(frozen=True)
class QuizQuestion:
    key: str
    prompt: str
    answer: str
    points: int = DEFAULT_POINTS


DEFAULT_QUESTIONS: tuple[QuizQuestion, ...] = (
    QuizQuestion(
        key="Gesteinsraum",
        prompt="Welche Aussage zur CE-Kennzeichnung von Asphaltmischgut ist korrekt?",
        answer="Sie zeigt an, dass gesetzliche Vorschriften eingehalten wurden",
    ),
    QuizQuestion(
        key="Rohdichte",
        prompt=(
            "Mit welchem volumetrischen Kennwert wird die maximale Dichte eines "
            "Asphaltmischguts ohne Hohlräume beschrieben?"
        ),
        answer="Rohdichte",
    ),
    QuizQuestion(
        key="Mischer",
        prompt="Warum ist eine Typprüfung von Asphaltmischgut notwendig?",
        answer="Um die normgemäßen Anforderungen an das Mischgut zu überprüfen",
    ),
    QuizQuestion(
        key="Marshall",
        prompt="Wie wird der optimale Bindemittelgehalt eines Asphaltmischguts ermittelt?",
        answer=(
            "Durch Erstellen einer Polynomfunktion und Finden des Maximums der "
            "Raumdichten"
        ),
    ),
    QuizQuestion(
        key="Pyknometer",
        prompt=(
            "Wofür steht die Masse m_2 im Volumetrischen Verfahren zur Ermittlung "
            "der Rohdichte nach ÖNORM EN 12697-8?"
        ),
        answer="Masse des Pyknometers mit Aufsatz, Feder und Laborprobe",
    ),
    QuizQuestion(
        key="Hohlraumgehalt",
        prompt=(
            "Ab wie viel % Hohlraumgehalt ist Verfahren D: Raumdichte durch "
            "Ausmessen der ÖNORM EN 12697-6 empfohlen?"
        ),
        answer="Ab 10%",
    ),
    QuizQuestion(
        key="ÖNORM EN 12697-8",
        prompt=(
            "Wie wird der Hohlraumgehalt eines Probekörpers nach ÖNORM EN 12697-8 "
            "ermittelt?"
        ),
        answer="Aus der Differenz von Raumdichte und Rohdichte",
    ),
    QuizQuestion(
        key="NaBe",
        prompt=(
            "Wie viele Recyclingasphalt muss ein Asphaltmischgut gemäß „Aktionsplan "
            "nachhaltige öffentlichen Beschaffung (naBe)“ mindestens enthalten?"
        ),
        answer="10M%",
    ),
    QuizQuestion(
        key="WPK",
        prompt="Wozu dient die Werkseigene Produktionskontrolle (WPK)?",
        answer="Zur Qualitätssicherung während der Produktion in Eigenüberwachung",
    ),
    QuizQuestion(
        key="Grenzsieblinien",
        prompt="Wo findet man Grenzsieblinien von Asphaltmischgütern?",
        answer="In den Produktanforderungen für Asphaltmischgut (ÖNORM B 358x-x)",
    ),
    QuizQuestion(
        key="Raumdichte",
        prompt=(
            "Welche Verfahren zur Bestimmung der Raumdichte von Asphaltprobekörpern "
            "nach ÖNORM EN 12697-6 sind für dichte Probekörper bis etwa 7% "
            "Hohlraumgehalt geeignet?"
        ),
        # The trailing space is part of the answer string the front end sends.
        answer=(
            "Verfahren A: Raumdichte — trocken und Verfahren B: Raumdichte — SSD "
        ),
    ),
)


class QuestionCatalog:
    """Read-only, ordered mapping from question key to QuizQuestion."""

    def __init__(self, questions: Iterable[QuizQuestion]):
        entries: dict[str, QuizQuestion] = {}
        for question in questions:
            if not question.key:
                raise ValueError("Question key must not be empty")
            if question.key in entries:
                raise ValueError(f"Duplicate question key: {question.key}")
            entries[question.key] = question
        if not entries:
            raise ValueError("Question catalog must not be empty")
        self._questions: Mapping[str, QuizQuestion] = MappingProxyType(entries)

    def __len__(self) -> int:
        return len(self._questions)

    def __iter__(self) -> Iterator[QuizQuestion]:
        return iter(self._questions.values())

    def __contains__(self, key: object) -> bool:
        return key in self._questions

    @property
    def keys(self) -> tuple[str, ...]:
        return tuple(self._questions)

    def get(self, key: str) -> Optional[QuizQuestion]:
        return self._questions.get(key)


def load_catalog(path: str | Path | None = None) -> QuestionCatalog:
    """
    Build a catalog from a JSON file, or the built-in questions if no path.

    The file holds a list of objects with the keys ``raum``, ``frage``,
    ``antwort`` and optionally ``punkte``.
    """
    if path is None:
        return QuestionCatalog(DEFAULT_QUESTIONS)

    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    if not isinstance(raw, list):
        raise ValueError(f"Question catalog {path} must contain a JSON list")

    questions = []
    for item in raw:
        try:
            questions.append(
                QuizQuestion(
                    key=item["raum"],
                    prompt=item["frage"],
                    answer=item["antwort"],
                    points=int(item.get("punkte", DEFAULT_POINTS)),
                )
            )
        except (KeyError, TypeError) as exc:
            raise ValueError(f"Invalid question entry in {path}: {item!r}") from exc
    return QuestionCatalog(questions)
