"""Question bank loading.

The bank is an ordered list of `Question` records, loaded once when a game
starts with an empty in-memory bank (or when an admin asks for a reload).
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import List, Optional, Protocol

from .common import logger
from .errors import LoadError
from .quiz_types import Question

MAX_QUESTIONS = 30

DIFFICULTY_ORDER = {"easy": 1, "medium": 2, "hard": 3}


class QuestionLoader(Protocol):
    def load_questions(self) -> List[Question]:
        ...


def order_questions(questions: List[Question], limit: Optional[int] = MAX_QUESTIONS) -> List[Question]:
    """Easy, Medium, Hard, then anything else; ties broken by id."""
    def sort_key(q: Question):
        rank = DIFFICULTY_ORDER.get(str(q.difficulty).strip().lower(), 4)
        # numeric ids sort numerically, others lexically after them
        return (rank, 0, int(q.id), "") if q.id.isdigit() else (rank, 1, 0, q.id)

    ordered = sorted(questions, key=sort_key)
    return ordered[:limit] if limit is not None else ordered


class InMemoryQuestionLoader:
    """Serves a fixed list of questions."""

    def __init__(self, questions: List[Question], limit: Optional[int] = MAX_QUESTIONS):
        self.questions = list(questions)
        self.limit = limit

    def load_questions(self) -> List[Question]:
        return order_questions(self.questions, self.limit)


class JsonQuestionLoader:
    """
    Load questions from a JSON quiz file.

    The file holds either a bare list of question records or a quiz object
    ``{"title": ..., "questions": [...]}``. Each record needs ``id``,
    ``text``, four options and a ``correct`` marker; see `Question.from_dict`.
    """

    def __init__(self, filepath: str | Path, limit: Optional[int] = MAX_QUESTIONS):
        self.filepath = Path(filepath)
        self.limit = limit

    def load_questions(self) -> List[Question]:
        logger.info(f"[bank] loading questions from {self.filepath}")
        try:
            with open(self.filepath, 'r') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise LoadError(f"Could not read {self.filepath}: {e}") from e

        records = data.get("questions") if isinstance(data, dict) else data
        if not isinstance(records, list):
            raise LoadError(f"{self.filepath} does not contain a question list")

        questions = [Question.from_dict(r) for r in records]
        ordered = order_questions(questions, self.limit)
        logger.info(f"[bank] {len(ordered)} questions loaded")
        return ordered
