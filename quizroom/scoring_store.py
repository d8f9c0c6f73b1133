"""Scoring store interface and the in-process implementation.

The store owns answers and scores. It enforces that a
``(user_id, question_id, session_id)`` attempt is written at most once,
independently of the in-memory answered-set kept by `GameSession`.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Tuple
import asyncio
import time

from .common import logger
from .errors import DuplicateAttempt


@dataclass
class LeaderboardEntry:
    user_id: str
    display_name: str
    score: int = 0
    correct_answers: int = 0
    attempts: int = 0

    @property
    def accuracy(self) -> float:
        if self.attempts == 0:
            return 0.0
        return round(self.correct_answers * 100.0 / self.attempts, 2)

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "displayName": self.display_name,
            "score": self.score,
            "accuracy": self.accuracy,
            "correctAnswers": self.correct_answers,
            "attempts": self.attempts,
        }


@dataclass
class SessionResult:
    user_id: str
    display_name: str
    session_score: int
    questions_answered: int
    correct_answers: int

    @property
    def accuracy(self) -> float:
        if self.questions_answered == 0:
            return 0.0
        return round(self.correct_answers * 100.0 / self.questions_answered, 2)

    def to_dict(self) -> dict:
        return {
            "userId": self.user_id,
            "displayName": self.display_name,
            "sessionScore": self.session_score,
            "questionsAnswered": self.questions_answered,
            "correctAnswers": self.correct_answers,
            "accuracy": self.accuracy,
        }


@dataclass
class AnswerRecord:
    user_id: str
    question_id: str
    session_id: str
    selected_slot: Optional[str]
    is_correct: bool
    points_earned: int
    answered_at: float = field(default_factory=time.time)


class ScoringStore(Protocol):
    async def upsert_user(self, user_id: str, display_name: Optional[str] = None) -> None:
        ...

    async def record_attempt(
        self,
        user_id: str,
        question_id: str,
        session_id: str,
        selected_slot: Optional[str],
        is_correct: bool,
        points_awarded: int,
    ) -> None:
        ...

    async def fetch_leaderboard(self, limit: int = 10) -> List[LeaderboardEntry]:
        ...

    async def fetch_session_results(self, session_id: str, limit: int = 20) -> List[SessionResult]:
        ...


class InMemoryScoringStore:
    """
    Process-local store. A lock makes each write a single transaction, the
    same way a database transaction with a unique key would.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.answers: Dict[Tuple[str, str, str], AnswerRecord] = {}
        self.performance: Dict[str, LeaderboardEntry] = {}
        self.display_names: Dict[str, str] = {}

    async def upsert_user(self, user_id: str, display_name: Optional[str] = None) -> None:
        user_id = str(user_id)
        if display_name:
            self.display_names[user_id] = display_name
        else:
            self.display_names.setdefault(user_id, user_id)
        entry = self.performance.get(user_id)
        if entry is not None:
            entry.display_name = self.display_names[user_id]

    async def record_attempt(
        self,
        user_id: str,
        question_id: str,
        session_id: str,
        selected_slot: Optional[str],
        is_correct: bool,
        points_awarded: int,
    ) -> None:
        key = (str(user_id), str(question_id), str(session_id))
        async with self._lock:
            if key in self.answers:
                raise DuplicateAttempt()

            points = points_awarded if is_correct else 0
            self.answers[key] = AnswerRecord(
                user_id=key[0],
                question_id=key[1],
                session_id=key[2],
                selected_slot=selected_slot,
                is_correct=is_correct,
                points_earned=points,
            )

            entry = self.performance.get(key[0])
            if entry is None:
                entry = LeaderboardEntry(
                    user_id=key[0],
                    display_name=self.display_names.get(key[0], key[0]),
                )
                self.performance[key[0]] = entry
            entry.score += points
            entry.attempts += 1
            if is_correct:
                entry.correct_answers += 1

        logger.debug(f"[store] recorded {key} correct={is_correct} points={points}")

    async def fetch_leaderboard(self, limit: int = 10) -> List[LeaderboardEntry]:
        entries = sorted(
            self.performance.values(),
            key=lambda e: (e.score, e.accuracy, e.correct_answers),
            reverse=True,
        )
        return entries[:limit]

    async def fetch_session_results(self, session_id: str, limit: int = 20) -> List[SessionResult]:
        totals: Dict[str, SessionResult] = {}
        for record in self.answers.values():
            if record.session_id != str(session_id):
                continue
            result = totals.get(record.user_id)
            if result is None:
                result = SessionResult(
                    user_id=record.user_id,
                    display_name=self.display_names.get(record.user_id, record.user_id),
                    session_score=0,
                    questions_answered=0,
                    correct_answers=0,
                )
                totals[record.user_id] = result
            result.session_score += record.points_earned
            result.questions_answered += 1
            if record.is_correct:
                result.correct_answers += 1

        ordered = sorted(
            totals.values(),
            key=lambda r: (r.session_score, r.accuracy),
            reverse=True,
        )
        return ordered[:limit]
