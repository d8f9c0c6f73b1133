"""Answer processing: validation, scoring and write-through to the store."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from .broadcast import ConnectionHub
from .common import logger
from .errors import (
    DuplicateAnswer, DuplicateAttempt, InvalidRequest, NoActiveQuestion,
    StoreError, StoreWriteFailure,
)
from .quiz_types import GameSession, normalize_slot
from .scoring_store import LeaderboardEntry, ScoringStore

BASE_POINTS = 10
BONUS_POINTS = 5
BONUS_WINDOW = 5.0  # seconds after opening in which the first correct answer earns the bonus
LEADERBOARD_LIMIT = 10


@dataclass
class AnswerOutcome:
    correct: bool
    points: int
    correct_slot: str
    correct_answer: str
    leaderboard: List[LeaderboardEntry] = field(default_factory=list)

    def to_dict(self) -> dict:
        if self.correct:
            message = f"Correct! +{self.points} points"
        else:
            message = f"Wrong answer! Correct was: {self.correct_answer}"
        return {
            "message": message,
            "correct": self.correct,
            "points": self.points,
            "correctAnswerSlot": self.correct_slot,
            "correctAnswer": self.correct_answer,
            "leaderboard": [e.to_dict() for e in self.leaderboard],
        }


class AnswerProcessor:
    """
    Turns one inbound ``(user_id, raw_answer)`` into a scored outcome.

    The answered-set check, the bonus claim and the point calculation all
    happen before the first ``await``, so two submissions racing on the event
    loop can never both pass the duplicate check or both win the bonus.
    """

    def __init__(
        self,
        session: GameSession,
        store: ScoringStore,
        hub: ConnectionHub,
        base_points: int = BASE_POINTS,
        bonus_points: int = BONUS_POINTS,
        bonus_window: float = BONUS_WINDOW,
        leaderboard_limit: int = LEADERBOARD_LIMIT,
    ):
        self.session = session
        self.store = store
        self.hub = hub
        self.base_points = base_points
        self.bonus_points = bonus_points
        self.bonus_window = bonus_window
        self.leaderboard_limit = leaderboard_limit

    async def submit_answer(self, user_id: str, raw_answer, display_name: Optional[str] = None) -> AnswerOutcome:
        session = self.session
        question = session.get_current_question()
        if not session.accepting_answers or question is None:
            raise NoActiveQuestion()

        if user_id is None or str(user_id).strip() == "":
            raise InvalidRequest("userId is required")
        user_id = str(user_id)
        session_id = session.session_id

        if not session.record_answer_attempt(user_id, question.id):
            raise DuplicateAnswer()

        slot = normalize_slot(raw_answer)
        is_correct = slot is not None and slot is question.correct

        points = 0
        if is_correct:
            points = self.base_points
            if session.claim_first_correct() and session.elapsed() < self.bonus_window:
                points += self.bonus_points

        logger.info(
            f"[answer] user={user_id} question={question.id} session={session_id} "
            f"answer={raw_answer!r} slot={slot.value if slot else None} correct={is_correct} points={points}"
        )

        try:
            await self.store.upsert_user(user_id, display_name)
            await self.store.record_attempt(
                user_id,
                question.id,
                session_id,
                slot.value if slot else None,
                is_correct,
                points,
            )
        except DuplicateAttempt as e:
            raise DuplicateAnswer(e.message) from e
        except StoreError as e:
            # the answered-set mark stays; the user cannot retry this question
            logger.error(f"[answer] store write failed for user={user_id} question={question.id}: {e}")
            raise StoreWriteFailure() from e

        leaderboard = await self.refresh_leaderboard()

        return AnswerOutcome(
            correct=is_correct,
            points=points,
            correct_slot=question.correct.value,
            correct_answer=question.correct_text,
            leaderboard=leaderboard,
        )

    async def refresh_leaderboard(self) -> List[LeaderboardEntry]:
        """Fetch the leaderboard and push it to every client."""
        try:
            leaderboard = await self.store.fetch_leaderboard(self.leaderboard_limit)
        except StoreError as e:
            logger.error(f"[answer] leaderboard fetch failed: {e}")
            return []
        await self.hub.emit_to_all("leaderboardUpdate", {
            "entries": [e.to_dict() for e in leaderboard],
        })
        return leaderboard
