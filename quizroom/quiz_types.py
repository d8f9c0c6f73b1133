"""Quiz data types and session state management."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple
import random
import string
import time

from .common import logger
from .errors import LoadError, NoQuestionsAvailable


class Slot(Enum):
    A = "A"
    B = "B"
    C = "C"
    D = "D"


SLOTS: Tuple[Slot, ...] = (Slot.A, Slot.B, Slot.C, Slot.D)


class Phase(Enum):
    IDLE = "idle"
    QUESTION_OPEN = "question_open"
    QUESTION_CLOSED = "question_closed"
    COMPLETED = "completed"


def normalize_slot(raw) -> Optional[Slot]:
    """
    Map raw answer input to a canonical slot.

    Accepts bare letters ("b", "B") and descriptive forms ("option_b",
    "Option B"). Anything else maps to None, which callers treat as a wrong
    answer rather than an error.
    """
    if raw is None:
        return None
    text = str(raw).strip().upper()
    for prefix in ("OPTION_", "OPTION "):
        if text.startswith(prefix):
            text = text[len(prefix):].strip()
            break
    try:
        return Slot(text)
    except ValueError:
        return None


@dataclass(frozen=True)
class Question:
    id: str
    text: str
    options: Tuple[str, str, str, str]  # indexed by SLOTS order
    correct: Slot
    difficulty: str = "Medium"

    def option_text(self, slot: Slot) -> str:
        return self.options[SLOTS.index(slot)]

    @property
    def correct_text(self) -> str:
        return self.option_text(self.correct)

    def options_dict(self) -> Dict[str, str]:
        return {slot.value: text for slot, text in zip(SLOTS, self.options)}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "options": self.options_dict(),
            "correct": self.correct.value,
            "difficulty": self.difficulty,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Question":
        """
        Build a question from either ``{"options": {"A": ..}}`` or the flat
        ``option_a``..``option_d`` columns.
        """
        if not isinstance(data, dict):
            raise LoadError(f"Malformed question record: expected an object, got {type(data).__name__}")
        try:
            raw_options = data.get("options")
            if isinstance(raw_options, dict):
                options = tuple(str(raw_options[s.value]) for s in SLOTS)
            elif isinstance(raw_options, list):
                options = tuple(str(o) for o in raw_options)
            else:
                options = tuple(str(data[f"option_{s.value.lower()}"]) for s in SLOTS)
            text = str(data["text"])
            qid = str(data["id"])
        except (KeyError, TypeError, AttributeError) as e:
            raise LoadError(f"Malformed question record: {e}") from e

        if len(options) != len(SLOTS):
            raise LoadError(f"Question {qid} must have exactly four options")

        correct = normalize_slot(data.get("correct"))
        if correct is None:
            raise LoadError(f"Question {qid} has an unrecognised correct marker: {data.get('correct')!r}")

        return cls(
            id=qid,
            text=text,
            options=options,
            correct=correct,
            difficulty=str(data.get("difficulty") or "Medium"),
        )


@dataclass
class QuestionView:
    """Question without the correct answer (for the open-question broadcast)."""
    id: str
    text: str
    options: Dict[str, str]
    difficulty: str
    index: int
    total: int

    def to_dict(self, time_limit: float, session_id: Optional[str]) -> dict:
        return {
            "id": self.id,
            "text": self.text,
            "options": self.options,
            "difficulty": self.difficulty,
            "time": time_limit,
            "questionNumber": self.index + 1,
            "totalQuestions": self.total,
            "sessionId": session_id,
        }

    @classmethod
    def from_question(cls, question: Question, index: int, total: int) -> "QuestionView":
        return cls(
            id=question.id,
            text=question.text,
            options=question.options_dict(),
            difficulty=question.difficulty,
            index=index,
            total=total,
        )


def generate_session_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"game_{int(time.time() * 1000)}_{suffix}"


AnswerKey = Tuple[str, str, str]  # (user_id, question_id, session_id)


@dataclass
class GameSession:
    """
    The single live game. All mutation happens on the event loop thread and
    none of the check-and-set methods await, so each one is atomic with
    respect to other coroutines.
    """
    clock: Callable[[], float] = time.monotonic

    questions: List[Question] = field(default_factory=list)
    session_id: Optional[str] = None
    question_index: int = -1
    accepting_answers: bool = False
    is_active: bool = False

    answered_keys: Set[AnswerKey] = field(default_factory=set)
    first_correct_claimed: bool = False
    question_opened_at: Optional[float] = None

    # Bumped on start/reset/open so that stale timers can tell they are stale
    generation: int = 0

    # ---------- Lifecycle ----------

    def start(self, bank: List[Question]) -> str:
        """Begin a fresh session over ``bank``. Returns the new session id."""
        if not bank:
            raise NoQuestionsAvailable()
        self.questions = list(bank)
        self.session_id = generate_session_id()
        self.question_index = -1
        self.accepting_answers = False
        self.is_active = True
        self._reset_question_state()
        self.generation += 1
        logger.debug(f"[GameSession] started session {self.session_id} with {len(bank)} questions")
        return self.session_id

    def reset(self) -> None:
        """Deactivate the session; it stays inert until the next start."""
        logger.debug(f"[GameSession] resetting session {self.session_id}")
        self.question_index = -1
        self.accepting_answers = False
        self.is_active = False
        self._reset_question_state()
        self.generation += 1

    @property
    def total_questions(self) -> int:
        return len(self.questions)

    @property
    def is_complete(self) -> bool:
        return self.session_id is not None and self.question_index >= len(self.questions)

    def open_next_question(self) -> Optional[QuestionView]:
        """
        Advance to the next question. Returns None once the bank is exhausted,
        and keeps returning None on later calls without moving the index.
        """
        if not self.is_active:
            return None

        self.accepting_answers = False
        self.question_index += 1
        if self.question_index >= len(self.questions):
            self.question_index = len(self.questions)
            self.is_active = False
            self._reset_question_state()
            logger.debug(f"[GameSession] session {self.session_id} completed")
            return None

        self._reset_question_state()
        self.question_opened_at = self.clock()
        self.accepting_answers = True
        self.generation += 1
        question = self.questions[self.question_index]
        logger.debug(
            f"[GameSession] opened question {self.question_index + 1}/{len(self.questions)} "
            f"id={question.id} in session {self.session_id}"
        )
        return QuestionView.from_question(question, self.question_index, len(self.questions))

    def close_current_question(self) -> bool:
        """Stop accepting answers. Returns False if nothing was open."""
        if not self.accepting_answers:
            return False
        self.accepting_answers = False
        return True

    def get_current_question(self) -> Optional[Question]:
        """Return the current question, or None if not in a valid range."""
        if 0 <= self.question_index < len(self.questions):
            return self.questions[self.question_index]
        return None

    # ---------- Answer tracking ----------

    def _reset_question_state(self) -> None:
        self.answered_keys.clear()
        self.first_correct_claimed = False
        self.question_opened_at = None

    def record_answer_attempt(self, user_id: str, question_id: str) -> bool:
        """True on a user's first attempt at the question, False on a repeat."""
        key = (str(user_id), str(question_id), str(self.session_id))
        if key in self.answered_keys:
            return False
        self.answered_keys.add(key)
        return True

    def claim_first_correct(self) -> bool:
        """Claim the first-correct slot for the open question; only one caller wins."""
        if self.first_correct_claimed:
            return False
        self.first_correct_claimed = True
        return True

    def elapsed(self) -> float:
        if self.question_opened_at is None:
            return 0.0
        return self.clock() - self.question_opened_at

    @property
    def answered_count(self) -> int:
        return len(self.answered_keys)

    # ---------- Serialization ----------

    def current_view(self) -> Optional[QuestionView]:
        question = self.get_current_question()
        if question is None:
            return None
        return QuestionView.from_question(question, self.question_index, len(self.questions))

    def closure_payload(self) -> Optional[dict]:
        """``questionClosed`` payload; the only place the correct slot is revealed."""
        question = self.get_current_question()
        if question is None:
            return None
        return {
            "correctAnswerSlot": question.correct.value,
            "correctAnswerText": question.correct_text,
            "explanation": f"Question completed! Correct answer was: {question.correct_text}",
            "questionNumber": self.question_index + 1,
            "totalQuestions": len(self.questions),
        }

    def status(self, time_limit: float = 0) -> dict:
        """``gameStatus`` snapshot; the current question never carries its answer."""
        view = self.current_view() if self.is_active else None
        return {
            "questionsLoaded": len(self.questions),
            "currentIndex": self.question_index,
            "acceptingAnswers": self.accepting_answers,
            "sessionId": self.session_id,
            "isActive": self.is_active,
            "currentQuestion": view.to_dict(time_limit, self.session_id) if view else None,
        }
