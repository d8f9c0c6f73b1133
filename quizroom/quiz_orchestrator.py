"""Quiz orchestration logic (timing, flow control and admin commands).

The orchestrator drives the single game room through its phases:

    IDLE --start--> QUESTION_OPEN --timeout/advance--> QUESTION_CLOSED
         --grace--> QUESTION_OPEN ... --bank exhausted--> COMPLETED

Scheduled delays (lead-in, question countdown, grace pause) are asyncio tasks.
Only one is pending at a time; scheduling a new one cancels the old one, and
every delay re-checks the session generation when it fires so that a timer
from a reset or replaced session never touches the live state.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, List, Optional

from .broadcast import ConnectionHub
from .common import logger
from .errors import LoadError, NoQuestionsAvailable
from .question_bank import QuestionLoader
from .quiz_manager import AnswerOutcome, AnswerProcessor
from .quiz_types import GameSession, Phase, Question
from .scoring_store import ScoringStore


LEAD_IN_TIME = 3      # seconds between start and the first question, so clients can subscribe
QUESTION_TIME = 30    # seconds each question stays open
GRACE_TIME = 1        # seconds to show the closed question before the next one
RESULTS_LIMIT = 20


@dataclass
class QuizOrchestrator:
    """
    Orchestrates the single GameSession.

    Responsibilities:
    - Start / reset / advance the game on admin command.
    - Enforce the question countdown and the grace pause.
    - Route answers through the AnswerProcessor and optionally advance once
      every participant has answered.
    - Broadcast phase changes through the ConnectionHub.
    """
    session: GameSession
    store: ScoringStore
    hub: ConnectionHub
    loader: Optional[QuestionLoader] = None
    processor: Optional[AnswerProcessor] = None

    lead_in: float = LEAD_IN_TIME
    question_time: float = QUESTION_TIME
    grace_delay: float = GRACE_TIME
    advance_when_all_answered: bool = False

    bank: List[Question] = field(default_factory=list)
    phase: Phase = Phase.IDLE
    _timer: Optional[asyncio.Task] = field(default=None, init=False, repr=False)

    def __post_init__(self) -> None:
        if self.processor is None:
            self.processor = AnswerProcessor(self.session, self.store, self.hub)

    # ---------- Question bank ----------

    async def reload_questions(self) -> int:
        """Reload the bank from the loader; raises LoadError if it cannot."""
        if self.loader is None:
            raise LoadError("No question loader configured")
        # file reads are synchronous; keep them off the event loop
        self.bank = await asyncio.to_thread(self.loader.load_questions)
        logger.info(f"[quiz] {len(self.bank)} questions in bank")
        return len(self.bank)

    # ---------- Admin commands ----------

    async def start_game(self) -> str:
        """
        Start a brand new session. Returns the session id, or raises
        NoQuestionsAvailable (the current state is left untouched).
        """
        if not self.bank and self.loader is not None:
            try:
                await self.reload_questions()
            except LoadError as e:
                logger.error(f"[quiz] could not load questions: {e}")
                raise NoQuestionsAvailable() from e
        if not self.bank:
            raise NoQuestionsAvailable()

        self._cancel_timer()
        session_id = self.session.start(self.bank)
        self.phase = Phase.IDLE
        logger.info(f"[quiz] starting new game session {session_id} with {len(self.bank)} questions")
        generation = self.session.generation

        await self.hub.emit_to_all("gameStarted", {
            "sessionId": session_id,
            "totalQuestions": self.session.total_questions,
        })
        await self.hub.emit_to_all("gameStatus", self.status())
        self._schedule(self.lead_in, self._open_next, generation)
        return session_id

    def reset_game(self) -> None:
        """Cancel any pending timer and deactivate the session before returning."""
        self._cancel_timer()
        self.session.reset()
        self.phase = Phase.IDLE
        logger.info("[quiz] game reset")

    async def advance(self) -> bool:
        """
        Close the open question now (admin-forced or everyone answered).
        Ignored unless a question is open, so it can never double-close.
        """
        if self.phase is not Phase.QUESTION_OPEN:
            logger.debug(f"[quiz] advance ignored in phase {self.phase.value}")
            return False
        await self._close_current()
        return True

    async def shutdown(self) -> None:
        task = self._timer
        self._cancel_timer()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    # ---------- Answers ----------

    async def submit_answer(self, user_id: str, raw_answer, display_name: Optional[str] = None) -> AnswerOutcome:
        generation = self.session.generation
        outcome = await self.processor.submit_answer(user_id, raw_answer, display_name)

        if (
            self.advance_when_all_answered
            and self.session.generation == generation
            and self.phase is Phase.QUESTION_OPEN
        ):
            participants = self.hub.participant_count()
            if participants and self.session.answered_count >= participants:
                logger.info("[quiz] all participants answered; advancing")
                await self.advance()
        return outcome

    # ---------- Snapshots ----------

    def remaining_time(self) -> float:
        if not self.session.accepting_answers:
            return 0
        return max(0.0, round(self.question_time - self.session.elapsed(), 1))

    def status(self) -> dict:
        status = self.session.status(self.remaining_time())
        status["phase"] = self.phase.value
        return status

    async def send_snapshot(self, connection_id: str) -> None:
        """Bring a newly connected client up to date, including a live question."""
        await self.hub.emit_to_one(connection_id, "gameStatus", self.status())
        if self.session.is_active and self.session.accepting_answers:
            view = self.session.current_view()
            if view is not None:
                await self.hub.emit_to_one(
                    connection_id,
                    "newQuestion",
                    view.to_dict(self.remaining_time(), self.session.session_id),
                )

    # ---------- Transitions ----------

    async def _open_next(self) -> None:
        view = self.session.open_next_question()
        if view is None:
            if self.session.is_complete:
                await self._complete()
            return

        self.phase = Phase.QUESTION_OPEN
        generation = self.session.generation
        logger.info(
            f"[quiz] question {view.index + 1}/{view.total} [{view.difficulty}] opened "
            f"in session {self.session.session_id}"
        )
        # countdown starts before the fan-out so an advance during it cancels this timer
        self._schedule(self.question_time, self._on_timeout, generation)
        await self.hub.emit_to_all("newQuestion", view.to_dict(self.question_time, self.session.session_id))

    async def _on_timeout(self) -> None:
        if self.session.accepting_answers:
            logger.info(f"[quiz] time's up for question {self.session.question_index + 1}")
            await self._close_current()

    async def _close_current(self) -> None:
        self._cancel_timer()
        if not self.session.close_current_question():
            return
        self.phase = Phase.QUESTION_CLOSED
        generation = self.session.generation

        payload = self.session.closure_payload()
        if payload is not None:
            logger.info(
                f"[quiz] closing question {payload['questionNumber']} - correct answer: "
                f"{payload['correctAnswerSlot']} {payload['correctAnswerText']}"
            )
            await self.hub.emit_to_all("questionClosed", payload)
        if self.phase is Phase.QUESTION_CLOSED:
            self._schedule(self.grace_delay, self._open_next, generation)

    async def _complete(self) -> None:
        self.phase = Phase.COMPLETED
        session_id = self.session.session_id
        logger.info(f"[quiz] game completed - session {session_id}")

        try:
            results = await self.store.fetch_session_results(session_id, RESULTS_LIMIT)
            final_results = [r.to_dict() for r in results]
        except Exception as e:
            # completion must fire even without results
            logger.error(f"[quiz] could not fetch final results for {session_id}: {e}")
            final_results = []

        await self.hub.emit_to_all("gameCompleted", {
            "message": "Game Completed! All questions answered.",
            "totalQuestions": self.session.total_questions,
            "sessionId": session_id,
            "finalResults": final_results,
        })

    # ---------- Timer handling ----------

    def _schedule(self, delay: float, action: Callable[[], Awaitable[None]], generation: int) -> None:
        if generation != self.session.generation:
            # the session moved on while we were broadcasting
            return
        self._cancel_timer()
        self._timer = asyncio.create_task(self._run_after(delay, generation, action))

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            try:
                current = asyncio.current_task()
            except RuntimeError:
                current = None
            if self._timer is not current:
                self._timer.cancel()
            self._timer = None

    async def _run_after(self, delay: float, generation: int, action: Callable[[], Awaitable[None]]) -> None:
        await asyncio.sleep(delay)
        if self._timer is asyncio.current_task():
            # fired; let the action schedule a successor without cancelling us
            self._timer = None
        if self.session.generation != generation:
            logger.debug(f"[quiz] stale timer (generation {generation}) ignored")
            return
        try:
            await action()
        except Exception:
            logger.exception("[quiz] scheduled transition failed")
