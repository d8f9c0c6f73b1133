from __future__ import annotations

import asyncio
import json

import pytest

from quizroom.broadcast import ConnectionHub
from quizroom.question_bank import InMemoryQuestionLoader
from quizroom.quiz_orchestrator import QuizOrchestrator
from quizroom.quiz_types import GameSession, Question, Slot
from quizroom.scoring_store import InMemoryScoringStore


class FakeClock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class FakeSocket:
    def __init__(self) -> None:
        self.sent: list[dict] = []

    async def send_text(self, data: str) -> None:
        self.sent.append(json.loads(data))

    def of_type(self, event: str) -> list[dict]:
        return [m for m in self.sent if m["type"] == event]


class BrokenSocket:
    async def send_text(self, data: str) -> None:
        raise ConnectionError("socket closed")


def make_question(qid: str, correct: Slot = Slot.B, difficulty: str = "Medium") -> Question:
    return Question(
        id=qid,
        text=f"Question {qid}?",
        options=("x", "y", "z", "w"),
        correct=correct,
        difficulty=difficulty,
    )


async def wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def bank() -> list[Question]:
    return [make_question("1"), make_question("2", correct=Slot.D)]


@pytest.fixture
def session(clock: FakeClock) -> GameSession:
    return GameSession(clock=clock)


@pytest.fixture
def store() -> InMemoryScoringStore:
    return InMemoryScoringStore()


@pytest.fixture
def socket() -> FakeSocket:
    return FakeSocket()


@pytest.fixture
def hub(socket: FakeSocket) -> ConnectionHub:
    hub = ConnectionHub()
    hub.connect("observer", socket)
    return hub


@pytest.fixture
def orchestrator(session, store, hub, bank) -> QuizOrchestrator:
    return QuizOrchestrator(
        session=session,
        store=store,
        hub=hub,
        loader=InMemoryQuestionLoader(bank),
        lead_in=0,
        question_time=0.2,
        grace_delay=0.01,
    )


class SlowSocket(FakeSocket):
    """Records each frame, then stalls on the chosen event types."""

    def __init__(self, slow_events: set[str], delay: float = 0.05) -> None:
        super().__init__()
        self.slow_events = slow_events
        self.delay = delay

    async def send_text(self, data: str) -> None:
        await super().send_text(data)
        if self.sent[-1]["type"] in self.slow_events:
            await asyncio.sleep(self.delay)
