import asyncio

import pytest

from quizroom.broadcast import ConnectionHub
from quizroom.errors import NoQuestionsAvailable, StoreError
from quizroom.question_bank import InMemoryQuestionLoader
from quizroom.quiz_orchestrator import QuizOrchestrator
from quizroom.quiz_types import Phase
from quizroom.scoring_store import InMemoryScoringStore

from .conftest import SlowSocket, wait_for


class NoResultsStore(InMemoryScoringStore):
    async def fetch_session_results(self, session_id: str, limit: int = 20):
        raise StoreError("results query failed")


@pytest.mark.asyncio
async def test_start_without_questions_stays_idle(session, store, hub, socket) -> None:
    orchestrator = QuizOrchestrator(session=session, store=store, hub=hub, loader=InMemoryQuestionLoader([]))
    with pytest.raises(NoQuestionsAvailable):
        await orchestrator.start_game()
    assert orchestrator.phase is Phase.IDLE
    assert not session.is_active
    assert socket.sent == []


@pytest.mark.asyncio
async def test_two_question_game_scenario(orchestrator, session, clock, socket) -> None:
    clock.now = 0.0
    session_id = await orchestrator.start_game()
    assert socket.of_type("gameStarted") == [{"type": "gameStarted", "sessionId": session_id, "totalQuestions": 2}]

    await wait_for(lambda: len(socket.of_type("newQuestion")) == 1)
    assert orchestrator.phase is Phase.QUESTION_OPEN

    clock.now = 2.0
    first = await orchestrator.submit_answer("U1", "B")
    clock.now = 3.0
    second = await orchestrator.submit_answer("U2", "option_b")
    assert first.points == 15
    assert second.points == 10

    await wait_for(lambda: len(socket.of_type("questionClosed")) == 1)
    closed = socket.of_type("questionClosed")[0]
    assert closed["correctAnswerSlot"] == "B"
    assert closed["correctAnswerText"] == "y"
    assert closed["questionNumber"] == 1

    await wait_for(lambda: len(socket.of_type("newQuestion")) == 2)
    q2 = socket.of_type("newQuestion")[1]
    assert q2["questionNumber"] == 2
    assert q2["sessionId"] == session_id
    clock.now = 20.0
    await orchestrator.submit_answer("U1", "D")

    await wait_for(lambda: len(socket.of_type("gameCompleted")) == 1)
    completed = socket.of_type("gameCompleted")[0]
    assert orchestrator.phase is Phase.COMPLETED
    assert not session.is_active
    assert completed["sessionId"] == session_id
    assert completed["totalQuestions"] == 2
    results = {r["userId"]: r for r in completed["finalResults"]}
    assert len(results) == 2
    assert results["U1"]["sessionScore"] == 25
    assert results["U2"]["sessionScore"] == 10

    # question events never carry the answer
    for message in socket.of_type("newQuestion"):
        assert "correct" not in message
        assert "correctAnswerSlot" not in message


@pytest.mark.asyncio
async def test_timeout_closes_even_with_no_answers(orchestrator, socket) -> None:
    await orchestrator.start_game()
    await wait_for(lambda: len(socket.of_type("questionClosed")) == 1)
    assert not orchestrator.session.accepting_answers
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_manual_advance_cancels_pending_timeout(orchestrator, socket) -> None:
    orchestrator.question_time = 0.3
    orchestrator.grace_delay = 0.5
    await orchestrator.start_game()
    await wait_for(lambda: orchestrator.phase is Phase.QUESTION_OPEN)

    assert await orchestrator.advance() is True
    # a second advance during the grace pause is ignored
    assert await orchestrator.advance() is False

    await asyncio.sleep(0.4)
    assert len(socket.of_type("questionClosed")) == 1
    assert orchestrator.phase is Phase.QUESTION_CLOSED

    await wait_for(lambda: len(socket.of_type("newQuestion")) == 2)
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_reset_mid_question_makes_old_timer_inert(orchestrator, session, socket) -> None:
    await orchestrator.start_game()
    await wait_for(lambda: orchestrator.phase is Phase.QUESTION_OPEN)

    orchestrator.reset_game()
    assert orchestrator.phase is Phase.IDLE
    assert not session.accepting_answers
    assert session.question_index == -1

    await asyncio.sleep(0.3)
    assert socket.of_type("questionClosed") == []
    assert not session.is_active
    assert session.question_index == -1


@pytest.mark.asyncio
async def test_restart_mints_new_session(orchestrator, socket) -> None:
    orchestrator.question_time = 5
    first = await orchestrator.start_game()
    await wait_for(lambda: orchestrator.phase is Phase.QUESTION_OPEN)
    await orchestrator.submit_answer("u1", "B")

    orchestrator.reset_game()
    second = await orchestrator.start_game()
    assert second != first
    await wait_for(lambda: orchestrator.phase is Phase.QUESTION_OPEN)
    assert orchestrator.session.question_index == 0

    # same user, same question, new session: allowed
    outcome = await orchestrator.submit_answer("u1", "B")
    assert outcome.correct
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_advance_when_all_answered(orchestrator, hub, socket) -> None:
    orchestrator.question_time = 5
    orchestrator.grace_delay = 5
    orchestrator.advance_when_all_answered = True
    hub.identify("observer", "u1")

    await orchestrator.start_game()
    await wait_for(lambda: orchestrator.phase is Phase.QUESTION_OPEN)
    await orchestrator.submit_answer("u1", "A")

    assert orchestrator.phase is Phase.QUESTION_CLOSED
    assert len(socket.of_type("questionClosed")) == 1
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_completion_survives_results_failure(session, hub, socket, bank) -> None:
    orchestrator = QuizOrchestrator(
        session=session,
        store=NoResultsStore(),
        hub=hub,
        loader=InMemoryQuestionLoader(bank[:1]),
        lead_in=0,
        question_time=0.05,
        grace_delay=0.01,
    )
    await orchestrator.start_game()
    await wait_for(lambda: len(socket.of_type("gameCompleted")) == 1)
    assert socket.of_type("gameCompleted")[0]["finalResults"] == []


@pytest.mark.asyncio
async def test_snapshot_for_late_joiner(orchestrator) -> None:
    from .conftest import FakeSocket

    orchestrator.question_time = 5
    await orchestrator.start_game()
    await wait_for(lambda: orchestrator.phase is Phase.QUESTION_OPEN)

    late = FakeSocket()
    orchestrator.hub.connect("late", late)
    await orchestrator.send_snapshot("late")

    assert [m["type"] for m in late.sent] == ["gameStatus", "newQuestion"]
    status = late.sent[0]
    assert status["acceptingAnswers"] is True
    assert status["isActive"] is True
    assert status["currentIndex"] == 0
    assert "correct" not in late.sent[1]
    await orchestrator.shutdown()


@pytest.mark.asyncio
async def test_reload_questions_replaces_bank(orchestrator, bank) -> None:
    assert await orchestrator.reload_questions() == len(bank)
    assert orchestrator.bank == bank


def slow_room(session, store, bank, slow_events, **timings):
    socket = SlowSocket(slow_events)
    hub = ConnectionHub()
    hub.connect("slow", socket)
    orchestrator = QuizOrchestrator(
        session=session,
        store=store,
        hub=hub,
        loader=InMemoryQuestionLoader(bank),
        **timings,
    )
    return orchestrator, socket


@pytest.mark.asyncio
async def test_advance_during_new_question_fanout_keeps_game_moving(session, store, bank) -> None:
    orchestrator, socket = slow_room(
        session, store, bank, {"newQuestion"}, lead_in=0, question_time=0.2, grace_delay=0.3,
    )
    await orchestrator.start_game()
    await wait_for(lambda: orchestrator.phase is Phase.QUESTION_OPEN)
    # the newQuestion fan-out is still sleeping on the slow socket
    assert await orchestrator.advance() is True

    await wait_for(lambda: len(socket.of_type("newQuestion")) == 2, timeout=3)
    await wait_for(lambda: len(socket.of_type("gameCompleted")) == 1, timeout=3)
    assert [m["questionNumber"] for m in socket.of_type("questionClosed")] == [1, 2]


@pytest.mark.asyncio
async def test_reset_during_question_closed_fanout_stops_the_loop(session, store, bank) -> None:
    orchestrator, socket = slow_room(
        session, store, bank, {"questionClosed"}, lead_in=0, question_time=0.05, grace_delay=0.01,
    )
    await orchestrator.start_game()
    await wait_for(lambda: len(socket.of_type("questionClosed")) == 1)

    orchestrator.reset_game()
    await asyncio.sleep(0.3)

    assert len(socket.of_type("newQuestion")) == 1
    assert orchestrator.phase is Phase.IDLE
    assert orchestrator._timer is None
    assert not session.is_active


@pytest.mark.asyncio
async def test_restart_during_game_started_fanout_runs_one_session(session, store, bank) -> None:
    orchestrator, socket = slow_room(
        session, store, bank, {"gameStarted"}, lead_in=0, question_time=5, grace_delay=0.01,
    )
    first = asyncio.create_task(orchestrator.start_game())
    await wait_for(lambda: len(socket.of_type("gameStarted")) == 1)

    second_id = await orchestrator.start_game()
    first_id = await first
    assert first_id != second_id

    await wait_for(lambda: orchestrator.phase is Phase.QUESTION_OPEN)
    await asyncio.sleep(0.1)
    questions = socket.of_type("newQuestion")
    assert len(questions) == 1
    assert questions[0]["sessionId"] == second_id
    assert session.question_index == 0
    await orchestrator.shutdown()
