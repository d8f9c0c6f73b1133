# quizroom/app.py
"""
Classroom quiz server: one live game room over WebSocket plus an HTTP admin surface.

Responsibilities:
- Exposes HTTP health-check `/ping` and game status `/game/status`.
- Exposes admin endpoints `/admin/start-game`, `/admin/reset-game`,
    `/admin/reload-questions` and the `/leaderboard` read.
- Exposes WebSocket endpoint `/ws`; routes JSON messages (`submitAnswer`,
    `getGameStatus`, `nextQuestion`, `adminStartGame`) into the
    `QuizOrchestrator`, which owns timing and broadcasting.

Notes / operational caveats:
- Game state is kept in-process (see `quiz_types.py`). There is exactly one
    game room per process; running several workers gives several unrelated rooms.
- The app starts a background ping loop at startup to emit application-level
    "ping" messages to connected clients; clients may reply with `pong`.
"""
import asyncio
import json
import os
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional, Union

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .broadcast import ConnectionHub
from .common import configure_logging, logger
from .errors import InvalidRequest, LoadError, NoQuestionsAvailable, QuizRoomError, StoreError
from .question_bank import JsonQuestionLoader
from .quiz_orchestrator import QuizOrchestrator
from .quiz_types import GameSession
from .scoring_store import InMemoryScoringStore


QUESTIONS_FILE = os.environ.get("QUIZROOM_QUESTIONS_FILE", "questions.json")
HOST = os.environ.get("QUIZROOM_HOST", "0.0.0.0")
PORT = int(os.environ.get("QUIZROOM_PORT", "4001"))

# Heartbeat config
PING_INTERVAL = 20

LEADERBOARD_DEFAULT_LIMIT = 20


class SubmitAnswerMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, coerce_numbers_to_str=True)

    user_id: str = Field(alias="userId", min_length=1)
    answer: Optional[Union[str, int]] = None
    display_name: Optional[str] = Field(default=None, alias="displayName")


class AdminResponse(BaseModel):
    success: bool
    message: str
    questions: Optional[int] = None
    sessionId: Optional[str] = None


def build_orchestrator() -> QuizOrchestrator:
    """Wire the single game room with the in-process store and the JSON question file."""
    return QuizOrchestrator(
        session=GameSession(),
        store=InMemoryScoringStore(),
        hub=ConnectionHub(),
        loader=JsonQuestionLoader(QUESTIONS_FILE),
    )


def error_response(err: QuizRoomError, status_code: int = 400) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, **err.to_dict()})


def create_app(orchestrator: QuizOrchestrator | None = None, ping_interval: float = PING_INTERVAL) -> FastAPI:
    """Build the FastAPI app around one orchestrator."""
    room = orchestrator or build_orchestrator()
    hub = room.hub

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """App lifespan handler."""
        logger.debug("[lifespan] starting")

        if not room.bank and room.loader is not None:
            try:
                count = await room.reload_questions()
                logger.info(f"[lifespan] {count} questions loaded")
            except LoadError as e:
                logger.warning(f"[lifespan] no questions loaded yet: {e}")

        ping_task = asyncio.create_task(ping_loop(hub, ping_interval))
        try:
            yield
        finally:
            logger.debug("[lifespan] shutting down")
            ping_task.cancel()
            await asyncio.gather(ping_task, return_exceptions=True)
            await room.shutdown()
            logger.debug("[lifespan] bye")

    app = FastAPI(lifespan=lifespan)
    app.state.orchestrator = room

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/ping")
    def health_check():
        """Health check endpoint."""
        return {"ok": True, "questionsLoaded": len(room.bank), "gameActive": room.session.is_active}

    @app.get("/game/status")
    def game_status():
        return room.status()

    @app.get("/leaderboard")
    async def leaderboard(limit: int = LEADERBOARD_DEFAULT_LIMIT):
        try:
            entries = await room.store.fetch_leaderboard(limit)
        except StoreError as e:
            logger.error(f"[http] leaderboard fetch failed: {e}")
            return error_response(e, status_code=500)
        return [e.to_dict() for e in entries]

    @app.post("/admin/start-game", response_model=AdminResponse)
    async def admin_start_game():
        logger.info("[admin] start-game requested")
        try:
            session_id = await room.start_game()
        except NoQuestionsAvailable as e:
            return error_response(e)
        return AdminResponse(
            success=True,
            message="Game started successfully",
            questions=room.session.total_questions,
            sessionId=session_id,
        )

    @app.post("/admin/reset-game", response_model=AdminResponse)
    async def admin_reset_game():
        room.reset_game()
        await hub.emit_to_all("gameStatus", room.status())
        return AdminResponse(success=True, message="Game reset successfully")

    @app.post("/admin/reload-questions", response_model=AdminResponse)
    async def admin_reload_questions():
        try:
            count = await room.reload_questions()
        except LoadError as e:
            return error_response(e, status_code=500)
        return AdminResponse(success=True, message="Questions reloaded successfully", questions=count)

    @app.websocket("/ws")
    async def ws_endpoint(ws: WebSocket, user_id: str | None = None):
        """
        Game room socket. Every client gets the current status on connect,
        plus the live question if one is open.
        """
        await ws.accept()
        connection_id = uuid.uuid4().hex
        hub.connect(connection_id, ws, user_id)
        logger.debug(f"[ws] connected connection={connection_id} user_id={user_id}")

        await room.send_snapshot(connection_id)

        try:
            while True:
                raw = await ws.receive_text()
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    await hub.emit_to_one(connection_id, "gameError", InvalidRequest("Malformed JSON").to_dict())
                    continue
                if not isinstance(data, dict):
                    await hub.emit_to_one(connection_id, "gameError", InvalidRequest("Expected a JSON object").to_dict())
                    continue

                msg_type = data.get("type")
                logger.debug(f"[ws] recv connection={connection_id} type={msg_type}")

                # ------------------------------------------------------
                # HEARTBEAT
                # ------------------------------------------------------
                if msg_type == "pong":
                    continue

                # ------------------------------------------------------
                # STUDENT ACTIONS
                # ------------------------------------------------------
                if msg_type == "submitAnswer":
                    await handle_submit_answer(room, connection_id, data)
                    continue

                if msg_type == "getGameStatus":
                    await hub.emit_to_one(connection_id, "gameStatus", room.status())
                    continue

                # ------------------------------------------------------
                # FLOW CONTROL
                # ------------------------------------------------------
                if msg_type == "nextQuestion":
                    logger.info(f"[ws] next question requested by connection={connection_id}")
                    await room.advance()
                    continue

                if msg_type == "adminStartGame":
                    logger.info(f"[ws] admin starting game via connection={connection_id}")
                    try:
                        await room.start_game()
                    except NoQuestionsAvailable as e:
                        await hub.emit_to_one(connection_id, "gameError", e.to_dict())
                    continue

                # ------------------------------------------------------
                # FALLBACK
                # ------------------------------------------------------
                await hub.emit_to_one(
                    connection_id,
                    "gameError",
                    InvalidRequest(f"Unknown message: {msg_type}").to_dict(),
                )

        except WebSocketDisconnect:
            logger.debug(f"[ws] disconnect connection={connection_id}")

        finally:
            hub.disconnect(connection_id)

    return app


def describe_validation_error(err: ValidationError) -> str:
    """Short message naming the first field that failed validation."""
    first = err.errors()[0]
    loc = first.get("loc") or ("request",)
    field_name = str(loc[0])
    if first.get("type") == "missing" or (field_name == "userId" and first.get("type") == "string_too_short"):
        return f"{field_name} is required"
    return f"Invalid {field_name}: {first.get('msg', 'bad value')}"


async def handle_submit_answer(room: QuizOrchestrator, connection_id: str, data: dict) -> None:
    """Score one submission; the sender always gets an ``answerResult`` back."""
    hub = room.hub
    payload = {k: v for k, v in data.items() if k != "type"}
    if "userId" not in payload and "user_id" in payload:
        payload["userId"] = payload.pop("user_id")

    try:
        message = SubmitAnswerMessage.model_validate(payload)
    except ValidationError as e:
        logger.debug(f"[ws] invalid submitAnswer from connection={connection_id}: {e}")
        await hub.emit_to_one(connection_id, "answerResult", InvalidRequest(describe_validation_error(e)).to_dict())
        return

    hub.identify(connection_id, message.user_id)
    try:
        outcome = await room.submit_answer(message.user_id, message.answer, message.display_name)
    except QuizRoomError as e:
        await hub.emit_to_one(connection_id, "answerResult", e.to_dict())
        return
    except Exception:
        logger.exception(f"[ws] submitAnswer failed for user={message.user_id}")
        await hub.emit_to_one(connection_id, "answerResult", {
            "error": "Server error processing answer",
            "reason": "server_error",
        })
        return

    await hub.emit_to_one(connection_id, "answerResult", outcome.to_dict())


async def ping_loop(hub: ConnectionHub, interval: float = PING_INTERVAL):
    """Send periodic, application-level pings to all connected sockets.

    Emits ``{"type": "ping", "ts": <epoch>}`` so clients can answer with
    `pong`; dead sockets are dropped by the hub on send failure.
    """
    while True:
        await asyncio.sleep(interval)
        await hub.emit_to_all("ping", {"ts": time.time()})


app = create_app()


def main() -> None:
    import uvicorn

    configure_logging()
    uvicorn.run(app, host=HOST, port=PORT, log_level="debug", log_config=None)


if __name__ == "__main__":
    main()
