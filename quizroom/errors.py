class QuizRoomError(Exception):
    """Base error; ``reason`` is the machine-checkable code sent to clients."""

    reason = "error"
    default_message = "Something went wrong"

    def __init__(self, message: str | None = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.message, "reason": self.reason}


class NoQuestionsAvailable(QuizRoomError):
    reason = "no_questions_available"
    default_message = "No questions available. Please upload questions first."


class LoadError(QuizRoomError):
    reason = "load_error"
    default_message = "Could not load questions"


class NoActiveQuestion(QuizRoomError):
    reason = "no_active_question"
    default_message = "No active question"


class DuplicateAnswer(QuizRoomError):
    reason = "duplicate_answer"
    default_message = "You have already answered this question!"


class InvalidRequest(QuizRoomError):
    reason = "invalid_request"
    default_message = "Invalid request"


class StoreError(QuizRoomError):
    reason = "store_error"
    default_message = "Scoring store failure"


class DuplicateAttempt(StoreError):
    reason = "duplicate_attempt"
    default_message = "You have already answered this question in this game session"


class StoreWriteFailure(QuizRoomError):
    reason = "store_write_failure"
    default_message = "Error recording answer"
