"""Error taxonomy shared by the realtime and REST chat paths.

Every failure the chat core reports to a caller is a ``ChatError``. The
``code`` travels in realtime ``error`` events and in REST failure bodies;
``status_code`` is only used by the REST exception handler.
"""


class ChatError(Exception):
    """Base class for reportable chat failures."""

    code = "chat_error"
    status_code = 400

    def __init__(self, message: str, code: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_event(self, event: str | None = None) -> dict:
        """Serialize as an outbound realtime ``error`` event."""
        payload = {"type": "error", "code": self.code, "error": self.message}
        if event:
            payload["event"] = event
        return payload


class AuthenticationError(ChatError):
    """Credential missing, invalid, expired, or bound to an unknown user."""

    code = "unauthenticated"
    status_code = 401


class AuthorizationError(ChatError):
    """Caller is authenticated but not allowed to perform the action."""

    code = "forbidden"
    status_code = 403


class ChatValidationError(ChatError):
    code = "validation_error"
    status_code = 400


class NotFoundError(ChatError):
    code = "not_found"
    status_code = 404


class PersistenceError(ChatError):
    """Storage was unavailable mid-operation; the caller may resubmit."""

    code = "delivery_failed"
    status_code = 503
