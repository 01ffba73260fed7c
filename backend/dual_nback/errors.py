"""
Typed failures raised by the session engine.

Every error carries a stable ``code`` so the websocket and REST layers can
report it as a structured event instead of leaking the raw exception.
"""

from typing import Dict


class NBackError(Exception):
    """Base class for all engine failures."""

    code = "nback_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_payload(self) -> Dict[str, str]:
        return {"code": self.code, "message": self.message}


class SessionNotFound(NBackError):
    code = "session_not_found"

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionNotActive(NBackError):
    """Operation is not valid in the session's current state."""

    code = "session_not_active"


class InvalidTransition(SessionNotActive):
    code = "invalid_transition"

    def __init__(self, operation: str, state: str):
        super().__init__(f"Cannot {operation} a session that is {state}")
        self.operation = operation
        self.state = state


class ValidationError(NBackError):
    """Malformed configuration or response, rejected before anything is applied."""

    code = "validation_error"


class DeliveryFailure(NBackError):
    """The channel bound to a session could not take a message."""

    code = "delivery_failure"


class DuplicateSession(NBackError):
    code = "duplicate_session"

    def __init__(self, session_id: str):
        super().__init__(f"Session already synced: {session_id}")
        self.session_id = session_id
