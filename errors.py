"""
Error taxonomy shared by the HTTP layer and the WebSocket gateway.

Every rejected action surfaces as a ChatError subclass. The HTTP layer turns it
into a JSON response with ``status_code``; the gateway sends ``to_dict()`` to the
connection that issued the command and nowhere else.
"""
from typing import Any, Dict, Optional


class ChatError(Exception):
    status_code = 500
    code = "internal"
    default_message = "Internal error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": "error", "code": self.code, "error": self.message}


class BadRequest(ChatError):
    status_code = 400
    code = "bad_request"
    default_message = "Malformed request"


class Unauthorized(ChatError):
    status_code = 401
    code = "unauthorized"
    default_message = "Missing or invalid credential"


class Forbidden(ChatError):
    status_code = 403
    code = "forbidden"
    default_message = "Not authorized"


class NotFound(ChatError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"


class Conflict(ChatError):
    status_code = 409
    code = "conflict"
    default_message = "Conflict"


class InvalidTransition(ChatError):
    status_code = 409
    code = "invalid_transition"
    default_message = "Illegal status transition"


class PayloadTooLarge(ChatError):
    status_code = 413
    code = "payload_too_large"
    default_message = "File size too large"


class UnsupportedMediaType(ChatError):
    status_code = 415
    code = "unsupported_media_type"
    default_message = "File type not allowed"


class InternalError(ChatError):
    pass
