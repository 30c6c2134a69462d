"""
Domain error taxonomy shared by the REST API and the websocket gateway.

Services raise these; ``main.py`` maps them to the JSON error envelope and the
gateway maps them to ``error`` events sent back to the originating session.
"""
from fastapi import status


class ChatError(Exception):
    """Base class for chat domain errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "An error occurred"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(ChatError):
    """Malformed or missing required input."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Invalid request"


class NotFoundError(ChatError):
    """Referenced entity does not exist or is not visible to the requester."""

    status_code = status.HTTP_404_NOT_FOUND
    default_message = "Not found"


class AuthorizationError(ChatError):
    """Requester lacks the relationship or role the operation requires."""

    status_code = status.HTTP_403_FORBIDDEN
    default_message = "Not authorized"


class InvalidOperationError(ChatError):
    """Operation is not permitted in the current state."""

    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "Operation not permitted"


class UpstreamError(ChatError):
    """A collaborator (directory, blob store) failed."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "Upstream service failure"
