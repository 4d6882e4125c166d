"""
Error taxonomy shared by the services and the HTTP layer.

Each ServiceError carries the HTTP status it is rendered with; the
exception handler in main.py turns it into {"error": <message>}.
"""


class ServiceError(Exception):
    """Base class for errors that are safe to show to API clients."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ServiceError):
    """Malformed or missing input. Never retried."""

    status_code = 400


class NotFoundError(ServiceError):
    """Lookup miss (unregistered wallet, unknown token)."""

    status_code = 404


class ConfigurationError(ServiceError):
    """A required collaborator is not configured. Operator-actionable."""

    status_code = 503


class ProtocolError(ServiceError):
    """A collaborator answered with data we cannot use."""

    status_code = 502


class TransientExternalError(ServiceError):
    """A collaborator call failed or timed out. Retried by the next poll."""

    status_code = 503


class StoreUnavailableError(Exception):
    """The session store cannot be reached."""


class SessionConflictError(Exception):
    """A concurrent request updated the session first."""

    def __init__(self, session_id: str):
        super().__init__(f"Session {session_id} was modified concurrently")
        self.session_id = session_id
