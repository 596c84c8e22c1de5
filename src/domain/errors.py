"""
Dispatch error taxonomy.

Every failure the engine reports to a caller is a ``DispatchError``
subclass.  The API layer maps ``status_code`` / ``code`` straight onto
the HTTP response, so the engine never imports anything web-related.
"""


class DispatchError(Exception):
    status_code: int = 500
    code: str = "dispatch_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(DispatchError):
    """Move, driver or user absent."""

    status_code = 404
    code = "not_found"


class Conflict(DispatchError):
    """A precondition race was lost (wrong status, driver taken, ...)."""

    status_code = 409
    code = "conflict"


class Forbidden(DispatchError):
    """Actor is not allowed to perform this action on this move."""

    status_code = 403
    code = "forbidden"


class InvalidTransition(DispatchError):
    """Target status is not reachable from the current one."""

    status_code = 409
    code = "invalid_transition"


class UpstreamUnavailable(DispatchError):
    """Geo, pricing or payment provider failed."""

    status_code = 502
    code = "upstream_unavailable"


class InvalidInput(DispatchError):
    status_code = 422
    code = "invalid_input"
