class CirculationError(Exception):
    """Base exception for circulation errors.

    Every subclass carries a stable ``code`` and the HTTP status the API maps
    it to, so the transport layer never has to inspect messages.
    """

    code = "error"
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class NotFound(CirculationError):
    """Patron, copy, work, loan, hold or ledger entry does not exist."""

    code = "not_found"
    status_code = 404


class Forbidden(CirculationError):
    """Borrowing policy or actor permissions reject the operation."""

    code = "forbidden"
    status_code = 403


class Conflict(CirculationError):
    """Current state conflicts with the request (copy unavailable, duplicate hold, lost race)."""

    code = "conflict"
    status_code = 409


class InvalidState(CirculationError):
    """The record is in a state the operation cannot act on."""

    code = "invalid_state"
    status_code = 400


class InvalidInput(CirculationError):
    """Request values are unacceptable (non-positive or excess payment, bad ranges)."""

    code = "invalid_input"
    status_code = 400
