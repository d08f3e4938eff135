"""Error taxonomy for ticket operations.

Every failure is scoped to the ticket or operation in progress. Callers
catch ServiceTicketError at the action boundary and report it; nothing here
is meant to end the process.
"""

from __future__ import annotations


class ServiceTicketError(Exception):
    """Base class for all ticket errors."""


class NotFoundError(ServiceTicketError):
    """A record or entry does not exist."""


class ConflictError(ServiceTicketError):
    """A uniqueness constraint was hit, e.g. a ticket number already in use."""


class ValidationError(ServiceTicketError):
    """User-correctable input problem. Raised before any store call."""


class IllegalTransitionError(ValidationError):
    """A workflow action is not allowed from the ticket's current state."""

    def __init__(self, state: str, action: str, reason: str = ""):
        self.state = state
        self.action = action
        message = f"Cannot {action} a ticket that is {state}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class PersistenceError(ServiceTicketError):
    """The store could not complete a request.

    ``kind`` is "schema" when a table or column is missing (run the
    migrations), "permission" when the store refused the write, and
    "unavailable" otherwise.
    """

    SCHEMA = "schema"
    PERMISSION = "permission"
    UNAVAILABLE = "unavailable"

    def __init__(self, message: str, kind: str = UNAVAILABLE):
        self.kind = kind
        super().__init__(message)

    @property
    def user_message(self) -> str:
        if self.kind == self.SCHEMA:
            return f"{self} (database schema is out of date; run init_db to apply migrations)"
        if self.kind == self.PERMISSION:
            return f"{self} (you do not have permission to change this ticket)"
        return f"{self} (try again)"
