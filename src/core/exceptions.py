"""
Custom exceptions shared by all layers.

Everything raised on purpose derives from GameError, so the CLI (or any other caller) can catch a single type
and show the message to the agent. The sub-hierarchies follow how a caller should react:
- InvalidRequestError: malformed input, nothing was touched.
- RepositoryError: something could not be found / read from the store.
- GameStateError: a conflict with the current state (seat taken, session finished, ...), nothing was touched.
- IllegalMoveError: the move was rejected AND the attempt was recorded on the session.
"""


class GameError(Exception):
    """Top-level exception for anything that goes wrong while coordinating a session."""


# --- validation ---
class InvalidRequestError(GameError):
    """Request could not be interpreted (empty id, empty rationale, unknown side...)."""


# --- persistence / not found ---
class RepositoryError(GameError):
    """Record could not be found or loaded."""


class SessionNotFoundError(RepositoryError):
    pass


class TicketNotFoundError(RepositoryError):
    pass


class InvalidRecordError(RepositoryError):
    """Stored record is corrupt or misses required fields."""


# --- conflicts ---
class GameStateError(GameError):
    """Operation conflicts with the current state of the session."""


class SeatOccupiedError(GameStateError):
    pass


class SessionBusyError(GameStateError):
    def __init__(self, session_id: str) -> None:
        super().__init__(
            f"Session {session_id} is busy. Finish it before creating a new session."
        )
        self.session_id = session_id


class SessionFinishedError(GameStateError):
    pass


class TicketInvalidError(GameStateError):
    """Ticket no longer matches the seat it claims."""


class DrawOfferError(GameStateError):
    pass


class ConcurrentUpdateError(GameStateError):
    """The session record changed between load and save."""


# --- moves ---
class IllegalMoveError(GameError):
    """
    Move attempt was rejected and recorded on the session.
    `forfeited` tells the caller that this attempt ended the session (illegal-move streak).
    """

    def __init__(self, message: str, forfeited: bool = False) -> None:
        super().__init__(message)
        self.forfeited = forfeited


class NotYourTurnError(IllegalMoveError):
    pass


# --- infrastructure ---
class LockTimeoutError(GameError):
    pass


class TicketAllocationError(GameError):
    pass
