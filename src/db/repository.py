"""Protocol repository (SQLAlchemy is the only implementation for now, but the Service only relies on this)."""

from typing import Protocol

from src.core.models import SessionModel, TicketModel


class SessionRepository(Protocol):
    """Persistence layer orchestration"""

    # --- sessions ---
    def get_session(self, session_id: str) -> SessionModel:
        """Load a session. Raises SessionNotFoundError / InvalidRecordError."""
        ...

    def save_session(self, session: SessionModel) -> SessionModel:
        """
        Persist a session, only if nobody saved it since it was loaded (raises ConcurrentUpdateError otherwise).
        Bumps `session.version` on success.
        """
        ...

    def delete_session(self, session_id: str) -> None:
        """Remove a session record (no-op if it does not exist)."""
        ...

    def list_sessions(self) -> list[SessionModel]:
        """All readable sessions, newest first. Unreadable records are skipped."""
        ...

    # --- tickets ---
    def get_ticket(self, ticket_id: str) -> TicketModel:
        """Load a ticket. Raises TicketNotFoundError / InvalidRecordError."""
        ...

    def save_ticket(self, ticket: TicketModel) -> TicketModel:
        """Validate and persist a ticket."""
        ...

    def delete_ticket(self, ticket_id: str) -> None:
        """Remove a ticket (silent if missing)."""
        ...

    def ticket_exists(self, ticket_id: str) -> bool: ...

    # --- single active session registry ---
    def claim_active_slot(self, session_id: str) -> None:
        """Atomically register `session_id` as the active session. Raises SessionBusyError if taken."""
        ...

    def release_active_slot(self, session_id: str) -> None:
        """Free the slot if (and only if) it is held by `session_id`."""
        ...

    def active_slot(self) -> str | None:
        """Session id currently holding the slot."""
        ...

    def clear(self) -> tuple[int, int]:
        """Delete every session and ticket. Returns (sessions deleted, tickets deleted)."""
        ...
