"""Implementation of (Session)Repository using SQLAlchemy"""

import logging
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from src.core.exceptions import (
    ConcurrentUpdateError,
    InvalidRecordError,
    SessionBusyError,
    SessionNotFoundError,
    TicketNotFoundError,
)
from src.core.models import SessionModel, TicketModel
from src.db.normalize import (
    dump_session,
    dump_ticket,
    load_session,
    load_ticket,
    parse_ticket_id,
)
from src.db.schema import ACTIVE_SLOT_KEY, DBActiveSession, DBSession, DBTicket, utc_now

logger = logging.getLogger(__name__)

SESSION_COLUMNS = [column.key for column in DBSession.__table__.columns]
TICKET_COLUMNS = [column.key for column in DBTicket.__table__.columns]


class SQLSessionRepository:
    """Data stored using SQL / methods implemented using SQLAlchemy"""

    def __init__(
        self, db_session: Session, clock: Callable[[], datetime] = utc_now
    ) -> None:
        self.db = db_session
        self.clock = clock

    # --- sessions ---
    def get_session(self, session_id: str) -> SessionModel:
        """Get session by ID. Raises SessionNotFoundError if no record exists."""
        session_db = self._fetch_session(session_id)
        if session_db is None:
            raise SessionNotFoundError(f"Session {session_id} was not found.")
        return self._to_session_model(session_db)

    def save_session(self, session: SessionModel) -> SessionModel:
        """
        Insert (version 0) or update a session, as a single compare-and-swap on the version column.
        A terminal session gives up the active slot in the same transaction.
        """
        values = dump_session(session)
        try:
            if session.version == 0:
                self.db.execute(
                    insert(DBSession).values(id=session.session_id, version=1, **values)
                )
            else:
                result = self.db.execute(
                    update(DBSession)
                    .where(
                        DBSession.id == session.session_id,
                        DBSession.version == session.version,
                    )
                    .values(version=DBSession.version + 1, **values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise ConcurrentUpdateError(
                        f"Session {session.session_id} was modified by another process. Please retry."
                    )

            if session.status.is_terminal:
                self.db.execute(
                    delete(DBActiveSession)
                    .where(DBActiveSession.session_id == session.session_id)
                    .execution_options(synchronize_session=False)
                )
            self.db.commit()
        except IntegrityError as error:
            self.db.rollback()
            raise ConcurrentUpdateError(
                f"Session {session.session_id} was created by another process. Please retry."
            ) from error
        except ConcurrentUpdateError:
            self.db.rollback()
            raise

        session.version += 1
        return session

    def delete_session(self, session_id: str) -> None:
        self.db.execute(delete(DBSession).where(DBSession.id == session_id))
        self.db.execute(
            delete(DBActiveSession).where(DBActiveSession.session_id == session_id)
        )
        self.db.commit()

    def list_sessions(self) -> list[SessionModel]:
        """All sessions that can be read, newest first. Corrupt records are logged and skipped."""
        session_ids = self.db.scalars(select(DBSession.id)).all()
        sessions = []
        for session_id in session_ids:
            try:
                sessions.append(self.get_session(session_id))
            except (InvalidRecordError, SessionNotFoundError) as error:
                logger.warning("Skipping session %s: %s", session_id, error)
        sessions.sort(key=lambda s: s.created_at, reverse=True)
        return sessions

    # --- tickets ---
    def get_ticket(self, ticket_id: str) -> TicketModel:
        normalized_id = parse_ticket_id(ticket_id)
        if normalized_id is None:
            raise TicketNotFoundError("Ticket id cannot be empty.")
        ticket_db = self.db.scalar(
            select(DBTicket)
            .where(DBTicket.ticket_id == normalized_id)
            .execution_options(populate_existing=True)
        )
        if ticket_db is None:
            raise TicketNotFoundError(f"Ticket {normalized_id} was not found.")
        return load_ticket(self._columns(ticket_db, TICKET_COLUMNS), self.clock())

    def save_ticket(self, ticket: TicketModel) -> TicketModel:
        """Normalise + validate before writing: a ticket missing its side or ids is refused."""
        normalized = load_ticket(
            {
                "ticket_id": ticket.ticket_id,
                "session_id": ticket.session_id,
                "agent_id": ticket.agent_id,
                "side": ticket.side,
                "created_at": ticket.created_at,
                "updated_at": ticket.updated_at,
            },
            self.clock(),
        )
        self.db.merge(DBTicket(**dump_ticket(normalized)))
        self.db.commit()
        return normalized

    def delete_ticket(self, ticket_id: str) -> None:
        normalized_id = parse_ticket_id(ticket_id)
        if normalized_id is None:
            return
        self.db.execute(delete(DBTicket).where(DBTicket.ticket_id == normalized_id))
        self.db.commit()

    def ticket_exists(self, ticket_id: str) -> bool:
        normalized_id = parse_ticket_id(ticket_id)
        if normalized_id is None:
            return False
        count = self.db.scalar(
            select(func.count())
            .select_from(DBTicket)
            .where(DBTicket.ticket_id == normalized_id)
        )
        return bool(count)

    # --- active session registry ---
    def claim_active_slot(self, session_id: str) -> None:
        """INSERT on a fixed primary key: the database refuses a second active session for us."""
        try:
            self.db.execute(
                insert(DBActiveSession).values(
                    slot=ACTIVE_SLOT_KEY, session_id=session_id, claimed_at=self.clock()
                )
            )
            self.db.commit()
        except IntegrityError as error:
            self.db.rollback()
            raise SessionBusyError(self.active_slot() or "?") from error

    def release_active_slot(self, session_id: str) -> None:
        self.db.execute(
            delete(DBActiveSession).where(DBActiveSession.session_id == session_id)
        )
        self.db.commit()

    def active_slot(self) -> str | None:
        return self.db.scalar(
            select(DBActiveSession.session_id).where(
                DBActiveSession.slot == ACTIVE_SLOT_KEY
            )
        )

    def clear(self) -> tuple[int, int]:
        session_count = self.db.scalar(select(func.count()).select_from(DBSession)) or 0
        ticket_count = self.db.scalar(select(func.count()).select_from(DBTicket)) or 0
        self.db.execute(delete(DBActiveSession))
        self.db.execute(delete(DBTicket))
        self.db.execute(delete(DBSession))
        self.db.commit()
        return session_count, ticket_count

    # --- helpers ---
    def _fetch_session(self, session_id: str) -> DBSession | None:
        # populate_existing: other processes write to the same file, never serve a cached row
        query = (
            select(DBSession)
            .where(DBSession.id == session_id)
            .execution_options(populate_existing=True)
        )
        try:
            return self.db.scalar(query)
        except (TypeError, ValueError) as error:
            # undecodable JSON column (e.g. a torn write)
            self.db.rollback()
            raise InvalidRecordError(
                f"Session file for {session_id} is invalid: {error}"
            ) from error

    def _to_session_model(self, session_db: DBSession) -> SessionModel:
        """Convert SQLAlchemy model to data transfer model."""
        return load_session(self._columns(session_db, SESSION_COLUMNS), self.clock())

    @staticmethod
    def _columns(row: Any, columns: list[str]) -> dict[str, Any]:
        return {column: getattr(row, column) for column in columns}
