"""Database tables / schema"""

from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

ACTIVE_SLOT_KEY = "active"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class DBSession(Base):
    __tablename__ = "sessions"
    id: Mapped[str] = mapped_column(primary_key=True)
    seats: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    seat_agents: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    turn: Mapped[str]
    status: Mapped[str]
    winner: Mapped[Optional[str]]
    result_text: Mapped[Optional[str]]
    # nested records are kept as JSON; timestamps inside them are ISO strings
    history: Mapped[list[Any]] = mapped_column(JSON, default=list)
    illegal_attempts: Mapped[list[Any]] = mapped_column(JSON, default=list)
    positions: Mapped[list[Any]] = mapped_column(JSON, default=list)
    pending_draw: Mapped[Optional[dict[str, Any]]] = mapped_column(JSON, nullable=True)
    turn_started_at: Mapped[Optional[str]]
    created_at: Mapped[Optional[str]]
    updated_at: Mapped[Optional[str]]
    version: Mapped[int] = mapped_column(default=1)


class DBTicket(Base):
    __tablename__ = "tickets"
    ticket_id: Mapped[str] = mapped_column(primary_key=True)
    session_id: Mapped[str]
    agent_id: Mapped[str]
    side: Mapped[Optional[str]]
    created_at: Mapped[Optional[str]]
    updated_at: Mapped[Optional[str]]


class DBActiveSession(Base):
    """Singleton registry: at most one row, keyed by ACTIVE_SLOT_KEY."""

    __tablename__ = "active_session"
    slot: Mapped[str] = mapped_column(primary_key=True, default=ACTIVE_SLOT_KEY)
    session_id: Mapped[str]
    claimed_at: Mapped[datetime] = mapped_column(default=utc_now)
