"""Requests and Response models"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, field_validator

from src.core.config import THINKING_MAX_CHARS
from src.core.exceptions import InvalidRequestError
from src.core.models import SessionModel
from src.core.shared_types import Side, Status


def _require_text(value: str, label: str) -> str:
    cleaned = value.strip()
    if not cleaned:
        raise InvalidRequestError(f"{label} cannot be empty.")
    return cleaned


def _clean_ticket_id(value: str) -> str:
    return _require_text(value, "Ticket id").upper()


def _clean_thinking(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip()
    return cleaned[:THINKING_MAX_CHARS] if cleaned else None


# --- REQUEST MODELS ---
class CreateSessionRequest(BaseModel):
    """Optionally pre-seed the agent names of the seats."""

    white: Optional[str] = None
    black: Optional[str] = None

    @field_validator("white", "black")
    @classmethod
    def validate_agent(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return _require_text(value, "Agent id")


class JoinSessionRequest(BaseModel):
    session_id: str
    agent_id: str
    preferred_side: Optional[Side] = None

    @field_validator("session_id")
    @classmethod
    def validate_session_id(cls, value: str) -> str:
        return _require_text(value, "Session id")

    @field_validator("agent_id")
    @classmethod
    def validate_agent_id(cls, value: str) -> str:
        return _require_text(value, "Agent id")


class TicketRequest(BaseModel):
    """Any post-join operation that only needs to know who is asking (draw offer / accept / gate / turn check)."""

    session_id: str
    ticket_id: str

    @field_validator("session_id")
    @classmethod
    def validate_session_id(cls, value: str) -> str:
        return _require_text(value, "Session id")

    @field_validator("ticket_id")
    @classmethod
    def validate_ticket_id(cls, value: str) -> str:
        return _clean_ticket_id(value)


class MoveRequest(TicketRequest):
    move: str
    thinking: Optional[str] = None

    @field_validator("thinking")
    @classmethod
    def validate_thinking(cls, value: Optional[str]) -> Optional[str]:
        return _clean_thinking(value)


class PlayRequest(BaseModel):
    """What an agent types on the command line: the rationale is mandatory there."""

    ticket_id: str
    move: str
    thinking: str

    @field_validator("ticket_id")
    @classmethod
    def validate_ticket_id(cls, value: str) -> str:
        return _clean_ticket_id(value)

    @field_validator("move")
    @classmethod
    def validate_move(cls, value: str) -> str:
        return _require_text(value, "Move")

    @field_validator("thinking")
    @classmethod
    def validate_thinking(cls, value: str) -> str:
        if not value.strip():
            raise InvalidRequestError("Missing required --thinking text.")
        return value.strip()[:THINKING_MAX_CHARS]


# --- RESPONSE MODELS ---
class MoveSummary(BaseModel):
    ply: int
    side: Side
    by: str
    san: str
    uci: str
    thinking: Optional[str]
    turn_duration_ms: int
    created_at: datetime


class SessionResponse(BaseModel):
    session_id: str
    status: Status
    turn: Side
    winner: Optional[Side]
    result_text: Optional[str]
    seats: dict[Side, Optional[str]]
    seat_agents: dict[Side, Optional[str]]
    fen_state: str
    starting_state: str
    pending_draw_from: Optional[Side]
    illegal_attempts: int
    move_history: list[MoveSummary]
    updated_at: datetime

    @classmethod
    def from_model(cls, session: SessionModel) -> "SessionResponse":
        return cls(
            session_id=session.session_id,
            status=session.status,
            turn=session.turn,
            winner=session.winner,
            result_text=session.result_text,
            seats=session.seats,
            seat_agents=session.seat_agents,
            fen_state=session.current_position,
            starting_state=session.positions[0],
            pending_draw_from=(
                session.pending_draw.offered_by_side if session.pending_draw else None
            ),
            illegal_attempts=len(session.illegal_attempts),
            move_history=[
                MoveSummary(
                    ply=move.ply,
                    side=move.side,
                    by=move.by,
                    san=move.san,
                    uci=move.uci,
                    thinking=move.thinking,
                    turn_duration_ms=move.turn_duration_ms,
                    created_at=move.created_at,
                )
                for move in session.history
            ],
            updated_at=session.updated_at,
        )
