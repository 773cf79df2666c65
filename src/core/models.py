"""
Boundary layer data model(s).

These objects are what the Service hands to (and receives from) the persistence layer and the CLI.
They do not know how they are stored: the db layer converts them to / from its own tables.
"""

from dataclasses import dataclass, field
from datetime import datetime

from src.core.shared_types import DrawGateState, Side, Status

# Type aliases to make the models easier to read
TicketId = str
AgentId = str
FEN = str


@dataclass
class MoveRecord:
    """One accepted ply."""

    ply: int
    side: Side
    by: TicketId
    san: str
    uci: str
    from_square: str
    to_square: str
    fen_before: FEN
    fen_after: FEN
    turn_started_at: datetime
    turn_duration_ms: int
    created_at: datetime
    promotion: str | None = None
    thinking: str | None = None


@dataclass
class IllegalMoveRecord:
    """One rejected submission, together with the state the session was in at the time."""

    attempted_by: TicketId
    move_input: str
    reason: str
    expected_turn: Side | None
    expected_agent: TicketId | None
    status_at_attempt: Status
    created_at: datetime


@dataclass
class DrawOffer:
    offered_by_side: Side
    offered_by_ticket: TicketId
    offered_at: datetime
    prompt_shown_to: TicketId | None = None
    prompt_shown_at: datetime | None = None


def _empty_seats() -> dict[Side, str | None]:
    return {Side.WHITE: None, Side.BLACK: None}


@dataclass
class SessionModel:
    """Authoritative state of one game between two agents."""

    session_id: str
    created_at: datetime
    updated_at: datetime
    turn_started_at: datetime
    positions: list[FEN]
    turn: Side = Side.WHITE
    status: Status = Status.ACTIVE
    winner: Side | None = None
    result_text: str | None = None
    seats: dict[Side, TicketId | None] = field(default_factory=_empty_seats)
    seat_agents: dict[Side, AgentId | None] = field(default_factory=_empty_seats)
    history: list[MoveRecord] = field(default_factory=list)
    illegal_attempts: list[IllegalMoveRecord] = field(default_factory=list)
    pending_draw: DrawOffer | None = None
    # bumped by the repository on every successful save (optimistic concurrency)
    version: int = 0

    @property
    def is_active(self) -> bool:
        return self.status is Status.ACTIVE

    @property
    def current_position(self) -> FEN:
        return self.positions[-1]

    @property
    def last_move(self) -> MoveRecord | None:
        return self.history[-1] if self.history else None

    @property
    def last_activity_at(self) -> datetime:
        """Time of the last accepted move, or the creation time before the first move."""
        return self.history[-1].created_at if self.history else self.created_at

    def side_of(self, ticket_id: TicketId) -> Side | None:
        for side, seated in self.seats.items():
            if seated is not None and seated == ticket_id:
                return side
        return None

    def both_seated(self) -> bool:
        return all(self.seats[side] for side in Side)


@dataclass
class TicketModel:
    """Capability binding one agent to one seat of one session."""

    ticket_id: TicketId
    session_id: str
    agent_id: AgentId
    side: Side
    created_at: datetime
    updated_at: datetime


@dataclass
class JoinResult:
    session: SessionModel
    side: Side
    ticket_id: TicketId


@dataclass
class MoveResult:
    session: SessionModel
    move: MoveRecord


@dataclass
class DrawGateResult:
    state: DrawGateState
    session: SessionModel
    offer: DrawOffer | None = None
