"""
Conversion between stored (JSON friendly) values and the boundary models.

Reading never trusts the stored shape: a record written by an older version, or observed half-way through a write by another
process, is patched up with safe defaults rather than crashing the reader. Only records that cannot be
interpreted at all (no id, unknown status, no side on a ticket) raise InvalidRecordError.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable

from src.chess.oracle import STARTING_FEN
from src.core.exceptions import InvalidRecordError
from src.core.models import (
    DrawOffer,
    IllegalMoveRecord,
    MoveRecord,
    SessionModel,
    TicketModel,
)
from src.core.shared_types import Side, Status

logger = logging.getLogger(__name__)


# --- scalar helpers ---
def to_iso(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat()


def parse_timestamp(value: Any, fallback: datetime) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return fallback
    else:
        return fallback
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_side(value: Any) -> Side | None:
    if isinstance(value, str) and value.strip().lower() in Side._value2member_map_:
        return Side(value.strip().lower())
    return None


def parse_ticket_id(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip().upper()
    return cleaned or None


def parse_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None


def parse_non_negative_ms(value: Any, fallback: int) -> int:
    if isinstance(value, bool):
        return max(0, fallback)
    if isinstance(value, (int, float)):
        return max(0, int(value))
    if isinstance(value, str):
        try:
            return max(0, int(float(value)))
        except ValueError:
            pass
    return max(0, fallback)


def elapsed_ms(start: datetime, end: datetime) -> int:
    """Milliseconds between two instants, clamped at zero (clocks of two machines can disagree)."""
    return max(0, int((end - start).total_seconds() * 1000))


def side_from_fen(fen: str) -> Side:
    parts = fen.split(" ")
    return Side.BLACK if len(parts) > 1 and parts[1] == "b" else Side.WHITE


# --- nested records ---
def load_move(raw: Any, index: int, fallback_at: datetime) -> MoveRecord | None:
    if not isinstance(raw, dict):
        return None
    side = parse_side(raw.get("side"))
    fen_after = raw.get("fen_after")
    if side is None or not isinstance(fen_after, str):
        return None

    created_at = parse_timestamp(raw.get("created_at"), fallback_at)
    started_at = parse_timestamp(raw.get("turn_started_at"), created_at)
    ply = raw.get("ply")
    return MoveRecord(
        ply=ply if isinstance(ply, int) and not isinstance(ply, bool) else index + 1,
        side=side,
        by=parse_ticket_id(raw.get("by")) or "UNKNOWN",
        san=str(raw.get("san") or raw.get("uci") or ""),
        uci=str(raw.get("uci") or ""),
        from_square=str(raw.get("from_square") or ""),
        to_square=str(raw.get("to_square") or ""),
        fen_before=str(raw.get("fen_before") or ""),
        fen_after=fen_after,
        turn_started_at=started_at,
        turn_duration_ms=parse_non_negative_ms(
            raw.get("turn_duration_ms"), elapsed_ms(started_at, created_at)
        ),
        created_at=created_at,
        promotion=parse_text(raw.get("promotion")),
        thinking=parse_text(raw.get("thinking")),
    )


def dump_move(move: MoveRecord) -> dict[str, Any]:
    return {
        "ply": move.ply,
        "side": move.side.value,
        "by": move.by,
        "san": move.san,
        "uci": move.uci,
        "from_square": move.from_square,
        "to_square": move.to_square,
        "promotion": move.promotion,
        "thinking": move.thinking,
        "fen_before": move.fen_before,
        "fen_after": move.fen_after,
        "turn_started_at": to_iso(move.turn_started_at),
        "turn_duration_ms": move.turn_duration_ms,
        "created_at": to_iso(move.created_at),
    }


def load_illegal_attempt(
    raw: Any, fallback_at: datetime, fallback_status: Status
) -> IllegalMoveRecord | None:
    if not isinstance(raw, dict):
        return None
    status = raw.get("status_at_attempt")
    return IllegalMoveRecord(
        attempted_by=parse_ticket_id(raw.get("attempted_by")) or "UNKNOWN",
        move_input=raw.get("move_input") if isinstance(raw.get("move_input"), str) else "",
        reason=parse_text(raw.get("reason")) or "Illegal move attempt.",
        expected_turn=parse_side(raw.get("expected_turn")),
        expected_agent=parse_ticket_id(raw.get("expected_agent")),
        status_at_attempt=(
            Status(status)
            if isinstance(status, str) and status in Status._value2member_map_
            else fallback_status
        ),
        created_at=parse_timestamp(raw.get("created_at"), fallback_at),
    )


def dump_illegal_attempt(attempt: IllegalMoveRecord) -> dict[str, Any]:
    return {
        "attempted_by": attempt.attempted_by,
        "move_input": attempt.move_input,
        "reason": attempt.reason,
        "expected_turn": attempt.expected_turn.value if attempt.expected_turn else None,
        "expected_agent": attempt.expected_agent,
        "status_at_attempt": attempt.status_at_attempt.value,
        "created_at": to_iso(attempt.created_at),
    }


def load_draw_offer(raw: Any, fallback_at: datetime) -> DrawOffer | None:
    """A pending offer missing its side or ticket is dropped (treated as no offer)."""
    if not isinstance(raw, dict):
        return None
    side = parse_side(raw.get("offered_by_side"))
    ticket_id = parse_ticket_id(raw.get("offered_by_ticket"))
    if side is None or ticket_id is None:
        return None
    shown_to = parse_ticket_id(raw.get("prompt_shown_to"))
    return DrawOffer(
        offered_by_side=side,
        offered_by_ticket=ticket_id,
        offered_at=parse_timestamp(raw.get("offered_at"), fallback_at),
        prompt_shown_to=shown_to,
        prompt_shown_at=(
            parse_timestamp(raw.get("prompt_shown_at"), fallback_at) if shown_to else None
        ),
    )


def dump_draw_offer(offer: DrawOffer | None) -> dict[str, Any] | None:
    if offer is None:
        return None
    return {
        "offered_by_side": offer.offered_by_side.value,
        "offered_by_ticket": offer.offered_by_ticket,
        "offered_at": to_iso(offer.offered_at),
        "prompt_shown_to": offer.prompt_shown_to,
        "prompt_shown_at": to_iso(offer.prompt_shown_at) if offer.prompt_shown_at else None,
    }


def load_seats(
    raw: Any, parse: Callable[[Any], str | None]
) -> dict[Side, str | None]:
    raw = raw if isinstance(raw, dict) else {}
    return {side: parse(raw.get(side.value)) for side in Side}


def dump_seats(seats: dict[Side, str | None]) -> dict[str, str | None]:
    return {side.value: seats.get(side) for side in Side}


# --- top-level records ---
def load_session(fields: dict[str, Any], now: datetime) -> SessionModel:
    """Build a SessionModel from the raw column values of a stored session."""
    session_id = parse_text(fields.get("id"))
    if session_id is None:
        raise InvalidRecordError("Session record has no id.")
    raw_status = fields.get("status")
    if not isinstance(raw_status, str) or raw_status not in Status._value2member_map_:
        raise InvalidRecordError(
            f"Session {session_id} has an unknown status: {raw_status!r}."
        )
    status = Status(raw_status)

    created_at = parse_timestamp(fields.get("created_at"), now)
    updated_at = parse_timestamp(fields.get("updated_at"), created_at)

    raw_history = fields.get("history")
    history = [
        move
        for index, raw in enumerate(raw_history if isinstance(raw_history, list) else [])
        if (move := load_move(raw, index, updated_at)) is not None
    ]
    raw_attempts = fields.get("illegal_attempts")
    illegal_attempts = [
        attempt
        for raw in (raw_attempts if isinstance(raw_attempts, list) else [])
        if (attempt := load_illegal_attempt(raw, updated_at, status)) is not None
    ]

    positions = fields.get("positions")
    if (
        not isinstance(positions, list)
        or not all(isinstance(fen, str) for fen in positions)
        or len(positions) != len(history) + 1
    ):
        # Rebuild from the move history, which is the source of truth for what was played
        initial = history[0].fen_before if history and history[0].fen_before else None
        if initial is None and isinstance(positions, list) and positions and isinstance(positions[0], str):
            initial = positions[0]
        positions = [initial or STARTING_FEN] + [move.fen_after for move in history]
        logger.warning("Session %s: positions rebuilt from move history.", session_id)

    turn = parse_side(fields.get("turn")) or side_from_fen(positions[-1])
    fallback_turn_start = history[-1].created_at if history else updated_at

    version = fields.get("version")
    return SessionModel(
        session_id=session_id,
        created_at=created_at,
        updated_at=updated_at,
        turn_started_at=parse_timestamp(fields.get("turn_started_at"), fallback_turn_start),
        positions=list(positions),
        turn=turn,
        status=status,
        winner=parse_side(fields.get("winner")) if status.is_decisive else None,
        result_text=parse_text(fields.get("result_text")),
        seats=load_seats(fields.get("seats"), parse_ticket_id),
        seat_agents=load_seats(fields.get("seat_agents"), parse_text),
        history=history,
        illegal_attempts=illegal_attempts,
        pending_draw=load_draw_offer(fields.get("pending_draw"), updated_at),
        version=version if isinstance(version, int) else 0,
    )


def dump_session(session: SessionModel) -> dict[str, Any]:
    """Column values for a session (without id / version, which the repository handles)."""
    return {
        "seats": dump_seats(session.seats),
        "seat_agents": dump_seats(session.seat_agents),
        "turn": session.turn.value,
        "status": session.status.value,
        "winner": session.winner.value if session.winner else None,
        "result_text": session.result_text,
        "history": [dump_move(move) for move in session.history],
        "illegal_attempts": [dump_illegal_attempt(a) for a in session.illegal_attempts],
        "positions": list(session.positions),
        "pending_draw": dump_draw_offer(session.pending_draw),
        "turn_started_at": to_iso(session.turn_started_at),
        "created_at": to_iso(session.created_at),
        "updated_at": to_iso(session.updated_at),
    }


def load_ticket(fields: dict[str, Any], now: datetime) -> TicketModel:
    """Normalise a ticket; a ticket without side or ids is unusable and rejected."""
    ticket_id = parse_ticket_id(fields.get("ticket_id"))
    side = parse_side(fields.get("side"))
    if side is None:
        raise InvalidRecordError(f"Ticket {ticket_id or '?'} is invalid (missing side).")
    session_id = parse_text(fields.get("session_id"))
    agent_id = parse_text(fields.get("agent_id"))
    if not ticket_id or not session_id or not agent_id:
        raise InvalidRecordError(f"Ticket {ticket_id or '?'} is invalid.")
    created_at = parse_timestamp(fields.get("created_at"), now)
    return TicketModel(
        ticket_id=ticket_id,
        session_id=session_id,
        agent_id=agent_id,
        side=side,
        created_at=created_at,
        updated_at=parse_timestamp(fields.get("updated_at"), created_at),
    )


def dump_ticket(ticket: TicketModel) -> dict[str, Any]:
    return {
        "ticket_id": ticket.ticket_id,
        "session_id": ticket.session_id,
        "agent_id": ticket.agent_id,
        "side": ticket.side.value,
        "created_at": to_iso(ticket.created_at),
        "updated_at": to_iso(ticket.updated_at),
    }
