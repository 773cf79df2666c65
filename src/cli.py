"""
agent-chess CLI - two agents play one game through a shared local store.

Usage:
    agent-chess join <agent_id> [--side white|black]     Join the active session (creates one if needed)
    agent-chess play <ticket> <move> --thinking TEXT      Submit a move, then wait for the opponent
    agent-chess request-draw <ticket>                     Offer a draw
    agent-chess accept-draw <ticket>                      Accept the opponent's draw offer
    agent-chess board                                     Show the active session
    agent-chess status [session_id] [--json]              Show a session (default: the active one)
    agent-chess reset                                     Delete all sessions and tickets

Exit codes: 0 ok, 1 error, 2 wait timed out, 130 interrupted.
"""

import argparse
import logging
import signal
import sys
from contextlib import contextmanager
from datetime import datetime
from typing import Generator

from src.api.models import (
    JoinSessionRequest,
    MoveRequest,
    PlayRequest,
    SessionResponse,
    TicketRequest,
)
from src.chess.render import render_board
from src.core.config import Settings, load_settings
from src.core.exceptions import GameError
from src.core.models import SessionModel
from src.core.shared_types import DrawGateState, Side
from src.db.database import open_db
from src.db.sql_repository import SQLSessionRepository
from src.services.session_service import SessionService
from src.services.waiting import (
    SessionWaiter,
    WaitResult,
    WaitState,
    release_seat_on_interrupt,
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_TIMEOUT = 2
EXIT_INTERRUPTED = 130


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command is None:
        parser.print_help()
        return EXIT_ERROR

    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.WARNING),
        format="%(levelname)s %(name)s: %(message)s",
    )

    try:
        with open_service(settings) as service:
            return COMMANDS[args.command](service, args)
    except GameError as error:
        logger.debug("Command %s failed.", args.command, exc_info=True)
        print(f"Error: {error}", file=sys.stderr)
        return EXIT_ERROR
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_INTERRUPTED


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent-chess",
        description="Turn-based chess between two agents, coordinated through a shared local store.",
    )
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    join_parser = subparsers.add_parser(
        "join",
        help="Join the active session (or create one), then wait until both agents are present and it is your turn",
    )
    join_parser.add_argument("agent_id", help="Agent identity, e.g. model@harness")
    join_parser.add_argument("--side", choices=[side.value for side in Side])

    play_parser = subparsers.add_parser(
        "play", help="Submit one move and wait for the opponent's reply"
    )
    play_parser.add_argument("ticket_id", help="Ticket returned by join")
    play_parser.add_argument("move", help="Move in coordinate notation (e2e4) or SAN (Nf3)")
    play_parser.add_argument("--thinking", default="", help="Reasoning for this move (required)")

    draw_parser = subparsers.add_parser("request-draw", help="Offer a draw to the opponent")
    draw_parser.add_argument("ticket_id", help="Ticket returned by join")

    accept_parser = subparsers.add_parser("accept-draw", help="Accept the pending draw offer")
    accept_parser.add_argument("ticket_id", help="Ticket returned by join")

    subparsers.add_parser("board", help="Show the board of the active session")

    status_parser = subparsers.add_parser("status", help="Show a session")
    status_parser.add_argument("session_id", nargs="?", help="Session id (default: the active session)")
    status_parser.add_argument("--json", action="store_true", help="Print JSON")

    subparsers.add_parser("reset", help="Delete all sessions and tickets")
    return parser


@contextmanager
def open_service(settings: Settings) -> Generator[SessionService, None, None]:
    with open_db(settings) as db:
        yield SessionService(SQLSessionRepository(db), settings=settings)


# --- commands ---
def cmd_join(service: SessionService, args: argparse.Namespace) -> int:
    target = service.resolve_join_target()
    joined = service.join_session(
        JoinSessionRequest(
            session_id=target.session_id,
            agent_id=args.agent_id,
            preferred_side=Side(args.side) if args.side else None,
        )
    )
    print(f"Joined session {joined.session.session_id} as {joined.side}. Ticket: {joined.ticket_id}")
    print("Waiting for another agent to join...")

    ticket = service.resolve_ticket(joined.ticket_id)
    waiter = SessionWaiter(service)
    with sigterm_as_exit(), release_seat_on_interrupt(service, ticket.ticket_id):
        result = waiter.wait_for_opponent_join(
            ticket,
            on_opponent_joined=lambda _: print(
                "Opponent joined. Waiting for opponent to make their move..."
            ),
        )

    if result.state is WaitState.GAME_FINISHED:
        print(session_summary(result.session))
        return EXIT_OK

    print("Both agents joined. It is your turn.\n")
    print(render_board(result.session.current_position))
    last_move = result.session.last_move
    if last_move:
        print(f"\nLast move: {last_move.san} by {last_move.by}")
    print(f'\nPlay with: agent-chess play {joined.ticket_id} <move> --thinking "<reasoning>"')
    return EXIT_OK


def cmd_play(service: SessionService, args: argparse.Namespace) -> int:
    ticket = service.resolve_ticket(args.ticket_id)
    gate = service.gate_on_pending_offer(
        TicketRequest(session_id=ticket.session_id, ticket_id=ticket.ticket_id)
    )
    if gate.state is DrawGateState.PROMPT and gate.offer is not None:
        print(
            f"The other agent offered a draw at {format_time(gate.offer.offered_at)}.\n"
            f"Run `agent-chess accept-draw {ticket.ticket_id}` to accept the draw.\n"
            "Or run your same `agent-chess play ...` command again to keep playing."
        )
        return EXIT_OK

    play = PlayRequest(ticket_id=ticket.ticket_id, move=args.move, thinking=args.thinking)
    waiter = SessionWaiter(service)

    before = waiter.wait_for_turn(ticket)
    if before.state is not WaitState.READY:
        print(render_play_result(before, ticket.side, waiter.timeout_s))
        return EXIT_TIMEOUT if before.state is WaitState.TIMEOUT else EXIT_OK

    result = service.submit_move(
        MoveRequest(
            session_id=ticket.session_id,
            ticket_id=play.ticket_id,
            move=play.move,
            thinking=play.thinking,
        )
    )
    after = waiter.wait_for_opponent_move(
        ticket.session_id, ticket.ticket_id, len(result.session.history)
    )
    print(render_play_result(after, ticket.side, waiter.timeout_s))
    return EXIT_TIMEOUT if after.state is WaitState.TIMEOUT else EXIT_OK


def cmd_request_draw(service: SessionService, args: argparse.Namespace) -> int:
    ticket = service.resolve_ticket(args.ticket_id)
    session = service.offer_draw(
        TicketRequest(session_id=ticket.session_id, ticket_id=ticket.ticket_id)
    )
    print(f"Draw offer sent for session {session.session_id}.")
    return EXIT_OK


def cmd_accept_draw(service: SessionService, args: argparse.Namespace) -> int:
    ticket = service.resolve_ticket(args.ticket_id)
    session = service.accept_draw(
        TicketRequest(session_id=ticket.session_id, ticket_id=ticket.ticket_id)
    )
    print(render_board(session.current_position))
    print()
    print(session_summary(session))
    return EXIT_OK


def cmd_board(service: SessionService, args: argparse.Namespace) -> int:
    session = require_single_active(service)
    print(render_board(session.current_position))
    print()
    print(session_summary(session))
    if session.last_move:
        print(f"\nLast move: {session.last_move.san} by {session.last_move.by}")
    return EXIT_OK


def cmd_status(service: SessionService, args: argparse.Namespace) -> int:
    if args.session_id:
        session = service.get_session(args.session_id)
    else:
        session = require_single_active(service)
    if args.json:
        print(SessionResponse.from_model(session).model_dump_json(indent=2))
    else:
        print(session_summary(session))
    return EXIT_OK


def cmd_reset(service: SessionService, args: argparse.Namespace) -> int:
    sessions, tickets = service.reset()
    print(f"Reset complete. Deleted {sessions} session(s) and {tickets} ticket(s).")
    return EXIT_OK


COMMANDS = {
    "join": cmd_join,
    "play": cmd_play,
    "request-draw": cmd_request_draw,
    "accept-draw": cmd_accept_draw,
    "board": cmd_board,
    "status": cmd_status,
    "reset": cmd_reset,
}


# --- helpers ---
def require_single_active(service: SessionService) -> SessionModel:
    active = service.list_active_sessions()
    if not active:
        raise GameError("No active session found.")
    if len(active) > 1:
        raise GameError("Multiple active sessions found. Pass an explicit session id.")
    return active[0]


@contextmanager
def sigterm_as_exit() -> Generator[None, None, None]:
    """Turn SIGTERM into SystemExit for the duration of the block, so cleanup scopes run."""

    def _handler(signum: int, frame: object) -> None:
        raise SystemExit(128 + signum)

    previous = signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


def session_summary(session: SessionModel) -> str:
    lines = [
        f"Session: {session.session_id}",
        f"Status: {session.status}",
    ]
    for side in Side:
        agent = session.seat_agents[side]
        lines.append(f"{side}: {'taken' if session.seats[side] else 'free'} ({agent or 'n/a'})")
    if session.is_active:
        agent = session.seat_agents[session.turn]
        lines.append(f"Turn: {session.turn} ({agent or 'open seat'})")
        if session.pending_draw:
            lines.append(f"Pending draw offer: from {session.pending_draw.offered_by_side}")
    if session.winner:
        lines.append(f"Winner: {session.winner}")
    if session.result_text:
        lines.append(f"Result: {session.result_text}")
    lines.append(f"Moves: {len(session.history)}")
    return "\n".join(lines)


def render_play_result(result: WaitResult, side: Side, timeout_s: float) -> str:
    lines = [
        render_board(result.session.current_position),
        "",
        f"Seat: {side}",
        f"Wait state: {result.state}",
        f"Waited: {format_duration(result.waited_ms)} (polls={result.polls}, timeout={format_duration(timeout_s * 1000)})",
        "",
        session_summary(result.session),
    ]
    last_move = result.session.last_move
    if last_move:
        lines += ["", f"Last move: {last_move.san} by {last_move.by}"]
    if result.session.is_active:
        lines += ["", "Play the next move until the game is over."]
    return "\n".join(lines)


def format_duration(ms: float) -> str:
    ms = max(0.0, ms)
    if ms >= 60_000:
        return f"{ms / 60_000:.2f}m"
    if ms >= 1000:
        return f"{ms / 1000:.2f}s"
    return f"{round(ms)}ms"


def format_time(value: datetime) -> str:
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S")


if __name__ == "__main__":
    sys.exit(main())
