"""
Orchestration of session coordination: seats, turns, draws and time-outs.

Two agent processes never talk to each other. Everything goes through the repository:
load fresh -> change in memory -> save (the save is rejected if another process saved in between).
Seat assignment additionally runs under a per-session file lock.
"""

import logging
import random
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Callable, NoReturn

from src.api.models import (
    CreateSessionRequest,
    JoinSessionRequest,
    MoveRequest,
    TicketRequest,
)
from src.chess.oracle import STARTING_FEN, LegalityOracle, PythonChessOracle
from src.core.config import (
    MAX_CONSECUTIVE_ILLEGAL_MOVES,
    SESSION_ID_POOL,
    TICKET_ALPHABET,
    TICKET_LENGTH,
    TICKET_MINT_ATTEMPTS,
    Settings,
)
from src.core.exceptions import (
    ConcurrentUpdateError,
    DrawOfferError,
    GameError,
    IllegalMoveError,
    InvalidRequestError,
    NotYourTurnError,
    SeatOccupiedError,
    SessionBusyError,
    SessionFinishedError,
    SessionNotFoundError,
    TicketAllocationError,
    TicketInvalidError,
    TicketNotFoundError,
)
from src.core.models import (
    DrawGateResult,
    DrawOffer,
    IllegalMoveRecord,
    JoinResult,
    MoveRecord,
    MoveResult,
    SessionModel,
    TicketModel,
)
from src.core.shared_types import DrawGateState, Side, Status
from src.db.lock import session_lock
from src.db.normalize import elapsed_ms
from src.db.repository import SessionRepository
from src.db.schema import utc_now

logger = logging.getLogger(__name__)

RESULT_TEXT = {
    Status.STALEMATE: "Draw by stalemate.",
    Status.DRAW_INSUFFICIENT_MATERIAL: "Draw by insufficient material.",
    Status.DRAW_REPETITION: "Draw by threefold repetition.",
    Status.DRAW_FIFTY_MOVE_RULE: "Draw by fifty-move rule.",
    Status.DRAW: "Draw by agreement.",
}


class SessionService:
    """Orchestration of layers for a two-agent session."""

    def __init__(
        self,
        repository: SessionRepository,
        settings: Settings | None = None,
        oracle: LegalityOracle | None = None,
        clock: Callable[[], datetime] = utc_now,
        rng: random.Random | None = None,
    ) -> None:
        self.repo = repository
        self.settings = settings or Settings()
        self.oracle = oracle or PythonChessOracle()
        self.clock = clock
        self.rng = rng or random.SystemRandom()

    # --- lifecycle ---
    def create_session(self, request: CreateSessionRequest | None = None) -> SessionModel:
        """
        Start a new session under a free id of the pool (or recycle the oldest finished one).
        Only one session can be active at a time: the registry claim fails if another one is.
        """
        request = request or CreateSessionRequest()
        sessions = [self._apply_inactivity_timeout(s) for s in self.repo.list_sessions()]
        active = [s for s in sessions if s.is_active]
        if active:
            raise SessionBusyError(active[0].session_id)
        self._release_stale_active_slot()

        session_id = self._allocate_session_id(sessions)
        now = self.clock()
        session = SessionModel(
            session_id=session_id,
            created_at=now,
            updated_at=now,
            turn_started_at=now,
            positions=[STARTING_FEN],
            seat_agents={Side.WHITE: request.white, Side.BLACK: request.black},
        )

        self.repo.claim_active_slot(session_id)
        try:
            self.repo.save_session(session)
        except GameError:
            self.repo.release_active_slot(session_id)
            raise
        logger.info("Session %s created.", session_id)
        return session

    def resolve_join_target(self) -> SessionModel:
        """The single active session, created on the fly if there is none."""
        active = self.list_active_sessions()
        if not active:
            return self.create_session()
        if len(active) > 1:
            raise SessionBusyError(active[0].session_id)
        return active[0]

    def get_session(self, session_id: str) -> SessionModel:
        """Read accessor for presentation layers: always applies the inactivity check first."""
        return self._apply_inactivity_timeout(self.repo.get_session(session_id))

    def list_active_sessions(self) -> list[SessionModel]:
        sessions = [self._apply_inactivity_timeout(s) for s in self.repo.list_sessions()]
        return [s for s in sessions if s.is_active]

    def reset(self) -> tuple[int, int]:
        """Delete every session and ticket (all tickets become invalid)."""
        deleted = self.repo.clear()
        logger.info("Store reset: %d session(s), %d ticket(s) deleted.", *deleted)
        return deleted

    # --- seats ---
    def join_session(self, request: JoinSessionRequest) -> JoinResult:
        """Assign a seat to an agent and issue its ticket."""
        with self._lock(request.session_id):
            session = self.get_session(request.session_id)
            if not session.is_active:
                raise SessionFinishedError(
                    f"Session {session.session_id} is already finished ({session.status})."
                )

            side = self._choose_side(session, request.preferred_side)
            ticket_id = self._mint_ticket_id()
            now = self.clock()
            session.seats[side] = ticket_id
            session.seat_agents[side] = request.agent_id
            session.updated_at = now

            ticket = self.repo.save_ticket(
                TicketModel(
                    ticket_id=ticket_id,
                    session_id=session.session_id,
                    agent_id=request.agent_id,
                    side=side,
                    created_at=now,
                    updated_at=now,
                )
            )
            try:
                self.repo.save_session(session)
            except GameError:
                self.repo.delete_ticket(ticket.ticket_id)
                raise

        logger.info(
            "Agent %s joined session %s as %s (ticket %s).",
            request.agent_id,
            session.session_id,
            side,
            ticket_id,
        )
        return JoinResult(session=session, side=side, ticket_id=ticket_id)

    def abandon_if_unpaired(self, ticket_id: str) -> bool:
        """
        Give the seat back if the opponent never showed up (the agent stopped waiting).
        Returns True if the seat was released. Once both agents are seated this is a no-op.
        """
        ticket_id = self._clean_ticket_id(ticket_id)
        try:
            ticket = self.repo.get_ticket(ticket_id)
        except TicketNotFoundError:
            return False

        with self._lock(ticket.session_id):
            session = self.get_session(ticket.session_id)
            if session.seats[ticket.side] != ticket.ticket_id:
                # seat already taken over / released: the ticket is dead either way
                self.repo.delete_ticket(ticket.ticket_id)
                return False
            if session.seats[ticket.side.opponent]:
                return False

            session.seats[ticket.side] = None
            session.seat_agents[ticket.side] = None
            session.updated_at = self.clock()
            self.repo.save_session(session)
            self.repo.delete_ticket(ticket.ticket_id)

        logger.info(
            "Released %s seat of session %s (ticket %s).",
            ticket.side,
            ticket.session_id,
            ticket.ticket_id,
        )
        return True

    def resolve_ticket(self, ticket_id: str) -> TicketModel:
        """Load a ticket and check that it still owns its seat (the session is authoritative)."""
        ticket = self.repo.get_ticket(self._clean_ticket_id(ticket_id))
        try:
            session = self.get_session(ticket.session_id)
        except SessionNotFoundError as error:
            raise TicketInvalidError(
                f"Ticket {ticket.ticket_id} points to session {ticket.session_id}, which no longer exists."
            ) from error
        self.ensure_seated(session, ticket)
        return ticket

    @staticmethod
    def ensure_seated(session: SessionModel, ticket: TicketModel) -> None:
        seated = session.seats[ticket.side]
        if seated != ticket.ticket_id:
            raise TicketInvalidError(
                f"Ticket {ticket.ticket_id} is no longer valid for {ticket.side}. "
                f"Expected {ticket.ticket_id}, found {seated or 'open seat'}."
            )

    def is_agents_turn(self, request: TicketRequest) -> bool:
        session = self.get_session(request.session_id)
        return session.seats[session.turn] == request.ticket_id

    # --- moves ---
    def submit_move(self, request: MoveRequest) -> MoveResult:
        """
        Validate and apply one move.

        Every rejection (finished session, wrong turn, illegal move) is recorded on the session before the error is
        raised, and may end the session by forfeit: re-read the session to observe it (or check `error.forfeited`).
        """
        session = self.get_session(request.session_id)
        ticket_id = request.ticket_id

        if not session.is_active:
            self._reject(
                session,
                request,
                f"Session {session.session_id} is already finished ({session.status}).",
                SessionFinishedError,
            )

        side = session.turn
        seated = session.seats[side]
        if not seated:
            self._reject(session, request, f"No agent has joined as {side} yet.")
        if seated != ticket_id:
            self._reject(
                session,
                request,
                f"It is {side}'s turn and controlled by ticket {seated}.",
            )

        fen_before = session.current_position
        verdict = self.oracle.apply_move(
            fen_before, request.move, previous_positions=session.positions
        )
        if not verdict.legal or verdict.new_position is None:
            self._reject(
                session,
                request,
                verdict.reason or f"Illegal move {request.move!r}.",
                IllegalMoveError,
            )

        now = self.clock()
        move = MoveRecord(
            ply=len(session.history) + 1,
            side=side,
            by=ticket_id,
            san=verdict.san or request.move.strip(),
            uci=verdict.uci or "",
            from_square=verdict.from_square or "",
            to_square=verdict.to_square or "",
            promotion=verdict.promotion,
            thinking=request.thinking,
            fen_before=fen_before,
            fen_after=verdict.new_position,
            turn_started_at=session.turn_started_at,
            turn_duration_ms=elapsed_ms(session.turn_started_at, now),
            created_at=now,
        )
        session.history.append(move)
        session.positions.append(verdict.new_position)
        session.turn = verdict.side_to_move or side.opponent
        session.pending_draw = None
        session.turn_started_at = now
        session.updated_at = now
        if verdict.terminal is not None:
            self._finish(session, verdict.terminal, winner=side)

        self.repo.save_session(session)
        logger.info(
            "Session %s ply %d: %s played %s (%s).",
            session.session_id,
            move.ply,
            side,
            move.san,
            session.status,
        )
        return MoveResult(session=session, move=move)

    # --- draws ---
    def offer_draw(self, request: TicketRequest) -> SessionModel:
        session = self._active_session(request.session_id)
        side = self._seated_side(session, request.ticket_id)
        if not session.seats[side.opponent]:
            raise DrawOfferError("Cannot offer a draw until both agents have joined.")

        pending = session.pending_draw
        if pending is not None:
            if pending.offered_by_ticket == request.ticket_id:
                raise DrawOfferError(
                    "You already offered a draw. Wait for the opponent response."
                )
            raise DrawOfferError(
                "Opponent already offered a draw. Use accept-draw or play to continue."
            )

        now = self.clock()
        session.pending_draw = DrawOffer(
            offered_by_side=side,
            offered_by_ticket=request.ticket_id,
            offered_at=now,
        )
        session.updated_at = now
        self.repo.save_session(session)
        logger.info("Session %s: %s offered a draw.", session.session_id, side)
        return session

    def accept_draw(self, request: TicketRequest) -> SessionModel:
        session = self._active_session(request.session_id)
        side = self._seated_side(session, request.ticket_id)
        pending = session.pending_draw
        if pending is None:
            raise DrawOfferError("No pending draw offer.")
        if pending.offered_by_ticket == request.ticket_id:
            raise DrawOfferError("You offered this draw. Wait for your opponent to accept.")

        self._finish(session, Status.DRAW)
        self.repo.save_session(session)
        logger.info("Session %s: %s accepted the draw.", session.session_id, side)
        return session

    def gate_on_pending_offer(self, request: TicketRequest) -> DrawGateResult:
        """
        Called before a move is submitted. The first call after an opponent's offer is interrupted (PROMPT) so the
        agent can decide; the next call silently declines the offer and lets the move through (NONE).
        """
        session = self.get_session(request.session_id)
        offer = session.pending_draw
        if not session.is_active or offer is None:
            return DrawGateResult(state=DrawGateState.NONE, session=session)
        if offer.offered_by_ticket == request.ticket_id:
            return DrawGateResult(state=DrawGateState.NONE, session=session, offer=offer)

        now = self.clock()
        session.updated_at = now
        if offer.prompt_shown_to == request.ticket_id:
            session.pending_draw = None
            self.repo.save_session(session)
            logger.info("Session %s: draw offer declined implicitly.", session.session_id)
            return DrawGateResult(state=DrawGateState.NONE, session=session, offer=offer)

        session.pending_draw = replace(
            offer, prompt_shown_to=request.ticket_id, prompt_shown_at=now
        )
        self.repo.save_session(session)
        return DrawGateResult(
            state=DrawGateState.PROMPT, session=session, offer=session.pending_draw
        )

    # --- internal helpers ---
    def _apply_inactivity_timeout(self, session: SessionModel) -> SessionModel:
        """End an active session as a draw when nobody moved for too long. No-op on finished sessions."""
        if not session.is_active:
            return session
        idle = self.clock() - session.last_activity_at
        if idle < timedelta(seconds=self.settings.inactivity_timeout_s):
            return session

        self._finish(session, Status.DRAW_INACTIVITY)
        minutes = self.settings.inactivity_timeout_s / 60
        session.result_text = (
            f"Draw by inactivity timeout (no moves for {minutes:g} minutes)."
        )
        try:
            self.repo.save_session(session)
        except ConcurrentUpdateError:
            # the other agent saved first (usually this very timeout): re-check its version
            logger.info(
                "Session %s changed while applying the inactivity timeout; reloading.",
                session.session_id,
            )
            return self._apply_inactivity_timeout(self.repo.get_session(session.session_id))
        logger.info("Session %s: draw by inactivity timeout.", session.session_id)
        return session

    def _finish(
        self, session: SessionModel, status: Status, winner: Side | None = None
    ) -> None:
        now = self.clock()
        session.status = status
        session.winner = winner if status.is_decisive else None
        if status is Status.CHECKMATE:
            session.result_text = f"Checkmate. {winner} wins."
        else:
            session.result_text = RESULT_TEXT.get(status)
        session.pending_draw = None
        session.turn_started_at = now
        session.updated_at = now

    def _reject(
        self,
        session: SessionModel,
        request: MoveRequest,
        reason: str,
        error_cls: type[GameError] = NotYourTurnError,
    ) -> NoReturn:
        """
        Record an illegal attempt, apply the illegal-streak forfeit, persist, and raise.

        Only a seated ticket can forfeit: a streak from a ticket that holds no seat (stale, or never issued
        for this session) is recorded but leaves the session active, so an outsider cannot end someone
        else's game.
        """
        now = self.clock()
        expected_turn = session.turn if session.is_active else None
        session.illegal_attempts.append(
            IllegalMoveRecord(
                attempted_by=request.ticket_id,
                move_input=request.move,
                reason=reason,
                expected_turn=expected_turn,
                expected_agent=session.seats[expected_turn] if expected_turn else None,
                status_at_attempt=session.status,
                created_at=now,
            )
        )
        session.updated_at = now

        forfeited = False
        offender = session.side_of(request.ticket_id)
        streak = self._illegal_streak(session, request.ticket_id)
        if (
            session.is_active
            and offender is not None
            and streak >= MAX_CONSECUTIVE_ILLEGAL_MOVES
        ):
            self._finish(session, Status.FORFEIT_ILLEGAL_MOVES, winner=offender.opponent)
            session.result_text = (
                f"{offender} forfeits after {streak} consecutive illegal move attempts. "
                f"{offender.opponent} wins."
            )
            forfeited = True
            logger.info(
                "Session %s: %s forfeits (illegal move streak).",
                session.session_id,
                offender,
            )

        self.repo.save_session(session)
        logger.warning(
            "Session %s: rejected %r from ticket %s: %s",
            session.session_id,
            request.move,
            request.ticket_id,
            reason,
        )
        if issubclass(error_cls, IllegalMoveError):
            raise error_cls(reason, forfeited=forfeited)
        raise error_cls(reason)

    @staticmethod
    def _illegal_streak(session: SessionModel, ticket_id: str) -> int:
        """Length of the run of illegal attempts by `ticket_id` at the end of the attempt log."""
        streak = 0
        for attempt in reversed(session.illegal_attempts):
            if attempt.attempted_by != ticket_id:
                break
            streak += 1
        return streak

    def _active_session(self, session_id: str) -> SessionModel:
        session = self.get_session(session_id)
        if not session.is_active:
            raise SessionFinishedError(
                f"Session {session_id} is already finished ({session.status})."
            )
        return session

    @staticmethod
    def _seated_side(session: SessionModel, ticket_id: str) -> Side:
        side = session.side_of(ticket_id)
        if side is None:
            raise TicketInvalidError(
                f"Ticket {ticket_id} is not seated in session {session.session_id}."
            )
        return side

    def _choose_side(self, session: SessionModel, preferred: Side | None) -> Side:
        free = [side for side in Side if not session.seats[side]]
        if not free:
            raise SeatOccupiedError("Both seats are already occupied.")
        if preferred is not None and preferred in free:
            return preferred
        if len(free) == 2:
            return self.rng.choice(free)
        return free[0]

    def _mint_ticket_id(self) -> str:
        for _ in range(TICKET_MINT_ATTEMPTS):
            candidate = "".join(
                self.rng.choice(TICKET_ALPHABET) for _ in range(TICKET_LENGTH)
            )
            if not self.repo.ticket_exists(candidate):
                return candidate
        raise TicketAllocationError("Unable to allocate a join ticket. Please retry.")

    def _allocate_session_id(self, sessions: list[SessionModel]) -> str:
        """First unused id of the pool, else the id of the finished session updated longest ago."""
        used = {s.session_id for s in sessions}
        for session_id in SESSION_ID_POOL:
            if session_id not in used:
                return session_id

        recyclable = sorted(
            (s for s in sessions if s.session_id in SESSION_ID_POOL and not s.is_active),
            key=lambda s: s.updated_at,
        )
        session_id = recyclable[0].session_id if recyclable else SESSION_ID_POOL[0]
        logger.info("Recycling session id %s.", session_id)
        self.repo.delete_session(session_id)
        return session_id

    def _release_stale_active_slot(self) -> None:
        """The registry may point at a session that finished (or vanished) without releasing it."""
        holder = self.repo.active_slot()
        if holder is None:
            return
        try:
            holder_session = self.get_session(holder)
        except GameError:
            holder_session = None
        if holder_session is None or not holder_session.is_active:
            logger.warning("Releasing stale active slot held by session %s.", holder)
            self.repo.release_active_slot(holder)

    def _lock(self, session_id: str):
        return session_lock(
            self.settings.lock_dir,
            session_id,
            timeout_s=self.settings.lock_timeout_s,
            poll_s=self.settings.lock_poll_s,
            lease_s=self.settings.lock_lease_s,
        )

    @staticmethod
    def _clean_ticket_id(ticket_id: str) -> str:
        cleaned = ticket_id.strip().upper()
        if not cleaned:
            raise InvalidRequestError("Ticket id cannot be empty.")
        return cleaned
