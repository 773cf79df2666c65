"""
Blocking wait protocol.

There is no push channel between the two agent processes: a waiting process re-reads the session every
`poll_interval_s` seconds until the thing it waits for shows up, the session ends, or the deadline passes.
A timeout is an outcome (WaitState.TIMEOUT), not an exception: callers branch on it.
"""

import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass
from enum import StrEnum
from typing import Callable, Generator

from src.core.exceptions import GameError
from src.core.models import SessionModel, TicketModel
from src.services.session_service import SessionService

logger = logging.getLogger(__name__)


class WaitState(StrEnum):
    READY = "ready"
    OPPONENT_MOVED = "opponent-moved"
    GAME_FINISHED = "game-finished"
    TIMEOUT = "timeout"


@dataclass
class WaitResult:
    state: WaitState
    session: SessionModel
    polls: int
    waited_ms: int


class SessionWaiter:
    """Polling loops on top of SessionService. Sleep and clock are injectable so tests never really wait."""

    def __init__(
        self,
        service: SessionService,
        poll_interval_s: float | None = None,
        timeout_s: float | None = None,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.service = service
        self.poll_interval_s = (
            service.settings.poll_interval_s if poll_interval_s is None else poll_interval_s
        )
        self.timeout_s = service.settings.wait_timeout_s if timeout_s is None else timeout_s
        self._sleep = sleep
        self._monotonic = monotonic

    def wait_for_opponent_join(
        self,
        ticket: TicketModel,
        timeout_s: float | None = None,
        on_opponent_joined: Callable[[SessionModel], None] | None = None,
    ) -> WaitResult:
        """
        After join: block until both agents are seated AND it is this ticket's turn.
        No deadline unless `timeout_s` is given (the agent waits for an opponent as long as it takes).
        """
        announced = False

        def check(session: SessionModel) -> WaitState | None:
            nonlocal announced
            self.service.ensure_seated(session, ticket)
            if not session.both_seated():
                return None
            if session.turn == ticket.side:
                return WaitState.READY
            # announced once, and only while the opponent still has to move
            if not announced and on_opponent_joined is not None:
                on_opponent_joined(session)
            announced = True
            return None

        return self._poll(ticket.session_id, check, timeout_s)

    def wait_for_turn(self, ticket: TicketModel) -> WaitResult:
        """Before submitting: block until it is this ticket's turn (READY), the session ends, or time runs out."""

        def check(session: SessionModel) -> WaitState | None:
            self.service.ensure_seated(session, ticket)
            return WaitState.READY if session.turn == ticket.side else None

        return self._poll(ticket.session_id, check, self.timeout_s)

    def wait_for_opponent_move(
        self, session_id: str, ticket_id: str, move_count: int
    ) -> WaitResult:
        """After submitting: block until a move by someone else is appended after `move_count` moves."""

        def check(session: SessionModel) -> WaitState | None:
            last_move = session.last_move
            if (
                len(session.history) > move_count
                and last_move is not None
                and last_move.by != ticket_id
            ):
                return WaitState.OPPONENT_MOVED
            return None

        return self._poll(session_id, check, self.timeout_s)

    def _poll(
        self,
        session_id: str,
        check: Callable[[SessionModel], WaitState | None],
        timeout_s: float | None,
    ) -> WaitResult:
        started = self._monotonic()
        polls = 0
        while True:
            session = self.service.get_session(session_id)
            waited_ms = int((self._monotonic() - started) * 1000)

            if not session.is_active:
                return WaitResult(WaitState.GAME_FINISHED, session, polls, waited_ms)
            state = check(session)
            if state is not None:
                return WaitResult(state, session, polls, waited_ms)
            if timeout_s is not None and waited_ms >= timeout_s * 1000:
                return WaitResult(WaitState.TIMEOUT, session, polls, waited_ms)

            polls += 1
            logger.debug("Session %s: poll %d, waited %dms.", session_id, polls, waited_ms)
            self._sleep(self.poll_interval_s)


@contextmanager
def release_seat_on_interrupt(
    service: SessionService, ticket_id: str
) -> Generator[None, None, None]:
    """
    Scope for the post-join wait: if the agent is interrupted (Ctrl+C / SIGTERM turned into SystemExit) before an
    opponent arrived, give the seat back before leaving. Once the opponent is seated this releases nothing.
    """
    try:
        yield
    except (KeyboardInterrupt, SystemExit):
        logger.info("Interrupted while waiting; releasing seat of ticket %s.", ticket_id)
        try:
            service.abandon_if_unpaired(ticket_id)
        except GameError as error:
            # the interrupt is what the caller has to see
            logger.warning("Could not release seat of ticket %s: %s", ticket_id, error)
        raise
