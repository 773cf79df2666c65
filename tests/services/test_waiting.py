"""Unit tests for src/services/waiting.py"""

from typing import Callable

import pytest

from src.api.models import JoinSessionRequest, MoveRequest, TicketRequest
from src.core.exceptions import IllegalMoveError, LockTimeoutError, TicketInvalidError
from src.core.models import TicketModel
from src.core.shared_types import Side, Status
from src.db.sql_repository import SQLSessionRepository
from src.services.session_service import SessionService
from src.services.waiting import SessionWaiter, WaitState, release_seat_on_interrupt


class FakeTimer:
    """
    Stands in for time.sleep / time.monotonic. Each sleep advances the clock and runs the next scheduled action,
    which plays the part of the other agent process.
    """

    def __init__(self, actions: list[Callable[[], None]] | None = None) -> None:
        self.now = 0.0
        self.actions = list(actions or [])

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds
        if self.actions:
            self.actions.pop(0)()


def make_waiter(service: SessionService, timer: FakeTimer, timeout_s: float = 120) -> SessionWaiter:
    return SessionWaiter(
        service, poll_interval_s=2, timeout_s=timeout_s, sleep=timer.sleep, monotonic=timer.monotonic
    )


def join(service: SessionService, session_id: str, agent_id: str, side: Side) -> TicketModel:
    joined = service.join_session(
        JoinSessionRequest(session_id=session_id, agent_id=agent_id, preferred_side=side)
    )
    return service.resolve_ticket(joined.ticket_id)


def play(service: SessionService, ticket: TicketModel, move: str) -> None:
    service.submit_move(
        MoveRequest(session_id=ticket.session_id, ticket_id=ticket.ticket_id, move=move)
    )


@pytest.fixture
def players(service: SessionService) -> tuple[TicketModel, TicketModel]:
    session_id = service.create_session().session_id
    white = join(service, session_id, "alpha@cli", Side.WHITE)
    black = join(service, session_id, "beta@cli", Side.BLACK)
    return white, black


# --- WAIT FOR TURN ----
def test_ready_without_waiting(service: SessionService, players) -> None:
    white, _ = players
    result = make_waiter(service, FakeTimer()).wait_for_turn(white)

    assert result.state == WaitState.READY
    assert result.polls == 0
    assert result.waited_ms == 0


def test_ready_once_the_opponent_moved(service: SessionService, players) -> None:
    white, black = players
    timer = FakeTimer([lambda: play(service, white, "e2e4")])

    result = make_waiter(service, timer).wait_for_turn(black)

    assert result.state == WaitState.READY
    assert result.polls == 1
    assert result.waited_ms == 2000
    assert result.session.turn == Side.BLACK


def test_timeout_is_an_outcome(service: SessionService, players) -> None:
    _, black = players
    result = make_waiter(service, FakeTimer()).wait_for_turn(black)

    assert result.state == WaitState.TIMEOUT
    assert result.polls == 60
    assert result.waited_ms == 120_000
    assert result.session.is_active


def test_game_finished_while_waiting(service: SessionService, players) -> None:
    white, black = players

    def draw() -> None:
        service.offer_draw(TicketRequest(session_id=white.session_id, ticket_id=white.ticket_id))
        service.accept_draw(TicketRequest(session_id=black.session_id, ticket_id=black.ticket_id))

    result = make_waiter(service, FakeTimer([draw])).wait_for_turn(black)

    assert result.state == WaitState.GAME_FINISHED
    assert result.session.status == Status.DRAW


def test_lost_seat_stops_the_wait(
    service: SessionService, repository: SQLSessionRepository, players
) -> None:
    _, black = players

    def take_over() -> None:
        session = repository.get_session(black.session_id)
        session.seats[Side.BLACK] = "QQQQQ"
        repository.save_session(session)

    with pytest.raises(TicketInvalidError):
        make_waiter(service, FakeTimer([take_over])).wait_for_turn(black)


# --- WAIT FOR OPPONENT MOVE ----
def test_opponent_moved(service: SessionService, players) -> None:
    white, black = players
    play(service, white, "e2e4")
    timer = FakeTimer([lambda: None, lambda: play(service, black, "e7e5")])

    result = make_waiter(service, timer).wait_for_opponent_move(
        white.session_id, white.ticket_id, move_count=1
    )

    assert result.state == WaitState.OPPONENT_MOVED
    assert result.polls == 2
    assert result.session.last_move is not None
    assert result.session.last_move.by == black.ticket_id


def test_own_move_does_not_count(service: SessionService, players) -> None:
    white, _ = players
    play(service, white, "e2e4")

    result = make_waiter(service, FakeTimer(), timeout_s=4).wait_for_opponent_move(
        white.session_id, white.ticket_id, move_count=0
    )
    assert result.state == WaitState.TIMEOUT


def test_forfeit_ends_the_wait(service: SessionService, players) -> None:
    white, black = players
    play(service, white, "e2e4")

    def blunder() -> None:
        for _ in range(5):
            with pytest.raises(IllegalMoveError):
                play(service, black, "e7e4")

    result = make_waiter(service, FakeTimer([blunder])).wait_for_opponent_move(
        white.session_id, white.ticket_id, move_count=1
    )
    assert result.state == WaitState.GAME_FINISHED
    assert result.session.status == Status.FORFEIT_ILLEGAL_MOVES
    assert result.session.winner == Side.WHITE


# --- WAIT FOR OPPONENT JOIN ----
def test_white_waits_for_black_to_join(service: SessionService) -> None:
    session_id = service.create_session().session_id
    white = join(service, session_id, "alpha@cli", Side.WHITE)
    announced = []
    timer = FakeTimer([lambda: None, lambda: join(service, session_id, "beta@cli", Side.BLACK)])

    result = make_waiter(service, timer).wait_for_opponent_join(
        white, on_opponent_joined=announced.append
    )

    assert result.state == WaitState.READY
    assert result.polls == 2
    # white moves first: nothing to wait for once black is seated
    assert announced == []


def test_black_waits_for_the_first_white_move(service: SessionService, players) -> None:
    white, black = players
    announced = []
    timer = FakeTimer([lambda: None, lambda: play(service, white, "d2d4")])

    result = make_waiter(service, timer).wait_for_opponent_join(
        black, on_opponent_joined=announced.append
    )

    assert result.state == WaitState.READY
    assert result.session.turn == Side.BLACK
    # announced on the first poll only
    assert len(announced) == 1


def test_join_wait_with_deadline(service: SessionService) -> None:
    session_id = service.create_session().session_id
    white = join(service, session_id, "alpha@cli", Side.WHITE)

    result = make_waiter(service, FakeTimer()).wait_for_opponent_join(white, timeout_s=10)
    assert result.state == WaitState.TIMEOUT
    assert result.polls == 5


# --- RELEASE SEAT ON INTERRUPT ----
@pytest.mark.parametrize("interrupt", [KeyboardInterrupt, SystemExit])
def test_interrupt_releases_an_unpaired_seat(
    service: SessionService, repository: SQLSessionRepository, interrupt: type[BaseException]
) -> None:
    session_id = service.create_session().session_id
    white = join(service, session_id, "alpha@cli", Side.WHITE)

    with pytest.raises(interrupt):
        with release_seat_on_interrupt(service, white.ticket_id):
            raise interrupt()

    assert service.get_session(session_id).seats[Side.WHITE] is None
    assert not repository.ticket_exists(white.ticket_id)


def test_interrupt_after_pairing_keeps_the_seat(service: SessionService, players) -> None:
    white, _ = players
    with pytest.raises(KeyboardInterrupt):
        with release_seat_on_interrupt(service, white.ticket_id):
            raise KeyboardInterrupt()
    assert service.get_session(white.session_id).seats[Side.WHITE] == white.ticket_id


def test_normal_exit_releases_nothing(service: SessionService) -> None:
    session_id = service.create_session().session_id
    white = join(service, session_id, "alpha@cli", Side.WHITE)
    with release_seat_on_interrupt(service, white.ticket_id):
        pass
    assert service.get_session(session_id).seats[Side.WHITE] == white.ticket_id


def test_interrupt_survives_a_failed_release(service: SessionService, monkeypatch) -> None:
    """Releasing the seat is best effort: the caller still sees the interrupt when it fails."""
    session_id = service.create_session().session_id
    white = join(service, session_id, "alpha@cli", Side.WHITE)

    def busy_lock(ticket_id: str) -> bool:
        raise LockTimeoutError("Timed out waiting for lock join-1.lock. Please retry.")

    monkeypatch.setattr(service, "abandon_if_unpaired", busy_lock)
    with pytest.raises(KeyboardInterrupt):
        with release_seat_on_interrupt(service, white.ticket_id):
            raise KeyboardInterrupt()

    assert service.get_session(session_id).seats[Side.WHITE] == white.ticket_id
