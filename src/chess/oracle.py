"""
Legality oracle: the only place that knows the rules of chess.

The session service treats it as a pure function:
    apply_move(position, move_input, previous_positions) -> OracleVerdict
It never mutates anything and never touches the store.
"""

import re
from dataclasses import dataclass
from typing import Iterable, Protocol

import chess

from src.core.shared_types import Side, Status

STARTING_FEN = chess.STARTING_FEN

# long-form coordinate notation, e.g. e2e4 or e7e8q
UCI_PATTERN = re.compile(r"^([a-h][1-8])([a-h][1-8])([qrbnQRBN])?$")


@dataclass(frozen=True)
class OracleVerdict:
    legal: bool
    reason: str | None = None
    new_position: str | None = None
    terminal: Status | None = None
    san: str | None = None
    uci: str | None = None
    from_square: str | None = None
    to_square: str | None = None
    promotion: str | None = None
    side_to_move: Side | None = None

    @classmethod
    def rejected(cls, reason: str) -> "OracleVerdict":
        return cls(legal=False, reason=reason)


class LegalityOracle(Protocol):
    """Adjudicates a candidate move against a position."""

    def apply_move(
        self,
        position: str,
        move_input: str,
        previous_positions: Iterable[str] = (),
    ) -> OracleVerdict: ...


def normalize_move_input(move_input: str) -> str:
    """
    Coordinate notation is lower-cased (promotion letter included), anything else is passed through trimmed
    so the oracle can try to read it as SAN.
    """
    trimmed = move_input.strip()
    match = UCI_PATTERN.match(trimmed)
    if not match:
        return trimmed
    from_square, to_square, promotion = match.groups()
    return f"{from_square}{to_square}{(promotion or '').lower()}"


def position_key(fen: str) -> str:
    """Part of a FEN that identifies a position for repetition purposes (no move counters)."""
    return " ".join(fen.split(" ")[:4])


class PythonChessOracle:
    """LegalityOracle backed by python-chess."""

    def apply_move(
        self,
        position: str,
        move_input: str,
        previous_positions: Iterable[str] = (),
    ) -> OracleVerdict:
        try:
            board = chess.Board(position)
        except ValueError:
            return OracleVerdict.rejected(f"Position {position!r} cannot be read.")

        normalized = normalize_move_input(move_input)
        if not normalized:
            return OracleVerdict.rejected("Move cannot be empty.")

        try:
            if UCI_PATTERN.match(normalized):
                move = chess.Move.from_uci(normalized)
                if move not in board.legal_moves:
                    return OracleVerdict.rejected(f"Illegal move {move_input!r}.")
            else:
                move = board.parse_san(normalized)
        except ValueError:
            # covers chess.InvalidMoveError / IllegalMoveError / AmbiguousMoveError
            return OracleVerdict.rejected(f"Illegal move {move_input!r}.")

        san = board.san(move)
        board.push(move)
        new_position = board.fen()

        return OracleVerdict(
            legal=True,
            new_position=new_position,
            terminal=self._terminal_status(board, previous_positions),
            san=san,
            uci=move.uci(),
            from_square=chess.square_name(move.from_square),
            to_square=chess.square_name(move.to_square),
            promotion=(
                chess.piece_symbol(move.promotion) if move.promotion else None
            ),
            side_to_move=Side.WHITE if board.turn == chess.WHITE else Side.BLACK,
        )

    @staticmethod
    def _terminal_status(
        board: chess.Board, previous_positions: Iterable[str]
    ) -> Status | None:
        if board.is_checkmate():
            return Status.CHECKMATE
        if board.is_stalemate():
            return Status.STALEMATE
        if board.is_insufficient_material():
            return Status.DRAW_INSUFFICIENT_MATERIAL

        # The board was rebuilt from a FEN, so it has no move stack: count repetitions over the session positions.
        key = position_key(board.fen())
        occurrences = 1 + sum(1 for fen in previous_positions if position_key(fen) == key)
        if occurrences >= 3:
            return Status.DRAW_REPETITION

        if board.is_fifty_moves():
            return Status.DRAW_FIFTY_MOVE_RULE
        return None
