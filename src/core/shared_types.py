"""
Type definitions used across layers
"""

from enum import StrEnum


class Side(StrEnum):
    WHITE = "white"
    BLACK = "black"

    @property
    def opponent(self) -> "Side":
        return Side.BLACK if self is Side.WHITE else Side.WHITE


class Status(StrEnum):
    ACTIVE = "active"
    CHECKMATE = "checkmate"
    STALEMATE = "stalemate"
    DRAW_INSUFFICIENT_MATERIAL = "draw-insufficient-material"
    DRAW_REPETITION = "draw-threefold-repetition"
    DRAW_FIFTY_MOVE_RULE = "draw-fifty-move-rule"
    DRAW_INACTIVITY = "draw-inactivity-timeout"
    DRAW = "draw"  # by agreement (or any other draw the oracle reports)
    FORFEIT_ILLEGAL_MOVES = "forfeit-illegal-moves"

    @property
    def is_terminal(self) -> bool:
        return self is not Status.ACTIVE

    @property
    def is_decisive(self) -> bool:
        return self in (Status.CHECKMATE, Status.FORFEIT_ILLEGAL_MOVES)


class DrawGateState(StrEnum):
    NONE = "none"
    PROMPT = "prompt"
