"""Terminal-friendly board rendering (used by the CLI only)."""

import chess

WHITE_PIECES = {"p": "♙", "n": "♘", "b": "♗", "r": "♖", "q": "♕", "k": "♔"}
BLACK_PIECES = {"p": "♟", "n": "♞", "b": "♝", "r": "♜", "q": "♛", "k": "♚"}
EMPTY_SQUARE = "·"


def render_board(fen: str) -> str:
    """Eight lines of unicode pieces, rank 8 on top, with file and rank labels."""
    board = chess.Board(fen)
    lines = []
    for rank in range(7, -1, -1):
        cells = []
        for file in range(8):
            piece = board.piece_at(chess.square(file, rank))
            if piece is None:
                cells.append(EMPTY_SQUARE)
                continue
            symbol = piece.symbol().lower()
            cells.append(
                WHITE_PIECES[symbol] if piece.color == chess.WHITE else BLACK_PIECES[symbol]
            )
        lines.append(f"{rank + 1} " + " ".join(cells))
    lines.append("  " + " ".join(chess.FILE_NAMES))
    return "\n".join(lines)
