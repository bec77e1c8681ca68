"""Connect 4 rules for single-device play.

The online client renders the same board representation but never calls into
this module to decide a result: the server owns that.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Tuple

Player = str  # "red" or "yellow"
Cell = Optional[Player]
Board = List[List[Cell]]
WinLine = List[Tuple[int, int]]

ROWS = 6
COLS = 7
RED: Player = "red"
YELLOW: Player = "yellow"

# (row step, column step): horizontal, vertical, both diagonals
DIRECTIONS: Tuple[Tuple[int, int], ...] = ((0, 1), (1, 0), (1, 1), (1, -1))


def create_board() -> Board:
    return [[None] * COLS for _ in range(ROWS)]


def other_player(player: Player) -> Player:
    return YELLOW if player == RED else RED


def is_full(board: Board) -> bool:
    return all(cell is not None for row in board for cell in row)


def drop_row(board: Board, column: int) -> Optional[int]:
    """Row a disc dropped in ``column`` would land on, ``None`` if full."""

    for row in range(ROWS - 1, -1, -1):
        if board[row][column] is None:
            return row
    return None


def find_winning_line(
    board: Board, row: int, column: int, player: Player
) -> Optional[WinLine]:
    for dr, dc in DIRECTIONS:
        line: WinLine = [(row, column)]
        for sign in (1, -1):
            for step in range(1, 4):
                r = row + sign * dr * step
                c = column + sign * dc * step
                if not (0 <= r < ROWS and 0 <= c < COLS) or board[r][c] != player:
                    break
                line.append((r, c))
        if len(line) >= 4:
            return line
    return None


def play_column(
    board: Board, column: int, player: Player
) -> Tuple[Board, Optional[WinLine]]:
    """Drop ``player``'s disc in ``column`` and report a winning line.

    Returns a new board; the input is left untouched.
    """

    if not 0 <= column < COLS:
        raise ValueError(f"Column {column} is out of range")
    row = drop_row(board, column)
    if row is None:
        raise ValueError("Column is full")
    new_board = [list(r) for r in board]
    new_board[row][column] = player
    return new_board, find_winning_line(new_board, row, column, player)


@dataclass
class Connect4Game:
    board: Board = field(default_factory=create_board)
    current_player: Player = RED
    winner: Optional[Player] = None
    status: str = "playing"  # playing, won, draw
    winning_cells: Optional[WinLine] = None

    def play_column(self, column: int) -> None:
        if self.status != "playing":
            raise ValueError("Game already finished")
        self.board, line = play_column(self.board, column, self.current_player)
        if line:
            self.winner = self.current_player
            self.winning_cells = line
            self.status = "won"
        elif is_full(self.board):
            self.status = "draw"
        else:
            self.current_player = other_player(self.current_player)

    def reset(self) -> None:
        self.board = create_board()
        self.current_player = RED
        self.winner = None
        self.winning_cells = None
        self.status = "playing"

    def clone(self) -> "Connect4Game":
        return Connect4Game(
            board=[list(r) for r in self.board],
            current_player=self.current_player,
            winner=self.winner,
            status=self.status,
            winning_cells=list(self.winning_cells) if self.winning_cells else None,
        )
