"""Decoding of server match records into the read model the UI renders."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, List, Mapping, NamedTuple, Optional, Tuple

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from .connect4 import COLS, RED, ROWS, YELLOW, Cell, Player
from .errors import MalformedRecord

CELL_EMPTY = 0
CELL_RED = 1
CELL_YELLOW = 2

_DECODE = {CELL_EMPTY: None, CELL_RED: RED, CELL_YELLOW: YELLOW}
_ENCODE = {None: CELL_EMPTY, RED: CELL_RED, YELLOW: CELL_YELLOW}

ViewBoard = Tuple[Tuple[Cell, ...], ...]
EMPTY_BOARD: ViewBoard = tuple((None,) * COLS for _ in range(ROWS))


class MatchStatus(str, Enum):
    WAITING = "waiting"
    PLAYING = "playing"
    FINISHED = "finished"


STATUS_RANK = {MatchStatus.WAITING: 0, MatchStatus.PLAYING: 1, MatchStatus.FINISHED: 2}


class DisplayStatus(str, Enum):
    LOADING = "loading"
    WAITING = "waiting"
    PLAYING = "playing"
    WON = "won"
    DRAW = "draw"


class PresenceState(str, Enum):
    NOT_APPLICABLE = "not_applicable"
    UNKNOWN = "unknown"
    PRESENT = "present"
    ABSENT = "absent"


class CellAnomaly(NamedTuple):
    row: int
    column: int
    raw: Any


class GameStateRecord(BaseModel):
    """The ``state`` column: grid, turn owner and an optional winner."""

    model_config = ConfigDict(extra="ignore")

    board: Optional[List[List[Any]]] = None
    current_turn: Optional[str] = None
    winner: Optional[str] = None

    @field_validator("board")
    @classmethod
    def ensure_grid_shape(cls, value: Optional[List[List[Any]]]):
        if not value:
            return None
        if len(value) != ROWS or any(len(row) != COLS for row in value):
            raise ValueError(f"Board must be {ROWS}x{COLS}")
        return value


class MatchRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    player1_id: str
    player2_id: Optional[str] = None
    status: MatchStatus
    state: Optional[GameStateRecord] = None
    winner_id: Optional[str] = None
    rematch_match_id: Optional[str] = None
    mode: str = "online"
    created_at: Optional[datetime] = None

    @property
    def participants(self) -> Tuple[str, ...]:
        return tuple(p for p in (self.player1_id, self.player2_id) if p)

    def disc_count(self) -> int:
        if self.state is None or self.state.board is None:
            return 0
        return sum(1 for row in self.state.board for cell in row if cell != CELL_EMPTY)

    def progress_key(self) -> Tuple[int, int, int]:
        """Orders two copies of the same match by how far along they are."""

        return (
            STATUS_RANK[self.status],
            self.disc_count(),
            1 if self.rematch_match_id else 0,
        )


def decode_match(raw: Mapping[str, Any]) -> MatchRecord:
    if isinstance(raw, MatchRecord):
        return raw
    try:
        return MatchRecord.model_validate(raw)
    except ValidationError as exc:
        raise MalformedRecord(str(exc)) from exc


def decode_cell(raw: Any) -> Tuple[Cell, bool]:
    """Map a raw cell value to a cell; the flag is False for unknown values."""

    # bool is an int subclass; True must not read as red
    if type(raw) is int and raw in _DECODE:
        return _DECODE[raw], True
    return None, False


def encode_cell(cell: Cell) -> int:
    return _ENCODE[cell]


def decode_board(
    raw: Optional[List[List[Any]]],
) -> Tuple[ViewBoard, Tuple[CellAnomaly, ...]]:
    if not raw:
        return EMPTY_BOARD, ()
    anomalies: List[CellAnomaly] = []
    rows = []
    for r, raw_row in enumerate(raw):
        row = []
        for c, value in enumerate(raw_row):
            cell, ok = decode_cell(value)
            if not ok:
                anomalies.append(CellAnomaly(r, c, value))
            row.append(cell)
        rows.append(tuple(row))
    return tuple(rows), tuple(anomalies)


def encode_board(board) -> List[List[int]]:
    return [[encode_cell(cell) for cell in row] for row in board]


def slot_color(record: MatchRecord, player_id: Optional[str]) -> Optional[Player]:
    """Colour bound to a participant's slot. Slot A is red, slot B yellow."""

    if player_id is None:
        return None
    if player_id == record.player1_id:
        return RED
    if record.player2_id is not None and player_id == record.player2_id:
        return YELLOW
    return None


@dataclass(frozen=True)
class MatchView:
    """Everything the match screen renders, rebuilt on every server push."""

    match_id: str
    status: DisplayStatus
    match_status: Optional[MatchStatus] = None
    board: ViewBoard = EMPTY_BOARD
    player1_id: Optional[str] = None
    player2_id: Optional[str] = None
    current_turn_id: Optional[str] = None
    current_turn_color: Optional[Player] = None
    winner_id: Optional[str] = None
    winner_color: Optional[Player] = None
    rematch_id: Optional[str] = None
    player_color: Optional[Player] = None
    is_my_turn: bool = False
    presence: PresenceState = PresenceState.UNKNOWN
    loading: bool = False
    anomalies: Tuple[CellAnomaly, ...] = field(default=(), repr=False)

    @classmethod
    def loading_view(cls, match_id: str) -> "MatchView":
        return cls(match_id=match_id, status=DisplayStatus.LOADING, loading=True)

    @property
    def is_opponent_present(self) -> Optional[bool]:
        if self.presence is PresenceState.PRESENT:
            return True
        if self.presence is PresenceState.ABSENT:
            return False
        return None


def project(
    record: MatchRecord,
    viewer_id: Optional[str],
    presence: PresenceState = PresenceState.UNKNOWN,
) -> MatchView:
    """Project a decoded record for ``viewer_id``. Nothing is re-derived."""

    state = record.state or GameStateRecord()
    board, anomalies = decode_board(state.board)

    turn_id: Optional[str] = None
    if record.status is MatchStatus.PLAYING and state.current_turn in record.participants:
        turn_id = state.current_turn

    winner_id = record.winner_id or state.winner
    if record.status is MatchStatus.FINISHED:
        status = DisplayStatus.WON if winner_id else DisplayStatus.DRAW
    elif record.status is MatchStatus.PLAYING:
        status = DisplayStatus.PLAYING
    else:
        status = DisplayStatus.WAITING

    return MatchView(
        match_id=record.id,
        status=status,
        match_status=record.status,
        board=board,
        player1_id=record.player1_id,
        player2_id=record.player2_id,
        current_turn_id=turn_id,
        current_turn_color=slot_color(record, turn_id),
        winner_id=winner_id,
        winner_color=slot_color(record, winner_id),
        rematch_id=record.rematch_match_id,
        player_color=slot_color(record, viewer_id),
        is_my_turn=turn_id is not None and turn_id == viewer_id,
        presence=presence,
        anomalies=anomalies,
    )


def apply_server_snapshot(
    raw: Mapping[str, Any],
    viewer_id: Optional[str],
    presence: PresenceState = PresenceState.UNKNOWN,
) -> MatchView:
    return project(decode_match(raw), viewer_id, presence)
