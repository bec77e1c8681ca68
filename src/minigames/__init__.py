"""MiniGames package exposing Connect 4 rules, the online match client and the dev backend."""

from .backend import MatchHub
from .connect4 import Connect4Game
from .lobby import Lobby
from .records import MatchView, apply_server_snapshot
from .sync import MatchSync

__all__ = [
    "Connect4Game",
    "Lobby",
    "MatchHub",
    "MatchSync",
    "MatchView",
    "apply_server_snapshot",
]
