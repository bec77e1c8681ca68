"""Contract of the hosted backend and an in-memory hub implementing it.

The hosted service owns the ``matches`` table, the move/join/rematch/leave
procedures, a change feed and presence channels. ``MatchHub`` provides the
same behaviour in process for the development server and for tests.
"""

from __future__ import annotations

import copy
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import (
    Any,
    Callable,
    Dict,
    FrozenSet,
    List,
    Optional,
    Protocol,
    runtime_checkable,
)

from . import connect4
from .errors import MatchNotFound, RemoteRejected, TransportDegraded
from .records import CELL_EMPTY, decode_board, encode_board

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
ChangeCallback = Callable[[Optional[Record], Optional[Record]], None]
SyncCallback = Callable[[FrozenSet[str]], None]
DropCallback = Callable[[], None]


@runtime_checkable
class Subscription(Protocol):
    def close(self) -> None: ...


@runtime_checkable
class PresenceChannel(Protocol):
    async def track(self, identity: str, online_at: str) -> None: ...

    def on_sync(self, callback: SyncCallback) -> None: ...

    def on_drop(self, callback: DropCallback) -> None: ...

    def present(self) -> FrozenSet[str]: ...

    def close(self) -> None: ...


class MatchBackend(Protocol):
    """What the match client needs from the backend, bound to one player."""

    player_id: str

    async def fetch_match(self, match_id: str) -> Record: ...

    async def create_match(self) -> Record: ...

    async def list_matches(
        self, status: Optional[str] = None, participant: Optional[str] = None
    ) -> List[Record]: ...

    async def subscribe(
        self, match_id: Optional[str], callback: ChangeCallback
    ) -> Subscription: ...

    async def make_move(self, match_id: str, column: int) -> None: ...

    async def join_match(self, match_id: str) -> None: ...

    async def create_rematch(self, match_id: str) -> str: ...

    async def leave_match(self, match_id: str) -> None: ...

    async def attach_presence(self, scope: str) -> PresenceChannel: ...


def presence_scope(match_id: str) -> str:
    return f"presence:match:{match_id}"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ---------- Change feed ----------


@dataclass(eq=False)
class HubSubscription:
    hub: "MatchHub"
    match_id: Optional[str]
    callback: ChangeCallback = field(repr=False)
    closed: bool = False

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.hub._remove_subscription(self)


# ---------- Presence ----------


@dataclass(eq=False)
class HubPresenceChannel:
    """One client's attachment to a presence scope."""

    hub: "MatchHub"
    scope: str
    key: str = field(default_factory=lambda: uuid.uuid4().hex)
    identity: Optional[str] = None
    online_at: Optional[str] = None
    closed: bool = False
    _callbacks: List[SyncCallback] = field(default_factory=list, repr=False)
    _drop_callbacks: List[DropCallback] = field(default_factory=list, repr=False)
    _present: FrozenSet[str] = frozenset()

    async def track(self, identity: str, online_at: str) -> None:
        if self.closed:
            raise TransportDegraded("Presence channel is closed")
        self.hub._track(self, identity, online_at)

    def on_sync(self, callback: SyncCallback) -> None:
        self._callbacks.append(callback)

    def on_drop(self, callback: DropCallback) -> None:
        self._drop_callbacks.append(callback)

    def present(self) -> FrozenSet[str]:
        return self._present

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.hub._detach(self)

    def _deliver(self, present: FrozenSet[str]) -> None:
        self._present = present
        for callback in list(self._callbacks):
            callback(present)

    def _dropped(self) -> None:
        self.closed = True
        for callback in list(self._drop_callbacks):
            callback()


# ---------- Hub ----------


class MatchHub:
    """In-memory matches table with change notifications and presence."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._matches: Dict[str, Record] = {}
        self._subscriptions: List[HubSubscription] = []
        self._channels: Dict[str, List[HubPresenceChannel]] = {}
        self.presence_available = True

    def connect(self, player_id: str) -> "HubConnection":
        return HubConnection(self, player_id)

    # ---- reads ----

    def get(self, match_id: str) -> Record:
        with self._lock:
            try:
                return copy.deepcopy(self._matches[match_id])
            except KeyError as exc:
                raise MatchNotFound(match_id) from exc

    def query(
        self, status: Optional[str] = None, participant: Optional[str] = None
    ) -> List[Record]:
        with self._lock:
            rows = [
                copy.deepcopy(m)
                for m in self._matches.values()
                if (status is None or m["status"] == status)
                and (
                    participant is None
                    or participant in (m["player1_id"], m["player2_id"])
                )
            ]
        # newest first; dict order is creation order
        rows.reverse()
        return rows

    @property
    def subscription_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def channel_count(self, scope: Optional[str] = None) -> int:
        with self._lock:
            if scope is not None:
                return len(self._channels.get(scope, []))
            return sum(len(chans) for chans in self._channels.values())

    # ---- procedures ----

    def create(self, player_id: str) -> Record:
        record: Record = {
            "id": uuid.uuid4().hex,
            "player1_id": player_id,
            "player2_id": None,
            "status": "waiting",
            "mode": "online",
            "state": None,
            "winner_id": None,
            "rematch_match_id": None,
            "created_at": _now(),
        }
        with self._lock:
            self._matches[record["id"]] = record
            self._emit(None, record)
            return copy.deepcopy(record)

    def join(self, match_id: str, player_id: str) -> None:
        with self._lock:
            match = self._require(match_id)
            if match["status"] != "waiting":
                raise RemoteRejected("not_waiting", "Match is not in waiting state")
            if match["player1_id"] == player_id:
                raise RemoteRejected("own_match", "Cannot join your own match")
            if match["player2_id"] is not None:
                raise RemoteRejected("match_full", "Match is already full")
            old = copy.deepcopy(match)
            match["player2_id"] = player_id
            match["status"] = "playing"
            match["state"] = {
                "board": encode_board(connect4.create_board()),
                "current_turn": match["player1_id"],
                "winner": None,
            }
            self._emit(old, match)

    def move(self, match_id: str, player_id: str, column: int) -> None:
        with self._lock:
            match = self._require(match_id)
            if match["status"] != "playing":
                raise RemoteRejected("match_not_playing", "Match is not being played")
            if player_id not in (match["player1_id"], match["player2_id"]):
                raise RemoteRejected("not_participant", "You are not in this match")
            state = match["state"]
            if state["current_turn"] != player_id:
                raise RemoteRejected("not_your_turn", "It is not your turn")
            if not 0 <= column < connect4.COLS:
                raise RemoteRejected("invalid_column", f"Column {column} is out of range")

            board, _ = decode_board(state["board"])
            color = connect4.RED if player_id == match["player1_id"] else connect4.YELLOW
            try:
                new_board, line = connect4.play_column(
                    [list(row) for row in board], column, color
                )
            except ValueError as exc:
                raise RemoteRejected("column_full", str(exc)) from exc

            old = copy.deepcopy(match)
            state["board"] = encode_board(new_board)
            opponent = (
                match["player2_id"]
                if player_id == match["player1_id"]
                else match["player1_id"]
            )
            if line:
                match["status"] = "finished"
                match["winner_id"] = player_id
                state["winner"] = player_id
                state["current_turn"] = None
            elif all(cell != CELL_EMPTY for row in state["board"] for cell in row):
                match["status"] = "finished"
                state["current_turn"] = None
            else:
                state["current_turn"] = opponent
            self._emit(old, match)

    def rematch(self, match_id: str, player_id: str) -> str:
        with self._lock:
            match = self._require(match_id)
            if match["rematch_match_id"]:
                return match["rematch_match_id"]
            if match["status"] != "finished":
                raise RemoteRejected("not_finished", "Match has not finished")
            if player_id not in (match["player1_id"], match["player2_id"]):
                raise RemoteRejected("not_participant", "You are not in this match")
            # previous joiner opens the successor
            first, second = match["player2_id"], match["player1_id"]
            successor: Record = {
                "id": uuid.uuid4().hex,
                "player1_id": first,
                "player2_id": second,
                "status": "playing",
                "mode": "online",
                "state": {
                    "board": encode_board(connect4.create_board()),
                    "current_turn": first,
                    "winner": None,
                },
                "winner_id": None,
                "rematch_match_id": None,
                "created_at": _now(),
            }
            self._matches[successor["id"]] = successor
            self._emit(None, successor)
            old = copy.deepcopy(match)
            match["rematch_match_id"] = successor["id"]
            self._emit(old, match)
            return successor["id"]

    def leave(self, match_id: str, player_id: str) -> None:
        with self._lock:
            match = self._require(match_id)
            if match["status"] != "waiting":
                raise RemoteRejected("not_waiting", "Match is not in waiting state")
            if match["player1_id"] != player_id:
                raise RemoteRejected("not_creator", "Only the creator can leave")
            del self._matches[match_id]
            self._emit(match, None)

    # ---- change feed ----

    def subscribe(
        self, match_id: Optional[str], callback: ChangeCallback
    ) -> HubSubscription:
        subscription = HubSubscription(self, match_id, callback)
        with self._lock:
            self._subscriptions.append(subscription)
        return subscription

    def _remove_subscription(self, subscription: HubSubscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def _emit(self, old: Optional[Record], new: Optional[Record]) -> None:
        # Called with the lock held so listeners see changes in commit order.
        match_id = (new or old or {}).get("id")
        logger.debug("Match %s changed", match_id)
        for subscription in list(self._subscriptions):
            if subscription.match_id not in (None, match_id):
                continue
            subscription.callback(copy.deepcopy(old), copy.deepcopy(new))

    def _require(self, match_id: str) -> Record:
        try:
            return self._matches[match_id]
        except KeyError as exc:
            raise MatchNotFound(match_id) from exc

    # ---- presence ----

    def attach(self, scope: str) -> HubPresenceChannel:
        if not self.presence_available:
            raise TransportDegraded(f"Could not attach to {scope}")
        channel = HubPresenceChannel(self, scope)
        with self._lock:
            self._channels.setdefault(scope, []).append(channel)
        return channel

    def drop(self, scope: str, identity: str) -> None:
        """Simulate the transport losing every connection of ``identity``."""

        with self._lock:
            for channel in list(self._channels.get(scope, [])):
                if channel.identity == identity:
                    self._channels[scope].remove(channel)
                    channel._dropped()
            self._broadcast(scope)

    def present(self, scope: str) -> FrozenSet[str]:
        with self._lock:
            return frozenset(
                c.identity for c in self._channels.get(scope, []) if c.identity
            )

    def _track(self, channel: HubPresenceChannel, identity: str, online_at: str) -> None:
        with self._lock:
            channel.identity = identity
            channel.online_at = online_at
            self._broadcast(channel.scope)

    def _detach(self, channel: HubPresenceChannel) -> None:
        with self._lock:
            channels = self._channels.get(channel.scope, [])
            if channel in channels:
                channels.remove(channel)
            if not channels:
                self._channels.pop(channel.scope, None)
            self._broadcast(channel.scope)

    def _broadcast(self, scope: str) -> None:
        present = self.present(scope)
        for channel in list(self._channels.get(scope, [])):
            channel._deliver(present)


class HubConnection:
    """``MatchBackend`` bound to one player, backed by a ``MatchHub``."""

    def __init__(self, hub: MatchHub, player_id: str) -> None:
        self.hub = hub
        self.player_id = player_id

    async def fetch_match(self, match_id: str) -> Record:
        return self.hub.get(match_id)

    async def create_match(self) -> Record:
        return self.hub.create(self.player_id)

    async def list_matches(
        self, status: Optional[str] = None, participant: Optional[str] = None
    ) -> List[Record]:
        return self.hub.query(status=status, participant=participant)

    async def subscribe(
        self, match_id: Optional[str], callback: ChangeCallback
    ) -> Subscription:
        return self.hub.subscribe(match_id, callback)

    async def make_move(self, match_id: str, column: int) -> None:
        self.hub.move(match_id, self.player_id, column)

    async def join_match(self, match_id: str) -> None:
        self.hub.join(match_id, self.player_id)

    async def create_rematch(self, match_id: str) -> str:
        return self.hub.rematch(match_id, self.player_id)

    async def leave_match(self, match_id: str) -> None:
        self.hub.leave(match_id, self.player_id)

    async def attach_presence(self, scope: str) -> PresenceChannel:
        return self.hub.attach(scope)
