"""Directory of open matches and the caller's games in progress."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, List, Optional

from .backend import MatchBackend, Record, Subscription
from .errors import MalformedRecord, MiniGamesError, RemoteRejected
from .records import MatchRecord, MatchStatus, decode_match

logger = logging.getLogger(__name__)


class Lobby:
    """Lists waiting matches and lets the caller create or join one.

    ``waiting`` holds open matches newest first; ``active`` holds the
    caller's matches still being played, for reconnecting.
    """

    def __init__(self, connection: MatchBackend) -> None:
        self.connection = connection
        self.waiting: List[MatchRecord] = []
        self.active: List[MatchRecord] = []
        self._subscription: Optional[Subscription] = None
        self._on_change: Optional[Callable[["Lobby"], None]] = None
        self._refresh_lock = asyncio.Lock()
        self._refresh_task: Optional[asyncio.Task] = None
        self._stale = False

    @property
    def player_id(self) -> str:
        return self.connection.player_id

    async def refresh(self) -> None:
        # one listing at a time so an older result never replaces a newer one
        async with self._refresh_lock:
            waiting = await self.connection.list_matches(
                status=MatchStatus.WAITING.value
            )
            active = await self.connection.list_matches(
                status=MatchStatus.PLAYING.value, participant=self.player_id
            )
            self.waiting = self._decode_all(waiting)
            self.active = self._decode_all(active)
        if self._on_change is not None:
            self._on_change(self)

    def joinable(self) -> List[MatchRecord]:
        return [m for m in self.waiting if m.player1_id != self.player_id]

    async def create_match(self) -> str:
        record = await self.connection.create_match()
        return decode_match(record).id

    async def join(self, match_id: str) -> None:
        try:
            await self.connection.join_match(match_id)
        except RemoteRejected as exc:
            if exc.code != "not_waiting":
                raise
            # The join may have landed before the response was lost.
            record = decode_match(await self.connection.fetch_match(match_id))
            if record.player2_id != self.player_id:
                raise
            logger.info("Join of match %s already applied", match_id)

    async def watch(self, on_change: Optional[Callable[["Lobby"], None]] = None) -> None:
        """Keep the lists current by refreshing on every match change."""

        self._on_change = on_change
        if self._subscription is None:
            self._subscription = await self.connection.subscribe(None, self._changed)
        await self.refresh()

    def close(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            subscription.close()
        task, self._refresh_task = self._refresh_task, None
        if task is not None:
            task.cancel()

    def _changed(self, old: Optional[Record], new: Optional[Record]) -> None:
        if self._subscription is None:
            return
        self._stale = True
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.get_running_loop().create_task(
                self._refresh_while_stale()
            )

    async def _refresh_while_stale(self) -> None:
        # changes arriving mid-refresh collapse into one more pass
        while self._stale:
            self._stale = False
            try:
                await self.refresh()
            except MiniGamesError as exc:
                logger.warning("Lobby refresh failed: %s", exc)

    @staticmethod
    def _decode_all(rows: List[Record]) -> List[MatchRecord]:
        records = []
        for row in rows:
            try:
                records.append(decode_match(row))
            except MalformedRecord as exc:
                logger.error("Skipped malformed match in lobby listing: %s", exc)
        return records
