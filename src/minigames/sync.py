"""Live view of one online match, reconciled from server pushes.

``MatchSync`` never predicts: the board, the turn owner and the status only
change when the backend pushes a new copy of the match record.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable, FrozenSet, List, Optional

from .backend import (
    MatchBackend,
    PresenceChannel,
    Record,
    Subscription,
    presence_scope,
)
from .errors import (
    MalformedRecord,
    PreconditionRejected,
    RemoteRejected,
    TransportDegraded,
)
from .records import (
    STATUS_RANK,
    MatchRecord,
    MatchStatus,
    MatchView,
    PresenceState,
    decode_match,
    project,
)

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[MatchView], None]


def opponent_presence(
    player1_id: Optional[str],
    player2_id: Optional[str],
    viewer_id: Optional[str],
    present: FrozenSet[str],
    tracked: bool,
) -> PresenceState:
    """Whether the viewer's opponent currently has a client attached.

    Only meaningful once both slots are bound and the viewer holds one of them.
    """

    if not player1_id or not player2_id or viewer_id not in (player1_id, player2_id):
        return PresenceState.NOT_APPLICABLE
    if not tracked:
        return PresenceState.UNKNOWN
    opponent = player2_id if viewer_id == player1_id else player1_id
    return PresenceState.PRESENT if opponent in present else PresenceState.ABSENT


class MatchSync:
    """Owns one match's mirrored state for the lifetime of a match screen.

    Usage::

        async with MatchSync(connection, match_id) as sync:
            await sync.attempt_move(3)
    """

    def __init__(
        self,
        connection: MatchBackend,
        match_id: str,
        on_update: Optional[UpdateCallback] = None,
    ) -> None:
        self.connection = connection
        self.match_id = match_id
        self._listeners: List[UpdateCallback] = [on_update] if on_update else []
        self._record: Optional[MatchRecord] = None
        self._view = MatchView.loading_view(match_id)
        self._subscription: Optional[Subscription] = None
        self._channel: Optional[PresenceChannel] = None
        self._present: FrozenSet[str] = frozenset()
        self._rematch_request: Optional[asyncio.Future] = None
        self._opened = False
        self._closed = False

    @property
    def player_id(self) -> str:
        return self.connection.player_id

    @property
    def view(self) -> MatchView:
        return self._view

    @property
    def is_open(self) -> bool:
        return self._opened and not self._closed

    def listen(self, callback: UpdateCallback) -> None:
        self._listeners.append(callback)

    # ---- lifecycle ----

    async def open(self) -> MatchView:
        if self._opened:
            return self._view
        self._opened = True
        self._closed = False
        try:
            self._subscription = await self.connection.subscribe(
                self.match_id, self._on_change
            )
            raw = await self.connection.fetch_match(self.match_id)
            snapshot = decode_match(raw)
        except BaseException:
            # a failed open can be retried from scratch
            self.close()
            self._opened = False
            raise

        if self._closed:
            return self._view
        if self._record is None or snapshot.progress_key() >= self._record.progress_key():
            self._apply(snapshot)
        await self._attach_presence()
        return self._view

    def close(self) -> None:
        """Drop the change subscription and the presence channel."""

        self._closed = True
        subscription, self._subscription = self._subscription, None
        channel, self._channel = self._channel, None
        if subscription is not None:
            subscription.close()
        if channel is not None:
            channel.close()
        if self._rematch_request is not None and not self._rematch_request.done():
            self._rematch_request.cancel()

    async def unload(self) -> None:
        """Page-unload path: give up a waiting match, then tear down."""

        try:
            await self.leave_if_waiting()
        finally:
            self.close()

    async def __aenter__(self) -> "MatchSync":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ---- actions ----

    async def attempt_move(self, column: int) -> bool:
        """Ask the backend to drop a disc. ``False`` if a local guard refused.

        A refusal from the backend raises ``RemoteRejected``; the view only
        changes when the resulting push arrives.
        """

        try:
            self._check_move()
        except PreconditionRejected as exc:
            logger.info(
                "Blocked move in column %s for %s on match %s: %s",
                column,
                self.player_id,
                self.match_id,
                exc,
            )
            return False
        try:
            await self.connection.make_move(self.match_id, column)
        except RemoteRejected as exc:
            logger.warning(
                "Move in column %s rejected on match %s: %s",
                column,
                self.match_id,
                exc.code,
            )
            raise
        return True

    async def request_rematch(self) -> Optional[str]:
        view = self._view
        if view.rematch_id:
            return view.rematch_id
        if self._rematch_request is not None:
            return await asyncio.shield(self._rematch_request)
        if not self.is_open or view.match_status is not MatchStatus.FINISHED:
            logger.info("Rematch for match %s ignored: match not finished", self.match_id)
            return None
        if self.player_id not in (view.player1_id, view.player2_id):
            logger.info("Rematch for match %s ignored: not a participant", self.match_id)
            return None

        loop = asyncio.get_running_loop()
        self._rematch_request = future = loop.create_future()
        try:
            rematch_id = await self.connection.create_rematch(self.match_id)
        except asyncio.CancelledError:
            self._rematch_request = None
            future.cancel()
            raise
        except Exception as exc:
            self._rematch_request = None
            if not future.done():
                future.set_exception(exc)
                # mark retrieved so an unawaited failure is not reported twice
                future.exception()
            raise
        if not future.done():
            future.set_result(rematch_id)
        return rematch_id

    async def leave_if_waiting(self) -> bool:
        """Best-effort release of a match nobody has joined yet."""

        view = self._view
        if view.match_status is not MatchStatus.WAITING or view.player1_id != self.player_id:
            return False
        try:
            await self.connection.leave_match(self.match_id)
        except Exception as exc:
            logger.warning("Leave for match %s failed: %s", self.match_id, exc)
            return False
        return True

    # ---- pushes ----

    def _on_change(self, old: Optional[Record], new: Optional[Record]) -> None:
        if self._closed:
            return
        if new is None:
            logger.warning("Match %s was removed by the server", self.match_id)
            return
        try:
            record = decode_match(new)
        except MalformedRecord as exc:
            logger.error("Dropped malformed push for match %s: %s", self.match_id, exc)
            return
        if record.id != self.match_id:
            return

        current = self._record
        if current is not None:
            if STATUS_RANK[record.status] < STATUS_RANK[current.status]:
                logger.warning(
                    "Dropped push moving match %s back from %s to %s",
                    self.match_id,
                    current.status.value,
                    record.status.value,
                )
                return
            if (
                current.rematch_match_id
                and record.rematch_match_id != current.rematch_match_id
            ):
                if record.rematch_match_id:
                    logger.warning(
                        "Ignored rematch link change on match %s", self.match_id
                    )
                record = record.model_copy(
                    update={"rematch_match_id": current.rematch_match_id}
                )
        self._apply(record)

    def _apply(self, record: MatchRecord) -> None:
        self._record = record
        self._refresh()

    def _on_presence_sync(self, present: FrozenSet[str]) -> None:
        if self._closed:
            return
        self._present = present
        self._refresh()

    def _on_presence_dropped(self) -> None:
        if self._closed or self._channel is None:
            return
        logger.warning("Presence channel for match %s dropped", self.match_id)
        self._channel = None
        self._present = frozenset()
        self._refresh()

    def _refresh(self) -> None:
        record = self._record
        if record is None:
            return
        presence = opponent_presence(
            record.player1_id,
            record.player2_id,
            self.player_id,
            self._present,
            self._channel is not None,
        )
        view = project(record, self.player_id, presence)
        if view.anomalies and view.anomalies != self._view.anomalies:
            logger.warning(
                "Match %s has unrecognised cells, shown as empty: %s",
                self.match_id,
                ", ".join(f"({a.row},{a.column})={a.raw!r}" for a in view.anomalies),
            )
        self._view = view
        for callback in list(self._listeners):
            callback(view)

    # ---- presence ----

    async def _attach_presence(self) -> None:
        try:
            channel = await self.connection.attach_presence(presence_scope(self.match_id))
        except TransportDegraded as exc:
            logger.warning("Presence unavailable for match %s: %s", self.match_id, exc)
            return
        if self._closed:
            channel.close()
            return
        self._channel = channel
        channel.on_sync(self._on_presence_sync)
        channel.on_drop(self._on_presence_dropped)
        try:
            await channel.track(self.player_id, datetime.now(timezone.utc).isoformat())
        except TransportDegraded as exc:
            logger.warning("Presence unavailable for match %s: %s", self.match_id, exc)
            self._channel = None
            channel.close()
        self._refresh()

    def _check_move(self) -> None:
        view = self._view
        if not self.is_open:
            raise PreconditionRejected("match view is not connected")
        if view.loading:
            raise PreconditionRejected("match is still loading")
        if self.player_id not in (view.player1_id, view.player2_id):
            raise PreconditionRejected("not a participant")
        if view.match_status is not MatchStatus.PLAYING:
            raise PreconditionRejected("match is not being played")
        if view.current_turn_id != self.player_id:
            raise PreconditionRejected("not your turn")
