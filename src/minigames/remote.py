"""``MatchBackend`` over the HTTP and websocket API served by ``minigames.server``."""

from __future__ import annotations

import abc
import asyncio
import json
import logging
import os
from typing import Any, Dict, FrozenSet, List, Optional
from urllib.parse import quote, urlencode, urlsplit, urlunsplit

import httpx
import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from .backend import ChangeCallback, DropCallback, Record, SyncCallback
from .errors import MatchNotFound, RemoteRejected, TransportDegraded

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "http://localhost:8000"
CONNECT_TIMEOUT = 5.0


def _ws_url(base_url: str, path: str, **params: str) -> str:
    parts = urlsplit(base_url)
    scheme = "wss" if parts.scheme == "https" else "ws"
    return urlunsplit(
        (scheme, parts.netloc, parts.path.rstrip("/") + path, urlencode(params), "")
    )


class _SocketTask(abc.ABC):
    """A websocket connection owned by a background task.

    ``start`` returns once the server acknowledged the connection; ``close``
    cancels the task, which closes the socket on its way out.
    """

    def __init__(self, url: str, name: str) -> None:
        self.url = url
        self.name = name
        self.closed = False
        self._ws = None
        self._ready: Optional[asyncio.Future] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._task = loop.create_task(self._run())
        try:
            await asyncio.wait_for(asyncio.shield(self._ready), CONNECT_TIMEOUT)
        except (asyncio.TimeoutError, TransportDegraded) as exc:
            self.close()
            raise TransportDegraded(f"Could not attach {self.name}: {exc}") from exc

    async def send(self, message: Dict[str, Any]) -> None:
        if self._ws is None or self.closed:
            raise TransportDegraded(f"{self.name} is not connected")
        try:
            await self._ws.send(json.dumps(message))
        except (ConnectionClosed, OSError) as exc:
            raise TransportDegraded(f"{self.name} dropped: {exc}") from exc

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if self._task is not None:
            self._task.cancel()

    @abc.abstractmethod
    def handle(self, message: Dict[str, Any]) -> None:
        """Deliver one server message to the listeners."""

    def dropped(self) -> None:
        """Called once when an established connection ends without ``close``."""

    def _receive(self, raw: Any) -> None:
        try:
            message = json.loads(raw)
        except ValueError as exc:
            logger.error("%s sent a malformed frame: %s", self.name, exc)
            return
        if not isinstance(message, dict):
            logger.error("%s sent a non-object frame: %r", self.name, message)
            return
        if message.get("type") == "error":
            raise TransportDegraded(message.get("message", "server error"))
        if not self._ready.done():
            self._ready.set_result(None)
            if message.get("type") in ("subscribed", "attached"):
                return
        try:
            self.handle(message)
        except Exception:
            logger.exception("%s listener failed", self.name)

    async def _run(self) -> None:
        try:
            async with websockets.connect(self.url) as ws:
                self._ws = ws
                async for raw in ws:
                    self._receive(raw)
        except asyncio.CancelledError:
            raise
        except (OSError, WebSocketException, TransportDegraded) as exc:
            if not self._ready.done():
                self._ready.set_exception(TransportDegraded(str(exc)))
            else:
                logger.warning("%s dropped: %s", self.name, exc)
        finally:
            self._ws = None
            if not self._ready.done():
                self._ready.set_exception(TransportDegraded(f"{self.name} closed"))
            elif not self.closed:
                self.closed = True
                self.dropped()


class RemoteSubscription(_SocketTask):
    def __init__(self, url: str, name: str, callback: ChangeCallback) -> None:
        super().__init__(url, name)
        self.callback = callback

    def handle(self, message: Dict[str, Any]) -> None:
        if "new" in message or "old" in message:
            self.callback(message.get("old"), message.get("new"))


class RemotePresenceChannel(_SocketTask):
    def __init__(self, url: str, name: str) -> None:
        super().__init__(url, name)
        self._callbacks: List[SyncCallback] = []
        self._drop_callbacks: List[DropCallback] = []
        self._present: FrozenSet[str] = frozenset()

    async def track(self, identity: str, online_at: str) -> None:
        # identity is fixed by the connection's player parameter
        await self.send({"type": "track", "identity": identity, "online_at": online_at})

    def on_sync(self, callback: SyncCallback) -> None:
        self._callbacks.append(callback)

    def on_drop(self, callback: DropCallback) -> None:
        self._drop_callbacks.append(callback)

    def present(self) -> FrozenSet[str]:
        return self._present

    def handle(self, message: Dict[str, Any]) -> None:
        if message.get("type") != "sync":
            return
        self._present = frozenset(message.get("present") or ())
        for callback in list(self._callbacks):
            callback(self._present)

    def dropped(self) -> None:
        for callback in list(self._drop_callbacks):
            callback()


class HttpBackend:
    """Player-bound client for the match API.

    The player id travels in the ``Authorization`` header on HTTP calls and
    in the ``player`` query parameter on websockets.
    """

    def __init__(
        self,
        base_url: str,
        player_id: str,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 5.0,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.player_id = player_id
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={"Authorization": player_id},
            transport=transport,
            timeout=timeout,
        )

    @classmethod
    def from_env(cls) -> "HttpBackend":
        player_id = os.environ.get("MINIGAMES_PLAYER_ID")
        if not player_id:
            raise ValueError("MINIGAMES_PLAYER_ID is required")
        return cls(os.environ.get("MINIGAMES_API_URL", DEFAULT_API_URL), player_id)

    async def aclose(self) -> None:
        await self.client.aclose()

    async def __aenter__(self) -> "HttpBackend":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    # ---- HTTP ----

    async def _request(self, method: str, path: str, match_id: str = "", **kwargs) -> Any:
        response = await self.client.request(method, path, **kwargs)
        if response.status_code == 404:
            raise MatchNotFound(match_id)
        if response.status_code in (400, 403, 409, 422):
            detail = response.json().get("detail")
            if isinstance(detail, dict) and "code" in detail:
                raise RemoteRejected(detail["code"], detail.get("message", ""))
            raise RemoteRejected("invalid_request", str(detail))
        response.raise_for_status()
        return response.json()

    async def fetch_match(self, match_id: str) -> Record:
        return await self._request("GET", f"/api/matches/{quote(match_id)}", match_id)

    async def create_match(self) -> Record:
        return await self._request("POST", "/api/matches")

    async def list_matches(
        self, status: Optional[str] = None, participant: Optional[str] = None
    ) -> List[Record]:
        params = {k: v for k, v in (("status", status), ("participant", participant)) if v}
        return await self._request("GET", "/api/matches", params=params)

    async def make_move(self, match_id: str, column: int) -> None:
        await self._request(
            "POST",
            f"/api/matches/{quote(match_id)}/move",
            match_id,
            json={"colIndex": column},
        )

    async def join_match(self, match_id: str) -> None:
        await self._request("POST", f"/api/matches/{quote(match_id)}/join", match_id)

    async def create_rematch(self, match_id: str) -> str:
        payload = await self._request(
            "POST", f"/api/matches/{quote(match_id)}/rematch", match_id
        )
        return payload["matchId"]

    async def leave_match(self, match_id: str) -> None:
        await self._request("POST", f"/api/matches/{quote(match_id)}/leave", match_id)

    # ---- websockets ----

    async def subscribe(
        self, match_id: Optional[str], callback: ChangeCallback
    ) -> RemoteSubscription:
        path = "/ws/matches" + (f"/{quote(match_id)}" if match_id else "")
        subscription = RemoteSubscription(
            _ws_url(self.base_url, path, player=self.player_id),
            f"change feed {path}",
            callback,
        )
        await subscription.start()
        return subscription

    async def attach_presence(self, scope: str) -> RemotePresenceChannel:
        path = f"/ws/presence/{quote(scope)}"
        channel = RemotePresenceChannel(
            _ws_url(self.base_url, path, player=self.player_id), f"presence {scope}"
        )
        await channel.start()
        return channel
