"""FastAPI development backend exposing a ``MatchHub`` over HTTP and websockets."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, FrozenSet, List, Optional

from fastapi import (
    FastAPI,
    Header,
    HTTPException,
    Query,
    WebSocket,
    WebSocketDisconnect,
)
from pydantic import BaseModel, ConfigDict, Field

from .backend import MatchHub, Record
from .connect4 import COLS
from .errors import MatchNotFound, RemoteRejected, TransportDegraded
from .records import MatchStatus

HUB = MatchHub()
app = FastAPI(title="MiniGames", description="Online Connect 4 match backend")

# Rejection codes that mean the caller lacks the right, not that state moved on.
FORBIDDEN_CODES = frozenset({"not_participant", "not_creator", "own_match"})


class MoveRequest(BaseModel):
    """Request payload for dropping a disc."""

    model_config = ConfigDict(populate_by_name=True)

    column: int = Field(alias="colIndex", ge=0, le=COLS - 1)


def _require_player(authorization: Optional[str]) -> str:
    player = (authorization or "").strip()
    if player.lower().startswith("bearer "):
        player = player[7:].strip()
    if not player:
        raise HTTPException(status_code=401, detail="Missing player identity")
    return player


def _rejection(exc: RemoteRejected) -> HTTPException:
    status = 403 if exc.code in FORBIDDEN_CODES else 409
    return HTTPException(status_code=status, detail={"code": exc.code, "message": exc.message})


def _get_match(match_id: str) -> Record:
    try:
        return HUB.get(match_id)
    except MatchNotFound as exc:
        raise HTTPException(status_code=404, detail="Match not found") from exc


@app.post("/api/matches")
async def create_match(authorization: Optional[str] = Header(default=None)) -> Record:
    return HUB.create(_require_player(authorization))


@app.get("/api/matches")
async def list_matches(
    status: Optional[MatchStatus] = None, participant: Optional[str] = None
) -> List[Record]:
    return HUB.query(status=status.value if status else None, participant=participant)


@app.get("/api/matches/{match_id}")
async def get_match(match_id: str) -> Record:
    return _get_match(match_id)


@app.post("/api/matches/{match_id}/join")
async def join_match(
    match_id: str, authorization: Optional[str] = Header(default=None)
) -> Record:
    player = _require_player(authorization)
    try:
        HUB.join(match_id, player)
    except MatchNotFound as exc:
        raise HTTPException(status_code=404, detail="Match not found") from exc
    except RemoteRejected as exc:
        raise _rejection(exc) from exc
    return _get_match(match_id)


@app.post("/api/matches/{match_id}/move")
async def make_move(
    match_id: str,
    request: MoveRequest,
    authorization: Optional[str] = Header(default=None),
) -> Record:
    player = _require_player(authorization)
    try:
        HUB.move(match_id, player, request.column)
    except MatchNotFound as exc:
        raise HTTPException(status_code=404, detail="Match not found") from exc
    except RemoteRejected as exc:
        raise _rejection(exc) from exc
    return _get_match(match_id)


@app.post("/api/matches/{match_id}/rematch")
async def create_rematch(
    match_id: str, authorization: Optional[str] = Header(default=None)
) -> Dict[str, str]:
    player = _require_player(authorization)
    try:
        rematch_id = HUB.rematch(match_id, player)
    except MatchNotFound as exc:
        raise HTTPException(status_code=404, detail="Match not found") from exc
    except RemoteRejected as exc:
        raise _rejection(exc) from exc
    return {"matchId": rematch_id}


@app.post("/api/matches/{match_id}/leave")
async def leave_match(
    match_id: str, authorization: Optional[str] = Header(default=None)
) -> Dict[str, bool]:
    player = _require_player(authorization)
    try:
        HUB.leave(match_id, player)
    except MatchNotFound as exc:
        raise HTTPException(status_code=404, detail="Match not found") from exc
    except RemoteRejected as exc:
        raise _rejection(exc) from exc
    return {"left": True}


async def _pump(websocket: WebSocket, queue: "asyncio.Queue[Dict[str, Any]]") -> None:
    while True:
        message = await queue.get()
        await websocket.send_json(message)


async def _stream_changes(websocket: WebSocket, match_id: Optional[str]) -> None:
    await websocket.accept()
    queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()

    def forward(old: Optional[Record], new: Optional[Record]) -> None:
        queue.put_nowait({"old": old, "new": new})

    subscription = HUB.subscribe(match_id, forward)
    await websocket.send_json({"type": "subscribed", "matchId": match_id})
    pump = asyncio.create_task(_pump(websocket, queue))
    try:
        # change feeds are one-way; reading only notices the client leaving
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        subscription.close()
        pump.cancel()
        await asyncio.gather(pump, return_exceptions=True)


@app.websocket("/ws/matches")
async def match_feed(websocket: WebSocket) -> None:
    await _stream_changes(websocket, None)


@app.websocket("/ws/matches/{match_id}")
async def single_match_feed(websocket: WebSocket, match_id: str) -> None:
    await _stream_changes(websocket, match_id)


@app.websocket("/ws/presence/{scope}")
async def presence_channel(
    websocket: WebSocket, scope: str, player: Optional[str] = Query(default=None)
) -> None:
    await websocket.accept()
    if not player:
        await websocket.send_json({"type": "error", "message": "Missing player identity"})
        await websocket.close(code=4401)
        return
    try:
        channel = HUB.attach(scope)
    except TransportDegraded as exc:
        await websocket.send_json({"type": "error", "message": str(exc)})
        await websocket.close(code=1013)
        return

    queue: "asyncio.Queue[Dict[str, Any]]" = asyncio.Queue()

    def forward(present: FrozenSet[str]) -> None:
        queue.put_nowait({"type": "sync", "present": sorted(present)})

    channel.on_sync(forward)
    await websocket.send_json({"type": "attached", "scope": scope})
    pump = asyncio.create_task(_pump(websocket, queue))
    try:
        while True:
            message = await websocket.receive_json()
            if message.get("type") == "track":
                await channel.track(player, str(message.get("online_at") or ""))
    except WebSocketDisconnect:
        pass
    finally:
        channel.close()
        pump.cancel()
        await asyncio.gather(pump, return_exceptions=True)
