"""Tests for the HTTP backend client, served in-process through ASGI."""

import asyncio
import json

import httpx
import pytest
import websockets

from minigames import server
from minigames.backend import MatchHub
from minigames.errors import MatchNotFound, RemoteRejected
from minigames.remote import HttpBackend, _ws_url


def run(coro):
    return asyncio.run(coro)


@pytest.fixture()
def backend_for(monkeypatch):
    monkeypatch.setattr(server, "HUB", MatchHub())

    def factory(player_id):
        return HttpBackend(
            "http://testserver",
            player_id,
            transport=httpx.ASGITransport(app=server.app),
        )

    return factory


def test_full_match_flow(backend_for):
    async def scenario():
        async with backend_for("u1") as host, backend_for("u2") as guest:
            record = await host.create_match()
            match_id = record["id"]
            await guest.join_match(match_id)
            await host.make_move(match_id, 3)
            fetched = await guest.fetch_match(match_id)
            assert fetched["state"]["board"][5][3] == 1
            assert fetched["state"]["current_turn"] == "u2"

            with pytest.raises(RemoteRejected) as excinfo:
                await host.make_move(match_id, 3)
            assert excinfo.value.code == "not_your_turn"

            active = await guest.list_matches(status="playing", participant="u2")
            assert [m["id"] for m in active] == [match_id]

    run(scenario())


def test_missing_match_maps_to_not_found(backend_for):
    async def scenario():
        async with backend_for("u1") as backend:
            with pytest.raises(MatchNotFound):
                await backend.fetch_match("missing")

    run(scenario())


def test_rematch_and_leave(backend_for):
    async def scenario():
        async with backend_for("u1") as host, backend_for("u2") as guest:
            match_id = (await host.create_match())["id"]
            await guest.join_match(match_id)
            for column in (0, 1, 0, 1, 0, 1, 0):
                await (host if column == 0 else guest).make_move(match_id, column)
            rematch_id = await guest.create_rematch(match_id)
            assert await host.create_rematch(match_id) == rematch_id

            waiting_id = (await host.create_match())["id"]
            with pytest.raises(RemoteRejected) as excinfo:
                await guest.leave_match(waiting_id)
            assert excinfo.value.code == "not_creator"
            await host.leave_match(waiting_id)
            with pytest.raises(MatchNotFound):
                await host.fetch_match(waiting_id)

    run(scenario())


def test_invalid_column_is_rejected_remotely(backend_for):
    async def scenario():
        async with backend_for("u1") as host, backend_for("u2") as guest:
            match_id = (await host.create_match())["id"]
            await guest.join_match(match_id)
            with pytest.raises(RemoteRejected) as excinfo:
                await host.make_move(match_id, 9)
            assert excinfo.value.code == "invalid_request"

    run(scenario())


def test_websocket_urls():
    assert (
        _ws_url("https://games.example/base", "/ws/matches/m1", player="u1")
        == "wss://games.example/base/ws/matches/m1?player=u1"
    )
    assert _ws_url("http://localhost:8000", "/ws/matches").startswith("ws://localhost:8000/")


def test_from_env(monkeypatch):
    monkeypatch.setenv("MINIGAMES_API_URL", "http://games.example")
    monkeypatch.setenv("MINIGAMES_PLAYER_ID", "u7")
    backend = HttpBackend.from_env()
    assert backend.player_id == "u7"
    assert backend.base_url == "http://games.example"
    run(backend.aclose())


async def _serve(frames, close_on_message=False):
    """Local websocket server that sends ``frames`` to every client.

    With ``close_on_message`` the server hangs up after the first client frame.
    """

    async def handler(websocket):
        for frame in frames:
            await websocket.send(frame if isinstance(frame, str) else json.dumps(frame))
        if close_on_message:
            await websocket.recv()
        else:
            await websocket.wait_closed()

    ws_server = await websockets.serve(handler, "127.0.0.1", 0)
    port = ws_server.sockets[0].getsockname()[1]
    return ws_server, f"http://127.0.0.1:{port}"


def test_change_feed_survives_bad_frames_and_listener_errors(caplog):
    frames = [
        {"type": "subscribed", "matchId": "m1"},
        "not json",
        {"old": None, "new": {"id": "m1", "status": "waiting"}},
        {"old": None, "new": {"id": "m1", "status": "playing"}},
    ]

    async def scenario():
        ws_server, url = await _serve(frames)
        received = []
        done = asyncio.Event()

        def callback(old, new):
            received.append(new["status"])
            if len(received) == 2:
                done.set()
            if len(received) == 1:
                raise RuntimeError("listener blew up")

        async with HttpBackend(url, "u1") as backend:
            subscription = await backend.subscribe("m1", callback)
            await asyncio.wait_for(done.wait(), 5)
            assert subscription.closed is False
            subscription.close()
        ws_server.close()
        await ws_server.wait_closed()
        return received

    assert run(scenario()) == ["waiting", "playing"]
    assert "malformed frame" in caplog.text
    assert "listener failed" in caplog.text


def test_presence_channel_reports_server_side_drop():
    frames = [
        {"type": "attached", "scope": "presence:match:m1"},
        {"type": "sync", "present": ["u1", "u2"]},
    ]

    async def scenario():
        ws_server, url = await _serve(frames, close_on_message=True)
        dropped = asyncio.Event()
        async with HttpBackend(url, "u1") as backend:
            channel = await backend.attach_presence("presence:match:m1")
            channel.on_drop(dropped.set)
            await channel.track("u1", "now")
            await asyncio.wait_for(dropped.wait(), 5)
            assert channel.closed is True
            assert channel.present() == frozenset({"u1", "u2"})
            channel.close()
        ws_server.close()
        await ws_server.wait_closed()

    run(scenario())
