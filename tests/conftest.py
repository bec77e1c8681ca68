import pytest

from minigames import notifications
from minigames.backend import HubConnection, MatchHub


class SpyConnection(HubConnection):
    """Hub connection that records every remote call it makes."""

    def __init__(self, hub, player_id):
        super().__init__(hub, player_id)
        self.calls = []

    def count(self, name):
        return sum(1 for call in self.calls if call[0] == name)

    async def make_move(self, match_id, column):
        self.calls.append(("make_move", match_id, column))
        await super().make_move(match_id, column)

    async def create_rematch(self, match_id):
        self.calls.append(("create_rematch", match_id))
        return await super().create_rematch(match_id)

    async def leave_match(self, match_id):
        self.calls.append(("leave_match", match_id))
        await super().leave_match(match_id)

    async def join_match(self, match_id):
        self.calls.append(("join_match", match_id))
        await super().join_match(match_id)


@pytest.fixture()
def hub():
    return MatchHub()


@pytest.fixture()
def spy(hub):
    def factory(player_id):
        return SpyConnection(hub, player_id)

    factory.cls = SpyConnection
    return factory


@pytest.fixture()
def fresh_notifications(monkeypatch):
    monkeypatch.setattr(notifications, "_initialized", False)
