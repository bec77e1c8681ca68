"""Tests for the init-once push notification wrapper."""

import threading
import time

import pytest

from minigames import notifications
from minigames.notifications import LOBBY_TAG, Notifications

pytestmark = pytest.mark.usefixtures("fresh_notifications")


class FakeProvider:
    def __init__(self, fail=False):
        self.fail = fail
        self.inits = 0
        self.tags = {}

    def init(self, app_id):
        time.sleep(0.01)
        self.inits += 1
        if self.fail:
            raise RuntimeError("sdk offline")

    def request_permission(self):
        return True

    def add_tag(self, key, value):
        self.tags[key] = value


def test_concurrent_callers_initialise_once():
    provider = FakeProvider()
    threads = [
        threading.Thread(target=Notifications(provider, "app").ensure_initialized)
        for _ in range(8)
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    assert provider.inits == 1
    assert notifications.is_initialized()


def test_failed_init_can_be_retried():
    provider = FakeProvider(fail=True)
    service = Notifications(provider, "app")
    assert service.ensure_initialized() is False
    provider.fail = False
    assert service.ensure_initialized() is True
    assert provider.inits == 2


def test_subscribe_to_lobby_tags_match():
    provider = FakeProvider()
    service = Notifications(provider, "app")
    assert service.request_permission() is True
    assert service.subscribe_to_lobby("m1") is True
    assert provider.tags == {LOBBY_TAG: "m1"}
