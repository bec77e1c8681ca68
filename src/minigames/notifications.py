"""Push notification SDK wrapper with process-wide, init-once setup."""

from __future__ import annotations

import logging
import os
import threading
from typing import Optional, Protocol

logger = logging.getLogger(__name__)

LOBBY_TAG = "hosted_match_id"

_init_lock = threading.Lock()
_initialized = False


class PushProvider(Protocol):
    def init(self, app_id: str) -> None: ...

    def request_permission(self) -> bool: ...

    def add_tag(self, key: str, value: str) -> None: ...


def is_initialized() -> bool:
    return _initialized


class Notifications:
    """Thin facade over a push provider. Failures are logged, never raised."""

    def __init__(self, provider: PushProvider, app_id: Optional[str] = None) -> None:
        self.provider = provider
        self.app_id = app_id or os.environ.get("MINIGAMES_PUSH_APP_ID", "")
        self.permission = False

    def ensure_initialized(self) -> bool:
        """Initialise the provider once per process, whoever calls first."""

        global _initialized
        if _initialized:
            return True
        with _init_lock:
            if _initialized:
                return True
            try:
                self.provider.init(self.app_id)
            except Exception as exc:
                logger.error("Push provider init failed: %s", exc)
                return False
            _initialized = True
        return True

    def request_permission(self) -> bool:
        if not self.ensure_initialized():
            return False
        try:
            self.permission = bool(self.provider.request_permission())
        except Exception as exc:
            logger.error("Requesting push permission failed: %s", exc)
        return self.permission

    def subscribe_to_lobby(self, match_id: str) -> bool:
        """Tag this device so it is notified when someone joins ``match_id``."""

        if not self.ensure_initialized():
            return False
        try:
            self.provider.add_tag(LOBBY_TAG, match_id)
        except Exception as exc:
            logger.error("Subscribing to match %s failed: %s", match_id, exc)
            return False
        logger.info("Subscribed to match %s", match_id)
        return True
