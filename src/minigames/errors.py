"""Exception types shared by the match client, the hub and the HTTP surface."""

from __future__ import annotations


class MiniGamesError(Exception):
    """Base class for every error raised by this package."""


class MatchNotFound(MiniGamesError):
    def __init__(self, match_id: str) -> None:
        super().__init__(f"Match {match_id} not found")
        self.match_id = match_id


class PreconditionRejected(MiniGamesError):
    """A local guard refused an action before it reached the network."""


class RemoteRejected(MiniGamesError):
    """The backend refused a mutation.

    ``code`` is a short machine-readable reason such as ``not_your_turn`` or
    ``column_full``; ``message`` is meant for people.
    """

    def __init__(self, code: str, message: str = "") -> None:
        super().__init__(message or code)
        self.code = code
        self.message = message or code


class TransportDegraded(MiniGamesError):
    """A realtime channel could not be attached or was lost."""


class MalformedRecord(MiniGamesError):
    """A server record failed validation at the decode boundary."""
