from __future__ import annotations


class TrackerError(Exception):
    """Base class for tracker failures. None of these are fatal to the poll loop."""


class UnknownEventKind(TrackerError, ValueError):
    pass


class MessageDecodeError(TrackerError, ValueError):
    """A relayed payload did not match any known message shape."""


class OracleUnavailable(TrackerError):
    """The world-timer oracle could not be reached."""


class WorldUnknownToOracle(TrackerError):
    """The oracle has no entry for the requested world (HTTP 404)."""

    def __init__(self, world: str) -> None:
        super().__init__(f"world {world} unknown to oracle")
        self.world = world
