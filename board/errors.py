"""
Errors raised by the board watcher and the player.

Transient origin failures (FetchError, MalformedResponse) are contained by
the caller that made the request. StorageError is only raised for startup
preconditions and is meant to abort the process.
"""


class BoardError(Exception):
    """Base class for everything this project raises on purpose."""


class FetchError(BoardError):
    """Origin request failed: network error or a non-200 status."""

    def __init__(self, url, message, status=None):
        super().__init__(f"{url}: {message}")
        self.url = url
        self.status = status


class MalformedResponse(BoardError):
    """Origin answered, but the body is not the JSON shape we expect."""


class EmptyQueueError(BoardError):
    """No clip has been discovered yet, so there is nothing to serve."""


class StorageError(BoardError):
    """Save or scratch directory cannot be used."""
