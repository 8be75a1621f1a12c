"""Error taxonomy shared by the cache, remote adapters and the sync layer."""

from __future__ import annotations


class TrackerError(Exception):
    """Base class for every error raised by the tracker package."""


class SessionError(TrackerError):
    """The current identity could not be determined."""


class RemoteError(TrackerError):
    """A call against the remote store failed."""


class RemoteReadError(RemoteError):
    pass


class RemoteWriteError(RemoteError):
    pass


class ResourceExhaustedError(RemoteWriteError):
    """The remote store is rate limiting or out of capacity; retry later."""


class LocalStorageError(TrackerError):
    pass
