from __future__ import annotations


class NotificationError(Exception):
    pass


class TransientNetworkError(NotificationError):
    """A remote query or mutation failed or timed out."""


class ChannelError(NotificationError):
    """The push subscription failed or timed out."""
