class NetViewError(Exception):
    """Base class for client-side synchronization errors."""


class NoDataError(NetViewError):
    """The server answered a data-bearing request with null."""

    def __init__(self, message: str = "No data"):
        super().__init__(message)


class NotConnectedError(NetViewError):
    """An operation needed a channel but none is attached."""

    def __init__(self, message: str = "Not connected"):
        super().__init__(message)


class ProtocolError(NetViewError):
    """A response did not have the shape the RPC promises."""
