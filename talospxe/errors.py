"""
Exception types raised by the boot orchestrator.
"""


class BootError(Exception):
    """Base class for all orchestrator errors."""


class InvalidPrefixError(BootError, ValueError):
    """Prefix cannot hold network, broadcast, host and at least one client."""


class PoolExhaustedError(BootError):
    """No assignable address remains in the pool."""


class DuplicateClientError(BootError):
    """Client already holds a live lease and strict mode forbids renewal."""


class InterfaceError(BootError):
    """Network interface could not be found or configured."""


class ListenerBindError(BootError):
    """A listener socket could not be bound before serving began."""


class ListenerError(BootError):
    """A running listener terminated with an error."""

    def __init__(self, listener: str, error: BaseException):
        super().__init__(f"{listener} listener failed: {error}")
        self.listener = listener
        self.error = error
