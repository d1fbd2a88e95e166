"""Exceptions raised by the startup synchronization primitives."""


class PatienceError(Exception):
    """Base class for all errors raised by this package."""


class BindError(PatienceError):
    """The listener could not allocate or bind a local endpoint."""


class AddressError(PatienceError):
    """The listener's local address could not be queried."""


class ConnectError(PatienceError):
    """The signaler could not reach the listener.

    The underlying OSError is available as ``__cause__``.
    """

    def __init__(self, host: str, port: int):
        super().__init__(f"Could not connect to {host}:{port}")
        self.host = host
        self.port = port


class WaitTimeoutError(PatienceError):
    """The application did not signal readiness before the deadline."""

    def __init__(self, timeout: float):
        super().__init__(
            f"application did not signal readiness within {timeout} seconds"
        )
        self.timeout = timeout
