"""Test-side endpoint that waits for an application's startup signal."""

import datetime
import enum
import math
import socket
import time
from dataclasses import dataclass
from typing import Optional, Union

from patience.errors import AddressError, BindError, WaitTimeoutError

LOOPBACK_HOST = "127.0.0.1"
BACKLOG = 5
# Upper bound on how long to wait for the optional marker after a connection
PAYLOAD_GRACE = 0.05
MAX_PAYLOAD = 64
# Longest single accept; larger budgets are split into several attempts
MAX_ACCEPT_SLICE = 3600.0

Timeout = Union[float, int, datetime.timedelta]


class Outcome(enum.Enum):
    """Result of a rendezvous."""

    SIGNALED = "signaled"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class WaitResult:
    """What happened during a single wait."""

    outcome: Outcome
    timeout: float
    elapsed: float
    payload: bytes = b""

    @property
    def signaled(self) -> bool:
        return self.outcome is Outcome.SIGNALED

    def __bool__(self) -> bool:
        return self.signaled


def _seconds(timeout: Timeout) -> float:
    if isinstance(timeout, datetime.timedelta):
        timeout = timeout.total_seconds()
    seconds = float(timeout)
    if math.isnan(seconds):
        raise ValueError("timeout must be a number, not NaN")
    return max(seconds, 0.0)


class Listener:
    """Loopback TCP endpoint that blocks a test until the application connects.

    The listener binds port 0 so the OS picks a free port. Hand ``port`` to
    the application (environment variable, argument, file) and call
    ``wait``. A listener supports a single rendezvous: once ``wait`` has
    returned, the socket is closed.

    When several signalers race a single wait, the first connection the OS
    accepts wins. Any others stay in the backlog and are dropped on close.
    """

    def __init__(self, host: str = LOOPBACK_HOST):
        """Bind and start listening.

        Args:
            host: Loopback address to bind. Pass "::1" for IPv6.

        Raises:
            BindError: If the socket could not be created, bound or put
                into listening mode.
        """
        self.host = host
        self._port: Optional[int] = None
        self._waited = False
        family = socket.AF_INET6 if ":" in host else socket.AF_INET
        try:
            self._socket: Optional[socket.socket] = socket.socket(
                family, socket.SOCK_STREAM
            )
        except OSError as e:
            raise BindError(f"Could not create listening socket: {e}") from e
        try:
            self._socket.bind((host, 0))
            self._socket.listen(BACKLOG)
        except OSError as e:
            self.close()
            raise BindError(f"Could not bind {host}:0: {e}") from e

    @classmethod
    def create(cls, host: str = LOOPBACK_HOST) -> "Listener":
        """Create a listener bound to an ephemeral loopback port."""
        return cls(host)

    @property
    def port(self) -> int:
        """The OS-assigned port. Stable for the lifetime of the listener."""
        if self._port is None:
            if self._socket is None:
                raise AddressError("Listener closed before its port was read")
            try:
                self._port = self._socket.getsockname()[1]
            except OSError as e:
                raise AddressError(f"Could not read local address: {e}") from e
        return self._port

    @property
    def closed(self) -> bool:
        return self._socket is None

    def wait(self, timeout: Timeout) -> WaitResult:
        """Block until the application signals or ``timeout`` elapses.

        Args:
            timeout: Maximum time to wait, in seconds or as a timedelta.
                Zero performs a single non-blocking accept.

        Returns:
            WaitResult with outcome SIGNALED or TIMED_OUT.

        Raises:
            RuntimeError: If the listener was already waited on or closed.
            ValueError: If timeout is NaN.
            OSError: If accept fails for a reason other than the timeout.
        """
        if self._waited:
            raise RuntimeError("Listener already used for a rendezvous")
        if self._socket is None:
            raise RuntimeError("Listener is closed")
        budget = _seconds(timeout)
        self._waited = True
        # The port must stay readable after the socket is closed below
        _ = self.port

        start = time.monotonic()
        deadline = start + budget
        try:
            while True:
                remaining = deadline - time.monotonic()
                self._socket.settimeout(min(max(remaining, 0.0), MAX_ACCEPT_SLICE))
                try:
                    conn, _ = self._socket.accept()
                except (socket.timeout, BlockingIOError):
                    if deadline - time.monotonic() <= 0:
                        return WaitResult(
                            Outcome.TIMED_OUT, budget, time.monotonic() - start
                        )
                    continue
                payload = self._read_marker(conn, deadline)
                return WaitResult(
                    Outcome.SIGNALED, budget, time.monotonic() - start, payload
                )
        finally:
            self.close()

    def expect(self, timeout: Timeout) -> WaitResult:
        """Like ``wait`` but raise WaitTimeoutError if no signal arrives."""
        result = self.wait(timeout)
        if not result.signaled:
            raise WaitTimeoutError(result.timeout)
        return result

    @staticmethod
    def _read_marker(conn: socket.socket, deadline: float) -> bytes:
        """Read whatever the signaler sent, without requiring anything."""
        with conn:
            grace = min(PAYLOAD_GRACE, deadline - time.monotonic())
            if grace <= 0:
                return b""
            conn.settimeout(grace)
            try:
                return conn.recv(MAX_PAYLOAD)
            except OSError:
                # The handshake already delivered the signal
                return b""

    def close(self) -> None:
        """Release the listening socket. Safe to call more than once."""
        if self._socket is not None:
            try:
                self._socket.close()
            except OSError:
                pass
            self._socket = None

    def __enter__(self) -> "Listener":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
