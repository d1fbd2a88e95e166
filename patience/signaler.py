"""Application-side endpoint that signals readiness to a waiting listener."""

import socket

from patience.errors import ConnectError
from patience.listener import LOOPBACK_HOST

# Informational only; listeners never require it
READY_MARKER = b"READY\n"


class Signaler:
    """Connects to a listener's port to tell it the application is ready."""

    def __init__(self, host: str = LOOPBACK_HOST):
        self.host = host

    def notify(self, port: int) -> None:
        """Signal readiness to the listener on ``port``.

        Makes a single connection attempt. Establishing the connection is the
        signal; the marker written afterwards is a courtesy for logs.

        Raises:
            ConnectError: If the connection could not be established.
        """
        try:
            conn = socket.create_connection((self.host, port))
        except (OSError, OverflowError) as e:
            raise ConnectError(self.host, port) from e
        with conn:
            try:
                conn.sendall(READY_MARKER)
            except OSError:
                # The listener may already have accepted and closed
                pass


def notify(port: int, host: str = LOOPBACK_HOST) -> None:
    """Signal readiness to the listener on ``host:port``."""
    Signaler(host).notify(port)
