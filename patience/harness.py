"""Helpers for handing the listener's port to an application and launching it.

The test side uses ``launch_app`` to start the application with the port
exported in its environment (and substituted for ``{port}`` in its
arguments). The application side calls ``notify_from_env`` once it is ready.
"""

import os
import signal
import subprocess
from collections.abc import Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from patience.listener import LOOPBACK_HOST, Listener, Timeout, WaitResult
from patience.signaler import notify

PORT_ENV_VAR = "PATIENCE_PORT"
PORT_PLACEHOLDER = "{port}"
SIGTERM_TIMEOUT = 10


def port_from_env(
    env_var: str = PORT_ENV_VAR, environ: Optional[Mapping[str, str]] = None
) -> int:
    """Read the listener's port from an environment variable.

    Raises:
        RuntimeError: If the variable is unset or not a valid port number.
    """
    if environ is None:
        environ = os.environ
    value = environ.get(env_var)
    if value is None:
        raise RuntimeError(f"{env_var} is not set")
    try:
        port = int(value)
    except ValueError:
        raise RuntimeError(f"{env_var} is not a port number: {value!r}") from None
    if not 0 < port < 65536:
        raise RuntimeError(f"{env_var} is out of range: {port}")
    return port


def notify_from_env(env_var: str = PORT_ENV_VAR, host: str = LOOPBACK_HOST) -> int:
    """Signal readiness to the port named by ``env_var``.

    Returns:
        The port that was notified.

    Raises:
        RuntimeError: If the port is missing or malformed.
        ConnectError: If no listener accepted the connection.
    """
    port = port_from_env(env_var)
    notify(port, host)
    return port


@dataclass
class LaunchedApp:
    """An application process paired with the listener it will signal."""

    process: subprocess.Popen
    listener: Listener
    port: int

    def wait_until_ready(self, timeout: Timeout) -> WaitResult:
        """Block until the application signals readiness.

        Raises:
            WaitTimeoutError: If no signal arrives within ``timeout``.
        """
        return self.listener.expect(timeout)

    def is_running(self) -> bool:
        return self.process.poll() is None

    def stop(self) -> None:
        """Terminate the application, killing it if it ignores SIGTERM."""
        proc = self.process
        if proc.poll() is None:
            try:
                proc.send_signal(signal.SIGTERM)
            except OSError:
                pass
            try:
                proc.wait(timeout=SIGTERM_TIMEOUT)
            except subprocess.TimeoutExpired:
                print(f"Killing PID {proc.pid}")
                proc.kill()
                proc.wait()
        print(f"PID {proc.pid} exited with code {proc.returncode}")


def _with_port(cmd: Sequence[str], port: int) -> list[str]:
    return [arg.replace(PORT_PLACEHOLDER, str(port)) for arg in cmd]


@contextmanager
def launch_app(
    cmd: Sequence[str],
    env_var: str = PORT_ENV_VAR,
    env: Optional[Mapping[str, str]] = None,
    cwd: Optional[str] = None,
    host: str = LOOPBACK_HOST,
) -> Iterator[LaunchedApp]:
    """Start an application that will signal readiness to a fresh listener.

    Args:
        cmd: Command line. Occurrences of "{port}" are replaced by the port.
        env_var: Environment variable that carries the port to the child.
        env: Base environment for the child. Defaults to os.environ.
        cwd: Working directory for the child.
        host: Loopback address for the listener.

    Yields:
        LaunchedApp. The process is stopped and the listener closed on exit.
    """
    with Listener(host) as listener:
        port = listener.port
        child_env = dict(os.environ if env is None else env)
        child_env[env_var] = str(port)
        args = _with_port(cmd, port)

        print(f"Waiting for startup signal on {host}:{port}")
        proc = subprocess.Popen(args, cwd=cwd, env=child_env)
        print(f"Started {args[0]} with PID {proc.pid}")

        app = LaunchedApp(process=proc, listener=listener, port=port)
        try:
            yield app
        finally:
            app.stop()
