"""Supervision of the local forked node process for chain-deployments library."""

import logging
import os
import signal
import socket
import subprocess
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol

from .constants import (
    FORKED_NODE_START_TIMEOUT,
    LOCAL_HOST,
    NODE_BINARY,
    NODE_START_TIMEOUT,
    NODE_STOP_TIMEOUT,
)
from .exceptions import NodeUnavailableError
from .rpc import RPCClient

logger = logging.getLogger(__name__)


@dataclass
class NodeSpec:
    """How to launch one node."""

    network: str
    port: int
    pid_file: Path
    log_file: Path
    fork_url: str = ""  # upstream RPC; empty starts a plain local chain
    host: str = LOCAL_HOST

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"


class NodeSupervisor(Protocol):
    """Starts, checks and stops disposable node processes."""

    def start(self, spec: NodeSpec) -> int:
        """Start a node and block until it answers RPC. Returns its pid."""
        ...

    def is_alive(self, pid: int) -> bool:
        ...

    def stop(self, pid: int, pid_file: Optional[Path] = None) -> None:
        """Stop a node; a process that is already gone is not an error."""
        ...

    def read_logs(self, log_file: Path, lines: int = 50) -> str:
        ...


def find_free_port(host: str = LOCAL_HOST) -> int:
    """Ask the OS for an unused TCP port."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind((host, 0))
        return sock.getsockname()[1]


def read_pid_file(pid_file: Path) -> Optional[int]:
    try:
        return int(Path(pid_file).read_text().strip())
    except (FileNotFoundError, ValueError):
        return None


class AnvilSupervisor:
    """NodeSupervisor backed by a detached anvil process."""

    def __init__(self, binary: str = NODE_BINARY, extra_args: Optional[list[str]] = None):
        self.binary = binary
        self.extra_args = extra_args or []

    def build_command(self, spec: NodeSpec) -> list[str]:
        command = [self.binary, "--host", spec.host, "--port", str(spec.port)]
        if spec.fork_url:
            command += ["--fork-url", spec.fork_url]
        return command + self.extra_args

    def start(self, spec: NodeSpec) -> int:
        """
        Launch anvil and wait until it answers eth_blockNumber.

        Output goes to spec.log_file and the pid to spec.pid_file. If the
        node doesn't become ready in time it is killed.

        Raises:
            NodeUnavailableError: If the binary is missing, exits early, or
                                  never becomes ready
        """
        spec.log_file.parent.mkdir(parents=True, exist_ok=True)
        command = self.build_command(spec)
        logger.info("Starting %s for %s on port %d", self.binary, spec.network, spec.port)
        logger.debug("Command: %s", " ".join(command))

        try:
            with open(spec.log_file, "w") as log:
                process = subprocess.Popen(
                    command,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                    stdin=subprocess.DEVNULL,
                    start_new_session=True,
                )
        except FileNotFoundError as e:
            raise NodeUnavailableError(f"{self.binary} not found on PATH") from e

        spec.pid_file.write_text(f"{process.pid}\n")

        timeout = FORKED_NODE_START_TIMEOUT if spec.fork_url else NODE_START_TIMEOUT
        client = RPCClient(spec.url, timeout=1)
        deadline = time.monotonic() + timeout

        while time.monotonic() < deadline:
            if process.poll() is not None:
                spec.pid_file.unlink(missing_ok=True)
                raise NodeUnavailableError(
                    f"{self.binary} exited with code {process.returncode}:\n"
                    f"{self.read_logs(spec.log_file)}"
                )
            if client.is_healthy():
                logger.info("Node for %s ready at %s (pid %d)", spec.network, spec.url, process.pid)
                return process.pid
            time.sleep(0.2)

        self.stop(process.pid, spec.pid_file)
        raise NodeUnavailableError(
            f"{self.binary} for {spec.network} not ready after {timeout}s:\n"
            f"{self.read_logs(spec.log_file)}"
        )

    def is_alive(self, pid: int) -> bool:
        if pid <= 0:
            return False

        # Reap our own exited child so it doesn't linger as a zombie
        try:
            reaped, _ = os.waitpid(pid, os.WNOHANG)
            if reaped == pid:
                return False
        except ChildProcessError:
            pass

        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            return True
        return True

    def stop(self, pid: int, pid_file: Optional[Path] = None) -> None:
        """Send SIGTERM, then SIGKILL after NODE_STOP_TIMEOUT."""
        if self.is_alive(pid):
            try:
                os.kill(pid, signal.SIGTERM)
                deadline = time.monotonic() + NODE_STOP_TIMEOUT
                while self.is_alive(pid) and time.monotonic() < deadline:
                    time.sleep(0.1)
                if self.is_alive(pid):
                    logger.warning("Node pid %d ignored SIGTERM, killing", pid)
                    os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
            logger.info("Stopped node pid %d", pid)
        else:
            logger.debug("Node pid %d already stopped", pid)

        if pid_file is not None:
            Path(pid_file).unlink(missing_ok=True)

    def read_logs(self, log_file: Path, lines: int = 50) -> str:
        """Last lines of a node's log, or "" if there is none."""
        try:
            with open(log_file, errors="replace") as f:
                return "".join(deque(f, maxlen=lines))
        except FileNotFoundError:
            return ""
