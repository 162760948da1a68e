# fleet_engine/remote/transport.py
"""Remote shell, file transfer and socket forwarding over the system ssh and rsync binaries."""

import logging
import os
import shlex
import shutil
import socket
import subprocess
import tempfile
import time
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional, Sequence

from fleet_engine.core.errors import RemoteCommandFailure, TransferError, TransportFailure

logger = logging.getLogger(__name__)

# ssh exits with 255 when the connection itself failed.
SSH_CONNECT_FAILED = 255

FORWARD_POLL_INTERVAL = 0.05


class SSHTransport:
    """
    Runs commands on and copies files to worker nodes.

    Every call carries an explicit timeout. Connection faults raise
    TransportFailure; non-zero remote exits raise RemoteCommandFailure.
    """

    def __init__(
        self,
        user: str,
        connect_timeout: int = 10,
        command_timeout: int = 600,
        transfer_timeout: int = 1800,
        options: Sequence[str] = (),
    ):
        self.user = user
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.transfer_timeout = transfer_timeout
        self._options = tuple(options)

    def target(self, address: str) -> str:
        return f"{self.user}@{address}"

    def _ssh_options(self, connect_timeout: Optional[int] = None) -> list:
        # In BatchMode, execution fails if interactive input is required.
        return [
            "-oBatchMode=yes",
            f"-oConnectTimeout={connect_timeout or self.connect_timeout}",
            *self._options,
        ]

    # ============================================
    # COMMANDS
    # ============================================

    def run(
        self,
        address: str,
        command: str,
        *,
        timeout: Optional[float] = None,
        stdin: Optional[bytes] = None,
        check: bool = True,
    ) -> subprocess.CompletedProcess:
        """
        Execute a shell command on a node.

        Raises:
            TransportFailure: unreachable node or ssh timeout
            RemoteCommandFailure: command exited non-zero (when check=True)
        """
        argv = ["ssh", *self._ssh_options(), self.target(address), command]
        result = self._exec(argv, timeout or self.command_timeout, stdin=stdin)

        if result.returncode == SSH_CONNECT_FAILED:
            raise TransportFailure(
                f"ssh {self.target(address)}: {_last_line(result.stderr) or 'connection failed'}"
            )
        if check and result.returncode != 0:
            raise RemoteCommandFailure(
                f"{self.target(address)}: {command!r} exited {result.returncode}: "
                f"{_last_line(result.stderr)}",
                returncode=result.returncode,
                output=_decode(result.stderr),
            )
        return result

    def probe(self, address: str, timeout: int = 2) -> bool:
        """Bounded reachability check (ssh ... exit)."""
        argv = ["ssh", *self._ssh_options(connect_timeout=timeout), self.target(address), "exit"]
        try:
            result = self._exec(argv, timeout + 1)
        except TransportFailure as e:
            logger.debug(f"[transport] probe {address}: {e}")
            return False
        return result.returncode == 0

    def write_file(self, address: str, remote_path: str, data: bytes, *, mode: Optional[str] = None) -> None:
        """Full overwrite of a remote file: stream to a temp name, then rename."""
        quoted = shlex.quote(remote_path) if not remote_path.startswith("~/") else _home_path(remote_path)
        tmp = f"{quoted}.tmp.$$"
        command = f"mkdir -p \"$(dirname {quoted})\" && cat > {tmp}"
        if mode:
            command += f" && chmod {shlex.quote(mode)} {tmp}"
        command += f" && mv -f {tmp} {quoted}"
        try:
            self.run(address, command, stdin=data, timeout=self.command_timeout)
        except RemoteCommandFailure as e:
            raise TransferError(f"write {remote_path} on {address}: {e}") from e

    def sync_tree(
        self,
        local_dir: os.PathLike,
        address: str,
        remote_dir: str,
        excludes: Iterable[str] = (),
    ) -> None:
        """Mirror a directory tree with rsync (trailing slashes: copy contents)."""
        ssh_command = shlex.join(["ssh", *self._ssh_options()])
        argv = ["rsync", "-az", "-e", ssh_command]
        for pattern in excludes:
            argv += ["--exclude", pattern]
        argv += [f"{str(local_dir).rstrip('/')}/", f"{self.target(address)}:{remote_dir.rstrip('/')}/"]

        result = self._exec(argv, self.transfer_timeout)
        if result.returncode != 0:
            raise TransferError(
                f"rsync {local_dir} -> {address}:{remote_dir} failed ({result.returncode}): "
                f"{_last_line(result.stderr)}"
            )

    @contextmanager
    def forward_socket(self, address: str, remote_socket: str, *, timeout: float) -> Iterator[str]:
        """
        Forward a remote unix socket to a private local one for the duration.

        The local socket must appear within timeout; the ssh process is
        terminated on exit.

        Raises:
            TransportFailure: ssh failed, or the forward was not up in time
        """
        workdir = tempfile.mkdtemp(prefix="fleet-fwd-")
        local_socket = os.path.join(workdir, "remote.sock")
        argv = [
            "ssh", "-nNT",
            *self._ssh_options(connect_timeout=max(1, int(timeout))),
            "-oExitOnForwardFailure=yes",
            "-L", f"{local_socket}:{remote_socket}",
            self.target(address),
        ]
        _log(argv)
        try:
            process = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as e:
            shutil.rmtree(workdir, ignore_errors=True)
            raise TransportFailure("ssh not installed") from e

        try:
            self._await_socket(process, address, local_socket, timeout)
            yield local_socket
        finally:
            _terminate(process)
            shutil.rmtree(workdir, ignore_errors=True)

    def _await_socket(self, process: subprocess.Popen, address: str, path: str, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        while not os.path.exists(path):
            if process.poll() is not None:
                raise TransportFailure(
                    f"ssh {self.target(address)}: {_last_line(process.stderr.read()) or 'forward failed'}"
                )
            if time.monotonic() >= deadline:
                raise TransportFailure(f"ssh {self.target(address)}: no forward within {timeout:g}s")
            time.sleep(FORWARD_POLL_INTERVAL)

    # ============================================
    # PROCESS
    # ============================================

    def _exec(self, argv: list, timeout: float, stdin: Optional[bytes] = None) -> subprocess.CompletedProcess:
        _log(argv)
        try:
            return subprocess.run(
                argv,
                input=stdin,
                # It may hang waiting for input when no input is actually needed.
                stdin=None if stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            raise TransportFailure(f"{argv[0]} timed out after {timeout}s") from e
        except FileNotFoundError as e:
            raise TransportFailure(f"{argv[0]} not installed") from e


def detect_master_address() -> str:
    """Primary IPv4 address of this machine (what `hostname -I` lists first)."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # No packet is sent; connect() on UDP only selects a route.
        sock.connect(("10.255.255.255", 1))
        return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"
    finally:
        sock.close()


def _home_path(path: str) -> str:
    return "~/" + shlex.quote(path[2:])


def _decode(data) -> str:
    if not data:
        return ""
    if isinstance(data, bytes):
        return data.decode(errors="replace")
    return str(data)


def _last_line(data) -> str:
    lines = _decode(data).strip().splitlines()
    return lines[-1] if lines else ""


def _log(command):
    command = [str(arg) if isinstance(arg, os.PathLike) else arg for arg in command]
    logger.debug("Run: %s", shlex.join(command))


def _terminate(process: subprocess.Popen) -> None:
    if process.poll() is None:
        process.terminate()
        try:
            process.wait(timeout=2)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()
    if process.stderr:
        process.stderr.close()
