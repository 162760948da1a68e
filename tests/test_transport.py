"""Test SSH transport command construction and error translation."""

import os
import subprocess

import pytest

from fleet_engine.core.errors import RemoteCommandFailure, TransferError, TransportFailure
from fleet_engine.remote.transport import SSHTransport


class FakeRun:
    """Stands in for subprocess.run; answers with a queued CompletedProcess."""

    def __init__(self, returncode=0, stdout=b"", stderr=b"", raises=None):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.raises = raises
        self.calls = []

    def __call__(self, argv, **kwargs):
        self.calls.append((argv, kwargs))
        if self.raises:
            raise self.raises
        return subprocess.CompletedProcess(argv, self.returncode, self.stdout, self.stderr)


@pytest.fixture
def transport():
    return SSHTransport("worker", connect_timeout=10, command_timeout=60, transfer_timeout=600)


def _patch(monkeypatch, fake):
    monkeypatch.setattr("fleet_engine.remote.transport.subprocess.run", fake)
    return fake


class TestRun:
    """Test remote command execution."""

    def test_batch_mode_and_timeout(self, transport, monkeypatch):
        fake = _patch(monkeypatch, FakeRun())

        transport.run("10.0.0.1", "mkdir -p ~/cdmap")

        argv, kwargs = fake.calls[0]
        assert argv[0] == "ssh"
        assert "-oBatchMode=yes" in argv
        assert "-oConnectTimeout=10" in argv
        assert argv[-2:] == ["worker@10.0.0.1", "mkdir -p ~/cdmap"]
        assert kwargs["timeout"] == 60

    def test_connect_failure(self, transport, monkeypatch):
        _patch(monkeypatch, FakeRun(returncode=255, stderr=b"ssh: connect to host 10.0.0.1 port 22: No route to host\n"))

        with pytest.raises(TransportFailure) as exc_info:
            transport.run("10.0.0.1", "true")

        assert "No route to host" in str(exc_info.value)

    def test_remote_failure(self, transport, monkeypatch):
        _patch(monkeypatch, FakeRun(returncode=2, stderr=b"docker-compose: not found\n"))

        with pytest.raises(RemoteCommandFailure) as exc_info:
            transport.run("10.0.0.1", "docker-compose up -d")

        assert exc_info.value.returncode == 2
        assert "not found" in exc_info.value.output

    def test_unchecked_failure_returns(self, transport, monkeypatch):
        _patch(monkeypatch, FakeRun(returncode=1))

        assert transport.run("10.0.0.1", "false", check=False).returncode == 1

    def test_timeout(self, transport, monkeypatch):
        _patch(monkeypatch, FakeRun(raises=subprocess.TimeoutExpired("ssh", 60)))

        with pytest.raises(TransportFailure):
            transport.run("10.0.0.1", "sleep 100")

    def test_probe(self, transport, monkeypatch):
        fake = _patch(monkeypatch, FakeRun())

        assert transport.probe("10.0.0.1", timeout=2)
        assert "-oConnectTimeout=2" in fake.calls[0][0]

    def test_probe_unreachable(self, transport, monkeypatch):
        _patch(monkeypatch, FakeRun(returncode=255))

        assert not transport.probe("10.0.0.1")

    def test_probe_timeout_is_false(self, transport, monkeypatch):
        _patch(monkeypatch, FakeRun(raises=subprocess.TimeoutExpired("ssh", 3)))

        assert not transport.probe("10.0.0.1")


class TestTransfer:
    """Test file writes and tree sync."""

    def test_write_file_is_atomic(self, transport, monkeypatch):
        fake = _patch(monkeypatch, FakeRun())

        transport.write_file("10.0.0.1", "~/cdmap/.env", b"A=1\n", mode="600")

        argv, kwargs = fake.calls[0]
        command = argv[-1]
        assert "cat > ~/cdmap/.env.tmp.$$" in command
        assert "chmod 600" in command
        assert command.endswith("mv -f ~/cdmap/.env.tmp.$$ ~/cdmap/.env")
        assert kwargs["input"] == b"A=1\n"

    def test_write_file_failure(self, transport, monkeypatch):
        _patch(monkeypatch, FakeRun(returncode=1, stderr=b"No space left on device\n"))

        with pytest.raises(TransferError):
            transport.write_file("10.0.0.1", "~/cdmap/.env", b"A=1\n")

    def test_sync_tree(self, transport, monkeypatch, tmp_path):
        fake = _patch(monkeypatch, FakeRun())

        transport.sync_tree(tmp_path, "10.0.0.1", "~/cdmap", excludes=("__pycache__", "*.pyc"))

        argv, kwargs = fake.calls[0]
        assert argv[:2] == ["rsync", "-az"]
        assert argv[argv.index("-e") + 1].startswith("ssh -oBatchMode=yes")
        assert argv.count("--exclude") == 2
        assert argv[-2:] == [f"{tmp_path}/", "worker@10.0.0.1:~/cdmap/"]
        assert kwargs["timeout"] == 600

    def test_sync_tree_failure(self, transport, monkeypatch, tmp_path):
        _patch(monkeypatch, FakeRun(returncode=12, stderr=b"rsync error: error in rsync protocol data stream\n"))

        with pytest.raises(TransferError) as exc_info:
            transport.sync_tree(tmp_path, "10.0.0.1", "~/cdmap")

        assert isinstance(exc_info.value, TransportFailure)

    def test_missing_binary(self, transport, monkeypatch, tmp_path):
        _patch(monkeypatch, FakeRun(raises=FileNotFoundError("rsync")))

        with pytest.raises(TransportFailure):
            transport.sync_tree(tmp_path, "10.0.0.1", "~/cdmap")


class TestForwardSocket:
    """Test unix socket forwarding lifecycle."""

    def test_forward_yields_local_socket_and_cleans_up(self, fake_ssh):
        fake_ssh(
            'while [ $# -gt 0 ]; do\n'
            '  if [ "$1" = "-L" ]; then touch "${2%%:*}"; fi\n'
            '  shift\n'
            'done\n'
            'exec sleep 30'
        )
        transport = SSHTransport("worker")

        with transport.forward_socket("10.0.0.1", "/var/run/docker.sock", timeout=2) as local_socket:
            assert os.path.exists(local_socket)

        assert not os.path.exists(os.path.dirname(local_socket))

    def test_ssh_missing(self, monkeypatch, tmp_path):
        monkeypatch.setenv("PATH", str(tmp_path))

        with pytest.raises(TransportFailure) as exc_info:
            with SSHTransport("worker").forward_socket("10.0.0.1", "/var/run/docker.sock", timeout=1):
                pass

        assert "not installed" in str(exc_info.value)
