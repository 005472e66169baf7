"""Shared fixtures: an in-memory stand-in for paramiko.SSHClient."""

import pytest

from ssh_rails_runner.config import ServerConfig
from ssh_rails_runner.framing import MARKER_PATTERN
from ssh_rails_runner.snippets import SnippetStore
from ssh_rails_runner.ssh import RemoteSession


class FakeChannel:
    """Delivers ``(stream, bytes)`` chunks strictly in order, like a flow-controlled channel."""

    def __init__(self, exit_status, chunks=(), hang=False):
        self.exit_status = exit_status
        self.chunks = [(stream, data) for stream, data in chunks if data]
        self.hang = hang

    def _next_is(self, stream):
        return bool(self.chunks) and self.chunks[0][0] == stream

    def _take(self, stream, size):
        if not self._next_is(stream):
            return b""
        _, data = self.chunks[0]
        piece, rest = data[:size], data[size:]
        if rest:
            self.chunks[0] = (stream, rest)
        else:
            self.chunks.pop(0)
        return piece

    def recv_ready(self):
        return self._next_is("out")

    def recv_stderr_ready(self):
        return self._next_is("err")

    def recv(self, size):
        return self._take("out", size)

    def recv_stderr(self, size):
        return self._take("err", size)

    def exit_status_ready(self):
        return not self.hang and not self.chunks

    def recv_exit_status(self):
        return self.exit_status


class FakeStream:
    def __init__(self, channel):
        self.channel = channel


class FakeTransport:
    def __init__(self, client):
        self.client = client
        self.keepalive = None

    def set_keepalive(self, interval):
        self.keepalive = interval

    def is_active(self):
        return not self.client.closed


class FakeSFTP:
    def __init__(self, client):
        self.client = client

    def putfo(self, handle, path):
        self.client.files[path] = handle.read().decode("utf-8")

    def close(self):
        pass


class FakeSSHClient:
    """Records every command and answers them from ``responder``."""

    def __init__(self, existing_dirs=("/app",), responder=None, sftp_available=True, connect_error=None):
        self.existing_dirs = existing_dirs
        self.responder = responder
        self.sftp_available = sftp_available
        self.connect_error = connect_error
        self.cleanup_result = (0, "", "")
        self.commands = []
        self.files = {}
        self.connect_kwargs = None
        self.closed = False
        self.transport = FakeTransport(self)

    def load_system_host_keys(self):
        pass

    def set_missing_host_key_policy(self, policy):
        self.policy = policy

    def connect(self, **kwargs):
        if self.connect_error is not None:
            raise self.connect_error
        self.connect_kwargs = kwargs

    def get_transport(self):
        return self.transport

    def open_sftp(self):
        if not self.sftp_available:
            raise IOError("sftp subsystem not available")
        return FakeSFTP(self)

    def exec_command(self, command, timeout=None):
        self.commands.append(command)
        response = self._respond(command)
        if isinstance(response, FakeChannel):
            channel = response
        else:
            exit_status, out, err = response
            channel = FakeChannel(exit_status, [("out", out.encode("utf-8")), ("err", err.encode("utf-8"))])
        return None, FakeStream(channel), FakeStream(channel)

    def _respond(self, command):
        if command.startswith("test -d"):
            for directory in self.existing_dirs:
                if f'"{directory}"' in command:
                    return 0, "exists\n", ""
            return 1, "", ""
        if command.startswith("rm -f"):
            if isinstance(self.cleanup_result, Exception):
                raise self.cleanup_result
            return self.cleanup_result
        if self.responder is not None:
            return self.responder(command)
        return 0, "", ""

    def close(self):
        self.closed = True

    @property
    def run_commands(self):
        return [c for c in self.commands if "rails runner" in c]

    @property
    def cleanup_commands(self):
        return [c for c in self.commands if c.startswith("rm -f")]


def rails_transcript(body, exit_status=0, stderr="", banner="Loading production environment (Rails 7.1.3)"):
    """Responder that wraps ``body`` in the marker embedded in the command."""

    def respond(command):
        marker = MARKER_PATTERN.search(command).group(0)
        if exit_status != 0:
            return exit_status, f"{marker}\n", stderr
        return 0, f"{banner}\n{marker}\n{body}\n{marker}\n", stderr

    return respond


@pytest.fixture
def fake_client():
    return FakeSSHClient()


@pytest.fixture
def connect_session(tmp_path):
    """Return a helper that connects a RemoteSession over the given fake client."""
    sessions_dir = tmp_path / "sessions"
    sessions_dir.mkdir()

    def _connect(client, working_dir="/app"):
        session = RemoteSession(
            1,
            name="app.example.com",
            sessions_dir=str(sessions_dir),
            project_tag="test",
            client_factory=lambda: client,
        )
        session.connect(
            host="app.example.com",
            username="deploy",
            working_dir=working_dir,
            key_path="~/.ssh/id_ed25519",
        )
        return session

    return _connect


@pytest.fixture
def session(fake_client, connect_session):
    return connect_session(fake_client)


@pytest.fixture
def store(tmp_path):
    return SnippetStore(str(tmp_path / "snippets"))


@pytest.fixture
def server_config(tmp_path):
    cfg = ServerConfig()
    cfg.SSH_HOST = "app.example.com"
    cfg.SSH_USER = "deploy"
    cfg.SSH_KEY_PATH = "~/.ssh/id_ed25519"
    cfg.RAILS_WORKING_DIR = "/app"
    cfg.CODE_SNIPPET_FILE_DIRECTORY = str(tmp_path / "snippets")
    cfg.PROJECT_TAG = "test"
    return cfg


@pytest.fixture
def make_client():
    return FakeSSHClient


@pytest.fixture
def transcript():
    return rails_transcript


@pytest.fixture
def make_channel():
    return FakeChannel
