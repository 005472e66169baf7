"""Tests for RemoteSession and SessionManager over a fake paramiko client."""

import base64
import json
import socket

import paramiko
import pytest

from ssh_rails_runner.errors import RemoteExecutionError, SessionConnectionError
from ssh_rails_runner.framing import MARKER_PATTERN
from ssh_rails_runner.ssh import CONNECTED, DISCONNECTED, RemoteSession, SessionManager


class TestConnect:
    def test_connect_checks_working_directory(self, fake_client, session):
        assert session.state == CONNECTED
        assert session.working_dir == "/app"
        assert fake_client.commands == ['test -d "/app" && echo exists']
        assert fake_client.connect_kwargs["hostname"] == "app.example.com"
        assert fake_client.connect_kwargs["username"] == "deploy"
        assert fake_client.connect_kwargs["key_filename"].endswith(".ssh/id_ed25519")
        assert fake_client.transport.keepalive is not None

    def test_missing_working_directory(self, make_client, connect_session):
        client = make_client(existing_dirs=())
        with pytest.raises(SessionConnectionError) as excinfo:
            connect_session(client, working_dir="/app")
        assert "/app" in str(excinfo.value)
        assert client.closed

    def test_missing_working_directory_leaves_session_disconnected(self, make_client):
        client = make_client(existing_dirs=("/srv",))
        session = RemoteSession(1, client_factory=lambda: client)
        with pytest.raises(SessionConnectionError):
            session.connect("app.example.com", "deploy", "/app", password="secret")
        assert session.state == DISCONNECTED
        assert session.client is None

    def test_authentication_failure_is_wrapped(self, make_client):
        client = make_client(connect_error=paramiko.AuthenticationException("Authentication failed."))
        session = RemoteSession(1, client_factory=lambda: client)
        with pytest.raises(SessionConnectionError) as excinfo:
            session.connect("app.example.com", "deploy", "/app", password="wrong")
        assert isinstance(excinfo.value, ConnectionError)
        assert isinstance(excinfo.value.__cause__, paramiko.AuthenticationException)
        assert session.state == DISCONNECTED

    def test_unreachable_host(self, make_client):
        client = make_client(connect_error=socket.gaierror("Name or service not known"))
        session = RemoteSession(1, client_factory=lambda: client)
        with pytest.raises(SessionConnectionError):
            session.connect("nowhere.invalid", "deploy", "/app", key_path="/k")
        assert not session.connected

    def test_credential_required(self, fake_client):
        session = RemoteSession(1, client_factory=lambda: fake_client)
        with pytest.raises(SessionConnectionError):
            session.connect("app.example.com", "deploy", "/app")
        assert fake_client.commands == []

    def test_host_key_policy_when_not_verifying(self, fake_client):
        session = RemoteSession(1, client_factory=lambda: fake_client)
        session.connect("app.example.com", "deploy", "/app", password="pw", verify_host_key=False)
        assert isinstance(fake_client.policy, paramiko.AutoAddPolicy)
        assert fake_client.connect_kwargs["password"] == "pw"

    def test_disconnect_is_idempotent(self, fake_client, session):
        session.disconnect()
        session.disconnect()
        assert session.state == DISCONNECTED
        assert fake_client.closed

    def test_disconnected_session_cannot_reconnect(self, session):
        session.disconnect()
        with pytest.raises(SessionConnectionError):
            session.connect("app.example.com", "deploy", "/app", password="pw")

    def test_session_log_records_events(self, session):
        with open(session.session_log_path, encoding="utf-8") as handle:
            events = [json.loads(line)["event"] for line in handle]
        assert events == ["session_created", "connected"]


class TestRunPayload:
    def test_transcript_is_bracketed_by_one_marker(self, fake_client, session, transcript):
        fake_client.responder = transcript("42")

        raw = session.run_payload("puts User.count")

        markers = MARKER_PATTERN.findall(raw)
        assert len(markers) == 2 and markers[0] == markers[1]
        run_command = fake_client.run_commands[0]
        assert run_command.startswith('cd "/app" && echo "===RAILS_OUTPUT_DELIMITER_')
        assert "RAILS_ENV=production bundle exec rails runner" in run_command
        assert markers[0] in run_command

    def test_payload_uploaded_to_unique_temp_file(self, fake_client, session, transcript):
        fake_client.responder = transcript("ok")

        session.run_payload("puts 1")
        session.run_payload("puts 2")

        paths = list(fake_client.files)
        assert len(paths) == 2 and paths[0] != paths[1]
        assert all(p.startswith("/tmp/runner_") and p.endswith(".rb") for p in paths)
        assert list(fake_client.files.values()) == ["puts 1", "puts 2"]
        assert f'"{paths[0]}"' in fake_client.run_commands[0]

    def test_each_run_uses_a_fresh_marker(self, fake_client, session, transcript):
        fake_client.responder = transcript("ok")
        session.run_payload("puts 1")
        session.run_payload("puts 1")
        first, second = (MARKER_PATTERN.search(c).group(0) for c in fake_client.run_commands)
        assert first != second

    def test_cleanup_after_success(self, fake_client, session, transcript):
        fake_client.responder = transcript("ok")
        session.run_payload("puts 1")
        path = next(iter(fake_client.files))
        assert fake_client.cleanup_commands == [f'rm -f "{path}"']
        assert fake_client.commands[-1] == f'rm -f "{path}"'

    def test_nonzero_exit_raises_with_stderr_and_still_cleans_up(self, fake_client, session, transcript):
        stack_trace = "NameError: uninitialized constant Usr\n  from runner.rb:1"
        fake_client.responder = transcript("", exit_status=1, stderr=stack_trace)

        with pytest.raises(RemoteExecutionError) as excinfo:
            session.run_payload("puts Usr.count")

        assert excinfo.value.exit_status == 1
        assert excinfo.value.stderr == stack_trace
        assert stack_trace in str(excinfo.value)
        assert len(fake_client.cleanup_commands) == 1

    def test_timeout_raises_and_cleans_up(self, fake_client, session):
        def hang(command):
            raise socket.timeout()

        fake_client.responder = hang
        with pytest.raises(RemoteExecutionError) as excinfo:
            session.run_payload("sleep 1000")
        assert excinfo.value.timed_out
        assert len(fake_client.cleanup_commands) == 1

    def test_large_stderr_is_drained_alongside_stdout(self, fake_client, session, make_channel):
        noise = b"W, [deprecated] Rails.application.secrets is deprecated\n" * 60000

        def respond(command):
            marker = MARKER_PATTERN.search(command).group(0).encode("ascii")
            return make_channel(0, [("out", marker + b"\n"), ("err", noise), ("out", b"42\n" + marker + b"\n")])

        fake_client.responder = respond
        assert session.execute("puts User.count") == "42"

    def test_large_stderr_is_kept_on_failure(self, fake_client, session, make_channel):
        trace = b"app/models/user.rb:12:in `block in <class:User>'\n" * 60000
        fake_client.responder = lambda command: make_channel(1, [("err", trace), ("out", b"partial\n")])

        with pytest.raises(RemoteExecutionError) as excinfo:
            session.run_payload("raise 'boom'")

        assert len(excinfo.value.stderr) == len(trace)
        assert excinfo.value.stdout == "partial\n"

    def test_silent_command_times_out_at_deadline(self, fake_client, session, make_channel):
        fake_client.responder = lambda command: make_channel(None, hang=True)
        session.exec_timeout = 0.05

        with pytest.raises(RemoteExecutionError) as excinfo:
            session.run_payload("sleep 1000")

        assert excinfo.value.timed_out
        assert len(fake_client.cleanup_commands) == 1

    def test_cleanup_failure_does_not_mask_result(self, fake_client, session, transcript):
        fake_client.responder = transcript("42")
        fake_client.cleanup_result = paramiko.SSHException("channel closed")
        assert session.execute("puts User.count") == "42"

    def test_cleanup_failure_does_not_mask_error(self, fake_client, session, transcript):
        fake_client.responder = transcript("", exit_status=2, stderr="boom")
        fake_client.cleanup_result = (1, "", "rm: cannot remove: Permission denied")
        with pytest.raises(RemoteExecutionError) as excinfo:
            session.run_payload("raise 'boom'")
        assert excinfo.value.stderr == "boom"

    def test_shell_upload_fallback_without_sftp(self, make_client, connect_session):
        uploads = []

        def respond(command):
            if command.startswith("printf"):
                uploads.append(command)
                return 0, "", ""
            marker = MARKER_PATTERN.search(command).group(0)
            return 0, f"{marker}\nfine\n{marker}\n", ""

        client = make_client(responder=respond, sftp_available=False)
        session = connect_session(client)

        assert session.execute("puts 'fine'") == "fine"
        encoded = base64.b64encode(b"puts 'fine'").decode("ascii")
        assert encoded in uploads[0]
        assert "| base64 -d > \"/tmp/runner_" in uploads[0]

    def test_run_requires_connection(self, fake_client):
        session = RemoteSession(1, client_factory=lambda: fake_client)
        with pytest.raises(SessionConnectionError):
            session.run_payload("puts 1")
        assert fake_client.commands == []


class TestEndToEnd:
    def test_count_users(self, fake_client, session, transcript):
        fake_client.responder = transcript("42")
        assert session.execute("puts User.count") == "42"

    def test_inspected_string_output(self, fake_client, session, transcript):
        fake_client.responder = transcript('"5"')
        assert session.execute("p User.count.to_s") == "5"

    def test_nil_output(self, fake_client, session, transcript):
        fake_client.responder = transcript("nil")
        assert session.execute("p nil") == ""


class TestSessionManager:
    def test_connects_lazily_and_reuses_session(self, server_config, make_client):
        clients = []

        def factory():
            clients.append(make_client())
            return clients[-1]

        manager = SessionManager(server_config, client_factory=factory)
        assert clients == []

        first = manager.ensure_session()
        second = manager.ensure_session()
        assert first is second
        assert len(clients) == 1
        assert first.working_dir == "/app"

    def test_reconnects_when_transport_dies(self, server_config, make_client):
        clients = []

        def factory():
            clients.append(make_client())
            return clients[-1]

        manager = SessionManager(server_config, client_factory=factory)
        first = manager.ensure_session()
        clients[0].closed = True

        second = manager.ensure_session()
        assert second is not first
        assert second.id == first.id + 1
        assert first.state == DISCONNECTED

    def test_connection_failure_surfaces(self, server_config, make_client):
        manager = SessionManager(server_config, client_factory=lambda: make_client(existing_dirs=()))
        with pytest.raises(SessionConnectionError):
            manager.ensure_session()
        assert manager.session is None

    def test_close(self, server_config, make_client):
        manager = SessionManager(server_config, client_factory=lambda: make_client())
        session = manager.ensure_session()
        manager.close()
        assert session.state == DISCONNECTED
        assert manager.session is None

