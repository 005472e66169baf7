import io
import os
import time
import base64
import socket
import secrets
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, Optional, Tuple
import paramiko

from ssh_rails_runner.config import (
    CONNECT_TIMEOUT, KEEPALIVE_INTERVAL, CLEANUP_TIMEOUT, BUFFER_SIZE, POLL_INTERVAL, DEFAULT_EXEC_TIMEOUT,
    MAX_EXEC_TIMEOUT, DEFAULT_RAILS_ENV, DEFAULT_RUNNER_COMMAND, DEFAULT_REMOTE_TMP_DIR,
    ServerConfig,
)
from ssh_rails_runner.errors import RemoteExecutionError, SessionConnectionError
from ssh_rails_runner.framing import extract_output, frame_command, new_marker
from ssh_rails_runner.utils import (
    log_error, clamp_float, iso_now, json_line, safe_name, shell_quote
)

DISCONNECTED = "disconnected"
CONNECTED = "connected"


class RemoteSession:
    """
    One authenticated SSH connection scoped to a single working directory.

    The only capability it exposes is running a payload of code to completion
    through the remote runner and handing back the transcript. Payloads run
    one at a time; the session lock is held until the temporary remote file
    has been cleaned up.
    """

    def __init__(
        self,
        session_id: int,
        name: str = "",
        sessions_dir: str = "",
        project_tag: str = "",
        client_factory: Callable[[], Any] = paramiko.SSHClient,
        runner_command: str = DEFAULT_RUNNER_COMMAND,
        rails_env: Optional[str] = DEFAULT_RAILS_ENV,
        remote_tmp_dir: str = DEFAULT_REMOTE_TMP_DIR,
        exec_timeout: float = DEFAULT_EXEC_TIMEOUT,
    ):
        self.id = session_id
        self.name = name
        self.project_tag = project_tag
        self.client_factory = client_factory
        self.runner_command = runner_command
        self.rails_env = rails_env
        self.remote_tmp_dir = remote_tmp_dir.rstrip("/") or "/"
        self.exec_timeout = clamp_float(exec_timeout, DEFAULT_EXEC_TIMEOUT, 0.0, MAX_EXEC_TIMEOUT)

        self.client: Optional[paramiko.SSHClient] = None
        self.state = DISCONNECTED
        self.closed = False
        self.host: Optional[str] = None
        self.username: Optional[str] = None
        self.working_dir: Optional[str] = None

        self.run_counter = 1
        self.lock = threading.Lock()

        self.session_log_path = self._build_session_log_path(sessions_dir)
        self._log_session("SYS", {"event": "session_created", "name": self.name})

    def _build_session_log_path(self, sessions_dir: str) -> str:
        if not sessions_dir:
            return ""
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        filename = f"{self.project_tag}__s{self.id}__{safe_name(self.name)}__{stamp}.log"
        return os.path.join(sessions_dir, filename)

    def _log_session(self, direction: str, payload: Dict[str, Any]) -> None:
        data = {"ts": iso_now(), "dir": direction, "session_id": self.id}
        data.update(payload)
        json_line(self.session_log_path, data)

    @property
    def connected(self) -> bool:
        return self.state == CONNECTED

    def connect(
        self,
        host: str,
        username: str,
        working_dir: str,
        key_path: Optional[str] = None,
        password: Optional[str] = None,
        port: int = 22,
        passphrase: Optional[str] = None,
        verify_host_key: bool = True,
    ) -> None:
        if self.connected:
            raise SessionConnectionError(f"Session {self.id} is already connected to {self.host}")
        if self.closed:
            raise SessionConnectionError(f"Session {self.id} was disconnected; open a new session")
        if not key_path and not password:
            raise SessionConnectionError("Either a private key path or a password is required")

        client = None
        try:
            client = self.client_factory()
            if verify_host_key:
                client.load_system_host_keys()
            else:
                client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

            connect_kwargs = {
                "hostname": host,
                "port": port,
                "username": username,
                "timeout": CONNECT_TIMEOUT,
                "allow_agent": True,
                "look_for_keys": True,
            }
            if password:
                connect_kwargs["password"] = password
            if key_path:
                connect_kwargs["key_filename"] = os.path.expanduser(key_path)
                if passphrase:
                    connect_kwargs["passphrase"] = passphrase

            client.connect(**connect_kwargs)

            transport = client.get_transport()
            if transport:
                transport.set_keepalive(KEEPALIVE_INTERVAL)

            _, out, _ = self._exec_on(
                client, f"test -d {shell_quote(working_dir)} && echo exists", CONNECT_TIMEOUT
            )
            if "exists" not in out:
                raise SessionConnectionError(
                    f"Working directory '{working_dir}' does not exist on {host}"
                )
        except SessionConnectionError as exc:
            self._close_client(client)
            self._log_session("SYS", {"event": "connect_failed", "host": host, "error": str(exc)})
            raise
        except Exception as exc:
            self._close_client(client)
            self._log_session("SYS", {"event": "connect_failed", "host": host, "error": str(exc)})
            raise SessionConnectionError(f"Failed to connect to {username}@{host}:{port}: {exc}") from exc

        self.client = client
        self.host = host
        self.username = username
        self.working_dir = working_dir
        self.state = CONNECTED
        self._log_session(
            "SYS",
            {"event": "connected", "host": host, "port": port, "user": username, "working_dir": working_dir},
        )

    def is_alive(self) -> bool:
        if not self.connected or not self.client:
            return False
        try:
            transport = self.client.get_transport()
            return bool(transport and transport.is_active())
        except Exception:
            return False

    @staticmethod
    def _exec_on(client: Any, command: str, timeout: float) -> Tuple[int, str, str]:
        """
        Run ``command`` and collect both streams until the exit status arrives.

        stdout and stderr share one channel window, so they are drained side by
        side; reading one to EOF first can stall the remote process.
        """
        _, stdout, _ = client.exec_command(command, timeout=timeout or None)
        channel = stdout.channel
        deadline = time.time() + timeout if timeout else None
        out_chunks = []
        err_chunks = []

        while True:
            has_progress = False
            if channel.recv_ready():
                data = channel.recv(BUFFER_SIZE)
                if data:
                    out_chunks.append(data)
                    has_progress = True
            if channel.recv_stderr_ready():
                err_data = channel.recv_stderr(BUFFER_SIZE)
                if err_data:
                    err_chunks.append(err_data)
                    has_progress = True
            if channel.exit_status_ready() and not channel.recv_ready() and not channel.recv_stderr_ready():
                break
            if deadline is not None and time.time() > deadline:
                raise socket.timeout(f"no exit status after {timeout:g}s")
            if not has_progress:
                time.sleep(POLL_INTERVAL)

        exit_status = channel.recv_exit_status()
        out = b"".join(out_chunks).decode("utf-8", errors="replace")
        err = b"".join(err_chunks).decode("utf-8", errors="replace")
        return exit_status, out, err

    def _exec(self, command: str, timeout: float) -> Tuple[int, str, str]:
        if not self.client:
            raise SessionConnectionError(f"Session {self.id} is not connected")
        return self._exec_on(self.client, command, timeout)

    def _require_connected(self) -> None:
        if not self.connected:
            raise SessionConnectionError(f"Session {self.id} is not connected to the remote host")

    def open_sftp(self) -> Optional[paramiko.SFTPClient]:
        if not self.client:
            return None
        try:
            return self.client.open_sftp()
        except Exception as exc:
            self._log_session("SYS", {"event": "sftp_open_failed", "error": str(exc)})
            return None

    def _temp_path(self) -> str:
        stamp = f"{int(time.time() * 1000)}_{secrets.token_hex(6)}"
        return f"{self.remote_tmp_dir}/runner_{stamp}.rb"

    def _upload(self, remote_path: str, code: str) -> None:
        data = code.encode("utf-8")
        sftp = self.open_sftp()
        if sftp is not None:
            try:
                sftp.putfo(io.BytesIO(data), remote_path)
                return
            except Exception as exc:
                log_error(f"sftp upload failed, fallback shell: {exc}")
            finally:
                try:
                    sftp.close()
                except Exception:
                    pass

        encoded = base64.b64encode(data).decode("ascii")
        exit_status, _, err = self._exec(
            f"printf '%s' '{encoded}' | base64 -d > {shell_quote(remote_path)}", CLEANUP_TIMEOUT
        )
        if exit_status != 0:
            raise RemoteExecutionError(
                f"Failed to write payload to {remote_path}", exit_status=exit_status, stderr=err
            )

    def _cleanup(self, remote_path: str) -> None:
        try:
            exit_status, _, err = self._exec(f"rm -f {shell_quote(remote_path)}", CLEANUP_TIMEOUT)
            if exit_status != 0:
                log_error(f"Failed to clean up remote file {remote_path}: {err.strip()}")
                self._log_session("SYS", {"event": "cleanup_failed", "path": remote_path, "error": err})
        except Exception as exc:
            log_error(f"Failed to clean up remote file {remote_path}: {exc}")
            self._log_session("SYS", {"event": "cleanup_failed", "path": remote_path, "error": str(exc)})

    @contextmanager
    def remote_artifact(self, code: str) -> Iterator[str]:
        """Upload ``code`` to a uniquely named temp file, removing it on every exit path."""
        remote_path = self._temp_path()
        try:
            self._upload(remote_path, code)
            yield remote_path
        finally:
            self._cleanup(remote_path)

    def run_payload(self, code: str) -> str:
        """Run ``code`` through the remote runner and return the raw, marker-framed transcript."""
        self._require_connected()
        with self.lock:
            run_id = self.run_counter
            self.run_counter += 1
            marker = new_marker()
            started = time.time()

            with self.remote_artifact(code) as remote_path:
                command = frame_command(
                    self.working_dir, marker, remote_path, self.runner_command, self.rails_env
                )
                self._log_session("IN", {"event": "run_start", "run_id": run_id, "command": command})
                try:
                    exit_status, out, err = self._exec(command, self.exec_timeout)
                except socket.timeout as exc:
                    self._log_session("SYS", {"event": "run_timeout", "run_id": run_id})
                    raise RemoteExecutionError(
                        f"Remote command timed out after {self.exec_timeout:g}s", timed_out=True
                    ) from exc
                except paramiko.SSHException as exc:
                    self._log_session("SYS", {"event": "run_error", "run_id": run_id, "error": str(exc)})
                    raise RemoteExecutionError(f"Failed during remote execution: {exc}") from exc

            self._log_session(
                "OUT",
                {
                    "event": "run_finished",
                    "run_id": run_id,
                    "exit_status": exit_status,
                    "duration": round(time.time() - started, 3),
                    "stdout": out,
                    "stderr": err,
                },
            )

        if exit_status != 0:
            raise RemoteExecutionError(
                f"Command failed with exit code {exit_status}.",
                exit_status=exit_status, stdout=out, stderr=err,
            )
        return out

    def execute(self, code: str) -> str:
        return extract_output(self.run_payload(code))

    def _close_client(self, client: Any) -> None:
        try:
            if client:
                client.close()
        except Exception:
            pass

    def disconnect(self) -> None:
        if not self.connected and self.client is None:
            return
        self._close_client(self.client)
        self.client = None
        self.state = DISCONNECTED
        self.closed = True
        self._log_session("SYS", {"event": "disconnected"})


class SessionManager:
    """Holds the live session and opens a fresh one when it has gone away."""

    def __init__(
        self,
        cfg: ServerConfig,
        client_factory: Callable[[], Any] = paramiko.SSHClient,
    ):
        self.cfg = cfg
        self.client_factory = client_factory
        self.session: Optional[RemoteSession] = None
        self.next_session_id = 1
        self.lock = threading.Lock()

    def open_session(self) -> RemoteSession:
        sid = self.next_session_id
        self.next_session_id += 1
        session = RemoteSession(
            sid,
            name=self.cfg.SSH_HOST or "",
            sessions_dir=self.cfg.CACHE_DIRS.get("sessions_dir", ""),
            project_tag=self.cfg.PROJECT_TAG,
            client_factory=self.client_factory,
            runner_command=self.cfg.RUNNER_COMMAND,
            rails_env=self.cfg.RAILS_ENV,
            remote_tmp_dir=self.cfg.REMOTE_TMP_DIR,
            exec_timeout=self.cfg.EXEC_TIMEOUT,
        )
        session.connect(
            host=self.cfg.SSH_HOST,
            username=self.cfg.SSH_USER,
            working_dir=self.cfg.RAILS_WORKING_DIR,
            key_path=self.cfg.SSH_KEY_PATH,
            password=self.cfg.SSH_PASSWORD,
            port=self.cfg.SSH_PORT,
            passphrase=self.cfg.SSH_KEY_PASSPHRASE,
            verify_host_key=self.cfg.SSH_VERIFY_HOST_KEY,
        )
        log_error(f"session {sid} connected to {self.cfg.SSH_HOST} (working dir {self.cfg.RAILS_WORKING_DIR})")
        return session

    def ensure_session(self) -> RemoteSession:
        with self.lock:
            if self.session is not None and self.session.is_alive():
                return self.session
            if self.session is not None:
                log_error(f"session {self.session.id} is no longer alive, reconnecting")
                self.session.disconnect()
                self.session = None
            self.session = self.open_session()
            return self.session

    def close(self) -> None:
        with self.lock:
            if self.session is not None:
                self.session.disconnect()
                self.session = None
