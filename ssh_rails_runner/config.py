import os
import tempfile
from typing import Optional, Dict

from dotenv import find_dotenv, load_dotenv

from ssh_rails_runner.utils import to_bool

# ========= Static config =========
CONNECT_TIMEOUT = 10
KEEPALIVE_INTERVAL = 30
DEFAULT_EXEC_TIMEOUT = 300.0
MAX_EXEC_TIMEOUT = 3600.0
CLEANUP_TIMEOUT = 15.0
BUFFER_SIZE = 32768
POLL_INTERVAL = 0.02

DEFAULT_RAILS_ENV = "production"
DEFAULT_RUNNER_COMMAND = "bundle exec rails runner"
DEFAULT_REMOTE_TMP_DIR = "/tmp"
DEFAULT_SNIPPET_DIR = os.path.join(tempfile.gettempdir(), "mcp-ssh-rails-runner-code-snippets")

# ========= Snippet file format =========
SNIPPET_ID_PREFIX = "code_snippet_"
SNIPPET_EXTENSION = ".rb"
META_PREFIX = "# MCP Meta: "
META_END_MARKER = "# --- End MCP Meta ---"

# ========= Output framing =========
MARKER_PREFIX = "===RAILS_OUTPUT_DELIMITER_"
MARKER_SUFFIX = "==="
NIL_TOKEN = "nil"

SERVER_NAME = "ssh-rails-runner"
SERVER_VERSION = "0.3.0"


# ========= Runtime Configuration =========
class ServerConfig:
    def __init__(self):
        self.SSH_HOST: Optional[str] = None
        self.SSH_USER: Optional[str] = None
        self.SSH_PASSWORD: Optional[str] = None
        self.SSH_PORT: int = 22
        self.SSH_KEY_PATH: Optional[str] = None
        self.SSH_KEY_PASSPHRASE: Optional[str] = None
        self.SSH_VERIFY_HOST_KEY: bool = True
        self.RAILS_WORKING_DIR: Optional[str] = None
        self.RAILS_ENV: str = DEFAULT_RAILS_ENV
        self.RUNNER_COMMAND: str = DEFAULT_RUNNER_COMMAND
        self.REMOTE_TMP_DIR: str = DEFAULT_REMOTE_TMP_DIR
        self.EXEC_TIMEOUT: float = DEFAULT_EXEC_TIMEOUT
        self.CODE_SNIPPET_FILE_DIRECTORY: str = DEFAULT_SNIPPET_DIR
        self.PROJECT_NAME_AS_CONTEXT: Optional[str] = None
        self.PROJECT_TAG: str = ""
        self.CACHE_DIRS: Dict[str, str] = {}

    def load_from_env(self, dotenv_path: Optional[str] = None):
        # .env values never override variables already set in the environment
        load_dotenv(dotenv_path or find_dotenv(usecwd=True))

        self.SSH_HOST = os.environ.get("SSH_HOST", self.SSH_HOST)
        self.SSH_USER = os.environ.get("SSH_USER", self.SSH_USER)
        self.SSH_PASSWORD = os.environ.get("SSH_PASSWORD", self.SSH_PASSWORD)
        self.SSH_PORT = int(os.environ.get("SSH_PORT", self.SSH_PORT))
        self.SSH_KEY_PATH = (
            os.environ.get("SSH_PRIVATE_KEY_PATH")
            or os.environ.get("SSH_KEY_PATH")
            or self.SSH_KEY_PATH
        )
        self.SSH_KEY_PASSPHRASE = os.environ.get("SSH_KEY_PASSPHRASE", self.SSH_KEY_PASSPHRASE)

        verify_host_env = os.environ.get("SSH_VERIFY_HOST_KEY")
        if verify_host_env is not None:
            self.SSH_VERIFY_HOST_KEY = to_bool(verify_host_env, self.SSH_VERIFY_HOST_KEY)

        self.RAILS_WORKING_DIR = os.environ.get("RAILS_WORKING_DIR", self.RAILS_WORKING_DIR)
        self.RAILS_ENV = os.environ.get("RAILS_ENV", self.RAILS_ENV)
        self.RUNNER_COMMAND = os.environ.get("RUNNER_COMMAND", self.RUNNER_COMMAND)
        self.REMOTE_TMP_DIR = os.environ.get("REMOTE_TMP_DIR", self.REMOTE_TMP_DIR)
        self.EXEC_TIMEOUT = float(os.environ.get("EXEC_TIMEOUT", self.EXEC_TIMEOUT))
        self.CODE_SNIPPET_FILE_DIRECTORY = os.environ.get(
            "CODE_SNIPPET_FILE_DIRECTORY", self.CODE_SNIPPET_FILE_DIRECTORY
        )
        self.PROJECT_NAME_AS_CONTEXT = os.environ.get(
            "PROJECT_NAME_AS_CONTEXT", self.PROJECT_NAME_AS_CONTEXT
        )

    def missing_fields(self):
        missing = []
        if not self.SSH_HOST:
            missing.append("SSH_HOST")
        if not self.SSH_USER:
            missing.append("SSH_USER")
        if not self.RAILS_WORKING_DIR:
            missing.append("RAILS_WORKING_DIR")
        if not self.SSH_PASSWORD and not self.SSH_KEY_PATH:
            missing.append("SSH_PRIVATE_KEY_PATH or SSH_PASSWORD")
        return missing


# Global instance
config = ServerConfig()
