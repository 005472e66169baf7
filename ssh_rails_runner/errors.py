"""
Error taxonomy for the SSH Rails runner.

Every error carries a short ``kind`` tag that the tool layer reports back to
the calling agent next to the human readable message.
"""

from typing import Optional


class RunnerError(Exception):
    """Base class for runner errors."""

    kind = "runner_error"


class SessionConnectionError(RunnerError, ConnectionError):
    """Raised when authentication fails, the host is unreachable or the working directory is missing."""

    kind = "connection_error"


class RemoteExecutionError(RunnerError):
    """Raised when the remote command exits non-zero or times out."""

    kind = "remote_execution_error"

    def __init__(
        self,
        message: str,
        exit_status: Optional[int] = None,
        stdout: str = "",
        stderr: str = "",
        timed_out: bool = False,
    ):
        self.exit_status = exit_status
        self.stdout = stdout
        self.stderr = stderr
        self.timed_out = timed_out
        details = [message]
        if stderr:
            details.append(f"STDERR: {stderr}")
        if stdout:
            details.append(f"STDOUT: {stdout}")
        super().__init__("\n".join(details))


class IntentMismatchError(RunnerError):
    """Raised when a snippet is sent down the execution path of the other intent."""

    kind = "intent_mismatch"

    def __init__(self, snippet_id: str, intent: str, requested: str):
        self.snippet_id = snippet_id
        self.intent = intent
        self.requested = requested
        super().__init__(
            f"Cannot execute: snippet \"{snippet_id}\" is marked as '{intent}', not '{requested}'. "
            f"Use the matching execution tool or prepare a new '{requested}' snippet."
        )


class SnippetStoreError(RunnerError):
    """Base class for snippet storage errors."""

    kind = "snippet_store_error"

    def __init__(self, message: str, snippet_id: Optional[str] = None, path: Optional[str] = None):
        self.snippet_id = snippet_id
        self.path = path
        super().__init__(message)


class DuplicateSnippetError(SnippetStoreError):
    kind = "duplicate_snippet"


class SnippetNotFoundError(SnippetStoreError):
    kind = "not_found"


class CorruptSnippetError(SnippetStoreError):
    kind = "corrupt_snippet"


class InvalidSnippetError(SnippetStoreError):
    kind = "invalid_snippet"
