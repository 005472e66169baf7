"""
Marker framing for remote command transcripts.

A remote ``rails runner`` invocation prints banners, deprecation warnings and
whatever else the environment emits around the snippet's own output. Each
invocation is bracketed by a single-use marker so the real output can be cut
out of the transcript afterwards.
"""

import re
import secrets
from typing import Optional, Pattern

from ssh_rails_runner.config import MARKER_PREFIX, MARKER_SUFFIX, NIL_TOKEN
from ssh_rails_runner.utils import log_error, shell_quote

MARKER_PATTERN = re.compile(re.escape(MARKER_PREFIX) + r"[a-z0-9]+" + re.escape(MARKER_SUFFIX))

_INSPECT_ESCAPE = re.compile(r'\\(["\\])')


def new_marker() -> str:
    return f"{MARKER_PREFIX}{secrets.token_hex(12)}{MARKER_SUFFIX}"


def frame_command(
    working_dir: str,
    marker: str,
    remote_path: str,
    runner_command: str,
    rails_env: Optional[str] = None,
) -> str:
    runner = runner_command
    if rails_env:
        runner = f"RAILS_ENV={rails_env} {runner_command}"
    return (
        f"cd {shell_quote(working_dir)} && echo {shell_quote(marker)} && "
        f"{runner} {shell_quote(remote_path)} && echo {shell_quote(marker)}"
    )


def normalize_inspect(text: str) -> str:
    """Undo the runtime's string inspect rendering and map ``nil`` to an empty string."""
    if len(text) >= 2 and text.startswith('"') and text.endswith('"'):
        return _INSPECT_ESCAPE.sub(r"\1", text[1:-1])
    if text == NIL_TOKEN:
        return ""
    return text


def extract_output(transcript: str, pattern: Pattern[str] = MARKER_PATTERN) -> str:
    """
    Return what the snippet printed between the first and the last marker.

    Fewer than two markers means the transcript is not shaped as expected; the
    whole trimmed transcript is returned instead of failing.
    """
    raw = (transcript or "").strip()
    try:
        matches = list(pattern.finditer(transcript or ""))
        if len(matches) < 2:
            log_error(f"output markers not found ({len(matches)} seen), returning raw transcript")
            return raw
        start = matches[0].end()
        end = matches[-1].start()
        output = transcript[start:end].strip()
        return normalize_inspect(output)
    except Exception as exc:
        log_error(f"output extraction failed, returning raw transcript: {exc}")
        return raw
