"""
File-backed snippet store.

A snippet is one ``.rb`` file: a small block of ``# MCP Meta: key=value``
comment lines, an end marker, a blank line, and then the code exactly as it
was submitted. The files are the only source of truth; nothing is cached.
"""

import os
import re
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple
from urllib.parse import unquote, urlparse

from ssh_rails_runner.config import (
    META_END_MARKER, META_PREFIX, SNIPPET_EXTENSION, SNIPPET_ID_PREFIX,
)
from ssh_rails_runner.errors import (
    CorruptSnippetError, DuplicateSnippetError, InvalidSnippetError, SnippetNotFoundError,
)
from ssh_rails_runner.utils import log_error, utc_now_ms

REQUIRED_FIELDS = ("id", "name", "intent", "createdAt")
_ID_RE = re.compile(re.escape(SNIPPET_ID_PREFIX) + r"[A-Za-z0-9_-]+$")


class Intent(str, Enum):
    READ_ONLY = "readOnly"
    MUTATE = "mutate"

    @classmethod
    def parse(cls, value) -> "Intent":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip()
        for intent in cls:
            if intent.value.lower() == text.lower():
                return intent
        raise ValueError(f"intent must be one of: {', '.join(i.value for i in cls)} (got '{text}')")


@dataclass(frozen=True)
class Snippet:
    id: str
    name: str
    code: str
    intent: Intent
    description: str
    created_at: datetime
    path: str

    @property
    def uri(self) -> str:
        return f"file://{self.path}"

    def summary(self) -> Dict[str, str]:
        return {
            "uri": self.uri,
            "name": f"CodeSnippet: {self.name} ({self.intent.value})",
            "description": self.description,
        }


def sanitize_name(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9_-]", "_", name) or "unnamed"


def snippet_id_for(name: str) -> str:
    return f"{SNIPPET_ID_PREFIX}{sanitize_name(name)}"


def render_snippet(snippet_id: str, name: str, intent: Intent, created_at: datetime,
                   description: str, code: str) -> str:
    header = [
        f"{META_PREFIX}id={snippet_id}",
        f"{META_PREFIX}name={name}",
        f"{META_PREFIX}intent={intent.value}",
        f"{META_PREFIX}createdAt={created_at.isoformat(timespec='milliseconds')}",
        f"{META_PREFIX}description={description}",
        META_END_MARKER,
        "",
    ]
    return "\n".join(header) + "\n" + code


def parse_snippet(content: str, path: str) -> Snippet:
    lines = content.split("\n")
    metadata: Dict[str, str] = {}
    code_start = len(lines)

    for index, raw_line in enumerate(lines):
        line = raw_line.rstrip("\r")
        if line.startswith(META_PREFIX):
            key, sep, value = line[len(META_PREFIX):].partition("=")
            key = key.strip()
            if sep and key:
                # legacy files call the intent "type"
                if key == "type":
                    key = "intent"
                metadata.setdefault(key, value)
            continue
        if line.startswith(META_END_MARKER):
            code_start = index + 1
            if code_start < len(lines) and lines[code_start].rstrip("\r") == "":
                code_start += 1
            break
        if line.strip() and not line.strip().startswith("#"):
            code_start = index
            break

    snippet_id = metadata.get("id")
    missing = [field for field in REQUIRED_FIELDS if not metadata.get(field)]
    if missing:
        raise CorruptSnippetError(
            f"Missing or invalid metadata ({', '.join(missing)}) in snippet file: {path}",
            snippet_id=snippet_id, path=path,
        )

    try:
        intent = Intent.parse(metadata["intent"])
        created_at = datetime.fromisoformat(metadata["createdAt"].replace("Z", "+00:00"))
    except ValueError as exc:
        raise CorruptSnippetError(
            f"Invalid metadata in snippet file {path}: {exc}", snippet_id=snippet_id, path=path
        ) from exc

    return Snippet(
        id=metadata["id"],
        name=metadata["name"],
        code="\n".join(lines[code_start:]),
        intent=intent,
        description=metadata.get("description", ""),
        created_at=created_at,
        path=path,
    )


class SnippetStore:
    """Snippets persisted as individual files under ``root``."""

    def __init__(self, root: str, extension: str = SNIPPET_EXTENSION):
        self.root = os.path.abspath(os.path.expanduser(root))
        self.extension = extension
        try:
            os.makedirs(self.root, exist_ok=True)
        except OSError as exc:
            log_error(f"Failed to create code snippet directory {self.root}: {exc}")

    def path_for(self, snippet_id: str) -> str:
        return os.path.join(self.root, f"{snippet_id}{self.extension}")

    def create(
        self,
        name: str,
        code: str,
        intent,
        description: Optional[str] = None,
    ) -> Tuple[str, str]:
        name = name or ""
        if not name.strip():
            raise InvalidSnippetError("Snippet name is required")
        if "\n" in name or "\r" in name:
            raise InvalidSnippetError("Snippet name must be a single line")
        if not code:
            raise InvalidSnippetError("Snippet code is required")
        try:
            intent = Intent.parse(intent)
        except ValueError as exc:
            raise InvalidSnippetError(str(exc)) from exc

        snippet_id = snippet_id_for(name)
        path = self.path_for(snippet_id)
        created_at = utc_now_ms()
        if not description or not description.strip():
            description = f"CodeSnippet prepared on {created_at.isoformat(timespec='milliseconds')}"
        if "\n" in description or "\r" in description:
            raise InvalidSnippetError("Snippet description must be a single line", snippet_id=snippet_id)

        content = render_snippet(snippet_id, name, intent, created_at, description, code)
        os.makedirs(self.root, exist_ok=True)
        try:
            # "x" refuses to touch an existing file
            with open(path, "x", encoding="utf-8", newline="") as handle:
                handle.write(content)
        except FileExistsError as exc:
            raise DuplicateSnippetError(
                f'CodeSnippet name "{name}" already exists as {os.path.basename(path)}. '
                "Please choose a different name or delete the existing file.",
                snippet_id=snippet_id, path=path,
            ) from exc
        except OSError as exc:
            raise InvalidSnippetError(
                f"Failed to save snippet file {path}: {exc}", snippet_id=snippet_id, path=path
            ) from exc
        return snippet_id, path

    def get(self, snippet_id: str) -> Snippet:
        if not snippet_id or not _ID_RE.match(snippet_id):
            raise SnippetNotFoundError(f"Invalid snippet ID format: {snippet_id}", snippet_id=snippet_id)
        path = self.path_for(snippet_id)
        try:
            with open(path, "r", encoding="utf-8", newline="") as handle:
                content = handle.read()
        except FileNotFoundError as exc:
            raise SnippetNotFoundError(
                f"Snippet file not found for ID {snippet_id}", snippet_id=snippet_id, path=path
            ) from exc
        except (OSError, UnicodeDecodeError) as exc:
            raise CorruptSnippetError(
                f"Failed to read snippet {snippet_id}: {exc}", snippet_id=snippet_id, path=path
            ) from exc
        return parse_snippet(content, path)

    def resolve(self, location: str) -> Snippet:
        """Look a snippet up by ``file://`` URI, file path or bare id."""
        location = (location or "").strip()
        if location.startswith("file://"):
            path = unquote(urlparse(location).path)
        else:
            path = location
        snippet_id = os.path.basename(path)
        if snippet_id.endswith(self.extension):
            snippet_id = snippet_id[: -len(self.extension)]
        snippet = self.get(snippet_id)
        if os.path.dirname(path) and os.path.abspath(path) != snippet.path:
            log_error(f"Provided location {location} does not match snippet path {snippet.path}. Using snippet path.")
        return snippet

    def list(self) -> Dict[str, Snippet]:
        snippets: Dict[str, Snippet] = {}
        try:
            files: List[str] = sorted(os.listdir(self.root))
        except FileNotFoundError:
            log_error(f"Snippet directory not found: {self.root}")
            return snippets
        for filename in files:
            if not (filename.startswith(SNIPPET_ID_PREFIX) and filename.endswith(self.extension)):
                continue
            snippet_id = filename[: -len(self.extension)]
            try:
                snippets[snippet_id] = self.get(snippet_id)
            except (CorruptSnippetError, SnippetNotFoundError) as exc:
                log_error(f"Skipping invalid or unreadable snippet file: {filename}. Error: {exc}")
        return snippets
