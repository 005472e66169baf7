"""
Execution gate and mutation advisor.

The gate only lets a snippet run through the path that matches the intent it
was prepared with. The keyword classifiers here are advisory: snippets are
shipped as files and run by ``rails runner``, which executes whatever it is
given. Nothing in this module is a sandbox.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

from ssh_rails_runner.errors import IntentMismatchError
from ssh_rails_runner.snippets import Intent, Snippet
from ssh_rails_runner.utils import log_error

VALID = "valid"
WARNING = "warning"
INVALID = "invalid"

READ_ONLY_ADVISORY = (
    "The read-only check is advisory only: rails runner executes the snippet file "
    "unconditionally, so any mutation in the code WILL run."
)
MUTATION_CONFIRMATION = (
    "Mutating snippets must be reviewed and explicitly approved by a human before execution; "
    "approval is not verified by the runner."
)

_MUTATION_WORDS = re.compile(
    r"\b(?:update(?:_all|_column|_columns|_attribute|_attributes)?|delete(?:_all|_by)?|"
    r"destroy(?:_all|_by)?|save|create|insert(?:_all)?|upsert(?:_all)?|increment|decrement|"
    r"toggle|touch|alter|drop|truncate)!?(?!\w)",
    re.IGNORECASE,
)
_SCHEMA_DROP = re.compile(
    r"\bdrop[\s_]+(?:table|database|schema)\b|\btruncate\b|\bremove_column\b", re.IGNORECASE
)
_BULK_WRITE = re.compile(r"\b(?:delete_all|destroy_all|update_all)\b", re.IGNORECASE)
_DELETE = re.compile(r"\b(?:delete|destroy)", re.IGNORECASE)


@dataclass
class ReadOnlyCheck:
    read_only: bool
    matches: List[str] = field(default_factory=list)
    enforced: bool = False
    note: str = READ_ONLY_ADVISORY

    def to_dict(self):
        return {
            "read_only": self.read_only,
            "matches": list(self.matches),
            "enforced": self.enforced,
            "note": self.note,
        }


@dataclass
class MutationCheck:
    status: str
    risks: List[str] = field(default_factory=list)


def classify_read_only(code: str) -> ReadOnlyCheck:
    seen: List[str] = []
    for match in _MUTATION_WORDS.finditer(code or ""):
        word = match.group(0).lower()
        if word not in seen:
            seen.append(word)
    return ReadOnlyCheck(read_only=not seen, matches=seen)


def classify_mutation(code: str) -> MutationCheck:
    text = code or ""
    risks: List[str] = []
    drops_schema = bool(_SCHEMA_DROP.search(text))
    bulk_write = bool(_BULK_WRITE.search(text))
    if drops_schema:
        risks.append("Irreversible schema or table removal")
    if bulk_write:
        risks.append("Bulk write without per-record callbacks or conditions")
    if _DELETE.search(text):
        risks.append("Data deletion risk")

    if drops_schema:
        status = INVALID
    elif bulk_write:
        status = WARNING
    else:
        status = VALID
    return MutationCheck(status=status, risks=risks)


@dataclass
class ExecutionResult:
    snippet_id: str
    intent: Intent
    output: str
    read_only_check: Optional[ReadOnlyCheck] = None


@dataclass
class MutationAnalysis:
    status: str
    risks: List[str]
    preview_output: str


class ExecutionGate:
    """
    Route snippets to execution only along the path matching their intent.

    ``session_provider`` is called right before a remote run and must return a
    connected ``RemoteSession``; it is never called when the intent check fails.
    """

    def __init__(
        self,
        session_provider: Callable[[], Any],
        read_only_classifier: Callable[[str], ReadOnlyCheck] = classify_read_only,
    ):
        self.session_provider = session_provider
        self.read_only_classifier = read_only_classifier

    @staticmethod
    def _require_intent(snippet: Snippet, expected: Intent) -> None:
        if snippet.intent != expected:
            raise IntentMismatchError(snippet.id, snippet.intent.value, expected.value)

    def execute_read_only(self, snippet: Snippet) -> ExecutionResult:
        self._require_intent(snippet, Intent.READ_ONLY)
        check = self.read_only_classifier(snippet.code)
        if not check.read_only:
            log_error(
                f"read-only snippet {snippet.id} mentions mutation vocabulary "
                f"({', '.join(check.matches)}); running anyway, check is advisory"
            )
        output = self.session_provider().execute(snippet.code)
        return ExecutionResult(snippet.id, snippet.intent, output, read_only_check=check)

    def execute_mutating(self, snippet: Snippet) -> ExecutionResult:
        """Run a ``mutate`` snippet. The caller owns human confirmation."""
        self._require_intent(snippet, Intent.MUTATE)
        log_error(f"Executing MUTATION from snippet {snippet.id} ({snippet.path}). User confirmation is assumed.")
        output = self.session_provider().execute(snippet.code)
        return ExecutionResult(snippet.id, snippet.intent, output)


class MutationAdvisor:
    """Run a read-only preview of a mutation and grade the mutation itself by keyword scan."""

    def __init__(
        self,
        session_provider: Callable[[], Any],
        classifier: Callable[[str], MutationCheck] = classify_mutation,
    ):
        self.session_provider = session_provider
        self.classifier = classifier

    def analyze(self, mutating_code: str, preview_code: str) -> MutationAnalysis:
        check = self.classifier(mutating_code)
        preview_output = self.session_provider().execute(preview_code)
        return MutationAnalysis(status=check.status, risks=check.risks, preview_output=preview_output)
