import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ssh_rails_runner.config import SERVER_NAME, SERVER_VERSION
from ssh_rails_runner.errors import RunnerError, SnippetNotFoundError
from ssh_rails_runner.gate import (
    MUTATION_CONFIRMATION, ExecutionGate, MutationAdvisor,
)
from ssh_rails_runner.snippets import Intent, SnippetStore
from ssh_rails_runner.ssh import SessionManager
from ssh_rails_runner.utils import log_error

INSTRUCTIONS = """Prepare and run Ruby code against a remote Rails application over SSH.

1. get_all_code_snippets: check whether a snippet that answers the request already exists.
2. get_code_snippet: read a promising snippet's code and metadata before reusing it.
3. prepare_code_snippet: otherwise save new code under a unique name, declaring it 'readOnly' or 'mutate'.
4. Execute by uri:
   - execute_code_snippet_read_only for 'readOnly' snippets. The read-only check is advisory; the code runs as written.
   - execute_code_snippet_mutate for 'mutate' snippets. FIRST show the code to the user and get explicit approval.
   - dry_run_mutate prepares a 'mutate' snippet together with a read-only preview query and grades the risk before approval.

Use 'puts' in the Ruby code to see values in the output. Every execution is its own process; variables do not carry over."""


@dataclass
class ToolContext:
    store: SnippetStore
    sessions: SessionManager
    gate: ExecutionGate
    advisor: MutationAdvisor
    project_context: Optional[str] = None


def build_context(store: SnippetStore, sessions: SessionManager, project_context: Optional[str] = None) -> ToolContext:
    return ToolContext(
        store=store,
        sessions=sessions,
        gate=ExecutionGate(sessions.ensure_session),
        advisor=MutationAdvisor(sessions.ensure_session),
        project_context=project_context,
    )


def _failure(exc: RunnerError, prefix: str = "") -> Dict[str, Any]:
    message = f"{prefix}{exc}" if prefix else str(exc)
    return {"success": False, "error": message, "error_kind": exc.kind}


def project_tool_result(tool_name: str, result: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(result, dict):
        return {"success": False, "error": {"kind": "internal_error", "message": "tool returned non-object result"}}

    if not result.get("success", False):
        projected = {
            "success": False,
            "error": {
                "kind": result.get("error_kind", "internal_error"),
                "message": result.get("error", "unknown error"),
            },
        }
        if "snippet_id" in result:
            projected["snippet_id"] = result["snippet_id"]
        return projected

    projected = {"message": result.get("message", "OK")}
    if tool_name in {"execute_code_snippet_read_only", "execute_code_snippet_mutate"}:
        projected["output"] = result.get("output", "")
        if "read_only_check" in result:
            projected["read_only_check"] = result["read_only_check"]
    elif tool_name == "get_all_code_snippets":
        projected["snippets"] = result.get("snippets", [])
    elif tool_name == "get_code_snippet":
        projected["snippet"] = result.get("snippet", {})
        projected["code"] = result.get("code", "")
    elif tool_name == "dry_run_mutate":
        projected["analysis"] = result.get("analysis", {})

    if "snippet_id" in result:
        projected["snippet_id"] = result["snippet_id"]
    if "uri" in result:
        projected["uri"] = result["uri"]
    if "next_step" in result:
        projected["next_step"] = result["next_step"]
    return projected


def format_tool_result(result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    text = json.dumps(result, ensure_ascii=False, separators=(",", ":"))
    formatted = {"content": [{"type": "text", "text": text}]}
    if is_error:
        formatted["isError"] = True
        formatted["error"] = result.get("error")
    return formatted


def make_response(req_id: Any, result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": format_tool_result(result, is_error)}


def _with_context(description: str, project_context: Optional[str]) -> str:
    if project_context:
        return f"{description} - used for the project: {project_context}"
    return description


def tools_list(project_context: Optional[str] = None) -> Dict[str, Any]:
    uri_param = {
        "type": "string",
        "description": "The file URI of a prepared snippet (e.g. 'file:///tmp/.../code_snippet_find_users.rb').",
    }
    tools = [
        {
            "name": "get_all_code_snippets",
            "description": _with_context(
                "Run this BEFORE prepare_code_snippet to see whether an existing snippet already fits. "
                "Returns every stored snippet with its uri, intent and description.",
                project_context,
            ),
            "inputSchema": {"type": "object", "properties": {}},
        },
        {
            "name": "get_code_snippet",
            "description": _with_context(
                "Returns a snippet's code and metadata so you can confirm it does what you expect.",
                project_context,
            ),
            "inputSchema": {
                "type": "object",
                "properties": {"uri": uri_param},
                "required": ["uri"],
            },
        },
        {
            "name": "prepare_code_snippet",
            "description": _with_context(
                "Saves Ruby code as a named local snippet for review before execution. "
                "Declare whether it is 'readOnly' or 'mutate'; the declaration cannot be changed later.",
                project_context,
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "name": {
                        "type": "string",
                        "description": "Unique descriptive name (e.g. 'find_active_users'). Used for the filename.",
                    },
                    "type": {
                        "type": "string",
                        "enum": [intent.value for intent in Intent],
                        "description": "Whether the snippet only reads data or mutates it.",
                    },
                    "code": {"type": "string", "description": "The Ruby code to run with rails runner."},
                    "description": {"type": "string", "description": "Optional description of the snippet."},
                },
                "required": ["name", "type", "code"],
            },
        },
        {
            "name": "execute_code_snippet_read_only",
            "description": _with_context(
                "Executes a prepared 'readOnly' snippet. Refuses 'mutate' snippets. "
                "The read-only keyword check is advisory and does not sandbox the code.",
                project_context,
            ),
            "inputSchema": {
                "type": "object",
                "properties": {"uri": uri_param},
                "required": ["uri"],
            },
        },
        {
            "name": "execute_code_snippet_mutate",
            "description": _with_context(
                "DANGEROUS. Executes a prepared 'mutate' snippet directly, with no dry run. "
                "Only call after the user has reviewed the code and explicitly approved it.",
                project_context,
            ),
            "inputSchema": {
                "type": "object",
                "properties": {"uri": uri_param},
                "required": ["uri"],
            },
        },
        {
            "name": "dry_run_mutate",
            "description": _with_context(
                "Prepares a 'mutate' snippet without running it, runs a read-only preview query instead "
                "and grades the mutation as valid, warning or invalid.",
                project_context,
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "name": {"type": "string", "description": "Unique name for the mutate snippet."},
                    "mutate_code": {
                        "type": "string",
                        "description": "The Ruby code that performs the mutation (it is NOT executed).",
                    },
                    "dry_run_code": {
                        "type": "string",
                        "description": (
                            "Read-only equivalent that shows what would change, e.g. the same .where "
                            "clause with .count or .pluck instead of .update_all."
                        ),
                    },
                    "description": {"type": "string", "description": "What the mutation is meant to do."},
                },
                "required": ["name", "mutate_code", "dry_run_code"],
            },
        },
    ]
    return {"jsonrpc": "2.0", "id": 1, "result": {"tools": tools}}


def get_all_dispatch(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    snippets = ctx.store.list()
    return {
        "success": True,
        "message": f"{len(snippets)} code snippet(s) available",
        "snippets": [snippet.summary() for snippet in snippets.values()],
    }


def get_one_dispatch(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    uri = args.get("uri", "") or ""
    try:
        snippet = ctx.store.resolve(uri)
    except RunnerError as exc:
        return _failure(exc, "Failed to read code snippet: ")
    return {
        "success": True,
        "message": f"Code snippet {snippet.id}",
        "snippet_id": snippet.id,
        "uri": snippet.uri,
        "snippet": {
            "id": snippet.id,
            "name": snippet.name,
            "intent": snippet.intent.value,
            "description": snippet.description,
            "createdAt": snippet.created_at.isoformat(timespec="milliseconds"),
        },
        "code": snippet.code,
    }


def prepare_dispatch(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    try:
        snippet_id, path = ctx.store.create(
            name=args.get("name", "") or "",
            code=args.get("code", "") or "",
            intent=args.get("type", args.get("intent")),
            description=args.get("description"),
        )
    except RunnerError as exc:
        return _failure(exc, "Failed to prepare code snippet: ")
    return {
        "success": True,
        "message": f"Code snippet prepared successfully. Saved as \"{snippet_id}\".",
        "snippet_id": snippet_id,
        "uri": f"file://{path}",
    }


def execute_read_only_dispatch(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    snippet_id = None
    try:
        snippet = ctx.store.resolve(args.get("uri", "") or "")
        snippet_id = snippet.id
        executed = ctx.gate.execute_read_only(snippet)
    except RunnerError as exc:
        result = _failure(exc, "Failed to execute read-only code snippet: ")
        if snippet_id:
            result["snippet_id"] = snippet_id
        return result
    return {
        "success": True,
        "message": (
            f"Read-only code snippet \"{executed.snippet_id}\" executed successfully. "
            "Use 'puts' in the snippet to see output here."
        ),
        "snippet_id": executed.snippet_id,
        "output": executed.output,
        "read_only_check": executed.read_only_check.to_dict(),
    }


def execute_mutate_dispatch(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    snippet_id = None
    try:
        snippet = ctx.store.resolve(args.get("uri", "") or "")
        snippet_id = snippet.id
        executed = ctx.gate.execute_mutating(snippet)
    except RunnerError as exc:
        result = _failure(exc, "Failed to execute mutation code snippet: ")
        if snippet_id:
            result["snippet_id"] = snippet_id
        return result
    return {
        "success": True,
        "message": f"Mutation code snippet \"{executed.snippet_id}\" executed successfully.",
        "snippet_id": executed.snippet_id,
        "output": executed.output,
    }


def dry_run_mutate_dispatch(args: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    mutate_code = args.get("mutate_code", "") or ""
    dry_run_code = args.get("dry_run_code", "") or ""
    if not dry_run_code.strip():
        return {"success": False, "error": "dry_run_code is required", "error_kind": "invalid_snippet"}
    try:
        snippet_id, path = ctx.store.create(
            name=args.get("name", "") or "",
            code=mutate_code,
            intent=Intent.MUTATE,
            description=args.get("description"),
        )
        analysis = ctx.advisor.analyze(mutate_code, dry_run_code)
    except RunnerError as exc:
        return _failure(exc, "Failed to analyze mutation: ")
    return {
        "success": True,
        "message": f"Mutation analysis complete for snippet \"{snippet_id}\". The mutation was NOT executed.",
        "snippet_id": snippet_id,
        "uri": f"file://{path}",
        "analysis": {
            "validation_status": analysis.status,
            "potential_risks": analysis.risks,
            "dry_run_output": analysis.preview_output,
        },
        "next_step": (
            "Show the user the mutate code, the dry run code and this analysis. "
            f"{MUTATION_CONFIRMATION} Then call execute_code_snippet_mutate with the uri."
        ),
    }


TOOL_DISPATCH = {
    "get_all_code_snippets": get_all_dispatch,
    "get_code_snippet": get_one_dispatch,
    "prepare_code_snippet": prepare_dispatch,
    "execute_code_snippet_read_only": execute_read_only_dispatch,
    "execute_code_snippet_mutate": execute_mutate_dispatch,
    "dry_run_mutate": dry_run_mutate_dispatch,
}


def resources_list(ctx: ToolContext) -> Dict[str, Any]:
    resources = []
    for snippet in ctx.store.list().values():
        summary = snippet.summary()
        summary["mimeType"] = "text/x-ruby"
        resources.append(summary)
    return {"resources": resources}


def resources_read(req_id: Any, params: Dict[str, Any], ctx: ToolContext) -> Dict[str, Any]:
    uri = params.get("uri", "") or ""
    try:
        snippet = ctx.store.resolve(uri)
    except SnippetNotFoundError:
        return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32002, "message": f"Resource not found: {uri}"}}
    except RunnerError as exc:
        return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32603, "message": f"Failed to read resource: {exc}"}}
    return {
        "jsonrpc": "2.0", "id": req_id,
        "result": {"contents": [{"uri": uri, "mimeType": "text/x-ruby", "text": snippet.code}]},
    }


def handle_request(request: Dict[str, Any], ctx: ToolContext) -> Optional[Dict[str, Any]]:
    method = request.get("method")
    params = request.get("params", {}) or {}
    req_id = request.get("id", 1)

    if method == "initialize":
        try:
            ctx.sessions.ensure_session()
        except RunnerError as exc:
            log_error(f"initial connection failed, will retry on first execution: {exc}")
        return {
            "jsonrpc": "2.0", "id": req_id,
            "result": {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}, "resources": {}},
                "serverInfo": {"name": SERVER_NAME, "version": SERVER_VERSION},
                "instructions": INSTRUCTIONS,
            },
        }

    if method == "notifications/initialized":
        return None
    if method == "tools/list":
        response = tools_list(ctx.project_context)
        response["id"] = req_id
        return response
    if method == "resources/list":
        return {"jsonrpc": "2.0", "id": req_id, "result": resources_list(ctx)}
    if method == "resources/read":
        return resources_read(req_id, params, ctx)

    if method == "tools/call":
        tool_name = params.get("name")
        args = params.get("arguments", {}) or {}
        handler = TOOL_DISPATCH.get(tool_name)
        if handler is None:
            return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown tool: {tool_name}"}}
        try:
            result = handler(args, ctx)
        except Exception as exc:
            log_error(f"tool execution error ({tool_name}): {exc}")
            result = {"success": False, "error": str(exc), "error_kind": "internal_error"}
        projected = project_tool_result(tool_name=str(tool_name), result=result)
        return make_response(req_id, projected, is_error=not result.get("success", False))

    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown method: {method}"}}
