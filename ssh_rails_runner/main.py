import sys
import io
import json
import argparse
from ssh_rails_runner.config import config
from ssh_rails_runner.server import build_context, handle_request
from ssh_rails_runner.snippets import SnippetStore
from ssh_rails_runner.ssh import SessionManager
from ssh_rails_runner.utils import (
    log_error, resolve_runtime_paths, make_cache_dirs
)


def _write_response(stdout, response: dict) -> None:
    """Write JSON-RPC response to stdout as UTF-8."""
    try:
        stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
        stdout.flush()
    except Exception as exc:
        log_error(f"response write error: {exc}")
        try:
            stdout.write(json.dumps(response, ensure_ascii=True) + "\n")
            stdout.flush()
        except Exception as exc2:
            log_error(f"response write fallback error: {exc2}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="SSH Rails runner MCP server (prepare snippets, then run them with rails runner over SSH)"
    )
    parser.add_argument("--host", help="SSH host (overrides SSH_HOST env)")
    parser.add_argument("--user", help="SSH username (overrides SSH_USER env)")
    parser.add_argument("--password", help="SSH password (overrides SSH_PASSWORD env)")
    parser.add_argument("--key", help="Path to SSH private key (overrides SSH_PRIVATE_KEY_PATH env)")
    parser.add_argument("--passphrase", help="Passphrase for SSH private key (overrides SSH_KEY_PASSPHRASE env)")
    parser.add_argument("--port", type=int, help="SSH port (overrides SSH_PORT env)")
    parser.add_argument("--verify-host", action="store_true", help="Verify SSH host key (default)")
    parser.add_argument("--no-verify-host", action="store_true", help="Disable SSH host key verification")
    parser.add_argument("--working-dir", help="Rails app directory on the remote host (overrides RAILS_WORKING_DIR env)")
    parser.add_argument("--rails-env", help="RAILS_ENV for rails runner (overrides RAILS_ENV env)")
    parser.add_argument("--runner", help="Remote runner command (overrides RUNNER_COMMAND env)")
    parser.add_argument("--exec-timeout", type=float, help="Seconds before a remote run is abandoned, 0 disables")
    parser.add_argument("--snippet-dir", help="Local snippet directory (overrides CODE_SNIPPET_FILE_DIRECTORY env)")
    parser.add_argument("--env-file", help="Path to a .env file to load")
    parser.add_argument("--project-root", help="Project root for local state")
    parser.add_argument("--cache-dir", help="Optional cache root override")
    return parser


def apply_args(args: argparse.Namespace) -> None:
    if args.host: config.SSH_HOST = args.host
    if args.user: config.SSH_USER = args.user
    if args.password: config.SSH_PASSWORD = args.password
    if args.key: config.SSH_KEY_PATH = args.key
    if args.passphrase: config.SSH_KEY_PASSPHRASE = args.passphrase
    if args.port: config.SSH_PORT = args.port
    if args.working_dir: config.RAILS_WORKING_DIR = args.working_dir
    if args.rails_env: config.RAILS_ENV = args.rails_env
    if args.runner: config.RUNNER_COMMAND = args.runner
    if args.exec_timeout is not None: config.EXEC_TIMEOUT = args.exec_timeout
    if args.snippet_dir: config.CODE_SNIPPET_FILE_DIRECTORY = args.snippet_dir

    if args.no_verify_host:
        config.SSH_VERIFY_HOST_KEY = False
    elif args.verify_host:
        config.SSH_VERIFY_HOST_KEY = True


def main(argv=None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    config.load_from_env(args.env_file)
    apply_args(args)

    missing = config.missing_fields()
    if missing:
        parser.error(f"missing required settings: {', '.join(missing)} (via args, env or .env)")

    runtime_paths = resolve_runtime_paths(project_root_arg=args.project_root, cache_dir_arg=args.cache_dir)
    config.PROJECT_TAG = runtime_paths["project_tag"]
    config.CACHE_DIRS = make_cache_dirs(runtime_paths["cache_root"])

    store = SnippetStore(config.CODE_SNIPPET_FILE_DIRECTORY)
    sessions = SessionManager(config)
    ctx = build_context(store, sessions, config.PROJECT_NAME_AS_CONTEXT)

    log_error(
        f"SSH Rails runner started for {config.SSH_USER}@{config.SSH_HOST}:{config.SSH_PORT}. "
        f"working_dir={config.RAILS_WORKING_DIR} snippets={store.root} "
        f"cache={config.CACHE_DIRS['cache_root']} verify_host={config.SSH_VERIFY_HOST_KEY}"
    )

    # Force UTF-8 I/O regardless of the platform's default encoding
    stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
    stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True)

    for line in stdin:
        line = line.strip()
        if not line:
            continue
        try:
            request = json.loads(line)
        except json.JSONDecodeError as exc:
            log_error(f"invalid json: {exc}")
            continue
        try:
            response = handle_request(request, ctx)
            if response is not None:
                _write_response(stdout, response)
        except Exception as exc:
            log_error(f"unexpected error: {exc}")
            req_id = request.get("id") if isinstance(request, dict) else None
            _write_response(stdout, {
                "jsonrpc": "2.0",
                "id": req_id,
                "error": {"code": -32603, "message": f"Internal error: {exc}"},
            })

    log_error("shutting down...")
    sessions.close()


if __name__ == "__main__":
    main()
