#!/usr/bin/env python3
"""
ast-grep MCP Server - structural code search and rewrite for agents.

Exposes a single `ast_grep` tool that validates a request, turns it into an
ast-grep command line, runs the binary and annotates its output.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional, Sequence


def _log_level(name: str, default: str = "INFO") -> int:
    """Map a level name to its number, falling back to `default` for unknown names."""
    level = logging.getLevelName(name.strip().upper())
    if isinstance(level, int):
        return level
    return logging.getLevelName(default)


# stdout carries JSON-RPC, basicConfig logs to stderr
logging.basicConfig(
    level=_log_level(os.environ.get("AST_GREP_MCP_LOG_LEVEL", "INFO")),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger("ast-grep-mcp-server")

from mcp import types
from mcp.server import Server
from mcp.server.stdio import stdio_server
from mcp.shared.exceptions import McpError
from mcp.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    METHOD_NOT_FOUND,
    ErrorData,
    TextContent,
    Tool,
)


def _env_number(name: str, default, cast: Callable = float):
    """Read a positive number from the environment, keeping `default` when it is malformed."""
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        value = cast(raw)
    except ValueError:
        logger.warning(f"Ignoring {name}={raw!r}: not a number, using {default}")
        return default
    if value <= 0:
        logger.warning(f"Ignoring {name}={raw!r}: must be positive, using {default}")
        return default
    return value


SERVER_NAME = "mcp-ast-grep"
TOOL_NAME = "ast_grep"

# Engine configuration
AST_GREP_BIN = os.environ.get("AST_GREP_BIN", "ast-grep")
AST_GREP_TIMEOUT = _env_number("AST_GREP_TIMEOUT", 120.0)  # seconds
MAX_OUTPUT_BYTES = _env_number("AST_GREP_MAX_OUTPUT", 10 * 1024 * 1024, int)  # 10MB
PROBE_TIMEOUT = 10  # Seconds for `--version`
READ_CHUNK_SIZE = 64 * 1024
INSTALL_HINT = "npm install -g @ast-grep/cli"

# Parameter limits
MIN_CONTEXT = 0
MAX_CONTEXT = 20
MIN_HEAD_LIMIT = 1
MAX_HEAD_LIMIT = 1000

DIFF_MARKER = "@@"

SUPPORTED_LANGUAGES = (
    "javascript", "typescript", "python", "rust", "go", "java", "c", "cpp",
    "csharp", "html", "css", "json", "yaml", "bash", "lua", "php", "ruby",
    "swift", "kotlin", "dart", "scala",
)

MODES = ("search", "replace", "count")

KNOWN_FIELDS = frozenset({
    "pattern", "replacement", "path", "glob", "language",
    "mode", "context", "dry_run", "head_limit",
})


class AstGrepError(Exception):
    """Base failure for the ast_grep pipeline, tagged with a protocol error code."""

    code = INTERNAL_ERROR
    message_prefix = ""


class InvalidParamsError(AstGrepError):
    code = INVALID_PARAMS


class EngineUnavailableError(AstGrepError):
    """The ast-grep binary could not be probed."""


class EngineExecutionError(AstGrepError):
    """ast-grep could not be spawned or exited non-zero."""

    message_prefix = "ast-grep execution failed: "


class EngineTimeoutError(EngineExecutionError):
    """ast-grep ran past the configured timeout and was killed."""


@dataclass(frozen=True)
class SearchRequest:
    """A validated ast_grep call. `path` is already absolute."""
    pattern: str
    replacement: Optional[str] = None
    path: Optional[str] = None
    glob: Optional[str] = None
    language: Optional[str] = None
    mode: str = "search"
    context: Optional[int] = None
    dry_run: bool = True
    head_limit: Optional[int] = None

    @property
    def effective_mode(self) -> str:
        """A replacement always means replace, whatever `mode` says."""
        if self.replacement is not None:
            return "replace"
        return self.mode or "search"


@dataclass(frozen=True)
class ExecutionResult:
    exit_code: int
    stdout: str
    stderr: str
    truncated: bool = False


server = Server(SERVER_NAME)


def _as_int(value: Any) -> Optional[int]:
    """Return value as an int if it is integral, else None. Booleans are not integers."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return None


def _check_range(value: Any, low: int, high: int, message: str) -> int:
    number = _as_int(value)
    if number is None or not (low <= number <= high):
        raise InvalidParamsError(message)
    return number


def _optional_string(arguments: dict, key: str) -> Optional[str]:
    value = arguments.get(key)
    if value is not None and not isinstance(value, str):
        raise InvalidParamsError(f"'{key}' must be a string")
    return value


def validate_params(arguments: Optional[dict]) -> SearchRequest:
    """Validate raw tool arguments and build a SearchRequest.

    The first five checks run in a fixed order (pattern, language, context,
    head_limit, path) so callers always see the same error for the same
    input. Raises InvalidParamsError.
    """
    arguments = arguments or {}

    pattern = arguments.get("pattern")
    if not isinstance(pattern, str) or pattern.strip() == "":
        raise InvalidParamsError("Pattern is required and cannot be empty")

    language = arguments.get("language")
    if language and language not in SUPPORTED_LANGUAGES:
        raise InvalidParamsError(
            f"Language '{language}' not supported. Available: {', '.join(SUPPORTED_LANGUAGES)}"
        )

    context = arguments.get("context")
    if context is not None:
        context = _check_range(
            context, MIN_CONTEXT, MAX_CONTEXT,
            f"Context must be between {MIN_CONTEXT} and {MAX_CONTEXT}",
        )

    head_limit = arguments.get("head_limit")
    if head_limit is not None:
        head_limit = _check_range(
            head_limit, MIN_HEAD_LIMIT, MAX_HEAD_LIMIT,
            f"Head limit must be between {MIN_HEAD_LIMIT} and {MAX_HEAD_LIMIT}",
        )

    path = _optional_string(arguments, "path")
    if path and not Path(path).exists():
        raise InvalidParamsError(f"Path '{path}' does not exist")

    unknown = sorted(set(arguments) - KNOWN_FIELDS)
    if unknown:
        raise InvalidParamsError(f"Unknown parameter(s): {', '.join(unknown)}")

    mode = arguments.get("mode") or "search"
    if mode not in MODES:
        raise InvalidParamsError(f"Mode '{mode}' not supported. Available: {', '.join(MODES)}")

    dry_run = arguments.get("dry_run", True)
    if dry_run is None:
        dry_run = True
    if not isinstance(dry_run, bool):
        raise InvalidParamsError("'dry_run' must be a boolean")

    return SearchRequest(
        pattern=pattern,
        replacement=_optional_string(arguments, "replacement"),
        path=str(Path(path).resolve()) if path else None,
        glob=_optional_string(arguments, "glob") or None,
        language=language or None,
        mode=mode,
        context=context,
        dry_run=dry_run,
        head_limit=head_limit,
    )


def build_command(request: SearchRequest) -> tuple[str, ...]:
    """Map a validated request onto an ast-grep argument vector."""
    cmd = [AST_GREP_BIN]
    mode = request.effective_mode

    if mode == "replace":
        cmd += ["-p", request.pattern, "-r", request.replacement or ""]
        # Without --update-all ast-grep only previews the rewrite
        if request.dry_run is False:
            cmd.append("--update-all")
    else:
        cmd += ["-p", request.pattern]

    if request.glob:
        cmd += ["--globs", request.glob]
    if request.language:
        cmd += ["-l", request.language]

    if request.context is not None:
        cmd += ["-C", str(request.context)]
    if request.head_limit is not None:
        cmd += ["--max-count", str(request.head_limit)]

    if mode == "count":
        cmd.append("-c")

    if request.path:
        cmd.append(request.path)

    return tuple(cmd)


def _working_directory(request: SearchRequest) -> str:
    """Run inside the searched directory, or the directory holding the searched file."""
    if request.path:
        path = Path(request.path)
        if path.is_dir():
            return str(path)
        if path.parent.is_dir():
            return str(path.parent)
    return os.getcwd()


class _OutputBudget:
    """Byte allowance shared by a child's stdout and stderr readers."""

    def __init__(self, limit: int):
        self.remaining = limit
        self.exceeded = False


def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        pass


async def _read_capped(
    stream: asyncio.StreamReader,
    budget: _OutputBudget,
    process: asyncio.subprocess.Process,
) -> bytes:
    """Read a pipe until EOF or until the shared budget runs out, then kill the child."""
    data = bytearray()
    while True:
        chunk = await stream.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        if len(chunk) > budget.remaining:
            data += chunk[:budget.remaining]
            budget.remaining = 0
            budget.exceeded = True
            _kill(process)
            break
        data += chunk
        budget.remaining -= len(chunk)
    return bytes(data)


async def _run_engine(
    command: Sequence[str],
    cwd: Optional[str],
    timeout: float = AST_GREP_TIMEOUT,
    max_output_bytes: int = MAX_OUTPUT_BYTES,
) -> ExecutionResult:
    """Spawn the engine and capture its output.

    stdout and stderr share one `max_output_bytes` allowance. The first byte
    past it kills the child and sets `truncated`; whatever fit is kept.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
        )
    except OSError as e:
        raise EngineExecutionError(f"Failed to execute {command[0]}: {e}") from e

    budget = _OutputBudget(max_output_bytes)

    async def _collect() -> tuple[bytes, bytes]:
        stdout, stderr = await asyncio.gather(
            _read_capped(process.stdout, budget, process),
            _read_capped(process.stderr, budget, process),
        )
        await process.wait()
        return stdout, stderr

    try:
        stdout, stderr = await asyncio.wait_for(_collect(), timeout=timeout)
    except asyncio.TimeoutError as e:
        _kill(process)
        await process.wait()
        raise EngineTimeoutError(
            f"{command[0]} timed out after {timeout:g} seconds"
        ) from e

    return ExecutionResult(
        exit_code=process.returncode,
        stdout=stdout.decode("utf-8", errors="replace"),
        stderr=stderr.decode("utf-8", errors="replace"),
        truncated=budget.exceeded,
    )


async def check_ast_grep_available() -> None:
    """Probe the engine with `--version`. Raises EngineUnavailableError."""
    try:
        result = await _run_engine([AST_GREP_BIN, "--version"], None, timeout=PROBE_TIMEOUT)
    except AstGrepError as e:
        logger.warning(f"ast-grep probe failed: {e}")
        result = None

    if result is None or result.exit_code != 0:
        raise EngineUnavailableError(
            f"{AST_GREP_BIN} binary not found. Please install: {INSTALL_HINT}"
        )
    logger.debug(f"ast-grep available: {result.stdout.strip()}")


async def run_ast_grep(command: Sequence[str], cwd: Optional[str]) -> ExecutionResult:
    """Run a built command once. Non-zero exits raise EngineExecutionError.

    A child killed for overrunning the output ceiling is not a failure: its
    truncated output is returned.
    """
    logger.debug(f"Running {list(command)} in {cwd}")
    result = await _run_engine(command, cwd)

    if result.truncated:
        logger.warning(f"ast-grep output truncated at {MAX_OUTPUT_BYTES} bytes, child killed")
        return result
    if result.exit_code != 0:
        raise EngineExecutionError(
            f"ast-grep exited with code {result.exit_code}: {result.stderr}"
        )
    return result


def format_output(output: str, request: SearchRequest, truncated: bool = False) -> str:
    """Annotate raw ast-grep output for the calling agent."""
    mode = request.effective_mode

    if not output.strip():
        return "No changes made" if mode == "replace" else "No matches found"

    formatted = ""
    if mode == "replace":
        if request.dry_run is not False:
            formatted += "Preview of changes (dry run mode):\n\n"
        else:
            formatted += "Applied changes:\n\n"
    elif mode == "count":
        formatted += "Match counts:\n\n"

    formatted += output

    if mode == "replace" and DIFF_MARKER in output:
        # Each diff block is framed by two markers
        blocks = output.count(DIFF_MARKER) // 2
        verb = "Would apply" if request.dry_run is not False else "Applied"
        formatted += f"\n\n{verb} changes in {blocks} location(s)"

    if truncated:
        formatted += f"\n\n[Output truncated at {MAX_OUTPUT_BYTES} bytes]"

    return formatted


def _text_response(text: str) -> list[TextContent]:
    return [TextContent(type="text", text=text)]


def _to_mcp_error(error: AstGrepError) -> McpError:
    """Wrap a pipeline failure in the protocol's error envelope."""
    message = f"{error.message_prefix}{error}"
    if error.code == INTERNAL_ERROR:
        logger.error(f"Error {error.code}: {message}")
    return McpError(ErrorData(code=error.code, message=message))


# Tool definitions
TOOL_DEFINITIONS = [
    Tool(
        name=TOOL_NAME,
        description=(
            "A powerful AST-based code search and refactoring tool that understands code "
            "structure across 20+ programming languages. Performs syntax-aware pattern "
            "matching and transformations."
        ),
        inputSchema={
            "type": "object",
            "properties": {
                "pattern": {
                    "type": "string",
                    "description": (
                        "AST pattern to search for using ast-grep syntax "
                        "(e.g., 'console.log($MSG)', 'function $NAME($ARGS) { $$$BODY }')"
                    ),
                    "minLength": 1,
                },
                "replacement": {
                    "type": "string",
                    "description": (
                        "Replacement pattern (optional). If provided, performs replacement "
                        "instead of search. Uses same variable syntax as pattern."
                    ),
                },
                "path": {
                    "type": "string",
                    "description": "File or directory to search in. Defaults to current working directory.",
                },
                "glob": {
                    "type": "string",
                    "description": "Glob pattern to filter files (e.g. '*.js', '**/*.{ts,tsx}')",
                },
                "language": {
                    "type": "string",
                    "description": "Target language for parsing. Auto-detected if not specified.",
                    "enum": list(SUPPORTED_LANGUAGES),
                },
                "mode": {
                    "type": "string",
                    "description": "Operation mode",
                    "enum": list(MODES),
                    "default": "search",
                },
                "context": {
                    "type": "integer",
                    "description": "Number of lines to show around matches (like grep -C)",
                    "minimum": MIN_CONTEXT,
                    "maximum": MAX_CONTEXT,
                },
                "dry_run": {
                    "type": "boolean",
                    "description": "Preview changes without modifying files (default: true for replace mode)",
                    "default": True,
                },
                "head_limit": {
                    "type": "integer",
                    "description": "Limit output to first N matches",
                    "minimum": MIN_HEAD_LIMIT,
                    "maximum": MAX_HEAD_LIMIT,
                },
            },
            "required": ["pattern"],
            "additionalProperties": False,
        },
    ),
]


@server.list_tools()
async def list_tools() -> list[Tool]:
    """List available tools."""
    return TOOL_DEFINITIONS


# Tool handlers
async def _handle_ast_grep(arguments: dict) -> list[TextContent]:
    """Validate, probe, build, run and format one ast_grep call."""
    request = validate_params(arguments)

    await check_ast_grep_available()

    command = build_command(request)
    result = await run_ast_grep(command, _working_directory(request))
    logger.info(
        f"ast-grep {request.effective_mode} finished: exit code {result.exit_code}, "
        f"{len(result.stdout)} chars of output"
    )

    return _text_response(format_output(result.stdout, request, truncated=result.truncated))


# Tool dispatch table
TOOL_HANDLERS = {
    TOOL_NAME: _handle_ast_grep,
}


async def call_tool(name: str, arguments: dict) -> list[TextContent]:
    """Route tool calls to their handlers and normalize failures into McpError."""
    handler = TOOL_HANDLERS.get(name)
    if handler is None:
        raise McpError(ErrorData(code=METHOD_NOT_FOUND, message=f"Unknown tool: {name}"))

    try:
        return await handler(arguments)
    except McpError:
        raise
    except AstGrepError as e:
        raise _to_mcp_error(e) from e
    except Exception as e:
        logger.error(f"Unexpected error in {name}: {e}", exc_info=True)
        raise McpError(
            ErrorData(code=INTERNAL_ERROR, message=f"ast-grep execution failed: {e}")
        ) from e


async def _handle_call_tool_request(req: types.CallToolRequest) -> types.ServerResult:
    """Serve tools/call without the SDK's schema check or error-to-result wrapping.

    validate_params is the only validator, and an McpError raised here
    reaches the session as a JSON-RPC error carrying its code.
    """
    content = await call_tool(req.params.name, req.params.arguments or {})
    return types.ServerResult(types.CallToolResult(content=content, isError=False))


server.request_handlers[types.CallToolRequest] = _handle_call_tool_request


async def main():
    """Run the MCP server."""
    async with stdio_server() as (read_stream, write_stream):
        await server.run(
            read_stream,
            write_stream,
            server.create_initialization_options(),
        )


def run():
    """Sync entry point for console script."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
