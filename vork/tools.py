"""Tool definitions, typed argument parsing, and tool implementations."""

import base64
import json
import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from .approval import ApprovalGate
from .errors import ArgumentParseError, ToolError

TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "read_file",
            "description": "Read the contents of a text file.",
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "The path to the file to read.",
                    }
                },
                "required": ["path"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "write_file",
            "description": (
                "Write content to a file (creates or overwrites), "
                "creating parent directories as needed."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "The path to the file to write.",
                    },
                    "content": {
                        "type": "string",
                        "description": "The content to write to the file.",
                    },
                },
                "required": ["path", "content"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "list_files",
            "description": (
                "List the immediate entries of a directory. "
                "Subdirectories are suffixed with /."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "The directory to list (default: current directory).",
                    }
                },
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "bash_exec",
            "description": (
                "Execute a bash command in the working directory and return "
                "its exit code, stdout and stderr."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "command": {
                        "type": "string",
                        "description": "The bash command to execute.",
                    },
                    "timeout": {
                        "type": "number",
                        "description": "Timeout in seconds (default 120, max 600).",
                    },
                },
                "required": ["command"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "search_files",
            "description": (
                "Recursively search files for a regex pattern, like grep -rn. "
                "Returns path:line:text matches. Files over 1 MB are skipped."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "pattern": {
                        "type": "string",
                        "description": "The pattern to search for (Python regex).",
                    },
                    "path": {
                        "type": "string",
                        "description": "The file or directory to search in (default: current directory).",
                    },
                },
                "required": ["pattern"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "web_search",
            "description": (
                "Search the web for information using DuckDuckGo. "
                "Returns results with titles, URLs, and snippets."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "query": {
                        "type": "string",
                        "description": "The search query.",
                    },
                    "max_results": {
                        "type": "number",
                        "description": "Maximum number of results to return (default: 5).",
                    },
                },
                "required": ["query"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "analyze_image",
            "description": (
                "Load an image (PNG, JPG, GIF, BMP, WebP) so a vision-capable model "
                "can describe its contents, read text, or analyze UI."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "The path to the image file.",
                    }
                },
                "required": ["path"],
            },
        },
    },
]

TOOL_NAMES = tuple(t["function"]["name"] for t in TOOLS)

MAX_READ_BYTES = 200 * 1024  # 200 KB
MAX_STREAM_BYTES = 50 * 1024  # 50 KB per stdout/stderr
MAX_SEARCH_MATCHES = 200
MAX_SEARCH_FILE_BYTES = 1024 * 1024  # 1 MB, larger files are skipped
MAX_LINE_LENGTH = 500
MAX_IMAGE_BYTES = 10 * 1024 * 1024  # 10 MB
BINARY_CHECK_BYTES = 8 * 1024
DEFAULT_COMMAND_TIMEOUT = 120
MAX_COMMAND_TIMEOUT = 600

IMAGE_MIME_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".bmp": "image/bmp",
    ".webp": "image/webp",
}


# ---------------------------------------------------------------------------
# Typed arguments: one record per tool
# ---------------------------------------------------------------------------


@dataclass
class ReadFileArgs:
    path: str


@dataclass
class WriteFileArgs:
    path: str
    content: str


@dataclass
class ListFilesArgs:
    path: str = "."


@dataclass
class BashExecArgs:
    command: str
    timeout: float | None = None


@dataclass
class SearchFilesArgs:
    pattern: str
    path: str = "."


@dataclass
class WebSearchArgs:
    query: str
    max_results: float = 5


@dataclass
class AnalyzeImageArgs:
    path: str


ARG_TYPES = {
    "read_file": ReadFileArgs,
    "write_file": WriteFileArgs,
    "list_files": ListFilesArgs,
    "bash_exec": BashExecArgs,
    "search_files": SearchFilesArgs,
    "web_search": WebSearchArgs,
    "analyze_image": AnalyzeImageArgs,
}

_SCHEMAS = {t["function"]["name"]: t["function"]["parameters"] for t in TOOLS}


def _check_type(value, expected: str) -> bool:
    if expected == "string":
        return isinstance(value, str)
    if expected == "number":
        # bool is a subclass of int; reject it explicitly
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    return True


def parse_arguments(name: str, raw):
    """Parse a tool call's JSON argument string into the tool's typed record.

    Raises ArgumentParseError for unknown tools, invalid JSON, non-object
    payloads, missing required fields, or fields of the wrong type. Unknown
    extra fields are ignored.
    """
    cls = ARG_TYPES.get(name)
    if cls is None:
        raise ArgumentParseError(f"unknown tool {name!r}")

    if raw is None or raw == "":
        payload = {}
    elif isinstance(raw, dict):
        payload = raw
    else:
        try:
            payload = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            raise ArgumentParseError(f"invalid JSON in arguments for {name}: {e}")
    if not isinstance(payload, dict):
        raise ArgumentParseError(
            f"arguments for {name} must be a JSON object, got {type(payload).__name__}"
        )

    schema = _SCHEMAS[name]
    for field in schema.get("required", []):
        if payload.get(field) is None:
            raise ArgumentParseError(f"missing required parameter {field!r} for {name}")

    kwargs = {}
    for field, prop in schema["properties"].items():
        value = payload.get(field)
        if value is None:
            continue
        if not _check_type(value, prop["type"]):
            raise ArgumentParseError(
                f"parameter {field!r} for {name} must be a {prop['type']}, "
                f"got {type(value).__name__}"
            )
        kwargs[field] = value
    return cls(**kwargs)


# ---------------------------------------------------------------------------
# Implementations
# ---------------------------------------------------------------------------


def resolve_path(path: str, base_dir: str) -> Path:
    """Resolve ``path`` against the working directory (absolute paths kept)."""
    p = Path(path).expanduser()
    if not p.is_absolute():
        p = Path(base_dir) / p
    return p


def _display_path(path: Path, base: Path) -> str:
    try:
        return str(path.resolve().relative_to(base))
    except ValueError:
        return str(path)


def _read_file(path: str, base_dir: str) -> str:
    resolved = resolve_path(path, base_dir)
    if not resolved.exists():
        raise ToolError(f"Failed to read file: {path}: no such file")
    if resolved.is_dir():
        raise ToolError(f"Failed to read file: {path} is a directory (use list_files)")
    try:
        with open(resolved, "rb") as f:
            data = f.read(MAX_READ_BYTES + 1)
    except OSError as e:
        raise ToolError(f"Failed to read file: {path}: {e}") from e

    if b"\x00" in data[:BINARY_CHECK_BYTES]:
        raise ToolError(
            f"binary file detected: {path} (use analyze_image for images)"
        )
    truncated = len(data) > MAX_READ_BYTES
    text = data[:MAX_READ_BYTES].decode("utf-8", errors="replace")
    if truncated:
        text += f"\n[truncated at {MAX_READ_BYTES // 1024}KB]"
    return text


def _write_file(path: str, content: str, base_dir: str, gate: ApprovalGate) -> str:
    decision = gate.check_write(path)
    if not decision.approved:
        if decision.blocked:
            return f"Write to {path} was blocked by the read-only sandbox"
        return f"Write to {path} was denied by user"

    resolved = resolve_path(path, base_dir)
    try:
        resolved.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ToolError(f"Failed to create parent directories for: {path}: {e}") from e
    data = content.encode("utf-8")
    try:
        resolved.write_bytes(data)
    except OSError as e:
        raise ToolError(f"Failed to write file: {path}: {e}") from e
    return f"Successfully wrote {len(data)} bytes to {path}"


def _list_files(path: str, base_dir: str) -> str:
    resolved = resolve_path(path, base_dir)
    if not resolved.exists():
        raise ToolError(f"Failed to read directory: {path}: no such directory")
    if not resolved.is_dir():
        raise ToolError(f"Failed to read directory: {path} is not a directory")
    try:
        entries = sorted(resolved.iterdir(), key=lambda p: p.name)
    except OSError as e:
        raise ToolError(f"Failed to read directory: {path}: {e}") from e
    if not entries:
        return "(empty directory)"
    return "\n".join(e.name + ("/" if e.is_dir() else "") for e in entries)


def _clip(text: str) -> str:
    data = text.encode("utf-8")
    if len(data) <= MAX_STREAM_BYTES:
        return text
    return (
        data[:MAX_STREAM_BYTES].decode("utf-8", errors="ignore")
        + f"\n[output truncated at {MAX_STREAM_BYTES // 1024}KB]"
    )


def _bash_exec(
    command: str,
    base_dir: str,
    gate: ApprovalGate,
    timeout: float | None = None,
) -> str:
    decision = gate.check_command(command)
    if not decision.approved:
        if decision.blocked:
            return f"Command '{command}' was blocked by the read-only sandbox"
        return f"Command '{command}' was denied by user"

    if not Path(base_dir).is_dir():
        raise ToolError(f"working directory does not exist: {base_dir}")
    if timeout is None:
        timeout = DEFAULT_COMMAND_TIMEOUT
    timeout = max(1, min(int(timeout), MAX_COMMAND_TIMEOUT))

    try:
        proc = subprocess.run(
            ["bash", "-c", command],
            cwd=base_dir,
            stdin=subprocess.DEVNULL,
            capture_output=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as e:
        raise ToolError(f"command timed out after {timeout}s: {command}") from e
    except OSError as e:
        raise ToolError(f"Failed to execute command: {command}: {e}") from e

    stdout = _clip(proc.stdout.decode("utf-8", errors="replace"))
    stderr = _clip(proc.stderr.decode("utf-8", errors="replace"))
    return f"Exit code: {proc.returncode}\n\nStdout:\n{stdout}\n\nStderr:\n{stderr}"


def _search_files(pattern: str, path: str, base_dir: str) -> str:
    try:
        regex = re.compile(pattern)
    except re.error as e:
        raise ToolError(f"invalid pattern {pattern!r}: {e}") from e

    root = resolve_path(path, base_dir)
    if not root.exists():
        raise ToolError(f"path does not exist: {path}")
    base = Path(base_dir).resolve()

    if root.is_file():
        candidates = [root]
    else:
        candidates = []
        for dirpath, dirs, files in os.walk(root):
            dirs[:] = sorted(d for d in dirs if d != ".git")
            for filename in sorted(files):
                candidates.append(Path(dirpath) / filename)

    matches: list[str] = []
    truncated = False
    for filepath in candidates:
        try:
            if filepath.stat().st_size > MAX_SEARCH_FILE_BYTES:
                continue
            with open(filepath, "rb") as f:
                data = f.read(MAX_SEARCH_FILE_BYTES + 1)
        except OSError:
            continue
        if len(data) > MAX_SEARCH_FILE_BYTES:
            continue
        if b"\x00" in data[:BINARY_CHECK_BYTES]:
            continue
        try:
            text = data.decode("utf-8")
        except UnicodeDecodeError:
            continue
        display = _display_path(filepath, base)
        for line_no, line in enumerate(text.splitlines(), start=1):
            if regex.search(line):
                if len(matches) >= MAX_SEARCH_MATCHES:
                    truncated = True
                    break
                matches.append(f"{display}:{line_no}:{line[:MAX_LINE_LENGTH]}")
        if truncated:
            break

    if not matches:
        return "No matches found"
    result = "\n".join(matches)
    if truncated:
        result += (
            f"\n(Results truncated at {MAX_SEARCH_MATCHES} matches. "
            "Use a more specific pattern or path.)"
        )
    return result


def _analyze_image(path: str, base_dir: str) -> str:
    resolved = resolve_path(path, base_dir)
    mime = IMAGE_MIME_TYPES.get(resolved.suffix.lower())
    if mime is None:
        supported = ", ".join(sorted(IMAGE_MIME_TYPES))
        raise ToolError(f"unsupported image type {resolved.suffix!r} (supported: {supported})")
    if not resolved.is_file():
        raise ToolError(f"image not found: {path}")
    size = resolved.stat().st_size
    if size > MAX_IMAGE_BYTES:
        raise ToolError(f"image too large: {size} bytes (limit {MAX_IMAGE_BYTES})")
    try:
        data = resolved.read_bytes()
    except OSError as e:
        raise ToolError(f"Failed to read image: {path}: {e}") from e
    encoded = base64.b64encode(data).decode("ascii")
    return (
        f"Image: {path}\n"
        f"MIME type: {mime}\n"
        f"Size: {len(data)} bytes\n"
        f"Data URL: data:{mime};base64,{encoded}"
    )


def dispatch(args, *, gate: ApprovalGate, base_dir: str, **kwargs) -> str:
    """Route a parsed tool call to its implementation.

    Args:
        args: Typed argument record produced by parse_arguments().
        gate: Approval gate consulted by the mutating tools.
        base_dir: Working directory for relative paths and commands.
        **kwargs: Extra context (search_url, command_timeout).

    Returns:
        Text result from the tool.

    Raises:
        ToolError: If the tool fails; the loop reports it to the model.
    """
    if isinstance(args, ReadFileArgs):
        return _read_file(args.path, base_dir)
    elif isinstance(args, WriteFileArgs):
        return _write_file(args.path, args.content, base_dir, gate)
    elif isinstance(args, ListFilesArgs):
        return _list_files(args.path, base_dir)
    elif isinstance(args, BashExecArgs):
        timeout = args.timeout
        if timeout is None:
            timeout = kwargs.get("command_timeout", DEFAULT_COMMAND_TIMEOUT)
        return _bash_exec(args.command, base_dir, gate, timeout=timeout)
    elif isinstance(args, SearchFilesArgs):
        return _search_files(args.pattern, args.path, base_dir)
    elif isinstance(args, WebSearchArgs):
        from .search import DEFAULT_SEARCH_URL, web_search

        return web_search(
            args.query,
            int(args.max_results),
            search_url=kwargs.get("search_url") or DEFAULT_SEARCH_URL,
        )
    elif isinstance(args, AnalyzeImageArgs):
        return _analyze_image(args.path, base_dir)
    else:
        raise ToolError(f"Unknown tool arguments: {type(args).__name__}")
