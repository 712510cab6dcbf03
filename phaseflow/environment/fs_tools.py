"""
Filesystem and shell tools agents use inside an execution environment.

This module provides:
- read / glob / grep for exploration, write / edit / bash for coding
- Tool specs (JSON Schema) for each operation
- A dispatcher that runs a tool call and turns input or environment
  mistakes into ``{"error": ...}`` results the model can react to
"""

from __future__ import annotations

import shlex
from typing import TYPE_CHECKING, Any, Optional

from phaseflow.environment.base import FileNotFoundInEnvironment, InvalidPathError
from phaseflow.llm_clients import ToolCall, ToolSpec

if TYPE_CHECKING:
    from phaseflow.environment.base import ExecutionEnvironment
    from phaseflow.logger import PipelineLogger

MAX_FILE_SIZE = 100 * 1024
MAX_GLOB_RESULTS = 1000
MAX_GREP_RESULTS = 100
MAX_OUTPUT_LENGTH = 30_000


class FsToolError(Exception):
    """A tool failure caused by its input; reported back to the model."""
    pass


def read(env: ExecutionEnvironment, path: str) -> dict[str, Any]:
    """Read a text file of at most MAX_FILE_SIZE bytes."""
    data = env.read_file(path)
    if len(data) > MAX_FILE_SIZE:
        raise FsToolError(
            f"file too large for context: {path} ({len(data)} bytes, max {MAX_FILE_SIZE})"
        )
    content = data.decode("utf-8", errors="replace")
    line_count = 0 if not content else len(content.split("\n"))
    return {"content": content, "path": path, "size": len(data), "lineCount": line_count}


def _find_command(dir_path: str, pattern: str) -> str:
    if pattern.startswith("**/"):
        pattern = pattern[3:]
    if "/" in pattern:
        raise FsToolError(
            f"invalid pattern: '{pattern}' contains '/'; use dirPath to scope instead"
        )
    return (
        f"find {shlex.quote(dir_path)} -type f -name {shlex.quote(pattern)} "
        f"-printf '%p\\t%s\\n'"
    )


def glob(env: ExecutionEnvironment, dir_path: str, pattern: str) -> dict[str, Any]:
    """
    Find files under ``dir_path`` whose name matches ``pattern``.

    A leading ``**/`` is accepted; any other ``/`` is rejected.
    """
    result = env.run_command(_find_command(dir_path, pattern))
    if result.exit_code != 0 and not result.stdout:
        raise FsToolError(f"not found: find in '{dir_path}'")

    lines = [line for line in result.stdout.strip().split("\n") if line]
    if len(lines) >= MAX_GLOB_RESULTS:
        raise FsToolError(
            f"too many results: pattern '{pattern}' in '{dir_path}' (limit {MAX_GLOB_RESULTS})"
        )

    prefix = dir_path if dir_path.endswith("/") else f"{dir_path}/"
    matches = []
    for line in lines:
        path, _, size = line.rpartition("\t")
        if not path:
            path, size = line, "0"
        name = path[len(prefix):] if path.startswith(prefix) else path
        matches.append({"path": path, "name": name, "size": int(size or 0)})
    return {"pattern": pattern, "basePath": dir_path, "matches": matches}


def grep(
    env: ExecutionEnvironment,
    dir_path: str,
    pattern: str,
    include: Optional[str] = None,
    max_results: Optional[int] = None,
) -> dict[str, Any]:
    """Search file contents under ``dir_path`` for a regular expression."""
    limit = max_results or MAX_GREP_RESULTS
    command = f"grep -rnZ -e {shlex.quote(pattern)} {shlex.quote(dir_path)}"
    if include:
        command += f" --include {shlex.quote(include)}"

    result = env.run_command(command)
    if result.exit_code == 2:
        raise FsToolError(f"invalid regex pattern: {pattern}")
    if result.exit_code == 1:
        return {"pattern": pattern, "matches": []}

    matches = []
    for line in [l for l in result.stdout.strip().split("\n") if l][:limit]:
        path, sep, rest = line.partition("\0")
        if not sep:
            matches.append({"path": line, "lineNumber": 0, "lineContent": line})
            continue
        number, colon, content = rest.partition(":")
        if not colon:
            matches.append({"path": path, "lineNumber": 0, "lineContent": rest})
            continue
        matches.append({"path": path, "lineNumber": int(number), "lineContent": content})
    return {"pattern": pattern, "matches": matches}


def write(env: ExecutionEnvironment, path: str, content: str) -> dict[str, Any]:
    """Create or overwrite a file."""
    created = not env.file_exists(path)
    size = env.write_file(path, content)
    return {"path": path, "size": size, "created": created}


def edit(
    env: ExecutionEnvironment,
    path: str,
    old_string: str,
    new_string: str,
    replace_all: bool = False,
) -> dict[str, Any]:
    """
    Replace ``old_string`` in a file.

    Fails when the string is absent, or present more than once without
    ``replace_all``.
    """
    content = env.read_file(path).decode("utf-8", errors="replace")
    count = content.count(old_string) if old_string else 0
    if count == 0:
        raise FsToolError(f"old string not found in file: {path}")
    if count > 1 and not replace_all:
        raise FsToolError(
            f"old string found multiple times without replaceAll: {count} occurrences in '{path}'"
        )

    if replace_all:
        updated = content.replace(old_string, new_string)
    else:
        updated = content.replace(old_string, new_string, 1)
    env.write_file(path, updated)
    return {"path": path, "replacements": count if replace_all else 1}


def _truncate_head(text: str) -> str:
    if len(text) <= MAX_OUTPUT_LENGTH:
        return text
    return f"{text[:MAX_OUTPUT_LENGTH]}\n[truncated]"


def bash(env: ExecutionEnvironment, command: str) -> dict[str, Any]:
    """Run a shell command, keeping the first MAX_OUTPUT_LENGTH characters of each stream."""
    result = env.run_command(command)
    return {
        "stdout": _truncate_head(result.stdout),
        "stderr": _truncate_head(result.stderr),
        "exitCode": result.exit_code,
    }


READ_TOOL = ToolSpec(
    name="read",
    description=(
        "Read the contents of a file at the given path. Returns the file content, byte size, "
        "and line count. Returns an error message if the file does not exist or exceeds the "
        "size limit."
    ),
    input_schema={
        "type": "object",
        "properties": {"path": {"type": "string", "description": "Path to the file to read"}},
        "required": ["path"],
        "additionalProperties": False,
    },
)

GLOB_TOOL = ToolSpec(
    name="glob",
    description=(
        "Find files matching a name pattern in a directory tree. Supports * and ? wildcards "
        "and a leading **/. Returns matching file paths with names and sizes. Use pattern '*' "
        "to list a directory."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "dirPath": {"type": "string", "description": "Directory to search"},
            "pattern": {"type": "string", "description": "Pattern such as '**/*.ts' or '*.json'"},
        },
        "required": ["dirPath", "pattern"],
        "additionalProperties": False,
    },
)

GREP_TOOL = ToolSpec(
    name="grep",
    description=(
        "Search file contents for a regular expression. Returns matching lines with file path "
        "and line number."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "dirPath": {"type": "string", "description": "Directory to search"},
            "pattern": {"type": "string", "description": "Regular expression"},
            "glob": {"type": "string", "description": "Only search files matching this name pattern"},
            "maxResults": {"type": "integer", "minimum": 1, "description": "Maximum matches"},
        },
        "required": ["dirPath", "pattern"],
        "additionalProperties": False,
    },
)

WRITE_TOOL = ToolSpec(
    name="write",
    description="Create or overwrite a file with the given content.",
    input_schema={
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "content": {"type": "string"},
        },
        "required": ["path", "content"],
        "additionalProperties": False,
    },
)

EDIT_TOOL = ToolSpec(
    name="edit",
    description=(
        "Replace an exact string in a file. Fails if the string is missing, or appears more "
        "than once and replaceAll is not set."
    ),
    input_schema={
        "type": "object",
        "properties": {
            "path": {"type": "string"},
            "oldString": {"type": "string", "minLength": 1},
            "newString": {"type": "string"},
            "replaceAll": {"type": "boolean"},
        },
        "required": ["path", "oldString", "newString"],
        "additionalProperties": False,
    },
)

BASH_TOOL = ToolSpec(
    name="bash",
    description="Run a bash command in the repository root. Returns stdout, stderr and exit code.",
    input_schema={
        "type": "object",
        "properties": {"command": {"type": "string", "minLength": 1}},
        "required": ["command"],
        "additionalProperties": False,
    },
)

EXPLORE_TOOLS = [READ_TOOL, GLOB_TOOL, GREP_TOOL]
CODER_TOOLS = [READ_TOOL, GLOB_TOOL, GREP_TOOL, WRITE_TOOL, EDIT_TOOL, BASH_TOOL]
FS_TOOL_NAMES = frozenset(t.name for t in CODER_TOOLS)


def dispatch_fs_tool(
    env: ExecutionEnvironment,
    call: ToolCall,
    logger: Optional[PipelineLogger] = None,
) -> dict[str, Any]:
    """
    Run one filesystem tool call.

    Input mistakes (missing file, bad pattern, ambiguous edit, path outside
    the workspace) come back as ``{"error": message}``. Failures of the
    environment itself propagate.
    """
    args = call.input
    try:
        if call.name == "read":
            return read(env, args["path"])
        if call.name == "glob":
            return glob(env, args["dirPath"], args["pattern"])
        if call.name == "grep":
            return grep(env, args["dirPath"], args["pattern"], args.get("glob"), args.get("maxResults"))
        if call.name == "write":
            return write(env, args["path"], args["content"])
        if call.name == "edit":
            return edit(env, args["path"], args["oldString"], args["newString"],
                        bool(args.get("replaceAll")))
        if call.name == "bash":
            return bash(env, args["command"])
    except (FsToolError, FileNotFoundInEnvironment, InvalidPathError) as e:
        if logger:
            logger.warn("fs_tool_failed", {"tool": call.name, "error": str(e)})
        return {"error": str(e)}
    return {"error": "unknown tool"}
