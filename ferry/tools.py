"""Tool contract, registry, wire serialization and the local tools."""

import logging
import os
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .report import MissingParameterError, ToolExecutionError, ToolNotFoundError

logger = logging.getLogger(__name__)

MAX_OUTPUT_BYTES = 50 * 1024  # 50 KB
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_COMMAND_OUTPUT = 1 * 1024 * 1024  # 1 MB
DEFAULT_TIMEOUT = 30
MAX_TIMEOUT = 600


@dataclass(frozen=True)
class ToolProperty:
    type: str
    description: str


@dataclass(frozen=True)
class ToolInputSchema:
    properties: dict[str, ToolProperty] = field(default_factory=dict)
    required: tuple[str, ...] = ()

    def __post_init__(self):
        required = tuple(self.required)
        if len(set(required)) != len(required):
            raise ValueError(f"duplicate names in required: {list(required)}")
        unknown = [r for r in required if r not in self.properties]
        if unknown:
            raise ValueError(f"required names not in properties: {unknown}")
        object.__setattr__(self, "required", required)

    def describe(self, name: str) -> str:
        prop = self.properties.get(name)
        return prop.description if prop else ""


class Tool(Protocol):
    name: str
    description: str
    input_schema: ToolInputSchema

    def execute(self, parameters: dict[str, str]) -> str: ...


def tool_to_wire(tool: Tool) -> dict:
    """Convert a tool to the provider's tool definition format."""
    schema = tool.input_schema
    return {
        "name": tool.name,
        "description": tool.description,
        "input_schema": {
            "type": "object",
            "properties": {
                name: {"type": prop.type, "description": prop.description}
                for name, prop in schema.properties.items()
            },
            "required": list(schema.required),
        },
    }


class ToolRegistry:
    """Tools by name, in registration order. Names must be unique."""

    def __init__(self, tools=()):
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"tool {tool.name!r} is already registered")
        logger.debug("Registering tool: %s", tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool:
        try:
            return self._tools[name]
        except KeyError:
            raise ToolNotFoundError(name) from None

    def names(self) -> list[str]:
        return list(self._tools)

    def to_wire(self) -> list[dict]:
        return [tool_to_wire(t) for t in self._tools.values()]

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __iter__(self):
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)


def require(parameters: dict[str, str], name: str) -> str:
    value = parameters.get(name)
    if value is None:
        raise MissingParameterError(name)
    return value


_PATH_HINT = "Can be absolute or relative to the current working directory."


class ReadFileTool:
    name = "read_file"
    description = (
        "Read the contents of a file from the file system. "
        "Use this tool when you need to access the content of a specific file. "
        "The file path should be absolute or relative to the current working directory."
    )
    input_schema = ToolInputSchema(
        properties={
            "file_path": ToolProperty(
                "string", f"The path to the file to read. {_PATH_HINT}"
            ),
        },
        required=("file_path",),
    )

    def execute(self, parameters: dict[str, str]) -> str:
        file_path = require(parameters, "file_path")
        logger.debug("Reading file: %s", file_path)
        path = Path(file_path)
        try:
            if not path.exists():
                return f"Error: File not found: {file_path}"
            if not path.is_file():
                return f"Error: Not a regular file: {file_path}"
            with open(path, "rb") as f:
                data = f.read(MAX_OUTPUT_BYTES + 1)
        except OSError as e:
            return f"Error reading file: {e}"

        if b"\x00" in data[:BINARY_CHECK_BYTES]:
            return f"Error: Binary file detected: {file_path}"

        truncated = len(data) > MAX_OUTPUT_BYTES
        text = data[:MAX_OUTPUT_BYTES].decode("utf-8", errors="replace")
        if truncated:
            text += f"\n[content truncated at {MAX_OUTPUT_BYTES} bytes]"
        logger.debug("Read %s, content length: %d", file_path, len(text))
        return text


class WriteFileTool:
    name = "write_file"
    description = (
        "Write content to a file in the file system. "
        "Use this tool when you need to create or update a file with specific content. "
        "The file path should be absolute or relative to the current working directory."
    )
    input_schema = ToolInputSchema(
        properties={
            "file_path": ToolProperty(
                "string", f"The path to the file to write. {_PATH_HINT}"
            ),
            "content": ToolProperty("string", "The content to write to the file."),
        },
        required=("file_path", "content"),
    )

    def execute(self, parameters: dict[str, str]) -> str:
        file_path = require(parameters, "file_path")
        content = require(parameters, "content")
        logger.debug("Writing to file: %s", file_path)
        path = Path(file_path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            return f"Error writing to file: {e}"
        return f"Successfully wrote {len(content)} characters to {file_path}"


_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix, uses process groups (via start_new_session=True) to kill the
    entire tree. On Windows, uses taskkill /T /F to kill the process tree.
    """
    if sys.platform != "win32":
        import signal

        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass


def _capture_process(proc: subprocess.Popen, timeout: int) -> tuple[str, bool, bool]:
    """Drain a running subprocess with timeout enforcement.

    Returns (output, timed_out, truncated).
    """
    output_chunks: list[bytes] = []
    output_total = 0
    output_truncated = False

    def _reader():
        nonlocal output_total, output_truncated
        try:
            while True:
                chunk = proc.stdout.read(4096)
                if not chunk:
                    break
                if output_truncated:
                    continue  # keep draining to prevent pipe backpressure
                remaining = MAX_COMMAND_OUTPUT - output_total
                output_chunks.append(chunk[:remaining])
                output_total += len(output_chunks[-1])
                if output_total >= MAX_COMMAND_OUTPUT:
                    output_truncated = True
        except (OSError, ValueError):
            pass  # pipe closed after kill

    reader_thread = threading.Thread(target=_reader, daemon=True)
    reader_thread.start()

    timed_out = False
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        timed_out = True
        _kill_process_tree(proc)

    reader_thread.join(timeout=2)
    proc.stdout.close()

    output = b"".join(output_chunks).decode("utf-8", errors="replace")
    return output, timed_out, output_truncated


def parse_timeout(raw: str | None) -> int:
    """Parse a timeout parameter, falling back to the default when invalid."""
    if raw is None or not raw.strip():
        return DEFAULT_TIMEOUT
    try:
        value = int(raw.strip())
    except ValueError:
        logger.warning(
            "Invalid timeout value: %r, using default of %d seconds",
            raw,
            DEFAULT_TIMEOUT,
        )
        return DEFAULT_TIMEOUT
    return max(1, min(value, MAX_TIMEOUT))


class TerminalTool:
    name = "terminal"
    description = (
        "Execute a command in the terminal. "
        "Use this tool when you need to run shell commands or scripts. "
        "The command will be executed in the current working directory. "
        "This tool works on all operating systems (Windows, macOS, Linux)."
    )
    input_schema = ToolInputSchema(
        properties={
            "command": ToolProperty(
                "string",
                "The command to execute in the terminal. On Windows, this will be "
                "executed with cmd.exe, on macOS/Linux with /bin/sh.",
            ),
            "timeout": ToolProperty(
                "string",
                "Optional timeout in seconds. If the command doesn't complete within "
                "this time, it will be terminated. Default is 30 seconds.",
            ),
        },
        required=("command",),
    )

    def __init__(self, cwd: str | None = None):
        self.cwd = cwd

    def execute(self, parameters: dict[str, str]) -> str:
        command = require(parameters, "command")
        timeout = parse_timeout(parameters.get("timeout"))
        logger.debug("Executing command: %s (timeout=%ds)", command, timeout)

        if sys.platform == "win32":
            shell_cmd = ["cmd.exe", "/c", command]
        else:
            shell_cmd = ["/bin/sh", "-c", command]

        popen_kwargs: dict = dict(
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            cwd=self.cwd,
        )
        if sys.platform != "win32":
            popen_kwargs["start_new_session"] = True

        try:
            proc = subprocess.Popen(shell_cmd, **popen_kwargs)
        except OSError as e:
            raise ToolExecutionError(f"failed to start shell: {e}") from e

        output, timed_out, truncated = _capture_process(proc, timeout)
        if timed_out:
            logger.warning("Command timed out after %d seconds: %s", timeout, command)
            return f"Error: Command execution timed out after {timeout} seconds"

        output = output.rstrip("\n")
        if truncated:
            output += f"\n[output truncated at {MAX_COMMAND_OUTPUT} bytes]"
        if proc.returncode != 0:
            logger.debug("Command exited with %d: %s", proc.returncode, command)
            return f"Command execution failed with exit code {proc.returncode}:\n{output}"
        return output


def default_registry() -> ToolRegistry:
    """The built-in tool set, in registration order."""
    from .fetch import NetworkRequestTool

    return ToolRegistry(
        [ReadFileTool(), WriteFileTool(), TerminalTool(), NetworkRequestTool()]
    )
