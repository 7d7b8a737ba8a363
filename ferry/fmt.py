"""ANSI-formatted stderr output using Rich."""

import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.rule import Rule
from rich.text import Text

MAX_PARAM_DISPLAY = 100

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


def init_logging(level: str) -> None:
    """Send diagnostic logging to stderr through Rich."""
    logging.basicConfig(
        level=level.upper(),
        format="%(name)s: %(message)s",
        handlers=[RichHandler(console=_console, show_path=False)],
        force=True,
    )


def preview(value: str, limit: int = MAX_PARAM_DISPLAY) -> str:
    """Single-line preview: newlines escaped, cut at limit characters."""
    if len(value) > limit:
        value = value[:limit] + "..."
    return value.replace("\r", "\\r").replace("\n", "\\n")


# -- Turn structure ----------------------------------------------------------


def round_header(n: int, max_n: int, token_est: int) -> None:
    title = f"Request {n}/{max_n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, stop_reason: str | None) -> None:
    style = "green" if stop_reason in ("end_turn", "tool_use") else "yellow"
    text = Text()
    text.append(f"  Model responded in {elapsed:.1f}s", style=style)
    text.append(f"  stop_reason={stop_reason}", style=style)
    _console.print(text)


def completion(requests: int, exit_code: str) -> None:
    if exit_code == "ok":
        _console.print(
            Text(f"  \u2713 Turn finished: {requests} requests", style="bold green")
        )
    else:
        _console.print(
            Text(
                f"  Turn finished: {requests} requests, exit={exit_code}",
                style="bold red",
            )
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, description: str, params: list[tuple[str, str, str]]) -> None:
    """Show a pending tool call: name, description, and (key, value, schema description)."""
    header = Text()
    header.append("  \u25b6 ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if description:
        _console.print(Text(f"    {description}", style="dim italic"))
    for key, value, desc in params:
        line = Text()
        line.append(f"    {key}", style="magenta")
        line.append(f" = {preview(value)}")
        if desc:
            line.append(f"  ({desc})", style="dim")
        _console.print(line)


def tool_result(name: str, elapsed: float, result: str) -> None:
    header = Text()
    header.append(f"  \u2713 {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if result:
        _console.print(Text(f"    {preview(result, 300)}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  \u2717 {name}", style="bold red")
    header.append(f"  {preview(msg, 300)}", style="red")
    _console.print(header)


def permission_request(name: str, description: str, parameters: dict[str, str]) -> None:
    line = Text()
    line.append("  ? ", style="bold yellow")
    line.append(f"{name} wants to run", style="yellow")
    _console.print(line)
    for key, value in parameters.items():
        _console.print(Text(f"    {key} = {preview(value)}", style="yellow"))


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  \u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner(safe_mode: bool) -> None:
    _console.print(
        Text("Interactive mode. Type 'exit' or press Ctrl-D to quit.", style="dim")
    )
    if safe_mode:
        _console.print(
            Text("Safe mode: every tool call needs your confirmation.", style="dim")
        )
