import argparse
import json
import logging
import os
import platform
import sys
import time
from datetime import datetime
from importlib import metadata
from pathlib import Path

from . import fmt
from .client import ModelClient
from .config import _UNSET, apply_config_to_args, generate_config, load_config
from .messages import TextBlock, ToolResultBlock, ToolUseBlock, Transcript
from .permission import PermissionGate
from .report import (
    AgentError,
    ConfigError,
    PermissionDeniedError,
    ProtocolError,
    ReportCollector,
    ToolNotFoundError,
)
from .tools import ToolRegistry, default_registry

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
DEFAULT_MAX_DEPTH = 25
API_KEY_ENV_VARS = ("ANTHROPIC_KEY", "ANTHROPIC_API_KEY")
INTERRUPTED_RESULT = "Tool execution interrupted by user"

_encoder = None


def estimate_tokens(transcript: Transcript, registry: ToolRegistry | None, system: str) -> int:
    """Rough prompt size using tiktoken's cl100k_base encoding."""
    global _encoder
    if _encoder is None:
        import tiktoken

        _encoder = tiktoken.get_encoding("cl100k_base")
    text = system + json.dumps(transcript.to_wire())
    if registry is not None and len(registry):
        text += json.dumps(registry.to_wire())
    # ~4 tokens of per-message overhead
    return len(_encoder.encode(text)) + 4 * len(transcript)


def build_system_prompt(instructions: str | None = None, now: datetime | None = None) -> str:
    """Environment banner followed by the base instructions."""
    if instructions is None:
        instructions = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8").strip()
    now = now or datetime.now().astimezone()
    shell = "cmd.exe" if sys.platform == "win32" else "/bin/sh"
    banner = (
        f"Operating system: {platform.system()} {platform.release()}\n"
        f"Shell used by the terminal tool: {shell}\n"
        f"Working directory: {os.getcwd()}\n"
        f"Current date and time: {now.strftime('%Y-%m-%d %H:%M %Z')}"
    )
    return f"{banner}\n\n{instructions}"


def partition_content(blocks) -> tuple[list[TextBlock], list[ToolUseBlock]]:
    """Split response content into text and tool-use blocks, keeping order."""
    texts: list[TextBlock] = []
    tool_uses: list[ToolUseBlock] = []
    for block in blocks:
        if isinstance(block, TextBlock):
            texts.append(block)
        elif isinstance(block, ToolUseBlock):
            tool_uses.append(block)
        elif isinstance(block, ToolResultBlock):
            raise ProtocolError("model response contains a tool_result block")
        else:
            raise TypeError(f"not a content block: {block!r}")
    return texts, tool_uses


def handle_tool_use(
    block: ToolUseBlock,
    registry: ToolRegistry,
    *,
    gate: PermissionGate | None = None,
    verbose: bool = True,
) -> tuple[ToolResultBlock, dict]:
    """Resolve one tool use into exactly one tool result.

    Lookup failures, denials and tool exceptions become result text.
    metadata has stable keys: name, arguments, elapsed, status, succeeded.
    """
    parameters = dict(block.input)
    status = "ok"
    t0 = time.monotonic()
    try:
        tool = registry.get(block.name)
        if verbose:
            fmt.tool_call(
                tool.name,
                tool.description,
                [(k, v, tool.input_schema.describe(k)) for k, v in parameters.items()],
            )
        if gate is not None and not gate.confirm(tool.name, tool.description, parameters):
            raise PermissionDeniedError()
        logger.debug("Executing tool %s (%s)", tool.name, block.id)
        content = tool.execute(parameters)
    except ToolNotFoundError as e:
        status = "not_found"
        content = str(e)
    except PermissionDeniedError as e:
        status = "denied"
        content = str(e)
    except Exception as e:
        logger.debug("Tool %s failed", block.name, exc_info=True)
        status = "error"
        content = f"Error executing tool: {e}"
    elapsed = time.monotonic() - t0

    succeeded = status == "ok" and not content.startswith("Error")
    if verbose:
        if status == "denied":
            fmt.warning(f"{block.name}: {content}")
        elif succeeded:
            fmt.tool_result(block.name, elapsed, content)
        else:
            fmt.tool_error(block.name, content)

    return (
        ToolResultBlock(tool_use_id=block.id, content=content),
        {
            "name": block.name,
            "arguments": parameters,
            "elapsed": elapsed,
            "status": status,
            "succeeded": succeeded,
        },
    )


def run_turn(
    transcript: Transcript,
    user_text: str,
    *,
    client: ModelClient,
    registry: ToolRegistry,
    system: str,
    gate: PermissionGate | None = None,
    max_depth: int = DEFAULT_MAX_DEPTH,
    verbose: bool = True,
    on_text=None,
    report: ReportCollector | None = None,
) -> tuple[str, bool]:
    """Answer one user message, running requested tools until the model stops.

    Appends the user message, then alternates model requests and tool
    executions. All tool results of one response go back in a single user
    message. At most max_depth follow-up requests are sent.

    on_text is called with each text block as soon as its response arrives.
    Returns (answer, exhausted): answer joins every text block of the turn,
    exhausted is True when the follow-up limit stopped the loop.
    ModelRequestError propagates; the transcript keeps everything appended
    before the failure.
    """
    transcript.append_user_text(user_text)
    max_requests = max_depth + 1
    texts: list[str] = []
    requests = 0

    while True:
        requests += 1
        token_est = estimate_tokens(transcript, registry, system) if verbose or report else 0
        if verbose:
            fmt.round_header(requests, max_requests, token_est)

        t0 = time.monotonic()
        try:
            response = client.send_turn(transcript, registry, system)
        except AgentError:
            if report:
                report.record_llm_call(requests, time.monotonic() - t0, token_est, "error")
            raise
        elapsed = time.monotonic() - t0
        if verbose:
            fmt.llm_timing(elapsed, response.stop_reason)
        if report:
            report.record_llm_call(requests, elapsed, token_est, response.stop_reason)

        text_blocks, tool_uses = partition_content(response.content)
        for block in text_blocks:
            texts.append(block.text)
            if on_text is not None:
                on_text(block.text)

        if not tool_uses:
            if verbose:
                fmt.completion(requests, "ok")
            return "\n\n".join(texts), False

        results: list[ToolResultBlock] = []
        for block in tool_uses:
            result, meta = handle_tool_use(block, registry, gate=gate, verbose=verbose)
            results.append(result)
            if report:
                if meta["status"] == "denied":
                    report.record_denial(requests, meta["name"])
                report.record_tool_call(
                    requests,
                    meta["name"],
                    meta["arguments"],
                    meta["succeeded"],
                    meta["elapsed"],
                    len(result.content),
                    error=result.content if not meta["succeeded"] else None,
                )
        transcript.append_tool_results(results)

        if requests >= max_requests:
            if verbose:
                fmt.completion(requests, "max_depth")
            return "\n\n".join(texts), True


def resolve_api_key() -> str:
    for name in API_KEY_ENV_VARS:
        value = os.environ.get(name)
        if value:
            return value
    raise ConfigError(
        f"{API_KEY_ENV_VARS[0]} environment variable not found. "
        "Please set it before running."
    )


def _print_text(text: str) -> None:
    print(text, flush=True)


def build_parser():
    """Build and return the argument parser.

    Options backed by the config file default to _UNSET so config values
    can fill them in; apply_config_to_args() supplies real defaults.
    """
    parser = argparse.ArgumentParser(
        prog="ferry",
        usage="%(prog)s [options] [question]",
        description="Chat with a hosted model that can read and write files, "
        "run terminal commands and fetch web pages on this machine.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question",
        nargs="?",
        default=None,
        help="Answer this question and exit. Without it, start an interactive session.",
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Stay in an interactive session after answering the question.",
    )
    parser.add_argument(
        "--safe",
        action="store_true",
        default=_UNSET,
        help="Safe mode: ask for confirmation before every tool call.",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=_UNSET,
        metavar="SECONDS",
        help="Timeout for each model request (default: 30).",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=_UNSET,
        help="Model identifier (default: claude-3-5-sonnet-20240620).",
    )
    parser.add_argument(
        "--base-url",
        type=str,
        default=_UNSET,
        help="Messages endpoint URL (default: https://api.anthropic.com/v1/messages).",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per model response (default: 4096).",
    )
    parser.add_argument(
        "--max-depth",
        type=int,
        default=_UNSET,
        help="Maximum follow-up requests per message (default: 25).",
    )
    parser.add_argument(
        "--system-prompt",
        type=str,
        default=_UNSET,
        help="Replace the built-in instructions (the environment banner is kept).",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress diagnostics; only print the model's text.",
    )
    parser.add_argument(
        "--log-level",
        choices=["debug", "info", "warning", "error"],
        default=None,
        help="Enable diagnostic logging on stderr at this level.",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON report of the run to FILE. Requires a question; incompatible with --repl.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented configuration template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config: print the project (./ferry.toml) template.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("ferry")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project), end="")
        sys.exit(0)

    try:
        config = load_config(Path.cwd())
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)

    args.verbose = not args.quiet
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")
    if args.report and args.question is None:
        parser.error("--report requires a question")
    if args.max_depth < 0:
        parser.error("--max-depth must not be negative")
    if args.timeout <= 0:
        parser.error("--timeout must be positive")

    fmt.init(color=args.color, no_color=args.no_color)
    if args.log_level:
        fmt.init_logging(args.log_level)

    report = ReportCollector() if args.report else None

    def _write_report(outcome, answer=None, exit_code=0, error_message=None):
        if not report:
            return
        report.finalize(
            task=args.question or "",
            model=args.model,
            settings={
                "max_depth": args.max_depth,
                "max_output_tokens": args.max_output_tokens,
                "timeout": args.timeout,
                "safe_mode": args.safe,
            },
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            error_message=error_message,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        _run_main(args, report, _write_report)
    except AgentError as e:
        fmt.error(str(e))
        _write_report("error", exit_code=1, error_message=str(e))
        sys.exit(1)


def _run_main(args, report, _write_report):
    api_key = resolve_api_key()
    logger.debug("API key loaded")

    client = ModelClient(
        api_key,
        model=args.model,
        base_url=args.base_url,
        max_tokens=args.max_output_tokens,
        timeout=args.timeout,
    )
    registry = default_registry()
    system = build_system_prompt(args.system_prompt)
    gate = PermissionGate() if args.safe else None
    transcript = Transcript()

    if args.verbose:
        fmt.model_info(
            f"Model {client.model}, {len(registry)} tools: {', '.join(registry.names())}"
        )

    turn_kwargs = dict(
        client=client,
        registry=registry,
        system=system,
        gate=gate,
        max_depth=args.max_depth,
        verbose=args.verbose,
        on_text=_print_text,
    )

    if args.question is not None:
        answer, exhausted = run_turn(
            transcript, args.question, **turn_kwargs, report=report
        )
        if exhausted:
            fmt.warning("follow-up limit reached, the model did not finish.")
        if not args.repl:
            _write_report(
                "exhausted" if exhausted else "success",
                answer=answer,
                exit_code=2 if exhausted else 0,
            )
            if exhausted:
                sys.exit(2)
            return

    repl_loop(transcript, **turn_kwargs)


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Start a fresh conversation\n"
        "  exit, /exit, /quit Exit the session"
    )


def _is_exit(line: str) -> bool:
    return line.strip().lower() in ("exit", "/exit", "/quit")


def repl_loop(
    transcript: Transcript,
    *,
    client: ModelClient,
    registry: ToolRegistry,
    system: str,
    gate: PermissionGate | None = None,
    max_depth: int = DEFAULT_MAX_DEPTH,
    verbose: bool = True,
    on_text=_print_text,
) -> None:
    """Interactive read-eval-print loop. Input history is kept in memory only."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import InMemoryHistory

    session = PromptSession(history=InMemoryHistory())
    prompt_text = FormattedText([("bold fg:ansigreen", "You: ")])

    if verbose:
        fmt.repl_banner(gate is not None)

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = session.prompt(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        if _is_exit(line):
            logger.debug("User requested to exit")
            break
        line = line.strip()
        if not line:
            continue
        if line.lower() == "/help":
            _repl_help()
            continue
        if line.lower() == "/clear":
            dropped = len(transcript)
            transcript.clear()
            fmt.info(f"conversation cleared ({dropped} messages removed)")
            continue

        try:
            _, exhausted = run_turn(
                transcript,
                line,
                client=client,
                registry=registry,
                system=system,
                gate=gate,
                max_depth=max_depth,
                verbose=verbose,
                on_text=on_text,
            )
        except KeyboardInterrupt:
            closed = transcript.resolve_pending(INTERRUPTED_RESULT)
            logger.debug("Turn interrupted, %d pending tool uses closed", closed)
            fmt.warning("interrupted, message aborted.")
            continue
        except AgentError as e:
            transcript.resolve_pending(INTERRUPTED_RESULT)
            fmt.error(str(e))
            continue

        if exhausted:
            fmt.warning("follow-up limit reached for this message.")

    if verbose:
        fmt.info("Goodbye!")


if __name__ == "__main__":
    main()
