"""Public library API for ferry: Session class and Result dataclass."""

from dataclasses import dataclass

from .client import DEFAULT_BASE_URL, DEFAULT_MAX_TOKENS, DEFAULT_MODEL, DEFAULT_TIMEOUT
from .messages import Transcript
from .report import AgentError, ReportCollector


@dataclass
class Result:
    """Result of a session run or ask call."""

    answer: str
    exhausted: bool
    messages: list[dict]
    report: dict | None


class Session:
    """Programmatic interface to the ferry agent loop.

    Stores configuration as plain attributes. Call .run() for single-shot
    questions or .ask() for multi-turn conversations.
    """

    def __init__(
        self,
        *,
        api_key: str | None = None,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_BASE_URL,
        max_tokens: int = DEFAULT_MAX_TOKENS,
        timeout: float = DEFAULT_TIMEOUT,
        max_depth: int = 25,
        safe_mode: bool = False,
        system_prompt: str | None = None,
        verbose: bool = False,
        registry=None,
        gate=None,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.timeout = timeout
        self.max_depth = max_depth
        self.safe_mode = safe_mode
        self.system_prompt = system_prompt
        self.verbose = verbose
        self.registry = registry
        self.gate = gate

        self._setup_done = False
        self._client = None
        self._system: str | None = None

        # Conversation kept across ask() calls
        self._transcript: Transcript | None = None

    def _setup(self) -> None:
        """Resolve the API key, tools and system prompt once."""
        if self._setup_done:
            return

        from .agent import build_system_prompt, resolve_api_key
        from .client import ModelClient
        from .permission import PermissionGate
        from .tools import default_registry

        api_key = self.api_key or resolve_api_key()
        self._client = ModelClient(
            api_key,
            model=self.model,
            base_url=self.base_url,
            max_tokens=self.max_tokens,
            timeout=self.timeout,
        )
        if self.registry is None:
            self.registry = default_registry()
        if self.gate is None and self.safe_mode:
            self.gate = PermissionGate()
        self._system = build_system_prompt(self.system_prompt)

        if self.verbose:
            from . import fmt

            fmt.init()

        self._setup_done = True

    def _turn(self, transcript: Transcript, question: str, report=None):
        from .agent import run_turn

        return run_turn(
            transcript,
            question,
            client=self._client,
            registry=self.registry,
            system=self._system,
            gate=self.gate,
            max_depth=self.max_depth,
            verbose=self.verbose,
            report=report,
        )

    def run(self, question: str, *, report: bool = False) -> Result:
        """Single-shot: run a question with a fresh transcript. Each call is independent."""
        self._setup()

        transcript = Transcript()
        collector = ReportCollector() if report else None
        answer, exhausted = self._turn(transcript, question, report=collector)

        report_dict = None
        if collector:
            report_dict = collector.build_report(
                task=question,
                model=self.model,
                settings={
                    "max_depth": self.max_depth,
                    "max_output_tokens": self.max_tokens,
                    "timeout": self.timeout,
                    "safe_mode": self.gate is not None,
                },
                outcome="exhausted" if exhausted else "success",
                answer=answer,
                exit_code=2 if exhausted else 0,
            )

        return Result(
            answer=answer,
            exhausted=exhausted,
            messages=transcript.to_wire(),
            report=report_dict,
        )

    def ask(self, question: str) -> Result:
        """Conversational: share context across questions (like the REPL)."""
        self._setup()

        if self._transcript is None:
            self._transcript = Transcript()
        try:
            answer, exhausted = self._turn(self._transcript, question)
        except (KeyboardInterrupt, AgentError):
            from .agent import INTERRUPTED_RESULT

            self._transcript.resolve_pending(INTERRUPTED_RESULT)
            raise

        return Result(
            answer=answer,
            exhausted=exhausted,
            messages=self._transcript.to_wire(),
            report=None,
        )

    def reset(self) -> None:
        """Clear conversation state without invalidating setup. Next ask() starts fresh."""
        self._transcript = None
