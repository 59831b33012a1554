"""Public library API for aria: Session class and Result dataclass."""

import threading
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path

from .config import AgentConfig
from .conversation import Conversation, Turn, UserMessage
from .report import ConfigError, ReportCollector


class SessionState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    ERRORED = "errored"


# LoopState value -> final session state
_LOOP_OUTCOMES = {
    "done": SessionState.COMPLETED,
    "aborted": SessionState.ABORTED,
    "errored": SessionState.ERRORED,
}


@dataclass
class Result:
    """Result of a session run or ask call."""

    answer: str | None
    state: SessionState
    reason: str | None
    steps: int
    transcript: tuple[Turn, ...]
    report: dict | None = None

    @property
    def exit_code(self) -> int:
        return {SessionState.COMPLETED: 0, SessionState.ABORTED: 2}.get(self.state, 1)


class Session:
    """Programmatic interface to the aria agent loop.

    Stores configuration as plain attributes. Call .run() for single-shot
    questions or .ask() for multi-turn conversations. cancel() may be
    called from another thread while a question is running.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        provider: str = "anthropic",
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        max_steps: int = 25,
        max_output_tokens: int = 8192,
        max_context_tokens: int | None = None,
        temperature: float | None = None,
        system_prompt: str | None = None,
        no_system_prompt: bool = False,
        command_timeout: int = 30,
        tree_max_depth: int = 8,
        tree_max_entries: int = 500,
        deny_patterns: list[str] | None = None,
        confirm_outside_writes: bool = True,
        yolo: bool = False,
        stream: bool = True,
        retry_max_attempts: int = 5,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 8.0,
        confirm=None,
        verbose: bool = False,
    ):
        self.base_dir = base_dir
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.max_steps = max_steps
        self.max_output_tokens = max_output_tokens
        self.max_context_tokens = max_context_tokens
        self.temperature = temperature
        self.system_prompt = system_prompt
        self.no_system_prompt = no_system_prompt
        self.command_timeout = command_timeout
        self.tree_max_depth = tree_max_depth
        self.tree_max_entries = tree_max_entries
        self.deny_patterns = list(deny_patterns or [])
        self.confirm_outside_writes = confirm_outside_writes
        self.yolo = yolo
        self.stream = stream
        self.retry_max_attempts = retry_max_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.confirm = confirm
        self.verbose = verbose

        # Setup state (cached after first _setup())
        self._setup_done = False
        self._config: AgentConfig | None = None
        self._client = None
        self._registry = None
        self._gate = None
        self._ctx = None
        self._retry = None
        self._context_length: int | None = None
        self._system_content: str | None = None

        self._cancel = threading.Event()
        self._state = SessionState.IDLE
        # Shared conversation for ask() mode
        self._conversation: Conversation | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def config(self) -> AgentConfig | None:
        return self._config

    def _setup(self) -> None:
        """Perform one-time setup: resolve provider, build registry, gate and prompt."""
        if self._setup_done:
            return

        from .agent import RetryPolicy, build_system_prompt
        from .provider import LiteLLMProvider, model_context_length, resolve_provider
        from .registry import build_registry
        from .safety import SafetyGate, SafetyPolicy
        from .tools import ToolContext

        base = Path(self.base_dir).resolve()
        if not base.is_dir():
            raise ConfigError(f"base directory is not a directory: {self.base_dir}")

        provider, model, api_key, base_url = resolve_provider(
            self.provider, self.model, self.api_key, self.base_url
        )
        self._config = AgentConfig(
            base_dir=base,
            provider=provider,
            model=model,
            api_key=api_key,
            base_url=base_url,
            max_output_tokens=self.max_output_tokens,
            max_context_tokens=self.max_context_tokens,
            temperature=self.temperature,
            max_steps=self.max_steps,
            system_prompt=build_system_prompt(
                self.system_prompt, self.no_system_prompt, base
            ),
            command_timeout=self.command_timeout,
            tree_max_depth=self.tree_max_depth,
            tree_max_entries=self.tree_max_entries,
            deny_patterns=tuple(self.deny_patterns),
            confirm_outside_writes=self.confirm_outside_writes,
            yolo=self.yolo,
            stream=self.stream,
            retry_max_attempts=self.retry_max_attempts,
            retry_base_delay=self.retry_base_delay,
            retry_max_delay=self.retry_max_delay,
        )
        cfg = self._config

        self._client = LiteLLMProvider(
            cfg.provider,
            cfg.model,
            api_key=cfg.api_key,
            base_url=cfg.base_url,
            temperature=cfg.temperature,
            stream=cfg.stream,
        )
        self._registry = build_registry()
        self._gate = SafetyGate(
            SafetyPolicy.with_extra_patterns(
                cfg.deny_patterns,
                confirm_outside_writes=cfg.confirm_outside_writes,
                auto_approve=cfg.yolo,
            ),
            cfg.base_dir,
        )
        self._ctx = ToolContext(
            working_dir=cfg.base_dir,
            command_timeout=cfg.command_timeout,
            tree_max_depth=cfg.tree_max_depth,
            tree_max_entries=cfg.tree_max_entries,
            cancel=self._cancel,
        )
        self._retry = RetryPolicy(
            base_delay=cfg.retry_base_delay,
            max_attempts=cfg.retry_max_attempts,
            max_delay=cfg.retry_max_delay,
        )
        self._context_length = cfg.max_context_tokens or model_context_length(
            cfg.provider, cfg.model
        )
        self._system_content = cfg.system_prompt

        if self.verbose:
            from . import fmt

            fmt.model_info(f"Using {cfg.provider} model {cfg.model}")
            if self._context_length:
                fmt.model_info(f"Context window: {self._context_length} tokens")

        self._setup_done = True

    def _history_budget(self) -> int | None:
        if self._context_length is None:
            return None
        return max(1, self._context_length - self._config.max_output_tokens)

    def _run_loop(
        self, conversation: Conversation, collector: ReportCollector | None
    ):
        from .agent import run_agent_loop

        on_text = None
        if self.verbose and self._config.stream:
            from . import fmt

            on_text = fmt.stream_text

        # max_steps may have been changed since setup (REPL /steps)
        if self._config.max_steps != self.max_steps:
            self._config = replace(self._config, max_steps=self.max_steps)

        self._cancel.clear()
        self._state = SessionState.RUNNING
        try:
            result = run_agent_loop(
                conversation,
                provider=self._client,
                registry=self._registry,
                gate=self._gate,
                ctx=self._ctx,
                max_steps=self._config.max_steps,
                max_output_tokens=self._config.max_output_tokens,
                context_length=self._context_length,
                history_budget=self._history_budget(),
                retry=self._retry,
                confirm=self.confirm,
                cancel=self._cancel,
                on_text=on_text,
                verbose=self.verbose,
                report=collector,
            )
        except BaseException:
            self._state = SessionState.ERRORED
            raise
        self._state = _LOOP_OUTCOMES[result.state.value]
        return result

    def run(self, question: str, *, report: bool = False) -> Result:
        """Single-shot: run a question with fresh state. Each call is independent."""
        self._setup()

        conversation = Conversation(self._system_content)
        conversation.append(UserMessage(question))
        collector = ReportCollector() if report else None

        loop_result = self._run_loop(conversation, collector)

        result = Result(
            answer=loop_result.answer,
            state=self._state,
            reason=loop_result.reason,
            steps=loop_result.steps,
            transcript=conversation.history(),
        )
        if collector:
            result.report = collector.build_report(
                task=question,
                model=self._config.model,
                provider=self._config.provider,
                settings=self._config.report_settings(),
                outcome=self._state.value,
                answer=result.answer,
                exit_code=result.exit_code,
                steps=loop_result.steps,
                error_message=loop_result.reason
                if self._state is SessionState.ERRORED
                else None,
            )
        return result

    def ask(self, question: str) -> Result:
        """Conversational: share context across questions (like the REPL)."""
        self._setup()

        if self._conversation is None:
            self._conversation = Conversation(self._system_content)
        conversation = self._conversation
        conversation.append(UserMessage(question))

        loop_result = self._run_loop(conversation, None)

        return Result(
            answer=loop_result.answer,
            state=self._state,
            reason=loop_result.reason,
            steps=loop_result.steps,
            transcript=conversation.history(),
        )

    def cancel(self) -> None:
        """Abort the running question at its next suspension point."""
        self._cancel.set()

    def reset(self) -> int:
        """Clear conversation state without invalidating setup. Next ask() starts fresh.

        Returns the number of turns dropped.
        """
        removed = len(self._conversation) if self._conversation is not None else 0
        self._conversation = None
        self._state = SessionState.IDLE
        return removed

    def compact(self) -> tuple[int, int]:
        """Drop older turns of the shared conversation down to half its size.

        Returns (tokens_before, tokens_after).
        """
        if self._conversation is None:
            return 0, 0
        tools = self._registry.schemas()
        before = self._conversation.estimate_tokens(tools)
        self._conversation.truncate_to_budget(max(1, before // 2), tools=tools)
        return before, self._conversation.estimate_tokens(tools)
