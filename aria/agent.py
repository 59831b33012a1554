import argparse
import json
import logging
import random
import sys
import threading
import time
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from importlib import metadata
from pathlib import Path
from typing import Callable

from . import fmt
from .config import (
    _UNSET,
    ConfigError,
    apply_config_to_args,
    generate_config,
    global_config_dir,
    load_config,
    project_config_path,
)
from .conversation import (
    AssistantMessage,
    Conversation,
    Failure,
    FailureKind,
    Success,
    ToolCall,
    ToolOutcome,
    ToolResult,
    UserMessage,
)
from .provider import (
    ProviderClient,
    ProviderResponse,
    clamp_output_tokens,
    new_call_id,
)
from .registry import SchemaError, ToolRegistry, UnknownToolError
from .report import (
    AgentError,
    Cancelled,
    ContextOverflowError,
    FatalProviderError,
    ProviderError,
    ReportCollector,
    TransientProviderError,
    write_report,
)
from .safety import Decision, SafetyGate, command_line
from .tools import ToolContext

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"
MAX_ARG_LOG = 1000
KEEP_RECENT_UNITS = 3

CONTINUE_NUDGE = (
    "Your response was cut off. Please use the provided tools to complete "
    "the task step by step."
)


class LoopState(Enum):
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    DONE = "done"
    ABORTED = "aborted"
    ERRORED = "errored"


@dataclass(frozen=True)
class LoopResult:
    state: LoopState
    answer: str | None
    reason: str | None
    steps: int


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff for transient provider failures.

    max_attempts counts every try, the first one included.
    """

    base_delay: float = 0.5
    factor: float = 2.0
    max_attempts: int = 5
    max_delay: float = 8.0
    jitter: float = 0.1

    def delay(self, attempt: int, retry_after: float | None = None) -> float:
        if retry_after is not None:
            return min(retry_after, self.max_delay)
        base = self.base_delay * self.factor ** (attempt - 1)
        return min(base * (1 + random.uniform(0, self.jitter)), self.max_delay)


ConfirmFn = Callable[[ToolCall, str], bool]


def build_system_prompt(
    system_prompt: str | None, no_system_prompt: bool, base_dir: str | Path
) -> str | None:
    """The system message for a session, or None when disabled."""
    if no_system_prompt:
        return None
    if system_prompt:
        return system_prompt
    content = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8").rstrip()
    now = datetime.now().astimezone()
    content += f"\n\nWorking directory: {Path(base_dir).resolve()}"
    content += f"\nCurrent date and time: {now.strftime('%Y-%m-%d %H:%M %Z')}"
    return content


def _is_cancelled(cancel: threading.Event | None) -> bool:
    return cancel is not None and cancel.is_set()


def _pretty_args(call: ToolCall) -> str:
    if call.arguments is None:
        pretty = call.raw_arguments
    else:
        pretty = json.dumps(call.arguments, indent=2, ensure_ascii=False)
    if len(pretty) > MAX_ARG_LOG:
        pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
    return pretty


def _truncate_history(
    conversation: Conversation,
    budget: int,
    tools: list,
    step: int,
    verbose: bool,
    report: ReportCollector | None,
) -> int:
    before = conversation.estimate_tokens(tools)
    dropped = conversation.truncate_to_budget(budget, KEEP_RECENT_UNITS, tools)
    if dropped:
        after = conversation.estimate_tokens(tools)
        logger.info("truncated %d turns (%d -> %d tokens)", dropped, before, after)
        if report:
            report.record_truncation(step, dropped, before, after)
        if verbose:
            fmt.truncation(dropped, before, after)
    return dropped


def _call_provider(
    conversation: Conversation,
    provider: ProviderClient,
    tools: list,
    *,
    step: int,
    max_output_tokens: int,
    context_length: int | None,
    retry: RetryPolicy,
    cancel: threading.Event | None,
    on_text: Callable[[str], None] | None,
    verbose: bool,
    report: ReportCollector | None,
) -> ProviderResponse:
    """One model exchange, with retries and one overflow recovery.

    Never appends to the conversation, so a retried request cannot leave
    duplicate turns behind. Raises ProviderError or Cancelled.
    """
    attempt = 0
    overflow_recovered = False
    while True:
        attempt += 1
        token_est = conversation.estimate_tokens(tools)
        effective_max_output = clamp_output_tokens(
            conversation, tools, context_length, max_output_tokens
        )
        if effective_max_output != max_output_tokens and verbose:
            fmt.info(
                f"Output tokens clamped: {max_output_tokens} -> {effective_max_output} "
                f"(context_length={context_length}, prompt=~{token_est})"
            )

        t0 = time.monotonic()
        try:
            if verbose and on_text is None:
                with fmt.llm_spinner():
                    response = provider.send(
                        conversation,
                        tools,
                        max_output_tokens=effective_max_output,
                        cancel=cancel,
                        on_text=on_text,
                    )
            else:
                response = provider.send(
                    conversation,
                    tools,
                    max_output_tokens=effective_max_output,
                    cancel=cancel,
                    on_text=on_text,
                )
        except ContextOverflowError as e:
            elapsed = time.monotonic() - t0
            if report:
                report.record_llm_call(
                    step, elapsed, token_est, "context_overflow", attempt=attempt, error=str(e)
                )
            if overflow_recovered:
                raise FatalProviderError(
                    "context window exceeded even after truncation"
                ) from e
            overflow_recovered = True
            if verbose:
                fmt.warning("context window exceeded, dropping older turns...")
            dropped = _truncate_history(
                conversation, max(1, token_est // 2), tools, step, verbose, report
            )
            if not dropped:
                raise FatalProviderError(
                    "context window exceeded and no older turns can be dropped"
                ) from e
            attempt -= 1
            continue
        except TransientProviderError as e:
            elapsed = time.monotonic() - t0
            if report:
                report.record_llm_call(
                    step, elapsed, token_est, "error", attempt=attempt, error=str(e)
                )
            if attempt >= retry.max_attempts:
                raise TransientProviderError(
                    f"{e} (gave up after {attempt} attempts)"
                ) from e
            delay = retry.delay(attempt, e.retry_after)
            logger.info("transient provider error, retrying in %.2fs: %s", delay, e)
            if report:
                report.record_retry(step, attempt, delay, str(e))
            if verbose:
                if on_text is not None:
                    fmt.stream_end()
                fmt.retry(attempt, retry.max_attempts - 1, delay, str(e))
            if cancel is not None:
                if cancel.wait(delay):
                    raise Cancelled("cancelled during retry backoff") from e
            else:
                time.sleep(delay)
            continue
        except ProviderError as e:
            elapsed = time.monotonic() - t0
            if report:
                report.record_llm_call(
                    step, elapsed, token_est, "error", attempt=attempt, error=str(e)
                )
            raise

        elapsed = time.monotonic() - t0
        if verbose:
            if on_text is not None and response.text:
                fmt.stream_end()
            fmt.llm_timing(elapsed, response.finish_reason)
        if report:
            report.record_llm_call(
                step, elapsed, token_est, response.finish_reason, attempt=attempt
            )
        return response


def _confirm_call(
    call: ToolCall, reason: str, gate: SafetyGate, confirm: ConfirmFn | None
) -> bool:
    if gate.policy.auto_approve:
        logger.info("auto-approved %s (%s): %s", call.name, call.id, reason)
        return True
    if confirm is None:
        return False
    return bool(confirm(call, reason))


def _unique_calls(conversation: Conversation, calls) -> tuple[ToolCall, ...]:
    """Re-key calls whose id was already used earlier in the conversation or batch.

    Some local OpenAI-compatible servers number tool calls per response
    (``call_0``, ``call_1``...) so ids repeat across turns.
    """
    seen: set[str] = set()
    unique = []
    for call in calls:
        if call.id in seen or conversation.has_call_id(call.id):
            fresh = new_call_id()
            logger.debug("tool call id %r already used, replaced with %r", call.id, fresh)
            call = replace(call, id=fresh)
        seen.add(call.id)
        unique.append(call)
    return tuple(unique)


def _run_executor(spec, call: ToolCall, ctx: ToolContext) -> ToolOutcome:
    try:
        outcome = spec.executor(call.arguments, ctx)
    except KeyboardInterrupt:
        raise
    except Exception as e:
        logger.debug("executor %s raised", call.name, exc_info=True)
        return Failure(FailureKind.EXECUTION_ERROR, f"{type(e).__name__}: {e}")
    if not isinstance(outcome, (Success, Failure)):
        return Failure(
            FailureKind.EXECUTION_ERROR, f"{call.name} returned {type(outcome).__name__}"
        )
    return outcome


def execute_tool_call(
    call: ToolCall,
    *,
    registry: ToolRegistry,
    gate: SafetyGate,
    ctx: ToolContext,
    confirm: ConfirmFn | None = None,
    verbose: bool = False,
    report: ReportCollector | None = None,
    step: int = 0,
) -> ToolOutcome:
    """Validate, gate and run a single call. Always returns an outcome.

    The gate is consulted for every well-formed call before its executor
    is reached; nothing else in the package calls executors.
    """
    if verbose:
        fmt.tool_call(call.name, _pretty_args(call))

    t0 = time.monotonic()
    decision = "allow"
    if call.arguments is None:
        outcome = Failure(
            FailureKind.SCHEMA_ERROR,
            f"arguments are not a JSON object: {call.raw_arguments[:200]!r}",
        )
        decision = "invalid"
    else:
        try:
            registry.validate(call.name, call.arguments)
        except UnknownToolError:
            outcome = Failure(
                FailureKind.UNKNOWN_TOOL,
                f"no tool named {call.name!r}; available: {', '.join(registry.names())}",
            )
            decision = "invalid"
        except SchemaError as e:
            outcome = Failure(FailureKind.SCHEMA_ERROR, str(e))
            decision = "invalid"
        else:
            spec = registry.lookup(call.name)
            verdict = gate.check(call)
            decision = verdict.decision.value
            if verdict.decision is Decision.DENY:
                if verbose:
                    fmt.gate_blocked(call.name, verdict.reason)
                outcome = Failure(FailureKind.BLOCKED, verdict.reason)
            elif verdict.decision is Decision.REQUIRE_CONFIRMATION:
                if verbose:
                    fmt.confirmation_needed(call.name, verdict.reason)
                if _confirm_call(call, verdict.reason, gate, confirm):
                    outcome = _run_executor(spec, call, ctx)
                else:
                    outcome = Failure(
                        FailureKind.BLOCKED, f"not approved by the user: {verdict.reason}"
                    )
            else:
                outcome = _run_executor(spec, call, ctx)
    elapsed = time.monotonic() - t0

    content = outcome.to_content()
    if verbose:
        if outcome.ok:
            fmt.tool_result(call.name, elapsed, content[:500])
        elif outcome.kind is not FailureKind.BLOCKED:
            fmt.tool_error(call.name, content)
    if report:
        report.record_tool_call(
            step,
            call.name,
            call.arguments,
            decision,
            str(outcome.kind),
            elapsed,
            len(content),
        )
    return outcome


def _abort(
    conversation: Conversation, steps: int, reason: str, verbose: bool
) -> LoopResult:
    cancelled = conversation.cancel_pending(reason)
    if cancelled:
        logger.info("answered %d pending calls with Cancelled", cancelled)
    if verbose:
        fmt.completion(steps, LoopState.ABORTED.value, reason)
    return LoopResult(LoopState.ABORTED, None, reason, steps)


def run_agent_loop(
    conversation: Conversation,
    *,
    provider: ProviderClient,
    registry: ToolRegistry,
    gate: SafetyGate,
    ctx: ToolContext,
    max_steps: int,
    max_output_tokens: int,
    context_length: int | None = None,
    history_budget: int | None = None,
    retry: RetryPolicy | None = None,
    confirm: ConfirmFn | None = None,
    cancel: threading.Event | None = None,
    on_text: Callable[[str], None] | None = None,
    verbose: bool = False,
    report: ReportCollector | None = None,
) -> LoopResult:
    """Drive the conversation until the model answers or the loop stops.

    The conversation must end with a user turn. Each entry into the
    AwaitingModel state is one step; after max_steps entries the next one
    aborts instead of calling the model.
    """
    retry = retry or RetryPolicy()
    tools = registry.schemas()
    steps = 0
    state = LoopState.AWAITING_MODEL

    try:
        while True:
            if _is_cancelled(cancel):
                return _abort(conversation, steps, "cancelled", verbose)
            if steps >= max_steps:
                reason = f"step ceiling reached ({max_steps})"
                if verbose:
                    fmt.completion(steps, LoopState.ABORTED.value, reason)
                return LoopResult(
                    LoopState.ABORTED, conversation.last_assistant_text(), reason, steps
                )

            steps += 1
            state = LoopState.AWAITING_MODEL
            logger.debug("step %d: %s", steps, state.value)
            if history_budget is not None:
                _truncate_history(
                    conversation, history_budget, tools, steps, verbose, report
                )
            if verbose:
                fmt.step_header(steps, max_steps, conversation.estimate_tokens(tools))

            try:
                response = _call_provider(
                    conversation,
                    provider,
                    tools,
                    step=steps,
                    max_output_tokens=max_output_tokens,
                    context_length=context_length,
                    retry=retry,
                    cancel=cancel,
                    on_text=on_text,
                    verbose=verbose,
                    report=report,
                )
            except ProviderError as e:
                logger.info("provider failure: %s", e)
                if verbose:
                    fmt.completion(steps, LoopState.ERRORED.value, str(e))
                return LoopResult(LoopState.ERRORED, None, str(e), steps)

            calls = _unique_calls(conversation, response.tool_calls)
            conversation.append(AssistantMessage(response.text, calls))

            if not calls:
                if response.finish_reason == "length":
                    # Output was truncated before the model could finish;
                    # nudge it to continue using tools instead of quitting.
                    if verbose:
                        fmt.info(
                            "Response truncated (finish_reason=length), prompting continuation."
                        )
                    conversation.append(UserMessage(CONTINUE_NUDGE))
                    continue
                state = LoopState.DONE
                if verbose:
                    fmt.completion(steps, state.value)
                return LoopResult(state, response.text or "", None, steps)

            # Intermediate reasoning text that was not streamed already
            if response.text and verbose and on_text is None:
                fmt.assistant_text(response.text)

            state = LoopState.EXECUTING_TOOLS
            logger.debug("step %d: %s (%d calls)", steps, state.value, len(calls))
            for call in calls:
                if _is_cancelled(cancel):
                    return _abort(conversation, steps, "cancelled", verbose)
                outcome = execute_tool_call(
                    call,
                    registry=registry,
                    gate=gate,
                    ctx=ctx,
                    confirm=confirm,
                    verbose=verbose,
                    report=report,
                    step=steps,
                )
                conversation.append(ToolResult(call.id, outcome))

            if verbose:
                fmt.context_stats(
                    f"Context after step {steps}", conversation.estimate_tokens(tools)
                )
    except Cancelled as e:
        return _abort(conversation, steps, str(e) or "cancelled", verbose)
    except KeyboardInterrupt:
        return _abort(conversation, steps, "interrupted", verbose)


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="aria",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options] [question]",
        description="A terminal coding agent that reads, writes and runs things in your project.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Write a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, write <base-dir>/aria.toml instead of the global config.",
    )
    parser.add_argument(
        "--provider",
        choices=["anthropic", "openai", "openrouter", "lmstudio"],
        default=_UNSET,
        help="Model provider (default: anthropic).",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=_UNSET,
        help="Model identifier (default for anthropic: claude-3-7-sonnet-20250219).",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Server base URL (default: http://127.0.0.1:1234 for lmstudio).",
    )
    parser.add_argument(
        "--max-context-tokens",
        type=int,
        default=_UNSET,
        help="Context window of the model; older turns are dropped to stay inside it.",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per response (default: 8192).",
    )
    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    parser.add_argument(
        "--no-stream",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Wait for whole responses instead of streaming them.",
    )

    prompt_group = parser.add_mutually_exclusive_group()
    prompt_group.add_argument(
        "--system-prompt",
        type=str,
        default=_UNSET,
        help="System prompt to use instead of the built-in one.",
    )
    prompt_group.add_argument(
        "--no-system-prompt",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Omit the system message entirely.",
    )

    parser.add_argument(
        "-q",
        "--quiet",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log internal decisions (gate verdicts, retries, truncation) to stderr.",
    )
    parser.add_argument(
        "--max-steps",
        type=int,
        default=_UNSET,
        help="Maximum model requests per task (default: 25).",
    )
    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Working directory for tools (default: current directory).",
    )
    parser.add_argument(
        "--command-timeout",
        type=int,
        default=_UNSET,
        help="Default run_command timeout in seconds (default: 30).",
    )
    parser.add_argument(
        "--tree-max-depth",
        type=int,
        default=_UNSET,
        help="Deepest level the tree tool descends to (default: 8).",
    )
    parser.add_argument(
        "--tree-max-entries",
        type=int,
        default=_UNSET,
        help="Most entries the tree tool returns (default: 500).",
    )
    parser.add_argument(
        "--deny-pattern",
        type=str,
        action="append",
        default=None,
        metavar="REGEX",
        help="Extra regex that blocks matching commands (repeatable).",
    )
    parser.add_argument(
        "--yolo",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Approve confirmations automatically. Denied commands stay denied.",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON audit report to FILE. Incompatible with --repl.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_const",
        const=True,
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


def _setup_logging(debug: bool) -> None:
    if not debug:
        return
    from rich.logging import RichHandler

    logging.basicConfig(
        level=logging.DEBUG,
        format="%(message)s",
        handlers=[RichHandler(console=fmt.console(), show_path=False)],
    )
    # LiteLLM is very chatty at DEBUG
    logging.getLogger("LiteLLM").setLevel(logging.INFO)


def _init_config(args) -> int:
    path = (
        project_config_path(args.base_dir)
        if args.project
        else global_config_dir() / "config.toml"
    )
    if path.exists():
        fmt.error(f"{path} already exists, not overwriting")
        return 1
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(generate_config(project=args.project), encoding="utf-8")
    except OSError as e:
        fmt.error(f"cannot write {path}: {e}")
        return 1
    print(path)
    return 0


def prompt_confirm(call: ToolCall, reason: str) -> bool:
    """Ask on the terminal whether a gated call may run."""
    from prompt_toolkit.shortcuts import confirm

    if call.name == "run_command":
        target = command_line(call.arguments or {})
    else:
        target = (call.arguments or {}).get("path", "")
    return confirm(f"Allow {call.name} {target}? ({reason})")


def main():
    parser = build_parser()
    args = parser.parse_args()

    # Handle --version first
    if args.version:
        try:
            version = metadata.version("aria")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        sys.exit(_init_config(args))
    if args.project:
        parser.error("--project only makes sense with --init-config")
    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")

    try:
        config = load_config(args.base_dir)
    except ConfigError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, config)
    args.verbose = not args.quiet

    fmt.init(color=args.color, no_color=args.no_color)
    _setup_logging(args.debug)

    if (
        args.max_context_tokens is not None
        and args.max_output_tokens > args.max_context_tokens
    ):
        parser.error(
            "--max-output-tokens must be <= --max-context-tokens when both are specified."
        )

    session = _session_from_args(args)
    try:
        if args.repl:
            code = _run_repl(session, args)
        else:
            code = _run_once(session, args)
    except AgentError as e:
        fmt.error(str(e))
        if args.report:
            _write_error_report(args, str(e))
        sys.exit(1)
    sys.exit(code)


def _session_from_args(args):
    from .session import Session

    confirm = None
    if args.repl or sys.stdin.isatty():
        confirm = prompt_confirm
    return Session(
        base_dir=args.base_dir,
        provider=args.provider,
        model=args.model,
        api_key=args.api_key,
        base_url=args.base_url,
        max_steps=args.max_steps,
        max_output_tokens=args.max_output_tokens,
        max_context_tokens=args.max_context_tokens,
        temperature=args.temperature,
        system_prompt=args.system_prompt,
        no_system_prompt=args.no_system_prompt,
        command_timeout=args.command_timeout,
        tree_max_depth=args.tree_max_depth,
        tree_max_entries=args.tree_max_entries,
        deny_patterns=args.deny_pattern,
        confirm_outside_writes=args.confirm_outside_writes,
        yolo=args.yolo,
        stream=not args.no_stream,
        retry_max_attempts=args.retry_max_attempts,
        retry_base_delay=args.retry_base_delay,
        retry_max_delay=args.retry_max_delay,
        confirm=confirm,
        verbose=args.verbose,
    )


def _write_error_report(args, message: str) -> None:
    report = ReportCollector().build_report(
        task=args.question or "",
        model=args.model or "unknown",
        provider=args.provider,
        settings={},
        outcome="errored",
        answer=None,
        exit_code=1,
        steps=0,
        error_message=message,
    )
    _save_report(args, report)


def _save_report(args, report: dict) -> None:
    try:
        write_report(args.report, report)
    except OSError as e:
        fmt.error(f"Failed to write report to {args.report}: {e}")
        return
    if args.verbose:
        fmt.info(f"Report written to {args.report}")


def _run_once(session, args) -> int:
    result = session.run(args.question, report=bool(args.report))
    if result.answer is not None:
        print(result.answer)
    if args.report and result.report is not None:
        _save_report(args, result.report)
    code = result.exit_code
    if code == 1:
        fmt.error(result.reason or "agent failed")
    elif code == 2:
        fmt.warning(f"agent stopped: {result.reason}")
    return code


# ---------------------------------------------------------------------------
# REPL command helpers
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Reset conversation to initial state\n"
        "  /compact           Drop older turns to shrink the context\n"
        "  /steps [N]         Show or set the step ceiling per question\n"
        "  /exit, /quit       Exit the REPL"
    )


def _repl_steps(session, arg: str) -> None:
    arg = arg.strip()
    if not arg:
        fmt.info(f"max steps: {session.max_steps}")
        return
    try:
        n = int(arg)
    except ValueError:
        fmt.warning(f"invalid number: {arg}")
        return
    if n < 1:
        fmt.warning("max steps must be at least 1")
        return
    session.max_steps = n
    fmt.info(f"max steps set to {n}")


def _repl_compact(session) -> None:
    before, after = session.compact()
    fmt.info(f"compacted: {before} -> {after} tokens ({before - after} saved)")


def _repl_answer(session, args, question: str) -> None:
    try:
        result = session.ask(question)
    except KeyboardInterrupt:
        fmt.warning("interrupted, question aborted.")
        return
    streamed = args.verbose and not args.no_stream
    if result.answer is not None and not streamed:
        print(result.answer)
    code = result.exit_code
    if code == 1:
        fmt.error(result.reason or "agent failed")
    elif code == 2:
        fmt.warning(f"question aborted: {result.reason}")


def _run_repl(session, args) -> int:
    if args.question:
        _repl_answer(session, args, args.question)
    repl_loop(session, args)
    return 0


def repl_loop(session, args) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = Path(args.base_dir) / ".aria" / "repl_history"
    history_path.parent.mkdir(parents=True, exist_ok=True)
    prompt_session = PromptSession(
        history=FileHistory(str(history_path)),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "aria> ")])

    if args.verbose:
        fmt.repl_banner()

    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = prompt_session.prompt(prompt_text)
        except KeyboardInterrupt:
            continue  # Ctrl-C on an empty prompt just clears the line
        except EOFError:
            print(file=sys.stderr)  # newline after ^D
            break

        line = line.strip()
        if not line:
            continue

        # REPL commands; only intercept known commands, unknown /foo passes through
        if line in ("/exit", "/quit"):
            break

        cmd_parts = line.split(None, 1)
        cmd = cmd_parts[0].lower()
        cmd_arg = cmd_parts[1] if len(cmd_parts) > 1 else ""

        if cmd == "/help":
            _repl_help()
            continue
        elif cmd == "/clear":
            removed = session.reset()
            fmt.info(f"context cleared ({removed} turns removed)")
            continue
        elif cmd == "/compact":
            _repl_compact(session)
            continue
        elif cmd == "/steps":
            _repl_steps(session, cmd_arg)
            continue

        _repl_answer(session, args, line)


if __name__ == "__main__":
    main()
