"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.rule import Rule
from rich.text import Text

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


def console() -> Console:
    return _console


# -- Step structure ----------------------------------------------------------


def step_header(n: int, max_n: int, token_est: int) -> None:
    title = f"Step {n}/{max_n} (~{token_est} tokens)"
    _console.print(Rule(title, style="cyan"))


def llm_timing(elapsed: float, finish_reason: str | None) -> None:
    style = "green" if finish_reason in ("stop", "tool_calls") else "yellow"
    text = Text()
    text.append(f"  Model responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={finish_reason}", style=style)
    _console.print(text)


def llm_spinner(label: str = "Waiting for model"):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {label}", spinner="dots")


def retry(attempt: int, max_attempts: int, delay: float, reason: str) -> None:
    line = Text()
    line.append(f"  ↻ Retry {attempt}/{max_attempts} in {delay:.1f}s: ", style="yellow")
    line.append(reason, style="dim yellow")
    _console.print(line)


def completion(steps: int, outcome: str, reason: str | None = None) -> None:
    if outcome == "done":
        _console.print(
            Text(f"  ✓ Agent finished: {steps} steps", style="bold green")
        )
    else:
        msg = f"  Agent stopped after {steps} steps: {outcome}"
        if reason:
            msg += f" ({reason})"
        _console.print(Text(msg, style="bold red"))


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, preview: str) -> None:
    header = Text()
    header.append(f"  ✓ {name}", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def gate_blocked(name: str, reason: str) -> None:
    line = Text()
    line.append(f"  ⛔ {name} blocked: ", style="bold red")
    line.append(reason, style="red")
    _console.print(line)


def confirmation_needed(name: str, reason: str) -> None:
    line = Text()
    line.append(f"  ? {name} needs confirmation: ", style="bold yellow")
    line.append(reason, style="yellow")
    _console.print(line)


# -- Assistant text ----------------------------------------------------------


def stream_text(delta: str) -> None:
    """Write a streamed text fragment without a trailing newline."""
    _console.print(delta, end="", markup=False, highlight=False, soft_wrap=True)


def stream_end() -> None:
    _console.print()


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


# -- Diagnostics -------------------------------------------------------------


def model_info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def context_stats(label: str, tokens: int) -> None:
    _console.print(Text(f"  {label}: ~{tokens} tokens", style="dim"))


def truncation(dropped: int, before: int, after: int) -> None:
    _console.print(
        Text(
            f"  Context truncated: dropped {dropped} turns (~{before} -> ~{after} tokens)",
            style="yellow",
        )
    )


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(
        Text("Interactive mode. Type /help for commands, /exit or Ctrl-D to quit.", style="dim")
    )
