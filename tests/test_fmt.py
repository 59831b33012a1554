"""Tests for the fmt module (ANSI-formatted output helpers)."""

from io import StringIO

from rich.console import Console

from aria import fmt


def _capture(func, *args, **kwargs):
    """Call a fmt function with a captured console and return plain-text output."""
    buf = StringIO()
    old = fmt._console
    fmt._console = Console(file=buf, no_color=True, width=80)
    try:
        func(*args, **kwargs)
    finally:
        fmt._console = old
    return buf.getvalue()


class TestStepHeader:
    def test_contains_step_info(self):
        out = _capture(fmt.step_header, 3, 25, 4200)
        assert "Step 3/25" in out
        assert "4200 tokens" in out


class TestLlmTiming:
    def test_stop_reason(self):
        out = _capture(fmt.llm_timing, 1.4, "stop")
        assert "Model responded in 1.4s" in out
        assert "finish_reason=stop" in out

    def test_none_reason(self):
        assert "finish_reason=None" in _capture(fmt.llm_timing, 0.2, None)


class TestRetry:
    def test_shows_attempt_and_delay(self):
        out = _capture(fmt.retry, 2, 4, 1.5, "rate limited")
        assert "Retry 2/4 in 1.5s" in out
        assert "rate limited" in out


class TestCompletion:
    def test_done(self):
        assert "Agent finished: 3 steps" in _capture(fmt.completion, 3, "done")

    def test_aborted_with_reason(self):
        out = _capture(fmt.completion, 25, "aborted", "step ceiling reached (25)")
        assert "aborted" in out
        assert "step ceiling reached (25)" in out


class TestToolOutput:
    def test_tool_call_prints_arguments(self):
        out = _capture(fmt.tool_call, "read_file", '{\n  "path": "a.txt"\n}')
        assert "read_file" in out
        assert '"path": "a.txt"' in out

    def test_gate_blocked(self):
        out = _capture(fmt.gate_blocked, "run_command", "matches deny pattern")
        assert "run_command blocked" in out
        assert "matches deny pattern" in out

    def test_confirmation_needed(self):
        out = _capture(fmt.confirmation_needed, "write_file", "outside root")
        assert "write_file needs confirmation" in out

    def test_markup_in_output_not_interpreted(self):
        out = _capture(fmt.tool_error, "run_command", "error: [bold]x[/bold]")
        assert "[bold]x[/bold]" in out


class TestStreaming:
    def test_fragments_join_without_newlines(self):
        def stream():
            fmt.stream_text("Hel")
            fmt.stream_text("lo [b]")
            fmt.stream_end()

        assert _capture(stream) == "Hello [b]\n"


class TestDiagnostics:
    def test_truncation(self):
        out = _capture(fmt.truncation, 4, 9000, 3000)
        assert "dropped 4 turns" in out
        assert "9000" in out and "3000" in out

    def test_warning_and_error(self):
        assert "Warning: careful" in _capture(fmt.warning, "careful")
        assert "Error: broken" in _capture(fmt.error, "broken")


class TestInit:
    def test_no_color(self):
        old = fmt._console
        try:
            fmt.init(no_color=True)
            assert fmt.console().no_color
        finally:
            fmt._console = old

    def test_force_color(self):
        old = fmt._console
        try:
            fmt.init(color=True)
            assert fmt.console().is_terminal
        finally:
            fmt._console = old
