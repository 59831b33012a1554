"""Error types and the JSON audit report."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the agent loop or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad API key, etc.)."""


class Cancelled(AgentError):
    """Raised when the session's cancellation token fires mid-operation."""


class ProviderError(AgentError):
    """A failed exchange with the model provider."""


class TransientProviderError(ProviderError):
    """Timeouts, rate limits, 5xx: worth retrying."""

    def __init__(self, message: str, retry_after: float | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class FatalProviderError(ProviderError):
    """Auth failures, malformed requests, other 4xx: the session cannot go on."""


class ContextOverflowError(FatalProviderError):
    """Raised when the LLM call fails due to context window overflow."""


class ReportCollector:
    """Accumulates events during an agent run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.gate_stats = {"allow": 0, "require_confirmation": 0, "deny": 0}
        self.truncations = 0
        self.retries = 0
        self.llm_calls = 0
        self.total_llm_time = 0.0
        self.total_tool_time = 0.0

    def record_llm_call(
        self,
        step: int,
        duration: float,
        token_est: int,
        finish_reason: str | None,
        *,
        attempt: int = 1,
        error: str | None = None,
    ):
        self.llm_calls += 1
        self.total_llm_time += duration
        event = {
            "step": step,
            "type": "llm_call",
            "attempt": attempt,
            "duration_s": round(duration, 3),
            "prompt_tokens_est": token_est,
            "finish_reason": finish_reason,
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def record_retry(self, step: int, attempt: int, delay: float, reason: str):
        self.retries += 1
        self.events.append(
            {
                "step": step,
                "type": "retry",
                "attempt": attempt,
                "delay_s": round(delay, 3),
                "reason": reason,
            }
        )

    def record_truncation(
        self, step: int, dropped_turns: int, tokens_before: int, tokens_after: int
    ):
        self.truncations += 1
        self.events.append(
            {
                "step": step,
                "type": "truncation",
                "dropped_turns": dropped_turns,
                "tokens_before": tokens_before,
                "tokens_after": tokens_after,
            }
        )

    def record_tool_call(
        self,
        step: int,
        name: str,
        arguments: dict | None,
        decision: str,
        outcome_kind: str,
        duration: float,
        result_length: int,
    ):
        self.total_tool_time += duration
        if decision in self.gate_stats:
            self.gate_stats[decision] += 1
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        if outcome_kind == "success":
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        self.events.append(
            {
                "step": step,
                "type": "tool_call",
                "name": name,
                "arguments": arguments,
                "decision": decision,
                "outcome": outcome_kind,
                "duration_s": round(duration, 3),
                "result_length": result_length,
            }
        )

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        steps: int,
        error_message: str | None = None,
    ) -> dict:
        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "steps": steps,
                "tool_calls_total": tool_calls_succeeded + tool_calls_failed,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "gate_decisions": dict(self.gate_stats),
                "truncations": self.truncations,
                "retries": self.retries,
                "llm_calls": self.llm_calls,
                "total_llm_time_s": round(self.total_llm_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
            },
            "timeline": self.events,
        }


def write_report(path: str, report: dict) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(report, f, indent=2)
        f.write("\n")
