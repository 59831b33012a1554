"""Conversation history: turns, tool calls, outcomes and the truncation policy."""

import json
from dataclasses import dataclass
from enum import StrEnum

import tiktoken

_encoder = tiktoken.get_encoding("cl100k_base")

TRUNCATION_NOTE = (
    "[context truncated: older tool calls and results were removed to fit the "
    "context window]"
)


class FailureKind(StrEnum):
    SCHEMA_ERROR = "SchemaError"
    UNKNOWN_TOOL = "UnknownTool"
    NOT_FOUND = "NotFound"
    NOT_TEXT = "NotText"
    NOT_A_DIRECTORY = "NotADirectory"
    IS_A_DIRECTORY = "IsADirectory"
    PERMISSION_DENIED = "PermissionDenied"
    INVALID_PATH = "InvalidPath"
    DISK_FULL = "DiskFull"
    TIMEOUT = "Timeout"
    BLOCKED = "Blocked"
    CANCELLED = "Cancelled"
    EXECUTION_ERROR = "ExecutionError"


@dataclass(frozen=True)
class ToolCall:
    """One tool invocation requested by the model.

    ``arguments`` is None when the model sent something that is not a JSON
    object; ``raw_arguments`` keeps the original text for auditing.
    """

    id: str
    name: str
    arguments: dict | None
    raw_arguments: str = ""

    @classmethod
    def from_raw(cls, call_id: str, name: str, raw: str | None) -> "ToolCall":
        try:
            parsed = json.loads(raw) if raw else {}
        except (json.JSONDecodeError, TypeError):
            parsed = None
        if not isinstance(parsed, dict):
            parsed = None
        return cls(id=call_id, name=name, arguments=parsed, raw_arguments=raw or "")


@dataclass(frozen=True)
class Success:
    payload: dict

    ok = True
    kind = "success"

    def to_content(self) -> str:
        return json.dumps(self.payload, ensure_ascii=False)


@dataclass(frozen=True)
class Failure:
    kind: FailureKind
    message: str

    ok = False

    def to_content(self) -> str:
        return f"error: {self.kind}: {self.message}"


ToolOutcome = Success | Failure


@dataclass(frozen=True)
class UserMessage:
    text: str


@dataclass(frozen=True)
class AssistantMessage:
    text: str | None
    tool_calls: tuple[ToolCall, ...] = ()


@dataclass(frozen=True)
class ToolResult:
    call_id: str
    outcome: ToolOutcome


Turn = UserMessage | AssistantMessage | ToolResult


def _turn_text(turn: Turn) -> str:
    if isinstance(turn, UserMessage):
        return turn.text
    if isinstance(turn, ToolResult):
        return turn.outcome.to_content()
    text = turn.text or ""
    for call in turn.tool_calls:
        text += call.name + json.dumps(call.arguments or {})
    return text


def _count(text: str) -> int:
    return len(_encoder.encode(text, disallowed_special=()))


def group_into_units(turns) -> list[list[Turn]]:
    """Group turns into atomic units.

    A unit is one of:
    - A single user turn or assistant turn without tool calls
    - An assistant turn with tool calls + all its matching tool results
    """
    units: list[list[Turn]] = []
    i = 0
    while i < len(turns):
        turn = turns[i]
        if isinstance(turn, AssistantMessage) and turn.tool_calls:
            ids = {call.id for call in turn.tool_calls}
            unit: list[Turn] = [turn]
            j = i + 1
            while (
                j < len(turns)
                and isinstance(turns[j], ToolResult)
                and turns[j].call_id in ids
            ):
                unit.append(turns[j])
                j += 1
            units.append(unit)
            i = j
        else:
            units.append([turn])
            i += 1
    return units


class Conversation:
    """Append-only ordered history for one session.

    The store refuses writes that would break call/result pairing: every
    ToolResult answers exactly one pending call of the latest assistant
    turn, and nothing else may be appended while calls are unanswered.
    """

    def __init__(self, system_prompt: str | None = None):
        self.system_prompt = system_prompt
        self.dropped_turns = 0
        self._turns: list[Turn] = []
        self._call_ids: set[str] = set()
        self._pending: dict[str, ToolCall] = {}

    def __len__(self) -> int:
        return len(self._turns)

    def append(self, turn: Turn) -> None:
        if isinstance(turn, ToolResult):
            if turn.call_id not in self._pending:
                raise ValueError(
                    f"tool result {turn.call_id!r} does not answer a pending tool call"
                )
            del self._pending[turn.call_id]
        elif isinstance(turn, (UserMessage, AssistantMessage)):
            if self._pending:
                raise ValueError(
                    f"cannot append {type(turn).__name__} while tool calls are "
                    f"unanswered: {', '.join(self._pending)}"
                )
            if isinstance(turn, AssistantMessage):
                ids = [call.id for call in turn.tool_calls]
                if len(set(ids)) != len(ids) or self._call_ids.intersection(ids):
                    raise ValueError(f"duplicate tool call id in {ids}")
                self._call_ids.update(ids)
                self._pending = {call.id: call for call in turn.tool_calls}
        else:
            raise TypeError(f"not a turn: {turn!r}")
        self._turns.append(turn)

    def history(self) -> tuple[Turn, ...]:
        return tuple(self._turns)

    def pending_calls(self) -> list[ToolCall]:
        return list(self._pending.values())

    def has_call_id(self, call_id: str) -> bool:
        return call_id in self._call_ids

    def first_user_turn(self) -> UserMessage | None:
        for turn in self._turns:
            if isinstance(turn, UserMessage):
                return turn
        return None

    def last_assistant_text(self) -> str | None:
        for turn in reversed(self._turns):
            if isinstance(turn, AssistantMessage) and turn.text:
                return turn.text
        return None

    def cancel_pending(self, reason: str) -> int:
        """Answer every unanswered call with a Cancelled failure."""
        pending = list(self._pending)
        for call_id in pending:
            self.append(
                ToolResult(call_id, Failure(FailureKind.CANCELLED, reason))
            )
        return len(pending)

    def clear(self) -> int:
        """Drop all turns, keeping the system prompt. Returns turns removed."""
        removed = len(self._turns)
        self._turns = []
        self._pending = {}
        self.dropped_turns = 0
        return removed

    def estimate_tokens(self, tools: list | None = None) -> int:
        """Count tokens across the system prompt and all turns using tiktoken."""
        total = 0
        count = len(self._turns)
        if self.system_prompt:
            total += _count(self.system_prompt)
            count += 1
        for turn in self._turns:
            total += _count(_turn_text(turn))
        if tools:
            total += _count(json.dumps(tools))
        # Per-message overhead (role, separators) ~4 tokens each
        return total + 4 * count

    def truncate_to_budget(
        self, max_tokens: int, keep_recent: int = 3, tools: list | None = None
    ) -> int:
        """Drop the oldest units until the estimate fits max_tokens.

        The first user turn and the keep_recent most recent units are never
        dropped, and units go whole so no call loses its result. Returns the
        number of turns removed.
        """
        total = self.estimate_tokens(tools)
        if total <= max_tokens:
            return 0

        units = group_into_units(self._turns)
        protected = set(range(max(0, len(units) - keep_recent), len(units)))
        for i, unit in enumerate(units):
            if isinstance(unit[0], UserMessage):
                protected.add(i)
                break

        removed: set[int] = set()
        for i, unit in enumerate(units):
            if total <= max_tokens:
                break
            if i in protected:
                continue
            removed.add(i)
            total -= sum(_count(_turn_text(t)) + 4 for t in unit)

        if not removed:
            return 0
        dropped = sum(len(units[i]) for i in removed)
        self._turns = [
            turn for i, unit in enumerate(units) if i not in removed for turn in unit
        ]
        self.dropped_turns += dropped
        return dropped

    def to_messages(self) -> list[dict]:
        """Render the history as OpenAI-style chat messages."""
        messages: list[dict] = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        first_user = self.first_user_turn()
        for turn in self._turns:
            messages.append(_to_message(turn))
            if self.dropped_turns and turn is first_user:
                messages.append({"role": "user", "content": TRUNCATION_NOTE})
        return messages


def _to_message(turn: Turn) -> dict:
    if isinstance(turn, UserMessage):
        return {"role": "user", "content": turn.text}
    if isinstance(turn, ToolResult):
        return {
            "role": "tool",
            "tool_call_id": turn.call_id,
            "content": turn.outcome.to_content(),
        }
    msg: dict = {"role": "assistant", "content": turn.text or ""}
    if turn.tool_calls:
        msg["content"] = turn.text or None
        msg["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {
                    "name": call.name,
                    # Unparseable arguments are replayed as an empty object;
                    # the matching result already tells the model what went wrong.
                    "arguments": json.dumps(call.arguments or {}),
                },
            }
            for call in turn.tool_calls
        ]
    return msg
