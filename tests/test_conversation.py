"""Tests for the conversation store: pairing invariants, rendering, truncation."""

import json

import pytest

from aria.conversation import (
    TRUNCATION_NOTE,
    AssistantMessage,
    Conversation,
    Failure,
    FailureKind,
    Success,
    ToolCall,
    ToolResult,
    UserMessage,
    group_into_units,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _call(call_id, name="read_file", **arguments):
    return ToolCall(call_id, name, arguments or {"path": "a.txt"})


def _ok(call_id, **payload):
    return ToolResult(call_id, Success(payload or {"content": "ok"}))


def _round(conv, call_id, size=10):
    """Append one assistant tool call plus its result."""
    conv.append(AssistantMessage(None, (_call(call_id),)))
    conv.append(_ok(call_id, content="x " * size))


# ---------------------------------------------------------------------------
# ToolCall parsing
# ---------------------------------------------------------------------------


class TestToolCallFromRaw:
    def test_object_arguments(self):
        call = ToolCall.from_raw("c1", "tree", '{"dir": "src"}')
        assert call.arguments == {"dir": "src"}
        assert call.raw_arguments == '{"dir": "src"}'

    def test_empty_arguments_mean_empty_object(self):
        assert ToolCall.from_raw("c1", "tree", "").arguments == {}
        assert ToolCall.from_raw("c1", "tree", None).arguments == {}

    def test_invalid_json(self):
        call = ToolCall.from_raw("c1", "tree", "{dir: src")
        assert call.arguments is None
        assert call.raw_arguments == "{dir: src"

    def test_non_object_json(self):
        assert ToolCall.from_raw("c1", "tree", "[1, 2]").arguments is None
        assert ToolCall.from_raw("c1", "tree", '"src"').arguments is None


class TestOutcomeContent:
    def test_success_is_json(self):
        content = Success({"path": "é.txt", "n": 1}).to_content()
        assert json.loads(content) == {"path": "é.txt", "n": 1}
        assert "é" in content

    def test_failure_names_kind(self):
        content = Failure(FailureKind.NOT_FOUND, "no such file").to_content()
        assert content == "error: NotFound: no such file"


# ---------------------------------------------------------------------------
# Append invariants
# ---------------------------------------------------------------------------


class TestAppend:
    def test_ordered_history(self):
        conv = Conversation()
        conv.append(UserMessage("hi"))
        conv.append(AssistantMessage("hello"))
        assert [type(t).__name__ for t in conv.history()] == [
            "UserMessage",
            "AssistantMessage",
        ]
        assert len(conv) == 2

    def test_result_without_call_rejected(self):
        conv = Conversation()
        conv.append(UserMessage("hi"))
        with pytest.raises(ValueError, match="does not answer"):
            conv.append(_ok("ghost"))
        assert len(conv) == 1

    def test_result_for_answered_call_rejected(self):
        conv = Conversation()
        conv.append(UserMessage("hi"))
        _round(conv, "c1")
        with pytest.raises(ValueError):
            conv.append(_ok("c1"))

    def test_user_turn_while_calls_pending_rejected(self):
        conv = Conversation()
        conv.append(UserMessage("hi"))
        conv.append(AssistantMessage(None, (_call("c1"), _call("c2"))))
        conv.append(_ok("c1"))
        with pytest.raises(ValueError, match="unanswered: c2"):
            conv.append(UserMessage("more"))
        assert [c.id for c in conv.pending_calls()] == ["c2"]

    def test_results_may_arrive_in_any_order(self):
        conv = Conversation()
        conv.append(UserMessage("hi"))
        conv.append(AssistantMessage(None, (_call("c1"), _call("c2"))))
        conv.append(_ok("c2"))
        conv.append(_ok("c1"))
        assert conv.pending_calls() == []

    def test_duplicate_call_id_within_turn(self):
        conv = Conversation()
        conv.append(UserMessage("hi"))
        with pytest.raises(ValueError, match="duplicate"):
            conv.append(AssistantMessage(None, (_call("c1"), _call("c1"))))

    def test_duplicate_call_id_across_turns(self):
        conv = Conversation()
        conv.append(UserMessage("hi"))
        _round(conv, "c1")
        with pytest.raises(ValueError, match="duplicate"):
            conv.append(AssistantMessage(None, (_call("c1"),)))
        assert conv.has_call_id("c1")

    def test_not_a_turn(self):
        with pytest.raises(TypeError):
            Conversation().append({"role": "user", "content": "hi"})

    def test_history_is_a_snapshot(self):
        conv = Conversation()
        conv.append(UserMessage("hi"))
        snapshot = conv.history()
        conv.append(AssistantMessage("yo"))
        assert len(snapshot) == 1


class TestCancelPending:
    def test_answers_every_pending_call(self):
        conv = Conversation()
        conv.append(UserMessage("hi"))
        conv.append(AssistantMessage(None, (_call("c1"), _call("c2"))))
        conv.append(_ok("c1"))
        assert conv.cancel_pending("interrupted") == 1
        last = conv.history()[-1]
        assert last.call_id == "c2"
        assert last.outcome.kind is FailureKind.CANCELLED
        assert last.outcome.message == "interrupted"
        # history is consistent again
        conv.append(UserMessage("next"))

    def test_nothing_pending(self):
        conv = Conversation()
        conv.append(UserMessage("hi"))
        assert conv.cancel_pending("x") == 0


class TestAccessors:
    def test_last_assistant_text_skips_empty(self):
        conv = Conversation()
        conv.append(UserMessage("hi"))
        conv.append(AssistantMessage("thinking"))
        conv.append(UserMessage("go on"))
        _round(conv, "c1")
        assert conv.last_assistant_text() == "thinking"

    def test_first_user_turn(self):
        conv = Conversation()
        assert conv.first_user_turn() is None
        conv.append(UserMessage("task"))
        conv.append(AssistantMessage("ok"))
        conv.append(UserMessage("again"))
        assert conv.first_user_turn().text == "task"

    def test_clear_keeps_system_prompt(self):
        conv = Conversation("sys")
        conv.append(UserMessage("hi"))
        conv.append(AssistantMessage(None, (_call("c1"),)))
        assert conv.clear() == 2
        assert conv.system_prompt == "sys"
        assert conv.pending_calls() == []
        conv.append(UserMessage("fresh"))


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


class TestToMessages:
    def test_roles_and_pairing(self):
        conv = Conversation("be brief")
        conv.append(UserMessage("list"))
        conv.append(
            AssistantMessage("looking", (_call("c1", "list_files", dir="."),))
        )
        conv.append(ToolResult("c1", Failure(FailureKind.NOT_FOUND, "gone")))
        conv.append(AssistantMessage("done"))

        msgs = conv.to_messages()
        assert [m["role"] for m in msgs] == [
            "system",
            "user",
            "assistant",
            "tool",
            "assistant",
        ]
        call = msgs[2]["tool_calls"][0]
        assert call["id"] == "c1"
        assert call["function"]["name"] == "list_files"
        assert json.loads(call["function"]["arguments"]) == {"dir": "."}
        assert msgs[3]["tool_call_id"] == "c1"
        assert msgs[3]["content"] == "error: NotFound: gone"

    def test_tool_call_without_text_has_null_content(self):
        conv = Conversation()
        conv.append(UserMessage("x"))
        conv.append(AssistantMessage(None, (_call("c1"),)))
        assert conv.to_messages()[1]["content"] is None

    def test_unparseable_arguments_replayed_as_empty_object(self):
        conv = Conversation()
        conv.append(UserMessage("x"))
        conv.append(AssistantMessage(None, (ToolCall.from_raw("c1", "tree", "{oops"),)))
        fn = conv.to_messages()[1]["tool_calls"][0]["function"]
        assert fn["arguments"] == "{}"

    def test_no_system_message_when_disabled(self):
        conv = Conversation(None)
        conv.append(UserMessage("x"))
        assert conv.to_messages()[0]["role"] == "user"


# ---------------------------------------------------------------------------
# Units and truncation
# ---------------------------------------------------------------------------


class TestGroupIntoUnits:
    def test_call_and_results_form_one_unit(self):
        conv = Conversation()
        conv.append(UserMessage("task"))
        conv.append(AssistantMessage(None, (_call("a"), _call("b"))))
        conv.append(_ok("a"))
        conv.append(_ok("b"))
        conv.append(AssistantMessage("done"))
        units = group_into_units(conv.history())
        assert [len(u) for u in units] == [1, 3, 1]


class TestTruncation:
    def _long_conversation(self, rounds=8, size=300):
        conv = Conversation("system prompt")
        conv.append(UserMessage("the original task"))
        for i in range(rounds):
            _round(conv, f"c{i}", size)
        return conv

    def test_under_budget_is_noop(self):
        conv = self._long_conversation(rounds=1, size=1)
        assert conv.truncate_to_budget(100_000) == 0
        assert conv.dropped_turns == 0

    def test_drops_oldest_units_whole(self):
        conv = self._long_conversation()
        before = conv.estimate_tokens()
        dropped = conv.truncate_to_budget(before // 2)
        assert dropped > 0
        assert dropped % 2 == 0  # call + result go together
        assert conv.estimate_tokens() <= before // 2

        history = conv.history()
        assert history[0] == UserMessage("the original task")
        # every remaining result still follows its call
        seen_calls = set()
        for turn in history:
            if isinstance(turn, AssistantMessage):
                seen_calls.update(c.id for c in turn.tool_calls)
            elif isinstance(turn, ToolResult):
                assert turn.call_id in seen_calls

    def test_keeps_recent_units(self):
        conv = self._long_conversation()
        conv.truncate_to_budget(1, keep_recent=3)
        ids = [
            t.tool_calls[0].id
            for t in conv.history()
            if isinstance(t, AssistantMessage)
        ]
        assert ids == ["c5", "c6", "c7"]
        assert conv.dropped_turns == 10

    def test_note_marks_truncation(self):
        conv = self._long_conversation()
        conv.truncate_to_budget(1)
        msgs = conv.to_messages()
        assert msgs[1] == {"role": "user", "content": "the original task"}
        assert msgs[2] == {"role": "user", "content": TRUNCATION_NOTE}

    def test_nothing_droppable(self):
        conv = self._long_conversation(rounds=2)
        assert conv.truncate_to_budget(1, keep_recent=3) == 0
        assert TRUNCATION_NOTE not in json.dumps(conv.to_messages())

    def test_tools_count_towards_estimate(self):
        conv = Conversation()
        conv.append(UserMessage("hi"))
        schema = [{"type": "function", "function": {"name": "x" * 50}}]
        assert conv.estimate_tokens(schema) > conv.estimate_tokens()
