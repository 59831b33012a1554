"""Tests for the tool registry: lookup, schemas and argument validation."""

import pytest

from aria.registry import (
    Param,
    SchemaError,
    ToolRegistry,
    ToolSpec,
    UnknownToolError,
    build_registry,
)


def _noop(args, ctx):
    return None


@pytest.fixture
def registry():
    return build_registry()


class TestBuiltins:
    def test_names(self, registry):
        assert registry.names() == [
            "read_file",
            "write_file",
            "list_files",
            "tree",
            "run_command",
        ]

    def test_frozen(self, registry):
        assert registry.frozen
        with pytest.raises(RuntimeError):
            registry.register(ToolSpec("extra", "x", (), _noop))

    def test_schema_shape(self, registry):
        by_name = {s["function"]["name"]: s for s in registry.schemas()}
        run = by_name["run_command"]
        assert run["type"] == "function"
        params = run["function"]["parameters"]
        assert params["required"] == ["command"]
        assert params["properties"]["args"] == {
            "type": "array",
            "description": "Arguments, one element each.",
            "items": {"type": "string"},
        }
        assert by_name["write_file"]["function"]["parameters"]["required"] == [
            "path",
            "contents",
        ]

    def test_unknown_lookup(self, registry):
        with pytest.raises(UnknownToolError) as exc_info:
            registry.lookup("delete_everything")
        assert exc_info.value.name == "delete_everything"
        assert "unknown tool" in str(exc_info.value)
        assert "delete_everything" not in registry


class TestRegister:
    def test_duplicate_name(self):
        reg = ToolRegistry()
        reg.register(ToolSpec("a", "x", (), _noop))
        with pytest.raises(ValueError, match="already registered"):
            reg.register(ToolSpec("a", "y", (), _noop))

    def test_unsupported_type(self):
        reg = ToolRegistry()
        with pytest.raises(ValueError, match="unsupported type"):
            reg.register(ToolSpec("a", "x", (Param("n", "number", "n"),), _noop))


class TestValidate:
    def test_valid_payload_returned(self, registry):
        payload = {"command": "ls", "args": ["-la"], "timeout": 5}
        assert registry.validate("run_command", payload) is payload

    def test_optional_fields_may_be_absent(self, registry):
        registry.validate("run_command", {"command": "ls"})

    def test_missing_required(self, registry):
        with pytest.raises(SchemaError) as exc_info:
            registry.validate("write_file", {"path": "a.txt"})
        assert exc_info.value.field == "contents"
        assert "missing required field" in str(exc_info.value)

    def test_unexpected_field(self, registry):
        with pytest.raises(SchemaError, match="unexpected field") as exc_info:
            registry.validate("read_file", {"path": "a", "offset": 3})
        assert exc_info.value.field == "offset"

    def test_wrong_type(self, registry):
        with pytest.raises(SchemaError, match="expected string, got int"):
            registry.validate("read_file", {"path": 7})

    def test_bool_is_not_integer(self, registry):
        with pytest.raises(SchemaError, match="expected integer, got bool"):
            registry.validate("run_command", {"command": "ls", "timeout": True})

    def test_array_items_checked(self, registry):
        with pytest.raises(SchemaError) as exc_info:
            registry.validate("run_command", {"command": "ls", "args": ["-l", 3]})
        assert exc_info.value.field == "args[1]"

    def test_args_must_be_array(self, registry):
        with pytest.raises(SchemaError, match="expected array, got str"):
            registry.validate("run_command", {"command": "ls", "args": "-la"})

    @pytest.mark.parametrize("path", ["", "   "])
    def test_empty_path(self, registry, path):
        with pytest.raises(SchemaError, match="must not be empty"):
            registry.validate("read_file", {"path": path})

    def test_nul_in_path(self, registry):
        with pytest.raises(SchemaError, match="NUL"):
            registry.validate("list_files", {"dir": "a\x00b"})

    def test_non_object_payload(self, registry):
        with pytest.raises(SchemaError, match="JSON object"):
            registry.validate("tree", ["."])

    def test_unknown_tool(self, registry):
        with pytest.raises(UnknownToolError):
            registry.validate("nope", {})

    def test_existence_is_not_checked(self, registry, tmp_path):
        registry.validate("read_file", {"path": str(tmp_path / "missing.txt")})
