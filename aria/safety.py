"""Safety gate: classify every tool call before it can reach an executor."""

import logging
import os
import re
import shlex
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from .conversation import ToolCall
from .report import ConfigError

logger = logging.getLogger(__name__)

# Start of a shell token: beginning, whitespace, separators, quotes, or a path.
_TOK = r"""(?:^|[\s;&|'"(/])"""
_END = r"""(?=$|[\s;&|'")])"""
# Command position: start of line or after a separator or opening quote.
_CMD = r"""(?:^|[;&|('"`]\s*)(?:\S*/)?"""
# Wrappers that run their arguments as a command: env VAR=x, nice -n 5, timeout 5...
_WRAP = (
    r"(?:(?:\S*/)?(?:"
    r"env(?:\s+(?:-\S+|\w+=\S*))*"
    r"|nice(?:\s+-n\s*-?\d+|\s+-\d+)?"
    r"|timeout(?:\s+-\S+(?:\s+[A-Z0-9]+\b)?)*\s+\S+"
    r"|xargs(?:\s+-\S+(?:\s+\d+)?)*"
    r"|(?:stdbuf|ionice)(?:\s+-\S+)*"
    r"|nohup|exec|command|time"
    r")\s+)*(?:\S*/)?"
)

DEFAULT_DENY_PATTERNS = (
    # recursive delete
    _TOK + r"rm\s[^;&|]*?(?<!\S)(?:-[a-zA-Z]*[rR][a-zA-Z]*|--recursive)" + _END,
    # disk formatting
    _TOK + r"mkfs(?:\.\w+)?" + _END,
    _TOK + r"(?:fdisk|sfdisk|parted|wipefs)" + _END,
    _TOK + r"dd\s[^;&|]*\bof=/dev/",
    _TOK + r"shred\s[^;&|]*\s/dev/",
    # privilege escalation
    _CMD + _WRAP + r"(?:sudo|su|doas|pkexec)" + _END,
    _TOK + r"chmod\s[^;&|]*?(?<!\S)(?:[ugoa]*\+[rwxXt]*s[rwxXt]*|0?[2467][0-7]{3})" + _END,
    _TOK + r"chown\s[^;&|]*?(?<!\S)root(?::\S*)?" + _END,
)


class Decision(Enum):
    ALLOW = "allow"
    REQUIRE_CONFIRMATION = "require_confirmation"
    DENY = "deny"


@dataclass(frozen=True)
class Verdict:
    decision: Decision
    reason: str = ""


@dataclass(frozen=True)
class SafetyPolicy:
    """Configurable gate policy.

    auto_approve grants confirmations without asking; denials still apply.
    """

    deny_patterns: tuple[str, ...] = DEFAULT_DENY_PATTERNS
    confirm_outside_writes: bool = True
    auto_approve: bool = False

    @classmethod
    def with_extra_patterns(cls, extra: list[str] | tuple[str, ...] = (), **kwargs):
        return cls(deny_patterns=DEFAULT_DENY_PATTERNS + tuple(extra), **kwargs)


def command_line(arguments: dict) -> str:
    """Shell-quoted argv for pattern matching and display."""
    command = os.path.basename(str(arguments.get("command", "")))
    args = [str(a) for a in arguments.get("args") or []]
    return shlex.join([command, *args])


class SafetyGate:
    """Default deny for destructive commands, confirmation for writes outside the root."""

    def __init__(self, policy: SafetyPolicy, working_dir: str | Path):
        self.policy = policy
        self.root = Path(working_dir).resolve()
        self._patterns: list[re.Pattern] = []
        for pattern in policy.deny_patterns:
            try:
                self._patterns.append(re.compile(pattern))
            except re.error as exc:
                raise ConfigError(f"invalid deny pattern {pattern!r}: {exc}") from None

    def check(self, call: ToolCall) -> Verdict:
        args = call.arguments if isinstance(call.arguments, dict) else {}
        if call.name == "run_command":
            verdict = self._check_command(args)
        elif call.name == "write_file":
            verdict = self._check_write(args)
        else:
            verdict = Verdict(Decision.ALLOW)

        if verdict.decision is Decision.ALLOW:
            logger.debug("gate ALLOW %s (%s)", call.name, call.id)
        else:
            logger.info(
                "gate %s %s (%s): %s",
                verdict.decision.name,
                call.name,
                call.id,
                verdict.reason,
            )
        return verdict

    def _check_command(self, args: dict) -> Verdict:
        line = command_line(args)
        for pattern in self._patterns:
            if pattern.search(line):
                return Verdict(
                    Decision.DENY,
                    f"command matches deny pattern {pattern.pattern!r}: {line}",
                )
        return Verdict(Decision.ALLOW)

    def _check_write(self, args: dict) -> Verdict:
        path = args.get("path")
        if not isinstance(path, str) or not self.policy.confirm_outside_writes:
            return Verdict(Decision.ALLOW)
        target = Path(path)
        if not target.is_absolute():
            target = self.root / target
        # Resolve symlinks so a link inside the root cannot smuggle a write out.
        resolved = target.resolve()
        if resolved.is_relative_to(self.root):
            return Verdict(Decision.ALLOW)
        return Verdict(
            Decision.REQUIRE_CONFIRMATION,
            f"write to {resolved} is outside the working directory {self.root}",
        )
