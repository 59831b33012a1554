"""Built-in tool executors: filesystem access and subprocess execution."""

import codecs
import errno
import os
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from pathlib import Path

from .conversation import Failure, FailureKind, Success, ToolOutcome
from .registry import Param, ToolSpec

MAX_READ_BYTES = 256 * 1024  # 256 KB
BINARY_CHECK_BYTES = 8 * 1024  # 8 KB
MAX_INLINE_OUTPUT = 10 * 1024  # 10KB per stream returned inline
MAX_CAPTURE_OUTPUT = 1 * 1024 * 1024  # 1MB per stream kept in memory
DEFAULT_TIMEOUT = 30
MAX_TIMEOUT = 120

_KILL_WAIT_TIMEOUT = 5  # seconds to wait for process to die after kill signals
_POLL_INTERVAL = 0.1


@dataclass(frozen=True)
class ToolContext:
    """What an executor may know about its session."""

    working_dir: Path
    command_timeout: int = DEFAULT_TIMEOUT
    max_command_timeout: int = MAX_TIMEOUT
    tree_max_depth: int = 8
    tree_max_entries: int = 500
    cancel: threading.Event | None = None

    def resolve(self, path: str) -> Path:
        p = Path(path)
        if p.is_absolute():
            return p
        return Path(self.working_dir) / p


def _os_failure(exc: OSError, path: str) -> Failure:
    if isinstance(exc, FileNotFoundError):
        return Failure(FailureKind.NOT_FOUND, f"no such file or directory: {path}")
    if isinstance(exc, PermissionError):
        return Failure(FailureKind.PERMISSION_DENIED, f"permission denied: {path}")
    if exc.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC)):
        return Failure(FailureKind.DISK_FULL, f"no space left writing {path}")
    return Failure(FailureKind.EXECUTION_ERROR, f"{path}: {exc.strerror or exc}")


# -- read_file ---------------------------------------------------------------


def read_file(args: dict, ctx: ToolContext) -> ToolOutcome:
    path = args["path"]
    resolved = ctx.resolve(path)
    if not resolved.exists():
        return Failure(FailureKind.NOT_FOUND, f"path does not exist: {path}")
    if resolved.is_dir():
        return Failure(
            FailureKind.IS_A_DIRECTORY, f"{path} is a directory; use list_files or tree"
        )
    if not resolved.is_file():
        # FIFOs and devices can block open() or never reach EOF
        return Failure(FailureKind.INVALID_PATH, f"{path} is not a regular file")

    try:
        with open(resolved, "rb") as f:
            data = f.read(MAX_READ_BYTES + 1)
    except OSError as exc:
        return _os_failure(exc, path)

    if b"\x00" in data[:BINARY_CHECK_BYTES]:
        return Failure(FailureKind.NOT_TEXT, f"binary file detected: {path}")

    truncated = len(data) > MAX_READ_BYTES
    data = data[:MAX_READ_BYTES]
    # A cut may split a multi-byte sequence; the incremental decoder holds it back.
    decoder = codecs.getincrementaldecoder("utf-8")()
    try:
        text = decoder.decode(data, final=not truncated)
    except UnicodeDecodeError as exc:
        return Failure(FailureKind.NOT_TEXT, f"{path} is not valid UTF-8: {exc.reason}")

    return Success({"path": path, "content": text, "truncated": truncated})


# -- write_file --------------------------------------------------------------


def write_file(args: dict, ctx: ToolContext) -> ToolOutcome:
    path = args["path"]
    resolved = ctx.resolve(path)
    if resolved.is_dir():
        return Failure(FailureKind.INVALID_PATH, f"{path} is a directory")

    try:
        resolved.parent.mkdir(parents=True, exist_ok=True)
    except (FileExistsError, NotADirectoryError):
        return Failure(
            FailureKind.INVALID_PATH,
            f"cannot create parent directories for {path}: a file is in the way",
        )
    except OSError as exc:
        return _os_failure(exc, path)

    data = args["contents"].encode("utf-8")
    try:
        with open(resolved, "wb") as f:
            f.write(data)
    except NotADirectoryError:
        return Failure(FailureKind.INVALID_PATH, f"invalid path: {path}")
    except OSError as exc:
        return _os_failure(exc, path)
    return Success({"path": path, "bytes_written": len(data)})


# -- list_files --------------------------------------------------------------


def _kind(p: Path) -> str:
    if p.is_dir():
        return "dir"
    if p.is_file():
        return "file"
    return "other"


def list_files(args: dict, ctx: ToolContext) -> ToolOutcome:
    path = args["dir"]
    resolved = ctx.resolve(path)
    if not resolved.exists():
        return Failure(FailureKind.NOT_FOUND, f"directory does not exist: {path}")
    if not resolved.is_dir():
        return Failure(FailureKind.NOT_A_DIRECTORY, f"{path} is not a directory")
    try:
        children = sorted(resolved.iterdir(), key=lambda p: p.name)
    except OSError as exc:
        return _os_failure(exc, path)
    return Success(
        {"dir": path, "entries": [{"name": c.name, "kind": _kind(c)} for c in children]}
    )


# -- tree --------------------------------------------------------------------


def _has_children(p: Path) -> bool:
    try:
        return any(True for _ in p.iterdir())
    except OSError:
        return False


def tree(args: dict, ctx: ToolContext) -> ToolOutcome:
    """Depth-first listing bounded by depth and entry count.

    Symlinked directories are listed but never followed, so cycles cannot
    blow up the walk.
    """
    path = args["dir"]
    resolved = ctx.resolve(path)
    if not resolved.exists():
        return Failure(FailureKind.NOT_FOUND, f"directory does not exist: {path}")
    if not resolved.is_dir():
        return Failure(FailureKind.NOT_A_DIRECTORY, f"{path} is not a directory")

    max_depth = max(1, ctx.tree_max_depth)
    max_entries = max(1, ctx.tree_max_entries)
    entries: list[str] = []
    unreadable: list[str] = []
    reason: str | None = None

    def walk(directory: Path, prefix: str, depth: int) -> bool:
        nonlocal reason
        try:
            children = sorted(directory.iterdir(), key=lambda p: p.name)
        except OSError:
            unreadable.append(prefix or ".")
            return True
        for child in children:
            if child.name == ".git":
                continue
            if len(entries) >= max_entries:
                reason = "max_entries"
                return False
            is_dir = child.is_dir()
            rel = prefix + child.name + ("/" if is_dir else "")
            entries.append(rel)
            if not is_dir or child.is_symlink():
                continue
            if depth >= max_depth:
                if _has_children(child) and reason is None:
                    reason = "max_depth"
                continue
            if not walk(child, rel, depth + 1):
                return False
        return True

    walk(resolved, "", 1)

    payload: dict = {
        "dir": path,
        "entries": entries,
        "truncated": reason is not None,
    }
    if reason is not None:
        payload["truncated_reason"] = reason
    if unreadable:
        payload["unreadable"] = unreadable
    return Success(payload)


# -- run_command -------------------------------------------------------------


def _kill_group(proc: subprocess.Popen) -> None:
    """SIGKILL whatever is left in the command's session (Unix only)."""
    import signal

    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except OSError:
        pass  # group is empty


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit.

    On Unix, uses process groups (via start_new_session=True) to kill the
    entire tree. On Windows, uses taskkill /T /F to kill the process tree.
    """
    if sys.platform != "win32":
        _kill_group(proc)
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass  # already dead
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass  # give up, process is unkillable


class _StreamCapture:
    """Drain one pipe on a daemon thread, keeping at most MAX_CAPTURE_OUTPUT."""

    def __init__(self, pipe):
        self.pipe = pipe
        self.chunks: list[bytes] = []
        self.total = 0
        self.truncated = False
        self.thread = threading.Thread(target=self._read, daemon=True)
        self.thread.start()

    def _read(self):
        try:
            while True:
                chunk = self.pipe.read(4096)
                if not chunk:
                    break
                if self.truncated:
                    continue  # keep draining to prevent pipe backpressure
                remaining = MAX_CAPTURE_OUTPUT - self.total
                self.chunks.append(chunk[:remaining])
                self.total += len(self.chunks[-1])
                if self.total >= MAX_CAPTURE_OUTPUT:
                    self.truncated = True
        except (OSError, ValueError):
            pass  # pipe closed/broken after kill

    def finish(self) -> str:
        self.thread.join(timeout=2)
        # close() would wait on the reader's lock while a stray writer lives
        if not self.thread.is_alive():
            self.pipe.close()
        data = b"".join(self.chunks)
        clipped = len(data) > MAX_INLINE_OUTPUT or self.truncated
        text = data[:MAX_INLINE_OUTPUT].decode("utf-8", errors="replace")
        if clipped:
            shown = min(len(data), MAX_INLINE_OUTPUT)
            total = f"{self.total}+" if self.truncated else str(self.total)
            text += f"\n[output truncated: showing {shown} of {total} bytes]"
        return text


def run_command(args: dict, ctx: ToolContext) -> ToolOutcome:
    """Run [command, *args] without a shell, racing it against a deadline.

    Arguments are passed as a vector: shell metacharacters inside them are
    literal text. The only way to get shell syntax is to name a shell as
    the command.
    """
    command = args["command"]
    argv = [command, *args.get("args", [])]
    timeout = args.get("timeout", ctx.command_timeout)
    timeout = max(1, min(timeout, ctx.max_command_timeout))

    workdir = Path(ctx.working_dir)
    if not workdir.is_dir():
        return Failure(
            FailureKind.EXECUTION_ERROR, f"working directory does not exist: {workdir}"
        )
    if ctx.cancel is not None and ctx.cancel.is_set():
        return Failure(FailureKind.CANCELLED, "session cancelled before command started")

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        cwd=workdir,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    try:
        proc = subprocess.Popen(argv, **popen_kwargs)
    except FileNotFoundError:
        return Failure(FailureKind.NOT_FOUND, f"command not found: {command!r}")
    except PermissionError:
        return Failure(
            FailureKind.PERMISSION_DENIED, f"permission denied executing: {command!r}"
        )
    except OSError as exc:
        return Failure(FailureKind.EXECUTION_ERROR, f"failed to start command: {exc}")

    stdout = _StreamCapture(proc.stdout)
    stderr = _StreamCapture(proc.stderr)

    timed_out = False
    cancelled = False
    deadline = time.monotonic() + timeout
    try:
        while True:
            if ctx.cancel is not None and ctx.cancel.is_set():
                cancelled = True
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                timed_out = True
                break
            try:
                proc.wait(timeout=min(remaining, _POLL_INTERVAL))
                break
            except subprocess.TimeoutExpired:
                continue
    except KeyboardInterrupt:
        _kill_process_tree(proc)
        raise

    if timed_out or cancelled:
        _kill_process_tree(proc)
    elif sys.platform != "win32":
        # Background children of a finished command would keep the pipes open.
        _kill_group(proc)

    out = stdout.finish()
    err = stderr.finish()

    if timed_out:
        return Failure(
            FailureKind.TIMEOUT, f"command {command!r} timed out after {timeout}s"
        )
    if cancelled:
        return Failure(FailureKind.CANCELLED, f"command {command!r} was cancelled")
    return Success({"exit_code": proc.returncode, "stdout": out, "stderr": err})


# -- Tool definitions --------------------------------------------------------

BUILTIN_TOOLS = (
    ToolSpec(
        name="read_file",
        description=(
            "Read a UTF-8 text file and return its contents. "
            "Files larger than 256KB are cut and marked truncated."
        ),
        params=(
            Param("path", "string", "Path of the file to read.", path_like=True),
        ),
        executor=read_file,
    ),
    ToolSpec(
        name="write_file",
        description=(
            "Create or overwrite a file with the given contents, "
            "creating parent directories as needed."
        ),
        params=(
            Param("path", "string", "Path of the file to write.", path_like=True),
            Param("contents", "string", "The full new contents of the file."),
        ),
        executor=write_file,
    ),
    ToolSpec(
        name="list_files",
        description=(
            "List the immediate children of a directory in name order, "
            "each with its kind (file or dir)."
        ),
        params=(
            Param("dir", "string", "Directory to list.", path_like=True),
        ),
        executor=list_files,
    ),
    ToolSpec(
        name="tree",
        description=(
            "Recursive depth-first listing of a directory. Directories end with '/'. "
            "Large trees are cut off and marked truncated; list a subdirectory to see more."
        ),
        params=(
            Param("dir", "string", "Root directory of the listing.", path_like=True),
        ),
        executor=tree,
    ),
    ToolSpec(
        name="run_command",
        description=(
            "Run a program with an argument list in the working directory and "
            "return its exit code, stdout and stderr. No shell is involved: "
            'pass "command": "ls", "args": ["-la", "src/"]. '
            "Shell syntax (&&, |, >) only works if you run a shell explicitly, "
            'e.g. "command": "sh", "args": ["-c", "..."].'
        ),
        params=(
            Param(
                "command",
                "string",
                "Program to run (name on PATH or a path).",
                path_like=True,
            ),
            Param(
                "args",
                "array",
                "Arguments, one element each.",
                required=False,
                items="string",
            ),
            Param(
                "timeout",
                "integer",
                f"Timeout in seconds (1-{MAX_TIMEOUT}). Defaults to {DEFAULT_TIMEOUT}.",
                required=False,
            ),
        ),
        executor=run_command,
    ),
)
