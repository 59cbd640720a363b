"""
Process execution and pipelines for build scripts.

Usage:
    from build_pilot import Cmd, Chain, Procs, go_rebuild_urself

    # Rebuild and re-exec this build program if its source changed
    go_rebuild_urself("build.c")

    # Simple command. The argument list is cleared after each run,
    # so the same Cmd can be refilled in a loop.
    cmd = Cmd()
    cmd.append("cc", "-o", "main", "main.c")
    if not cmd.run():
        sys.exit(1)

    # Several compilers at once
    procs = Procs()
    for src in ("a.c", "b.c", "c.c"):
        cmd.append("cc", "-c", src)
        if not cmd.run(pool=procs):
            sys.exit(1)
    if not procs.flush():
        sys.exit(1)

    # Pipes, started left to right just like the shell
    chain = Chain()
    chain.begin()
    chain.add(Cmd("printf", "hello world"))
    chain.add(Cmd("tr", "a-z", "A-Z"))
    chain.add(Cmd("wc", "-c"))
    chain.end(stdout="count.txt")

    # Or with the | operator
    (Cmd("printf", "hello") | Cmd("wc", "-c")).run(stdout="count.txt")

A failing child process is an ordinary outcome of a build step: every
operation reports it by returning False and logging one diagnostic line.
"""

from __future__ import annotations

import contextlib
import enum
import logging
import os
import shlex
import subprocess
import sys
import time
from typing import Union, Optional, Callable, Iterable, Iterator

__version__ = "0.1.0"

__all__ = [
    "Cmd",
    "Proc",
    "Procs",
    "Chain",
    "Pipeline",
    "Rebuild",
    "BuildPilotError",
    "ChainStateError",
    "run",
    "run_capture",
    "nprocs",
    "needs_rebuild",
    "needs_rebuild1",
    "rebuild_command",
    "go_rebuild_urself",
    "get_logger",
    "get_log_level",
    "set_log_level",
    "get_echo_actions",
    "set_echo_actions",
    "settings",
    "NO_LOGS",
    "__version__",
]

PathLike = Union[str, "os.PathLike[str]"]

DEFAULT_NPROCS = 4
POLL_INTERVAL = 0.01

LOG_FORMAT = "[%(levelname)s] %(message)s"
NO_LOGS = logging.CRITICAL + 10

_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "NO_LOGS": NO_LOGS,
}

_READ_FLAGS = os.O_RDONLY | getattr(os, "O_BINARY", 0)
_WRITE_FLAGS = os.O_WRONLY | os.O_CREAT | os.O_TRUNC | getattr(os, "O_BINARY", 0)


# Diagnostics and settings

logger = logging.getLogger(__name__)


class _StderrHandler(logging.Handler):
    """
    Writes to whatever sys.stderr is at the time of the call.

    Stays quiet once the application configured root logging, since the
    records propagate there.
    """

    def emit(self, record: logging.LogRecord) -> None:
        if logging.getLogger().handlers:
            return
        try:
            sys.stderr.write(self.format(record) + "\n")
            sys.stderr.flush()
        except Exception:
            self.handleError(record)


_handler = _StderrHandler()
_handler.setFormatter(logging.Formatter(LOG_FORMAT))
logger.addHandler(_handler)


def get_logger() -> logging.Logger:
    """Return the library logger. Lines go to stderr as ``[LEVEL] message``."""
    return logger


def _level_value(level: Union[int, str]) -> int:
    if isinstance(level, int):
        return level
    try:
        return _LEVELS[level.strip().upper()]
    except KeyError:
        raise ValueError(f"Unknown log level: {level!r}") from None


def get_log_level() -> int:
    """Minimal level of diagnostics that are emitted."""
    return logger.level


def set_log_level(level: Union[int, str]) -> None:
    """
    Set the minimal level of emitted diagnostics.

    Args:
        level: A ``logging`` level, or one of the names DEBUG, INFO,
               WARNING, ERROR or NO_LOGS (case-insensitive).
    """
    logger.setLevel(_level_value(level))


def _env_flag(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() not in ("", "0", "false", "no", "off")


_echo_actions: bool = _env_flag("BUILD_PILOT_ECHO", True)


def get_echo_actions() -> bool:
    """True if commands are logged before they are spawned."""
    return _echo_actions


def set_echo_actions(enabled: bool) -> None:
    global _echo_actions
    _echo_actions = bool(enabled)


@contextlib.contextmanager
def settings(
    *,
    echo_actions: Optional[bool] = None,
    log_level: Union[int, str, None] = None,
) -> Iterator[None]:
    """
    Override the global toggles for the duration of a block.

    Example:
        with settings(echo_actions=False, log_level="WARNING"):
            cmd.run()
    """
    saved_echo, saved_level = get_echo_actions(), get_log_level()
    try:
        if echo_actions is not None:
            set_echo_actions(echo_actions)
        if log_level is not None:
            set_log_level(log_level)
        yield
    finally:
        set_echo_actions(saved_echo)
        set_log_level(saved_level)


try:
    set_log_level(os.getenv("BUILD_PILOT_LOG_LEVEL", "INFO"))
except ValueError:
    set_log_level(logging.INFO)
    logger.warning(
        "Ignoring unknown BUILD_PILOT_LOG_LEVEL %r", os.getenv("BUILD_PILOT_LOG_LEVEL")
    )


class BuildPilotError(RuntimeError):
    """Base class for errors raised on misuse of the library."""


class ChainStateError(BuildPilotError):
    """Raised when a Chain is driven out of order."""


# Processes

class Proc:
    """
    A spawned process this library is responsible for reaping.

    Redirection files are closed by the spawning call as soon as the
    child holds its own copies, so a Proc only owns the process itself.
    """

    def __init__(self, popen: subprocess.Popen, args: list[str]):
        self._popen = popen
        self.args = args
        self._status: Optional[bool] = None

    @property
    def pid(self) -> int:
        return self._popen.pid

    @property
    def returncode(self) -> Optional[int]:
        """Exit status once reaped; negative for death by signal on POSIX."""
        return self._popen.returncode

    @property
    def reaped(self) -> bool:
        return self._status is not None

    def wait(self) -> bool:
        """
        Block until the process terminates and reap it.

        Returns:
            True if it exited with status 0. A process can only be waited
            on once; a second call logs an error and returns False.
        """
        if self._status is not None:
            logger.error("process %d (%s) was already waited on", self.pid, self.args[0])
            return False
        try:
            returncode = self._popen.wait()
        except OSError as e:
            logger.error("could not wait on command `%s` (pid %d): %s", self.args[0], self.pid, e)
            self._status = False
            return False
        self._status = _check_returncode(self.args, returncode)
        return self._status

    def poll(self) -> Optional[bool]:
        """Reap the process if it has finished. None while it is still running."""
        if self._status is not None:
            return self._status
        try:
            returncode = self._popen.poll()
        except OSError as e:
            logger.error("could not poll command `%s` (pid %d): %s", self.args[0], self.pid, e)
            self._status = False
            return False
        if returncode is None:
            return None
        self._status = _check_returncode(self.args, returncode)
        return self._status

    def communicate(self) -> tuple[bytes, bool]:
        """Read stdout until the child closes it, then reap the child."""
        try:
            output, _ = self._popen.communicate()
        except OSError as e:
            logger.error("could not read output of `%s`: %s", self.args[0], e)
            if self._popen.stdout is not None:
                self._popen.stdout.close()
            self.wait()
            return b"", False
        return output or b"", self.wait()

    def __repr__(self) -> str:
        state = "running" if self._status is None else f"returncode={self.returncode}"
        return f"Proc(pid={self.pid}, {self.args[0]!r}, {state})"


def _check_returncode(args: list[str], returncode: int) -> bool:
    if returncode == 0:
        return True
    if returncode < 0:
        logger.error("command `%s` was terminated by signal %d", args[0], -returncode)
    else:
        logger.error("command `%s` exited with exit code %d", args[0], returncode)
    return False


def _spawn(args: list[str], stdin=None, stdout=None, stderr=None) -> Optional[Proc]:
    """Start args with the given child stdio. Returns None if it could not start."""
    if not args:
        logger.error("could not run empty command")
        return None
    if get_echo_actions():
        logger.info("CMD: %s", shlex.join(args))
    try:
        popen = subprocess.Popen(
            args,
            stdin=stdin,
            stdout=stdout,
            stderr=stderr,
            close_fds=True,
        )
    except FileNotFoundError:
        logger.error("could not run `%s`: executable not found", args[0])
        return None
    except PermissionError:
        logger.error("could not run `%s`: permission denied", args[0])
        return None
    except (OSError, ValueError) as e:
        logger.error("could not spawn `%s`: %s", args[0], e)
        return None
    return Proc(popen, list(args))


def _open_redirect(stack: contextlib.ExitStack, path: Optional[PathLike], write: bool) -> Optional[int]:
    """Open path for redirection; the fd is closed when stack unwinds."""
    if path is None:
        return None
    try:
        fd = os.open(path, _WRITE_FLAGS if write else _READ_FLAGS, 0o644)
    except OSError as e:
        mode = "writing" if write else "reading"
        logger.error("could not open %s for %s: %s", os.fspath(path), mode, e.strerror or e)
        raise
    stack.callback(os.close, fd)
    return fd


def _open_outputs(
    stack: contextlib.ExitStack,
    stdout: Optional[PathLike],
    stderr: Optional[PathLike],
    err2out: bool = False,
):
    """Open stdout/stderr redirections; stderr follows stdout when merged or on the same path."""
    fdout = _open_redirect(stack, stdout, write=True)
    if err2out:
        return fdout, subprocess.STDOUT
    if stderr is not None and stdout is not None and os.fspath(stderr) == os.fspath(stdout):
        return fdout, subprocess.STDOUT
    return fdout, _open_redirect(stack, stderr, write=True)


def _reap(procs: Iterable[Proc]) -> bool:
    """Wait on every process, even after one of them failed."""
    ok = True
    for proc in procs:
        if not proc.wait():
            ok = False
    return ok


def nprocs() -> int:
    """
    Number of logical processors available to this process.

    Used to size default concurrency. Falls back to DEFAULT_NPROCS when the
    platform cannot tell.
    """
    counter = getattr(os, "process_cpu_count", None) or os.cpu_count
    try:
        count = counter()
    except (OSError, NotImplementedError):
        count = None
    if not count or count < 1:
        return DEFAULT_NPROCS
    return count


class Procs:
    """
    Processes started in the background that still have to be reaped.

    Examples:
        procs = Procs()
        Cmd("cc", "-c", "a.c").run(pool=procs)
        Cmd("cc", "-c", "b.c").run(pool=procs)
        ok = procs.flush()

        with Procs() as procs:
            ...
        ok = procs.ok
    """

    def __init__(self, procs: Iterable[Proc] = ()):
        self._procs: list[Proc] = list(procs)
        # members reaped early by admission control that failed
        self._early_failures = 0
        self.ok: Optional[bool] = None

    def append(self, proc: Proc) -> None:
        self._procs.append(proc)

    def clear(self) -> None:
        """Forget all members. Does not wait on them."""
        self._procs.clear()
        self._early_failures = 0

    def wait(self) -> bool:
        """
        Wait for every process in the pool.

        All members are reaped even after a failure is seen. The pool is not
        cleared, so calling this twice without adding new processes reports
        failure for the ones already reaped. Use flush() to reuse the pool.
        Members that failed and were reaped early to make room for new ones
        still count as failures.
        """
        ok = _reap(self._procs)
        return ok and self._early_failures == 0

    def flush(self) -> bool:
        """Wait for every process, then clear the pool."""
        ok = self.wait()
        self.clear()
        return ok

    def _wait_for_slot(self, max_procs: int) -> None:
        """Reap finished members until fewer than max_procs remain."""
        while len(self._procs) >= max_procs:
            for i, proc in enumerate(self._procs):
                status = proc.poll()
                if status is None:
                    continue
                del self._procs[i]
                if not status:
                    self._early_failures += 1
                break
            else:
                time.sleep(POLL_INTERVAL)

    def __len__(self) -> int:
        return len(self._procs)

    def __iter__(self) -> Iterator[Proc]:
        return iter(self._procs)

    def __getitem__(self, index: int) -> Proc:
        return self._procs[index]

    def __enter__(self) -> "Procs":
        return self

    def __exit__(self, *args):
        self.ok = self.flush()

    def __repr__(self) -> str:
        return f"Procs({self._procs!r})"


# Commands

class Cmd:
    """
    An argument vector for one process invocation.

    Arguments are passed to the OS verbatim; nothing is shell-interpreted.

    Examples:
        Cmd("cc", "-c", "main.c").run()
        cmd = Cmd("cc").append("-Wall", "-o", "main").extend(sources)
        out, ok = Cmd("git", "rev-parse", "HEAD").run_capture()
    """

    def __init__(self, *args: PathLike):
        self._args: list[str] = []
        self.append(*args)

    @property
    def args(self) -> list[str]:
        return self._args

    def append(self, *args: PathLike) -> "Cmd":
        """Append arguments in order."""
        self._args.extend(os.fspath(arg) if isinstance(arg, os.PathLike) else str(arg) for arg in args)
        return self

    def extend(self, other: Union["Cmd", Iterable[PathLike]]) -> "Cmd":
        """Append all arguments of other, which is left untouched."""
        return self.append(*list(other))

    def reset(self) -> "Cmd":
        """Drop all arguments so the command can be refilled."""
        self._args.clear()
        return self

    def copy(self) -> "Cmd":
        return Cmd(*self._args)

    def render(self) -> str:
        """Shell-quoted rendering, for diagnostics only."""
        return shlex.join(self._args)

    def run(
        self,
        *,
        pool: Optional[Procs] = None,
        max_procs: Optional[int] = None,
        stdin: Optional[PathLike] = None,
        stdout: Optional[PathLike] = None,
        stderr: Optional[PathLike] = None,
        dont_reset: bool = False,
    ) -> bool:
        """
        Run the command.

        Args:
            pool: If given, start the process in the background and add it
                  to this pool. The return value then only reports whether
                  the process could be started.
            max_procs: With a pool, first wait until fewer than this many
                       processes are in it, reaping finished ones. None or
                       0 means no limit; nprocs() + 1 is a sensible value.
            stdin: Path of a file to read stdin from.
            stdout: Path of a file to write stdout to (truncated).
            stderr: Path of a file to write stderr to (truncated). May be
                    the same path as stdout.
            dont_reset: Keep the arguments after running.

        Returns:
            True on success. Failures are logged, never raised.
        """
        try:
            if pool is not None and max_procs:
                pool._wait_for_slot(max_procs)
            proc = self._start(stdin, stdout, stderr)
            if proc is None:
                return False
            if pool is None:
                return proc.wait()
            pool.append(proc)
            return True
        finally:
            if not dont_reset:
                self.reset()

    def _start(self, stdin, stdout, stderr) -> Optional[Proc]:
        with contextlib.ExitStack() as stack:
            try:
                fdin = _open_redirect(stack, stdin, write=False)
                fdout, fderr = _open_outputs(stack, stdout, stderr)
            except OSError:
                return None
            return _spawn(self._args, stdin=fdin, stdout=fdout, stderr=fderr)

    def run_capture(
        self,
        *,
        stdin: Optional[PathLike] = None,
        dont_reset: bool = False,
    ) -> tuple[bytes, bool]:
        """
        Run the command synchronously and collect its stdout.

        stderr is inherited so the child's messages stay visible.

        Returns:
            (stdout bytes, success). The bytes are returned even when the
            child exits non-zero.
        """
        try:
            with contextlib.ExitStack() as stack:
                try:
                    fdin = _open_redirect(stack, stdin, write=False)
                except OSError:
                    return b"", False
                proc = _spawn(self._args, stdin=fdin, stdout=subprocess.PIPE)
            if proc is None:
                return b"", False
            return proc.communicate()
        finally:
            if not dont_reset:
                self.reset()

    def __or__(self, other: Union["Cmd", "Pipeline"]) -> "Pipeline":
        """
        Pipe this command's stdout into another command.

        Usage: (Cmd("ls") | Cmd("grep", "foo")).run()
        """
        if isinstance(other, Cmd):
            return Pipeline([self, other])
        if isinstance(other, Pipeline):
            return Pipeline([self, *other])
        return NotImplemented

    def __len__(self) -> int:
        return len(self._args)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._args))

    def __getitem__(self, index):
        return self._args[index]

    def __eq__(self, other) -> bool:
        if isinstance(other, Cmd):
            return self._args == other._args
        return NotImplemented

    __hash__ = None

    def __str__(self) -> str:
        return self.render()

    def __repr__(self) -> str:
        return f"Cmd({self._args!r})"


def run(*args: PathLike, **kwargs) -> bool:
    """
    Convenience function to run a command directly.

    Usage:
        ok = run("cc", "-o", "main", "main.c")
        ok = run("cc", "-c", "a.c", pool=procs)
    """
    return Cmd(*args).run(**kwargs)


def run_capture(*args: PathLike, **kwargs) -> tuple[bytes, bool]:
    """
    Convenience function to run a command and capture its stdout.

    Usage:
        out, ok = run_capture("git", "describe", "--tags")
    """
    return Cmd(*args).run_capture(**kwargs)


# Pipelines

class _ChainState(enum.Enum):
    IDLE = "idle"
    BUILDING = "building"
    ABORTED = "aborted"


class Chain:
    """
    A Unix-style pipe sequence built one stage at a time.

    A stage is only started once the next one is added, because its stdout
    has to be connected to a fresh pipe first. The last stage is started by
    end(). The chain owns at most one pipe read end at any time.

    Example:
        chain = Chain()
        chain.begin(stdin="input.txt")
        chain.add(Cmd("sort"))
        chain.add(Cmd("uniq", "-c"))
        ok = chain.end(stdout="counts.txt")
    """

    def __init__(self):
        self._state = _ChainState.IDLE
        self._fdin: Optional[int] = None
        self._pending: Optional[list[str]] = None
        self._err2out = False
        self._started: list[Proc] = []

    @property
    def running(self) -> bool:
        """True if a stage is waiting to be started."""
        return self._pending is not None

    def begin(self, *, stdin: Optional[PathLike] = None) -> bool:
        """
        Start building a new pipeline.

        Args:
            stdin: Path of a file to feed into the first stage.
        """
        if self._state is _ChainState.BUILDING:
            raise ChainStateError("begin() called on a chain that was not ended")
        self._state = _ChainState.BUILDING
        self._fdin = None
        self._pending = None
        self._err2out = False
        self._started = []
        if stdin is not None:
            try:
                self._fdin = os.open(stdin, _READ_FLAGS)
            except OSError as e:
                logger.error("could not open %s for reading: %s", os.fspath(stdin), e.strerror or e)
                self._state = _ChainState.ABORTED
                return False
        return True

    def add(
        self,
        cmd: Union[Cmd, PathLike, Iterable[PathLike]],
        *,
        err2out: bool = False,
        dont_reset: bool = False,
    ) -> bool:
        """
        Add a stage, starting the previously added one.

        Args:
            cmd: The stage. Its arguments are copied into the chain. A
                 bare string or path is a command without arguments.
            err2out: Send this stage's stderr into the pipe as well.
            dont_reset: Keep cmd's arguments instead of clearing them.

        Returns:
            False if the previous stage could not be started. The chain is
            then aborted: later add() calls do nothing and end() returns False.
        """
        try:
            if self._state is _ChainState.IDLE:
                raise ChainStateError("add() called before begin()")
            if self._state is _ChainState.ABORTED:
                return False
            if self._pending is not None and not self._start_pending():
                return False
            if isinstance(cmd, (str, os.PathLike)):
                self._pending = Cmd(cmd).args
            else:
                self._pending = Cmd(*cmd).args
            self._err2out = err2out
            return True
        finally:
            if not dont_reset and isinstance(cmd, Cmd):
                cmd.reset()

    def _start_pending(self) -> bool:
        try:
            read_end, write_end = os.pipe()
        except OSError as e:
            logger.error("could not create pipe: %s", e)
            self._abort()
            return False
        try:
            proc = _spawn(
                self._pending,
                stdin=self._fdin,
                stdout=write_end,
                stderr=write_end if self._err2out else None,
            )
        finally:
            os.close(write_end)
            self._close_input()
        if proc is None:
            os.close(read_end)
            self._abort()
            return False
        self._started.append(proc)
        self._fdin = read_end
        self._pending = None
        return True

    def end(
        self,
        *,
        pool: Optional[Procs] = None,
        stdout: Optional[PathLike] = None,
        stderr: Optional[PathLike] = None,
    ) -> bool:
        """
        Start the last stage and finish the pipeline.

        Args:
            pool: Hand all stages to this pool instead of waiting on them.
                  The return value then only reports that they started.
            stdout: Path of a file to write the last stage's stdout to.
            stderr: Path of a file to write the last stage's stderr to.
                    Ignored if the last stage was added with err2out.

        Returns:
            True if every stage started and, when waited on, exited with 0.
        """
        if self._state is _ChainState.IDLE:
            raise ChainStateError("end() called before begin()")
        aborted = self._state is _ChainState.ABORTED
        self._state = _ChainState.IDLE
        if aborted:
            return False

        pending, self._pending = self._pending, None
        started, self._started = self._started, []
        proc = None
        try:
            if pending is not None:
                proc = self._start_last(pending, stdout, stderr)
        finally:
            self._close_input()
        if pending is not None and proc is None:
            _reap(started)
            return False
        if proc is not None:
            started.append(proc)

        if pool is not None:
            for started_proc in started:
                pool.append(started_proc)
            return True
        return _reap(started)

    def _start_last(self, args: list[str], stdout, stderr) -> Optional[Proc]:
        with contextlib.ExitStack() as stack:
            try:
                fdout, fderr = _open_outputs(stack, stdout, stderr, err2out=self._err2out)
            except OSError:
                return None
            return _spawn(args, stdin=self._fdin, stdout=fdout, stderr=fderr)

    def _close_input(self) -> None:
        if self._fdin is not None:
            fd, self._fdin = self._fdin, None
            os.close(fd)

    def _abort(self) -> None:
        """Drop the pending stage and reap what already runs."""
        self._close_input()
        self._pending = None
        self._state = _ChainState.ABORTED
        started, self._started = self._started, []
        _reap(started)

    def __repr__(self) -> str:
        pending = shlex.join(self._pending) if self._pending is not None else None
        return f"Chain(state={self._state.value}, started={len(self._started)}, pending={pending!r})"


class Pipeline:
    """
    A sequence of commands joined with ``|``, run through a Chain.

    Stages are copied, so the commands used to build it can be reused.
    """

    def __init__(self, stages: Iterable[Cmd]):
        self._stages: tuple[Cmd, ...] = tuple(stage.copy() for stage in stages)

    def __or__(self, other: Union[Cmd, "Pipeline"]) -> "Pipeline":
        if isinstance(other, Cmd):
            return Pipeline([*self._stages, other])
        if isinstance(other, Pipeline):
            return Pipeline([*self._stages, *other])
        return NotImplemented

    def run(
        self,
        *,
        pool: Optional[Procs] = None,
        stdin: Optional[PathLike] = None,
        stdout: Optional[PathLike] = None,
        stderr: Optional[PathLike] = None,
    ) -> bool:
        """Run all stages; see Chain.end() for the meaning of the return value."""
        chain = Chain()
        if not chain.begin(stdin=stdin):
            chain.end()
            return False
        for stage in self._stages:
            if not chain.add(stage, dont_reset=True):
                break
        return chain.end(pool=pool, stdout=stdout, stderr=stderr)

    def __len__(self) -> int:
        return len(self._stages)

    def __iter__(self) -> Iterator[Cmd]:
        return iter(self._stages)

    def __repr__(self) -> str:
        return f"Pipeline({' | '.join(stage.render() for stage in self._stages)})"


# Self-rebuild

class Rebuild(enum.Enum):
    """Outcome of comparing a binary against its inputs."""
    NEEDED = "needed"
    UP_TO_DATE = "up to date"
    ERROR = "error"


def _newest_mtime(path: PathLike) -> int:
    """Newest mtime in nanoseconds of path, or of anything below it for a directory."""
    st = os.stat(path)
    newest = st.st_mtime_ns
    if not os.path.isdir(path):
        return newest

    def fail(error: OSError):
        raise error

    for root, dirs, files in os.walk(path, onerror=fail):
        for name in dirs + files:
            entry = os.stat(os.path.join(root, name))
            if entry.st_mtime_ns > newest:
                newest = entry.st_mtime_ns
    return newest


def needs_rebuild(output_path: PathLike, *input_paths: PathLike) -> Rebuild:
    """
    Decide whether output_path is stale with respect to input_paths.

    A missing output always needs a rebuild. An input that cannot be stat'd
    makes the answer ERROR. An input modified at the same time as the output
    counts as newer, since timestamps may only have one-second resolution.
    Directories count with everything below them.
    """
    try:
        output_mtime = os.stat(output_path).st_mtime_ns
    except FileNotFoundError:
        return Rebuild.NEEDED
    except OSError as e:
        logger.error("could not stat %s: %s", os.fspath(output_path), e.strerror or e)
        return Rebuild.ERROR

    result = Rebuild.UP_TO_DATE
    for path in input_paths:
        try:
            input_mtime = _newest_mtime(path)
        except OSError as e:
            name = e.filename if e.filename is not None else os.fspath(path)
            logger.error("could not stat %s: %s", name, e.strerror or e)
            return Rebuild.ERROR
        if input_mtime >= output_mtime:
            result = Rebuild.NEEDED
    return result


def needs_rebuild1(output_path: PathLike, input_path: PathLike) -> Rebuild:
    return needs_rebuild(output_path, input_path)


def rebuild_command(out_path: PathLike, source_path: PathLike) -> Cmd:
    """Default command that recompiles a build program: ``$CC -o out source``."""
    return Cmd(*shlex.split(os.getenv("CC", "cc")), "-o", out_path, source_path)


BuildFn = Callable[[str, str], Union[bool, Cmd]]


def go_rebuild_urself(
    source_path: PathLike,
    *deps: PathLike,
    binary_path: Optional[PathLike] = None,
    argv: Optional[list[str]] = None,
    build: Optional[BuildFn] = None,
) -> None:
    """
    Rebuild the running build program if its sources changed, then re-exec it.

    Call once at startup, before doing anything else. Returns only if the
    binary is up to date. Otherwise the program is rebuilt, the old binary
    is moved to ``<binary>.old`` and the new one replaces this process with
    the same arguments. A failure at any point exits with status 1.

    Args:
        source_path: Source of the running program.
        *deps: Additional files or directories the program depends on.
        binary_path: The running program. Defaults to sys.argv[0].
        argv: Arguments to re-exec with. Defaults to sys.argv.
        build: Called as build(out_path, source_path). Returns a bool, or a
               Cmd that is then run. Defaults to rebuild_command().
    """
    argv = list(sys.argv if argv is None else argv)
    binary = os.path.abspath(os.fspath(argv[0] if binary_path is None else binary_path))
    source = os.fspath(source_path)

    if os.path.realpath(binary) == os.path.realpath(source):
        logger.warning("%s runs from its own source, nothing to rebuild", binary)
        return

    status = needs_rebuild(binary, source, *deps)
    if status is Rebuild.ERROR:
        logger.error("could not tell whether %s needs rebuilding", binary)
        sys.exit(1)
    if status is Rebuild.UP_TO_DATE:
        return

    logger.info("Rebuilding %s", binary)
    new_path = binary + ".new"
    old_path = binary + ".old"
    if not _build(build or rebuild_command, new_path, source):
        _remove(new_path)
        logger.error("rebuilding %s failed", binary)
        sys.exit(1)
    if not _swap(binary, new_path, old_path):
        sys.exit(1)
    _replace_process(binary, argv)


def _build(build: BuildFn, out_path: str, source_path: str) -> bool:
    result = build(out_path, source_path)
    if isinstance(result, Cmd):
        return result.run()
    return bool(result)


def _remove(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("could not remove %s: %s", path, e.strerror or e)


def _rename(old_path: str, new_path: str) -> bool:
    if get_echo_actions():
        logger.info("renaming %s -> %s", old_path, new_path)
    try:
        os.replace(old_path, new_path)
    except OSError as e:
        logger.error("could not rename %s to %s: %s", old_path, new_path, e.strerror or e)
        return False
    return True


def _swap(binary: str, new_path: str, old_path: str) -> bool:
    """Move the running binary aside and put the new one in its place."""
    had_binary = os.path.exists(binary)
    if had_binary and not _rename(binary, old_path):
        _remove(new_path)
        return False
    if not _rename(new_path, binary):
        if had_binary:
            _rename(old_path, binary)
        _remove(new_path)
        return False
    return True


def _replace_process(binary: str, argv: list[str]) -> None:
    """Hand control to binary with argv. Does not return."""
    if get_echo_actions():
        logger.info("CMD: %s", shlex.join(argv))
    sys.stdout.flush()
    sys.stderr.flush()
    if os.name == "posix":
        try:
            os.execv(binary, argv)
        except OSError as e:
            logger.error("could not execute %s: %s", binary, e.strerror or e)
            sys.exit(1)
    # No exec on this platform: run the new binary and pass its status on.
    # The process ID seen by a supervisor changes.
    proc = _spawn([binary, *argv[1:]])
    if proc is None:
        sys.exit(1)
    proc.wait()
    sys.exit(proc.returncode)
