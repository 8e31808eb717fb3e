"""Process Runner — bounded external commands with streamed output.

Every git, docker and user script invocation made by the build worker goes
through :func:`run_command`. Output lines are handed to ``on_output`` as they
arrive; once ``timeout`` elapses the whole process group is killed and a
:class:`PhaseTimeoutError` is raised.
"""

from __future__ import annotations

import logging
import os
import queue
import signal
import subprocess
import threading
import time
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass

from app.services.pipeline_errors import PhaseTimeoutError

logger = logging.getLogger(__name__)

_EOF = object()
_POLL_SECONDS = 0.1


@dataclass
class CommandResult:
    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def tail(self, chars: int = 2000) -> str:
        return self.output[-chars:].strip()


class Deadline:
    """Wall-clock budget shared by every command of one build."""

    def __init__(self, seconds: float):
        self.seconds = seconds
        self._ends_at = time.monotonic() + seconds

    def remaining(self) -> float:
        return max(0.0, self._ends_at - time.monotonic())

    @property
    def expired(self) -> bool:
        return self.remaining() <= 0


def _pump(stream, sink: queue.Queue) -> None:
    try:
        for raw in iter(stream.readline, b""):
            sink.put(raw.decode("utf-8", errors="replace").rstrip("\r\n"))
    finally:
        sink.put(_EOF)


def _kill_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        proc.kill()


def run_command(
    args: Sequence[str],
    *,
    timeout: float,
    cwd: str | os.PathLike | None = None,
    env: Mapping[str, str] | None = None,
    on_output: Callable[[str], None] | None = None,
    phase: str | None = None,
    display: str | None = None,
) -> CommandResult:
    """Run ``args`` without a shell and wait at most ``timeout`` seconds.

    ``env`` is layered over the current environment; secrets belong there,
    never in ``args``. ``display`` overrides what gets logged for the command.
    """
    label = display or " ".join(args)[:200]
    if timeout <= 0:
        raise PhaseTimeoutError(f"No time left to run {label}", phase=phase, timeout=timeout)

    full_env = dict(os.environ)
    if env:
        full_env.update(env)

    logger.debug("exec: %s (cwd=%s, timeout=%.0fs)", label, cwd, timeout)
    try:
        proc = subprocess.Popen(
            list(args),
            cwd=cwd,
            env=full_env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
    except OSError as exc:
        logger.warning("Could not start %s: %s", label, exc)
        return CommandResult(127, str(exc))

    lines: queue.Queue = queue.Queue()
    reader = threading.Thread(target=_pump, args=(proc.stdout, lines), daemon=True)
    reader.start()

    collected: list[str] = []
    deadline = time.monotonic() + timeout
    finished_reading = False
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            _kill_group(proc)
            proc.wait()
            reader.join(timeout=5)
            logger.warning("Command timed out after %.0fs: %s", timeout, label)
            raise PhaseTimeoutError(
                f"Command timed out after {timeout:.0f}s: {label}", phase=phase, timeout=timeout
            )
        if finished_reading:
            try:
                exit_code = proc.wait(timeout=min(remaining, _POLL_SECONDS))
                break
            except subprocess.TimeoutExpired:
                continue
        try:
            item = lines.get(timeout=min(remaining, _POLL_SECONDS))
        except queue.Empty:
            continue
        if item is _EOF:
            finished_reading = True
            continue
        collected.append(item)
        if on_output is not None:
            on_output(item)

    reader.join(timeout=5)
    if proc.stdout is not None:
        proc.stdout.close()
    return CommandResult(exit_code, "\n".join(collected))
