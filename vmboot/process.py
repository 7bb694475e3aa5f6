"""Emulator process attached to a pseudo-terminal.

The process handle owns one ``pexpect.spawn`` child and a single reader
thread. The reader drains the pty continuously, so the guest never stalls on
a full output buffer, and publishes everything it sees as events on one
ordered queue that the boot session consumes.
"""

from __future__ import annotations

import queue
import signal
import threading
from dataclasses import dataclass
from typing import BinaryIO, Optional, Sequence, Tuple, Union

import pexpect

from .errors import SpawnError
from .logging_utils import log_event

DEFAULT_READ_SIZE = 4096
DEFAULT_POLL_INTERVAL = 0.1


@dataclass(frozen=True)
class OutputEvent:
    """A chunk of bytes read from the console."""

    data: bytes


@dataclass(frozen=True)
class ExitEvent:
    """The emulator exited; ``signal`` is set when it was killed by one."""

    exit_code: Optional[int]
    signal: Optional[int]


ProcessEvent = Union[OutputEvent, ExitEvent]


class PtyProcess:
    """Handle for a spawned child process driven through a pty."""

    def __init__(
        self,
        child: "pexpect.spawn",
        *,
        events: Optional["queue.Queue[ProcessEvent]"] = None,
        read_size: int = DEFAULT_READ_SIZE,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> None:
        self.child = child
        self.events: "queue.Queue[ProcessEvent]" = events if events is not None else queue.Queue()
        self.read_size = read_size
        self.poll_interval = poll_interval
        self.exit_status: Optional[Tuple[Optional[int], Optional[int]]] = None
        self._stopping = threading.Event()
        self._exited = threading.Event()
        self._reader: Optional[threading.Thread] = None

    @classmethod
    def spawn(
        cls,
        command: Sequence[str],
        *,
        logfile: Optional[BinaryIO] = None,
        env: Optional[dict] = None,
        **kwargs: object,
    ) -> "PtyProcess":
        """Spawn *command* on a new pty and start draining its output.

        Raises:
            SpawnError: if the executable is missing or cannot be started.
        """

        if not command:
            raise SpawnError("empty command")
        try:
            child = pexpect.spawn(
                command[0],
                list(command[1:]),
                timeout=None,
                encoding=None,
                env=env,
                echo=False,
            )
        except (pexpect.ExceptionPexpect, OSError) as exc:
            raise SpawnError(f"failed to spawn {command[0]}: {exc}") from exc
        child.logfile_read = logfile
        handle = cls(child, **kwargs)  # type: ignore[arg-type]
        log_event("vmboot.process.spawned", command=list(command), pid=child.pid)
        handle.start()
        return handle

    @property
    def pid(self) -> Optional[int]:
        return getattr(self.child, "pid", None)

    @property
    def exited(self) -> bool:
        return self._exited.is_set()

    def start(self) -> None:
        if self._reader is not None:
            return
        self._reader = threading.Thread(
            target=self._pump, name=f"pty-reader-{self.pid}", daemon=True
        )
        self._reader.start()

    def wait_for_exit(self, timeout: Optional[float] = None) -> bool:
        """Block up to *timeout* seconds; return ``True`` once the process exited."""

        return self._exited.wait(timeout)

    def write(self, data: bytes) -> None:
        """Send raw bytes to the console; errors on a closed pty propagate."""

        self.child.send(data)

    def kill(self, sig: int = signal.SIGKILL) -> None:
        """Terminate the child with *sig*; safe to call any number of times."""

        self._stopping.set()
        if self.child.isalive():
            try:
                self.child.kill(sig)
            except OSError:
                # already reaped between isalive() and kill()
                pass
            log_event("vmboot.process.killed", pid=self.pid, signal=int(sig))
        if self._reader is not None and self._reader is not threading.current_thread():
            self._reader.join()
        elif self._reader is None:
            self._finish()

    def _pump(self) -> None:
        while not self._stopping.is_set():
            try:
                data = self.child.read_nonblocking(self.read_size, timeout=self.poll_interval)
            except pexpect.TIMEOUT:
                continue
            except (pexpect.EOF, OSError):
                break
            if data:
                self.events.put(OutputEvent(data))
        self._finish()

    def _finish(self) -> None:
        if self._exited.is_set():
            return
        try:
            self.child.close(force=True)
        except pexpect.ExceptionPexpect as exc:
            log_event("vmboot.process.close_failed", pid=self.pid, error=repr(exc))
        self.exit_status = (self.child.exitstatus, self.child.signalstatus)
        self.events.put(ExitEvent(exit_code=self.exit_status[0], signal=self.exit_status[1]))
        self._exited.set()
