from pathlib import Path
import queue
import sys
from typing import List, Optional, Tuple

import pytest

# Ensure repository root is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from vmboot.process import ExitEvent  # noqa: E402

SAMPLE_PUBLIC_KEY = (
    "ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIHk2bLq0o3f0kQ8rYl3mJc7d7u9VvG0yq1s3T4n5pX6Z"
    " vmboot-test@example\n"
)


class FakeHandle:
    """In-memory stand-in for ``PtyProcess`` recording every interaction.

    ``exit_on_pause`` simulates the emulator exiting while the session is
    paused: the process is reported as exited during that pause (0-based).
    """

    def __init__(self, *, exit_on_pause: Optional[int] = None, fail_writes: bool = False) -> None:
        self.events: "queue.Queue[object]" = queue.Queue()
        self.writes: List[bytes] = []
        self.pauses: List[Optional[float]] = []
        self.kills: List[int] = []
        self.exit_status: Optional[Tuple[Optional[int], Optional[int]]] = None
        self.exit_on_pause = exit_on_pause
        self.fail_writes = fail_writes

    @property
    def exited(self) -> bool:
        return self.exit_status is not None

    def exit(self, exit_code: Optional[int], signal_code: Optional[int]) -> None:
        if self.exited:
            return
        self.exit_status = (exit_code, signal_code)
        self.events.put(ExitEvent(exit_code=exit_code, signal=signal_code))

    def write(self, data: bytes) -> None:
        if self.fail_writes:
            self.exit(1, None)
            raise OSError(5, "Input/output error")
        if self.exited:
            raise OSError(9, "Bad file descriptor")
        self.writes.append(data)

    def wait_for_exit(self, timeout: Optional[float] = None) -> bool:
        self.pauses.append(timeout)
        if self.exit_on_pause is not None and len(self.pauses) > self.exit_on_pause:
            self.exit(1, None)
        return self.exited

    def kill(self, sig: int = 9) -> None:
        self.kills.append(sig)
        self.exit(None, sig)


@pytest.fixture
def public_key(tmp_path: Path) -> Path:
    path = tmp_path / "id_ed25519.pub"
    path.write_text(SAMPLE_PUBLIC_KEY, encoding="utf-8")
    return path


@pytest.fixture
def fake_handle() -> FakeHandle:
    return FakeHandle()


@pytest.fixture
def make_handle():
    return FakeHandle
