"""Boot session state machine driving a VM through its serial console."""

from __future__ import annotations

import queue
import signal
import time
from pathlib import Path
from typing import BinaryIO, Dict, Optional, Tuple

from .accumulator import LineAccumulator
from .config import ProvisionConfig, VMConfig
from .errors import BootTimeoutError, ConfigurationError
from .logging_utils import log_event
from .process import ExitEvent, OutputEvent, ProcessEvent, PtyProcess
from .prompts import PromptClassifier, PromptKind, Stage
from .qemu import build_qemu_command
from .writer import write_chunked

DEFAULT_EVENT_POLL = 0.1
WRITE_FAILURE_GRACE = 1.0


class BootSession:
    """Live automation context for one VM boot.

    The session consumes console output in arrival order, classifies the
    trailing line, and acts on ``(stage, prompt)`` pairs listed in
    ``TRANSITIONS``; every other pair is ignored. The process handle must
    provide ``events``, ``write``, ``kill``, ``wait_for_exit``, ``exited``
    and ``exit_status`` like :class:`~vmboot.process.PtyProcess`.
    """

    TRANSITIONS: Dict[Tuple[Stage, PromptKind], str] = {
        (Stage.AWAITING_LOGIN, PromptKind.LOGIN): "_submit_login",
        (Stage.AWAITING_LOGIN, PromptKind.SHELL): "_provision",
    }

    def __init__(
        self,
        handle: PtyProcess,
        public_key_path: Path,
        *,
        provision: Optional[ProvisionConfig] = None,
        classifier: Optional[PromptClassifier] = None,
    ) -> None:
        self._handle = handle
        self.public_key_path = Path(public_key_path)
        self.provision = provision if provision is not None else ProvisionConfig()
        self.classifier = (
            classifier if classifier is not None else PromptClassifier(self.provision.prompts)
        )
        self.stage = Stage.AWAITING_LOGIN
        self.provisioned = False
        self.exit_status: Optional[Tuple[Optional[int], Optional[int]]] = None
        self._accumulator = LineAccumulator()
        self._closed = False

    def __enter__(self) -> "BootSession":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @property
    def line_buffer(self) -> str:
        return self._accumulator.line

    @property
    def terminated(self) -> bool:
        return self._closed or self.exit_status is not None

    def dispatch(self, event: ProcessEvent) -> None:
        if isinstance(event, OutputEvent):
            self.on_output(event.data)
        elif isinstance(event, ExitEvent):
            self.on_exit(event.exit_code, event.signal)
        else:
            raise TypeError(f"unsupported process event {event!r}")

    def on_output(self, chunk: bytes) -> None:
        """Consume one console chunk and perform the matching transition."""

        if self.terminated or not chunk:
            return
        line = self._accumulator.append(chunk)
        prompt = self.classifier.classify(line)
        if prompt is PromptKind.NO_MATCH:
            return
        action = self.TRANSITIONS.get((self.stage, prompt))
        if action is None:
            log_event(
                "vmboot.session.prompt_ignored",
                stage=self.stage.value,
                prompt=prompt.value,
            )
            return
        getattr(self, action)()

    def on_exit(self, exit_code: Optional[int], signal_code: Optional[int]) -> None:
        self._record_exit(exit_code, signal_code)

    def run(
        self,
        *,
        until: Optional[Stage] = None,
        timeout: Optional[float] = None,
        poll_interval: float = DEFAULT_EVENT_POLL,
    ) -> Stage:
        """Drain process events until the process exits or *until* is reached.

        Raises:
            BootTimeoutError: when *timeout* seconds pass first.
        """

        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.terminated:
            if until is not None and self.stage.rank >= until.rank:
                break
            wait = poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    log_event(
                        "vmboot.session.timeout",
                        stage=self.stage.value,
                        timeout=timeout,
                        line=self.line_buffer,
                    )
                    raise BootTimeoutError(
                        f"boot did not reach {until.value if until else 'exit'} "
                        f"within {timeout}s (stage: {self.stage.value})"
                    )
                wait = min(wait, remaining)
            try:
                event = self._handle.events.get(timeout=wait)
            except queue.Empty:
                continue
            self.dispatch(event)
        return self.stage

    def close(self) -> None:
        """Kill the emulator; the session is finished whatever its stage."""

        if self._closed:
            return
        self._closed = True
        self._handle.kill(signal.SIGKILL)
        if self.exit_status is None and self._handle.exit_status is not None:
            self._record_exit(*self._handle.exit_status)
        log_event("vmboot.session.closed", stage=self.stage.value, provisioned=self.provisioned)

    def _advance(self, stage: Stage) -> None:
        if stage.rank <= self.stage.rank:
            return
        log_event("vmboot.session.stage", previous=self.stage.value, stage=stage.value)
        self.stage = stage

    def _record_exit(self, exit_code: Optional[int], signal_code: Optional[int]) -> None:
        if self.exit_status is not None:
            return
        self.exit_status = (exit_code, signal_code)
        log_event(
            "vmboot.session.exit",
            exit_code=exit_code,
            signal=signal_code,
            stage=self.stage.value,
            provisioned=self.provisioned,
        )

    def _observe_handle_exit(self) -> None:
        status = self._handle.exit_status
        if status is None:
            status = (None, None)
        self._record_exit(*status)

    def _pause(self, seconds: float) -> bool:
        """Wait *seconds*; return ``True`` if the process exited meanwhile."""

        if self.terminated:
            return True
        if self._handle.wait_for_exit(max(seconds, 0.0)):
            self._observe_handle_exit()
            return True
        return False

    def _write(self, data: bytes) -> bool:
        """Send *data* unless the session already ended; report whether it was sent."""

        if not self.terminated and self._handle.exited:
            self._observe_handle_exit()
        if self.terminated:
            log_event("vmboot.session.write.skipped", size=len(data), stage=self.stage.value)
            return False
        try:
            self._handle.write(data)
        except OSError:
            if not self._handle.wait_for_exit(WRITE_FAILURE_GRACE):
                raise
            self._observe_handle_exit()
            log_event("vmboot.session.write.skipped", size=len(data), stage=self.stage.value)
            return False
        return True

    def _submit_login(self) -> None:
        if self._write(self.provision.login_line):
            log_event("vmboot.session.login", username=self.provision.username)

    def _provision(self) -> None:
        if self.provisioned:
            return
        self.provisioned = True
        self._advance(Stage.PROVISIONING)
        log_event("vmboot.session.provision.start", public_key=self.public_key_path)
        if self._run_provision_dialogue():
            log_event("vmboot.session.provision.complete")
            self._advance(Stage.READY)
        else:
            log_event("vmboot.session.provision.interrupted", exit_status=self.exit_status)

    def _read_public_key(self) -> bytes:
        try:
            text = self.public_key_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise ConfigurationError(
                f"cannot read public key {self.public_key_path}: {exc}"
            ) from exc
        return text.encode("utf-8")

    def _run_provision_dialogue(self) -> bool:
        config = self.provision
        key = self._read_public_key()

        if self._pause(config.pre_command_delay):
            return False
        if not self._write(config.command_line):
            return False
        # the heredoc read has to be open before the key arrives
        if self._pause(config.settle_delay):
            return False
        write_chunked(
            self._write,
            key,
            config.piece_size_bits,
            config.inter_piece_delay_ms,
            pause=self._pause,
        )
        if self.terminated:
            return False
        return self._write(config.terminator_line)


def open_session(
    config: VMConfig,
    *,
    provision: Optional[ProvisionConfig] = None,
    logfile: Optional[BinaryIO] = None,
    executable: Optional[str] = None,
) -> BootSession:
    """Spawn the emulator described by *config* and return its session.

    Configuration errors and spawn failures propagate; no process is left
    running when either is raised.
    """

    provision = provision if provision is not None else ProvisionConfig.from_env()
    command = build_qemu_command(config, executable)
    log_event("vmboot.session.spawn", command=command, image=config.image, arch=config.arch)
    handle = PtyProcess.spawn(command, logfile=logfile)
    return BootSession(handle, config.public_key, provision=provision)
