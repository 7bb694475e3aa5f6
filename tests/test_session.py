"""Tests for the boot session state machine."""

from __future__ import annotations

from pathlib import Path

import pytest

from vmboot.config import DEFAULT_PROVISION_COMMAND, ProvisionConfig
from vmboot.errors import BootTimeoutError, ConfigurationError
from vmboot.process import ExitEvent, OutputEvent
from vmboot.prompts import Stage
from vmboot.session import BootSession

LOGIN = b"login: "
SHELL = b"root@freebsd:~ # "
COMMAND_LINE = (DEFAULT_PROVISION_COMMAND + "\n").encode("utf-8")


def _session(handle, public_key: Path, **provision: object) -> BootSession:
    return BootSession(handle, public_key, provision=ProvisionConfig(**provision))


def test_login_prompt_submits_username_once(fake_handle, public_key) -> None:
    session = _session(fake_handle, public_key)

    session.on_output(b"Booting...\n")
    session.on_output(LOGIN)

    assert fake_handle.writes == [b"root\n"]
    assert session.stage is Stage.AWAITING_LOGIN
    assert session.provisioned is False


def test_partial_prompt_does_not_trigger(fake_handle, public_key) -> None:
    session = _session(fake_handle, public_key)

    session.on_output(b"login:")
    assert fake_handle.writes == []

    session.on_output(b" ")
    assert fake_handle.writes == [b"root\n"]


def test_prompt_text_inside_longer_line_is_ignored(fake_handle, public_key) -> None:
    session = _session(fake_handle, public_key)

    session.on_output(b"last login: yesterday")
    session.on_output(b"\nroot@freebsd:~ # ls")

    assert fake_handle.writes == []
    assert session.stage is Stage.AWAITING_LOGIN


def test_shell_prompt_needs_the_echoed_login_line(fake_handle, public_key) -> None:
    session = _session(fake_handle, public_key, pre_command_delay=0, settle_delay=0)

    session.on_output(LOGIN)
    session.on_output(SHELL)

    assert fake_handle.writes == [b"root\n"]
    assert session.line_buffer == "login: root@freebsd:~ # "
    assert session.provisioned is False

    session.on_output(b"root\r\n" + SHELL)

    assert session.provisioned is True
    assert session.stage is Stage.READY


def test_shell_prompt_runs_provisioning_dialogue(fake_handle, public_key) -> None:
    session = _session(fake_handle, public_key)
    key = public_key.read_bytes()

    session.on_output(b"Booting...\n")
    session.on_output(LOGIN)
    session.on_output(b"root\r\n")
    session.on_output(SHELL)

    assert session.provisioned is True
    assert session.stage is Stage.READY
    assert fake_handle.writes[0] == b"root\n"
    assert fake_handle.writes[1] == COMMAND_LINE
    assert fake_handle.writes[-1] == b"\nEOF\n"
    pieces = fake_handle.writes[2:-1]
    assert b"".join(pieces) == key
    assert all(len(piece) == 32 for piece in pieces[:-1])
    assert len(pieces) == -(-len(key) // 32)
    # pre-command delay, settle delay, then one pause between each key piece
    assert fake_handle.pauses == [1.5, 0.1] + [0.01] * (len(pieces) - 1)


def test_repeated_shell_prompt_provisions_once(fake_handle, public_key) -> None:
    session = _session(fake_handle, public_key)

    session.on_output(LOGIN)
    session.on_output(SHELL)
    session.on_output(b"\r\n" + SHELL)
    session.on_output(b"\r\nsshd restarted\r\n")
    session.on_output(SHELL)

    assert fake_handle.writes.count(COMMAND_LINE) == 1
    assert fake_handle.writes.count(b"\nEOF\n") == 1
    assert session.stage is Stage.READY


def test_login_prompt_after_provisioning_is_ignored(fake_handle, public_key) -> None:
    session = _session(fake_handle, public_key)

    session.on_output(SHELL)
    writes = list(fake_handle.writes)
    session.on_output(b"\n" + LOGIN)

    assert fake_handle.writes == writes


def test_chunk_boundaries_do_not_change_behaviour(make_handle, public_key) -> None:
    split_handle = make_handle()
    whole_handle = make_handle()
    split_session = _session(split_handle, public_key)
    whole_session = _session(whole_handle, public_key)

    for chunk in (b"ro", b"ot@free", b"bsd:~ # "):
        split_session.on_output(chunk)
    whole_session.on_output(SHELL)

    assert split_handle.writes == whole_handle.writes
    assert split_session.stage is whole_session.stage is Stage.READY


def test_empty_chunk_is_a_no_op(fake_handle, public_key) -> None:
    session = _session(fake_handle, public_key)
    session.on_output(b"log")

    session.on_output(b"")

    assert session.line_buffer == "log"
    assert fake_handle.writes == []


def test_line_buffer_resets_after_newline(fake_handle, public_key) -> None:
    session = _session(fake_handle, public_key)

    session.on_output(b"kernel message\n")

    assert session.line_buffer == ""


def test_exit_during_settle_pause_stops_dialogue(make_handle, public_key) -> None:
    handle = make_handle(exit_on_pause=1)
    session = _session(handle, public_key)

    session.on_output(LOGIN)
    session.on_output(SHELL)
    session.on_output(b"\n" + SHELL)
    session.on_output(b"\n" + LOGIN)

    assert handle.writes == [b"root\n", COMMAND_LINE]
    assert session.provisioned is True
    assert session.stage is Stage.PROVISIONING
    assert session.terminated
    assert session.exit_status == (1, None)


def test_exit_during_key_pieces_skips_terminator(make_handle, public_key) -> None:
    handle = make_handle(exit_on_pause=3)
    session = _session(handle, public_key)

    session.on_output(SHELL)

    assert handle.writes[0] == COMMAND_LINE
    assert b"\nEOF\n" not in handle.writes
    assert len(handle.writes) == 3
    assert session.stage is Stage.PROVISIONING


def test_output_after_exit_is_ignored(fake_handle, public_key) -> None:
    session = _session(fake_handle, public_key)

    session.on_exit(0, None)
    session.on_output(LOGIN)

    assert fake_handle.writes == []
    assert session.exit_status == (0, None)


def test_write_failure_after_process_exit_is_not_raised(make_handle, public_key) -> None:
    handle = make_handle(fail_writes=True)
    session = _session(handle, public_key)

    session.on_output(LOGIN)

    assert handle.writes == []
    assert session.terminated
    assert session.exit_status == (1, None)


def test_write_failure_while_alive_propagates(fake_handle, public_key, monkeypatch) -> None:
    session = _session(fake_handle, public_key)
    monkeypatch.setattr("vmboot.session.WRITE_FAILURE_GRACE", 0)

    def broken_write(data: bytes) -> None:
        raise OSError(5, "Input/output error")

    fake_handle.write = broken_write

    with pytest.raises(OSError):
        session.on_output(LOGIN)


def test_unreadable_public_key_fails_before_command(fake_handle, tmp_path) -> None:
    missing = tmp_path / "missing.pub"
    session = _session(fake_handle, missing)

    with pytest.raises(ConfigurationError):
        session.on_output(SHELL)

    assert fake_handle.writes == []


def test_custom_prompts_and_dialogue(fake_handle, public_key) -> None:
    session = _session(
        fake_handle,
        public_key,
        username="admin",
        login_prompt="alpine login: ",
        shell_prompt="alpine:~# ",
        command="cat > /root/.ssh/authorized_keys <<END",
        terminator="END",
        pre_command_delay=0,
        settle_delay=0,
        piece_size_bits=8 * 64,
    )

    session.on_output(b"Welcome\r\nalpine login: ")
    session.on_output(b"\r\nalpine:~# ")

    assert fake_handle.writes[0] == b"admin\n"
    assert fake_handle.writes[1] == b"cat > /root/.ssh/authorized_keys <<END\n"
    assert fake_handle.writes[-1] == b"\nEND\n"
    assert b"".join(fake_handle.writes[2:-1]) == public_key.read_bytes()


def test_run_processes_queued_events_until_ready(fake_handle, public_key) -> None:
    session = _session(fake_handle, public_key)
    for chunk in (b"Booting...\n", LOGIN, b"root\r\n", SHELL):
        fake_handle.events.put(OutputEvent(chunk))

    stage = session.run(until=Stage.READY, timeout=5)

    assert stage is Stage.READY
    assert fake_handle.writes[-1] == b"\nEOF\n"


def test_run_returns_when_process_exits(fake_handle, public_key) -> None:
    session = _session(fake_handle, public_key)
    fake_handle.events.put(OutputEvent(LOGIN))
    fake_handle.events.put(ExitEvent(exit_code=1, signal=None))
    fake_handle.events.put(OutputEvent(b"\n" + SHELL))

    stage = session.run(timeout=5)

    assert stage is Stage.AWAITING_LOGIN
    assert session.exit_status == (1, None)
    assert fake_handle.writes == [b"root\n"]


def test_run_times_out(fake_handle, public_key) -> None:
    session = _session(fake_handle, public_key)

    with pytest.raises(BootTimeoutError):
        session.run(until=Stage.READY, timeout=0.05, poll_interval=0.01)


def test_close_kills_process_once(fake_handle, public_key) -> None:
    with _session(fake_handle, public_key) as session:
        session.on_output(LOGIN)

    session.close()

    assert fake_handle.kills == [9]
    assert session.terminated
    assert session.exit_status == (None, 9)


def test_dispatch_rejects_unknown_events(fake_handle, public_key) -> None:
    session = _session(fake_handle, public_key)

    with pytest.raises(TypeError):
        session.dispatch(object())


def test_exit_is_logged(fake_handle, public_key, monkeypatch) -> None:
    events: list[tuple[str, dict[str, object]]] = []

    def record_event(event: str, **fields: object) -> None:
        events.append((event, fields))

    monkeypatch.setattr("vmboot.session.log_event", record_event)
    session = _session(fake_handle, public_key)

    session.on_exit(1, None)
    session.on_exit(1, None)

    exits = [fields for name, fields in events if name == "vmboot.session.exit"]
    assert len(exits) == 1
    assert exits[0]["exit_code"] == 1
    assert exits[0]["signal"] is None
