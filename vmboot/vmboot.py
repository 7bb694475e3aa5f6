"""CLI entry point for vmboot."""

from __future__ import annotations

import argparse
import signal
import sys
from pathlib import Path
from typing import BinaryIO, Optional, Sequence, Tuple

from . import __version__, config
from .errors import BootTimeoutError, ConfigurationError, SpawnError
from .prompts import Stage
from .qemu import probe_qemu_version, resolve_qemu
from .session import BootSession, open_session


class ConsoleTee:
    """File-like sink mirroring console bytes to stdout and a serial log."""

    def __init__(self, *targets: Optional[BinaryIO]) -> None:
        self.targets = [target for target in targets if target is not None]

    def write(self, data: bytes) -> int:
        for target in self.targets:
            target.write(data)
        return len(data)

    def flush(self) -> None:
        for target in self.targets:
            target.flush()


def _positive_seconds(value: str) -> float:
    try:
        seconds = float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid number of seconds: {value!r}") from None
    if seconds <= 0:
        raise argparse.ArgumentTypeError(f"timeout must be positive, got {value!r}")
    return seconds


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Boot a VM image in QEMU and provision SSH access over its serial console",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--image", type=Path, required=True, help="Disk image to boot")
    parser.add_argument("--image-format", help="Disk image format (default: image suffix)")
    parser.add_argument("--os", default=config.DEFAULT_OS, help="Guest operating system")
    parser.add_argument(
        "--arch",
        default=config.DEFAULT_ARCH,
        help="Guest architecture (amd64 and arm64 are accepted as aliases)",
    )
    parser.add_argument("--cpu", default=config.DEFAULT_CPU, help="QEMU CPU model")
    parser.add_argument("--machine", default=config.DEFAULT_MACHINE, help="QEMU machine type")
    parser.add_argument("--bios", default=config.DEFAULT_BIOS, help="Firmware image")
    parser.add_argument("--memory", default=config.DEFAULT_MEMORY, help="Guest memory size")
    parser.add_argument("--smp", type=int, default=config.DEFAULT_SMP, help="Guest CPU count")
    parser.add_argument(
        "--pubkey",
        type=Path,
        default=Path(config.DEFAULT_PUBLIC_KEY),
        help="Public key installed as root's authorized_keys",
    )
    parser.add_argument(
        "--ssh-port",
        type=int,
        default=config.DEFAULT_SSH_PORT,
        help="Host port forwarded to the guest's port 22",
    )
    parser.add_argument("--qemu", help="Emulator executable (default: qemu-system-<arch>)")
    parser.add_argument("--username", help="Login name typed at the login prompt")
    parser.add_argument("--login-prompt", help="Exact login prompt line")
    parser.add_argument("--shell-prompt", help="Exact root shell prompt line")
    parser.add_argument(
        "--timeout",
        type=_positive_seconds,
        help="Seconds to wait for provisioning to finish (default: VMBOOT_BOOT_TIMEOUT or none)",
    )
    parser.add_argument("--serial-log", type=Path, help="Also write console output to this file")
    return parser.parse_args(argv)


def _build_configs(args: argparse.Namespace) -> Tuple[config.VMConfig, config.ProvisionConfig]:
    vm_config = config.VMConfig(
        image=args.image,
        os=args.os,
        arch=args.arch,
        cpu=args.cpu,
        machine=args.machine,
        bios=args.bios,
        image_format=args.image_format,
        memory=args.memory,
        smp=args.smp,
        public_key=args.pubkey,
        ssh_port=args.ssh_port,
        qemu=args.qemu,
    )
    provision = config.ProvisionConfig.from_env(
        username=args.username,
        login_prompt=args.login_prompt,
        shell_prompt=args.shell_prompt,
    )
    return vm_config, provision


def _exit_code(session: BootSession) -> int:
    if session.exit_status is None:
        return 0
    exit_code, signal_code = session.exit_status
    if exit_code is not None:
        return exit_code
    if signal_code is not None:
        return 128 + signal_code
    return 1


def _terminate(signum: int, frame: object) -> None:
    raise SystemExit(128 + signum)


def run_session(session: BootSession, *, timeout: Optional[float] = None) -> int:
    """Wait for provisioning, then keep the guest running until it exits."""

    previous = signal.signal(signal.SIGTERM, _terminate)
    try:
        if timeout is not None:
            session.run(until=Stage.READY, timeout=timeout)
        session.run()
    except KeyboardInterrupt:
        return 130
    finally:
        session.close()
        signal.signal(signal.SIGTERM, previous)
        if session.exit_status is not None:
            exit_code, signal_code = session.exit_status
            print(f"exit_code={exit_code}, signal_code={signal_code}", file=sys.stderr)
    return _exit_code(session)


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for ``vmboot`` and ``python -m vmboot``."""

    args = parse_args(argv)
    serial_log = None
    try:
        try:
            vm_config, provision = _build_configs(args)
            timeout = args.timeout if args.timeout is not None else config.boot_timeout_from_env()
            if args.serial_log is not None:
                args.serial_log.parent.mkdir(parents=True, exist_ok=True)
                serial_log = args.serial_log.open("wb")
            tee = ConsoleTee(sys.stdout.buffer, serial_log)
            executable = resolve_qemu(vm_config)
            print(f"Using qemu: {executable}", file=sys.stderr)
            qemu_version = probe_qemu_version(executable)
            if qemu_version:
                print(qemu_version, file=sys.stderr)
            session = open_session(
                vm_config, provision=provision, logfile=tee, executable=executable
            )
        except (ConfigurationError, SpawnError) as exc:
            print(f"vmboot: {exc}", file=sys.stderr)
            return 2
        try:
            return run_session(session, timeout=timeout)
        except (BootTimeoutError, ConfigurationError) as exc:
            print(f"vmboot: {exc}", file=sys.stderr)
            return 1
    finally:
        if serial_log is not None:
            serial_log.close()


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    raise SystemExit(main())
