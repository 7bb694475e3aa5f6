"""QEMU executable lookup and argument rendering."""

from __future__ import annotations

import shutil
import subprocess
from typing import List, Optional

from .config import VMConfig
from .errors import ConfigurationError

GUEST_MAC = "52:54:00:00:00:01"


def qemu_binary_name(arch: str) -> str:
    return f"qemu-system-{arch}"


def resolve_qemu(config: VMConfig) -> str:
    """Return the emulator path for *config*, searching ``PATH`` by default."""

    candidate = config.qemu or qemu_binary_name(config.arch)
    path = shutil.which(candidate)
    if path is None:
        raise ConfigurationError(f"cannot find `{candidate}` on the system")
    return path


def probe_qemu_version(executable: str) -> Optional[str]:
    """Return the first line of ``qemu --version`` output when available."""

    try:
        result = subprocess.run(
            [executable, "--version"],
            check=True,
            capture_output=True,
            text=True,
        )
    except (subprocess.CalledProcessError, OSError):
        return None
    output = (result.stdout or "").strip()
    if not output:
        output = (result.stderr or "").strip()
    if not output:
        return None
    return output.splitlines()[0]


def build_qemu_args(config: VMConfig) -> List[str]:
    """Return the QEMU argument list (without the executable) for *config*.

    ``x86_64`` guests attach the disk directly as a virtio drive and route
    the serial console through ``mon:stdio``; other architectures attach it
    through a ``virtio-blk-pci`` device.
    """

    args = [
        "-M",
        config.machine,
        "-m",
        config.memory,
        "-cpu",
        config.cpu,
        "-smp",
        str(config.smp),
        "-bios",
        config.bios,
    ]
    if config.arch == "x86_64":
        args += [
            "-drive",
            f"if=virtio,file={config.image},id=drv,format={config.image_format}",
        ]
    else:
        args += [
            "-drive",
            f"if=none,file={config.image},id=drv,format={config.image_format}",
            "-device",
            "virtio-blk-pci,drive=drv",
        ]
    args += [
        "-device",
        "virtio-rng-pci",
        "-net",
        f"nic,model=virtio,macaddr={GUEST_MAC}",
        "-net",
        f"user,hostfwd=tcp::{config.ssh_port}-:22",
        "-nographic",
        "-display",
        "none",
    ]
    if config.arch == "x86_64":
        args += ["-nodefaults", "-serial", "mon:stdio"]
    return args


def build_qemu_command(config: VMConfig, executable: Optional[str] = None) -> List[str]:
    """Return the full emulator command line for *config*."""

    qemu = executable if executable is not None else resolve_qemu(config)
    return [qemu, *build_qemu_args(config)]
