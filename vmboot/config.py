"""Session configuration for vmboot.

Every field has a documented default and is validated once when the
configuration object is built, so nothing is spawned from a bad config.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from .errors import ConfigurationError
from .prompts import PromptKind, build_prompt_table
from .writer import DEFAULT_INTER_PIECE_DELAY_MS, DEFAULT_PIECE_SIZE_BITS, validate_piece_size

SUPPORTED_OS = ("freebsd",)

ARCH_ALIASES = {
    "amd64": "x86_64",
    "arm64": "aarch64",
}

DEFAULT_OS = "freebsd"
DEFAULT_ARCH = "aarch64"
DEFAULT_CPU = "cortex-a57"
DEFAULT_MACHINE = "virt,gic-version=2"
DEFAULT_BIOS = "edk2-aarch64-code.fd"
DEFAULT_MEMORY = "2G"
DEFAULT_SMP = 4
DEFAULT_SSH_PORT = 22222
DEFAULT_PUBLIC_KEY = "~/.ssh/id_rsa.pub"

DEFAULT_USERNAME = "root"
DEFAULT_HEREDOC_TERMINATOR = "EOF"
DEFAULT_PROVISION_COMMAND = (
    "mkdir -p ~/.ssh && cat > ~/.ssh/authorized_keys <<EOF"
    " && chmod 600 ~/.ssh/authorized_keys"
    " && echo 'sshd_enable=\"YES\"' >> /etc/rc.conf"
    " && echo 'PermitRootLogin yes' >> /etc/ssh/sshd_config"
    " && /etc/rc.d/sshd restart"
)
DEFAULT_PRE_COMMAND_DELAY = 1.5
DEFAULT_SETTLE_DELAY = 0.1


def normalise_arch(arch: str) -> str:
    """Return the QEMU architecture name for *arch*."""

    value = arch.strip()
    return ARCH_ALIASES.get(value, value)


def _read_float_env(name: str, default: float) -> float:
    """Return a non-negative float configured via environment variable."""

    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        parsed = float(value)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number (got {value!r})") from exc
    if parsed < 0:
        raise ConfigurationError(f"{name} must be >= 0 (got {parsed})")
    return parsed


def _read_int_env(name: str, default: int) -> int:
    """Return a non-negative integer configured via environment variable."""

    value = os.environ.get(name)
    if value is None or value.strip() == "":
        return default
    try:
        parsed = int(value)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer (got {value!r})") from exc
    if parsed < 0:
        raise ConfigurationError(f"{name} must be >= 0 (got {parsed})")
    return parsed


def boot_timeout_from_env() -> Optional[float]:
    """Return ``VMBOOT_BOOT_TIMEOUT`` in seconds, or ``None`` for no limit."""

    timeout = _read_float_env("VMBOOT_BOOT_TIMEOUT", 0.0)
    return timeout or None


@dataclass(frozen=True)
class ProvisionConfig:
    """How the SSH provisioning dialogue is typed into the console."""

    username: str = DEFAULT_USERNAME
    command: str = DEFAULT_PROVISION_COMMAND
    terminator: str = DEFAULT_HEREDOC_TERMINATOR
    pre_command_delay: float = DEFAULT_PRE_COMMAND_DELAY
    settle_delay: float = DEFAULT_SETTLE_DELAY
    piece_size_bits: int = DEFAULT_PIECE_SIZE_BITS
    inter_piece_delay_ms: int = DEFAULT_INTER_PIECE_DELAY_MS
    login_prompt: Optional[str] = None
    shell_prompt: Optional[str] = None
    prompts: Mapping[str, PromptKind] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        if not self.username or "\n" in self.username:
            raise ConfigurationError(f"invalid login username {self.username!r}")
        if not self.command.strip() or "\n" in self.command:
            raise ConfigurationError("provision command must be a single non-empty line")
        if not self.terminator or "\n" in self.terminator:
            raise ConfigurationError(f"invalid heredoc terminator {self.terminator!r}")
        for name in ("pre_command_delay", "settle_delay"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be >= 0")
        if self.inter_piece_delay_ms < 0:
            raise ConfigurationError("inter_piece_delay_ms must be >= 0")
        try:
            validate_piece_size(self.piece_size_bits)
        except ValueError as exc:
            raise ConfigurationError(str(exc)) from exc
        table = build_prompt_table(login=self.login_prompt, shell=self.shell_prompt)
        object.__setattr__(self, "prompts", table)

    @property
    def login_line(self) -> bytes:
        return f"{self.username}\n".encode("utf-8")

    @property
    def command_line(self) -> bytes:
        return f"{self.command}\n".encode("utf-8")

    @property
    def terminator_line(self) -> bytes:
        return f"\n{self.terminator}\n".encode("utf-8")

    @classmethod
    def from_env(cls, **overrides: object) -> "ProvisionConfig":
        """Build a config from ``VMBOOT_*`` variables, then apply *overrides*."""

        values: dict[str, object] = {
            "pre_command_delay": _read_float_env(
                "VMBOOT_PRE_COMMAND_DELAY", DEFAULT_PRE_COMMAND_DELAY
            ),
            "settle_delay": _read_float_env("VMBOOT_SETTLE_DELAY", DEFAULT_SETTLE_DELAY),
            "piece_size_bits": _read_int_env("VMBOOT_PIECE_SIZE_BITS", DEFAULT_PIECE_SIZE_BITS),
            "inter_piece_delay_ms": _read_int_env(
                "VMBOOT_PIECE_DELAY_MS", DEFAULT_INTER_PIECE_DELAY_MS
            ),
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**values)  # type: ignore[arg-type]


@dataclass(frozen=True)
class VMConfig:
    """Inputs for spawning the emulator, passed through to QEMU as-is.

    Only ``os``, ``image``, ``smp``, ``ssh_port`` and ``public_key`` are
    interpreted; the rest is handed to the command builder untouched.
    """

    image: Path
    os: str = DEFAULT_OS
    arch: str = DEFAULT_ARCH
    cpu: str = DEFAULT_CPU
    machine: str = DEFAULT_MACHINE
    bios: str = DEFAULT_BIOS
    image_format: Optional[str] = None
    memory: str = DEFAULT_MEMORY
    smp: int = DEFAULT_SMP
    public_key: Path = Path(DEFAULT_PUBLIC_KEY)
    ssh_port: int = DEFAULT_SSH_PORT
    qemu: Optional[str] = None

    def __post_init__(self) -> None:
        if self.image is None or str(self.image).strip() == "":
            raise ConfigurationError("no image specified")
        os_name = self.os.strip().lower()
        if os_name not in SUPPORTED_OS:
            raise ConfigurationError(
                f"unsupported guest OS {self.os!r}; supported: {', '.join(SUPPORTED_OS)}"
            )
        object.__setattr__(self, "os", os_name)
        object.__setattr__(self, "image", Path(self.image))
        object.__setattr__(self, "arch", normalise_arch(self.arch))
        if not self.arch:
            raise ConfigurationError("no architecture specified")
        if self.image_format is None or self.image_format.strip() == "":
            suffix = self.image.suffix.lstrip(".")
            if not suffix:
                raise ConfigurationError(
                    f"cannot infer image format from {self.image}; pass image_format"
                )
            object.__setattr__(self, "image_format", suffix)
        if self.smp < 1:
            raise ConfigurationError(f"smp must be >= 1 (got {self.smp})")
        if not 0 < self.ssh_port < 65536:
            raise ConfigurationError(f"ssh_port must be within 1-65535 (got {self.ssh_port})")
        public_key = Path(os.path.expanduser(str(self.public_key)))
        object.__setattr__(self, "public_key", public_key)
        if not public_key.is_file():
            raise ConfigurationError(f"public key {public_key} does not exist")
        if not os.access(public_key, os.R_OK):
            raise ConfigurationError(f"public key {public_key} is not readable")
