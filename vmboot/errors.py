"""Exceptions raised by vmboot."""


class VMBootError(RuntimeError):
    """Base class for unrecoverable boot automation errors."""


class ConfigurationError(VMBootError):
    """Raised when the session configuration is invalid, before any spawn."""


class SpawnError(VMBootError):
    """Raised when the emulator process could not be started."""


class BootTimeoutError(VMBootError):
    """Raised when a session does not reach the requested stage in time."""
