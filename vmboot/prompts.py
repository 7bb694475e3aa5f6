"""Boot stages and console prompt classification."""

from __future__ import annotations

from enum import Enum
from typing import Dict, Mapping, Optional

from .errors import ConfigurationError


class Stage(str, Enum):
    """Progress of one boot session; values only ever move forward."""

    AWAITING_LOGIN = "awaiting-login"
    PROVISIONING = "provisioning"
    READY = "ready"

    @property
    def rank(self) -> int:
        return _STAGE_ORDER.index(self)


_STAGE_ORDER = (Stage.AWAITING_LOGIN, Stage.PROVISIONING, Stage.READY)


class PromptKind(str, Enum):
    NO_MATCH = "no-match"
    LOGIN = "login-prompt"
    SHELL = "shell-prompt"


DEFAULT_LOGIN_PROMPT = "login: "
DEFAULT_SHELL_PROMPT = "root@freebsd:~ # "

DEFAULT_PROMPTS: Mapping[str, PromptKind] = {
    DEFAULT_LOGIN_PROMPT: PromptKind.LOGIN,
    DEFAULT_SHELL_PROMPT: PromptKind.SHELL,
}


def build_prompt_table(
    *,
    login: Optional[str] = None,
    shell: Optional[str] = None,
) -> Dict[str, PromptKind]:
    """Return a prompt table with the given overrides applied.

    Raises:
        ConfigurationError: if a prompt is empty or both prompts are equal.
    """

    login_prompt = DEFAULT_LOGIN_PROMPT if login is None else login
    shell_prompt = DEFAULT_SHELL_PROMPT if shell is None else shell
    if not login_prompt or not shell_prompt:
        raise ConfigurationError("prompt strings must not be empty")
    if login_prompt == shell_prompt:
        raise ConfigurationError(
            f"login and shell prompts must differ (both are {login_prompt!r})"
        )
    return {login_prompt: PromptKind.LOGIN, shell_prompt: PromptKind.SHELL}


class PromptClassifier:
    """Map a complete tail line to the prompt it represents.

    Matching is exact equality: a prompt that is still arriving, or a line
    that merely contains a prompt, is not a match.
    """

    def __init__(self, table: Optional[Mapping[str, PromptKind]] = None) -> None:
        source = DEFAULT_PROMPTS if table is None else table
        for text, kind in source.items():
            if not text:
                raise ConfigurationError("prompt strings must not be empty")
            if kind is PromptKind.NO_MATCH:
                raise ConfigurationError(f"prompt {text!r} cannot map to {kind.value}")
        self._table = dict(source)

    def classify(self, line: str) -> PromptKind:
        return self._table.get(line, PromptKind.NO_MATCH)
