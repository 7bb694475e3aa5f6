"""JSON event log for boot sessions.

Events go to ``stderr`` as one JSON object per line so they never mix with
the console transcript mirrored on ``stdout``. Nothing is written unless
``VMBOOT_LOG_EVENTS`` is set; ``VMBOOT_LOG_FILE`` adds a copy on disk.
"""

from __future__ import annotations

import datetime as _dt
import json
import os
import sys
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

LOG_EVENTS_ENV = "VMBOOT_LOG_EVENTS"
LOG_FILE_ENV = "VMBOOT_LOG_FILE"

_FALSE_VALUES = {"", "0", "false", "no", "off"}


def _field_value(value: Any) -> Any:
    """Convert an event field to something ``json.dumps`` accepts.

    Stages and prompt kinds log as their values, paths as strings, and
    argv lists or exit-status tuples as JSON arrays.
    """

    if isinstance(value, Enum):
        return value.value
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, (list, tuple)):
        return [_field_value(item) for item in value]
    return repr(value)


def _logs_enabled() -> bool:
    value = os.environ.get(LOG_EVENTS_ENV)
    return value is not None and value.strip().lower() not in _FALSE_VALUES


def _log_file() -> Optional[Path]:
    value = os.environ.get(LOG_FILE_ENV, "").strip()
    return Path(value) if value else None


def _build_record(event: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    record = {key: _field_value(value) for key, value in fields.items()}
    record["event"] = event
    record["timestamp"] = _dt.datetime.now(_dt.timezone.utc).isoformat()
    return record


def log_event(event: str, **fields: Any) -> None:
    """Emit *event* with *fields* when event logging is enabled.

    ``timestamp`` is reserved and wins over a field of the same name.
    """

    if not _logs_enabled():
        return

    line = json.dumps(_build_record(event, fields), sort_keys=True) + "\n"
    sys.stderr.write(line)
    sys.stderr.flush()

    log_file = _log_file()
    if log_file is not None:
        _append_line(log_file, line)


def _append_line(log_file: Path, line: str) -> None:
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        with log_file.open("a", encoding="utf-8") as handle:
            handle.write(line)
    except OSError as exc:
        # the event already reached stderr
        sys.stderr.write(f"vmboot: cannot append event log to {log_file}: {exc}\n")
        sys.stderr.flush()
