"""Library-wide logging and hex tracing of packet payloads."""

from __future__ import annotations

import enum
import sys
from dataclasses import dataclass
from typing import Callable, Optional

try:
    import syslog as _syslog
except ImportError:  # not available on every platform
    _syslog = None

LOG_EMERG = 0
LOG_ALERT = 1
LOG_CRIT = 2
LOG_ERR = 3
LOG_WARNING = 4
LOG_NOTICE = 5
LOG_INFO = 6
LOG_DEBUG = 7

MAX_TRACE_BYTES = 128

LogFn = Callable[[int, str], None]


class _LogType(enum.Enum):
    NONE = enum.auto()
    STDIO = enum.auto()
    SYSLOG = enum.auto()
    CUSTOM = enum.auto()


@dataclass
class _LogState:
    log_type: _LogType = _LogType.NONE
    stdio_level: int = 0
    custom_fn: Optional[LogFn] = None
    trace_enabled: bool = False


_state = _LogState()


def prlog(level: int, message: str) -> None:
    """Emit a message through the configured log sink."""
    if _state.log_type is _LogType.STDIO:
        if level <= _state.stdio_level:
            sys.stderr.write(message + "\n")
    elif _state.log_type is _LogType.SYSLOG:
        if _syslog is not None:
            _syslog.syslog(level, message)
    elif _state.log_type is _LogType.CUSTOM and _state.custom_fn is not None:
        _state.custom_fn(level, message)


def set_log_stdio(level: int) -> None:
    """Log to standard error every message at or below ``level``."""
    _state.log_type = _LogType.STDIO
    _state.stdio_level = level


def set_log_syslog() -> None:
    """Send log messages to the system logger."""
    _state.log_type = _LogType.SYSLOG


def set_log_custom(fn: LogFn) -> None:
    """Send log messages to ``fn(level, message)``."""
    _state.log_type = _LogType.CUSTOM
    _state.custom_fn = fn


def set_tracing_enabled(enable: bool) -> None:
    """Turn hex tracing of packet payloads on or off."""
    _state.trace_enabled = bool(enable)


def format_trace(payload: bytes) -> str:
    """Render payload bytes as hex, truncated with '..' past the trace limit."""
    data = bytes(payload)
    limit = MAX_TRACE_BYTES - 1 if len(data) > MAX_TRACE_BYTES else len(data)
    text = "".join(f"{byte:02X} " for byte in data[:limit])
    if limit < len(data):
        text += ".."
    return text


def trace_common(tag: str, payload: bytes) -> None:
    """Log a hex dump of ``payload`` at debug level when tracing is enabled."""
    if not _state.trace_enabled or len(payload) == 0:
        return
    prlog(LOG_DEBUG, f"{tag} {format_trace(payload)}")