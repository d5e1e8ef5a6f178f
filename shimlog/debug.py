"""Diagnostic events of the shim logger itself: journald on POSIX, rolling files on Windows."""

from __future__ import annotations

import array
import errno
import logging
import os
import signal
import socket
import struct
import sys
import tempfile
import threading
import time
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from logging.handlers import RotatingFileHandler

DAEMON_NAME = "shim-loggers-for-containerd"


class LogLevel(str, Enum):
    """Severity of a diagnostic event."""

    INFO = "info"
    ERROR = "err"
    DEBUG = "debug"


# When true, additional debug events are emitted by the loggers.
verbose: bool = False
# The last error raised while setting up or running a log driver.
err_logger: BaseException | None = None
# Native protocol socket of the systemd journal.
journal_socket_path: str = "/run/systemd/journal/socket"

_IS_WINDOWS = os.name == "nt"

_JOURNAL_PRIORITY = {"err": 3, "info": 6, "debug": 7}
_FILE_LEVELS = {"err": "ERR", "info": "INF", "debug": "DBG"}

_MAX_FILE_SIZE = 10 * 1_000_000
_MAX_ROLLS = 24


def _default_log_dir() -> str:
    program_data = os.environ.get("ProgramData") or r"C:\ProgramData"
    return os.path.join(program_data, "Amazon", "ECS", "log", "shim-logger")


@dataclass
class _FileTarget:
    log_dir: str = field(default_factory=_default_log_dir)
    container_name: str = ""
    loggers: dict[str, logging.Logger] = field(default_factory=dict)


_file_target = _FileTarget()


def _level_name(msg_type: LogLevel | str) -> str:
    if isinstance(msg_type, LogLevel):
        return msg_type.value
    return str(msg_type)


def send_events_to_log(
    identifier: str,
    msg: str,
    msg_type: LogLevel | str,
    delay: float = 0,
) -> None:
    """Send one diagnostic event, then pause for ``delay`` seconds."""
    level = _level_name(msg_type)
    if _IS_WINDOWS:
        _send_to_file(identifier, msg, level)
    else:
        _send_to_journal(identifier, msg, _JOURNAL_PRIORITY.get(level, 0))
    if delay > 0:
        time.sleep(delay)


def set_log_file_path(log_dir: str, container_name: str) -> None:
    """Direct diagnostic events to files in ``log_dir`` (Windows only)."""
    if not _IS_WINDOWS:
        raise OSError(
            "debugging to file not supported, debug logs will be written with journald"
        )
    _file_target.log_dir = log_dir
    _file_target.container_name = container_name


def flush_log() -> None:
    """Flush any file-based diagnostic logs."""
    for file_logger in _file_target.loggers.values():
        for handler in file_logger.handlers:
            handler.flush()


def start_stack_trace_handler() -> None:
    """On SIGUSR1, write the stacks of all threads to the diagnostic log."""
    if _IS_WINDOWS:
        return

    def _on_signal(signum, frame) -> None:
        threading.Thread(target=_report_stack_trace, daemon=True).start()

    signal.signal(signal.SIGUSR1, _on_signal)


def report_logger_error() -> None:
    """Send the recorded logger error, if any, to the diagnostic log."""
    if err_logger is not None:
        send_events_to_log(DAEMON_NAME, str(err_logger), LogLevel.ERROR, 1)


def _report_stack_trace() -> None:
    names = {thread.ident: thread.name for thread in threading.enumerate()}
    parts = [
        f"thread {names.get(ident, ident)}:\n" + "".join(traceback.format_stack(frame))
        for ident, frame in sys._current_frames().items()
    ]
    dump = "\n".join(parts)
    send_events_to_log(
        DAEMON_NAME,
        f"\n====== STACKTRACE ======\n{datetime.now()}\n{dump}\n====== /STACKTRACE ======\n",
        LogLevel.DEBUG,
        2,
    )


def _journal_field(name: str, value: str) -> bytes:
    data = value.encode("utf-8", errors="replace")
    key = name.encode("ascii")
    if b"\n" in data:
        return key + b"\n" + struct.pack("<Q", len(data)) + data + b"\n"
    return key + b"=" + data + b"\n"


def _send_to_journal(identifier: str, msg: str, priority: int) -> None:
    payload = b"".join(
        (
            _journal_field("PRIORITY", str(priority)),
            _journal_field("MESSAGE", msg),
            _journal_field("SYSLOG_IDENTIFIER", identifier),
        )
    )
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_DGRAM) as sock:
            try:
                sock.sendto(payload, journal_socket_path)
            except OSError as exc:
                if exc.errno not in (errno.EMSGSIZE, errno.ENOBUFS):
                    raise
                _send_via_file_descriptor(sock, payload)
    except OSError:
        # Journal delivery is best effort; the shim keeps running without it.
        pass


def _send_via_file_descriptor(sock: socket.socket, payload: bytes) -> None:
    with tempfile.TemporaryFile() as spool:
        spool.write(payload)
        spool.flush()
        fds = array.array("i", [spool.fileno()])
        sock.sendmsg(
            [],
            [(socket.SOL_SOCKET, socket.SCM_RIGHTS, fds.tobytes())],
            0,
            journal_socket_path,
        )


def _file_logger_for(path: str) -> logging.Logger:
    file_logger = _file_target.loggers.get(path)
    if file_logger is None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        file_logger = logging.Logger(path, logging.DEBUG)
        handler = RotatingFileHandler(
            path, maxBytes=_MAX_FILE_SIZE, backupCount=_MAX_ROLLS, delay=True
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
        file_logger.addHandler(handler)
        _file_target.loggers[path] = file_logger
    return file_logger


def _send_to_file(identifier: str, msg: str, level: str) -> None:
    short_level = _FILE_LEVELS.get(level)
    if short_level is None:
        return
    filename = f"{_file_target.container_name}-{identifier}.log"
    path = os.path.join(_file_target.log_dir, filename)
    stamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
    _file_logger_for(path).info("time=%s level=%s msg=%s", stamp, short_level, msg)