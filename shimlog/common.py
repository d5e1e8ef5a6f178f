"""Blocking log driver: reads container pipes line by line and ships each line to a stream."""

from __future__ import annotations

import os
import secrets
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, BinaryIO, Callable, Iterator, Optional, Protocol

from shimlog import debug
from shimlog.debug import DAEMON_NAME, LogLevel
from shimlog.info import Info, Message, PartialLogMetadata, new_message

NON_BLOCKING_MODE = "non-blocking"

SOURCE_STDOUT = "stdout"
SOURCE_STDERR = "stderr"

# Maximum bytes read from a container pipe in a single read call.
DEFAULT_MAX_READ_BYTES = 2 * 1024
# Size of the line buffer for drivers with no limit of their own on line length.
DEFAULT_BUF_SIZE_IN_BYTES = 16 * 1024

TRACE_LOG_ROUTING_INTERVAL = timedelta(minutes=1)

_NEWLINE = b"\n"

# Called once per line (or partial line) read from a pipe:
# (line, source, is_partial, is_last_partial, partial_id, partial_ordinal, timestamp)
SendFunc = Callable[[bytes, str, bool, bool, str, int, datetime], None]


class Stream(Protocol):
    """Destination that accepts log messages."""

    def log(self, message: Message) -> None: ...


def _as_seconds(value: timedelta | float | int) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


@dataclass
class RoutingStats:
    """Thread-safe counters of bytes read from pipes and bytes sent to destinations."""

    bytes_read_from_src: int = 0
    bytes_sent_to_dst: int = 0
    newline_chars: int = 0
    _lock: threading.Lock = field(
        default_factory=threading.Lock, init=False, repr=False, compare=False
    )

    def add(self, read: int = 0, sent: int = 0, newlines: int = 0) -> None:
        """Increase the counters."""
        with self._lock:
            self.bytes_read_from_src += read
            self.bytes_sent_to_dst += sent
            self.newline_chars += newlines

    def reset(self) -> None:
        """Set every counter to zero."""
        self.swap()

    def snapshot(self) -> tuple[int, int, int]:
        """Return (bytes read, bytes sent, newline characters)."""
        with self._lock:
            return self.bytes_read_from_src, self.bytes_sent_to_dst, self.newline_chars

    def swap(self) -> tuple[int, int, int]:
        """Return the counters and set them to zero in one step."""
        with self._lock:
            values = (self.bytes_read_from_src, self.bytes_sent_to_dst, self.newline_chars)
            self.bytes_read_from_src = 0
            self.bytes_sent_to_dst = 0
            self.newline_chars = 0
            return values

    @contextmanager
    def tracing(
        self,
        container_id: str,
        interval: timedelta | float = TRACE_LOG_ROUTING_INTERVAL,
    ) -> Iterator["RoutingStats"]:
        """Report the counters every ``interval`` while the block runs, then once more."""
        period = _as_seconds(interval)
        stop = threading.Event()

        def _run() -> None:
            debug.send_events_to_log(container_id, "Starting the ticker...", LogLevel.DEBUG, 0)
            while not stop.wait(period):
                read, sent, newlines = self.swap()
                debug.send_events_to_log(
                    container_id,
                    f"Within last minute, reading {read} bytes from the source. "
                    f"And {sent} bytes are sent to the destination and {newlines} "
                    "new line characters are ignored.",
                    LogLevel.DEBUG,
                    0,
                )
            read, sent, newlines = self.snapshot()
            debug.send_events_to_log(
                container_id,
                f"Reading {read} bytes from the source. "
                f"And {sent} bytes are sent to the destination and {newlines} "
                "new line characters are ignored.",
                LogLevel.DEBUG,
                0,
            )
            debug.send_events_to_log(container_id, "Stopped the ticker...", LogLevel.DEBUG, 0)

        ticker = threading.Thread(target=_run, name="shimlog-ticker", daemon=True)
        ticker.start()
        try:
            yield self
        finally:
            debug.send_events_to_log(
                container_id, "Sending signal to stop the ticker.", LogLevel.DEBUG, 0
            )
            stop.set()
            ticker.join()


# Counters shared by every logger in the process.
routing_stats = RoutingStats()


def generate_random_id() -> str:
    """Return 32 random bytes as 64 lower-case hex characters."""
    return secrets.token_hex(32)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Logger:
    """Reads both container pipes and sends every line to ``stream``."""

    info: Info = field(default_factory=Info)
    stream: Optional[Stream] = None
    stdout: Optional[BinaryIO] = None
    stderr: Optional[BinaryIO] = None
    buffer_size: int = DEFAULT_BUF_SIZE_IN_BYTES
    max_read_bytes: int = DEFAULT_MAX_READ_BYTES
    stats: RoutingStats = field(default_factory=lambda: routing_stats)

    def start(self, cleanup_time: timedelta | float, ready: Callable[[], Any]) -> None:
        """Ship logs from both pipes until they close; raise the first pipe error."""
        pipes = self.get_pipes()
        self.stats.reset()
        stop = threading.Event()
        with self.stats.tracing(self.info.container_id):
            executor = ThreadPoolExecutor(
                max_workers=len(pipes), thread_name_prefix="shimlog-pipe"
            )
            futures = [
                executor.submit(self._ship_pipe, pipe, source, cleanup_time, stop)
                for source, pipe in pipes.items()
            ]
            try:
                try:
                    ready()
                except Exception as exc:
                    raise RuntimeError(
                        f"failed to check container ready status: {exc}"
                    ) from exc
                first_error: BaseException | None = None
                for future in as_completed(futures):
                    exc = future.exception()
                    if exc is not None and first_error is None:
                        first_error = exc
                        stop.set()
                if first_error is not None:
                    raise first_error
            finally:
                executor.shutdown(wait=False)

    def _ship_pipe(
        self,
        pipe: BinaryIO,
        source: str,
        cleanup_time: timedelta | float,
        stop: threading.Event,
    ) -> None:
        try:
            self.send_logs(pipe, source, cleanup_time, stop)
        except Exception as exc:
            message = f"failed to send logs from pipe {source}: {exc}"
            debug.send_events_to_log(DAEMON_NAME, message, LogLevel.ERROR, 1)
            raise RuntimeError(message) from exc

    def send_logs(
        self,
        pipe: BinaryIO,
        source: str,
        cleanup_time: timedelta | float,
        stop: threading.Event | None = None,
    ) -> None:
        """Ship one pipe until it closes, then wait ``cleanup_time`` for the destination."""
        try:
            self.read(pipe, source, self.buffer_size, self._send_log_msg_to_dest, stop)
        except Exception as exc:
            message = f"failed to read logs from {source} pipe: {exc}"
            debug.send_events_to_log(DAEMON_NAME, message, LogLevel.ERROR, 1)
            raise RuntimeError(message) from exc

        seconds = _as_seconds(cleanup_time)
        debug.send_events_to_log(
            DAEMON_NAME,
            f"Pipe {source} is closed. Sleeping {seconds}s for cleanning up.",
            LogLevel.INFO,
            0,
        )
        if seconds > 0:
            threading.Event().wait(seconds)

    def read(
        self,
        pipe: BinaryIO,
        source: str,
        buffer_size: int,
        send: SendFunc,
        stop: threading.Event | None = None,
    ) -> None:
        """Split the pipe into lines and pass each to ``send``.

        Lines longer than ``buffer_size`` are sent as numbered partial messages that
        share one random id and one timestamp; the piece that ends with a newline is
        marked as the last.
        """
        buf = bytearray()
        timestamp = _utc_now()
        first_partial = True
        is_partial = False
        partial_id = ""
        partial_ordinal = 1

        while stop is None or not stop.is_set():
            eof = self._fill(pipe, buf, buffer_size)
            if eof and not buf:
                return

            head = 0
            end = buf.find(_NEWLINE, head)
            while end >= 0:
                is_last_partial = is_partial
                if not is_partial:
                    timestamp = _utc_now()
                line = bytes(buf[head:end])
                send(line, source, is_partial, is_last_partial, partial_id, partial_ordinal, timestamp)
                self.stats.add(sent=len(line), newlines=1)
                first_partial = True
                is_partial = False
                partial_id = ""
                partial_ordinal = 1
                head = end + 1
                end = buf.find(_NEWLINE, head)

            if eof or (head == 0 and len(buf) == buffer_size):
                if head < len(buf):
                    line = bytes(buf[head:])
                    is_partial = True
                    if first_partial:
                        timestamp = _utc_now()
                        partial_id = generate_random_id()
                    send(line, source, True, False, partial_id, partial_ordinal, timestamp)
                    self.stats.add(sent=len(line))
                    buf.clear()
                    head = 0
                    partial_ordinal += 1
                    first_partial = False
                if eof:
                    return

            if head > 0:
                del buf[:head]

        debug.send_events_to_log(
            self.info.container_id, f"Logging stopped in pipe {source}", LogLevel.DEBUG, 0
        )

    def _fill(self, pipe: BinaryIO, buf: bytearray, buffer_size: int) -> bool:
        """Read more bytes into ``buf``; return True once the pipe is closed."""
        limit = min(len(buf) + self.max_read_bytes, buffer_size)
        wanted = limit - len(buf)
        if wanted <= 0:
            return False
        try:
            data = pipe.read(wanted)
        except OSError as exc:
            raise OSError(f"failed to read log stream from container pipe: {exc}") from exc
        if data is None:
            return False
        if not data:
            return True
        self.stats.add(read=len(data))
        buf.extend(data)
        return False

    def _send_log_msg_to_dest(
        self,
        line: bytes,
        source: str,
        is_partial: bool,
        is_last_partial: bool,
        partial_id: str,
        partial_ordinal: int,
        timestamp: datetime,
    ) -> None:
        if debug.verbose:
            debug.send_events_to_log(
                self.info.container_id,
                f"[Pipe {source}] Scanned message: {line.decode('utf-8', 'replace')}",
                LogLevel.DEBUG,
                0,
            )
        message = new_message(line, source, timestamp)
        if is_partial:
            message.partial = PartialLogMetadata(
                id=partial_id, ordinal=partial_ordinal, last=is_last_partial
            )
        try:
            self.log(message)
        except Exception as exc:
            raise RuntimeError(
                f"failed to log msg for container {self.info.container_name}: {exc}"
            ) from exc

    def log(self, message: Message) -> None:
        """Send one message to the destination stream."""
        if self.stream is None:
            raise RuntimeError("no log stream configured")
        self.stream.log(message)

    def get_pipes(self) -> dict[str, BinaryIO]:
        """Return the container pipes keyed by source name."""
        if self.stdout is None or self.stderr is None:
            raise ValueError("no stdout/stderr pipe opened")
        return {SOURCE_STDOUT: self.stdout, SOURCE_STDERR: self.stderr}


def _set_gid(gid: int) -> None:
    if os.name == "nt":
        raise OSError("GID not supported in Windows")
    try:
        os.setgid(gid)
    except OSError as exc:
        raise OSError(f"unable to set gid: {exc}") from exc
    current = os.getgid()
    if current != gid:
        raise OSError(f"want gid {gid}, but get gid {current}")
    debug.send_events_to_log(DAEMON_NAME, f"Set gid {current}", LogLevel.INFO, 1)


def _set_uid(uid: int) -> None:
    if os.name == "nt":
        raise OSError("UID not supported in Windows")
    try:
        os.setuid(uid)
    except OSError as exc:
        raise OSError(f"unable to set uid: {exc}") from exc
    current = os.getuid()
    if current != uid:
        raise OSError(f"want uid {uid}, but get uid {current}")
    debug.send_events_to_log(DAEMON_NAME, f"Set uid: {current}", LogLevel.INFO, 1)


def set_uid_and_gid(uid: int, gid: int) -> None:
    """Switch the process to ``gid`` then ``uid``; negative values leave them unchanged."""
    if gid == 0:
        raise ValueError("setting gid with value of zero is not supported")
    if gid > 0:
        _set_gid(gid)

    if uid == 0:
        raise ValueError("setting uid with value of zero is not supported")
    if uid > 0:
        _set_uid(uid)