"""Non-blocking log driver: a bounded in-memory buffer between container pipes and a driver."""

from __future__ import annotations

import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta
from typing import Any, BinaryIO, Callable

from shimlog import debug
from shimlog.common import Logger, SendFunc, _as_seconds
from shimlog.debug import DAEMON_NAME, LogLevel
from shimlog.info import Message, PartialLogMetadata, new_message

EXPECTED_NUM_OF_PIPES = 2
# Initial capacity hint for the message queue.
RING_CAP = 1000


class RingBuffer:
    """Thread-safe FIFO of log messages bounded by the total size of their lines."""

    def __init__(self, max_size: int) -> None:
        self.max_size = max_size
        self.cur_size = 0
        self.queue: deque[Message] = deque()
        self.closed_pipes = 0
        self._closed = False
        self._cond = threading.Condition()

    @property
    def is_closed(self) -> bool:
        """True once every container pipe has closed."""
        with self._cond:
            return self._closed

    def enqueue(self, message: Message) -> bool:
        """Append ``message``; drop it and return False when the buffer has no room.

        The first message is always accepted, however long it is.
        """
        size = len(message.line)
        with self._cond:
            if self.queue and self.cur_size + size > self.max_size:
                if debug.verbose:
                    debug.send_events_to_log(
                        DAEMON_NAME,
                        "buffer is full/message is too long, waiting for available bytes",
                        LogLevel.DEBUG,
                        0,
                    )
                    debug.send_events_to_log(
                        DAEMON_NAME,
                        f"message size: {size}, current buffer size: {self.cur_size}, "
                        f"max buffer size {self.max_size}",
                        LogLevel.DEBUG,
                        0,
                    )
                self._cond.notify()
                return False
            self.queue.append(message)
            self.cur_size += size
            self._cond.notify()
            return True

    def dequeue(self) -> Message | None:
        """Remove and return the oldest message, waiting for one; None once closed."""
        with self._cond:
            while not self.queue and not self._closed:
                if debug.verbose:
                    debug.send_events_to_log(
                        DAEMON_NAME, "No messages in queue, waiting...", LogLevel.DEBUG, 0
                    )
                self._cond.wait()
            if self._closed:
                return None
            message = self.queue.popleft()
            self.cur_size -= len(message.line)
            return message

    def flush(self) -> list[Message]:
        """Remove and return every message still in the buffer."""
        with self._cond:
            messages = list(self.queue)
            self.queue.clear()
            self.cur_size = 0
            return messages

    def close_pipe(self) -> None:
        """Record that one container pipe closed; close the buffer when all have."""
        with self._cond:
            self.closed_pipes += 1
            if self.closed_pipes == EXPECTED_NUM_OF_PIPES:
                self._closed = True
                self._cond.notify_all()

    def _shutdown(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()


class BufferedLogger:
    """Wraps a driver so that reading pipes never waits on the destination."""

    def __init__(
        self,
        driver: Logger,
        buffer_read_size: int,
        max_buffer_size: int,
        container_id: str,
    ) -> None:
        self.driver = driver
        self.buffer = RingBuffer(max_buffer_size)
        self.buffer_read_size = buffer_read_size
        self.container_id = container_id

    def start(self, cleanup_time: timedelta | float, ready: Callable[[], Any]) -> None:
        """Buffer both pipes and drain the buffer to the driver; raise the first error."""
        pipes = self.get_pipes()
        stats = self.driver.stats
        stats.reset()
        stop = threading.Event()
        with stats.tracing(self.container_id):
            executor = ThreadPoolExecutor(
                max_workers=len(pipes) + 1, thread_name_prefix="shimlog-buffered"
            )
            futures = [executor.submit(self._consume, cleanup_time)]
            futures.extend(
                executor.submit(self._fill_buffer, pipe, source, stop)
                for source, pipe in pipes.items()
            )
            try:
                try:
                    ready()
                except Exception as exc:
                    stop.set()
                    self.buffer._shutdown()
                    raise RuntimeError(
                        f"failed to check container ready status: {exc}"
                    ) from exc
                first_error: BaseException | None = None
                for future in as_completed(futures):
                    exc = future.exception()
                    if exc is not None and first_error is None:
                        first_error = exc
                        stop.set()
                        self.buffer._shutdown()
                if first_error is not None:
                    raise first_error
            finally:
                executor.shutdown(wait=False)

    def _consume(self, cleanup_time: timedelta | float) -> None:
        debug.send_events_to_log(
            DAEMON_NAME, "Starting consuming logs from ring buffer", LogLevel.INFO, 0
        )
        try:
            while not self.buffer.is_closed:
                message = self.buffer.dequeue()
                if message is None:
                    break
                try:
                    self.log(message)
                except Exception as exc:
                    raise RuntimeError(f"failed to send logs to destination: {exc}") from exc

            debug.send_events_to_log(
                DAEMON_NAME, "All pipes are closed, flushing buffer.", LogLevel.INFO, 0
            )
            for message in self.buffer.flush():
                try:
                    self.log(message)
                except Exception as exc:
                    raise RuntimeError(
                        f"unable to flush the remaining messages to destination: {exc}"
                    ) from exc
        except Exception as exc:
            debug.send_events_to_log(DAEMON_NAME, str(exc), LogLevel.ERROR, 1)
            raise

        seconds = _as_seconds(cleanup_time)
        debug.send_events_to_log(
            DAEMON_NAME, f"Sleeping {seconds}s for cleanning up.", LogLevel.INFO, 0
        )
        if seconds > 0:
            threading.Event().wait(seconds)

    def _fill_buffer(self, pipe: BinaryIO, source: str, stop: threading.Event) -> None:
        debug.send_events_to_log(
            DAEMON_NAME, f"Reading logs from pipe {source}", LogLevel.DEBUG, 0
        )
        try:
            try:
                self.read(pipe, source, self.buffer_read_size, self._save_message, stop)
            except Exception as exc:
                message = f"failed to read logs from {source} pipe: {exc}"
                debug.send_events_to_log(DAEMON_NAME, message, LogLevel.ERROR, 1)
                raise RuntimeError(message) from exc
        except Exception as exc:
            message = f"failed to send logs from pipe {source}: {exc}"
            debug.send_events_to_log(DAEMON_NAME, message, LogLevel.ERROR, 1)
            raise RuntimeError(message) from exc

        debug.send_events_to_log(DAEMON_NAME, f"Pipe {source} is closed", LogLevel.INFO, 1)
        self.buffer.close_pipe()

    def _save_message(
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
                self.container_id,
                f"[Pipe {source}] Scanned message: {line.decode('utf-8', 'replace')}",
                LogLevel.DEBUG,
                0,
            )
        message = new_message(line, source, timestamp)
        if is_partial:
            message.partial = PartialLogMetadata(
                id=partial_id, ordinal=partial_ordinal, last=is_last_partial
            )
        self.buffer.enqueue(message)

    def read(
        self,
        pipe: BinaryIO,
        source: str,
        buffer_size: int,
        send: SendFunc,
        stop: threading.Event | None = None,
    ) -> None:
        """Split the pipe into lines with the wrapped driver's reader."""
        self.driver.read(pipe, source, buffer_size, send, stop)

    def log(self, message: Message) -> None:
        """Send one message through the wrapped driver."""
        if debug.verbose:
            debug.send_events_to_log(
                DAEMON_NAME,
                f"[BUFFER] Sending message: {message.line.decode('utf-8', 'replace')}",
                LogLevel.DEBUG,
                0,
            )
        self.driver.log(message)

    def get_pipes(self) -> dict[str, BinaryIO]:
        """Return the wrapped driver's container pipes."""
        return self.driver.get_pipes()