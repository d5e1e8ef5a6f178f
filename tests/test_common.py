import io
import re
import threading
import time
from datetime import timedelta

import pytest

from shimlog.common import (
    DEFAULT_BUF_SIZE_IN_BYTES,
    DEFAULT_MAX_READ_BYTES,
    Logger,
    RoutingStats,
    generate_random_id,
    set_uid_and_gid,
)
from shimlog.info import Info

NO_CLEANUP = timedelta(0)


class CollectingStream:
    def __init__(self):
        self.messages = []
        self._lock = threading.Lock()

    def log(self, message):
        with self._lock:
            self.messages.append(message)


class FailingStream:
    def log(self, message):
        raise OSError("test error message")


class BrokenPipe:
    def read(self, size):
        raise OSError("broken")


def make_logger(buffer_size, max_read_bytes, stream=None, stats=None):
    return Logger(
        info=Info(container_id="test-container-id", container_name="test-container-name"),
        stream=stream if stream is not None else CollectingStream(),
        buffer_size=buffer_size,
        max_read_bytes=max_read_bytes,
        stats=stats if stats is not None else RoutingStats(),
    )


@pytest.mark.parametrize(
    "buffer_size, max_read_bytes, log_messages, expected_lines, expected_ordinals",
    [
        (100, 80, ["First line to write", "Second line to write"], 2, []),
        (8, 4, ["First line to write"], 3, [1, 2, 3]),
        (8, 4, ["First line to write", "Second line to write"], 6, [1, 2, 3, 1, 2, 3]),
    ],
    ids=["general case", "long log message", "two long log messages"],
)
def test_send_logs(buffer_size, max_read_bytes, log_messages, expected_lines, expected_ordinals):
    stream = CollectingStream()
    logger = make_logger(buffer_size, max_read_bytes, stream=stream)
    pipe = io.BytesIO("".join(m + "\n" for m in log_messages).encode())

    logger.send_logs(pipe, "stdout", NO_CLEANUP)

    assert len(stream.messages) == expected_lines
    last_id = ""
    last_ordinal = 0
    for index, ordinal in enumerate(expected_ordinals):
        partial = stream.messages[index].partial
        assert partial is not None
        assert partial.ordinal == ordinal
        if ordinal < last_ordinal:
            assert partial.id != last_id
        elif ordinal > 1:
            assert partial.id == last_id
        last_id = partial.id
        last_ordinal = ordinal


def test_send_logs_reassembles_text():
    stream = CollectingStream()
    logger = make_logger(8, 4, stream=stream)
    logger.send_logs(io.BytesIO(b"First line to write\n"), "stdout", NO_CLEANUP)

    assert [m.line for m in stream.messages] == [b"First li", b"ne to wr", b"ite"]
    assert [m.partial.last for m in stream.messages] == [False, False, True]
    assert len({m.timestamp for m in stream.messages}) == 1
    assert all(m.source == "stdout" for m in stream.messages)


def test_whole_lines_have_no_partial_metadata():
    stream = CollectingStream()
    logger = make_logger(100, 80, stream=stream)
    logger.send_logs(io.BytesIO(b"a\nb\n"), "stderr", NO_CLEANUP)

    assert [(m.line, m.partial, m.source) for m in stream.messages] == [
        (b"a", None, "stderr"),
        (b"b", None, "stderr"),
    ]


def test_trailing_text_without_newline_is_sent_as_partial():
    stream = CollectingStream()
    logger = make_logger(100, 80, stream=stream)
    logger.send_logs(io.BytesIO(b"done\ntail"), "stdout", NO_CLEANUP)

    assert [m.line for m in stream.messages] == [b"done", b"tail"]
    assert stream.messages[1].partial.ordinal == 1
    assert stream.messages[1].partial.last is False


def test_tracing_log_routing():
    stdout_input = b"1234567890\n"
    stderr_input = b"123 456 789 0\n123 456 789 0\n123 456 789 0\n"
    stats = RoutingStats()
    stream = CollectingStream()
    logger = Logger(
        info=Info(),
        stream=stream,
        stdout=io.BytesIO(stdout_input),
        stderr=io.BytesIO(stderr_input),
        buffer_size=DEFAULT_BUF_SIZE_IN_BYTES,
        max_read_bytes=DEFAULT_MAX_READ_BYTES,
        stats=stats,
    )

    logger.start(NO_CLEANUP, lambda: None)

    read, sent, newlines = stats.snapshot()
    assert read == len(stdout_input) + len(stderr_input)
    assert sent == len(stdout_input) + len(stderr_input) - 1 - 3
    assert newlines == 4
    assert len(stream.messages) == 4


def test_get_pipes_requires_both_pipes():
    logger = Logger(stdout=io.BytesIO(b""))
    with pytest.raises(ValueError, match="no stdout/stderr pipe opened"):
        logger.get_pipes()


def test_get_pipes_maps_sources():
    out, err = io.BytesIO(b""), io.BytesIO(b"")
    assert Logger(stdout=out, stderr=err).get_pipes() == {"stdout": out, "stderr": err}


def test_start_reports_ready_failure():
    logger = make_logger(100, 80)
    logger.stdout = io.BytesIO(b"x\n")
    logger.stderr = io.BytesIO(b"y\n")

    def ready():
        raise OSError("not ready")

    with pytest.raises(RuntimeError, match="failed to check container ready status"):
        logger.start(NO_CLEANUP, ready)


def test_start_raises_pipe_error():
    logger = make_logger(100, 80)
    logger.stdout = BrokenPipe()
    logger.stderr = io.BytesIO(b"y\n")

    with pytest.raises(RuntimeError, match="failed to send logs from pipe stdout"):
        logger.start(NO_CLEANUP, lambda: None)


def test_stream_error_propagates_from_send_logs():
    logger = make_logger(100, 80, stream=FailingStream())
    with pytest.raises(RuntimeError, match="failed to log msg for container test-container-name"):
        logger.send_logs(io.BytesIO(b"line\n"), "stdout", NO_CLEANUP)


def test_read_returns_at_once_when_stopped():
    logger = make_logger(100, 80)
    received = []
    stop = threading.Event()
    stop.set()

    logger.read(io.BytesIO(b"line\n"), "stdout", 100, lambda *args: received.append(args), stop)

    assert received == []


def test_read_counts_bytes():
    stats = RoutingStats()
    logger = make_logger(100, 80, stats=stats)
    received = []
    logger.read(io.BytesIO(b"ab\ncd\n"), "stdout", 100, lambda *args: received.append(args[0]))

    assert received == [b"ab", b"cd"]
    assert stats.snapshot() == (6, 4, 2)


def test_routing_stats_swap_resets():
    stats = RoutingStats()
    stats.add(read=10, sent=7, newlines=3)
    assert stats.swap() == (10, 7, 3)
    assert stats.snapshot() == (0, 0, 0)


def test_tracing_resets_counters_on_tick():
    stats = RoutingStats()
    with stats.tracing("test-container-id", interval=0.01):
        stats.add(read=5, sent=4, newlines=1)
        deadline = time.monotonic() + 2
        while stats.snapshot() != (0, 0, 0) and time.monotonic() < deadline:
            time.sleep(0.01)
        assert stats.snapshot() == (0, 0, 0)


def test_generate_random_id_is_hex_and_unique():
    first = generate_random_id()
    second = generate_random_id()
    assert re.fullmatch(r"[0-9a-f]{64}", first)
    assert first != second


def test_set_gid_zero_is_rejected():
    with pytest.raises(ValueError, match="gid with value of zero"):
        set_uid_and_gid(-1, 0)


def test_set_uid_zero_is_rejected():
    with pytest.raises(ValueError, match="uid with value of zero"):
        set_uid_and_gid(0, -1)