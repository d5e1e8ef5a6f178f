"""The fluentd driver: ships container logs to a Fluentd daemon."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, BinaryIO, Callable

from shimlog import debug
from shimlog.buffered import BufferedLogger
from shimlog.common import DEFAULT_BUF_SIZE_IN_BYTES, NON_BLOCKING_MODE, Logger, Stream
from shimlog.debug import DAEMON_NAME, LogLevel
from shimlog.info import GlobalArgs, Info, new_info

ADDRESS_KEY = "fluentd-address"
ASYNC_CONNECT_KEY = "fluentd-async-connect"
FLUENTD_TAG_KEY = "fluentd-tag"
SUBSECOND_PRECISION_KEY = "fluentd-sub-second-precision"
BUFFER_LIMIT_KEY = "fluentd-buffer-limit"

# The command-line "fluentd-tag" becomes the driver's "tag" setting.
TAG_KEY = "tag"


@dataclass
class FluentdArgs:
    """Arguments of the fluentd driver; all optional."""

    address: str = ""
    async_connect: str = ""
    tag: str = ""
    subsecond_precision: str = ""
    buffer_limit: str = ""


def get_fluentd_config(args: FluentdArgs) -> dict[str, str]:
    """Build the driver config; every setting is present, even when empty."""
    return {
        TAG_KEY: args.tag,
        ADDRESS_KEY: args.address,
        ASYNC_CONNECT_KEY: args.async_connect,
        SUBSECOND_PRECISION_KEY: args.subsecond_precision,
        BUFFER_LIMIT_KEY: args.buffer_limit,
    }


def run_log_driver(
    global_args: GlobalArgs,
    args: FluentdArgs,
    stream: Callable[[Info], Stream],
    stdout: BinaryIO,
    stderr: BinaryIO,
    ready: Callable[[], Any],
) -> None:
    """Ship the container pipes to the stream that ``stream`` builds from the container info.

    Failures while shipping are recorded in ``debug.err_logger`` but not raised, so
    that the container keeps running.
    """
    try:
        info = new_info(
            global_args.container_id,
            global_args.container_name,
            get_fluentd_config(args),
        )
        try:
            destination = stream(info)
        except Exception as exc:
            debug.err_logger = RuntimeError(f"unable to create stream: {exc}")
            raise debug.err_logger from exc

        driver: Logger | BufferedLogger = Logger(
            info=info, stream=destination, stdout=stdout, stderr=stderr
        )
        if global_args.mode == NON_BLOCKING_MODE:
            debug.send_events_to_log(
                DAEMON_NAME, "Starting non-blocking mode driver", LogLevel.INFO, 0
            )
            driver = BufferedLogger(
                driver,
                DEFAULT_BUF_SIZE_IN_BYTES,
                global_args.max_buffer_size,
                global_args.container_id,
            )

        debug.send_events_to_log(DAEMON_NAME, "Starting fluentd driver", LogLevel.INFO, 0)
        try:
            driver.start(global_args.cleanup_time, ready)
        except Exception as exc:
            debug.err_logger = RuntimeError(f"failed to run fluentd driver: {exc}")
            return
        debug.send_events_to_log(DAEMON_NAME, "Logging finished", LogLevel.INFO, 1)
    finally:
        debug.report_logger_error()