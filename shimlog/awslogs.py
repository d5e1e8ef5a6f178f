"""The awslogs driver: ships container logs to CloudWatch Logs."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, BinaryIO, Callable

from shimlog import debug
from shimlog.buffered import BufferedLogger
from shimlog.common import NON_BLOCKING_MODE, Logger, Stream
from shimlog.debug import DAEMON_NAME, LogLevel
from shimlog.info import GlobalArgs, Info, new_info

REGION_KEY = "awslogs-region"
GROUP_KEY = "awslogs-group"
CREATE_GROUP_KEY = "awslogs-create-group"
STREAM_KEY = "awslogs-stream"
CREATE_STREAM_KEY = "awslogs-create-stream"
MULTILINE_PATTERN_KEY = "awslogs-multiline-pattern"
DATETIME_FORMAT_KEY = "awslogs-datetime-format"
CREDENTIALS_ENDPOINT_KEY = "awslogs-credentials-endpoint"
ENDPOINT_KEY = "awslogs-endpoint"

# Every CloudWatch log event carries 26 bytes of overhead.
PER_EVENT_BYTES = 26
MAXIMUM_BYTES_PER_EVENT = 262144 - PER_EVENT_BYTES
# CloudWatch events are at most 256 KiB.
DEFAULT_AWS_BUF_SIZE_IN_BYTES = 256 * 1024


@dataclass
class AwslogsArgs:
    """Arguments of the awslogs driver."""

    group: str
    region: str
    stream: str
    credentials_endpoint: str
    create_group: str = ""
    create_stream: str = ""
    multiline_pattern: str = ""
    datetime_format: str = ""
    endpoint: str = ""


def get_awslogs_config(args: AwslogsArgs) -> dict[str, str]:
    """Build the driver config; optional settings appear only when non-empty."""
    config = {
        GROUP_KEY: args.group,
        REGION_KEY: args.region,
        STREAM_KEY: args.stream,
        CREDENTIALS_ENDPOINT_KEY: args.credentials_endpoint,
    }
    optional = {
        CREATE_GROUP_KEY: args.create_group,
        CREATE_STREAM_KEY: args.create_stream,
        MULTILINE_PATTERN_KEY: args.multiline_pattern,
        DATETIME_FORMAT_KEY: args.datetime_format,
        ENDPOINT_KEY: args.endpoint,
    }
    config.update({key: value for key, value in optional.items() if value})
    return config


def with_region(info: Info, region: str) -> Info:
    """Set the awslogs region in the config of ``info``."""
    info.config[REGION_KEY] = region
    return info


def run_log_driver(
    global_args: GlobalArgs,
    args: AwslogsArgs,
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
            get_awslogs_config(args),
        )
        try:
            destination = stream(info)
        except Exception as exc:
            debug.err_logger = RuntimeError(f"unable to create stream: {exc}")
            raise debug.err_logger from exc

        driver: Logger | BufferedLogger = Logger(
            info=info,
            stream=destination,
            stdout=stdout,
            stderr=stderr,
            buffer_size=MAXIMUM_BYTES_PER_EVENT,
        )
        if global_args.mode == NON_BLOCKING_MODE:
            debug.send_events_to_log(
                DAEMON_NAME,
                "Starting log streaming for non-blocking mode awslogs driver",
                LogLevel.INFO,
                0,
            )
            driver = BufferedLogger(
                driver,
                DEFAULT_AWS_BUF_SIZE_IN_BYTES,
                global_args.max_buffer_size,
                global_args.container_id,
            )

        debug.send_events_to_log(
            DAEMON_NAME, "Starting log streaming for awslogs driver", LogLevel.INFO, 0
        )
        try:
            driver.start(global_args.cleanup_time, ready)
        except Exception as exc:
            debug.err_logger = RuntimeError(f"failed to run awslogs driver: {exc}")
            return
        debug.send_events_to_log(DAEMON_NAME, "Logging finished", LogLevel.INFO, 1)
    finally:
        debug.report_logger_error()