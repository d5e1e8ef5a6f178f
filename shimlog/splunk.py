"""The splunk driver: ships container logs to a Splunk HTTP Event Collector."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, BinaryIO, Callable

from shimlog import debug
from shimlog.buffered import BufferedLogger
from shimlog.common import DEFAULT_BUF_SIZE_IN_BYTES, NON_BLOCKING_MODE, Logger, Stream
from shimlog.debug import DAEMON_NAME, LogLevel
from shimlog.info import DockerConfigs, GlobalArgs, Info, new_info, update_docker_configs

TOKEN_KEY = "splunk-token"
URL_KEY = "splunk-url"

SOURCE_KEY = "splunk-source"
SOURCETYPE_KEY = "splunk-sourcetype"
INDEX_KEY = "splunk-index"
CAPATH_KEY = "splunk-capath"
CANAME_KEY = "splunk-caname"
INSECURESKIPVERIFY_KEY = "splunk-insecureskipverify"
FORMAT_KEY = "splunk-format"
VERIFY_CONNECTION_KEY = "splunk-verify-connection"
GZIP_KEY = "splunk-gzip"
GZIP_LEVEL_KEY = "splunk-gzip-level"
SPLUNK_TAG_KEY = "splunk-tag"
LABELS_KEY = "labels"
ENV_KEY = "env"
ENV_REGEX_KEY = "env-regex"

# The command-line "splunk-tag" becomes the driver's "tag" setting.
TAG_KEY = "tag"


@dataclass
class SplunkArgs:
    """Arguments of the splunk driver.

    ``tag_specified`` tells an explicitly passed tag apart from the default one,
    since both may be the same string.
    """

    token: str
    url: str
    source: str = ""
    sourcetype: str = ""
    index: str = ""
    capath: str = ""
    caname: str = ""
    insecureskipverify: str = ""
    format: str = ""
    verify_connection: str = ""
    gzip: str = ""
    gzip_level: str = ""
    tag: str = ""
    tag_specified: bool = False
    labels: str = ""
    env: str = ""
    env_regex: str = ""


def get_splunk_config(args: SplunkArgs) -> dict[str, str]:
    """Build the driver config; optional settings appear only when given."""
    config = {TOKEN_KEY: args.token, URL_KEY: args.url}
    optional = (
        (SOURCE_KEY, args.source),
        (SOURCETYPE_KEY, args.sourcetype),
        (INDEX_KEY, args.index),
        (CAPATH_KEY, args.capath),
        (CANAME_KEY, args.caname),
        (INSECURESKIPVERIFY_KEY, args.insecureskipverify),
        (FORMAT_KEY, args.format),
        (VERIFY_CONNECTION_KEY, args.verify_connection),
        (GZIP_KEY, args.gzip),
        (GZIP_LEVEL_KEY, args.gzip_level),
    )
    config.update((key, value) for key, value in optional if value)
    if args.tag_specified:
        config[TAG_KEY] = args.tag
    trailing = (
        (LABELS_KEY, args.labels),
        (ENV_KEY, args.env),
        (ENV_REGEX_KEY, args.env_regex),
    )
    config.update((key, value) for key, value in trailing if value)
    return config


def run_log_driver(
    global_args: GlobalArgs,
    docker_configs: DockerConfigs,
    args: SplunkArgs,
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
            get_splunk_config(args),
        )
        info = update_docker_configs(info, docker_configs)
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

        debug.send_events_to_log(DAEMON_NAME, "Starting splunk driver", LogLevel.INFO, 0)
        try:
            driver.start(global_args.cleanup_time, ready)
        except Exception as exc:
            debug.err_logger = RuntimeError(f"failed to run splunk driver: {exc}")
            return
        debug.send_events_to_log(DAEMON_NAME, "Logging finished", LogLevel.INFO, 1)
    finally:
        debug.report_logger_error()