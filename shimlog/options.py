"""Command-line options of the shim logger and their conversion into driver arguments."""

from __future__ import annotations

import argparse
import json
import os
import re
import sys
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Sequence

from shimlog import awslogs, debug, fluentd, splunk
from shimlog.awslogs import AwslogsArgs
from shimlog.debug import DAEMON_NAME, LogLevel
from shimlog.fluentd import FluentdArgs
from shimlog.info import DockerConfigs, GlobalArgs, WindowsArgs
from shimlog.splunk import SplunkArgs

DEFAULT_MAX_BUFFER_SIZE = "1m"
DEFAULT_CLEANUP_TIME = "5s"
BLOCKING_MODE = "blocking"
NON_BLOCKING_MODE = "non-blocking"
MAX_CLEANUP_TIME = timedelta(seconds=12)

CONTAINER_ID_KEY = "container-id"
CONTAINER_NAME_KEY = "container-name"
MODE_KEY = "mode"
MAX_BUFFER_SIZE_KEY = "max-buffer-size"
LOG_DRIVER_TYPE_KEY = "log-driver"
AWSLOGS_DRIVER_NAME = "awslogs"
FLUENTD_DRIVER_NAME = "fluentd"
SPLUNK_DRIVER_NAME = "splunk"
VERBOSE_KEY = "verbose"
UID_KEY = "uid"
GID_KEY = "gid"
CLEANUP_TIME_KEY = "cleanup-time"

CONTAINER_IMAGE_ID_KEY = "container-image-id"
CONTAINER_IMAGE_NAME_KEY = "container-image-name"
CONTAINER_ENV_KEY = "container-env"
CONTAINER_LABELS_KEY = "container-labels"

PROXY_ENV_VAR_KEY = "proxy-variable"
LOG_FILE_DIR_KEY = "log-file-dir"

_STRING = "string"
_BOOL = "bool"
_INT = "int"

# (flag name, kind, default, help)
_FLAGS: tuple[tuple[str, str, Any, str], ...] = (
    (CONTAINER_ID_KEY, _STRING, "", "Id of the container"),
    (CONTAINER_NAME_KEY, _STRING, "", "Name of the container"),
    (LOG_DRIVER_TYPE_KEY, _STRING, "", "awslogs, fluentd or splunk"),
    (MODE_KEY, _STRING, "", "Whether the writer is blocked or not blocked"),
    (MAX_BUFFER_SIZE_KEY, _STRING, "", "The size of intermediate buffer for non-blocking mode"),
    (VERBOSE_KEY, _BOOL, False, "If set, then more logs will be printed for debugging"),
    (UID_KEY, _INT, -1, "Customized uid for the shim logger process"),
    (GID_KEY, _INT, -1, "Customized gid for the shim logger process"),
    (CLEANUP_TIME_KEY, _STRING, DEFAULT_CLEANUP_TIME,
     "Cleanup time after pipes are closed, default to 5 seconds"),
    (PROXY_ENV_VAR_KEY, _STRING, "", "Set HTTP_PROXY and HTTPS_PROXY environment variable"),
    (LOG_FILE_DIR_KEY, _STRING, "",
     "The log file dir will be used to set the path for debug log files for Windows"),
    (CONTAINER_IMAGE_ID_KEY, _STRING, "", "Image id of the container"),
    (CONTAINER_IMAGE_NAME_KEY, _STRING, "", "Image name of the container"),
    (CONTAINER_ENV_KEY, _STRING, "", "Environment variables of the container"),
    (CONTAINER_LABELS_KEY, _STRING, "", "Labels of the container"),
    (awslogs.GROUP_KEY, _STRING, "", "The CloudWatch log group to use"),
    (awslogs.REGION_KEY, _STRING, "", "The CloudWatch region to use"),
    (awslogs.STREAM_KEY, _STRING, "", "The CloudWatch log stream to use"),
    (awslogs.CREATE_GROUP_KEY, _STRING, "false", "Is this a new group that needs to be created?"),
    (awslogs.CREATE_STREAM_KEY, _STRING, "True", "Is this a new stream that needs to be created?"),
    (awslogs.CREDENTIALS_ENDPOINT_KEY, _STRING, "", "The endpoint for iam credentials"),
    (awslogs.MULTILINE_PATTERN_KEY, _STRING, "", "Support multiline pattern for debug"),
    (awslogs.DATETIME_FORMAT_KEY, _STRING, "", "Multiline pattern in strftime format"),
    (awslogs.ENDPOINT_KEY, _STRING, "", "The CloudWatch endpoint to use"),
    (fluentd.ADDRESS_KEY, _STRING, "", "The address connected to Fluentd daemon"),
    (fluentd.ASYNC_CONNECT_KEY, _BOOL, False, "If connecting Fluentd daemon in background"),
    (fluentd.SUBSECOND_PRECISION_KEY, _BOOL, True,
     "Ensures event logs are generated in nanosecond resolution."),
    (fluentd.BUFFER_LIMIT_KEY, _INT, -1, "The number of events buffered on the memory"),
    (fluentd.FLUENTD_TAG_KEY, _STRING, "", "The tag used to identify log messages"),
    (splunk.TOKEN_KEY, _STRING, "", "Splunk HTTP Event Collector token."),
    (splunk.URL_KEY, _STRING, "", "Address of the Splunk HTTP Event Collector, with scheme and port."),
    (splunk.SOURCE_KEY, _STRING, "", "Event source."),
    (splunk.SOURCETYPE_KEY, _STRING, "", "Event source type."),
    (splunk.INDEX_KEY, _STRING, "", "Event index."),
    (splunk.CAPATH_KEY, _STRING, "", "Path to root certificate."),
    (splunk.CANAME_KEY, _STRING, "",
     "Name to use for validating server certificate; defaults to the host of the splunk-url."),
    (splunk.INSECURESKIPVERIFY_KEY, _STRING, "", "Ignore server certificate validation."),
    (splunk.FORMAT_KEY, _STRING, "", "Message format. Can be inline, json or raw. Defaults to inline."),
    (splunk.VERIFY_CONNECTION_KEY, _STRING, "",
     "Verify on start that the Splunk server can be reached. Defaults to true."),
    (splunk.GZIP_KEY, _STRING, "", "Enable/disable gzip compression. Defaults to false."),
    (splunk.GZIP_LEVEL_KEY, _STRING, "",
     "Compression level for gzip: -1 (default), 0 (none), 1 (best speed) ... 9 (best compression)."),
    (splunk.SPLUNK_TAG_KEY, _STRING, "", "Specify tag for message, which interpret some markup."),
    (splunk.LABELS_KEY, _STRING, "",
     "Comma-separated list of keys of labels to include in the message."),
    (splunk.ENV_KEY, _STRING, "",
     "Comma-separated list of keys of environment variables to include in the message."),
    (splunk.ENV_REGEX_KEY, _STRING, "",
     "A regular expression to match logging-related environment variables."),
)

# Value of every option when it is not given.
DEFAULTS: dict[str, Any] = {name: default for name, _, default, _ in _FLAGS}

_TRUE_WORDS = frozenset({"1", "t", "T", "TRUE", "true", "True"})
_FALSE_WORDS = frozenset({"0", "f", "F", "FALSE", "false", "False"})


def _parse_bool(text: str) -> bool:
    if text in _TRUE_WORDS:
        return True
    if text in _FALSE_WORDS:
        return False
    raise ValueError(f"invalid boolean value: {text!r}")


def _bool_argument(text: str) -> bool:
    try:
        return _parse_bool(text)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def build_parser() -> argparse.ArgumentParser:
    """Build the parser for every option; only options actually passed are kept."""
    parser = argparse.ArgumentParser(
        prog=DAEMON_NAME,
        argument_default=argparse.SUPPRESS,
        allow_abbrev=False,
    )
    for name, kind, default, help_text in _FLAGS:
        flag = f"--{name}"
        text = f"{help_text} (default: {default!r})"
        if kind == _BOOL:
            parser.add_argument(flag, dest=name, nargs="?", const=True,
                                type=_bool_argument, help=text)
        elif kind == _INT:
            parser.add_argument(flag, dest=name, type=int, help=text)
        else:
            parser.add_argument(flag, dest=name, help=text)
    return parser


def parse_options(argv: Sequence[str] | None = None) -> dict[str, Any]:
    """Parse ``argv`` into a mapping of the options that were passed."""
    args = sys.argv[1:] if argv is None else list(argv)
    return dict(vars(build_parser().parse_args(args)))


def _value(options: Mapping[str, Any], key: str) -> Any:
    if key in options:
        return options[key]
    return DEFAULTS.get(key)


def _get_string(options: Mapping[str, Any], key: str) -> str:
    value = _value(options, key)
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _get_bool(options: Mapping[str, Any], key: str) -> bool:
    value = _value(options, key)
    if isinstance(value, bool):
        return value
    if isinstance(value, int):
        return value != 0
    if isinstance(value, str):
        try:
            return _parse_bool(value)
        except ValueError:
            return False
    return False


def _get_int(options: Mapping[str, Any], key: str) -> int:
    value = _value(options, key)
    if isinstance(value, (bool, int)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(value.strip())
        except ValueError:
            return 0
    return 0


def _get_required_value(options: Mapping[str, Any], key: str) -> str:
    if key not in options:
        raise ValueError(f"{key} is required")
    return _get_string(options, key)


def is_flag_passed(options: Mapping[str, Any], name: str) -> bool:
    """Tell whether option ``name`` was given explicitly."""
    return name in options


_SIZE_RE = re.compile(r"^(\d+(\.\d+)*) ?([kKmMgGtTpP])?[iI]?[bB]?$")
_BINARY_UNITS = {"k": 1024, "m": 1024**2, "g": 1024**3, "t": 1024**4, "p": 1024**5}


def ram_in_bytes(size: str) -> int:
    """Parse a human size such as ``4k`` or ``2 MiB`` into bytes, with 1024-based units."""
    match = _SIZE_RE.match(size)
    if match is None:
        raise ValueError(f"invalid size: '{size}'")
    try:
        number = float(match.group(1))
    except ValueError as exc:
        raise ValueError(f"invalid size: '{size}'") from exc
    unit = (match.group(3) or "").lower()
    number *= _BINARY_UNITS.get(unit, 1)
    return int(number)


_DURATION_UNITS_NS = {
    "ns": Decimal(1),
    "us": Decimal(1_000),
    "µs": Decimal(1_000),
    "μs": Decimal(1_000),
    "ms": Decimal(1_000_000),
    "s": Decimal(1_000_000_000),
    "m": Decimal(60_000_000_000),
    "h": Decimal(3_600_000_000_000),
}
_DURATION_PART = r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|h|m|s)"
_DURATION_RE = re.compile(rf"([-+]?)((?:{_DURATION_PART})+)")
_DURATION_PART_RE = re.compile(_DURATION_PART)


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``5s``, ``1m30s`` or ``-1.5h`` into a timedelta."""
    if text in ("0", "+0", "-0"):
        return timedelta(0)
    match = _DURATION_RE.fullmatch(text)
    if match is None:
        if text and re.fullmatch(r"[-+]?(\d+(\.\d*)?|\.\d+)", text):
            raise ValueError(f'time: missing unit in duration "{text}"')
        raise ValueError(f'time: invalid duration "{text}"')
    try:
        total_ns = sum(
            Decimal(number) * _DURATION_UNITS_NS[unit]
            for number, unit in _DURATION_PART_RE.findall(match.group(2))
        )
    except InvalidOperation as exc:
        raise ValueError(f'time: invalid duration "{text}"') from exc
    if match.group(1) == "-":
        total_ns = -total_ns
    return timedelta(microseconds=float(total_ns / 1000))


def _format_duration(duration: timedelta) -> str:
    total = duration.total_seconds()
    if total == 0:
        return "0s"
    sign = "-" if total < 0 else ""
    total = abs(total)
    if total < 1:
        return f"{sign}{total * 1000:g}ms"
    hours, rest = divmod(total, 3600)
    minutes, seconds = divmod(rest, 60)
    sec_text = f"{seconds:.6f}".rstrip("0").rstrip(".") + "s"
    if hours:
        return f"{sign}{int(hours)}h{int(minutes)}m{sec_text}"
    if minutes:
        return f"{sign}{int(minutes)}m{sec_text}"
    return f"{sign}{sec_text}"


def get_max_buffer_size(options: Mapping[str, Any]) -> int:
    """Return the buffer size asked for, or 1 MiB when none is given."""
    size_text = _get_string(options, MAX_BUFFER_SIZE_KEY) or DEFAULT_MAX_BUFFER_SIZE
    try:
        return ram_in_bytes(size_text)
    except ValueError as exc:
        raise ValueError(f"unable to parse buffer size to bytes: {exc}") from exc


def get_mode_and_max_buffer_size(options: Mapping[str, Any]) -> tuple[str, int]:
    """Return the mode and, in non-blocking mode, the maximum buffer size."""
    mode = _get_string(options, MODE_KEY)
    if mode == "":
        return BLOCKING_MODE, 0
    if mode == BLOCKING_MODE:
        return mode, 0
    if mode == NON_BLOCKING_MODE:
        try:
            return mode, get_max_buffer_size(options)
        except ValueError as exc:
            raise ValueError(f"unable to get max buffer size: {exc}") from exc
    raise ValueError(f"unknown mode type: {mode}")


def get_cleanup_time(options: Mapping[str, Any]) -> timedelta:
    """Return the cleanup time, 5 seconds by default and at most 12 seconds."""
    text = _get_string(options, CLEANUP_TIME_KEY) or DEFAULT_CLEANUP_TIME
    try:
        duration = parse_duration(text)
    except ValueError as exc:
        raise ValueError(f"failed to parse clean up time: {exc}") from exc
    if duration > MAX_CLEANUP_TIME:
        raise ValueError(
            f"invalid time {_format_duration(duration)}, maximum timeout is 12 seconds"
        )
    return duration


def get_global_args(options: Mapping[str, Any]) -> GlobalArgs:
    """Return the arguments shared by every log driver."""
    container_id = _get_required_value(options, CONTAINER_ID_KEY)
    container_name = _get_required_value(options, CONTAINER_NAME_KEY)
    log_driver = _get_required_value(options, LOG_DRIVER_TYPE_KEY)
    try:
        mode, max_buffer_size = get_mode_and_max_buffer_size(options)
    except ValueError as exc:
        raise ValueError(
            f"unable to get value of flag {MODE_KEY} and {MAX_BUFFER_SIZE_KEY}: {exc}"
        ) from exc
    cleanup_time = get_cleanup_time(options)

    if debug.verbose:
        debug.send_events_to_log(
            DAEMON_NAME,
            f"Container ID: {container_id}, Container Name: {container_name}, "
            f"log driver: {log_driver}, mode: {mode}, max buffer size: {max_buffer_size}",
            LogLevel.DEBUG,
            0,
        )

    return GlobalArgs(
        container_id=container_id,
        container_name=container_name,
        log_driver=log_driver,
        mode=mode,
        max_buffer_size=max_buffer_size,
        uid=_get_int(options, UID_KEY),
        gid=_get_int(options, GID_KEY),
        cleanup_time=cleanup_time,
    )


def _get_windows_args(options: Mapping[str, Any]) -> WindowsArgs:
    return WindowsArgs(
        proxy_env_var=_get_string(options, PROXY_ENV_VAR_KEY),
        log_file_dir=_get_string(options, LOG_FILE_DIR_KEY),
    )


def _parse_string_map(text: str) -> dict[str, str]:
    parsed = json.loads(text)
    if not isinstance(parsed, dict) or not all(
        isinstance(value, str) for value in parsed.values()
    ):
        raise ValueError(f"expected a JSON object of strings: {text}")
    return parsed


def get_docker_configs(options: Mapping[str, Any]) -> DockerConfigs:
    """Return the optional container image, label and environment details."""
    labels_text = _get_string(options, CONTAINER_LABELS_KEY)
    labels = _parse_string_map(labels_text) if labels_text else {}

    env_text = _get_string(options, CONTAINER_ENV_KEY)
    env: list[str] = []
    if env_text:
        env = [f"{key}={value}" for key, value in _parse_string_map(env_text).items()]

    return DockerConfigs(
        container_image_id=_get_string(options, CONTAINER_IMAGE_ID_KEY),
        container_image_name=_get_string(options, CONTAINER_IMAGE_NAME_KEY),
        container_env=env,
        container_labels=labels,
    )


def get_awslogs_args(options: Mapping[str, Any]) -> AwslogsArgs:
    """Return the arguments of the awslogs driver."""
    group = _get_required_value(options, awslogs.GROUP_KEY)
    region = _get_required_value(options, awslogs.REGION_KEY)
    stream = _get_required_value(options, awslogs.STREAM_KEY)
    credentials_endpoint = _get_required_value(options, awslogs.CREDENTIALS_ENDPOINT_KEY)
    return AwslogsArgs(
        group=group,
        region=region,
        stream=stream,
        credentials_endpoint=credentials_endpoint,
        create_group=_get_string(options, awslogs.CREATE_GROUP_KEY),
        create_stream=_get_string(options, awslogs.CREATE_STREAM_KEY),
        multiline_pattern=_get_string(options, awslogs.MULTILINE_PATTERN_KEY),
        datetime_format=_get_string(options, awslogs.DATETIME_FORMAT_KEY),
        endpoint=_get_string(options, awslogs.ENDPOINT_KEY),
    )


def get_fluentd_args(options: Mapping[str, Any]) -> FluentdArgs:
    """Return the arguments of the fluentd driver."""
    buffer_limit = _get_int(options, fluentd.BUFFER_LIMIT_KEY)
    return FluentdArgs(
        address=_get_string(options, fluentd.ADDRESS_KEY),
        tag=_get_string(options, fluentd.FLUENTD_TAG_KEY),
        async_connect="true" if _get_bool(options, fluentd.ASYNC_CONNECT_KEY) else "false",
        subsecond_precision=(
            "true" if _get_bool(options, fluentd.SUBSECOND_PRECISION_KEY) else "false"
        ),
        buffer_limit=str(buffer_limit) if buffer_limit > 0 else "",
    )


def get_splunk_args(options: Mapping[str, Any]) -> SplunkArgs:
    """Return the arguments of the splunk driver."""
    token = _get_required_value(options, splunk.TOKEN_KEY)
    url = _get_required_value(options, splunk.URL_KEY)
    return SplunkArgs(
        token=token,
        url=url,
        source=_get_string(options, splunk.SOURCE_KEY),
        sourcetype=_get_string(options, splunk.SOURCETYPE_KEY),
        index=_get_string(options, splunk.INDEX_KEY),
        capath=_get_string(options, splunk.CAPATH_KEY),
        caname=_get_string(options, splunk.CANAME_KEY),
        insecureskipverify=_get_string(options, splunk.INSECURESKIPVERIFY_KEY),
        format=_get_string(options, splunk.FORMAT_KEY),
        verify_connection=_get_string(options, splunk.VERIFY_CONNECTION_KEY),
        gzip=_get_string(options, splunk.GZIP_KEY),
        gzip_level=_get_string(options, splunk.GZIP_LEVEL_KEY),
        tag=_get_string(options, splunk.SPLUNK_TAG_KEY),
        tag_specified=is_flag_passed(options, splunk.SPLUNK_TAG_KEY),
        labels=_get_string(options, splunk.LABELS_KEY),
        env=_get_string(options, splunk.ENV_KEY),
        env_regex=_get_string(options, splunk.ENV_REGEX_KEY),
    )


def set_windows_env(log_dir: str, container_name: str, proxy_env_var: str) -> None:
    """Send diagnostics to files in ``log_dir`` and set the proxy variables, when given."""
    if log_dir:
        try:
            debug.set_log_file_path(log_dir, container_name)
        except OSError as exc:
            debug.send_events_to_log(DAEMON_NAME, str(exc), LogLevel.ERROR, 1)
            raise
    if proxy_env_var:
        os.environ["HTTP_PROXY"] = proxy_env_var
        os.environ["HTTPS_PROXY"] = proxy_env_var


def clean_windows_env(proxy_env_var: str) -> None:
    """Flush file diagnostics and remove the proxy variables set by ``set_windows_env``."""
    debug.flush_log()
    if proxy_env_var:
        os.environ.pop("HTTP_PROXY", None)
        os.environ.pop("HTTPS_PROXY", None)