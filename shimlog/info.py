"""Data carried between the command line, the log drivers and their destinations."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from shimlog.debug import DAEMON_NAME


@dataclass
class PartialLogMetadata:
    """Marks one piece of a log line that was split across several messages."""

    id: str
    ordinal: int
    last: bool = False


@dataclass
class Message:
    """A single log line read from a container pipe."""

    line: bytes = b""
    source: str = ""
    timestamp: datetime | None = None
    partial: PartialLogMetadata | None = None


@dataclass
class Info:
    """Description of the container whose logs are being shipped."""

    config: dict[str, str] = field(default_factory=dict)
    container_id: str = ""
    container_name: str = ""
    container_entrypoint: str = ""
    container_args: list[str] = field(default_factory=list)
    container_image_id: str = ""
    container_image_name: str = ""
    container_created: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc)
    )
    container_env: list[str] = field(default_factory=list)
    container_labels: dict[str, str] = field(default_factory=dict)
    log_path: str = ""
    daemon_name: str = ""


@dataclass
class GlobalArgs:
    """Arguments shared by every log driver."""

    container_id: str
    container_name: str
    log_driver: str
    mode: str = "blocking"
    max_buffer_size: int = 0
    uid: int = -1
    gid: int = -1
    cleanup_time: timedelta = field(default_factory=lambda: timedelta(seconds=5))


@dataclass
class DockerConfigs:
    """Optional container details passed through to drivers that use them."""

    container_image_id: str = ""
    container_image_name: str = ""
    container_env: list[str] = field(default_factory=list)
    container_labels: dict[str, str] = field(default_factory=dict)


@dataclass
class WindowsArgs:
    """Options that only apply on Windows."""

    proxy_env_var: str = ""
    log_file_dir: str = ""


def new_info(
    container_id: str,
    container_name: str,
    config: dict[str, str] | None = None,
) -> Info:
    """Create container info with empty collections and the given driver config."""
    return Info(
        config={} if config is None else config,
        container_id=container_id,
        container_name=container_name,
        daemon_name=DAEMON_NAME,
    )


def update_docker_configs(info: Info, docker_configs: DockerConfigs) -> Info:
    """Copy the container image, label and environment details onto ``info``."""
    info.container_image_name = docker_configs.container_image_name
    info.container_image_id = docker_configs.container_image_id
    info.container_labels = docker_configs.container_labels
    info.container_env = docker_configs.container_env
    return info


def new_message(line: bytes | bytearray | memoryview, source: str, timestamp: datetime) -> Message:
    """Create a message holding its own copy of ``line``."""
    return Message(line=bytes(line), source=source, timestamp=timestamp)