import os
from datetime import timedelta

import pytest

from shimlog import options as opts

TEST_CONTAINER_ID = "test-container-id"
TEST_CONTAINER_NAME = "test-container-name"
TEST_LOG_DRIVER = "test-log-driver"

TEST_IMAGE_NAME = "test-container-image-name"
TEST_IMAGE_ID = "test-container-image-id"
TEST_LABELS = '{"label0":"labelValue0","label1":"labelValue1"}'
TEST_ENV = '{"env0":"envValue0","env1":"envValue1"}'


def test_global_args_no_error():
    options = {
        opts.CONTAINER_ID_KEY: TEST_CONTAINER_ID,
        opts.CONTAINER_NAME_KEY: TEST_CONTAINER_NAME,
        opts.LOG_DRIVER_TYPE_KEY: TEST_LOG_DRIVER,
    }
    args = opts.get_global_args(options)
    assert args.container_id == TEST_CONTAINER_ID
    assert args.container_name == TEST_CONTAINER_NAME
    assert args.log_driver == TEST_LOG_DRIVER
    assert args.mode == opts.BLOCKING_MODE
    assert args.max_buffer_size == 0
    assert args.cleanup_time == timedelta(seconds=5)
    assert args.uid == -1
    assert args.gid == -1


def test_global_args_missing_required_in_order():
    options = {}
    for key, value in (
        (opts.CONTAINER_ID_KEY, TEST_CONTAINER_ID),
        (opts.CONTAINER_NAME_KEY, TEST_CONTAINER_NAME),
        (opts.LOG_DRIVER_TYPE_KEY, TEST_LOG_DRIVER),
    ):
        with pytest.raises(ValueError, match=f"{key} is required"):
            opts.get_global_args(options)
        options[key] = value
    assert opts.get_global_args(options).log_driver == TEST_LOG_DRIVER


@pytest.mark.parametrize(
    "mode, expected_mode, expected_size",
    [
        ("", "blocking", 0),
        ("blocking", "blocking", 0),
        ("non-blocking", "non-blocking", 2**20),
    ],
)
def test_mode_and_max_buffer_size(mode, expected_mode, expected_size):
    assert opts.get_mode_and_max_buffer_size({opts.MODE_KEY: mode}) == (
        expected_mode,
        expected_size,
    )


def test_mode_unknown():
    with pytest.raises(ValueError, match="unknown mode type: test-mode"):
        opts.get_mode_and_max_buffer_size({opts.MODE_KEY: "test-mode"})


def test_global_args_wraps_mode_error():
    options = {
        opts.CONTAINER_ID_KEY: "c",
        opts.CONTAINER_NAME_KEY: "n",
        opts.LOG_DRIVER_TYPE_KEY: "fluentd",
        opts.MODE_KEY: "non-blocking",
        opts.MAX_BUFFER_SIZE_KEY: "3q",
    }
    with pytest.raises(ValueError, match="unable to get value of flag mode and max-buffer-size"):
        opts.get_global_args(options)


@pytest.mark.parametrize(
    "size, expected",
    [("", 2**20), ("2m", 2**21), ("4k", 2**12), ("1234", 1234)],
)
def test_max_buffer_size(size, expected):
    assert opts.get_max_buffer_size({opts.MAX_BUFFER_SIZE_KEY: size}) == expected


@pytest.mark.parametrize("size", ["3q", "-1"])
def test_max_buffer_size_invalid(size):
    with pytest.raises(ValueError, match="unable to parse buffer size to bytes"):
        opts.get_max_buffer_size({opts.MAX_BUFFER_SIZE_KEY: size})


@pytest.mark.parametrize(
    "text, expected",
    [("1kb", 1024), ("1 MiB", 2**20), ("1g", 2**30), ("0", 0)],
)
def test_ram_in_bytes(text, expected):
    assert opts.ram_in_bytes(text) == expected


@pytest.mark.parametrize("text", ["", "1.2.3k", "k", "1x"])
def test_ram_in_bytes_invalid(text):
    with pytest.raises(ValueError):
        opts.ram_in_bytes(text)


@pytest.mark.parametrize(
    "text, expected",
    [("3s", timedelta(seconds=3)), ("10s", timedelta(seconds=10)), ("12s", timedelta(seconds=12))],
)
def test_cleanup_time(text, expected):
    assert opts.get_cleanup_time({opts.CLEANUP_TIME_KEY: text}) == expected


def test_cleanup_time_default():
    assert opts.get_cleanup_time({}) == timedelta(seconds=5)


@pytest.mark.parametrize("text", ["3", "15s"])
def test_cleanup_time_invalid(text):
    with pytest.raises(ValueError):
        opts.get_cleanup_time({opts.CLEANUP_TIME_KEY: text})


def test_cleanup_time_too_long_message():
    with pytest.raises(ValueError, match="invalid time 15s, maximum timeout is 12 seconds"):
        opts.get_cleanup_time({opts.CLEANUP_TIME_KEY: "15s"})


@pytest.mark.parametrize(
    "text, expected",
    [
        ("0", timedelta(0)),
        ("1m30s", timedelta(seconds=90)),
        ("1.5h", timedelta(minutes=90)),
        ("-2s", timedelta(seconds=-2)),
        ("500ms", timedelta(milliseconds=500)),
        ("250us", timedelta(microseconds=250)),
    ],
)
def test_parse_duration(text, expected):
    assert opts.parse_duration(text) == expected


@pytest.mark.parametrize("text", ["", "3", "s", "1d", "1s2"])
def test_parse_duration_invalid(text):
    with pytest.raises(ValueError):
        opts.parse_duration(text)


def test_docker_configs():
    options = {
        opts.CONTAINER_IMAGE_NAME_KEY: TEST_IMAGE_NAME,
        opts.CONTAINER_IMAGE_ID_KEY: TEST_IMAGE_ID,
        opts.CONTAINER_LABELS_KEY: TEST_LABELS,
        opts.CONTAINER_ENV_KEY: TEST_ENV,
    }
    configs = opts.get_docker_configs(options)
    assert configs.container_image_name == TEST_IMAGE_NAME
    assert configs.container_image_id == TEST_IMAGE_ID
    assert configs.container_labels == {"label0": "labelValue0", "label1": "labelValue1"}
    assert set(configs.container_env) == {"env0=envValue0", "env1=envValue1"}


def test_docker_configs_empty():
    configs = opts.get_docker_configs({})
    assert configs.container_labels == {}
    assert configs.container_env == []
    assert configs.container_image_id == ""


def test_docker_configs_invalid_json():
    options = {
        opts.CONTAINER_LABELS_KEY: "{invalidJsonMap",
        opts.CONTAINER_ENV_KEY: "{invalidJsonMap",
    }
    with pytest.raises(ValueError):
        opts.get_docker_configs(options)


def test_is_flag_passed_no():
    options = opts.parse_options([])
    assert opts.is_flag_passed(options, "splunk-tag") is False


def test_is_flag_passed_yes():
    options = opts.parse_options(["--splunk-tag="])
    assert opts.is_flag_passed(options, "splunk-tag") is True
    assert options["splunk-tag"] == ""


def test_parse_options_end_to_end():
    options = opts.parse_options(
        [
            "--container-id", "cid",
            "--container-name=cname",
            "--log-driver", "fluentd",
            "--mode", "non-blocking",
            "--max-buffer-size", "4k",
            "--uid", "1000",
        ]
    )
    args = opts.get_global_args(options)
    assert (args.container_id, args.container_name, args.log_driver) == ("cid", "cname", "fluentd")
    assert args.mode == "non-blocking"
    assert args.max_buffer_size == 4096
    assert args.uid == 1000
    assert args.gid == -1


def test_fluentd_args_defaults():
    args = opts.get_fluentd_args({})
    assert args.async_connect == "false"
    assert args.subsecond_precision == "true"
    assert args.buffer_limit == ""
    assert args.tag == ""


def test_fluentd_args_from_command_line():
    options = opts.parse_options(
        [
            "--fluentd-async-connect",
            "--fluentd-sub-second-precision=false",
            "--fluentd-buffer-limit", "1048576",
            "--fluentd-tag", "test-tag",
            "--fluentd-address", "localhost:24224",
        ]
    )
    args = opts.get_fluentd_args(options)
    assert args.async_connect == "true"
    assert args.subsecond_precision == "false"
    assert args.buffer_limit == "1048576"
    assert args.tag == "test-tag"
    assert args.address == "localhost:24224"


def test_invalid_bool_flag_rejected():
    with pytest.raises(SystemExit):
        opts.parse_options(["--verbose=maybe"])


def test_awslogs_args_required():
    options = {
        "awslogs-group": "test-group",
        "awslogs-region": "test-region",
        "awslogs-stream": "test-stream",
    }
    with pytest.raises(ValueError, match="awslogs-credentials-endpoint is required"):
        opts.get_awslogs_args(options)


def test_awslogs_args_defaults():
    options = {
        "awslogs-group": "test-group",
        "awslogs-region": "test-region",
        "awslogs-stream": "test-stream",
        "awslogs-credentials-endpoint": ":51679/creds",
    }
    args = opts.get_awslogs_args(options)
    assert args.group == "test-group"
    assert args.credentials_endpoint == ":51679/creds"
    assert args.create_group == "false"
    assert args.create_stream == "True"
    assert args.endpoint == ""


def test_splunk_args():
    options = {
        "splunk-token": "token",
        "splunk-url": "https://localhost:8089",
        "splunk-insecureskipverify": "true",
    }
    args = opts.get_splunk_args(options)
    assert args.token == "token"
    assert args.url == "https://localhost:8089"
    assert args.insecureskipverify == "true"
    assert args.tag_specified is False


def test_splunk_args_tag_specified():
    options = opts.parse_options(
        ["--splunk-token", "token", "--splunk-url", "https://localhost:8089", "--splunk-tag", ""]
    )
    args = opts.get_splunk_args(options)
    assert args.tag_specified is True
    assert args.tag == ""


def test_splunk_args_missing_url():
    with pytest.raises(ValueError, match="splunk-url is required"):
        opts.get_splunk_args({"splunk-token": "token"})


def test_windows_env_round_trip(monkeypatch):
    monkeypatch.delenv("HTTP_PROXY", raising=False)
    monkeypatch.delenv("HTTPS_PROXY", raising=False)
    proxy = "http://proxy.example.com:3128"
    result = opts.set_windows_env("", "test-container", proxy)
    assert result is None
    assert (os.environ["HTTP_PROXY"], os.environ["HTTPS_PROXY"]) == (proxy, proxy)
    cleaned = opts.clean_windows_env(proxy)
    assert cleaned is None
    assert ("HTTP_PROXY" in os.environ, "HTTPS_PROXY" in os.environ) == (False, False)


def test_windows_env_without_proxy_leaves_env(monkeypatch):
    monkeypatch.setenv("HTTP_PROXY", "http://keep.example.com")
    monkeypatch.delenv("HTTPS_PROXY", raising=False)
    result = opts.set_windows_env("", "test-container", "")
    assert result is None
    assert "HTTPS_PROXY" not in os.environ
    cleaned = opts.clean_windows_env("")
    assert cleaned is None
    assert os.environ["HTTP_PROXY"] == "http://keep.example.com"