# shimlog

`shimlog` reads a container's `stdout` and `stderr` pipes, splits the
byte stream into log lines and passes every line to a destination. It
has three driver front ends: awslogs, fluentd and splunk.

It handles the awkward parts of container output:

* Lines longer than the read buffer are cut into partial messages. All
  the pieces of one line share a random partial id and a timestamp, and
  carry an ordinal that counts up from 1. The piece that ends the line is
  marked as the last (`Message.partial.last`).
* In **blocking** mode, which is the default, every line goes straight
  to the destination (`shimlog.common.Logger`).
* In **non-blocking** mode, lines go into an in-memory buffer of bounded
  size (`shimlog.buffered.RingBuffer`, driven by `BufferedLogger`). When
  the buffer is full, new lines are dropped, so a slow destination never
  stalls the reading of the pipes. Whatever is left in the buffer is
  flushed once both pipes close.
* After the pipes close, the logger waits for a cleanup period so the
  last messages can reach their destination. The default is 5 seconds
  and the limit is 12.

## Installation

```
pip install shimlog
```

The package uses only the standard library. To run the test suite,
install the `test` extra:

```
pip install "shimlog[test]"
pytest
```

## Modules

* `shimlog.info`: the data classes `Message`, `PartialLogMetadata`,
  `Info`, `GlobalArgs`, `DockerConfigs` and `WindowsArgs`, plus
  `new_info`, `update_docker_configs` and `new_message`.
* `shimlog.common`: `Logger`, the blocking reader and sender, and
  `RoutingStats`, which counts bytes read, bytes sent and newlines
  dropped. While a logger runs, these counters are reported as debug
  events once a minute. The module also has `generate_random_id` and
  `set_uid_and_gid`. `set_uid_and_gid` switches the group first and then
  the user. A negative value leaves that id alone, and zero is refused
  with `ValueError`.
* `shimlog.buffered`: `RingBuffer` and `BufferedLogger`.
* `shimlog.awslogs`, `shimlog.fluentd`, `shimlog.splunk`: argument
  classes (`AwslogsArgs`, `FluentdArgs`, `SplunkArgs`), the builders of
  the settings map (`get_awslogs_config`, `get_fluentd_config`,
  `get_splunk_config`) and `run_log_driver`. `shimlog.awslogs` also has
  `with_region`.
* `shimlog.options`: command-line style options and their conversion
  into argument objects.
* `shimlog.debug`: diagnostic events about the logger itself.
  `send_events_to_log` writes them to the systemd journal on POSIX and to
  rolling files on Windows. `debug.verbose` turns on the extra debug
  events. `start_stack_trace_handler` dumps the stacks of all threads to
  the diagnostic log on SIGUSR1.

## Options

`shimlog.options.parse_options(argv)` parses flags into a dict that holds
only the options actually passed. The `get_*` functions turn that dict
into argument objects and fill in defaults for anything left out.

| Flag | Meaning |
| --- | --- |
| `--container-id`, `--container-name` | Required by `get_global_args`. |
| `--log-driver` | Required by `get_global_args`. |
| `--mode` | `blocking` (default) or `non-blocking`. Any other value is an error. |
| `--max-buffer-size` | Buffer size for non-blocking mode, such as `1m`, `4k` or `1234`. Units are 1024-based and the default is `1m`. |
| `--cleanup-time` | A duration such as `3s` or `1m30s`. The default is `5s`; more than `12s` is an error. |
| `--uid`, `--gid` | Stored in `GlobalArgs.uid` and `GlobalArgs.gid`. The default is `-1`. |
| `--verbose` | A boolean flag. |
| `--proxy-variable`, `--log-file-dir` | Windows settings, applied with `set_windows_env` and undone with `clean_windows_env`. |
| `--container-image-id`, `--container-image-name`, `--container-env`, `--container-labels` | Read by `get_docker_configs`. The env and labels values are JSON objects of strings. |

Each driver has its own options:

* awslogs (`get_awslogs_args`): `--awslogs-group`, `--awslogs-region`,
  `--awslogs-stream` and `--awslogs-credentials-endpoint` are required.
  `--awslogs-create-group` (default `false`), `--awslogs-create-stream`
  (default `True`), `--awslogs-multiline-pattern`,
  `--awslogs-datetime-format` and `--awslogs-endpoint` are optional.
* fluentd (`get_fluentd_args`): `--fluentd-address`, `--fluentd-tag`,
  `--fluentd-async-connect`, `--fluentd-sub-second-precision` (default
  true) and `--fluentd-buffer-limit` (left empty unless positive).
* splunk (`get_splunk_args`): `--splunk-token` and `--splunk-url` are
  required. The optional ones are `--splunk-source`, `--splunk-sourcetype`,
  `--splunk-index`, `--splunk-capath`, `--splunk-caname`,
  `--splunk-insecureskipverify`, `--splunk-format`,
  `--splunk-verify-connection`, `--splunk-gzip`, `--splunk-gzip-level`,
  `--splunk-tag`, `--labels`, `--env` and `--env-regex`. The `tag`
  setting goes into the config only when `--splunk-tag` was passed
  explicitly.

A required option that is missing, an unknown mode, a buffer size that
cannot be parsed, or a bad or too long cleanup time raises `ValueError`.
`ram_in_bytes` and `parse_duration` are also available on their own.

## Example

`run_log_driver` takes a factory. The factory is called with the
container `Info`, which carries the driver's settings map in
`info.config`, and returns the destination: any object with a
`log(message)` method.

```python
import io

from shimlog import fluentd
from shimlog.options import get_fluentd_args, get_global_args, parse_options

options = parse_options([
    "--container-id", "abc123",
    "--container-name", "web",
    "--log-driver", "fluentd",
    "--fluentd-tag", "web",
    "--cleanup-time", "1s",
])
global_args = get_global_args(options)
fluentd_args = get_fluentd_args(options)


class PrintStream:
    def log(self, message):
        print(message.source, message.line)


stdout = io.BytesIO(b"hello\nworld\n")
stderr = io.BytesIO(b"oops\n")

fluentd.run_log_driver(
    global_args,
    fluentd_args,
    lambda info: PrintStream(),
    stdout,
    stderr,
    lambda: None,
)
```

The driver calls the `ready` callback once the reading threads have
started. If the factory fails, the error is raised. A failure while
shipping logs is not raised: it is stored in `shimlog.debug.err_logger`
and reported to the diagnostic log, so a broken destination does not
take the container down with it.

## What it does not do

* There is no command to run. `parse_options` and the `get_*` functions
  prepare the arguments, but the caller wires them together. That means
  setting `shimlog.debug.verbose`, calling `set_uid_and_gid` and calling
  the chosen driver's `run_log_driver`.
* There are no clients for CloudWatch Logs, Fluentd or Splunk. The
  drivers build the settings map for such a client, but the caller must
  supply the object that actually delivers the messages.