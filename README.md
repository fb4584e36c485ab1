# coredump-composer

`coredump-composer` is a core-dump handler for Kubernetes nodes. It runs on
Linux. The kernel pipes a crashing process's core file to it on standard input.
It writes that file into one zip archive. It also asks `crictl` about the pod the
process ran in and writes the answers into the same archive.

## What ends up in the archive

A filename template sets the names of the archive and of every entry in it. The
default template is `{uuid}-dump-{timestamp}-{hostname}-{exe_name}-{pid}-{signal}`,
and `<name>` below stands for its result. The archive is written to
`<dir>/<name>.zip`. It holds:

- `<name>-dump-info.json`, a JSON document with `uuid`, `dump_file`, `timestamp`,
  `hostname`, `exe`, `real_pid`, `signal`, `node_hostname` and `path`
- `<name>.core`, the core file copied from standard input
- `<name>-pod-info.json`, `<name>-runtime-info.json` and `<name>-ps-info.json`,
  which hold the pod, the pod inspection and the container list that `crictl`
  reports
- for each container `n` (counted from 0), `<name>-<n>.log` holding the last
  `LOG_LENGTH` log lines and `<name>-<n>-image-info.json` holding its image
- `<name>-<n>-proc/` with the `auxv`, `cmdline`, `environ`, `maps` and `status`
  files of the container's process, when `INCLUDE_PROC_INFO` is true

Every entry is marked read-only (mode 0444). The archive file is held under an
exclusive `flock` while it is written. When `IGNORE_CRIO` is true, the archive
holds only the dump info and the core file.

If `crictl` cannot find the pod, the dump info and the core file are still
written. When a container's logs or image cannot be fetched, the entry is
written empty (`""` or `{}`) and processing goes on. Missing proc files are
skipped with a warning.

## Running it

Installing the package provides the `coredump-composer` command. Set it as the
kernel's core pattern so that it receives the core-pattern arguments:

```
|/path/to/coredump-composer -c %c -e %e -p %p -s %s -t %t -d /var/mnt/core-dump-handler/cores -h %h -E %E
```

| Option | Meaning |
| --- | --- |
| `-c`, `--limit-size` | core file size soft limit |
| `-e`, `--exe-name` | the process's comm value |
| `-p`, `--pid` | the pid of the dumped process |
| `-s`, `--signal` | the signal that caused the dump |
| `-t`, `--timestamp` | the time of the dump, in seconds since the epoch |
| `-d`, `--dir` | the directory the zip is written to |
| `-h`, `--hostname` | the hostname, which is the pod name inside a container |
| `-E`, `--pathname` | the path of the executable |
| `-T`, `--timeout` | accepted, but ignored; use `TIMEOUT` |
| `--test-threads` | accepted, but ignored |
| `-D`, `--disable-compression` | accepted, but ignored; use `COMPRESSION` |
| `--help` | show help (`-h` is the hostname) |
| `-V`, `--version` | show the version |

Exit codes:

- `0` when the archive was written, or when the pod was skipped by `POD_SELECTOR_LABEL`
- `1` on bad arguments or settings, or when a required step fails
- `32` when processing takes longer than `TIMEOUT` seconds

## Configuration

Settings are read from the environment. A `.env` file in the directory of the
running script (the *base directory*) is loaded first, but it does not override
variables that are already set. The log file `composer.log` is written to the
base directory too. `crictl` is looked up on
`/bin:/sbin:/usr/bin:/usr/sbin:/usr/local/bin:/home/kubernetes/bin:<base directory>`.

| Variable | Default | Effect |
| --- | --- | --- |
| `LOG_LEVEL` | debug | `off`, `error`, `warn`, `info`, `debug` or `trace`; any other value gives debug |
| `POD_SELECTOR_LABEL` | empty | only record pods that carry this label |
| `IGNORE_CRIO` | false | write only the dump info and the core file |
| `INCLUDE_PROC_INFO` | false | copy proc files for each container |
| `OVERRIDE_PROC_FOLDER_PATH` | `/proc` | where proc files are read from |
| `LOG_LENGTH` | 500 | number of container log lines to keep |
| `CRIO_IMAGE_CMD` | img | `img` or `images`, the `crictl` image subcommand |
| `USE_CRIO_CONF` | false | pass `<base directory>/crictl.yaml` to `crictl --config` |
| `COMPRESSION` | true | deflate entries; when false, store them |
| `TIMEOUT` | 600 | seconds before processing is abandoned with exit code 32 |
| `CORE_EVENTS` | false | also write `<uuid>-event.json` describing the dump |
| `EVENT_DIRECTORY` | `<base directory>/events` | where event files are written |
| `FILENAME_TEMPLATE` | see above | template for all names |

The boolean settings take `true` or `false` in any case. Any other value is an
error.

Template fields are written as `{field}`. The fields are `uuid`, `timestamp`,
`hostname`, `exe_name`, `pid`, `signal`, `limit_size`, `directory`, `pathname`,
`namespace` and `podname`. `namespace` and `podname` come from the pod's
metadata, and are `unknown` when the pod is not found. Values are HTML-escaped.
`\{` and `\}` give literal braces. If the template cannot be rendered, the
dump's uuid is used as the name.

## Using it from Python

```python
from coredump_composer.config import CoreConfig
from coredump_composer.composer import handle

config = CoreConfig.from_environment(
    ["-e", "node", "-p", "4", "-s", "10", "-d", "/tmp"], base_path="/tmp"
)
print(config.zip_full_path())

with open("test.core", "rb") as core:
    handle(config, core)
```

- `coredump_composer.config.CoreConfig` holds the settings. It has the name
  helpers `templated_name()`, `core_filename()`, `dump_info_filename()`,
  `zip_full_path()` and their siblings, and `dump_info()`.
  `render_template`, `parse_args` and `parse_bool` are available on their own.
- `coredump_composer.composer.handle(config, core_stream, cli=None)` builds the
  archive. It raises `ComposerExit` (with a `code`) when it has to stop.
  `run_with_timeout` does the same but gives up after `config.timeout` seconds.
  `main(argv=None)` is the command.
- `coredump_composer.crio.Cli` runs `crictl`. It raises `CrictlError` on failure.
  Any object with the same methods can be passed to `handle` as `cli`.
- `coredump_composer.events.CoreEvent` builds event records, with
  `without_runtime` and `from_runtime`. `write(directory)` writes them under an
  exclusive lock.
- `coredump_composer.logsetup.init_logger` sends the package's log records to
  `composer.log`.

## What it does not do

This package only handles a single dump. It does not set the kernel's core
pattern or the related sysctls, and it does not upload, sweep or remove
archives. It does not watch for event files either. Those tasks need a separate
agent on the node.