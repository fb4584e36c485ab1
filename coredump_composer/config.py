"""Composer configuration built from the command line, the environment and a .env file."""

from __future__ import annotations

import argparse
import json
import logging
import os
import re
import socket
import sys
import uuid as uuid_module
from collections.abc import Mapping, Sequence
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from coredump_composer.crio import ImageCommand

logger = logging.getLogger("coredump_composer.config")

DEFAULT_TEMPLATE = "{uuid}-dump-{timestamp}-{hostname}-{exe_name}-{pid}-{signal}"
PROC_FILES = ("auxv", "cmdline", "environ", "maps", "status")
_BASE_BIN_PATH = "/bin:/sbin:/usr/bin:/usr/sbin:/usr/local/bin:/home/kubernetes/bin"
_U32_MAX = 2**32 - 1
_U32_PATTERN = re.compile(r"\+?[0-9]+")
_PLACEHOLDER_PATTERN = re.compile(r"[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z0-9_]+)*")
_HTML_ESCAPES = {
    "<": "&lt;",
    ">": "&gt;",
    "&": "&amp;",
    "'": "&#39;",
    '"': "&quot;",
}


class ArgumentError(ValueError):
    """Raised when the command line cannot be parsed."""


class TemplateError(ValueError):
    """Raised when a filename template cannot be parsed or rendered."""


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        raise ArgumentError(message)


@dataclass
class CoreParams:
    """Details of the crashing process handed over by the kernel."""

    limit_size: str = ""
    exe_name: str = ""
    pid: str = ""
    signal: str = ""
    timestamp: str = ""
    directory: str = ""
    hostname: str = ""
    pathname: str = ""
    namespace: str | None = None
    podname: str | None = None
    uuid: uuid_module.UUID = field(default_factory=uuid_module.uuid4)


def _build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="core-dump-composer",
        description="Processes Core Dumps in a K8s System",
        add_help=False,
    )
    parser.add_argument("--help", action="help", help="Print help information")
    parser.add_argument("-V", "--version", action="version", version="%(prog)s 0.1.0")
    parser.add_argument(
        "-c", "--limit-size", dest="limit_size", default="",
        help="Core file size soft resource limit of crashing process",
    )
    parser.add_argument(
        "-e", "--exe-name", dest="exe_name", default="",
        help="The process or thread's comm value, truncated to 15 characters",
    )
    parser.add_argument(
        "-p", "--pid", default="",
        help="PID of dumped process, as seen in its PID namespace",
    )
    parser.add_argument("-s", "--signal", default="", help="Number of signal causing dump.")
    parser.add_argument(
        "-t", "--timestamp", default="",
        help="Time of dump, expressed as seconds since the Epoch.",
    )
    parser.add_argument(
        "-d", "--dir", dest="directory", default="",
        help="Directory to save the core dump to.",
    )
    parser.add_argument(
        "-h", "--hostname", default="",
        help="Hostname (same as nodename returned by uname(2))",
    )
    parser.add_argument(
        "-E", "--pathname", default="",
        help="Pathname of the executable",
    )
    parser.add_argument(
        "-T", "--timeout", default=None,
        help="Timeout in seconds to wait for processing of the Coredump",
    )
    parser.add_argument(
        "--test-threads", dest="test_threads", default=None,
        help="test-threads mapped to support the test scenarios",
    )
    parser.add_argument(
        "-D", "--disable-compression", dest="disable_compression", action="store_true",
        help="Disables deflate compression in resulting zip file.",
    )
    return parser


def parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    """Parse the composer's command line; raise ArgumentError when it is invalid."""
    return _build_parser().parse_args(list(argv) if argv is not None else sys.argv[1:])


def parse_bool(value: str) -> bool:
    """Parse "true" or "false" in any case; raise ValueError for anything else."""
    lowered = value.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    raise ValueError(f"invalid boolean value: {value!r}")


def _parse_u32(name: str, value: str) -> int:
    if not _U32_PATTERN.fullmatch(value):
        raise ValueError(f"invalid value for {name}: {value!r}")
    number = int(value)
    if number > _U32_MAX:
        raise ValueError(f"value for {name} out of range: {value!r}")
    return number


def _format_value(name: str, value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return "".join(_HTML_ESCAPES.get(ch, ch) for ch in value)
    raise TemplateError(f"cannot format value of {name}")


def _lookup(values: Mapping[str, Any], path: str) -> Any:
    current: Any = values
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            raise TemplateError(f"unknown value {path}")
        current = current[part]
    return current


def render_template(template: str, values: Mapping[str, Any]) -> str:
    """Replace each {name} in ``template`` with the HTML-escaped value from ``values``.

    ``\\{`` and ``\\}`` give literal braces; ``null`` values render as empty text.
    """
    out: list[str] = []
    position = 0
    length = len(template)
    while position < length:
        char = template[position]
        if char == "\\" and position + 1 < length and template[position + 1] in "{}":
            out.append(template[position + 1])
            position += 2
            continue
        if char == "{":
            end = template.find("}", position + 1)
            if end == -1:
                raise TemplateError(f"unclosed placeholder at position {position}")
            expression = template[position + 1:end].strip()
            if not _PLACEHOLDER_PATTERN.fullmatch(expression):
                raise TemplateError(f"unsupported placeholder {{{expression}}}")
            out.append(_format_value(expression, _lookup(values, expression)))
            position = end + 1
            continue
        out.append(char)
        position += 1
    return "".join(out)


def _template_values(params: CoreParams) -> dict[str, Any]:
    values = asdict(params)
    values["uuid"] = str(params.uuid)
    return values


def _node_hostname() -> str:
    try:
        return socket.gethostname() or "unknown"
    except OSError:
        return "unknown"


def _json_string(value: Any) -> str:
    return json.dumps(str(value), ensure_ascii=False)


@dataclass
class CoreConfig:
    """Everything the composer needs to know to process one core dump."""

    dot_env_path: Path
    base_path: Path
    crictl_config_path: Path
    log_level: str
    log_length: int
    pod_selector_label: str
    use_crio_config: bool
    ignore_crio: bool
    include_proc_info: bool
    system_proc_folder_path: str
    core_events: bool
    timeout: int
    compression: bool
    event_location: Path
    image_command: ImageCommand
    bin_path: str
    os_hostname: str
    filename_template: str
    params: CoreParams

    @classmethod
    def from_environment(
        cls,
        argv: Sequence[str] | None = None,
        base_path: str | Path | None = None,
    ) -> CoreConfig:
        """Build the configuration from the arguments, the .env file and the environment."""
        args = parse_args(argv)
        params = CoreParams(
            limit_size=args.limit_size,
            exe_name=args.exe_name,
            pid=args.pid,
            signal=args.signal,
            timestamp=args.timestamp,
            directory=args.directory,
            hostname=args.hostname,
            pathname=args.pathname,
        )

        base = Path(base_path) if base_path is not None else Path(sys.argv[0]).resolve().parent
        dot_env_path = base / ".env"
        if dot_env_path.is_file():
            load_dotenv(dot_env_path, override=False)
        else:
            logger.error("error loading .env file %s: not found", dot_env_path)

        env = os.environ
        image_command_name = env.get("CRIO_IMAGE_CMD", "img")
        try:
            image_command = ImageCommand(image_command_name)
        except ValueError:
            image_command = ImageCommand.IMG

        base_str = str(base)
        return cls(
            dot_env_path=dot_env_path,
            base_path=base,
            crictl_config_path=base / "crictl.yaml",
            log_level=env.get("LOG_LEVEL", ""),
            log_length=_parse_u32("LOG_LENGTH", env.get("LOG_LENGTH", "500")),
            pod_selector_label=env.get("POD_SELECTOR_LABEL", ""),
            use_crio_config=parse_bool(env.get("USE_CRIO_CONF", "false")),
            ignore_crio=parse_bool(env.get("IGNORE_CRIO", "false")),
            include_proc_info=parse_bool(env.get("INCLUDE_PROC_INFO", "false")),
            system_proc_folder_path=env.get("OVERRIDE_PROC_FOLDER_PATH", "/proc"),
            core_events=parse_bool(env.get("CORE_EVENTS", "false")),
            timeout=_parse_u32("TIMEOUT", env.get("TIMEOUT", "600")),
            compression=parse_bool(env.get("COMPRESSION", "true")),
            event_location=Path(env.get("EVENT_DIRECTORY", f"{base_str}/events")),
            image_command=image_command,
            bin_path=f"{_BASE_BIN_PATH}:{base_str}",
            os_hostname=_node_hostname(),
            filename_template=env.get("FILENAME_TEMPLATE", DEFAULT_TEMPLATE),
            params=params,
        )

    def dump_info(self) -> str:
        """Return the JSON document describing the dump."""
        p = self.params
        return (
            f'{{"uuid":{_json_string(p.uuid)}, "dump_file":{_json_string(self.core_filename())}, '
            f'"timestamp": {_json_string(p.timestamp)},\n'
            f'        "hostname": {_json_string(p.hostname)}, "exe": {_json_string(p.exe_name)}, '
            f'"real_pid": {_json_string(p.pid)}, "signal": {_json_string(p.signal)}, '
            f'"node_hostname": {_json_string(self.os_hostname)}, '
            f'"path": {_json_string(p.pathname)} }}'
        )

    def templated_name(self) -> str:
        """Render the filename template; fall back to the dump's uuid if that fails."""
        try:
            return render_template(self.filename_template, _template_values(self.params))
        except TemplateError as exc:
            logger.error("Templating name failed. Using uuid %s %s", self.params.uuid, exc)
            return str(self.params.uuid)

    def dump_info_filename(self) -> str:
        return f"{self.templated_name()}-dump-info.json"

    def core_filename(self) -> str:
        return f"{self.templated_name()}.core"

    def pod_filename(self) -> str:
        return f"{self.templated_name()}-pod-info.json"

    def inspect_pod_filename(self) -> str:
        return f"{self.templated_name()}-runtime-info.json"

    def ps_filename(self) -> str:
        return f"{self.templated_name()}-ps-info.json"

    def image_filename(self, counter: int) -> str:
        return f"{self.templated_name()}-{counter}-image-info.json"

    def log_filename(self, counter: int) -> str:
        return f"{self.templated_name()}-{counter}.log"

    def zip_full_path(self) -> str:
        return f"{self.params.directory}/{self.templated_name()}.zip"

    def proc_folder_full_path(self, counter: int) -> str:
        return f"{self.templated_name()}-{counter}-proc"