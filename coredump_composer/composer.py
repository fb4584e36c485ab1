"""Collects a core dump and its container runtime details into one zip archive."""

from __future__ import annotations

import fcntl
import json
import logging
import shutil
import sys
import threading
import time
import zipfile
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO

from coredump_composer.config import PROC_FILES, CoreConfig
from coredump_composer.crio import Cli, CrictlError
from coredump_composer.events import CoreEvent
from coredump_composer.logsetup import init_logger

logger = logging.getLogger("coredump_composer.composer")

TIMEOUT_EXIT_CODE = 32
_ENTRY_MODE = 0o100444


class ComposerExit(Exception):
    """Raised when processing stops early with a process exit code."""

    def __init__(self, code: int, message: str = "") -> None:
        super().__init__(message or f"composer stopped with exit code {code}")
        self.code = code


def _to_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"), ensure_ascii=False, sort_keys=True)


def _field(value: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(value, Mapping):
            return None
        value = value.get(key)
    return value


@dataclass
class _Archive:
    """A zip archive whose entries are read-only and share one compression method."""

    zip_file: zipfile.ZipFile
    compression: int

    def _info(self, name: str) -> zipfile.ZipInfo:
        info = zipfile.ZipInfo(name, date_time=time.localtime()[:6])
        info.compress_type = self.compression
        info.external_attr = _ENTRY_MODE << 16
        return info

    def add(self, name: str, data: str | bytes) -> None:
        self.zip_file.writestr(self._info(name), data)

    def copy(self, name: str, source: BinaryIO) -> None:
        with self.zip_file.open(self._info(name), "w", force_zip64=True) as destination:
            shutil.copyfileobj(source, destination)


def _add_required(archive: _Archive, name: str, data: str | bytes, what: str) -> None:
    try:
        archive.add(name, data)
    except (OSError, ValueError) as exc:
        logger.error("Error writing %s file in zip \n%s", what, exc)
        raise ComposerExit(1) from exc


def _default_cli(config: CoreConfig) -> Cli:
    config_path = str(config.crictl_config_path) if config.use_crio_config else None
    return Cli(
        bin_path=config.bin_path,
        config_path=config_path,
        image_command=config.image_command,
    )


def _pod_is_selected(config: CoreConfig, pod_object: Any) -> bool:
    label = config.pod_selector_label
    if not label:
        logger.debug("No pod selector specified, selecting all pods")
        return True
    logger.debug("Pod selector specified. Will record only if pod has label %s", label)
    labels = _field(pod_object, "labels")
    if not isinstance(labels, Mapping):
        logger.error("Pod has no labels to match selector label %s", label)
        raise ComposerExit(1)
    if label not in labels:
        logger.info("Skipping pod as it did not match selector label %s", label)
        return False
    return True


def _add_proc_files(
    config: CoreConfig, archive: _Archive, cli: Any, container_id: str, counter: int
) -> None:
    logger.debug("Getting pid info for container id %s", container_id)
    try:
        inspect = cli.inspect_container(container_id)
    except CrictlError as exc:
        logger.error("Error inspecting container \n%s", exc)
        return
    pid = _field(inspect, "info", "pid")
    if not isinstance(pid, int) or isinstance(pid, bool) or pid < 0:
        logger.warning("Failed to parse pid from inspect container, skipping")
        return
    logger.debug("Got pid %s for container", pid)
    logger.debug("Add proc files to the zip")
    folder = config.proc_folder_full_path(counter)
    for filename in PROC_FILES:
        try:
            data = Path(f"{config.system_proc_folder_path}/{pid}/{filename}").read_bytes()
        except OSError as exc:
            logger.warning("Failed to open %s. Has the pod been ejected?\n%s", filename, exc)
            break
        try:
            archive.add(f"{folder}/{filename}", data)
        except (OSError, ValueError) as exc:
            logger.warning("Error writing %s file in zip \n%s", filename, exc)
            break
    logger.debug("Finished adding proc files to the zip")


def _fill_archive(
    config: CoreConfig,
    archive: _Archive,
    core_stream: BinaryIO,
    cli: Any,
    pod_object: Any,
) -> list[Any] | None:
    """Write every entry; return the image details, or None when the runtime is ignored."""
    dump_info_name = config.dump_info_filename()
    logger.debug("Create a JSON file to store the dump meta data\n%s", dump_info_name)
    _add_required(archive, dump_info_name, config.dump_info(), "dump info")

    try:
        archive.copy(config.core_filename(), core_stream)
    except (OSError, ValueError) as exc:
        logger.error("Error writing core file \n%s", exc)
        raise ComposerExit(1) from exc

    if config.ignore_crio:
        return None

    logger.debug("Using runtime_file_name:%s", config.pod_filename())
    _add_required(archive, config.pod_filename(), _to_json(pod_object), "pod")

    pod_id = _field(pod_object, "id")
    if not isinstance(pod_id, str):
        logger.error("Failed to get pod id")
        raise ComposerExit(1)

    logger.debug("Getting inspectp output using pod_id:%s", pod_id)
    try:
        inspectp = cli.inspect_pod(pod_id)
    except CrictlError as exc:
        logger.error("Failed to inspect pod %s", exc)
        inspectp = {}
    _add_required(archive, config.inspect_pod_filename(), _to_json(inspectp), "inspect pod")

    try:
        ps_object = cli.pod_containers(pod_id)
    except CrictlError as exc:
        logger.error("%s", exc)
        raise ComposerExit(1) from exc
    _add_required(archive, config.ps_filename(), _to_json(ps_object), "ps")
    logger.debug("Successfully got the process details %s", _to_json(ps_object))

    images: list[Any] = []
    containers = _field(ps_object, "containers")
    if not isinstance(containers, list):
        return images

    for counter, container in enumerate(containers):
        img_ref = _field(container, "imageRef")
        if not isinstance(img_ref, str):
            logger.error("Failed to get containerid ")
            break
        container_id = _field(container, "id")
        if not isinstance(container_id, str):
            container_id = ""

        logger.debug("Getting logs for container id %s", container_id)
        try:
            log = cli.tail_logs(container_id, config.log_length)
        except CrictlError as exc:
            logger.error("Error finding logs:\n%s", exc)
            log = ""
        _add_required(archive, config.log_filename(counter), log, "log")

        logger.debug("found img_id %s", img_ref)
        try:
            image = cli.image(img_ref)
        except CrictlError as exc:
            logger.error("Error finding image:\n%s", exc)
            image = {}
        images.append(image)
        _add_required(archive, config.image_filename(counter), _to_json(image), "image")

        if config.include_proc_info:
            _add_proc_files(config, archive, cli, container_id, counter)

    return images


def handle(config: CoreConfig, core_stream: BinaryIO, cli: Any = None) -> None:
    """Write the dump, its metadata and the runtime details into the configured zip file.

    Raises ComposerExit when processing has to stop with a failure code.
    """
    config.params.namespace = "default"
    log_path = init_logger(config.log_level, config.base_path)
    logger.debug("Arguments: %s", sys.argv)
    logger.info(
        "Environment config:\n IGNORE_CRIO=%s\nCRIO_IMAGE_CMD=%s\nUSE_CRIO_CONF=%s",
        str(config.ignore_crio).lower(),
        config.image_command,
        str(config.use_crio_config).lower(),
    )
    logger.info("Set logfile to: %s", log_path)
    logger.debug("Creating dump for %s", config.templated_name())

    if cli is None:
        cli = _default_cli(config)

    try:
        pod_object: Any = cli.pod(config.params.hostname)
    except CrictlError as exc:
        # The core dump and its info can still be captured without the pod.
        logger.error("%s", exc)
        pod_object = {}

    if not _pod_is_selected(config, pod_object):
        return

    namespace = _field(pod_object, "metadata", "namespace")
    config.params.namespace = namespace if isinstance(namespace, str) else "unknown"
    podname = _field(pod_object, "metadata", "name")
    config.params.podname = podname if isinstance(podname, str) else "unknown"

    compression = zipfile.ZIP_DEFLATED if config.compression else zipfile.ZIP_STORED
    try:
        zip_handle = open(config.zip_full_path(), "wb")
    except OSError as exc:
        logger.error("Failed to create file: %s", exc)
        raise ComposerExit(1) from exc

    with zip_handle:
        fcntl.flock(zip_handle.fileno(), fcntl.LOCK_EX)
        try:
            with zipfile.ZipFile(
                zip_handle, "w", compression=compression, allowZip64=True
            ) as zip_file:
                images = _fill_archive(
                    config, _Archive(zip_file, compression), core_stream, cli, pod_object
                )
        finally:
            fcntl.flock(zip_handle.fileno(), fcntl.LOCK_UN)

    if not config.core_events:
        return
    zip_name = f"{config.templated_name()}.zip"
    if images is None:
        event = CoreEvent.without_runtime(config.params, zip_name)
    else:
        event = CoreEvent.from_runtime(config.params, zip_name, pod_object, images)
    event.write(config.event_location)


def run_with_timeout(config: CoreConfig, core_stream: BinaryIO, cli: Any = None) -> None:
    """Run handle() but give up with exit code 32 after config.timeout seconds."""
    outcome: dict[str, BaseException] = {}

    def work() -> None:
        try:
            handle(config, core_stream, cli)
        except BaseException as exc:  # handed back to the waiting thread
            outcome["error"] = exc

    worker = threading.Thread(target=work, name="core-dump-handler", daemon=True)
    worker.start()
    worker.join(config.timeout)
    if worker.is_alive():
        logger.error("Timeout error during coredump processing.")
        raise ComposerExit(TIMEOUT_EXIT_CODE, "timeout during coredump processing")
    if "error" in outcome:
        raise outcome["error"]


def main(argv: Sequence[str] | None = None) -> int:
    """Process the core dump piped on stdin; return the process exit code."""
    try:
        config = CoreConfig.from_environment(argv)
    except (ValueError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    try:
        run_with_timeout(config, sys.stdin.buffer)
    except ComposerExit as exc:
        return exc.code
    except Exception as exc:
        logger.error("%s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())