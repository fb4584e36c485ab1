"""Core dump events written as JSON files for other services to pick up."""

from __future__ import annotations

import fcntl
import json
import logging
import uuid as uuid_module
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from coredump_composer.config import CoreParams

logger = logging.getLogger("coredump_composer.events")

LABEL_PREFIX = "info.coredump"


def _first_digest(image: Any) -> str:
    if not isinstance(image, Mapping):
        return ""
    digests = image.get("repoDigests")
    if isinstance(digests, list) and digests and isinstance(digests[0], str):
        return digests[0]
    return ""


def _coredump_labels(pod_info: Any) -> dict[str, str]:
    if not isinstance(pod_info, Mapping):
        return {}
    labels = pod_info.get("labels")
    if not isinstance(labels, Mapping):
        return {}
    selected: dict[str, str] = {}
    for name, label in labels.items():
        if name.startswith(LABEL_PREFIX):
            selected[name] = label if isinstance(label, str) else ""
            logger.debug("%r", label)
    return selected


@dataclass
class CoreEvent:
    """A record of one processed core dump and where its archive is stored."""

    key: str
    exe_path: str
    limit_size: str
    exe_name: str
    pid: str
    signal: str
    timestamp: str
    hostname: str
    namespace: str | None
    uuid: uuid_module.UUID
    image_list: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)

    @classmethod
    def _from_params(
        cls,
        params: CoreParams,
        zip_name: str,
        image_list: list[str],
        labels: dict[str, str],
    ) -> CoreEvent:
        return cls(
            key=zip_name,
            exe_path=params.pathname,
            limit_size=params.limit_size,
            exe_name=params.exe_name,
            pid=params.pid,
            signal=params.signal,
            timestamp=params.timestamp,
            hostname=params.hostname,
            namespace=params.namespace,
            uuid=params.uuid,
            image_list=image_list,
            labels=labels,
        )

    @classmethod
    def without_runtime(cls, params: CoreParams, zip_name: str) -> CoreEvent:
        """Build an event with no image or label details."""
        return cls._from_params(params, zip_name, [], {})

    @classmethod
    def from_runtime(
        cls,
        params: CoreParams,
        zip_name: str,
        pod_info: Any,
        image_info: Iterable[Any],
    ) -> CoreEvent:
        """Build an event carrying the pod's info.coredump labels and image digests."""
        images = [_first_digest(image) for image in image_info]
        return cls._from_params(params, zip_name, images, _coredump_labels(pod_info))

    def to_dict(self) -> dict[str, Any]:
        """Return the event as a JSON-ready mapping."""
        return {
            "image_list": list(self.image_list),
            "key": self.key,
            "exe_path": self.exe_path,
            "labels": dict(self.labels),
            "limit_size": self.limit_size,
            "exe_name": self.exe_name,
            "pid": self.pid,
            "signal": self.signal,
            "timestamp": self.timestamp,
            "hostname": self.hostname,
            "namespace": self.namespace,
            "uuid": str(self.uuid),
        }

    def write(self, event_location: str | Path) -> Path:
        """Write the event to <event_location>/<uuid>-event.json under an exclusive lock."""
        full_path = Path(f"{event_location}/{self.uuid}-event.json")
        with open(full_path, "w", encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                json.dump(self.to_dict(), handle, ensure_ascii=False, separators=(",", ":"))
                handle.flush()
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        return full_path