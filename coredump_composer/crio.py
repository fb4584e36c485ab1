"""Access to container runtime details through the crictl command."""

from __future__ import annotations

import json
import os
import shutil
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import Any


class ImageCommand(str, Enum):
    """The crictl sub-command used to list images."""

    IMG = "img"
    IMAGES = "images"

    def __str__(self) -> str:
        return self.value


class CrictlError(Exception):
    """Raised when crictl cannot be run or its output cannot be used."""


@dataclass
class Cli:
    """Runs crictl with a fixed search path, optional config file and image command."""

    bin_path: str
    config_path: str | None = None
    image_command: ImageCommand = ImageCommand.IMG

    def _run(self, *args: str) -> str:
        executable = shutil.which("crictl", path=self.bin_path)
        if executable is None:
            raise CrictlError(f"crictl not found in {self.bin_path}")
        command = [executable]
        if self.config_path:
            command += ["--config", self.config_path]
        command += args
        try:
            completed = subprocess.run(
                command,
                capture_output=True,
                text=True,
                errors="replace",
                env={**os.environ, "PATH": self.bin_path},
                check=False,
            )
        except OSError as exc:
            raise CrictlError(f"failed to run crictl {' '.join(args)}: {exc}") from exc
        if completed.returncode != 0:
            raise CrictlError(
                f"crictl {' '.join(args)} exited with {completed.returncode}: "
                f"{completed.stderr.strip()}"
            )
        return completed.stdout

    def _run_json(self, *args: str) -> Any:
        output = self._run(*args)
        try:
            return json.loads(output)
        except json.JSONDecodeError as exc:
            raise CrictlError(f"crictl {' '.join(args)} returned invalid JSON: {exc}") from exc

    def pod(self, hostname: str) -> dict:
        """Return the pod whose name matches the given hostname."""
        result = self._run_json("pods", "--name", hostname, "-o", "json")
        items = result.get("items") if isinstance(result, dict) else None
        if not items:
            raise CrictlError(f"no pod found with name {hostname}")
        return items[0]

    def inspect_pod(self, pod_id: str) -> Any:
        """Return the runtime inspection of a pod sandbox."""
        return self._run_json("inspectp", pod_id)

    def pod_containers(self, pod_id: str) -> Any:
        """Return the container listing for a pod."""
        return self._run_json("ps", "-o", "json", "-p", pod_id)

    def tail_logs(self, container_id: str, lines: int) -> str:
        """Return the last ``lines`` lines of a container's log."""
        return self._run("logs", "--tail", str(lines), container_id)

    def image(self, image_ref: str) -> dict:
        """Return the image whose id matches ``image_ref``."""
        result = self._run_json(str(self.image_command), "-o", "json")
        images = result.get("images", []) if isinstance(result, dict) else []
        for image in images:
            if isinstance(image, dict) and image.get("id") == image_ref:
                return image
        raise CrictlError(f"no image found with id {image_ref}")

    def inspect_container(self, container_id: str) -> Any:
        """Return the runtime inspection of a container."""
        return self._run_json("inspect", container_id)