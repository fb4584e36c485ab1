import io
import json
import sys
import threading
import zipfile
from pathlib import Path

import pytest

from coredump_composer.composer import ComposerExit, handle, main, run_with_timeout
from coredump_composer.config import CoreConfig
from coredump_composer.crio import Cli, CrictlError, ImageCommand

ENV_NAMES = [
    "POD_SELECTOR_LABEL",
    "LOG_LEVEL",
    "IGNORE_CRIO",
    "INCLUDE_PROC_INFO",
    "OVERRIDE_PROC_FOLDER_PATH",
    "LOG_LENGTH",
    "CRIO_IMAGE_CMD",
    "USE_CRIO_CONF",
    "COMPRESSION",
    "TIMEOUT",
    "CORE_EVENTS",
    "FILENAME_TEMPLATE",
    "EVENT_DIRECTORY",
]

CORE_BYTES = bytes(range(256)) * 64

POD = {
    "id": "51cd8bdaa13a65518e790d307359d33f9288fc82664879c609029b1a83862db6",
    "metadata": {
        "name": "crashing-app-699c49b4ff-86wrh",
        "uid": "0c65ce05-bd3a-4db2-ad79-131186dc2086",
        "namespace": "default",
        "attempt": 0,
    },
    "state": "SANDBOX_READY",
    "labels": {
        "app": "crashing-app",
        "info.coredump.owner": "no9",
        "pod-template-hash": "848dc79df4",
    },
}

NODE_DIGEST = (
    "docker.io/number9/example-crashing-nodejs-app@sha256:"
    "b8fea40ed9da77307702608d1602a812c5983e0ec0b788fc6298985a40be3800"
)
IMAGE = {
    "id": "sha256:3b8adc6c30f4e7e4afb57daef9d1c8af783a4a647a4670780e9df085c0525efa",
    "repoTags": ["docker.io/number9/example-crashing-nodejs-app:latest"],
    "repoDigests": [NODE_DIGEST],
    "size": "338054458",
    "uid": None,
    "username": "node",
}

SEGFAULT_DIGEST = (
    "quay.io/icdh/segfaulter@sha256:"
    "0630afbcfebb45059794b9a9f160f57f50062d28351c49bb568a3f7e206855bd"
)
SEGFAULT_IMAGE = {
    "id": "sha256:" + "ab" * 32,
    "repoTags": ["quay.io/icdh/segfaulter:latest"],
    "repoDigests": [SEGFAULT_DIGEST],
    "size": "10229047",
}


class FakeCli:
    def __init__(self, pod=POD, pod_error=False, ps_error=False, pod_gate=None):
        self.pod_object = pod
        self.pod_error = pod_error
        self.ps_error = ps_error
        self.pod_gate = pod_gate

    def pod(self, hostname):
        if self.pod_gate is not None:
            self.pod_gate.wait(5)
        if self.pod_error:
            raise CrictlError("no pod")
        return self.pod_object

    def inspect_pod(self, pod_id):
        return {"status": {"id": pod_id}}

    def pod_containers(self, pod_id):
        if self.ps_error:
            raise CrictlError("ps failed")
        return {"containers": [{"id": "container-1", "imageRef": IMAGE["id"]}]}

    def tail_logs(self, container_id, lines):
        return "A LOG\n"

    def image(self, image_ref):
        if image_ref != IMAGE["id"]:
            raise CrictlError("unknown image")
        return IMAGE

    def inspect_container(self, container_id):
        return {"info": {"pid": 4}}


def make_config(tmp_path, monkeypatch, env=None):
    for name in ENV_NAMES:
        monkeypatch.delenv(name, raising=False)
    for name, value in (env or {}).items():
        monkeypatch.setenv(name, value)
    output = tmp_path / "output"
    output.mkdir(exist_ok=True)
    base = tmp_path / "base"
    base.mkdir(exist_ok=True)
    argv = [
        "-c", "1000000000",
        "-e", "node",
        "-p", "4",
        "-s", "10",
        "-E", "!target!debug!core-dump-composer",
        "-d", str(output),
        "-t", "1588462466",
        "-h", "crashing-app-699c49b4ff-86wrh",
    ]
    return CoreConfig.from_environment(argv, base_path=base)


def entry(names, suffix):
    matches = [name for name in names if name.endswith(suffix)]
    assert len(matches) == 1, (suffix, names)
    return matches[0]


def check_dump_info(archive):
    info = json.loads(archive.read(entry(archive.namelist(), "dump-info.json")))
    assert info["hostname"] == "crashing-app-699c49b4ff-86wrh"
    assert info["exe"] == "node"
    assert info["real_pid"] == "4"
    assert info["signal"] == "10"
    assert "4-10.core" in info["dump_file"]
    assert "!target!debug!core-dump-composer" in info["path"]


def check_image_info(archive):
    image = json.loads(archive.read(entry(archive.namelist(), "image-info.json")))
    assert image["repoDigests"][0] == NODE_DIGEST
    assert image["size"] == "338054458"
    assert image["repoTags"][0] == "docker.io/number9/example-crashing-nodejs-app:latest"


def test_default_scenario(tmp_path, monkeypatch):
    config = make_config(tmp_path, monkeypatch)
    handle(config, io.BytesIO(CORE_BYTES), FakeCli())
    with zipfile.ZipFile(config.zip_full_path()) as archive:
        names = archive.namelist()
        assert len(names) == 7
        check_dump_info(archive)
        check_image_info(archive)
        assert archive.read(entry(names, ".log")) == b"A LOG\n"
        assert archive.read(entry(names, ".core")) == CORE_BYTES
        for suffix in ("pod-info.json", "runtime-info.json", "ps-info.json"):
            entry(names, suffix)
        pod = json.loads(archive.read(entry(names, "pod-info.json")))
        assert pod == POD


def test_gather_proc_files_scenario(tmp_path, monkeypatch):
    proc = tmp_path / "proc"
    pid_dir = proc / "4"
    pid_dir.mkdir(parents=True)
    for name in ("auxv", "cmdline", "environ", "maps", "status"):
        (pid_dir / name).write_text(f"{name} file\n")
    config = make_config(
        tmp_path,
        monkeypatch,
        {"INCLUDE_PROC_INFO": "true", "OVERRIDE_PROC_FOLDER_PATH": str(proc), "LOG_LEVEL": "Debug"},
    )
    handle(config, io.BytesIO(CORE_BYTES), FakeCli())
    with zipfile.ZipFile(config.zip_full_path()) as archive:
        names = archive.namelist()
        assert len(names) == 12
        check_dump_info(archive)
        check_image_info(archive)
        assert archive.read(entry(names, ".core")) == CORE_BYTES
        proc_entries = [name for name in names if "-0-proc/" in name]
        assert len(proc_entries) == 5
        for name in ("auxv", "cmdline", "environ", "maps", "status"):
            assert archive.read(entry(names, f"-0-proc/{name}")) == f"{name} file\n".encode()


def test_missing_proc_files_are_skipped(tmp_path, monkeypatch):
    config = make_config(
        tmp_path,
        monkeypatch,
        {"INCLUDE_PROC_INFO": "true", "OVERRIDE_PROC_FOLDER_PATH": str(tmp_path / "noproc")},
    )
    handle(config, io.BytesIO(CORE_BYTES), FakeCli())
    with zipfile.ZipFile(config.zip_full_path()) as archive:
        assert len(archive.namelist()) == 7


def write_crictl_stub(directory):
    container = {"id": "container-1", "imageRef": SEGFAULT_IMAGE["id"]}
    script = directory / "crictl"
    script.write_text(
        f"#!{sys.executable}\n"
        "import json\n"
        "import sys\n"
        f"POD = {POD!r}\n"
        f"IMAGE = {SEGFAULT_IMAGE!r}\n"
        f"CONTAINER = {container!r}\n"
        "command = sys.argv[1]\n"
        "if command == 'pods':\n"
        "    print(json.dumps({'items': [POD]}))\n"
        "elif command == 'inspectp':\n"
        "    print('{}')\n"
        "elif command == 'ps':\n"
        "    print(json.dumps({'containers': [CONTAINER]}))\n"
        "elif command == 'logs':\n"
        "    sys.stdout.write('A LOG\\n')\n"
        "elif command == 'images':\n"
        "    print(json.dumps({'images': [IMAGE]}))\n"
        "else:\n"
        "    sys.exit(1)\n"
    )
    script.chmod(0o755)


def test_image_command_scenario(tmp_path, monkeypatch):
    config = make_config(tmp_path, monkeypatch, {"CRIO_IMAGE_CMD": "images"})
    assert config.image_command is ImageCommand.IMAGES
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    write_crictl_stub(bin_dir)
    cli = Cli(bin_path=str(bin_dir), image_command=config.image_command)
    handle(config, io.BytesIO(CORE_BYTES), cli)
    with zipfile.ZipFile(config.zip_full_path()) as archive:
        names = archive.namelist()
        assert len(names) == 7
        check_dump_info(archive)
        image = json.loads(archive.read(entry(names, "image-info.json")))
        assert image["repoDigests"][0] == SEGFAULT_DIGEST
        assert image["size"] == "10229047"
        assert image["repoTags"][0] == "quay.io/icdh/segfaulter:latest"
        assert archive.read(entry(names, ".log")) == b"A LOG\n"
        assert archive.read(entry(names, ".core")) == CORE_BYTES


def test_namespaced_files_scenario(tmp_path, monkeypatch):
    config = make_config(tmp_path, monkeypatch, {"FILENAME_TEMPLATE": "{namespace}"})
    handle(config, io.BytesIO(CORE_BYTES), FakeCli())
    zip_path = Path(config.zip_full_path())
    assert zip_path.name == "default.zip"
    with zipfile.ZipFile(zip_path) as archive:
        assert sorted(archive.namelist()) == sorted([
            "default-dump-info.json",
            "default.core",
            "default-pod-info.json",
            "default-runtime-info.json",
            "default-ps-info.json",
            "default-0.log",
            "default-0-image-info.json",
        ])
        check_dump_info(archive)
        assert archive.read("default-0.log") == b"A LOG\n"
        assert archive.read("default.core") == CORE_BYTES


def test_namespace_is_unknown_without_metadata(tmp_path, monkeypatch):
    config = make_config(tmp_path, monkeypatch, {"FILENAME_TEMPLATE": "{namespace}"})
    pod = {"id": POD["id"], "labels": {}}
    handle(config, io.BytesIO(CORE_BYTES), FakeCli(pod=pod))
    assert config.params.namespace == "unknown"
    assert config.params.podname == "unknown"
    assert (tmp_path / "output" / "unknown.zip").is_file()


def test_timeout_scenario(tmp_path, monkeypatch):
    config = make_config(tmp_path, monkeypatch, {"TIMEOUT": "1"})
    gate = threading.Event()
    try:
        with pytest.raises(ComposerExit) as caught:
            run_with_timeout(config, io.BytesIO(CORE_BYTES), FakeCli(pod_gate=gate))
    finally:
        gate.set()
    assert caught.value.code == 32


def test_run_with_timeout_completes(tmp_path, monkeypatch):
    config = make_config(tmp_path, monkeypatch)
    run_with_timeout(config, io.BytesIO(CORE_BYTES), FakeCli())
    with zipfile.ZipFile(config.zip_full_path()) as archive:
        assert len(archive.namelist()) == 7


def test_run_with_timeout_passes_exit_codes_on(tmp_path, monkeypatch):
    config = make_config(tmp_path, monkeypatch)
    with pytest.raises(ComposerExit) as caught:
        run_with_timeout(config, io.BytesIO(CORE_BYTES), FakeCli(ps_error=True))
    assert caught.value.code == 1


def test_without_crio_scenario(tmp_path, monkeypatch):
    config = make_config(tmp_path, monkeypatch, {"IGNORE_CRIO": "true"})
    handle(config, io.BytesIO(CORE_BYTES), FakeCli())
    with zipfile.ZipFile(config.zip_full_path()) as archive:
        names = archive.namelist()
        assert len(names) == 2
        check_dump_info(archive)
        assert archive.read(entry(names, ".core")) == CORE_BYTES


@pytest.mark.parametrize(
    ("value", "method"),
    [("true", zipfile.ZIP_DEFLATED), ("false", zipfile.ZIP_STORED)],
)
def test_entries_are_read_only_with_chosen_compression(tmp_path, monkeypatch, value, method):
    config = make_config(tmp_path, monkeypatch, {"COMPRESSION": value})
    handle(config, io.BytesIO(CORE_BYTES), FakeCli())
    with zipfile.ZipFile(config.zip_full_path()) as archive:
        infos = archive.infolist()
        assert {info.compress_type for info in infos} == {method}
        assert {(info.external_attr >> 16) & 0o777 for info in infos} == {0o444}


def test_pod_selector_skips_unmatched_pod(tmp_path, monkeypatch):
    config = make_config(tmp_path, monkeypatch, {"POD_SELECTOR_LABEL": "info.coredump.repo"})
    handle(config, io.BytesIO(CORE_BYTES), FakeCli())
    assert list((tmp_path / "output").iterdir()) == []


def test_pod_selector_keeps_matching_pod(tmp_path, monkeypatch):
    config = make_config(tmp_path, monkeypatch, {"POD_SELECTOR_LABEL": "info.coredump.owner"})
    handle(config, io.BytesIO(CORE_BYTES), FakeCli())
    with zipfile.ZipFile(config.zip_full_path()) as archive:
        assert len(archive.namelist()) == 7


def test_pod_selector_without_labels_fails(tmp_path, monkeypatch):
    config = make_config(tmp_path, monkeypatch, {"POD_SELECTOR_LABEL": "info.coredump.owner"})
    with pytest.raises(ComposerExit) as caught:
        handle(config, io.BytesIO(CORE_BYTES), FakeCli(pod_error=True))
    assert caught.value.code == 1


def test_missing_pod_id_stops_after_pod_info(tmp_path, monkeypatch):
    config = make_config(tmp_path, monkeypatch)
    with pytest.raises(ComposerExit) as caught:
        handle(config, io.BytesIO(CORE_BYTES), FakeCli(pod_error=True))
    assert caught.value.code == 1
    with zipfile.ZipFile(config.zip_full_path()) as archive:
        names = archive.namelist()
        assert len(names) == 3
        assert archive.read(entry(names, "pod-info.json")) == b"{}"
        assert archive.read(entry(names, ".core")) == CORE_BYTES


def test_container_listing_failure_exits(tmp_path, monkeypatch):
    config = make_config(tmp_path, monkeypatch)
    with pytest.raises(ComposerExit) as caught:
        handle(config, io.BytesIO(CORE_BYTES), FakeCli(ps_error=True))
    assert caught.value.code == 1
    with zipfile.ZipFile(config.zip_full_path()) as archive:
        assert len(archive.namelist()) == 4


def test_core_event_is_written_with_runtime_details(tmp_path, monkeypatch):
    events = tmp_path / "events"
    events.mkdir()
    config = make_config(
        tmp_path, monkeypatch, {"CORE_EVENTS": "true", "EVENT_DIRECTORY": str(events)}
    )
    handle(config, io.BytesIO(CORE_BYTES), FakeCli())
    event = json.loads((events / f"{config.params.uuid}-event.json").read_text())
    assert event["image_list"] == [NODE_DIGEST]
    assert event["labels"] == {"info.coredump.owner": "no9"}
    assert event["key"] == Path(config.zip_full_path()).name
    assert event["namespace"] == "default"
    assert event["exe_name"] == "node"


def test_core_event_without_crio(tmp_path, monkeypatch):
    events = tmp_path / "events"
    events.mkdir()
    config = make_config(
        tmp_path,
        monkeypatch,
        {"CORE_EVENTS": "true", "EVENT_DIRECTORY": str(events), "IGNORE_CRIO": "true"},
    )
    handle(config, io.BytesIO(CORE_BYTES), FakeCli())
    event = json.loads((events / f"{config.params.uuid}-event.json").read_text())
    assert event["image_list"] == []
    assert event["labels"] == {}
    assert event["pid"] == "4"


def test_log_file_is_created_in_base_path(tmp_path, monkeypatch):
    config = make_config(tmp_path, monkeypatch, {"LOG_LEVEL": "debug"})
    handle(config, io.BytesIO(CORE_BYTES), FakeCli())
    log_text = (tmp_path / "base" / "composer.log").read_text()
    assert "Creating dump for" in log_text


def test_main_rejects_unknown_arguments(capsys):
    assert main(["--no-such-option"]) == 1
    assert "Error" in capsys.readouterr().err