from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Set

import pytest

from securehost_installer.config import ProvisionConfig
from securehost_installer.errors import ExternalToolError
from securehost_installer.lib.command import CmdResult

LUKS_MAGIC = b"LUKS\xba\xbe"


class FakeHost:
    """In-memory stand-in for the tools the installer drives.

    Files the installer writes itself (backing file, key, units, daemon.json)
    are real files under tmp_path; kernel and package state lives here.
    """

    def __init__(self, *, ollama_bin: str) -> None:
        self.ollama_bin = ollama_bin
        self.calls: List[List[str]] = []
        self.dry_calls: List[List[str]] = []
        self.luks_keys: Dict[str, bytes] = {}
        self.open_maps: Dict[str, str] = {}
        self.filesystems: Dict[str, str] = {}
        self.mounts: Dict[str, str] = {}
        self.installed: Set[str] = set()
        self.enabled: Set[str] = set()
        self.active: Set[str] = set()
        self.containers: Set[str] = set()
        self.lspci = ""
        self.fail: Dict[str, CmdResult] = {}

    def __call__(
        self,
        argv: Sequence[str],
        *,
        check: bool = True,
        env=None,
        cwd=None,
        input_text: Optional[str] = None,
        dry_run: bool = False,
    ) -> CmdResult:
        argv = list(argv)
        if dry_run:
            self.dry_calls.append(argv)
            return CmdResult(argv=argv, returncode=0, stdout="", stderr="")
        self.calls.append(argv)
        rc, out, err = self._dispatch(argv)
        if check and rc != 0:
            raise ExternalToolError(argv, rc, stdout=out, stderr=err)
        return CmdResult(argv=argv, returncode=rc, stdout=out, stderr=err)

    def ran(self, *prefix: str) -> List[List[str]]:
        return [c for c in self.calls if c[: len(prefix)] == list(prefix)]

    def _dispatch(self, argv: List[str]):
        tool = os.path.basename(argv[0])
        if tool in self.fail:
            r = self.fail[tool]
            return r.returncode, r.stdout, r.stderr
        handler = getattr(self, "_" + tool.replace("-", "_").replace(".", "_"), None)
        if handler is None:
            return 127, "", f"{tool}: not found"
        return handler(argv)

    # cryptsetup
    def _cryptsetup(self, argv: List[str]):
        action = argv[1]
        if action == "isLuks":
            with open(argv[2], "rb") as f:
                return (0 if f.read(len(LUKS_MAGIC)) == LUKS_MAGIC else 1), "", ""
        if action == "luksFormat":
            key = Path(argv[argv.index("--key-file") + 1]).read_bytes()
            backing = argv[-1]
            with open(backing, "r+b") as f:
                f.write(LUKS_MAGIC)
            self.luks_keys[backing] = key
            return 0, "", ""
        if action == "status":
            return (0 if argv[2] in self.open_maps else 4), "", ""
        if action == "open":
            key = Path(argv[argv.index("--key-file") + 1]).read_bytes()
            backing, name = argv[-2], argv[-1]
            if backing not in self.luks_keys:
                return 1, "", "Device is not a valid LUKS device."
            if self.luks_keys[backing] != key:
                return 2, "", "No key available with this passphrase."
            if name in self.open_maps:
                return 5, "", f"Device {name} already exists."
            self.open_maps[name] = backing
            return 0, "", ""
        return 1, "", f"unsupported cryptsetup action {action}"

    def _blkid(self, argv: List[str]):
        dev = argv[-1]
        if Path(dev).name in self.open_maps and dev in self.filesystems:
            return 0, self.filesystems[dev] + "\n", ""
        return 2, "", ""

    def _mkfs_ext4(self, argv: List[str]):
        dev = argv[-1]
        if Path(dev).name not in self.open_maps:
            return 1, "", f"{dev}: No such file or directory"
        self.filesystems[dev] = "ext4"
        return 0, "", ""

    def _findmnt(self, argv: List[str]):
        path = argv[-1]
        if path in self.mounts:
            return 0, self.mounts[path] + "\n", ""
        return 1, "", ""

    def _mount(self, argv: List[str]):
        dev, path = argv[1], argv[2]
        if path in self.mounts:
            return 32, "", f"{path}: already mounted"
        self.mounts[path] = dev
        return 0, "", ""

    # packages
    def _dpkg_query(self, argv: List[str]):
        if argv[-1] in self.installed:
            return 0, "install ok installed", ""
        return 1, "", f"dpkg-query: no packages found matching {argv[-1]}"

    def _apt_get(self, argv: List[str]):
        if "install" in argv:
            self.installed.update(a for a in argv[argv.index("install") + 1 :] if not a.startswith("-"))
        return 0, "", ""

    def _curl(self, argv: List[str]):
        return 0, "#!/bin/sh\necho installing\n", ""

    def _sh(self, argv: List[str]):
        Path(self.ollama_bin).parent.mkdir(parents=True, exist_ok=True)
        Path(self.ollama_bin).write_text("#!/bin/sh\n", encoding="utf-8")
        return 0, "", ""

    def _gpg(self, argv: List[str]):
        return 0, "", ""

    def _ubuntu_drivers(self, argv: List[str]):
        return 0, "", ""

    def _nvidia_ctk(self, argv: List[str]):
        return 0, "", ""

    def _lspci(self, argv: List[str]):
        return 0, self.lspci, ""

    # services
    def _systemctl(self, argv: List[str]):
        action = argv[1]
        unit = argv[2] if len(argv) > 2 else None
        if action == "daemon-reload":
            return 0, "", ""
        if action == "enable":
            self.enabled.add(unit)
            return 0, "", ""
        if action in ("start", "restart"):
            self.active.add(unit)
            return 0, "", ""
        if action == "stop":
            self.active.discard(unit)
            return 0, "", ""
        if action == "is-active":
            return (0, "active\n", "") if unit in self.active else (3, "inactive\n", "")
        if action == "is-enabled":
            return (0, "enabled\n", "") if unit in self.enabled else (1, "disabled\n", "")
        return 1, "", f"unsupported systemctl action {action}"

    def _docker(self, argv: List[str]):
        if argv[1] == "rm":
            name = argv[-1]
            if name not in self.containers:
                return 1, "", f"Error: No such container: {name}"
            self.containers.discard(name)
            return 0, "", ""
        if argv[1] == "pull":
            return 0, "", ""
        return 1, "", f"unsupported docker command {argv[1]}"


def make_config(tmp_path: Path, *, size_gb: Optional[int] = 1, gpu_mode: str = "cpu", **extra) -> ProvisionConfig:
    raw = {
        "gpu_mode": gpu_mode,
        "volume": {
            "backing_path": str(tmp_path / "var/lib/securehost/container.img"),
            "size_gb": size_gb,
            "key_path": str(tmp_path / "root/.securekey"),
            "mapper_name": "securedata",
            "mount_path": str(tmp_path / "securedata"),
        },
        "ollama": {"binary": str(tmp_path / "usr/local/bin/ollama")},
        "paths": {
            "unit_dir": str(tmp_path / "etc/systemd/system"),
            "docker_daemon_json": str(tmp_path / "etc/docker/daemon.json"),
            "apt_auto_upgrades": str(tmp_path / "etc/apt/apt.conf.d/20auto-upgrades"),
            "nvidia_keyring": str(tmp_path / "usr/share/keyrings/nvidia.gpg"),
            "nvidia_sources_list": str(tmp_path / "etc/apt/sources.list.d/nvidia.list"),
            "os_release": str(tmp_path / "etc/os-release"),
            "drm_root": str(tmp_path / "sys/class/drm"),
            "lock": str(tmp_path / "run/securehost-installer.lock"),
        },
    }
    for key, value in extra.items():
        raw[key] = value
    return ProvisionConfig(raw=raw)


@pytest.fixture
def cfg(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def host(cfg):
    return FakeHost(ollama_bin=cfg.ollama_bin)


@pytest.fixture
def sparse_alloc(monkeypatch):
    """Make backing-file creation sparse so GiB-sized tests stay cheap."""

    from securehost_installer.lib import volume

    monkeypatch.setattr(volume, "_allocate", lambda fd, size: os.ftruncate(fd, size))
