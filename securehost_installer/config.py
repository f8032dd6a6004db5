from __future__ import annotations

import copy
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

from .model import GIB, EncryptedVolumeSpec

DEFAULT_CONFIG_PATH = "/etc/securehost/config.yaml"

GPU_MODES = ("auto", "cpu", "nvidia", "amd")

DEFAULT_BASE_PACKAGES = [
    "parted",
    "cryptsetup",
    "curl",
    "git",
    "docker.io",
    "docker-compose",
    "unzip",
    "containerd",
    "runc",
    "pigz",
    "unattended-upgrades",
]


@dataclass(frozen=True)
class ProvisionConfig:
    raw: Dict[str, Any]

    def _section(self, name: str) -> Dict[str, Any]:
        return self.raw.get(name) or {}

    # volume
    @property
    def backing_path(self) -> str:
        return str(self._section("volume").get("backing_path") or "/var/lib/securehost/container.img")

    @property
    def container_size_gb(self) -> Optional[int]:
        size = self._section("volume").get("size_gb")
        return int(size) if size is not None else None

    @property
    def key_path(self) -> str:
        return str(self._section("volume").get("key_path") or "/root/.securekey")

    @property
    def mapper_name(self) -> str:
        return str(self._section("volume").get("mapper_name") or "securedata")

    @property
    def mount_path(self) -> str:
        return str(self._section("volume").get("mount_path") or "/securedata")

    @property
    def filesystem_type(self) -> str:
        return str(self._section("volume").get("filesystem") or "ext4")

    # hardware
    @property
    def gpu_mode(self) -> str:
        return str(self.raw.get("gpu_mode") or "auto")

    # packages
    @property
    def base_packages(self) -> List[str]:
        pkgs = self._section("packages").get("base")
        return list(pkgs) if pkgs else list(DEFAULT_BASE_PACKAGES)

    @property
    def upgrade_system(self) -> bool:
        return bool(self._section("packages").get("upgrade", True))

    @property
    def unattended_upgrades(self) -> bool:
        return bool(self._section("packages").get("unattended_upgrades", True))

    # docker
    @property
    def docker_data_subdir(self) -> str:
        return str(self._section("docker").get("data_subdir") or "docker")

    @property
    def docker_bin(self) -> str:
        return str(self._section("docker").get("binary") or "/usr/bin/docker")

    # ollama
    @property
    def ollama_bin(self) -> str:
        return str(self._section("ollama").get("binary") or "/usr/local/bin/ollama")

    @property
    def ollama_install_url(self) -> str:
        return str(self._section("ollama").get("install_url") or "https://ollama.com/install.sh")

    @property
    def ollama_port(self) -> int:
        return int(self._section("ollama").get("port") or 11434)

    @property
    def ollama_models_on_volume(self) -> bool:
        return bool(self._section("ollama").get("models_on_volume", True))

    # open webui
    @property
    def webui_image(self) -> str:
        return str(self._section("webui").get("image") or "ghcr.io/open-webui/open-webui:main")

    @property
    def webui_container_name(self) -> str:
        return str(self._section("webui").get("container_name") or "open-webui")

    @property
    def webui_port(self) -> int:
        return int(self._section("webui").get("port") or 3000)

    @property
    def webui_data_subdir(self) -> str:
        return str(self._section("webui").get("data_subdir") or "open-webui")

    # host paths
    def _path(self, key: str, default: str) -> str:
        return str(self._section("paths").get(key) or default)

    @property
    def unit_dir(self) -> str:
        return self._path("unit_dir", "/etc/systemd/system")

    @property
    def docker_daemon_json(self) -> str:
        return self._path("docker_daemon_json", "/etc/docker/daemon.json")

    @property
    def apt_auto_upgrades(self) -> str:
        return self._path("apt_auto_upgrades", "/etc/apt/apt.conf.d/20auto-upgrades")

    @property
    def nvidia_keyring(self) -> str:
        return self._path("nvidia_keyring", "/usr/share/keyrings/nvidia-container-toolkit-keyring.gpg")

    @property
    def nvidia_sources_list(self) -> str:
        return self._path("nvidia_sources_list", "/etc/apt/sources.list.d/nvidia-container-toolkit.list")

    @property
    def os_release(self) -> str:
        return self._path("os_release", "/etc/os-release")

    @property
    def drm_root(self) -> str:
        return self._path("drm_root", "/sys/class/drm")

    @property
    def lock_path(self) -> str:
        return self._path("lock", "/run/securehost-installer.lock")

    def volume_spec(self) -> EncryptedVolumeSpec:
        size_gb = self.container_size_gb
        return EncryptedVolumeSpec(
            backing_path=self.backing_path,
            size_bytes=size_gb * GIB if size_gb is not None else None,
            key_path=self.key_path,
            mapper_name=self.mapper_name,
            mount_path=self.mount_path,
            filesystem_type=self.filesystem_type,
        )

    def with_overrides(self, **overrides: Any) -> "ProvisionConfig":
        """Return a copy with CLI overrides applied; None values are ignored."""

        raw = copy.deepcopy(self.raw)
        if overrides.get("container_size_gb") is not None:
            raw.setdefault("volume", {})["size_gb"] = int(overrides["container_size_gb"])
        if overrides.get("gpu_mode") is not None:
            raw["gpu_mode"] = overrides["gpu_mode"]
        return ProvisionConfig(raw=raw)


def validate_config(cfg: ProvisionConfig) -> None:
    if cfg.gpu_mode not in GPU_MODES:
        raise ValueError(f"gpu_mode must be one of {', '.join(GPU_MODES)}, got: {cfg.gpu_mode}")
    size = cfg.container_size_gb
    if size is not None and size <= 0:
        raise ValueError(f"volume.size_gb must be a positive integer, got: {size}")
    if not cfg.mapper_name.replace("-", "").replace("_", "").isalnum():
        raise ValueError(f"volume.mapper_name is not a valid device-mapper name: {cfg.mapper_name}")


def load_config(path: Optional[str]) -> ProvisionConfig:
    """Load the YAML config file; a missing default file means all defaults."""

    if not path:
        return ProvisionConfig(raw={})

    p = Path(path)
    if not p.exists():
        if path == DEFAULT_CONFIG_PATH:
            return ProvisionConfig(raw={})
        raise FileNotFoundError(path)

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ValueError("config must be YAML")

    try:
        import yaml  # type: ignore
    except Exception as e:
        raise RuntimeError("PyYAML is required to read the installer config") from e

    try:
        raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ValueError(f"{path} is not valid YAML: {e}") from e
    if not isinstance(raw, dict):
        raise ValueError(f"{path} must contain a mapping/object")

    return ProvisionConfig(raw=raw)
