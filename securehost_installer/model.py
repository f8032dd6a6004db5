from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

GIB = 1024 ** 3


class GpuVendor(str, enum.Enum):
    NONE = "none"
    NVIDIA = "nvidia"
    AMD = "amd"


@dataclass(frozen=True)
class SystemState:
    """Snapshot of the host as seen by the prober at one point in a run."""

    gpu_vendor: GpuVendor = GpuVendor.NONE
    volume_exists: bool = False
    volume_formatted: bool = False
    volume_open: bool = False
    volume_mounted: bool = False
    key_present: bool = False
    backing_size: Optional[int] = None
    packages_ready: bool = False
    runtime_configured: bool = False
    services_registered: FrozenSet[str] = frozenset()
    services_active: FrozenSet[str] = frozenset()
    probe_errors: Tuple[str, ...] = ()

    @property
    def volume_ready(self) -> bool:
        return self.key_present and self.volume_formatted and self.volume_open and self.volume_mounted

    def to_dict(self) -> Dict[str, Any]:
        return {
            "gpu_vendor": self.gpu_vendor.value,
            "volume_exists": self.volume_exists,
            "volume_formatted": self.volume_formatted,
            "volume_open": self.volume_open,
            "volume_mounted": self.volume_mounted,
            "key_present": self.key_present,
            "backing_size": self.backing_size,
            "packages_ready": self.packages_ready,
            "runtime_configured": self.runtime_configured,
            "services_registered": sorted(self.services_registered),
            "services_active": sorted(self.services_active),
            "probe_errors": list(self.probe_errors),
        }


@dataclass(frozen=True)
class EncryptedVolumeSpec:
    backing_path: str
    size_bytes: Optional[int]
    key_path: str
    mapper_name: str
    mount_path: str
    filesystem_type: str = "ext4"

    @property
    def mapper_device(self) -> str:
        return f"/dev/mapper/{self.mapper_name}"


@dataclass(frozen=True)
class ContainerSpec:
    name: str
    image: str
    network: Optional[str] = None
    ports: Tuple[str, ...] = ()
    volumes: Tuple[str, ...] = ()
    environment: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ServiceSpec:
    name: str
    exec_command: Tuple[str, ...]
    environment: Mapping[str, str] = field(default_factory=dict)
    restart_policy: str = "always"
    dependencies: FrozenSet[str] = frozenset()
    kind: str = "unit"  # runtime|unit|container
    description: str = ""
    unit_name: str = ""
    uses_mount: bool = False
    gpu_aware: bool = False
    data_dirs: Tuple[str, ...] = ()
    container: Optional[ContainerSpec] = None

    @property
    def unit(self) -> str:
        return self.unit_name or f"{self.name}.service"
