from __future__ import annotations

import logging
from pathlib import Path
from typing import Callable, List, Optional, TypeVar

from ..config import ProvisionConfig
from ..errors import ProbeError
from ..model import GpuVendor, SystemState
from . import docker, pkg, systemd, volume
from .command import Runner, run_cmd
from .hwdetect import resolve_gpu_vendor

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Units whose persisted definitions the installer owns.
MANAGED_UNITS = {"ollama": "ollama.service", "open-webui": "open-webui.service"}


def required_packages(cfg: ProvisionConfig, vendor: GpuVendor) -> List[str]:
    packages = list(cfg.base_packages)
    if vendor is GpuVendor.NVIDIA:
        packages += [p for p in pkg.NVIDIA_PACKAGES if p not in packages]
    return packages


def packages_ready(cfg: ProvisionConfig, vendor: GpuVendor, *, runner: Runner = run_cmd) -> bool:
    if pkg.missing_packages(required_packages(cfg, vendor), runner=runner):
        return False
    if not Path(cfg.ollama_bin).exists():
        return False
    if cfg.unattended_upgrades and not pkg.auto_upgrades_configured(cfg.apt_auto_upgrades):
        return False
    return True


def _safe(what: str, fn: Callable[[], T], default: T, errors: List[str]) -> T:
    try:
        return fn()
    except Exception as e:
        msg = f"{what}: {e}"
        logger.warning("Probe degraded (%s)", ProbeError(msg))
        errors.append(msg)
        return default


def probe(
    cfg: ProvisionConfig,
    *,
    runner: Runner = run_cmd,
    gpu_vendor: Optional[GpuVendor] = None,
) -> SystemState:
    """Read-only snapshot of the host. Never raises."""

    spec = cfg.volume_spec()
    errors: List[str] = []

    if gpu_vendor is None:
        gpu_vendor = _safe(
            "gpu",
            lambda: resolve_gpu_vendor(cfg.gpu_mode, drm_root=cfg.drm_root, runner=runner),
            GpuVendor.NONE,
            errors,
        )

    backing = Path(spec.backing_path)
    volume_exists = backing.exists()
    backing_size = _safe("backing size", lambda: backing.stat().st_size, None, errors) if volume_exists else None
    formatted = _safe("isLuks", lambda: volume.is_luks(spec.backing_path, runner=runner), False, errors)
    is_open = _safe("mapping", lambda: volume.is_open(spec.mapper_name, runner=runner), False, errors)
    source = _safe("mount", lambda: volume.mount_source(spec.mount_path, runner=runner), None, errors)

    ready = _safe("packages", lambda: packages_ready(cfg, gpu_vendor, runner=runner), False, errors)

    data_root = f"{cfg.mount_path.rstrip('/')}/{cfg.docker_data_subdir}"
    runtime = _safe(
        "docker",
        lambda: docker.data_root_configured(cfg.docker_daemon_json, data_root)
        and systemd.is_active("docker.service", runner=runner),
        False,
        errors,
    )

    registered = set()
    active = set()
    for name, unit in MANAGED_UNITS.items():
        unit_file = Path(cfg.unit_dir) / unit
        if unit_file.exists() and _safe(unit, lambda: systemd.is_enabled(unit, runner=runner), False, errors):
            registered.add(name)
        if _safe(unit, lambda: systemd.is_active(unit, runner=runner), False, errors):
            active.add(name)

    state = SystemState(
        gpu_vendor=gpu_vendor,
        volume_exists=volume_exists,
        volume_formatted=formatted,
        volume_open=is_open,
        volume_mounted=source == spec.mapper_device,
        key_present=Path(spec.key_path).exists(),
        backing_size=backing_size,
        packages_ready=ready,
        runtime_configured=runtime,
        services_registered=frozenset(registered),
        services_active=frozenset(active),
        probe_errors=tuple(errors),
    )
    logger.info("Probed: %s", state.to_dict())
    return state
