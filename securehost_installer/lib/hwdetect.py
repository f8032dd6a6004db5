from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Any, Dict, Optional

from ..errors import ProbeError
from ..model import GpuVendor
from .command import Runner, run_cmd

logger = logging.getLogger(__name__)

_GPU_VENDOR_MAP = {
    "0x10de": GpuVendor.NVIDIA,
    "0x1002": GpuVendor.AMD,
}

# lspci -nn prints "[vendor:device]" after the class name.
_LSPCI_ID = re.compile(r"\[([0-9a-f]{4}):[0-9a-f]{4}\]", re.IGNORECASE)

_DISPLAY_CLASSES = ("vga", "3d", "display")


def _read_text(path: Path) -> Optional[str]:
    try:
        txt = path.read_text(encoding="utf-8", errors="ignore").strip()
        return txt or None
    except OSError:
        return None


def _vendor_from_drm(drm_root: Path) -> Dict[str, Any]:
    found: Dict[str, Any] = {"cards": [], "vendor_ids": []}
    if not drm_root.exists():
        return found
    for card in sorted(p for p in drm_root.glob("card[0-9]*") if p.is_dir()):
        found["cards"].append(card.name)
        vendor_id = _read_text(card / "device" / "vendor")
        if vendor_id:
            found["vendor_ids"].append(vendor_id.lower())
    return found


def _vendor_ids_from_lspci(runner: Runner) -> list[str]:
    r = runner(["lspci", "-nn"], check=False)
    if r.returncode != 0:
        raise ProbeError(f"lspci unavailable (exit {r.returncode})")
    ids = []
    for line in r.stdout.splitlines():
        if not any(c in line.lower() for c in _DISPLAY_CLASSES):
            continue
        m = _LSPCI_ID.search(line)
        if m:
            ids.append("0x" + m.group(1).lower())
    return ids


def _pick_vendor(vendor_ids: list[str]) -> GpuVendor:
    vendors = {_GPU_VENDOR_MAP.get(v) for v in vendor_ids} - {None}
    # An NVIDIA card wins over an AMD iGPU on hybrid laptops.
    if GpuVendor.NVIDIA in vendors:
        return GpuVendor.NVIDIA
    if GpuVendor.AMD in vendors:
        return GpuVendor.AMD
    return GpuVendor.NONE


def detect_gpu_vendor(*, drm_root: str = "/sys/class/drm", runner: Runner = run_cmd) -> GpuVendor:
    """Best-effort GPU vendor detection.

    /sys/class/drm is preferred; lspci enriches it when drm exposes nothing
    useful (no driver bound yet on a fresh host). Never raises.
    """

    drm = _vendor_from_drm(Path(drm_root))
    vendor_ids = list(drm["vendor_ids"])

    if _pick_vendor(vendor_ids) is GpuVendor.NONE:
        try:
            vendor_ids += _vendor_ids_from_lspci(runner)
        except ProbeError as e:
            logger.warning("GPU probe degraded: %s", e)

    vendor = _pick_vendor(vendor_ids)
    logger.info("GPU: vendor=%s cards=%s ids=%s", vendor.value, drm["cards"], vendor_ids)
    return vendor


def resolve_gpu_vendor(gpu_mode: str, *, drm_root: str = "/sys/class/drm", runner: Runner = run_cmd) -> GpuVendor:
    if gpu_mode == "auto":
        return detect_gpu_vendor(drm_root=drm_root, runner=runner)
    vendor = {"cpu": GpuVendor.NONE, "nvidia": GpuVendor.NVIDIA, "amd": GpuVendor.AMD}[gpu_mode]
    logger.info("GPU: vendor=%s (forced by gpu_mode=%s)", vendor.value, gpu_mode)
    return vendor
