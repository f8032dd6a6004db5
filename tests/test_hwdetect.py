from __future__ import annotations

from securehost_installer.lib.hwdetect import detect_gpu_vendor, resolve_gpu_vendor
from securehost_installer.model import GpuVendor

LSPCI_NVIDIA = """\
00:02.0 VGA compatible controller [0300]: Intel Corporation UHD Graphics 630 [8086:3e92]
01:00.0 3D controller [0302]: NVIDIA Corporation TU117M [10de:1f99] (rev a1)
01:00.1 Audio device [0403]: NVIDIA Corporation Device [10de:10fa]
"""


def _card(drm_root, name, vendor_id):
    dev = drm_root / name / "device"
    dev.mkdir(parents=True)
    (dev / "vendor").write_text(vendor_id + "\n", encoding="utf-8")


def test_drm_vendor_ids(tmp_path, host):
    _card(tmp_path, "card0", "0x8086")
    _card(tmp_path, "card1", "0x10de")

    assert detect_gpu_vendor(drm_root=str(tmp_path), runner=host) is GpuVendor.NVIDIA
    assert not host.calls


def test_amd_card(tmp_path, host):
    _card(tmp_path, "card0", "0x1002")
    assert detect_gpu_vendor(drm_root=str(tmp_path), runner=host) is GpuVendor.AMD


def test_lspci_fallback_when_drm_is_empty(tmp_path, host):
    host.lspci = LSPCI_NVIDIA
    assert detect_gpu_vendor(drm_root=str(tmp_path / "missing"), runner=host) is GpuVendor.NVIDIA


def test_no_gpu(tmp_path, host):
    host.lspci = "00:02.0 VGA compatible controller [0300]: Intel Corporation Device [8086:3e92]\n"
    assert detect_gpu_vendor(drm_root=str(tmp_path), runner=host) is GpuVendor.NONE


def test_lspci_missing_degrades_to_none(tmp_path, host):
    from securehost_installer.lib.command import CmdResult

    host.fail["lspci"] = CmdResult(argv=["lspci"], returncode=127, stdout="", stderr="not found")
    assert detect_gpu_vendor(drm_root=str(tmp_path), runner=host) is GpuVendor.NONE


def test_forced_modes_skip_detection(tmp_path, host):
    _card(tmp_path, "card0", "0x10de")
    assert resolve_gpu_vendor("cpu", drm_root=str(tmp_path), runner=host) is GpuVendor.NONE
    assert resolve_gpu_vendor("nvidia", drm_root=str(tmp_path / "x"), runner=host) is GpuVendor.NVIDIA
    assert not host.calls
