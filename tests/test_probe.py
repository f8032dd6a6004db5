from __future__ import annotations

from securehost_installer.errors import ExternalToolError
from securehost_installer.lib.probe import probe
from securehost_installer.model import GpuVendor, SystemState


def test_fresh_host(cfg, host):
    state = probe(cfg, runner=host)

    assert state == SystemState(gpu_vendor=GpuVendor.NONE)
    assert not state.volume_ready


def test_probe_is_read_only(cfg, host):
    probe(cfg, runner=host)

    tools = {c[0] for c in host.calls}
    assert tools <= {"cryptsetup", "findmnt", "dpkg-query", "systemctl"}
    assert not [c for c in host.calls if c[0] == "systemctl" and c[1] not in ("is-active", "is-enabled")]
    assert not [c for c in host.calls if c[0] == "cryptsetup" and c[1] not in ("isLuks", "status")]


def test_probe_never_raises(cfg):
    def broken(argv, **kw):
        raise ExternalToolError(argv, 1, stderr="boom")

    state = probe(cfg, runner=broken, gpu_vendor=GpuVendor.NONE)

    assert not state.volume_open
    assert not state.packages_ready
    assert state.probe_errors
