from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from securehost_installer.config import DEFAULT_CONFIG_PATH, load_config, validate_config
from securehost_installer.model import GIB


def test_defaults():
    cfg = load_config(None)
    spec = cfg.volume_spec()

    assert cfg.gpu_mode == "auto"
    assert spec.size_bytes is None
    assert spec.mapper_device == "/dev/mapper/securedata"
    assert spec.mount_path == "/securedata"
    assert cfg.webui_port == 3000
    assert "cryptsetup" in cfg.base_packages


def test_missing_default_path_means_defaults():
    if Path(DEFAULT_CONFIG_PATH).exists():
        pytest.skip(f"{DEFAULT_CONFIG_PATH} exists on this machine")
    assert load_config(DEFAULT_CONFIG_PATH).raw == {}


def test_missing_explicit_path(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "config.yaml"))


def test_yaml_and_overrides(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({"volume": {"size_gb": 5}, "gpu_mode": "nvidia"}), encoding="utf-8")

    cfg = load_config(str(path))
    assert cfg.volume_spec().size_bytes == 5 * GIB

    cfg2 = cfg.with_overrides(container_size_gb=20, gpu_mode=None)
    assert cfg2.container_size_gb == 20
    assert cfg2.gpu_mode == "nvidia"
    assert cfg.container_size_gb == 5


def test_non_yaml_rejected(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{}", encoding="utf-8")
    with pytest.raises(ValueError):
        load_config(str(path))


@pytest.mark.parametrize(
    "raw",
    [
        {"gpu_mode": "intel"},
        {"volume": {"size_gb": 0}},
        {"volume": {"mapper_name": "../evil"}},
    ],
)
def test_validate_rejects(raw):
    from securehost_installer.config import ProvisionConfig

    with pytest.raises(ValueError):
        validate_config(ProvisionConfig(raw=raw))
