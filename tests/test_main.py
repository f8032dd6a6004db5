from __future__ import annotations

import hashlib
import json
import os
from pathlib import Path

import pytest
import yaml

import securehost_installer.main as main_mod
from securehost_installer.lockfile import exclusive_lock
from securehost_installer.model import GIB
from securehost_installer.pipeline import Phase

from .conftest import make_config


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    monkeypatch.setattr(main_mod, "configure_logging", lambda **kw: kw["log_path"])


@pytest.fixture
def config_file(tmp_path):
    cfg = make_config(tmp_path, size_gb=None, gpu_mode="auto")
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(cfg.raw), encoding="utf-8")
    return cfg, str(path)


@pytest.fixture
def with_host(monkeypatch, host):
    real_run = main_mod.run
    monkeypatch.setattr(main_mod, "run", lambda **kw: real_run(runner=host, **kw))
    return host


def _args(tmp_path, config_path, *extra):
    return [
        "--config",
        config_path,
        "--state",
        str(tmp_path / "state.json"),
        "--log",
        str(tmp_path / "installer.log"),
        *extra,
    ]


def _digest(path):
    with open(path, "rb") as f:
        return hashlib.sha256(f.read(1 << 20)).hexdigest()


def test_end_to_end_cpu_host(tmp_path, config_file, with_host, sparse_alloc, capsys):
    cfg, config_path = config_file
    host = with_host

    assert main_mod.main(_args(tmp_path, config_path, "--container-size-gb", "10")) == 0

    assert os.path.getsize(cfg.backing_path) == 10 * GIB
    assert host.mounts[cfg.mount_path] == "/dev/mapper/securedata"
    assert {"ollama.service", "open-webui.service"} <= host.active
    assert "Reminder" in capsys.readouterr().err

    journal = json.loads((tmp_path / "state.json").read_text(encoding="utf-8"))
    assert journal["execution"]["summary"]["phase"] == "done"
    assert journal["execution"]["decisions"]["gpu_vendor"] == "none"
    assert journal["execution"]["summary"]["system"]["services_registered"] == ["ollama", "open-webui"]
    assert any(cfg.key_path in n for n in journal["notices"])

    key = _digest(cfg.key_path)
    backing = _digest(cfg.backing_path)
    key_mtime = os.stat(cfg.key_path).st_mtime_ns
    backing_mtime = os.stat(cfg.backing_path).st_mtime_ns

    # No size on the second run: the existing container is reused.
    assert main_mod.main(_args(tmp_path, config_path)) == 0

    assert _digest(cfg.key_path) == key
    assert _digest(cfg.backing_path) == backing
    assert os.stat(cfg.key_path).st_mtime_ns == key_mtime
    assert os.stat(cfg.backing_path).st_mtime_ns == backing_mtime
    assert len(host.ran("cryptsetup", "luksFormat")) == 1
    journal = json.loads((tmp_path / "state.json").read_text(encoding="utf-8"))
    assert journal["runs"] == 2
    assert journal["execution"]["summary"]["skipped_steps"] == ["20_packages", "30_volume", "40_services"]


def test_missing_size_on_fresh_host(tmp_path, config_file, with_host, capsys):
    _, config_path = config_file

    assert main_mod.main(_args(tmp_path, config_path)) == 3
    assert "--container-size-gb" in capsys.readouterr().err


def test_wrong_key_exit_code(tmp_path, config_file, with_host, sparse_alloc):
    cfg, config_path = config_file
    host = with_host
    assert main_mod.main(_args(tmp_path, config_path, "--container-size-gb", "1", "--stop-after", "30_volume")) == 0

    # Simulate a reboot with a replaced key file.
    host.open_maps.clear()
    host.mounts.clear()
    Path(cfg.key_path).write_bytes(b"\x01" * 64)

    assert main_mod.main(_args(tmp_path, config_path)) == 6


def test_lock_held(tmp_path, config_file, with_host):
    cfg, config_path = config_file

    with exclusive_lock(cfg.lock_path):
        assert main_mod.main(_args(tmp_path, config_path, "--container-size-gb", "1")) == 3

    assert with_host.calls == []
    assert not (tmp_path / "state.json").exists()


def test_dry_run(tmp_path, config_file, with_host):
    cfg, config_path = config_file

    assert main_mod.main(_args(tmp_path, config_path, "--container-size-gb", "1", "--dry-run")) == 0

    assert not Path(cfg.backing_path).exists()
    assert not Path(cfg.key_path).exists()
    assert not (tmp_path / "state.json").exists()


def test_run_returns_result(tmp_path, config_file, host, sparse_alloc):
    _, config_path = config_file

    result = main_mod.run(
        config_path=config_path,
        state_path=str(tmp_path / "state.yaml"),
        log_path=str(tmp_path / "installer.log"),
        container_size_gb=1,
        gpu_mode="cpu",
        runner=host,
    )

    assert result.phase is Phase.DONE
    assert yaml.safe_load((tmp_path / "state.yaml").read_text(encoding="utf-8"))["execution"]["phase"] == "done"


@pytest.mark.parametrize(
    "extra",
    [
        ["--gpu-mode", "intel"],
        ["--container-size-gb", "0"],
        ["--container-size-gb", "ten"],
    ],
)
def test_usage_errors(tmp_path, config_file, extra):
    _, config_path = config_file
    with pytest.raises(SystemExit) as info:
        main_mod.main(_args(tmp_path, config_path, *extra))
    assert info.value.code == 2


def test_missing_config_file(tmp_path):
    assert main_mod.main(_args(tmp_path, str(tmp_path / "nope.yaml"))) == 2


def test_malformed_config_is_a_usage_error(tmp_path, capsys):
    path = tmp_path / "config.yaml"
    path.write_text("volume: [unclosed\n", encoding="utf-8")

    assert main_mod.main(_args(tmp_path, str(path))) == 2
    assert "not valid YAML" in capsys.readouterr().err


def test_unusable_lock_path(tmp_path, with_host):
    (tmp_path / "blocker").write_text("", encoding="utf-8")
    cfg = make_config(tmp_path)
    cfg.raw["paths"]["lock"] = str(tmp_path / "blocker" / "installer.lock")
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump(cfg.raw), encoding="utf-8")

    assert main_mod.main(_args(tmp_path, str(path))) == 3
    assert with_host.calls == []
