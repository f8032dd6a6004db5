from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List

from ..model import ContainerSpec
from .command import Runner, run_cmd

logger = logging.getLogger(__name__)


def read_daemon_config(path: str) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        return {}
    text = p.read_text(encoding="utf-8").strip()
    if not text:
        return {}
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError(f"{path} must contain a JSON object, got {type(data)}")
    return data


def data_root_configured(path: str, data_root: str) -> bool:
    try:
        return read_daemon_config(path).get("data-root") == data_root
    except ValueError:
        return False


def set_data_root(path: str, data_root: str, *, dry_run: bool = False) -> bool:
    """Point Docker's data-root at data_root, keeping every other key.

    Returns True when daemon.json changed. Existing images and containers under
    the previous data-root are not migrated.
    """

    cfg = read_daemon_config(path)
    if cfg.get("data-root") == data_root:
        return False

    previous = cfg.get("data-root", "/var/lib/docker")
    cfg["data-root"] = data_root
    if dry_run:
        logger.info("Would set data-root=%s in %s (was %s)", data_root, path, previous)
        return True

    Path(data_root).mkdir(parents=True, exist_ok=True)
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(cfg, indent=2, sort_keys=True) + "\n", encoding="utf-8")
    logger.info("Docker data-root %s -> %s", previous, data_root)
    return True


def run_argv(spec: ContainerSpec, *, docker_bin: str = "/usr/bin/docker") -> List[str]:
    """Foreground `docker run` for use as a unit's ExecStart (systemd supervises it)."""

    argv = [docker_bin, "run", "--rm", "--name", spec.name]
    if spec.network:
        argv += ["--network", spec.network]
    for port in spec.ports:
        argv += ["-p", port]
    for key in sorted(spec.environment):
        argv += ["-e", f"{key}={spec.environment[key]}"]
    for vol in spec.volumes:
        argv += ["-v", vol]
    argv.append(spec.image)
    return argv


def remove_container(name: str, *, docker_bin: str = "/usr/bin/docker", runner: Runner = run_cmd, dry_run: bool = False) -> None:
    # `rm -f` on a missing container exits non-zero; that is the normal case.
    runner([docker_bin, "rm", "-f", name], check=False, dry_run=dry_run)


def pull_image(image: str, *, docker_bin: str = "/usr/bin/docker", runner: Runner = run_cmd, dry_run: bool = False) -> None:
    runner([docker_bin, "pull", image], dry_run=dry_run)
