from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Sequence

from ..errors import ExternalToolError
from . import systemd
from .command import Runner, run_cmd

logger = logging.getLogger(__name__)

NVIDIA_PACKAGES = ["ubuntu-drivers-common", "nvidia-container-toolkit"]

NVIDIA_GPG_URL = "https://nvidia.github.io/libnvidia-container/gpgkey"
NVIDIA_LIST_URL = "https://nvidia.github.io/libnvidia-container/stable/{distro}/nvidia-container-toolkit.list"

AUTO_UPGRADES = "\n".join(
    [
        'APT::Periodic::Update-Package-Lists "1";',
        'APT::Periodic::Download-Upgradeable-Packages "1";',
        'APT::Periodic::AutocleanInterval "7";',
        'APT::Periodic::Unattended-Upgrade "1";',
        "",
    ]
)

_APT_ENV = {"DEBIAN_FRONTEND": "noninteractive"}


def apt_update(*, runner: Runner = run_cmd, dry_run: bool = False) -> None:
    runner(["apt-get", "update"], env=_APT_ENV, dry_run=dry_run)


def apt_upgrade(*, runner: Runner = run_cmd, dry_run: bool = False) -> None:
    runner(["apt-get", "-y", "upgrade"], env=_APT_ENV, dry_run=dry_run)


def apt_install(packages: Sequence[str], *, runner: Runner = run_cmd, dry_run: bool = False) -> None:
    if not packages:
        return
    runner(["apt-get", "install", "-y", *packages], env=_APT_ENV, dry_run=dry_run)


def is_installed(package: str, *, runner: Runner = run_cmd) -> bool:
    r = runner(["dpkg-query", "-W", "-f=${Status}", package], check=False)
    return r.returncode == 0 and r.stdout.strip() == "install ok installed"


def missing_packages(packages: Sequence[str], *, runner: Runner = run_cmd) -> List[str]:
    return [p for p in packages if not is_installed(p, runner=runner)]


def read_os_release(path: str = "/etc/os-release") -> Dict[str, str]:
    out: Dict[str, str] = {}
    p = Path(path)
    if not p.exists():
        return out
    for line in p.read_text(encoding="utf-8").splitlines():
        if "=" not in line or line.startswith("#"):
            continue
        key, _, value = line.partition("=")
        out[key.strip()] = value.strip().strip('"')
    return out


def add_nvidia_container_repo(
    *,
    keyring: str,
    sources_list: str,
    os_release: str = "/etc/os-release",
    runner: Runner = run_cmd,
    dry_run: bool = False,
) -> None:
    """Configure the NVIDIA container toolkit apt repository for this distro."""

    rel = read_os_release(os_release)
    distro = f"{rel.get('ID', 'ubuntu')}{rel.get('VERSION_ID', '')}"
    if not rel.get("ID"):
        logger.warning("Could not read %s; assuming %s", os_release, distro)

    key = runner(["curl", "-fsSL", NVIDIA_GPG_URL], dry_run=dry_run)
    runner(["gpg", "--batch", "--yes", "--dearmor", "-o", keyring], input_text=key.stdout, dry_run=dry_run)

    listing = runner(["curl", "-fsSL", NVIDIA_LIST_URL.format(distro=distro)], dry_run=dry_run)
    # Pin the repo to the keyring we just installed.
    contents = listing.stdout.replace("deb https://", f"deb [signed-by={keyring}] https://")
    if dry_run:
        logger.info("Would write %s", sources_list)
        return
    Path(sources_list).parent.mkdir(parents=True, exist_ok=True)
    Path(sources_list).write_text(contents, encoding="utf-8")
    logger.info("Configured NVIDIA container toolkit repo for %s", distro)


def install_nvidia_stack(
    *,
    keyring: str,
    sources_list: str,
    os_release: str = "/etc/os-release",
    runner: Runner = run_cmd,
    dry_run: bool = False,
) -> None:
    apt_install(["ubuntu-drivers-common"], runner=runner, dry_run=dry_run)
    runner(["ubuntu-drivers", "autoinstall"], env=_APT_ENV, dry_run=dry_run)
    add_nvidia_container_repo(
        keyring=keyring, sources_list=sources_list, os_release=os_release, runner=runner, dry_run=dry_run
    )
    apt_update(runner=runner, dry_run=dry_run)
    apt_install(["nvidia-container-toolkit"], runner=runner, dry_run=dry_run)
    runner(["nvidia-ctk", "runtime", "configure", "--runtime=docker"], dry_run=dry_run)
    # nvidia-ctk rewrote daemon.json; Docker only reads it at startup.
    systemd.restart("docker.service", runner=runner, dry_run=dry_run)


def install_ollama(install_url: str, *, binary: str, runner: Runner = run_cmd, dry_run: bool = False) -> None:
    if Path(binary).exists():
        logger.info("Ollama already installed at %s", binary)
        return
    script = runner(["curl", "-fsSL", install_url], dry_run=dry_run)
    runner(["sh", "-s"], input_text=script.stdout, dry_run=dry_run)
    if not dry_run and not Path(binary).exists():
        raise ExternalToolError(["sh", "-s"], 0, message=f"Ollama install script finished but {binary} is missing")


def auto_upgrades_configured(path: str) -> bool:
    p = Path(path)
    return p.exists() and p.read_text(encoding="utf-8") == AUTO_UPGRADES


def configure_auto_upgrades(path: str, *, dry_run: bool = False) -> None:
    if auto_upgrades_configured(path):
        return
    if dry_run:
        logger.info("Would write %s", path)
        return
    Path(path).parent.mkdir(parents=True, exist_ok=True)
    Path(path).write_text(AUTO_UPGRADES, encoding="utf-8")
    logger.info("Enabled unattended upgrades (%s)", path)
