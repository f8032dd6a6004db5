from __future__ import annotations

import logging
from typing import Optional

from ..lib import pkg
from ..lib.probe import required_packages
from ..model import GpuVendor
from ..pipeline import Phase, RunContext

logger = logging.getLogger(__name__)


class InstallPackagesStep:
    step_id = "20_packages"
    phase = Phase.PACKAGES_READY

    def precondition(self, ctx: RunContext) -> Optional[str]:
        if ctx.system is None:
            return "host has not been probed"
        return None

    def satisfied(self, ctx: RunContext) -> bool:
        return ctx.require_system().packages_ready

    def run(self, ctx: RunContext) -> None:
        cfg = ctx.cfg
        system = ctx.require_system()
        dry_run = ctx.dry_run
        runner = ctx.runner

        pkg.apt_update(runner=runner, dry_run=dry_run)
        if cfg.upgrade_system:
            pkg.apt_upgrade(runner=runner, dry_run=dry_run)

        missing = pkg.missing_packages(cfg.base_packages, runner=runner)
        pkg.apt_install(missing, runner=runner, dry_run=dry_run)

        if system.gpu_vendor is GpuVendor.NVIDIA:
            if pkg.missing_packages(required_packages(cfg, system.gpu_vendor), runner=runner):
                logger.info("Installing NVIDIA driver and container toolkit")
                pkg.install_nvidia_stack(
                    keyring=cfg.nvidia_keyring,
                    sources_list=cfg.nvidia_sources_list,
                    os_release=cfg.os_release,
                    runner=runner,
                    dry_run=dry_run,
                )
        else:
            logger.info("Skipping GPU setup; continuing in CPU-only mode (gpu_vendor=%s)", system.gpu_vendor.value)

        pkg.install_ollama(cfg.ollama_install_url, binary=cfg.ollama_bin, runner=runner, dry_run=dry_run)

        if cfg.unattended_upgrades:
            pkg.configure_auto_upgrades(cfg.apt_auto_upgrades, dry_run=dry_run)

        ctx.decide("packages_installed", missing)
