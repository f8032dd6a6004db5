from __future__ import annotations

import logging
from typing import Optional

from ..pipeline import Phase, RunContext

logger = logging.getLogger(__name__)


class StartServicesStep:
    step_id = "40_services"
    phase = Phase.SERVICES_READY

    def precondition(self, ctx: RunContext) -> Optional[str]:
        system = ctx.require_system()
        if not (system.volume_mounted or ctx.dry_run):
            return f"Encrypted volume not mounted at {ctx.cfg.mount_path}"
        return None

    def satisfied(self, ctx: RunContext) -> bool:
        system = ctx.require_system()
        if not system.runtime_configured:
            return False
        for spec in ctx.services:
            if spec.kind != "runtime":
                if spec.name not in system.services_registered or spec.name not in system.services_active:
                    return False
            if not ctx.installer.is_current(spec):
                return False
        return True

    def run(self, ctx: RunContext) -> None:
        system = ctx.require_system()
        for spec in ctx.services:
            ctx.handles[spec.name] = ctx.installer.install_and_start(spec, system)
        ctx.decide("services", {s.name: s.unit for s in ctx.services})
