from __future__ import annotations

import logging
from typing import Dict, Optional

from ..errors import PreconditionError
from ..lib.services import ServiceHandle
from ..lib.volume import mount_source
from ..pipeline import Phase, RunContext

logger = logging.getLogger(__name__)


class FinalizeStep:
    step_id = "90_finalize"
    phase = Phase.DONE

    def precondition(self, ctx: RunContext) -> Optional[str]:
        return None

    def satisfied(self, ctx: RunContext) -> bool:
        return False

    def run(self, ctx: RunContext) -> None:
        cfg = ctx.cfg
        spec = ctx.volume_spec

        statuses: Dict[str, str] = {}
        if not ctx.dry_run:
            if mount_source(spec.mount_path, runner=ctx.runner) != spec.mapper_device:
                raise PreconditionError(f"Encrypted volume is no longer mounted at {spec.mount_path}")
            for svc in ctx.services:
                handle = ctx.handles.get(svc.name) or ServiceHandle(name=svc.name, unit=svc.unit, runner=ctx.runner)
                statuses[svc.name] = handle.status()
            down = {name: st for name, st in statuses.items() if st != "running"}
            if down:
                raise PreconditionError(f"Services not running: {down}")

        ctx.decide("service_status", statuses)
        vendor = ctx.require_system().gpu_vendor.value
        logger.info("Setup complete")
        logger.info("Ollama on 127.0.0.1:%d (gpu_vendor=%s)", cfg.ollama_port, vendor)
        logger.info("Open WebUI on port %d", cfg.webui_port)
        logger.info("Encrypted data mounted at %s", spec.mount_path)
