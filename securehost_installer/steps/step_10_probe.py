from __future__ import annotations

import logging
from typing import Optional

from ..lib.probe import probe
from ..lib.services import build_service_specs
from ..pipeline import Phase, RunContext

logger = logging.getLogger(__name__)


class ProbeStep:
    step_id = "10_probe"
    phase = Phase.PROBED

    def precondition(self, ctx: RunContext) -> Optional[str]:
        return None

    def satisfied(self, ctx: RunContext) -> bool:
        # Probing is read-only and every later decision depends on it.
        return False

    def run(self, ctx: RunContext) -> None:
        ctx.system = probe(ctx.cfg, runner=ctx.runner)
        ctx.services = build_service_specs(ctx.cfg, ctx.system)

        ctx.decide("gpu_vendor", ctx.system.gpu_vendor.value)
        ctx.decide("gpu_mode", ctx.cfg.gpu_mode)
        if ctx.system.probe_errors:
            ctx.decide("probe_errors", list(ctx.system.probe_errors))
