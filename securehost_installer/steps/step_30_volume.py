from __future__ import annotations

import logging
from typing import Optional

from ..pipeline import Phase, RunContext

logger = logging.getLogger(__name__)


class PrepareVolumeStep:
    step_id = "30_volume"
    phase = Phase.VOLUME_READY

    def precondition(self, ctx: RunContext) -> Optional[str]:
        system = ctx.require_system()
        if not (system.packages_ready or ctx.dry_run):
            return "required packages (cryptsetup) are not installed"
        return None

    def satisfied(self, ctx: RunContext) -> bool:
        system = ctx.require_system()
        expected = ctx.volume_spec.size_bytes
        size_ok = expected is None or system.backing_size == expected
        return system.volume_ready and size_ok

    def run(self, ctx: RunContext) -> None:
        spec = ctx.volume_spec
        vm = ctx.volume

        # Order matters: key before format, format before open, open before mount.
        backing = vm.ensure_backing_file(spec)
        vm.ensure_key(spec)
        vm.ensure_luks_container(spec, fresh=backing.created)
        vm.ensure_open_and_mounted(spec)

        ctx.decide(
            "volume",
            {
                "backing_path": spec.backing_path,
                "backing_size": backing.size,
                "mapper": spec.mapper_device,
                "mount_path": spec.mount_path,
                "key_path": spec.key_path,
            },
        )
