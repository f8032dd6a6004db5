"""Provisioning state machine.

INIT -> PROBED -> PACKAGES_READY -> VOLUME_READY -> SERVICES_READY -> DONE,
with FAILED(step, cause) absorbing any error. Steps whose target already
holds on the host (per the prober) are skipped; there is no rollback, the
host is left at the last completed idempotent step and a re-run resumes.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

from .config import ProvisionConfig
from .errors import PreconditionError, ProvisionError
from .lib.command import Runner, run_cmd
from .lib.probe import probe
from .lib.services import ServiceHandle, ServiceInstaller
from .lib.volume import EncryptedVolumeManager
from .model import EncryptedVolumeSpec, ServiceSpec, SystemState
from .state_store import mark_step_completed

logger = logging.getLogger(__name__)


class Phase(str, enum.Enum):
    INIT = "init"
    PROBED = "probed"
    PACKAGES_READY = "packages_ready"
    VOLUME_READY = "volume_ready"
    SERVICES_READY = "services_ready"
    DONE = "done"
    FAILED = "failed"


@dataclass
class RunContext:
    cfg: ProvisionConfig
    runner: Runner = run_cmd
    dry_run: bool = False
    allow_overwrite: bool = False
    force: bool = False
    journal: Dict[str, Any] = field(default_factory=dict)
    notices: List[str] = field(default_factory=list)
    system: Optional[SystemState] = None
    services: List[ServiceSpec] = field(default_factory=list)
    handles: Dict[str, ServiceHandle] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self.volume_spec: EncryptedVolumeSpec = self.cfg.volume_spec()
        self.volume = EncryptedVolumeManager(
            runner=self.runner,
            dry_run=self.dry_run,
            allow_overwrite=self.allow_overwrite,
            notices=self.notices,
        )
        self.installer = ServiceInstaller(self.cfg, runner=self.runner, dry_run=self.dry_run)

    def reprobe(self) -> SystemState:
        vendor = self.system.gpu_vendor if self.system is not None else None
        self.system = probe(self.cfg, runner=self.runner, gpu_vendor=vendor)
        return self.system

    def require_system(self) -> SystemState:
        if self.system is None:
            raise PreconditionError("host has not been probed")
        return self.system

    def decide(self, key: str, value: Any) -> None:
        self.journal.setdefault("execution", {}).setdefault("decisions", {})[key] = value


class Step(Protocol):
    """A single idempotent transition towards `phase`."""

    step_id: str
    phase: Phase

    def precondition(self, ctx: RunContext) -> Optional[str]:
        ...

    def satisfied(self, ctx: RunContext) -> bool:
        ...

    def run(self, ctx: RunContext) -> None:
        ...


@dataclass(frozen=True)
class Failure:
    step: str
    from_phase: Phase
    cause: str
    error: BaseException

    @property
    def exit_code(self) -> int:
        return self.error.exit_code if isinstance(self.error, ProvisionError) else 1

    @property
    def kind(self) -> str:
        return self.error.kind if isinstance(self.error, ProvisionError) else "unexpected"


@dataclass(frozen=True)
class PipelineResult:
    phase: Phase
    ran_steps: List[str]
    skipped_steps: List[str]
    system: Optional[SystemState] = None
    failure: Optional[Failure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None


def run_pipeline(
    ctx: RunContext,
    steps: Sequence[Step],
    *,
    stop_after: Optional[str] = None,
) -> PipelineResult:
    """Run steps in order, skipping those whose target state already holds."""

    ran: List[str] = []
    skipped: List[str] = []
    phase = Phase.INIT
    exe = ctx.journal.setdefault("execution", {})

    for step in steps:
        exe["current_step"] = step.step_id
        try:
            reason = step.precondition(ctx)
            if reason:
                raise PreconditionError(reason)

            if (not ctx.force) and step.satisfied(ctx):
                logger.info("Skipping step %s (%s already holds)", step.step_id, step.phase.value)
                skipped.append(step.step_id)
            else:
                logger.info("Running step %s", step.step_id)
                step.run(ctx)
                ran.append(step.step_id)
                if not ctx.dry_run and step.phase is not Phase.PROBED:
                    ctx.reprobe()
        except Exception as e:
            logger.exception("Step %s failed", step.step_id)
            failure = Failure(step=step.step_id, from_phase=phase, cause=str(e), error=e)
            exe.setdefault("errors", []).append(
                {"step": step.step_id, "phase": phase.value, "kind": failure.kind, "error": str(e)}
            )
            exe["phase"] = Phase.FAILED.value
            return PipelineResult(
                phase=Phase.FAILED, ran_steps=ran, skipped_steps=skipped, system=ctx.system, failure=failure
            )

        phase = step.phase
        exe["phase"] = phase.value
        mark_step_completed(ctx.journal, step.step_id)

        if stop_after is not None and step.step_id == stop_after:
            logger.info("Stopping after %s", stop_after)
            break

    exe["current_step"] = None
    return PipelineResult(phase=phase, ran_steps=ran, skipped_steps=skipped, system=ctx.system)
