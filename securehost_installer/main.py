from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional

from .config import DEFAULT_CONFIG_PATH, GPU_MODES, load_config, validate_config
from .errors import PreconditionError
from .lib.command import Runner, run_cmd
from .lockfile import exclusive_lock
from .logging_utils import DEFAULT_LOG_PATH, configure_logging
from .pipeline import Failure, Phase, PipelineResult, RunContext, run_pipeline
from .state_store import ensure_defaults, load_state, record_notices, save_state
from .steps import (
    FinalizeStep,
    InstallPackagesStep,
    PrepareVolumeStep,
    ProbeStep,
    StartServicesStep,
)

logger = logging.getLogger(__name__)


DEFAULT_STATE_PATH = "/var/lib/securehost-installer/state.json"

USAGE_EXIT = 2


def build_steps():
    return [
        ProbeStep(),
        InstallPackagesStep(),
        PrepareVolumeStep(),
        StartServicesStep(),
        FinalizeStep(),
    ]


def _print_notices(notices: list[str]) -> None:
    for n in notices:
        print(f"\n[!] Reminder: {n}", file=sys.stderr)


def _summary(result: Optional[PipelineResult]) -> dict:
    if result is None:
        return {"phase": Phase.FAILED.value, "ran_steps": [], "skipped_steps": [], "system": None}
    return {
        "phase": result.phase.value,
        "ran_steps": result.ran_steps,
        "skipped_steps": result.skipped_steps,
        "system": result.system.to_dict() if result.system else None,
    }


def run(
    *,
    config_path: Optional[str] = DEFAULT_CONFIG_PATH,
    state_path: str = DEFAULT_STATE_PATH,
    log_path: str = DEFAULT_LOG_PATH,
    container_size_gb: Optional[int] = None,
    gpu_mode: Optional[str] = None,
    dry_run: bool = False,
    allow_overwrite: bool = False,
    force: bool = False,
    stop_after: Optional[str] = None,
    runner: Runner = run_cmd,
    verbose: bool = False,
) -> PipelineResult:
    """Provision the host, journaling the run for the operator."""

    actual_log_path = configure_logging(log_path=log_path, level=logging.DEBUG if verbose else logging.INFO)

    cfg = load_config(config_path).with_overrides(container_size_gb=container_size_gb, gpu_mode=gpu_mode)
    validate_config(cfg)

    try:
        with exclusive_lock(cfg.lock_path):
            state = ensure_defaults(load_state(state_path))
            state["config"] = cfg.raw
            paths = state["execution"].setdefault("paths", {})
            paths["log_path_requested"] = log_path
            paths["log_path_actual"] = actual_log_path

            ctx = RunContext(
                cfg=cfg,
                runner=runner,
                dry_run=dry_run,
                allow_overwrite=allow_overwrite,
                force=force,
                journal=state,
            )

            result: Optional[PipelineResult] = None
            try:
                result = run_pipeline(ctx, build_steps(), stop_after=stop_after)
            finally:
                record_notices(state, ctx.notices)
                state["execution"]["summary"] = _summary(result)
                save_state(state_path, state, dry_run=dry_run)
                _print_notices(ctx.notices)
    except PreconditionError as e:
        # Raised while acquiring the lock; the pipeline reports its own failures.
        logger.error("%s", e)
        return PipelineResult(
            phase=Phase.FAILED,
            ran_steps=[],
            skipped_steps=[],
            failure=Failure(step="lock", from_phase=Phase.INIT, cause=str(e), error=e),
        )

    return result


def main(argv: Optional[list[str]] = None) -> int:
    p = argparse.ArgumentParser(
        prog="securehost-installer",
        description="Provision an encrypted-storage-backed Ollama + Open WebUI host.",
    )
    p.add_argument("--container-size-gb", type=int, default=None, help="Size of the encrypted container file (GiB)")
    p.add_argument("--gpu-mode", choices=GPU_MODES, default=None, help="Override GPU detection (default: auto)")
    p.add_argument("--dry-run", action="store_true", help="Log what would be done without changing the host")
    p.add_argument(
        "--allow-overwrite",
        action="store_true",
        help="Allow formatting a backing file that holds non-LUKS data (destroys it)",
    )
    p.add_argument("--force", action="store_true", help="Re-run steps even if their target state already holds")
    p.add_argument("--stop-after", default=None, help="Stop after step_id (e.g. 30_volume)")
    p.add_argument("--config", default=DEFAULT_CONFIG_PATH, help="Path to installer config (yaml)")
    p.add_argument("--state", default=DEFAULT_STATE_PATH, help="Path to run journal (json|yaml)")
    p.add_argument("--log", default=DEFAULT_LOG_PATH, help="Path to installer log")
    p.add_argument("-v", "--verbose", action="store_true", help="Log command output")

    args = p.parse_args(argv)

    if args.container_size_gb is not None and args.container_size_gb <= 0:
        p.error("--container-size-gb must be a positive integer")

    try:
        result = run(
            config_path=args.config,
            state_path=args.state,
            log_path=args.log,
            container_size_gb=args.container_size_gb,
            gpu_mode=args.gpu_mode,
            dry_run=args.dry_run,
            allow_overwrite=args.allow_overwrite,
            force=args.force,
            stop_after=args.stop_after,
            verbose=args.verbose,
        )
    except (ValueError, FileNotFoundError) as e:
        print(f"securehost-installer: configuration error: {e}", file=sys.stderr)
        return USAGE_EXIT

    if result.failure is not None:
        f = result.failure
        print(
            f"securehost-installer: step {f.step} failed (after {f.from_phase.value}, {f.kind}): {f.cause}\n"
            "Fix the cause above and re-run; completed steps will be skipped.",
            file=sys.stderr,
        )
        return f.exit_code

    logger.info("Reached %s (ran=%s skipped=%s)", result.phase.value, result.ran_steps, result.skipped_steps)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
