from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List

from ..config import ProvisionConfig
from ..errors import PreconditionError
from ..model import ContainerSpec, GpuVendor, ServiceSpec, SystemState
from . import docker, systemd
from .command import Runner, run_cmd

logger = logging.getLogger(__name__)

RUNTIME = "container-runtime"
OLLAMA = "ollama"
WEBUI = "open-webui"

# Keys owned by gpu_environment(); a spec carrying other values is stale.
GPU_ENV_KEYS = ("OLLAMA_FLASH_ATTENTION", "CUDA_VISIBLE_DEVICES", "HIP_VISIBLE_DEVICES", "OLLAMA_LLM_LIBRARY")

DROPIN_NAME = "securehost.conf"


def acceleration_enabled(vendor: GpuVendor) -> bool:
    # Only NVIDIA has a supported driver + container toolkit path. AMD runs on CPU.
    return vendor is GpuVendor.NVIDIA


def gpu_environment(vendor: GpuVendor) -> Dict[str, str]:
    if acceleration_enabled(vendor):
        return {"OLLAMA_FLASH_ATTENTION": "1"}
    return {
        "OLLAMA_FLASH_ATTENTION": "0",
        "CUDA_VISIBLE_DEVICES": "-1",
        "HIP_VISIBLE_DEVICES": "-1",
        "OLLAMA_LLM_LIBRARY": "cpu",
    }


def build_service_specs(cfg: ProvisionConfig, system: SystemState) -> List[ServiceSpec]:
    """The three managed services, in start order."""

    mount = cfg.mount_path.rstrip("/") or "/"

    runtime = ServiceSpec(
        name=RUNTIME,
        exec_command=("/usr/bin/dockerd",),
        kind="runtime",
        description="Docker with data-root on the encrypted volume",
        unit_name="docker.service",
        uses_mount=True,
        data_dirs=(f"{mount}/{cfg.docker_data_subdir}",),
    )

    ollama_env = dict(gpu_environment(system.gpu_vendor))
    ollama_env["OLLAMA_HOST"] = f"127.0.0.1:{cfg.ollama_port}"
    ollama_dirs: tuple = ()
    if cfg.ollama_models_on_volume:
        ollama_env["OLLAMA_MODELS"] = f"{mount}/ollama/models"
        ollama_dirs = (ollama_env["OLLAMA_MODELS"],)
    ollama = ServiceSpec(
        name=OLLAMA,
        exec_command=(cfg.ollama_bin, "serve"),
        environment=ollama_env,
        dependencies=frozenset({RUNTIME}),
        kind="unit",
        description="Ollama Service",
        uses_mount=cfg.ollama_models_on_volume,
        gpu_aware=True,
        data_dirs=ollama_dirs,
    )

    webui_data = f"{mount}/{cfg.webui_data_subdir}"
    container = ContainerSpec(
        name=cfg.webui_container_name,
        image=cfg.webui_image,
        network="host",
        environment={
            "PORT": str(cfg.webui_port),
            "OLLAMA_BASE_URL": f"http://127.0.0.1:{cfg.ollama_port}",
        },
        volumes=(f"{webui_data}:/app/backend/data",),
    )
    webui = ServiceSpec(
        name=WEBUI,
        exec_command=tuple(docker.run_argv(container, docker_bin=cfg.docker_bin)),
        dependencies=frozenset({RUNTIME, OLLAMA}),
        kind="container",
        description="Open WebUI container",
        uses_mount=True,
        data_dirs=(webui_data,),
        container=container,
    )
    return [runtime, ollama, webui]


@dataclass(frozen=True)
class ServiceHandle:
    name: str
    unit: str
    runner: Runner = run_cmd

    def status(self) -> str:
        state = systemd.active_state(self.unit, runner=self.runner)
        return "running" if state == "active" else state


class ServiceInstaller:
    def __init__(
        self,
        cfg: ProvisionConfig,
        *,
        runner: Runner = run_cmd,
        dry_run: bool = False,
        units: Dict[str, str] | None = None,
    ) -> None:
        self.cfg = cfg
        self.runner = runner
        self.dry_run = dry_run
        # service name -> unit name, for dependency resolution
        self.units = {RUNTIME: "docker.service", **(units or {})}

    def _unit_path(self, unit: str) -> str:
        return str(Path(self.cfg.unit_dir) / unit)

    def _check(self, spec: ServiceSpec, system: SystemState) -> None:
        if spec.gpu_aware:
            expected = gpu_environment(system.gpu_vendor)
            stale = [k for k in GPU_ENV_KEYS if spec.environment.get(k) != expected.get(k)]
            if stale:
                raise PreconditionError(
                    f"{spec.name}: environment {stale} does not match gpu_vendor={system.gpu_vendor.value}"
                )
        if spec.uses_mount and not system.volume_mounted and not self.dry_run:
            raise PreconditionError(
                f"Encrypted volume not mounted at {self.cfg.mount_path}; refusing to start {spec.name}"
            )

    def _ensure_dirs(self, spec: ServiceSpec) -> None:
        for d in spec.data_dirs:
            if self.dry_run:
                logger.info("Would create %s", d)
                continue
            Path(d).mkdir(parents=True, exist_ok=True)

    def render(self, spec: ServiceSpec) -> str:
        requires = [self.units.get(dep, f"{dep}.service") for dep in spec.dependencies]
        mount = self.cfg.mount_path if spec.uses_mount else None
        if spec.container is not None:
            docker_bin = shlex.quote(self.cfg.docker_bin)
            name = shlex.quote(spec.container.name)
            return systemd.render_unit(
                description=spec.description or spec.name,
                exec_start=spec.exec_command,
                requires=requires,
                mount_path=mount,
                restart=spec.restart_policy,
                exec_start_pre=[f"-{docker_bin} rm -f {name}"],
                exec_stop=[f"{docker_bin} stop {name}"],
            )
        return systemd.render_unit(
            description=spec.description or spec.name,
            exec_start=spec.exec_command,
            requires=requires,
            environment=spec.environment,
            mount_path=mount,
            restart=spec.restart_policy,
        )

    def _configure_runtime(self, spec: ServiceSpec) -> bool:
        data_root = spec.data_dirs[0]
        changed = docker.set_data_root(self.cfg.docker_daemon_json, data_root, dry_run=self.dry_run)
        dropin = str(Path(self.cfg.unit_dir) / f"{spec.unit}.d" / DROPIN_NAME)
        if systemd.write_if_changed(dropin, systemd.render_dropin(mount_path=self.cfg.mount_path), dry_run=self.dry_run):
            systemd.daemon_reload(runner=self.runner, dry_run=self.dry_run)
            changed = True
        return changed

    def _write_unit(self, spec: ServiceSpec) -> bool:
        changed = systemd.write_if_changed(self._unit_path(spec.unit), self.render(spec), dry_run=self.dry_run)
        if changed:
            systemd.daemon_reload(runner=self.runner, dry_run=self.dry_run)
        return changed

    def _teardown(self, spec: ServiceSpec) -> None:
        systemd.stop(spec.unit, runner=self.runner, dry_run=self.dry_run)
        if spec.container is not None:
            docker.remove_container(
                spec.container.name, docker_bin=self.cfg.docker_bin, runner=self.runner, dry_run=self.dry_run
            )
            docker.pull_image(
                spec.container.image, docker_bin=self.cfg.docker_bin, runner=self.runner, dry_run=self.dry_run
            )

    def install_and_start(self, spec: ServiceSpec, system: SystemState) -> ServiceHandle:
        self._check(spec, system)
        self._ensure_dirs(spec)

        if spec.kind == "runtime":
            changed = self._configure_runtime(spec)
        else:
            changed = self._write_unit(spec)

        systemd.enable(spec.unit, runner=self.runner, dry_run=self.dry_run)

        active = systemd.is_active(spec.unit, runner=self.runner)
        if changed or not active:
            if spec.kind == "runtime":
                systemd.restart(spec.unit, runner=self.runner, dry_run=self.dry_run)
            else:
                self._teardown(spec)
                systemd.start(spec.unit, runner=self.runner, dry_run=self.dry_run)
            logger.info("Started %s (%s)", spec.name, spec.unit)
        else:
            logger.info("%s unchanged and active", spec.name)

        self.units[spec.name] = spec.unit
        return ServiceHandle(name=spec.name, unit=spec.unit, runner=self.runner)

    def is_current(self, spec: ServiceSpec) -> bool:
        """True when the persisted definition already matches spec."""

        if spec.kind == "runtime":
            dropin = Path(self.cfg.unit_dir) / f"{spec.unit}.d" / DROPIN_NAME
            return (
                docker.data_root_configured(self.cfg.docker_daemon_json, spec.data_dirs[0])
                and dropin.exists()
                and dropin.read_text(encoding="utf-8") == systemd.render_dropin(mount_path=self.cfg.mount_path)
            )
        p = Path(self._unit_path(spec.unit))
        return p.exists() and p.read_text(encoding="utf-8") == self.render(spec)
