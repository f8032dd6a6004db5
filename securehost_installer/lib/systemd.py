from __future__ import annotations

import logging
import shlex
from pathlib import Path
from typing import Iterable, List, Mapping, Optional

from .command import Runner, run_cmd

logger = logging.getLogger(__name__)


def _quote_env(key: str, value: str) -> str:
    # systemd accepts double-quoted "KEY=value" assignments.
    text = f"{key}={value}".replace("\\", "\\\\").replace('"', '\\"')
    return f'"{text}"'


def render_unit(
    *,
    description: str,
    exec_start: Iterable[str],
    requires: Iterable[str] = (),
    wants: Iterable[str] = (),
    environment: Optional[Mapping[str, str]] = None,
    mount_path: Optional[str] = None,
    restart: str = "always",
    exec_start_pre: Iterable[str] = (),
    exec_stop: Iterable[str] = (),
    user: str = "root",
) -> str:
    requires = sorted(requires)
    wants = sorted(wants)
    after = ["network-online.target", *requires, *wants]

    lines: List[str] = [
        "[Unit]",
        f"Description={description}",
        f"After={' '.join(after)}",
        f"Wants={' '.join(['network-online.target', *wants])}",
    ]
    if requires:
        lines.append(f"Requires={' '.join(requires)}")
    if mount_path:
        lines.append(f"ConditionPathIsMountPoint={mount_path}")

    lines += ["", "[Service]"]
    for key in sorted(environment or {}):
        lines.append(f"Environment={_quote_env(key, (environment or {})[key])}")
    for cmd in exec_start_pre:
        lines.append(f"ExecStartPre={cmd}")
    lines.append(f"ExecStart={shlex.join(list(exec_start))}")
    for cmd in exec_stop:
        lines.append(f"ExecStop={cmd}")
    lines += [f"Restart={restart}", "RestartSec=5", f"User={user}"]

    lines += ["", "[Install]", "WantedBy=multi-user.target", ""]
    return "\n".join(lines)


def render_dropin(*, mount_path: str) -> str:
    return "\n".join(["[Unit]", f"RequiresMountsFor={mount_path}", f"ConditionPathIsMountPoint={mount_path}", ""])


def write_if_changed(path: str, contents: str, *, dry_run: bool = False) -> bool:
    """Return True when the file did not already hold exactly contents."""

    p = Path(path)
    if p.exists() and p.read_text(encoding="utf-8") == contents:
        return False
    if dry_run:
        logger.info("Would write %s", path)
        return True
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(contents, encoding="utf-8")
    logger.info("Wrote %s", path)
    return True


def daemon_reload(*, runner: Runner = run_cmd, dry_run: bool = False) -> None:
    runner(["systemctl", "daemon-reload"], dry_run=dry_run)


def enable(unit: str, *, runner: Runner = run_cmd, dry_run: bool = False) -> None:
    runner(["systemctl", "enable", unit], dry_run=dry_run)


def start(unit: str, *, runner: Runner = run_cmd, dry_run: bool = False) -> None:
    runner(["systemctl", "start", unit], dry_run=dry_run)


def stop(unit: str, *, runner: Runner = run_cmd, dry_run: bool = False) -> None:
    # Stopping a unit that is not running is not an error.
    runner(["systemctl", "stop", unit], check=False, dry_run=dry_run)


def restart(unit: str, *, runner: Runner = run_cmd, dry_run: bool = False) -> None:
    runner(["systemctl", "restart", unit], dry_run=dry_run)


def active_state(unit: str, *, runner: Runner = run_cmd) -> str:
    r = runner(["systemctl", "is-active", unit], check=False)
    return r.stdout.strip() or "unknown"


def is_active(unit: str, *, runner: Runner = run_cmd) -> bool:
    return active_state(unit, runner=runner) == "active"


def is_enabled(unit: str, *, runner: Runner = run_cmd) -> bool:
    r = runner(["systemctl", "is-enabled", unit], check=False)
    return r.returncode == 0 and r.stdout.strip() == "enabled"
