"""Run journal: what each run did, decided and failed on.

The journal is history, not truth. Whether a step may be skipped is decided by
probing the host, so a lost or stale journal never causes a wrong skip.
"""

from __future__ import annotations

import json
import logging
import time
from pathlib import Path
from typing import Any, Dict, Iterable

logger = logging.getLogger(__name__)


def _detect_format(path: Path) -> str:
    ext = path.suffix.lower().lstrip(".")
    if ext in {"json", "yaml", "yml"}:
        return ext
    # Default to JSON for unknown extensions.
    return "json"


def load_state(path: str) -> Dict[str, Any]:
    p = Path(path)
    if not p.exists():
        return {}

    fmt = _detect_format(p)
    data: Dict[str, Any]

    if fmt in {"yaml", "yml"}:
        try:
            import yaml  # type: ignore
        except Exception as e:  # pragma: no cover
            raise RuntimeError(
                "YAML state requested but PyYAML is not available. Use a .json state path."
            ) from e
        data = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    else:
        data = json.loads(p.read_text(encoding="utf-8"))

    if not isinstance(data, dict):
        raise ValueError(f"State file must be an object/dict, got {type(data)}")

    return data


def save_state(path: str, state: Dict[str, Any], *, dry_run: bool = False) -> None:
    p = Path(path)
    if dry_run:
        logger.info("Would save state to %s", p)
        return
    p.parent.mkdir(parents=True, exist_ok=True)

    fmt = _detect_format(p)
    if fmt in {"yaml", "yml"}:
        try:
            import yaml  # type: ignore
        except Exception as e:  # pragma: no cover
            raise RuntimeError(
                "YAML state requested but PyYAML is not available. Use a .json state path."
            ) from e
        p.write_text(yaml.safe_dump(state, sort_keys=False) + "\n", encoding="utf-8")
    else:
        p.write_text(json.dumps(state, indent=2, sort_keys=True) + "\n", encoding="utf-8")


def ensure_defaults(state: Dict[str, Any]) -> Dict[str, Any]:
    """Fill required keys (without overriding recorded values) and open a new run."""

    state.setdefault("version", 1)
    state.setdefault("config", {})
    state.setdefault("notices", [])
    state.setdefault("runs", 0)
    state["runs"] += 1

    exe = state.setdefault("execution", {})
    exe["started_at"] = time.strftime("%Y-%m-%dT%H:%M:%S%z")
    exe["current_step"] = None
    exe["phase"] = "init"
    exe["completed_steps"] = []
    exe["errors"] = []
    exe["decisions"] = {}

    return state


def mark_step_completed(state: Dict[str, Any], step_id: str) -> None:
    exe = state.setdefault("execution", {})
    completed = exe.setdefault("completed_steps", [])
    if step_id not in completed:
        completed.append(step_id)


def record_notices(state: Dict[str, Any], notices: Iterable[str]) -> None:
    recorded = state.setdefault("notices", [])
    for n in notices:
        if n not in recorded:
            recorded.append(n)
