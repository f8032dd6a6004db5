"""The single place the installer executes external tools.

Every component takes a ``runner`` with run_cmd's signature, so tests can
substitute a fake host and dry-run is honoured uniformly.
"""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
from dataclasses import dataclass
from typing import Callable, Mapping, Sequence

from ..errors import ExternalToolError

logger = logging.getLogger(__name__)

MISSING_TOOL = 127


@dataclass(frozen=True)
class CmdResult:
    argv: list[str]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def raise_for_status(self) -> "CmdResult":
        if not self.ok:
            raise ExternalToolError(self.argv, self.returncode, stdout=self.stdout, stderr=self.stderr)
        return self


def format_argv(argv: Sequence[str]) -> str:
    return shlex.join(list(argv))


def run_cmd(
    argv: Sequence[str],
    *,
    check: bool = True,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    input_text: str | None = None,
    dry_run: bool = False,
) -> CmdResult:
    """Run argv, logging the command line and (at DEBUG) its output.

    Under dry_run nothing executes and a successful empty result comes back.
    A missing executable yields returncode 127, like a shell would.
    """

    args = list(argv)
    logger.info("%s %s", "DRY-RUN" if dry_run else "CMD", format_argv(args))
    if dry_run:
        return CmdResult(argv=args, returncode=0, stdout="", stderr="")

    try:
        proc = subprocess.run(
            args,
            input=input_text,
            capture_output=True,
            text=True,
            cwd=cwd,
            env={**os.environ, **env} if env else None,
        )
        result = CmdResult(argv=args, returncode=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)
    except FileNotFoundError as e:
        result = CmdResult(argv=args, returncode=MISSING_TOOL, stdout="", stderr=str(e))

    for stream, text in (("stdout", result.stdout), ("stderr", result.stderr)):
        if text.strip():
            logger.debug("%s [%s]: %s", args[0], stream, text.strip())
    if not result.ok:
        logger.debug("%s exited %d", args[0], result.returncode)

    return result.raise_for_status() if check else result


Runner = Callable[..., CmdResult]
