from __future__ import annotations

from typing import Sequence


class ProvisionError(Exception):
    """Base class for every error the installer reports to the operator."""

    exit_code = 1
    kind = "error"


class ProbeError(ProvisionError):
    """A read-only probe could not answer. Never fatal: capability degrades."""

    kind = "probe"


class PreconditionError(ProvisionError):
    exit_code = 3
    kind = "precondition"


class LockHeldError(PreconditionError):
    kind = "lock_held"


class MountBusyError(PreconditionError):
    """The mount point is already occupied by something other than our volume."""

    kind = "mount_busy"


class DestructiveActionRefused(ProvisionError):
    exit_code = 4
    kind = "destructive_refused"


class ExternalToolError(ProvisionError):
    exit_code = 5
    kind = "external_tool"

    def __init__(
        self,
        argv: Sequence[str],
        returncode: int,
        stdout: str = "",
        stderr: str = "",
        message: str | None = None,
    ) -> None:
        self.argv = list(argv)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        detail = (stderr or stdout or "").strip()
        text = message or f"Command failed ({returncode}): {' '.join(self.argv)}"
        if detail:
            text = f"{text}\n{detail}"
        super().__init__(text)


class VolumeKeyError(ExternalToolError):
    """cryptsetup rejected the key file: restore the right key, then re-run."""

    exit_code = 6
    kind = "volume_key"
