"""Encrypted container lifecycle: backing file, key, LUKS header, filesystem, mount.

Every ``ensure_*`` call is idempotent: it inspects the durable state first
(files on disk, the device-mapper table, the mount table) and only acts on
what is missing. Nothing here ever re-formats a valid LUKS container.
"""

from __future__ import annotations

import errno
import logging
import os
import secrets
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from ..errors import (
    DestructiveActionRefused,
    ExternalToolError,
    MountBusyError,
    PreconditionError,
    VolumeKeyError,
)
from ..model import EncryptedVolumeSpec
from .command import Runner, run_cmd

logger = logging.getLogger(__name__)

KEY_BYTES = 64  # 512 bits
CHUNK_BYTES = 4 * 1024 * 1024

# cryptsetup(8): exit code 2 means "no permission (bad passphrase)".
_CRYPTSETUP_BAD_KEY = 2


def key_backup_notice(key_path: str) -> str:
    return (
        f"Your encrypted volume uses a key file at {key_path}. Back it up securely: "
        "if it is lost, the data on the volume is permanently unrecoverable."
    )


# Read-only queries, shared with the prober.


def is_luks(backing_path: str, *, runner: Runner = run_cmd) -> bool:
    if not Path(backing_path).exists():
        return False
    return runner(["cryptsetup", "isLuks", backing_path], check=False).returncode == 0


def is_open(mapper_name: str, *, runner: Runner = run_cmd) -> bool:
    return runner(["cryptsetup", "status", mapper_name], check=False).returncode == 0


def mount_source(mount_path: str, *, runner: Runner = run_cmd) -> Optional[str]:
    """Return what is mounted at mount_path, or None."""

    r = runner(["findmnt", "-n", "-o", "SOURCE", "--mountpoint", mount_path], check=False)
    if r.returncode != 0:
        return None
    return r.stdout.strip() or None


def filesystem_type(device: str, *, runner: Runner = run_cmd) -> Optional[str]:
    # blkid exits 2 when it finds no recognisable signature.
    r = runner(["blkid", "-p", "-s", "TYPE", "-o", "value", device], check=False)
    if r.returncode == 2:
        return None
    if r.returncode != 0:
        raise ExternalToolError(r.argv, r.returncode, stdout=r.stdout, stderr=r.stderr)
    return r.stdout.strip() or None


def has_nonzero_data(path: str) -> bool:
    with open(path, "rb") as f:
        while True:
            chunk = f.read(CHUNK_BYTES)
            if not chunk:
                return False
            if chunk.count(0) != len(chunk):
                return True


def check_key_file(key_path: str) -> None:
    """Raise PreconditionError unless the key is safe to format/open with."""

    st = os.stat(key_path)
    if not stat.S_ISREG(st.st_mode):
        raise PreconditionError(f"Key path {key_path} is not a regular file")
    if st.st_mode & 0o077:
        raise PreconditionError(
            f"Key file {key_path} has mode {stat.S_IMODE(st.st_mode):04o}; "
            f"restrict it with 'chmod 600 {key_path}' and re-run"
        )
    if hasattr(os, "geteuid") and st.st_uid != os.geteuid():
        raise PreconditionError(f"Key file {key_path} is owned by uid {st.st_uid}, not the installing user")
    if st.st_size == 0:
        raise PreconditionError(f"Key file {key_path} is empty; restore it from backup")


def _allocate(fd: int, size: int) -> None:
    """Reserve size zero-filled bytes on fd."""

    try:
        os.posix_fallocate(fd, 0, size)
        return
    except OSError as e:
        if e.errno not in (errno.EOPNOTSUPP, errno.EINVAL):
            raise
    zeros = bytes(CHUNK_BYTES)
    remaining = size
    while remaining > 0:
        n = min(remaining, CHUNK_BYTES)
        os.write(fd, zeros if n == CHUNK_BYTES else zeros[:n])
        remaining -= n


def _publish_exclusive(tmp: Path, dest: Path) -> None:
    """Move tmp to dest without ever replacing an existing dest."""

    try:
        os.link(tmp, dest)
    finally:
        tmp.unlink()


@dataclass(frozen=True)
class BackingFileStatus:
    created: bool
    size: int
    expected: Optional[int]

    @property
    def size_mismatch(self) -> bool:
        return self.expected is not None and self.size != self.expected


class EncryptedVolumeManager:
    def __init__(
        self,
        *,
        runner: Runner = run_cmd,
        dry_run: bool = False,
        allow_overwrite: bool = False,
        notices: Optional[List[str]] = None,
    ) -> None:
        self.runner = runner
        self.dry_run = dry_run
        self.allow_overwrite = allow_overwrite
        self.notices = notices if notices is not None else []
        # Effects we only pretended to apply in dry-run, so later steps can plan past them.
        self._planned: set[str] = set()

    def _run(self, argv: List[str], **kw):
        return self.runner(argv, dry_run=self.dry_run, **kw)

    def ensure_backing_file(self, spec: EncryptedVolumeSpec) -> BackingFileStatus:
        path = Path(spec.backing_path)

        if path.exists():
            size = path.stat().st_size
            status = BackingFileStatus(created=False, size=size, expected=spec.size_bytes)
            if status.size_mismatch:
                msg = (
                    f"Backing file {path} is {size} bytes but {spec.size_bytes} were requested; "
                    "resizing is not supported, keeping the existing file"
                )
                logger.warning(msg)
                self.notices.append(msg)
            else:
                logger.info("Backing file %s present (%d bytes)", path, size)
            return status

        if spec.size_bytes is None:
            raise PreconditionError(
                f"Backing file {path} does not exist and no container size was given; "
                "pass --container-size-gb"
            )

        if self.dry_run:
            logger.info("Would create %s (%d bytes, zero-filled)", path, spec.size_bytes)
            self._planned.add("backing")
            return BackingFileStatus(created=True, size=spec.size_bytes, expected=spec.size_bytes)

        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".partial")
        logger.info("Creating backing file %s (%d bytes)", path, spec.size_bytes)
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        try:
            _allocate(fd, spec.size_bytes)
            os.fsync(fd)
        finally:
            os.close(fd)
        _publish_exclusive(tmp, path)
        return BackingFileStatus(created=True, size=spec.size_bytes, expected=spec.size_bytes)

    def ensure_key(self, spec: EncryptedVolumeSpec) -> bool:
        """Return True when a new key was generated."""

        path = Path(spec.key_path)
        if path.exists():
            check_key_file(str(path))
            if path.stat().st_size < KEY_BYTES:
                logger.warning("Key file %s is shorter than %d bytes; reusing it unchanged", path, KEY_BYTES)
            logger.info("Reusing existing key %s", path)
            return False

        # A fresh key can never unlock an existing container.
        if is_luks(spec.backing_path, runner=self.runner):
            raise PreconditionError(
                f"Key file {path} is missing but {spec.backing_path} is already a LUKS container; "
                "restore the original key from backup and re-run"
            )

        if self.dry_run:
            logger.info("Would generate %d-byte key at %s (mode 0600)", KEY_BYTES, path)
            self._planned.add("key")
            return True

        if not path.parent.exists():
            path.parent.mkdir(mode=0o700, parents=True)
        tmp = path.with_name(path.name + ".tmp")
        if tmp.exists():
            tmp.unlink()
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        try:
            os.write(fd, secrets.token_bytes(KEY_BYTES))
            os.fsync(fd)
        finally:
            os.close(fd)
        os.chmod(tmp, 0o600)
        _publish_exclusive(tmp, path)

        logger.info("Generated encryption key %s", path)
        self.notices.append(key_backup_notice(str(path)))
        return True

    def ensure_luks_container(self, spec: EncryptedVolumeSpec, *, fresh: bool = False) -> bool:
        """Return True when the backing file was formatted by this call."""

        if is_luks(spec.backing_path, runner=self.runner):
            logger.info("%s already holds a LUKS header; not formatting", spec.backing_path)
            return False

        if self.dry_run and self._planned & {"backing", "key"}:
            logger.info("Would format %s as LUKS2 with key %s", spec.backing_path, spec.key_path)
            self._planned.add("luks")
            return True

        if not Path(spec.backing_path).exists():
            raise PreconditionError(f"Backing file {spec.backing_path} missing; create it before formatting")
        if not Path(spec.key_path).exists():
            raise PreconditionError(f"Key file {spec.key_path} missing; generate it before formatting")
        check_key_file(spec.key_path)

        if not fresh and has_nonzero_data(spec.backing_path):
            if not self.allow_overwrite:
                raise DestructiveActionRefused(
                    f"{spec.backing_path} is not a LUKS container but already contains data; "
                    "refusing to format it (pass --allow-overwrite to destroy its contents)"
                )
            logger.warning("Overwriting non-empty %s (--allow-overwrite)", spec.backing_path)

        self._run(
            [
                "cryptsetup",
                "luksFormat",
                "--batch-mode",
                "--type",
                "luks2",
                "--key-file",
                spec.key_path,
                spec.backing_path,
            ]
        )
        if self.dry_run:
            self._planned.add("luks")
        logger.info("Formatted %s as LUKS2", spec.backing_path)
        return True

    def ensure_open_and_mounted(self, spec: EncryptedVolumeSpec) -> None:
        planned = self.dry_run and "luks" in self._planned
        if not planned and not is_luks(spec.backing_path, runner=self.runner):
            raise PreconditionError(
                f"{spec.backing_path} is not a LUKS container; format it before opening"
            )

        # open
        open_planned = False
        if not planned and is_open(spec.mapper_name, runner=self.runner):
            logger.info("Mapping %s already open", spec.mapper_name)
        else:
            if not planned:
                check_key_file(spec.key_path)
            r = self._run(
                [
                    "cryptsetup",
                    "open",
                    "--type",
                    "luks",
                    "--key-file",
                    spec.key_path,
                    spec.backing_path,
                    spec.mapper_name,
                ],
                check=False,
            )
            if r.returncode == _CRYPTSETUP_BAD_KEY:
                raise VolumeKeyError(
                    r.argv,
                    r.returncode,
                    stdout=r.stdout,
                    stderr=r.stderr,
                    message=f"Key {spec.key_path} was rejected by {spec.backing_path}; restore the original key",
                )
            if r.returncode != 0:
                raise ExternalToolError(r.argv, r.returncode, stdout=r.stdout, stderr=r.stderr)
            open_planned = self.dry_run
            logger.info("Opened %s as %s", spec.backing_path, spec.mapper_device)

        # filesystem
        if open_planned and not planned:
            # The mapping does not exist yet, so blkid cannot see the filesystem.
            logger.info(
                "Would check %s for a filesystem once opened; mkfs runs only if none is found",
                spec.mapper_device,
            )
        else:
            self._ensure_filesystem(spec, probe=not planned)

        # mount
        source = mount_source(spec.mount_path, runner=self.runner)
        if source == spec.mapper_device:
            logger.info("%s already mounted at %s", spec.mapper_device, spec.mount_path)
            return
        if source is not None:
            raise MountBusyError(f"{spec.mount_path} is already mounted from {source}; unmount it and re-run")

        if self.dry_run:
            logger.info("Would create mount point %s", spec.mount_path)
        else:
            Path(spec.mount_path).mkdir(parents=True, exist_ok=True)
        self._run(["mount", spec.mapper_device, spec.mount_path])
        logger.info("Encrypted volume mounted at %s", spec.mount_path)

    def _ensure_filesystem(self, spec: EncryptedVolumeSpec, *, probe: bool) -> None:
        existing = filesystem_type(spec.mapper_device, runner=self.runner) if probe else None
        if existing is None:
            self._run([f"mkfs.{spec.filesystem_type}", "-q", spec.mapper_device])
            logger.info("Created %s filesystem on %s", spec.filesystem_type, spec.mapper_device)
        elif existing != spec.filesystem_type:
            raise DestructiveActionRefused(
                f"{spec.mapper_device} already holds a {existing} filesystem, expected "
                f"{spec.filesystem_type}; refusing to re-create it"
            )
        else:
            logger.info("%s already has a %s filesystem", spec.mapper_device, existing)
