#!/usr/bin/env python3
"""
Snapshot engine for the n8n Stack Manager.

Captures and restores single persistence units:

- configuration files and bound directories (plain copies)
- named Docker volumes (tar.gz through a helper container)
- logical Postgres dumps (pg_dump through docker exec)

Each call handles exactly one unit. Callers decide what a failure means
for the rest of the run.
"""
from __future__ import annotations

import shutil
import tarfile
from enum import Enum
from pathlib import Path
from typing import Sequence

from stackmgr.config import DEFAULT_HELPER_IMAGE, SKIP_MARKER_SUFFIX
from stackmgr.docker import DockerEngine, Mount
from stackmgr.errors import EngineError, SnapshotError, SourceMissingError
from stackmgr.registry import DumpSpec
from stackmgr.ui import ok, say, warn


class UnitStatus(str, Enum):
    OK = "ok"
    SKIPPED = "skipped"
    FAILED = "failed"


def skip_marker_path(dest_archive: Path) -> Path:
    return dest_archive.with_name(dest_archive.name + SKIP_MARKER_SUFFIX)


def _replace(dest: Path) -> None:
    if dest.is_dir() and not dest.is_symlink():
        shutil.rmtree(dest)
    elif dest.exists() or dest.is_symlink():
        dest.unlink()


class SnapshotEngine:
    """Copies persistence units between the live stack and a backup folder."""

    def __init__(self, engine: DockerEngine, helper_image: str = DEFAULT_HELPER_IMAGE):
        self.engine = engine
        self.helper_image = helper_image

    # ─── Capture ──────────────────────────────────────────────────────────

    def capture_file(self, source: Path, dest: Path) -> None:
        if not source.is_file():
            raise SourceMissingError(f"File not found: {source}")
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)
        except OSError as exc:
            raise SnapshotError(f"Failed to copy {source}: {exc}") from exc

    def capture_directory(self, source: Path, dest: Path, excludes: Sequence[str] = ()) -> None:
        """Recursively copy a directory, preserving structure and mtimes.

        Args:
            source: Live directory
            dest: Destination inside the backup folder
            excludes: Entry names skipped at any depth

        Raises:
            SourceMissingError: If source is not a directory
            SnapshotError: If the copy fails part way
        """
        if not source.is_dir():
            raise SourceMissingError(f"Directory not found: {source}")
        ignore = shutil.ignore_patterns(*excludes) if excludes else None
        try:
            shutil.copytree(source, dest, symlinks=True, ignore=ignore, dirs_exist_ok=True)
        except (shutil.Error, OSError) as exc:
            raise SnapshotError(f"Failed to copy {source}: {exc}") from exc

    def capture_volume(self, volume_id: str, dest_archive: Path, excludes: Sequence[str] = ()) -> UnitStatus:
        """Archive a named volume with a helper container.

        A missing volume is not an error: a skip marker is written next to
        where the archive would have gone.

        Returns:
            UnitStatus.OK, or UnitStatus.SKIPPED for a missing volume

        Raises:
            SnapshotError: If the helper container fails
        """
        dest_archive.parent.mkdir(parents=True, exist_ok=True)
        if not self.engine.volume_exists(volume_id):
            skip_marker_path(dest_archive).write_text(f"Volume {volume_id} skipped\n")
            warn(f"Volume {volume_id} not found, skipped")
            return UnitStatus.SKIPPED

        command = ["tar", "-czf", f"/backup/{dest_archive.name}"]
        command.extend(f"--exclude=./{pattern}" for pattern in excludes)
        command.extend(["-C", "/volume", "."])
        mounts = [
            Mount(volume_id, "/volume", read_only=True),
            Mount(str(dest_archive.parent.resolve()), "/backup"),
        ]
        code = self.engine.run_ephemeral(self.helper_image, mounts, command)
        if code != 0:
            dest_archive.unlink(missing_ok=True)
            raise SnapshotError(
                f"Helper container failed to archive volume {volume_id}", {"exit_code": code}
            )
        return UnitStatus.OK

    def capture_logical_dump(self, dump: DumpSpec, dest: Path) -> bool:
        """Take a pg_dump from the live database. Failures only warn."""
        if not self.engine.container_running(dump.container):
            warn(f"{dump.container} is not running, skipping {dump.label}")
            return False
        dest.parent.mkdir(parents=True, exist_ok=True)
        say(f"Dumping schema {dump.schema} from {dump.container}...")
        if self.engine.exec_to_file(dump.container, dump.command(), dest):
            ok(f"Saved {dest.name}")
            return True
        warn(f"pg_dump of schema {dump.schema} failed (continuing)")
        return False

    # ─── Restore ──────────────────────────────────────────────────────────

    def restore_file(self, source: Path, dest: Path) -> None:
        if not source.is_file():
            raise SourceMissingError(f"File not found in backup: {source}")
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)
        except OSError as exc:
            raise SnapshotError(f"Failed to restore {dest}: {exc}") from exc

    def restore_directory(self, source: Path, dest: Path, preserve: Sequence[str] = ()) -> None:
        """Replace dest with a copy of source.

        The copy is staged next to dest and swapped in at the end, so an
        interrupted copy leaves the previous content untouched.

        Everything in dest is removed except the top-level entries named in
        `preserve`. Those are the paths excluded at capture time (the live
        `postgres_data` cluster), which a backup never holds, so they are
        carried over from the current dest rather than deleted.

        Raises:
            SourceMissingError: If source is not a directory
            SnapshotError: If the copy or the swap fails; preserved entries
                are moved back into dest first
        """
        if not source.is_dir():
            raise SourceMissingError(f"Directory not found in backup: {source}")
        staging = dest.with_name(f".{dest.name}.restoring")
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            _replace(staging)
            shutil.copytree(source, staging, symlinks=True)
        except (shutil.Error, OSError) as exc:
            shutil.rmtree(staging, ignore_errors=True)
            raise SnapshotError(f"Failed to restore {dest}: {exc}") from exc

        moved: list[str] = []
        try:
            for name in preserve:
                kept = dest / name
                if kept.exists() or kept.is_symlink():
                    _replace(staging / name)
                    kept.rename(staging / name)
                    moved.append(name)
            _replace(dest)
            staging.rename(dest)
        except OSError as exc:
            if self._put_back(staging, dest, moved):
                shutil.rmtree(staging, ignore_errors=True)
            raise SnapshotError(f"Failed to replace {dest}: {exc}") from exc

    @staticmethod
    def _put_back(staging: Path, dest: Path, names: Sequence[str]) -> bool:
        """Move preserved entries back into dest. False if any stayed behind."""
        dest.mkdir(parents=True, exist_ok=True)
        complete = True
        for name in names:
            target = dest / name
            if target.exists() or target.is_symlink():
                warn(f"Leaving {name} in {staging}: {target} already exists")
                complete = False
                continue
            (staging / name).rename(target)
        return complete

    def restore_volume(self, source_archive: Path, volume_id: str) -> None:
        """Recreate a named volume from a tar.gz produced by capture_volume.

        Raises:
            SourceMissingError: If the archive does not exist
            SnapshotError: If the archive is unreadable or extraction fails
            VolumeInUseError: If a container still uses the volume
        """
        if not source_archive.is_file():
            raise SourceMissingError(f"Volume archive not found: {source_archive}")
        self._verify_archive(source_archive)

        if self.engine.volume_exists(volume_id):
            self.engine.volume_remove(volume_id)
        self.engine.volume_create(volume_id)

        mounts = [
            Mount(volume_id, "/volume"),
            Mount(str(source_archive.parent.resolve()), "/backup", read_only=True),
        ]
        command = ["tar", "-xzf", f"/backup/{source_archive.name}", "-C", "/volume"]
        code = self.engine.run_ephemeral(self.helper_image, mounts, command)
        if code != 0:
            try:
                self.engine.volume_remove(volume_id)
            except EngineError as exc:
                warn(f"Could not remove partially restored volume {volume_id}: {exc}")
            raise SnapshotError(
                f"Helper container failed to restore volume {volume_id}", {"exit_code": code}
            )

    @staticmethod
    def _verify_archive(path: Path) -> None:
        try:
            with tarfile.open(path, "r:gz") as tar:
                for _ in tar:
                    pass
        except (tarfile.TarError, OSError, EOFError) as exc:
            raise SnapshotError(f"Archive {path.name} is not a readable tar.gz: {exc}") from exc
