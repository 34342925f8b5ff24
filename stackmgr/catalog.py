#!/usr/bin/env python3
"""
Backup catalog for the n8n Stack Manager.

Finds what can be restored from a backup root. Two kinds of backup live
side by side under `backups/`:

    backups/<service>/<service>_backup_<YYYY-MM-DD_HH-MM>/   standalone folders
    backups/<prefix>_backup_<YYYY-MM-DD_HH-MM>.tar.gz        archive bundles

The newest archive wins only when it is strictly newer than every
standalone folder; otherwise each service restores from its own latest
folder.
"""
from __future__ import annotations

import tarfile
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Optional

from stackmgr.config import (
    ARCHIVE_SUFFIX,
    BACKUP_DIR_INFIX,
    DEFAULT_ARCHIVE_PREFIX,
    TIMESTAMP_FORMAT,
)
from stackmgr.errors import NotFoundError, SnapshotError
from stackmgr.registry import ServiceRegistry
from stackmgr.ui import say


# ─── Data Structures ──────────────────────────────────────────────────────────

class SourceMode(str, Enum):
    ARCHIVE = "archive"
    FOLDERS = "folders"


class InstanceKind(str, Enum):
    FOLDER = "folder"
    EXTRACTED = "extractedFromArchive"


@dataclass(frozen=True)
class BackupInstance:
    """One service's backup directory."""
    service_name: str
    created_at: datetime
    root_path: Path
    kind: InstanceKind = InstanceKind.FOLDER

    @property
    def label(self) -> str:
        return self.root_path.name

    @property
    def stamp(self) -> Optional[datetime]:
        """Timestamp encoded in the directory name, if it parses."""
        return parse_backup_timestamp(self.root_path.name)


@dataclass
class ArchiveBundle:
    """A single tar.gz holding several services' backup folders."""
    path: Path
    created_at: datetime
    contained_services: Optional[frozenset[str]] = None


@dataclass(frozen=True)
class CatalogSnapshot:
    """Result of scanning a backup root."""
    backup_root: Path
    folders: dict[str, BackupInstance] = field(default_factory=dict)
    archive: Optional[ArchiveBundle] = None

    @property
    def latest_folder_time(self) -> Optional[datetime]:
        if not self.folders:
            return None
        return max(instance.created_at for instance in self.folders.values())


@dataclass(frozen=True)
class ResolvedSource:
    """The authoritative restore source.

    In archive mode every entry of `per_service` is None until the bundle
    has been extracted by BackupCatalog.materialize.
    """
    mode: SourceMode
    per_service: dict[str, Optional[BackupInstance]]
    archive: Optional[ArchiveBundle] = None


# ─── Naming ───────────────────────────────────────────────────────────────────

def backup_dir_name(service: str, stamp: str) -> str:
    return f"{service}{BACKUP_DIR_INFIX}{stamp}"


def archive_file_name(prefix: str, stamp: str) -> str:
    return f"{prefix}{BACKUP_DIR_INFIX}{stamp}{ARCHIVE_SUFFIX}"


def parse_backup_timestamp(name: str) -> Optional[datetime]:
    """Parse the timestamp out of a backup folder or archive name."""
    if BACKUP_DIR_INFIX not in name:
        return None
    stamp = name.rsplit(BACKUP_DIR_INFIX, 1)[1]
    if stamp.endswith(ARCHIVE_SUFFIX):
        stamp = stamp[: -len(ARCHIVE_SUFFIX)]
    try:
        return datetime.strptime(stamp, TIMESTAMP_FORMAT)
    except ValueError:
        return None


def _mtime(path: Path) -> datetime:
    return datetime.fromtimestamp(path.stat().st_mtime)


def _latest(paths: list[Path]) -> Optional[Path]:
    if not paths:
        return None
    return max(paths, key=lambda p: (p.stat().st_mtime, p.name))


# ─── Catalog ──────────────────────────────────────────────────────────────────

class BackupCatalog:
    """Scans backup roots and resolves the restore source."""

    def __init__(self, registry: ServiceRegistry, archive_prefix: str = DEFAULT_ARCHIVE_PREFIX):
        self.registry = registry
        self.archive_prefix = archive_prefix

    def scan(self, backup_root: Path) -> CatalogSnapshot:
        """Find the latest folder per service and the latest archive bundle.

        Raises:
            NotFoundError: If the root is missing or holds no backups at all
        """
        if not backup_root.is_dir():
            raise NotFoundError(f"Backup directory not found: {backup_root}")

        folders: dict[str, BackupInstance] = {}
        for name in self.registry.names():
            candidates = [
                p for p in (backup_root / name).glob(f"{name}{BACKUP_DIR_INFIX}*")
                if p.is_dir()
            ]
            latest = _latest(candidates)
            if latest is not None:
                folders[name] = BackupInstance(name, _mtime(latest), latest)

        archives = [
            p for p in backup_root.glob(f"{self.archive_prefix}{BACKUP_DIR_INFIX}*{ARCHIVE_SUFFIX}")
            if p.is_file()
        ]
        latest_archive = _latest(archives)
        archive = ArchiveBundle(latest_archive, _mtime(latest_archive)) if latest_archive else None

        if not folders and archive is None:
            raise NotFoundError(f"No backups found in {backup_root}")
        return CatalogSnapshot(backup_root=backup_root, folders=folders, archive=archive)

    def resolve_source(self, snapshot: CatalogSnapshot) -> ResolvedSource:
        """Pick the archive when strictly newer than every folder, else folders."""
        archive = snapshot.archive
        latest_folder = snapshot.latest_folder_time
        if archive is not None and (latest_folder is None or archive.created_at > latest_folder):
            return ResolvedSource(
                mode=SourceMode.ARCHIVE,
                per_service={name: None for name in sorted(self.archive_services(archive))},
                archive=archive,
            )
        return ResolvedSource(mode=SourceMode.FOLDERS, per_service=dict(snapshot.folders))

    def available_services(self, snapshot: CatalogSnapshot) -> frozenset[str]:
        """Services that the resolved source can restore."""
        return frozenset(self.resolve_source(snapshot).per_service)

    def archive_services(self, archive: ArchiveBundle) -> frozenset[str]:
        """List which registered services have a backup folder inside the bundle.

        Raises:
            SnapshotError: If the archive cannot be read
        """
        if archive.contained_services is not None:
            return archive.contained_services
        found: set[str] = set()
        try:
            with tarfile.open(archive.path, "r:gz") as tar:
                for member in tar:
                    parts = PurePosixPath(member.name).parts
                    if parts and parts[0] == ".":
                        parts = parts[1:]
                    if len(parts) < 2:
                        continue
                    service, folder = parts[0], parts[1]
                    if service in self.registry and folder.startswith(f"{service}{BACKUP_DIR_INFIX}"):
                        found.add(service)
        except (tarfile.TarError, OSError, EOFError) as exc:
            raise SnapshotError(f"Cannot read archive {archive.path.name}: {exc}") from exc
        archive.contained_services = frozenset(found)
        return archive.contained_services

    def materialize(self, resolved: ResolvedSource, scratch_dir: Path) -> dict[str, BackupInstance]:
        """Turn the resolved source into concrete directories on disk.

        Folder sources are returned as-is. An archive bundle is extracted
        into `scratch_dir`, and the latest extracted folder per service is
        returned.

        Raises:
            SnapshotError: If the archive cannot be extracted
        """
        if resolved.mode is SourceMode.FOLDERS:
            return {name: inst for name, inst in resolved.per_service.items() if inst is not None}

        archive = resolved.archive
        assert archive is not None
        say(f"Extracting {archive.path.name}...")
        scratch_dir.mkdir(parents=True, exist_ok=True)
        try:
            with tarfile.open(archive.path, "r:gz") as tar:
                tar.extractall(scratch_dir, filter="data")
        except (tarfile.TarError, OSError, EOFError) as exc:
            raise SnapshotError(f"Failed to extract {archive.path.name}: {exc}") from exc

        instances: dict[str, BackupInstance] = {}
        for name in resolved.per_service:
            candidates = [
                p for p in (scratch_dir / name).glob(f"{name}{BACKUP_DIR_INFIX}*")
                if p.is_dir()
            ]
            if not candidates:
                continue
            latest = max(candidates, key=lambda p: p.name)
            instances[name] = BackupInstance(
                name, archive.created_at, latest, InstanceKind.EXTRACTED
            )
        return instances
