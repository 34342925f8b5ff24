#!/usr/bin/env python3
"""
Operation runner for the n8n Stack Manager.

Implements the top-level operations (backup, restore, start, list and the
Supabase mode toggle) on top of the catalog, snapshot engine and
sequencer. Every operation returns an OperationReport; the CLI turns that
into an exit status.
"""
from __future__ import annotations

import shutil
import tarfile
import tempfile
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable, Optional

from stackmgr import validation
from stackmgr.catalog import (
    BackupCatalog,
    BackupInstance,
    ResolvedSource,
    SourceMode,
    archive_file_name,
    backup_dir_name,
)
from stackmgr.config import SCRATCH_PREFIX, TIMESTAMP_FORMAT
from stackmgr.docker import DockerEngine
from stackmgr.errors import ConfigurationError, NotFoundError, SnapshotError, SourceMissingError
from stackmgr.health import HealthChecker
from stackmgr.lock import BackupRootLock
from stackmgr.project import Project
from stackmgr.registry import (
    SUPABASE_AUXILIARY_SERVICES,
    PathKind,
    Selection,
    ServiceRegistry,
)
from stackmgr.sequencer import Sequencer, StartReport
from stackmgr.snapshot import SnapshotEngine, UnitStatus, skip_marker_path
from stackmgr.ui import Colors, colorize, error, ok, print_header, say, warn


SUPABASE_MODES = ("db-only", "full")


# ─── Reports ──────────────────────────────────────────────────────────────────

@dataclass
class UnitOutcome:
    """Result of capturing or restoring one persistence unit."""
    service: str
    unit: str
    status: UnitStatus
    detail: str = ""


@dataclass
class OperationReport:
    """Everything one operation did, used for the summary and exit code."""
    operation: str
    outcomes: list[UnitOutcome] = field(default_factory=list)
    cancelled: bool = False
    created: list[Path] = field(default_factory=list)
    archive: Optional[Path] = None
    start: Optional[StartReport] = None

    def record(self, service: str, unit: str, status: UnitStatus, detail: str = "") -> None:
        self.outcomes.append(UnitOutcome(service, unit, status, detail))

    def by_status(self, status: UnitStatus) -> list[UnitOutcome]:
        return [o for o in self.outcomes if o.status is status]

    @property
    def failed(self) -> list[UnitOutcome]:
        return self.by_status(UnitStatus.FAILED)

    @property
    def exit_code(self) -> int:
        if self.cancelled:
            return 0
        if self.failed:
            return 1
        if self.operation == "start" and self.start is not None and self.start.failed:
            return 1
        return 0


@dataclass(frozen=True)
class RestorePlan:
    selected: frozenset[str]
    source: ResolvedSource
    stop_set: frozenset[str]


# ─── Runner ───────────────────────────────────────────────────────────────────

class OperationRunner:
    """Drives operator-facing operations against one project."""

    def __init__(
        self,
        project: Project,
        registry: Optional[ServiceRegistry] = None,
        engine: Optional[DockerEngine] = None,
        *,
        interactive: bool = True,
        confirm: Callable[[str, bool], bool] = validation.confirm,
        ask: Callable[[str], str] = validation.get_input,
        choose: Optional[Callable[[list[str], str], frozenset[str]]] = None,
        now: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.project = project
        self.registry = registry or ServiceRegistry()
        self.engine = engine or DockerEngine(project.root)
        self.interactive = interactive
        self._confirm = confirm
        self._ask = ask
        self._choose = choose or self._choose_from_menu
        self._now = now

        settings = project.settings
        self.health = HealthChecker(self.engine, settings.health_timeout, settings.health_interval, sleep=sleep)
        self.catalog = BackupCatalog(self.registry, settings.archive_prefix)
        self.snapshots = SnapshotEngine(self.engine, settings.helper_image)
        self.sequencer = Sequencer(self.registry, self.engine, project, self.health)

    # ─── Prompts ──────────────────────────────────────────────────────────

    def _choose_from_menu(self, names: list[str], action: str) -> frozenset[str]:
        descriptions = {s.name: s.description for s in self.registry}
        return validation.choose_services(names, descriptions, action)

    def select(self, candidates: Iterable[str], action: str) -> Selection:
        """Ask the operator which services to act on.

        Non-interactive runs select every candidate.
        """
        names = self.registry.ordered(candidates)
        if not self.interactive:
            say(f"Selecting all services to {action}: {', '.join(names)}")
            return Selection.of(names, self.registry)
        return Selection.of(self._choose(names, action), self.registry)

    def _on_unhealthy(self, dependent: str, dependency: str) -> bool:
        if not self.interactive:
            return False
        return self._confirm(f"{dependency} is not healthy. Start {dependent} anyway?", False)

    # ─── Backup ───────────────────────────────────────────────────────────

    def backup(
        self,
        selection: Optional[Selection] = None,
        stop_first: Optional[bool] = None,
        bundle: Optional[bool] = None,
        restart: bool = True,
    ) -> OperationReport:
        """Back up the selected services into timestamped folders.

        Args:
            selection: Services to back up (prompted for when None)
            stop_first: Stop the stop set while copying (prompted for when None)
            bundle: Also write a single archive bundle (prompted for when None)
            restart: Restart whatever was stopped once capture is done

        Returns:
            OperationReport for the run

        Raises:
            EngineError: If a service fails to stop; the ones already
                stopped are restarted before it propagates
        """
        report = OperationReport("backup")
        self.health.preflight()
        if selection is None:
            selection = self.select(self.registry.names(), "back up")
        if not selection:
            warn("No services selected, nothing to back up")
            report.cancelled = True
            return report

        print_header("Stack Backup")
        names = self.registry.ordered(selection.services)
        stamp = self._now().strftime(TIMESTAMP_FORMAT)
        backups_dir = self.project.backups_dir
        folders = {name: backups_dir / name / backup_dir_name(name, stamp) for name in names}

        with BackupRootLock(self.project.lock_file):
            stop_set = self.sequencer.compute_stop_set(names)
            running = self.sequencer.running_state(stop_set)
            if stop_first is None:
                stop_first = bool(running) and self._confirm(
                    f"Stop {', '.join(self.registry.ordered(running))} while backing up?", False
                )

            # Dumps come from the live database before anything is stopped
            for name in names:
                dump = self.registry.get(name).persistence.dump
                if dump is None:
                    continue
                if self.snapshots.capture_logical_dump(dump, folders[name] / dump.filename):
                    report.record(name, dump.label, UnitStatus.OK)
                else:
                    report.record(name, dump.label, UnitStatus.SKIPPED, f"{dump.container} not available")

            stopped: list[str] = []
            try:
                if stop_first:
                    self.sequencer.stop_services(running, stopped)
                for name in names:
                    self._capture_service(name, folders[name], report)
            finally:
                if stopped and restart:
                    say("Restarting services that were running before the backup...")
                    report.start = self.sequencer.start_services(
                        stopped,
                        on_unhealthy=self._on_unhealthy,
                        compose_services={name: running[name] for name in stopped},
                        recreate=False,
                        with_dependencies=False,
                    )

            report.created = [folder for folder in folders.values() if folder.is_dir()]
            if report.created:
                if bundle is None:
                    bundle = self._confirm("Create a single archive of this backup?", False)
                if bundle:
                    self._create_bundle(report, stamp)

        self._summarize(report)
        return report

    def _capture_service(self, name: str, folder: Path, report: OperationReport) -> None:
        service = self.registry.get(name)
        source_dir = self.project.service_dir(service)
        say(f"Backing up {name}...")
        folder.mkdir(parents=True, exist_ok=True)

        for bound in service.persistence.bound_paths:
            source = source_dir / bound.path
            dest = folder / bound.path
            try:
                if bound.kind is PathKind.FILE:
                    self.snapshots.capture_file(source, dest)
                else:
                    self.snapshots.capture_directory(source, dest, bound.excludes)
            except SourceMissingError as exc:
                warn(f"{name}: {bound.label} not found, skipped")
                report.record(name, bound.label, UnitStatus.SKIPPED, str(exc))
            except SnapshotError as exc:
                error(f"{name}: backing up {bound.label} failed: {exc}")
                report.record(name, bound.label, UnitStatus.FAILED, str(exc))
            else:
                report.record(name, bound.label, UnitStatus.OK)

        volume = service.persistence.volume
        if volume is not None:
            say(f"Archiving volume {volume.volume_id}...")
            try:
                status = self.snapshots.capture_volume(
                    volume.volume_id, folder / volume.archive_name, volume.excludes
                )
            except SnapshotError as exc:
                error(f"{name}: {volume.label} failed: {exc}")
                report.record(name, volume.label, UnitStatus.FAILED, str(exc))
            else:
                detail = "volume does not exist" if status is UnitStatus.SKIPPED else ""
                report.record(name, volume.label, status, detail)

        if any(folder.iterdir()):
            ok(f"{name} backed up to {folder.relative_to(self.project.backups_dir)}")
        else:
            folder.rmdir()
            warn(f"Nothing to back up for {name}")

    def _create_bundle(self, report: OperationReport, stamp: str) -> None:
        backups_dir = self.project.backups_dir
        path = backups_dir / archive_file_name(self.project.settings.archive_prefix, stamp)
        say(f"Creating archive {path.name}...")
        try:
            with tarfile.open(path, "w:gz") as tar:
                for folder in report.created:
                    tar.add(folder, arcname=folder.relative_to(backups_dir).as_posix())
        except (tarfile.TarError, OSError) as exc:
            path.unlink(missing_ok=True)
            error(f"Creating archive failed: {exc}")
            report.record("*", "archive bundle", UnitStatus.FAILED, str(exc))
            return
        report.archive = path
        ok(f"Archive created: {path.name}")

    # ─── Restore ──────────────────────────────────────────────────────────

    def restore(
        self,
        selection: Optional[Selection] = None,
        confirmation: Optional[str] = None,
        start_after: Optional[bool] = None,
    ) -> OperationReport:
        """Restore the selected services from the authoritative source.

        Nothing on disk or in Docker changes until the operator has typed
        the literal confirmation 'yes'.

        Raises:
            NotFoundError: If no backups exist or a selected service has none
            VolumeInUseError: If a volume to restore is still attached
        """
        report = OperationReport("restore")
        self.health.preflight()
        snapshot = self.catalog.scan(self.project.backups_dir)
        source = self.catalog.resolve_source(snapshot)
        available = frozenset(source.per_service)
        self._describe_source(source)
        if not available:
            raise NotFoundError("No restorable services found in the backups")

        if selection is None:
            selection = self.select(available, "restore")
        missing = selection.services - available
        if missing:
            raise NotFoundError(
                f"No backup available for: {', '.join(self.registry.ordered(missing))}",
                {"available": self.registry.ordered(available)},
            )
        if not selection:
            warn("No services selected, nothing to restore")
            report.cancelled = True
            return report

        plan = RestorePlan(
            selected=selection.services,
            source=source,
            stop_set=self.sequencer.compute_stop_set(selection.services),
        )
        self._show_plan(plan)
        if confirmation is None:
            confirmation = self._ask("Are you absolutely sure? Type 'yes' to confirm")
        if confirmation != "yes":
            say("Restore cancelled")
            report.cancelled = True
            return report

        with BackupRootLock(self.project.lock_file):
            scratch: Optional[Path] = None
            try:
                if source.mode is SourceMode.ARCHIVE:
                    scratch = Path(tempfile.mkdtemp(prefix=SCRATCH_PREFIX, dir=self.project.root))
                instances = self.catalog.materialize(source, scratch or self.project.root)
                self.sequencer.stop_services(plan.stop_set)
                for name in self.registry.ordered(plan.selected):
                    instance = instances.get(name)
                    if instance is None:
                        error(f"{name}: no backup folder found in the extracted archive")
                        report.record(name, "backup folder", UnitStatus.FAILED, "missing from archive")
                        continue
                    self._restore_service(name, instance, report)
            finally:
                if scratch is not None:
                    shutil.rmtree(scratch, ignore_errors=True)

            if start_after is None:
                start_after = self._confirm("Start the restored services now?", True)
            if start_after:
                report.start = self.sequencer.start_services(
                    plan.stop_set, on_unhealthy=self._on_unhealthy
                )

        self._summarize(report)
        return report

    def _describe_source(self, source: ResolvedSource) -> None:
        if source.mode is SourceMode.ARCHIVE and source.archive is not None:
            say(f"Restoring from archive {source.archive.path.name} (newest backup)")
        else:
            say("Restoring from the latest backup folder of each service")
        for name in self.registry.ordered(source.per_service):
            instance = source.per_service[name]
            label = instance.label if instance is not None else "in archive"
            print(f"  {name:<12} {colorize(label, Colors.DIM)}")

    def _show_plan(self, plan: RestorePlan) -> None:
        print()
        warn("Restoring overwrites the current configuration and data of:")
        for name in self.registry.ordered(plan.selected):
            print(f"  - {name}")
        extra = plan.stop_set - plan.selected
        if extra:
            warn(f"These services will also be stopped: {', '.join(self.registry.ordered(extra))}")
        print()

    def _restore_service(self, name: str, instance: BackupInstance, report: OperationReport) -> None:
        service = self.registry.get(name)
        target = self.project.service_dir(service)
        say(f"Restoring {name} from {instance.label}...")
        target.mkdir(parents=True, exist_ok=True)

        for bound in service.persistence.bound_paths:
            source = instance.root_path / bound.path
            if not source.exists():
                warn(f"{name}: {bound.label} not in backup, skipped")
                report.record(name, bound.label, UnitStatus.SKIPPED, "not in backup")
                continue
            try:
                if bound.kind is PathKind.FILE:
                    self.snapshots.restore_file(source, target / bound.path)
                else:
                    self.snapshots.restore_directory(source, target / bound.path, bound.excludes)
            except SnapshotError as exc:
                error(f"{name}: restoring {bound.label} failed: {exc}")
                report.record(name, bound.label, UnitStatus.FAILED, str(exc))
            else:
                report.record(name, bound.label, UnitStatus.OK)

        volume = service.persistence.volume
        if volume is not None:
            archive = instance.root_path / volume.archive_name
            if not archive.exists():
                if skip_marker_path(archive).exists():
                    detail = "volume did not exist at backup time"
                else:
                    detail = "volume archive not in backup"
                warn(f"{name}: {volume.label} skipped ({detail})")
                report.record(name, volume.label, UnitStatus.SKIPPED, detail)
            else:
                say(f"Restoring volume {volume.volume_id}...")
                try:
                    self.snapshots.restore_volume(archive, volume.volume_id)
                except SnapshotError as exc:
                    error(f"{name}: restoring {volume.label} failed: {exc}")
                    report.record(name, volume.label, UnitStatus.FAILED, str(exc))
                else:
                    report.record(name, volume.label, UnitStatus.OK)

        dump = service.persistence.dump
        if dump is not None and (instance.root_path / dump.filename).exists():
            say(f"{dump.filename} is kept in {instance.label} for manual import with psql")
        ok(f"{name} restored")

    # ─── Start / Toggle ───────────────────────────────────────────────────

    def start(self, selection: Optional[Selection] = None) -> OperationReport:
        """Start services in dependency order, gating on database health."""
        report = OperationReport("start")
        self.health.preflight()
        if selection is None:
            selection = self.select(self.registry.names(), "start")
        if not selection:
            warn("No services selected, nothing to start")
            report.cancelled = True
            return report
        print_header("Starting Stack")
        report.start = self.sequencer.start_services(selection.services, on_unhealthy=self._on_unhealthy)
        self._summarize(report)
        return report

    def supabase_mode(self, mode: str) -> OperationReport:
        """Switch Supabase between database-only and full mode."""
        if mode not in SUPABASE_MODES:
            raise ConfigurationError(f"Unknown Supabase mode '{mode}'", {"modes": list(SUPABASE_MODES)})
        report = OperationReport("supabase")
        service = self.registry.get("supabase")
        if not self.project.service_dir(service).is_dir():
            raise NotFoundError(f"Supabase directory not found: {service.compose.directory}")
        self.health.preflight()
        if mode == "db-only":
            say("Stopping everything except the Supabase database...")
            self.engine.compose_stop(service.compose, *SUPABASE_AUXILIARY_SERVICES)
            ok("Supabase is running in DB-only mode")
        else:
            self.sequencer.ensure_network()
            say("Starting all Supabase services...")
            self.engine.compose_up(service.compose)
            ok("Supabase is running in full mode")
        return report

    # ─── Listing ──────────────────────────────────────────────────────────

    def list_backups(self) -> OperationReport:
        """Print the catalog and which source a restore would use."""
        snapshot = self.catalog.scan(self.project.backups_dir)
        source = self.catalog.resolve_source(snapshot)
        print_header("Available Backups")
        for name in self.registry.names():
            instance = snapshot.folders.get(name)
            if instance is None:
                print(f"  {name:<12} {colorize('none', Colors.DIM)}")
            else:
                print(f"  {name:<12} {instance.label}  ({instance.created_at:%Y-%m-%d %H:%M})")
        if snapshot.archive is not None:
            print(f"  {'archive':<12} {snapshot.archive.path.name}  ({snapshot.archive.created_at:%Y-%m-%d %H:%M})")
        print()
        say(f"Restore source: {source.mode.value}")
        say(f"Restorable services: {', '.join(self.registry.ordered(source.per_service)) or 'none'}")
        return OperationReport("list")

    # ─── Summary ──────────────────────────────────────────────────────────

    def _summarize(self, report: OperationReport) -> None:
        done = len(report.by_status(UnitStatus.OK))
        skipped = report.by_status(UnitStatus.SKIPPED)
        print()
        if report.outcomes:
            say(f"{report.operation.capitalize()}: {done} unit(s) ok, {len(skipped)} skipped, {len(report.failed)} failed")
        for outcome in skipped:
            warn(f"  skipped {outcome.service}: {outcome.unit} ({outcome.detail})")
        for outcome in report.failed:
            error(f"  failed {outcome.service}: {outcome.unit} ({outcome.detail})")
        if report.start is not None:
            if report.start.started:
                ok(f"Started: {', '.join(report.start.started)}")
            if report.start.skipped:
                warn(f"Not started: {', '.join(report.start.skipped)}")
            if report.start.failed:
                error(f"Failed to start: {', '.join(report.start.failed)}")
        if report.exit_code == 0:
            ok(f"{report.operation.capitalize()} completed")
        else:
            error(f"{report.operation.capitalize()} finished with errors")
