"""
Tests for the backup, restore, start and supabase operations.
"""

import shutil
import tarfile
import tempfile
from datetime import datetime
from pathlib import Path

import pytest

from conftest import read_tree, write_tree
from stackmgr.errors import (
    ConfigurationError, EngineError, LockError, NotFoundError, VolumeInUseError
)
from stackmgr.lock import BackupRootLock
from stackmgr.operations import OperationReport
from stackmgr.registry import SUPABASE_AUXILIARY_SERVICES, Selection, ServiceRegistry
from stackmgr.snapshot import UnitStatus

STAMP = "2024-01-01_10-00"
T1 = datetime(2024, 1, 1, 10, 0)
T2 = datetime(2024, 1, 2, 0, 0)


def select(registry: ServiceRegistry, *names: str) -> Selection:
    return Selection.of(names, registry)


def volume_tarball(path: Path, files: dict[str, bytes]) -> Path:
    """Write a tar.gz laid out the way the helper container writes it."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.TemporaryDirectory() as staging:
        write_tree(Path(staging), files)
        with tarfile.open(path, "w:gz") as tar:
            tar.add(staging, arcname=".")
    return path


def outcome(report: OperationReport, service: str, unit: str):
    matches = [o for o in report.outcomes if o.service == service and o.unit == unit]
    assert matches, f"no outcome for {service}: {unit}"
    return matches[0]


# ============================================================================
# Backup
# ============================================================================

def test_backup_everything_writes_expected_layout(make_runner, registry, project, engine):
    engine.add_volume("n8n_n8n_data", {"config": b'{"encryptionKey": "k"}'})
    engine.containers_running.add("supabase-db")

    report = make_runner().backup(select(registry, *registry.names()), stop_first=False, bundle=False)

    assert report.exit_code == 0
    backups = project.backups_dir
    n8n = backups / "n8n" / f"n8n_backup_{STAMP}"
    assert (n8n / ".env").read_text() == "N8N_HOST=n8n.example.com\n"
    assert (n8n / "files" / "workflow.json").is_file()
    assert (n8n / "n8n_data.tar.gz").is_file()
    assert "CREATE SCHEMA n8n" in (n8n / "n8n_schema_dump.sql").read_text()

    supabase = backups / "supabase" / f"supabase_backup_{STAMP}"
    assert (supabase / "docker-compose.yml").is_file()
    assert (supabase / "volumes" / "db" / "init.sql").is_file()
    assert not (supabase / "volumes" / "postgres_data").exists()

    assert (backups / "npm" / f"npm_backup_{STAMP}" / "letsencrypt" / "live").is_dir()
    assert (backups / "cloudflared" / f"cloudflared_backup_{STAMP}" / ".env").is_file()
    assert len(report.created) == 5


def test_missing_volume_still_reports_success(make_runner, registry, project):
    """Scenario D: portainer_data does not exist at backup time."""
    report = make_runner().backup(select(registry, "portainer"), stop_first=False, bundle=False)

    folder = project.backups_dir / "portainer" / f"portainer_backup_{STAMP}"
    assert report.exit_code == 0
    assert outcome(report, "portainer", "volume portainer_data").status is UnitStatus.SKIPPED
    assert (folder / "portainer_data.tar.gz.skipped").read_text() == "Volume portainer_data skipped\n"


def test_missing_config_file_is_skipped_not_fatal(make_runner, registry, project):
    (project.root / "proxy" / "cloudflared" / ".env").unlink()

    report = make_runner().backup(select(registry, "cloudflared", "npm"), stop_first=False, bundle=False)

    assert report.exit_code == 0
    assert outcome(report, "cloudflared", ".env").status is UnitStatus.SKIPPED
    assert not (project.backups_dir / "cloudflared" / f"cloudflared_backup_{STAMP}").exists()
    assert [p.name for p in report.created] == [f"npm_backup_{STAMP}"]


def test_dump_skipped_when_database_not_running(make_runner, registry, engine):
    report = make_runner().backup(select(registry, "n8n"), stop_first=False, bundle=False)

    assert report.exit_code == 0
    assert outcome(report, "n8n", "dump of schema n8n").status is UnitStatus.SKIPPED
    assert engine.calls_of("exec") == []


def test_backup_bundle_uses_paths_relative_to_backup_root(make_runner, registry, project):
    report = make_runner().backup(select(registry, "n8n", "npm"), stop_first=False, bundle=True)

    assert report.archive == project.backups_dir / f"n8n_stack_backup_{STAMP}.tar.gz"
    with tarfile.open(report.archive, "r:gz") as tar:
        names = tar.getnames()
    assert f"n8n/n8n_backup_{STAMP}/.env" in names
    assert f"npm/npm_backup_{STAMP}/data/database.sqlite" in names
    assert not any(name.startswith("/") for name in names)


def test_backup_stops_and_restarts_previously_running_services(make_runner, registry, engine):
    engine.running = {"supabase": ["db", "kong"], "n8n": ["n8n"]}
    engine.containers_running.add("supabase-db")

    report = make_runner().backup(select(registry, "supabase"), stop_first=True, bundle=False)

    assert report.exit_code == 0
    assert engine.calls_of("down") == [("down", "n8n"), ("down", "supabase")]
    assert engine.running == {"supabase": ["db", "kong"], "n8n": ["n8n"]}
    assert report.start.started == ["supabase", "n8n"]


def test_backup_leaves_stopped_services_stopped(make_runner, registry, engine):
    engine.running = {"n8n": ["n8n"]}

    make_runner().backup(select(registry, "supabase"), stop_first=True, bundle=False)

    assert engine.calls_of("down") == [("down", "n8n")]
    assert [call for call in engine.calls_of("up") if call[1] == "supabase"] == []
    assert engine.running == {"n8n": ["n8n"]}


def test_backup_without_stop_touches_no_containers(make_runner, registry, engine):
    engine.running = {"supabase": ["db"], "n8n": ["n8n"]}

    make_runner().backup(select(registry, "supabase", "n8n"), stop_first=False, bundle=False)

    assert engine.calls_of("down") == []
    assert engine.calls_of("up") == []


def test_empty_selection_is_a_clean_cancel(make_runner, registry, project):
    report = make_runner().backup(select(registry))

    assert report.cancelled
    assert report.exit_code == 0
    assert not project.backups_dir.exists()


def test_concurrent_run_is_refused(make_runner, registry, project):
    with BackupRootLock(project.lock_file):
        with pytest.raises(LockError):
            make_runner().backup(select(registry, "npm"), stop_first=False, bundle=False)


def test_unreadable_file_fails_its_unit_and_backup_continues(make_runner, registry, project, monkeypatch):
    real_copy2 = shutil.copy2

    def refuse_cloudflared(src, dst, *args, **kwargs):
        if "cloudflared" in str(src):
            raise PermissionError(13, "Permission denied", str(src))
        return real_copy2(src, dst, *args, **kwargs)

    monkeypatch.setattr(shutil, "copy2", refuse_cloudflared)

    report = make_runner().backup(select(registry, "cloudflared", "npm"), stop_first=False, bundle=False)

    assert report.exit_code == 1
    assert [o.service for o in report.failed] == ["cloudflared"]
    assert "Permission denied" in report.failed[0].detail
    npm = project.backups_dir / "npm" / f"npm_backup_{STAMP}"
    assert (npm / "data" / "database.sqlite").is_file()


def test_failed_stop_restarts_what_was_already_stopped(make_runner, registry, engine):
    engine.running = {"supabase": ["db", "kong"], "n8n": ["n8n"]}
    engine.failing_downs.add("supabase")

    with pytest.raises(EngineError):
        make_runner().backup(select(registry, "supabase"), stop_first=True, bundle=False)

    assert engine.calls_of("down") == [("down", "n8n"), ("down", "supabase")]
    assert engine.calls_of("up") == [("up", "n8n", ("n8n",))]
    assert engine.running == {"supabase": ["db", "kong"], "n8n": ["n8n"]}


# ============================================================================
# Restore
# ============================================================================

def test_declining_confirmation_changes_nothing(make_runner, registry, project, engine, make_folder):
    """Scenario E: answering 'no' exits cleanly without touching anything."""
    make_folder(project.backups_dir, "n8n", STAMP, T1, {".env": "N8N_HOST=old\n"})
    engine.add_volume("n8n_n8n_data", {"config": b"live"})
    before = read_tree(project.root)
    volumes_before = read_tree(engine.volume_root)

    report = make_runner(answer="no").restore(select(registry, "n8n"))

    assert report.cancelled
    assert report.exit_code == 0
    assert read_tree(project.root) == before
    assert read_tree(engine.volume_root) == volumes_before
    assert engine.calls == []


def test_restore_n8n_from_folder(make_runner, registry, project, engine, make_folder):
    """Scenario A: an n8n-only backup root restores n8n."""
    folder = make_folder(project.backups_dir, "n8n", STAMP, T1, {
        ".env": "N8N_HOST=restored\n",
        "files/restored.json": "{}",
    })
    volume_tarball(folder / "n8n_data.tar.gz", {"config": b"restored-config"})
    engine.add_volume("n8n_n8n_data", {"config": b"live-config", "stale": b"x"})

    report = make_runner().restore(select(registry, "n8n"), start_after=False)

    assert report.exit_code == 0
    assert (project.root / "n8n" / ".env").read_text() == "N8N_HOST=restored\n"
    assert read_tree(project.root / "n8n" / "files") == {"restored.json": b"{}"}
    assert read_tree(engine.volume_path("n8n_n8n_data")) == {"config": b"restored-config"}
    assert engine.calls_of("down") == [("down", "n8n")]
    assert engine.calls_of("up") == []


def test_unavailable_service_cannot_be_restored(make_runner, registry, project, make_folder):
    """Scenario A: supabase has no backup, so it is refused."""
    make_folder(project.backups_dir, "n8n", STAMP, T1)

    with pytest.raises(NotFoundError):
        make_runner().restore(select(registry, "supabase"))


def test_non_interactive_restore_selects_available_services(make_runner, project, make_folder):
    make_folder(project.backups_dir, "cloudflared", STAMP, T1, {".env": "TUNNEL_TOKEN=new\n"})

    report = make_runner().restore(start_after=False)

    assert report.exit_code == 0
    assert (project.root / "proxy" / "cloudflared" / ".env").read_text() == "TUNNEL_TOKEN=new\n"


def test_restoring_supabase_stops_and_restarts_n8n(make_runner, registry, project, engine, make_folder):
    """Scenario C at the operation level."""
    make_folder(project.backups_dir, "supabase", STAMP, T1, {
        ".env": "POSTGRES_PASSWORD=restored\n",
        "docker-compose.yml": "services: {}\n",
        "volumes/db/init.sql": "restored",
    })

    report = make_runner().restore(select(registry, "supabase"), start_after=True)

    assert report.exit_code == 0
    assert engine.calls_of("down")[:2] == [("down", "n8n"), ("down", "supabase")]
    assert report.start.started == ["supabase", "n8n"]
    assert read_tree(project.root / "supabase" / "volumes") == {
        "db/init.sql": b"restored",
        "postgres_data/PG_VERSION": b"15\n",
    }


def test_restoring_n8n_leaves_running_supabase_untouched(make_runner, registry, project, engine, make_folder):
    make_folder(project.backups_dir, "n8n", STAMP, T1, {".env": "N8N_HOST=restored\n"})
    engine.running = {"supabase": ["db", "studio", "kong", "auth"], "n8n": ["n8n"]}

    report = make_runner().restore(select(registry, "n8n"), start_after=True)

    assert report.exit_code == 0
    assert report.start.started == ["n8n"]
    assert [call for call in engine.calls if call[1:2] == ("supabase",)] == []
    assert engine.running["supabase"] == ["db", "studio", "kong", "auth"]


def test_restore_from_newer_archive_cleans_scratch(make_runner, registry, project, make_folder, make_archive):
    make_folder(project.backups_dir, "n8n", STAMP, T1, {".env": "N8N_HOST=folder\n"})
    make_archive(project.backups_dir, "2024-01-02_00-00", T2, {
        "n8n": {".env": "N8N_HOST=archive\n"},
        "npm": {"data/database.sqlite": "archived"},
    })

    report = make_runner().restore(select(registry, "n8n", "npm"), start_after=False)

    assert report.exit_code == 0
    assert (project.root / "n8n" / ".env").read_text() == "N8N_HOST=archive\n"
    assert (project.root / "proxy" / "npm" / "data" / "database.sqlite").read_text() == "archived"
    assert list(project.root.glob("temp_restore_*")) == []


def test_volume_in_use_aborts_and_cleans_scratch(make_runner, registry, project, engine, make_archive, tmp_path):
    archive_src = tmp_path / "n8n_data.tar.gz"
    volume_tarball(archive_src, {"config": b"archived"})
    make_archive(project.backups_dir, STAMP, T2, {
        "n8n": {".env": "N8N_HOST=archive\n", "n8n_data.tar.gz": archive_src.read_bytes()},
    })
    engine.add_volume("n8n_n8n_data", {"config": b"live"})
    engine.in_use.add("n8n_n8n_data")

    with pytest.raises(VolumeInUseError):
        make_runner().restore(select(registry, "n8n"), start_after=False)

    assert list(project.root.glob("temp_restore_*")) == []
    assert read_tree(engine.volume_path("n8n_n8n_data")) == {"config": b"live"}


def test_skip_marker_restores_as_skipped(make_runner, registry, project, make_folder):
    make_folder(project.backups_dir, "portainer", STAMP, T1, {
        "portainer_data.tar.gz.skipped": "Volume portainer_data skipped\n",
    })

    report = make_runner().restore(select(registry, "portainer"), start_after=False)

    assert report.exit_code == 0
    skipped = outcome(report, "portainer", "volume portainer_data")
    assert skipped.status is UnitStatus.SKIPPED
    assert "did not exist" in skipped.detail


def test_backup_then_restore_round_trip(make_runner, registry, project, engine):
    engine.add_volume("n8n_n8n_data", {"config": b"original", "nodes/a.js": b"x"})
    live_files = read_tree(project.root / "n8n" / "files")
    make_runner().backup(select(registry, "n8n"), stop_first=False, bundle=False)

    write_tree(project.root / "n8n" / "files", {"workflow.json": "changed", "new.json": "{}"})
    engine.add_volume("n8n_n8n_data", {"config": b"changed"})

    report = make_runner().restore(select(registry, "n8n"), start_after=False)

    assert report.exit_code == 0
    assert read_tree(project.root / "n8n" / "files") == live_files
    assert read_tree(engine.volume_path("n8n_n8n_data")) == {"config": b"original", "nodes/a.js": b"x"}


# ============================================================================
# Start / Supabase Mode / List
# ============================================================================

def test_start_pulls_in_database(make_runner, registry, engine):
    report = make_runner().start(select(registry, "n8n"))

    assert report.exit_code == 0
    assert report.start.started == ["supabase", "n8n"]


def test_start_failure_sets_exit_code(make_runner, registry, engine):
    engine.failing_projects.add("npm")
    assert make_runner().start(select(registry, "npm")).exit_code == 1


def test_docker_unavailable_is_fatal(make_runner, registry, engine):
    engine.docker_available = False
    with pytest.raises(EngineError):
        make_runner().start(select(registry, "npm"))


def test_supabase_db_only_stops_auxiliary_services(make_runner, engine):
    make_runner().supabase_mode("db-only")
    assert engine.calls_of("stop") == [("stop", "supabase", SUPABASE_AUXILIARY_SERVICES)]
    assert "db" not in SUPABASE_AUXILIARY_SERVICES


def test_supabase_full_brings_everything_up(make_runner, engine):
    make_runner().supabase_mode("full")
    assert engine.calls_of("up") == [("up", "supabase", ())]


def test_supabase_unknown_mode_rejected(make_runner):
    with pytest.raises(ConfigurationError):
        make_runner().supabase_mode("half")


def test_list_backups_shows_source(make_runner, project, make_folder, capsys):
    make_folder(project.backups_dir, "n8n", STAMP, T1)

    report = make_runner().list_backups()

    out = capsys.readouterr().out
    assert report.exit_code == 0
    assert f"n8n_backup_{STAMP}" in out
    assert "Restore source: folders" in out
