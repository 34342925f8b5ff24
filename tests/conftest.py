"""
Test fixtures for the n8n Stack Manager tests.

Provides a fake Docker engine, a populated project checkout and builders
for backup roots with controlled modification times.
"""

import os
import shutil
import tarfile
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

import pytest

from stackmgr.config import Settings
from stackmgr.docker import Mount
from stackmgr.errors import EngineError, VolumeInUseError
from stackmgr.operations import OperationRunner
from stackmgr.project import Project
from stackmgr.registry import ComposeContext, ServiceRegistry


# ============================================================================
# Fake Docker Engine
# ============================================================================

class FakeEngine:
    """In-memory stand-in for DockerEngine.

    Named volumes are plain directories under `volume_root`. Helper
    container `tar` commands are carried out with tarfile so archives
    produced here are real tar.gz files.
    """

    def __init__(self, volume_root: Path):
        self.volume_root = volume_root
        self.volume_root.mkdir(parents=True, exist_ok=True)
        self.calls: list[tuple] = []
        self.running: dict[str, list[str]] = {}
        self.health: dict[str, list[str]] = {}
        self.containers_running: set[str] = set()
        self.in_use: set[str] = set()
        self.networks: set[str] = set()
        self.failing_projects: set[str] = set()
        self.failing_downs: set[str] = set()
        self.helper_exit_code = 0
        self.dump_succeeds = True
        self.docker_available = True

    # Volumes ----------------------------------------------------------------

    def volume_path(self, volume_id: str) -> Path:
        return self.volume_root / volume_id

    def add_volume(self, volume_id: str, files: dict[str, bytes]) -> Path:
        root = self.volume_path(volume_id)
        root.mkdir(parents=True, exist_ok=True)
        for rel, data in files.items():
            path = root / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)
        return root

    def volume_exists(self, volume_id: str) -> bool:
        return self.volume_path(volume_id).is_dir()

    def volume_remove(self, volume_id: str) -> None:
        self.calls.append(("volume_rm", volume_id))
        if volume_id in self.in_use:
            raise VolumeInUseError(f"Volume {volume_id} is in use")
        shutil.rmtree(self.volume_path(volume_id))

    def volume_create(self, volume_id: str) -> None:
        self.calls.append(("volume_create", volume_id))
        self.volume_path(volume_id).mkdir(parents=True, exist_ok=True)

    # Helper containers ------------------------------------------------------

    def _host_path(self, mounts: list[Mount], container_path: str) -> Path:
        for mount in mounts:
            if container_path == mount.target or container_path.startswith(mount.target + "/"):
                rel = container_path[len(mount.target):].lstrip("/")
                if mount.source.startswith("/"):
                    base = Path(mount.source)
                else:
                    base = self.volume_path(mount.source)
                    base.mkdir(parents=True, exist_ok=True)
                return base / rel if rel else base
        raise AssertionError(f"{container_path} is not mounted")

    def run_ephemeral(self, image: str, mounts, command) -> int:
        self.calls.append(("run", image, tuple(m.as_arg() for m in mounts), tuple(command)))
        if self.helper_exit_code:
            return self.helper_exit_code
        command = list(command)
        assert command[0] == "tar"
        directory = self._host_path(mounts, command[command.index("-C") + 1])
        if "-czf" in command:
            archive = self._host_path(mounts, command[command.index("-czf") + 1])
            excludes = [arg.split("=", 1)[1] for arg in command if arg.startswith("--exclude=")]

            def skip_excluded(info):
                for pattern in excludes:
                    if info.name == pattern or info.name.startswith(pattern + "/"):
                        return None
                return info

            with tarfile.open(archive, "w:gz") as tar:
                tar.add(directory, arcname=".", filter=skip_excluded)
        else:
            archive = self._host_path(mounts, command[command.index("-xzf") + 1])
            with tarfile.open(archive, "r:gz") as tar:
                tar.extractall(directory, filter="data")
        return 0

    # Compose ----------------------------------------------------------------

    def compose_up(self, context: ComposeContext, *services: str) -> None:
        self.calls.append(("up", context.name, services))
        if context.name in self.failing_projects:
            raise EngineError(f"docker compose up failed for {context.name}")
        self.running[context.name] = list(services) or ["all"]

    def compose_down(self, context: ComposeContext) -> None:
        self.calls.append(("down", context.name))
        if context.name in self.failing_downs:
            raise EngineError(f"docker compose down failed for {context.name}")
        self.running.pop(context.name, None)

    def compose_stop(self, context: ComposeContext, *services: str) -> None:
        self.calls.append(("stop", context.name, services))

    def running_services(self, context: ComposeContext) -> list[str]:
        return list(self.running.get(context.name, []))

    # Containers -------------------------------------------------------------

    def inspect_health(self, container: str) -> str:
        statuses = self.health.get(container, ["healthy"])
        return statuses.pop(0) if len(statuses) > 1 else statuses[0]

    def container_running(self, container: str) -> bool:
        return container in self.containers_running

    def exec_to_file(self, container: str, command, dest: Path) -> bool:
        self.calls.append(("exec", container, tuple(command)))
        if not self.dump_succeeds:
            return False
        dest.write_text("-- PostgreSQL database dump\nCREATE SCHEMA n8n;\n")
        return True

    # Networks / availability -------------------------------------------------

    def network_exists(self, name: str) -> bool:
        return name in self.networks

    def network_create(self, name: str) -> None:
        self.calls.append(("network_create", name))
        self.networks.add(name)

    def available(self) -> bool:
        return self.docker_available

    def compose_available(self) -> bool:
        return self.docker_available

    # Assertions -------------------------------------------------------------

    def calls_of(self, kind: str) -> list[tuple]:
        return [call for call in self.calls if call[0] == kind]


# ============================================================================
# Helpers
# ============================================================================

def write_tree(root: Path, files: dict[str, bytes | str]) -> None:
    for rel, data in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(data, str):
            data = data.encode()
        path.write_bytes(data)


def set_mtime(path: Path, when: datetime) -> None:
    stamp = when.timestamp()
    os.utime(path, (stamp, stamp))


def read_tree(root: Path) -> dict[str, bytes]:
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


STACK_FILES = {
    "supabase/.env": "POSTGRES_PASSWORD=secret\n",
    "supabase/docker-compose.yml": "services:\n  db:\n    image: supabase/postgres\n",
    "supabase/volumes/db/init.sql": "create schema n8n;\n",
    "supabase/volumes/storage/blob.bin": b"\x00\x01\x02binary",
    "supabase/volumes/postgres_data/PG_VERSION": "15\n",
    "n8n/.env": "N8N_HOST=n8n.example.com\n",
    "n8n/docker-compose.yml": "services:\n  n8n:\n    image: n8nio/n8n\n",
    "n8n/files/workflow.json": '{"name": "daily"}\n',
    "proxy/npm/docker-compose.yml": "services: {}\n",
    "proxy/npm/data/database.sqlite": b"SQLite format 3\x00",
    "proxy/npm/letsencrypt/live/example.com/cert.pem": "-----BEGIN CERTIFICATE-----\n",
    "proxy/cloudflared/.env": "TUNNEL_TOKEN=abc\n",
    "portainer/docker-compose.yml": "services: {}\n",
    "start-stack.sh": "#!/bin/bash\n",
}


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def engine(tmp_path: Path) -> FakeEngine:
    return FakeEngine(tmp_path / "docker-volumes")


@pytest.fixture
def registry() -> ServiceRegistry:
    return ServiceRegistry()


@pytest.fixture
def project(tmp_path: Path) -> Project:
    """A stack checkout with every service directory populated."""
    root = tmp_path / "stack"
    write_tree(root, STACK_FILES)
    return Project(root=root, settings=Settings(health_timeout=4, health_interval=2))


@pytest.fixture
def make_runner(project: Project, engine: FakeEngine) -> Callable[..., OperationRunner]:
    """Build a non-interactive runner with a fixed clock."""

    def factory(
        now: datetime = datetime(2024, 1, 1, 10, 0),
        answer: str = "yes",
        interactive: bool = False,
        confirm: Optional[Callable[[str, bool], bool]] = None,
    ) -> OperationRunner:
        return OperationRunner(
            project,
            engine=engine,
            interactive=interactive,
            confirm=confirm or (lambda prompt, default=False: default),
            ask=lambda prompt: answer,
            now=lambda: now,
            sleep=lambda seconds: None,
        )

    return factory


@pytest.fixture
def make_folder() -> Callable[..., Path]:
    """Create backups/<service>/<service>_backup_<stamp>/ with a given mtime."""

    def factory(backups: Path, service: str, stamp: str, mtime: datetime,
                files: Optional[dict[str, bytes | str]] = None) -> Path:
        folder = backups / service / f"{service}_backup_{stamp}"
        folder.mkdir(parents=True, exist_ok=True)
        write_tree(folder, files or {".env": f"{service}=1\n"})
        set_mtime(folder, mtime)
        return folder

    return factory


@pytest.fixture
def make_archive() -> Callable[..., Path]:
    """Create backups/n8n_stack_backup_<stamp>.tar.gz holding service folders."""

    def factory(backups: Path, stamp: str, mtime: datetime,
                contents: dict[str, dict[str, bytes | str]]) -> Path:
        backups.mkdir(parents=True, exist_ok=True)
        archive = backups / f"n8n_stack_backup_{stamp}.tar.gz"
        staging = backups.parent / f"staging-{stamp}"
        with tarfile.open(archive, "w:gz") as tar:
            for service, files in contents.items():
                folder = staging / service / f"{service}_backup_{stamp}"
                folder.mkdir(parents=True, exist_ok=True)
                write_tree(folder, files)
                tar.add(folder, arcname=f"{service}/{folder.name}")
        set_mtime(archive, mtime)
        return archive

    return factory
