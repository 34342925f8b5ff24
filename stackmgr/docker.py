#!/usr/bin/env python3
"""
Docker Engine boundary for the n8n Stack Manager.

Every call to the `docker` CLI goes through DockerEngine. The rest of the
package only sees booleans, service lists and exceptions, which keeps the
orchestration logic testable without a daemon.
"""
from __future__ import annotations

import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence

from stackmgr.config import COMPOSE_FILE_NAME
from stackmgr.errors import EngineError, VolumeInUseError
from stackmgr.registry import ComposeContext
from stackmgr.utils.common import docker_compose_cmd


# Template that still yields a value for containers without a healthcheck
HEALTH_FORMAT = "{{if .State.Health}}{{.State.Health.Status}}{{else}}{{.State.Status}}{{end}}"

Runner = Callable[..., subprocess.CompletedProcess]


@dataclass(frozen=True)
class Mount:
    """A `-v source:target` mount for a helper container."""
    source: str
    target: str
    read_only: bool = False

    def as_arg(self) -> str:
        suffix = ":ro" if self.read_only else ""
        return f"{self.source}:{self.target}{suffix}"


class DockerEngine:
    """Thin wrapper over the docker CLI for one project root."""

    def __init__(self, project_root: Path, runner: Runner = subprocess.run):
        self.project_root = project_root
        self._run = runner

    # ─── Plumbing ─────────────────────────────────────────────────────────

    def _capture(self, cmd: list[str]) -> subprocess.CompletedProcess:
        return self._run(cmd, capture_output=True, text=True, check=False)

    def _compose(self, context: ComposeContext, *args: str) -> list[str]:
        directory = self.project_root / context.directory
        return docker_compose_cmd(context.name, directory / COMPOSE_FILE_NAME, *args)

    def _compose_stream(self, context: ComposeContext, *args: str) -> None:
        """Run a compose command with output going to the terminal."""
        cmd = self._compose(context, *args)
        result = self._run(cmd, cwd=str(self.project_root / context.directory), check=False)
        if result.returncode != 0:
            raise EngineError(
                f"docker compose {args[0]} failed for {context.name}",
                {"command": " ".join(cmd), "exit_code": result.returncode},
            )

    # ─── Availability ─────────────────────────────────────────────────────

    def available(self) -> bool:
        """Check the docker CLI exists and the daemon answers."""
        try:
            result = self._run(
                ["docker", "info"],
                stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, check=False
            )
        except FileNotFoundError:
            return False
        return result.returncode == 0

    def compose_available(self) -> bool:
        try:
            result = self._run(
                ["docker", "compose", "version"],
                stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL, check=False
            )
        except FileNotFoundError:
            return False
        return result.returncode == 0

    # ─── Compose ──────────────────────────────────────────────────────────

    def compose_up(self, context: ComposeContext, *services: str) -> None:
        self._compose_stream(context, "up", "-d", *services)

    def compose_down(self, context: ComposeContext) -> None:
        self._compose_stream(context, "down")

    def compose_stop(self, context: ComposeContext, *services: str) -> None:
        self._compose_stream(context, "stop", *services)

    def running_services(self, context: ComposeContext) -> list[str]:
        """Compose services of the project that are currently running."""
        directory = self.project_root / context.directory
        if not (directory / COMPOSE_FILE_NAME).exists():
            return []
        result = self._capture(
            self._compose(context, "ps", "--services", "--filter", "status=running")
        )
        if result.returncode != 0:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    # ─── Helper Containers ────────────────────────────────────────────────

    def run_ephemeral(self, image: str, mounts: Sequence[Mount], command: Sequence[str]) -> int:
        """Run a throwaway container and return its exit code."""
        cmd = ["docker", "run", "--rm"]
        for mount in mounts:
            cmd.extend(["-v", mount.as_arg()])
        cmd.append(image)
        cmd.extend(command)
        return self._capture(cmd).returncode

    def exec_to_file(self, container: str, command: Sequence[str], dest: Path) -> bool:
        """Run a command in a container, writing its stdout to dest.

        A partial output file is removed when the command fails.
        """
        with open(dest, "wb") as fh:
            result = self._run(
                ["docker", "exec", container, *command],
                stdout=fh, stderr=subprocess.DEVNULL, check=False
            )
        if result.returncode != 0:
            dest.unlink(missing_ok=True)
            return False
        return True

    # ─── Volumes ──────────────────────────────────────────────────────────

    def volume_exists(self, volume_id: str) -> bool:
        return self._capture(["docker", "volume", "inspect", volume_id]).returncode == 0

    def volume_remove(self, volume_id: str) -> None:
        result = self._capture(["docker", "volume", "rm", volume_id])
        if result.returncode == 0:
            return
        stderr = (result.stderr or "").strip()
        if "in use" in stderr:
            raise VolumeInUseError(
                f"Volume {volume_id} is in use; stop the containers using it first",
                {"stderr": stderr},
            )
        raise EngineError(f"Could not remove volume {volume_id}", {"stderr": stderr})

    def volume_create(self, volume_id: str) -> None:
        result = self._capture(["docker", "volume", "create", volume_id])
        if result.returncode != 0:
            raise EngineError(
                f"Could not create volume {volume_id}", {"stderr": (result.stderr or "").strip()}
            )

    # ─── Containers ───────────────────────────────────────────────────────

    def inspect_health(self, container: str) -> str:
        """Return the container's health status, or 'not_found'."""
        result = self._capture(["docker", "inspect", container, "--format", HEALTH_FORMAT])
        if result.returncode != 0:
            return "not_found"
        return result.stdout.strip()

    def container_running(self, container: str) -> bool:
        result = self._capture(["docker", "inspect", container, "--format", "{{.State.Running}}"])
        return result.returncode == 0 and result.stdout.strip() == "true"

    # ─── Networks ─────────────────────────────────────────────────────────

    def network_exists(self, name: str) -> bool:
        return self._capture(["docker", "network", "inspect", name]).returncode == 0

    def network_create(self, name: str) -> None:
        result = self._capture(["docker", "network", "create", name])
        if result.returncode != 0:
            raise EngineError(
                f"Could not create network {name}", {"stderr": (result.stderr or "").strip()}
            )
