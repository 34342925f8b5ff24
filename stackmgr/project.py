#!/usr/bin/env python3
"""
Project layout for the n8n Stack Manager.

Locates the stack's project root and maps services to their directories.
"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from stackmgr.config import LOCK_FILE_NAME, PROJECT_MARKER, PROJECT_ROOT_ENV, Settings
from stackmgr.errors import ProjectRootNotFoundError
from stackmgr.registry import Service


def find_project_root(start: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> Path:
    """Find the project root by walking up until the marker file is found.

    Args:
        start: Directory to start from (defaults to the current directory)
        environ: Environment to read the override variable from

    Returns:
        Absolute path of the project root

    Raises:
        ProjectRootNotFoundError: If no directory up to / holds the marker
    """
    env = os.environ if environ is None else environ
    override = env.get(PROJECT_ROOT_ENV, "")
    if override:
        root = Path(override).expanduser().resolve()
        if not root.is_dir():
            raise ProjectRootNotFoundError(
                f"{PROJECT_ROOT_ENV} points to a missing directory", {"path": str(root)}
            )
        return root

    current = (start or Path.cwd()).resolve()
    for candidate in (current, *current.parents):
        if (candidate / PROJECT_MARKER).is_file():
            return candidate
    raise ProjectRootNotFoundError(
        f"Could not find project root ({PROJECT_MARKER} not found above {current})"
    )


@dataclass
class Project:
    """A stack checkout on disk together with its effective settings."""
    root: Path
    settings: Settings = field(default_factory=Settings)

    @classmethod
    def discover(cls, start: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> "Project":
        root = find_project_root(start, environ)
        env = dict(os.environ if environ is None else environ)
        return cls(root=root, settings=Settings.load(root, env))

    @property
    def backups_dir(self) -> Path:
        return self.root / self.settings.backups_dir_name

    @property
    def lock_file(self) -> Path:
        return self.backups_dir / LOCK_FILE_NAME

    def service_dir(self, service: Service) -> Path:
        """Host directory holding the service's compose project."""
        return self.root / service.compose.directory
