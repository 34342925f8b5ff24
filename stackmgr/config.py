"""
n8n Stack Manager - Configuration Constants

Centralized configuration for paths, Docker images, and runtime defaults.
Values marked as overridable can be changed per project in `stack.env`
or through environment variables (see Settings.load).
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from stackmgr.errors import ConfigurationError
from stackmgr.utils.common import load_env


# ─── Project Layout ───────────────────────────────────────────────────────────

# File whose presence marks the project root
PROJECT_MARKER = "start-stack.sh"

# Environment variable that bypasses project root discovery
PROJECT_ROOT_ENV = "STACK_PROJECT_ROOT"

# Optional per-project settings file (KEY=VALUE lines)
SETTINGS_FILE = "stack.env"

BACKUPS_DIR_NAME = "backups"
LOCK_FILE_NAME = ".stack.lock"
SCRATCH_PREFIX = "temp_restore_"


# ─── Backup Naming ────────────────────────────────────────────────────────────

# backups/<service>/<service>_backup_<timestamp>/
BACKUP_DIR_INFIX = "_backup_"
TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M"

# backups/<prefix>_backup_<timestamp>.tar.gz
DEFAULT_ARCHIVE_PREFIX = "n8n_stack"
ARCHIVE_SUFFIX = ".tar.gz"

# Written next to a volume archive when the volume does not exist
SKIP_MARKER_SUFFIX = ".skipped"


# ─── Docker ───────────────────────────────────────────────────────────────────

DEFAULT_HELPER_IMAGE = "alpine:latest"
DEFAULT_NETWORK_NAME = "n8n-stack-network"
COMPOSE_FILE_NAME = "docker-compose.yml"


# ─── Health Gating ────────────────────────────────────────────────────────────

DEFAULT_HEALTH_TIMEOUT = 60   # seconds
DEFAULT_HEALTH_INTERVAL = 2   # seconds


# ─── Application Metadata ─────────────────────────────────────────────────────

APP_NAME = "n8n Stack Manager"
APP_VERSION = "1.0.0"
APP_DESCRIPTION = "Backup, restore and ordered startup for the n8n self-hosted stack"


# ─── Runtime Settings ─────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Settings:
    """Effective settings for one run."""
    helper_image: str = DEFAULT_HELPER_IMAGE
    network_name: str = DEFAULT_NETWORK_NAME
    archive_prefix: str = DEFAULT_ARCHIVE_PREFIX
    health_timeout: float = DEFAULT_HEALTH_TIMEOUT
    health_interval: float = DEFAULT_HEALTH_INTERVAL
    backups_dir_name: str = BACKUPS_DIR_NAME

    @classmethod
    def load(cls, project_root: Path | None = None, environ: dict[str, str] | None = None) -> "Settings":
        """Build settings from `<root>/stack.env` overlaid by the process environment.

        Process environment wins over the settings file, matching how the
        per-instance .env files are layered elsewhere in the stack.
        """
        values: dict[str, str] = {}
        if project_root is not None:
            values.update(load_env(project_root / SETTINGS_FILE))
        values.update(environ if environ is not None else os.environ)

        def number(key: str, default: float) -> float:
            raw = values.get(key, "")
            if not raw:
                return default
            try:
                parsed = float(raw)
            except ValueError:
                raise ConfigurationError(f"{key} must be a number, got {raw!r}")
            if parsed <= 0:
                raise ConfigurationError(f"{key} must be positive, got {raw!r}")
            return parsed

        return cls(
            helper_image=values.get("STACK_HELPER_IMAGE") or DEFAULT_HELPER_IMAGE,
            network_name=values.get("STACK_NETWORK") or DEFAULT_NETWORK_NAME,
            archive_prefix=values.get("STACK_ARCHIVE_PREFIX") or DEFAULT_ARCHIVE_PREFIX,
            health_timeout=number("STACK_HEALTH_TIMEOUT", DEFAULT_HEALTH_TIMEOUT),
            health_interval=number("STACK_HEALTH_INTERVAL", DEFAULT_HEALTH_INTERVAL),
            backups_dir_name=values.get("STACK_BACKUPS_DIR") or BACKUPS_DIR_NAME,
        )
