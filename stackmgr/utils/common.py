#!/usr/bin/env python3
"""
Shared utilities for the n8n Stack Manager.

- Environment file loading
- Docker compose command building
"""
from __future__ import annotations

from pathlib import Path


# ─── Environment Loading ──────────────────────────────────────────────────────

def load_env(path: Path) -> dict[str, str]:
    """Load variables from a .env file, returning them as a dict.

    Missing files yield an empty dict. Blank lines, comments and lines
    without '=' are ignored; surrounding quotes on values are stripped.
    """
    env: dict[str, str] = {}
    if not path.exists():
        return env
    for line in path.read_text().splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in "\"'":
            value = value[1:-1]
        env[key.strip()] = value
    return env


# ─── Docker Compose Helpers ───────────────────────────────────────────────────

def docker_compose_cmd(project_name: str, compose_file: Path, *args: str) -> list[str]:
    """Build a docker compose command with project name.

    Args:
        project_name: Docker compose project name (e.g., "supabase")
        compose_file: Path to docker-compose.yml
        *args: Additional arguments to pass to docker compose

    Returns:
        List of command arguments ready for subprocess
    """
    cmd = [
        "docker", "compose",
        "--project-name", project_name,
        "-f", str(compose_file),
    ]
    cmd.extend(args)
    return cmd
