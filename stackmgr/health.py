#!/usr/bin/env python3
"""
Health checking for the n8n Stack Manager.

Docker preflight checks and the bounded health poll used to gate
dependent services on startup.
"""
from __future__ import annotations

import math
import time
from typing import Callable

from stackmgr.config import DEFAULT_HEALTH_INTERVAL, DEFAULT_HEALTH_TIMEOUT
from stackmgr.docker import DockerEngine
from stackmgr.errors import EngineError
from stackmgr.ui import ok, say, warn


HEALTHY = "healthy"


class HealthChecker:
    """Polls container health through the engine."""

    def __init__(
        self,
        engine: DockerEngine,
        timeout: float = DEFAULT_HEALTH_TIMEOUT,
        interval: float = DEFAULT_HEALTH_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.engine = engine
        self.timeout = timeout
        self.interval = interval
        self._sleep = sleep

    def preflight(self) -> None:
        """Make sure docker and the compose plugin are usable.

        Raises:
            EngineError: If either is missing or the daemon is down
        """
        if not self.engine.available():
            raise EngineError("Docker is not available (is the daemon running?)")
        if not self.engine.compose_available():
            raise EngineError("Docker Compose plugin is not available")

    def wait_for_healthy(self, container: str) -> bool:
        """Poll until the container reports healthy or the timeout elapses.

        Args:
            container: Container name to inspect

        Returns:
            True if the container became healthy in time
        """
        attempts = max(1, math.ceil(self.timeout / self.interval))
        say(f"Waiting for {container} to be healthy (up to {self.timeout:g}s)...")
        status = ""
        for attempt in range(attempts):
            status = self.engine.inspect_health(container)
            if status == HEALTHY:
                ok(f"{container} is healthy")
                return True
            # No sleep after the final probe
            if attempt < attempts - 1:
                self._sleep(self.interval)
        warn(f"{container} did not become healthy within {self.timeout:g}s (last status: {status})")
        return False
