#!/usr/bin/env python3
"""
Orchestration sequencer for the n8n Stack Manager.

Decides which services to stop for an operation and in which order to
bring services back up, waiting for each dependency to become healthy
before its dependents start.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Optional, Sequence

from stackmgr.docker import DockerEngine
from stackmgr.errors import EngineError
from stackmgr.health import HealthChecker
from stackmgr.project import Project
from stackmgr.registry import Service, ServiceRegistry
from stackmgr.ui import error, ok, say, warn


# Called as on_unhealthy(dependent, dependency); True means start anyway
UnhealthyCallback = Callable[[str, str], bool]


def compute_stop_set(registry: ServiceRegistry, selected: Iterable[str]) -> frozenset[str]:
    """Selected services plus every dependent they invalidate, transitively."""
    stop = set(selected)
    pending = list(stop)
    while pending:
        name = pending.pop()
        for dependent in registry.invalidated_by(name):
            if dependent not in stop:
                stop.add(dependent)
                pending.append(dependent)
    return frozenset(stop)


def compute_start_order(registry: ServiceRegistry, selected: Iterable[str]) -> list[str]:
    """Topological start order over the selection and its dependencies.

    Declaration order breaks ties, so the result is deterministic.
    """
    needed: set[str] = set()
    pending = list(selected)
    while pending:
        name = pending.pop()
        if name in needed:
            continue
        needed.add(name)
        pending.extend(registry.dependencies_of(name))

    order: list[str] = []
    remaining = registry.ordered(needed)
    while remaining:
        for name in remaining:
            if registry.dependencies_of(name) <= set(order):
                order.append(name)
                remaining.remove(name)
                break
    return order


@dataclass
class StartReport:
    """What happened during a start sequence."""
    started: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    unhealthy: list[str] = field(default_factory=list)


def _never(dependent: str, dependency: str) -> bool:
    return False


class Sequencer:
    """Stops and starts compose projects in dependency order."""

    def __init__(
        self,
        registry: ServiceRegistry,
        engine: DockerEngine,
        project: Project,
        health: HealthChecker,
    ):
        self.registry = registry
        self.engine = engine
        self.project = project
        self.health = health

    def compute_stop_set(self, selected: Iterable[str]) -> frozenset[str]:
        return compute_stop_set(self.registry, selected)

    def compute_start_order(self, selected: Iterable[str]) -> list[str]:
        return compute_start_order(self.registry, selected)

    # ─── Running State ────────────────────────────────────────────────────

    def running_state(self, names: Iterable[str]) -> dict[str, list[str]]:
        """Map each service to the compose services it currently has running."""
        state: dict[str, list[str]] = {}
        for name in self.registry.ordered(names):
            service = self.registry.get(name)
            if not self.project.service_dir(service).is_dir():
                continue
            running = self.engine.running_services(service.compose)
            if running:
                state[name] = running
        return state

    # ─── Stop ─────────────────────────────────────────────────────────────

    def stop_services(self, names: Iterable[str], stopped: Optional[list[str]] = None) -> list[str]:
        """Bring services down, dependents before their dependencies.

        Args:
            names: Services to stop
            stopped: List that each service is appended to as soon as it is
                down, so callers still know what was stopped if a later
                one fails

        Returns:
            The services that were stopped, in stop order

        Raises:
            EngineError: If a compose project fails to stop
        """
        names = set(names)
        if stopped is None:
            stopped = []
        for name in reversed(self.compute_start_order(names)):
            if name not in names:
                continue
            service = self.registry.get(name)
            if not self.project.service_dir(service).is_dir():
                warn(f"Skipping stop of {name} (directory not found)")
                continue
            say(f"Stopping {name}...")
            self.engine.compose_down(service.compose)
            stopped.append(name)
        return stopped

    # ─── Start ────────────────────────────────────────────────────────────

    def ensure_network(self) -> None:
        network = self.project.settings.network_name
        if not self.engine.network_exists(network):
            say(f"Creating Docker network {network}...")
            self.engine.network_create(network)

    def start_services(
        self,
        selected: Iterable[str],
        on_unhealthy: Optional[UnhealthyCallback] = None,
        compose_services: Optional[Mapping[str, Sequence[str]]] = None,
        recreate: bool = True,
        with_dependencies: bool = True,
    ) -> StartReport:
        """Start the selection in dependency order with health gating.

        Args:
            selected: Services to start; dependencies that are down are
                pulled in and brought up with only their dependency subset,
                running ones are left as they are and only health-gated
            on_unhealthy: Decides whether a dependent starts after its
                dependency timed out on health; defaults to skipping
            compose_services: Per service, the exact compose services to
                bring up (empty means all)
            recreate: Run `compose down` before `compose up`
            with_dependencies: Also start dependencies that were not selected

        Returns:
            StartReport describing the outcome per service
        """
        selected = set(selected)
        decide = on_unhealthy or _never
        overrides = dict(compose_services or {})
        report = StartReport()
        order = self.compute_start_order(selected)
        if not with_dependencies:
            order = [name for name in order if name in selected]
        if not order:
            return report

        self.ensure_network()
        for index, name in enumerate(order):
            service = self.registry.get(name)

            blocked = [d for d in service.depends_on if d in report.failed or d in report.skipped]
            if blocked:
                error(f"Cannot start {name}: {', '.join(sorted(blocked))} did not start")
                report.skipped.append(name)
                continue
            sick = [d for d in service.depends_on if d in report.unhealthy]
            if any(not decide(name, dep) for dep in sorted(sick)):
                warn(f"Skipping {name}: {', '.join(sorted(sick))} is not healthy")
                report.skipped.append(name)
                continue

            if name not in selected and self._already_running(service):
                say(f"{name} is already running, leaving it as it is")
            else:
                if name in overrides:
                    services = tuple(overrides[name])
                elif name not in selected:
                    services = service.compose.dependency_services
                else:
                    services = ()
                if not self._start_one(name, services, recreate):
                    report.failed.append(name)
                    continue
                report.started.append(name)

            dependents_pending = any(name in self.registry.dependencies_of(n) for n in order[index + 1:])
            container = service.compose.health_container
            if container and dependents_pending and not self.health.wait_for_healthy(container):
                report.unhealthy.append(name)
        return report

    def _already_running(self, service: Service) -> bool:
        if not self.project.service_dir(service).is_dir():
            return False
        return bool(self.engine.running_services(service.compose))

    def _start_one(self, name: str, services: Sequence[str], recreate: bool) -> bool:
        service = self.registry.get(name)
        if not self.project.service_dir(service).is_dir():
            error(f"Skipping {name} (directory not found: {service.compose.directory})")
            return False
        suffix = f" ({', '.join(services)})" if services else ""
        say(f"Starting {name}{suffix}...")
        try:
            if recreate:
                try:
                    self.engine.compose_down(service.compose)
                except EngineError as exc:
                    warn(f"compose down for {name} failed, starting anyway: {exc}")
            self.engine.compose_up(service.compose, *services)
        except EngineError as exc:
            error(f"Failed to start {name}: {exc}")
            return False
        ok(f"{name} started")
        return True
