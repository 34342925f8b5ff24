#!/usr/bin/env python3
"""
Service registry for the n8n Stack Manager.

Static description of every manageable service: where its compose project
lives, what has to be captured to back it up, and which services it needs
running first. The registry is built once at startup and never mutated.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import PurePosixPath
from typing import Iterable, Iterator, Mapping, Optional

from stackmgr.errors import ConfigurationError, UnknownServiceError


# ─── Persistence Description ──────────────────────────────────────────────────

class PathKind(str, Enum):
    """How a bound path is captured."""
    FILE = "file"
    DIRECTORY = "directory"


@dataclass(frozen=True)
class BoundPath:
    """A host path (relative to the service directory) backed up as plain files."""
    path: str
    kind: PathKind
    excludes: tuple[str, ...] = ()

    @property
    def label(self) -> str:
        return f"{self.path}/" if self.kind is PathKind.DIRECTORY else self.path


@dataclass(frozen=True)
class VolumeSpec:
    """A named Docker volume archived by a helper container."""
    volume_id: str
    archive_name: str
    excludes: tuple[str, ...] = ()

    @property
    def label(self) -> str:
        return f"volume {self.volume_id}"


@dataclass(frozen=True)
class DumpSpec:
    """A logical pg_dump taken from a running database container."""
    container: str
    user: str
    database: str
    schema: str
    filename: str

    @property
    def label(self) -> str:
        return f"dump of schema {self.schema}"

    def command(self) -> list[str]:
        return ["pg_dump", "-U", self.user, "-d", self.database, f"--schema={self.schema}"]


@dataclass(frozen=True)
class Persistence:
    bound_paths: tuple[BoundPath, ...] = ()
    volume: Optional[VolumeSpec] = None
    dump: Optional[DumpSpec] = None


@dataclass(frozen=True)
class ComposeContext:
    """Where and how the engine drives a service's compose project.

    `directory` is relative to the project root. The compose project name
    defaults to the directory's last component, which is what
    `cd <dir> && docker compose ...` would use.
    """
    directory: str
    project_name: str = ""
    health_container: Optional[str] = None
    dependency_services: tuple[str, ...] = ()

    @property
    def name(self) -> str:
        return self.project_name or PurePosixPath(self.directory).name


@dataclass(frozen=True)
class Service:
    """A managed unit of the stack."""
    name: str
    description: str
    compose: ComposeContext
    persistence: Persistence = field(default_factory=Persistence)
    depends_on: frozenset[str] = frozenset()


# ─── Stack Definition ─────────────────────────────────────────────────────────

SUPABASE_DB_CONTAINER = "supabase-db"

# Everything except Postgres; stopped by `supabase db-only`
SUPABASE_AUXILIARY_SERVICES = (
    "studio", "auth", "rest", "realtime", "storage", "meta",
    "functions", "kong", "vector", "imgproxy", "supavisor",
)

DEFAULT_SERVICES: tuple[Service, ...] = (
    Service(
        name="supabase",
        description="Supabase (env, compose file, data volumes)",
        compose=ComposeContext(
            directory="supabase",
            health_container=SUPABASE_DB_CONTAINER,
            dependency_services=("vector", "db", "analytics"),
        ),
        persistence=Persistence(bound_paths=(
            BoundPath(".env", PathKind.FILE),
            BoundPath("docker-compose.yml", PathKind.FILE),
            BoundPath("volumes", PathKind.DIRECTORY, excludes=("postgres_data",)),
        )),
    ),
    Service(
        name="n8n",
        description="n8n workflow automation (env, files, volume)",
        compose=ComposeContext(directory="n8n"),
        persistence=Persistence(
            bound_paths=(
                BoundPath(".env", PathKind.FILE),
                BoundPath("files", PathKind.DIRECTORY),
            ),
            volume=VolumeSpec("n8n_n8n_data", "n8n_data.tar.gz"),
            dump=DumpSpec(
                container=SUPABASE_DB_CONTAINER,
                user="postgres",
                database="postgres",
                schema="n8n",
                filename="n8n_schema_dump.sql",
            ),
        ),
        depends_on=frozenset({"supabase"}),
    ),
    Service(
        name="npm",
        description="Nginx Proxy Manager (data, certs)",
        compose=ComposeContext(directory="proxy/npm"),
        persistence=Persistence(bound_paths=(
            BoundPath("data", PathKind.DIRECTORY),
            BoundPath("letsencrypt", PathKind.DIRECTORY),
        )),
    ),
    Service(
        name="cloudflared",
        description="Cloudflared Tunnel (env)",
        compose=ComposeContext(directory="proxy/cloudflared"),
        persistence=Persistence(bound_paths=(
            BoundPath(".env", PathKind.FILE),
        )),
    ),
    Service(
        name="portainer",
        description="Portainer (volume)",
        compose=ComposeContext(directory="portainer"),
        persistence=Persistence(volume=VolumeSpec("portainer_data", "portainer_data.tar.gz")),
    ),
)

# Restoring the key service breaks the listed running dependents
INVALIDATION_RULES: dict[str, tuple[str, ...]] = {
    "supabase": ("n8n",),
}


# ─── Registry ─────────────────────────────────────────────────────────────────

class ServiceRegistry:
    """Ordered, validated lookup over the declared services."""

    def __init__(
        self,
        services: Iterable[Service] = DEFAULT_SERVICES,
        invalidations: Mapping[str, Iterable[str]] | None = None,
    ):
        self._services: dict[str, Service] = {}
        for service in services:
            if service.name in self._services:
                raise ConfigurationError(f"Service '{service.name}' is declared twice")
            self._services[service.name] = service

        rules = INVALIDATION_RULES if invalidations is None else invalidations
        self._invalidations = {key: frozenset(value) for key, value in rules.items()}
        self._validate()

    def _validate(self) -> None:
        for service in self._services.values():
            unknown = service.depends_on - self._services.keys()
            if unknown:
                raise ConfigurationError(
                    f"Service '{service.name}' depends on unknown service(s)",
                    {"unknown": sorted(unknown)},
                )
            if service.name in service.depends_on:
                raise ConfigurationError(f"Service '{service.name}' depends on itself")

        for key, targets in self._invalidations.items():
            unknown = ({key} | targets) - self._services.keys()
            if unknown:
                raise ConfigurationError(
                    "Invalidation rule names unknown service(s)",
                    {"rule": key, "unknown": sorted(unknown)},
                )

        # Depth-first search for dependency cycles
        visiting: set[str] = set()
        done: set[str] = set()

        def visit(name: str, path: tuple[str, ...]) -> None:
            if name in done:
                return
            if name in visiting:
                cycle = " -> ".join(path + (name,))
                raise ConfigurationError(f"Dependency cycle: {cycle}")
            visiting.add(name)
            for dep in sorted(self._services[name].depends_on):
                visit(dep, path + (name,))
            visiting.discard(name)
            done.add(name)

        for name in self._services:
            visit(name, ())

    def __contains__(self, name: object) -> bool:
        return name in self._services

    def __iter__(self) -> Iterator[Service]:
        return iter(self._services.values())

    def __len__(self) -> int:
        return len(self._services)

    def list_services(self) -> list[Service]:
        """All services in declaration order."""
        return list(self._services.values())

    def names(self) -> list[str]:
        return list(self._services)

    def get(self, name: str) -> Service:
        try:
            return self._services[name]
        except KeyError:
            raise UnknownServiceError(
                f"Unknown service '{name}'", {"known": self.names()}
            ) from None

    def dependencies_of(self, name: str) -> frozenset[str]:
        return self.get(name).depends_on

    def reverse_dependencies_of(self, name: str) -> frozenset[str]:
        self.get(name)
        return frozenset(s.name for s in self._services.values() if name in s.depends_on)

    def invalidated_by(self, name: str) -> frozenset[str]:
        """Services that must not keep running while `name` is restored."""
        self.get(name)
        return self._invalidations.get(name, frozenset())

    def ordered(self, names: Iterable[str]) -> list[str]:
        """Return `names` sorted by declaration order."""
        wanted = set(names)
        for name in wanted:
            self.get(name)
        return [n for n in self._services if n in wanted]


# ─── Selection ────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Selection:
    """An explicit set of service names chosen by the operator."""
    services: frozenset[str] = frozenset()

    @classmethod
    def of(cls, names: Iterable[str], registry: ServiceRegistry) -> "Selection":
        names = frozenset(names)
        for name in names:
            registry.get(name)
        return cls(names)

    def __iter__(self) -> Iterator[str]:
        return iter(sorted(self.services))

    def __len__(self) -> int:
        return len(self.services)

    def __contains__(self, name: object) -> bool:
        return name in self.services

    def __bool__(self) -> bool:
        return bool(self.services)
