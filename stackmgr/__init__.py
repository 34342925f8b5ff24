"""n8n Stack Manager library modules.

Module structure:
    - ui: Terminal colors, output functions, box drawing
    - validation: Prompts and the numbered service chooser
    - config: Constants and per-project Settings
    - errors: Exception hierarchy
    - registry: Service definitions, dependency and invalidation rules
    - project: Project root discovery and service paths
    - docker: DockerEngine, the only code that calls the docker CLI
    - health: HealthChecker for preflight checks and health polling
    - catalog: BackupCatalog for finding and resolving restore sources
    - snapshot: SnapshotEngine for capturing and restoring single units
    - sequencer: Stop sets, start order and health-gated startup
    - lock: Advisory lock on the backup root
    - operations: OperationRunner (backup, restore, start, list, supabase)
    - manager: Command line interface
"""
__version__ = "1.0.0"

# Export commonly used items from submodules
from stackmgr.ui import (
    Colors, colorize, say, ok, warn, error,
    print_header, print_menu
)
from stackmgr.validation import get_input, confirm, choose_services
from stackmgr.errors import (
    StackError, ConfigurationError, NotFoundError,
    EngineError, VolumeInUseError, SnapshotError, SourceMissingError
)
from stackmgr.registry import Service, ServiceRegistry, Selection
from stackmgr.project import Project, find_project_root
from stackmgr.docker import DockerEngine
from stackmgr.health import HealthChecker
from stackmgr.catalog import BackupCatalog
from stackmgr.snapshot import SnapshotEngine
from stackmgr.sequencer import Sequencer
from stackmgr.operations import OperationRunner, OperationReport
