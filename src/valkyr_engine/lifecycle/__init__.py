"""Task lifecycle engine: project scripts, child processes and phase state."""

from .engine import TaskLifecycleEngine
from .models import (
    PHASES,
    LifecyclePhase,
    LifecyclePhaseState,
    LifecycleResult,
    PhaseStatus,
    TaskLifecycleRecord,
)
from .process import ChildProcess, ManagedProcess, ProcessSpawner, ShellProcessSpawner
from .scripts import (
    ConfigLoadError,
    LifecycleScripts,
    LifecycleScriptsService,
    ProjectConfig,
    load_project_config,
)

__all__ = [
    "ChildProcess",
    "ConfigLoadError",
    "LifecyclePhase",
    "LifecyclePhaseState",
    "LifecycleResult",
    "LifecycleScripts",
    "LifecycleScriptsService",
    "ManagedProcess",
    "PHASES",
    "PhaseStatus",
    "ProcessSpawner",
    "ProjectConfig",
    "ShellProcessSpawner",
    "TaskLifecycleEngine",
    "TaskLifecycleRecord",
    "load_project_config",
]
