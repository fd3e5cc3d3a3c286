"""eltflow - SQL model orchestration and scheduling."""

from eltflow.cadence import Cadence
from eltflow.compiler import Compiler, resolve
from eltflow.connection import ConnectionPool, SnowflakeConnection, SqliteConnection, WarehouseConnection
from eltflow.dependencies import DependencyGraph, load
from eltflow.exceptions import (
    ConfigError,
    CycleError,
    DuplicateNameError,
    EltflowError,
    MaterializationError,
    ParseError,
    ProjectNotFoundError,
    RunNotFoundError,
    TestFailure,
    UnresolvedReferenceError,
    WarehouseError,
)
from eltflow.executor import Executor
from eltflow.models import (
    Materialization,
    Model,
    NodeResult,
    NodeStatus,
    RunRecord,
    RunStatus,
    Severity,
    Source,
    TestKind,
    TestSpec,
    TriggerKind,
)
from eltflow.project import Project
from eltflow.resilience import RetryConfig
from eltflow.runner import ProjectRunner, build_scheduler
from eltflow.scheduler import Scheduler, SchedulerConfig
from eltflow.state import StateDatabase

__all__ = [
    'Cadence',
    'Compiler',
    'resolve',
    'ConnectionPool',
    'SnowflakeConnection',
    'SqliteConnection',
    'WarehouseConnection',
    'DependencyGraph',
    'load',
    'ConfigError',
    'CycleError',
    'DuplicateNameError',
    'EltflowError',
    'MaterializationError',
    'ParseError',
    'ProjectNotFoundError',
    'RunNotFoundError',
    'TestFailure',
    'UnresolvedReferenceError',
    'WarehouseError',
    'Executor',
    'Materialization',
    'Model',
    'NodeResult',
    'NodeStatus',
    'RunRecord',
    'RunStatus',
    'Severity',
    'Source',
    'TestKind',
    'TestSpec',
    'TriggerKind',
    'Project',
    'RetryConfig',
    'ProjectRunner',
    'build_scheduler',
    'Scheduler',
    'SchedulerConfig',
    'StateDatabase',
]
