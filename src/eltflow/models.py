"""Data models for eltflow."""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


class Materialization(str, Enum):
    VIEW = 'view'
    TABLE = 'table'


class TestKind(str, Enum):
    """Generic data-quality test kinds."""

    __test__ = False

    UNIQUE = 'unique'
    NOT_NULL = 'not_null'
    ACCEPTED_VALUES = 'accepted_values'
    EXPRESSION = 'expression'


class Severity(str, Enum):
    ERROR = 'error'
    WARN = 'warn'


class NodeStatus(str, Enum):
    """Per-node outcome within a run."""

    PENDING = 'pending'
    RUNNING = 'running'
    SUCCESS = 'success'
    FAILED = 'failed'
    FAILED_TEST = 'failed_test'
    SKIPPED = 'skipped'
    CANCELLED = 'cancelled'

    @property
    def is_terminal(self) -> bool:
        return self not in (NodeStatus.PENDING, NodeStatus.RUNNING)


class RunStatus(str, Enum):
    """Status of a whole run (and of the schedule slot it belongs to)."""

    PENDING = 'pending'
    RUNNING = 'running'
    SUCCESS = 'success'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.SUCCESS, RunStatus.FAILED)


class TriggerKind(str, Enum):
    SCHEDULED = 'scheduled'
    MANUAL = 'manual'


@dataclass(frozen=True)
class Relation:
    """Physical location of a table or view in the warehouse."""

    identifier: str
    schema: Optional[str] = None
    database: Optional[str] = None

    def render(self) -> str:
        """Render as a dot-qualified name, omitting empty parts."""
        parts = [p for p in (self.database, self.schema, self.identifier) if p]
        return '.'.join(parts)

    def __str__(self) -> str:
        return self.render()


@dataclass(frozen=True)
class TestSpec:
    """A data-quality check attached to a column of a model or source."""

    __test__ = False

    target: str
    kind: TestKind
    column: Optional[str] = None
    arguments: Dict[str, Any] = field(default_factory=dict, hash=False)
    severity: Severity = Severity.ERROR

    @property
    def name(self) -> str:
        suffix = f'_{self.column}' if self.column else ''
        return f'{self.kind.value}_{self.target}{suffix}'


@dataclass(frozen=True)
class Source:
    """An externally owned table that models read from but never create."""

    name: str
    source_name: str = ''
    database: Optional[str] = None
    schema: Optional[str] = None
    identifier: Optional[str] = None
    tests: Tuple[TestSpec, ...] = ()
    description: Optional[str] = None
    path: Optional[str] = None

    kind = 'source'

    @property
    def node_name(self) -> str:
        return f'{self.source_name}.{self.name}' if self.source_name else self.name

    @property
    def relation(self) -> Relation:
        return Relation(identifier=self.identifier or self.name, schema=self.schema, database=self.database)


@dataclass
class ModelConfig:
    """Configuration for a single model.

    Unset fields (None) fall through to the next configuration layer.
    """

    materialized: Optional[str] = None
    continue_on_test_failure: Optional[bool] = None
    enabled: Optional[bool] = None
    description: Optional[str] = None
    tags: Optional[List[str]] = None

    def merged_over(self, base: 'ModelConfig') -> 'ModelConfig':
        """Return a config where this config's set fields override ``base``."""
        return ModelConfig(
            materialized=self.materialized if self.materialized is not None else base.materialized,
            continue_on_test_failure=self.continue_on_test_failure
            if self.continue_on_test_failure is not None
            else base.continue_on_test_failure,
            enabled=self.enabled if self.enabled is not None else base.enabled,
            description=self.description if self.description is not None else base.description,
            tags=self.tags if self.tags is not None else base.tags,
        )


@dataclass(frozen=True)
class Model:
    """A named SQL transformation, immutable once loaded."""

    name: str
    sql: str
    materialization: Materialization = Materialization.VIEW
    tests: Tuple[TestSpec, ...] = ()
    continue_on_test_failure: bool = False
    description: Optional[str] = None
    tags: Tuple[str, ...] = ()
    enabled: bool = True
    path: Optional[str] = None

    kind = 'model'

    @property
    def node_name(self) -> str:
        return self.name


@dataclass
class TestResult:
    """Outcome of evaluating one TestSpec."""

    __test__ = False

    name: str
    kind: str
    column: Optional[str]
    severity: str
    passed: bool
    failures: int = 0
    error: Optional[str] = None


@dataclass
class NodeResult:
    """Outcome of one node within a run."""

    name: str
    kind: str
    status: NodeStatus = NodeStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    sql: Optional[str] = None
    error: Optional[str] = None
    test_results: List[TestResult] = field(default_factory=list)

    @property
    def duration(self) -> Optional[float]:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


@dataclass
class RunRecord:
    """One execution attempt of the whole graph.

    Created at trigger time, mutated by the executor while the run is active,
    then kept as history.
    """

    run_id: str = field(default_factory=new_run_id)
    trigger: TriggerKind = TriggerKind.MANUAL
    logical_date: Optional[datetime] = None
    triggered_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    status: RunStatus = RunStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    results: Dict[str, NodeResult] = field(default_factory=dict)
    error: Optional[str] = None

    def statuses(self) -> Dict[str, NodeStatus]:
        """Terminal status of every node, sources included."""
        return {name: result.status for name, result in self.results.items()}

    def model_statuses(self) -> Dict[str, NodeStatus]:
        return {name: r.status for name, r in self.results.items() if r.kind == 'model'}

    def errors(self) -> Dict[str, str]:
        """Error detail per node, for every node that recorded one."""
        return {name: r.error for name, r in self.results.items() if r.error}

    @property
    def succeeded(self) -> bool:
        return self.status == RunStatus.SUCCESS
