"""
Dependency-aware execution of a model graph.

Nodes are dispatched to a bounded ThreadPoolExecutor as soon as every node they
depend on has passed. The coordinating thread is the only writer of the
RunRecord; workers hand back a fresh NodeResult which the coordinator records.
"""

import logging
import threading
from concurrent.futures import FIRST_COMPLETED, CancelledError, Future, ThreadPoolExecutor, wait
from datetime import UTC, datetime
from typing import Callable, Dict, Iterable, List, Optional, Set, Union

from eltflow.compiler import Compiler
from eltflow.connection import ConnectionPool, WarehouseConnection
from eltflow.dependencies import DependencyGraph, Node
from eltflow.exceptions import MaterializationError, ParseError, TestFailure, WarehouseError
from eltflow.materialize import evaluate_test, materialize
from eltflow.models import Model, NodeResult, NodeStatus, Relation, RunRecord, RunStatus, Source
from eltflow.resilience import RetryConfig, call_with_retry

NodeCallback = Callable[[NodeResult], None]


def _now() -> datetime:
    return datetime.now(UTC)


class Executor:
    """
    Runs a DependencyGraph against a warehouse.

    Failure policy: a node that fails to materialize is ``failed`` and every node
    downstream of it is ``skipped``; independent branches keep running. A node
    whose error-severity tests fail is ``failed_test`` and blocks downstream
    nodes too, unless the model sets ``continue_on_test_failure``.
    """

    WAIT_INTERVAL = 0.1  # Seconds between cancellation checks while nodes are in flight

    def __init__(
        self,
        max_workers: int = 1,
        compiler: Optional[Compiler] = None,
        retry_config: Optional[RetryConfig] = None,
    ):
        if max_workers < 1:
            raise ValueError(f'max_workers must be >= 1, got {max_workers}')
        self.max_workers = max_workers
        self.compiler = compiler or Compiler()
        self.retry_config = retry_config or RetryConfig()
        self._cancel_event: Optional[threading.Event] = None
        self.logger = logging.getLogger(__name__)

    def cancel(self) -> None:
        """Stop submitting new nodes for the active run."""
        if self._cancel_event is not None:
            self._cancel_event.set()

    @staticmethod
    def relation_for(node: Node, database: Optional[str], schema: Optional[str]) -> Relation:
        if isinstance(node, Source):
            return node.relation
        return Relation(identifier=node.name, schema=schema, database=database)

    def build_relations(self, graph: DependencyGraph, pool: ConnectionPool) -> Dict[str, Relation]:
        database, schema = pool.database, pool.schema
        return {name: self.relation_for(graph.get_node(name), database, schema) for name in graph.get_all_nodes()}

    def run(
        self,
        graph: DependencyGraph,
        connection: Union[ConnectionPool, WarehouseConnection],
        record: Optional[RunRecord] = None,
        select: Optional[Iterable[str]] = None,
        cancel_event: Optional[threading.Event] = None,
        on_node_complete: Optional[NodeCallback] = None,
    ) -> RunRecord:
        """Execute every node of ``graph`` in dependency order.

        Args:
            graph: Validated dependency graph
            connection: Pool shared by the workers, or a single connection
            record: RunRecord to fill in; a manual one is created when omitted
            select: Only run these nodes and their upstream dependencies
            cancel_event: Event that cancels the run when set; ``cancel()`` sets it as well
            on_node_complete: Called from the coordinating thread as each node finishes

        Returns:
            The RunRecord, with a terminal status for every node
        """
        pool = connection if isinstance(connection, ConnectionPool) else ConnectionPool.wrap(connection)
        cancel_event = cancel_event or threading.Event()
        self._cancel_event = cancel_event
        if select is not None:
            graph = graph.select(set(select))

        record = record or RunRecord()
        record.status = RunStatus.RUNNING
        record.started_at = _now()

        order = graph.topological_sort()
        for name in order:
            record.results[name] = NodeResult(name=name, kind=graph.get_node(name).kind)

        relations = self.build_relations(graph, pool) if order else {}
        name_table = {name: relation.render() for name, relation in relations.items()}

        remaining: Dict[str, Set[str]] = {name: graph.get_dependencies(name) & set(order) for name in order}
        ready: List[str] = [name for name in order if not remaining[name]]
        in_flight: Dict[Future, str] = {}

        self.logger.info(f'Run {record.run_id}: executing {len(order)} nodes with {self.max_workers} worker(s)')

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='eltflow-worker') as pool_executor:
            while ready or in_flight:
                if cancel_event.is_set():
                    ready.clear()
                else:
                    while ready and len(in_flight) < self.max_workers:
                        name = ready.pop(0)
                        result = record.results[name]
                        result.status = NodeStatus.RUNNING
                        result.started_at = _now()
                        future = pool_executor.submit(
                            self._execute_node, graph.get_node(name), relations[name], name_table, pool, cancel_event
                        )
                        in_flight[future] = name

                if not in_flight:
                    break

                done, _ = wait(in_flight, timeout=self.WAIT_INTERVAL, return_when=FIRST_COMPLETED)
                for future in done:
                    name = in_flight.pop(future)
                    try:
                        outcome = future.result()
                    except Exception as e:
                        self.logger.error(f'Worker for {name} crashed: {e}')
                        outcome = NodeResult(name=name, kind=record.results[name].kind, status=NodeStatus.FAILED)
                        outcome.error = str(e)
                    outcome.started_at = outcome.started_at or record.results[name].started_at
                    outcome.completed_at = outcome.completed_at or _now()
                    record.results[name] = outcome
                    self._log_node(outcome)
                    if on_node_complete is not None:
                        on_node_complete(outcome)
                    self._propagate(graph, name, record, remaining, ready)

        self._finish(record, cancel_event.is_set())
        return record

    def _propagate(
        self,
        graph: DependencyGraph,
        name: str,
        record: RunRecord,
        remaining: Dict[str, Set[str]],
        ready: List[str],
    ) -> None:
        """Unblock or skip the direct dependents of a node that just finished."""
        status = record.results[name].status
        if status == NodeStatus.CANCELLED:
            return

        node = graph.get_node(name)
        passes = status == NodeStatus.SUCCESS or (
            status == NodeStatus.FAILED_TEST and isinstance(node, Model) and node.continue_on_test_failure
        )

        for dependent in sorted(graph.get_dependents(name)):
            result = record.results.get(dependent)
            if result is None or result.status != NodeStatus.PENDING:
                continue
            if passes:
                remaining[dependent].discard(name)
                if not remaining[dependent]:
                    ready.append(dependent)
            else:
                self._skip(graph, dependent, name, record)

    def _skip(self, graph: DependencyGraph, name: str, blocked_by: str, record: RunRecord) -> None:
        stack = [(name, blocked_by)]
        while stack:
            current, cause = stack.pop()
            result = record.results.get(current)
            if result is None or result.status != NodeStatus.PENDING:
                continue
            result.status = NodeStatus.SKIPPED
            result.error = f'Skipped because upstream {cause} did not succeed'
            self.logger.info(f'SKIP {current} (upstream {cause})')
            for dependent in graph.get_dependents(current):
                stack.append((dependent, cause))

    def _finish(self, record: RunRecord, cancelled: bool) -> None:
        for result in record.results.values():
            if not result.status.is_terminal:
                result.status = NodeStatus.CANCELLED
                result.error = result.error or 'Run cancelled before node started'

        record.completed_at = _now()
        unsuccessful = [name for name, r in record.results.items() if r.status != NodeStatus.SUCCESS]
        if cancelled:
            record.status = RunStatus.FAILED
            record.error = 'Run cancelled'
        elif unsuccessful:
            record.status = RunStatus.FAILED
            record.error = f'{len(unsuccessful)} node(s) did not succeed: {", ".join(sorted(unsuccessful))}'
        else:
            record.status = RunStatus.SUCCESS

        duration = (record.completed_at - record.started_at).total_seconds() if record.started_at else 0.0
        self.logger.info(f'Run {record.run_id} finished {record.status.value} in {duration:.2f}s')

    def _log_node(self, result: NodeResult) -> None:
        duration = f'{result.duration:.2f}s' if result.duration is not None else '-'
        if result.status == NodeStatus.SUCCESS:
            self.logger.info(f'OK {result.kind} {result.name} in {duration}')
        elif result.status == NodeStatus.CANCELLED:
            self.logger.warning(f'CANCELLED {result.kind} {result.name}')
        else:
            self.logger.error(f'{result.status.value.upper()} {result.kind} {result.name}: {result.error}')

    def _execute_node(
        self,
        node: Node,
        relation: Relation,
        name_table: Dict[str, str],
        pool: ConnectionPool,
        cancel_event: threading.Event,
    ) -> NodeResult:
        """Materialize one node and run its tests. Runs on a worker thread; never raises."""
        result = NodeResult(name=node.node_name, kind=node.kind, status=NodeStatus.RUNNING, started_at=_now())
        try:
            if cancel_event.is_set():
                raise CancelledError()

            if isinstance(node, Model):
                result.sql = self.compiler.resolve(node.sql, name_table, model_name=node.name, this=relation.render())
            elif not node.tests:
                result.status = NodeStatus.SUCCESS
                return result

            with pool.acquire(cancel_event=cancel_event) as conn:
                if cancel_event.is_set():
                    raise CancelledError()

                if isinstance(node, Model):
                    try:
                        call_with_retry(
                            lambda: materialize(conn, relation, result.sql, node.materialization),
                            self.retry_config,
                            f'Materializing {node.name}',
                            cancel_event,
                        )
                    except WarehouseError as e:
                        raise MaterializationError(node.name, str(e)) from e

                    if cancel_event.is_set():
                        # Materialized but not verified
                        raise CancelledError()

                self._run_tests(conn, node, relation, result)

            result.status = NodeStatus.SUCCESS
        except CancelledError:
            result.status = NodeStatus.CANCELLED
            result.error = 'Run cancelled'
        except TestFailure as e:
            result.status = NodeStatus.FAILED_TEST
            result.error = str(e)
        except (MaterializationError, ParseError, WarehouseError) as e:
            result.status = NodeStatus.FAILED
            result.error = str(e)
        finally:
            result.completed_at = _now()
        return result

    def _run_tests(self, conn: WarehouseConnection, node: Node, relation: Relation, result: NodeResult) -> None:
        """Evaluate every test on ``node``.

        Raises:
            TestFailure: If any error-severity test fails
        """
        for spec in node.tests:
            result.test_results.append(evaluate_test(conn, spec, relation.render()))

        failed = [t for t in result.test_results if not t.passed and t.severity == 'error']
        warned = [t for t in result.test_results if not t.passed and t.severity != 'error']
        for test in warned:
            self.logger.warning(f'WARN test {test.name} on {node.node_name}: {test.failures} failing row(s)')
        if failed:
            raise TestFailure(node.node_name, failed)
