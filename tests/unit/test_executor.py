"""
Unit tests for the graph executor against a recording connection.
"""

import threading
from dataclasses import replace

import pytest

from eltflow.connection import ConnectionPool
from eltflow.dependencies import load
from eltflow.exceptions import WarehouseError
from eltflow.executor import Executor
from eltflow.models import Model, NodeStatus, RunRecord, RunStatus, Severity, TestKind, TestSpec, TriggerKind
from eltflow.resilience import RetryConfig


@pytest.fixture
def graph(orders_source, order_models):
    return load([orders_source], order_models)


class TestExecutorRun:
    def test_orders_scenario(self, graph, recording_connection):
        record = Executor().run(graph, recording_connection)

        assert record.model_statuses() == {'stg_orders': NodeStatus.SUCCESS, 'fct_orders': NodeStatus.SUCCESS}
        assert record.statuses()['orders'] == NodeStatus.SUCCESS
        assert record.status == RunStatus.SUCCESS
        assert record.succeeded
        assert recording_connection.created() == ['stg_orders', 'fct_orders']

    def test_compiled_sql_uses_physical_names(self, graph, recording_connection):
        record = Executor().run(graph, recording_connection)

        assert 'FROM main.orders' in record.results['stg_orders'].sql
        assert 'FROM main.stg_orders' in record.results['fct_orders'].sql
        assert any(s.startswith('CREATE TABLE main.fct_orders AS') for s in recording_connection.statements)

    def test_test_results_recorded(self, graph, recording_connection):
        record = Executor().run(graph, recording_connection)

        names = [t.name for t in record.results['stg_orders'].test_results]
        assert names == ['unique_stg_orders_order_id', 'not_null_stg_orders_order_id']
        assert all(t.passed for t in record.results['stg_orders'].test_results)

    def test_fills_given_record(self, graph, recording_connection):
        record = RunRecord(trigger=TriggerKind.SCHEDULED)
        returned = Executor().run(graph, recording_connection, record=record)

        assert returned is record
        assert record.started_at is not None
        assert record.completed_at >= record.started_at

    def test_empty_graph(self, recording_connection):
        record = Executor().run(load([], []), recording_connection)
        assert record.status == RunStatus.SUCCESS
        assert record.results == {}

    def test_invalid_max_workers(self):
        with pytest.raises(ValueError):
            Executor(max_workers=0)


class TestFailurePropagation:
    def test_materialization_failure_skips_downstream(self, graph, make_connection):
        conn = make_connection(fail_on=['CREATE VIEW main.stg_orders'])
        record = Executor().run(graph, conn)

        assert record.model_statuses() == {'stg_orders': NodeStatus.FAILED, 'fct_orders': NodeStatus.SKIPPED}
        assert record.status == RunStatus.FAILED
        assert 'Failed to materialize stg_orders' in record.errors()['stg_orders']
        assert 'stg_orders' in record.errors()['fct_orders']
        assert 'fct_orders' not in conn.created()

    def test_independent_branch_continues(self, orders_source, order_models, make_connection):
        dim = Model(name='dim_dates', sql="SELECT '2024-01-01' AS day")
        graph = load([orders_source], [*order_models, dim])
        record = Executor().run(graph, make_connection(fail_on=['CREATE VIEW main.stg_orders']))

        assert record.statuses()['dim_dates'] == NodeStatus.SUCCESS
        assert record.statuses()['fct_orders'] == NodeStatus.SKIPPED

    def test_skip_is_transitive(self, orders_source, order_models, make_connection):
        rpt = Model(name='rpt_orders', sql="SELECT * FROM {{ ref('fct_orders') }}")
        graph = load([orders_source], [*order_models, rpt])
        record = Executor().run(graph, make_connection(fail_on=['CREATE VIEW main.stg_orders']))

        assert record.statuses()['rpt_orders'] == NodeStatus.SKIPPED

    def test_failed_test_blocks_downstream(self, graph, make_connection):
        conn = make_connection(test_failures={'main.stg_orders WHERE order_id IS NULL': 2})
        record = Executor().run(graph, conn)

        assert record.model_statuses() == {'stg_orders': NodeStatus.FAILED_TEST, 'fct_orders': NodeStatus.SKIPPED}
        failing = [t for t in record.results['stg_orders'].test_results if not t.passed]
        assert [(t.name, t.failures) for t in failing] == [('not_null_stg_orders_order_id', 2)]
        assert 'not_null_stg_orders_order_id' in record.errors()['stg_orders']

    def test_continue_on_test_failure(self, orders_source, order_models, make_connection):
        stg, fct = order_models
        graph = load([orders_source], [replace(stg, continue_on_test_failure=True), fct])
        record = Executor().run(graph, make_connection(test_failures={'main.stg_orders WHERE order_id IS NULL': 1}))

        assert record.model_statuses() == {'stg_orders': NodeStatus.FAILED_TEST, 'fct_orders': NodeStatus.SUCCESS}
        assert record.status == RunStatus.FAILED

    def test_warn_severity_does_not_fail(self, orders_source, order_models, make_connection):
        stg, fct = order_models
        warn = TestSpec(
            target='stg_orders',
            kind=TestKind.ACCEPTED_VALUES,
            column='status',
            arguments={'values': ['shipped']},
            severity=Severity.WARN,
        )
        graph = load([orders_source], [replace(stg, tests=(*stg.tests, warn)), fct])
        record = Executor().run(graph, make_connection(test_failures={"status NOT IN ('shipped')": 3}))

        assert record.status == RunStatus.SUCCESS
        warned = record.results['stg_orders'].test_results[-1]
        assert warned.passed is False
        assert warned.severity == 'warn'

    def test_source_test_failure_blocks_models(self, graph, make_connection):
        record = Executor().run(graph, make_connection(test_failures={'main.orders WHERE o_orderkey IS NULL': 1}))

        assert record.statuses()['orders'] == NodeStatus.FAILED_TEST
        assert record.model_statuses() == {'stg_orders': NodeStatus.SKIPPED, 'fct_orders': NodeStatus.SKIPPED}

    def test_test_query_error_counts_as_failure(self, graph, make_connection):
        conn = make_connection()
        original = conn.query

        def query(sql):
            if 'fct_orders WHERE' in sql:
                raise WarehouseError('no such column: total_amount')
            return original(sql)

        conn.query = query
        record = Executor().run(graph, conn)

        assert record.statuses()['fct_orders'] == NodeStatus.FAILED_TEST
        assert record.results['fct_orders'].test_results[0].error == 'no such column: total_amount'


class TestRetry:
    @staticmethod
    def fail_once(conn, prefix, message):
        """Make the first statement starting with ``prefix`` raise WarehouseError."""
        original = conn.execute
        failures = []

        def execute(sql):
            if sql.startswith(prefix) and not failures:
                failures.append(sql)
                raise WarehouseError(message)
            original(sql)

        conn.execute = execute
        return failures

    def test_transient_failure_retried(self, graph, make_connection):
        conn = make_connection()
        failures = self.fail_once(conn, 'CREATE VIEW main.stg_orders', 'database is locked')
        retry = RetryConfig(enabled=True, max_retries=2, initial_backoff_ms=1, max_backoff_ms=5, jitter=False)

        record = Executor(retry_config=retry).run(graph, conn)

        assert record.status == RunStatus.SUCCESS
        assert len(failures) == 1
        assert conn.created() == ['stg_orders', 'fct_orders']

    def test_transient_failure_not_retried_by_default(self, graph, make_connection):
        conn = make_connection()
        self.fail_once(conn, 'CREATE VIEW main.stg_orders', 'database is locked')

        record = Executor().run(graph, conn)

        assert record.statuses()['stg_orders'] == NodeStatus.FAILED
        assert 'database is locked' in record.errors()['stg_orders']


class TestIdempotence:
    def test_rerun_gives_same_statuses(self, graph, make_connection):
        conn = make_connection(fail_on=['CREATE TABLE main.fct_orders'])
        first = Executor().run(graph, conn)
        second = Executor().run(graph, conn)

        assert first.statuses() == second.statuses()
        assert first.run_id != second.run_id


class TestConcurrency:
    @pytest.fixture
    def diamond(self, orders_source):
        models = [
            Model(name='stg_orders', sql="SELECT * FROM {{ source('orders') }}"),
            Model(name='int_a', sql="SELECT * FROM {{ ref('stg_orders') }}"),
            Model(name='int_b', sql="SELECT * FROM {{ ref('stg_orders') }}"),
            Model(name='int_c', sql="SELECT * FROM {{ ref('stg_orders') }}"),
            Model(name='fct', sql="SELECT * FROM {{ ref('int_a') }}, {{ ref('int_b') }}, {{ ref('int_c') }}"),
        ]
        return load([orders_source], models)

    def test_dependencies_finish_before_dependents_start(self, diamond, make_connection):
        pool = ConnectionPool(lambda: make_connection(delay=0.05), pool_size=3)
        record = Executor(max_workers=3).run(diamond, pool)

        assert record.status == RunStatus.SUCCESS
        for name, result in record.results.items():
            for dep in diamond.get_dependencies(name):
                assert record.results[dep].completed_at <= result.started_at, f'{name} started before {dep} finished'

    def test_independent_models_overlap(self, diamond, make_connection):
        pool = ConnectionPool(lambda: make_connection(delay=0.2), pool_size=3)
        record = Executor(max_workers=3).run(diamond, pool)

        middle = [record.results[n] for n in ('int_a', 'int_b', 'int_c')]
        latest_start = max(r.started_at for r in middle)
        earliest_end = min(r.completed_at for r in middle)
        assert latest_start < earliest_end
        assert pool.size <= 3

    def test_worker_bound(self, diamond, make_connection):
        active = []
        lock = threading.Lock()

        def on_complete(result):
            with lock:
                active.append(result.name)

        pool = ConnectionPool(lambda: make_connection(delay=0.05), pool_size=2)
        record = Executor(max_workers=2).run(diamond, pool, on_node_complete=on_complete)

        assert record.status == RunStatus.SUCCESS
        assert pool.size <= 2
        assert sorted(active) == sorted(diamond.get_all_nodes())


class TestCancellation:
    def test_cancelled_before_start(self, graph, recording_connection):
        cancel_event = threading.Event()
        cancel_event.set()
        record = Executor().run(graph, recording_connection, cancel_event=cancel_event)

        assert record.status == RunStatus.FAILED
        assert record.error == 'Run cancelled'
        assert set(record.statuses().values()) == {NodeStatus.CANCELLED}
        assert recording_connection.created() == []

    def test_cancel_mid_run(self, graph, recording_connection):
        executor = Executor()

        def on_complete(result):
            if result.name == 'orders':
                executor.cancel()

        record = executor.run(graph, recording_connection, on_node_complete=on_complete)

        assert record.statuses() == {
            'orders': NodeStatus.SUCCESS,
            'stg_orders': NodeStatus.CANCELLED,
            'fct_orders': NodeStatus.CANCELLED,
        }
        assert record.status == RunStatus.FAILED
        assert recording_connection.created() == []

    def test_executor_reusable_after_cancel(self, graph, recording_connection):
        executor = Executor()
        executor.cancel()

        def on_complete(result):
            if result.name == 'orders':
                executor.cancel()

        cancelled = executor.run(graph, recording_connection, on_node_complete=on_complete)
        second = executor.run(graph, recording_connection)

        assert cancelled.status == RunStatus.FAILED
        assert second.status == RunStatus.SUCCESS
        assert set(second.statuses().values()) == {NodeStatus.SUCCESS}

    def test_cancel_sets_caller_event(self, graph, recording_connection):
        executor = Executor()
        cancel_event = threading.Event()

        def on_complete(result):
            executor.cancel()

        record = executor.run(graph, recording_connection, cancel_event=cancel_event, on_node_complete=on_complete)

        assert cancel_event.is_set()
        assert record.statuses()['stg_orders'] == NodeStatus.CANCELLED

    def test_connection_returned_after_cancel(self, graph, make_connection):
        pool = ConnectionPool(lambda: make_connection(), pool_size=1)
        cancel_event = threading.Event()

        def on_complete(result):
            cancel_event.set()

        Executor().run(graph, pool, cancel_event=cancel_event, on_node_complete=on_complete)

        with pool.acquire(timeout=1.0) as conn:
            assert conn.is_connected


class TestSelect:
    def test_select_runs_upstream_only(self, graph, recording_connection):
        record = Executor().run(graph, recording_connection, select=['stg_orders'])

        assert set(record.results) == {'orders', 'stg_orders'}
        assert recording_connection.created() == ['stg_orders']
