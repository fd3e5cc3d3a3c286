"""
Integration tests for loading and running a project directory.
"""

import sqlite3
import threading

import pytest
import yaml

from eltflow.exceptions import (
    ConfigError,
    CycleError,
    DuplicateNameError,
    EltflowError,
    ProjectNotFoundError,
    UnresolvedReferenceError,
)
from eltflow.models import Materialization, NodeStatus, RunStatus, TriggerKind
from eltflow.project import Project
from eltflow.runner import ProjectRunner, build_scheduler


@pytest.mark.integration
class TestProjectLoading:
    def test_missing_directory(self, tmp_path):
        with pytest.raises(ProjectNotFoundError):
            Project(tmp_path / 'nope')

    def test_find_models(self, project_dir):
        (project_dir / 'models' / 'notes.md').write_text('not a model')

        paths = Project(project_dir).find_models()

        assert [p.name for p in paths] == ['fct_orders.sql', 'int_order_totals.sql', 'stg_orders.sql']

    def test_declarations(self, project_dir):
        sources, models = Project(project_dir).load_declarations()

        assert [s.node_name for s in sources] == ['raw.orders']
        by_name = {m.name: m for m in models}
        assert sorted(by_name) == ['fct_orders', 'int_order_totals', 'stg_orders']
        assert by_name['stg_orders'].tags == ('staging',)
        assert by_name['stg_orders'].description == 'Cleaned orders'
        assert by_name['fct_orders'].materialization == Materialization.TABLE
        assert by_name['int_order_totals'].materialization == Materialization.VIEW
        assert [t.name for t in by_name['stg_orders'].tests] == [
            'unique_stg_orders_order_id',
            'not_null_stg_orders_order_id',
            'accepted_values_stg_orders_status',
        ]

    def test_inline_config_overrides_schema_file(self, project_dir):
        path = project_dir / 'models' / 'marts' / 'fct_orders.sql'
        path.write_text("{{ config(materialized='view') }}\n" + path.read_text())

        _, models = Project(project_dir).load_declarations()
        fct = next(m for m in models if m.name == 'fct_orders')
        assert fct.materialization == Materialization.VIEW
        assert 'config(' not in fct.sql

    def test_invalid_materialization(self, project_dir):
        path = project_dir / 'models' / 'marts' / 'fct_orders.sql'
        path.write_text("{{ config(materialized='incremental') }}\n" + path.read_text())

        with pytest.raises(ConfigError, match='incremental'):
            Project(project_dir).load_declarations()

    def test_model_declared_twice(self, project_dir):
        extra = {'models': [{'name': 'stg_orders', 'description': 'again'}]}
        (project_dir / 'models' / 'marts' / 'more.yml').write_text(yaml.dump(extra))

        with pytest.raises(DuplicateNameError, match='stg_orders'):
            Project(project_dir).load_declarations()

    def test_graph(self, project_dir):
        graph = Project(project_dir).load_graph()

        assert graph.topological_sort() == ['raw.orders', 'stg_orders', 'int_order_totals', 'fct_orders']
        assert graph.get_dependencies('fct_orders') == {'stg_orders', 'int_order_totals'}

    def test_unresolved_reference(self, project_dir):
        (project_dir / 'models' / 'marts' / 'rpt.sql').write_text("SELECT * FROM {{ ref('fct_order') }}")

        with pytest.raises(UnresolvedReferenceError, match='fct_order'):
            Project(project_dir).load_graph()

    def test_cycle(self, project_dir):
        (project_dir / 'models' / 'staging' / 'stg_orders.sql').write_text("SELECT * FROM {{ ref('fct_orders') }}")

        with pytest.raises(CycleError):
            Project(project_dir).load_graph()

    def test_select(self, project_dir):
        project = Project(project_dir)
        graph = project.load_graph()

        assert project.select(graph, ['tag:staging']) == {'stg_orders'}
        assert project.select(graph, ['*_orders']) == {'stg_orders', 'fct_orders'}
        assert project.select(graph, ['nothing']) == set()

    def test_scheduler_config(self, project_dir):
        config = Project(project_dir).scheduler_config()
        assert config.interval == '@daily'
        assert config.max_concurrent_models == 2
        assert config.catchup is False


@pytest.mark.integration
class TestProjectRunner:
    def test_run_once_records_history(self, project_dir):
        project = Project(project_dir)
        state_db = project.state_database()

        record = ProjectRunner(project, max_workers=2).run_once(state_db)

        assert record.status == RunStatus.SUCCESS, record.errors()
        assert record.model_statuses() == {
            'stg_orders': NodeStatus.SUCCESS,
            'int_order_totals': NodeStatus.SUCCESS,
            'fct_orders': NodeStatus.SUCCESS,
        }
        stored = state_db.get_run(record.run_id)
        assert stored.status == RunStatus.SUCCESS
        assert stored.trigger == TriggerKind.MANUAL
        assert stored.statuses() == record.statuses()

        conn = sqlite3.connect(project_dir / 'warehouse.db')
        try:
            rows = conn.execute('SELECT customer_id, order_count, total_amount FROM fct_orders ORDER BY 1').fetchall()
        finally:
            conn.close()
        assert rows == [(10, 2, 40.5), (11, 1, 40.0), (12, 1, 12.25)]

    def test_vars_filter_rows(self, project_dir):
        config_path = project_dir / 'eltflow_project.yml'
        config = yaml.safe_load(config_path.read_text())
        config['vars'] = {'min_amount': 20}
        config_path.write_text(yaml.dump(config))

        record = ProjectRunner(Project(project_dir)).run_once()

        assert record.status == RunStatus.SUCCESS
        conn = sqlite3.connect(project_dir / 'warehouse.db')
        try:
            assert conn.execute('SELECT COUNT(*) FROM stg_orders').fetchone() == (2,)
        finally:
            conn.close()

    def test_selection(self, project_dir):
        record = ProjectRunner(Project(project_dir), select=['stg_orders']).run_once()
        assert set(record.results) == {'raw.orders', 'stg_orders'}

    def test_empty_selection_fails_run(self, project_dir):
        record = ProjectRunner(Project(project_dir), select=['missing_*']).run_once()
        assert record.status == RunStatus.FAILED
        assert 'No nodes match selection' in record.error

    def test_refuses_while_run_active(self, project_dir):
        project = Project(project_dir)
        state_db = project.state_database()
        first = ProjectRunner(project).run_once(state_db)
        first.status = RunStatus.RUNNING
        state_db.save_run(first)

        with pytest.raises(EltflowError, match='--force'):
            ProjectRunner(project).run_once(state_db)

        forced = ProjectRunner(project).run_once(state_db, force=True)
        assert forced.status == RunStatus.SUCCESS

    def test_parse_error_recorded(self, project_dir):
        (project_dir / 'models' / 'marts' / 'rpt.sql').write_text("SELECT * FROM {{ ref('missing') }}")
        project = Project(project_dir)
        state_db = project.state_database()

        record = ProjectRunner(project).run_once(state_db)

        assert record.status == RunStatus.FAILED
        assert 'missing' in record.error
        assert state_db.get_run(record.run_id).status == RunStatus.FAILED


@pytest.mark.integration
class TestScheduledProject:
    def test_manual_trigger_through_scheduler(self, project_dir):
        project = Project(project_dir)
        state_db = project.state_database()
        scheduler = build_scheduler(project, state_db=state_db)

        record = scheduler.trigger_now()
        finished = scheduler.wait(record.run_id, timeout=30)

        assert finished.status == RunStatus.SUCCESS, finished.errors()
        assert state_db.get_run(record.run_id).status == RunStatus.SUCCESS
        assert scheduler.get_run_status(record.run_id) == RunStatus.SUCCESS

    def test_node_callback(self, project_dir):
        seen = []
        lock = threading.Lock()

        def on_complete(result):
            with lock:
                seen.append(result.name)

        scheduler = build_scheduler(Project(project_dir), on_node_complete=on_complete)
        record = scheduler.trigger_now()
        scheduler.wait(record.run_id, timeout=30)

        assert sorted(seen) == ['fct_orders', 'int_order_totals', 'raw.orders', 'stg_orders']
