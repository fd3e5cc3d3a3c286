# tests/conftest.py
"""
Shared pytest configuration and fixtures for the eltflow test suite.
"""

import logging
import sqlite3
import threading
import time
from datetime import UTC, datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import pytest
import yaml

from eltflow.connection import SqliteConnection, WarehouseConnection
from eltflow.exceptions import WarehouseError
from eltflow.materialize import SqliteDialect
from eltflow.models import Materialization, Model, Severity, Source, TestKind, TestSpec

logging.basicConfig(level=logging.INFO)


ORDERS_ROWS = [
    (1, 10, 'shipped', 25.0),
    (2, 10, 'shipped', 15.5),
    (3, 11, 'pending', 40.0),
    (4, 12, 'returned', 12.25),
]


def seed_orders(db_path: Path, rows: Iterable[tuple] = ORDERS_ROWS) -> None:
    """Create the raw ``orders`` table the sample models read from."""
    conn = sqlite3.connect(db_path)
    conn.execute('DROP TABLE IF EXISTS orders')
    conn.execute('CREATE TABLE orders (o_orderkey INTEGER, o_custkey INTEGER, o_status TEXT, o_amount REAL)')
    conn.executemany('INSERT INTO orders VALUES (?, ?, ?, ?)', list(rows))
    conn.commit()
    conn.close()


class RecordingConnection(WarehouseConnection):
    """In-memory stand-in for a warehouse that records every statement.

    Statements containing a ``fail_on`` marker raise WarehouseError. Test queries
    containing a ``test_failures`` marker report that many failing rows.
    """

    dialect = SqliteDialect()

    def __init__(
        self,
        fail_on: Iterable[str] = (),
        test_failures: Optional[Dict[str, int]] = None,
        delay: float = 0.0,
    ):
        super().__init__(schema='main')
        self.fail_on = list(fail_on)
        self.test_failures = dict(test_failures or {})
        self.delay = delay
        self.statements: List[str] = []
        self.connect_calls = 0
        self._lock = threading.Lock()

    def connect(self) -> None:
        self.connect_calls += 1
        self._is_connected = True

    def close(self) -> None:
        self._is_connected = False

    def execute(self, sql: str) -> None:
        if self.delay:
            time.sleep(self.delay)
        with self._lock:
            self.statements.append(sql)
        for marker in self.fail_on:
            if marker in sql:
                raise WarehouseError(f'simulated failure on {marker}')

    def query(self, sql: str) -> List[tuple]:
        with self._lock:
            self.statements.append(sql)
        if 'sqlite_master' in sql or sql.startswith('PRAGMA'):
            return []
        for marker, failures in self.test_failures.items():
            if marker in sql:
                return [(failures,)]
        return [(0,)]

    def created(self) -> List[str]:
        """Identifiers of relations created, in order."""
        names = []
        for statement in self.statements:
            if statement.startswith('CREATE'):
                names.append(statement.split()[2].split('.')[-1])
        return names


@pytest.fixture
def recording_connection():
    return RecordingConnection()


@pytest.fixture
def orders_source():
    return Source(
        name='orders',
        schema='main',
        tests=(
            TestSpec(target='orders', kind=TestKind.UNIQUE, column='o_orderkey'),
            TestSpec(target='orders', kind=TestKind.NOT_NULL, column='o_orderkey'),
        ),
    )


@pytest.fixture
def order_models():
    """stg_orders reads the orders source, fct_orders aggregates stg_orders."""
    stg = Model(
        name='stg_orders',
        sql="SELECT o_orderkey AS order_id, o_custkey AS customer_id, o_status AS status, o_amount AS amount "
        "FROM {{ source('orders') }}",
        tests=(
            TestSpec(target='stg_orders', kind=TestKind.UNIQUE, column='order_id'),
            TestSpec(target='stg_orders', kind=TestKind.NOT_NULL, column='order_id'),
        ),
    )
    fct = Model(
        name='fct_orders',
        sql="SELECT customer_id, COUNT(*) AS order_count, SUM(amount) AS total_amount "
        "FROM {{ ref('stg_orders') }} GROUP BY customer_id",
        materialization=Materialization.TABLE,
        tests=(
            TestSpec(
                target='fct_orders',
                kind=TestKind.EXPRESSION,
                arguments={'expression': 'total_amount >= 0'},
                severity=Severity.ERROR,
            ),
        ),
    )
    return [stg, fct]


@pytest.fixture
def warehouse_path(tmp_path):
    path = tmp_path / 'warehouse.db'
    seed_orders(path)
    return path


@pytest.fixture
def warehouse(warehouse_path):
    """Connected SQLite warehouse seeded with raw orders."""
    conn = SqliteConnection(str(warehouse_path))
    conn.connect()
    yield conn
    conn.close()


class FakeClock:
    """Settable clock for scheduler tests."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 1, 5, 12, 0, tzinfo=UTC))


PROJECT_CONFIG = {
    'name': 'shop',
    'version': '1.0.0',
    'model-paths': ['models'],
    'vars': {'min_amount': 0},
    'models': {'materialized': 'view'},
    'schedule': {'interval': '@daily', 'catchup': False, 'max_concurrent_models': 2},
}

SOURCES_YML = {
    'version': 2,
    'sources': [
        {
            'name': 'raw',
            'schema': 'main',
            'tables': [
                {
                    'name': 'orders',
                    'columns': [{'name': 'o_orderkey', 'tests': ['unique', 'not_null']}],
                }
            ],
        }
    ],
    'models': [
        {
            'name': 'stg_orders',
            'description': 'Cleaned orders',
            'columns': [
                {'name': 'order_id', 'tests': ['unique', 'not_null']},
                {
                    'name': 'status',
                    'tests': [{'accepted_values': {'values': ['shipped', 'pending', 'returned']}}],
                },
            ],
        },
        {
            'name': 'fct_orders',
            'config': {'materialized': 'table'},
            'columns': [{'name': 'total_amount', 'tests': [{'expression': 'total_amount >= 0'}]}],
        },
    ],
}

STG_ORDERS_SQL = """{{ config(tags=['staging']) }}
SELECT
    o_orderkey AS order_id,
    o_custkey AS customer_id,
    o_status AS status,
    o_amount AS amount
FROM {{ source('raw', 'orders') }}
WHERE o_amount >= {{ var('min_amount') }}
"""

INT_ORDER_TOTALS_SQL = """SELECT customer_id, SUM(amount) AS total_amount
FROM {{ ref('stg_orders') }}
GROUP BY customer_id
"""

FCT_ORDERS_SQL = """SELECT
    s.customer_id,
    COUNT(*) AS order_count,
    t.total_amount
FROM {{ ref('stg_orders') }} s
JOIN {{ ref('int_order_totals') }} t ON t.customer_id = s.customer_id
GROUP BY s.customer_id, t.total_amount
"""


def write_project(root: Path, config: Optional[dict] = None) -> Path:
    """Write a small orders project rooted at ``root`` with a seeded SQLite warehouse."""
    models = root / 'models'
    (models / 'staging').mkdir(parents=True, exist_ok=True)
    (models / 'marts').mkdir(parents=True, exist_ok=True)

    (root / 'eltflow_project.yml').write_text(yaml.dump(config or PROJECT_CONFIG, sort_keys=False))
    profiles = {'target': 'dev', 'outputs': {'dev': {'type': 'sqlite', 'path': 'warehouse.db', 'schema': 'main'}}}
    (root / 'profiles.yml').write_text(yaml.dump(profiles))
    (models / 'staging' / 'schema.yml').write_text(yaml.dump(SOURCES_YML, sort_keys=False))
    (models / 'staging' / 'stg_orders.sql').write_text(STG_ORDERS_SQL)
    (models / 'marts' / 'int_order_totals.sql').write_text(INT_ORDER_TOTALS_SQL)
    (models / 'marts' / 'fct_orders.sql').write_text(FCT_ORDERS_SQL)

    seed_orders(root / 'warehouse.db')
    return root


@pytest.fixture
def project_dir(tmp_path):
    return write_project(tmp_path / 'shop')


def pytest_configure(config):
    """Configure custom pytest markers"""
    config.addinivalue_line('markers', 'unit: Unit tests (fast, no external dependencies)')
    config.addinivalue_line('markers', 'integration: Integration tests (SQLite warehouse, state store, CLI)')
    config.addinivalue_line('markers', 'snowflake: Tests requiring Snowflake')
    config.addinivalue_line('markers', 'slow: Slow tests (> 30 seconds)')


@pytest.fixture
def make_connection():
    """Factory for RecordingConnection with failure injection."""
    return RecordingConnection


@pytest.fixture
def make_project(tmp_path):
    """Factory writing a sample project; accepts an alternative eltflow_project.yml mapping."""

    def factory(name: str = 'shop', config: Optional[dict] = None) -> Path:
        return write_project(tmp_path / name, config)

    return factory
