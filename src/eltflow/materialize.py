"""
Materialization and data-test SQL for eltflow.

Materialization is create-or-replace: building a model twice leaves exactly one
relation behind, so runs are idempotent.
"""

import logging
import re
from typing import Any, List, Optional

from eltflow.exceptions import WarehouseError
from eltflow.models import Materialization, Relation, TestKind, TestResult, TestSpec

logger = logging.getLogger(__name__)


def quote_literal(value: Any) -> str:
    if value is None:
        return 'NULL'
    if isinstance(value, bool):
        return '1' if value else '0'
    if isinstance(value, (int, float)):
        return str(value)
    return "'" + str(value).replace("'", "''") + "'"


class Dialect:
    """SQL generation for one family of warehouses."""

    name = 'base'

    def relation_type_sql(self, relation: Relation) -> str:
        raise NotImplementedError

    def parse_relation_type(self, rows: List[tuple]) -> Optional[Materialization]:
        if not rows:
            return None
        kind = str(rows[0][0]).upper()
        return Materialization.VIEW if kind == 'VIEW' else Materialization.TABLE

    def create_schema_sql(self, relation: Relation) -> Optional[str]:
        return None

    def resolve_kind(self, connection, relation: Relation, sql: str, kind: Materialization) -> Materialization:
        """Materialization used for ``relation``: the requested one unless the warehouse cannot build it."""
        return kind

    def drop_sql(self, relation: Relation, kind: Materialization) -> str:
        return f'DROP {kind.value.upper()} IF EXISTS {relation.render()}'

    def create_statements(
        self, relation: Relation, kind: Materialization, sql: str, existing: Optional[Materialization]
    ) -> List[str]:
        raise NotImplementedError


class AnsiDialect(Dialect):
    """Warehouses with information_schema and CREATE OR REPLACE (Snowflake)."""

    name = 'ansi'

    def relation_type_sql(self, relation: Relation) -> str:
        prefix = f'{relation.database}.' if relation.database else ''
        where = [f'UPPER(table_name) = UPPER({quote_literal(relation.identifier)})']
        if relation.schema:
            where.append(f'UPPER(table_schema) = UPPER({quote_literal(relation.schema)})')
        return f'SELECT table_type FROM {prefix}information_schema.tables WHERE {" AND ".join(where)}'

    def create_schema_sql(self, relation: Relation) -> Optional[str]:
        if not relation.schema:
            return None
        prefix = f'{relation.database}.' if relation.database else ''
        return f'CREATE SCHEMA IF NOT EXISTS {prefix}{relation.schema}'

    def create_statements(
        self, relation: Relation, kind: Materialization, sql: str, existing: Optional[Materialization]
    ) -> List[str]:
        statements = []
        # CREATE OR REPLACE cannot swap a view for a table or vice versa
        if existing is not None and existing != kind:
            statements.append(self.drop_sql(relation, existing))
        statements.append(f'CREATE OR REPLACE {kind.value.upper()} {relation.render()} AS\n{sql}')
        return statements


class SqliteDialect(Dialect):
    """SQLite: attached databases act as schemas, no CREATE OR REPLACE."""

    name = 'sqlite'

    def relation_type_sql(self, relation: Relation) -> str:
        schema = relation.schema or 'main'
        return (
            f'SELECT type FROM {schema}.sqlite_master '
            f"WHERE name = {quote_literal(relation.identifier)} AND type IN ('table', 'view')"
        )

    def resolve_kind(self, connection, relation: Relation, sql: str, kind: Materialization) -> Materialization:
        # A view stored in one database file cannot select from another attached one
        if kind != Materialization.VIEW:
            return kind
        target = (relation.schema or 'main').lower()
        for row in connection.query('PRAGMA database_list'):
            alias = str(row[1])
            if alias.lower() in (target, 'temp'):
                continue
            if re.search(rf'\b{re.escape(alias)}\s*\.', sql, re.IGNORECASE):
                logger.warning(
                    f'SQLite views cannot read attached database "{alias}"; building {relation.render()} as a table'
                )
                return Materialization.TABLE
        return kind

    def create_statements(
        self, relation: Relation, kind: Materialization, sql: str, existing: Optional[Materialization]
    ) -> List[str]:
        statements = []
        if existing is not None:
            statements.append(self.drop_sql(relation, existing))
        statements.append(f'CREATE {kind.value.upper()} {relation.render()} AS\n{sql}')
        return statements


def materialize(connection, relation: Relation, sql: str, kind: Materialization) -> None:
    """Create or replace ``relation`` from ``sql``.

    Args:
        connection: Open WarehouseConnection
        relation: Target relation
        sql: Compiled SELECT statement
        kind: View or table

    Raises:
        WarehouseError: If any statement fails
    """
    dialect = connection.dialect

    schema_sql = dialect.create_schema_sql(relation)
    if schema_sql:
        connection.execute(schema_sql)

    kind = dialect.resolve_kind(connection, relation, sql, kind)
    existing = dialect.parse_relation_type(connection.query(dialect.relation_type_sql(relation)))
    for statement in dialect.create_statements(relation, kind, sql, existing):
        logger.debug(f'Executing: {statement[:200]}')
        connection.execute(statement)


def build_test_sql(spec: TestSpec, relation_name: str) -> str:
    """SQL counting the rows that violate ``spec``; zero means the test passes."""
    column = spec.column
    if spec.kind == TestKind.UNIQUE:
        return (
            f'SELECT COUNT(*) FROM (SELECT {column} FROM {relation_name} '
            f'WHERE {column} IS NOT NULL GROUP BY {column} HAVING COUNT(*) > 1) dupes'
        )
    if spec.kind == TestKind.NOT_NULL:
        return f'SELECT COUNT(*) FROM {relation_name} WHERE {column} IS NULL'
    if spec.kind == TestKind.ACCEPTED_VALUES:
        if spec.arguments.get('quote', True):
            values = ', '.join(quote_literal(v) for v in spec.arguments['values'])
        else:
            values = ', '.join(str(v) for v in spec.arguments['values'])
        return f'SELECT COUNT(*) FROM {relation_name} WHERE {column} NOT IN ({values})'
    if spec.kind == TestKind.EXPRESSION:
        expression = spec.arguments['expression']
        # NULL counts as a violation: the predicate must be true
        return f'SELECT COUNT(*) FROM {relation_name} WHERE CASE WHEN ({expression}) THEN 0 ELSE 1 END = 1'
    raise ValueError(f'Unsupported test kind: {spec.kind}')


def evaluate_test(connection, spec: TestSpec, relation_name: str) -> TestResult:
    """Evaluate one data test. Query errors are recorded on the result, not raised."""
    result = TestResult(
        name=spec.name,
        kind=spec.kind.value,
        column=spec.column,
        severity=spec.severity.value,
        passed=False,
    )
    sql = build_test_sql(spec, relation_name)
    try:
        rows = connection.query(sql)
    except WarehouseError as e:
        result.error = str(e)
        logger.error(f'Test {spec.name} could not run: {e}')
        return result

    result.failures = int(rows[0][0]) if rows and rows[0][0] is not None else 0
    result.passed = result.failures == 0
    if not result.passed:
        logger.warning(f'Test {spec.name} found {result.failures} failing row(s)')
    return result
