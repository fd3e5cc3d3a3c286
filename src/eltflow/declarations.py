"""Schema file (``models/**/*.yml``) parsing for eltflow.

Schema files declare sources and attach column tests and configuration to models.
The raw YAML is validated with pydantic before being turned into immutable
Source and TestSpec objects.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from eltflow.exceptions import ParseError
from eltflow.models import ModelConfig, Severity, Source, TestKind, TestSpec

TestEntry = Union[str, Dict[str, Any]]


class ColumnDecl(BaseModel):
    """A column with optional tests."""

    name: str = Field(..., description='Column name')
    description: Optional[str] = Field(None, description='Column description')
    tests: List[TestEntry] = Field(default_factory=list, description='Test entries for the column')


class SourceTableDecl(BaseModel):
    name: str = Field(..., description='Logical table name used in source()')
    identifier: Optional[str] = Field(None, description='Physical table name, defaults to name')
    description: Optional[str] = None
    columns: List[ColumnDecl] = Field(default_factory=list)


class SourceGroupDecl(BaseModel):
    """A group of tables living in one database/schema."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., description='Source group name, first argument of source()')
    database: Optional[str] = None
    schema_name: Optional[str] = Field(None, alias='schema')
    description: Optional[str] = None
    tables: List[SourceTableDecl] = Field(default_factory=list)


class ModelConfigDecl(BaseModel):
    materialized: Optional[str] = None
    continue_on_test_failure: Optional[bool] = None
    enabled: Optional[bool] = None
    tags: Optional[List[str]] = None


class ModelDecl(BaseModel):
    name: str = Field(..., description='Model name, must match a .sql file stem')
    description: Optional[str] = None
    config: ModelConfigDecl = Field(default_factory=ModelConfigDecl)
    columns: List[ColumnDecl] = Field(default_factory=list)


class SchemaFile(BaseModel):
    version: Optional[int] = None
    sources: List[SourceGroupDecl] = Field(default_factory=list)
    models: List[ModelDecl] = Field(default_factory=list)


def parse_test_entry(target: str, column: Optional[str], entry: TestEntry) -> TestSpec:
    """Turn one YAML test entry into a TestSpec.

    Entries are either a bare kind (``unique``) or a single-key mapping whose value
    holds the kind's arguments, e.g. ``{accepted_values: {values: [a, b]}}``.

    Raises:
        ParseError: If the kind is unknown or its arguments are invalid
    """
    if isinstance(entry, str):
        kind_name, arguments = entry, {}
    elif isinstance(entry, dict) and len(entry) == 1:
        kind_name, raw = next(iter(entry.items()))
        if raw is None:
            arguments = {}
        elif isinstance(raw, dict):
            arguments = dict(raw)
        elif kind_name == TestKind.EXPRESSION.value and isinstance(raw, str):
            arguments = {'expression': raw}
        else:
            raise ParseError(f'Invalid arguments for test "{kind_name}" on {target}: {raw!r}')
    else:
        raise ParseError(f'Invalid test entry on {target}: {entry!r}')

    try:
        kind = TestKind(kind_name)
    except ValueError:
        known = ', '.join(k.value for k in TestKind)
        raise ParseError(f'Unknown test kind "{kind_name}" on {target} (expected one of: {known})') from None

    try:
        severity = Severity(str(arguments.pop('severity', Severity.ERROR.value)).lower())
    except ValueError:
        raise ParseError(f'Invalid severity for test "{kind_name}" on {target}') from None

    if kind in (TestKind.UNIQUE, TestKind.NOT_NULL, TestKind.ACCEPTED_VALUES) and not column:
        raise ParseError(f'Test "{kind_name}" on {target} must be attached to a column')
    if kind == TestKind.ACCEPTED_VALUES:
        values = arguments.get('values')
        if not isinstance(values, list) or not values:
            raise ParseError(f'accepted_values on {target}.{column} requires a non-empty "values" list')
    if kind == TestKind.EXPRESSION and not arguments.get('expression'):
        raise ParseError(f'expression test on {target} requires an "expression"')

    return TestSpec(target=target, kind=kind, column=column, arguments=arguments, severity=severity)


def parse_column_tests(target: str, columns: List[ColumnDecl]) -> List[TestSpec]:
    tests = []
    for column in columns:
        for entry in column.tests:
            tests.append(parse_test_entry(target, column.name, entry))
    return tests


def load_schema_file(path: Path) -> SchemaFile:
    """Load and validate a schema file.

    Raises:
        ParseError: If the file is not valid YAML or does not match the schema
    """
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ParseError(f'Invalid YAML in {path.name}: {e}') from e

    try:
        return SchemaFile.model_validate(data)
    except ValidationError as e:
        raise ParseError(f'Invalid declarations in {path.name}: {e}') from e


def sources_from_schema(schema: SchemaFile, path: Optional[Path] = None) -> List[Source]:
    """Build Source objects for every table of every source group in a schema file."""
    sources = []
    for group in schema.sources:
        for table in group.tables:
            node_name = f'{group.name}.{table.name}'
            sources.append(
                Source(
                    name=table.name,
                    source_name=group.name,
                    database=group.database,
                    schema=group.schema_name,
                    identifier=table.identifier,
                    tests=tuple(parse_column_tests(node_name, table.columns)),
                    description=table.description or group.description,
                    path=str(path) if path else None,
                )
            )
    return sources


def model_config_from_decl(decl: ModelDecl) -> ModelConfig:
    cfg = decl.config
    return ModelConfig(
        materialized=cfg.materialized.lower() if cfg.materialized else None,
        continue_on_test_failure=cfg.continue_on_test_failure,
        enabled=cfg.enabled,
        description=decl.description,
        tags=cfg.tags,
    )
