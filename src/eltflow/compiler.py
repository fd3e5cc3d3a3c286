"""SQL template compilation for eltflow.

Model SQL is a Jinja template. ``ref('model')`` and ``source('group', 'table')``
are logical references that compile to physically qualified relation names.
"""

from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Set

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

from eltflow.exceptions import ParseError, UnresolvedReferenceError

_MISSING = object()


def source_node_name(*args: str) -> str:
    """Node name for ``source(group, table)`` or ``source(table)``."""
    if len(args) == 1:
        return args[0]
    if len(args) == 2:
        return f'{args[0]}.{args[1]}'
    raise ParseError(f'source() takes one or two arguments, got {len(args)}')


class Compiler:
    """Query compilation engine with Jinja templating support."""

    def __init__(self, macros_dir: Optional[Path] = None, project_vars: Optional[Dict[str, Any]] = None):
        """Initialize compiler.

        Args:
            macros_dir: Optional directory containing macro files importable from models
            project_vars: Values exposed to templates through var()
        """
        self.macros_dir = macros_dir
        self.project_vars = dict(project_vars or {})

        search_path = [str(macros_dir)] if macros_dir and macros_dir.exists() else []
        self.env = Environment(
            loader=FileSystemLoader(search_path),
            autoescape=False,
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.globals['var'] = self._var_function

    def _var_function(self, name: str, default: Any = _MISSING) -> Any:
        if name in self.project_vars:
            return self.project_vars[name]
        if default is _MISSING:
            raise ParseError(f'Required var "{name}" is not set')
        return default

    def _render(self, sql: str, model_name: Optional[str], context: Dict[str, Any]) -> str:
        where = f' {model_name}' if model_name else ''
        try:
            template = self.env.from_string(sql)
            return template.render(model_name=model_name, **context)
        except ParseError:
            raise
        except TemplateError as e:
            raise ParseError(f'Failed to compile model{where}: {e}') from e

    def extract_references(self, sql: str, model_name: Optional[str] = None) -> tuple[Set[str], Set[str]]:
        """Find the logical references a template makes.

        Args:
            sql: Raw SQL with Jinja templates
            model_name: Name of the model, used in error messages

        Returns:
            Tuple of (referenced model names, referenced source node names)

        Raises:
            ParseError: If the template cannot be rendered
        """
        refs: Set[str] = set()
        sources: Set[str] = set()

        def ref(name: str) -> str:
            refs.add(name)
            return name

        def source(*args: str) -> str:
            node = source_node_name(*args)
            sources.add(node)
            return node

        self._render(sql, model_name, {'ref': ref, 'source': source, 'this': model_name or ''})
        return refs, sources

    def resolve(
        self,
        sql: str,
        name_table: Mapping[str, str],
        model_name: Optional[str] = None,
        this: Optional[str] = None,
    ) -> str:
        """Render a template, substituting physical names for logical references.

        Args:
            sql: Raw SQL with Jinja templates
            name_table: Maps node names (models and sources) to physical relation names
            model_name: Name of the model being compiled
            this: Physical name of the model itself

        Returns:
            Physical SQL

        Raises:
            UnresolvedReferenceError: If a reference is missing from ``name_table``
            ParseError: If the template cannot be rendered
        """

        def lookup(node: str) -> str:
            if node not in name_table:
                raise UnresolvedReferenceError(node, model_name)
            return name_table[node]

        def ref(name: str) -> str:
            return lookup(name)

        def source(*args: str) -> str:
            return lookup(source_node_name(*args))

        context = {'ref': ref, 'source': source, 'this': this or (model_name or '')}
        return self._render(sql, model_name, context).strip()


def resolve(template: str, name_table: Mapping[str, str]) -> str:
    """Resolve logical references in ``template`` using ``name_table``.

    Pure function: no project state, no warehouse access.
    """
    return Compiler().resolve(template, name_table)
