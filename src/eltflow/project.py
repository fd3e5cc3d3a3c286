"""Project management for eltflow."""

import fnmatch
import logging
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from eltflow.compiler import Compiler
from eltflow.config import load_profiles, load_project_config, parse_config_block, resolve_output
from eltflow.connection import ConnectionPool, connection_factory
from eltflow.declarations import (
    ModelDecl,
    load_schema_file,
    model_config_from_decl,
    parse_column_tests,
    sources_from_schema,
)
from eltflow.dependencies import DependencyGraph, load
from eltflow.exceptions import ConfigError, DuplicateNameError, ProjectNotFoundError
from eltflow.models import Materialization, Model, ModelConfig, Source
from eltflow.scheduler import SchedulerConfig
from eltflow.state import StateDatabase

logger = logging.getLogger(__name__)

SCHEMA_SUFFIXES = ('.yml', '.yaml')


class Project:
    """An eltflow project directory: models, declarations, profiles and schedule."""

    def __init__(
        self,
        project_root: Optional[Path] = None,
        profiles_dir: Optional[Path] = None,
        target: Optional[str] = None,
    ):
        """Initialize project.

        Args:
            project_root: Root directory of the project (default: current directory)
            profiles_dir: Directory holding profiles.yml, searched before the defaults
            target: Profile output to build into, overriding the profile's target

        Raises:
            ProjectNotFoundError: If project directory is invalid
            ConfigError: If eltflow_project.yml is invalid
        """
        if project_root is None:
            project_root = Path.cwd()

        project_root = Path(project_root).resolve()
        if not project_root.is_dir():
            raise ProjectNotFoundError(f'Project directory not found: {project_root}')

        self.project_root = project_root
        self.profiles_dir = profiles_dir
        self.target = target
        self.config = load_project_config(project_root)
        self.name = self.config.get('name', project_root.name)

        model_paths = self.config.get('model-paths', ['models'])
        if isinstance(model_paths, str):
            model_paths = [model_paths]
        self.models_dirs = [project_root / p for p in model_paths]
        self.macros_dir = project_root / 'macros'

        self.compiler = Compiler(self.macros_dir, project_vars=self.config.get('vars'))

    def find_models(self) -> List[Path]:
        """Find all model SQL files under the model paths, sorted."""
        models = []
        for models_dir in self.models_dirs:
            if models_dir.exists():
                models.extend(models_dir.rglob('*.sql'))
        return sorted(models)

    def find_schema_files(self) -> List[Path]:
        files = []
        for models_dir in self.models_dirs:
            if models_dir.exists():
                files.extend(p for p in models_dir.rglob('*') if p.suffix in SCHEMA_SUFFIXES)
        return sorted(files)

    def load_model(self, model_path: Path) -> tuple[str, ModelConfig]:
        """Load a model file and parse its config.

        Args:
            model_path: Path to model SQL file

        Returns:
            Tuple of (sql_content, ModelConfig)

        Raises:
            ProjectNotFoundError: If model file doesn't exist
        """
        if not model_path.exists():
            raise ProjectNotFoundError(f'Model file not found: {model_path}')

        sql = model_path.read_text()
        return parse_config_block(sql)

    def model_defaults(self) -> ModelConfig:
        """Project-wide model configuration from the ``models:`` section."""
        defaults = self.config.get('models') or {}
        if not isinstance(defaults, dict):
            raise ConfigError('"models" in eltflow_project.yml must be a mapping')
        materialized = defaults.get('materialized')
        return ModelConfig(
            materialized=str(materialized).lower() if materialized else None,
            continue_on_test_failure=defaults.get('continue_on_test_failure'),
            enabled=defaults.get('enabled'),
            tags=defaults.get('tags'),
        )

    def _relative(self, path: Path) -> str:
        try:
            return str(path.relative_to(self.project_root))
        except ValueError:
            return str(path)

    def load_declarations(self) -> Tuple[List[Source], List[Model]]:
        """Read every source and model declaration in the project.

        Raises:
            ParseError: If a schema file is invalid or declares a model twice
            ConfigError: If a model's configuration is invalid
        """
        sources: List[Source] = []
        model_decls: Dict[str, Tuple[ModelDecl, Path]] = {}

        for schema_path in self.find_schema_files():
            schema = load_schema_file(schema_path)
            sources.extend(sources_from_schema(schema, self._relative(schema_path)))
            for decl in schema.models:
                if decl.name in model_decls:
                    previous = self._relative(model_decls[decl.name][1])
                    raise DuplicateNameError(decl.name, [previous, self._relative(schema_path)])
                model_decls[decl.name] = (decl, schema_path)

        defaults = self.model_defaults()
        models: List[Model] = []
        for model_path in self.find_models():
            name = model_path.stem
            sql, inline_config = self.load_model(model_path)

            decl = model_decls.get(name)
            yml_config = model_config_from_decl(decl[0]) if decl else ModelConfig()
            config = inline_config.merged_over(yml_config.merged_over(defaults))

            try:
                materialization = Materialization(config.materialized or Materialization.VIEW.value)
            except ValueError:
                raise ConfigError(
                    f'Invalid materialization "{config.materialized}" for model {name} (expected view or table)'
                ) from None

            models.append(
                Model(
                    name=name,
                    sql=sql,
                    materialization=materialization,
                    tests=tuple(parse_column_tests(name, decl[0].columns)) if decl else (),
                    continue_on_test_failure=bool(config.continue_on_test_failure),
                    description=config.description,
                    tags=tuple(config.tags or ()),
                    enabled=config.enabled is not False,
                    path=self._relative(model_path),
                )
            )

        declared_files = {m.name for m in models}
        for name, (_, schema_path) in sorted(model_decls.items()):
            if name not in declared_files:
                logger.warning(f'Model "{name}" is declared in {schema_path.name} but has no .sql file')

        return sources, models

    def load_graph(self) -> DependencyGraph:
        """Load and validate the project's dependency graph.

        Raises:
            ParseError: If references are unresolved, names are duplicated, or there is a cycle
        """
        sources, models = self.load_declarations()
        graph = load(sources, models, self.compiler)
        logger.info(f'Loaded project {self.name}: {len(graph.models())} models, {len(graph.sources())} sources')
        return graph

    def select(self, graph: DependencyGraph, selectors: List[str]) -> Set[str]:
        """Node names matching any selector.

        A selector is a glob over node names (``stg_*``) or ``tag:<tag>``.
        """
        selected = set()
        for selector in selectors:
            if selector.startswith('tag:'):
                tag = selector[len('tag:') :]
                selected |= {m.name for m in graph.models() if tag in m.tags}
            else:
                selected |= set(fnmatch.filter(graph.get_all_nodes(), selector))
        return selected

    def scheduler_config(self) -> SchedulerConfig:
        return SchedulerConfig.from_dict(self.config.get('schedule'))

    def output(self) -> Dict:
        """The profiles.yml output this project builds into.

        Raises:
            ConfigError: If no profile or target can be resolved
        """
        profiles = load_profiles(self.project_root, self.profiles_dir)
        if not profiles:
            raise ConfigError('profiles.yml not found')
        return resolve_output(profiles, self.config.get('profile', self.name), self.target)

    def connection_pool(self, pool_size: int = 1) -> ConnectionPool:
        return ConnectionPool(connection_factory(self.output(), self.project_root), pool_size=pool_size)

    def state_database(self) -> StateDatabase:
        return StateDatabase.for_project(self.project_root)
