"""Configuration parsing for eltflow."""

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from eltflow.exceptions import ConfigError
from eltflow.models import ModelConfig

PROJECT_FILE = 'eltflow_project.yml'
PROFILES_FILE = 'profiles.yml'
PROFILES_DIR_ENV = 'ELTFLOW_PROFILES_DIR'
TARGET_ENV = 'ELTFLOW_TARGET'


def parse_config_block(sql: str) -> tuple[str, ModelConfig]:
    """Parse config block from model SQL.

    Args:
        sql: Model SQL with optional config block

    Returns:
        Tuple of (sql_without_config, ModelConfig)

    Raises:
        ConfigError: If config block is invalid
    """
    config_pattern = r'\{\{\s*config\s*\((.*?)\)\s*\}\}'

    match = re.search(config_pattern, sql, re.DOTALL)
    if not match:
        return sql, ModelConfig()

    config_str = match.group(1)
    sql_without_config = sql[: match.start()] + sql[match.end() :]

    config = ModelConfig()

    mat_match = re.search(r"materialized\s*=\s*['\"](\w+)['\"]", config_str)
    if mat_match:
        config.materialized = mat_match.group(1).lower()
    elif re.search(r'materialized\s*=', config_str):
        raise ConfigError(f'materialized must be a quoted string, got: {config_str.strip()}')

    for flag in ['continue_on_test_failure', 'enabled']:
        flag_match = re.search(rf'{flag}\s*=\s*(True|False)\b', config_str, re.IGNORECASE)
        if flag_match:
            setattr(config, flag, flag_match.group(1).lower() == 'true')

    desc_match = re.search(r"description\s*=\s*['\"]([^'\"]+)['\"]", config_str)
    if desc_match:
        config.description = desc_match.group(1)

    tags_match = re.search(r'tags\s*=\s*\[([^\]]*)\]', config_str)
    if tags_match:
        config.tags = re.findall(r"['\"]([^'\"]+)['\"]", tags_match.group(1))

    return sql_without_config, config


def _load_yaml(path: Path) -> Dict[str, Any]:
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f'Invalid YAML in {path.name}: {e}') from e
    except OSError as e:
        raise ConfigError(f'Failed to load {path.name}: {e}') from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f'{path.name} must contain a mapping at the top level')
    return data


def load_project_config(project_root: Path) -> Dict[str, Any]:
    """Load eltflow_project.yml configuration.

    Args:
        project_root: Root directory of the project

    Returns:
        Dictionary with project configuration, empty if the file is missing

    Raises:
        ConfigError: If the file exists but is not valid YAML
    """
    config_path = project_root / PROJECT_FILE
    if not config_path.exists():
        return {}
    return _load_yaml(config_path)


def find_profiles_file(project_root: Path, profiles_dir: Optional[Path] = None) -> Optional[Path]:
    """Locate profiles.yml.

    Lookup order: explicit ``profiles_dir``, the project root, $ELTFLOW_PROFILES_DIR,
    then ~/.eltflow.
    """
    candidates = []
    if profiles_dir is not None:
        candidates.append(Path(profiles_dir))
    candidates.append(project_root)
    if os.getenv(PROFILES_DIR_ENV):
        candidates.append(Path(os.environ[PROFILES_DIR_ENV]).expanduser())
    candidates.append(Path.home() / '.eltflow')

    for directory in candidates:
        path = directory / PROFILES_FILE
        if path.exists():
            return path
    return None


def load_profiles(project_root: Path, profiles_dir: Optional[Path] = None) -> Dict[str, Any]:
    """Load profiles.yml configuration.

    Returns:
        Dictionary with profiles configuration, empty if no file was found
    """
    path = find_profiles_file(project_root, profiles_dir)
    if path is None:
        return {}
    return _load_yaml(path)


def resolve_output(
    profiles: Dict[str, Any], profile_name: Optional[str] = None, target: Optional[str] = None
) -> Dict[str, Any]:
    """Pick the connection output to build into.

    Profiles may either be a single profile (``target`` + ``outputs`` at the top level)
    or a mapping of profile names to such blocks.

    Raises:
        ConfigError: If the profile or target cannot be found
    """
    if 'outputs' in profiles:
        profile = profiles
    elif profile_name and profile_name in profiles:
        profile = profiles[profile_name]
    elif len(profiles) == 1:
        profile = next(iter(profiles.values()))
    else:
        raise ConfigError(f'Profile "{profile_name}" not found in profiles.yml')

    if not isinstance(profile, dict) or 'outputs' not in profile:
        raise ConfigError(f'Profile "{profile_name}" has no outputs')

    target = target or os.getenv(TARGET_ENV) or profile.get('target')
    outputs = profile['outputs']
    if target is None:
        if len(outputs) != 1:
            raise ConfigError('No target set and profile has more than one output')
        target = next(iter(outputs))
    if target not in outputs:
        raise ConfigError(f'Target "{target}" not found. Available: {list(outputs.keys())}')

    output = dict(outputs[target])
    if 'type' not in output:
        raise ConfigError(f'Output "{target}" is missing a type')
    return output
