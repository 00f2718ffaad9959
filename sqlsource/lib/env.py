"""Environment variable handling for source configuration.

Expands ${VAR_NAME} and $VAR_NAME references in YAML values so that
connection credentials never have to live in the config file, and loads
.env files through python-dotenv.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional, Union

from dotenv import load_dotenv

__all__ = ["expand_env_vars", "expand_options", "load_env_file"]

ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}|\$([A-Za-z_][A-Za-z0-9_]*)")


def load_env_file(
    path: Optional[Union[str, Path]] = None,
    *,
    override: bool = False,
) -> bool:
    """Load environment variables from a .env file.

    Args:
        path: Path to the .env file. If None, python-dotenv searches the
              current directory and its parents.
        override: Replace variables that are already set

    Returns:
        True if a file was found and loaded
    """
    return load_dotenv(dotenv_path=path, override=override)


def expand_env_vars(value: str) -> str:
    """Expand environment variable references in a string.

    Unset variables are left as written.

    Example:
        >>> os.environ["DB_USER"] = "reader"
        >>> expand_env_vars("UID=${DB_USER}")
        'UID=reader'
    """

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1) or match.group(2)
        return os.environ.get(var_name, match.group(0))

    return ENV_VAR_PATTERN.sub(replacer, value)


def _expand_value(value: Any) -> Any:
    if isinstance(value, str):
        return expand_env_vars(value)
    if isinstance(value, dict):
        return expand_options(value)
    if isinstance(value, list):
        return [_expand_value(item) for item in value]
    return value


def expand_options(options: Dict[str, Any]) -> Dict[str, Any]:
    """Recursively expand environment variables in a config mapping.

    Nested mappings and lists (such as the ``tables`` list) are walked;
    non-string scalars are returned unchanged.
    """
    return {key: _expand_value(value) for key, value in options.items()}
