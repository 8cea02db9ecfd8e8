"""Environment handling for configuration values.

Handles ``.env`` loading and ``${VAR}`` expansion in string values.
"""

from __future__ import annotations

import logging
import os
import re
from typing import Any, Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# Regex for ${VAR_NAME} - captures the variable name inside ${}
_ENV_VAR_RE = re.compile(r"\$\{(\w+)\}")


def load_env_file(path: Optional[str] = None) -> bool:
    """Load ``KEY=value`` pairs from a ``.env`` file into ``os.environ``.

    Variables already present in the environment take precedence.
    Returns ``True`` when a file was found and read.
    """
    env_path = path or os.path.join(os.getcwd(), ".env")
    if not os.path.isfile(env_path):
        return False
    load_dotenv(env_path, override=False)
    logger.debug("Loaded environment file: %s", env_path)
    return True


def expand_env_vars(value: Any) -> Any:
    """Recursively expand ``${VAR}`` references in string values.

    - If the env var is not set, the placeholder is left unchanged.
    - Non-string leaves are returned as-is.
    - Dicts and lists are walked recursively.
    """
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(
            lambda m: os.environ.get(m.group(1), m.group(0)),
            value,
        )
    if isinstance(value, dict):
        return {k: expand_env_vars(v) for k, v in value.items()}
    if isinstance(value, list):
        return [expand_env_vars(item) for item in value]
    return value
