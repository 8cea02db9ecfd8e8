"""Configuration file loading and validation.

Loads an optional YAML configuration file, expands ``${ENV_VAR}``
placeholders, applies the legacy environment overrides, and validates the
result against the Pydantic models defined in :mod:`schema`.

The public API is :func:`load_proxy_config`, which returns a validated
:class:`ProxyConfig`, and :func:`require_upstream_token`, the one fatal
startup check.
"""

import logging
import os
from typing import Any, Dict, List, Optional

import yaml
from pydantic import ValidationError

from mcp_vector_proxy.config.env import expand_env_vars, load_env_file
from mcp_vector_proxy.config.schema import ProxyConfig
from mcp_vector_proxy.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Recognised config file extensions.
_YAML_EXTS = frozenset({".yaml", ".yml"})

# Config file search order (first match wins)
_CONFIG_SEARCH_ORDER = ("config.yaml", "config.yml")


def find_config_file() -> Optional[str]:
    """Return ``config.yaml``/``config.yml`` from the CWD, or ``None``."""
    for name in _CONFIG_SEARCH_ORDER:
        candidate = os.path.join(os.getcwd(), name)
        if os.path.isfile(candidate):
            return candidate
    return None


def _read_config_file(cfg_fpath: str) -> Dict[str, Any]:
    """Read and parse a YAML config file from *cfg_fpath*.

    Raises :class:`ConfigurationError` on I/O or parse errors.
    """
    ext = os.path.splitext(cfg_fpath)[1].lower()
    if ext not in _YAML_EXTS:
        raise ConfigurationError(
            f"Unsupported config file extension '{ext}'. "
            "Only YAML files (.yaml, .yml) are supported."
        )

    try:
        with open(cfg_fpath, "r", encoding="utf-8") as f:
            raw_data = yaml.safe_load(f)
    except Exception as exc:
        raise ConfigurationError(f"Error reading configuration file: {cfg_fpath}\n  {exc}") from exc

    if raw_data is None:
        return {}
    if not isinstance(raw_data, dict):
        raise ConfigurationError(
            "Top-level configuration content must be a YAML mapping (dictionary)."
        )
    return raw_data


def _int_env(name: str) -> Optional[int]:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return None
    try:
        return int(raw.strip())
    except ValueError as exc:
        raise ConfigurationError(
            f"Environment variable {name} must be an integer, got '{raw}'."
        ) from exc


def _apply_env_overrides(raw_data: Dict[str, Any]) -> Dict[str, Any]:
    """Overlay the plain environment variables the proxy has always honoured.

    ``DISCOVER_LIMIT``, ``POLL_INTERVAL_MS``, ``HTTP_PORT`` (switches to the
    http transport) and ``HTTP_HOST`` win over file values.
    """
    data = dict(raw_data)
    index = dict(data.get("index") or {})
    server = dict(data.get("server") or {})

    limit = _int_env("DISCOVER_LIMIT")
    if limit is not None:
        index["discover_limit"] = limit
    poll_ms = _int_env("POLL_INTERVAL_MS")
    if poll_ms is not None:
        index["poll_interval"] = poll_ms / 1000.0
    port = _int_env("HTTP_PORT")
    if port is not None:
        server["port"] = port
        server["transport"] = "http"
    host = os.environ.get("HTTP_HOST")
    if host:
        server["host"] = host

    if index:
        data["index"] = index
    if server:
        data["server"] = server
    return data


def _format_validation_errors(exc: ValidationError) -> str:
    """Format Pydantic validation errors into a readable multi-line string."""
    lines: List[str] = []
    for err in exc.errors():
        loc = " → ".join(str(part) for part in err["loc"])
        lines.append(f"  • {loc}: {err['msg']}")
    return "\n".join(lines)


# ── Public API ───────────────────────────────────────────────────────────


def load_proxy_config(
    cfg_fpath: Optional[str] = None,
    *,
    env_file: Optional[str] = None,
) -> ProxyConfig:
    """Load, expand, validate, and return the proxy configuration.

    Steps:
        1. Load ``.env`` (existing environment wins)
        2. Read the YAML file, if one was given
        3. Expand ``${VAR}`` environment variable references
        4. Apply legacy environment overrides
        5. Validate against :class:`ProxyConfig` (Pydantic)

    Raises:
        ConfigurationError: On file I/O errors, parse errors, or
            validation failures (all errors reported at once).
    """
    load_env_file(env_file)

    raw_data: Dict[str, Any] = {}
    if cfg_fpath is not None:
        if not os.path.exists(cfg_fpath):
            raise ConfigurationError(f"Configuration file does not exist: {cfg_fpath}")
        logger.debug("Loading configuration file: %s", cfg_fpath)
        raw_data = _read_config_file(cfg_fpath)
    else:
        logger.debug("No configuration file; using defaults and environment.")

    raw_data = expand_env_vars(raw_data)
    raw_data = _apply_env_overrides(raw_data)

    try:
        config = ProxyConfig.model_validate(raw_data)
    except ValidationError as exc:
        error_summary = _format_validation_errors(exc)
        raise ConfigurationError(
            f"Configuration validation failed ({len(exc.errors())} error(s)):\n" f"{error_summary}"
        ) from exc

    logger.info(
        "Configuration loaded (v%s, source=%s): transport=%s, discover_limit=%d, poll=%.1fs.",
        config.version,
        cfg_fpath or "defaults",
        config.server.transport,
        config.index.discover_limit,
        config.index.poll_interval,
    )
    return config


def require_upstream_token(config: ProxyConfig) -> str:
    """Return the upstream credential or raise the fatal startup error."""
    token = config.upstream.resolve_token()
    if not token:
        var = config.upstream.token_env
        raise ConfigurationError(
            f"{var} not set.\n"
            f"  Option 1: set the {var} environment variable.\n"
            f"  Option 2: add {var}=your-token to a .env file in the working directory.\n"
            "  Option 3: set upstream.token in the YAML configuration file."
        )
    return token
