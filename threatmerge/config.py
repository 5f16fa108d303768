"""Config loading for threatmerge.

Reads `.threatmerge/config.yaml` (or `~/.threatmerge/config.yaml`).
Raises SystemExit on parse errors, a missing `version` field or invalid values.
If no config file is found, returns default values (safe to run without config).

Config search order:
  1. `config_path` argument (if provided — for testing or explicit override)
  2. THREATMERGE_CONFIG environment variable (if set)
  3. `.threatmerge/config.yaml` (working directory — for development)
  4. `~/.threatmerge/config.yaml` (home directory — for production deployments)

Environment variable overrides:
  THREATMERGE_DB_PATH   — overrides relational.path
  THREATMERGE_REDIS_URL — overrides blob.url
  THREATMERGE_PORT      — overrides server.port
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from typing import Any, NoReturn, Optional

import yaml

from threatmerge.constants import (
    BLOB_KEY_PREFIX,
    BLOB_MODEL_ID_PREFIX,
    DESCRIPTION_SIMILARITY_THRESHOLD,
    MIN_DESCRIPTION_TOKEN_LENGTH,
    TITLE_SIMILARITY_THRESHOLD,
)
from threatmerge.utils.logger import get_logger

logger = get_logger(__name__)

# ─── Version constants ────────────────────────────────────────────────────────

SUPPORTED_CONFIG_VERSION = 1

SUPPORTED_VERSIONS: frozenset[int] = frozenset({1})

# Default config search paths (THREATMERGE_CONFIG env var prepended at runtime)
DEFAULT_CONFIG_PATHS = [
    ".threatmerge/config.yaml",
    os.path.expanduser("~/.threatmerge/config.yaml"),
]

DEFAULT_DB_PATH = "~/.threatmerge/threatmodels.db"
DEFAULT_REDIS_URL = "redis://localhost:6379/0"


def _config_error(msg: str) -> NoReturn:
    print(f"CONFIG ERROR: {msg}", file=sys.stderr)
    raise SystemExit(1)


# ─── Dataclasses ─────────────────────────────────────────────────────────────


@dataclass
class RelationalConfig:
    """SQLite relational backend."""

    path: str = DEFAULT_DB_PATH


@dataclass
class BlobConfig:
    """Blob (Redis) backend.

    url:             redis:// URL, or "memory://" for an in-process store
    key_prefix:      root of the key family, "<key_prefix>:<id>:<suffix>"
    model_id_prefix: prefix marking a model id as a blob model
    """

    url: str = DEFAULT_REDIS_URL
    key_prefix: str = BLOB_KEY_PREFIX
    model_id_prefix: str = BLOB_MODEL_ID_PREFIX


@dataclass
class MatcherConfig:
    """Similarity matcher thresholds."""

    title_threshold: float = TITLE_SIMILARITY_THRESHOLD
    description_threshold: float = DESCRIPTION_SIMILARITY_THRESHOLD
    min_token_length: int = MIN_DESCRIPTION_TOKEN_LENGTH


@dataclass
class ServerConfig:
    """HTTP trigger binding."""

    host: str = "127.0.0.1"
    port: int = 4300


@dataclass
class Config:
    """Root configuration object populated from .threatmerge/config.yaml.

    All fields have safe defaults — threatmerge can start without any config file.
    """

    version: int = SUPPORTED_CONFIG_VERSION
    relational: RelationalConfig = field(default_factory=RelationalConfig)
    blob: BlobConfig = field(default_factory=BlobConfig)
    matcher: MatcherConfig = field(default_factory=MatcherConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    path: Optional[str] = None  # Path to the loaded config file

    @classmethod
    def defaults(cls) -> "Config":
        return cls()

    @classmethod
    def from_dict(cls, raw: dict, path: Optional[str] = None) -> "Config":
        """Construct Config from a parsed YAML dict.

        Merges user-supplied values onto defaults; unknown keys are silently ignored.

        Raises:
            SystemExit(1): On a non-mapping section or an out-of-range threshold.
        """
        relational_raw = _section(raw, "relational")
        relational = RelationalConfig(path=str(relational_raw.get("path", DEFAULT_DB_PATH)))

        blob_raw = _section(raw, "blob")
        blob = BlobConfig(
            url=str(blob_raw.get("url", DEFAULT_REDIS_URL)),
            key_prefix=str(blob_raw.get("key_prefix", BLOB_KEY_PREFIX)),
            model_id_prefix=str(blob_raw.get("model_id_prefix", BLOB_MODEL_ID_PREFIX)),
        )
        if not blob.model_id_prefix:
            _config_error("blob.model_id_prefix must not be empty.")

        # ── Matcher ───────────────────────────────────────────────────────────
        matcher_raw = _section(raw, "matcher")
        matcher = MatcherConfig(
            title_threshold=_threshold(
                matcher_raw, "title_threshold", TITLE_SIMILARITY_THRESHOLD
            ),
            description_threshold=_threshold(
                matcher_raw, "description_threshold", DESCRIPTION_SIMILARITY_THRESHOLD
            ),
            min_token_length=matcher_raw.get("min_token_length", MIN_DESCRIPTION_TOKEN_LENGTH),
        )
        if not isinstance(matcher.min_token_length, int) or matcher.min_token_length < 1:
            _config_error(
                f"Invalid matcher.min_token_length: {matcher.min_token_length!r}. "
                "Must be a positive integer."
            )

        server_raw = _section(raw, "server")
        server = ServerConfig(
            host=str(server_raw.get("host", "127.0.0.1")),
            port=server_raw.get("port", 4300),
        )

        return cls(
            version=raw.get("version", SUPPORTED_CONFIG_VERSION),
            relational=relational,
            blob=blob,
            matcher=matcher,
            server=server,
            path=path,
        )


def _section(raw: dict, name: str) -> dict[str, Any]:
    value = raw.get(name) or {}
    if not isinstance(value, dict):
        _config_error(f"'{name}' must be a mapping, got {type(value).__name__}.")
    return value


def _threshold(section: dict[str, Any], key: str, default: float) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0.0 <= value <= 1.0:
        _config_error(f"Invalid matcher.{key}: {value!r}. Must be a number between 0 and 1.")
    return float(value)


# ─── Config loading ───────────────────────────────────────────────────────────


def load_config(config_path: Optional[str] = None) -> Config:
    """Load and validate threatmerge configuration.

    If no file is found at any search path, returns default Config (not an error).
    If a file is found but invalid, writes the error to stderr and raises SystemExit(1).
    Env var overrides are applied in both cases.

    Raises:
        SystemExit(1): On YAML parse error, missing ``version`` field, unsupported
                       version, invalid values, or an invalid ``THREATMERGE_PORT``.
    """
    search_paths: list[str] = []
    if config_path:
        search_paths.append(config_path)
    env_config = os.environ.get("THREATMERGE_CONFIG")
    if env_config:
        search_paths.append(env_config)
    search_paths.extend(DEFAULT_CONFIG_PATHS)

    found_path: Optional[str] = None
    for candidate in search_paths:
        expanded = os.path.expanduser(candidate)
        if os.path.isfile(expanded):
            found_path = expanded
            break

    # ── No config file found ─────────────────────────────────────────────────
    if found_path is None:
        logger.info("config_not_found_using_defaults", searched=search_paths)
        config = Config.defaults()
        _apply_env_overrides(config)
        return config

    # ── Parse config file ─────────────────────────────────────────────────────
    try:
        with open(found_path) as fh:
            raw = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        _config_error(
            f"Failed to parse {found_path}: {exc}\n"
            "threatmerge refuses to start with an invalid config. "
            "Check the YAML syntax and try again."
        )
    except OSError as exc:
        _config_error(f"Could not read {found_path}: {exc}")

    if not isinstance(raw, dict):
        if raw is None:
            _config_error(
                f"{found_path} is missing the required 'version' field.\n"
                "Add 'version: 1' to the top of your config file."
            )
        _config_error(
            f"{found_path} is not a valid YAML mapping.\n"
            "The config file must be a YAML dictionary at the top level."
        )

    # ── Version validation ────────────────────────────────────────────────────
    version = raw.get("version")
    if version is None:
        _config_error(
            f"{found_path} is missing the required 'version' field.\n"
            "Add 'version: 1' to the top of your config file."
        )
    if version not in SUPPORTED_VERSIONS:
        _config_error(
            f"Unsupported config version: {version}. "
            f"Supported versions: {sorted(SUPPORTED_VERSIONS)}."
        )

    config = Config.from_dict(raw, path=found_path)
    _apply_env_overrides(config)

    if config.server.host == "0.0.0.0":
        logger.warning(
            "server_bound_to_all_interfaces",
            host=config.server.host,
            hint="use server.host: '127.0.0.1' for local-only access",
        )

    logger.info(
        "config_loaded",
        path=found_path,
        version=config.version,
        relational_path=config.relational.path,
    )
    return config


def _apply_env_overrides(config: Config) -> None:
    """Apply environment variable overrides to a Config object in-place.

    Called for both file-loaded and default configs so env vars always take
    precedence over any file value.

    Raises:
        SystemExit(1): If THREATMERGE_PORT is set but not a valid integer.
    """
    env_db_path = os.environ.get("THREATMERGE_DB_PATH")
    if env_db_path:
        config.relational.path = env_db_path

    env_redis_url = os.environ.get("THREATMERGE_REDIS_URL")
    if env_redis_url:
        config.blob.url = env_redis_url

    env_port = os.environ.get("THREATMERGE_PORT")
    if env_port is not None:
        try:
            config.server.port = int(env_port)
        except ValueError:
            _config_error(
                f"THREATMERGE_PORT environment variable is not a valid integer: '{env_port}'"
            )
