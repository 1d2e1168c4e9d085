# chain_scanner/config.py
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Optional

import yaml  # For config file
from platformdirs import user_config_path

from .errors import ConfigError
from .severity import parse_threshold

logger = logging.getLogger(__name__)

APP_NAME = "chaintrace"
APP_AUTHOR = "chaintrace"
CONFIG_FILENAME = "chaintrace.yaml"
CONFIG_ENV_VAR = "CHAINTRACE_CONFIG"
OSV_BASE_ENV_VAR = "OSV_API_BASE"

OSV_API_BASE = "https://api.osv.dev/v1"
OSV_WEB_BASE = "https://osv.dev"


@dataclass(frozen=True)
class ScannerConfig:
    osv_api_url: str = f"{OSV_API_BASE}/query"
    osv_batch_url: str = f"{OSV_API_BASE}/querybatch"
    osv_vuln_url: str = f"{OSV_API_BASE}/vulns/"  # Note the trailing slash
    osv_web_url: str = f"{OSV_WEB_BASE}/vulnerability/"
    connect_timeout: float = 10.0
    read_timeout: float = 30.0
    # Packages per querybatch request; OSV accepts up to 1000
    batch_size: int = 100
    batch_workers: int = 4
    query_workers: int = 8
    scrape_workers: int = 2
    hydrate_details: bool = True
    scrape_fixed_versions: bool = False
    severity_threshold: Optional[str] = None
    ignore_vulnerabilities: tuple[str, ...] = field(default_factory=tuple)

    @property
    def timeout(self) -> tuple[float, float]:
        """(connect, read) tuple as requests expects it."""
        return (self.connect_timeout, self.read_timeout)

    def with_overrides(self, **overrides) -> "ScannerConfig":
        values = {k: v for k, v in overrides.items() if v is not None}
        if not values:
            return self
        return validate(replace(self, **values))


_INT_FIELDS = {"batch_size", "batch_workers", "query_workers", "scrape_workers"}
_FLOAT_FIELDS = {"connect_timeout", "read_timeout"}
_BOOL_FIELDS = {"hydrate_details", "scrape_fixed_versions"}


def validate(config: ScannerConfig) -> ScannerConfig:
    for name in _INT_FIELDS:
        value = getattr(config, name)
        if not isinstance(value, int) or isinstance(value, bool) or value < 1:
            raise ConfigError(f"'{name}' must be a positive integer, got {value!r}")
    for name in _FLOAT_FIELDS:
        value = getattr(config, name)
        if not isinstance(value, (int, float)) or isinstance(value, bool) or value <= 0:
            raise ConfigError(f"'{name}' must be a positive number, got {value!r}")
    for name in _BOOL_FIELDS:
        if not isinstance(getattr(config, name), bool):
            raise ConfigError(f"'{name}' must be true or false")
    if config.severity_threshold is not None:
        if parse_threshold(config.severity_threshold) is None:
            raise ConfigError(f"Unknown severity threshold '{config.severity_threshold}'")
    return config


def config_from_mapping(data: dict, base: Optional[ScannerConfig] = None) -> ScannerConfig:
    """Builds a config from a parsed YAML mapping. Unknown keys are logged and ignored."""
    base = base or ScannerConfig()
    known = {f.name for f in fields(ScannerConfig)}
    values = {}
    for key, value in data.items():
        if key not in known:
            logger.warning(f"Ignoring unknown config key '{key}'")
            continue
        if key == "ignore_vulnerabilities":
            if not isinstance(value, list):
                raise ConfigError("'ignore_vulnerabilities' must be a list of vulnerability IDs")
            value = tuple(str(v).strip() for v in value if str(v).strip())
        values[key] = value
    return validate(replace(base, **values))


def _apply_env(config: ScannerConfig) -> ScannerConfig:
    base = os.environ.get(OSV_BASE_ENV_VAR)
    if not base:
        return config
    base = base.rstrip("/")
    logger.info(f"Using OSV API base from {OSV_BASE_ENV_VAR}: {base}")
    return replace(
        config,
        osv_api_url=f"{base}/query",
        osv_batch_url=f"{base}/querybatch",
        osv_vuln_url=f"{base}/vulns/",
    )


def default_config_paths() -> list[Path]:
    paths = [Path(CONFIG_FILENAME)]
    try:
        paths.append(user_config_path(appname=APP_NAME, appauthor=APP_AUTHOR) / "config.yaml")
    except Exception as e:
        logger.debug(f"Could not determine user config directory: {e}")
    return paths


def load_config(config_path: Optional[str] = None) -> ScannerConfig:
    """
    Loads settings from YAML. Lookup order: explicit path, $CHAINTRACE_CONFIG,
    ./chaintrace.yaml, then the per-user config directory. Missing files mean defaults;
    an explicitly requested file that is missing or malformed is a ConfigError.
    """
    explicit = config_path or os.environ.get(CONFIG_ENV_VAR)
    candidates = [Path(explicit)] if explicit else default_config_paths()

    for path in candidates:
        if not path.is_file():
            if explicit:
                raise ConfigError(f"Config file '{path}' not found")
            continue
        logger.info(f"Loading configuration from '{path.resolve()}'")
        try:
            with open(path, "r", encoding="utf-8") as f:
                loaded = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Could not read config file '{path}': {e}") from e
        if loaded is None:
            loaded = {}
        if not isinstance(loaded, dict):
            raise ConfigError(f"Config file '{path}' does not contain a mapping")
        return _apply_env(config_from_mapping(loaded))

    logger.debug("No configuration file found, using defaults")
    return _apply_env(ScannerConfig())
