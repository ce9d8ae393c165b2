"""
Configuration management for pgcache.

Settings are layered from defaults, the user file
(~/.config/pgcache/config.toml), a project file (pgcache.toml) and
PGCACHE_* environment variables. Library classes take a CacheConfig
explicitly; the module-level instance exists for the CLI.
"""
import os
import tomli
import tomli_w
from pathlib import Path
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field, asdict

from pgcache.constants import DEFAULT_PAGE_SIZE, DEFAULT_REQUEST_TIMEOUT, DEFAULT_SCHEMA

ENV_PREFIX = "PGCACHE_"

# First existing file wins
LOCAL_CONFIG_NAMES = ("pgcache.toml", ".pgcacherc")


def user_config_path() -> Path:
    return Path.home() / ".config" / "pgcache" / "config.toml"


def _coerce(raw: str, current: Any) -> Any:
    """Convert an environment string to the type of the current value."""
    if isinstance(current, bool):
        return raw.lower() in ("true", "1", "yes")
    if isinstance(current, int):
        return int(raw)
    return raw


@dataclass
class CacheConfig:
    """
    pgcache settings.

    Later sources win:
    1. Dataclass defaults
    2. User config file (~/.config/pgcache/config.toml)
    3. Project config file (./pgcache.toml or ./.pgcacherc)
    4. File passed with --config
    5. Environment variables (PGCACHE_*)
    6. Command-line arguments (init_config overrides)

    ``primary_keys`` tables are merged across files instead of replaced.
    """

    # REST endpoint
    base_url: Optional[str] = field(default=None)
    api_key: Optional[str] = field(default=None)
    schema: str = field(default=DEFAULT_SCHEMA)
    timeout: int = field(default=DEFAULT_REQUEST_TIMEOUT)

    # Pagination
    page_size: int = field(default=DEFAULT_PAGE_SIZE)
    shrink_evicts: bool = field(default=True)  # Shrinking an infinite query drops fetched pages

    # Row identity: table (or schema.table) -> identity columns
    primary_keys: Dict[str, List[str]] = field(default_factory=dict)
    infer_identity: bool = field(default=True)  # Guess 'id' when no primary key is configured

    # Cache store
    store: str = field(default="memory")  # memory, sql
    store_url: str = field(default="sqlite:///pgcache.db")
    store_echo: bool = field(default=False)  # SQLAlchemy echo for debugging

    # Display
    output_format: str = field(default="table")  # table, json
    log_level: str = field(default="INFO")

    @classmethod
    def load(cls, config_file: Optional[Path] = None) -> "CacheConfig":
        """
        Build a config from every source in priority order.

        Args:
            config_file: Extra TOML file applied after the user and project files

        Returns:
            CacheConfig with files and environment applied
        """
        config = cls()

        sources = [user_config_path()]
        local = next((Path.cwd() / name for name in LOCAL_CONFIG_NAMES
                      if (Path.cwd() / name).exists()), None)
        if local is not None:
            sources.append(local)
        if config_file:
            sources.append(config_file)

        for path in sources:
            if path.exists():
                config.update_from(cls.read_toml(path))

        config.apply_environment(os.environ)
        return config

    @staticmethod
    def read_toml(path: Path) -> Dict[str, Any]:
        with open(path, "rb") as f:
            return tomli.load(f)

    def update_from(self, data: Dict[str, Any]):
        """Apply known keys from a parsed TOML table; unknown keys are ignored."""
        for name, value in data.items():
            if not hasattr(self, name):
                continue
            current = getattr(self, name)
            if isinstance(current, dict) and isinstance(value, dict):
                current.update(value)
            else:
                setattr(self, name, value)

    def apply_environment(self, environ: Dict[str, str]):
        """Apply PGCACHE_* variables. Table-valued settings cannot be set this way."""
        for var, raw in environ.items():
            if not var.startswith(ENV_PREFIX):
                continue
            name = var[len(ENV_PREFIX):].lower()
            if not hasattr(self, name) or isinstance(getattr(self, name), dict):
                continue
            setattr(self, name, _coerce(raw, getattr(self, name)))

    def save(self, path: Optional[Path] = None):
        """
        Write the config as TOML, leaving out unset values.

        Args:
            path: Destination file (defaults to the user config file)
        """
        path = path or user_config_path()
        path.parent.mkdir(parents=True, exist_ok=True)

        data = {k: v for k, v in asdict(self).items() if v is not None}
        with open(path, "wb") as f:
            tomli_w.dump(data, f)

    def identity_columns(self, schema: str, table: str) -> Optional[List[str]]:
        """Configured identity columns for a table, if any."""
        return self.primary_keys.get(f"{schema}.{table}") or self.primary_keys.get(table)


# Process-wide config used by the CLI
_config: Optional[CacheConfig] = None


def get_config(reload: bool = False, config_file: Optional[Path] = None) -> CacheConfig:
    """
    Return the process-wide config, loading it on first use.

    Args:
        reload: Load again from files and environment
        config_file: Extra TOML file to apply
    """
    global _config
    if _config is None or reload:
        _config = CacheConfig.load(config_file)
    return _config


def init_config(config_file: Optional[Path] = None, **overrides) -> CacheConfig:
    """
    Load the process-wide config and apply CLI overrides.

    Overrides whose value is None are skipped, so unset argparse options
    leave file and environment values in place.
    """
    config = get_config(reload=config_file is not None, config_file=config_file)

    for name, value in overrides.items():
        if hasattr(config, name) and value is not None:
            setattr(config, name, value)

    return config
