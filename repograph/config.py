"""
Configuration management for repograph stores.

The configuration is stored as a TOML file in the store directory.
It specifies resolution depth, popularity decay parameters, the external
search service and reconciliation job settings.
"""

import os
import tomllib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import tomli_w


CONFIG_FILENAME = "repograph.toml"
CONFIG_VERSION = 1

DEFAULT_STORE_DIR = Path.home() / ".repograph"


@dataclass
class ResolveConfig:
    """Reference resolution settings."""
    depth: int = 2


@dataclass
class PopularityConfig:
    """Popularity counter settings."""
    decay_amount: int = 1
    interval_seconds: int = 3600
    # Minimum seconds between two counted hits from the same client
    rate_limit_seconds: int = 3600


@dataclass
class SearchConfig:
    """External search service settings. Empty url disables indexing."""
    url: str = ""
    api_key: str = ""
    timeout: float = 30.0


@dataclass
class JobsConfig:
    """Reconciliation job settings."""
    batch_size: int = 100
    run_on_startup: bool = True


@dataclass
class StoreConfig:
    """Complete store configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    # "local" (SQLite) or the name of a repograph.backends entry point
    backend: str = "local"

    resolve: ResolveConfig = field(default_factory=ResolveConfig)
    popularity: PopularityConfig = field(default_factory=PopularityConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    jobs: JobsConfig = field(default_factory=JobsConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def database_path(self) -> Path:
        """Path to the SQLite document database."""
        return self.path / "documents.db"

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def get_config_dir() -> Path:
    """Store directory: REPOGRAPH_STORE_PATH if set, else ~/.repograph."""
    env_path = os.environ.get("REPOGRAPH_STORE_PATH")
    if env_path:
        return Path(env_path).expanduser().resolve()
    return DEFAULT_STORE_DIR


def _apply_env_overrides(config: StoreConfig) -> StoreConfig:
    """Environment variables win over the search section of the file."""
    url = os.environ.get("REPOGRAPH_SEARCH_URL")
    if url:
        config.search.url = url
    api_key = os.environ.get("REPOGRAPH_SEARCH_API_KEY")
    if api_key:
        config.search.api_key = api_key
    return config


def _section(data: dict, name: str) -> dict[str, Any]:
    section = data.get(name, {})
    if not isinstance(section, dict):
        raise ValueError(f"Config section [{name}] must be a table")
    return section


def load_config(store_path: Path) -> StoreConfig:
    """
    Load configuration from a store directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = store_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    store = _section(data, "store")
    version = store.get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    resolve = _section(data, "resolve")
    popularity = _section(data, "popularity")
    search = _section(data, "search")
    jobs = _section(data, "jobs")

    config = StoreConfig(
        path=store_path,
        version=version,
        created=store.get("created", ""),
        backend=store.get("backend", "local"),
        resolve=ResolveConfig(depth=int(resolve.get("depth", 2))),
        popularity=PopularityConfig(
            decay_amount=int(popularity.get("decay_amount", 1)),
            interval_seconds=int(popularity.get("interval_seconds", 3600)),
            rate_limit_seconds=int(popularity.get("rate_limit_seconds", 3600)),
        ),
        search=SearchConfig(
            url=search.get("url", ""),
            api_key=search.get("api_key", ""),
            timeout=float(search.get("timeout", 30.0)),
        ),
        jobs=JobsConfig(
            batch_size=int(jobs.get("batch_size", 100)),
            run_on_startup=bool(jobs.get("run_on_startup", True)),
        ),
    )
    if config.resolve.depth < 0:
        raise ValueError(f"resolve.depth must be >= 0, got {config.resolve.depth}")
    if config.popularity.decay_amount < 1:
        raise ValueError("popularity.decay_amount must be >= 1")
    if config.jobs.batch_size < 1:
        raise ValueError("jobs.batch_size must be >= 1")
    return _apply_env_overrides(config)


def save_config(config: StoreConfig) -> None:
    """
    Save configuration to the store directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
            "backend": config.backend,
        },
        "resolve": {
            "depth": config.resolve.depth,
        },
        "popularity": {
            "decay_amount": config.popularity.decay_amount,
            "interval_seconds": config.popularity.interval_seconds,
            "rate_limit_seconds": config.popularity.rate_limit_seconds,
        },
        "search": {
            "url": config.search.url,
            "api_key": config.search.api_key,
            "timeout": config.search.timeout,
        },
        "jobs": {
            "batch_size": config.jobs.batch_size,
            "run_on_startup": config.jobs.run_on_startup,
        },
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def load_or_create_config(store_path: Path) -> StoreConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = store_path / CONFIG_FILENAME

    if config_path.exists():
        return load_config(store_path)
    config = StoreConfig(path=store_path)
    save_config(config)
    return _apply_env_overrides(config)
