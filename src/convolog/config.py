"""Configuration loading and management."""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

DEFAULT_DB_PATH = "~/convolog/state/conversations.db"
DEFAULT_ACTIVITY_DB_PATH = "~/convolog/state/activities.db"


@dataclass
class StorageConfig:
    db_path: Path = field(default_factory=lambda: Path.home() / "convolog" / "state" / "conversations.db")
    activity_db_path: Path = field(default_factory=lambda: Path.home() / "convolog" / "state" / "activities.db")


@dataclass
class ImporterConfig:
    batch_size: int = 100


@dataclass
class SearchConfig:
    # Number of most recent conversations searchable on the free tier
    free_tier_limit: int = 100
    threshold: float = 0.3
    snippet_context: int = 60


@dataclass
class Config:
    storage: StorageConfig = field(default_factory=StorageConfig)
    importer: ImporterConfig = field(default_factory=ImporterConfig)
    search: SearchConfig = field(default_factory=SearchConfig)


def expand_env_var(value: str) -> str:
    """Expand environment variables in string (e.g. ${VAR})."""
    if value.startswith("${") and value.endswith("}"):
        env_var = value[2:-1]
        return os.environ.get(env_var, value)
    return value


def expand_path(path_str: str) -> Path:
    """Expand ~ and environment variables in path."""
    return Path(os.path.expandvars(os.path.expanduser(path_str)))


def load_config(config_path: Path | None = None) -> Config:
    """Load configuration from YAML file."""
    if config_path is None:
        # Look for config in standard locations
        search_paths = [
            Path.cwd() / "config.yaml",
            Path.home() / ".config" / "convolog" / "config.yaml",
            Path("/etc/convolog/config.yaml"),
        ]
        for path in search_paths:
            if path.exists():
                config_path = path
                break

    if config_path is None or not config_path.exists():
        return Config()

    with open(config_path) as f:
        data = yaml.safe_load(f) or {}

    storage_data = data.get("storage", {})
    storage = StorageConfig(
        db_path=expand_path(expand_env_var(storage_data.get("db_path", DEFAULT_DB_PATH))),
        activity_db_path=expand_path(
            expand_env_var(storage_data.get("activity_db_path", DEFAULT_ACTIVITY_DB_PATH))
        ),
    )

    importer_data = data.get("importer", {})
    importer = ImporterConfig(
        batch_size=int(importer_data.get("batch_size", 100)),
    )
    if importer.batch_size < 1:
        raise ValueError(f"importer.batch_size must be positive, got {importer.batch_size}")

    search_data = data.get("search", {})
    search = SearchConfig(
        free_tier_limit=int(search_data.get("free_tier_limit", 100)),
        threshold=float(search_data.get("threshold", 0.3)),
        snippet_context=int(search_data.get("snippet_context", 60)),
    )

    return Config(storage=storage, importer=importer, search=search)
