"""
Configuration — Centralized settings management

Config hierarchy (highest to lowest priority):
  1. Project config (.teamcontext/config.yaml)
  2. User config (~/.teamcontext/config.yaml)
  3. Environment variables
  4. Defaults

The project config file is versioned with the knowledge and synced
like any other singleton file (remote wins on conflict).
"""

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

logger = logging.getLogger(__name__)

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

ENV_SYNC_REMOTE = "TEAMCONTEXT_SYNC_REMOTE"
ENV_LOG_LEVEL = "TEAMCONTEXT_LOG_LEVEL"


def _positive(name: str, value: Any) -> Optional[str]:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        return f"{name} must be a positive integer, got {value!r}"
    return None


@dataclass
class ProjectConfig:
    name: str = ""
    version: str = "1"
    created_at: str = ""

    def validate(self) -> Optional[str]:
        return None


@dataclass
class IndexConfig:
    """File-scanner settings; stored here, consumed by the scanner."""
    include: List[str] = field(default_factory=list)
    exclude: List[str] = field(default_factory=lambda: ["node_modules", ".git", "vendor", "dist", "build"])
    max_file_size: int = 1_000_000

    def validate(self) -> Optional[str]:
        return _positive("index.max_file_size", self.max_file_size)


@dataclass
class SearchConfig:
    file_limit: int = 20
    knowledge_limit: int = 50
    semantic_limit: int = 10
    max_semantic_files: int = 500

    def validate(self) -> Optional[str]:
        for f in fields(self):
            error = _positive(f"search.{f.name}", getattr(self, f.name))
            if error:
                return error
        return None


@dataclass
class GraphConfig:
    ancestor_depth: int = 5
    traverse_depth: int = 2

    def validate(self) -> Optional[str]:
        error = _positive("graph.ancestor_depth", self.ancestor_depth)
        if error:
            return error
        if not isinstance(self.traverse_depth, int) or not 1 <= self.traverse_depth <= 5:
            return f"graph.traverse_depth must be between 1 and 5, got {self.traverse_depth!r}"
        return None


@dataclass
class SyncConfig:
    remote: str = "origin"
    commit_prefix: str = "teamcontext: sync knowledge"

    def validate(self) -> Optional[str]:
        if not self.remote:
            return "sync.remote must not be empty"
        if not self.commit_prefix:
            return "sync.commit_prefix must not be empty"
        return None


@dataclass
class LoggingConfig:
    level: str = "WARNING"

    def validate(self) -> Optional[str]:
        if str(self.level).upper() not in LOG_LEVELS:
            return f"Unknown log level '{self.level}'. Valid: {', '.join(LOG_LEVELS)}"
        return None


_SECTIONS = {
    "project": ProjectConfig,
    "index": IndexConfig,
    "search": SearchConfig,
    "graph": GraphConfig,
    "sync": SyncConfig,
    "logging": LoggingConfig,
}


@dataclass
class Config:
    """Application configuration."""
    project: ProjectConfig = field(default_factory=ProjectConfig)
    index: IndexConfig = field(default_factory=IndexConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    graph: GraphConfig = field(default_factory=GraphConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    def to_dict(self) -> Dict[str, Any]:
        return {
            name: {f.name: getattr(getattr(self, name), f.name) for f in fields(section_cls)}
            for name, section_cls in _SECTIONS.items()
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Config':
        """Create from dictionary. Unknown sections and keys are ignored."""
        sections = {}
        for name, section_cls in _SECTIONS.items():
            section_data = data.get(name) or {}
            if not isinstance(section_data, dict):
                logger.warning("ignoring config section %s: expected a mapping", name)
                section_data = {}
            known = {f.name for f in fields(section_cls)}
            sections[name] = section_cls(**{k: v for k, v in section_data.items() if k in known})
        return cls(**sections)

    def validate(self) -> Optional[str]:
        for name in _SECTIONS:
            error = getattr(self, name).validate()
            if error:
                return error
        return None


def _coerce(current: Any, value: str) -> Any:
    """Convert a CLI-style string to the type of the current value."""
    if isinstance(current, bool):
        return value.lower() in ("true", "1", "yes")
    if isinstance(current, int):
        try:
            return int(value)
        except ValueError:
            return value
    if isinstance(current, list):
        return [item.strip() for item in value.split(",") if item.strip()]
    return value


class ConfigManager:
    """
    Manages configuration loading and persistence.

    Hierarchy:
      1. Project config (.teamcontext/config.yaml)
      2. User config (~/.teamcontext/config.yaml)
      3. Environment
      4. Defaults
    """

    USER_CONFIG_DIR = Path.home() / ".teamcontext"
    USER_CONFIG_FILE = USER_CONFIG_DIR / "config.yaml"
    PROJECT_CONFIG_DIR = ".teamcontext"
    PROJECT_CONFIG_FILE = "config.yaml"

    def __init__(self, project_dir: Optional[Path] = None, user_config_path: Optional[Path] = None):
        self.project_dir = Path(project_dir) if project_dir else Path.cwd()
        self._user_config_path = Path(user_config_path) if user_config_path else self.USER_CONFIG_FILE
        self._config: Optional[Config] = None

    @property
    def project_config_path(self) -> Path:
        return self.project_dir / self.PROJECT_CONFIG_DIR / self.PROJECT_CONFIG_FILE

    @property
    def user_config_path(self) -> Path:
        return self._user_config_path

    def _read_layer(self, path: Path) -> Dict[str, Any]:
        if not path.exists():
            return {}
        try:
            with open(path) as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning("ignoring malformed config %s: %s", path, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("ignoring config %s: expected a mapping", path)
            return {}
        return data

    def _env_layer(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {}
        if os.environ.get(ENV_SYNC_REMOTE):
            data.setdefault("sync", {})["remote"] = os.environ[ENV_SYNC_REMOTE]
        if os.environ.get(ENV_LOG_LEVEL):
            data.setdefault("logging", {})["level"] = os.environ[ENV_LOG_LEVEL]
        return data

    def load(self) -> Config:
        """Load configuration from all sources (lowest priority first)."""
        if self._config is not None:
            return self._config

        config_data: Dict[str, Any] = {}
        for layer in (self._env_layer(), self._read_layer(self.user_config_path),
                      self._read_layer(self.project_config_path)):
            config_data = self._merge(config_data, layer)

        self._config = Config.from_dict(config_data)
        return self._config

    def reload(self) -> Config:
        self._config = None
        return self.load()

    def _write(self, path: Path, data: Dict[str, Any]):
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w") as f:
            yaml.safe_dump(data, f, default_flow_style=False, sort_keys=True)

    def initialize(self, name: str, created_at: str) -> Config:
        """Write a fresh project config holding only the project section (no-op if present)."""
        if not self.project_config_path.exists():
            self._write(self.project_config_path, {
                "project": {"name": name, "version": ProjectConfig.version, "created_at": created_at},
            })
        return self.reload()

    def save_project(self, config: Config):
        """Save configuration to project config file."""
        self._write(self.project_config_path, config.to_dict())
        self._config = config

    def save_user(self, config: Config):
        """Save configuration to user config file."""
        self._write(self.user_config_path, config.to_dict())
        self._config = config

    def set(self, key: str, value: str, scope: str = "project") -> Optional[str]:
        """
        Set a configuration value.

        Args:
            key: Dot-separated key (e.g., "sync.remote")
            value: Value to set
            scope: "project" or "user"

        Returns:
            Error message or None if successful
        """
        config = self.load()

        parts = key.split(".")
        if len(parts) != 2:
            return f"Invalid key format: {key}. Use 'section.setting' (e.g., 'sync.remote')"

        section_name, setting = parts
        if section_name not in _SECTIONS:
            return f"Unknown section: {section_name}. Valid: {', '.join(_SECTIONS)}"

        section = getattr(config, section_name)
        valid = [f.name for f in fields(section)]
        if setting not in valid:
            return f"Unknown {section_name} setting: {setting}. Valid: {', '.join(valid)}"

        previous = getattr(section, setting)
        setattr(section, setting, _coerce(previous, value))
        error = section.validate()
        if error:
            setattr(section, setting, previous)
            return error

        if scope == "project":
            self.save_project(config)
        else:
            self.save_user(config)
        return None

    def get(self, key: str) -> Optional[str]:
        """Get a configuration value as a string."""
        config = self.load()

        parts = key.split(".")
        if len(parts) != 2 or parts[0] not in _SECTIONS:
            return None

        section = getattr(config, parts[0])
        if not hasattr(section, parts[1]):
            return None
        value = getattr(section, parts[1])
        if isinstance(value, bool):
            return str(value).lower()
        if isinstance(value, list):
            return ",".join(value)
        return str(value)

    def _merge(self, base: Dict, override: Dict) -> Dict:
        """Deep merge two dicts, override wins."""
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._merge(result[key], value)
            else:
                result[key] = value
        return result


def get_config(project_dir: Optional[Path] = None) -> Config:
    """Load configuration for a project."""
    return ConfigManager(project_dir).load()
