"""
Tests for Config — layered YAML configuration

These tests validate:
- Config hierarchy (project > user > env > defaults)
- set/get with validation, errors returned as messages
- Malformed files are ignored, never fatal
"""

import pytest
import yaml

from teamcontext.config import (
    Config, ConfigManager, GraphConfig, LoggingConfig, SearchConfig, get_config,
)


@pytest.fixture
def manager(tmp_path, user_config, monkeypatch):
    monkeypatch.delenv("TEAMCONTEXT_SYNC_REMOTE", raising=False)
    monkeypatch.delenv("TEAMCONTEXT_LOG_LEVEL", raising=False)
    project = tmp_path / "project"
    project.mkdir()
    return ConfigManager(project, user_config_path=user_config)


def _write(path, data):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data))


class TestDefaults:

    def test_defaults(self, manager):
        config = manager.load()
        assert config.search.file_limit == 20
        assert config.search.knowledge_limit == 50
        assert config.graph.traverse_depth == 2
        assert config.graph.ancestor_depth == 5
        assert config.sync.remote == "origin"
        assert config.logging.level == "WARNING"

    def test_defaults_are_valid(self):
        assert Config().validate() is None

    def test_round_trip(self):
        config = Config()
        config.sync.remote = "upstream"
        assert Config.from_dict(config.to_dict()) == config

    def test_get_config_reads_project_file(self, manager, monkeypatch):
        monkeypatch.setattr(ConfigManager, "USER_CONFIG_FILE", manager.user_config_path)
        _write(manager.project_config_path, {"graph": {"ancestor_depth": 3}})
        assert get_config(manager.project_dir).graph.ancestor_depth == 3

    def test_unknown_keys_ignored(self):
        config = Config.from_dict({"search": {"file_limit": 7, "fuzzy": True}, "llm": {"provider": "x"}})
        assert config.search.file_limit == 7


class TestHierarchy:
    """Project > user > environment > defaults."""

    def test_user_overrides_defaults(self, manager):
        _write(manager.user_config_path, {"search": {"file_limit": 5}})
        assert manager.load().search.file_limit == 5

    def test_project_overrides_user(self, manager):
        _write(manager.user_config_path, {"search": {"file_limit": 5, "knowledge_limit": 9}})
        _write(manager.project_config_path, {"search": {"file_limit": 7}})
        config = manager.load()
        assert config.search.file_limit == 7
        assert config.search.knowledge_limit == 9

    def test_environment_below_files(self, manager, monkeypatch):
        monkeypatch.setenv("TEAMCONTEXT_SYNC_REMOTE", "mirror")
        assert manager.reload().sync.remote == "mirror"
        _write(manager.user_config_path, {"sync": {"remote": "upstream"}})
        assert manager.reload().sync.remote == "upstream"

    def test_log_level_from_environment(self, manager, monkeypatch):
        monkeypatch.setenv("TEAMCONTEXT_LOG_LEVEL", "DEBUG")
        assert manager.load().logging.level == "DEBUG"

    def test_load_is_cached_until_reload(self, manager):
        first = manager.load()
        _write(manager.project_config_path, {"search": {"file_limit": 3}})
        assert manager.load() is first
        assert manager.reload().search.file_limit == 3


class TestMalformedFiles:

    def test_invalid_yaml_ignored(self, manager):
        manager.project_config_path.parent.mkdir(parents=True)
        manager.project_config_path.write_text("search: [unclosed")
        assert manager.load().search.file_limit == 20

    def test_non_mapping_ignored(self, manager):
        manager.user_config_path.parent.mkdir(parents=True)
        manager.user_config_path.write_text("- just\n- a list\n")
        assert manager.load() == Config()

    def test_non_mapping_section_ignored(self, manager):
        _write(manager.project_config_path, {"search": "fast"})
        assert manager.load().search == SearchConfig()


class TestSetGet:

    def test_set_persists_to_project(self, manager):
        assert manager.set("sync.remote", "upstream") is None
        data = yaml.safe_load(manager.project_config_path.read_text())
        assert data["sync"]["remote"] == "upstream"
        assert manager.reload().sync.remote == "upstream"

    def test_set_user_scope(self, manager):
        assert manager.set("search.file_limit", "8", scope="user") is None
        assert yaml.safe_load(manager.user_config_path.read_text())["search"]["file_limit"] == 8
        assert not manager.project_config_path.exists()

    def test_int_coercion(self, manager):
        manager.set("graph.ancestor_depth", "3")
        assert manager.load().graph.ancestor_depth == 3

    def test_list_coercion(self, manager):
        manager.set("index.exclude", "node_modules, dist")
        assert manager.get("index.exclude") == "node_modules,dist"

    @pytest.mark.parametrize("key, value, fragment", [
        ("remote", "x", "Invalid key format"),
        ("llm.provider", "x", "Unknown section"),
        ("sync.branch", "x", "Unknown sync setting"),
        ("search.file_limit", "many", "positive integer"),
        ("search.file_limit", "0", "positive integer"),
        ("graph.traverse_depth", "9", "between 1 and 5"),
        ("logging.level", "LOUD", "Unknown log level"),
        ("sync.remote", "", "must not be empty"),
    ])
    def test_set_errors(self, manager, key, value, fragment):
        error = manager.set(key, value)
        assert fragment in error
        assert not manager.project_config_path.exists()

    def test_rejected_value_not_applied(self, manager):
        manager.set("graph.traverse_depth", "9")
        assert manager.load().graph == GraphConfig()

    def test_get(self, manager):
        assert manager.get("search.file_limit") == "20"
        assert manager.get("sync.remote") == "origin"
        assert manager.get("nope") is None
        assert manager.get("search.nope") is None


class TestInitialize:

    def test_writes_project_section_only(self, manager):
        manager.initialize("shop", "2026-01-01T00:00:00+00:00")
        data = yaml.safe_load(manager.project_config_path.read_text())
        assert data == {"project": {"name": "shop", "version": "1", "created_at": "2026-01-01T00:00:00+00:00"}}

    def test_does_not_overwrite(self, manager):
        manager.initialize("shop", "2026-01-01T00:00:00+00:00")
        manager.set("sync.remote", "upstream")
        config = manager.initialize("other", "2027-01-01T00:00:00+00:00")
        assert config.project.name == "shop"
        assert config.sync.remote == "upstream"


class TestLoggingSection:

    def test_level_case_insensitive(self):
        assert LoggingConfig(level="debug").validate() is None
