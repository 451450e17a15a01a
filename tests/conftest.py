"""
Shared pytest fixtures for the TeamContext test suite.

Every fixture works on real files under tmp_path: no mocks for the store,
the SQLite index or git.

Usage in tests:
    def test_something(store):
        store.add_decision(Decision(content="Use SQLite"))

    def test_sync(git_repo_pair):
        remote, alice, bob = git_repo_pair
"""

import logging

import pytest

from teamcontext.logging_config import LOGGER_NAME
from teamcontext.workspace import Workspace
from tests.factories import TeamContextTestFactory, clone, commit_all, git, git_is_available, init_repo


@pytest.fixture
def factory(tmp_path):
    """Store + lazily opened index on a fresh knowledge root."""
    f = TeamContextTestFactory(tmp_path)
    yield f
    f.close()


@pytest.fixture
def store(factory):
    return factory.store


@pytest.fixture
def index(factory):
    return factory.index


@pytest.fixture
def user_config(tmp_path):
    """Isolate tests from the developer's ~/.teamcontext/config.yaml."""
    return tmp_path / "home" / ".teamcontext" / "config.yaml"


@pytest.fixture
def workspace(tmp_path, user_config, monkeypatch):
    monkeypatch.delenv("TEAMCONTEXT_SYNC_REMOTE", raising=False)
    monkeypatch.delenv("TEAMCONTEXT_LOG_LEVEL", raising=False)
    repo = tmp_path / "project"
    repo.mkdir()
    ws = Workspace.init(repo, name="project", user_config_path=user_config)
    yield ws
    ws.close()


@pytest.fixture
def git_repo_pair(tmp_path, user_config):
    """
    A bare remote and two clones (alice, bob) sharing an initialized workspace.

    The remote's main branch holds README.md and the .teamcontext/ skeleton.
    """
    if not git_is_available():
        pytest.skip("Git is not available")

    remote = tmp_path / "remote.git"
    remote.mkdir()
    git(remote, "init", "-q", "--bare")
    git(remote, "symbolic-ref", "HEAD", "refs/heads/main")

    seed = init_repo(tmp_path / "seed")
    (seed / "README.md").write_text("# Project\n")
    Workspace.init(seed, name="project", user_config_path=user_config).close()
    commit_all(seed, "Initial commit")
    git(seed, "remote", "add", "origin", str(remote))
    git(seed, "push", "-q", "origin", "main")

    alice = clone(remote, tmp_path / "alice")
    bob = clone(remote, tmp_path / "bob")
    return remote, alice, bob


@pytest.fixture(autouse=True)
def _reset_package_logger():
    """Handlers added by a test never leak into the next one."""
    logger = logging.getLogger(LOGGER_NAME)
    handlers, level = list(logger.handlers), logger.level
    yield
    for handler in list(logger.handlers):
        if handler not in handlers:
            logger.removeHandler(handler)
            handler.close()
    logger.setLevel(level)
