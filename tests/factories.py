"""
Test Data Factory — Isolated TeamContext environments for tests

Creates real stores and indexes under pytest's tmp_path, plus small git
helpers for sync tests (bare remote + clones, no network).

Usage:
    def test_something(factory):
        factory.add_decision("Use JWT for auth", feature="auth-v2")
        assert factory.index.search_decisions("JWT")
"""

import subprocess
from pathlib import Path
from typing import List, Optional

import pytest

from teamcontext.core.models import Decision, Edge, Feature, KnowledgeWarning
from teamcontext.core.store import KnowledgeStore
from teamcontext.index.sqlite import SearchIndex


# ============================================================================
# GIT AVAILABILITY CHECK
# ============================================================================

def git_is_available() -> bool:
    """Check if git is installed and working."""
    try:
        result = subprocess.run(
            ["git", "--version"],
            capture_output=True,
            text=True,
            timeout=5
        )
        return result.returncode == 0
    except (subprocess.SubprocessError, FileNotFoundError, OSError):
        return False


# Decorator for tests that require git
requires_git = pytest.mark.skipif(
    not git_is_available(),
    reason="Git is not installed or not available"
)


def git(repo: Path, *args: str, check: bool = True) -> subprocess.CompletedProcess:
    """Run git in `repo` with a fixed identity."""
    return subprocess.run(
        ["git", "-c", "user.name=Test User", "-c", "user.email=test@test.com", *args],
        cwd=repo,
        capture_output=True,
        text=True,
        check=check,
    )


def init_repo(path: Path, branch: str = "main") -> Path:
    path.mkdir(parents=True, exist_ok=True)
    git(path, "init", "-q")
    git(path, "symbolic-ref", "HEAD", f"refs/heads/{branch}")
    git(path, "config", "user.email", "test@test.com")
    git(path, "config", "user.name", "Test User")
    git(path, "config", "commit.gpgsign", "false")
    return path


def commit_all(repo: Path, message: str) -> None:
    git(repo, "add", "-A")
    git(repo, "commit", "-q", "-m", message)


def clone(remote: Path, dest: Path) -> Path:
    subprocess.run(["git", "clone", "-q", str(remote), str(dest)], capture_output=True, check=True)
    git(dest, "config", "user.email", "test@test.com")
    git(dest, "config", "user.name", "Test User")
    git(dest, "config", "commit.gpgsign", "false")
    return dest


# ============================================================================
# KNOWLEDGE FACTORY
# ============================================================================

class TeamContextTestFactory:
    """
    A fresh knowledge root with a store and an index over it.

    All data lives under tmp_path and disappears after the test.
    """

    def __init__(self, tmp_path: Path):
        self.root = tmp_path / ".teamcontext"
        self.store = KnowledgeStore(self.root)
        self._index: Optional[SearchIndex] = None

    @property
    def index(self) -> SearchIndex:
        if self._index is None:
            self._index = SearchIndex(self.root)
        return self._index

    def close(self):
        if self._index is not None:
            self._index.close()
            self._index = None

    def add_decision(self, content: str, **kwargs) -> Decision:
        return self.store.add_decision(Decision(content=content, **kwargs))

    def add_warning(self, content: str, **kwargs) -> KnowledgeWarning:
        return self.store.add_warning(KnowledgeWarning(content=content, **kwargs))

    def create_feature(self, feature_id: str, **kwargs) -> Feature:
        return self.store.create_feature(Feature(id=feature_id, **kwargs))

    def chain_edges(self, length: int, node_type: str = "file") -> List[Edge]:
        """n0 -> n1 -> ... -> n{length}, stored through the bulk path."""
        edges = [
            Edge(node_type, f"n{i}", node_type, f"n{i + 1}", "related_to")
            for i in range(length)
        ]
        self.store.add_edges_bulk(edges)
        return edges
