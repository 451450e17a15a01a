"""
Tests for Knowledge Sync — git protocol over a bare remote and two clones

These tests validate:
- Knowledge written in one clone reaches the other, index rebuilt
- Conflicts inside the knowledge subtree resolve to the remote side
- Conflicts outside the subtree abort the merge and leave the tree clean
- Local uncommitted knowledge survives a pull
- No remote / no repository degrade to a report, never an exception

SKIP CONDITIONS:
- Tests marked 'requires_git' skip if git is not installed
"""

import pytest

from teamcontext.core.models import Decision, Insight
from teamcontext.services.sync import (
    COMMITTED_LOCAL, FAILED, NO_REMOTE, OK, UP_TO_DATE, KnowledgeSync,
)
from teamcontext.workspace import Workspace
from tests.factories import commit_all, git, init_repo, requires_git

DECISIONS = ".teamcontext/knowledge/decisions.json"
CONFIG = ".teamcontext/config.yaml"


@pytest.fixture(autouse=True)
def _no_env_overrides(monkeypatch):
    monkeypatch.delenv("TEAMCONTEXT_SYNC_REMOTE", raising=False)
    monkeypatch.delenv("TEAMCONTEXT_LOG_LEVEL", raising=False)


def _open(repo, user_config):
    return Workspace.open(repo, user_config_path=user_config)


def _share_decision(repo, user_config, content):
    """Record a decision in `repo` and sync it to the remote."""
    with _open(repo, user_config) as ws:
        decision = ws.add_decision(Decision(content=content))
        report = ws.sync()
    assert report.push.status == OK
    return decision


@requires_git
class TestPropagation:

    def test_decision_reaches_other_clone(self, git_repo_pair, user_config):
        _, alice, bob = git_repo_pair
        with _open(alice, user_config) as ws:
            decision = ws.add_decision(Decision(content="Use JWT for auth", feature="auth-v2"))
            report = ws.sync()
        assert report.pull.status == UP_TO_DATE
        assert report.push.status == OK
        assert DECISIONS in report.push.files_changed

        with _open(bob, user_config) as ws:
            report = ws.sync()
            assert report.pull.status == OK
            assert report.pull.files_changed == [DECISIONS]
            assert report.pulled_changes
            assert [d.id for d in ws.store.get_decisions()] == [decision.id]
            assert [d.id for d in ws.search_decisions("JWT")] == [decision.id]

    def test_push_only_commits_knowledge(self, git_repo_pair, user_config):
        _, alice, _ = git_repo_pair
        (alice / "README.md").write_text("# Work in progress\n")
        _share_decision(alice, user_config, "Use JWT")
        status = git(alice, "status", "--porcelain").stdout
        assert " M README.md" in status
        assert ".teamcontext" not in status

    def test_commit_message_prefix(self, git_repo_pair, user_config):
        _, alice, _ = git_repo_pair
        _share_decision(alice, user_config, "Use JWT")
        subject = git(alice, "log", "-1", "--format=%s").stdout.strip()
        assert subject.startswith("teamcontext: sync knowledge (")

    def test_second_sync_is_noop(self, git_repo_pair, user_config):
        _, alice, _ = git_repo_pair
        _share_decision(alice, user_config, "Use JWT")
        with _open(alice, user_config) as ws:
            report = ws.sync()
        assert report.pull.status == UP_TO_DATE
        assert report.push.status == OK
        assert report.push.files_changed == []


@requires_git
class TestConflicts:

    def test_collection_conflict_takes_remote(self, git_repo_pair, user_config):
        _, alice, bob = git_repo_pair
        remote_decision = _share_decision(alice, user_config, "Use JWT")

        with _open(bob, user_config) as ws:
            ws.add_decision(Decision(content="Use sessions"))
        commit_all(bob, "Local decision")

        with _open(bob, user_config) as ws:
            report = ws.sync()
            assert report.pull.status == OK
            assert report.pull.resolved_paths == [DECISIONS]
            assert [d.id for d in ws.store.get_decisions()] == [remote_decision.id]
            assert [d.id for d in ws.search_decisions("JWT")] == [remote_decision.id]
        assert report.push.status == OK
        assert not (bob / ".git" / "MERGE_HEAD").exists()

    def test_singleton_conflict_takes_remote_and_reloads_config(self, git_repo_pair, user_config):
        _, alice, bob = git_repo_pair
        with _open(alice, user_config) as ws:
            assert ws.config_manager.set("sync.commit_prefix", "alice sync") is None
            assert ws.sync().push.status == OK

        with _open(bob, user_config) as ws:
            assert ws.config_manager.set("sync.commit_prefix", "bob sync") is None
        commit_all(bob, "Local config")

        with _open(bob, user_config) as ws:
            report = ws.sync(push=False)
            assert CONFIG in report.pull.resolved_paths
            assert ws.config.sync.commit_prefix == "alice sync"

    def test_conflict_outside_subtree_aborts(self, git_repo_pair, user_config):
        _, alice, bob = git_repo_pair
        with _open(alice, user_config) as ws:
            ws.add_decision(Decision(content="Use JWT"))
        (alice / "README.md").write_text("# Alice\n")
        commit_all(alice, "Alice changes")
        git(alice, "push", "-q", "origin", "main")

        with _open(bob, user_config) as ws:
            ws.add_decision(Decision(content="Use sessions"))
        (bob / "README.md").write_text("# Bob\n")
        commit_all(bob, "Bob changes")

        result = KnowledgeSync(bob).pull()
        assert result.status == FAILED
        assert "README.md" in result.message
        assert not (bob / ".git" / "MERGE_HEAD").exists()
        assert (bob / "README.md").read_text() == "# Bob\n"
        assert git(bob, "status", "--porcelain").stdout == ""


@requires_git
class TestLocalChanges:

    def test_uncommitted_knowledge_survives_pull(self, git_repo_pair, user_config):
        _, alice, bob = git_repo_pair
        remote_decision = _share_decision(alice, user_config, "Use JWT")

        with _open(bob, user_config) as ws:
            insight = ws.add_insight(Insight(content="Token refresh spikes at 9am"))
            report = ws.sync(push=False)
            assert report.pull.status == OK
            assert [i.id for i in ws.store.get_insights()] == [insight.id]
            assert [d.id for d in ws.store.get_decisions()] == [remote_decision.id]
        assert git(bob, "stash", "list").stdout == ""

    def test_conflicting_shelf_stays_in_stash(self, git_repo_pair, user_config):
        _, alice, bob = git_repo_pair
        with _open(alice, user_config) as ws:
            ws.config_manager.set("sync.commit_prefix", "alice sync")
            ws.sync()

        with _open(bob, user_config) as ws:
            ws.config_manager.set("sync.commit_prefix", "bob sync")
            report = ws.sync(push=False)
            assert report.pull.status == OK
            assert ws.config.sync.commit_prefix == "alice sync"
        assert "<<<<<<<" not in (bob / CONFIG).read_text()
        assert git(bob, "stash", "list").stdout.strip()


@requires_git
class TestDegradedEnvironments:

    def test_no_remote_commits_locally(self, tmp_path, user_config):
        repo = init_repo(tmp_path / "solo")
        Workspace.init(repo, user_config_path=user_config).close()
        commit_all(repo, "Initial commit")

        with _open(repo, user_config) as ws:
            ws.add_decision(Decision(content="Use JWT"))
            first = ws.sync()
            second = ws.sync()
        assert first.pull.status == NO_REMOTE
        assert first.push.status == COMMITTED_LOCAL
        assert first.ok
        assert second.push.status == NO_REMOTE
        assert git(repo, "status", "--porcelain").stdout == ""

    def test_remote_without_branch(self, tmp_path, user_config):
        remote = tmp_path / "empty.git"
        remote.mkdir()
        git(remote, "init", "-q", "--bare")
        repo = init_repo(tmp_path / "repo")
        Workspace.init(repo, user_config_path=user_config).close()
        commit_all(repo, "Initial commit")
        git(repo, "remote", "add", "origin", str(remote))

        report = KnowledgeSync(repo).run()
        assert report.pull.status == UP_TO_DATE
        assert report.push.status == OK
        assert git(remote, "rev-parse", "main").returncode == 0

    def test_unreachable_remote_keeps_local_commit(self, tmp_path, user_config):
        repo = init_repo(tmp_path / "repo")
        Workspace.init(repo, user_config_path=user_config).close()
        commit_all(repo, "Initial commit")
        git(repo, "remote", "add", "origin", str(tmp_path / "missing.git"))

        with _open(repo, user_config) as ws:
            ws.add_decision(Decision(content="Use JWT"))
            report = ws.sync()
        assert report.pull.status == FAILED
        assert "unreachable" in report.pull.message
        assert report.push.status == FAILED
        assert not report.ok
        assert git(repo, "status", "--porcelain").stdout == ""

    def test_not_a_repository(self, workspace):
        report = workspace.sync()
        assert report.pull.status == FAILED
        assert report.push.status == FAILED
        assert not report.ok
