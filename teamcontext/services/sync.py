"""
Knowledge Sync — Share the knowledge directory through git

Scoped strictly to the knowledge subtree:
- Pull: shelve local knowledge edits, fetch, merge, auto-resolve conflicts
  inside the subtree by taking the remote side, restore the shelf
- Push: commit knowledge edits, push the current branch

Both directions are fail-soft: problems come back in the report, nothing
is raised, nothing is retried.

Known limitation: "take remote, then restore the local shelf" approximates a
set-union merge for pure additions. If both sides edited the same existing
entry, the remote edit wins and the local one is lost.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

from ..errors import MergeConflictError, SyncError
from .git import GitIntegration

logger = logging.getLogger(__name__)


DEFAULT_KNOWLEDGE_DIR = ".teamcontext"
DEFAULT_REMOTE = "origin"
DEFAULT_COMMIT_PREFIX = "teamcontext: sync knowledge"

# Whole-document files; everything else under the subtree is an append-only collection
SINGLETON_FILES = ("config.yaml", "knowledge/project.json")

# Step statuses
OK = "ok"
UP_TO_DATE = "up_to_date"
NO_REMOTE = "no_remote"
COMMITTED_LOCAL = "committed_local"
FAILED = "failed"


@dataclass
class SyncStepResult:
    step: str  # pull | push
    status: str
    message: str = ""
    files_changed: List[str] = field(default_factory=list)
    resolved_paths: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status != FAILED


@dataclass
class SyncReport:
    pull: Optional[SyncStepResult] = None
    push: Optional[SyncStepResult] = None

    @property
    def ok(self) -> bool:
        return all(step.ok for step in (self.pull, self.push) if step is not None)

    @property
    def pulled_changes(self) -> bool:
        return self.pull is not None and self.pull.status == OK and bool(self.pull.files_changed)


class KnowledgeSync:
    """
    Sync protocol over a git work tree.

    Usage:
        report = KnowledgeSync(repo_root).run()
        if report.pulled_changes:
            index.rebuild(store)
    """

    def __init__(
        self,
        repo_root: Union[str, Path],
        knowledge_dir: str = DEFAULT_KNOWLEDGE_DIR,
        remote: str = DEFAULT_REMOTE,
        commit_prefix: str = DEFAULT_COMMIT_PREFIX,
        git: Optional[GitIntegration] = None,
    ):
        self.repo_root = Path(repo_root)
        self.knowledge_dir = Path(knowledge_dir).as_posix().strip("/")
        self.remote = remote
        self.commit_prefix = commit_prefix
        self.git = git or GitIntegration(self.repo_root)

    def run(self, pull: bool = True, push: bool = True) -> SyncReport:
        report = SyncReport()
        if pull:
            report.pull = self.pull()
        if push:
            report.push = self.push()
        return report

    def in_subtree(self, path: str) -> bool:
        return path == self.knowledge_dir or path.startswith(self.knowledge_dir + "/")

    def is_singleton(self, path: str) -> bool:
        return path[len(self.knowledge_dir) + 1:] in SINGLETON_FILES

    def _result(self, step: str, status: str, message: str, **extra) -> SyncStepResult:
        log = logger.warning if status == FAILED else logger.info
        log("sync %s: %s (%s)", step, status, message)
        return SyncStepResult(step=step, status=status, message=message, **extra)

    # =========================================================================
    # Pull
    # =========================================================================

    def pull(self) -> SyncStepResult:
        git = self.git
        if not git.is_git_repo:
            return self._result("pull", FAILED, f"not a git repository: {self.repo_root}")
        if not git.has_remote(self.remote):
            return self._result("pull", NO_REMOTE, f"no remote '{self.remote}', keeping local state")

        branch = git.current_branch()
        if not branch:
            return self._result("pull", FAILED, "HEAD is detached")

        shelved = False
        if git.has_changes(self.knowledge_dir):
            stash = git.stash_push(self.knowledge_dir, message="teamcontext sync")
            if not stash.ok:
                return self._result("pull", FAILED, f"could not shelve local changes: {stash.error}")
            shelved = True

        try:
            return self._pull_branch(branch)
        finally:
            if shelved:
                self._restore_shelf()

    def _restore_shelf(self):
        """
        Pop the shelved edits. On a conflicting pop the touched files go back
        to the merged version (no conflict markers in JSON) and the edits
        stay in the stash.
        """
        restored = self.git.stash_pop()
        if restored.ok:
            return
        conflicted = self.git.conflicted_paths()
        if conflicted:
            self.git.checkout_head(conflicted)
        logger.warning("sync pull: local knowledge changes left in stash: %s", restored.error)

    def _pull_branch(self, branch: str) -> SyncStepResult:
        git = self.git
        exists = git.remote_has_branch(self.remote, branch)
        if exists is None:
            return self._result("pull", FAILED, f"remote '{self.remote}' unreachable, keeping local state")
        if not exists:
            return self._result("pull", UP_TO_DATE, f"{self.remote}/{branch} does not exist yet")

        fetched = git.fetch(self.remote, branch)
        if not fetched.ok:
            return self._result("pull", FAILED, f"fetch failed: {fetched.error}")

        upstream = f"{self.remote}/{branch}"
        changed = git.diff_names("HEAD", upstream, self.knowledge_dir)
        if not changed:
            return self._result("pull", UP_TO_DATE, "knowledge already up to date")

        merged = git.merge(upstream)
        resolved: List[str] = []
        if not merged.ok:
            conflicts = git.conflicted_paths()
            if not conflicts:
                return self._result("pull", FAILED, f"merge failed: {merged.error}")
            try:
                resolved = self._auto_resolve(conflicts)
            except (MergeConflictError, SyncError) as e:
                return self._result("pull", FAILED, str(e), files_changed=changed)

        return self._result(
            "pull", OK, f"merged {len(changed)} knowledge file(s) from {upstream}",
            files_changed=changed, resolved_paths=resolved,
        )

    def _auto_resolve(self, conflicts: List[str]) -> List[str]:
        """
        Resolve conflicts inside the knowledge subtree by taking the remote side.

        Raises:
            MergeConflictError: a conflict lies outside the subtree (merge aborted)
            SyncError: resolution itself failed (merge aborted)
        """
        outside = [path for path in conflicts if not self.in_subtree(path)]
        if outside:
            self.git.merge_abort()
            raise MergeConflictError(outside)

        for path in conflicts:
            kind = "singleton" if self.is_singleton(path) else "collection"
            logger.info("sync pull: taking remote %s %s", kind, path)

        for step in (self.git.checkout_theirs(conflicts), self.git.add(conflicts), self.git.commit()):
            if not step.ok:
                self.git.merge_abort()
                raise SyncError(f"auto-resolve failed: {step.error}")
        return conflicts

    # =========================================================================
    # Push
    # =========================================================================

    def commit_message(self) -> str:
        return f"{self.commit_prefix} ({datetime.now().strftime('%Y-%m-%d %H:%M')})"

    def push(self) -> SyncStepResult:
        git = self.git
        if not git.is_git_repo:
            return self._result("push", FAILED, f"not a git repository: {self.repo_root}")

        changed = git.changed_paths(self.knowledge_dir)
        committed = False
        if changed:
            staged = git.add([self.knowledge_dir])
            if not staged.ok:
                return self._result("push", FAILED, f"could not stage knowledge: {staged.error}")
            commit = git.commit(self.commit_message(), paths=[self.knowledge_dir])
            if not commit.ok:
                return self._result("push", FAILED, f"commit failed: {commit.error}")
            committed = True

        if not git.has_remote(self.remote):
            if committed:
                return self._result("push", COMMITTED_LOCAL, "no remote configured, committed locally",
                                    files_changed=changed)
            return self._result("push", NO_REMOTE, "no remote configured, nothing to commit")

        branch = git.current_branch()
        if not branch:
            return self._result("push", FAILED, "HEAD is detached", files_changed=changed)

        pushed = git.push(self.remote, branch)
        if not pushed.ok:
            # Local commit stays
            return self._result("push", FAILED, f"push failed: {pushed.error}", files_changed=changed)
        return self._result("push", OK, f"pushed {branch} to {self.remote}", files_changed=changed)
