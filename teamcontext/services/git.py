"""
Git Integration — Thin subprocess wrapper used by the sync protocol

Every call returns a GitResult instead of raising: git (and gh) are opaque,
possibly slow external tools, and callers decide how to degrade.
"""

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)


@dataclass
class GitResult:
    """Outcome of one git invocation."""
    ok: bool
    stdout: str = ""
    stderr: str = ""
    returncode: int = 0

    @property
    def lines(self) -> List[str]:
        return [line for line in self.stdout.splitlines() if line.strip()]

    @property
    def error(self) -> str:
        return (self.stderr or self.stdout).strip()


def _pathspec(paths: Sequence[str]) -> List[str]:
    return ["--", *paths] if paths else []


class GitIntegration:
    """Git repository integration."""

    def __init__(self, repo_path: Optional[Path] = None, timeout: Optional[float] = None):
        """
        Args:
            repo_path: Path to git repository. If None, uses current directory.
            timeout: Seconds before a single git call is abandoned (None = wait)
        """
        self.repo_path = Path(repo_path) if repo_path else Path.cwd()
        self.git_dir = self.repo_path / ".git"
        self.timeout = timeout

    @property
    def is_git_repo(self) -> bool:
        """Check if repo_path is the root of a git work tree."""
        return self.git_dir.exists()

    def _execute(self, argv: List[str]) -> GitResult:
        logger.debug("running %s", " ".join(argv))
        try:
            result = subprocess.run(
                argv,
                cwd=self.repo_path,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except (OSError, subprocess.SubprocessError) as e:
            logger.debug("%s failed to run: %s", argv[0], e)
            return GitResult(ok=False, stderr=str(e), returncode=-1)
        return GitResult(
            ok=result.returncode == 0,
            stdout=result.stdout,
            stderr=result.stderr,
            returncode=result.returncode,
        )

    def run(self, args: Sequence[str]) -> GitResult:
        return self._execute(["git", *args])

    def _run_git(self, args: Sequence[str]) -> Optional[str]:
        """stdout of a successful call, else None."""
        result = self.run(args)
        return result.stdout if result.ok else None

    # =========================================================================
    # Repository state
    # =========================================================================

    def find_root(self) -> Optional[Path]:
        output = self._run_git(["rev-parse", "--show-toplevel"])
        return Path(output.strip()) if output else None

    def current_branch(self) -> Optional[str]:
        """Checked-out branch name; None when HEAD is detached."""
        output = self._run_git(["symbolic-ref", "--short", "-q", "HEAD"])
        return output.strip() if output and output.strip() else None

    def remotes(self) -> List[str]:
        result = self.run(["remote"])
        return result.lines if result.ok else []

    def has_remote(self, name: str) -> bool:
        return name in self.remotes()

    def remote_has_branch(self, remote: str, branch: str) -> Optional[bool]:
        """None when the remote cannot be reached."""
        result = self.run(["ls-remote", "--heads", remote, branch])
        if not result.ok:
            return None
        return bool(result.lines)

    def changed_paths(self, *paths: str) -> List[str]:
        """Uncommitted (staged, unstaged or untracked) paths under `paths`."""
        result = self.run(["status", "--porcelain", "--untracked-files=all", *_pathspec(paths)])
        return [line[3:] for line in result.lines] if result.ok else []

    def has_changes(self, *paths: str) -> bool:
        return bool(self.changed_paths(*paths))

    # =========================================================================
    # Shelving
    # =========================================================================

    def stash_push(self, *paths: str, message: str = "teamcontext sync") -> GitResult:
        return self.run(["stash", "push", "--include-untracked", "-m", message, *_pathspec(paths)])

    def stash_pop(self) -> GitResult:
        return self.run(["stash", "pop"])

    # =========================================================================
    # Transport / merge
    # =========================================================================

    def fetch(self, remote: str, branch: Optional[str] = None) -> GitResult:
        return self.run(["fetch", remote] + ([branch] if branch else []))

    def diff_names(self, base: str, other: str, *paths: str) -> List[str]:
        result = self.run(["diff", "--name-only", base, other, *_pathspec(paths)])
        return result.lines if result.ok else []

    def merge(self, ref: str) -> GitResult:
        return self.run(["merge", "--no-edit", ref])

    def merge_abort(self) -> GitResult:
        return self.run(["merge", "--abort"])

    def conflicted_paths(self) -> List[str]:
        result = self.run(["diff", "--name-only", "--diff-filter=U"])
        return result.lines if result.ok else []

    def checkout_theirs(self, paths: Sequence[str]) -> GitResult:
        return self.run(["checkout", "--theirs", *_pathspec(paths)])

    def checkout_head(self, paths: Sequence[str]) -> GitResult:
        """Reset `paths` (index and work tree) to the committed version."""
        return self.run(["checkout", "HEAD", *_pathspec(paths)])

    def add(self, paths: Sequence[str]) -> GitResult:
        return self.run(["add", *_pathspec(paths)])

    def commit(self, message: Optional[str] = None, paths: Sequence[str] = ()) -> GitResult:
        """
        Commit. Without a message, reuses the prepared one (merge commits).

        With `paths`, only those paths are committed regardless of what
        else is staged.
        """
        args = ["commit", "-m", message] if message else ["commit", "--no-edit"]
        return self.run(args + _pathspec(paths))

    def push(self, remote: str, branch: str) -> GitResult:
        return self.run(["push", remote, branch])

    # =========================================================================
    # Pull request context (optional, via GitHub CLI)
    # =========================================================================

    def fetch_pr_description(self, number: int) -> Optional[str]:
        """PR body via `gh`; None if gh is missing, unauthenticated or the PR is unknown."""
        result = self._execute(["gh", "pr", "view", str(number), "--json", "body", "--jq", ".body"])
        if not result.ok:
            logger.info("could not fetch PR #%s description: %s", number, result.error)
            return None
        return result.stdout.strip()
