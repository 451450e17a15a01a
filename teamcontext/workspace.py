"""
Workspace — One project's knowledge directory, wired together

Owns the canonical store, the derived search index and the semantic
model for a single `.teamcontext/` directory. Every write goes to the
store first; the index and vectors are then updated incrementally. If
that mirroring fails the canonical write still stands and the failure is
logged: `rebuild()` brings the index back in line.
"""

import logging
import sqlite3
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

from .config import ConfigManager
from .core.models import (
    Conversation, Decision, Edge, Feature, FileIndex, Insight, KnowledgeWarning, Pattern,
    Project, now_iso,
)
from .core.store import (
    ARCHIVE_DIR, CACHE_DIR, FEATURES_DIR, INDEX_DIR, KNOWLEDGE_DIR,
    AncestorChain, KnowledgeStore,
)
from .errors import NotFoundError
from .index.semantic import SemanticIndex, SemanticResult
from .index.sqlite import RebuildReport, SearchIndex
from .logging_config import configure_logging, configure_ops_log, remove_ops_log
from .services.sync import KnowledgeSync, SyncReport

logger = logging.getLogger(__name__)

WORKSPACE_DIR = ".teamcontext"
GITIGNORE_ENTRIES = ("cache/",)


class Workspace:
    """
    Usage:
        with Workspace.open() as ws:
            ws.add_decision(Decision(content="Use JWT for auth", reason="Stateless"))
            ws.search_decisions("JWT")
    """

    def __init__(self, repo_root: Union[str, Path], user_config_path: Optional[Path] = None):
        self.repo_root = Path(repo_root)
        self.root = self.repo_root / WORKSPACE_DIR
        self.config_manager = ConfigManager(self.repo_root, user_config_path=user_config_path)
        self.config = self.config_manager.load()
        self.store = KnowledgeStore(self.root)
        self.index = SearchIndex(self.root)
        self.semantic = SemanticIndex(self.index)
        self._ops_handler = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @classmethod
    def init(cls, repo_root: Union[str, Path], name: str = "",
             user_config_path: Optional[Path] = None) -> 'Workspace':
        """Create the directory contract under repo_root. Idempotent."""
        repo_root = Path(repo_root)
        root = repo_root / WORKSPACE_DIR
        for sub in (KNOWLEDGE_DIR, INDEX_DIR, FEATURES_DIR, ARCHIVE_DIR, CACHE_DIR):
            (root / sub).mkdir(parents=True, exist_ok=True)
        _ensure_gitignore(root / ".gitignore")

        name = name or repo_root.resolve().name
        ConfigManager(repo_root, user_config_path=user_config_path).initialize(name, now_iso())

        workspace = cls(repo_root, user_config_path=user_config_path)
        if not (root / KNOWLEDGE_DIR / "project.json").exists():
            workspace.store.save_project(Project(name=name))
        logger.info("initialized workspace at %s", root)
        return workspace

    @classmethod
    def find_root(cls, start: Optional[Union[str, Path]] = None) -> Optional[Path]:
        """Nearest directory at or above `start` holding a workspace."""
        start = Path(start or Path.cwd()).resolve()
        for candidate in (start, *start.parents):
            if (candidate / WORKSPACE_DIR).is_dir():
                return candidate
        return None

    @classmethod
    def open(cls, start: Optional[Union[str, Path]] = None,
             user_config_path: Optional[Path] = None) -> 'Workspace':
        repo_root = cls.find_root(start)
        if repo_root is None:
            raise NotFoundError("workspace", str(start or Path.cwd()))
        return cls(repo_root, user_config_path=user_config_path)

    def configure_logging(self, ops_log: bool = True):
        """Apply the configured log level; optionally start the rotating ops log in cache/."""
        configure_logging(self.config.logging.level)
        if ops_log and self._ops_handler is None:
            self._ops_handler = configure_ops_log(self.root / CACHE_DIR)

    def close(self):
        remove_ops_log(self._ops_handler)
        self._ops_handler = None
        self.index.close()

    def __enter__(self) -> 'Workspace':
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # =========================================================================
    # Mirroring
    # =========================================================================

    def _mirror(self, what: str, *actions):
        for action in actions:
            try:
                action()
            except sqlite3.Error as e:
                logger.warning("index not updated for %s (%s); run rebuild", what, e)

    def _mirror_record(self, what: str, index_fn, record):
        self._mirror(what, lambda: index_fn(record), lambda: self.semantic.add_record(record))

    def add_decision(self, decision: Decision) -> Decision:
        decision = self.store.add_decision(decision)
        self._mirror_record(decision.id, self.index.index_decision, decision)
        return decision

    def add_warning(self, warning: KnowledgeWarning) -> KnowledgeWarning:
        warning = self.store.add_warning(warning)
        self._mirror_record(warning.id, self.index.index_warning, warning)
        return warning

    def add_insight(self, insight: Insight) -> Insight:
        insight = self.store.add_insight(insight)
        self._mirror(insight.id, lambda: self.semantic.add_record(insight))
        return insight

    def add_pattern(self, pattern: Pattern) -> Pattern:
        pattern = self.store.add_pattern(pattern)
        self._mirror(pattern.id, lambda: self.semantic.add_record(pattern))
        return pattern

    def add_edge(self, edge: Edge) -> bool:
        return self.store.add_edge(edge)

    def create_feature(self, feature: Feature) -> Feature:
        feature = self.store.create_feature(feature)
        self._mirror(feature.id, lambda: self.index.index_feature(feature))
        return feature

    def update_feature(self, feature: Feature) -> Feature:
        feature = self.store.update_feature(feature)
        self._mirror(feature.id, lambda: self.index.index_feature(feature))
        return feature

    def archive_feature(self, feature_id: str, summary: str = "") -> Feature:
        feature = self.store.archive_feature(feature_id, summary)
        self._mirror(feature.id, lambda: self.index.index_feature(feature))
        return feature

    def recall_feature(self, feature_id: str) -> Feature:
        feature = self.store.recall_feature(feature_id)
        self._mirror(feature.id, lambda: self.index.index_feature(feature))
        return feature

    def save_file_index(self, file: FileIndex) -> FileIndex:
        file = self.store.save_file_index(file)
        self._mirror_record(file.path, self.index.index_file, file)
        return file

    def save_files_index_bulk(self, files: Union[Dict[str, FileIndex], Iterable[FileIndex]]) -> int:
        files = list(files.values()) if isinstance(files, dict) else list(files)
        count = self.store.save_files_index_bulk(files)
        self._mirror("file index", lambda: self.index.replace_files(files))
        return count

    def save_conversation(self, conv: Conversation) -> Conversation:
        conv = self.store.save_conversation(conv)
        self._mirror(conv.id, lambda: self.semantic.add_record(conv))
        return conv

    # =========================================================================
    # Queries (limits and depths from config)
    #
    # Keyword queries use FTS5 syntax: `AND`/`OR`/`NOT`, "quoted phrases",
    # prefix* terms, and `-`/`:` are operators (`auth-v2` is not a term).
    # Pass literal=True to match the words of `query` as typed.
    # =========================================================================

    @staticmethod
    def _match(query: str, literal: bool) -> str:
        return SearchIndex.escape_query(query) if literal else query

    def search_files(self, query: str = "", language: str = "", limit: Optional[int] = None,
                     literal: bool = False) -> List[FileIndex]:
        return self.index.search_files(self._match(query, literal), language,
                                       limit or self.config.search.file_limit)

    def search_decisions(self, query: str = "", feature: str = "", status: str = "",
                         limit: Optional[int] = None, literal: bool = False) -> List[Decision]:
        return self.index.search_decisions(self._match(query, literal), feature, status,
                                           limit or self.config.search.knowledge_limit)

    def search_warnings(self, query: str = "", feature: str = "", severity: str = "",
                        limit: Optional[int] = None, literal: bool = False) -> List[KnowledgeWarning]:
        return self.index.search_warnings(self._match(query, literal), feature, severity,
                                          limit or self.config.search.knowledge_limit)

    def search_semantic(self, query: str, doc_type: Optional[str] = None,
                        limit: Optional[int] = None) -> List[SemanticResult]:
        return self.semantic.search(query, doc_type, limit or self.config.search.semantic_limit)

    def traverse(self, start_type: str, start_id: str, max_depth: Optional[int] = None) -> List[Edge]:
        depth = max_depth if max_depth is not None else self.config.graph.traverse_depth
        return self.store.traverse_graph(start_type, start_id, depth)

    def ancestors(self, feature_id: str) -> AncestorChain:
        return self.store.get_feature_ancestors(feature_id, self.config.graph.ancestor_depth)

    # =========================================================================
    # Maintenance
    # =========================================================================

    def rebuild(self) -> RebuildReport:
        report = self.index.rebuild(self.store, max_semantic_files=self.config.search.max_semantic_files)
        self.semantic.invalidate()
        return report

    def sync(self, pull: bool = True, push: bool = True) -> SyncReport:
        """Sync the knowledge directory; rebuild the index if anything was pulled."""
        knowledge_dir = self.root.relative_to(self.repo_root).as_posix()
        report = KnowledgeSync(
            self.repo_root,
            knowledge_dir=knowledge_dir,
            remote=self.config.sync.remote,
            commit_prefix=self.config.sync.commit_prefix,
        ).run(pull=pull, push=push)

        if report.pulled_changes:
            self.config = self.config_manager.reload()
            self.rebuild()
        return report


def _ensure_gitignore(path: Path):
    text = path.read_text() if path.exists() else ""
    missing = [entry for entry in GITIGNORE_ENTRIES if entry not in text.splitlines()]
    if missing:
        with open(path, "a") as f:
            if text and not text.endswith("\n"):
                f.write("\n")
            f.write("\n".join(missing) + "\n")
