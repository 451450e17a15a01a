"""
Knowledge Store — Canonical, git-friendly persistence (source of truth)

Layout under the knowledge root (.teamcontext/):

    knowledge/  decisions, warnings, insights, patterns, graph, evolution, project
    index/      files, architecture, api-surface
    features/   <id>/meta.json + <id>/conversations/<conv-id>.json
    archive/    same shape as features/, for archived features
    cache/      derived SQLite index (never read or written here)

Invariants:
- Every collection file is a complete snapshot, replaced atomically
- A feature lives in exactly one of features/ or archive/
- Feature IDs are unique across both locations
- One lock per store instance serializes ALL reads and writes; across
  processes only the atomic rename protects readers, concurrent appends
  from two processes can still lose an update (last rename wins)
"""

import logging
import os
import threading
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Type, TypeVar, Union

from rapidfuzz import fuzz, process

from ..errors import (
    DecodeError, FeatureExistsError, FeatureStateError, NotFoundError,
    StoreIOError, TeamContextError,
)
from . import graph as kgraph
from .jsonfile import read_json, write_json
from .models import (
    ApiEndpoint, Architecture, Conversation, Decision, Edge, EvolutionEvent,
    EvolutionTimeline, Feature, FileIndex, Insight, KnowledgeGraph,
    KnowledgeWarning, Pattern, Project, Stats,
    DECISION_STATUSES, DEFAULT_DECISION_STATUS, DEFAULT_IMPACT,
    DEFAULT_PATTERN_SOURCE, DEFAULT_WARNING_SEVERITY, IMPACT_LEVELS,
    PATTERN_SOURCES, WARNING_SEVERITIES,
    PREFIX_CONVERSATION, PREFIX_DECISION, PREFIX_EVOLUTION, PREFIX_INSIGHT,
    PREFIX_PATTERN, PREFIX_WARNING,
    generate_id, now_iso,
)

logger = logging.getLogger(__name__)

R = TypeVar("R")

# Directory contract
KNOWLEDGE_DIR = "knowledge"
INDEX_DIR = "index"
FEATURES_DIR = "features"
ARCHIVE_DIR = "archive"
CACHE_DIR = "cache"
CONVERSATIONS_DIR = "conversations"
FEATURE_META = "meta.json"

DECISIONS_FILE = "decisions.json"
WARNINGS_FILE = "warnings.json"
INSIGHTS_FILE = "insights.json"
PATTERNS_FILE = "patterns.json"
GRAPH_FILE = "graph.json"
EVOLUTION_FILE = "evolution.json"
PROJECT_FILE = "project.json"
FILES_FILE = "files.json"
ARCHITECTURE_FILE = "architecture.json"
API_SURFACE_FILE = "api-surface.json"

DEFAULT_ANCESTOR_DEPTH = 5

# Why an ancestor walk stopped
STOP_ROOT = "root"        # reached a feature with no `extends`
STOP_CYCLE = "cycle"      # parent already visited
STOP_MISSING = "missing"  # parent (or start) not found in either location
STOP_DEPTH = "depth"      # depth bound reached with `extends` still set


class AncestorChain(list):
    """
    Ancestors, parent first. A plain list plus why the walk stopped, so
    "fewer ancestors because of a cycle" is distinguishable from "none".
    """

    def __init__(self, items: Iterable[Feature] = (), stop_reason: str = STOP_ROOT):
        super().__init__(items)
        self.stop_reason = stop_reason

    @property
    def hit_cycle(self) -> bool:
        return self.stop_reason == STOP_CYCLE


def _validate_choice(value: str, allowed: tuple, what: str) -> None:
    if value not in allowed:
        raise ValueError(f"Unknown {what} '{value}'. Valid: {', '.join(allowed)}")


def _check_feature_id(feature_id: str) -> None:
    """Feature IDs become directory names."""
    if not feature_id or not feature_id.strip():
        raise ValueError("Feature ID must not be empty")
    if feature_id in (".", "..") or "/" in feature_id or "\\" in feature_id or "\x00" in feature_id:
        raise ValueError(f"Invalid feature ID: {feature_id!r}")


class KnowledgeStore:
    """
    JSON-file canonical store.

    All Get operations on an uninitialized root return empty collections;
    write operations create directories as needed.
    """

    def __init__(self, base_path: Union[str, Path]):
        self.base_path = Path(base_path)
        self._lock = threading.RLock()

    # =========================================================================
    # Paths
    # =========================================================================

    def knowledge_path(self, name: str) -> Path:
        return self.base_path / KNOWLEDGE_DIR / name

    def index_path(self, name: str) -> Path:
        return self.base_path / INDEX_DIR / name

    @property
    def features_root(self) -> Path:
        return self.base_path / FEATURES_DIR

    @property
    def archive_root(self) -> Path:
        return self.base_path / ARCHIVE_DIR

    def feature_dir(self, feature_id: str, archived: bool = False) -> Path:
        root = self.archive_root if archived else self.features_root
        return root / feature_id

    # =========================================================================
    # Generic collection primitives
    # =========================================================================

    def _read_records(self, path: Path, cls: Type[R]) -> List[R]:
        data = read_json(path)
        if data is None:
            return []
        if not isinstance(data, list):
            raise DecodeError(path, f"expected a list, got {type(data).__name__}")
        try:
            return [cls.from_dict(item) for item in data]
        except (TypeError, ValueError) as e:
            raise DecodeError(path, str(e)) from e

    def _read_document(self, path: Path, cls: Type[R], empty: Callable[[], R]) -> R:
        data = read_json(path)
        if data is None:
            return empty()
        try:
            return cls.from_dict(data)
        except (TypeError, ValueError) as e:
            raise DecodeError(path, str(e)) from e

    def _append_record(self, path: Path, cls: Type[R], record: R) -> R:
        """Read full collection, append, write the full collection back."""
        with self._lock:
            records = self._read_records(path, cls)
            records.append(record)
            write_json(path, [r.to_dict() for r in records])
        logger.debug("appended %s to %s (%d total)", getattr(record, "id", "?"), path.name, len(records))
        return record

    # =========================================================================
    # Project
    # =========================================================================

    def get_project(self) -> Project:
        with self._lock:
            return self._read_document(self.knowledge_path(PROJECT_FILE), Project, Project)

    def save_project(self, project: Project) -> Project:
        with self._lock:
            project.updated_at = now_iso()
            write_json(self.knowledge_path(PROJECT_FILE), project.to_dict())
        return project

    # =========================================================================
    # File index (written by the external scanner)
    # =========================================================================

    def _read_files(self) -> Dict[str, FileIndex]:
        path = self.index_path(FILES_FILE)
        data = read_json(path)
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise DecodeError(path, f"expected an object keyed by path, got {type(data).__name__}")
        try:
            return {key: FileIndex.from_dict(value) for key, value in data.items()}
        except (TypeError, ValueError) as e:
            raise DecodeError(path, str(e)) from e

    def _write_files(self, files: Dict[str, FileIndex]) -> None:
        write_json(self.index_path(FILES_FILE), {k: f.to_dict() for k, f in files.items()})

    def get_files_index(self) -> Dict[str, FileIndex]:
        with self._lock:
            return self._read_files()

    def get_file_index(self, file_path: str) -> FileIndex:
        files = self.get_files_index()
        if file_path not in files:
            raise NotFoundError("file index", file_path)
        return files[file_path]

    def save_file_index(self, file: FileIndex) -> FileIndex:
        with self._lock:
            files = self._read_files()
            file.indexed_at = now_iso()
            files[file.path] = file
            self._write_files(files)
        return file

    def save_files_index_bulk(self, files: Union[Dict[str, FileIndex], Iterable[FileIndex]]) -> int:
        """Replace the whole file index. Returns number of entries written."""
        if not isinstance(files, dict):
            files = {f.path: f for f in files}
        stamp = now_iso()
        for entry in files.values():
            if not entry.indexed_at:
                entry.indexed_at = stamp
        with self._lock:
            self._write_files(files)
        return len(files)

    # =========================================================================
    # Decisions / Warnings / Insights / Patterns (append-only)
    # =========================================================================

    def get_decisions(self) -> List[Decision]:
        with self._lock:
            return self._read_records(self.knowledge_path(DECISIONS_FILE), Decision)

    def get_decisions_by_feature(self, feature: str) -> List[Decision]:
        return [d for d in self.get_decisions() if d.feature == feature]

    def add_decision(self, decision: Decision) -> Decision:
        if not decision.status:
            decision.status = DEFAULT_DECISION_STATUS
        _validate_choice(decision.status, DECISION_STATUSES, "decision status")
        decision.id = generate_id(PREFIX_DECISION)
        decision.created_at = now_iso()
        return self._append_record(self.knowledge_path(DECISIONS_FILE), Decision, decision)

    def get_warnings(self) -> List[KnowledgeWarning]:
        with self._lock:
            return self._read_records(self.knowledge_path(WARNINGS_FILE), KnowledgeWarning)

    def add_warning(self, warning: KnowledgeWarning) -> KnowledgeWarning:
        if not warning.severity:
            warning.severity = DEFAULT_WARNING_SEVERITY
        _validate_choice(warning.severity, WARNING_SEVERITIES, "severity")
        warning.id = generate_id(PREFIX_WARNING)
        warning.created_at = now_iso()
        return self._append_record(self.knowledge_path(WARNINGS_FILE), KnowledgeWarning, warning)

    def get_insights(self) -> List[Insight]:
        with self._lock:
            return self._read_records(self.knowledge_path(INSIGHTS_FILE), Insight)

    def add_insight(self, insight: Insight) -> Insight:
        insight.id = generate_id(PREFIX_INSIGHT)
        insight.created_at = now_iso()
        return self._append_record(self.knowledge_path(INSIGHTS_FILE), Insight, insight)

    def get_patterns(self) -> List[Pattern]:
        with self._lock:
            return self._read_records(self.knowledge_path(PATTERNS_FILE), Pattern)

    def get_pattern(self, pattern_id: str) -> Pattern:
        for pattern in self.get_patterns():
            if pattern.id == pattern_id:
                return pattern
        raise NotFoundError("pattern", pattern_id)

    def add_pattern(self, pattern: Pattern) -> Pattern:
        if not pattern.source:
            pattern.source = DEFAULT_PATTERN_SOURCE
        _validate_choice(pattern.source, PATTERN_SOURCES, "pattern source")
        pattern.id = generate_id(PREFIX_PATTERN)
        pattern.created_at = now_iso()
        return self._append_record(self.knowledge_path(PATTERNS_FILE), Pattern, pattern)

    # =========================================================================
    # Features (Active <-> Archived)
    # =========================================================================

    def _meta_path(self, feature_id: str, archived: bool = False) -> Path:
        return self.feature_dir(feature_id, archived) / FEATURE_META

    def _read_feature(self, meta_path: Path) -> Feature:
        data = read_json(meta_path)
        if data is None:
            raise NotFoundError("feature", meta_path.parent.name)
        try:
            return Feature.from_dict(data)
        except (TypeError, ValueError) as e:
            raise DecodeError(meta_path, str(e)) from e

    def _feature_ids(self, archived: bool) -> List[str]:
        root = self.archive_root if archived else self.features_root
        if not root.is_dir():
            return []
        return sorted(
            entry.name for entry in root.iterdir()
            if entry.is_dir() and (entry / FEATURE_META).exists()
        )

    def _feature_not_found(self, feature_id: str) -> NotFoundError:
        candidates = self._feature_ids(False) + self._feature_ids(True)
        matches = process.extract(feature_id, candidates, scorer=fuzz.ratio, limit=3, score_cutoff=60)
        return NotFoundError("feature", feature_id, [m[0] for m in matches])

    def feature_location(self, feature_id: str) -> Optional[str]:
        """'active', 'archived', or None."""
        with self._lock:
            if self._meta_path(feature_id).exists():
                return "active"
            if self._meta_path(feature_id, archived=True).exists():
                return "archived"
            return None

    def get_features(self, include_archived: bool = False, skip_invalid: bool = False) -> List[Feature]:
        """
        List features (active first, then archived if requested).

        Args:
            include_archived: Also list archive/
            skip_invalid: Log and skip unreadable meta files instead of raising
        """
        with self._lock:
            locations = [False, True] if include_archived else [False]
            features = []
            for archived in locations:
                for feature_id in self._feature_ids(archived):
                    try:
                        features.append(self._read_feature(self._meta_path(feature_id, archived)))
                    except (DecodeError, StoreIOError) as e:
                        if not skip_invalid:
                            raise
                        logger.warning("skipping unreadable feature %s: %s", feature_id, e)
            return features

    def get_feature(self, feature_id: str) -> Feature:
        """Active feature by ID."""
        with self._lock:
            meta = self._meta_path(feature_id)
            if not meta.exists():
                raise self._feature_not_found(feature_id)
            return self._read_feature(meta)

    def find_feature(self, feature_id: str) -> Feature:
        """Feature by ID, checking active first, then archived."""
        with self._lock:
            for archived in (False, True):
                meta = self._meta_path(feature_id, archived)
                if meta.exists():
                    return self._read_feature(meta)
            raise self._feature_not_found(feature_id)

    def create_feature(self, feature: Feature) -> Feature:
        _check_feature_id(feature.id)
        with self._lock:
            location = self.feature_location(feature.id)
            if location is not None:
                raise FeatureExistsError(feature.id, location)

            feature_dir = self.feature_dir(feature.id)
            try:
                (feature_dir / CONVERSATIONS_DIR).mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StoreIOError(feature_dir, e) from e

            stamp = now_iso()
            feature.status = "active"
            feature.created_at = stamp
            feature.last_accessed = stamp
            feature.archived_at = ""
            write_json(feature_dir / FEATURE_META, feature.to_dict())
        logger.info("created feature %s", feature.id)
        return feature

    def update_feature(self, feature: Feature) -> Feature:
        """Rewrite an active feature's meta, touching last_accessed."""
        with self._lock:
            meta = self._meta_path(feature.id)
            if not meta.exists():
                if self._meta_path(feature.id, archived=True).exists():
                    raise FeatureStateError(feature.id, "feature is archived; recall it before updating")
                raise self._feature_not_found(feature.id)
            feature.status = "active"
            feature.last_accessed = now_iso()
            write_json(meta, feature.to_dict())
        return feature

    def _relocate(self, feature_id: str, to_archive: bool, mutate: Callable[[Feature], None]) -> Feature:
        """
        Move a feature directory between roots, then rewrite its meta.

        If the meta rewrite fails the directory is moved back, so the feature
        never ends up half-transitioned.
        """
        src = self.feature_dir(feature_id, archived=not to_archive)
        dst = self.feature_dir(feature_id, archived=to_archive)
        feature = self._read_feature(src / FEATURE_META)

        if dst.exists():
            raise FeatureStateError(feature_id, f"destination already exists: {dst}")
        try:
            dst.parent.mkdir(parents=True, exist_ok=True)
            os.rename(src, dst)
        except OSError as e:
            raise StoreIOError(src, e) from e

        mutate(feature)
        try:
            write_json(dst / FEATURE_META, feature.to_dict())
        except StoreIOError:
            try:
                os.rename(dst, src)
            except OSError as rollback_error:
                logger.error("could not move %s back to %s: %s", dst, src, rollback_error)
            raise
        return feature

    def archive_feature(self, feature_id: str, summary: str = "") -> Feature:
        """Active -> Archived. Relocates the directory with its conversations."""
        with self._lock:
            location = self.feature_location(feature_id)
            if location == "archived":
                raise FeatureStateError(feature_id, "feature is already archived")
            if location is None:
                raise self._feature_not_found(feature_id)

            def mark_archived(feature: Feature) -> None:
                feature.status = "archived"
                feature.archived_at = now_iso()
                if summary:
                    feature.archive_summary = summary

            feature = self._relocate(feature_id, to_archive=True, mutate=mark_archived)
        logger.info("archived feature %s", feature_id)
        return feature

    def recall_feature(self, feature_id: str) -> Feature:
        """Archived -> Active."""
        with self._lock:
            location = self.feature_location(feature_id)
            if location == "active":
                raise FeatureStateError(feature_id, "feature is not archived")
            if location is None:
                raise self._feature_not_found(feature_id)

            def mark_active(feature: Feature) -> None:
                feature.status = "active"
                feature.archived_at = ""
                feature.last_accessed = now_iso()

            feature = self._relocate(feature_id, to_archive=False, mutate=mark_active)
        logger.info("recalled feature %s", feature_id)
        return feature

    def _lookup_feature(self, feature_id: str) -> Optional[Feature]:
        for archived in (False, True):
            meta = self._meta_path(feature_id, archived)
            if meta.exists():
                return self._read_feature(meta)
        return None

    def get_feature_ancestors(self, feature_id: str, max_depth: Optional[int] = None) -> AncestorChain:
        """
        Walk the `extends` chain, parent first.

        Best effort: stops on an unset `extends`, a repeated ID (cycle), an
        unresolvable parent, or the depth bound. Never raises for those.
        """
        depth = max_depth if max_depth and max_depth > 0 else DEFAULT_ANCESTOR_DEPTH
        chain = AncestorChain()

        with self._lock:
            try:
                current = self._lookup_feature(feature_id)
            except TeamContextError as e:
                logger.warning("cannot resolve feature %s: %s", feature_id, e)
                current = None
            if current is None:
                chain.stop_reason = STOP_MISSING
                return chain

            visited = {feature_id}
            for _ in range(depth):
                parent_id = current.extends
                if not parent_id:
                    chain.stop_reason = STOP_ROOT
                    return chain
                if parent_id in visited:
                    chain.stop_reason = STOP_CYCLE
                    return chain
                visited.add(parent_id)

                try:
                    parent = self._lookup_feature(parent_id)
                except TeamContextError as e:
                    logger.warning("cannot resolve parent %s of %s: %s", parent_id, current.id, e)
                    parent = None
                if parent is None:
                    chain.stop_reason = STOP_MISSING
                    return chain

                chain.append(parent)
                current = parent

            chain.stop_reason = STOP_DEPTH if current.extends else STOP_ROOT
            return chain

    # =========================================================================
    # Conversations (one file each, immutable)
    # =========================================================================

    def save_conversation(self, conv: Conversation) -> Conversation:
        with self._lock:
            location = self.feature_location(conv.feature)
            if location == "archived":
                raise FeatureStateError(conv.feature, "cannot attach conversations to an archived feature")
            if location is None:
                raise self._feature_not_found(conv.feature)

            conv.id = generate_id(PREFIX_CONVERSATION)
            conv.created_at = now_iso()
            path = self.feature_dir(conv.feature) / CONVERSATIONS_DIR / f"{conv.id}.json"
            write_json(path, conv.to_dict())
        return conv

    def get_conversations(self, feature_id: str) -> List[Conversation]:
        """Conversations of a feature, wherever it lives, oldest first."""
        with self._lock:
            location = self.feature_location(feature_id)
            if location is None:
                return []
            conv_dir = self.feature_dir(feature_id, archived=(location == "archived")) / CONVERSATIONS_DIR
            if not conv_dir.is_dir():
                return []

            conversations = []
            for path in sorted(conv_dir.glob("*.json")):
                data = read_json(path)
                try:
                    conversations.append(Conversation.from_dict(data))
                except (TypeError, ValueError) as e:
                    raise DecodeError(path, str(e)) from e

        conversations.sort(key=lambda c: (c.created_at, c.id))
        return conversations

    def get_all_conversations(self, include_archived: bool = False, skip_invalid: bool = False) -> List[Conversation]:
        all_conversations = []
        for feature in self.get_features(include_archived=include_archived, skip_invalid=skip_invalid):
            try:
                all_conversations.extend(self.get_conversations(feature.id))
            except (DecodeError, StoreIOError) as e:
                if not skip_invalid:
                    raise
                logger.warning("skipping conversations of %s: %s", feature.id, e)
        return all_conversations

    # =========================================================================
    # Knowledge graph
    # =========================================================================

    def get_knowledge_graph(self) -> KnowledgeGraph:
        with self._lock:
            return self._read_document(self.knowledge_path(GRAPH_FILE), KnowledgeGraph, KnowledgeGraph)

    def add_edge(self, edge: Edge) -> bool:
        """
        Idempotent single-edge insert.

        Returns:
            True if stored, False if an identical edge already existed
        """
        path = self.knowledge_path(GRAPH_FILE)
        with self._lock:
            graph = self._read_document(path, KnowledgeGraph, KnowledgeGraph)
            if kgraph.contains_edge(graph.edges, edge):
                return False
            graph.edges.append(edge)
            write_json(path, graph.to_dict())
        return True

    def add_edges_bulk(self, edges: Iterable[Edge]) -> int:
        """
        Unchecked bulk append for trusted batch producers.

        Does NOT deduplicate: callers pre-deduplicate (see graph.dedupe_edges).
        """
        edges = list(edges)
        path = self.knowledge_path(GRAPH_FILE)
        with self._lock:
            graph = self._read_document(path, KnowledgeGraph, KnowledgeGraph)
            graph.edges.extend(edges)
            write_json(path, graph.to_dict())
        return len(edges)

    def get_edges_from(self, node_type: str, node_id: str) -> List[Edge]:
        return kgraph.edges_from(self.get_knowledge_graph().edges, node_type, node_id)

    def get_edges_to(self, node_type: str, node_id: str) -> List[Edge]:
        return kgraph.edges_to(self.get_knowledge_graph().edges, node_type, node_id)

    def traverse_graph(self, start_type: str, start_id: str, max_depth: Optional[int] = None) -> List[Edge]:
        """Breadth-first walk, both edge directions, depth default 2, clamped to [1, 5]."""
        return kgraph.traverse(self.get_knowledge_graph().edges, start_type, start_id, max_depth)

    # =========================================================================
    # Evolution timeline
    # =========================================================================

    def get_evolution_timeline(self) -> EvolutionTimeline:
        with self._lock:
            return self._read_document(self.knowledge_path(EVOLUTION_FILE), EvolutionTimeline, EvolutionTimeline)

    def add_evolution_event(self, event: EvolutionEvent) -> EvolutionEvent:
        if not event.impact:
            event.impact = DEFAULT_IMPACT
        _validate_choice(event.impact, IMPACT_LEVELS, "impact")
        path = self.knowledge_path(EVOLUTION_FILE)
        with self._lock:
            timeline = self._read_document(path, EvolutionTimeline, EvolutionTimeline)
            event.id = generate_id(PREFIX_EVOLUTION)
            event.timestamp = now_iso()
            timeline.events.append(event)
            write_json(path, timeline.to_dict())
        return event

    # =========================================================================
    # Architecture / API surface
    # =========================================================================

    def get_architecture(self) -> Architecture:
        with self._lock:
            return self._read_document(self.index_path(ARCHITECTURE_FILE), Architecture, Architecture)

    def save_architecture(self, arch: Architecture) -> Architecture:
        with self._lock:
            arch.updated_at = now_iso()
            write_json(self.index_path(ARCHITECTURE_FILE), arch.to_dict())
        return arch

    def get_api_endpoints(self) -> List[ApiEndpoint]:
        with self._lock:
            return self._read_records(self.index_path(API_SURFACE_FILE), ApiEndpoint)

    def save_api_endpoints(self, endpoints: Iterable[ApiEndpoint]) -> None:
        with self._lock:
            write_json(self.index_path(API_SURFACE_FILE), [e.to_dict() for e in endpoints])

    # =========================================================================
    # Stats
    # =========================================================================

    def get_stats(self) -> Stats:
        features = self.get_features(include_archived=True)
        active = [f for f in features if not f.is_archived]
        return Stats(
            files_indexed=len(self.get_files_index()),
            decisions=len(self.get_decisions()),
            warnings=len(self.get_warnings()),
            patterns=len(self.get_patterns()),
            insights=len(self.get_insights()),
            features=len(features),
            active_features=len(active),
            archived_features=len(features) - len(active),
            conversations=sum(len(self.get_conversations(f.id)) for f in active),
            edges=len(self.get_knowledge_graph().edges),
            evolution_events=len(self.get_evolution_timeline().events),
        )
