"""
Models — Knowledge entities persisted by the canonical store

Every entity round-trips through plain dicts (to_dict / from_dict) so the
JSON files stay human-readable and git-diffable. Unknown keys are ignored
on load, missing keys fall back to defaults.
"""

import uuid
from dataclasses import dataclass, field, fields, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple, Type, TypeVar


T = TypeVar("T")

# Allowed values
DECISION_STATUSES = ("active", "superseded")
WARNING_SEVERITIES = ("info", "warning", "critical")
PATTERN_SOURCES = ("manual", "detected")
FEATURE_STATUSES = ("active", "archived")
IMPACT_LEVELS = ("low", "medium", "high")

# Defaults applied on add when unset
DEFAULT_DECISION_STATUS = "active"
DEFAULT_WARNING_SEVERITY = "warning"
DEFAULT_PATTERN_SOURCE = "manual"
DEFAULT_IMPACT = "medium"

# ID prefixes
PREFIX_DECISION = "dec"
PREFIX_WARNING = "warn"
PREFIX_INSIGHT = "ins"
PREFIX_PATTERN = "pat"
PREFIX_CONVERSATION = "conv"
PREFIX_EVOLUTION = "evt"


def now_iso() -> str:
    """Current UTC instant as ISO-8601."""
    return datetime.now(timezone.utc).isoformat()


def generate_id(prefix: str) -> str:
    """
    Generate an ID: type prefix, creation date, random suffix.

    Example: dec-20260117-3f9a0c12
    """
    today = datetime.now(timezone.utc).strftime("%Y%m%d")
    return f"{prefix}-{today}-{uuid.uuid4().hex[:8]}"


def to_epoch(timestamp: str) -> int:
    """ISO timestamp -> Unix seconds (0 when unset or unparseable)."""
    if not timestamp:
        return 0
    try:
        dt = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except ValueError:
        return 0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def from_epoch(seconds: Optional[int]) -> str:
    """Unix seconds -> ISO timestamp ("" for 0/None)."""
    if not seconds:
        return ""
    return datetime.fromtimestamp(seconds, timezone.utc).isoformat()


def _build(cls: Type[T], data: Dict[str, Any]) -> T:
    """Construct a dataclass from a dict, ignoring keys it does not know."""
    if not isinstance(data, dict):
        raise TypeError(f"{cls.__name__} expects an object, got {type(data).__name__}")
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in known and v is not None})


class _Record:
    """Mixin: dict round-trip for flat dataclasses."""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]):
        return _build(cls, data)


# =============================================================================
# File index (produced by the external scanner)
# =============================================================================

@dataclass
class Export(_Record):
    """An exported symbol from a file."""
    name: str
    kind: str = ""  # function, class, struct, type, const, variable
    line: int = 0


@dataclass
class FileIndex:
    """Indexed file metadata, keyed by path."""
    path: str
    summary: str = ""
    exports: List[Export] = field(default_factory=list)
    imports: List[str] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)
    language: str = ""
    patterns: List[str] = field(default_factory=list)
    related_files: List[str] = field(default_factory=list)
    content_hash: str = ""
    size_bytes: int = 0
    line_count: int = 0
    indexed_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'FileIndex':
        record = _build(cls, data)
        record.exports = [
            e if isinstance(e, Export) else Export.from_dict(e)
            for e in (record.exports or [])
        ]
        return record

    @property
    def export_names(self) -> List[str]:
        return [e.name for e in self.exports]


# =============================================================================
# Append-only knowledge
# =============================================================================

@dataclass
class Decision(_Record):
    """A recorded decision with its reasoning."""
    content: str
    reason: str = ""
    context: str = ""
    alternatives: List[str] = field(default_factory=list)
    feature: str = ""
    author: str = ""
    status: str = ""
    supersedes: str = ""
    related_files: List[str] = field(default_factory=list)
    related_decisions: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    id: str = ""
    created_at: str = ""


@dataclass
class KnowledgeWarning(_Record):
    """A documented pitfall."""
    content: str
    reason: str = ""
    evidence: str = ""
    severity: str = ""
    feature: str = ""
    author: str = ""
    related_files: List[str] = field(default_factory=list)
    related_decisions: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    id: str = ""
    created_at: str = ""


@dataclass
class Insight(_Record):
    content: str
    context: str = ""
    feature: str = ""
    author: str = ""
    related_files: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    id: str = ""
    created_at: str = ""


@dataclass
class Pattern(_Record):
    """A recognized way of doing things."""
    name: str
    description: str = ""
    examples: List[str] = field(default_factory=list)
    rules: List[str] = field(default_factory=list)
    anti_patterns: List[str] = field(default_factory=list)
    confidence: float = 0.0
    source: str = ""
    id: str = ""
    created_at: str = ""


@dataclass
class EvolutionEvent(_Record):
    """A point on the project's evolution timeline."""
    event_type: str  # decision, architecture_change, pattern_adopted, milestone, warning
    title: str
    description: str = ""
    author: str = ""
    impact: str = ""
    related_ids: List[str] = field(default_factory=list)
    id: str = ""
    timestamp: str = ""


# =============================================================================
# Features and conversations (working memory)
# =============================================================================

@dataclass
class Feature(_Record):
    """
    A bounded unit of work with its own lifecycle.

    Lives in exactly one of features/<id>/ (active) or archive/<id>/.
    """
    id: str
    status: str = "active"
    description: str = ""
    branch: str = ""
    extends: str = ""
    owner: str = ""
    current_state: str = ""
    relevant_files: List[str] = field(default_factory=list)
    decisions: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    contributors: List[str] = field(default_factory=list)
    archive_summary: str = ""
    created_at: str = ""
    last_accessed: str = ""
    archived_at: str = ""

    @property
    def is_archived(self) -> bool:
        return self.status == "archived"


@dataclass
class Conversation(_Record):
    """A compressed conversation attached to a feature. Immutable once saved."""
    feature: str
    summary: str
    key_points: List[str] = field(default_factory=list)
    files_discussed: List[str] = field(default_factory=list)
    decisions_made: List[str] = field(default_factory=list)
    original_tokens: int = 0
    compressed_tokens: int = 0
    start_time: str = ""
    end_time: str = ""
    id: str = ""
    created_at: str = ""


# =============================================================================
# Knowledge graph
# =============================================================================

EdgeKey = Tuple[str, str, str, str, str]


@dataclass
class Edge(_Record):
    """Typed, directed edge between two entity references."""
    from_type: str  # decision, warning, pattern, file, feature
    from_id: str
    to_type: str
    to_id: str
    relation: str  # affects, warns, follows, supersedes, related_to, belongs_to

    @property
    def key(self) -> EdgeKey:
        """Identity of an edge: the full 5-tuple."""
        return (self.from_type, self.from_id, self.to_type, self.to_id, self.relation)

    def touches(self, node_type: str, node_id: str) -> bool:
        return ((self.from_type == node_type and self.from_id == node_id)
                or (self.to_type == node_type and self.to_id == node_id))


@dataclass
class KnowledgeGraph:
    edges: List[Edge] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"edges": [e.to_dict() for e in self.edges]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'KnowledgeGraph':
        if not isinstance(data, dict):
            raise TypeError(f"KnowledgeGraph expects an object, got {type(data).__name__}")
        return cls(edges=[Edge.from_dict(e) for e in data.get("edges") or []])


@dataclass
class EvolutionTimeline:
    events: List[EvolutionEvent] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"events": [e.to_dict() for e in self.events]}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'EvolutionTimeline':
        if not isinstance(data, dict):
            raise TypeError(f"EvolutionTimeline expects an object, got {type(data).__name__}")
        return cls(events=[EvolutionEvent.from_dict(e) for e in data.get("events") or []])


# =============================================================================
# Project-level knowledge
# =============================================================================

@dataclass
class Goal(_Record):
    type: str  # business, technical
    description: str
    status: str = ""  # active, completed, abandoned


@dataclass
class Resource(_Record):
    name: str
    url: str
    type: str = ""  # docs, api, repo
    description: str = ""


@dataclass
class Project:
    name: str = ""
    description: str = ""
    languages: List[str] = field(default_factory=list)
    goals: List[Goal] = field(default_factory=list)
    resources: List[Resource] = field(default_factory=list)
    dont_do: List[str] = field(default_factory=list)
    always_do: List[str] = field(default_factory=list)
    updated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Project':
        project = _build(cls, data)
        project.goals = [g if isinstance(g, Goal) else Goal.from_dict(g) for g in project.goals]
        project.resources = [r if isinstance(r, Resource) else Resource.from_dict(r)
                             for r in project.resources]
        return project


@dataclass
class ServiceNode(_Record):
    name: str
    description: str = ""
    files: List[str] = field(default_factory=list)
    dependencies: List[str] = field(default_factory=list)


@dataclass
class DataFlow(_Record):
    source: str
    target: str
    description: str = ""


@dataclass
class Architecture:
    description: str = ""
    diagram: str = ""  # ASCII or mermaid
    services: List[ServiceNode] = field(default_factory=list)
    data_flows: List[DataFlow] = field(default_factory=list)
    updated_at: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Architecture':
        arch = _build(cls, data)
        arch.services = [s if isinstance(s, ServiceNode) else ServiceNode.from_dict(s)
                         for s in arch.services]
        arch.data_flows = [f if isinstance(f, DataFlow) else DataFlow.from_dict(f)
                           for f in arch.data_flows]
        return arch


@dataclass
class ApiEndpoint(_Record):
    method: str  # GET, POST, ...
    path: str    # /api/payments/:id
    file: str = ""
    handler: str = ""
    line: int = 0


@dataclass
class Stats:
    """Canonical store counts, for status reporting."""
    files_indexed: int = 0
    decisions: int = 0
    warnings: int = 0
    patterns: int = 0
    insights: int = 0
    features: int = 0
    active_features: int = 0
    archived_features: int = 0
    conversations: int = 0
    edges: int = 0
    evolution_events: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)
