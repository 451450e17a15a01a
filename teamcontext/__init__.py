"""
TeamContext — Shared project knowledge that lives in the repository

Decisions, warnings, patterns and feature context are stored as plain JSON
under .teamcontext/, indexed locally for fast search, and shared through git.

Layers:
- core: canonical JSON store (source of truth)
- index: SQLite FTS5 search index and TF-IDF semantic vectors (rebuildable)
- services: git wrapper and the sync protocol

Usage:
    from teamcontext import Workspace, Decision

    ws = Workspace.init(".")
    ws.add_decision(Decision(content="Use JWT for auth", reason="Stateless", feature="auth-v2"))
    ws.search_decisions("JWT", feature="auth-v2")
"""

__version__ = "0.1.0"

from .errors import (
    TeamContextError, NotFoundError, StoreIOError, DecodeError,
    FeatureExistsError, FeatureStateError, MergeConflictError, SyncError,
)
from .core.models import (
    Decision, KnowledgeWarning, Insight, Pattern, EvolutionEvent,
    Feature, Conversation, Edge, FileIndex, Export, Project, Architecture, ApiEndpoint,
)
from .core.store import KnowledgeStore, AncestorChain
from .index.sqlite import SearchIndex, CodeChunk, RebuildReport
from .index.semantic import SemanticIndex, TFIDFEngine, SemanticResult
from .services.git import GitIntegration, GitResult
from .services.sync import KnowledgeSync, SyncReport, SyncStepResult
from .config import Config, ConfigManager, get_config
from .workspace import Workspace
