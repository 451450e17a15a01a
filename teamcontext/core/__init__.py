"""
Core — Canonical store for TeamContext

- Models: knowledge entities and their dict round-trip
- JSON files: atomic whole-document persistence
- Graph: edge identity and bounded traversal
- Store: the source of truth, one coarse lock per instance
"""

from .models import (
    Decision, KnowledgeWarning, Insight, Pattern, EvolutionEvent, EvolutionTimeline,
    Feature, Conversation, Edge, KnowledgeGraph, FileIndex, Export,
    Project, Goal, Resource, Architecture, ServiceNode, DataFlow, ApiEndpoint, Stats,
    generate_id, now_iso,
)
from .jsonfile import read_json, write_json
from .graph import traverse, dedupe_edges, clamp_depth
from .store import KnowledgeStore, AncestorChain
