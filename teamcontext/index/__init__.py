"""
Index — Derived, rebuildable search layer (never authoritative)
"""

from .semantic import SemanticIndex, TFIDFEngine, SemanticResult, pack_vector, unpack_vector
from .sqlite import SearchIndex, CodeChunk, RebuildReport
