"""
Semantic Engine — TF-IDF vectors and cosine-ranked retrieval

No model download, no network: a vocabulary is fitted over the knowledge
corpus, each document is stored as a sparse packed vector next to its text,
and queries are ranked by cosine similarity with a brute-force scan.

Scoped to corpora of roughly 10K documents. The scan stops early once
enough high-confidence hits exist, so ranking is approximate: a relevant
document above the floor is always eligible, exhaustive top-K is not promised.
"""

import logging
import math
import re
import struct
from collections import Counter
from dataclasses import dataclass
from pathlib import PurePosixPath
from typing import Dict, List, Optional, Sequence, Tuple, TYPE_CHECKING

from ..errors import DecodeError, StoreIOError
from ..core.jsonfile import read_json
from ..core.models import Conversation, Decision, FileIndex, Insight, KnowledgeWarning, Pattern

if TYPE_CHECKING:
    from ..core.store import KnowledgeStore
    from .sqlite import SearchIndex

logger = logging.getLogger(__name__)


MAX_VOCABULARY_SIZE = 5000
MIN_DOCUMENT_FREQUENCY = 2

SIMILARITY_FLOOR = 0.15
HIGH_CONFIDENCE = 0.6
EARLY_STOP_FACTOR = 3

DEFAULT_SEMANTIC_LIMIT = 10
DEFAULT_MAX_FILES = 500
KEY_DIRECTORY_BOOST = 5
KEY_DIRECTORIES = frozenset({"src", "lib", "pkg", "internal", "cmd", "app", "core", "api"})

GIT_EXPERTS_FILE = "git-experts.json"
GIT_RISKS_FILE = "git-risks.json"

# Document types
DOC_DECISION = "decision"
DOC_WARNING = "warning"
DOC_PATTERN = "pattern"
DOC_INSIGHT = "insight"
DOC_FILE = "file"
DOC_GIT_EXPERT = "git_expert"
DOC_GIT_RISK = "git_risk"
DOC_CONVERSATION = "conversation"


STOPWORDS = frozenset("""
    a an the and or but in on at to for of with by from is it as be was are
    were been has have had do does did will would could should may might this
    that these those not no if then else when which who whom what where how
    all each every both few more most other some such only own same so than
    too very can just about into through during before after above below
    between up
""".split())

# Programming abbreviations -> full forms
SYNONYMS = {
    "auth": "authentication", "db": "database", "api": "endpoint",
    "err": "error", "config": "configuration", "env": "environment",
    "repo": "repository", "msg": "message", "req": "request",
    "res": "response", "resp": "response", "ctx": "context",
    "fn": "function", "func": "function", "pkg": "package",
    "cmd": "command", "arg": "argument", "args": "arguments",
    "param": "parameter", "params": "parameters", "btn": "button",
    "nav": "navigation", "impl": "implementation", "init": "initialize",
    "util": "utility", "utils": "utilities", "lib": "library",
    "libs": "libraries", "dev": "development", "prod": "production",
    "dep": "dependency", "deps": "dependencies",
}

# Longest first; first match wins
STEM_SUFFIXES = (
    "ation", "tion", "ment", "ness", "able", "ible",
    "ing", "ous", "ive", "ful", "less", "ist",
    "ed", "ly", "er", "al", "es",
)

_TOKEN_SPLIT = re.compile(r"[^\w]+")

# Packed vector layout: [u16 length][u16 count] + count * (u16 index, f64 value)
_HEADER = struct.Struct("<HH")
_PAIR = struct.Struct("<Hd")


def simple_stem(word: str) -> str:
    """Strip one common suffix. Words under 5 chars are left alone; stems keep >= 3 chars."""
    if len(word) < 5:
        return word
    for suffix in STEM_SUFFIXES:
        if word.endswith(suffix):
            stem = word[:-len(suffix)]
            if len(stem) >= 3:
                return stem
    return word


def tokenize(text: str) -> List[str]:
    """
    Lowercase, split on non-word characters, drop short tokens and stopwords.

    Each kept token is followed by its stem (if different) and its synonym
    (if any); bigrams of the expanded list are appended at the end.
    """
    expanded: List[str] = []
    for token in _TOKEN_SPLIT.split(text.lower()):
        if len(token) < 2 or token in STOPWORDS:
            continue
        expanded.append(token)
        stem = simple_stem(token)
        if stem != token:
            expanded.append(stem)
        synonym = SYNONYMS.get(token)
        if synonym:
            expanded.append(synonym)

    bigrams = [f"{expanded[i]}_{expanded[i + 1]}" for i in range(len(expanded) - 1)]
    return expanded + bigrams


class TFIDFEngine:
    """Vocabulary (term -> index), idf per index, and the fitted corpus size."""

    def __init__(self):
        self.vocabulary: Dict[str, int] = {}
        self.idf: List[float] = []
        self.doc_count = 0

    tokenize = staticmethod(tokenize)

    @property
    def fitted(self) -> bool:
        return bool(self.vocabulary)

    def fit(self, documents: Sequence[str]) -> 'TFIDFEngine':
        """
        Build vocabulary and idf from a corpus.

        Terms seen in fewer than 2 documents are dropped; the rest are ranked
        by idf (descending, term ascending on ties) and capped at 5000.
        """
        self.doc_count = len(documents)
        self.vocabulary = {}
        self.idf = []
        if not documents:
            return self

        df: Counter = Counter()
        for doc in documents:
            df.update(set(tokenize(doc)))

        n = float(self.doc_count)
        ranked: List[Tuple[str, float]] = [
            (term, math.log(n / count) + 1.0)
            for term, count in df.items()
            if count >= MIN_DOCUMENT_FREQUENCY
        ]
        ranked.sort(key=lambda t: (-t[1], t[0]))
        ranked = ranked[:MAX_VOCABULARY_SIZE]

        for position, (term, idf) in enumerate(ranked):
            self.vocabulary[term] = position
            self.idf.append(idf)

        logger.info("fitted TF-IDF vocabulary: %d terms over %d documents", len(ranked), self.doc_count)
        return self

    def vectorize(self, text: str) -> Optional[List[float]]:
        """Length-normalized tf times idf. None when nothing is fitted."""
        if not self.vocabulary:
            return None

        vector = [0.0] * len(self.vocabulary)
        tokens = tokenize(text)
        if not tokens:
            return vector

        doc_len = float(len(tokens))
        for term, count in Counter(tokens).items():
            position = self.vocabulary.get(term)
            if position is not None:
                vector[position] = (count / doc_len) * self.idf[position]
        return vector

    def terms(self) -> List[str]:
        """Vocabulary in index order."""
        ordered = [""] * len(self.vocabulary)
        for term, position in self.vocabulary.items():
            ordered[position] = term
        return ordered

    @classmethod
    def from_terms(cls, terms: Sequence[str], idf: Sequence[float], doc_count: int) -> 'TFIDFEngine':
        if len(terms) != len(idf):
            raise ValueError(f"vocabulary has {len(terms)} terms but {len(idf)} idf weights")
        engine = cls()
        engine.vocabulary = {term: i for i, term in enumerate(terms)}
        engine.idf = [float(v) for v in idf]
        engine.doc_count = int(doc_count)
        return engine


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b) or not a:
        return 0.0
    dot = norm_a = norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y
    denom = math.sqrt(norm_a) * math.sqrt(norm_b)
    if denom == 0:
        return 0.0
    return dot / denom


def pack_vector(vector: Sequence[float]) -> bytes:
    """Sparse little-endian encoding: non-zero entries only."""
    pairs = [(i, v) for i, v in enumerate(vector) if v != 0]
    chunks = [_HEADER.pack(len(vector), len(pairs))]
    chunks.extend(_PAIR.pack(i, v) for i, v in pairs)
    return b"".join(chunks)


def unpack_vector(data: Optional[bytes]) -> Optional[List[float]]:
    """Inverse of pack_vector. None for blobs too short to hold a header."""
    if not data or len(data) < _HEADER.size:
        return None
    length, count = _HEADER.unpack_from(data, 0)
    vector = [0.0] * length
    offset = _HEADER.size
    for _ in range(count):
        if offset + _PAIR.size > len(data):
            break
        position, value = _PAIR.unpack_from(data, offset)
        if position < length:
            vector[position] = value
        offset += _PAIR.size
    return vector


@dataclass
class SemanticResult:
    id: str
    doc_type: str
    text: str
    similarity: float


def rank_candidates(
    query_vector: Sequence[float],
    rows,
    limit: int = DEFAULT_SEMANTIC_LIMIT,
) -> List[SemanticResult]:
    """
    Score (id, doc_type, text, blob) rows against a query vector.

    Keeps rows above the similarity floor; stops scanning once high-confidence
    hits reach `limit` and candidates reach 3x `limit`.
    """
    if limit <= 0:
        limit = DEFAULT_SEMANTIC_LIMIT

    results: List[SemanticResult] = []
    high_confidence = 0
    for doc_id, doc_type, text, blob in rows:
        vector = unpack_vector(blob)
        if vector is None:
            continue
        similarity = cosine_similarity(query_vector, vector)
        if similarity > SIMILARITY_FLOOR:
            results.append(SemanticResult(doc_id, doc_type, text, similarity))
            if similarity > HIGH_CONFIDENCE:
                high_confidence += 1
        if high_confidence >= limit and len(results) >= limit * EARLY_STOP_FACTOR:
            break

    results.sort(key=lambda r: (-r.similarity, r.id))
    return results[:limit]


# =============================================================================
# Corpus collection
# =============================================================================

Document = Tuple[str, str, str]  # (id, doc_type, text)


def _join(*parts: str) -> str:
    return " ".join(parts)


def document_for(record) -> Document:
    """(id, doc_type, text) for one canonical record."""
    if isinstance(record, Decision):
        return record.id, DOC_DECISION, _join(record.content, record.reason, record.context)
    if isinstance(record, KnowledgeWarning):
        return record.id, DOC_WARNING, _join(record.content, record.reason, record.evidence)
    if isinstance(record, Pattern):
        return record.id, DOC_PATTERN, _join(record.name, record.description)
    if isinstance(record, Insight):
        return record.id, DOC_INSIGHT, _join(record.content, record.context)
    if isinstance(record, FileIndex):
        return record.path, DOC_FILE, _join(record.summary, record.path, *record.export_names)
    if isinstance(record, Conversation):
        return record.id, DOC_CONVERSATION, _join(record.summary, *record.key_points, *record.files_discussed)
    raise TypeError(f"no semantic document for {type(record).__name__}")


def _file_priority(path: str, export_count: int) -> int:
    score = export_count
    if any(part in KEY_DIRECTORIES for part in PurePosixPath(path.replace("\\", "/")).parts):
        score += KEY_DIRECTORY_BOOST
    return score


def _read_report(path) -> list:
    """Git-miner reports are opaque files; anything unreadable counts as absent."""
    try:
        data = read_json(path)
    except (DecodeError, StoreIOError) as e:
        logger.warning("ignoring unreadable report %s: %s", path, e)
        return []
    return data if isinstance(data, list) else []


def _expert_document(directory: str, expert) -> Optional[Document]:
    """One git-expert entry as a document; None (logged) if it is malformed."""
    try:
        if not isinstance(expert, dict):
            raise TypeError(f"expected an object, got {type(expert).__name__}")
        status = "active" if expert.get("active") else "inactive"
        text = "Expert: %s in %s with %.0f%% ownership, %d commits, %s" % (
            expert.get("name", ""), directory, float(expert.get("ownership", 0)) * 100,
            int(expert.get("commits", 0)), status,
        )
    except (TypeError, ValueError) as e:
        logger.warning("semantic build: skipping malformed git expert in %s: %s", directory, e)
        return None
    return (f"expert:{directory}:{expert.get('email', '')}", DOC_GIT_EXPERT, text)


def collect_documents(store: 'KnowledgeStore', max_files: int = DEFAULT_MAX_FILES) -> List[Document]:
    """
    Gather every document worth embedding from the canonical store.

    A collection that fails to load is logged and skipped so the others
    still make it into the corpus.
    """
    docs: List[Document] = []

    def safely(label, loader):
        try:
            return loader()
        except (DecodeError, StoreIOError) as e:
            logger.warning("semantic build: skipping %s: %s", label, e)
            return None

    for label, loader in (
        ("decisions", store.get_decisions),
        ("warnings", store.get_warnings),
        ("patterns", store.get_patterns),
        ("insights", store.get_insights),
    ):
        docs.extend(document_for(record) for record in safely(label, loader) or [])

    files = safely("file index", store.get_files_index) or {}
    prioritized = sorted(
        files.values(),
        key=lambda f: (-_file_priority(f.path, len(f.exports)), f.path),
    )[:max_files]
    docs.extend(document_for(f) for f in prioritized)

    knowledge_dir = store.base_path / "knowledge"
    for entry in _read_report(knowledge_dir / GIT_EXPERTS_FILE):
        if not isinstance(entry, dict):
            continue
        directory = entry.get("directory", "")
        experts = entry.get("top_experts")
        for expert in experts if isinstance(experts, list) else []:
            doc = _expert_document(directory, expert)
            if doc is not None:
                docs.append(doc)

    for position, risk in enumerate(_read_report(knowledge_dir / GIT_RISKS_FILE)):
        if not isinstance(risk, dict):
            logger.warning("semantic build: skipping malformed git risk #%d", position)
            continue
        area = risk.get("area", "")
        text = "Risk: %s in %s - %s. Primary expert: %s" % (
            risk.get("risk_level", ""), area, risk.get("reason", ""), risk.get("primary_expert", ""),
        )
        docs.append((f"risk:{area}:{position}", DOC_GIT_RISK, text))

    conversations = safely(
        "conversations", lambda: store.get_all_conversations(skip_invalid=True)
    ) or []
    for conv in conversations:
        docs.append(document_for(conv))

    return docs


class SemanticIndex:
    """
    Fitted model + per-document vectors, persisted in the search index database.

    Usage:
        semantic = SemanticIndex(index)
        semantic.build(store)
        hits = semantic.search("token expiry", doc_type="decision")
    """

    def __init__(self, index: 'SearchIndex'):
        self.index = index
        self._engine: Optional[TFIDFEngine] = None

    @property
    def engine(self) -> Optional[TFIDFEngine]:
        if self._engine is None:
            self._engine = self.index.load_vocab()
        return self._engine

    def build(self, store: 'KnowledgeStore', max_files: int = DEFAULT_MAX_FILES) -> int:
        """
        Refit over the whole corpus and replace every stored vector.

        Returns:
            Number of vectors stored
        """
        docs = collect_documents(store, max_files=max_files)
        engine = TFIDFEngine().fit([text for _, _, text in docs])

        stored = 0
        with self.index.transaction():
            self.index.clear_semantic()
            if docs:
                self.index.store_vocab(engine)
            for doc_id, doc_type, text in docs:
                vector = engine.vectorize(text)
                if vector is None:
                    continue
                self.index.store_semantic_vector(doc_id, doc_type, text, pack_vector(vector))
                stored += 1

        self._engine = engine
        logger.info("semantic index built: %d vectors", stored)
        return stored

    def add_document(self, doc_id: str, doc_type: str, text: str) -> bool:
        """Vectorize with the current model. No-op (False) until a model is fitted."""
        engine = self.engine
        if engine is None or not engine.fitted:
            return False
        self.index.store_semantic_vector(doc_id, doc_type, text, pack_vector(engine.vectorize(text)))
        return True

    def add_record(self, record) -> bool:
        return self.add_document(*document_for(record))

    def search(self, query: str, doc_type: Optional[str] = None,
               limit: int = DEFAULT_SEMANTIC_LIMIT) -> List[SemanticResult]:
        engine = self.engine
        if engine is None or not engine.fitted:
            return []
        query_vector = engine.vectorize(query)
        if not query_vector or not any(query_vector):
            return []
        return self.index.search_semantic(query_vector, doc_type, limit)

    def invalidate(self) -> None:
        """Forget the cached model (reloaded from the database on next use)."""
        self._engine = None
