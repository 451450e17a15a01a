"""
Search Index — SQLite FTS5 projection of the canonical store

This is a PROJECTION, not source of truth.
Every row can be regenerated from the JSON collections via rebuild().

Invariants:
- Each searchable table is paired with an external-content FTS5 table,
  kept in step by insert/delete/update triggers
- Per-entity writes are upserts (replace by key); recursive_triggers is on
  so the implicit delete of a replaced row also reaches its FTS table
- One connection per instance; every call is serialized behind its lock
"""

import logging
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple, Union, TYPE_CHECKING

import orjson
import xxhash

from ..errors import DecodeError, StoreIOError
from ..core.models import (
    Decision, Export, Feature, FileIndex, KnowledgeWarning,
    from_epoch, to_epoch,
)
from .semantic import (
    DEFAULT_SEMANTIC_LIMIT, SemanticIndex, SemanticResult, TFIDFEngine, rank_candidates,
)

if TYPE_CHECKING:
    from ..core.store import KnowledgeStore

logger = logging.getLogger(__name__)


INDEX_FILE = "index.db"
SCHEMA_VERSION = 1

DEFAULT_FILE_LIMIT = 20
DEFAULT_KNOWLEDGE_LIMIT = 50
DEFAULT_CODE_LIMIT = 20

_JSON_OPTIONS = orjson.OPT_SORT_KEYS

_SCHEMA = """
    CREATE TABLE IF NOT EXISTS files (
        path TEXT PRIMARY KEY,
        summary TEXT,
        exports TEXT,
        exports_json TEXT,
        imports TEXT,
        language TEXT,
        patterns TEXT,
        content_hash TEXT,
        indexed_at INTEGER
    );

    CREATE VIRTUAL TABLE IF NOT EXISTS files_fts USING fts5(
        path, summary, exports,
        content='files', content_rowid='rowid'
    );

    CREATE TRIGGER IF NOT EXISTS files_ai AFTER INSERT ON files BEGIN
        INSERT INTO files_fts(rowid, path, summary, exports)
        VALUES (new.rowid, new.path, new.summary, new.exports);
    END;
    CREATE TRIGGER IF NOT EXISTS files_ad AFTER DELETE ON files BEGIN
        INSERT INTO files_fts(files_fts, rowid, path, summary, exports)
        VALUES ('delete', old.rowid, old.path, old.summary, old.exports);
    END;
    CREATE TRIGGER IF NOT EXISTS files_au AFTER UPDATE ON files BEGIN
        INSERT INTO files_fts(files_fts, rowid, path, summary, exports)
        VALUES ('delete', old.rowid, old.path, old.summary, old.exports);
        INSERT INTO files_fts(rowid, path, summary, exports)
        VALUES (new.rowid, new.path, new.summary, new.exports);
    END;

    CREATE TABLE IF NOT EXISTS decisions (
        id TEXT PRIMARY KEY,
        content TEXT,
        reason TEXT,
        context TEXT,
        feature TEXT,
        status TEXT,
        created_at INTEGER
    );

    CREATE VIRTUAL TABLE IF NOT EXISTS decisions_fts USING fts5(
        content, reason, context,
        content='decisions', content_rowid='rowid'
    );

    CREATE TRIGGER IF NOT EXISTS decisions_ai AFTER INSERT ON decisions BEGIN
        INSERT INTO decisions_fts(rowid, content, reason, context)
        VALUES (new.rowid, new.content, new.reason, new.context);
    END;
    CREATE TRIGGER IF NOT EXISTS decisions_ad AFTER DELETE ON decisions BEGIN
        INSERT INTO decisions_fts(decisions_fts, rowid, content, reason, context)
        VALUES ('delete', old.rowid, old.content, old.reason, old.context);
    END;
    CREATE TRIGGER IF NOT EXISTS decisions_au AFTER UPDATE ON decisions BEGIN
        INSERT INTO decisions_fts(decisions_fts, rowid, content, reason, context)
        VALUES ('delete', old.rowid, old.content, old.reason, old.context);
        INSERT INTO decisions_fts(rowid, content, reason, context)
        VALUES (new.rowid, new.content, new.reason, new.context);
    END;

    CREATE TABLE IF NOT EXISTS warnings (
        id TEXT PRIMARY KEY,
        content TEXT,
        reason TEXT,
        evidence TEXT,
        severity TEXT,
        feature TEXT,
        created_at INTEGER
    );

    CREATE VIRTUAL TABLE IF NOT EXISTS warnings_fts USING fts5(
        content, reason, evidence,
        content='warnings', content_rowid='rowid'
    );

    CREATE TRIGGER IF NOT EXISTS warnings_ai AFTER INSERT ON warnings BEGIN
        INSERT INTO warnings_fts(rowid, content, reason, evidence)
        VALUES (new.rowid, new.content, new.reason, new.evidence);
    END;
    CREATE TRIGGER IF NOT EXISTS warnings_ad AFTER DELETE ON warnings BEGIN
        INSERT INTO warnings_fts(warnings_fts, rowid, content, reason, evidence)
        VALUES ('delete', old.rowid, old.content, old.reason, old.evidence);
    END;
    CREATE TRIGGER IF NOT EXISTS warnings_au AFTER UPDATE ON warnings BEGIN
        INSERT INTO warnings_fts(warnings_fts, rowid, content, reason, evidence)
        VALUES ('delete', old.rowid, old.content, old.reason, old.evidence);
        INSERT INTO warnings_fts(rowid, content, reason, evidence)
        VALUES (new.rowid, new.content, new.reason, new.evidence);
    END;

    CREATE TABLE IF NOT EXISTS features (
        id TEXT PRIMARY KEY,
        status TEXT,
        description TEXT,
        extends TEXT,
        current_state TEXT,
        relevant_files TEXT,
        created_at INTEGER,
        last_accessed INTEGER
    );

    CREATE TABLE IF NOT EXISTS code_chunks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        file_path TEXT NOT NULL,
        chunk_type TEXT,
        chunk_name TEXT,
        start_line INTEGER,
        end_line INTEGER,
        content TEXT,
        language TEXT,
        indexed_at INTEGER
    );

    CREATE VIRTUAL TABLE IF NOT EXISTS code_chunks_fts USING fts5(
        file_path, chunk_name, content,
        content='code_chunks', content_rowid='id'
    );

    CREATE TRIGGER IF NOT EXISTS code_chunks_ai AFTER INSERT ON code_chunks BEGIN
        INSERT INTO code_chunks_fts(rowid, file_path, chunk_name, content)
        VALUES (new.id, new.file_path, new.chunk_name, new.content);
    END;
    CREATE TRIGGER IF NOT EXISTS code_chunks_ad AFTER DELETE ON code_chunks BEGIN
        INSERT INTO code_chunks_fts(code_chunks_fts, rowid, file_path, chunk_name, content)
        VALUES ('delete', old.id, old.file_path, old.chunk_name, old.content);
    END;
    CREATE TRIGGER IF NOT EXISTS code_chunks_au AFTER UPDATE ON code_chunks BEGIN
        INSERT INTO code_chunks_fts(code_chunks_fts, rowid, file_path, chunk_name, content)
        VALUES ('delete', old.id, old.file_path, old.chunk_name, old.content);
        INSERT INTO code_chunks_fts(rowid, file_path, chunk_name, content)
        VALUES (new.id, new.file_path, new.chunk_name, new.content);
    END;

    CREATE INDEX IF NOT EXISTS idx_code_chunks_file ON code_chunks(file_path);

    CREATE TABLE IF NOT EXISTS semantic_vectors (
        id TEXT PRIMARY KEY,
        doc_type TEXT,
        doc_text TEXT,
        vector BLOB,
        updated_at INTEGER
    );

    CREATE INDEX IF NOT EXISTS idx_semantic_doc_type ON semantic_vectors(doc_type);

    CREATE TABLE IF NOT EXISTS semantic_vocab (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        vocabulary TEXT,
        idf TEXT,
        doc_count INTEGER
    );
"""

# Dropped on schema version mismatch, in dependency-safe order
_ALL_TABLES = (
    "files_fts", "files", "decisions_fts", "decisions", "warnings_fts", "warnings",
    "features", "code_chunks_fts", "code_chunks", "semantic_vectors", "semantic_vocab",
)

_FTS_TABLES = ("files_fts", "decisions_fts", "warnings_fts", "code_chunks_fts")

# Row queries hashed by fingerprint(); write-time bookkeeping columns left out
_FINGERPRINT_QUERIES = (
    "SELECT path, summary, exports, exports_json, imports, language, patterns, content_hash, indexed_at"
    " FROM files ORDER BY path",
    "SELECT id, content, reason, context, feature, status, created_at FROM decisions ORDER BY id",
    "SELECT id, content, reason, evidence, severity, feature, created_at FROM warnings ORDER BY id",
    "SELECT id, status, description, extends, current_state, relevant_files, created_at, last_accessed"
    " FROM features ORDER BY id",
    "SELECT file_path, chunk_type, chunk_name, start_line, end_line, content, language"
    " FROM code_chunks ORDER BY file_path, start_line, id",
    "SELECT id, doc_type, doc_text, vector FROM semantic_vectors ORDER BY id",
    "SELECT vocabulary, idf, doc_count FROM semantic_vocab",
)

_STATS_TABLES = ("files", "decisions", "warnings", "features", "code_chunks", "semantic_vectors")


def _dump(value: Any) -> str:
    return orjson.dumps(value, option=_JSON_OPTIONS).decode()


def _load_list(raw: Optional[str]) -> list:
    if not raw:
        return []
    return orjson.loads(raw)


def _limit(limit: Optional[int], default: int) -> int:
    return limit if limit and limit > 0 else default


@dataclass
class CodeChunk:
    """A searchable sub-file unit (function, class, block, line range)."""
    file_path: str
    content: str
    chunk_type: str = ""   # function, class, block, lines
    chunk_name: str = ""   # symbol name or "lines:10-50"
    start_line: int = 0
    end_line: int = 0
    language: str = ""
    id: int = 0


@dataclass
class RebuildReport:
    """Outcome of SearchIndex.rebuild()."""
    indexed: Dict[str, int] = field(default_factory=dict)
    skipped: int = 0
    errors: List[str] = field(default_factory=list)
    vectors: int = 0
    chunks_pruned: int = 0

    @property
    def ok(self) -> bool:
        return self.skipped == 0

    def skip(self, what: str, error: Exception) -> None:
        self.skipped += 1
        self.errors.append(f"{what}: {error}")
        logger.warning("rebuild: skipped %s: %s", what, error)


class SearchIndex:
    """
    SQLite-based search projection.

    Performance settings favor speed over durability: the index is a cache
    and can always be rebuilt from the canonical store.
    """

    def __init__(self, base_path: Union[str, Path]):
        self.base_path = Path(base_path)
        self.path = self.base_path / "cache" / INDEX_FILE
        self.path.parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._tx_depth = 0
        self.conn: Optional[sqlite3.Connection] = sqlite3.connect(
            str(self.path),
            check_same_thread=False,
            isolation_level=None,
            cached_statements=256,
        )
        self.conn.row_factory = sqlite3.Row
        self._configure_pragmas()
        self._init_schema()

    def _configure_pragmas(self):
        self.conn.executescript("""
            PRAGMA journal_mode=WAL;
            PRAGMA synchronous=NORMAL;
            PRAGMA busy_timeout=5000;
            PRAGMA cache_size=-16384;
            PRAGMA temp_store=MEMORY;
            PRAGMA recursive_triggers=ON;
        """)

    def _init_schema(self):
        version = self.conn.execute("PRAGMA user_version").fetchone()[0]
        if version not in (0, SCHEMA_VERSION):
            logger.warning("index schema v%d != v%d, dropping derived tables", version, SCHEMA_VERSION)
            for table in _ALL_TABLES:
                self.conn.execute(f"DROP TABLE IF EXISTS {table}")
        self.conn.executescript(_SCHEMA)
        self.conn.execute(f"PRAGMA user_version={SCHEMA_VERSION}")

    # =========================================================================
    # Connection / transactions
    # =========================================================================

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        BEGIN/COMMIT around a block; ROLLBACK on error.

        Re-entrant: nested blocks join the outermost transaction.
        """
        with self._lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self.conn
                finally:
                    self._tx_depth -= 1
                return

            self.conn.execute("BEGIN")
            self._tx_depth = 1
            try:
                yield self.conn
            except BaseException:
                self._tx_depth = 0
                self.conn.execute("ROLLBACK")
                raise
            self._tx_depth = 0
            self.conn.execute("COMMIT")

    def _query(self, sql: str, params: Sequence[Any] = ()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def close(self):
        """
        Close database connection with optimization.

        Runs PRAGMA optimize before closing so the next open starts with
        fresh planner statistics.
        """
        with self._lock:
            if self.conn is None:
                return
            self.conn.execute("PRAGMA optimize")
            self.conn.close()
            self.conn = None

    def __enter__(self) -> 'SearchIndex':
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # =========================================================================
    # Per-entity upserts
    # =========================================================================

    def index_file(self, file: FileIndex):
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO files
                    (path, summary, exports, exports_json, imports, language, patterns, content_hash, indexed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    file.path,
                    file.summary,
                    " ".join(file.export_names),
                    _dump([e.to_dict() for e in file.exports]),
                    _dump(file.imports),
                    file.language,
                    _dump(file.patterns),
                    file.content_hash,
                    to_epoch(file.indexed_at),
                ),
            )

    def index_files(self, files: Iterable[FileIndex]) -> int:
        """Bulk upsert in one transaction."""
        count = 0
        with self.transaction():
            for file in files:
                self.index_file(file)
                count += 1
        return count

    def replace_files(self, files: Iterable[FileIndex]) -> int:
        """Mirror a whole-index replacement: drop rows and chunks for paths not in `files`."""
        files = list(files)
        with self.transaction() as conn:
            conn.execute("DELETE FROM files")
            count = self.index_files(files)
            self._prune_chunks({f.path for f in files})
        return count

    def remove_file(self, file_path: str):
        with self.transaction() as conn:
            conn.execute("DELETE FROM files WHERE path = ?", (file_path,))
            conn.execute("DELETE FROM code_chunks WHERE file_path = ?", (file_path,))

    def index_decision(self, decision: Decision):
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO decisions (id, content, reason, context, feature, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (decision.id, decision.content, decision.reason, decision.context,
                 decision.feature, decision.status, to_epoch(decision.created_at)),
            )

    def index_warning(self, warning: KnowledgeWarning):
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO warnings (id, content, reason, evidence, severity, feature, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (warning.id, warning.content, warning.reason, warning.evidence,
                 warning.severity, warning.feature, to_epoch(warning.created_at)),
            )

    def index_feature(self, feature: Feature):
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO features
                    (id, status, description, extends, current_state, relevant_files, created_at, last_accessed)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (feature.id, feature.status, feature.description, feature.extends,
                 feature.current_state, _dump(feature.relevant_files),
                 to_epoch(feature.created_at), to_epoch(feature.last_accessed)),
            )

    def remove_feature(self, feature_id: str):
        with self.transaction() as conn:
            conn.execute("DELETE FROM features WHERE id = ?", (feature_id,))

    # =========================================================================
    # Code chunks (whole-file replacement)
    # =========================================================================

    def index_code_chunks(self, file_path: str, chunks: Iterable[CodeChunk]) -> int:
        """Delete every chunk for `file_path`, then insert the new set."""
        rows = [
            (file_path, c.chunk_type, c.chunk_name, c.start_line, c.end_line, c.content, c.language)
            for c in chunks
        ]
        with self.transaction() as conn:
            conn.execute("DELETE FROM code_chunks WHERE file_path = ?", (file_path,))
            conn.executemany(
                """
                INSERT INTO code_chunks
                    (file_path, chunk_type, chunk_name, start_line, end_line, content, language, indexed_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, strftime('%s', 'now'))
                """,
                rows,
            )
        return len(rows)

    def delete_code_chunks(self, file_path: str) -> int:
        with self.transaction() as conn:
            return conn.execute("DELETE FROM code_chunks WHERE file_path = ?", (file_path,)).rowcount

    def get_code_chunks(self, file_path: str) -> List[CodeChunk]:
        rows = self._query(
            """
            SELECT id, file_path, chunk_type, chunk_name, start_line, end_line, content, language
            FROM code_chunks WHERE file_path = ? ORDER BY start_line, id
            """,
            (file_path,),
        )
        return [self._row_to_chunk(r) for r in rows]

    def search_code(self, query: str, language: str = "", limit: Optional[int] = None) -> List[CodeChunk]:
        sql = ("SELECT id, file_path, chunk_type, chunk_name, start_line, end_line, content, language"
               " FROM code_chunks WHERE 1=1")
        params: List[Any] = []
        if query:
            sql += " AND id IN (SELECT rowid FROM code_chunks_fts WHERE code_chunks_fts MATCH ?)"
            params.append(query)
        if language:
            sql += " AND language = ?"
            params.append(language)
        sql += " ORDER BY file_path, start_line, id LIMIT ?"
        params.append(_limit(limit, DEFAULT_CODE_LIMIT))
        return [self._row_to_chunk(r) for r in self._query(sql, params)]

    @staticmethod
    def _row_to_chunk(row: sqlite3.Row) -> CodeChunk:
        return CodeChunk(
            id=row["id"], file_path=row["file_path"], chunk_type=row["chunk_type"] or "",
            chunk_name=row["chunk_name"] or "", start_line=row["start_line"] or 0,
            end_line=row["end_line"] or 0, content=row["content"] or "", language=row["language"] or "",
        )

    # =========================================================================
    # Search
    # =========================================================================

    @staticmethod
    def escape_query(text: str) -> str:
        """Quote every whitespace-separated term so FTS5 treats it literally."""
        terms = text.split()
        return " ".join('"' + term.replace('"', '""') + '"' for term in terms)

    @staticmethod
    def _filtered(base: str, fts_table: str, query: str,
                  filters: Sequence[Tuple[str, str]]) -> Tuple[str, List[Any]]:
        sql = base + " WHERE 1=1"
        params: List[Any] = []
        if query:
            sql += f" AND rowid IN (SELECT rowid FROM {fts_table} WHERE {fts_table} MATCH ?)"
            params.append(query)
        for column, value in filters:
            if value:
                sql += f" AND {column} = ?"
                params.append(value)
        return sql, params

    def search_files(self, query: str = "", language: str = "",
                     limit: Optional[int] = None) -> List[FileIndex]:
        sql, params = self._filtered(
            "SELECT path, summary, exports_json, imports, language, patterns, content_hash, indexed_at FROM files",
            "files_fts", query, [("language", language)],
        )
        sql += " ORDER BY indexed_at DESC, path LIMIT ?"
        params.append(_limit(limit, DEFAULT_FILE_LIMIT))

        return [
            FileIndex(
                path=r["path"],
                summary=r["summary"] or "",
                exports=[Export.from_dict(e) for e in _load_list(r["exports_json"])],
                imports=_load_list(r["imports"]),
                language=r["language"] or "",
                patterns=_load_list(r["patterns"]),
                content_hash=r["content_hash"] or "",
                indexed_at=from_epoch(r["indexed_at"]),
            )
            for r in self._query(sql, params)
        ]

    def search_decisions(self, query: str = "", feature: str = "", status: str = "",
                         limit: Optional[int] = None) -> List[Decision]:
        sql, params = self._filtered(
            "SELECT id, content, reason, context, feature, status, created_at FROM decisions",
            "decisions_fts", query, [("feature", feature), ("status", status)],
        )
        sql += " ORDER BY created_at DESC, id LIMIT ?"
        params.append(_limit(limit, DEFAULT_KNOWLEDGE_LIMIT))

        return [
            Decision(
                id=r["id"], content=r["content"] or "", reason=r["reason"] or "",
                context=r["context"] or "", feature=r["feature"] or "",
                status=r["status"] or "", created_at=from_epoch(r["created_at"]),
            )
            for r in self._query(sql, params)
        ]

    def search_warnings(self, query: str = "", feature: str = "", severity: str = "",
                        limit: Optional[int] = None) -> List[KnowledgeWarning]:
        sql, params = self._filtered(
            "SELECT id, content, reason, evidence, severity, feature, created_at FROM warnings",
            "warnings_fts", query, [("feature", feature), ("severity", severity)],
        )
        sql += " ORDER BY created_at DESC, id LIMIT ?"
        params.append(_limit(limit, DEFAULT_KNOWLEDGE_LIMIT))

        return [
            KnowledgeWarning(
                id=r["id"], content=r["content"] or "", reason=r["reason"] or "",
                evidence=r["evidence"] or "", severity=r["severity"] or "",
                feature=r["feature"] or "", created_at=from_epoch(r["created_at"]),
            )
            for r in self._query(sql, params)
        ]

    def list_features(self, status: str = "") -> List[Feature]:
        sql = ("SELECT id, status, description, extends, current_state, relevant_files, created_at, last_accessed"
               " FROM features")
        params: List[Any] = []
        if status:
            sql += " WHERE status = ?"
            params.append(status)
        sql += " ORDER BY last_accessed DESC, id"
        return [
            Feature(
                id=r["id"], status=r["status"] or "", description=r["description"] or "",
                extends=r["extends"] or "", current_state=r["current_state"] or "",
                relevant_files=_load_list(r["relevant_files"]),
                created_at=from_epoch(r["created_at"]), last_accessed=from_epoch(r["last_accessed"]),
            )
            for r in self._query(sql, params)
        ]

    # =========================================================================
    # Semantic storage
    # =========================================================================

    def store_semantic_vector(self, doc_id: str, doc_type: str, text: str, vector: bytes):
        with self.transaction() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO semantic_vectors (id, doc_type, doc_text, vector, updated_at)
                VALUES (?, ?, ?, ?, strftime('%s', 'now'))
                """,
                (doc_id, doc_type, text, vector),
            )

    def search_semantic(self, query_vector: Sequence[float], doc_type: Optional[str] = None,
                        limit: int = DEFAULT_SEMANTIC_LIMIT) -> List[SemanticResult]:
        sql = "SELECT id, doc_type, doc_text, vector FROM semantic_vectors"
        params: List[Any] = []
        if doc_type:
            sql += " WHERE doc_type = ?"
            params.append(doc_type)
        sql += " ORDER BY id"
        with self._lock:
            cursor = self.conn.execute(sql, params)
            return rank_candidates(query_vector, (tuple(row) for row in cursor), limit)

    def store_vocab(self, engine: TFIDFEngine):
        with self.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO semantic_vocab (id, vocabulary, idf, doc_count) VALUES (1, ?, ?, ?)",
                (_dump(engine.terms()), _dump(engine.idf), engine.doc_count),
            )

    def load_vocab(self) -> Optional[TFIDFEngine]:
        """The persisted model, or None if nothing has been fitted."""
        rows = self._query("SELECT vocabulary, idf, doc_count FROM semantic_vocab WHERE id = 1")
        if not rows:
            return None
        row = rows[0]
        try:
            return TFIDFEngine.from_terms(_load_list(row["vocabulary"]), _load_list(row["idf"]),
                                          row["doc_count"] or 0)
        except (orjson.JSONDecodeError, ValueError, TypeError) as e:
            logger.warning("discarding unreadable semantic model: %s", e)
            return None

    def clear_semantic(self):
        with self.transaction() as conn:
            conn.execute("DELETE FROM semantic_vectors")
            conn.execute("DELETE FROM semantic_vocab")

    # =========================================================================
    # Rebuild / health
    # =========================================================================

    def rebuild(self, store: 'KnowledgeStore', max_semantic_files: int = 500) -> RebuildReport:
        """
        Regenerate every derived row from the canonical store.

        Safe at any time and from any database state. Each collection and
        each record is indexed independently: a bad one is logged, counted
        in the report, and skipped.
        """
        report = RebuildReport()

        with self.transaction() as conn:
            # FTS tables are re-derived from their content tables first: the
            # delete triggers below assume they agree, and they may have drifted.
            for fts in _FTS_TABLES:
                conn.execute(f"INSERT INTO {fts}({fts}) VALUES ('rebuild')")
            for table in ("files", "decisions", "warnings", "features"):
                conn.execute(f"DELETE FROM {table}")

            files = self._load_for_rebuild(report, "file index", store.get_files_index)
            if files is not None:
                report.indexed["files"] = self._index_each(
                    report, "file", files.values(), self.index_file, lambda f: f.path)
                report.chunks_pruned = self._prune_chunks(set(files))

            for label, loader, index_fn in (
                ("decisions", store.get_decisions, self.index_decision),
                ("warnings", store.get_warnings, self.index_warning),
                ("features", lambda: store.get_features(include_archived=True, skip_invalid=True),
                 self.index_feature),
            ):
                records = self._load_for_rebuild(report, label, loader)
                if records is not None:
                    report.indexed[label] = self._index_each(
                        report, label, records, index_fn, lambda r: r.id)

            report.vectors = SemanticIndex(self).build(store, max_files=max_semantic_files)

        logger.info(
            "rebuild complete: %s, %d vectors, %d skipped",
            ", ".join(f"{k}={v}" for k, v in sorted(report.indexed.items())), report.vectors, report.skipped,
        )
        return report

    @staticmethod
    def _load_for_rebuild(report: RebuildReport, label: str, loader):
        try:
            return loader()
        except (DecodeError, StoreIOError) as e:
            report.skip(label, e)
            return None

    @staticmethod
    def _index_each(report: RebuildReport, label: str, records, index_fn, key) -> int:
        count = 0
        for record in records:
            try:
                index_fn(record)
                count += 1
            except (sqlite3.Error, ValueError, TypeError) as e:
                report.skip(f"{label} {key(record)}", e)
        return count

    def _prune_chunks(self, known_paths: set) -> int:
        rows = self._query("SELECT DISTINCT file_path FROM code_chunks")
        stale = [r["file_path"] for r in rows if r["file_path"] not in known_paths]
        for file_path in stale:
            self.delete_code_chunks(file_path)
        return len(stale)

    def stats(self) -> Dict[str, int]:
        """Row counts per derived table."""
        return {
            table: self._query(f"SELECT COUNT(*) AS c FROM {table}")[0]["c"]
            for table in _STATS_TABLES
        }

    def fingerprint(self) -> str:
        """
        Digest over every derived row in key order.

        Write-time bookkeeping columns (vector updated_at, chunk indexed_at
        and chunk ids) are left out, so two rebuilds of the same canonical
        state produce the same fingerprint.
        """
        digest = xxhash.xxh64()
        with self._lock:
            for sql in _FINGERPRINT_QUERIES:
                digest.update(sql.encode())
                for row in self.conn.execute(sql):
                    values = [v.hex() if isinstance(v, bytes) else v for v in row]
                    digest.update(orjson.dumps(values))
        return digest.hexdigest()
