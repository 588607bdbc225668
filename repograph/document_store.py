"""
Document store using SQLite.

Stores schemaless JSON documents, one logical collection per document kind,
behind the find/update interface the propagation engine expects from a
document database.

Filters and updates are compiled to SQL over SQLite's JSON functions, so
queries such as "documents missing a derived field" run in the database
rather than as a scan in application code, and field updates ($set, $inc)
are applied in a single UPDATE statement without read-modify-write.

Supported filter operators: equality, $exists, $gt, $gte, $lt, $lte, $ne,
$in, $or, $and. Equality with None matches missing or null fields.
Supported update operators: $set, $unset, $inc, $max. Operators apply in
the order given, so {"$inc": {"n": -1}, "$max": {"n": 0}} decrements with a
floor of zero.

Identifiers are bson ObjectIds. Documents are returned with ``_id`` as an
ObjectId; ObjectIds nested inside documents are stored as hex strings.
"""

import json
import logging
import re
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator, Optional

from bson import ObjectId

from .types import DocumentKind, to_object_id

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100

# Field path segments: no quoting or JSON path syntax allowed
_FIELD_SEGMENT_RE = re.compile(r'^[A-Za-z0-9_-]+$')

_COMPARISON_OPS = {"$gt": ">", "$gte": ">=", "$lt": "<", "$lte": "<="}


def _json_default(value: Any) -> Any:
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, default=_json_default)


def _json_path(field: str) -> str:
    """Translate a dotted field name into a quoted SQLite JSON path."""
    parts = field.split(".")
    for part in parts:
        if not _FIELD_SEGMENT_RE.match(part):
            raise ValueError(f"Invalid field name: {field!r}")
    return "$." + ".".join(f'"{part}"' for part in parts)


def _sql_scalar(value: Any) -> Any:
    """Bind value for comparison against json_extract() results."""
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, (str, int, float)):
        return value
    raise ValueError(f"Unsupported filter value: {value!r}")


def _compile_id_condition(cond: Any) -> tuple[str, list]:
    """Conditions on _id run against the id column."""
    if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
        clauses: list[str] = []
        params: list = []
        for op, value in cond.items():
            if op == "$exists":
                clauses.append("1" if value else "0")
            elif op == "$in":
                ids = [str(to_object_id(v)) for v in value]
                if not ids:
                    clauses.append("0")
                else:
                    clauses.append(f"id IN ({','.join('?' * len(ids))})")
                    params.extend(ids)
            elif op == "$ne":
                clauses.append("id != ?")
                params.append(str(to_object_id(value)))
            else:
                raise ValueError(f"Unsupported operator on _id: {op}")
        return " AND ".join(clauses), params
    if cond is None:
        return "0", []
    return "id = ?", [str(to_object_id(cond))]


def _compile_field_condition(field: str, cond: Any) -> tuple[str, list]:
    if field == "_id":
        return _compile_id_condition(cond)

    path = _json_path(field)
    value_expr = "json_extract(body, ?)"
    type_expr = "json_type(body, ?)"

    if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
        clauses: list[str] = []
        params: list = []
        for op, value in cond.items():
            if op == "$exists":
                clauses.append(f"{type_expr} IS {'NOT ' if value else ''}NULL")
                params.append(path)
            elif op in _COMPARISON_OPS:
                clauses.append(f"{value_expr} {_COMPARISON_OPS[op]} ?")
                params.extend([path, _sql_scalar(value)])
            elif op == "$ne":
                if value is None:
                    clauses.append(f"{type_expr} IS NOT NULL AND {type_expr} != 'null'")
                    params.extend([path, path])
                else:
                    clauses.append(f"({value_expr} IS NULL OR {value_expr} != ?)")
                    params.extend([path, path, _sql_scalar(value)])
            elif op == "$in":
                values = [_sql_scalar(v) for v in value]
                if not values:
                    clauses.append("0")
                else:
                    clauses.append(f"{value_expr} IN ({','.join('?' * len(values))})")
                    params.append(path)
                    params.extend(values)
            else:
                raise ValueError(f"Unsupported filter operator: {op}")
        return " AND ".join(clauses), params

    if cond is None:
        return f"({type_expr} IS NULL OR {type_expr} = 'null')", [path, path]
    return f"{value_expr} = ?", [path, _sql_scalar(cond)]


def compile_filter(query: Optional[dict]) -> tuple[str, list]:
    """Compile a filter document into a SQL boolean expression and params."""
    if not query:
        return "1", []
    clauses: list[str] = []
    params: list = []
    for key, cond in query.items():
        if key in ("$or", "$and"):
            if not isinstance(cond, (list, tuple)) or not cond:
                raise ValueError(f"{key} requires a non-empty list")
            parts = [compile_filter(sub) for sub in cond]
            joiner = " OR " if key == "$or" else " AND "
            clauses.append(joiner.join(f"({sql})" for sql, _ in parts))
            for _, sub_params in parts:
                params.extend(sub_params)
        elif key.startswith("$"):
            raise ValueError(f"Unsupported top-level operator: {key}")
        else:
            sql, field_params = _compile_field_condition(key, cond)
            clauses.append(sql)
            params.extend(field_params)
    return " AND ".join(f"({c})" for c in clauses), params


def compile_update(update: dict) -> tuple[str, list]:
    """Compile an update document into a SQL expression for the new body."""
    if not update:
        raise ValueError("Empty update")
    expr, params = "body", []
    for op, fields in update.items():
        if not isinstance(fields, dict) or not fields:
            raise ValueError(f"{op} requires a non-empty mapping")
        for field, value in fields.items():
            if field == "_id":
                raise ValueError("Cannot update _id")
            path = _json_path(field)
            if op == "$set":
                expr, params = f"json_set({expr}, ?, json(?))", params + [path, _dumps(value)]
            elif op == "$unset":
                expr, params = f"json_remove({expr}, ?)", params + [path]
            elif op == "$inc":
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    raise ValueError(f"$inc requires a number, got {value!r}")
                expr, params = (
                    f"json_set({expr}, ?, coalesce(json_extract({expr}, ?), 0) + ?)",
                    params + [path] + params + [path, value],
                )
            elif op == "$max":
                if isinstance(value, bool) or not isinstance(value, (int, float)):
                    raise ValueError(f"$max requires a number, got {value!r}")
                expr, params = (
                    f"json_set({expr}, ?, max(coalesce(json_extract({expr}, ?), ?), ?))",
                    params + [path] + params + [path, value, value],
                )
            else:
                raise ValueError(f"Unsupported update operator: {op}")
    return expr, params


class DocumentCollection:
    """
    One logical collection of a DocumentStore.

    Thin view: all state lives in the store's database.
    """

    def __init__(self, store: "DocumentStore", name: str):
        self._store = store
        self.name = name

    def __repr__(self) -> str:
        return f"DocumentCollection({self.name!r})"

    def _decode(self, row: sqlite3.Row) -> dict:
        document = {"_id": ObjectId(row["id"])}
        document.update(json.loads(row["body"]))
        return document

    @staticmethod
    def _encode(document: dict) -> str:
        body = {k: v for k, v in document.items() if k != "_id"}
        return _dumps(body)

    # -------------------------------------------------------------------------
    # Read Operations
    # -------------------------------------------------------------------------

    def find_one(self, query: Optional[dict] = None) -> Optional[dict]:
        """Return the first document matching the filter, or None."""
        where, params = compile_filter(query)
        rows = self._store._query(f"""
            SELECT id, body FROM documents
            WHERE collection = ? AND ({where})
            ORDER BY id
            LIMIT 1
        """, [self.name, *params])
        return self._decode(rows[0]) if rows else None

    def find(
        self,
        query: Optional[dict] = None,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> Iterator[dict]:
        """
        Iterate documents matching the filter in id (creation) order.

        Pages through the collection batch_size rows at a time, so memory
        stays bounded and documents updated while iterating are neither
        skipped nor revisited.
        """
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        where, params = compile_filter(query)
        last_id = ""
        while True:
            rows = self._store._query(f"""
                SELECT id, body FROM documents
                WHERE collection = ? AND id > ? AND ({where})
                ORDER BY id
                LIMIT ?
            """, [self.name, last_id, *params, batch_size])
            for row in rows:
                yield self._decode(row)
            if len(rows) < batch_size:
                return
            last_id = rows[-1]["id"]

    def count(self, query: Optional[dict] = None) -> int:
        """Count documents matching the filter."""
        where, params = compile_filter(query)
        rows = self._store._query(f"""
            SELECT COUNT(*) FROM documents
            WHERE collection = ? AND ({where})
        """, [self.name, *params])
        return rows[0][0]

    # -------------------------------------------------------------------------
    # Write Operations
    # -------------------------------------------------------------------------

    def insert_one(self, document: dict) -> ObjectId:
        """
        Insert a new document, assigning an ObjectId if it has none.

        Raises:
            ValueError: If a document with the same _id exists
        """
        doc_id = to_object_id(document) if "_id" in document else ObjectId()
        now = self._store._now()
        try:
            self._store._execute("""
                INSERT INTO documents (id, collection, body, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
            """, [str(doc_id), self.name, self._encode(document), now, now])
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Duplicate document {doc_id} in {self.name}") from e
        return doc_id

    def replace_one(
        self,
        query: dict,
        document: dict,
        *,
        upsert: bool = False,
        preserve_prefix: Optional[str] = None,
    ) -> Optional[ObjectId]:
        """
        Replace the body of the first document matching the filter.

        Args:
            query: Filter selecting the document to replace
            document: New document body (its _id, if any, is ignored on replace)
            upsert: Insert the document if nothing matches
            preserve_prefix: Carry over existing fields with this prefix that
                the new document does not set

        Returns:
            The id of the replaced or inserted document, None if nothing matched
        """
        where, params = compile_filter(query)
        with self._store._transaction():
            rows = self._store._query(f"""
                SELECT id, body FROM documents
                WHERE collection = ? AND ({where})
                ORDER BY id
                LIMIT 1
            """, [self.name, *params])
            if not rows:
                if not upsert:
                    return None
                new_doc = dict(document)
                if "_id" not in new_doc and isinstance(query.get("_id"), (str, ObjectId)):
                    new_doc["_id"] = query["_id"]
                return self.insert_one(new_doc)

            body = {k: v for k, v in document.items() if k != "_id"}
            if preserve_prefix:
                existing = json.loads(rows[0]["body"])
                for key, value in existing.items():
                    if key.startswith(preserve_prefix) and key not in body:
                        body[key] = value
            self._store._execute("""
                UPDATE documents SET body = ?, updated_at = ?
                WHERE collection = ? AND id = ?
            """, [_dumps(body), self._store._now(), self.name, rows[0]["id"]])
            return ObjectId(rows[0]["id"])

    def update_one(self, query: dict, update: dict) -> int:
        """Apply an update to the first matching document. Returns match count."""
        where, params = compile_filter(query)
        expr, update_params = compile_update(update)
        cursor = self._store._execute(f"""
            UPDATE documents SET body = {expr}, updated_at = ?
            WHERE rowid = (
                SELECT rowid FROM documents
                WHERE collection = ? AND ({where})
                ORDER BY id
                LIMIT 1
            )
        """, [*update_params, self._store._now(), self.name, *params])
        return cursor.rowcount

    def update_many(self, query: dict, update: dict) -> int:
        """Apply an update to every matching document in one statement."""
        where, params = compile_filter(query)
        expr, update_params = compile_update(update)
        cursor = self._store._execute(f"""
            UPDATE documents SET body = {expr}, updated_at = ?
            WHERE collection = ? AND ({where})
        """, [*update_params, self._store._now(), self.name, *params])
        return cursor.rowcount

    def delete_one(self, query: dict) -> bool:
        """Delete the first matching document. Returns True if one was deleted."""
        where, params = compile_filter(query)
        cursor = self._store._execute(f"""
            DELETE FROM documents
            WHERE rowid = (
                SELECT rowid FROM documents
                WHERE collection = ? AND ({where})
                ORDER BY id
                LIMIT 1
            )
        """, [self.name, *params])
        return cursor.rowcount > 0


class DocumentStore:
    """
    SQLite-backed store for schemaless documents.

    One connection shared across threads; statements are serialized by a
    lock and run in autocommit mode, so each update is atomic on its own.
    WAL mode lets other processes read while a job writes.
    """

    def __init__(self, store_path: Path):
        """
        Args:
            store_path: Path to SQLite database file
        """
        self._db_path = Path(store_path)
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._collections: dict[str, DocumentCollection] = {}
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the SQLite database."""
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        # isolation_level=None gives us manual transaction control
        self._conn = sqlite3.connect(
            str(self._db_path), check_same_thread=False,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA busy_timeout=5000")

        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS documents (
                id TEXT NOT NULL,
                collection TEXT NOT NULL,
                body TEXT NOT NULL DEFAULT '{}',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (collection, id)
            )
        """)

    def _now(self) -> str:
        """Current timestamp in ISO format."""
        return datetime.now(timezone.utc).isoformat()

    def _require_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("DocumentStore is closed")
        return self._conn

    def _execute(self, sql: str, params: list) -> sqlite3.Cursor:
        with self._lock:
            return self._require_conn().execute(sql, params)

    def _query(self, sql: str, params: list) -> list[sqlite3.Row]:
        with self._lock:
            return self._require_conn().execute(sql, params).fetchall()

    @contextmanager
    def _transaction(self):
        """Hold the write lock across several statements."""
        with self._lock:
            conn = self._require_conn()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    # -------------------------------------------------------------------------
    # Collections
    # -------------------------------------------------------------------------

    def collection(self, kind: DocumentKind | str) -> DocumentCollection:
        """Collection view for a document kind."""
        name = kind.value if isinstance(kind, DocumentKind) else str(kind)
        if name not in self._collections:
            self._collections[name] = DocumentCollection(self, name)
        return self._collections[name]

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        if getattr(self, "_conn", None) is not None:
            self.close()
