"""db.py
=========
Versioned document store backed by SQLite.

Documents live in a single table keyed by ``(collection, id)``; bodies are JSON
and every successful commit bumps the integer ``version``.  Two write paths are
offered:

* :meth:`DocumentStore.patch` – atomic field-level update with
  :class:`Increment` / :class:`ArrayUnion` / :class:`ArrayRemove` transforms, for
  counters and sets that tolerate concurrent writers.  Patches leave
  ``version`` alone, so they never make a pinned commit retry.
* :meth:`DocumentStore.commit` – all-or-nothing batch of :class:`Write` ops, each
  optionally pinned to an ``expected_version``.  This is the compare-and-swap
  primitive the bid ledger is built on.

The store is **NOT** safe for concurrent use of one connection, so a private
lock serialises every DB interaction.
"""
import json
import sqlite3
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from surplus_auctions.errors import StoreUnavailable

__all__ = [
    "Document", "Write", "Increment", "ArrayUnion", "ArrayRemove",
    "DocumentStore",
]


@dataclass(frozen=True)
class Document:
    id: str
    version: int
    body: Dict[str, Any]


@dataclass(frozen=True)
class Write:
    """One op inside a :meth:`DocumentStore.commit` batch.

    ``op`` is ``"create"``, ``"update"``, ``"merge"`` or ``"delete"``.  A merge
    overwrites only the top-level fields in ``body`` and keeps the rest.  When
    ``expected_version`` is set the op only applies if the stored version still
    matches.
    """
    op: str
    collection: str
    doc_id: str
    body: Optional[Dict[str, Any]] = None
    expected_version: Optional[int] = None

    @classmethod
    def create(cls, collection, doc_id, body):
        return cls("create", collection, doc_id, body)

    @classmethod
    def update(cls, collection, doc_id, body, expected_version=None):
        return cls("update", collection, doc_id, body, expected_version)

    @classmethod
    def merge(cls, collection, doc_id, fields, expected_version=None):
        return cls("merge", collection, doc_id, fields, expected_version)

    @classmethod
    def delete(cls, collection, doc_id, expected_version=None):
        return cls("delete", collection, doc_id, None, expected_version)


# ─── field transforms for patch() ─────────────────────────────────────────────
@dataclass(frozen=True)
class Increment:
    by: int = 1


@dataclass(frozen=True)
class ArrayUnion:
    value: Any


@dataclass(frozen=True)
class ArrayRemove:
    value: Any


def _apply_change(current, change):
    if isinstance(change, Increment):
        return (current or 0) + change.by
    if isinstance(change, ArrayUnion):
        items = list(current or [])
        if change.value not in items:
            items.append(change.value)
        return items
    if isinstance(change, ArrayRemove):
        return [v for v in (current or []) if v != change.value]
    return change


class _Conflict(Exception):
    """Raised inside a commit to roll the whole batch back."""


class DocumentStore:
    """Thread-safe SQLite document store.

    Parameters
    ----------
    db_path
        Filesystem path of the SQLite DB, or ``":memory:"``.  The file is
        created on first use.
    """

    def __init__(self, db_path):
        self.__db_path = db_path
        self.__conn = None
        self.__conn_lock = threading.Lock()
        self._init_db()

    def _get_connection(self):
        if self.__conn is None:
            self.__conn = sqlite3.connect(self.__db_path, check_same_thread=False)
            self.__conn.row_factory = sqlite3.Row
        return self.__conn

    def _init_db(self):
        with self.__conn_lock:
            try:
                c = self._get_connection()
                c.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    id         TEXT NOT NULL,
                    version    INTEGER NOT NULL,
                    body       TEXT NOT NULL,
                    PRIMARY KEY (collection, id)
                )
                """)
                c.commit()
            except sqlite3.Error as e:
                raise StoreUnavailable(f"cannot open document store: {e}") from e

    def close(self):
        """Close the underlying SQLite connection (idempotent)."""
        if self.__conn is not None:
            with self.__conn_lock:
                self.__conn.close()
                self.__conn = None

    # ─── Prevent pickle of locks & connections ─────────────────────────────────
    def __getstate__(self):
        st = self.__dict__.copy()
        st.pop('_DocumentStore__conn_lock', None)
        st.pop('_DocumentStore__conn', None)
        return st

    def __setstate__(self, st):
        self.__dict__.update(st)
        self.__conn_lock = threading.Lock()
        self.__conn = None

    # ─── helpers (caller holds the lock) ──────────────────────────────────────
    @staticmethod
    def _row_to_doc(row) -> Document:
        return Document(row["id"], row["version"], json.loads(row["body"]))

    @staticmethod
    def _fetch(c, collection, doc_id):
        return c.execute(
            "SELECT id, version, body FROM documents WHERE collection = ? AND id = ?",
            (collection, doc_id)).fetchone()

    def _apply_write(self, c, w: Write):
        row = self._fetch(c, w.collection, w.doc_id)
        if w.op == "create":
            if row is not None:
                raise _Conflict(w)
            c.execute(
                "INSERT INTO documents (collection, id, version, body) VALUES (?, ?, 1, ?)",
                (w.collection, w.doc_id, json.dumps(w.body)))
            return
        if w.expected_version is not None and (row is None or row["version"] != w.expected_version):
            raise _Conflict(w)
        if w.op in ("update", "merge"):
            if row is None:
                raise _Conflict(w)
            body = w.body
            if w.op == "merge":
                body = dict(json.loads(row["body"]), **w.body)
            c.execute(
                "UPDATE documents SET version = version + 1, body = ? WHERE collection = ? AND id = ?",
                (json.dumps(body), w.collection, w.doc_id))
        elif w.op == "delete":
            c.execute("DELETE FROM documents WHERE collection = ? AND id = ?",
                      (w.collection, w.doc_id))
        else:
            raise ValueError(f"unknown write op {w.op!r}")

    # ─── public API ───────────────────────────────────────────────────────────
    def create(self, collection: str, doc_id: str, body: dict) -> bool:
        """Insert a new document; returns ``False`` if *doc_id* is taken."""
        return self.commit([Write.create(collection, doc_id, body)])

    def get(self, collection: str, doc_id: str) -> Optional[Document]:
        """Return the document or ``None`` if not found."""
        with self.__conn_lock:
            try:
                row = self._fetch(self._get_connection(), collection, doc_id)
            except sqlite3.Error as e:
                raise StoreUnavailable(str(e)) from e
        return self._row_to_doc(row) if row else None

    def list_where(self, collection: str, **equals) -> List[Document]:
        """List documents whose top-level JSON fields equal the given values.

        Results come back in insertion order.
        """
        sql = "SELECT id, version, body FROM documents WHERE collection = ?"
        params = [collection]
        for name, value in equals.items():
            sql += " AND json_extract(body, ?) = ?"
            params += [f"$.{name}", value]
        sql += " ORDER BY rowid"
        with self.__conn_lock:
            try:
                rows = self._get_connection().execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise StoreUnavailable(str(e)) from e
        return [self._row_to_doc(r) for r in rows]

    def patch(self, collection: str, doc_id: str, changes: Dict[str, Any]) -> bool:
        """Apply field changes atomically; ``False`` if the document is missing.

        The version is not bumped.
        """
        with self.__conn_lock:
            c = self._get_connection()
            try:
                row = self._fetch(c, collection, doc_id)
                if row is None:
                    return False
                body = json.loads(row["body"])
                for name, change in changes.items():
                    body[name] = _apply_change(body.get(name), change)
                with c:
                    c.execute(
                        "UPDATE documents SET body = ? "
                        "WHERE collection = ? AND id = ?",
                        (json.dumps(body), collection, doc_id))
                return True
            except sqlite3.Error as e:
                raise StoreUnavailable(str(e)) from e

    def commit(self, writes: Sequence[Write]) -> bool:
        """Apply *writes* as one transaction.

        Returns ``False`` (and applies nothing) if any version check fails, a
        create hits an existing id or an update targets a missing document.
        """
        with self.__conn_lock:
            c = self._get_connection()
            try:
                with c:
                    for w in writes:
                        self._apply_write(c, w)
                return True
            except _Conflict:
                return False
            except sqlite3.Error as e:
                raise StoreUnavailable(str(e)) from e
