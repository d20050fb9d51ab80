from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterator

from .predicate import QueryPredicate

SCHEMA = """
CREATE TABLE IF NOT EXISTS bookmarks (
    guid TEXT PRIMARY KEY,
    link TEXT NOT NULL CHECK (length(link) <= 256),
    created_at INTEGER NOT NULL,
    updated_at INTEGER NOT NULL,
    description TEXT,
    favorites INTEGER NOT NULL DEFAULT 0 CHECK (favorites IN (0, 1))
);
"""

COLUMNS = {
    "guid": "guid",
    "link": "link",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "description": "description",
    "favorites": "favorites",
}
SQL_OPERATORS = {"eq": "=", "gte": ">=", "lte": "<="}
SORT_DIRECTIONS = {"asc": "ASC", "desc": "DESC"}

logger = logging.getLogger(__name__)


class StorageError(RuntimeError):
    """Raised when the database rejects or fails an operation."""


@dataclass(slots=True)
class Bookmark:
    guid: str
    link: str
    created_at: int
    description: str | None = None
    favorites: bool = False
    updated_at: int | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> Bookmark:
        keys = set(row.keys())
        return cls(
            guid=row["guid"],
            link=row["link"],
            created_at=int(row["created_at"]),
            description=row["description"] if "description" in keys else None,
            favorites=bool(row["favorites"]) if "favorites" in keys else False,
            updated_at=int(row["updated_at"]) if "updated_at" in keys else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "guid": self.guid,
            "link": self.link,
            "createdAt": self.created_at,
            "description": self.description,
            "favorites": self.favorites,
        }


def connect(db_path: str | Path) -> sqlite3.Connection:
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: str | Path) -> None:
    conn = connect(db_path)
    try:
        with conn:
            conn.executescript(SCHEMA)
            migrate_bookmarks_schema(conn)
    finally:
        conn.close()


def migrate_bookmarks_schema(conn: sqlite3.Connection) -> None:
    conn.execute("CREATE INDEX IF NOT EXISTS idx_bookmarks_created_at ON bookmarks(created_at)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_bookmarks_favorites ON bookmarks(favorites, created_at)")


def _column(field_name: str) -> str:
    try:
        return COLUMNS[field_name]
    except KeyError:
        raise ValueError(f"unknown bookmark field: {field_name!r}") from None


def _where_clause(condition: dict[str, dict[str, Any]]) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    for field_name, operands in condition.items():
        column = _column(field_name)
        for operator, value in operands.items():
            if operator not in SQL_OPERATORS:
                raise ValueError(f"unsupported operator: {operator!r}")
            clauses.append(f"{column} {SQL_OPERATORS[operator]} ?")
            params.append(int(value) if isinstance(value, bool) else value)
    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


class BookmarkStore:
    """Bookmark persistence on SQLite.

    Lookups return ``None``/``False`` for a missing guid; anything the driver
    raises comes back as ``StorageError`` with the driver's message.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = connect(self.db_path)
            try:
                with conn:
                    yield conn
            finally:
                conn.close()
        except sqlite3.Error as error:
            logger.debug("sqlite_error", extra={"db_path": str(self.db_path), "error": str(error)})
            raise StorageError(str(error)) from error

    def find_many(self, predicate: QueryPredicate) -> tuple[int, list[Bookmark]]:
        where, params = _where_clause(predicate.condition)
        sort_by, sort_dir = predicate.order_by
        if sort_dir not in SORT_DIRECTIONS:
            raise ValueError(f"unsupported sort direction: {sort_dir!r}")
        columns = ", ".join(_column(name) for name in predicate.fields)
        order = f"{_column(sort_by)} {SORT_DIRECTIONS[sort_dir]}, guid ASC"

        with self._session() as conn:
            count = conn.execute(f"SELECT COUNT(*) FROM bookmarks{where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT {columns} FROM bookmarks{where} ORDER BY {order} LIMIT ? OFFSET ?",
                [*params, predicate.limit, predicate.offset],
            ).fetchall()
        return int(count), [Bookmark.from_row(row) for row in rows]

    def find_by_key(self, guid: str) -> Bookmark | None:
        with self._session() as conn:
            row = conn.execute("SELECT * FROM bookmarks WHERE guid = ?", (guid,)).fetchone()
        return Bookmark.from_row(row) if row is not None else None

    def create(self, bookmark: Bookmark) -> None:
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO bookmarks(guid, link, created_at, updated_at, description, favorites)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    bookmark.guid,
                    bookmark.link,
                    bookmark.created_at,
                    bookmark.updated_at if bookmark.updated_at is not None else bookmark.created_at,
                    bookmark.description,
                    int(bookmark.favorites),
                ),
            )

    def update(self, guid: str, fields: dict[str, Any]) -> bool:
        if not fields:
            raise ValueError("update requires at least one field")
        assignments = ", ".join(f"{_column(name)} = ?" for name in fields)
        values = [int(value) if isinstance(value, bool) else value for value in fields.values()]
        with self._session() as conn:
            cursor = conn.execute(f"UPDATE bookmarks SET {assignments} WHERE guid = ?", (*values, guid))
            changed = cursor.rowcount > 0
        return changed

    def delete(self, guid: str) -> bool:
        with self._session() as conn:
            cursor = conn.execute("DELETE FROM bookmarks WHERE guid = ?", (guid,))
            removed = cursor.rowcount > 0
        return removed
