"""
Access to the per-user application rows that a backup snapshots.

The relational schema belongs to the main application; this module only needs
user-scoped reads and upsert-by-id writes. Profiles are keyed by the user id
itself, every other table carries a ``user_id`` column.
"""

from __future__ import annotations

import copy
import threading
import time
from typing import Dict, Iterable, Optional, Protocol

from sqlalchemy import JSON, Column, Float, String, create_engine, select
from sqlalchemy.orm import Session, declarative_base, sessionmaker

PROFILES = "profiles"
PROJECTS = "projects"
GENERATIONS = "generations"
TEMPLATES = "templates"
API_KEYS = "user_api_keys"
AUDIT_LOGS = "audit_logs"

TABLES = (PROFILES, PROJECTS, GENERATIONS, TEMPLATES, API_KEYS, AUDIT_LOGS)


class UserDataStore(Protocol):
    """Interface for user-scoped reads and idempotent writes."""

    def get_profile(self, user_id: str) -> Optional[dict]:
        ...

    def list_rows(
        self,
        table: str,
        user_id: str,
        *,
        columns: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> list[dict]:
        ...

    def get_row(self, table: str, row_id: str) -> Optional[dict]:
        ...

    def upsert_row(self, table: str, row: dict) -> None:
        ...


def _row_key(table: str, row: dict) -> str:
    if table not in TABLES:
        raise ValueError(f"Unknown table: {table}")
    row_id = row.get("id")
    if row_id is None or row_id == "":
        raise ValueError(f"{table} row is missing an id")
    if not isinstance(row_id, (str, int)):
        raise ValueError(f"{table} row id must be a string or integer")
    if table != PROFILES and not row.get("user_id"):
        raise ValueError(f"{table} row {row_id} has no owner")
    return str(row_id)


def _owner(table: str, row: dict) -> str:
    return str(row["id"]) if table == PROFILES else str(row["user_id"])


def _project(row: dict, columns: Optional[Iterable[str]]) -> dict:
    if columns is None:
        return row
    return {name: row.get(name) for name in columns}


class InMemoryUserDataStore:
    """Dict-backed store for development and tests. Counts writes."""

    def __init__(self):
        self.tables: Dict[str, Dict[str, dict]] = {name: {} for name in TABLES}
        self.write_count = 0
        self._lock = threading.Lock()

    def get_profile(self, user_id: str) -> Optional[dict]:
        row = self.tables[PROFILES].get(str(user_id))
        return copy.deepcopy(row) if row else None

    def list_rows(
        self,
        table: str,
        user_id: str,
        *,
        columns: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> list[dict]:
        rows = [
            copy.deepcopy(row)
            for row in self.tables[table].values()
            if row.get("user_id") == user_id
        ]
        if newest_first:
            rows.sort(key=lambda row: str(row.get("created_at") or ""), reverse=True)
        if limit is not None:
            rows = rows[:limit]
        return [_project(row, columns) for row in rows]

    def get_row(self, table: str, row_id: str) -> Optional[dict]:
        row = self.tables[table].get(str(row_id))
        return copy.deepcopy(row) if row else None

    def upsert_row(self, table: str, row: dict) -> None:
        key = _row_key(table, row)
        with self._lock:
            self.tables[table][key] = copy.deepcopy(row)
            self.write_count += 1

    def count(self, table: str, user_id: Optional[str] = None) -> int:
        if user_id is None:
            return len(self.tables[table])
        if table == PROFILES:
            return int(str(user_id) in self.tables[table])
        return sum(1 for row in self.tables[table].values() if row.get("user_id") == user_id)

    def reset(self) -> None:
        for rows in self.tables.values():
            rows.clear()
        self.write_count = 0


class PostgresUserDataStore:
    """
    SQLAlchemy-backed store keeping each row as a JSON document next to its owner id.
    """

    def __init__(self, database_url: str):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresUserDataStore")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )
        Base.metadata.create_all(self.engine)

    def get_profile(self, user_id: str) -> Optional[dict]:
        return self.get_row(PROFILES, user_id)

    def list_rows(
        self,
        table: str,
        user_id: str,
        *,
        columns: Optional[Iterable[str]] = None,
        limit: Optional[int] = None,
        newest_first: bool = False,
    ) -> list[dict]:
        with self.Session() as session:
            stmt = select(EntityRow).where(
                EntityRow.table_name == table, EntityRow.user_id == user_id
            )
            if newest_first:
                stmt = stmt.order_by(EntityRow.created_at.desc())
            else:
                stmt = stmt.order_by(EntityRow.created_at.asc())
            if limit is not None:
                stmt = stmt.limit(limit)
            rows = session.execute(stmt).scalars().all()
            return [_project(dict(row.data), columns) for row in rows]

    def get_row(self, table: str, row_id: str) -> Optional[dict]:
        with self.Session() as session:
            row = session.get(EntityRow, (table, str(row_id)))
            return dict(row.data) if row else None

    def upsert_row(self, table: str, row: dict) -> None:
        key = _row_key(table, row)
        with self.Session() as session:
            existing = session.get(EntityRow, (table, key))
            if existing:
                existing.user_id = _owner(table, row)
                existing.data = dict(row)
            else:
                session.add(
                    EntityRow(
                        table_name=table,
                        row_id=key,
                        user_id=_owner(table, row),
                        data=dict(row),
                        created_at=time.time(),
                    )
                )
            session.commit()


Base = declarative_base()


class EntityRow(Base):
    __tablename__ = "user_entities"

    table_name = Column(String, primary_key=True)
    row_id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    data = Column(JSON, nullable=False)
    created_at = Column(Float, nullable=False, index=True)
