"""
Durable key/value state for the ledger and audit store.

Values are JSON documents stored under versioned keys such as
``portion_transactions_v3``. Only the exact current key is ever loaded; a
version bump discards older state instead of migrating it.

SqlAlchemyStateStore uses PORTION_DB_URL / DATABASE_URL when set, otherwise
SQLite (portion.db). MemoryStateStore backs tests and ephemeral runs.
"""

from __future__ import annotations

import json
import re
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Iterator

from sqlalchemy import Column, Integer, String, Text, create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from portion_backend.core.exceptions import StateStoreError
from portion_backend.portion_logging import get_logger

logger = get_logger(__name__)

Base = declarative_base()

_VERSION_SUFFIX = re.compile(r"^(?P<base>.+_v)(?P<version>\d+)$")


class PersistedState(Base):
    """One JSON document per storage key."""

    __tablename__ = "persisted_state"

    key = Column(String(128), primary_key=True)
    payload = Column(Text, nullable=False)
    updated_at = Column(Integer, nullable=False)  # Unix ms


class StateStore(ABC):
    @abstractmethod
    def load(self, key: str) -> Any | None:
        """Return the decoded document stored under exactly ``key``, or None."""

    @abstractmethod
    def save(self, key: str, value: Any) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def keys(self) -> list[str]:
        ...

    def purge_legacy(self, current_key: str) -> list[str]:
        """
        Delete every other version of current_key's family.

        purge_legacy("portion_transactions_v3") removes _v1, _v2 (and any
        other _vN) but never keys from other families.
        """
        m = _VERSION_SUFFIX.match(current_key)
        if not m:
            return []
        prefix = m.group("base")
        removed = []
        for key in self.keys():
            other = _VERSION_SUFFIX.match(key)
            if key != current_key and other and other.group("base") == prefix:
                self.delete(key)
                removed.append(key)
        if removed:
            logger.info("state_legacy_purged", current_key=current_key, removed=removed)
        return removed


class MemoryStateStore(StateStore):
    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._data: dict[str, str] = {}
        for key, value in (initial or {}).items():
            self.save(key, value)

    def load(self, key: str) -> Any | None:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    def save(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return sorted(self._data)


class SqlAlchemyStateStore(StateStore):
    """State store on any SQLAlchemy URL; tables are created on construction."""

    def __init__(self, url: str) -> None:
        connect_args = {}
        if url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self._url = url
        self._engine = create_engine(url, connect_args=connect_args, pool_pre_ping=True)
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self._engine)
        Base.metadata.create_all(bind=self._engine)
        logger.info("state_store_init", url=url.split("?")[0].split("//")[-1])

    @contextmanager
    def _session_scope(self) -> Iterator[Session]:
        """Commits on success, rolls back on error; database errors surface as StateStoreError."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("state_store_error", error=str(e))
            raise StateStoreError(f"State store unavailable: {type(e).__name__}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def load(self, key: str) -> Any | None:
        with self._session_scope() as session:
            row = session.get(PersistedState, key)
            raw = row.payload if row else None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError as e:
            logger.warning("state_load_corrupt", key=key, error=str(e))
            return None

    def save(self, key: str, value: Any) -> None:
        payload = json.dumps(value)
        now = int(time.time() * 1000)
        with self._session_scope() as session:
            row = session.get(PersistedState, key)
            if row is None:
                session.add(PersistedState(key=key, payload=payload, updated_at=now))
            else:
                row.payload = payload
                row.updated_at = now

    def delete(self, key: str) -> None:
        with self._session_scope() as session:
            session.query(PersistedState).filter(PersistedState.key == key).delete()

    def keys(self) -> list[str]:
        with self._session_scope() as session:
            return sorted(k for (k,) in session.query(PersistedState.key).all())

    def dispose(self) -> None:
        self._engine.dispose()
