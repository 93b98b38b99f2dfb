"""Key/value record persistence for job state.

Two implementations share one surface:

* ``InMemoryRecordStore`` – process-local dict guarded by a lock (tests, single process).
* ``SqlRecordStore`` – ``job_records`` table via SQLAlchemy; each row carries a
  version stamp so ``compare_and_set`` is a single conditional UPDATE and
  concurrent writers on one key never lose updates.

Values are JSON-compatible dicts. ``get_versioned`` returns ``(value, version)``;
``compare_and_set`` succeeds only if the stored version still equals the one read.
"""
from __future__ import annotations

import copy
import threading
from typing import Any, Callable, Optional, Protocol

from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from price_manager.models.db.job_records import JobRecordRow
from price_manager.utils import get_logger

logger = get_logger(__name__)

Record = dict[str, Any]


class RecordStore(Protocol):
    def get(self, key: str) -> Optional[Record]: ...
    def get_versioned(self, key: str) -> tuple[Optional[Record], int]: ...
    def set(self, key: str, value: Record) -> None: ...
    def add(self, key: str, value: Record) -> bool: ...
    def compare_and_set(self, key: str, value: Record, expected_version: int) -> bool: ...
    def delete(self, key: str) -> bool: ...
    def list_keys_by_prefix(self, prefix: str, *, status: str | None = None) -> list[str]: ...


class InMemoryRecordStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._rows: dict[str, tuple[Record, int]] = {}

    def get(self, key: str) -> Optional[Record]:
        return self.get_versioned(key)[0]

    def get_versioned(self, key: str) -> tuple[Optional[Record], int]:
        with self._lock:
            row = self._rows.get(key)
            if row is None:
                return None, 0
            # Callers mutate what they read; never hand out the stored object
            return copy.deepcopy(row[0]), row[1]

    def set(self, key: str, value: Record) -> None:
        with self._lock:
            version = self._rows.get(key, ({}, 0))[1]
            self._rows[key] = (copy.deepcopy(value), version + 1)

    def add(self, key: str, value: Record) -> bool:
        with self._lock:
            if key in self._rows:
                return False
            self._rows[key] = (copy.deepcopy(value), 1)
            return True

    def compare_and_set(self, key: str, value: Record, expected_version: int) -> bool:
        with self._lock:
            row = self._rows.get(key)
            if row is None or row[1] != expected_version:
                return False
            self._rows[key] = (copy.deepcopy(value), expected_version + 1)
            return True

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._rows.pop(key, None) is not None

    def list_keys_by_prefix(self, prefix: str, *, status: str | None = None) -> list[str]:
        with self._lock:
            return sorted(
                k for k, (v, _) in self._rows.items()
                if k.startswith(prefix) and (status is None or v.get("status") == status)
            )


class SqlRecordStore:
    """Record store on the ``job_records`` table.

    Every operation opens and closes its own short session so worker threads
    never share one.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    @staticmethod
    def _columns(value: Record) -> dict[str, Any]:
        return {"status": value.get("status"), "updated_at": value.get("updated_at")}

    def get(self, key: str) -> Optional[Record]:
        return self.get_versioned(key)[0]

    def get_versioned(self, key: str) -> tuple[Optional[Record], int]:
        session = self._session_factory()
        try:
            row = session.get(JobRecordRow, key)
            if row is None:
                return None, 0
            return copy.deepcopy(row.value), row.version
        finally:
            session.close()

    def set(self, key: str, value: Record) -> None:
        session = self._session_factory()
        try:
            row = session.get(JobRecordRow, key)
            if row is None:
                session.add(JobRecordRow(key=key, value=value, version=1, **self._columns(value)))
            else:
                row.value = value
                row.version = row.version + 1
                row.status = value.get("status")
                row.updated_at = value.get("updated_at")
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def add(self, key: str, value: Record) -> bool:
        session = self._session_factory()
        try:
            session.add(JobRecordRow(key=key, value=value, version=1, **self._columns(value)))
            session.commit()
            return True
        except IntegrityError:
            session.rollback()
            return False
        finally:
            session.close()

    def compare_and_set(self, key: str, value: Record, expected_version: int) -> bool:
        session = self._session_factory()
        try:
            result = session.execute(
                update(JobRecordRow)
                .where(JobRecordRow.key == key, JobRecordRow.version == expected_version)
                .values(value=value, version=JobRecordRow.version + 1, **self._columns(value))
            )
            session.commit()
            if result.rowcount == 0:
                logger.debug("Version conflict on record", key=key, expected_version=expected_version)
                return False
            return True
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def delete(self, key: str) -> bool:
        session = self._session_factory()
        try:
            result = session.execute(delete(JobRecordRow).where(JobRecordRow.key == key))
            session.commit()
            return bool(result.rowcount)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def list_keys_by_prefix(self, prefix: str, *, status: str | None = None) -> list[str]:
        session = self._session_factory()
        try:
            stmt = select(JobRecordRow.key).where(JobRecordRow.key.startswith(prefix, autoescape=True))
            if status is not None:
                stmt = stmt.where(JobRecordRow.status == status)
            return list(session.scalars(stmt.order_by(JobRecordRow.key)))
        finally:
            session.close()


__all__ = ["RecordStore", "InMemoryRecordStore", "SqlRecordStore"]
