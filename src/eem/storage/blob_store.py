"""Key-value blob storage with prefix listing."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from eem.core.resilience import DEFAULT_TRANSIENT, STORAGE_POLICY, RetryPolicy, call_with_policy
from eem.storage.engine import session_scope
from eem.storage.tables import BlobRow


@dataclass
class BlobInfo:
    """Listing entry for a stored blob."""

    key: str
    size: int
    created_at: datetime


class BlobStore(Protocol):
    """Durable store of opaque blobs grouped in named containers."""

    def put(self, container: str, key: str, data: bytes) -> None: ...

    def get(self, container: str, key: str) -> bytes | None: ...

    def list(self, container: str, prefix: str = "") -> Iterator[BlobInfo]: ...

    def delete(self, container: str, key: str) -> bool: ...


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SqlBlobStore:
    """BlobStore backed by a SQLAlchemy table."""

    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def put(self, container: str, key: str, data: bytes) -> None:
        """Insert or overwrite a blob."""
        with session_scope(self._session_factory) as session:
            row = session.get(BlobRow, (container, key))
            if row is None:
                session.add(BlobRow(
                    container=container, key=key, data=data, size=len(data),
                    created_at=datetime.now(timezone.utc),
                ))
            else:
                row.data = data
                row.size = len(data)

    def get(self, container: str, key: str) -> bytes | None:
        """Return the blob contents, or None if the key does not exist."""
        with session_scope(self._session_factory) as session:
            row = session.get(BlobRow, (container, key))
            return None if row is None else bytes(row.data)

    def list(self, container: str, prefix: str = "") -> Iterator[BlobInfo]:
        """Yield blobs in ``container`` whose key starts with ``prefix``, in key order."""
        stmt = select(BlobRow.key, BlobRow.size, BlobRow.created_at).where(
            BlobRow.container == container
        )
        if prefix:
            stmt = stmt.where(BlobRow.key.startswith(prefix, autoescape=True))
        stmt = stmt.order_by(BlobRow.key)
        with session_scope(self._session_factory) as session:
            rows = session.execute(stmt).all()
        for key, size, created_at in rows:
            yield BlobInfo(key=key, size=size, created_at=_as_utc(created_at))

    def delete(self, container: str, key: str) -> bool:
        """Delete a blob. Returns True if something was deleted."""
        with session_scope(self._session_factory) as session:
            result = session.execute(
                delete(BlobRow).where(BlobRow.container == container, BlobRow.key == key)
            )
            return bool(result.rowcount)


STORAGE_RETRY = RetryPolicy(
    name=STORAGE_POLICY.name,
    max_attempts=STORAGE_POLICY.max_attempts,
    base_delay=STORAGE_POLICY.base_delay,
    max_delay=STORAGE_POLICY.max_delay,
    timeout=STORAGE_POLICY.timeout,
    retry_on=DEFAULT_TRANSIENT + (OperationalError,),
)


class ResilientBlobStore:
    """Wraps a BlobStore so each call runs under the storage retry policy."""

    def __init__(self, inner: BlobStore, policy: RetryPolicy = STORAGE_RETRY):
        self.inner = inner
        self.policy = policy

    def put(self, container: str, key: str, data: bytes) -> None:
        call_with_policy(self.policy, self.inner.put, container, key, data, operation=f"put {container}/{key}")

    def get(self, container: str, key: str) -> bytes | None:
        return call_with_policy(self.policy, self.inner.get, container, key, operation=f"get {container}/{key}")

    def list(self, container: str, prefix: str = "") -> Iterator[BlobInfo]:
        infos = call_with_policy(
            self.policy,
            lambda: list(self.inner.list(container, prefix)),
            operation=f"list {container}/{prefix}",
        )
        return iter(infos)

    def delete(self, container: str, key: str) -> bool:
        return call_with_policy(
            self.policy, self.inner.delete, container, key, operation=f"delete {container}/{key}"
        )
