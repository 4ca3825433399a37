"""Semantic index: store text with an embedding, rank by similarity."""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from sqlalchemy import delete, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from eem.core.resilience import DEFAULT_TRANSIENT, INDEX_POLICY, RetryPolicy, call_with_policy
from eem.correlation.similarity import cosine_similarity, pack_vector, unpack_vector
from eem.storage.engine import session_scope
from eem.storage.tables import IndexRow

EmbedFn = Callable[[str], list[float]]

_WORD_RE = re.compile(r"\w+")


@dataclass
class SearchHit:
    """A ranked search result. ``ref`` is the opaque reference given at index time."""

    id: str
    score: float
    ref: str


class SemanticIndex(Protocol):
    def index(self, collection: str, id: str, text: str, description: str, ref: str) -> None: ...

    def search(
        self, collection: str, query: str, limit: int = 10, min_score: float = 0.0
    ) -> list[SearchHit]: ...

    def get_by_id(self, collection: str, id: str) -> str | None: ...

    def remove(self, collection: str, id: str) -> bool: ...


def keyword_score(query: str, text: str) -> float:
    """Fraction of distinct query words that occur in ``text``."""
    terms = {t.lower() for t in _WORD_RE.findall(query)}
    if not terms:
        return 0.0
    words = {w.lower() for w in _WORD_RE.findall(text)}
    return len(terms & words) / len(terms)


class SqlSemanticIndex:
    """SemanticIndex stored in SQLite.

    When an ``embed`` function is provided, entries are embedded at index
    time and searches rank by cosine similarity to the query embedding.
    Without one (or for entries stored without an embedding) the score is
    the keyword overlap between the query and the entry text.
    """

    def __init__(self, session_factory: sessionmaker[Session], embed: EmbedFn | None = None):
        self._session_factory = session_factory
        self._embed = embed

    def index(self, collection: str, id: str, text: str, description: str = "", ref: str = "") -> None:
        embedding = None
        if self._embed is not None and text:
            embedding = pack_vector(self._embed(text))
        with session_scope(self._session_factory) as session:
            row = session.get(IndexRow, (collection, id))
            if row is None:
                session.add(IndexRow(
                    collection=collection, id=id, text=text,
                    description=description, ref=ref, embedding=embedding,
                ))
            else:
                row.text = text
                row.description = description
                row.ref = ref
                row.embedding = embedding

    def search(
        self, collection: str, query: str, limit: int = 10, min_score: float = 0.0
    ) -> list[SearchHit]:
        """Rank entries of ``collection`` against ``query``, best first."""
        with session_scope(self._session_factory) as session:
            rows = session.execute(
                select(IndexRow.id, IndexRow.text, IndexRow.description, IndexRow.ref, IndexRow.embedding)
                .where(IndexRow.collection == collection)
                .order_by(IndexRow.id)
            ).all()
        if not rows:
            return []

        query_embedding = None
        if self._embed is not None and query.strip():
            query_embedding = self._embed(query)

        hits: list[SearchHit] = []
        for row_id, text, description, ref, embedding in rows:
            if query_embedding is not None and embedding:
                score = cosine_similarity(query_embedding, unpack_vector(embedding))
            else:
                score = keyword_score(query, f"{text} {description}")
            if score > 0 and score >= min_score:
                hits.append(SearchHit(id=row_id, score=score, ref=ref))

        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:limit]

    def get_by_id(self, collection: str, id: str) -> str | None:
        with session_scope(self._session_factory) as session:
            row = session.get(IndexRow, (collection, id))
            return None if row is None else row.ref

    def remove(self, collection: str, id: str) -> bool:
        with session_scope(self._session_factory) as session:
            result = session.execute(
                delete(IndexRow).where(IndexRow.collection == collection, IndexRow.id == id)
            )
            return bool(result.rowcount)


INDEX_RETRY = RetryPolicy(
    name=INDEX_POLICY.name,
    max_attempts=INDEX_POLICY.max_attempts,
    base_delay=INDEX_POLICY.base_delay,
    max_delay=INDEX_POLICY.max_delay,
    timeout=INDEX_POLICY.timeout,
    retry_on=DEFAULT_TRANSIENT + (OperationalError,),
)


class ResilientSemanticIndex:
    """Wraps a SemanticIndex so each call runs under the index retry policy."""

    def __init__(self, inner: SemanticIndex, policy: RetryPolicy = INDEX_RETRY):
        self.inner = inner
        self.policy = policy

    def index(self, collection: str, id: str, text: str, description: str = "", ref: str = "") -> None:
        call_with_policy(
            self.policy, self.inner.index, collection, id, text, description, ref,
            operation=f"index {collection}/{id}",
        )

    def search(
        self, collection: str, query: str, limit: int = 10, min_score: float = 0.0
    ) -> list[SearchHit]:
        return call_with_policy(
            self.policy, self.inner.search, collection, query, limit, min_score,
            operation=f"search {collection}",
        )

    def get_by_id(self, collection: str, id: str) -> str | None:
        return call_with_policy(
            self.policy, self.inner.get_by_id, collection, id, operation=f"get_by_id {collection}/{id}"
        )

    def remove(self, collection: str, id: str) -> bool:
        return call_with_policy(
            self.policy, self.inner.remove, collection, id, operation=f"remove {collection}/{id}"
        )
