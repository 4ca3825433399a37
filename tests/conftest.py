"""Shared test fixtures for Eem."""

from __future__ import annotations

import pytest
from sqlalchemy.orm import sessionmaker

from eem.config import Settings, reset_settings
from eem.context import build_context
from eem.storage.blob_store import SqlBlobStore
from eem.storage.engine import create_engine_for_db, reset_engines
from eem.storage.repositories import (
    ActivityRepository,
    FlowRepository,
    RelationRepository,
    ScriptRepository,
)
from eem.storage.semantic_index import SqlSemanticIndex

from tests.helpers.fakes import FakeGateway


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def session_factory(tmp_path):
    """Session factory over a fresh SQLite database in tmp_path."""
    engine = create_engine_for_db(tmp_path / "store" / "eem.db")
    yield sessionmaker(bind=engine, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def blobs(session_factory):
    return SqlBlobStore(session_factory)


@pytest.fixture
def index(session_factory):
    """Keyword-scored index (no embeddings)."""
    return SqlSemanticIndex(session_factory)


@pytest.fixture
def activities(blobs, index):
    return ActivityRepository(blobs, index)


@pytest.fixture
def relations(blobs, index):
    return RelationRepository(blobs, index)


@pytest.fixture
def flows(blobs, index):
    return FlowRepository(blobs, index)


@pytest.fixture
def scripts(blobs):
    return ScriptRepository(blobs)


@pytest.fixture
def settings(tmp_path):
    return Settings(storage_dir=tmp_path / ".eem", index_embeddings=False, _env_file=None)


@pytest.fixture
def context(settings, fake_gateway, session_factory):
    """Fully wired EemContext over the tmp SQLite store and the fake gateway."""
    return build_context(settings, gateway=fake_gateway, session_factory=session_factory)


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Point the CLI at a tmp storage dir and keep it off the network."""
    monkeypatch.setenv("EEM_STORAGE_DIR", str(tmp_path / ".eem"))
    monkeypatch.setenv("EEM_INDEX_EMBEDDINGS", "false")
    reset_settings()
    reset_engines()
    yield tmp_path / ".eem"
    reset_settings()
    reset_engines()
