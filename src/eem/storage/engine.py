"""Database engine setup for Eem storage.

A single SQLite database holds both the blob table (event, relation, flow
and script artifacts) and the semantic index table.
"""

from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

from sqlalchemy import Engine, create_engine
from sqlalchemy.orm import Session, sessionmaker

if TYPE_CHECKING:
    from eem.config import Settings

# Lazy engine initialization - one engine per database path, created on first use
_engines: dict[Path, Engine] = {}
_session_factories: dict[Path, sessionmaker[Session]] = {}


def create_engine_for_db(db_path: Path) -> Engine:
    """Create a SQLite engine with proper configuration and schema."""
    from eem.storage.tables import StorageBase

    db_path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_engine(
        f"sqlite:///{db_path}",
        echo=False,
        pool_pre_ping=True,
        connect_args={"check_same_thread": False},
    )
    StorageBase.metadata.create_all(engine)
    return engine


def _database_path(settings: "Settings | None") -> Path:
    if settings is None:
        from eem.config import get_settings

        settings = get_settings()
    settings.ensure_storage_dir()
    return settings.database_path.resolve()


def get_engine(settings: "Settings | None" = None) -> Engine:
    """Get or create the storage engine for the settings' database."""
    path = _database_path(settings)
    if path not in _engines:
        _engines[path] = create_engine_for_db(path)
    return _engines[path]


def get_session_factory(settings: "Settings | None" = None) -> sessionmaker[Session]:
    """Get or create the storage session factory for the settings' database."""
    path = _database_path(settings)
    if path not in _session_factories:
        _session_factories[path] = sessionmaker(bind=get_engine(settings), expire_on_commit=False)
    return _session_factories[path]


@contextmanager
def session_scope(factory: sessionmaker[Session]) -> Generator[Session, None, None]:
    """Yield a session that commits on success and rolls back on error."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def reset_engines() -> None:
    """Reset engine caches (useful for testing)."""
    for engine in _engines.values():
        engine.dispose()
    _engines.clear()
    _session_factories.clear()
