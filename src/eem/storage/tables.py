"""SQLAlchemy models for the blob table and the semantic index table."""

from datetime import datetime
from typing import Any, ClassVar

from sqlalchemy import DateTime, Index, LargeBinary, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import func


class StorageBase(DeclarativeBase):
    """Base class for storage models."""

    type_annotation_map: ClassVar[dict[type, Any]] = {}


class BlobRow(StorageBase):
    """One stored artifact addressed by (container, key)."""

    __tablename__ = "blobs"

    container: Mapped[str] = mapped_column(String(128), primary_key=True)
    key: Mapped[str] = mapped_column(String(1024), primary_key=True)
    data: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    size: Mapped[int] = mapped_column(nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (Index("idx_blobs_container_key", "container", "key"),)


class IndexRow(StorageBase):
    """A searchable entry of the semantic index."""

    __tablename__ = "semantic_index"

    collection: Mapped[str] = mapped_column(String(128), primary_key=True)
    id: Mapped[str] = mapped_column(String(256), primary_key=True)
    text: Mapped[str] = mapped_column(Text, nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    ref: Mapped[str] = mapped_column(Text, nullable=False, default="")
    embedding: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (Index("idx_semantic_index_collection", "collection"),)
