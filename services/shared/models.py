"""Shared database models for sources, documents, chunks and change tracking."""
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from sqlalchemy import (
    Column, Integer, String, Text, DateTime, Float, JSON, ForeignKey, Index, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")

DEFAULT_VERSION_TAG = "latest"


def new_id(prefix: str) -> str:
    """Generate a prefixed opaque identifier, e.g. ``doc_3f2a...``."""
    return f"{prefix}_{uuid.uuid4().hex}"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on read; treat naive timestamps as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class Source(Base):
    """A documentation site being mirrored."""
    __tablename__ = 'source'

    id = Column(String(100), primary_key=True)
    name = Column(String(200), nullable=False)
    kind = Column(String(20), nullable=False, default="docs")
    base_url = Column(String(2048), nullable=False)
    status = Column(String(20), nullable=False, default="active")
    trust_score = Column(Float, nullable=False, default=1.0)
    poll_interval_minutes = Column(Integer, nullable=False, default=60)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    documents = relationship("Document", back_populates="source", cascade="all, delete-orphan")
    snapshots = relationship("Snapshot", back_populates="source", cascade="all, delete-orphan")


class Document(Base):
    """A crawled page, identified by (source, canonical URL, version tag)."""
    __tablename__ = 'document'

    id = Column(String(64), primary_key=True, default=lambda: new_id("doc"))
    source_id = Column(String(100), ForeignKey('source.id', ondelete="CASCADE"), nullable=False)
    canonical_url = Column(String(2048), nullable=False)
    version_tag = Column(String(100), nullable=False, default=DEFAULT_VERSION_TAG)
    title = Column(String(500), nullable=False)
    language = Column(String(20), nullable=True)
    content_hash = Column(String(64), nullable=False)
    first_seen_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_seen_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_changed_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Conditional-request bookkeeping
    fetch_etag = Column(String(256), nullable=True)
    fetch_last_modified = Column(String(100), nullable=True)
    fetch_last_status = Column(Integer, nullable=True)
    fetch_last_checked_at = Column(DateTime(timezone=True), nullable=True)

    source = relationship("Source", back_populates="documents")
    chunks = relationship(
        "Chunk",
        back_populates="document",
        cascade="all, delete-orphan",
        order_by="Chunk.chunk_index",
    )

    __table_args__ = (
        UniqueConstraint('source_id', 'canonical_url', 'version_tag', name='uq_document_identity'),
        Index('idx_document_content_hash', 'content_hash'),
        Index('idx_document_last_changed', 'last_changed_at'),
    )

    def fetch_conditions(self) -> Dict[str, Optional[str]]:
        """Conditional headers derived from the last successful fetch."""
        return {"etag": self.fetch_etag, "last_modified": self.fetch_last_modified}


class Chunk(Base):
    """A heading-scoped slice of a document. Replaced wholesale on re-ingestion."""
    __tablename__ = 'chunk'

    id = Column(String(64), primary_key=True, default=lambda: new_id("chk"))
    document_id = Column(String(64), ForeignKey('document.id', ondelete="CASCADE"), nullable=False)
    chunk_index = Column(Integer, nullable=False)
    text = Column(Text, nullable=False)
    token_count = Column(Integer, nullable=False, default=0)
    heading_path = Column(String(500), nullable=True)
    code_lang = Column(String(50), nullable=True)
    valid_from = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    valid_to = Column(DateTime(timezone=True), nullable=True)

    document = relationship("Document", back_populates="chunks")
    embedding = relationship(
        "ChunkEmbedding",
        back_populates="chunk",
        uselist=False,
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint('document_id', 'chunk_index', name='uq_chunk_position'),
        Index('idx_chunk_document_id', 'document_id'),
    )


class ChunkEmbedding(Base):
    """Unit-length embedding vector for a chunk."""
    __tablename__ = 'chunk_embedding'

    chunk_id = Column(String(64), ForeignKey('chunk.id', ondelete="CASCADE"), primary_key=True)
    model = Column(String(200), nullable=False)
    vector = Column(JSONType, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    chunk = relationship("Chunk", back_populates="embedding")


class ChangeEvent(Base):
    """Append-only record of a detected documentation change."""
    __tablename__ = 'change_event'

    id = Column(String(64), primary_key=True, default=lambda: new_id("chg"))
    source_id = Column(String(100), nullable=False)
    # Back-reference only; events outlive content replacement.
    document_id = Column(String(64), ForeignKey('document.id', ondelete="SET NULL"), nullable=True)
    canonical_url = Column(String(2048), nullable=False)
    title = Column(String(500), nullable=False)
    event_type = Column(String(30), nullable=False)
    severity = Column(String(20), nullable=False)
    summary = Column(Text, nullable=False)
    details = Column(JSONType, nullable=False, default=dict)
    detected_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_change_event_source', 'source_id'),
        Index('idx_change_event_detected_at', 'detected_at'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source_id,
            "canonical_url": self.canonical_url,
            "title": self.title,
            "event_type": self.event_type,
            "severity": self.severity,
            "summary": self.summary,
            "details": self.details or {},
            "detected_at": ensure_utc(self.detected_at).isoformat(),
        }


class Snapshot(Base):
    """Audit row written once per ingestion run."""
    __tablename__ = 'snapshot'

    id = Column(String(64), primary_key=True, default=lambda: new_id("snap"))
    source_id = Column(String(100), ForeignKey('source.id', ondelete="CASCADE"), nullable=False)
    fetched_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    raw_blob_ref = Column(Text, nullable=True)
    parser_version = Column(String(100), nullable=True)
    status = Column(String(20), nullable=False)
    error = Column(Text, nullable=True)

    source = relationship("Source", back_populates="snapshots")

    __table_args__ = (
        Index('idx_snapshot_source_fetched', 'source_id', 'fetched_at'),
    )


class SourceSyncRequest(Base):
    """Bookkeeping for a queued source sync."""
    __tablename__ = 'source_sync_request'

    id = Column(String(64), primary_key=True, default=lambda: new_id("ssr"))
    source_id = Column(String(100), nullable=False)
    status = Column(String(20), nullable=False, default="queued")
    requested_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    processed_at = Column(DateTime(timezone=True), nullable=True)
    error = Column(Text, nullable=True)
