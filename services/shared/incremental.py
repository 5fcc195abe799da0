"""Incremental persistence of ingestion runs with change detection."""
import hashlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List, Protocol, Sequence

from sqlalchemy.orm import Session

from observability.metrics import record_change_event
from pipelines.chunker import DocumentChunk
from pipelines.crawler import IngestedDocument, IngestRunResult, NotModifiedDocument
from .change_detection import ChangeClassifier, DetectedChange, SectionDiffClassifier, document_added_change
from .models import ChangeEvent, Chunk, ChunkEmbedding, Document

logger = logging.getLogger(__name__)


class ChunkEmbedder(Protocol):
    model_id: str

    def embed_texts(self, texts: Sequence[str]) -> Optional[List[Optional[List[float]]]]:
        ...


@dataclass
class DocumentPersistResult:
    """Outcome of persisting one ingested document."""
    document_id: str
    inserted: bool
    changed: bool
    chunks_inserted: int = 0
    events: List[ChangeEvent] = field(default_factory=list)


@dataclass
class PersistStats:
    """Totals for one persisted run."""
    inserted_documents: int = 0
    updated_documents: int = 0
    inserted_chunks: int = 0
    change_events: int = 0
    events: List[ChangeEvent] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inserted_documents": self.inserted_documents,
            "updated_documents": self.updated_documents,
            "inserted_chunks": self.inserted_chunks,
            "change_events": self.change_events,
        }


class IncrementalProcessor:
    """Upserts crawled documents, replaces chunks and records change events.

    Each document is committed on its own so an interrupted run leaves a
    consistent, if incomplete, set of documents.
    """

    def __init__(self, db_session: Session,
                 embedder: Optional[ChunkEmbedder] = None,
                 classifier: Optional[ChangeClassifier] = None):
        self.db = db_session
        self.embedder = embedder
        self.classifier = classifier or SectionDiffClassifier()

    def compute_content_hash(self, content: str) -> str:
        """Compute SHA-256 hash of content for change detection."""
        return hashlib.sha256(content.encode('utf-8')).hexdigest()

    def find_document(self, source_id: str, canonical_url: str, version_tag: str) -> Optional[Document]:
        return (
            self.db.query(Document)
            .filter(
                Document.source_id == source_id,
                Document.canonical_url == canonical_url,
                Document.version_tag == version_tag,
            )
            .first()
        )

    def current_document_text(self, document: Document) -> str:
        """Reconstruct the stored text from chunks in index order."""
        rows = (
            self.db.query(Chunk.text)
            .filter(Chunk.document_id == document.id)
            .order_by(Chunk.chunk_index)
            .all()
        )
        return "\n\n".join(row.text or "" for row in rows)

    def _build_chunks(self, chunks: List[DocumentChunk], valid_from: datetime) -> List[Chunk]:
        vectors = None
        if self.embedder is not None and chunks:
            vectors = self.embedder.embed_texts([chunk.text for chunk in chunks])

        rows = []
        for index, chunk in enumerate(chunks):
            row = Chunk(
                chunk_index=index,
                text=chunk.text,
                token_count=chunk.token_count,
                heading_path=chunk.heading_path,
                code_lang=chunk.code_lang,
                valid_from=valid_from,
                valid_to=None,
            )
            vector = vectors[index] if vectors and index < len(vectors) else None
            if vector:
                row.embedding = ChunkEmbedding(model=self.embedder.model_id, vector=list(vector))
            rows.append(row)
        return rows

    def _replace_chunks(self, document: Document, chunks: List[DocumentChunk], valid_from: datetime) -> int:
        # Delete-then-insert inside the document's transaction
        new_rows = self._build_chunks(chunks, valid_from)
        document.chunks.clear()
        self.db.flush()
        document.chunks.extend(new_rows)
        return len(new_rows)

    def _apply_fetch_metadata(self, document: Document, doc_fetch, checked_at: datetime) -> None:
        if doc_fetch is None:
            document.fetch_last_checked_at = checked_at
            return
        if doc_fetch.etag:
            document.fetch_etag = doc_fetch.etag
        if doc_fetch.last_modified:
            document.fetch_last_modified = doc_fetch.last_modified
        if doc_fetch.status is not None:
            document.fetch_last_status = doc_fetch.status
        document.fetch_last_checked_at = doc_fetch.checked_at or checked_at

    def _record_events(self, source_id: str, document: Document, changes: List[DetectedChange],
                       detected_at: datetime) -> List[ChangeEvent]:
        events = []
        for change in changes:
            event = ChangeEvent(
                source_id=source_id,
                document_id=document.id,
                canonical_url=document.canonical_url,
                title=document.title,
                event_type=change.event_type,
                severity=change.severity,
                summary=change.summary,
                details=change.details,
                detected_at=detected_at,
            )
            self.db.add(event)
            events.append(event)
        return events

    def persist_document(self, source_id: str, doc: IngestedDocument,
                         ingested_at: Optional[datetime] = None) -> DocumentPersistResult:
        """Insert or update one document.

        New documents get their chunks and a single ``document_added`` event.
        Unchanged content only refreshes ``last_seen_at`` and fetch metadata.
        Changed content replaces the chunk set and is classified against the
        previous text.
        """
        ingested_at = ingested_at or datetime.now(timezone.utc)
        content_hash = self.compute_content_hash(doc.content)
        existing = self.find_document(source_id, doc.canonical_url, doc.version_tag)

        try:
            if existing is None:
                document = Document(
                    source_id=source_id,
                    canonical_url=doc.canonical_url,
                    version_tag=doc.version_tag,
                    title=doc.title,
                    language=doc.language,
                    content_hash=content_hash,
                    first_seen_at=ingested_at,
                    last_seen_at=ingested_at,
                    last_changed_at=ingested_at,
                )
                self._apply_fetch_metadata(document, doc.fetch, ingested_at)
                self.db.add(document)
                self.db.flush()

                inserted_chunks = self._replace_chunks(document, doc.chunks, ingested_at)
                events = self._record_events(source_id, document, [document_added_change(doc.title)], ingested_at)
                self.db.commit()

                logger.info(f"Added document {doc.canonical_url} with {inserted_chunks} chunks")
                result = DocumentPersistResult(document.id, inserted=True, changed=True,
                                               chunks_inserted=inserted_chunks, events=events)
            else:
                changed = existing.content_hash != content_hash
                existing.title = doc.title
                existing.language = doc.language
                existing.last_seen_at = ingested_at
                self._apply_fetch_metadata(existing, doc.fetch, ingested_at)

                if not changed:
                    self.db.commit()
                    return DocumentPersistResult(existing.id, inserted=False, changed=False)

                previous_text = self.current_document_text(existing)
                existing.content_hash = content_hash
                existing.last_changed_at = ingested_at
                inserted_chunks = self._replace_chunks(existing, doc.chunks, ingested_at)
                changes = self.classifier.classify(previous_text, doc.content, doc.title)
                events = self._record_events(source_id, existing, changes, ingested_at)
                self.db.commit()

                logger.info(f"Updated document {doc.canonical_url}: "
                            f"{[change.event_type for change in changes]}")
                result = DocumentPersistResult(existing.id, inserted=False, changed=True,
                                               chunks_inserted=inserted_chunks, events=events)
        except Exception:
            self.db.rollback()
            raise

        for event in result.events:
            record_change_event(source_id, event.event_type, event.severity)
        return result

    def touch_not_modified_documents(self, source_id: str, documents: List[NotModifiedDocument],
                                     ingested_at: Optional[datetime] = None) -> int:
        """Refresh ``last_seen_at`` and fetch metadata for pages that answered 304."""
        ingested_at = ingested_at or datetime.now(timezone.utc)
        touched = 0
        for item in documents:
            rows = (
                self.db.query(Document)
                .filter(Document.source_id == source_id, Document.canonical_url == item.canonical_url)
                .all()
            )
            for document in rows:
                document.last_seen_at = ingested_at
                self._apply_fetch_metadata(document, item.fetch, ingested_at)
                if document.fetch_last_status is None:
                    document.fetch_last_status = 304
                touched += 1
        self.db.commit()
        return touched

    def persist_run(self, source_id: str, run: IngestRunResult,
                    ingested_at: Optional[datetime] = None) -> PersistStats:
        """Persist every document of a crawl run and touch the not-modified ones."""
        ingested_at = ingested_at or datetime.now(timezone.utc)
        stats = PersistStats()

        for doc in run.documents:
            saved = self.persist_document(source_id, doc, ingested_at)
            if saved.inserted:
                stats.inserted_documents += 1
            elif saved.changed:
                stats.updated_documents += 1
            stats.inserted_chunks += saved.chunks_inserted
            stats.change_events += len(saved.events)
            stats.events.extend(saved.events)

        self.touch_not_modified_documents(source_id, run.not_modified_documents, ingested_at)

        logger.info(f"Persisted run for {source_id}: {stats.to_dict()}")
        return stats

    def count_chunks(self, document_id: str) -> int:
        """Count chunks for a document."""
        return self.db.query(Chunk).filter(Chunk.document_id == document_id).count()
