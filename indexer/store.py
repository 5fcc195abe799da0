"""Read-side queries over the document store.

Candidate retrieval prefilters chunks with ILIKE on the query tokens and then
scores the survivors lexically; the hybrid reranker does the final ordering.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import or_
from sqlalchemy.orm import Session

from services.shared.models import (
    ChangeEvent, Chunk, ChunkEmbedding, Document, Snapshot, Source, ensure_utc,
)
from .embeddings import cosine_similarity, parse_stored_embedding
from .reranker import Candidate, tokenize

logger = logging.getLogger(__name__)

NEVER_SYNCED_LAG_MINUTES = 1_000_000
HEALTHY_LAG_MINUTES = 60
DEGRADED_LAG_MINUTES = 240
CANDIDATE_POOL_FACTOR = 5


@dataclass
class SearchFilters:
    """Optional restrictions applied to candidate retrieval."""
    sources: Optional[List[str]] = None
    exclude_sources: List[str] = field(default_factory=list)
    version: Optional[str] = None
    language: Optional[str] = None
    updated_after: Optional[datetime] = None
    reference_date: Optional[datetime] = None
    min_trust_score: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'SearchFilters':
        data = data or {}
        return cls(
            sources=list(data["sources"]) if data.get("sources") else None,
            exclude_sources=list(data.get("exclude_sources") or []),
            version=data.get("version"),
            language=data.get("language"),
            updated_after=_parse_datetime(data.get("updated_after")),
            reference_date=_parse_datetime(data.get("reference_date")),
            min_trust_score=data.get("min_trust_score"),
        )


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


def compute_ilike_score(query: str, tokens: Sequence[str], text: str, title: str) -> float:
    """0.8 for a body match plus 0.2 for a title match.

    A verbatim query hit earns the full share; otherwise the share is scaled
    by the fraction of query tokens present.
    """
    text_lower = (text or "").lower()
    title_lower = (title or "").lower()
    needle = query.strip().lower()

    def share(haystack: str) -> float:
        if needle and needle in haystack:
            return 1.0
        if not tokens:
            return 0.0
        return sum(1 for token in tokens if token in haystack) / len(tokens)

    return 0.8 * share(text_lower) + 0.2 * share(title_lower)


def compute_fts_score(tokens: Sequence[str], text: str) -> float:
    """Log-damped term frequency, averaged over the query tokens."""
    if not tokens:
        return 0.0
    words = tokenize(text or "")
    counts: Dict[str, int] = {}
    for word in words:
        counts[word] = counts.get(word, 0) + 1
    return sum(math.log1p(counts.get(token, 0)) for token in tokens) / len(tokens)


def sync_health(lag_minutes: int) -> str:
    if lag_minutes <= HEALTHY_LAG_MINUTES:
        return "healthy"
    if lag_minutes <= DEGRADED_LAG_MINUTES:
        return "degraded"
    return "failing"


class CandidateStore:
    """Query access to documents, chunks, sources and change events."""

    def __init__(self, db_session: Session):
        self.db = db_session

    def _apply_filters(self, query, filters: SearchFilters):
        if filters.sources:
            query = query.filter(Source.id.in_(filters.sources))
        if filters.exclude_sources:
            query = query.filter(Source.id.notin_(filters.exclude_sources))
        if filters.version:
            query = query.filter(Document.version_tag == filters.version)
        if filters.language:
            query = query.filter(Document.language == filters.language)
        if filters.updated_after:
            query = query.filter(Document.last_changed_at >= filters.updated_after)
        if filters.reference_date:
            query = query.filter(Document.last_changed_at <= filters.reference_date)
        if filters.min_trust_score is not None:
            query = query.filter(Source.trust_score >= filters.min_trust_score)
        return query

    def fetch_candidates(self, query: str, filters: Optional[SearchFilters] = None,
                         limit: int = 50) -> List[Candidate]:
        """Fetch chunks matching any query token, best lexical match first.

        Args:
            query: Free-text query
            filters: Source/version/date restrictions
            limit: Maximum number of candidates returned

        Returns:
            Candidates with ``ilike_score`` and ``fts_score`` populated
        """
        filters = filters or SearchFilters()
        tokens = tokenize(query)
        patterns = [f"%{token}%" for token in tokens] or [f"%{query.strip()}%"]

        conditions = []
        for pattern in patterns:
            conditions.append(Chunk.text.ilike(pattern))
            conditions.append(Document.title.ilike(pattern))

        rows = (
            self._apply_filters(
                self.db.query(Chunk, Document, Source)
                .join(Document, Document.id == Chunk.document_id)
                .join(Source, Source.id == Document.source_id),
                filters,
            )
            .filter(Chunk.valid_to.is_(None))
            .filter(or_(*conditions))
            .order_by(Document.last_changed_at.desc())
            .limit(max(1, limit) * CANDIDATE_POOL_FACTOR)
            .all()
        )

        candidates = [
            Candidate(
                chunk_id=chunk.id,
                text=chunk.text,
                title=document.title,
                url=document.canonical_url,
                source=source.id,
                last_changed_at=ensure_utc(document.last_changed_at),
                version_tag=document.version_tag,
                heading_path=chunk.heading_path,
                code_lang=chunk.code_lang,
                trust_score=source.trust_score,
                ilike_score=compute_ilike_score(query, tokens, chunk.text, document.title),
                fts_score=compute_fts_score(tokens, chunk.text),
            )
            for chunk, document, source in rows
        ]
        candidates.sort(key=lambda c: (c.ilike_score, c.fts_score), reverse=True)

        logger.debug(f"Fetched {len(candidates)} candidates for query '{query}'")
        return candidates[:max(0, limit)]

    def attach_semantic_scores(self, candidates: List[Candidate],
                               query_vector: Optional[Sequence[float]]) -> List[Candidate]:
        """Set ``semantic_score`` from stored chunk embeddings; misses stay None."""
        if not query_vector or not candidates:
            return candidates

        ids = [candidate.chunk_id for candidate in candidates]
        stored = {
            row.chunk_id: parse_stored_embedding(row.vector)
            for row in self.db.query(ChunkEmbedding).filter(ChunkEmbedding.chunk_id.in_(ids)).all()
        }

        for candidate in candidates:
            vector = stored.get(candidate.chunk_id)
            if vector:
                candidate.semantic_score = cosine_similarity(query_vector, vector)
        return candidates

    def latest_snapshot(self, source_id: str) -> Optional[Snapshot]:
        return (
            self.db.query(Snapshot)
            .filter(Snapshot.source_id == source_id)
            .order_by(Snapshot.fetched_at.desc())
            .first()
        )

    def list_sources(self, filter_sources: Optional[List[str]] = None,
                     now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        """Sync health per source, ordered by source id."""
        now = ensure_utc(now) if now else datetime.now(timezone.utc)

        query = self.db.query(Source)
        if filter_sources:
            query = query.filter(Source.id.in_(filter_sources))

        results = []
        for source in query.order_by(Source.id.asc()).all():
            snapshot = self.latest_snapshot(source.id)
            if snapshot is None:
                lag = NEVER_SYNCED_LAG_MINUTES
                last_sync_at = datetime.fromtimestamp(0, timezone.utc)
            else:
                last_sync_at = ensure_utc(snapshot.fetched_at)
                lag = max(0, math.floor((now - last_sync_at).total_seconds() / 60))

            results.append({
                "source": source.id,
                "status": sync_health(lag),
                "last_sync_at": last_sync_at.isoformat(),
                "lag_minutes": lag,
                "error": "last_sync_failed" if snapshot is not None and snapshot.status == "failed" else None,
            })
        return results

    def list_changes(self, source: Optional[str] = None, event_type: Optional[str] = None,
                     severity: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        """Change events, newest first."""
        query = self.db.query(ChangeEvent)
        if source:
            query = query.filter(ChangeEvent.source_id == source)
        if event_type:
            query = query.filter(ChangeEvent.event_type == event_type)
        if severity:
            query = query.filter(ChangeEvent.severity == severity)

        events = query.order_by(ChangeEvent.detected_at.desc()).limit(limit).all()
        return [event.to_dict() for event in events]
