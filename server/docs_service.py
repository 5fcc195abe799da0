"""Query-side operations: search, answer, source health, changes and sync requests."""

import logging
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from config.settings import AnswerSettings
from indexer.embeddings import EmbeddingProvider
from indexer.reranker import Candidate, rerank_hybrid_candidates
from indexer.store import CandidateStore, SearchFilters
from services.shared.models import SourceSyncRequest
from .decision import AnswerResult, decide_answer, policy_blocked_answer
from .jobs import SourceSyncJob
from .tenant_policy import TenantPolicy, apply_source_policy, can_sync_source, filter_candidates_by_policy

logger = logging.getLogger(__name__)

DEFAULT_TOP_K = 10
# Rerank over a wider lexical pool than we return
CANDIDATE_POOL_MULTIPLIER = 4
MIN_CANDIDATE_POOL = 20


class SourceSyncDenied(PermissionError):
    """Raised when a tenant may not sync the requested source."""


class DocsService:
    """Search and answer over the mirrored documentation.

    Args:
        db_session: Open SQLAlchemy session
        embedder: Optional embedding provider for the semantic signal
        answer_settings: Staleness threshold, citation limit and conflict margin
    """

    def __init__(self, db_session: Session,
                 embedder: Optional[EmbeddingProvider] = None,
                 answer_settings: Optional[AnswerSettings] = None):
        self.db = db_session
        self.store = CandidateStore(db_session)
        self.embedder = embedder
        self.answer_settings = answer_settings or AnswerSettings()

    def _retrieve(self, query: str, filters: Optional[SearchFilters], top_k: int) -> List[Candidate]:
        pool = max(MIN_CANDIDATE_POOL, top_k * CANDIDATE_POOL_MULTIPLIER)
        candidates = self.store.fetch_candidates(query, filters, limit=pool)
        if candidates and self.embedder is not None and self.embedder.enabled:
            query_vector = self.embedder.embed_query(query)
            self.store.attach_semantic_scores(candidates, query_vector)
        return candidates

    def search(self, query: str, filters: Optional[SearchFilters] = None,
               top_k: int = DEFAULT_TOP_K, now: Optional[datetime] = None) -> List[Candidate]:
        """Lexical candidate fetch, optional semantic scoring, hybrid rerank."""
        candidates = self._retrieve(query, filters, top_k)
        if not candidates:
            return []
        return rerank_hybrid_candidates(query, candidates, top_k, now=now)

    def answer(self, question: str, filters: Optional[SearchFilters] = None,
               policy: Optional[TenantPolicy] = None, style: str = "concise",
               max_citations: Optional[int] = None,
               now: Optional[datetime] = None) -> AnswerResult:
        """Answer a question from indexed content.

        The tenant's allow list narrows the requested sources before the
        store is queried; when nothing remains the answer is
        ``policy_blocked`` without touching the store. Deny lists and the
        trust floor are applied to the retrieved candidates, so a query whose
        every hit the tenant may not see is ``policy_blocked`` as well.
        """
        filters = replace(filters) if filters else SearchFilters()
        citation_limit = max_citations or self.answer_settings.max_citations

        if policy is not None:
            permitted = apply_source_policy(filters.sources, policy)
            if permitted is not None and not permitted:
                logger.info(f"Answer blocked by tenant policy for sources {filters.sources}")
                return policy_blocked_answer(now)
            filters.sources = permitted

        candidates = self._retrieve(question, filters, citation_limit)
        if policy is not None and candidates:
            visible = filter_candidates_by_policy(candidates, policy)
            if not visible:
                logger.info(f"Tenant policy removed all {len(candidates)} candidates for '{question}'")
                return policy_blocked_answer(now)
            candidates = visible

        results = rerank_hybrid_candidates(question, candidates, citation_limit, now=now) if candidates else []
        return decide_answer(
            results[:citation_limit],
            stale_threshold_minutes=self.answer_settings.stale_threshold_minutes,
            conflict_margin=self.answer_settings.conflict_margin,
            now=now,
            style=style,
        )

    def list_sources(self, filter_sources: Optional[List[str]] = None,
                     now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        return self.store.list_sources(filter_sources, now=now)

    def list_changes(self, source: Optional[str] = None, event_type: Optional[str] = None,
                     severity: Optional[str] = None, limit: int = 20) -> List[Dict[str, Any]]:
        return self.store.list_changes(source=source, event_type=event_type,
                                       severity=severity, limit=limit)

    def request_source_sync(self, source: str, enqueue: Callable[[SourceSyncJob], Any],
                            policy: Optional[TenantPolicy] = None) -> Dict[str, Any]:
        """Record a queued sync request and hand it to the worker queue.

        Raises:
            SourceSyncDenied: If the tenant policy does not allow syncing ``source``
            Exception: Whatever ``enqueue`` raised, after the request row is marked failed
        """
        if policy is not None and not can_sync_source(source, policy):
            raise SourceSyncDenied(f"Tenant policy does not allow syncing {source}")

        requested_at = datetime.now(timezone.utc)
        request = SourceSyncRequest(source_id=source, status="queued", requested_at=requested_at)
        self.db.add(request)
        self.db.commit()

        try:
            enqueue(SourceSyncJob(request_id=request.id, source=source, requested_at=requested_at))
        except Exception as e:
            request.status = "failed"
            request.processed_at = datetime.now(timezone.utc)
            request.error = f"queue_enqueue_failed: {e}"
            self.db.commit()
            logger.error(f"Failed to enqueue sync for {source}: {e}")
            raise

        logger.info(f"Queued source sync {request.id} for {source}")
        return {
            "accepted": True,
            "source": source,
            "requested_at": requested_at.isoformat(),
        }
