"""Retrieval: candidate store, embeddings and hybrid reranking."""

from .embeddings import EmbeddingProvider, QueryEmbeddingCache, cosine_similarity, normalize_vector
from .reranker import Candidate, rerank_hybrid_candidates
from .store import CandidateStore, SearchFilters

__all__ = [
    'EmbeddingProvider',
    'QueryEmbeddingCache',
    'cosine_similarity',
    'normalize_vector',
    'Candidate',
    'rerank_hybrid_candidates',
    'CandidateStore',
    'SearchFilters'
]
