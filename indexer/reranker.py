"""Hybrid reranking of retrieval candidates.

Blends lexical scores from the store, an optional semantic score and a few
query-intent heuristics into one score. The heuristics keep API-reference
schema tables from outranking guides for action-oriented queries.
"""

import logging
import re
import time
from dataclasses import dataclass, asdict, replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Set

from observability.metrics import record_rerank
from services.shared.models import ensure_utc

logger = logging.getLogger(__name__)

STOPWORDS = {
    "a", "an", "and", "are", "as", "at", "be", "by", "do", "for", "from",
    "how", "in", "is", "it", "of", "on", "or", "that", "the", "this", "to",
    "what", "when", "where", "which", "with",
}

QUERY_EXPANSIONS: Dict[str, List[str]] = {
    "auth": ["authentication", "oauth", "token", "bearer"],
    "oauth": ["token", "authorization"],
    "payments": ["payment", "payout", "charge", "invoice"],
    "webhook": ["event", "callback", "signature"],
    "reasoning": ["reasoning models", "deliberate", "chain"],
    "migration": ["upgrade", "deprecation", "breaking change"],
    "retry": ["backoff", "idempotency", "timeout"],
    "plaid": ["link", "link token", "products", "payment initiation", "open banking"],
    "stripe": ["payment intents", "webhooks", "endpoint secret", "checkout"],
    "payment": ["initiation", "intent", "mandate", "consent", "sepa", "pis", "open banking"],
    "open": ["open banking", "open-banking"],
    "banking": ["open banking", "open-banking"],
    "europe": ["eu", "uk", "sepa"],
}

ACTION_TERMS = {"enable", "setup", "configure", "integrate", "create", "start", "initiation"}

WEIGHTS = {
    "ilike": 0.20,
    "fts": 0.22,
    "semantic": 0.26,
    "intent": 0.12,
    "phrase": 0.09,
    "section_type": 0.08,
    "quality": 0.02,
    "recency": 0.01,
}

_TOKEN_SPLIT_RE = re.compile(r"[^a-z0-9]+")
_SCHEMA_LINE_RE = re.compile(
    r"^\s*[a-z0-9_]+\s+(nullable\s+)?(string|integer|number|boolean|array|object)\b", re.IGNORECASE
)
_TYPE_TOKEN_RE = re.compile(r"\b(nullable|string|integer|number|boolean|array|object)\b", re.IGNORECASE)
_GUIDE_RE = re.compile(r"\b(quickstart|get started|get-started|how to|setup|configure|integration|guide)\b")
_REFERENCE_RE = re.compile(r"\b(dashboard|activity|logs?|errors?|status|reference|schema)\b")
_PLAID_GUIDE_RE = re.compile(r"plaid\.com/.+\b(payment-initiation|open-banking)\b")
_STRIPE_GUIDE_RE = re.compile(r"stripe\.com/.+\b(webhooks|payment-intents|checkout)\b")

MINUTES_PER_DAY = 24 * 60


@dataclass
class Candidate:
    """A chunk returned by the store with its lexical scores."""
    chunk_id: str
    text: str
    title: str
    url: str
    source: str
    last_changed_at: datetime
    version_tag: Optional[str] = None
    heading_path: Optional[str] = None
    code_lang: Optional[str] = None
    trust_score: Optional[float] = None
    ilike_score: float = 0.0
    fts_score: float = 0.0
    semantic_score: Optional[float] = None
    score: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["last_changed_at"] = ensure_utc(self.last_changed_at).isoformat()
        return data


def tokenize(text: str) -> List[str]:
    return [
        token for token in _TOKEN_SPLIT_RE.split(text.lower())
        if len(token) >= 2 and token not in STOPWORDS
    ]


def build_intent_terms(query: str) -> Set[str]:
    terms: Set[str] = set()
    for token in tokenize(query):
        terms.add(token)
        terms.update(term.lower() for term in QUERY_EXPANSIONS.get(token, []))
    return terms


def build_intent_phrases(query: str) -> List[str]:
    """Adjacent-token bigrams of the tokenized query, de-duplicated in order."""
    tokens = tokenize(query)
    phrases: List[str] = []
    for left, right in zip(tokens, tokens[1:]):
        phrase = f"{left} {right}"
        if phrase not in phrases:
            phrases.append(phrase)
    return phrases


def _haystack(item: Candidate) -> str:
    return f"{item.title} {item.text} {item.url}".lower()


def compute_intent_score(item: Candidate, intent_terms: Set[str]) -> float:
    if not intent_terms:
        return 0.0
    haystack = _haystack(item)
    return sum(1 for term in intent_terms if term in haystack) / len(intent_terms)


def compute_phrase_score(item: Candidate, intent_phrases: Sequence[str]) -> float:
    if not intent_phrases:
        return 0.0
    haystack = _haystack(item)
    return sum(1 for phrase in intent_phrases if phrase in haystack) / len(intent_phrases)


def compute_schema_noise_penalty(text: str) -> float:
    """Penalty in [0, 1] for field/type listings typical of API reference tables."""
    lines = re.split(r"\r?\n", text)
    schema_lines = sum(1 for line in lines if _SCHEMA_LINE_RE.match(line.strip()))
    type_tokens = len(_TYPE_TOKEN_RE.findall(text))

    line_penalty = min(1.0, schema_lines / 6)
    token_penalty = min(1.0, type_tokens / 45)
    return line_penalty * 0.7 + token_penalty * 0.3


def compute_content_quality_score(item: Candidate) -> float:
    penalty = compute_schema_noise_penalty(f"{item.title}\n{item.text}")
    return max(0.0, 1.0 - penalty)


def compute_section_type_score(item: Candidate, query: str) -> float:
    """0.5 unless the query asks to do something; then favor guides over reference pages."""
    if not any(term in ACTION_TERMS for term in tokenize(query)):
        return 0.5

    context = f"{item.heading_path or ''} {item.title} {item.url}".lower()
    score = 0.5

    if _GUIDE_RE.search(context):
        score += 0.35
    if _REFERENCE_RE.search(context):
        score -= 0.3

    url = item.url.lower()
    if _PLAID_GUIDE_RE.search(url):
        score += 0.15
    if _STRIPE_GUIDE_RE.search(url):
        score += 0.1

    return max(0.0, min(1.0, score))


def compute_recency_score(last_changed_at: datetime, now: datetime) -> float:
    age_minutes = max(0.0, (now - ensure_utc(last_changed_at)).total_seconds() / 60)
    return 1.0 / (1.0 + age_minutes / MINUTES_PER_DAY)


def normalize_by_max(values: Sequence[float]) -> List[float]:
    peak = max([0.0, *values])
    if peak <= 0:
        return [0.0 for _ in values]
    return [value / peak for value in values]


def rerank_hybrid_candidates(query: str, candidates: Sequence[Candidate], top_k: int,
                             now: Optional[datetime] = None) -> List[Candidate]:
    """Score, sort and truncate candidates.

    Args:
        query: The user query
        candidates: Store candidates with ilike/fts (and optional semantic) scores
        top_k: Number of results to return
        now: Reference time for recency; defaults to the current UTC time

    Returns:
        Copies of the top ``top_k`` candidates with ``score`` set, best first
    """
    if not candidates:
        return []

    started = time.perf_counter()
    now = ensure_utc(now) if now else datetime.now(timezone.utc)

    intent_terms = build_intent_terms(query)
    intent_phrases = build_intent_phrases(query)
    normalized_fts = normalize_by_max([item.fts_score for item in candidates])
    semantic_shifted = [
        max(0.0, min(1.0, ((item.semantic_score or 0.0) + 1) / 2)) for item in candidates
    ]
    normalized_semantic = normalize_by_max(semantic_shifted)

    scored: List[Candidate] = []
    for index, item in enumerate(candidates):
        combined = (
            item.ilike_score * WEIGHTS["ilike"]
            + normalized_fts[index] * WEIGHTS["fts"]
            + normalized_semantic[index] * WEIGHTS["semantic"]
            + compute_intent_score(item, intent_terms) * WEIGHTS["intent"]
            + compute_phrase_score(item, intent_phrases) * WEIGHTS["phrase"]
            + compute_section_type_score(item, query) * WEIGHTS["section_type"]
            + compute_content_quality_score(item) * WEIGHTS["quality"]
            + compute_recency_score(item.last_changed_at, now) * WEIGHTS["recency"]
        )
        scored.append(replace(item, score=combined))

    scored.sort(key=lambda item: item.score, reverse=True)

    record_rerank(time.perf_counter() - started)
    return scored[:max(0, top_k)]
