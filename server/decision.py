"""Answer decision engine.

Turns reranked candidates into an answer plus a decision envelope describing
how far the answer can be trusted. Business outcomes (stale, conflicting,
unsafe or missing evidence) are returned as data; nothing here raises for
them.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from indexer.reranker import Candidate
from observability.metrics import record_answer_decision
from pipelines.security import detect_prompt_injection_signals
from services.shared.models import ensure_utc

logger = logging.getLogger(__name__)

BASE_CONFIDENCE = 0.92
MAX_AGE_PENALTY = 0.35
AGE_PENALTY_DIVISOR = 10000
CONFLICT_PENALTY = 0.35
STATUS_PENALTY = 0.25
DEFAULT_STALE_THRESHOLD_MINUTES = 24 * 60
DEFAULT_CONFLICT_MARGIN = 0.15

INSUFFICIENT_ANSWER = "I could not find sufficient matching documentation in the selected sources."
NO_CITATIONS_ANSWER = "No citable evidence is available for this question."
UNSAFE_ANSWER = (
    "Potential prompt-injection instructions were detected in retrieved content. "
    "Manual review is required before acting on this guidance."
)
STALE_ANSWER = "Sources are stale beyond policy threshold; sync sources before using this guidance."
POLICY_BLOCKED_ANSWER = "Tenant source policy does not permit any of the requested sources."

WARNING_INSUFFICIENT = "insufficient_sources"
WARNING_INJECTION = "prompt_injection_signals_detected"
WARNING_STALE = "stale_sources"
WARNING_CONFLICT = "conflict_detected"
WARNING_POLICY_BLOCKED = "policy_blocked"


class DecisionStatus(str, Enum):
    GROUNDED = "grounded"
    INSUFFICIENT_SOURCES = "insufficient_sources"
    STALE_SOURCES = "stale_sources"
    CONFLICT_DETECTED = "conflict_detected"
    UNSAFE_CONTENT = "unsafe_content"
    POLICY_BLOCKED = "policy_blocked"


# status -> (uncertainties, policy flags, recommended next steps)
_DECISION_GUIDANCE = {
    DecisionStatus.INSUFFICIENT_SOURCES: (
        ["insufficient_evidence"],
        ["abstained"],
        [
            "Broaden source filters or remove strict version constraints.",
            "Trigger a source sync if documentation may be stale.",
        ],
    ),
    DecisionStatus.STALE_SOURCES: (
        ["stale_evidence"],
        ["stale_source_block"],
        [
            "Sync affected sources and retry the request.",
            "Temporarily scope to fresher sources if available.",
        ],
    ),
    DecisionStatus.CONFLICT_DETECTED: (
        ["conflicting_sources"],
        ["manual_review_recommended"],
        [
            "Review cited sources directly before merging code changes.",
            "Pin version constraints to reduce ambiguity.",
        ],
    ),
    DecisionStatus.UNSAFE_CONTENT: (
        ["untrusted_source_content"],
        ["prompt_injection_block"],
        [
            "Inspect cited source pages directly before using any instructions.",
            "Run source sync and retry with stricter source/version filters.",
        ],
    ),
    DecisionStatus.POLICY_BLOCKED: (
        ["source_access_denied"],
        ["tenant_policy_block"],
        [
            "Request access to the needed sources from a tenant administrator.",
            "Retry with sources permitted by the tenant policy.",
        ],
    ),
    DecisionStatus.GROUNDED: (
        [],
        [],
        [
            "Validate implementation in a test environment.",
            "Keep source version constraints pinned in automation.",
        ],
    ),
}


@dataclass
class DecisionEnvelope:
    status: DecisionStatus
    confidence: float
    uncertainties: List[str] = field(default_factory=list)
    policy_flags: List[str] = field(default_factory=list)
    recommended_next_steps: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "confidence": self.confidence,
            "uncertainties": list(self.uncertainties),
            "policy_flags": list(self.policy_flags),
            "actionability": {"recommended_next_steps": list(self.recommended_next_steps)},
        }


@dataclass
class Citation:
    title: str
    url: str
    source: str
    version_tag: Optional[str]
    last_changed_at: datetime

    @classmethod
    def from_candidate(cls, candidate: Candidate) -> 'Citation':
        return cls(
            title=candidate.title,
            url=candidate.url,
            source=candidate.source,
            version_tag=candidate.version_tag,
            last_changed_at=ensure_utc(candidate.last_changed_at),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "url": self.url,
            "source": self.source,
            "version_tag": self.version_tag,
            "last_changed_at": self.last_changed_at.isoformat(),
        }


@dataclass
class AnswerResult:
    answer: str
    citations: List[Citation]
    generated_at: datetime
    max_source_age_minutes: int
    warnings: List[str]
    decision: DecisionEnvelope

    @property
    def status(self) -> DecisionStatus:
        return self.decision.status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "answer": self.answer,
            "citations": [citation.to_dict() for citation in self.citations],
            "freshness": {
                "generated_at": self.generated_at.isoformat(),
                "max_source_age_minutes": self.max_source_age_minutes,
            },
            "warnings": list(self.warnings),
            "decision": self.decision.to_dict(),
        }


def compute_confidence(status: DecisionStatus, max_age_minutes: float, has_conflict: bool) -> float:
    age_penalty = min(max_age_minutes / AGE_PENALTY_DIVISOR, MAX_AGE_PENALTY)
    conflict_penalty = CONFLICT_PENALTY if has_conflict else 0.0
    status_penalty = 0.0 if status == DecisionStatus.GROUNDED else STATUS_PENALTY
    confidence = BASE_CONFIDENCE - age_penalty - conflict_penalty - status_penalty
    return max(0.0, min(1.0, confidence))


def build_decision(status: DecisionStatus, max_age_minutes: float, has_conflict: bool) -> DecisionEnvelope:
    uncertainties, flags, steps = _DECISION_GUIDANCE[status]
    return DecisionEnvelope(
        status=status,
        confidence=compute_confidence(status, max_age_minutes, has_conflict),
        uncertainties=list(uncertainties),
        policy_flags=list(flags),
        recommended_next_steps=list(steps),
    )


def age_minutes(last_changed_at: datetime, now: datetime) -> int:
    return max(0, round((now - ensure_utc(last_changed_at)).total_seconds() / 60))


def has_source_conflict(results: Sequence[Candidate], margin: float = DEFAULT_CONFLICT_MARGIN) -> bool:
    """Near-equal top two scores across more than one source."""
    if len(results) < 2 or len({item.source for item in results}) < 2:
        return False
    return abs(results[0].score - results[1].score) <= margin


def _result(answer: str, citations: List[Citation], now: datetime, max_age: int,
            warnings: List[str], status: DecisionStatus, has_conflict: bool = False) -> AnswerResult:
    decision = build_decision(status, max_age, has_conflict)
    record_answer_decision(status.value)
    logger.debug(f"Answer decision {status.value} confidence={decision.confidence:.2f}")
    return AnswerResult(
        answer=answer,
        citations=citations,
        generated_at=now,
        max_source_age_minutes=max_age,
        warnings=warnings,
        decision=decision,
    )


def policy_blocked_answer(now: Optional[datetime] = None) -> AnswerResult:
    now = ensure_utc(now) if now else datetime.now(timezone.utc)
    return _result(POLICY_BLOCKED_ANSWER, [], now, 0, [WARNING_POLICY_BLOCKED],
                   DecisionStatus.POLICY_BLOCKED)


def decide_answer(candidates: Sequence[Candidate],
                  stale_threshold_minutes: float = DEFAULT_STALE_THRESHOLD_MINUTES,
                  conflict_margin: float = DEFAULT_CONFLICT_MARGIN,
                  now: Optional[datetime] = None,
                  style: str = "concise") -> AnswerResult:
    """Classify reranked candidates and compose the answer.

    Args:
        candidates: Reranked results, best first, already cut to the citation limit
        stale_threshold_minutes: Oldest acceptable evidence age
        conflict_margin: Maximum score gap between the top two results of
            different sources that counts as a conflict
        now: Reference time; defaults to the current UTC time
        style: ``concise`` returns the top text, ``detailed`` prefixes its source

    Returns:
        The answer, citations, freshness, warnings and decision envelope
    """
    now = ensure_utc(now) if now else datetime.now(timezone.utc)

    if not candidates:
        return _result(INSUFFICIENT_ANSWER, [], now, 0, [WARNING_INSUFFICIENT],
                       DecisionStatus.INSUFFICIENT_SOURCES)

    risky = [item for item in candidates if detect_prompt_injection_signals(item.text)]
    safe = [item for item in candidates if not detect_prompt_injection_signals(item.text)]
    has_injection = bool(risky)

    if has_injection and not safe:
        citations = [Citation.from_candidate(item) for item in candidates]
        return _result(UNSAFE_ANSWER, citations, now, 0, [WARNING_INJECTION],
                       DecisionStatus.UNSAFE_CONTENT)

    effective = safe or list(candidates)
    max_age = max(age_minutes(item.last_changed_at, now) for item in effective)
    citations = [Citation.from_candidate(item) for item in effective]

    if not citations:
        return _result(NO_CITATIONS_ANSWER, [], now, max_age, [WARNING_INSUFFICIENT],
                       DecisionStatus.INSUFFICIENT_SOURCES)

    has_conflict = has_source_conflict(effective, conflict_margin)

    if max_age > stale_threshold_minutes:
        warnings = [WARNING_STALE]
        if has_injection:
            warnings.append(WARNING_INJECTION)
        return _result(STALE_ANSWER, citations, now, max_age, warnings,
                       DecisionStatus.STALE_SOURCES, has_conflict)

    top = effective[0]
    if style == "detailed":
        answer = "\n".join([
            f"Primary guidance from {top.source}:",
            top.text,
            "",
            "This response is grounded in indexed source content.",
        ])
    else:
        answer = top.text

    warnings = []
    if has_conflict:
        warnings.append(WARNING_CONFLICT)
    if has_injection:
        warnings.append(WARNING_INJECTION)

    status = DecisionStatus.CONFLICT_DETECTED if has_conflict else DecisionStatus.GROUNDED
    return _result(answer, citations, now, max_age, warnings, status, has_conflict)
