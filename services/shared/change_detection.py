"""Section-diff change classification.

Compares the previous and next text of a document section by section and
labels the change. Classification is keyword based; a classifier only has to
implement ``classify`` so persistence does not depend on the heuristic.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

logger = logging.getLogger(__name__)

BREAKING_KEYWORDS = ("breaking change", "no longer supported", "sunset", "incompatible")
DEPRECATION_KEYWORDS = ("deprecated", "deprecation", "will be removed")

DEFAULT_SECTION_HEADING = "Document"
MAX_REPORTED_SECTIONS = 10


class EventType:
    DOCUMENT_ADDED = "document_added"
    UPDATED = "updated"
    DEPRECATION = "deprecation"
    BREAKING_CHANGE = "breaking_change"


class Severity:
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class DetectedChange:
    """A change event ready to be persisted."""
    event_type: str
    severity: str
    summary: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Section:
    heading: str
    body: str


class ChangeClassifier(Protocol):
    def classify(self, previous_text: str, next_text: str, title: str) -> List[DetectedChange]:
        ...


def normalize_for_diff(text: str) -> str:
    return re.sub(r"\s+", " ", text.lower()).strip()


def split_sections(text: str) -> List[Section]:
    """Split on ``## `` headings; text before the first heading is keyed ``Document``."""
    sections: List[Section] = []
    heading = DEFAULT_SECTION_HEADING
    body: List[str] = []

    def flush():
        joined = "\n".join(body).strip()
        if joined:
            sections.append(Section(heading=heading, body=joined))

    for line in text.split("\n"):
        if line.startswith("## "):
            flush()
            heading = line[3:].strip() or "Untitled"
            body = []
            continue
        body.append(line)
    flush()

    return sections


def changed_sections(previous_text: str, next_text: str) -> List[Section]:
    """Sections of ``next_text`` that are new or whose normalized body differs."""
    previous = {section.heading: normalize_for_diff(section.body) for section in split_sections(previous_text)}

    changed = []
    for section in split_sections(next_text):
        previous_body = previous.get(section.heading)
        if not previous_body or previous_body != normalize_for_diff(section.body):
            changed.append(section)
    return changed


def _contains_any(text: str, keywords: Sequence[str]) -> bool:
    return any(keyword in text for keyword in keywords)


def document_added_change(title: str) -> DetectedChange:
    return DetectedChange(
        event_type=EventType.DOCUMENT_ADDED,
        severity=Severity.LOW,
        summary=f"Documentation added for {title}",
        details={"detector": "new_document"},
    )


class SectionDiffClassifier:
    """Keyword classifier over the changed sections of a document.

    A signal fires only when its keywords appear in the changed sections and
    appear nowhere in the previous text. Breaking and deprecation signals are
    independent; ``updated`` is emitted only when neither fires.
    """

    def __init__(self,
                 breaking_keywords: Optional[Sequence[str]] = None,
                 deprecation_keywords: Optional[Sequence[str]] = None):
        self.breaking_keywords = tuple(breaking_keywords or BREAKING_KEYWORDS)
        self.deprecation_keywords = tuple(deprecation_keywords or DEPRECATION_KEYWORDS)

    def classify(self, previous_text: str, next_text: str, title: str) -> List[DetectedChange]:
        previous_lower = normalize_for_diff(previous_text)
        changed = changed_sections(previous_text, next_text)
        diff_window = normalize_for_diff("\n".join(section.body for section in changed))
        headings = [section.heading for section in changed][:MAX_REPORTED_SECTIONS]

        introduced_breaking = (
            not _contains_any(previous_lower, self.breaking_keywords)
            and _contains_any(diff_window, self.breaking_keywords)
        )
        introduced_deprecation = (
            not _contains_any(previous_lower, self.deprecation_keywords)
            and _contains_any(diff_window, self.deprecation_keywords)
        )

        events: List[DetectedChange] = []
        if introduced_breaking:
            events.append(DetectedChange(
                event_type=EventType.BREAKING_CHANGE,
                severity=Severity.CRITICAL,
                summary=f"Potential breaking change detected in {title}",
                details={
                    "detector": "section_diff_keyword",
                    "keyword_family": "breaking_or_removed",
                    "changed_sections": headings,
                    "changed_section_count": len(changed),
                },
            ))

        if introduced_deprecation:
            events.append(DetectedChange(
                event_type=EventType.DEPRECATION,
                severity=Severity.MEDIUM,
                summary=f"Deprecation language detected in {title}",
                details={
                    "detector": "section_diff_keyword",
                    "keyword_family": "deprecation",
                    "changed_sections": headings,
                    "changed_section_count": len(changed),
                },
            ))

        if not events:
            events.append(DetectedChange(
                event_type=EventType.UPDATED,
                severity=Severity.LOW,
                summary=f"Documentation updated for {title}",
                details={
                    "detector": "section_diff",
                    "changed_sections": headings,
                    "changed_section_count": len(changed),
                },
            ))

        return events
