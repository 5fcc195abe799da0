"""Prompt-injection screening for ingested documentation text.

Short lines that read like instructions aimed at an LLM are redacted before
chunking. Long prose lines are left alone even when a detector matches.
"""

import re
import logging
from dataclasses import dataclass, field
from typing import List, Tuple, Pattern

from .extractor import normalize_whitespace

logger = logging.getLogger(__name__)

# Lines longer than this are treated as prose, not injected commands
MAX_REDACTED_LINE_CHARS = 300

# Evaluated in order; ids are reported in first-seen order
PROMPT_INJECTION_PATTERNS: List[Tuple[str, Pattern]] = [
    (
        "override_instructions",
        re.compile(
            r"\b(ignore|disregard|override|bypass)\b.{0,50}"
            r"\b(instruction|system|developer|prompt|policy|guardrail|previous)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "reveal_sensitive",
        re.compile(
            r"\b(reveal|exfiltrate|leak|print|expose)\b.{0,50}"
            r"\b(secret|token|api key|credential|system prompt|hidden prompt)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "do_not_follow_policy",
        re.compile(
            r"\b(do not|don't)\b.{0,40}\b(follow|obey)\b.{0,40}"
            r"\b(instruction|policy|guardrail|system|developer)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "tool_abuse",
        re.compile(
            r"\b(call|run|execute)\b.{0,30}\b(tool|function)\b.{0,60}"
            r"\b(delete|transfer|override|bypass)\b",
            re.IGNORECASE,
        ),
    ),
    (
        "prompt_tag_payload",
        re.compile(r"<\s*(system|assistant|developer)\s*>|BEGIN\s+(SYSTEM|PROMPT)", re.IGNORECASE),
    ),
]


@dataclass
class SanitizedText:
    """Result of line-level redaction."""
    text: str
    removed_lines: int = 0
    findings: List[str] = field(default_factory=list)


def detect_prompt_injection_signals(value: str) -> List[str]:
    """Return the ids of every detector that matches ``value``."""
    return [signal_id for signal_id, pattern in PROMPT_INJECTION_PATTERNS if pattern.search(value)]


def sanitize_prompt_injection_lines(value: str, max_line_chars: int = MAX_REDACTED_LINE_CHARS) -> SanitizedText:
    """Remove short lines that match any injection detector.

    Args:
        value: Extracted document text
        max_line_chars: Matching lines longer than this (after trimming) are kept

    Returns:
        SanitizedText with the normalized remaining text, the count of removed
        lines and the matched detector ids
    """
    kept: List[str] = []
    findings: List[str] = []
    removed = 0

    for line in value.split("\n"):
        signals = detect_prompt_injection_signals(line)
        if signals and len(line.strip()) <= max_line_chars:
            removed += 1
            for signal in signals:
                if signal not in findings:
                    findings.append(signal)
            continue
        kept.append(line)

    if removed:
        logger.debug(f"Redacted {removed} suspicious line(s): {findings}")

    return SanitizedText(
        text=normalize_whitespace("\n".join(kept)),
        removed_lines=removed,
        findings=findings,
    )
