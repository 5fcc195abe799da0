"""Document chunking pipeline.

Splits sanitized document text into heading-scoped, size-bounded chunks.
Sections start at ``## heading`` lines; oversized sections are packed by
paragraph and any paragraph longer than the limit is hard-split.
"""

import logging
import math
import re
from typing import List, Dict, Any, Optional
from dataclasses import dataclass

from .extractor import normalize_whitespace

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHUNK_CHARS = 1800

_CODE_FENCE_LANG_RE = re.compile(r"```([a-z0-9_+-]+)\n", re.IGNORECASE)
_PARAGRAPH_SPLIT_RE = re.compile(r"\n\n+")


@dataclass
class StructuredSection:
    """A heading plus its body, as produced by ``split_structured_sections``."""
    text: str
    heading_path: Optional[str] = None
    code_lang: Optional[str] = None


@dataclass
class DocumentChunk:
    """Represents a chunk of a document."""
    text: str
    heading_path: Optional[str] = None
    code_lang: Optional[str] = None

    @property
    def token_count(self) -> int:
        return estimate_token_count(self.text)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "text": self.text,
            "heading_path": self.heading_path,
            "code_lang": self.code_lang,
            "token_count": self.token_count,
        }


def estimate_token_count(text: str) -> int:
    """Rough token estimate: the larger of word count and chars / 4."""
    words = len(text.split())
    return max(words, math.ceil(len(text) / 4))


def split_structured_sections(text: str) -> List[StructuredSection]:
    """Split text on ``## `` heading lines.

    Each section keeps its heading line as the first line of its text, the
    heading as ``heading_path`` and the language of its first fenced code
    block as ``code_lang``.
    """
    sections: List[StructuredSection] = []
    heading_path: Optional[str] = None
    body: List[str] = []

    def flush():
        normalized = normalize_whitespace("\n".join(body))
        if not normalized:
            return
        lang_match = _CODE_FENCE_LANG_RE.search(normalized)
        sections.append(StructuredSection(
            text=normalized,
            heading_path=heading_path,
            code_lang=lang_match.group(1).lower() if lang_match else None,
        ))

    for line in text.split("\n"):
        if line.startswith("## "):
            if body:
                flush()
            heading_path = line[3:].strip() or None
            body = [line]
            continue
        body.append(line)

    if body:
        flush()

    return sections


class DocumentChunker:
    """Chunks documents into size-bounded, heading-scoped pieces."""

    def __init__(self, max_chars: int = DEFAULT_MAX_CHUNK_CHARS):
        """Initialize chunker.

        Args:
            max_chars: Upper bound on the length of every emitted chunk
        """
        if max_chars <= 0:
            raise ValueError("max_chars must be positive")
        self.max_chars = max_chars

    def chunk(self, text: str) -> List[DocumentChunk]:
        """Chunk a document. Returns an empty list for empty text."""
        if not text or not text.strip():
            return []

        chunks: List[DocumentChunk] = []
        for section in split_structured_sections(text):
            chunks.extend(self._chunk_section(section))
        return chunks

    def _chunk_section(self, section: StructuredSection) -> List[DocumentChunk]:
        def make(piece: str) -> DocumentChunk:
            return DocumentChunk(text=piece, heading_path=section.heading_path, code_lang=section.code_lang)

        if len(section.text) <= self.max_chars:
            return [make(section.text)]

        paragraphs = [p.strip() for p in _PARAGRAPH_SPLIT_RE.split(section.text) if p.strip()]
        chunks: List[DocumentChunk] = []
        current = ""

        for paragraph in paragraphs:
            if len(paragraph) > self.max_chars:
                if current:
                    chunks.append(make(current))
                    current = ""
                for start in range(0, len(paragraph), self.max_chars):
                    piece = paragraph[start:start + self.max_chars]
                    if piece.strip():
                        chunks.append(make(piece))
                continue

            candidate = f"{current}\n\n{paragraph}" if current else paragraph
            if len(candidate) > self.max_chars:
                chunks.append(make(current))
                current = paragraph
            else:
                current = candidate

        if current.strip():
            chunks.append(make(current.strip()))

        return chunks


def chunk_structured_text(text: str, max_chars: int = DEFAULT_MAX_CHUNK_CHARS) -> List[DocumentChunk]:
    """Convenience wrapper around ``DocumentChunker``."""
    return DocumentChunker(max_chars=max_chars).chunk(text)
