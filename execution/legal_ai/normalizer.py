"""
Source normalization

Maps public and private search hits onto the single RetrievedSource shape
that is sent to generation workflows and returned to the UI.
"""

import math
from dataclasses import dataclass
from typing import Optional

from .corpus import CorpusChunk, CorpusScope

SNIPPET_MAX_CHARS = 400
ELLIPSIS = "..."


@dataclass
class RetrievedSource:
    """A citable source for one answer. Built per query, never stored."""
    id: str
    similarity: float
    scope: CorpusScope
    snippet: str
    title: Optional[str] = None
    court: Optional[str] = None
    url: Optional[str] = None
    doc_type: Optional[str] = None

    def to_dict(self) -> dict:
        """Wire format expected by the workflows."""
        return {
            "id": self.id,
            "title": self.title,
            "docType": self.doc_type,
            "court": self.court,
            "url": self.url,
            "similarity": self.similarity,
            "scope": self.scope.value,
            "snippet": self.snippet,
        }


def make_snippet(text: Optional[str], max_chars: int = SNIPPET_MAX_CHARS) -> str:
    """First max_chars characters of text, with an ellipsis if anything was cut."""
    text = text or ""
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + ELLIPSIS


def clamp_similarity(value) -> float:
    try:
        value = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(value):
        return 0.0
    return round(min(1.0, max(0.0, value)), 4)


def normalize_source(chunk: CorpusChunk, similarity: float, scope) -> RetrievedSource:
    scope = CorpusScope(scope)
    is_public = scope == CorpusScope.PUBLIC
    return RetrievedSource(
        id=str(chunk.doc_id),
        title=chunk.title,
        # Private documents carry no public citation metadata
        court=chunk.court if is_public else None,
        url=chunk.url if is_public else None,
        doc_type=chunk.doc_type if is_public else None,
        similarity=clamp_similarity(similarity),
        scope=scope,
        snippet=make_snippet(chunk.text),
    )
