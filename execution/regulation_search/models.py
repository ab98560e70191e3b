"""
Domain models for regulation search.

SearchResult and its parts are transient: built per search call from raw
provider rows, serialised into the response, then discarded.
"""

import os
from typing import Optional
from dataclasses import dataclass, field


SEARCH_TYPES = ("keyword", "semantic", "article", "combined")
SEARCH_LEVELS = ("article", "paragraph")

DEFAULT_SIMILARITY_THRESHOLD = 0.6
DEFAULT_PAGE_SIZE = 10
DEFAULT_SEARCH_LEVEL = "article"

# Request-level cap on contexts for answer generation
MAX_CONTEXTS_LIMIT = 30
DEFAULT_MAX_CONTEXTS = 10


@dataclass
class SearchParams:
    """Query contract shared by all search services."""
    type: str = "keyword"
    regulation_id: Optional[str] = None
    keyword: Optional[str] = None
    semantic_query: Optional[str] = None
    start_article: Optional[str] = None
    end_article: Optional[str] = None
    similarity_threshold: Optional[float] = None
    search_level: Optional[str] = None
    max_contexts: Optional[int] = None
    page: int = 1
    page_size: Optional[int] = None

    # Wire names used by the frontend
    _WIRE_NAMES = {
        "semanticQuery": "semantic_query",
        "startArticle": "start_article",
        "endArticle": "end_article",
        "similarityThreshold": "similarity_threshold",
        "searchLevel": "search_level",
        "maxContexts": "max_contexts",
        "pageSize": "page_size",
    }

    @classmethod
    def from_dict(cls, data: dict) -> "SearchParams":
        """Build params from a request payload (camelCase or snake_case keys)."""
        kwargs = {}
        for key, value in (data or {}).items():
            name = cls._WIRE_NAMES.get(key, key)
            if name in cls.__dataclass_fields__ and not name.startswith("_"):
                kwargs[name] = value
        return cls(**kwargs)

    def to_dict(self) -> dict:
        """Serialise with wire (camelCase) names."""
        reverse = {v: k for k, v in self._WIRE_NAMES.items()}
        return {
            reverse.get(name, name): getattr(self, name)
            for name in self.__dataclass_fields__
            if not name.startswith("_")
        }


@dataclass
class SearchMatch:
    """Character offset span of a keyword hit."""
    start: int
    end: int
    term: str = ""

    def to_dict(self) -> dict:
        return {"start": self.start, "end": self.end, "term": self.term}


@dataclass
class ParagraphElement:
    """Chapeau or lettered subparagraph piece of a paragraph."""
    type: str
    content: str
    letter: Optional[str] = None
    order_index: int = 0
    matches: list[SearchMatch] = field(default_factory=list)
    similarity_percentage: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "content": self.content,
            "letter": self.letter,
            "order_index": self.order_index,
            "matches": [m.to_dict() for m in self.matches],
            "similarity_percentage": self.similarity_percentage,
        }


@dataclass
class SearchResultParagraph:
    """A paragraph of a matched article with its match or similarity annotation."""
    number: str
    content: str = ""
    elements: list[ParagraphElement] = field(default_factory=list)
    matches: list[SearchMatch] = field(default_factory=list)
    similarity_percentage: Optional[float] = None
    is_above_threshold: Optional[bool] = None

    def has_matches(self) -> bool:
        """True if the paragraph or any of its elements carries a keyword hit."""
        return bool(self.matches) or any(e.matches for e in self.elements)

    def text(self) -> str:
        """Element contents joined by newlines, falling back to the paragraph body."""
        if self.elements:
            return "\n".join(e.content for e in self.elements)
        return self.content

    def to_dict(self) -> dict:
        return {
            "number": self.number,
            "content": self.content,
            "elements": [e.to_dict() for e in self.elements],
            "matches": [m.to_dict() for m in self.matches],
            "similarity_percentage": self.similarity_percentage,
            "is_above_threshold": self.is_above_threshold,
        }


@dataclass
class SearchResultMetadata:
    article_number: str = ""
    regulation_id: Optional[str] = None
    regulation_name: str = ""
    chapter_number: str = ""
    chapter_title: str = ""
    similarity_percentage: Optional[float] = None
    search_type: str = "semantic"

    def to_dict(self) -> dict:
        return {
            "article_number": self.article_number,
            "regulation_id": self.regulation_id,
            "regulation_name": self.regulation_name,
            "chapter_number": self.chapter_number,
            "chapter_title": self.chapter_title,
            "similarity_percentage": self.similarity_percentage,
            "search_type": self.search_type,
        }


@dataclass
class SearchResult:
    """One article hit, normalised from any provider row shape."""
    id: str
    title: str
    content: str
    metadata: SearchResultMetadata
    paragraphs: list[SearchResultParagraph] = field(default_factory=list)
    debug_info: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "title": self.title,
            "content": self.content,
            "metadata": self.metadata.to_dict(),
            "paragraphs": [p.to_dict() for p in self.paragraphs],
            "debug_info": dict(self.debug_info),
        }


@dataclass
class SearchResponse:
    results: list[SearchResult]
    total: int
    page: int = 1
    page_size: int = DEFAULT_PAGE_SIZE

    def to_dict(self) -> dict:
        return {
            "data": {
                "results": [r.to_dict() for r in self.results],
                "total": self.total,
                "page": self.page,
                "pageSize": self.page_size,
            },
            "error": None,
        }


@dataclass
class ContextMetadata:
    regulation_id: str
    regulation_name: str
    article_number: str
    title: str
    paragraph_number: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "regulation_id": self.regulation_id,
            "regulation_name": self.regulation_name,
            "article_number": self.article_number,
            "title": self.title,
        }
        if self.paragraph_number:
            data["paragraph_number"] = self.paragraph_number
        return data


@dataclass
class Context:
    """A ranked excerpt plus provenance, consumed by answer generation."""
    content: str
    metadata: ContextMetadata

    def to_dict(self) -> dict:
        return {"content": self.content, "metadata": self.metadata.to_dict()}


@dataclass
class SelectedParagraph:
    number: str
    content: str


@dataclass
class SelectedContent:
    """Paragraphs the user picked from search results for an answer."""
    article_number: str = ""
    regulation_name: str = ""
    title: str = ""
    regulation_id: str = ""
    paragraphs: list[SelectedParagraph] = field(default_factory=list)


# =========================================================================
# Regulation hierarchy (read-only)
# =========================================================================

@dataclass(frozen=True)
class ReferencePoint:
    regulation_id: Optional[str] = None
    article_number: Optional[str] = None
    paragraph_number: Optional[str] = None
    subparagraph_letter: Optional[str] = None


@dataclass(frozen=True)
class Reference:
    """Directed cross-reference between two legal units."""
    type: str  # "internal" | "external"
    level: str  # "article" | "paragraph" | "point"
    source: ReferencePoint
    target: ReferencePoint
    target_regulation: Optional[str] = None
    context: Optional[str] = None

    @classmethod
    def from_record(cls, record: dict) -> "Reference":
        ref_type = record.get("reference_type") or "internal"
        if ref_type not in ("internal", "external"):
            ref_type = "external" if record.get("target_regulation") else "internal"
        level = record.get("target_type") or "article"
        if level not in ("article", "paragraph", "point"):
            level = "article"
        return cls(
            type=ref_type,
            level=level,
            source=ReferencePoint(
                article_number=_str_or_none(record.get("source_article")),
                paragraph_number=_str_or_none(record.get("source_paragraph")),
                subparagraph_letter=_str_or_none(record.get("source_subparagraph")),
            ),
            target=ReferencePoint(
                regulation_id=_str_or_none(record.get("target_regulation")),
                article_number=_str_or_none(record.get("target_article")),
                paragraph_number=_str_or_none(record.get("target_paragraph")),
                subparagraph_letter=_str_or_none(
                    record.get("target_subparagraph") or record.get("target_point")
                ),
            ),
            target_regulation=_str_or_none(record.get("target_regulation")),
            context=record.get("context"),
        )

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "level": self.level,
            "source": vars(self.source).copy(),
            "target": vars(self.target).copy(),
            "target_regulation": self.target_regulation,
            "context": self.context,
        }


def _str_or_none(value) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


@dataclass
class SearchDefaults:
    """Process-wide search settings, overridable from the environment."""
    similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD
    page_size: int = DEFAULT_PAGE_SIZE
    search_level: str = DEFAULT_SEARCH_LEVEL
    max_contexts: int = DEFAULT_MAX_CONTEXTS
    cache_ttl_seconds: float = 300.0
    rate_limit_rpm: int = 60

    @classmethod
    def from_env(cls) -> "SearchDefaults":
        return cls(
            cache_ttl_seconds=float(os.getenv("SEARCH_CACHE_TTL", "300")),
            rate_limit_rpm=int(os.getenv("RATE_LIMIT_RPM", "60")),
        )
