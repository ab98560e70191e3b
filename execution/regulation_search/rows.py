"""
Raw provider row variants.

Each provider primitive returns rows of one shape:
- search_articles (full-text) -> KeywordRow: elements carry ``matches`` offsets
- match_articles (vector)     -> SimilarityRow: ``similarity`` 0-1 plus
                                 per-paragraph ``similarity_percentage`` 0-100
- article fetch               -> PlainRow: neither

Parsing the article header is shared; paragraph normalisation lives in
transformer.py, one function per variant.
"""

from typing import Optional
from dataclasses import dataclass, field


def _first(value) -> dict:
    """Joined relations arrive either as a dict or as a one-element list."""
    if isinstance(value, list):
        return value[0] if value and isinstance(value[0], dict) else {}
    if isinstance(value, dict):
        return value
    return {}


@dataclass
class RawRow:
    id: str
    title: str = ""
    content: str = ""
    article_number: str = ""
    regulation_id: Optional[str] = None
    regulation_name: str = ""
    chapter_number: str = ""
    chapter_title: str = ""
    paragraphs: list[dict] = field(default_factory=list)
    debug_info: dict = field(default_factory=dict)

    @classmethod
    def _header_kwargs(cls, record: dict) -> dict:
        metadata = record.get("metadata") or {}
        regulation = _first(record.get("regulation"))
        chapter = _first(record.get("chapter"))
        return {
            "id": str(record.get("id", "")),
            "title": record.get("title") or "",
            "content": record.get("content") or record.get("content_full") or "",
            "article_number": str(
                metadata.get("article_number") or record.get("article_number") or ""
            ),
            "regulation_id": (
                metadata.get("regulation_id")
                or record.get("regulation_id")
                or regulation.get("id")
            ),
            "regulation_name": regulation.get("name") or metadata.get("regulation_name") or "",
            "chapter_number": str(chapter.get("chapter_number") or ""),
            "chapter_title": chapter.get("title") or "",
            "paragraphs": list(record.get("paragraphs") or []),
            "debug_info": dict(record.get("debug_info") or {}),
        }

    @classmethod
    def from_record(cls, record: dict) -> "RawRow":
        if not isinstance(record, dict):
            raise TypeError(f"Expected a mapping row, got {type(record).__name__}")
        return cls(**cls._header_kwargs(record))


@dataclass
class KeywordRow(RawRow):
    """Row from the full-text primitive."""


@dataclass
class SimilarityRow(RawRow):
    """Row from the vector-similarity primitive."""
    similarity: Optional[float] = None
    similarity_percentage: Optional[float] = None

    @classmethod
    def from_record(cls, record: dict) -> "SimilarityRow":
        if not isinstance(record, dict):
            raise TypeError(f"Expected a mapping row, got {type(record).__name__}")
        kwargs = cls._header_kwargs(record)
        similarity = record.get("similarity")
        percentage = record.get("similarity_percentage")
        return cls(
            **kwargs,
            similarity=float(similarity) if similarity is not None else None,
            similarity_percentage=float(percentage) if percentage is not None else None,
        )


@dataclass
class PlainRow(RawRow):
    """Row from a plain article fetch."""


ROW_VARIANTS = {
    "keyword": KeywordRow,
    "semantic": SimilarityRow,
    "article": PlainRow,
}


def parse_row(record: dict, search_type: str) -> RawRow:
    """Parse a provider record into the row variant for ``search_type``."""
    row_cls = ROW_VARIANTS.get(search_type)
    if row_cls is None:
        raise ValueError(f"Unknown search type: {search_type}")
    return row_cls.from_record(record)
