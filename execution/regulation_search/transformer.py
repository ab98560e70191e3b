"""
Result Transformer

Normalises raw provider rows (keyword matches, vector similarity, plain
article fetch) into one SearchResult shape. Pure: no I/O, no shared state.

Paragraphs are always returned in ascending paragraph-number order:
numeric numbers compare as integers ("2" < "10"), anything else compares
naturally ("3a" < "3b" < "10"), with the raw string as final tiebreak so the
order is total and does not depend on row arrival order.
"""

import re
import logging
from typing import Optional

from .errors import SearchError, ErrorKind
from .models import (
    SearchMatch,
    SearchResult,
    ParagraphElement,
    SearchResultMetadata,
    SearchResultParagraph,
)
from .rows import RawRow, KeywordRow, SimilarityRow, PlainRow, parse_row

logger = logging.getLogger(__name__)

_DIGIT_RUNS = re.compile(r"(\d+)")


def paragraph_sort_key(number: str) -> tuple:
    """Sort key for paragraph numbers (natural order, total)."""
    text = (number or "").strip()
    parts = []
    for chunk in _DIGIT_RUNS.split(text):
        if not chunk:
            continue
        if chunk.isdigit():
            parts.append((0, int(chunk), ""))
        else:
            parts.append((1, 0, chunk.casefold()))
    return (tuple(parts), text)


def sort_paragraphs(paragraphs: list[SearchResultParagraph]) -> list[SearchResultParagraph]:
    """Stable ascending sort by paragraph number. Idempotent."""
    return sorted(paragraphs, key=lambda p: paragraph_sort_key(p.number))


def _parse_matches(raw_matches) -> list[SearchMatch]:
    matches = []
    for m in raw_matches or []:
        matches.append(SearchMatch(
            start=int(m["start"]),
            end=int(m["end"]),
            term=m.get("term") or "",
        ))
    return matches


def _as_percentage(value) -> Optional[float]:
    return float(value) if value is not None else None


def _paragraph_number(raw: dict) -> str:
    number = raw.get("number") or raw.get("paragraph_number") or ""
    return str(number)


def _raw_elements(raw: dict) -> list[dict]:
    """Element dicts of a paragraph.

    Search primitives return ``elements``; the article fetch returns a
    ``chapeau`` plus ``subparagraphs`` which are folded into the same shape.
    """
    if raw.get("elements"):
        return list(raw["elements"])

    elements = []
    if raw.get("chapeau"):
        elements.append({"type": "chapeau", "content": raw["chapeau"], "order_index": 0})
    for sub in raw.get("subparagraphs") or []:
        elements.append({
            "type": sub.get("type") or "subparagraph",
            "content": sub.get("content") or "",
            "letter": sub.get("letter") or sub.get("subparagraph_id"),
            "order_index": sub.get("order_index") or 0,
            "similarity_percentage": sub.get("similarity_percentage"),
        })
    return elements


def _element(raw: dict, keep_similarity: bool) -> ParagraphElement:
    return ParagraphElement(
        type=raw.get("type") or "subparagraph",
        content=raw.get("content") or "",
        letter=raw.get("letter") or raw.get("element_id"),
        order_index=raw.get("order_index") or 0,
        matches=_parse_matches(raw.get("matches")),
        similarity_percentage=(
            _as_percentage(raw.get("similarity_percentage")) if keep_similarity else None
        ),
    )


class ResultTransformer:
    """Turns provider rows into SearchResults, one normaliser per row variant."""

    def transform(
        self,
        raw_rows: list[dict],
        search_type: str = "semantic",
        threshold: Optional[float] = None,
    ) -> list[SearchResult]:
        """
        Normalise raw provider rows.

        Args:
            raw_rows: Records as returned by the provider
            search_type: "keyword", "semantic" or "article"
            threshold: Similarity threshold (0-1) used to derive
                ``is_above_threshold`` when the provider did not supply it

        Returns:
            List of SearchResult in provider order

        Raises:
            SearchError: TRANSFORM_ERROR on any unexpected row shape
        """
        try:
            rows = [parse_row(record, search_type) for record in raw_rows or []]
            results = [self._normalize(row, search_type, threshold) for row in rows]
        except SearchError:
            raise
        except Exception as e:
            logger.error(f"Failed to transform {search_type} rows: {type(e).__name__}: {e}")
            raise SearchError(
                "Error transforming search results",
                ErrorKind.TRANSFORM_ERROR,
                e,
            ) from e

        logger.debug(
            f"Transformed {len(results)} {search_type} rows "
            f"({sum(len(r.paragraphs) for r in results)} paragraphs)"
        )
        return results

    def _normalize(self, row: RawRow, search_type: str, threshold: Optional[float]) -> SearchResult:
        if isinstance(row, KeywordRow):
            paragraphs = self.normalize_keyword_paragraphs(row)
        elif isinstance(row, SimilarityRow):
            paragraphs = self.normalize_similarity_paragraphs(row, threshold)
        elif isinstance(row, PlainRow):
            paragraphs = self.normalize_plain_paragraphs(row, threshold)
        else:
            raise TypeError(f"Unsupported row variant: {type(row).__name__}")

        return SearchResult(
            id=row.id,
            title=row.title,
            content=row.content,
            metadata=SearchResultMetadata(
                article_number=row.article_number,
                regulation_id=row.regulation_id,
                regulation_name=row.regulation_name,
                chapter_number=row.chapter_number,
                chapter_title=row.chapter_title,
                similarity_percentage=self._result_similarity(row),
                search_type=row.debug_info.get("search_type") or search_type,
            ),
            paragraphs=sort_paragraphs(paragraphs),
            debug_info=dict(row.debug_info),
        )

    @staticmethod
    def _result_similarity(row: RawRow) -> Optional[float]:
        if not isinstance(row, SimilarityRow):
            return None
        if row.similarity_percentage is not None:
            return row.similarity_percentage
        if row.similarity is not None:
            return round(row.similarity * 100, 2)
        return None

    def normalize_keyword_paragraphs(self, row: KeywordRow) -> list[SearchResultParagraph]:
        """Keep every match span; similarity is never computed for keyword rows."""
        paragraphs = []
        for raw in row.paragraphs:
            paragraphs.append(SearchResultParagraph(
                number=_paragraph_number(raw),
                content=raw.get("content") or raw.get("content_full") or "",
                elements=[_element(e, keep_similarity=False) for e in _raw_elements(raw)],
                matches=_parse_matches(raw.get("matches")),
            ))
        return paragraphs

    def normalize_similarity_paragraphs(
        self,
        row: SimilarityRow,
        threshold: Optional[float],
    ) -> list[SearchResultParagraph]:
        """Copy similarity percentages and derive ``is_above_threshold`` when absent."""
        effective = threshold if threshold is not None else row.debug_info.get("threshold")
        return [self._similarity_paragraph(raw, effective) for raw in row.paragraphs]

    def normalize_plain_paragraphs(
        self,
        row: PlainRow,
        threshold: Optional[float],
    ) -> list[SearchResultParagraph]:
        """Plain fetches carry no scores, but any that are present are kept."""
        return [self._similarity_paragraph(raw, threshold) for raw in row.paragraphs]

    @staticmethod
    def _similarity_paragraph(raw: dict, threshold: Optional[float]) -> SearchResultParagraph:
        percentage = _as_percentage(raw.get("similarity_percentage"))
        above = raw.get("is_above_threshold")
        if above is None:
            above = (
                percentage is not None
                and threshold is not None
                and percentage >= threshold * 100
            )
        return SearchResultParagraph(
            number=_paragraph_number(raw),
            content=raw.get("content") or raw.get("content_full") or "",
            elements=[_element(e, keep_similarity=True) for e in _raw_elements(raw)],
            matches=_parse_matches(raw.get("matches")),
            similarity_percentage=percentage,
            is_above_threshold=bool(above),
        )
