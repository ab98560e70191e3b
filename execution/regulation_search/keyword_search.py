"""
Keyword Search

Full-text search over article, paragraph and subparagraph text scoped to one
regulation and an optional article-number range. All keyword tokens must
match (AND mode). An empty keyword is a range-only listing.
"""

import re
import logging
from typing import Optional

from .errors import SearchError, ErrorKind
from .models import SearchParams, SearchResponse, SearchResult, DEFAULT_PAGE_SIZE
from .transformer import ResultTransformer

logger = logging.getLogger(__name__)

SEARCH_MODE = "AND"

# LIKE/SIMILAR TO metacharacters understood by the search_articles function
_PATTERN_METACHARS = re.compile(r"([%_\[\]])")


def escape_keyword(keyword: Optional[str]) -> Optional[str]:
    """Escape provider pattern metacharacters. Empty input becomes None."""
    if not keyword:
        return None
    return _PATTERN_METACHARS.sub(r"\\\1", keyword)


def parse_article_range(
    start_article: Optional[str],
    end_article: Optional[str],
) -> Optional[tuple[int, int]]:
    """
    Validate an inclusive article-number range.

    Returns:
        (start, end) when both bounds are given, otherwise None

    Raises:
        SearchError: VALIDATION_ERROR for non-integer, < 1 or inverted bounds
    """
    if not start_article or not end_article:
        return None
    try:
        start = int(str(start_article).strip())
        end = int(str(end_article).strip())
    except ValueError:
        raise SearchError(
            "Article numbers must be integers of 1 or greater",
            ErrorKind.VALIDATION_ERROR,
        )
    if start < 1 or end < 1:
        raise SearchError(
            "Article numbers must be integers of 1 or greater",
            ErrorKind.VALIDATION_ERROR,
        )
    if start > end:
        raise SearchError(
            "Start article must be less than or equal to end article",
            ErrorKind.VALIDATION_ERROR,
        )
    return start, end


def _article_in_range(result: SearchResult, bounds: tuple[int, int]) -> bool:
    try:
        number = int(result.metadata.article_number)
    except (TypeError, ValueError):
        return False
    return bounds[0] <= number <= bounds[1]


class KeywordSearchService:
    """
    Keyword / article-range search.

    Usage:
        service = KeywordSearchService(store)
        response = service.search(SearchParams(regulation_id="...", keyword="consent"))
    """

    def __init__(self, store, transformer: Optional[ResultTransformer] = None):
        """
        Args:
            store: Provider exposing ``search_articles`` (RegulationStore)
            transformer: Row normaliser, a fresh ResultTransformer by default
        """
        self.store = store
        self.transformer = transformer or ResultTransformer()

    def search(self, params: SearchParams) -> SearchResponse:
        bounds = self.validate_params(params)

        rows = self._execute_search(params)
        results = self.transformer.transform(rows, search_type="keyword")

        if bounds is not None:
            in_range = [r for r in results if _article_in_range(r, bounds)]
            if len(in_range) != len(results):
                logger.debug(
                    f"Dropped {len(results) - len(in_range)} rows outside "
                    f"articles {bounds[0]}-{bounds[1]}"
                )
            results = in_range

        for result in results:
            result.debug_info = {**result.debug_info, "search_type": "keyword"}

        logger.info(
            f"Keyword search '{params.keyword or ''}' in {params.regulation_id}: "
            f"{len(results)} articles"
        )
        return SearchResponse(
            results=results,
            total=len(results),
            page=params.page or 1,
            page_size=params.page_size or DEFAULT_PAGE_SIZE,
        )

    def validate_params(self, params: SearchParams) -> Optional[tuple[int, int]]:
        if not params.regulation_id:
            raise SearchError("Regulation ID is required", ErrorKind.VALIDATION_ERROR)
        return parse_article_range(params.start_article, params.end_article)

    def _execute_search(self, params: SearchParams) -> list[dict]:
        try:
            rows = self.store.search_articles(
                search_query=escape_keyword(params.keyword),
                search_mode=SEARCH_MODE,
                regulation_id=params.regulation_id,
                start_article=params.start_article,
                end_article=params.end_article,
            )
        except Exception as e:
            logger.error(f"Keyword search failed: {type(e).__name__}: {e}")
            raise SearchError(
                "Error occurred during search",
                ErrorKind.SEARCH_ERROR,
                e,
            ) from e
        return rows or []
