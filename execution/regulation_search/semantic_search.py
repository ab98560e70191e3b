"""
Semantic Search

Embeds the query, runs the vector-similarity primitive, normalises the rows
and keeps only articles with at least one paragraph above the threshold.

Two empty outcomes are kept apart because the UI branches on the message:
- the provider returned nothing: "No relevant content found"
- rows came back but none qualified: "No content above similarity threshold"
"""

import logging
from typing import Optional

from .errors import (
    SearchError,
    ErrorKind,
    NO_RELEVANT_CONTENT,
    NO_CONTENT_ABOVE_THRESHOLD,
)
from .models import (
    SearchParams,
    SearchResponse,
    SearchResult,
    DEFAULT_PAGE_SIZE,
    DEFAULT_SEARCH_LEVEL,
    DEFAULT_SIMILARITY_THRESHOLD,
)
from .transformer import ResultTransformer

logger = logging.getLogger(__name__)


def filter_above_threshold(results: list[SearchResult]) -> list[SearchResult]:
    """Drop results with no paragraph flagged ``is_above_threshold``."""
    kept = []
    for result in results:
        if any(p.is_above_threshold for p in result.paragraphs):
            kept.append(result)
        else:
            logger.debug(
                f"Excluded article {result.metadata.article_number} "
                f"({result.id}): no paragraph above threshold"
            )
    return kept


class SemanticSearchService:
    """
    Embedding-based search over one regulation.

    Usage:
        service = SemanticSearchService(store, embeddings)
        response = service.search(SearchParams(
            type="semantic",
            regulation_id="...",
            semantic_query="When is consent required?",
            search_level="paragraph",
        ))
    """

    def __init__(self, store, embeddings, transformer: Optional[ResultTransformer] = None):
        """
        Args:
            store: Provider exposing ``match_articles`` (RegulationStore)
            embeddings: Embedding service exposing ``embed_query``
            transformer: Row normaliser, a fresh ResultTransformer by default
        """
        self.store = store
        self.embeddings = embeddings
        self.transformer = transformer or ResultTransformer()

    def search(self, params: SearchParams) -> SearchResponse:
        self.validate_params(params)

        # Unset or zero falls back to the default
        threshold = params.similarity_threshold or DEFAULT_SIMILARITY_THRESHOLD
        search_level = params.search_level or DEFAULT_SEARCH_LEVEL

        embedding = self._get_embedding(params.semantic_query)
        rows = self._execute_search(params, embedding, threshold, search_level)

        if not rows:
            logger.info(f"Semantic search in {params.regulation_id}: no rows")
            raise SearchError(NO_RELEVANT_CONTENT, ErrorKind.NO_RESULTS_ERROR)

        results = filter_above_threshold(
            self.transformer.transform(rows, search_type="semantic", threshold=threshold)
        )
        if not results:
            logger.info(
                f"Semantic search in {params.regulation_id}: {len(rows)} rows, "
                f"none above {threshold:.2f}"
            )
            raise SearchError(NO_CONTENT_ABOVE_THRESHOLD, ErrorKind.NO_RESULTS_ERROR)

        for result in results:
            result.debug_info = {
                **result.debug_info,
                "search_type": "semantic",
                "search_level": search_level,
                "threshold": threshold,
            }
            result.metadata.search_type = "semantic"

        logger.info(
            f"Semantic search in {params.regulation_id} "
            f"(level={search_level}, threshold={threshold:.2f}): "
            f"{len(results)}/{len(rows)} articles kept"
        )
        return SearchResponse(
            results=results,
            total=len(results),
            page=params.page or 1,
            page_size=params.page_size or DEFAULT_PAGE_SIZE,
        )

    def validate_params(self, params: SearchParams) -> None:
        if not params.regulation_id:
            raise SearchError("Regulation ID is required", ErrorKind.VALIDATION_ERROR)
        if not (params.semantic_query or "").strip():
            raise SearchError("Search query is required", ErrorKind.VALIDATION_ERROR)

    def _get_embedding(self, text: str) -> list[float]:
        try:
            return self.embeddings.embed_query(text)
        except Exception as e:
            logger.error(f"Embedding generation failed: {type(e).__name__}: {e}")
            raise SearchError(
                "Failed to generate embedding",
                ErrorKind.EMBEDDING_ERROR,
                e,
            ) from e

    def _execute_search(
        self,
        params: SearchParams,
        embedding: list[float],
        threshold: float,
        search_level: str,
    ) -> list[dict]:
        try:
            return self.store.match_articles(
                query_embedding=embedding,
                match_threshold=threshold,
                match_count=params.page_size or DEFAULT_PAGE_SIZE,
                regulation_filters=[params.regulation_id],
                search_level=search_level,
                start_article=params.start_article or None,
                end_article=params.end_article or None,
            ) or []
        except Exception as e:
            logger.error(f"Semantic search failed: {type(e).__name__}: {e}")
            raise SearchError(
                "Error occurred during semantic search",
                ErrorKind.SEMANTIC_SEARCH_ERROR,
                e,
            ) from e
