"""
Unified Search

Single entry point for every search: picks the semantic strategy when the
request asks for it and carries a query, the keyword strategy otherwise
(keyword, article range, or both).
"""

import logging

from .models import SearchParams, SearchResponse
from .keyword_search import KeywordSearchService
from .semantic_search import SemanticSearchService

logger = logging.getLogger(__name__)


class UnifiedSearchService:
    """Stateless strategy dispatch over keyword and semantic search."""

    def __init__(
        self,
        keyword_service: KeywordSearchService,
        semantic_service: SemanticSearchService,
    ):
        self.keyword_service = keyword_service
        self.semantic_service = semantic_service

    @classmethod
    def from_providers(cls, store, embeddings) -> "UnifiedSearchService":
        """Wire both strategies against one store and embedding service."""
        return cls(
            KeywordSearchService(store),
            SemanticSearchService(store, embeddings),
        )

    def select_strategy(self, params: SearchParams):
        if params.type == "semantic" and params.semantic_query:
            logger.debug("Using semantic search")
            return self.semantic_service
        logger.debug(f"Using keyword search for type={params.type!r}")
        return self.keyword_service

    def search(self, params: SearchParams) -> SearchResponse:
        return self.select_strategy(params).search(params)


# CLI for testing
if __name__ == "__main__":
    import sys
    import json
    import argparse
    from dotenv import load_dotenv

    from .errors import SearchError
    from .embeddings import get_embedding_service
    from .regulation_store import RegulationStore

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    parser = argparse.ArgumentParser(description="Search a regulation")
    parser.add_argument("regulation_id")
    parser.add_argument("--keyword", default="")
    parser.add_argument("--semantic", dest="semantic_query")
    parser.add_argument("--start", dest="start_article")
    parser.add_argument("--end", dest="end_article")
    parser.add_argument("--threshold", type=float)
    parser.add_argument("--level", choices=["article", "paragraph"])
    args = parser.parse_args()

    store = RegulationStore()
    service = UnifiedSearchService.from_providers(store, get_embedding_service())
    params = SearchParams(
        type="semantic" if args.semantic_query else "keyword",
        regulation_id=args.regulation_id,
        keyword=args.keyword,
        semantic_query=args.semantic_query,
        start_article=args.start_article,
        end_article=args.end_article,
        similarity_threshold=args.threshold,
        search_level=args.level,
    )

    try:
        response = service.search(params)
    except SearchError as e:
        print(json.dumps({"data": None, "error": e.to_dict()}, ensure_ascii=False, indent=2))
        sys.exit(1)
    finally:
        store.close()

    for result in response.results:
        similarity = result.metadata.similarity_percentage
        score = f" ({similarity:.1f}%)" if similarity is not None else ""
        print(f"Article {result.metadata.article_number}: {result.title}{score}")
        for paragraph in result.paragraphs:
            print(f"  [{paragraph.number}] {paragraph.text()[:100]}")
