"""
Article fetch: one article with its paragraphs and cross-references.
"""

import uuid
import logging
from dataclasses import dataclass, field

from .errors import SearchError, ErrorKind
from .models import SearchResult, Reference
from .transformer import ResultTransformer

logger = logging.getLogger(__name__)


@dataclass
class ArticleDetail:
    article: dict
    result: SearchResult
    references: list[Reference] = field(default_factory=list)
    referenced_by: list[Reference] = field(default_factory=list)

    def to_dict(self) -> dict:
        article = {
            k: v for k, v in self.article.items()
            if k not in ("paragraphs", "references", "referenced_by")
        }
        return {
            "article": article,
            "result": self.result.to_dict(),
            "references": [r.to_dict() for r in self.references],
            "referenced_by": [r.to_dict() for r in self.referenced_by],
        }


def validate_article_id(article_id: str) -> str:
    """Return the canonical UUID string, or raise VALIDATION_ERROR."""
    try:
        return str(uuid.UUID(str(article_id)))
    except (ValueError, AttributeError, TypeError):
        raise SearchError(f"Invalid article id: {article_id}", ErrorKind.VALIDATION_ERROR)


class ArticleService:
    def __init__(self, store, transformer: ResultTransformer = None):
        self.store = store
        self.transformer = transformer or ResultTransformer()

    def get_article(self, article_id: str) -> ArticleDetail:
        """
        Fetch an article by id.

        Raises:
            SearchError: VALIDATION_ERROR for a malformed id, NOT_FOUND when
                absent, SEARCH_ERROR when the store fails
        """
        article_id = validate_article_id(article_id)

        try:
            record = self.store.get_article(article_id)
        except Exception as e:
            logger.error(f"Article fetch failed for {article_id}: {type(e).__name__}: {e}")
            raise SearchError("Failed to fetch article", ErrorKind.SEARCH_ERROR, e) from e

        if record is None:
            logger.info(f"Article {article_id} not found")
            raise SearchError("Article not found", ErrorKind.NOT_FOUND)

        result = self.transformer.transform([record], search_type="article")[0]
        return ArticleDetail(
            article=record,
            result=result,
            references=[Reference.from_record(r) for r in record.get("references") or []],
            referenced_by=[Reference.from_record(r) for r in record.get("referenced_by") or []],
        )
