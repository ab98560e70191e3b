"""
Shared fixtures and test utilities for Regulation Search tests.

Provides a deterministic embedding service, an in-memory regulation store
returning canned provider rows, and builders for raw rows and SearchResults,
so that all tests run without API keys, databases, or network access.
"""

import sys
import hashlib
from pathlib import Path

import pytest

# ---------------------------------------------------------------------------
# Path setup - ensure the execution package is importable
# ---------------------------------------------------------------------------
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

REGULATION_ID = "7f1c9a52-4a3e-4c1b-9a57-2d3c1e0b6a11"
REGULATION_NAME = "GDPR"
ARTICLE_ID = "0b5d3c2e-8f7a-4e61-b9d4-5a6c7e8f9a10"


# ---------------------------------------------------------------------------
# Raw row builders (shapes returned by search_articles / match_articles)
# ---------------------------------------------------------------------------

def keyword_paragraph(number, text, keyword=None):
    """Paragraph with one chapeau element; ``keyword`` hits get offset spans."""
    matches = []
    if keyword:
        start = text.find(keyword)
        while start != -1:
            matches.append({"start": start, "end": start + len(keyword), "term": keyword})
            start = text.find(keyword, start + 1)
    return {
        "number": str(number),
        "content": text,
        "elements": [{"type": "chapeau", "content": text, "order_index": 0, "matches": matches}],
    }


def keyword_row(article_number, paragraphs, title=None, regulation_id=REGULATION_ID):
    return {
        "id": f"kw-{article_number}",
        "title": title or f"Article {article_number}",
        "content": " ".join(p["content"] for p in paragraphs),
        "metadata": {
            "article_number": str(article_number),
            "regulation_id": regulation_id,
            "regulation_name": REGULATION_NAME,
        },
        "regulation": {"id": regulation_id, "name": REGULATION_NAME},
        "chapter": {"chapter_number": "II", "title": "Principles"},
        "paragraphs": paragraphs,
    }


def similarity_paragraph(number, percentage, text=None, above=None):
    paragraph = {
        "number": str(number),
        "content": text or f"Paragraph {number} text",
        "elements": [{
            "type": "chapeau",
            "content": text or f"Paragraph {number} text",
            "order_index": 0,
            "similarity_percentage": percentage,
        }],
        "similarity_percentage": percentage,
    }
    if above is not None:
        paragraph["is_above_threshold"] = above
    return paragraph


def similarity_row(article_number, paragraphs, similarity=0.7, title=None):
    return {
        "id": f"sem-{article_number}",
        "title": title or f"Article {article_number}",
        "content": "",
        "metadata": {
            "article_number": str(article_number),
            "regulation_id": REGULATION_ID,
            "regulation_name": REGULATION_NAME,
        },
        "regulation": [{"id": REGULATION_ID, "name": REGULATION_NAME}],
        "similarity": similarity,
        "paragraphs": paragraphs,
    }


def make_result(article_number, paragraphs, debug_info, title=None):
    """Build a SearchResult directly (for context builder tests)."""
    from execution.regulation_search.models import SearchResult, SearchResultMetadata
    return SearchResult(
        id=f"res-{article_number}",
        title=title or f"Article {article_number}",
        content="",
        metadata=SearchResultMetadata(
            article_number=str(article_number),
            regulation_id=REGULATION_ID,
            regulation_name=REGULATION_NAME,
            search_type=debug_info.get("search_type", "semantic"),
        ),
        paragraphs=paragraphs,
        debug_info=debug_info,
    )


def make_paragraph(number, content, similarity=None, matches=None):
    from execution.regulation_search.models import (
        ParagraphElement, SearchMatch, SearchResultParagraph,
    )
    spans = [SearchMatch(start=s, end=e, term=t) for s, e, t in matches or []]
    return SearchResultParagraph(
        number=str(number),
        content=content,
        elements=[ParagraphElement(type="chapeau", content=content, matches=spans)],
        similarity_percentage=similarity,
    )


# ---------------------------------------------------------------------------
# Mock embedding service
# ---------------------------------------------------------------------------

class MockEmbeddingService:
    """Deterministic mock embedding service -- never calls external APIs."""

    def __init__(self, dimensions=256, error=None):
        self._dimensions = dimensions
        self._error = error
        self._call_count = 0
        self.queries = []

    def embed_query(self, query):
        self._call_count += 1
        self.queries.append(query)
        if self._error is not None:
            raise self._error
        return self._deterministic_embedding(query)

    def _deterministic_embedding(self, text):
        h = hashlib.sha256(text.encode()).hexdigest()
        seed = int(h[:8], 16)
        return [((seed + i) % 1000) / 1000.0 for i in range(self._dimensions)]

    @property
    def dimensions(self):
        return self._dimensions


@pytest.fixture
def mock_embedding_service():
    return MockEmbeddingService(dimensions=256)


# ---------------------------------------------------------------------------
# Mock regulation store (no database needed)
# ---------------------------------------------------------------------------

class MockRegulationStore:
    """In-memory stand-in for RegulationStore returning canned rows."""

    def __init__(self, keyword_rows=None, similarity_rows=None):
        self.keyword_rows = list(keyword_rows or [])
        self.similarity_rows = list(similarity_rows or [])
        self.articles = {}
        self.error = None
        self.calls = []

    def _record(self, name, **kwargs):
        self.calls.append((name, kwargs))
        if self.error is not None:
            raise self.error

    def last_call(self, name):
        for call_name, kwargs in reversed(self.calls):
            if call_name == name:
                return kwargs
        return None

    def search_articles(self, search_query, search_mode="AND", regulation_id=None,
                        start_article=None, end_article=None):
        self._record("search_articles", search_query=search_query, search_mode=search_mode,
                     regulation_id=regulation_id, start_article=start_article,
                     end_article=end_article)
        return list(self.keyword_rows)

    def match_articles(self, query_embedding, match_threshold, match_count,
                       regulation_filters, search_level="article",
                       start_article=None, end_article=None):
        self._record("match_articles", query_embedding=query_embedding,
                     match_threshold=match_threshold, match_count=match_count,
                     regulation_filters=regulation_filters, search_level=search_level,
                     start_article=start_article, end_article=end_article)
        return list(self.similarity_rows)

    def get_article(self, article_id):
        self._record("get_article", article_id=article_id)
        return self.articles.get(article_id)

    def list_regulations(self):
        self._record("list_regulations")
        return [{"id": REGULATION_ID, "name": REGULATION_NAME}]

    def close(self):
        pass


@pytest.fixture
def mock_store():
    return MockRegulationStore()


@pytest.fixture
def gdpr_keyword_rows():
    """Articles 5-7 mentioning 'data protection', plus an out-of-range article 12."""
    return [
        keyword_row(5, [
            keyword_paragraph(1, "Personal data shall be processed lawfully.", "data protection"),
            keyword_paragraph(2, "The controller is responsible for data protection compliance.",
                              "data protection"),
        ]),
        keyword_row(6, [
            keyword_paragraph(10, "Member States may maintain data protection rules.", "data protection"),
            keyword_paragraph(2, "Processing shall be lawful only if consent is given.", "data protection"),
        ]),
        keyword_row(7, [
            keyword_paragraph(1, "data protection by design and data protection by default.",
                              "data protection"),
        ]),
        keyword_row(12, [
            keyword_paragraph(1, "Transparent information on data protection.", "data protection"),
        ]),
    ]
