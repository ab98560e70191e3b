"""
Regulation Search - keyword and semantic search over EU regulations

This module provides:
- Keyword / article-range and embedding-based search over structured legal text
- Normalisation of heterogeneous provider rows into one SearchResult shape
- Ranked, bounded context assembly for grounded answer generation
- A FastAPI backend (api.py) streaming answers over Server-Sent Events
"""

__version__ = "0.1.0"

from .errors import SearchError, ErrorKind
from .models import SearchParams, SearchResult, SearchResponse, Context
from .transformer import ResultTransformer
from .keyword_search import KeywordSearchService
from .semantic_search import SemanticSearchService
from .unified_search import UnifiedSearchService
from .context_builder import ContextBuilder

__all__ = [
    "SearchError",
    "ErrorKind",
    "SearchParams",
    "SearchResult",
    "SearchResponse",
    "Context",
    "ResultTransformer",
    "KeywordSearchService",
    "SemanticSearchService",
    "UnifiedSearchService",
    "ContextBuilder",
]
