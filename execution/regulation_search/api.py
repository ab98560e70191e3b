"""
FastAPI Backend for Regulation Search

Provides REST endpoints for keyword/semantic search over EU regulations,
article and hierarchy browsing, and streamed (SSE) answers grounded on
selected or semantically retrieved paragraphs.

Run with: uvicorn execution.regulation_search.api:app --host 0.0.0.0 --port 8000
"""

import os
import json
import logging
from typing import Optional

from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.concurrency import run_in_threadpool
from dotenv import load_dotenv

from . import __version__
from .api_models import (
    SearchRequest,
    AskRequest,
    SemanticAskRequest,
    EmbeddingRequest,
    EmbeddingResponse,
    ErrorResponse,
    HealthResponse,
)
from .cache import TTLCache, make_cache_key
from .context_builder import ContextBuilder
from .errors import SearchError, ErrorKind, AnswerGenerationError
from .metrics import MetricsCollector
from .models import SearchDefaults, SearchParams
from .prompts import build_follow_up_query
from .rate_limit import TokenBucketRateLimiter

# Load environment variables
load_dotenv()
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Regulation Search API",
    description="Keyword and semantic search over EU regulations with grounded answers",
    version=__version__,
)

# Configure CORS: use CORS_ORIGINS env var (comma-separated) or default to localhost
_cors_origins = os.getenv("CORS_ORIGINS", "http://localhost:5173,http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in _cors_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}

SEARCH_ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}

ERROR_STATUS = {
    ErrorKind.VALIDATION_ERROR: 400,
    ErrorKind.NO_RESULTS_ERROR: 404,
    ErrorKind.NOT_FOUND: 404,
}


# =============================================================================
# Service Container - owns every long-lived collaborator
# =============================================================================

class ServiceContainer:
    """
    Constructed once per process. Services are created lazily so the app
    imports without a database or API keys; tests swap ``_store``,
    ``_embeddings`` and ``_answer_generator`` and call ``reset()`` between runs.
    """

    def __init__(self, defaults: Optional[SearchDefaults] = None):
        self.defaults = defaults or SearchDefaults.from_env()
        self.rate_limiter = TokenBucketRateLimiter.per_minute(self.defaults.rate_limit_rpm)
        self.cache = TTLCache(default_ttl=self.defaults.cache_ttl_seconds)
        self.metrics = MetricsCollector()
        self.context_builder = ContextBuilder()
        self._store = None
        self._embeddings = None
        self._answer_generator = None
        self._search = None
        self._articles = None
        self._structure = None

    def get_store(self):
        if self._store is None:
            from .regulation_store import RegulationStore
            store = RegulationStore()
            store.connect()
            self._store = store
        return self._store

    def get_embeddings(self):
        if self._embeddings is None:
            from .embeddings import get_embedding_service
            self._embeddings = get_embedding_service()
        return self._embeddings

    def get_search_service(self):
        if self._search is None:
            from .unified_search import UnifiedSearchService
            self._search = UnifiedSearchService.from_providers(
                self.get_store(), self.get_embeddings(),
            )
        return self._search

    def get_semantic_service(self):
        return self.get_search_service().semantic_service

    def get_article_service(self):
        if self._articles is None:
            from .articles import ArticleService
            self._articles = ArticleService(self.get_store())
        return self._articles

    def get_structure_service(self):
        if self._structure is None:
            from .structure import RegulationStructureService
            self._structure = RegulationStructureService(self.get_store())
        return self._structure

    def get_answer_generator(self):
        if self._answer_generator is None:
            from .answer import AnswerGenerator
            self._answer_generator = AnswerGenerator()
        return self._answer_generator

    def reset(self):
        """Drop all services and state (for testing)."""
        if self._store is not None and hasattr(self._store, "close"):
            try:
                self._store.close()
            except Exception as e:
                logger.warning(f"Error closing store during reset: {e}")
        self.__init__(self.defaults)


_container = ServiceContainer()


# =============================================================================
# Rate Limiting
# =============================================================================

async def check_rate_limit(request: Request):
    """FastAPI dependency that enforces the token bucket per API key or client host."""
    identity = request.headers.get("x-api-key") or (
        request.client.host if request.client else "anonymous"
    )
    result = _container.rate_limiter.check(identity)
    if not result.allowed:
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded. Try again later.",
            headers=result.headers(),
        )


# =============================================================================
# Helpers
# =============================================================================

def _sse_event(data: dict) -> str:
    """Format a Server-Sent Event."""
    return f"data: {json.dumps(data, ensure_ascii=False)}\n\n"


def _sse_error_response(message: str) -> StreamingResponse:
    """A stream holding a single error event (failures before streaming starts)."""
    async def _single():
        yield _sse_event({"error": message})

    return StreamingResponse(_single(), media_type="text/event-stream", headers=SSE_HEADERS)


def _error_response(error: SearchError) -> JSONResponse:
    status = ERROR_STATUS.get(error.kind, 500)
    if error.is_user_error:
        logger.info(f"{error.kind}: {error.message}")
    else:
        logger.error(f"{error.kind}: {error.message} ({error.original_error!r})")
    return JSONResponse(status_code=status, content={"data": None, "error": error.to_dict()})


def _unexpected(operation: str, e: Exception) -> SearchError:
    logger.error(f"Unexpected {operation} failure: {type(e).__name__}: {e}")
    return SearchError(f"Unexpected error during {operation}", ErrorKind.SEARCH_ERROR, e)


async def _run_search(params: SearchParams):
    operation = "search_semantic" if params.type == "semantic" and params.semantic_query else "search_keyword"
    key = make_cache_key("search", params.to_dict())

    try:
        with _container.metrics.track(operation) as tracker:
            body = _container.cache.get(key)
            if body is not None:
                tracker.set_results(body["data"]["total"], cache_hit=True)
                logger.debug(f"Search cache hit: {key[:120]}")
                return body

            service = _container.get_search_service()
            response = await run_in_threadpool(service.search, params)
            body = response.to_dict()
            _container.cache.set(key, body)
            tracker.set_results(response.total)
            return body
    except SearchError as e:
        return _error_response(e)
    except Exception as e:
        return _error_response(_unexpected("search", e))


async def _stream_answer(
    context: str,
    operation: str,
    query: Optional[str] = None,
    messages: Optional[list[dict]] = None,
    language: str = "ja",
):
    """
    SSE body: the context event, one event per token, then done.

    Any failure becomes a final error event. Leaving the generator early
    (client disconnect) cancels the token stream, which closes the upstream call.
    """
    yield _sse_event({"type": "context", "usedContext": context})

    stream = None
    try:
        with _container.metrics.track(operation) as tracker:
            generator = _container.get_answer_generator()
            stream = generator.stream(context, query=query, messages=messages, language=language)
            tokens = 0
            while True:
                token = await run_in_threadpool(stream.next_token)
                if token is None:
                    break
                tokens += 1
                yield _sse_event({"content": token})
            tracker.set_results(tokens)
        yield _sse_event({"type": "done"})
    except (AnswerGenerationError, ValueError) as e:
        logger.error(f"Answer stream failed ({operation}): {type(e).__name__}: {e}")
        yield _sse_event({"error": str(e)})
    except Exception as e:
        logger.error(f"Answer stream failed ({operation}): {type(e).__name__}: {e}")
        yield _sse_event({"error": "An error occurred"})
    finally:
        if stream is not None:
            stream.cancel()


# =============================================================================
# Endpoints
# =============================================================================

@app.get("/api/v1/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    try:
        _container.get_store()
        db_status = "connected"
    except Exception as e:
        logger.warning(f"Health check: database disconnected: {e}")
        db_status = "disconnected"

    return HealthResponse(status="ok", version=__version__, database=db_status)


@app.post(
    "/api/v1/search",
    dependencies=[Depends(check_rate_limit)],
    responses=SEARCH_ERROR_RESPONSES,
)
async def search(request: SearchRequest):
    """Keyword, range or semantic search. Returns {data, error}."""
    return await _run_search(request.to_params())


@app.get(
    "/api/v1/search",
    dependencies=[Depends(check_rate_limit)],
    responses=SEARCH_ERROR_RESPONSES,
)
async def search_by_query(
    regulation_id: Optional[str] = None,
    keyword: str = "",
    start_article: Optional[str] = Query(None, alias="startArticle"),
    end_article: Optional[str] = Query(None, alias="endArticle"),
):
    """Keyword / article-range search from query parameters."""
    params = SearchParams(
        type="keyword",
        regulation_id=regulation_id,
        keyword=keyword,
        start_article=start_article or None,
        end_article=end_article or None,
    )
    return await _run_search(params)


@app.post("/api/v1/ask", dependencies=[Depends(check_rate_limit)])
async def ask(request: AskRequest):
    """Streamed answer over paragraphs the user selected."""
    try:
        context = _container.context_builder.build_from_selected(
            [item.to_selected() for item in request.selected_contents]
        )
    except SearchError as e:
        logger.info(f"Ask rejected: {e.message}")
        return _sse_error_response(e.message)

    return StreamingResponse(
        _stream_answer(
            context,
            operation="ask",
            query=request.query,
            messages=[m.model_dump() for m in request.messages],
            language=request.language,
        ),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.post("/api/v1/ask/semantic", dependencies=[Depends(check_rate_limit)])
async def ask_semantic(request: SemanticAskRequest):
    """Streamed answer over a paragraph-level semantic search."""
    last_qa = request.last_qa
    has_previous = bool(last_qa and last_qa.question and last_qa.answer)

    semantic_query = request.query
    if has_previous:
        semantic_query = build_follow_up_query(request.query, last_qa.question, last_qa.answer)

    params = SearchParams(
        type="semantic",
        regulation_id=request.search_params.regulation_id,
        semantic_query=semantic_query,
        search_level="paragraph",
        similarity_threshold=request.search_params.similarity_threshold,
        max_contexts=request.search_params.capped_max_contexts(),
    )

    try:
        with _container.metrics.track("ask_semantic_context") as tracker:
            service = _container.get_semantic_service()
            response = await run_in_threadpool(service.search, params)
            builder = _container.context_builder
            contexts = builder.build_from_paragraphs(response.results, params.max_contexts)
            context = builder.serialize(contexts)
            tracker.set_results(len(contexts))
    except SearchError as e:
        logger.info(f"Semantic ask rejected: {e.kind}: {e.message}")
        return _sse_error_response(e.message)
    except Exception as e:
        logger.error(f"Semantic ask failed: {type(e).__name__}: {e}")
        return _sse_error_response("An error occurred")

    messages = []
    if has_previous:
        messages.append({"role": "user", "content": last_qa.question})
        messages.append({"role": "assistant", "content": last_qa.answer})
    messages.append({"role": "user", "content": request.query})

    return StreamingResponse(
        _stream_answer(
            context,
            operation="ask_semantic",
            query=request.query,
            messages=messages,
            language=request.language,
        ),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@app.get("/api/v1/articles/{article_id}")
async def get_article(article_id: str):
    """One article with paragraphs, references and its normalised search shape."""
    try:
        with _container.metrics.track("article"):
            service = _container.get_article_service()
            detail = await run_in_threadpool(service.get_article, article_id)
    except SearchError as e:
        return _error_response(e)
    except Exception as e:
        return _error_response(_unexpected("article fetch", e))
    return detail.to_dict()


@app.get("/api/v1/regulations")
async def list_regulations():
    try:
        store = _container.get_store()
        regulations = await run_in_threadpool(store.list_regulations)
    except Exception as e:
        return _error_response(_unexpected("regulation listing", e))
    return {"regulations": regulations}


@app.get("/api/v1/regulations/{regulation_id}/structure")
async def get_regulation_structure(regulation_id: str):
    """Chapter -> section -> article tree of a regulation."""
    try:
        with _container.metrics.track("structure"):
            service = _container.get_structure_service()
            return await run_in_threadpool(service.get_structure, regulation_id)
    except SearchError as e:
        return _error_response(e)
    except Exception as e:
        return _error_response(_unexpected("structure fetch", e))


@app.post("/api/v1/embedding", response_model=EmbeddingResponse, dependencies=[Depends(check_rate_limit)])
async def create_embedding(request: EmbeddingRequest):
    """Embed a query string with the configured provider."""
    try:
        embeddings = _container.get_embeddings()
        vector = await run_in_threadpool(embeddings.embed_query, request.text)
    except Exception as e:
        logger.error(f"Embedding endpoint failed: {type(e).__name__}: {e}")
        return JSONResponse(status_code=500, content={"error": "Failed to generate embedding"})
    return EmbeddingResponse(embedding=vector)


@app.get("/api/v1/metrics")
async def get_metrics():
    """Aggregated request metrics."""
    data = _container.metrics.get_metrics_dict()
    data["search_cache"] = {
        "entries": len(_container.cache),
        "hits": _container.cache.hits,
        "misses": _container.cache.misses,
    }
    return data
