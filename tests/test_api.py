"""Tests for the FastAPI backend endpoints."""

import json
import asyncio
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from tests.conftest import (
    MockEmbeddingService,
    MockRegulationStore,
    similarity_paragraph,
    similarity_row,
    ARTICLE_ID,
    REGULATION_ID,
)


# ---------------------------------------------------------------------------
# Fakes for the answer stream
# ---------------------------------------------------------------------------

def _chunk(content):
    return SimpleNamespace(choices=[SimpleNamespace(delta=SimpleNamespace(content=content))])


class FakeUpstream:
    def __init__(self, tokens, gate=None):
        self.tokens = tokens
        self.gate = gate
        self.closed = False

    def __iter__(self):
        for token in self.tokens:
            yield _chunk(token)
            if self.gate is not None:
                self.gate.wait(timeout=5)

    def close(self):
        self.closed = True


class FakeAnswerGenerator:
    """Records stream() calls and replays canned tokens."""

    def __init__(self, tokens=("Yes", ", ", "it is."), error=None, gate=None):
        self.tokens = list(tokens)
        self.error = error
        self.gate = gate
        self.calls = []
        self.streams = []
        self.upstreams = []

    def stream(self, context, query=None, messages=None, language="ja"):
        from execution.regulation_search.answer import TokenStream
        self.calls.append({"context": context, "query": query, "messages": messages, "language": language})

        def _open():
            if self.error is not None:
                raise self.error
            upstream = FakeUpstream(self.tokens, self.gate)
            self.upstreams.append(upstream)
            return upstream

        stream = TokenStream(_open).start()
        self.streams.append(stream)
        return stream


def _events(response):
    return [
        json.loads(block[len("data: "):])
        for block in response.text.split("\n\n")
        if block.startswith("data: ")
    ]


# ---------------------------------------------------------------------------
# Client fixture with the service container swapped for fakes
# ---------------------------------------------------------------------------

@pytest.fixture
def store(gdpr_keyword_rows):
    return MockRegulationStore(
        keyword_rows=gdpr_keyword_rows,
        similarity_rows=[similarity_row(6, [
            similarity_paragraph(1, 55.0, text="Paragraph at fifty-five"),
            similarity_paragraph(2, 72.0, text="Paragraph at seventy-two"),
        ])],
    )


@pytest.fixture
def api_module(store):
    from execution.regulation_search import api

    api._container.reset()
    api._container._store = store
    api._container._embeddings = MockEmbeddingService()
    api._container._answer_generator = FakeAnswerGenerator()
    yield api
    api._container.reset()


@pytest.fixture
def client(api_module):
    return TestClient(api_module.app)


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

class TestHealth:
    def test_health(self, client):
        response = client.get("/api/v1/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "version": "0.1.0", "database": "connected"}


# ---------------------------------------------------------------------------
# Search
# ---------------------------------------------------------------------------

class TestSearch:
    """POST and GET search with the {data, error} envelope."""

    def test_keyword_range(self, client):
        response = client.post("/api/v1/search", json={
            "type": "keyword",
            "regulation_id": REGULATION_ID,
            "keyword": "data protection",
            "startArticle": 5,
            "endArticle": "10",
        })

        assert response.status_code == 200
        body = response.json()
        assert body["error"] is None
        numbers = [r["metadata"]["article_number"] for r in body["data"]["results"]]
        assert numbers == ["5", "6", "7"]

    def test_semantic(self, client, store):
        response = client.post("/api/v1/search", json={
            "type": "semantic",
            "regulation_id": REGULATION_ID,
            "semanticQuery": "When is processing lawful?",
            "similarityThreshold": 0.6,
            "searchLevel": "paragraph",
        })

        assert response.status_code == 200
        result = response.json()["data"]["results"][0]
        assert result["debug_info"]["search_type"] == "semantic"
        assert store.last_call("match_articles")["search_level"] == "paragraph"

    def test_validation_error(self, client):
        response = client.post("/api/v1/search", json={
            "regulation_id": REGULATION_ID, "startArticle": "10", "endArticle": "5",
        })

        assert response.status_code == 400
        body = response.json()
        assert body["data"] is None
        assert body["error"]["type"] == "VALIDATION_ERROR"

    def test_no_results_is_404(self, client, store):
        store.similarity_rows = []
        response = client.post("/api/v1/search", json={
            "type": "semantic", "regulation_id": REGULATION_ID, "semanticQuery": "x",
        })

        assert response.status_code == 404
        assert response.json()["error"] == {
            "message": "No relevant content found", "type": "NO_RESULTS_ERROR",
        }

    def test_provider_failure_is_500(self, client, store):
        store.error = RuntimeError("connection reset")
        response = client.post("/api/v1/search", json={
            "regulation_id": REGULATION_ID, "keyword": "x",
        })

        assert response.status_code == 500
        assert response.json()["error"]["type"] == "SEARCH_ERROR"
        assert "connection reset" not in response.text

    def test_request_validation(self, client):
        response = client.post("/api/v1/search", json={
            "regulation_id": REGULATION_ID, "similarityThreshold": 2,
        })
        assert response.status_code == 422

    def test_zero_threshold_rejected(self, client, store):
        response = client.post("/api/v1/search", json={
            "type": "semantic",
            "regulation_id": REGULATION_ID,
            "semanticQuery": "When is processing lawful?",
            "similarityThreshold": 0,
        })
        assert response.status_code == 422
        assert store.last_call("match_articles") is None

        response = client.post("/api/v1/ask/semantic", json={
            "query": "x",
            "searchParams": {"regulation_id": REGULATION_ID, "similarityThreshold": 0},
        })
        assert response.status_code == 422

    def test_identical_search_served_from_cache(self, client, store):
        payload = {"regulation_id": REGULATION_ID, "keyword": "data protection"}

        first = client.post("/api/v1/search", json=payload).json()
        second = client.post("/api/v1/search", json=payload).json()

        assert first == second
        assert sum(1 for name, _ in store.calls if name == "search_articles") == 1

    def test_get_search(self, client, store):
        response = client.get("/api/v1/search", params={
            "regulation_id": REGULATION_ID,
            "keyword": "data protection",
            "startArticle": "5",
            "endArticle": "10",
        })

        assert response.status_code == 200
        call = store.last_call("search_articles")
        assert (call["start_article"], call["end_article"]) == ("5", "10")
        assert len(response.json()["data"]["results"]) == 3


# ---------------------------------------------------------------------------
# Rate limiting
# ---------------------------------------------------------------------------

class TestRateLimit:
    def test_429_with_headers(self, client, api_module):
        from execution.regulation_search.rate_limit import TokenBucketRateLimiter
        api_module._container.rate_limiter = TokenBucketRateLimiter(capacity=2, refill_per_second=0)
        payload = {"regulation_id": REGULATION_ID, "keyword": "x"}

        assert client.post("/api/v1/search", json=payload).status_code == 200
        assert client.post("/api/v1/search", json=payload).status_code == 200
        response = client.post("/api/v1/search", json=payload)

        assert response.status_code == 429
        assert response.headers["X-RateLimit-Limit"] == "2"
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_separate_api_keys(self, client, api_module):
        from execution.regulation_search.rate_limit import TokenBucketRateLimiter
        api_module._container.rate_limiter = TokenBucketRateLimiter(capacity=1, refill_per_second=0)
        payload = {"regulation_id": REGULATION_ID, "keyword": "x"}

        assert client.post("/api/v1/search", json=payload, headers={"X-API-Key": "a"}).status_code == 200
        assert client.post("/api/v1/search", json=payload, headers={"X-API-Key": "b"}).status_code == 200
        assert client.post("/api/v1/search", json=payload, headers={"X-API-Key": "a"}).status_code == 429


# ---------------------------------------------------------------------------
# Ask over selected paragraphs
# ---------------------------------------------------------------------------

class TestAsk:
    def _payload(self, **overrides):
        payload = {
            "query": "Can I ask for deletion?",
            "selectedContents": [{
                "article_number": 17,
                "regulation_name": "GDPR",
                "title": "Right to erasure",
                "regulation_id": REGULATION_ID,
                "paragraphs": [{"number": 1, "content": "The data subject shall have the right ..."}],
            }],
            "language": "en",
        }
        payload.update(overrides)
        return payload

    def test_stream_events(self, client, api_module):
        response = client.post("/api/v1/ask", json=self._payload())

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        events = _events(response)
        assert events[0] == {
            "type": "context",
            "usedContext": "Article 17 of GDPR (Paragraph 1):\nThe data subject shall have the right ...",
        }
        assert [e["content"] for e in events[1:-1]] == ["Yes", ", ", "it is."]
        assert events[-1] == {"type": "done"}

        call = api_module._container._answer_generator.calls[0]
        assert call["query"] == "Can I ask for deletion?"
        assert call["language"] == "en"

    def test_nothing_selected(self, client, api_module):
        response = client.post("/api/v1/ask", json=self._payload(selectedContents=[]))

        assert response.status_code == 200
        assert _events(response) == [{"error": "No content selected"}]
        assert api_module._container._answer_generator.calls == []

    def test_upstream_failure_becomes_error_event(self, client, api_module):
        api_module._container._answer_generator = FakeAnswerGenerator(
            error=RuntimeError("Incorrect API key provided: sk-proj-abc123"),
        )

        events = _events(client.post("/api/v1/ask", json=self._payload()))

        assert events[0]["type"] == "context"
        assert events[-1] == {"error": "Answer generation failed"}
        assert all("content" not in e for e in events)
        assert "sk-proj" not in json.dumps(events)

    def test_unexpected_failure_is_generic(self, client, api_module):
        api_module._container._answer_generator = MagicMock(
            stream=MagicMock(side_effect=RuntimeError("connection to 10.0.0.5 refused")),
        )

        events = _events(client.post("/api/v1/ask", json=self._payload()))

        assert events[-1] == {"error": "An error occurred"}
        assert "10.0.0.5" not in json.dumps(events)


# ---------------------------------------------------------------------------
# Ask over a semantic search
# ---------------------------------------------------------------------------

class TestAskSemantic:
    def test_context_from_ranked_paragraphs(self, client, api_module):
        response = client.post("/api/v1/ask/semantic", json={
            "query": "When is processing lawful?",
            "searchParams": {"regulation_id": REGULATION_ID, "similarityThreshold": 0.6, "maxContexts": 5},
            "language": "en",
        })

        events = _events(response)
        assert events[0]["usedContext"] == "Article 6 of GDPR (Paragraph 2):\nParagraph at seventy-two"
        assert events[-1] == {"type": "done"}

        call = api_module._container._answer_generator.calls[0]
        assert call["messages"] == [{"role": "user", "content": "When is processing lawful?"}]

    def test_paragraph_level_search(self, client, store):
        client.post("/api/v1/ask/semantic", json={
            "query": "When is processing lawful?",
            "searchParams": {"regulation_id": REGULATION_ID},
        })
        call = store.last_call("match_articles")
        assert call["search_level"] == "paragraph"
        assert call["match_threshold"] == 0.6

    def test_follow_up_query(self, client, api_module):
        client.post("/api/v1/ask/semantic", json={
            "query": "And for children?",
            "searchParams": {"regulation_id": REGULATION_ID},
            "lastQA": {"question": "Is consent needed?", "answer": "Yes."},
        })

        embedded = api_module._container._embeddings.queries[-1]
        assert embedded.startswith("Note: Previous conversation - Question: Is consent needed?")
        assert embedded.endswith("Current Question: And for children?")

        call = api_module._container._answer_generator.calls[0]
        assert call["query"] == "And for children?"
        assert call["messages"] == [
            {"role": "user", "content": "Is consent needed?"},
            {"role": "assistant", "content": "Yes."},
            {"role": "user", "content": "And for children?"},
        ]

    def test_no_results_single_error_event(self, client, store):
        store.similarity_rows = []
        response = client.post("/api/v1/ask/semantic", json={
            "query": "x", "searchParams": {"regulation_id": REGULATION_ID},
        })
        assert _events(response) == [{"error": "No relevant content found"}]

    def test_nothing_above_threshold(self, client):
        response = client.post("/api/v1/ask/semantic", json={
            "query": "x",
            "searchParams": {"regulation_id": REGULATION_ID, "similarityThreshold": 0.9},
        })
        assert _events(response) == [{"error": "No content above similarity threshold"}]


# ---------------------------------------------------------------------------
# Stream cancellation
# ---------------------------------------------------------------------------

class TestStreamCancellation:
    def test_closing_generator_cancels_upstream(self, api_module):
        gate = threading.Event()
        generator = FakeAnswerGenerator(tokens=["first", "second", "third"], gate=gate)
        api_module._container._answer_generator = generator

        async def _consume_then_disconnect():
            body = api_module._stream_answer("CTX", operation="ask", query="q")
            context_event = await body.__anext__()
            token_event = await body.__anext__()
            await body.aclose()
            return context_event, token_event

        context_event, token_event = asyncio.run(_consume_then_disconnect())
        gate.set()

        assert json.loads(context_event[len("data: "):]) == {"type": "context", "usedContext": "CTX"}
        assert json.loads(token_event[len("data: "):]) == {"content": "first"}
        assert generator.streams[0].cancelled
        assert generator.upstreams[0].closed

        metrics = api_module._container.metrics.get_metrics()
        assert metrics.cancelled_requests == 1
        assert metrics.failed_requests == 0
        assert metrics.errors_by_kind == {}


# ---------------------------------------------------------------------------
# Articles, regulations, structure
# ---------------------------------------------------------------------------

class TestBrowse:
    def test_invalid_article_id(self, client):
        response = client.get("/api/v1/articles/not-a-uuid")
        assert response.status_code == 400
        assert response.json()["error"]["type"] == "VALIDATION_ERROR"

    def test_article_not_found(self, client):
        response = client.get(f"/api/v1/articles/{ARTICLE_ID}")
        assert response.status_code == 404
        assert response.json()["error"]["message"] == "Article not found"

    def test_article(self, client, store):
        store.articles[ARTICLE_ID] = {
            "id": ARTICLE_ID,
            "article_number": "6",
            "title": "Lawfulness of processing",
            "regulation": {"id": REGULATION_ID, "name": "GDPR"},
            "paragraphs": [{"paragraph_number": "1", "content_full": "Processing shall be lawful."}],
            "references": [],
            "referenced_by": [],
        }

        body = client.get(f"/api/v1/articles/{ARTICLE_ID}").json()
        assert body["article"]["title"] == "Lawfulness of processing"
        assert body["result"]["paragraphs"][0]["number"] == "1"

    def test_regulations(self, client):
        body = client.get("/api/v1/regulations").json()
        assert body == {"regulations": [{"id": REGULATION_ID, "name": "GDPR"}]}

    def test_structure(self, client, store):
        store.list_chapters = MagicMock(return_value=[])
        store.list_articles = MagicMock(return_value=[
            {"id": "a-1", "article_number": "1", "title": "Subject-matter", "order_index": 1},
        ])

        body = client.get(f"/api/v1/regulations/{REGULATION_ID}/structure").json()
        assert body == {
            "chapters": [],
            "articles": [{"id": "a-1", "article_number": "1", "title": "Subject-matter"}],
        }

    def test_structure_failure(self, client, store):
        store.list_chapters = MagicMock(side_effect=RuntimeError("timeout"))
        response = client.get(f"/api/v1/regulations/{REGULATION_ID}/structure")
        assert response.status_code == 500
        assert response.json()["error"]["message"] == "Failed to load regulation structure"


# ---------------------------------------------------------------------------
# Embedding and metrics
# ---------------------------------------------------------------------------

class TestEmbeddingEndpoint:
    def test_embedding(self, client):
        response = client.post("/api/v1/embedding", json={"text": "consent"})
        assert response.status_code == 200
        assert len(response.json()["embedding"]) == 256

    def test_embedding_failure(self, client, api_module):
        from execution.regulation_search.errors import EmbeddingProviderError
        api_module._container._embeddings = MockEmbeddingService(error=EmbeddingProviderError("bad key"))

        response = client.post("/api/v1/embedding", json={"text": "consent"})
        assert response.status_code == 500
        assert response.json() == {"error": "Failed to generate embedding"}


class TestMetricsEndpoint:
    def test_metrics_after_searches(self, client):
        payload = {"regulation_id": REGULATION_ID, "keyword": "data protection"}
        client.post("/api/v1/search", json=payload)
        client.post("/api/v1/search", json=payload)

        body = client.get("/api/v1/metrics").json()
        assert body["requests"]["by_operation"] == {"search_keyword": 2}
        assert body["cache"]["hits"] == 1
        assert body["search_cache"]["entries"] == 1
        assert "uptime_seconds" in body
