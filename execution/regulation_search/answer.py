"""
Answer Generation

Streams an answer from an OpenAI-compatible chat completion API, grounded on
a serialised context string.

The upstream stream is read on a producer thread and handed to consumers
through a queue (TokenStream). Consumers pull tokens in arrival order;
``cancel()`` stops the producer and closes the upstream HTTP response, after
which no further tokens are returned.
"""

import os
import queue
import logging
import threading
from typing import Callable, Iterable, Iterator, Optional

from .errors import AnswerGenerationError
from .language_config import LanguageConfig, DEFAULT_LANGUAGE
from .prompts import build_system_message

logger = logging.getLogger(__name__)

# Provider detail stays in the log and the exception chain
ANSWER_FAILED_MESSAGE = "Answer generation failed"


class _Failure:
    def __init__(self, error: BaseException):
        self.error = error


_END = object()


def _token_of(chunk) -> Optional[str]:
    """Text delta of one streamed completion chunk."""
    choices = getattr(chunk, "choices", None)
    if not choices:
        return None
    delta = getattr(choices[0], "delta", None)
    return getattr(delta, "content", None) if delta is not None else None


class TokenStream:
    """
    Cancellable producer/consumer stream of answer tokens.

    Usage:
        stream = TokenStream(lambda: client.chat.completions.create(..., stream=True))
        stream.start()
        for token in stream:
            ...
        # or, from another thread / on client disconnect:
        stream.cancel()
    """

    def __init__(self, open_upstream: Callable[[], Iterable]):
        self._open_upstream = open_upstream
        self._queue: queue.Queue = queue.Queue()
        self._cancelled = threading.Event()
        self._lock = threading.Lock()
        self._upstream = None
        self._upstream_closed = False
        self._thread: Optional[threading.Thread] = None
        self._finished = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def start(self) -> "TokenStream":
        with self._lock:
            if self._thread is None and not self._cancelled.is_set():
                self._thread = threading.Thread(
                    target=self._produce, name="token-stream", daemon=True,
                )
                self._thread.start()
        return self

    def _produce(self) -> None:
        try:
            upstream = self._open_upstream()
            with self._lock:
                self._upstream = upstream
            if self._cancelled.is_set():
                return
            for chunk in upstream:
                if self._cancelled.is_set():
                    break
                token = _token_of(chunk)
                if token:
                    self._queue.put(token)
        except Exception as e:
            if self._cancelled.is_set():
                logger.debug(f"Upstream stream ended after cancel: {type(e).__name__}")
            else:
                logger.error(f"Answer stream failed: {type(e).__name__}: {e}")
                self._queue.put(_Failure(e))
        finally:
            self._close_upstream()
            self._queue.put(_END)

    def _close_upstream(self) -> None:
        with self._lock:
            upstream = self._upstream
            if upstream is None or self._upstream_closed:
                return
            self._upstream_closed = True
        close = getattr(upstream, "close", None)
        if close is None:
            return
        try:
            close()
        except Exception as e:
            logger.debug(f"Closing upstream stream raised {type(e).__name__}: {e}")

    def next_token(self, timeout: Optional[float] = None) -> Optional[str]:
        """
        Block until the next token arrives.

        Returns:
            The token, or None once the stream is complete or cancelled

        Raises:
            AnswerGenerationError: the upstream call failed
            queue.Empty: ``timeout`` elapsed with nothing produced
        """
        if self._finished or self._cancelled.is_set():
            self._finished = True
            return None
        self.start()

        item = self._queue.get(timeout=timeout)
        if item is _END or self._cancelled.is_set():
            self._finished = True
            return None
        if isinstance(item, _Failure):
            self._finished = True
            raise AnswerGenerationError(ANSWER_FAILED_MESSAGE) from item.error
        return item

    def cancel(self) -> None:
        """Stop producing and close the upstream response. Idempotent."""
        if not self._cancelled.is_set():
            logger.debug("Cancelling answer stream")
        self._cancelled.set()
        self._finished = True
        self._close_upstream()

    def __iter__(self) -> Iterator[str]:
        while True:
            token = self.next_token()
            if token is None:
                return
            yield token


class AnswerGenerator:
    """
    Streams grounded answers in Japanese or English.

    Usage:
        generator = AnswerGenerator()
        stream = generator.stream(context, query="Is consent required?", language="en")
        answer = "".join(stream)
    """

    def __init__(self, client=None):
        """
        Args:
            client: OpenAI-compatible client. Created lazily from OPENAI_API_KEY
                and LLM_BASE_URL when not given.
        """
        self._client = client

    def _get_client(self):
        if self._client is None:
            from openai import OpenAI
            self._client = OpenAI(
                api_key=os.getenv("OPENAI_API_KEY"),
                base_url=os.getenv("LLM_BASE_URL") or None,
                timeout=120.0,
            )
        return self._client

    @staticmethod
    def build_messages(
        context: str,
        query: Optional[str] = None,
        messages: Optional[list[dict]] = None,
        language: str = DEFAULT_LANGUAGE,
    ) -> list[dict]:
        """
        Compose the chat messages: system prompt with context and question,
        then the conversation turns. A query that is not already the last
        user turn is appended as one.
        """
        turns = [dict(m) for m in messages or [] if m.get("content")]
        if query and not (turns and turns[-1].get("role") == "user" and turns[-1]["content"] == query):
            turns.append({"role": "user", "content": query})
        if not turns:
            raise ValueError("A query or at least one message is required")

        question = query or next(
            (m["content"] for m in reversed(turns) if m.get("role") == "user"),
            turns[-1]["content"],
        )
        system = {"role": "system", "content": build_system_message(context, question, language)}
        return [system, *turns]

    def stream(
        self,
        context: str,
        query: Optional[str] = None,
        messages: Optional[list[dict]] = None,
        language: str = DEFAULT_LANGUAGE,
    ) -> TokenStream:
        """Start streaming an answer. Upstream failures surface while iterating."""
        config = LanguageConfig.for_language(language)
        chat = self.build_messages(context, query=query, messages=messages, language=config.language)
        logger.info(
            f"Generating answer ({config.language}, {config.llm_model}): "
            f"{len(chat) - 1} turns, {len(context)} context chars"
        )

        def _open():
            return self._get_client().chat.completions.create(
                model=config.llm_model,
                messages=chat,
                temperature=config.temperature,
                max_tokens=config.max_tokens,
                stream=True,
            )

        return TokenStream(_open).start()
