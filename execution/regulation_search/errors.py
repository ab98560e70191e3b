"""
Error types for regulation search.

Every failure that crosses a service boundary is a SearchError carrying a
``kind`` from ErrorKind. The HTTP layer maps kinds to status codes and the
UI branches on the message text, so messages here are part of the contract.
"""

from typing import Optional


class ErrorKind:
    """Error kinds surfaced by the search and context services."""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    SEARCH_ERROR = "SEARCH_ERROR"
    SEMANTIC_SEARCH_ERROR = "SEMANTIC_SEARCH_ERROR"
    EMBEDDING_ERROR = "EMBEDDING_ERROR"
    NO_RESULTS_ERROR = "NO_RESULTS_ERROR"
    TRANSFORM_ERROR = "TRANSFORM_ERROR"
    NOT_FOUND = "NOT_FOUND"


# Expected, user-correctable conditions. These are never logged as faults.
USER_ERROR_KINDS = frozenset({
    ErrorKind.VALIDATION_ERROR,
    ErrorKind.NO_RESULTS_ERROR,
    ErrorKind.NOT_FOUND,
})

# Messages the UI matches on
NO_RELEVANT_CONTENT = "No relevant content found"
NO_CONTENT_ABOVE_THRESHOLD = "No content above similarity threshold"
NO_CONTENT_SELECTED = "No content selected"
GENERATED_CONTEXT_EMPTY = "Generated context is empty"


class SearchError(Exception):
    """Raised when a search, transform or context step fails."""

    def __init__(
        self,
        message: str,
        kind: str,
        original_error: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.original_error = original_error

    @property
    def is_user_error(self) -> bool:
        """True for validation / no-results / not-found conditions."""
        return self.kind in USER_ERROR_KINDS

    def to_dict(self) -> dict:
        return {"message": self.message, "type": self.kind}

    def __repr__(self) -> str:
        return f"SearchError(kind={self.kind!r}, message={self.message!r})"


class ContextError(SearchError):
    """Base class for context assembly failures the user can fix."""

    def __init__(self, message: str):
        super().__init__(message, ErrorKind.VALIDATION_ERROR)


class NoContentSelectedError(ContextError):
    """Nothing was handed to the context builder."""

    def __init__(self):
        super().__init__(NO_CONTENT_SELECTED)


class EmptyContextError(ContextError):
    """Input existed but nothing survived filtering."""

    def __init__(self):
        super().__init__(GENERATED_CONTEXT_EMPTY)


class EmbeddingProviderError(Exception):
    """Raised by embedding services when the provider call fails."""


class AnswerGenerationError(Exception):
    """Raised when the upstream completion stream fails."""
