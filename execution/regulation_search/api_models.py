"""
Pydantic models for the Regulation Search FastAPI backend.

Request fields keep the frontend's camelCase names as aliases; snake_case
names are accepted too.
"""

from typing import Literal, Optional, Union
from pydantic import BaseModel, ConfigDict, Field

from .models import (
    SearchParams,
    SelectedContent,
    SelectedParagraph,
    MAX_CONTEXTS_LIMIT,
    DEFAULT_MAX_CONTEXTS,
)


def _article_bound(value) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


class SearchRequest(BaseModel):
    """Request body for the search endpoint."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["keyword", "semantic", "article", "combined"] = "keyword"
    regulation_id: Optional[str] = None
    keyword: Optional[str] = None
    semantic_query: Optional[str] = Field(None, alias="semanticQuery", max_length=4000)
    start_article: Optional[Union[str, int]] = Field(None, alias="startArticle")
    end_article: Optional[Union[str, int]] = Field(None, alias="endArticle")
    similarity_threshold: Optional[float] = Field(None, alias="similarityThreshold", gt=0, le=1)
    search_level: Optional[Literal["article", "paragraph"]] = Field(None, alias="searchLevel")
    max_contexts: Optional[int] = Field(None, alias="maxContexts", ge=1)
    page: int = Field(default=1, ge=1)
    page_size: Optional[int] = Field(None, alias="pageSize", ge=1, le=100)

    def to_params(self) -> SearchParams:
        max_contexts = (
            min(self.max_contexts, MAX_CONTEXTS_LIMIT) if self.max_contexts else None
        )
        return SearchParams(
            type=self.type,
            regulation_id=self.regulation_id,
            keyword=self.keyword,
            semantic_query=self.semantic_query,
            start_article=_article_bound(self.start_article),
            end_article=_article_bound(self.end_article),
            similarity_threshold=self.similarity_threshold,
            search_level=self.search_level,
            max_contexts=max_contexts,
            page=self.page,
            page_size=self.page_size,
        )


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class SelectedParagraphModel(BaseModel):
    number: Union[str, int] = ""
    content: str = ""


class SelectedContentModel(BaseModel):
    """One article's worth of paragraphs picked in the UI."""
    article_number: Union[str, int] = ""
    regulation_name: str = ""
    title: str = ""
    regulation_id: str = ""
    paragraphs: list[SelectedParagraphModel] = []

    def to_selected(self) -> SelectedContent:
        return SelectedContent(
            article_number=str(self.article_number),
            regulation_name=self.regulation_name,
            title=self.title,
            regulation_id=self.regulation_id,
            paragraphs=[
                SelectedParagraph(number=str(p.number), content=p.content)
                for p in self.paragraphs
            ],
        )


class AskRequest(BaseModel):
    """Request body for answering over user-selected paragraphs."""
    model_config = ConfigDict(populate_by_name=True)

    query: Optional[str] = Field(None, max_length=4000)
    messages: list[ChatMessage] = []
    selected_contents: list[SelectedContentModel] = Field(
        default_factory=list, alias="selectedContents",
    )
    language: str = "ja"


class LastQA(BaseModel):
    question: str = ""
    answer: str = ""


class SemanticAskParams(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    regulation_id: Optional[str] = None
    similarity_threshold: Optional[float] = Field(None, alias="similarityThreshold", gt=0, le=1)
    max_contexts: Optional[int] = Field(None, alias="maxContexts", ge=1)

    def capped_max_contexts(self) -> int:
        return min(self.max_contexts or DEFAULT_MAX_CONTEXTS, MAX_CONTEXTS_LIMIT)


class SemanticAskRequest(BaseModel):
    """Request body for answering over a semantic search."""
    model_config = ConfigDict(populate_by_name=True)

    query: str = Field(..., min_length=1, max_length=4000)
    search_params: SemanticAskParams = Field(
        default_factory=SemanticAskParams, alias="searchParams",
    )
    language: str = "ja"
    last_qa: Optional[LastQA] = Field(None, alias="lastQA")


class EmbeddingRequest(BaseModel):
    text: str = Field(..., min_length=1)


class EmbeddingResponse(BaseModel):
    embedding: list[float]


class ErrorBody(BaseModel):
    message: str
    type: str


class ErrorResponse(BaseModel):
    """Envelope returned when a search fails."""
    data: None = None
    error: ErrorBody


class HealthResponse(BaseModel):
    """Response body for health check."""
    status: str
    version: str
    database: str
