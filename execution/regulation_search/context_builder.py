"""
Context Builder

Turns search results (or paragraphs the user picked) into a ranked, bounded
list of Context items and renders them as the single string handed to answer
generation. The same string is echoed to the caller as the "used context".

Inclusion depends on where a result came from:
    semantic + paragraph level  similarity_percentage > threshold * 100
    keyword                     paragraph has at least one match
    article level               every paragraph

Note the strict ``>`` here against ``>=`` when results are transformed: a
paragraph sitting exactly on the threshold is flagged above threshold but
not used as context.
"""

import logging
from typing import Optional

from .errors import NoContentSelectedError, EmptyContextError
from .models import (
    Context,
    ContextMetadata,
    SearchResult,
    SearchResultParagraph,
    SelectedContent,
    DEFAULT_SIMILARITY_THRESHOLD,
)

logger = logging.getLogger(__name__)

# Hard cap on contexts assembled into one prompt
RANKING_CAP = 10


class ContextBuilder:
    """Ranks paragraph evidence and serialises it for the answer prompt."""

    def __init__(self, ranking_cap: int = RANKING_CAP):
        self.ranking_cap = ranking_cap

    def build_from_paragraphs(
        self,
        results: list[SearchResult],
        max_contexts: int = 5,
    ) -> list[Context]:
        """
        Flatten, filter, rank and truncate paragraph evidence.

        Args:
            results: Search results carrying ``debug_info`` origin tags
            max_contexts: Requested number of contexts

        Returns:
            At most ``min(max_contexts, 10)`` contexts, most similar first

        Raises:
            NoContentSelectedError: no results were given
            EmptyContextError: nothing survived filtering
        """
        if not results:
            raise NoContentSelectedError()

        candidates = []
        for result in results:
            for paragraph in result.paragraphs:
                if not self._include(result, paragraph):
                    continue
                candidates.append((
                    paragraph.similarity_percentage or 0,
                    Context(
                        content=paragraph.text(),
                        metadata=self._metadata(result, paragraph.number),
                    ),
                ))

        # sorted() is stable: ties keep flatten order
        candidates = sorted(candidates, key=lambda c: c[0], reverse=True)
        limit = max(0, min(max_contexts, self.ranking_cap))
        contexts = [context for _, context in candidates[:limit]]

        logger.debug(
            f"Context selection: {len(candidates)} candidates from "
            f"{len(results)} results, kept {len(contexts)}"
        )
        if not contexts:
            raise EmptyContextError()
        return contexts

    def build_from_selected(self, selected_contents: list[SelectedContent]) -> str:
        """
        Serialise paragraphs the user picked, one context per paragraph.

        Raises:
            NoContentSelectedError: nothing was selected
            EmptyContextError: selections carried no paragraph text
        """
        if not selected_contents:
            raise NoContentSelectedError()

        contexts = []
        for item in selected_contents:
            if item is None:
                continue
            for paragraph in item.paragraphs:
                if not (paragraph.content or "").strip():
                    continue
                contexts.append(Context(
                    content=paragraph.content,
                    metadata=ContextMetadata(
                        regulation_id=item.regulation_id or "",
                        regulation_name=item.regulation_name or "",
                        article_number=item.article_number or "",
                        title=item.title or "",
                        paragraph_number=paragraph.number or None,
                    ),
                ))
        return self.serialize(contexts)

    def serialize(self, contexts: list[Context]) -> str:
        """Render contexts as header + content blocks separated by blank lines."""
        if not contexts:
            raise EmptyContextError()

        blocks = []
        for context in contexts:
            meta = context.metadata
            header = f"Article {meta.article_number} of {meta.regulation_name}"
            if meta.paragraph_number:
                header += f" (Paragraph {meta.paragraph_number})"
            blocks.append(f"{header}:\n{context.content}")

        text = "\n\n".join(blocks)
        if not text.strip():
            raise EmptyContextError()
        return text

    @staticmethod
    def _include(result: SearchResult, paragraph: SearchResultParagraph) -> bool:
        debug_info = result.debug_info or {}
        search_type = debug_info.get("search_type") or result.metadata.search_type
        search_level = debug_info.get("search_level")

        if search_type == "semantic" and search_level == "paragraph":
            threshold = (debug_info.get("threshold") or DEFAULT_SIMILARITY_THRESHOLD) * 100
            return (paragraph.similarity_percentage or 0) > threshold
        if search_type == "keyword":
            return paragraph.has_matches()
        return search_level == "article"

    @staticmethod
    def _metadata(result: SearchResult, paragraph_number: Optional[str]) -> ContextMetadata:
        return ContextMetadata(
            regulation_id=result.metadata.regulation_id or "",
            regulation_name=result.metadata.regulation_name or "",
            article_number=result.metadata.article_number or "",
            title=result.title or "",
            paragraph_number=paragraph_number or None,
        )
