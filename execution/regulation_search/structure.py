"""
Regulation Structure

Builds the chapter -> section -> article tree used by the sidebar browser.
Each chapter branch is independent, so branches are fetched in parallel and
re-sorted by ``order_index`` afterwards.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed

from .errors import SearchError, ErrorKind

logger = logging.getLogger(__name__)

# Each branch holds a pooled connection while it runs
MAX_BRANCH_WORKERS = 6


def _article_node(row: dict) -> dict:
    return {
        "id": str(row["id"]),
        "article_number": str(row.get("article_number") or ""),
        "title": row.get("title") or "",
    }


def _order(row: dict) -> tuple:
    order_index = row.get("order_index")
    return (order_index is None, order_index or 0)


class RegulationStructureService:
    """Read-only hierarchy browser over the regulation store."""

    def __init__(self, store, max_workers: int = MAX_BRANCH_WORKERS):
        self.store = store
        self.max_workers = max_workers

    def get_structure(self, regulation_id: str) -> dict:
        """
        Return ``{"chapters": [...]}`` or, for a regulation without chapters,
        ``{"chapters": [], "articles": [...]}``.

        Raises:
            SearchError: SEARCH_ERROR if any store call fails
        """
        try:
            chapters = sorted(self.store.list_chapters(regulation_id), key=_order)
            if not chapters:
                articles = self.store.list_articles(regulation_id=regulation_id)
                logger.debug(f"Regulation {regulation_id}: no chapters, {len(articles)} root articles")
                return {
                    "chapters": [],
                    "articles": [_article_node(a) for a in sorted(articles, key=_order)],
                }

            nodes = {}
            workers = max(1, min(len(chapters), self.max_workers))
            with ThreadPoolExecutor(max_workers=workers) as executor:
                future_map = {
                    executor.submit(self._chapter_node, chapter): index
                    for index, chapter in enumerate(chapters)
                }
                for future in as_completed(future_map):
                    nodes[future_map[future]] = future.result()
        except SearchError:
            raise
        except Exception as e:
            logger.error(f"Structure fetch failed for {regulation_id}: {type(e).__name__}: {e}")
            raise SearchError(
                "Failed to load regulation structure",
                ErrorKind.SEARCH_ERROR,
                e,
            ) from e

        logger.debug(f"Regulation {regulation_id}: {len(chapters)} chapters")
        return {"chapters": [nodes[i] for i in range(len(chapters))]}

    def _chapter_node(self, chapter: dict) -> dict:
        sections = []
        for section in sorted(self.store.list_sections(chapter["id"]), key=_order):
            articles = self.store.list_articles(section_id=section["id"])
            sections.append({
                "id": str(section["id"]),
                "section_number": str(section.get("section_number") or ""),
                "title": section.get("title") or "",
                "articles": [_article_node(a) for a in sorted(articles, key=_order)],
            })

        direct = self.store.list_articles(chapter_id=chapter["id"])
        return {
            "id": str(chapter["id"]),
            "chapter_number": str(chapter.get("chapter_number") or ""),
            "title": chapter.get("title") or "",
            "order_index": chapter.get("order_index"),
            "sections": sections,
            "articles": [_article_node(a) for a in sorted(direct, key=_order)],
        }
