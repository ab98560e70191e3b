"""
Regulation Store with PostgreSQL + pgvector

Structured-query and vector-similarity provider for the regulation corpus.
Full-text and similarity matching run inside the database as SQL functions
(``search_articles`` and ``match_articles``); this class only calls them and
hands back their rows untouched. Hierarchy lookups (chapters, sections,
articles, references) are plain selects.

Operations are not retried: a failed call raises immediately and the search
services decide how to surface it.
"""

import os
import json
import logging
from typing import Optional
from dataclasses import dataclass
from contextlib import contextmanager

try:
    import psycopg2
    import psycopg2.extras
    import psycopg2.pool
except ImportError:
    psycopg2 = None  # Will be caught at connect() time

logger = logging.getLogger(__name__)


@dataclass
class RegulationStoreConfig:
    """Configuration for the regulation store."""
    connection_string: Optional[str] = None
    embedding_dimensions: int = 256
    # Connection pooling settings
    pool_min_connections: int = 2
    pool_max_connections: int = 20
    use_pooling: bool = True  # Set to False for simple single-connection mode


ARTICLE_COLUMNS = "id, article_number, title"


class RegulationStore:
    """
    PostgreSQL regulation store with pgvector.

    Features:
    - Full-text article search scoped by regulation and article range
    - Vector similarity match at article or paragraph level
    - Article fetch with paragraphs, subparagraphs and references
    - Regulation hierarchy listing
    """

    def __init__(self, config: Optional[RegulationStoreConfig] = None):
        """
        Initialize regulation store.

        Args:
            config: Optional configuration. Uses env vars if not provided.
        """
        self.config = config or RegulationStoreConfig()
        self._conn = None
        self._pool = None
        self._connection_string = (
            self.config.connection_string or
            os.getenv("POSTGRES_URL") or
            os.getenv("DATABASE_URL") or
            "postgresql://localhost:5432/regulations"
        )

    def connect(self) -> None:
        """Establish database connection (with optional pooling)."""
        if psycopg2 is None:
            raise ImportError(
                "psycopg2 not installed. Run: pip install psycopg2-binary"
            )
        from psycopg2.extras import RealDictCursor

        try:
            if self.config.use_pooling:
                self._pool = psycopg2.pool.ThreadedConnectionPool(
                    minconn=self.config.pool_min_connections,
                    maxconn=self.config.pool_max_connections,
                    dsn=self._connection_string,
                    cursor_factory=RealDictCursor,
                )
                logger.info(
                    f"Connection pool initialized (min={self.config.pool_min_connections}, "
                    f"max={self.config.pool_max_connections})"
                )
            else:
                self._conn = psycopg2.connect(
                    self._connection_string,
                    cursor_factory=RealDictCursor
                )
                self._conn.autocommit = False
                logger.info("Connected to PostgreSQL (single connection)")
        except Exception as e:
            logger.error(f"Database connection failed: {e}")
            raise

    def _get_connection(self):
        """Get a database connection (from pool or single connection)."""
        if not self._conn and not self._pool:
            self.connect()

        if self._pool:
            return self._pool.getconn()

        # For single connection mode, only reconnect if connection is closed
        if self._conn.closed:
            logger.warning("Connection closed, reconnecting...")
            self.connect()
        return self._conn

    def _release_connection(self, conn):
        """Release a connection back to the pool (if pooling is enabled)."""
        if self._pool and conn:
            self._pool.putconn(conn)

    def _is_connected(self) -> bool:
        """Check if we have an active connection (pool or single)."""
        return self._conn is not None or self._pool is not None

    @contextmanager
    def get_connection(self):
        """
        Context manager for getting a database connection.

        Usage:
            with store.get_connection() as conn:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")

        Automatically releases connection back to pool when done.
        """
        conn = self._get_connection()
        try:
            yield conn
        finally:
            self._release_connection(conn)

    def _safe_rollback(self, conn) -> None:
        """Rollback a connection, ignoring errors if the connection is dead."""
        try:
            conn.rollback()
        except (psycopg2.InterfaceError, psycopg2.OperationalError) as e:
            logger.debug(f"Rollback on dead connection ignored: {e}")

    def _execute(self, operation, label="db_operation"):
        """Run ``operation(conn)`` on a pooled connection.

        Args:
            operation: Callable(conn) that performs the DB work and returns a result.
            label: Human-readable name for logging.

        Returns:
            Whatever ``operation`` returns.
        """
        conn = self._get_connection()
        try:
            return operation(conn)
        except Exception as e:
            logger.error(f"{label} failed: {type(e).__name__}: {e}")
            self._safe_rollback(conn)
            raise
        finally:
            self._release_connection(conn)

    def _fetch_all(self, sql: str, params, label: str) -> list[dict]:
        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(sql, params)
                rows = cur.fetchall()
            conn.commit()
            return [dict(row) for row in rows]

        return self._execute(_op, label)

    def close(self) -> None:
        """Close database connection(s)."""
        if self._pool:
            self._pool.closeall()
            self._pool = None
            logger.info("Connection pool closed")
        if self._conn:
            self._conn.close()
            self._conn = None

    # =========================================================================
    # Search primitives
    # =========================================================================

    def search_articles(
        self,
        search_query: Optional[str],
        search_mode: str = "AND",
        regulation_id: Optional[str] = None,
        start_article: Optional[str] = None,
        end_article: Optional[str] = None,
    ) -> list[dict]:
        """
        Full-text search over article, paragraph and subparagraph text.

        Args:
            search_query: Escaped keyword string, or None for a range-only search
            search_mode: "AND" (every token must match) or "OR"
            regulation_id: Regulation to search in
            start_article: Inclusive lower article-number bound
            end_article: Inclusive upper article-number bound

        Returns:
            Keyword-shaped rows (paragraph elements carry ``matches`` offsets)
        """
        sql = "SELECT * FROM search_articles(%s, %s, %s, %s, %s)"
        params = (search_query, search_mode, regulation_id, start_article, end_article)
        rows = self._fetch_all(sql, params, "search_articles")
        logger.debug(f"search_articles returned {len(rows)} rows")
        return rows

    def match_articles(
        self,
        query_embedding: list[float],
        match_threshold: float,
        match_count: int,
        regulation_filters: list[str],
        search_level: str = "article",
        start_article: Optional[str] = None,
        end_article: Optional[str] = None,
    ) -> list[dict]:
        """
        Vector similarity match using cosine distance on pgvector embeddings.

        Args:
            query_embedding: Query embedding vector
            match_threshold: Minimum similarity (0-1)
            match_count: Maximum rows to return
            regulation_filters: Regulation ids to search in
            search_level: "article" or "paragraph"
            start_article: Optional inclusive lower article-number bound
            end_article: Optional inclusive upper article-number bound

        Returns:
            Similarity-shaped rows (``similarity`` 0-1, paragraph percentages)
        """
        if len(query_embedding) != self.config.embedding_dimensions:
            logger.warning(
                f"Query embedding has {len(query_embedding)} dimensions, "
                f"store expects {self.config.embedding_dimensions}"
            )
        sql = "SELECT * FROM match_articles(%s::vector, %s, %s, %s::uuid[], %s, %s, %s)"
        params = (
            query_embedding,
            match_threshold,
            match_count,
            regulation_filters,
            search_level,
            start_article,
            end_article,
        )
        rows = self._fetch_all(sql, params, "match_articles")
        logger.debug(f"match_articles returned {len(rows)} rows")
        return rows

    # =========================================================================
    # Article fetch
    # =========================================================================

    def get_article(self, article_id: str) -> Optional[dict]:
        """
        Fetch one article with regulation, chapter, paragraphs and references.

        Returns:
            Article record, or None if no article has this id
        """
        article_sql = """
        SELECT
            a.id,
            a.article_number,
            a.title,
            a.content,
            a.content_full,
            a.regulation_id,
            a.chapter_id,
            a.section_id,
            json_build_object('id', r.id, 'name', r.name) AS regulation,
            CASE WHEN c.id IS NULL THEN NULL ELSE
                json_build_object('id', c.id, 'chapter_number', c.chapter_number, 'title', c.title)
            END AS chapter
        FROM articles a
        JOIN regulations r ON r.id = a.regulation_id
        LEFT JOIN chapters c ON c.id = a.chapter_id
        WHERE a.id = %s::uuid
        """

        paragraphs_sql = """
        SELECT
            p.id,
            p.paragraph_number,
            p.content_full,
            p.chapeau,
            COALESCE(
                json_agg(
                    json_build_object(
                        'id', s.id,
                        'subparagraph_id', s.subparagraph_id,
                        'content', s.content,
                        'type', s.type,
                        'order_index', s.order_index
                    ) ORDER BY s.order_index
                ) FILTER (WHERE s.id IS NOT NULL),
                '[]'::json
            ) AS subparagraphs
        FROM paragraphs p
        LEFT JOIN subparagraphs s ON s.paragraph_id = p.id
        WHERE p.article_id = %s::uuid
        GROUP BY p.id
        """

        references_sql = """
        SELECT
            id, source_type, source_article, source_paragraph, source_subparagraph,
            reference_type, target_type, target_regulation, target_article,
            target_paragraph, target_subparagraph, target_point, context,
            (source_article_id = %s::uuid) AS outgoing
        FROM legal_references
        WHERE source_article_id = %s::uuid OR target_article_id = %s::uuid
        """

        def _op(conn):
            with conn.cursor() as cur:
                cur.execute(article_sql, (article_id,))
                article = cur.fetchone()
                if article is None:
                    return None
                article = dict(article)

                cur.execute(paragraphs_sql, (article_id,))
                article["paragraphs"] = [dict(row) for row in cur.fetchall()]

                cur.execute(references_sql, (article_id, article_id, article_id))
                refs = [dict(row) for row in cur.fetchall()]
            conn.commit()

            outgoing, incoming = [], []
            for ref in refs:
                (outgoing if ref.pop("outgoing") else incoming).append(ref)
            article["references"] = outgoing
            article["referenced_by"] = incoming
            logger.debug(
                f"Article {article_id}: {len(article['paragraphs'])} paragraphs, "
                f"{len(outgoing)} outgoing / {len(incoming)} incoming references"
            )
            return article

        return self._execute(_op, "get_article")

    # =========================================================================
    # Hierarchy listing
    # =========================================================================

    def list_regulations(self) -> list[dict]:
        """List all regulations ordered by name."""
        sql = """
        SELECT id, name, official_title, short_title, description
        FROM regulations
        ORDER BY name
        """
        return self._fetch_all(sql, (), "list_regulations")

    def list_chapters(self, regulation_id: str) -> list[dict]:
        sql = """
        SELECT id, chapter_number, title, order_index
        FROM chapters
        WHERE regulation_id = %s::uuid
        ORDER BY order_index
        """
        return self._fetch_all(sql, (regulation_id,), "list_chapters")

    def list_sections(self, chapter_id: str) -> list[dict]:
        sql = """
        SELECT id, section_number, title, order_index
        FROM sections
        WHERE chapter_id = %s::uuid
        ORDER BY order_index
        """
        return self._fetch_all(sql, (chapter_id,), "list_sections")

    def list_articles(
        self,
        regulation_id: Optional[str] = None,
        chapter_id: Optional[str] = None,
        section_id: Optional[str] = None,
    ) -> list[dict]:
        """
        List article headers at one level of the hierarchy.

        - section_id: articles of that section
        - chapter_id: articles attached directly to the chapter (no section)
        - regulation_id: articles attached directly to the regulation
        """
        if section_id:
            where, params = "section_id = %s::uuid", (section_id,)
        elif chapter_id:
            where, params = "chapter_id = %s::uuid AND section_id IS NULL", (chapter_id,)
        elif regulation_id:
            where = "regulation_id = %s::uuid AND chapter_id IS NULL AND section_id IS NULL"
            params = (regulation_id,)
        else:
            raise ValueError("One of regulation_id, chapter_id or section_id is required")

        sql = f"""
        SELECT {ARTICLE_COLUMNS}, order_index
        FROM articles
        WHERE {where}
        ORDER BY order_index
        """
        return self._fetch_all(sql, params, "list_articles")


# CLI for testing
if __name__ == "__main__":
    import sys
    from dotenv import load_dotenv

    load_dotenv()
    logging.basicConfig(level=logging.INFO)

    store = RegulationStore()
    store.connect()
    try:
        if len(sys.argv) > 1:
            print(json.dumps(store.list_chapters(sys.argv[1]), indent=2, default=str))
        else:
            print(json.dumps(store.list_regulations(), indent=2, default=str))
    finally:
        store.close()
