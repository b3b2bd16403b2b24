import re
from time import perf_counter
from typing import Any, Dict, List, Sequence

from pgvector.sqlalchemy import Vector
from sqlalchemy import text as sa_text

from ..logging_config import logger
from .base import IndexedChunk, Scope, SearchHit, VectorBackend

_NON_WORD = re.compile(r"[^\w]+", re.UNICODE)


def to_tsquery_terms(terms: List[str]) -> str:
    """OR-join terms for to_tsquery, dropping characters tsquery treats as syntax."""
    cleaned = [_NON_WORD.sub("", t) for t in terms]
    return " | ".join(t for t in cleaned if t)


class PgVectorBackend(VectorBackend):
    """
    The chunks table is the index: rows written by the document store are
    searchable as soon as their transaction commits, so add() is a no-op.
    """

    name = "pgvector"
    supports_vectors = True

    def __init__(self, engine):
        self.engine = engine

    def add(self, scope: Scope, chunks: Sequence[IndexedChunk]) -> None:
        logger.debug("Chunks indexed by table write", document_id=scope.document_id, count=len(chunks))

    def search(self, scope: Scope, vector: List[float], k: int,
               include_vectors: bool = False) -> List[SearchHit]:
        t = perf_counter()
        stmt = sa_text("""
            SELECT
                c.id,
                c.content,
                c.page_number,
                c.embedding AS vector,
                1 - (c.embedding <=> (:qv)::vector) AS score
            FROM chunks c
            WHERE c.document_id = :doc
            ORDER BY c.embedding <=> (:qv)::vector
            LIMIT :k
        """).columns(vector=Vector())
        params = {"qv": vector, "k": k, "doc": scope.document_id}

        with self.engine.begin() as conn:
            rows = conn.execute(stmt, params).mappings().all()

        logger.info(
            "Search for similar chunks",
            document_id=scope.document_id,
            hits=len(rows),
            time_ms=round((perf_counter() - t) * 1000, 2),
        )
        return [
            SearchHit(
                chunk_id=r["id"],
                content=r["content"],
                page_number=r["page_number"],
                score=float(r["score"]),
                vector=[float(x) for x in r["vector"]] if include_vectors else None,
            )
            for r in rows
        ]

    def keyword_search(self, scope: Scope, terms: List[str], k: int) -> List[SearchHit]:
        query = to_tsquery_terms(terms)
        if not query:
            return []

        with self.engine.begin() as conn:
            rows = conn.execute(
                sa_text("""
                    SELECT
                        c.id,
                        c.content,
                        c.page_number,
                        ts_rank_cd(to_tsvector('english', c.content), to_tsquery('english', :q)) AS score
                    FROM chunks c
                    WHERE c.document_id = :doc
                      AND to_tsvector('english', c.content) @@ to_tsquery('english', :q)
                    ORDER BY score DESC
                    LIMIT :k
                """),
                {"q": query, "doc": scope.document_id, "k": k},
            ).mappings().all()

        return [
            SearchHit(
                chunk_id=r["id"],
                content=r["content"],
                page_number=r["page_number"],
                score=float(r["score"]),
                search_type="keyword",
            )
            for r in rows
        ]

    def delete_scope(self, scope: Scope) -> None:
        with self.engine.begin() as conn:
            conn.execute(sa_text("DELETE FROM chunks WHERE document_id = :doc"), {"doc": scope.document_id})

    def stats(self, scope: Scope) -> Dict[str, Any]:
        with self.engine.begin() as conn:
            row = conn.execute(
                sa_text("""
                    SELECT
                        COUNT(*) AS chunk_count,
                        COALESCE(AVG(LENGTH(content)), 0) AS avg_chunk_length,
                        COUNT(DISTINCT page_number) AS pages_covered
                    FROM chunks
                    WHERE document_id = :doc
                """),
                {"doc": scope.document_id},
            ).mappings().one()
        return {
            "backend": self.name,
            "chunk_count": int(row["chunk_count"]),
            "avg_chunk_length": round(float(row["avg_chunk_length"]), 1),
            "pages_covered": int(row["pages_covered"]),
        }
