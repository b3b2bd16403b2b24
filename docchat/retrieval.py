"""
Vector store manager: similarity, MMR, keyword and hybrid retrieval over a
VectorBackend, always bounded to a document scope.
"""
import asyncio
import math
from dataclasses import dataclass, replace
from time import perf_counter
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from .embedding import EmbeddingBatcher
from .exceptions import EmbeddingError, RetrievalError
from .logging_config import logger
from .utils.helpers import run_in_thread
from .vectorstores import IndexedChunk, Scope, SearchHit, VectorBackend

SEARCH_TYPES = ("similarity", "mmr", "hybrid")


@dataclass
class RetrievalOptions:
    k: int = 5
    search_type: str = "hybrid"
    score_threshold: float = 0.3
    fetch_k: int = 20
    lambda_mult: float = 0.5

    def __post_init__(self):
        if self.search_type not in SEARCH_TYPES:
            raise ValueError(f"search_type must be one of {SEARCH_TYPES}")
        if self.k < 1:
            raise ValueError("k must be positive")
        if not 0.0 <= self.score_threshold <= 1.0:
            raise ValueError("score_threshold must be between 0 and 1")
        if not 0.0 <= self.lambda_mult <= 1.0:
            raise ValueError("lambda_mult must be between 0 and 1")


def keyword_terms(query: str) -> List[str]:
    """Whitespace tokens longer than two characters, in the case they were typed."""
    return [t for t in query.split() if len(t) > 2]


def _quota(k: int, weight: float) -> int:
    # round() keeps 5 * 0.4 from landing just above 2.0
    return math.ceil(round(k * weight, 9))


def fuse_hybrid(semantic: List[SearchHit], keyword: List[SearchHit], k: int,
                semantic_weight: float = 0.6) -> List[SearchHit]:
    """
    Quota fusion: ceil(k*w) semantic slots, ceil(k*(1-w)) keyword slots,
    duplicates by content dropped, then backfill from whatever is left of
    the semantic and keyword pools in rank order. At most k results.
    """
    results: List[SearchHit] = []
    seen = set()
    used = set()

    def take(pool: List[SearchHit], limit: int, tag: str):
        taken = 0
        for i, hit in enumerate(pool):
            if taken >= limit or len(results) >= k:
                break
            if (tag, i) in used:
                continue
            used.add((tag, i))
            if hit.content in seen:
                continue
            seen.add(hit.content)
            results.append(hit)
            taken += 1

    take(semantic, _quota(k, semantic_weight), "semantic")
    take(keyword, _quota(k, 1 - semantic_weight), "keyword")
    take(semantic, k, "semantic")
    take(keyword, k, "keyword")
    return results[:k]


def mmr_select(query_vector: List[float], candidates: List[List[float]], k: int,
               lambda_mult: float = 0.5) -> List[int]:
    """
    Greedy maximal marginal relevance over cosine similarity.
    Returns candidate indices in selection order.
    """
    if not candidates or k <= 0:
        return []
    q = np.asarray(query_vector, dtype=float)
    c = np.asarray(candidates, dtype=float)
    q = q / (np.linalg.norm(q) or 1.0)
    norms = np.linalg.norm(c, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    c = c / norms

    to_query = c @ q
    between = c @ c.T

    selected = [int(np.argmax(to_query))]
    while len(selected) < min(k, len(candidates)):
        best, best_score = -1, -np.inf
        for i in range(len(candidates)):
            if i in selected:
                continue
            redundancy = float(np.max(between[i, selected]))
            score = lambda_mult * float(to_query[i]) - (1 - lambda_mult) * redundancy
            if score > best_score:
                best, best_score = i, score
        selected.append(best)
    return selected


class VectorStoreManager:
    """
    Backend-agnostic retrieval facade.

    Backend calls run in worker threads. Empty results are valid; backend
    failures surface as RetrievalError.
    """

    def __init__(
        self,
        backend: VectorBackend,
        embedder: EmbeddingBatcher,
        semantic_weight: float = 0.6,
        fetch_k: int = 20,
        lambda_mult: float = 0.5,
        mmr_fallback: bool = True,
    ):
        self.backend = backend
        self.embedder = embedder
        self.semantic_weight = semantic_weight
        self.fetch_k = fetch_k
        self.lambda_mult = lambda_mult
        self.mmr_fallback = mmr_fallback
        self._scopes: Dict[str, Scope] = {}

    def scope(self, document_id: str) -> Scope:
        scope = self._scopes.get(document_id)
        if scope is None:
            scope = Scope(document_id=document_id)
            self._scopes[document_id] = scope
        return scope

    async def _run(self, op: str, fn: Callable, *args) -> Any:
        try:
            return await run_in_thread(fn, *args)
        except RetrievalError:
            raise
        except Exception as e:
            logger.error("Vector backend call failed", backend=self.backend.name, op=op, error=str(e))
            raise RetrievalError(f"{self.backend.name} {op} failed: {e}") from e

    @staticmethod
    def _require_scope(scope: Optional[Scope]) -> Scope:
        if scope is None:
            raise RetrievalError("Search needs a document scope")
        return scope

    async def _embed_query(self, query: str) -> List[float]:
        try:
            return await self.embedder.embed_query(query)
        except EmbeddingError as e:
            raise RetrievalError(f"Query embedding failed: {e.message}") from e

    async def similarity_search(
        self,
        query: str,
        k: int = 5,
        score_threshold: float = 0.0,
        scope: Optional[Scope] = None,
        include_vectors: bool = False,
    ) -> List[SearchHit]:
        t = perf_counter()
        scope = self._require_scope(scope)
        vector = await self._embed_query(query)
        hits = await self._run("search", self.backend.search, scope, vector, k, include_vectors)
        kept = [h for h in hits if h.score >= score_threshold]
        logger.info(
            "Similarity search",
            document_id=scope.document_id,
            k=k,
            hits=len(hits),
            kept=len(kept),
            threshold=score_threshold,
            time_ms=round((perf_counter() - t) * 1000, 2),
        )
        return kept

    async def max_marginal_relevance_search(
        self,
        query: str,
        k: int = 5,
        fetch_k: Optional[int] = None,
        lambda_mult: Optional[float] = None,
        scope: Optional[Scope] = None,
        score_threshold: float = 0.0,
    ) -> List[SearchHit]:
        scope = self._require_scope(scope)
        fetch_k = max(fetch_k or self.fetch_k, k)
        lambda_mult = self.lambda_mult if lambda_mult is None else lambda_mult

        if not self.backend.supports_vectors:
            return await self._mmr_fallback(query, k, score_threshold, scope, "backend returns no vectors")

        vector = await self._embed_query(query)
        candidates = await self._run("search", self.backend.search, scope, vector, fetch_k, True)
        candidates = [h for h in candidates if h.score >= score_threshold]
        if any(h.vector is None for h in candidates):
            return await self._mmr_fallback(query, k, score_threshold, scope, "missing candidate vectors")

        order = mmr_select(vector, [h.vector for h in candidates], k, lambda_mult)
        selected = [replace(candidates[i], search_type="mmr", vector=None) for i in order]
        logger.info("MMR search", candidates=len(candidates), selected=len(selected), lambda_mult=lambda_mult)
        return selected

    async def _mmr_fallback(self, query, k, score_threshold, scope, reason) -> List[SearchHit]:
        if not self.mmr_fallback:
            raise RetrievalError(f"MMR search unavailable: {reason}")
        logger.warning("MMR search failed, falling back to similarity search", reason=reason)
        return await self.similarity_search(query, k, score_threshold, scope)

    async def keyword_search(self, query: str, scope: Scope, k: int = 5) -> List[SearchHit]:
        terms = keyword_terms(query)
        if not terms:
            return []
        return await self._run("keyword_search", self.backend.keyword_search, scope, terms, k)

    async def hybrid_search(
        self,
        query: str,
        scope: Scope,
        k: int = 5,
        score_threshold: float = 0.0,
    ) -> List[SearchHit]:
        t = perf_counter()
        semantic, keyword = await asyncio.gather(
            self.similarity_search(query, k * 2, score_threshold, scope),
            self.keyword_search(query, scope, k * 2),
        )
        results = fuse_hybrid(semantic, keyword, k, self.semantic_weight)
        logger.info(
            "Hybrid search",
            document_id=scope.document_id,
            semantic=len(semantic),
            keyword=len(keyword),
            returned=len(results),
            time_ms=round((perf_counter() - t) * 1000, 2),
        )
        return results

    async def index_chunks(self, document_id: str, chunks: List[IndexedChunk]) -> None:
        await self._run("add", self.backend.add, self.scope(document_id), chunks)

    async def delete_collection(self, document_id: str) -> None:
        scope = self.scope(document_id)
        await self._run("delete_scope", self.backend.delete_scope, scope)
        self._scopes.pop(document_id, None)

    async def collection_stats(self, document_id: str) -> Dict[str, Any]:
        return await self._run("stats", self.backend.stats, self.scope(document_id))
