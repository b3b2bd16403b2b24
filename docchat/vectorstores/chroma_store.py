from typing import Any, Dict, List, Sequence, cast

import chromadb

from ..logging_config import logger
from .base import IndexedChunk, Scope, SearchHit, VectorBackend


class ChromaBackend(VectorBackend):
    """
    ChromaDB-based backend with one persistent collection per document.

    Collections use cosine space, so score = 1 - distance matches the
    pgvector backend.
    """

    name = "chroma"
    supports_vectors = True

    def __init__(self, db_path: str, client=None):
        self.db_path = db_path
        self.client = client or chromadb.PersistentClient(path=self.db_path)

    def _collection(self, scope: Scope):
        return self.client.get_or_create_collection(
            name=scope.collection_name, metadata={"hnsw:space": "cosine"}
        )

    def add(self, scope: Scope, chunks: Sequence[IndexedChunk]) -> None:
        if not chunks:
            return
        collection = self._collection(scope)
        collection.upsert(
            ids=[c.chunk_id for c in chunks],
            embeddings=cast(Any, [c.vector for c in chunks]),
            documents=[c.content for c in chunks],
            metadatas=cast(Any, [
                {"document_id": scope.document_id, "page_number": c.page_number, **c.metadata}
                for c in chunks
            ]),
        )
        logger.info("Upserted chunks into collection", collection=scope.collection_name, count=len(chunks))

    def search(self, scope: Scope, vector: List[float], k: int,
               include_vectors: bool = False) -> List[SearchHit]:
        collection = self._collection(scope)
        count = int(collection.count())
        if count == 0 or k <= 0:
            return []

        include = ["documents", "metadatas", "distances"]
        if include_vectors:
            include.append("embeddings")
        result = collection.query(
            query_embeddings=cast(Any, [vector]),
            n_results=min(k, count),
            include=cast(Any, include),
        )

        ids = result["ids"][0]
        documents = result["documents"][0]
        metadatas = result["metadatas"][0]
        distances = result["distances"][0]
        embeddings = result["embeddings"][0] if include_vectors else [None] * len(ids)
        return [
            SearchHit(
                chunk_id=ids[i],
                content=documents[i],
                page_number=int((metadatas[i] or {}).get("page_number", 1)),
                score=1.0 - float(distances[i]),
                vector=[float(x) for x in embeddings[i]] if embeddings[i] is not None else None,
            )
            for i in range(len(ids))
        ]

    def keyword_search(self, scope: Scope, terms: List[str], k: int) -> List[SearchHit]:
        if not terms:
            return []
        # $contains is case-sensitive: match the term as typed and lower-cased
        variants = list(dict.fromkeys(v for t in terms for v in (t, t.lower())))
        if len(variants) == 1:
            where_document = {"$contains": variants[0]}
        else:
            where_document = {"$or": [{"$contains": v} for v in variants]}

        collection = self._collection(scope)
        result = collection.get(where_document=cast(Any, where_document), include=cast(Any, ["documents", "metadatas"]))

        hits = []
        for chunk_id, content, meta in zip(result["ids"], result["documents"], result["metadatas"]):
            lower = content.lower()
            matched = sum(1 for t in terms if t.lower() in lower)
            hits.append(SearchHit(
                chunk_id=chunk_id,
                content=content,
                page_number=int((meta or {}).get("page_number", 1)),
                score=matched / len(terms),
                search_type="keyword",
            ))
        # Stable sort keeps collection order among equal scores
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:k]

    def delete_scope(self, scope: Scope) -> None:
        # Created first so deleting a never-indexed document is not an error
        self._collection(scope)
        self.client.delete_collection(name=scope.collection_name)
        logger.info("Deleted collection", collection=scope.collection_name)

    def stats(self, scope: Scope) -> Dict[str, Any]:
        collection = self._collection(scope)
        return {"backend": self.name, "chunk_count": int(collection.count())}
