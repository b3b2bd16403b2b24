"""
Shared fixtures: an in-memory SQLite store and deterministic stand-ins for
the embedding model, vector backend and generation model.
"""
import asyncio
import hashlib
import re
from typing import Dict, List, Optional

import numpy as np
import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from docchat.chunking import ChunkSplitter
from docchat.embedding import EmbeddingBatcher, EmbeddingService
from docchat.models import Base
from docchat.retrieval import RetrievalOptions, VectorStoreManager
from docchat.services.document_store import DocumentStore
from docchat.services.ingestion_service import IngestionService
from docchat.services.rag_agent import RAGAgent
from docchat.services.rag_chain import RAGChain
from docchat.utils.cache import ConversationWindowCache
from docchat.vectorstores import SearchHit, VectorBackend

DIM = 384

_WORD = re.compile(r"\w+")


class HashingEmbeddings(EmbeddingService):
    """Bag-of-words hashed into DIM buckets, L2-normalised. Same text, same vector."""

    def __init__(self, dimension: int = DIM):
        self.dimension = dimension
        self.calls: List[List[str]] = []

    def vector(self, text: str) -> List[float]:
        v = np.zeros(self.dimension)
        for word in _WORD.findall(text.lower()):
            bucket = int(hashlib.md5(word.encode()).hexdigest(), 16) % self.dimension
            v[bucket] += 1.0
        norm = np.linalg.norm(v)
        if norm == 0:
            v[0] = 1.0
            norm = 1.0
        return (v / norm).tolist()

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        return [self.vector(t) for t in texts]


class InMemoryBackend(VectorBackend):
    name = "memory"

    def __init__(self, supports_vectors: bool = True):
        self.supports_vectors = supports_vectors
        self.collections: Dict[str, list] = {}
        self.ops: List[str] = []

    def add(self, scope, chunks):
        self.ops.append(f"add:{scope.document_id}")
        self.collections.setdefault(scope.document_id, []).extend(chunks)

    def search(self, scope, vector, k, include_vectors=False):
        pool = self.collections.get(scope.document_id, [])
        q = np.asarray(vector)
        scored = sorted(
            ((float(np.dot(q, np.asarray(c.vector))), c) for c in pool),
            key=lambda pair: pair[0],
            reverse=True,
        )[:k]
        return [
            SearchHit(
                chunk_id=c.chunk_id,
                content=c.content,
                page_number=c.page_number,
                score=score,
                vector=list(c.vector) if include_vectors and self.supports_vectors else None,
            )
            for score, c in scored
        ]

    def keyword_search(self, scope, terms, k):
        hits = []
        for c in self.collections.get(scope.document_id, []):
            matched = sum(1 for t in terms if t.lower() in c.content.lower())
            if matched:
                hits.append(SearchHit(c.chunk_id, c.content, c.page_number, matched / len(terms), "keyword"))
        hits.sort(key=lambda h: h.score, reverse=True)
        return hits[:k]

    def delete_scope(self, scope):
        self.ops.append(f"delete_scope:{scope.document_id}")
        self.collections.pop(scope.document_id, None)

    def stats(self, scope):
        return {"backend": self.name, "chunk_count": len(self.collections.get(scope.document_id, []))}


class ScriptedGenerator:
    """Returns canned answers in order (the last one repeats) and records every prompt."""

    provider = "scripted"

    def __init__(self, *answers: str, fail: Optional[Exception] = None, stall_s: float = 0.0):
        self.answers = list(answers) or ["Scripted answer."]
        self.fail = fail
        self.stall_s = stall_s
        self.calls: List[List[Dict[str, str]]] = []

    def _next(self) -> str:
        if len(self.answers) > 1:
            return self.answers.pop(0)
        return self.answers[0]

    async def complete(self, messages):
        self.calls.append([dict(m) for m in messages])
        if self.fail:
            raise self.fail
        return self._next()

    async def stream(self, messages):
        self.calls.append([dict(m) for m in messages])
        if self.fail:
            raise self.fail
        for fragment in re.findall(r"\S+\s*|\s+", self._next()):
            if self.stall_s:
                await asyncio.sleep(self.stall_s)
            yield fragment


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    @event.listens_for(engine, "connect")
    def _enable_foreign_keys(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def store(session_factory):
    return DocumentStore(session_factory)


@pytest.fixture
def embeddings():
    return HashingEmbeddings()


@pytest.fixture
def embedder(embeddings):
    return EmbeddingBatcher(embeddings, batch_size=4, timeout_s=5.0)


@pytest.fixture
def backend():
    return InMemoryBackend()


@pytest.fixture
def vectors(backend, embedder):
    return VectorStoreManager(backend, embedder)


@pytest.fixture
def generator():
    return ScriptedGenerator("First answer, see page 2.", "Second answer.")


@pytest.fixture
def chain(vectors, generator):
    return RAGChain(
        vectors,
        generator,
        ConversationWindowCache(max_sessions=16, max_messages=20),
        default_options=RetrievalOptions(k=4, search_type="hybrid", score_threshold=0.0),
        timeout_s=2.0,
    )


@pytest.fixture
def splitter():
    return ChunkSplitter(chunk_size=1000, chunk_overlap=100)


@pytest.fixture
def ingestion(store, vectors, splitter, embedder):
    return IngestionService(store, vectors, splitter, embedder)


@pytest.fixture
def agent(store, vectors, chain, ingestion):
    return RAGAgent(store, vectors, chain, ingestion, history_max_messages=20)


@pytest.fixture
def three_pages():
    return [
        "Abstract. This study examines retrieval augmented generation for question answering "
        "over long research papers.",
        "Methods. We split each paper into chunks, embed them and store the vectors in a "
        "database with cosine similarity search.",
        "Results. Hybrid search combining keywords and vectors improved answer accuracy by "
        "twelve percent over vector search alone.",
    ]
