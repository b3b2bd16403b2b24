from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence


@dataclass(frozen=True)
class Scope:
    """Retrieval boundary for one document. Searches never leave their scope."""
    document_id: str

    @property
    def collection_name(self) -> str:
        return f"doc_{self.document_id}"


@dataclass
class SearchHit:
    chunk_id: str
    content: str
    page_number: int
    score: float
    search_type: str = "similarity"
    vector: Optional[List[float]] = None


@dataclass(frozen=True)
class IndexedChunk:
    chunk_id: str
    content: str
    page_number: int
    vector: List[float]
    metadata: Dict[str, Any] = field(default_factory=dict)


class VectorBackend(ABC):
    """
    Storage-specific half of the vector store.

    Methods are synchronous and may block; callers run them in a worker
    thread. Every read and write is bounded to one document scope.
    """

    name: str = "base"
    # Whether search(include_vectors=True) returns stored vectors
    supports_vectors: bool = True

    @abstractmethod
    def add(self, scope: Scope, chunks: Sequence[IndexedChunk]) -> None:
        pass

    @abstractmethod
    def search(self, scope: Scope, vector: List[float], k: int,
               include_vectors: bool = False) -> List[SearchHit]:
        """k nearest chunks by cosine similarity, best first. score = 1 - cosine distance."""

    @abstractmethod
    def keyword_search(self, scope: Scope, terms: List[str], k: int) -> List[SearchHit]:
        """Chunks matching any of the terms, best first."""

    @abstractmethod
    def delete_scope(self, scope: Scope) -> None:
        pass

    @abstractmethod
    def stats(self, scope: Scope) -> Dict[str, Any]:
        pass
