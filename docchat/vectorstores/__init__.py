from .base import IndexedChunk, Scope, SearchHit, VectorBackend


def build_backend(settings, engine=None) -> VectorBackend:
    """Select the vector backend named by settings.VECTOR_BACKEND."""
    if settings.VECTOR_BACKEND == "chroma":
        from .chroma_store import ChromaBackend
        return ChromaBackend(settings.CHROMA_PATH)

    from .pgvector_store import PgVectorBackend
    if engine is None:
        from ..db import engine
    return PgVectorBackend(engine)


__all__ = ["IndexedChunk", "Scope", "SearchHit", "VectorBackend", "build_backend"]
