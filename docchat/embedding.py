import asyncio
from abc import ABC, abstractmethod
from time import perf_counter
from typing import List, Sequence

import numpy as np

from .exceptions import EmbeddingError
from .logging_config import logger


class EmbeddingService(ABC):
    """Wrapper for computing vector embeddings. Output order matches input order."""
    dimension: int

    @abstractmethod
    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        pass


class SentenceTransformerEmbeddings(EmbeddingService):
    """Local sentence-transformers model, avoids extra API usage."""

    def __init__(self, model_name: str = "sentence-transformers/all-MiniLM-L6-v2", dimension: int = 384):
        self.model_name = model_name
        self.dimension = dimension
        self._model = None

    def preload(self):
        """Preload the embedding model on startup to avoid first-request delay."""
        if self._model is None:
            from sentence_transformers import SentenceTransformer
            logger.info("Loading embedding model", model=self.model_name)

            # Explicit tokenizer settings avoid a FutureWarning
            self._model = SentenceTransformer(
                self.model_name,
                tokenizer_kwargs={"clean_up_tokenization_spaces": False},
            )
            self._model.encode(["test"], normalize_embeddings=True, show_progress_bar=False)
            logger.info("Embedding model loaded", model=self.model_name)
        return self._model

    def _encode(self, texts: List[str]) -> List[List[float]]:
        model = self.preload()
        vecs = model.encode(texts, normalize_embeddings=True, show_progress_bar=False)
        if isinstance(vecs, np.ndarray):
            return vecs.tolist()
        return [list(v) for v in vecs]

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        # encode() is CPU bound; keep it off the event loop
        return await asyncio.to_thread(self._encode, texts)


class OpenAIEmbeddings(EmbeddingService):
    def __init__(self, client, model_name: str = "text-embedding-3-small", dimension: int = 1536):
        self.client = client
        self.model_name = model_name
        self.dimension = dimension

    async def embed_batch(self, texts: List[str]) -> List[List[float]]:
        res = await self.client.embeddings.create(
            model=self.model_name,
            input=texts,
            dimensions=self.dimension,
        )
        return [d.embedding for d in sorted(res.data, key=lambda d: d.index)]


class EmbeddingBatcher:
    """
    Embed many texts with one service call per batch.

    Batches run strictly one after another. Any failed, timed out or
    malformed batch raises EmbeddingError and nothing is returned.
    """

    def __init__(self, service: EmbeddingService, batch_size: int = 50, timeout_s: float = 30.0):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.service = service
        self.batch_size = batch_size
        self.timeout_s = timeout_s

    @property
    def dimension(self) -> int:
        return self.service.dimension

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        t = perf_counter()
        vectors: List[List[float]] = []
        batches = 0
        for start in range(0, len(texts), self.batch_size):
            batch = list(texts[start:start + self.batch_size])
            vectors.extend(await self._embed_one_batch(batch, batches))
            batches += 1

        logger.info(
            "Embedded texts",
            count=len(texts),
            batches=batches,
            batch_size=self.batch_size,
            time_ms=round((perf_counter() - t) * 1000, 2),
        )
        return vectors

    async def embed_query(self, text: str) -> List[float]:
        return (await self._embed_one_batch([text], 0))[0]

    async def _embed_one_batch(self, batch: List[str], batch_no: int) -> List[List[float]]:
        try:
            out = await asyncio.wait_for(self.service.embed_batch(batch), timeout=self.timeout_s)
        except asyncio.TimeoutError as e:
            raise EmbeddingError(
                f"Embedding batch {batch_no} timed out after {self.timeout_s}s"
            ) from e
        except EmbeddingError:
            raise
        except Exception as e:
            raise EmbeddingError(f"Embedding batch {batch_no} failed: {e}") from e

        if len(out) != len(batch):
            raise EmbeddingError(
                f"Embedding batch {batch_no} returned {len(out)} vectors for {len(batch)} texts"
            )
        result = []
        for vec in out:
            vec = [float(x) for x in vec]
            if len(vec) != self.service.dimension:
                raise EmbeddingError(
                    f"Embedding dimension {len(vec)} does not match configured {self.service.dimension}"
                )
            result.append(vec)
        return result


def build_embedding_service(settings) -> EmbeddingService:
    if settings.EMBED_PROVIDER == "openai":
        from .openai_client import build_async_client
        return OpenAIEmbeddings(
            build_async_client(settings),
            model_name=settings.EMBED_MODEL,
            dimension=settings.EMBEDDING_DIM,
        )
    return SentenceTransformerEmbeddings(settings.EMBED_MODEL, dimension=settings.EMBEDDING_DIM)
