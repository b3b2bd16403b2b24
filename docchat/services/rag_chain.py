"""
RAG (Retrieval-Augmented Generation) chain.
Handles document retrieval, context building, generation and streaming.
"""
import asyncio
import inspect
from dataclasses import dataclass, field
from time import perf_counter
from typing import Awaitable, Callable, Dict, List, Optional, Tuple, Union

from ..exceptions import GenerationError
from ..logging_config import logger
from ..retrieval import RetrievalOptions, VectorStoreManager
from ..utils.cache import ConversationWindowCache
from ..utils.helpers import build_sources, bullet_lines
from ..vectorstores import SearchHit

DEFAULT_SYSTEM_PROMPT = """You are a helpful AI assistant specializing in analyzing academic papers and research documents.
Your role is to provide accurate, insightful answers based on the provided context from the documents.

Guidelines:
1. Base your answers primarily on the provided context
2. If the context doesn't contain enough information, acknowledge this limitation
3. Cite specific sections or page numbers when referencing the source material
4. Maintain academic rigor and precision in your responses
5. If asked about something not in the context, clearly state that the information is not available in the provided documents"""

CONTEXT_TEMPLATE = "Context from documents:\n{context}\n\nAnswer the question based on the above context."

NO_DOCUMENTS_CONTEXT = "No relevant documents found."

INSUFFICIENT_CONTEXT_ANSWER = (
    "I couldn't find information relevant to this question in the provided documents. "
    "Try rephrasing the question or asking about a topic covered in the document."
)

SUMMARY_PROMPT = """Please provide a comprehensive summary of this academic paper, including:
1. Main research question or hypothesis
2. Methodology used
3. Key findings and results
4. Conclusions and implications
5. Limitations and future research directions"""

SUMMARY_SYSTEM_PROMPT = (
    "You are an expert at summarizing academic papers. "
    "Create a clear, structured summary based on the provided context."
)

NO_SUMMARY_CONTENT = "Unable to generate summary: No document content found."

INSIGHTS_PROMPT = """Extract the 5-7 most important insights, findings, or contributions from this paper.
Format each as a concise bullet point."""

INSIGHTS_SYSTEM_PROMPT = "Extract key insights from the academic paper based on the context provided."

OnChunk = Callable[[str], Union[None, Awaitable[None]]]


@dataclass
class ConversationContext:
    session_id: Optional[int] = None
    document_id: Optional[str] = None


@dataclass
class RAGResponse:
    answer: str
    sources: List[Dict] = field(default_factory=list)
    query_time_ms: float = 0.0
    retrieval_method: str = "similarity"


def format_documents(hits: List[SearchHit]) -> str:
    """Numbered, page-annotated context block."""
    if not hits:
        return NO_DOCUMENTS_CONTEXT
    parts = []
    for i, hit in enumerate(hits, start=1):
        page_info = f" (Page {hit.page_number})" if hit.page_number else ""
        parts.append(f"[Document {i}{page_info}]:\n{hit.content}")
    return "\n\n---\n\n".join(parts)


class RAGChain:
    def __init__(
        self,
        vectors: VectorStoreManager,
        generator,
        history: ConversationWindowCache,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        default_options: Optional[RetrievalOptions] = None,
        history_prompt_messages: int = 6,
        timeout_s: float = 60.0,
        summary_k: int = 10,
        insights_k: int = 8,
    ):
        self.vectors = vectors
        self.generator = generator
        self.history = history
        self.system_prompt = system_prompt
        self.default_options = default_options or RetrievalOptions()
        self.history_prompt_messages = history_prompt_messages
        self.timeout_s = timeout_s
        self.summary_k = summary_k
        self.insights_k = insights_k

    # ==================== Retrieval ====================

    async def retrieve(
        self,
        question: str,
        document_id: Optional[str] = None,
        options: Optional[RetrievalOptions] = None,
    ) -> Tuple[List[SearchHit], str]:
        """
        Returns the hits and the retrieval method actually used.
        Without a document there is nothing to search: chunks of other
        documents are never candidates.
        """
        opts = options or self.default_options
        if not document_id:
            logger.info("No document in scope, skipping retrieval", search_type=opts.search_type)
            return [], opts.search_type
        scope = self.vectors.scope(document_id)

        if opts.search_type == "hybrid":
            hits = await self.vectors.hybrid_search(question, scope, opts.k, opts.score_threshold)
            return hits, "hybrid"
        if opts.search_type == "mmr":
            hits = await self.vectors.max_marginal_relevance_search(
                question,
                k=opts.k,
                fetch_k=opts.fetch_k,
                lambda_mult=opts.lambda_mult,
                scope=scope,
                score_threshold=opts.score_threshold,
            )
            return hits, "mmr"
        hits = await self.vectors.similarity_search(question, opts.k, opts.score_threshold, scope)
        return hits, "similarity"

    def build_messages(self, question: str, hits: List[SearchHit],
                       session_id: Optional[int] = None) -> List[Dict[str, str]]:
        messages = [{"role": "system", "content": self.system_prompt}]
        if session_id is not None:
            messages.extend(self.history.get(session_id, last=self.history_prompt_messages))
        messages.append({"role": "system", "content": CONTEXT_TEMPLATE.format(context=format_documents(hits))})
        messages.append({"role": "user", "content": question})
        return messages

    # ==================== Query ====================

    async def query(
        self,
        question: str,
        context: Optional[ConversationContext] = None,
        options: Optional[RetrievalOptions] = None,
    ) -> RAGResponse:
        t = perf_counter()
        context = context or ConversationContext()
        hits, method = await self.retrieve(question, context.document_id, options)

        if not hits:
            logger.info("No chunks retrieved, answering without model", document_id=context.document_id)
            answer = INSUFFICIENT_CONTEXT_ANSWER
        else:
            messages = self.build_messages(question, hits, context.session_id)
            logger.info(
                "Sending to LLM",
                question=question,
                chunks=len(hits),
                history_messages=len(messages) - 3,
                retrieval_method=method,
            )
            answer = await self._complete(messages)

        return RAGResponse(
            answer=answer,
            sources=build_sources(hits),
            query_time_ms=round((perf_counter() - t) * 1000, 2),
            retrieval_method=method,
        )

    async def stream_query(
        self,
        question: str,
        on_chunk: OnChunk,
        context: Optional[ConversationContext] = None,
        options: Optional[RetrievalOptions] = None,
    ) -> RAGResponse:
        """
        Same as query(), but fragments are handed to on_chunk as they arrive.
        The returned answer is the concatenation of every fragment.
        """
        t = perf_counter()
        context = context or ConversationContext()
        hits, method = await self.retrieve(question, context.document_id, options)

        if not hits:
            answer = INSUFFICIENT_CONTEXT_ANSWER
            await _emit(on_chunk, answer)
        else:
            messages = self.build_messages(question, hits, context.session_id)
            logger.info("Streaming from LLM", question=question, chunks=len(hits), retrieval_method=method)
            answer = await self._stream(messages, on_chunk)

        return RAGResponse(
            answer=answer,
            sources=build_sources(hits),
            query_time_ms=round((perf_counter() - t) * 1000, 2),
            retrieval_method=method,
        )

    # ==================== Summary and insights ====================

    async def generate_summary(self, document_id: str) -> str:
        hits = await self.vectors.similarity_search(
            SUMMARY_PROMPT, k=self.summary_k, score_threshold=0.0, scope=self.vectors.scope(document_id)
        )
        if not hits:
            return NO_SUMMARY_CONTENT
        return await self._complete([
            {"role": "system", "content": SUMMARY_SYSTEM_PROMPT},
            {"role": "system", "content": f"Context:\n{format_documents(hits)}"},
            {"role": "user", "content": SUMMARY_PROMPT},
        ])

    async def extract_key_insights(self, document_id: str) -> List[str]:
        hits = await self.vectors.similarity_search(
            INSIGHTS_PROMPT, k=self.insights_k, score_threshold=0.0, scope=self.vectors.scope(document_id)
        )
        if not hits:
            return []
        response = await self._complete([
            {"role": "system", "content": INSIGHTS_SYSTEM_PROMPT},
            {"role": "system", "content": f"Context:\n{format_documents(hits)}"},
            {"role": "user", "content": INSIGHTS_PROMPT},
        ])
        return bullet_lines(response)

    # ==================== Conversation window ====================

    def record_turn(self, session_id: int, question: str, answer: str) -> None:
        self.history.append_turn(session_id, question, answer)

    def clear_conversation_history(self, session_id: int) -> None:
        self.history.clear(session_id)

    # ==================== Generation ====================

    async def _complete(self, messages: List[Dict[str, str]]) -> str:
        t = perf_counter()
        try:
            answer = await asyncio.wait_for(self.generator.complete(messages), timeout=self.timeout_s)
        except asyncio.TimeoutError as e:
            raise GenerationError(f"Generation timed out after {self.timeout_s}s") from e
        except GenerationError:
            raise
        except Exception as e:
            raise GenerationError(f"Generation failed: {e}") from e
        logger.info("Received response from LLM", time_ms=round((perf_counter() - t) * 1000, 2))
        return answer

    async def _stream(self, messages: List[Dict[str, str]], on_chunk: OnChunk) -> str:
        parts: List[str] = []
        stream = self.generator.stream(messages).__aiter__()
        try:
            while True:
                try:
                    fragment = await asyncio.wait_for(stream.__anext__(), timeout=self.timeout_s)
                except StopAsyncIteration:
                    break
                except asyncio.TimeoutError as e:
                    raise GenerationError(f"No output from model for {self.timeout_s}s") from e
                except GenerationError:
                    raise
                except Exception as e:
                    raise GenerationError(f"Stream interrupted: {e}") from e
                parts.append(fragment)
                await _emit(on_chunk, fragment)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        return "".join(parts)


async def _emit(on_chunk: Optional[OnChunk], fragment: str) -> None:
    if on_chunk is None:
        return
    result = on_chunk(fragment)
    if inspect.isawaitable(result):
        await result
