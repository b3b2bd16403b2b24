import pytest

from docchat.exceptions import GenerationError
from docchat.retrieval import RetrievalOptions
from docchat.services.rag_chain import (
    CONTEXT_TEMPLATE,
    DEFAULT_SYSTEM_PROMPT,
    INSIGHTS_SYSTEM_PROMPT,
    INSUFFICIENT_CONTEXT_ANSWER,
    NO_DOCUMENTS_CONTEXT,
    NO_SUMMARY_CONTENT,
    SUMMARY_PROMPT,
    SUMMARY_SYSTEM_PROMPT,
    ConversationContext,
    RAGChain,
    format_documents,
)
from docchat.utils.cache import ConversationWindowCache
from docchat.vectorstores import IndexedChunk, SearchHit

from .conftest import ScriptedGenerator

PAPER = [
    "Abstract. We propose a retrieval pipeline for long papers.",
    "Methods. Chunks are embedded and searched with cosine similarity.",
    "Results. Hybrid retrieval improved accuracy on every benchmark.",
]


async def index_paper(vectors, embeddings, document_id="doc-1"):
    await vectors.index_chunks(document_id, [
        IndexedChunk(f"{document_id}-{i}", text, i + 1, embeddings.vector(text))
        for i, text in enumerate(PAPER)
    ])


def make_chain(vectors, generator, **kwargs):
    kwargs.setdefault("default_options", RetrievalOptions(k=4, search_type="hybrid", score_threshold=0.0))
    return RAGChain(vectors, generator, ConversationWindowCache(), **kwargs)


def test_format_documents():
    hits = [SearchHit("a", "first", 2, 0.9), SearchHit("b", "second", 0, 0.8)]

    assert format_documents(hits) == "[Document 1 (Page 2)]:\nfirst\n\n---\n\n[Document 2]:\nsecond"
    assert format_documents([]) == NO_DOCUMENTS_CONTEXT


def test_build_messages_uses_recent_history(chain):
    for i in range(4):
        chain.record_turn(7, f"q{i}", f"a{i}")
    hits = [SearchHit("a", "context text", 3, 0.9)]

    messages = chain.build_messages("new question", hits, session_id=7)

    assert messages[0] == {"role": "system", "content": DEFAULT_SYSTEM_PROMPT}
    assert [m["content"] for m in messages[1:7]] == ["q1", "a1", "q2", "a2", "q3", "a3"]
    assert messages[7] == {
        "role": "system",
        "content": CONTEXT_TEMPLATE.format(context="[Document 1 (Page 3)]:\ncontext text"),
    }
    assert messages[8] == {"role": "user", "content": "new question"}
    assert len(messages) == 9


@pytest.mark.asyncio
async def test_query_without_hits_skips_generation(chain, generator):
    response = await chain.query("anything?", ConversationContext(document_id="empty-doc"))

    assert response.answer == INSUFFICIENT_CONTEXT_ANSWER
    assert response.sources == []
    assert generator.calls == []


@pytest.mark.asyncio
async def test_query_grounds_answer_in_context(chain, generator, vectors, embeddings):
    await index_paper(vectors, embeddings)

    response = await chain.query("What did hybrid retrieval improve?", ConversationContext(document_id="doc-1"))

    assert response.answer == "First answer, see page 2."
    assert response.retrieval_method == "hybrid"
    assert response.sources
    assert {s["chunk_id"] for s in response.sources} <= {"doc-1-0", "doc-1-1", "doc-1-2"}
    prompt = generator.calls[0]
    assert prompt[-1] == {"role": "user", "content": "What did hybrid retrieval improve?"}
    assert "Hybrid retrieval improved accuracy" in prompt[-2]["content"]


@pytest.mark.asyncio
async def test_retrieval_method_reported(vectors, embeddings):
    await index_paper(vectors, embeddings)
    chain = make_chain(vectors, ScriptedGenerator("ok"))

    unscoped_hits, unscoped = await chain.retrieve("methods", None)
    _, mmr = await chain.retrieve("methods", "doc-1", RetrievalOptions(k=2, search_type="mmr", score_threshold=0.0))
    _, similarity = await chain.retrieve(
        "methods", "doc-1", RetrievalOptions(k=2, search_type="similarity", score_threshold=0.0)
    )

    assert unscoped_hits == []
    assert (unscoped, mmr, similarity) == ("hybrid", "mmr", "similarity")


@pytest.mark.asyncio
async def test_stream_matches_non_streaming_answer(vectors, embeddings):
    await index_paper(vectors, embeddings)
    answer = "Hybrid retrieval improved accuracy (Page 3).\nIt beat vector search alone."
    context = ConversationContext(document_id="doc-1")

    plain = await make_chain(vectors, ScriptedGenerator(answer)).query("What improved?", context)

    received = []
    streamed = await make_chain(vectors, ScriptedGenerator(answer)).stream_query(
        "What improved?", received.append, context
    )

    assert streamed.answer == plain.answer == answer
    assert "".join(received) == answer
    assert len(received) > 1
    assert streamed.sources == plain.sources


@pytest.mark.asyncio
async def test_stream_accepts_async_callback(vectors, embeddings):
    await index_paper(vectors, embeddings)
    received = []

    async def on_chunk(fragment):
        received.append(fragment)

    response = await make_chain(vectors, ScriptedGenerator("one two three")).stream_query(
        "methods?", on_chunk, ConversationContext(document_id="doc-1")
    )

    assert received == ["one ", "two ", "three"]
    assert response.answer == "one two three"


@pytest.mark.asyncio
async def test_stream_without_hits_emits_fixed_answer(chain, generator):
    received = []

    response = await chain.stream_query("anything?", received.append, ConversationContext(document_id="empty"))

    assert received == [INSUFFICIENT_CONTEXT_ANSWER]
    assert response.answer == INSUFFICIENT_CONTEXT_ANSWER
    assert generator.calls == []


@pytest.mark.asyncio
async def test_stalled_stream_raises(vectors, embeddings):
    await index_paper(vectors, embeddings)
    chain = make_chain(vectors, ScriptedGenerator("never finishes", stall_s=0.5), timeout_s=0.05)

    with pytest.raises(GenerationError, match="No output"):
        await chain.stream_query("methods?", lambda _: None, ConversationContext(document_id="doc-1"))


@pytest.mark.asyncio
async def test_generator_failure_raises(vectors, embeddings):
    await index_paper(vectors, embeddings)
    chain = make_chain(vectors, ScriptedGenerator(fail=RuntimeError("model offline")))
    context = ConversationContext(document_id="doc-1")

    with pytest.raises(GenerationError, match="model offline"):
        await chain.query("methods?", context)
    with pytest.raises(GenerationError, match="model offline"):
        await chain.stream_query("methods?", lambda _: None, context)


@pytest.mark.asyncio
async def test_summary_of_empty_document(chain, generator):
    assert await chain.generate_summary("empty-doc") == NO_SUMMARY_CONTENT
    assert generator.calls == []


@pytest.mark.asyncio
async def test_summary_prompt(vectors, embeddings):
    await index_paper(vectors, embeddings)
    generator = ScriptedGenerator("A structured summary.")
    chain = make_chain(vectors, generator, summary_k=2)

    assert await chain.generate_summary("doc-1") == "A structured summary."

    system, context, user = generator.calls[0]
    assert system["content"] == SUMMARY_SYSTEM_PROMPT
    assert context["content"].startswith("Context:\n[Document 1")
    assert "[Document 3" not in context["content"]
    assert user == {"role": "user", "content": SUMMARY_PROMPT}


@pytest.mark.asyncio
async def test_insights_keep_bullet_lines(vectors, embeddings):
    await index_paper(vectors, embeddings)
    generator = ScriptedGenerator("Key insights:\n• Hybrid helps\n- Chunking matters\nThanks.")
    chain = make_chain(vectors, generator)

    assert await chain.extract_key_insights("doc-1") == ["Hybrid helps", "Chunking matters"]
    assert generator.calls[0][0]["content"] == INSIGHTS_SYSTEM_PROMPT
    assert await chain.extract_key_insights("empty-doc") == []


def test_clear_conversation_history(chain):
    chain.record_turn(1, "q", "a")
    chain.clear_conversation_history(1)

    assert chain.history.get(1) == []
