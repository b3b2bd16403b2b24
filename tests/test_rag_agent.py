import asyncio
import threading
from unittest.mock import MagicMock

import pytest
from sqlalchemy import select

from docchat.embedding import EmbeddingBatcher
from docchat.exceptions import (
    DocumentNotFoundError,
    GenerationError,
    ProcessingConflictError,
    SessionNotFoundError,
)
from docchat.models import ProcessingState, QueryLog
from docchat.retrieval import RetrievalOptions
from docchat.services.ingestion_service import IngestionService
from docchat.services.rag_agent import RAGAgent, build_citations
from docchat.services.rag_chain import INSUFFICIENT_CONTEXT_ANSWER, RAGChain
from docchat.text_extraction import RawSource
from docchat.utils.cache import ConversationWindowCache

from .conftest import ScriptedGenerator
from .test_embedding import FlakyEmbeddings


@pytest.fixture
def doc(store):
    return store.create_document(title="paper.pdf", source="paper.pdf", user_id="alice")


async def _ingest(agent, doc, pages):
    return await agent.process_document(doc["id"], RawSource(pages=pages), user_id="alice")


@pytest.mark.asyncio
async def test_ingest_three_pages(agent, store, doc, three_pages):
    result = await _ingest(agent, doc, three_pages)

    assert result.success
    assert result.chunks_created == 3
    status = agent.get_processing_status(doc["id"])
    assert status["status"] == ProcessingState.COMPLETED
    assert status["total_chunks"] == 3
    assert store.get_document(doc["id"])["page_count"] == 3

    stats = await agent.get_document_stats(doc["id"])
    assert stats["chunk_count"] == 3
    assert stats["page_count"] == 3
    assert stats["chunk_types"] == {"abstract": 1, "methodology": 1, "results": 1}


@pytest.mark.asyncio
async def test_query_unprocessed_document(agent, store, doc, generator):
    result = await agent.query("What is this about?", "alice", document_id=doc["id"])

    assert result.answer == INSUFFICIENT_CONTEXT_ANSWER
    assert result.sources == []
    assert result.citations == []
    assert generator.calls == []
    assert [m["role"] for m in store.get_chat_session(result.session_id)["messages"]] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_follow_up_sees_previous_turn(agent, doc, generator, three_pages):
    await _ingest(agent, doc, three_pages)

    first = await agent.query("What does the study examine?", "alice", document_id=doc["id"])
    second = await agent.query("And the results?", "alice", session_id=first.session_id)

    assert second.session_id == first.session_id
    assert second.answer == "Second answer."
    history = generator.calls[1]
    assert {"role": "user", "content": "What does the study examine?"} in history
    assert {"role": "assistant", "content": "First answer, see page 2."} in history
    assert history[-1] == {"role": "user", "content": "And the results?"}


@pytest.mark.asyncio
async def test_history_reloaded_from_store(agent, store, vectors, ingestion, doc, three_pages):
    await _ingest(agent, doc, three_pages)
    first = await agent.query("What does the study examine?", "alice", document_id=doc["id"])

    # Fresh chain, empty window: history must come from the database
    generator = ScriptedGenerator("Reloaded answer.")
    chain = RAGChain(
        vectors,
        generator,
        ConversationWindowCache(),
        default_options=RetrievalOptions(k=4, score_threshold=0.0),
    )
    restarted = RAGAgent(store, vectors, chain, ingestion)

    await restarted.query("Anything else?", "alice", session_id=first.session_id)

    assert {"role": "assistant", "content": "First answer, see page 2."} in generator.calls[0]
    assert len(store.recent_messages(first.session_id)) == 4


@pytest.mark.asyncio
async def test_failed_embedding_leaves_no_chunks(store, vectors, splitter, backend, doc, three_pages):
    ingestion = IngestionService(store, vectors, splitter, EmbeddingBatcher(FlakyEmbeddings(fail_on_call=0)))

    result = await ingestion.ingest(doc["id"], RawSource(pages=three_pages))

    assert not result.success
    assert "batch 0" in result.error
    status = store.get_status(doc["id"])
    assert status["status"] == ProcessingState.FAILED
    assert status["error_message"] == result.error
    assert status["total_chunks"] == 0
    assert store.count_chunks(doc["id"]) == 0
    assert doc["id"] not in backend.collections


@pytest.mark.asyncio
async def test_crash_after_indexing_clears_vectors(store, vectors, ingestion, backend, doc, three_pages):
    store.mark_completed = MagicMock(side_effect=RuntimeError("connection lost"))

    with pytest.raises(RuntimeError, match="connection lost"):
        await ingestion.ingest(doc["id"], RawSource(pages=three_pages))

    assert store.get_status(doc["id"])["status"] == ProcessingState.FAILED
    assert store.count_chunks(doc["id"]) == 0
    assert doc["id"] not in backend.collections
    assert await vectors.similarity_search("hybrid search", scope=vectors.scope(doc["id"])) == []


@pytest.mark.asyncio
async def test_cancelled_run_clears_vectors(store, vectors, ingestion, backend, doc, three_pages):
    indexed = asyncio.Event()
    index_chunks = vectors.index_chunks

    async def index_then_hang(document_id, chunks):
        await index_chunks(document_id, chunks)
        indexed.set()
        await asyncio.sleep(60)

    vectors.index_chunks = index_then_hang
    task = asyncio.create_task(ingestion.ingest(doc["id"], RawSource(pages=three_pages)))
    await indexed.wait()
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    status = store.get_status(doc["id"])
    assert status["status"] == ProcessingState.FAILED
    assert status["error_message"] == "Processing was cancelled"
    assert store.count_chunks(doc["id"]) == 0
    assert doc["id"] not in backend.collections


@pytest.mark.asyncio
async def test_empty_source_fails(agent, store, doc):
    result = await agent.process_document(doc["id"], RawSource(text="   \n\n  "))

    assert not result.success
    assert store.get_status(doc["id"])["status"] == ProcessingState.FAILED


@pytest.mark.asyncio
async def test_processing_conflict(agent, store, doc, three_pages):
    store.claim_processing(doc["id"])

    with pytest.raises(ProcessingConflictError):
        await _ingest(agent, doc, three_pages)
    with pytest.raises(ProcessingConflictError):
        await agent.reprocess(doc["id"])


@pytest.mark.asyncio
async def test_other_users_document_is_hidden(agent, doc, three_pages):
    with pytest.raises(DocumentNotFoundError):
        await agent.process_document(doc["id"], RawSource(pages=three_pages), user_id="bob")
    with pytest.raises(DocumentNotFoundError):
        await agent.query("q", "bob", document_id=doc["id"])


@pytest.mark.asyncio
async def test_reprocess_rebuilds_same_chunks(agent, store, tmp_path, three_pages):
    path = tmp_path / "notes.txt"
    path.write_text("\n\n".join(three_pages * 12), encoding="utf-8")
    doc = store.create_document(title="notes.txt", source="notes.txt", user_id="alice", storage_path=str(path))

    first = await agent.process_document(doc["id"], RawSource(path=str(path), file_type="txt"))
    outcome = await agent.reprocess(doc["id"])

    assert first.chunks_created > 1
    assert outcome == {
        "success": True,
        "message": f"Document reprocessed successfully with {first.chunks_created} chunks",
    }
    assert store.count_chunks(doc["id"]) == first.chunks_created
    assert store.get_status(doc["id"])["status"] == ProcessingState.COMPLETED


@pytest.mark.asyncio
async def test_delete_removes_collection_then_rows(agent, store, backend, doc, three_pages):
    await _ingest(agent, doc, three_pages)
    events = backend.ops
    delete_chunks, delete_document = store.delete_chunks, store.delete_document

    def record_chunks(document_id):
        events.append(f"delete_chunks:{document_id}")
        return delete_chunks(document_id)

    def record_document(document_id):
        events.append(f"delete_document:{document_id}")
        return delete_document(document_id)

    store.delete_chunks, store.delete_document = record_chunks, record_document

    await agent.delete_document(doc["id"])

    doc_id = doc["id"]
    assert events[-3:] == [f"delete_scope:{doc_id}", f"delete_chunks:{doc_id}", f"delete_document:{doc_id}"]
    assert store.count_chunks(doc_id) == 0
    with pytest.raises(DocumentNotFoundError):
        store.get_document(doc_id)


@pytest.mark.asyncio
async def test_citations_linked_to_answer(agent, store, doc, three_pages):
    await _ingest(agent, doc, three_pages)

    result = await agent.query("What were the methods?", "alice", document_id=doc["id"])

    assert len(result.citations) == len(result.sources) == 3
    flagged = {c["page_number"] for c in result.citations if c["cited_in_answer"]}
    assert flagged == {2}
    assistant = store.get_chat_session(result.session_id)["messages"][1]
    stored = store.get_citations(assistant["id"])
    assert [c["chunk_id"] for c in stored] == [s["chunk_id"] for s in result.sources]


@pytest.mark.asyncio
async def test_stream_query_persists_full_answer(agent, store, doc, three_pages):
    await _ingest(agent, doc, three_pages)
    received = []

    result = await agent.stream_query("What does the study examine?", "alice", received.append, document_id=doc["id"])

    assert "".join(received) == result.answer == "First answer, see page 2."
    messages = store.get_chat_session(result.session_id)["messages"]
    assert messages[1]["content"] == result.answer


@pytest.mark.asyncio
async def test_failed_stream_persists_nothing(store, vectors, ingestion, doc, three_pages):
    chain = RAGChain(
        vectors,
        ScriptedGenerator(fail=RuntimeError("connection reset")),
        ConversationWindowCache(),
        default_options=RetrievalOptions(k=4, score_threshold=0.0),
    )
    agent = RAGAgent(store, vectors, chain, ingestion)
    await _ingest(agent, doc, three_pages)

    with pytest.raises(GenerationError):
        await agent.stream_query("q?", "alice", lambda _: None, document_id=doc["id"])

    assert agent.get_user_chat_sessions("alice") == []


@pytest.mark.asyncio
async def test_session_belongs_to_user(agent, doc):
    session = agent.create_chat_session("alice", doc["id"])

    with pytest.raises(SessionNotFoundError):
        await agent.query("q", "bob", session_id=session["id"])
    assert agent.get_chat_session(session["id"], "alice")["messages"] == []


@pytest.mark.asyncio
async def test_summary_and_insights_are_logged(agent, session_factory, doc, three_pages):
    await _ingest(agent, doc, three_pages)

    summary = await agent.summarize(doc["id"], user_id="alice")
    insights = await agent.extract_insights(doc["id"], user_id="alice")

    assert summary == "First answer, see page 2."
    assert insights == []
    with session_factory() as session:
        methods = session.execute(select(QueryLog.retrieval_method).order_by(QueryLog.id)).scalars().all()
    assert methods == ["summary", "insights"]


def test_build_citations_flags_referenced_pages():
    sources = [
        {"chunk_id": "a", "page_number": 3, "score": 0.9},
        {"chunk_id": "b", "page_number": 5, "score": 0.4},
    ]

    citations = build_citations("As shown on pp. 2-3, the method works.", sources)

    assert [c["cited_in_answer"] for c in citations] == [True, False]


@pytest.mark.asyncio
async def test_query_without_document_searches_nothing(agent, doc, generator, three_pages):
    await _ingest(agent, doc, three_pages)

    result = await agent.query("What did hybrid search improve?", "bob")

    assert result.answer == INSUFFICIENT_CONTEXT_ANSWER
    assert result.sources == []
    assert result.citations == []
    assert generator.calls == []


@pytest.mark.asyncio
async def test_turns_from_another_worker_reach_the_prompt(agent, store, vectors, ingestion, doc, generator,
                                                          three_pages):
    await _ingest(agent, doc, three_pages)
    first = await agent.query("What does the study examine?", "alice", document_id=doc["id"])

    other_chain = RAGChain(
        vectors,
        ScriptedGenerator("Answer from the other worker."),
        ConversationWindowCache(),
        default_options=RetrievalOptions(k=4, score_threshold=0.0),
    )
    other = RAGAgent(store, vectors, other_chain, ingestion)
    await other.query("What about the datasets?", "alice", session_id=first.session_id)

    await agent.query("And the results?", "alice", session_id=first.session_id)

    prompt = generator.calls[-1]
    assert {"role": "user", "content": "What about the datasets?"} in prompt
    assert {"role": "assistant", "content": "Answer from the other worker."} in prompt
    assert len(store.recent_messages(first.session_id)) == 6


@pytest.mark.asyncio
async def test_store_writes_run_off_the_event_loop(agent, store, doc, three_pages):
    loop_thread = threading.get_ident()
    threads = {}

    def recording(name):
        original = getattr(store, name)

        def wrapper(*args):
            threads[name] = threading.get_ident()
            return original(*args)
        return wrapper

    store.replace_chunks = recording("replace_chunks")
    store.record_exchange = recording("record_exchange")

    await _ingest(agent, doc, three_pages)
    await agent.query("What were the methods?", "alice", document_id=doc["id"])

    assert set(threads) == {"replace_chunks", "record_exchange"}
    assert loop_thread not in threads.values()


@pytest.mark.asyncio
async def test_other_users_cannot_manage_document(agent, store, doc, three_pages):
    await _ingest(agent, doc, three_pages)

    with pytest.raises(DocumentNotFoundError):
        agent.get_processing_status(doc["id"], "bob")
    with pytest.raises(DocumentNotFoundError):
        await agent.get_document_stats(doc["id"], "bob")
    with pytest.raises(DocumentNotFoundError):
        await agent.reprocess(doc["id"], "bob")
    with pytest.raises(DocumentNotFoundError):
        await agent.delete_document(doc["id"], "bob")

    assert store.count_chunks(doc["id"]) == 3
    assert agent.get_processing_status(doc["id"], "alice")["status"] == ProcessingState.COMPLETED
