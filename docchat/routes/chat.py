"""
Chat-related API routes.
Handles chat sessions and RAG question answering.
"""
import asyncio
import json
from typing import AsyncGenerator, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import StreamingResponse

from ..deps import get_agent, get_user_id, http_error
from ..exceptions import DocChatError
from ..logging_config import bind_request, logger
from ..schemas import AskBody, AskResponse, CreateSessionBody
from ..services.rag_agent import RAGAgent

router = APIRouter(prefix="/api", tags=["chat"])


@router.post("/ask", response_model=AskResponse)
async def ask(payload: AskBody, agent: RAGAgent = Depends(get_agent), user_id: str = Depends(get_user_id)):
    bind_request(user_id=user_id, document_id=payload.document_id, session_id=payload.session_id)
    try:
        result = await agent.query(
            payload.question.strip(),
            user_id,
            session_id=payload.session_id,
            document_id=payload.document_id,
            options=payload.to_options(agent.chain.default_options),
        )
    except DocChatError as e:
        logger.error("Error answering question", stage=e.stage, error=e.message)
        raise http_error(e)
    return vars(result)


async def _sse_events(agent: RAGAgent, payload: AskBody, user_id: str) -> AsyncGenerator[str, None]:
    """
    Run the streamed query in a task and relay its fragments as SSE events.
    Closing the response cancels the task, so an abandoned stream persists nothing.
    """
    queue: asyncio.Queue = asyncio.Queue()

    async def on_chunk(text: str):
        await queue.put({"type": "delta", "text": text})

    async def run():
        try:
            result = await agent.stream_query(
                payload.question.strip(),
                user_id,
                on_chunk,
                session_id=payload.session_id,
                document_id=payload.document_id,
                options=payload.to_options(agent.chain.default_options),
            )
            await queue.put({"type": "final", **vars(result)})
        except DocChatError as e:
            logger.error("Error in RAG streaming", stage=e.stage, error=e.message)
            await queue.put({"type": "error", "status": e.http_status, "detail": e.message})
        finally:
            await queue.put(None)

    task = asyncio.create_task(run())
    try:
        while True:
            event = await queue.get()
            if event is None:
                break
            yield f"data: {json.dumps(event)}\n\n"
        yield 'data: {"type":"done"}\n\n'
        await task
    finally:
        if not task.done():
            task.cancel()


@router.post("/ask_stream")
async def ask_stream(payload: AskBody, agent: RAGAgent = Depends(get_agent), user_id: str = Depends(get_user_id)):
    """
    Streaming RAG endpoint using Server-Sent Events (SSE).

    Events: {"type":"delta"} per fragment, then {"type":"final"} with the
    answer, sources and citations (or {"type":"error"}), then {"type":"done"}.
    """
    bind_request(user_id=user_id, document_id=payload.document_id, session_id=payload.session_id)
    return StreamingResponse(_sse_events(agent, payload, user_id), media_type="text/event-stream")


@router.post("/sessions")
async def create_session(
    body: CreateSessionBody,
    agent: RAGAgent = Depends(get_agent),
    user_id: str = Depends(get_user_id),
):
    try:
        return agent.create_chat_session(user_id, body.document_id, body.title)
    except DocChatError as e:
        raise http_error(e)


@router.get("/sessions")
async def list_sessions(
    document_id: Optional[str] = None,
    agent: RAGAgent = Depends(get_agent),
    user_id: str = Depends(get_user_id),
):
    return agent.get_user_chat_sessions(user_id, document_id)


@router.get("/sessions/{session_id}")
async def get_session(
    session_id: int,
    agent: RAGAgent = Depends(get_agent),
    user_id: str = Depends(get_user_id),
):
    """Session with all messages in chronological order."""
    try:
        return agent.get_chat_session(session_id, user_id)
    except DocChatError as e:
        raise http_error(e)
