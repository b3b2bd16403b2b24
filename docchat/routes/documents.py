"""
Document management API routes.
Handles upload, processing, statistics, summaries and deletion.
"""
import os
import shutil
import uuid
from typing import List

from fastapi import APIRouter, Depends, File, HTTPException, UploadFile

from ..config import settings
from ..deps import get_agent, get_user_id, http_error
from ..exceptions import DocChatError
from ..logging_config import bind_request, logger
from ..schemas import ProcessingResponse, ReprocessResponse
from ..services.rag_agent import RAGAgent
from ..text_extraction import RawSource, file_type_of

router = APIRouter(prefix="/api/documents", tags=["documents"])

MAX_FILES_PER_UPLOAD = 5


def _file_size(f: UploadFile) -> int:
    f.file.seek(0, os.SEEK_END)
    size_bytes = f.file.tell()
    f.file.seek(0)  # reset for later reading
    return size_bytes


# ==================== Document Upload ====================

@router.post("/upload")
async def upload_documents(
    files: List[UploadFile] = File(...),
    agent: RAGAgent = Depends(get_agent),
    user_id: str = Depends(get_user_id),
):
    """
    Upload one or more documents and process them.

    Each file is stored under UPLOAD_DIR, registered as a document, then
    run through the ingestion pipeline. A file that fails to process is
    reported with success=false; the upload itself still succeeds.
    """
    bind_request(user_id=user_id)
    if not files:
        raise HTTPException(status_code=400, detail="No files uploaded")
    if len(files) > MAX_FILES_PER_UPLOAD:
        raise HTTPException(
            status_code=400,
            detail=f"Too many files. Maximum {MAX_FILES_PER_UPLOAD} files per upload.",
        )

    for f in files:
        kind = file_type_of(f.filename, f.content_type or "")
        if kind not in settings.SUPPORTED_FILE_TYPES:
            raise HTTPException(status_code=400, detail=f"Unsupported file type: {f.filename}")
        if _file_size(f) > settings.MAX_FILE_SIZE_BYTES:
            raise HTTPException(
                status_code=400,
                detail=(
                    f"File '{f.filename}' is too large. "
                    f"Max size is {settings.MAX_FILE_SIZE_BYTES // (1024 * 1024)} MB."
                ),
            )

    os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
    results = []
    for f in files:
        logger.info("Processing file", filename=f.filename, content_type=f.content_type)
        document_id = str(uuid.uuid4())
        ext = os.path.splitext(f.filename or "")[1].lower()
        storage_path = os.path.join(settings.UPLOAD_DIR, f"{document_id}{ext}")
        with open(storage_path, "wb") as out:
            shutil.copyfileobj(f.file, out)

        doc = agent.store.create_document(
            title=os.path.splitext(os.path.basename(f.filename or "document"))[0] or "document",
            source=f.filename or storage_path,
            user_id=user_id,
            storage_path=storage_path,
            mime_type=f.content_type,
            document_id=document_id,
        )
        try:
            result = await agent.process_document(
                doc["id"],
                RawSource(path=storage_path, file_type=file_type_of(f.filename, f.content_type or "")),
                user_id=user_id,
            )
        except DocChatError as e:
            raise http_error(e)
        results.append({"filename": f.filename, **ProcessingResponse(**vars(result)).model_dump()})

    return {"ok": True, "documents": results}


# ==================== Document Listing ====================

@router.get("")
async def list_documents(agent: RAGAgent = Depends(get_agent), user_id: str = Depends(get_user_id)):
    """Returns the caller's documents with chunk counts and processing status."""
    documents = agent.store.list_documents(user_id)
    logger.info("Listed documents", count=len(documents))
    return documents


# ==================== Processing ====================

@router.post("/{document_id}/process", response_model=ProcessingResponse)
async def process_document(
    document_id: str,
    agent: RAGAgent = Depends(get_agent),
    user_id: str = Depends(get_user_id),
):
    try:
        doc = agent.store.get_document(document_id)
        result = await agent.process_document(
            document_id,
            RawSource(path=doc["storage_path"], file_type=file_type_of(doc["source"], doc["mime_type"] or "")),
            user_id=user_id,
        )
    except DocChatError as e:
        raise http_error(e)
    return ProcessingResponse(**vars(result))


@router.post("/{document_id}/reprocess", response_model=ReprocessResponse)
async def reprocess_document(
    document_id: str,
    agent: RAGAgent = Depends(get_agent),
    user_id: str = Depends(get_user_id),
):
    try:
        return await agent.reprocess(document_id, user_id)
    except DocChatError as e:
        raise http_error(e)


@router.get("/{document_id}/status")
async def processing_status(
    document_id: str,
    agent: RAGAgent = Depends(get_agent),
    user_id: str = Depends(get_user_id),
):
    try:
        return agent.get_processing_status(document_id, user_id)
    except DocChatError as e:
        raise http_error(e)


@router.get("/{document_id}/stats")
async def document_stats(
    document_id: str,
    agent: RAGAgent = Depends(get_agent),
    user_id: str = Depends(get_user_id),
):
    try:
        return await agent.get_document_stats(document_id, user_id)
    except DocChatError as e:
        raise http_error(e)


# ==================== Summary and insights ====================

@router.post("/{document_id}/summary")
async def document_summary(
    document_id: str,
    agent: RAGAgent = Depends(get_agent),
    user_id: str = Depends(get_user_id),
):
    try:
        return {"document_id": document_id, "summary": await agent.summarize(document_id, user_id)}
    except DocChatError as e:
        raise http_error(e)


@router.post("/{document_id}/insights")
async def document_insights(
    document_id: str,
    agent: RAGAgent = Depends(get_agent),
    user_id: str = Depends(get_user_id),
):
    try:
        return {"document_id": document_id, "insights": await agent.extract_insights(document_id, user_id)}
    except DocChatError as e:
        raise http_error(e)


# ==================== Document Deletion ====================

@router.delete("/{document_id}")
async def delete_document(
    document_id: str,
    agent: RAGAgent = Depends(get_agent),
    user_id: str = Depends(get_user_id),
):
    """Deletes a document with its vectors, chunks, sessions and messages."""
    try:
        doc = agent.store.get_document(document_id)
        await agent.delete_document(document_id, user_id)
    except DocChatError as e:
        raise http_error(e)

    if doc["storage_path"] and os.path.exists(doc["storage_path"]):
        os.remove(doc["storage_path"])
    return {"ok": True, "deleted": document_id}
