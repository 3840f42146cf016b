"""Retrieve endpoint for top-K chunk search."""
import time

from fastapi import APIRouter, Depends, HTTPException

from pdf_rag.api.errors import to_http_exception
from pdf_rag.api.schemas import RetrievedChunk, RetrieveRequest, RetrieveResponse
from pdf_rag.exceptions import RAGError
from pdf_rag.services.retrieval_service import Retriever
from pdf_rag.utils.logger import logger

router = APIRouter()


def get_retriever() -> Retriever:
    """Get retriever from main app."""
    from pdf_rag.main import retriever
    if retriever is None:
        raise HTTPException(status_code=503, detail="Retriever not initialized")
    return retriever


@router.post("/retrieve", response_model=RetrieveResponse)
def retrieve_chunks(
    request: RetrieveRequest,
    retriever: Retriever = Depends(get_retriever),
):
    """
    Return the chunks most similar to a query across the given documents.

    Runs in the threadpool, so query embedding does not block the event loop.
    """
    start_time = time.time()
    try:
        results = retriever.retrieve(request.document_ids, request.query, top_k=request.top_k)
    except RAGError as e:
        raise to_http_exception(e)
    except ValueError as e:
        logger.error(f"Invalid retrieval request: {str(e)}")
        raise HTTPException(status_code=400, detail=str(e))

    return RetrieveResponse(
        query=request.query,
        results=[
            RetrievedChunk(
                document_id=result.document_id,
                chunk_index=result.chunk.chunk_index,
                page_number=result.chunk.page_number,
                page_end=result.chunk.page_end,
                text=result.chunk.text,
                score=max(-1.0, min(1.0, result.score)),
                relevance=result.relevance,
            )
            for result in results
        ],
        response_time_ms=round((time.time() - start_time) * 1000, 1),
    )
