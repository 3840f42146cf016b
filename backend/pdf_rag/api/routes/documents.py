"""Document ingestion, status and deletion endpoints."""
from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Depends, File, HTTPException, Path, UploadFile, status

from pdf_rag.api.errors import to_http_exception
from pdf_rag.api.schemas import IngestionJobResponse
from pdf_rag.exceptions import RAGError
from pdf_rag.models.document import IngestionJob
from pdf_rag.services.ingestion_service import IngestionService
from pdf_rag.utils.logger import logger
from pdf_rag.utils.pdf_validator import PDFValidator

router = APIRouter()

DocumentId = Annotated[
    str,
    Path(min_length=1, max_length=128, pattern=r"^[A-Za-z0-9._:-]+$", description="Document identifier"),
]


def get_ingestion_service() -> IngestionService:
    """Get ingestion service from main app."""
    from pdf_rag.main import ingestion_service
    if ingestion_service is None:
        raise HTTPException(status_code=503, detail="Ingestion service not initialized")
    return ingestion_service


def get_app_settings():
    """Get application settings from main app."""
    from pdf_rag.main import settings
    if settings is None:
        raise HTTPException(status_code=503, detail="Settings not initialized")
    return settings


def _job_response(job: IngestionJob) -> IngestionJobResponse:
    return IngestionJobResponse(
        document_id=job.document_id,
        status=job.status,
        submitted_at=job.submitted_at,
        started_at=job.started_at,
        finished_at=job.finished_at,
        chunk_count=job.chunk_count,
        page_count=job.page_count,
        generation=job.generation,
        error_type=job.error_type,
        error=job.error,
    )


@router.post(
    "/documents/{document_id}",
    response_model=IngestionJobResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def ingest_document(
    document_id: DocumentId,
    file: Annotated[UploadFile, File(...)],
    background_tasks: BackgroundTasks,
    force: bool = False,
    ingestion_service: IngestionService = Depends(get_ingestion_service),
    app_settings=Depends(get_app_settings),
):
    """
    Upload a PDF and schedule its ingestion under the given id.

    Re-uploading an id replaces its index entry once the new ingestion
    succeeds. Progress is reported by the status endpoint.

    Args:
        document_id: Caller-chosen document identifier
        file: PDF file to ingest
        force: Re-index even when the content is unchanged
    """
    try:
        PDFValidator.validate_file_type(file.filename)
        file_content = await file.read()
        PDFValidator.validate_file_size(len(file_content), app_settings.max_file_size_mb)

        job = ingestion_service.submit(document_id)
    except RAGError as e:
        logger.warning(f"Rejected upload: {str(e)}", extra={"document_id": document_id})
        raise to_http_exception(e)

    background_tasks.add_task(ingestion_service.run_job, document_id, file_content, force)
    return _job_response(job)


@router.get("/documents/{document_id}/status", response_model=IngestionJobResponse)
async def get_document_status(
    document_id: DocumentId,
    ingestion_service: IngestionService = Depends(get_ingestion_service),
):
    """Return the latest ingestion job for a document."""
    job = ingestion_service.get_job(document_id)
    if job is None:
        raise HTTPException(status_code=404, detail=f"No ingestion job for document {document_id}")
    return _job_response(job)


@router.delete("/documents/{document_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_document(
    document_id: DocumentId,
    ingestion_service: IngestionService = Depends(get_ingestion_service),
):
    """Remove a document from the index."""
    try:
        ingestion_service.delete_document(document_id)
    except RAGError as e:
        raise to_http_exception(e)
