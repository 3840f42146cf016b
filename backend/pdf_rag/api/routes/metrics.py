"""Stats endpoint for monitoring the index."""
from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException

from pdf_rag.api.schemas import StatsResponse
from pdf_rag.services.stats_service import StatsService

router = APIRouter()


def get_stats_service() -> StatsService:
    """Get stats service from main app."""
    from pdf_rag.main import stats_service
    if stats_service is None:
        raise HTTPException(status_code=503, detail="Stats service not initialized")
    return stats_service


@router.get("/stats", response_model=StatsResponse)
async def get_stats(stats_service: StatsService = Depends(get_stats_service)):
    """
    Get index statistics.

    Returns:
        Document and chunk counts, vector memory, cache and job figures
    """
    return StatsResponse(**asdict(stats_service.get_stats()))
