"""
Review Status Routes

Read access to review job records and the operator retry action.
"""

from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, status

from forge_review.logging_config import get_logger
from forge_review.models import ReviewJob, ReviewStatus
from forge_review.services.store import JobNotFoundError
from forge_review.webhook.handler import get_orchestrator
from forge_review.webhook.processor import InvalidTransitionError, ReviewOrchestrator

logger = get_logger(__name__)

router = APIRouter(prefix="/reviews", tags=["reviews"])


@router.get("", response_model=List[ReviewJob])
async def list_reviews(
    repository: Optional[str] = None,
    status_filter: Optional[ReviewStatus] = None,
    orchestrator: ReviewOrchestrator = Depends(get_orchestrator)
) -> List[ReviewJob]:
    """List review jobs, newest first, optionally filtered."""
    return await orchestrator.store.list(repository=repository, status=status_filter)


@router.get("/{job_id}", response_model=ReviewJob)
async def get_review(
    job_id: str,
    orchestrator: ReviewOrchestrator = Depends(get_orchestrator)
) -> ReviewJob:
    job = await orchestrator.get_job(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Review not found")
    return job


@router.post("/{job_id}/retry", response_model=ReviewJob, status_code=status.HTTP_202_ACCEPTED)
async def retry_review(
    job_id: str,
    background_tasks: BackgroundTasks,
    orchestrator: ReviewOrchestrator = Depends(get_orchestrator)
) -> ReviewJob:
    """
    Reset a failed review to pending and run it again in the background.

    Raises:
        HTTPException: 404 for unknown jobs, 409 for jobs that are not failed
    """
    try:
        job = await orchestrator.retry(job_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Review not found") from e
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from e

    background_tasks.add_task(orchestrator.run, job.id)
    return job
