"""
Review Store Module

Persistence collaborator for review job records. The service only needs
create/get/update/list; the in-memory implementation keeps records for the
lifetime of the process.
"""

import asyncio
from typing import Any, Dict, List, Optional, Protocol

from forge_review.logging_config import get_logger
from forge_review.models import ReviewJob, ReviewStatus

logger = get_logger(__name__)


class JobNotFoundError(KeyError):
    """Raised when a review job id is unknown."""
    pass


class ReviewStore(Protocol):
    """Storage for ``ReviewJob`` records."""

    async def create(self, job: ReviewJob) -> ReviewJob: ...

    async def get(self, job_id: str) -> Optional[ReviewJob]: ...

    async def update(self, job_id: str, **changes: Any) -> ReviewJob: ...

    async def list(
        self,
        repository: Optional[str] = None,
        status: Optional[ReviewStatus] = None
    ) -> List[ReviewJob]: ...


class InMemoryReviewStore:
    """
    Process-local ``ReviewStore``.

    Records are copied on the way in and out so callers never share
    mutable state with the store.
    """

    def __init__(self):
        self._jobs: Dict[str, ReviewJob] = {}
        self._lock = asyncio.Lock()

    async def create(self, job: ReviewJob) -> ReviewJob:
        async with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Review job {job.id} already exists")
            self._jobs[job.id] = job.model_copy(deep=True)
        return job.model_copy(deep=True)

    async def get(self, job_id: str) -> Optional[ReviewJob]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job else None

    async def update(self, job_id: str, **changes: Any) -> ReviewJob:
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            updated = job.model_copy(update=changes)
            self._jobs[job_id] = updated
        return updated.model_copy(deep=True)

    async def list(
        self,
        repository: Optional[str] = None,
        status: Optional[ReviewStatus] = None
    ) -> List[ReviewJob]:
        jobs = [
            job for job in self._jobs.values()
            if (repository is None or job.repository == repository)
            and (status is None or job.status == status)
        ]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return [job.model_copy(deep=True) for job in jobs]
