"""Background job control endpoints."""
from typing import Any, Dict, List

from fastapi import APIRouter

from scm_dispatch.api.deps import RetrySchedulerDep
from scm_dispatch.jobs.scheduler import get_job_status


router = APIRouter()


@router.post("/assignment-retry/run")
async def run_assignment_retry(retry_scheduler: RetrySchedulerDep) -> Dict[str, Any]:
    """Run the expired / busy / all-rejected sweeps now and return their counts."""
    return await retry_scheduler.run()


@router.get("/status")
async def job_status() -> List[Dict[str, Any]]:
    return get_job_status()
